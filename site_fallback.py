# site_fallback.py
# -*- coding: utf-8 -*-
"""
HTML5 history fallback for single page applications.

Navigational requests that do not name a file are answered with the app's
entry point (default /index.html):

1. only GET / HEAD
2. the client must send an Accept header
3. skip if the client prefers JSON
4. the client must accept HTML
5. custom rewrite rules, first match wins
6. dot rule: a dot in the last path segment means a file, skip
7. otherwise serve the fallback index if it exists
"""
import re
import logging
from typing import Callable, Iterable, List, Optional, Pattern, Union
from urllib.parse import SplitResult, urlsplit

from site_files import PathResolutionError, resolve_request_path

DEFAULT_INDEX = "/index.html"
DEFAULT_HTML_ACCEPT = ("text/html", "*/*")

PASS = "pass"
REWRITE = "rewrite"
SERVE = "serve"

_logger = logging.getLogger("site_anywhere.fallback")


class RewriteContext:
    def __init__(self, parsed_url: SplitResult, match: "re.Match"):
        self.parsed_url = parsed_url
        self.match = match


class RewriteTarget:
    def resolve(self, context: RewriteContext) -> str:
        raise NotImplementedError


class LiteralTarget(RewriteTarget):
    def __init__(self, value: str):
        self.value = value

    def resolve(self, context: RewriteContext) -> str:
        return self.value


class ComputedTarget(RewriteTarget):
    def __init__(self, func: Callable[[RewriteContext], str]):
        self.func = func

    def resolve(self, context: RewriteContext) -> str:
        return self.func(context)


class RewriteRule:
    def __init__(self, pattern: Union[str, Pattern], target: Union[str, RewriteTarget]):
        self.pattern = re.compile(pattern) if isinstance(pattern, str) else pattern
        self.target = LiteralTarget(target) if isinstance(target, str) else target
        if not isinstance(self.target, RewriteTarget):
            raise TypeError(f"rewrite target must be a string or RewriteTarget, got {type(target).__name__}")


class FallbackOptions:
    def __init__(self, index: str = DEFAULT_INDEX, rewrites: Iterable[RewriteRule] = (),
                 disable_dot_rule: bool = False, html_accept_headers: Iterable[str] = DEFAULT_HTML_ACCEPT,
                 verbose: bool = False):
        self.index = index or DEFAULT_INDEX
        self.rewrites = tuple(rewrites)
        self.disable_dot_rule = disable_dot_rule
        self.html_accept_headers = tuple(html_accept_headers) or DEFAULT_HTML_ACCEPT
        self.verbose = verbose


class RewriteDecision:
    def __init__(self, action: str, target: Optional[str] = None, fs_path: Optional[str] = None):
        self.action = action
        self.target = target
        self.fs_path = fs_path

    def __repr__(self):
        return f"RewriteDecision({self.action!r}, target={self.target!r})"


def _media_ranges(accept: str) -> List[str]:
    return [part.split(";", 1)[0].strip().lower() for part in accept.split(",") if part.strip()]


class HistoryFallbackRewriter:
    def __init__(self, root_dir: str, options: Optional[FallbackOptions] = None,
                 serve_hidden: bool = True, logger: Optional[logging.Logger] = None):
        self.root_dir = root_dir
        self.options = options or FallbackOptions()
        self.serve_hidden = serve_hidden
        self.logger = logger or _logger

    def _trace(self, msg, *args):
        if self.options.verbose:
            self.logger.debug(msg, *args)

    def accepts_html(self, accept: str) -> bool:
        ranges = _media_ranges(accept)
        return any(header in ranges for header in self.options.html_accept_headers)

    def evaluate(self, method: str, url: str, accept: Optional[str]) -> RewriteDecision:
        method = method.upper()
        if method not in ("GET", "HEAD"):
            self._trace("Not rewriting %s %s: method is not GET or HEAD.", method, url)
            return RewriteDecision(PASS)

        if not accept:
            self._trace("Not rewriting %s %s: no Accept header.", method, url)
            return RewriteDecision(PASS)

        if accept.lstrip().lower().startswith("application/json"):
            self._trace("Not rewriting %s %s: client prefers JSON.", method, url)
            return RewriteDecision(PASS)

        if not self.accepts_html(accept):
            self._trace("Not rewriting %s %s: client does not accept HTML.", method, url)
            return RewriteDecision(PASS)

        parsed = urlsplit(url)
        pathname = parsed.path

        for rule in self.options.rewrites:
            match = rule.pattern.search(pathname)
            if match is None:
                continue
            target = rule.target.resolve(RewriteContext(parsed, match))
            if target and not target.startswith("/"):
                self.logger.warning("Non-absolute rewrite target %r for URL %s", target, url)
            self._trace("Rewriting %s %s to %s (matched rule).", method, url, target)
            return RewriteDecision(REWRITE, target)

        if not self.options.disable_dot_rule and pathname.rfind(".") > pathname.rfind("/"):
            self._trace("Not rewriting %s %s: path includes a dot (.) character.", method, url)
            return RewriteDecision(PASS)

        target = self.options.index
        try:
            resolved = resolve_request_path(target, self.root_dir, serve_hidden=self.serve_hidden)
        except PathResolutionError:
            resolved = None
        if resolved is None or resolved.is_dir:
            self._trace("Not rewriting %s %s: fallback %s not found.", method, url, target)
            return RewriteDecision(PASS)

        self._trace("Rewriting %s %s to %s.", method, url, target)
        return RewriteDecision(SERVE, target, resolved.fs_path)
