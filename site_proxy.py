# site_proxy.py
# -*- coding: utf-8 -*-
"""
Single-host reverse proxy.

With --proxy http://localhost:7000/api every request that reaches it is
forwarded to the upstream, its path appended to the upstream base path.
"""
import logging
from typing import Optional
from urllib.parse import urlsplit, urlunsplit

import httpx
from fastapi import Request, Response

# RFC 7230 section 6.1, plus headers httpx recomputes for us
HOP_BY_HOP = frozenset((
    "connection", "keep-alive", "proxy-authenticate", "proxy-authorization",
    "te", "trailer", "transfer-encoding", "upgrade",
))
_REQUEST_SKIP = HOP_BY_HOP | {"host", "content-length"}
# the body is already decoded by httpx
_RESPONSE_SKIP = HOP_BY_HOP | {"content-length", "content-encoding"}

_logger = logging.getLogger("site_anywhere.proxy")


def is_proxy_url(url: str) -> bool:
    return url.startswith("http://") or url.startswith("https://")


class ReverseProxy:

    def __init__(self, target: str, transport: Optional[httpx.AsyncBaseTransport] = None,
                 timeout: float = 30.0, logger: Optional[logging.Logger] = None):
        if not is_proxy_url(target):
            raise ValueError(f"proxy target must be an http:// or https:// URL, got {target!r}")
        self.target = urlsplit(target)
        self.logger = logger or _logger
        self.client = httpx.AsyncClient(transport=transport, timeout=timeout, follow_redirects=False)

    def upstream_url(self, path: str, query: str = "") -> str:
        base = self.target.path.rstrip("/")
        return urlunsplit((self.target.scheme, self.target.netloc, base + path, query, ""))

    async def forward(self, request: Request) -> Response:
        url = self.upstream_url(request.url.path, request.url.query)
        headers = [(k, v) for k, v in request.headers.items() if k.lower() not in _REQUEST_SKIP]
        body = await request.body()
        try:
            upstream = await self.client.request(request.method, url, headers=headers, content=body)
        except httpx.HTTPError as e:
            self.logger.warning("Proxy request to %s failed: %s", url, e)
            return Response("Bad Gateway", status_code=502, media_type="text/plain")

        response = Response(content=upstream.content, status_code=upstream.status_code)
        for key, value in upstream.headers.multi_items():
            if key.lower() not in _RESPONSE_SKIP:
                response.headers.append(key, value)
        return response

    async def aclose(self):
        await self.client.aclose()
