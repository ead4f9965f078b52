#!/usr/bin/env python3
# site_server.py
# -*- coding: utf-8 -*-
"""
Serves a local folder as a website, over HTTP and HTTPS at the same time.

IMPORTANT: HTTPS service may require restarting the web browser if a security warning is present after
this script tries to create and install the local root certificate.

- HTTPS on HTTP_PORT + 1 with a per-run leaf certificate signed by a persistent local CA (site_certs.py)
- Best-effort trust store installation of the CA, removable with --uninstall-ca (site_trust.py)
- Directory listings when a folder has no index file (site_files.py)
- Optional HTML5 history fallback for single page apps (site_fallback.py)
"""
VERSION = "2.0.0"


# --- EDITABLE SERVER CONFIGURATION ---
class ServerConfig:
    def __init__(self):
        # Interface to bind.
        self.HOST: str = "0.0.0.0"
        # TCP Port for HTTP traffic.
        self.HTTP_PORT: int = 8000
        # TCP Port for HTTPS traffic. None means HTTP_PORT + 1.
        self.HTTPS_PORT = None
        # Folder containing web-site files. Relative paths are taken from the current directory.
        self.SITE_FOLDER: str = "."
        # Name of the preferred file to open when a web client doesn't specify a filename.
        self.DEFAULT_FILE: str = "index.html"
        # True to also serve HTTPS with a locally trusted certificate.
        self.SECURE_SITE: bool = True
        # HTML5 history fallback entry point (e.g. "/index.html"), or "" to disable.
        self.FALLBACK: str = ""
        # Extra history fallback rules (site_fallback.RewriteRule), evaluated in order before the fallback.
        self.FALLBACK_REWRITES: list = []
        # Forward requests to this upstream (e.g. "http://localhost:7000/api"), or "" to disable.
        self.PROXY: str = ""
        # True: dotfiles are left out of listings but can still be fetched by exact path.
        # False: dotfiles are not served at all.
        self.SERVE_HIDDEN: bool = True
        # Log every request.
        self.ENABLE_LOG: bool = False
        # Add permissive CORS headers.
        self.ENABLE_CORS: bool = True
        # Set to True to auto-open the site in a web browser on server startup.
        self.AUTO_OPEN_DEFAULT: bool = True
        # Optional delay (seconds) before auto-opening.
        self.AUTO_OPEN_DELAY_SECONDS: int = 1
        # Where the root CA lives. None means ~/.localdev/ca (or $SITE_ANYWHERE_CA_DIR).
        self.CA_DIR = None
        # Seconds to wait for a trust store command (they may prompt for a sudo password).
        self.TRUST_COMMAND_TIMEOUT_SECONDS: int = 120
        # Application version number.
        self.VERSION: str = VERSION

    def https_port(self) -> int:
        return self.HTTPS_PORT if self.HTTPS_PORT is not None else self.HTTP_PORT + 1

# --- END EDITABLE SERVER CONFIGURATION ---


import os
import sys
import asyncio
import logging
import mimetypes
import webbrowser
from typing import List, Optional
from urllib.parse import quote, unquote

import uvicorn
from fastapi import FastAPI, Request, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, HTMLResponse, RedirectResponse

from site_certs import CertificateAuthority, issue_server_certificate, build_tls_context
from site_fallback import FallbackOptions, HistoryFallbackRewriter, REWRITE, SERVE
from site_files import (PathResolutionError, build_directory_listing, render_listing_page,
                        resolve_request_path)
from site_network import all_ip_addresses
from site_proxy import ReverseProxy, is_proxy_url
from site_trust import SubprocessExecutor, TrustStoreError, TrustStoreInstaller

logger = logging.getLogger("site_anywhere.server")


def resolve_site_folder(folder: str) -> str:
    """Expands ~ and $VARS and returns the absolute folder, or raises ValueError if it is not a directory."""
    path = os.path.abspath(os.path.expanduser(os.path.expandvars(folder or os.getcwd())))
    if not os.path.isdir(path):
        raise ValueError(f"'{path}' is not a valid directory")
    return path


def precompressed_headers(path: str):
    """(media_type, headers) for .gz / .br files served as their underlying type."""
    lower = path.lower()
    for suffix, encoding in ((".gz", "gzip"), (".br", "br")):
        if lower.endswith(suffix):
            base_path = path[:-len(suffix)]
            if base_path.lower().endswith(".js"):
                media_type = "application/javascript"
            elif base_path.lower().endswith(".css"):
                media_type = "text/css"
            else:
                media_type = mimetypes.guess_type(base_path)[0] or "application/octet-stream"
            return media_type, {"Content-Encoding": encoding}
    return None, {}


def _request_target(scope) -> str:
    path = quote(scope["path"], safe="/")
    query = scope.get("query_string", b"").decode("latin-1")
    return f"{path}?{query}" if query else path


def create_app(config: ServerConfig, proxy_transport=None) -> FastAPI:
    root = resolve_site_folder(config.SITE_FOLDER)
    app = FastAPI(docs_url=None, redoc_url=None, openapi_url=None)

    # registered first so the history fallback wraps it
    if config.PROXY and is_proxy_url(config.PROXY):
        proxy = ReverseProxy(config.PROXY, transport=proxy_transport)

        @app.middleware("http")
        async def reverse_proxy(request: Request, call_next):
            return await proxy.forward(request)
    elif config.PROXY:
        logger.warning("Ignoring proxy %r: not an http:// or https:// URL", config.PROXY)

    if config.FALLBACK:
        rewriter = HistoryFallbackRewriter(
            root,
            FallbackOptions(index=config.FALLBACK, rewrites=config.FALLBACK_REWRITES, verbose=config.ENABLE_LOG),
            serve_hidden=config.SERVE_HIDDEN,
        )

        @app.middleware("http")
        async def history_fallback(request: Request, call_next):
            decision = rewriter.evaluate(request.method, _request_target(request.scope),
                                         request.headers.get("accept"))
            if decision.action == SERVE:
                return FileResponse(decision.fs_path)
            if decision.action == REWRITE:
                path, _, query = decision.target.partition("?")
                request.scope["path"] = unquote(path)
                request.scope["raw_path"] = path.encode("latin-1", "replace")
                request.scope["query_string"] = query.encode("latin-1", "replace")
            return await call_next(request)

    if config.ENABLE_LOG:
        @app.middleware("http")
        async def access_log(request: Request, call_next):
            response = await call_next(request)
            logger.info("%s %s %s", request.method, _request_target(request.scope), response.status_code)
            return response

    if config.ENABLE_CORS:
        app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_methods=["*"], allow_headers=["*"])

    @app.api_route("/{filepath:path}", methods=["GET", "HEAD"])
    def serve_static(request: Request, filepath: str):
        request_path = quote(request.scope["path"], safe="/")
        try:
            resolved = resolve_request_path(request_path, root, serve_hidden=config.SERVE_HIDDEN)
        except PathResolutionError as e:
            raise HTTPException(status_code=e.status_code, detail=e.detail)

        if not resolved.is_dir:
            media_type, headers = precompressed_headers(resolved.fs_path)
            return FileResponse(resolved.fs_path, media_type=media_type, headers=headers)

        if resolved.redirect:
            query = request.url.query
            location = resolved.redirect + ("?" + query if query else "")
            return RedirectResponse(url=location, status_code=301)

        index_path = os.path.join(resolved.fs_path, config.DEFAULT_FILE)
        if os.path.isfile(index_path):
            return FileResponse(index_path)

        try:
            listing = build_directory_listing(resolved.fs_path, request_path)
        except OSError as e:
            logger.error("Error listing directory %s: %s", resolved.fs_path, e)
            raise HTTPException(status_code=500, detail=f"Error listing directory: {e}")
        return HTMLResponse(render_listing_page(listing))

    return app


class InjectedTLSConfig(uvicorn.Config):
    """uvicorn.Config that uses a prepared SSLContext instead of certificate files on disk."""

    def __init__(self, app, ssl_context, **kwargs):
        super().__init__(app, **kwargs)
        self._ssl_context = ssl_context

    def load(self):
        super().load()
        self.ssl = self._ssl_context


def prepare_tls(config: ServerConfig, ips: List[str], executor=None):
    """SSLContext for the HTTPS listener. A failed trust store install only logs a warning."""
    executor = executor or SubprocessExecutor(timeout=config.TRUST_COMMAND_TIMEOUT_SECONDS)
    installer = TrustStoreInstaller(config.CA_DIR, executor)
    ca = CertificateAuthority(config.CA_DIR, installer=installer).resolve()
    leaf = issue_server_certificate(ca, ips)
    return build_tls_context(leaf)


def _host_for_url(ip: str) -> str:
    return f"[{ip}]" if ":" in ip else ip


def print_startup(config: ServerConfig, root: str, ips: List[str], tls_started: bool):
    print(f"\nsite-anywhere v{config.VERSION}\n")
    print(f"Serving: {root}\n")
    print("HTTP running at:")
    for ip in ips + ["127.0.0.1"]:
        print(f"  * http://{_host_for_url(ip)}:{config.HTTP_PORT}")
    if tls_started:
        print("\nAlso running at:")
        for ip in ips + ["127.0.0.1"]:
            print(f"  * https://{_host_for_url(ip)}:{config.https_port()}")
    print()


def auto_open_default_page(config: ServerConfig, host: str, tls_started: bool):
    try:
        if tls_started:
            url = f"https://{_host_for_url(host)}:{config.https_port()}/"
        else:
            url = f"http://{_host_for_url(host)}:{config.HTTP_PORT}/"
        logger.info(f"[server] Auto-opening {url}")
        webbrowser.open(url)
    except webbrowser.Error as e:
        logger.warning(f"Auto-open failed: {e}")


async def run_servers(config: ServerConfig):
    root = resolve_site_folder(config.SITE_FOLDER)
    ips = all_ip_addresses()
    app = create_app(config)

    server_configs = [
        uvicorn.Config(app, host=config.HOST, port=config.HTTP_PORT, lifespan="off", log_level="warning")
    ]

    tls_started = False
    if config.SECURE_SITE:
        try:
            ssl_context = prepare_tls(config, ips)
        except Exception as e:
            logger.warning("An issue occurred when preparing the TLS server, skipped: %s", e)
        else:
            server_configs.append(InjectedTLSConfig(
                app, ssl_context, host=config.HOST, port=config.https_port(),
                lifespan="off", log_level="warning"))
            tls_started = True

    print_startup(config, root, ips, tls_started)

    if config.AUTO_OPEN_DEFAULT:
        async def _delayed_open():
            await asyncio.sleep(config.AUTO_OPEN_DELAY_SECONDS)
            # Run sync webbrowser.open without blocking event loop
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, auto_open_default_page, config, ips[0], tls_started)
        asyncio.create_task(_delayed_open())

    servers = [uvicorn.Server(server_config) for server_config in server_configs]
    await asyncio.gather(*[server.serve() for server in servers])


def build_parser():
    import argparse

    parser = argparse.ArgumentParser(prog="site-anywhere", description="Serve a local folder as a website.")
    parser.add_argument("port_arg", nargs="?", type=int, default=None, metavar="port",
                        help="Port number (same as --port, takes priority).")
    parser.add_argument("-p", "--port", type=int, default=None, help="HTTP port (HTTPS uses port + 1).")
    parser.add_argument("--host", default=None, help="Hostname or address to bind (default: 0.0.0.0).")
    parser.add_argument("-d", "--dir", default=None, help="Root directory (default: current directory).")
    parser.add_argument("-f", "--fallback", default=None,
                        help="Enable HTML5 history fallback (e.g. -f /index.html).")
    parser.add_argument("--proxy", default=None,
                        help="Forward requests to an upstream (e.g. http://localhost:7000/api).")
    parser.add_argument("-s", "--silent", action="store_true", help="Don't open the browser.")
    parser.add_argument("-l", "--enable-log", action="store_true", help="Enable access logging.")
    parser.add_argument("--no-secure", action="store_true", help="Serve plain HTTP only.")
    parser.add_argument("--hide-dotfiles", action="store_true", help="Refuse to serve hidden files.")
    parser.add_argument("--no-cors", action="store_true", help="Don't add CORS headers.")
    parser.add_argument("--ca-dir", default=None, help="Directory holding rootCA.pem and rootCA.key.")
    parser.add_argument("--uninstall-ca", action="store_true",
                        help="Remove the root CA from the trust store and delete it.")
    parser.add_argument("-v", "--version", action="version", version=f"%(prog)s {VERSION}")
    return parser


def apply_args(config: ServerConfig, args) -> ServerConfig:
    port = args.port_arg if args.port_arg is not None else args.port
    if port is not None:
        if not 0 < port < 65535:
            raise ValueError(f"invalid port {port} (allowed: [1-65534])")
        config.HTTP_PORT = port
    if args.host:
        config.HOST = args.host
    if args.dir is not None:
        config.SITE_FOLDER = args.dir
    if args.fallback is not None:
        config.FALLBACK = args.fallback
    if args.proxy is not None:
        config.PROXY = args.proxy
    if args.silent:
        config.AUTO_OPEN_DEFAULT = False
    if args.enable_log:
        config.ENABLE_LOG = True
    if args.no_secure:
        config.SECURE_SITE = False
    if args.hide_dotfiles:
        config.SERVE_HIDDEN = False
    if args.no_cors:
        config.ENABLE_CORS = False
    if args.ca_dir:
        config.CA_DIR = args.ca_dir
    return config


def main(argv: Optional[List[str]] = None):
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')

    args = build_parser().parse_args(argv)
    svr_config = ServerConfig()
    try:
        apply_args(svr_config, args)
    except ValueError as e:
        logging.critical(str(e))
        sys.exit(1)

    if args.uninstall_ca:
        try:
            TrustStoreInstaller(
                svr_config.CA_DIR, SubprocessExecutor(timeout=svr_config.TRUST_COMMAND_TIMEOUT_SECONDS)).uninstall()
        except TrustStoreError as e:
            logging.error("Uninstall root CA failed: %s", e)
            sys.exit(1)
        sys.exit(0)

    try:
        svr_config.SITE_FOLDER = resolve_site_folder(svr_config.SITE_FOLDER)
    except ValueError as e:
        logging.critical(str(e))
        sys.exit(1)

    try:
        asyncio.run(run_servers(svr_config))
    except KeyboardInterrupt:
        logging.info("Server manually stopped via Ctrl+C. Exiting gracefully.")
    finally:
        logging.info("Application finished.")


if __name__ == "__main__":
    main()
