"""
Single-tenant reverse proxy for AI provider APIs.

Callers authenticate with a static API key as the first path segment:

    /{api_key}/{provider}/...             -> fixed upstream from the route table
    /{api_key}/custom-model-proxy?url=... -> caller-supplied absolute URL

Requests run through an ordered pipeline of stages. Each stage returns a
response to finish the request, or None to hand it to the next stage. A
request that no stage answers is a route miss (404).

Upstream credentials are never injected: callers send their own provider
keys in headers, which are forwarded untouched.
"""

import logging
import secrets
import sys
import time
from collections.abc import Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Annotated

import httpx
import uvicorn
from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import AnyUrl, TypeAdapter, UrlConstraints, ValidationError

from forwarder import display_url, forward, sanitize_headers
from route_table import ConfigError, build_target_url, match_route
from settings import ProxySettings, load_settings

logger = logging.getLogger("ai-proxy")

LOG_FORMAT = "%(asctime)s %(name)s %(levelname)s %(message)s"

ROOT_TEXT = "A proxy for AI! Use /{api_key}/{provider} to access the API."
UNAUTHORIZED_TEXT = "Unauthorized: Invalid API key"
NOT_FOUND_TEXT = "404 Not Found"

CUSTOM_PROXY_SEGMENT = "custom-model-proxy"

PROXY_METHODS = ["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS", "HEAD"]

Stage = Callable[[Request, str], Awaitable[Response | None]]

# Scheme and host only, no length cap (signed URLs run long)
_TARGET_URL = TypeAdapter(
    Annotated[AnyUrl, UrlConstraints(allowed_schemes=["http", "https"], host_required=True)]
)


# --- Request helpers ---


def path_without_api_key(request: Request) -> str:
    """Return the raw (still percent-encoded) path minus its first segment."""
    raw_path = request.scope.get("raw_path")
    path = raw_path.decode("latin-1") if raw_path else request.url.path
    path = path.split("?", 1)[0]
    return "/" + "/".join(path.split("/")[2:])


def redacted_path(request: Request) -> str:
    """Request path with the API key segment masked, for logging."""
    segments = request.url.path.split("/")
    if len(segments) >= 2 and segments[1]:
        segments[1] = "***"
    return "/".join(segments)


def request_body(request: Request):
    """Inbound body as an async byte stream, or None when there is no body."""
    headers = request.headers
    if "transfer-encoding" in headers:
        return request.stream()
    if headers.get("content-length", "0") not in ("", "0"):
        return request.stream()
    return None


def validate_target_url(raw: str | None) -> str:
    """Check the custom-proxy url parameter is an absolute http(s) URL.

    Returns the caller's string unchanged so it is forwarded verbatim.
    """
    if not raw:
        raise HTTPException(status_code=400, detail="Query parameter 'url' is required")
    try:
        _TARGET_URL.validate_python(raw)
    except ValidationError as e:
        reason = e.errors()[0]["msg"]
        raise HTTPException(
            status_code=400, detail=f"Invalid 'url' query parameter: {reason}"
        ) from e
    return raw


# --- Pipeline stages ---


async def check_api_key(request: Request, api_key: str) -> Response | None:
    settings: ProxySettings = request.app.state.settings
    if not secrets.compare_digest(api_key.encode(), settings.api_key.encode()):
        logger.info("Rejected %s %s: invalid API key", request.method, redacted_path(request))
        return PlainTextResponse(UNAUTHORIZED_TEXT, status_code=401)
    return None


async def custom_target_stage(request: Request, api_key: str) -> Response | None:
    """Forward to the url query parameter, bypassing the route table.

    Method, headers and body go through unchanged, except Host which must
    come from the target. No deadline applies.
    """
    if path_without_api_key(request) != f"/{CUSTOM_PROXY_SEGMENT}":
        return None

    target_url = validate_target_url(request.query_params.get("url"))
    client: httpx.AsyncClient = request.app.state.http_client

    headers = [(k, v) for k, v in request.headers.items() if k.lower() != "host"]
    upstream_request = client.build_request(
        method=request.method,
        url=target_url,
        headers=headers,
        content=request_body(request),
    )
    logger.info("Custom proxy %s -> %s", request.method, display_url(upstream_request.url))
    return await forward(client, upstream_request)


async def route_table_stage(request: Request, api_key: str) -> Response | None:
    settings: ProxySettings = request.app.state.settings
    path = path_without_api_key(request)

    route = match_route(path, request.url.hostname, settings.routes)
    if route is None:
        return None

    client: httpx.AsyncClient = request.app.state.http_client
    upstream_request = client.build_request(
        method=request.method,
        url=build_target_url(route, path, request.url.query),
        headers=sanitize_headers(request.headers.items(), route.path_segment),
        content=request_body(request),
    )
    logger.debug(
        "Routing %s %s via %s -> %s",
        request.method, redacted_path(request), route.path_segment,
        display_url(upstream_request.url),
    )
    return await forward(client, upstream_request, deadline=settings.upstream_timeout)


PIPELINE: tuple[Stage, ...] = (check_api_key, custom_target_stage, route_table_stage)


async def run_pipeline(request: Request, api_key: str) -> Response:
    for stage in PIPELINE:
        response = await stage(request, api_key)
        if response is not None:
            return response

    logger.info("No route for %s %s", request.method, redacted_path(request))
    return PlainTextResponse(NOT_FOUND_TEXT, status_code=404)


# --- FastAPI app ---


def create_app(
    settings: ProxySettings,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    """Build the proxy app around immutable settings.

    transport replaces the network layer of the shared upstream client.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Deadlines are enforced per request by the forwarder, not the client
        async with httpx.AsyncClient(timeout=None, transport=transport) as client:
            app.state.http_client = client
            logger.info(
                "Proxy ready: %d routes, upstream timeout %.0fs",
                len(settings.routes), settings.upstream_timeout,
            )
            yield

    app = FastAPI(title="AI Proxy", docs_url=None, redoc_url=None, openapi_url=None, lifespan=lifespan)
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def disable_proxy_buffering(request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Accel-Buffering"] = "no"
        return response

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        path = redacted_path(request)
        logger.info("<-- %s %s", request.method, path)
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            logger.exception("Unhandled error while processing %s %s", request.method, path)
            raise
        elapsed_ms = (time.perf_counter() - started) * 1000
        logger.info("--> %s %s %d %.0fms", request.method, path, response.status_code, elapsed_ms)
        return response

    @app.exception_handler(httpx.TransportError)
    async def upstream_error_handler(request: Request, exc: httpx.TransportError):
        logger.error(
            "Upstream request failed for %s %s: %s: %s",
            request.method, redacted_path(request), type(exc).__name__, exc,
        )
        return JSONResponse({"error": "upstream_error"}, status_code=502)

    @app.get("/", response_class=PlainTextResponse)
    async def root():
        return ROOT_TEXT

    # Bare "/{api_key}" is served directly rather than slash-redirected
    @app.api_route("/{api_key}", methods=PROXY_METHODS)
    @app.api_route("/{api_key}/{rest:path}", methods=PROXY_METHODS)
    async def proxy(request: Request, api_key: str):
        return await run_pipeline(request, api_key)

    return app


def main():
    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
    try:
        settings = load_settings()
    except ConfigError as e:
        logger.error("Invalid configuration: %s", e)
        sys.exit(1)

    logging.getLogger().setLevel(settings.log_level)
    uvicorn.run(
        create_app(settings),
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        access_log=False,
    )


if __name__ == "__main__":
    main()
