"""
Upstream forwarding via httpx.

Request and response bodies are streamed, never buffered. Route-table
requests are sent under a hard deadline: the send races a timer, and if the
timer wins the send is cancelled (releasing its connection) and a
504 "Request timeout" response is synthesized. Any other send failure
propagates to the caller unchanged.
"""

import asyncio
import logging
from collections.abc import Iterable

import httpx
from starlette.background import BackgroundTask
from starlette.responses import Response, StreamingResponse

logger = logging.getLogger("ai-proxy.forwarder")

TIMEOUT_STATUS = 504
TIMEOUT_BODY = "Request timeout"

# Recomputed by the transport for the new target
STRIPPED_HEADERS = {"content-length", "host"}

# Upstreams that reject browser Origin headers
ORIGIN_STRIPPED_SEGMENTS = {"anthropic"}

HOP_BY_HOP_HEADERS = {"transfer-encoding", "connection", "keep-alive"}


def sanitize_headers(
    headers: Iterable[tuple[str, str]], matched_segment: str
) -> list[tuple[str, str]]:
    """Build outbound headers for a route-table request.

    Caller credentials pass through untouched; nothing is injected.
    """
    stripped = set(STRIPPED_HEADERS)
    if matched_segment in ORIGIN_STRIPPED_SEGMENTS:
        stripped.add("origin")
    return [(key, value) for key, value in headers if key.lower() not in stripped]


def display_url(url: httpx.URL) -> str:
    # Query strings may carry provider keys (e.g. ?key=)
    return str(url).split("?", 1)[0]


def timeout_response() -> Response:
    return Response(content=TIMEOUT_BODY, status_code=TIMEOUT_STATUS)


def relay_response(upstream_response: httpx.Response) -> StreamingResponse:
    """Stream an upstream response back verbatim (raw bytes, multi-valued headers kept).

    A transport may hand back a response whose body was already read; that
    body is relayed decoded, in one chunk.
    """
    preread = upstream_response.is_stream_consumed
    dropped = set(HOP_BY_HOP_HEADERS)
    if preread:
        # Decoded content no longer matches the upstream encoding or length
        dropped |= {"content-encoding", "content-length"}

    async def stream_response():
        try:
            if preread:
                yield upstream_response.content
                return
            async for chunk in upstream_response.aiter_raw():
                yield chunk
        finally:
            await upstream_response.aclose()

    response = StreamingResponse(
        content=stream_response(),
        status_code=upstream_response.status_code,
        background=BackgroundTask(upstream_response.aclose),
    )
    response.raw_headers.extend(
        (key.lower(), value)
        for key, value in upstream_response.headers.raw
        if key.lower().decode("latin-1") not in dropped
    )
    return response


async def _discard(send_task: asyncio.Task):
    """Cancel an abandoned send and release whatever it produced."""
    send_task.cancel()
    await asyncio.wait({send_task})
    if send_task.cancelled():
        return
    if send_task.exception() is None:
        # Completed in the same tick the deadline fired
        await send_task.result().aclose()


async def send_with_deadline(
    client: httpx.AsyncClient, request: httpx.Request, deadline: float
) -> httpx.Response | None:
    """Send request, returning None if our deadline fired first.

    The deadline covers connect, body upload and receipt of the response
    headers. Streaming the response body afterwards is not bounded.
    """
    send_task = asyncio.ensure_future(client.send(request, stream=True))
    timer = asyncio.ensure_future(asyncio.sleep(deadline))

    try:
        await asyncio.wait({send_task, timer}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        timer.cancel()
        await _discard(send_task)
        raise

    deadline_fired = timer.done() and not timer.cancelled()
    timer.cancel()

    if not send_task.done():
        await _discard(send_task)
        return None

    exc = send_task.exception()
    if exc is None:
        return send_task.result()
    if deadline_fired:
        return None
    raise exc


async def forward(
    client: httpx.AsyncClient,
    request: httpx.Request,
    deadline: float | None = None,
) -> Response:
    """Send request upstream and relay the response.

    With a deadline, a send that outlives it yields the 504 timeout response.
    Without one, the send is unbounded. Transport errors propagate either way.
    """
    target = display_url(request.url)

    if deadline is None:
        upstream_response = await client.send(request, stream=True)
    else:
        upstream_response = await send_with_deadline(client, request, deadline)
        if upstream_response is None:
            logger.warning(
                "Upstream %s %s timed out after %.1fs", request.method, target, deadline
            )
            return timeout_response()

    logger.debug(
        "Upstream %s %s -> %d", request.method, target, upstream_response.status_code
    )
    return relay_response(upstream_response)
