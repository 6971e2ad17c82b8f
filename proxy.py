import logging
from typing import Iterable, Optional, Tuple

import httpx
from fastapi import Request, HTTPException, status
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask

logger = logging.getLogger("gatekeeper.proxy")

UPSTREAM_TIMEOUT = 30.0

# Never forwarded in either direction (RFC 7230 section 6.1)
HOP_BY_HOP_HEADERS = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "trailers",
    "transfer-encoding",
    "upgrade",
})


def end_to_end_headers(headers: Iterable[Tuple[str, str]], *, drop_host: bool = False) -> dict:
    """
    Strip hop-by-hop headers, including any the sender listed in Connection.
    """
    headers = list(headers)
    dropped = set(HOP_BY_HOP_HEADERS)
    for name, value in headers:
        if name.lower() == "connection":
            dropped.update(token.strip().lower() for token in value.split(",") if token.strip())
    if drop_host:
        dropped.add("host")

    return {name: value for name, value in headers if name.lower() not in dropped}


async def forward_request(
    *,
    request: Request,
    upstream_url: str,
    client_ip: Optional[str] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> StreamingResponse:
    """
    Stream an allowed request to the upstream service and its response back.

    The upstream response and the client are closed once the body has been
    sent, or immediately if the upstream cannot be reached.
    """
    client = client or httpx.AsyncClient(timeout=UPSTREAM_TIMEOUT)

    headers = end_to_end_headers(request.headers.items(), drop_host=True)
    if client_ip:
        prior = request.headers.get("x-forwarded-for")
        headers["x-forwarded-for"] = f"{prior}, {client_ip}" if prior else client_ip

    try:
        upstream_request = client.build_request(
            method=request.method,
            url=upstream_url,
            headers=headers,
            params=request.query_params,
            content=request.stream(),
        )
        upstream = await client.send(upstream_request, stream=True)
    except httpx.RequestError as e:
        await client.aclose()
        logger.warning(f"Upstream unreachable at {upstream_url}: {type(e).__name__}")
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Upstream service unreachable: {type(e).__name__}",
        )
    except Exception:
        await client.aclose()
        raise

    async def release():
        await upstream.aclose()
        await client.aclose()

    return StreamingResponse(
        upstream.aiter_raw(),
        status_code=upstream.status_code,
        headers=end_to_end_headers(upstream.headers.items()),
        media_type=upstream.headers.get("content-type"),
        background=BackgroundTask(release),
    )
