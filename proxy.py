from typing import Dict, Optional

import httpx
from fastapi import HTTPException, Request, status
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask


HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
    "host",  # Let httpx set the host header based on URL
}


def _filter_headers(headers: Dict[str, str]) -> Dict[str, str]:
    """
    Remove hop-by-hop headers as per RFC 7230.
    These must not be forwarded by proxies.
    """
    return {
        k: v
        for k, v in headers.items()
        if k.lower() not in HOP_BY_HOP_HEADERS
    }


def upstream_headers(request: Request, client_ip: Optional[str]) -> Dict[str, str]:
    """
    Request headers for the origin, carrying the resolved client IP.
    """
    headers = _filter_headers(dict(request.headers))
    peer = request.client.host if request.client else None
    if peer:
        prior = headers.get("x-forwarded-for")
        headers["x-forwarded-for"] = f"{prior}, {peer}" if prior else peer
    if client_ip:
        headers["x-real-ip"] = client_ip
    return headers


async def forward_request(
    *,
    client: httpx.AsyncClient,
    request: Request,
    upstream_url: str,
    client_ip: Optional[str] = None,
) -> StreamingResponse:
    """
    Forward an admitted request to the protected origin and stream
    the origin's response back unchanged.
    """
    req = client.build_request(
        method=request.method,
        url=upstream_url,
        headers=upstream_headers(request, client_ip),
        params=request.query_params,
        content=request.stream(),
    )

    try:
        r = await client.send(req, stream=True)
    except httpx.RequestError as e:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Origin unreachable: {type(e).__name__}",
        )

    return StreamingResponse(
        r.aiter_raw(),
        status_code=r.status_code,
        headers=_filter_headers(dict(r.headers)),
        media_type=r.headers.get("content-type"),
        background=BackgroundTask(r.aclose),
    )
