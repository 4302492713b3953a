"""
gateway_proxy.py: forward capability-bearing requests to the platform API.

A delegate (for example a remote build runner) holds a capability instead of
the user's credential and calls

    /proxy/<capability>/api/v1/sites/<id>/builds

or, in the legacy form, ``/proxy/api/v1/...`` with ``Authorization: Bearer
<capability>``. The capability is decrypted, checked against its allow-list
and, only if it passes, the request is replayed against the upstream origin
with the real credential. Upstream redirects are relayed, never followed.
"""

import logging

import httpx
from starlette.background import BackgroundTask
from starlette.requests import Request
from starlette.responses import JSONResponse, Response, StreamingResponse

from capability_codec import CapabilityCodec, InvalidCapability
from capability_scope import (
    AccessCapabilityPayload,
    LegacyPinnedPayload,
    is_canonical_path,
    matches,
    parse_capability,
)
from gateway_auth import bearer_token
from gateway_config import GatewayConfig
from gateway_logging import audit, fingerprint

logger = logging.getLogger("gateway-proxy")

PROXY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]

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
_DROPPED_REQUEST_HEADERS = HOP_BY_HOP_HEADERS | {"host", "authorization", "content-length"}
_BUFFERED_DROPPED_HEADERS = HOP_BY_HOP_HEADERS | {"content-length", "content-encoding"}


def split_proxy_path(rest: str) -> tuple[str | None, str]:
    """Split ``<capability>/<upstream path>`` when the first segment is a JWE.

    Returns ``(None, "/" + rest)`` for the legacy header-carried form.
    """
    rest = rest.lstrip("/")
    first, _, remainder = rest.partition("/")
    if first.count(".") == 4:
        return first, "/" + remainder
    return None, "/" + rest


class CapabilityProxy:
    def __init__(self, config: GatewayConfig, codec: CapabilityCodec,
                 http_client: httpx.AsyncClient) -> None:
        self.config = config
        self.codec = codec
        self.http_client = http_client

    def route_table(self):
        return [("/proxy/{rest:path}", PROXY_METHODS, self.handle)]

    async def handle(self, request: Request) -> Response:
        token, upstream_path = split_proxy_path(request.path_params.get("rest", ""))
        if token is None:
            token = bearer_token(request.headers)
        if not token:
            return Response(status_code=401)

        try:
            payload = parse_capability(self.codec.decode(token))
        except InvalidCapability:
            audit("proxy_rejected", reason="invalid_capability", token=fingerprint(token))
            return Response(status_code=401)

        method = request.method
        if isinstance(payload, LegacyPinnedPayload):
            upstream_path, method = payload.api_path, payload.api_method
            query = ""
        elif isinstance(payload, AccessCapabilityPayload):
            # The upstream client drops dot segments, so the checked path
            # must already be the one that is sent.
            if not is_canonical_path(upstream_path):
                audit("proxy_forbidden", method=method, reason="non_canonical_path",
                      token=fingerprint(token))
                return Response(status_code=403)
            if not matches(payload.apis_allowed, upstream_path, method,
                           unrestricted_when_empty=self.config.allow_unscoped_capabilities):
                audit("proxy_forbidden", method=method, path=upstream_path,
                      token=fingerprint(token))
                return Response(status_code=403)
            query = request.url.query
        else:
            # Authorization codes are only redeemable at /token.
            audit("proxy_rejected", reason="authorization_code", token=fingerprint(token))
            return Response(status_code=401)

        url = f"{self.config.upstream_origin}{upstream_path}"
        if query:
            url = f"{url}?{query}"

        headers = [(k, v) for k, v in request.headers.items()
                   if k.lower() not in _DROPPED_REQUEST_HEADERS]
        headers.append(("authorization", f"Bearer {payload.access_token}"))
        body = await request.body()

        outbound = self.http_client.build_request(
            method, url, headers=headers, content=body or None,
            timeout=self.config.upstream_timeout,
        )
        try:
            upstream = await self.http_client.send(outbound, stream=True, follow_redirects=False)
        except httpx.TimeoutException:
            logger.warning("proxy: upstream timeout for %s %s", method, upstream_path)
            return JSONResponse({
                "error": "upstream_timeout",
                "error_description": f"{method} {upstream_path} timed out",
            }, status_code=504)
        except httpx.HTTPError as e:
            logger.warning("proxy: upstream error for %s %s: %s", method, upstream_path,
                           type(e).__name__)
            return JSONResponse({
                "error": "upstream_unavailable",
                "error_description": f"{method} {upstream_path} failed: {type(e).__name__}",
            }, status_code=502)

        audit("proxy_forwarded", method=method, path=upstream_path,
              status=upstream.status_code, token=fingerprint(token))

        if upstream.is_stream_consumed:
            # Some transports hand back a response whose body is already read
            # (and decoded), so it is relayed with a fresh length.
            body = upstream.content
            await upstream.aclose()
            response = Response(body, status_code=upstream.status_code)
            response.raw_headers = _relayed_headers(upstream, _BUFFERED_DROPPED_HEADERS)
            response.raw_headers.append((b"content-length", str(len(body)).encode("latin-1")))
            return response

        response = StreamingResponse(
            upstream.aiter_raw(),
            status_code=upstream.status_code,
            background=BackgroundTask(upstream.aclose),
        )
        response.raw_headers = _relayed_headers(upstream, HOP_BY_HOP_HEADERS)
        return response


def _relayed_headers(upstream: httpx.Response, dropped: frozenset[str]) -> list[tuple[bytes, bytes]]:
    return [
        (k.lower(), v) for k, v in upstream.headers.raw
        if k.decode("latin-1").lower() not in dropped
    ]
