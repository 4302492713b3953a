"""
gateway_auth.py: decide whether a request to the MCP endpoint is authenticated.

A bearer value is either a raw long-lived platform token (recognized by its
prefix) or an access capability minted by /token. Either way the resolved
credential is checked against the platform's "who am I" endpoint on every
request; nothing is cached.

Tools signal "re-authenticate" by raising NeedsAuthError. Its message carries
a marker that GatewayAuthMiddleware looks for in the MCP response so it can
answer with a protocol-level 401 challenge instead of a tool error.
"""

import logging
from typing import Any

import httpx
from starlette.datastructures import Headers
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from capability_codec import CapabilityCodec, InvalidCapability
from capability_scope import AccessCapabilityPayload, parse_capability
from gateway_config import GatewayConfig
from gateway_logging import audit, fingerprint

logger = logging.getLogger("gateway-auth")

UNAUTHED_ERROR_PREFIX = "NETLIFY_MCP_NEEDS_AUTHENTICATION:"
WHOAMI_PATH = "/api/v1/user"


class NeedsAuthError(Exception):
    """The caller must (re-)authenticate before this operation can run."""

    def __init__(self, message: str = "You must authenticate to use this tool") -> None:
        super().__init__(f"{UNAUTHED_ERROR_PREFIX} {message}")


class UpstreamUnavailable(Exception):
    """The platform API could not be reached or answered with a server error."""


def bearer_token(headers: Headers) -> str | None:
    auth = headers.get("authorization", "")
    if auth[:7].lower() != "bearer ":
        return None
    token = auth[7:].strip()
    return token or None


def needs_auth_response(issuer_url: str) -> Response:
    resource_metadata = f"{issuer_url.rstrip('/')}/.well-known/oauth-protected-resource"
    return JSONResponse(
        {
            "error": "unauthenticated",
            "error_description": "You must authenticate to use this tool",
        },
        status_code=401,
        headers={"WWW-Authenticate": f'Bearer resource_metadata="{resource_metadata}"'},
    )


class AuthGate:
    """Resolve and verify the platform credential behind a bearer value."""

    def __init__(self, config: GatewayConfig, codec: CapabilityCodec,
                 http_client: httpx.AsyncClient) -> None:
        self.config = config
        self.codec = codec
        self.http_client = http_client

    def resolve_token(self, bearer: str | None) -> str:
        if not bearer:
            raise NeedsAuthError()
        if bearer.startswith(tuple(self.config.raw_token_prefixes)):
            return bearer
        try:
            payload = parse_capability(self.codec.decode(bearer))
        except InvalidCapability:
            audit("gate_rejected", reason="invalid_capability", token=fingerprint(bearer))
            raise NeedsAuthError() from None
        # Scoped and pinned capabilities are meant for the proxy only.
        if not isinstance(payload, AccessCapabilityPayload) or payload.is_scoped:
            audit("gate_rejected", reason="capability_not_for_gate", token=fingerprint(bearer))
            raise NeedsAuthError()
        return payload.access_token

    def resolve_credential(self, request: Request) -> str:
        return self.resolve_token(bearer_token(request.headers))

    async def verify_credential(self, credential: str) -> bool:
        try:
            resp = await self.http_client.get(
                f"{self.config.upstream_origin}{WHOAMI_PATH}",
                headers={"Authorization": f"Bearer {credential}"},
                timeout=self.config.upstream_timeout,
            )
        except httpx.HTTPError as e:
            raise UpstreamUnavailable(f"whoami request failed: {type(e).__name__}") from None
        if resp.is_success:
            return True
        if resp.status_code in (401, 403):
            return False
        raise UpstreamUnavailable(f"whoami returned {resp.status_code}")

    async def is_authenticated(self, request: Request) -> bool:
        try:
            credential = self.resolve_credential(request)
        except NeedsAuthError:
            return False
        authed = await self.verify_credential(credential)
        if not authed:
            audit("gate_rejected", reason="upstream_401", token=fingerprint(credential))
        return authed

    async def authenticated_fetch(
        self,
        credential: str,
        method: str,
        path: str,
        **kwargs: Any,
    ) -> httpx.Response:
        """Call the platform API as the user; 401 becomes NeedsAuthError."""
        headers = dict(kwargs.pop("headers", None) or {})
        headers["Authorization"] = f"Bearer {credential}"
        headers.setdefault("User-Agent", "netlify-mcp-gateway")
        try:
            resp = await self.http_client.request(
                method,
                f"{self.config.upstream_origin}{path}",
                headers=headers,
                timeout=self.config.upstream_timeout,
                **kwargs,
            )
        except httpx.TimeoutException:
            raise UpstreamUnavailable(f"{method} {path} timed out") from None
        except httpx.HTTPError as e:
            raise UpstreamUnavailable(f"{method} {path} failed: {type(e).__name__}") from None
        if resp.status_code == 401:
            raise NeedsAuthError()
        return resp


# ---------------------------------------------------------------------------
# GatewayAuthMiddleware
# ---------------------------------------------------------------------------

class GatewayAuthMiddleware:
    """ASGI middleware guarding the MCP endpoint with AuthGate.

    OAuth, metadata and proxy paths pass through untouched; they carry their
    own checks.
    """

    def __init__(self, app: ASGIApp, gate: AuthGate, protected_paths: tuple[str, ...] = ("/mcp",)):
        self.app = app
        self.gate = gate
        self.protected_paths = protected_paths

    def _is_protected(self, path: str) -> bool:
        return any(path == p or path.startswith(p + "/") for p in self.protected_paths)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        path = scope.get("path", "")
        method = scope.get("method", "GET")
        headers = Headers(scope=scope)
        bearer = bearer_token(headers)
        logger.info("recv: %s %s auth=%s", method, path,
                    fingerprint(bearer) if bearer else "none")

        if method == "OPTIONS" or not self._is_protected(path):
            await self.app(scope, receive, send)
            return

        issuer = self.gate.config.issuer_url
        try:
            authed = await self.gate.is_authenticated(Request(scope))
        except UpstreamUnavailable as e:
            logger.warning("gate: %s", e)
            await JSONResponse({
                "error": "upstream_unavailable",
                "error_description": "Could not verify credentials with the platform API.",
            }, status_code=502)(scope, receive, send)
            return

        if not authed:
            await needs_auth_response(issuer)(scope, receive, send)
            return

        await self._forward_with_auth_check(scope, receive, send)

    async def _forward_with_auth_check(self, scope: Scope, receive: Receive, send: Send) -> None:
        """Run the app, replacing tool-level auth failures with a 401 challenge."""
        start: Message | None = None
        chunks: list[bytes] = []
        streaming = False

        async def buffered_send(message: Message) -> None:
            nonlocal start, streaming
            if message["type"] == "http.response.start":
                content_type = Headers(raw=message.get("headers", [])).get("content-type", "")
                if content_type.startswith("text/event-stream"):
                    streaming = True
                    await send(message)
                    return
                start = message
                return
            if message["type"] != "http.response.body" or streaming or start is None:
                await send(message)
                return

            chunks.append(message.get("body", b""))
            if message.get("more_body", False):
                return

            body = b"".join(chunks)
            if UNAUTHED_ERROR_PREFIX.encode() in body:
                logger.info("gate: tool reported missing authentication")
                await needs_auth_response(self.gate.config.issuer_url)(scope, receive, send)
                return
            await send(start)
            await send({"type": "http.response.body", "body": body})

        await self.app(scope, receive, buffered_send)
