"""
gateway_oauth.py: OAuth 2.0 authorization-code flow that mints capabilities.

The gateway keeps no session for an in-flight authorization. The client's
request parameters are serialized into the ``state`` sent to the identity
provider and come back through the browser:

  /authorize        validate client params, bounce to the identity provider
  /client-redirect  static page: read the token from the URL fragment
  /server-redirect  mint an authorization code, redirect to the client (RFC 9207 iss)
  /token            exchange the code (+ PKCE verifier) for an access capability
  /register         RFC 7591 dynamic client registration
  /.well-known/oauth-authorization-server   RFC 8414 metadata
  /.well-known/oauth-protected-resource     RFC 9728 metadata

Authorization codes and access tokens are both encrypted capabilities (see
capability_codec.py); nothing about them is stored server-side.
"""

import base64
import binascii
import hashlib
import hmac
import json
import logging
import secrets
import time
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass
from typing import Any, Protocol
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from mcp.server.auth.provider import construct_redirect_uri
from mcp.shared.auth import OAuthClientInformationFull, OAuthClientMetadata, OAuthToken
from pydantic import ValidationError
from starlette.requests import Request
from starlette.responses import HTMLResponse, JSONResponse, RedirectResponse, Response

from capability_codec import CapabilityCodec, InvalidCapability
from capability_scope import AccessCapabilityPayload, AuthorizationCodePayload, parse_capability
from gateway_config import GatewayConfig
from gateway_logging import audit, fingerprint

logger = logging.getLogger("gateway-oauth")

REQUIRED_PARAMS = ("response_type", "client_id", "redirect_uri")
OPTIONAL_PARAMS = ("state", "scope", "nonce", "code_challenge", "code_challenge_method")
NO_STORE_HEADERS = {"Cache-Control": "no-cache, no-store, must-revalidate"}

Endpoint = Callable[[Request], Awaitable[Response]]


# ---------------------------------------------------------------------------
# Authorization request state (round-tripped through the identity provider)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AuthorizationRequestState:
    """Parameters of one in-flight /authorize request.

    Serialized as base64(JSON) with only the parameters the client sent.
    """

    response_type: str
    client_id: str
    redirect_uri: str
    state: str | None = None
    scope: str | None = None
    nonce: str | None = None
    code_challenge: str | None = None
    code_challenge_method: str | None = None

    @classmethod
    def from_params(cls, params: dict[str, Any]) -> "AuthorizationRequestState":
        missing = [p for p in REQUIRED_PARAMS if not isinstance(params.get(p), str) or not params.get(p)]
        if missing:
            raise ValueError(f"Missing required parameters: {', '.join(missing)}")
        values = {}
        for name in REQUIRED_PARAMS + OPTIONAL_PARAMS:
            value = params.get(name)
            if isinstance(value, str) and value:
                values[name] = value
        return cls(**values)

    def to_dict(self) -> dict[str, str]:
        return {k: v for k, v in asdict(self).items() if v}

    def to_blob(self) -> str:
        return base64.b64encode(json.dumps(self.to_dict()).encode("utf-8")).decode("ascii")

    @classmethod
    def from_blob(cls, blob: str) -> "AuthorizationRequestState":
        return cls.from_params(_load_blob(blob))


def _load_blob(blob: str) -> dict[str, Any]:
    # '+' may arrive as ' ' when the blob passed through a query string unencoded.
    normalized = blob.strip().replace(" ", "+").replace("-", "+").replace("_", "/")
    normalized += "=" * (-len(normalized) % 4)
    try:
        raw = base64.b64decode(normalized)
        data = json.loads(raw.decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValueError("init-state is not base64-encoded JSON") from e
    if not isinstance(data, dict):
        raise ValueError("init-state must encode a JSON object")
    return data


# ---------------------------------------------------------------------------
# Client registry
# ---------------------------------------------------------------------------

class ClientStore(Protocol):
    async def get(self, client_id: str) -> OAuthClientInformationFull | None: ...

    async def save(self, client: OAuthClientInformationFull) -> None: ...

    async def count(self) -> int: ...


class InMemoryClientStore:
    """Process-local client registry. Contents are lost on restart."""

    def __init__(self) -> None:
        self._clients: dict[str, OAuthClientInformationFull] = {}

    async def get(self, client_id: str) -> OAuthClientInformationFull | None:
        return self._clients.get(client_id)

    async def save(self, client: OAuthClientInformationFull) -> None:
        self._clients[str(client.client_id)] = client

    async def count(self) -> int:
        return len(self._clients)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def derive_code_challenge(code_verifier: str) -> str:
    """BASE64URL(SHA256(code_verifier)) without padding (RFC 7636)."""
    digest = hashlib.sha256(code_verifier.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def verify_pkce(code_verifier: str, code_challenge: str | None,
                code_challenge_method: str | None = "S256") -> bool:
    if not code_challenge:
        return False
    method = code_challenge_method or "S256"
    if method == "plain":
        expected = code_verifier
    elif method == "S256":
        expected = derive_code_challenge(code_verifier)
    else:
        return False  # unknown methods fail closed
    return hmac.compare_digest(expected.encode("utf-8"), code_challenge.encode("utf-8"))


def is_absolute_url(value: str | None) -> bool:
    if not value:
        return False
    parsed = urlparse(value)
    return bool(parsed.scheme and parsed.netloc)


def with_query_params(url: str, **params: str | None) -> str:
    """Set (replace) query parameters on ``url``; None values are skipped."""
    parsed = urlparse(url)
    replaced = {k for k, v in params.items() if v is not None}
    kept = [(k, v) for k, v in parse_qsl(parsed.query, keep_blank_values=True)
            if k not in replaced]
    base = urlunparse(parsed._replace(query=urlencode(kept)))
    return construct_redirect_uri(base, **params)


def _error_json(status: int, error: str, description: str) -> JSONResponse:
    return JSONResponse(
        {"error": error, "error_description": description},
        status_code=status,
        headers=NO_STORE_HEADERS,
    )


def _form_str(form: Any, name: str) -> str:
    value = form.get(name)
    return value if isinstance(value, str) else ""


def _redirect_uri_allowed(client: OAuthClientInformationFull, redirect_uri: str) -> bool:
    registered = {str(u).rstrip("/") for u in client.redirect_uris or []}
    return redirect_uri.rstrip("/") in registered


def _acceptable_redirect_scheme(uri: str) -> bool:
    parsed = urlparse(uri)
    if parsed.scheme == "https":
        return True
    if parsed.scheme == "http":
        return parsed.hostname in ("localhost", "127.0.0.1", "::1")
    # Native apps register private-use schemes (RFC 8252).
    return bool(parsed.scheme)


# ---------------------------------------------------------------------------
# Authorization server
# ---------------------------------------------------------------------------

class GatewayOAuthServer:
    """Authorization-code flow front-ending the platform's identity provider."""

    def __init__(
        self,
        config: GatewayConfig,
        codec: CapabilityCodec,
        clients: ClientStore | None = None,
    ) -> None:
        self.config = config
        self.codec = codec
        self.clients = clients if clients is not None else InMemoryClientStore()
        self.issuer_url = config.issuer_url.rstrip("/")

    def route_table(self) -> list[tuple[str, list[str], Endpoint]]:
        return [
            ("/.well-known/oauth-authorization-server", ["GET"], self.handle_metadata),
            ("/.well-known/oauth-protected-resource", ["GET"], self.handle_protected_resource_metadata),
            ("/register", ["POST"], self.handle_register),
            ("/authorize", ["GET"], self.handle_auth_start),
            ("/client-redirect", ["GET"], self.handle_client_side_auth_exchange),
            ("/server-redirect", ["GET"], self.handle_server_side_auth_redirect),
            ("/token", ["POST"], self.handle_code_exchange),
        ]

    @property
    def client_redirect_uri(self) -> str:
        return f"{self.issuer_url}/client-redirect"

    async def _check_registered_redirect(self, client_id: str, redirect_uri: str) -> bool:
        client = await self.clients.get(client_id)
        if client is None:
            return True
        return _redirect_uri_allowed(client, redirect_uri)

    # --- /authorize ---

    async def handle_auth_start(self, request: Request) -> Response:
        params = dict(request.query_params)
        try:
            request_state = AuthorizationRequestState.from_params(params)
        except ValueError as e:
            redirect_uri = params.get("redirect_uri")
            client_id = params.get("client_id")
            if client_id and is_absolute_url(redirect_uri) and \
                    not await self._check_registered_redirect(client_id, redirect_uri):
                audit("authorize_rejected", reason="redirect_uri_mismatch", client_id=client_id)
                return _error_json(400, "invalid_request", "redirect_uri does not match registration")
            if is_absolute_url(redirect_uri):
                audit("authorize_rejected", reason="missing_params")
                location = with_query_params(
                    redirect_uri,
                    error="invalid_request",
                    error_description=str(e),
                    iss=self.issuer_url,
                    state=params.get("state") or None,
                )
                return RedirectResponse(location, status_code=302)
            return _error_json(400, "invalid_request", str(e))

        if not is_absolute_url(request_state.redirect_uri):
            return _error_json(400, "invalid_request", "redirect_uri must be an absolute URL")

        if not await self._check_registered_redirect(request_state.client_id, request_state.redirect_uri):
            audit("authorize_rejected", reason="redirect_uri_mismatch",
                  client_id=request_state.client_id)
            return _error_json(400, "invalid_request", "redirect_uri does not match registration")

        location = with_query_params(
            self.config.idp_authorize_url,
            client_id=self.config.idp_client_id,
            response_type="token",
            state=request_state.to_blob(),
            redirect_uri=self.client_redirect_uri,
        )
        audit("authorize_started", client_id=request_state.client_id,
              pkce=bool(request_state.code_challenge))
        return RedirectResponse(location, status_code=302)

    # --- /client-redirect ---

    async def handle_client_side_auth_exchange(self, request: Request) -> Response:
        return HTMLResponse(
            _client_redirect_page(f"{self.issuer_url}/server-redirect"),
            headers=NO_STORE_HEADERS,
        )

    # --- /server-redirect ---

    async def handle_server_side_auth_redirect(self, request: Request) -> Response:
        init_state = request.query_params.get("init-state", "")
        token = request.query_params.get("token", "")

        if not init_state or not token:
            missing = [name for name, value in (("init-state", init_state), ("token", token))
                       if not value]
            return _error_json(400, "invalid_request",
                               f"Missing required parameters: {', '.join(missing)}")

        try:
            request_state = AuthorizationRequestState.from_blob(init_state)
            if not is_absolute_url(request_state.redirect_uri):
                raise ValueError("redirect_uri must be an absolute URL")
        except ValueError as e:
            logger.warning("server_redirect: invalid init-state: %s", e)
            return self._init_state_error(init_state)

        if not await self._check_registered_redirect(request_state.client_id, request_state.redirect_uri):
            return _error_json(400, "invalid_request", "redirect_uri does not match registration")

        payload = AuthorizationCodePayload(access_token=token, state=request_state.to_dict())
        code = self.codec.encode(payload.to_claims(), self.config.code_ttl)
        audit("code_issued", client_id=request_state.client_id, code=fingerprint(code))

        location = with_query_params(
            request_state.redirect_uri,
            state=request_state.state,
            iss=self.issuer_url,
            code=code,
        )
        return RedirectResponse(location, status_code=302)

    def _init_state_error(self, init_state: str) -> Response:
        """Best-effort error redirect when init-state cannot be used."""
        try:
            loose = _load_blob(init_state)
        except ValueError:
            loose = {}
        redirect_uri = loose.get("redirect_uri")
        if isinstance(redirect_uri, str) and is_absolute_url(redirect_uri):
            state = loose.get("state")
            location = with_query_params(
                redirect_uri,
                error="invalid_request",
                error_description="Invalid init-state parameter",
                iss=self.issuer_url,
                state=state if isinstance(state, str) and state else None,
            )
            return RedirectResponse(location, status_code=302)
        return _error_json(400, "invalid_request", "Invalid init-state parameter")

    # --- /token ---

    async def handle_code_exchange(self, request: Request) -> Response:
        form = await request.form()
        grant_type = _form_str(form, "grant_type")
        code = _form_str(form, "code")
        code_verifier = _form_str(form, "code_verifier")

        if not code:
            return _error_json(400, "invalid_request", "Missing required parameter: code")

        if grant_type and grant_type != "authorization_code":
            return _error_json(400, "unsupported_grant_type",
                               f"Unsupported grant_type: {grant_type}")

        try:
            payload = parse_capability(self.codec.decode(code))
        except InvalidCapability:
            audit("token_rejected", reason="invalid_code")
            return _error_json(400, "invalid_grant", "Invalid or expired authorization code")

        if not isinstance(payload, AuthorizationCodePayload):
            audit("token_rejected", reason="not_an_authorization_code")
            return _error_json(400, "invalid_grant", "Invalid or expired authorization code")

        state = payload.state
        if code_verifier and not verify_pkce(code_verifier, state.get("code_challenge"),
                                             state.get("code_challenge_method")):
            audit("token_rejected", reason="pkce_failed", client_id=state.get("client_id"))
            return _error_json(400, "invalid_grant", "PKCE verification failed")

        capability = AccessCapabilityPayload(access_token=payload.access_token)
        access_token = self.codec.encode(capability.to_claims(), self.config.access_ttl)
        audit("token_issued", client_id=state.get("client_id"),
              token=fingerprint(access_token), expires_in=self.config.access_ttl)

        token = OAuthToken(
            access_token=access_token,
            token_type="Bearer",
            expires_in=self.config.access_ttl,
            scope=state.get("scope"),
        )
        return JSONResponse(token.model_dump(exclude_none=True), headers=NO_STORE_HEADERS)

    # --- /register ---

    async def handle_register(self, request: Request) -> Response:
        """RFC 7591 Dynamic Client Registration (public clients only)."""
        try:
            data = json.loads(await request.body())
        except (json.JSONDecodeError, UnicodeDecodeError):
            return _error_json(400, "invalid_request", "Body must be JSON")
        if not isinstance(data, dict):
            return _error_json(400, "invalid_request", "Body must be a JSON object")

        try:
            metadata = OAuthClientMetadata.model_validate(data)
        except ValidationError as e:
            first = e.errors()[0] if e.errors() else {}
            where = ".".join(str(p) for p in first.get("loc", ()))
            return _error_json(400, "invalid_client_metadata",
                               f"{where}: {first.get('msg', 'invalid value')}".strip(": "))

        for uri in metadata.redirect_uris or []:
            if not _acceptable_redirect_scheme(str(uri)):
                return _error_json(400, "invalid_redirect_uri",
                                   f"Invalid redirect_uri scheme: {uri}")

        if await self.clients.count() >= self.config.max_registered_clients:
            audit("register_rejected", reason="max_clients")
            return _error_json(403, "client_limit_reached",
                               f"Maximum {self.config.max_registered_clients} clients.")

        client = OAuthClientInformationFull.model_validate({
            **metadata.model_dump(),
            "token_endpoint_auth_method": "none",
            "client_id": f"gw-{secrets.token_hex(8)}",
            "client_secret": None,
            "client_id_issued_at": int(time.time()),
        })
        await self.clients.save(client)
        audit("client_registered", client_id=client.client_id, client_name=client.client_name)
        logger.info("client_registered: %s", client.client_id)

        return JSONResponse(client.model_dump(mode="json", exclude_none=True), status_code=201)

    # --- metadata ---

    async def handle_metadata(self, request: Request) -> Response:
        """RFC 8414 Authorization Server Metadata."""
        return JSONResponse({
            "issuer": self.issuer_url,
            "authorization_endpoint": f"{self.issuer_url}/authorize",
            "token_endpoint": f"{self.issuer_url}/token",
            "registration_endpoint": f"{self.issuer_url}/register",
            "response_types_supported": ["code"],
            "grant_types_supported": ["authorization_code"],
            "token_endpoint_auth_methods_supported": ["none"],
            "code_challenge_methods_supported": ["S256", "plain"],
            "authorization_response_iss_parameter_supported": True,
        })

    async def handle_protected_resource_metadata(self, request: Request) -> Response:
        """RFC 9728 Protected Resource Metadata."""
        return JSONResponse({
            "resource": self.issuer_url,
            "authorization_servers": [self.issuer_url],
            "bearer_methods_supported": ["header"],
        })


# ---------------------------------------------------------------------------
# HTML
# ---------------------------------------------------------------------------

def _client_redirect_page(server_redirect_url: str) -> str:
    # JSON-encoded for the <script> context, where HTML entities are not decoded.
    js_url = json.dumps(server_redirect_url)
    return f"""<!DOCTYPE html>
<html>
<head>
    <title>Netlify MCP: Redirecting</title>
    <meta name="viewport" content="width=device-width, initial-scale=1">
    <meta name="referrer" content="no-referrer">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', sans-serif;
            background: #0a0a1a; color: #e0e0e0;
            display: flex; justify-content: center; align-items: center;
            min-height: 100vh; margin: 0; }}
        .card {{ background: #1a1a2e; border: 1px solid #2a2a4a; border-radius: 12px;
            padding: 2rem; max-width: 400px; width: 90%;
            box-shadow: 0 4px 24px rgba(0, 0, 0, 0.5); text-align: center; }}
    </style>
</head>
<body>
    <div class="card">
        <p>Redirecting to the client application...</p>
    </div>
    <script>
        (function () {{
            var hash = window.location.hash || '';
            var token = '';
            var state = '';
            if (hash.charAt(0) === '#') {{ hash = hash.slice(1); }}
            if (hash.charAt(0) === '?') {{ hash = hash.slice(1); }}
            if (hash.indexOf('=') !== -1) {{
                var params = new URLSearchParams(hash);
                token = params.get('access_token') || params.get('token') || '';
                state = params.get('state') || '';
            }} else {{
                token = hash;
            }}
            window.location.replace({js_url} +
                '?token=' + encodeURIComponent(token) +
                '&init-state=' + encodeURIComponent(state));
        }})();
    </script>
</body>
</html>"""
