#!/usr/bin/env python3
"""
Netlify MCP gateway: lets an AI coding agent operate Netlify for a user.

Runs as an MCP server (stdio or streamable-http). Over HTTP it also serves
the OAuth authorization-code flow that mints encrypted access capabilities,
and the capability proxy that lets a delegate (a remote build runner) call a
narrow slice of the Netlify API without ever seeing the user's token.
"""

import argparse
import asyncio
import json
import logging
import re
from pathlib import Path
from typing import Any

import httpx
from mcp.server.fastmcp import Context, FastMCP
from mcp.server.transport_security import TransportSecuritySettings
from starlette.middleware.cors import CORSMiddleware
from starlette.types import ASGIApp

from capability_codec import CapabilityCodec
from capability_scope import ApiAllowance, issue_scoped_capability, proxy_url
from gateway_auth import AuthGate, GatewayAuthMiddleware, NeedsAuthError
from gateway_config import GatewayConfig, load_config
from gateway_logging import configure_logging
from gateway_oauth import ClientStore, GatewayOAuthServer
from gateway_proxy import CapabilityProxy

logger = logging.getLogger("gateway")

MCP_PATH = "/mcp"
SITE_ID_RE = re.compile(r"^[\w-]+$")
USER_FIELDS = ("id", "uid", "full_name", "email", "site_count", "last_login")
SITE_FIELDS = ("id", "site_id", "name", "url", "admin_url", "state", "account_slug",
               "published_deploy", "build_settings")


# ---------------------------------------------------------------------------
# Tool helpers
# ---------------------------------------------------------------------------

def _tool_credential(ctx: Context, gate: AuthGate, config: GatewayConfig) -> str:
    """Credential for the current tool call.

    Over HTTP it comes from the caller's bearer value; over stdio from the
    configured personal access token.
    """
    request = ctx.request_context.request
    if request is None:
        if not config.personal_access_token:
            raise NeedsAuthError(
                "Set NETLIFY_PERSONAL_ACCESS_TOKEN to use the Netlify tools over stdio"
            )
        return config.personal_access_token
    return gate.resolve_credential(request)


def _pick(data: Any, keys: tuple[str, ...]) -> dict[str, Any]:
    if not isinstance(data, dict):
        return {}
    return {k: data[k] for k in keys if k in data}


def _check_response(resp: httpx.Response, action: str) -> Any:
    if not resp.is_success:
        request_id = resp.headers.get("x-request-id", "unknown")
        raise RuntimeError(
            f"Failed to {action}: {resp.status_code} (Request ID: {request_id}) {resp.text[:200]}"
        )
    try:
        return resp.json()
    except ValueError:
        raise RuntimeError(f"Failed to {action}: response was not JSON")


def _build_instructions() -> str:
    return (
        "Netlify MCP gateway: manage Netlify projects on the user's behalf.\n"
        "\n"
        "Tools:\n"
        "  get-user                  Who the authenticated Netlify user is.\n"
        "  get-project               Details of one project (site) by siteId.\n"
        "  create-deploy-upload-url  Short-lived URL that accepts one build upload\n"
        "                            (POST a zip as multipart field 'zip') for a site.\n"
        "\n"
        "Upload URLs carry a scoped capability; they can be handed to a build runner\n"
        "without exposing the user's Netlify token.\n"
    )


# ---------------------------------------------------------------------------
# MCP Server
# ---------------------------------------------------------------------------

def create_server(
    config: GatewayConfig,
    codec: CapabilityCodec,
    gate: AuthGate,
    oauth: GatewayOAuthServer | None = None,
    proxy: CapabilityProxy | None = None,
) -> FastMCP:
    mcp = FastMCP(
        "netlify",
        instructions=_build_instructions(),
        stateless_http=True,
        # JSON (not SSE) responses let GatewayAuthMiddleware inspect tool results.
        json_response=True,
        streamable_http_path=MCP_PATH,
        # Served behind the public issuer host, not localhost.
        transport_security=TransportSecuritySettings(
            enable_dns_rebinding_protection=False,
        ),
    )

    routes = []
    if oauth is not None:
        routes.extend(oauth.route_table())
    if proxy is not None:
        routes.extend(proxy.route_table())
    for path, methods, endpoint in routes:
        mcp.custom_route(path, methods=methods)(endpoint)

    @mcp.tool(name="get-user")
    async def get_user(ctx: Context) -> str:
        """Get the authenticated Netlify user's profile."""
        credential = _tool_credential(ctx, gate, config)
        resp = await gate.authenticated_fetch(credential, "GET", "/api/v1/user")
        return json.dumps(_pick(_check_response(resp, "fetch user"), USER_FIELDS))

    @mcp.tool(name="get-project")
    async def get_project(siteId: str, ctx: Context) -> str:
        """Get a Netlify project (site) by its site id.

        Args:
            siteId: The site id, from .netlify/state.json or `netlify link`.
        """
        if not SITE_ID_RE.match(siteId):
            raise ValueError(f"Invalid siteId: {siteId!r}")
        credential = _tool_credential(ctx, gate, config)
        resp = await gate.authenticated_fetch(credential, "GET", f"/api/v1/sites/{siteId}")
        return json.dumps(_pick(_check_response(resp, "fetch project"), SITE_FIELDS))

    @mcp.tool(name="create-deploy-upload-url")
    async def create_deploy_upload_url(siteId: str, ctx: Context) -> str:
        """Create a short-lived URL that accepts one build upload for a site.

        The URL only permits POST /api/v1/sites/<siteId>/builds, so it is safe
        to hand to an external build runner.

        Args:
            siteId: The site id to deploy to. Never assume a new site.
        """
        if not SITE_ID_RE.match(siteId):
            raise ValueError(f"Invalid siteId: {siteId!r}")
        credential = _tool_credential(ctx, gate, config)
        builds_path = f"/api/v1/sites/{siteId}/builds"
        capability = issue_scoped_capability(
            codec,
            credential,
            [ApiAllowance(path=builds_path, method="POST")],
            config.proxy_capability_ttl,
        )
        logger.info("create-deploy-upload-url: site=%s ttl=%ds", siteId,
                    config.proxy_capability_ttl)
        return json.dumps({
            "uploadPath": proxy_url(config.issuer_url, capability, builds_path),
            "method": "POST",
            "multipartField": "zip",
            "expiresIn": config.proxy_capability_ttl,
            "monitorDeploysUrl": f"https://app.netlify.com/sites/{siteId}/deploys",
        })

    return mcp


def create_app(
    config: GatewayConfig,
    http_client: httpx.AsyncClient,
    clients: ClientStore | None = None,
) -> ASGIApp:
    """Full HTTP application: OAuth flow, proxy, and the guarded MCP endpoint."""
    codec = CapabilityCodec(config.effective_secret())
    gate = AuthGate(config, codec, http_client)
    oauth = GatewayOAuthServer(config, codec, clients)
    proxy = CapabilityProxy(config, codec, http_client)
    mcp = create_server(config, codec, gate, oauth, proxy)

    app: ASGIApp = mcp.streamable_http_app()
    app = GatewayAuthMiddleware(app, gate, protected_paths=(MCP_PATH,))
    return CORSMiddleware(
        app,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["WWW-Authenticate", "Mcp-Session-Id"],
    )


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

async def serve_stdio(config: GatewayConfig) -> None:
    """Serve the tools over stdio, closing the upstream client on exit."""
    codec = CapabilityCodec(config.effective_secret())
    async with httpx.AsyncClient(timeout=config.upstream_timeout) as http_client:
        gate = AuthGate(config, codec, http_client)
        await create_server(config, codec, gate).run_stdio_async()


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Netlify MCP gateway")
    parser.add_argument("--transport", choices=["stdio", "streamable-http"], default="streamable-http")
    parser.add_argument("--port", type=int, default=8888)
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--config", type=Path, default=None, help="path to gateway.yaml")
    args = parser.parse_args(argv)

    configure_logging(audit_log_path=Path.home() / ".netlify-mcp-gateway" / "audit.log")
    config = load_config(args.config)

    if args.transport == "stdio":
        asyncio.run(serve_stdio(config))
        return

    import uvicorn

    async def _serve() -> None:
        async with httpx.AsyncClient(timeout=config.upstream_timeout) as http_client:
            app = create_app(config, http_client)
            logger.info("gateway: starting HTTP server on %s:%d (issuer %s)",
                        args.host, args.port, config.issuer_url)
            server = uvicorn.Server(uvicorn.Config(
                app, host=args.host, port=args.port, log_level="info",
                proxy_headers=True, forwarded_allow_ips="*",
            ))
            await server.serve()

    asyncio.run(_serve())


if __name__ == "__main__":
    main()
