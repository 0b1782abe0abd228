"""OAuth 2.1 authorization broker in front of an MCP server.

This app handles:
- Security gate (rate limiting, bot and shield detection) on every endpoint
- OAuth discovery, authorization and token endpoints (oauth/endpoints.py)
- Upstream provider callbacks (oauth/callback.py)
- The protected MCP resource at /api/mcp, behind Bearer token checks
"""
import logging
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware import Middleware
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from config import Config, load_config
from logging_config import setup_logging
from oauth import callback, endpoints
from oauth.jwt_utils import configure_secret
from oauth.middleware import ProtectedResourceMiddleware
from oauth.provider import GoogleProvider
from oauth.stores import CodeStore
from oauth.verifier import BearerTokenVerifier, broker_token_primitive
from security.gate import build_gates

logger = logging.getLogger(__name__)

VERSION = "1.0.0"


def create_supabase_client(config: Config):
    """Supabase client for centralized logs, if configured."""
    if not (config.supabase_url and config.supabase_anon_key):
        return None
    from supabase import create_client
    return create_client(config.supabase_url, config.supabase_anon_key)


def create_app(
    config: Config,
    provider: Optional[GoogleProvider] = None,
    store: Optional[CodeStore] = None,
    gates: Optional[dict] = None,
    resource_app=None,
) -> FastAPI:
    """Assemble the broker.

    Args:
        config: Runtime configuration
        provider: Upstream identity provider (Google by default)
        store: Authorization code store (process-wide in-memory by default)
        gates: Security gates by profile name
        resource_app: ASGI app to protect; defaults to the FastMCP app
    """
    if config.jwt_secret:
        configure_secret(config.jwt_secret)

    gates = gates or build_gates(config.is_production, config.security_mode)
    provider = provider or GoogleProvider(
        config.google_client_id,
        config.google_client_secret,
        timeout=config.upstream_timeout,
    )
    verifier = BearerTokenVerifier(
        resource=config.resource_url,
        primitive=broker_token_primitive(issuer=config.base_url),
        timeout=config.token_verify_timeout,
    )
    protection = [Middleware(
        ProtectedResourceMiddleware,
        gate=gates["mcp"],
        verifier=verifier,
        resource_metadata_url=config.resource_metadata_url,
    )]

    lifespan = None
    if resource_app is None:
        from tools import mcp
        resource_app = mcp.http_app(path="/", transport="streamable-http", middleware=protection)
        lifespan = resource_app.lifespan  # FastMCP task group must start with the app
    else:
        for middleware in reversed(protection):
            resource_app = middleware.cls(resource_app, *middleware.args, **middleware.kwargs)

    app = FastAPI(
        title="MCP OAuth Broker",
        description="OAuth 2.1 authorization broker with security gating for MCP",
        version=VERSION,
        lifespan=lifespan,
    )

    # CORS for browser-based MCP clients
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["WWW-Authenticate", "Retry-After"],
    )

    # Client address from X-Forwarded-For, only when the peer is a trusted proxy
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts=config.forwarded_allow_ips)

    endpoints.init_oauth_routes(config, gates, provider, store)
    app.include_router(endpoints.router)
    app.include_router(callback.router)
    app.mount(config.resource_path, resource_app)

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "service": "mcp-oauth-broker"}

    @app.get("/")
    async def root():
        """Root endpoint with server info."""
        return {
            "name": "MCP OAuth Broker",
            "version": VERSION,
            "resource": config.resource_url,
            "security_mode": config.security_mode,
            "oauth": {
                "protected_resource": config.resource_metadata_url,
                "authorization_server": f"{config.base_url}/.well-known/oauth-authorization-server",
            },
        }

    logger.info(f"[STARTUP] Broker ready: base_url={config.base_url} resource={config.resource_url}")
    logger.info(f"[STARTUP] Security mode: {config.security_mode}, provider configured: {config.has_provider()}")
    return app


def build_app() -> FastAPI:
    config = load_config()
    setup_logging(
        level=config.log_level,
        environment=config.environment,
        supabase_client=create_supabase_client(config),
    )
    return create_app(config)


def run():
    """Console entry point."""
    import uvicorn

    settings = load_config()
    # the app applies proxy headers itself, from FORWARDED_ALLOW_IPS
    uvicorn.run(build_app(), host=settings.host, port=settings.port, proxy_headers=False)


if __name__ == "__main__":
    run()
