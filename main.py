"""VIN MCP Server.

It handles:
- MCP tools (decode_vin) via tools.py
- MCP protocol sessions via Streamable HTTP (/mcp), multiplexed by the
  session broker in sessions.py
- OAuth 2.1 authorization server for MCP clients (oauth/)
- Periodic cleanup of expired state (sweeper.py)

Every store is built once in ``create_app()`` and held on ``app.state``.
A restart discards all clients, codes, tokens, CSRF entries and sessions.
"""
import logging
import secrets
from contextlib import asynccontextmanager
from pathlib import Path

import anyio
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.routing import Route

from admission import RateLimiter, client_ip
from config import Config, load_config
from errors import Forbidden, ServiceError
from logging_config import log_security_event, setup_logging
from oauth.endpoints import router as oauth_router
from oauth.middleware import MCPOAuthMiddleware
from oauth.server import AuthorizationServer
from reports import NhtsaReportProducer, ReportCache, ReportService
from sessions import SESSION_HEADER, McpEndpoint, SessionBroker, mcp_context_factory
from sweeper import Sweeper
from tools import create_mcp_server

VERSION = "1.2.0"

# Load environment: .env (local override) if present
_env_file = Path(".env")
if _env_file.exists():
    load_dotenv(_env_file)

logger = logging.getLogger(__name__)

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
}


def _origin_regex(config: Config) -> str:
    pattern = r"https://([a-z0-9-]+\.)*claude\.ai"
    if not config.is_production:
        pattern += r"|http://localhost(:\d+)?"
    return pattern


def create_app(
    config: Config = None,
    *,
    context_factory=None,
    report_producer=None,
    rate_limiter=None,
    clock=None,
) -> FastAPI:
    """Build the application and every piece of process-wide state it owns."""
    config = config or load_config()
    clock_kwargs = {"clock": clock} if clock is not None else {}

    auth_server = AuthorizationServer.from_config(config, **clock_kwargs)
    report_cache = ReportCache(config.report_cache_size, config.report_cache_ttl, **clock_kwargs)
    report_service = ReportService(report_producer or NhtsaReportProducer(config.nhtsa_base_url), report_cache)
    mcp = create_mcp_server(report_service)
    broker = SessionBroker(
        context_factory or mcp_context_factory(mcp, json_response=config.json_response),
        max_sessions=config.max_sessions,
        idle_timeout=config.session_ttl,
        **clock_kwargs,
    )
    rate_limiter = rate_limiter if rate_limiter is not None else RateLimiter(**clock_kwargs)
    sweeper = Sweeper(
        auth_server,
        broker,
        report_cache=report_cache,
        rate_limiter=rate_limiter,
        oauth_interval=config.oauth_sweep_interval,
        session_interval=config.session_sweep_interval,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        async with broker.run():
            async with anyio.create_task_group() as tg:
                tg.start_soon(sweeper.run)
                logger.info(f"[STARTUP] Serving {config.base_url} (MCP endpoint {config.base_url}/mcp)")
                try:
                    yield
                finally:
                    tg.cancel_scope.cancel()

    app = FastAPI(
        title="VIN MCP Server",
        description="VIN report MCP server with an OAuth 2.1 authorization server",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.auth_server = auth_server
    app.state.report_cache = report_cache
    app.state.broker = broker
    app.state.rate_limiter = rate_limiter
    app.state.sweeper = sweeper
    app.state.mcp = mcp

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.allowed_origins,
        allow_origin_regex=_origin_regex(config),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=[SESSION_HEADER, "WWW-Authenticate"],
    )

    @app.middleware("http")
    async def security_headers(request: Request, call_next):
        response = await call_next(request)
        for name, value in SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)
        return response

    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError):
        logger.info(f"[HTTP] {request.method} {request.url.path} -> {exc.status_code} {exc.error}")
        return JSONResponse(exc.to_dict(), status_code=exc.status_code)

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception(f"[HTTP] Unhandled error on {request.method} {request.url.path}")
        return JSONResponse({"error": "server_error", "error_description": "Internal server error"}, status_code=500)

    # ============== OAuth ==============
    app.include_router(oauth_router)

    # ============== Streamable HTTP MCP ==============
    mcp_endpoint = MCPOAuthMiddleware(
        McpEndpoint(broker, rate_limiter=rate_limiter),
        auth_server=auth_server,
        server_url=config.base_url,
    )
    app.router.routes.append(Route("/mcp", endpoint=mcp_endpoint, methods=["GET", "POST", "DELETE"]))

    # ============== Server Info Endpoints ==============

    @app.get("/health")
    async def health_check():
        return {"status": "ok"}

    @app.get("/")
    async def root():
        """Root endpoint with server info."""
        return {
            "name": "vin-mcp",
            "version": VERSION,
            "endpoints": {"streamable_http": "/mcp"},
            "tools": ["decode_vin"],
            "oauth": {
                "protected_resource": f"{config.base_url}/.well-known/oauth-protected-resource",
                "authorization_server": f"{config.base_url}/.well-known/oauth-authorization-server",
            },
        }

    @app.get("/api/admin/status")
    async def admin_status(request: Request):
        """Live counters, guarded by the X-Admin-Key header."""
        key = request.headers.get("x-admin-key", "")
        if not config.admin_key or not secrets.compare_digest(key.encode(), config.admin_key.encode()):
            log_security_event("admin_auth_fail", client_ip(request), request.url.path, severity="high")
            raise Forbidden("Forbidden")

        return {
            "active_mcp_sessions": broker.active_count,
            "max_mcp_sessions": broker.max_sessions,
            "report_cache_entries": len(report_cache),
            **auth_server.stats(),
        }

    return app


def build_default_app() -> FastAPI:
    config = load_config()
    setup_logging(config.log_level, config.log_format)
    return create_app(config)


# ============== Main Entry Point ==============

if __name__ == "__main__":
    import uvicorn

    _config = load_config()
    setup_logging(_config.log_level, _config.log_format)
    uvicorn.run(create_app(_config), host=_config.host, port=_config.port)
