"""OAuth bearer gate for the MCP endpoint.

A bearer token is optional on /mcp. When one is presented it must be a live
access token from the token store, otherwise the call is rejected with 401
and a WWW-Authenticate challenge pointing at the protected-resource metadata.
"""

import logging

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from admission import client_ip
from errors import Unauthorized
from logging_config import log_security_event

logger = logging.getLogger(__name__)


def www_authenticate(server_url: str) -> str:
    return (
        f'Bearer error="invalid_token", '
        f'resource_metadata="{server_url}/.well-known/oauth-protected-resource"'
    )


class MCPOAuthMiddleware(BaseHTTPMiddleware):
    """Validate an optional Bearer token in front of the Streamable HTTP endpoint."""

    def __init__(self, app, auth_server, server_url: str):
        super().__init__(app)
        self.auth_server = auth_server
        self.server_url = server_url

    async def dispatch(self, request: Request, call_next):
        auth_header = request.headers.get("Authorization", "")
        scheme, _, token = auth_header.partition(" ")
        # Auth schemes are case-insensitive (RFC 7235).
        if scheme.lower() != "bearer":
            return await call_next(request)

        token = token.strip()
        token_data = self.auth_server.verify_access_token(token)

        if token_data is None:
            ip = client_ip(request)
            logger.info("[AUTH] Request rejected: invalid or expired token")
            log_security_event("mcp_invalid_token", ip, f"{request.method} {request.url.path}")
            error = Unauthorized("Invalid or expired token")
            return JSONResponse(
                error.to_dict(),
                status_code=error.status_code,
                headers={"WWW-Authenticate": www_authenticate(self.server_url)},
            )

        request.state.client_id = token_data.client_id
        return await call_next(request)
