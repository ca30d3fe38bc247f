"""OAuth 2.1 endpoints for the VIN MCP server.

This module contains all OAuth-related endpoints:
- Discovery metadata (/.well-known/* and the unprefixed /well-known/* mirror)
- Dynamic client registration (/oauth/register)
- Consent (/oauth/authorize) and approval (/oauth/approve)
- Token endpoint (/oauth/token)

The stores live on ``app.state.auth_server``; nothing here is module-global.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Form, Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse

from admission import (
    APPROVE_LIMIT,
    AUTHORIZE_LIMIT,
    REGISTER_LIMIT,
    TOKEN_LIMIT,
    client_ip,
    rate_guard,
)
from errors import ServiceError
from oauth.models import DEFAULT_SCOPE, AuthorizationRequest
from oauth.server import AuthorizationServer
from oauth.templates import CONSENT_HEADERS, render_consent_page, render_error_page

logger = logging.getLogger(__name__)

router = APIRouter(tags=["oauth"])

SCOPES_SUPPORTED = [DEFAULT_SCOPE]
NO_STORE_HEADERS = {"Cache-Control": "no-store", "Pragma": "no-cache"}


def get_auth_server(request: Request) -> AuthorizationServer:
    return request.app.state.auth_server


def get_base_url(request: Request) -> str:
    return request.app.state.config.base_url


# ============== Discovery ==============

async def oauth_protected_resource(base_url: str = Depends(get_base_url)):
    """OAuth 2.0 Protected Resource Metadata (RFC 9728)."""
    return {
        "resource": f"{base_url}/mcp",
        "authorization_servers": [base_url],
        "scopes_supported": SCOPES_SUPPORTED,
        "bearer_methods_supported": ["header"],
    }


async def oauth_authorization_server(base_url: str = Depends(get_base_url)):
    """OAuth 2.0 Authorization Server Metadata (RFC 8414)."""
    return {
        "issuer": base_url,
        "authorization_endpoint": f"{base_url}/oauth/authorize",
        "token_endpoint": f"{base_url}/oauth/token",
        "registration_endpoint": f"{base_url}/oauth/register",
        "response_types_supported": ["code"],
        "grant_types_supported": ["authorization_code", "refresh_token"],
        "code_challenge_methods_supported": ["S256"],
        "token_endpoint_auth_methods_supported": ["none", "client_secret_post"],
        "scopes_supported": SCOPES_SUPPORTED,
    }


# Some clients drop the leading dot or append the resource path.
for _prefix in ("/.well-known", "/well-known"):
    for _suffix in ("", "/mcp"):
        router.add_api_route(
            f"{_prefix}/oauth-protected-resource{_suffix}", oauth_protected_resource, methods=["GET"]
        )
        router.add_api_route(
            f"{_prefix}/oauth-authorization-server{_suffix}", oauth_authorization_server, methods=["GET"]
        )


# ============== Client Registration ==============

@router.post("/oauth/register", dependencies=[Depends(rate_guard("register", REGISTER_LIMIT))])
async def register_client(request: Request, server: AuthorizationServer = Depends(get_auth_server)):
    """OAuth 2.0 Dynamic Client Registration (RFC 7591)."""
    try:
        data = await request.json()
    except ValueError:
        data = {}
    if not isinstance(data, dict):
        data = {}

    client = server.register_client(data)
    return JSONResponse(client.to_dict(), status_code=201, headers=NO_STORE_HEADERS)


# ============== Consent ==============

@router.get("/oauth/authorize", dependencies=[Depends(rate_guard("authorize", AUTHORIZE_LIMIT))])
async def authorize(
    request: Request,
    response_type: Optional[str] = None,
    server: AuthorizationServer = Depends(get_auth_server),
):
    """Render the consent page for a validated authorization request."""
    auth_request = AuthorizationRequest.from_params(request.query_params)

    try:
        client, csrf = server.begin_authorization(auth_request, response_type)
    except ServiceError as e:
        logger.info(f"[OAUTH] Authorization request rejected: {e.error}")
        return HTMLResponse(
            render_error_page(e.description or e.error), status_code=e.status_code, headers=CONSENT_HEADERS
        )

    return HTMLResponse(render_consent_page(auth_request, csrf.token, client.client_name), headers=CONSENT_HEADERS)


@router.post("/oauth/approve", dependencies=[Depends(rate_guard("approve", APPROVE_LIMIT))])
async def approve(
    request: Request,
    csrf: str = Form(""),
    client_id: str = Form(""),
    redirect_uri: str = Form(""),
    state: str = Form(""),
    code_challenge: str = Form(""),
    code_challenge_method: str = Form(""),
    scope: str = Form(""),
    action: str = Form("allow"),
    server: AuthorizationServer = Depends(get_auth_server),
):
    """Handle consent form submission. Only ever redirects to a validated URI."""
    auth_request = AuthorizationRequest.from_params({
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "state": state,
        "code_challenge": code_challenge,
        "code_challenge_method": code_challenge_method,
        "scope": scope,
    })

    try:
        if action == "deny":
            location = server.deny(csrf, auth_request, ip=client_ip(request))
        else:
            location = server.approve(csrf, auth_request, ip=client_ip(request))
    except ServiceError as e:
        return HTMLResponse(
            render_error_page(e.description or e.error), status_code=e.status_code, headers=CONSENT_HEADERS
        )

    return RedirectResponse(url=location, status_code=302)


# ============== Token Endpoint ==============

@router.post("/oauth/token", dependencies=[Depends(rate_guard("token", TOKEN_LIMIT))])
async def token(
    request: Request,
    grant_type: str = Form(None),
    code: str = Form(None),
    redirect_uri: str = Form(None),
    client_id: str = Form(None),
    code_verifier: str = Form(None),
    refresh_token: str = Form(None),
    server: AuthorizationServer = Depends(get_auth_server),
):
    """OAuth 2.0 Token Endpoint."""
    # Handle form data or JSON
    if grant_type is None and "json" in request.headers.get("content-type", ""):
        try:
            data = await request.json()
        except ValueError:
            return JSONResponse({"error": "invalid_request"}, status_code=400, headers=NO_STORE_HEADERS)
        if not isinstance(data, dict):
            return JSONResponse({"error": "invalid_request"}, status_code=400, headers=NO_STORE_HEADERS)
        grant_type = data.get("grant_type")
        code = data.get("code")
        redirect_uri = data.get("redirect_uri")
        client_id = data.get("client_id")
        code_verifier = data.get("code_verifier")
        refresh_token = data.get("refresh_token")

    logger.debug(f"[TOKEN] grant_type: {grant_type}, client_id: {client_id}")

    try:
        pair = server.exchange_token(
            grant_type,
            code=code,
            redirect_uri=redirect_uri,
            client_id=client_id,
            code_verifier=code_verifier,
            refresh_token=refresh_token,
            ip=client_ip(request),
        )
    except ServiceError as e:
        return JSONResponse(e.to_dict(), status_code=e.status_code, headers=NO_STORE_HEADERS)

    return JSONResponse(pair.to_response(), headers=NO_STORE_HEADERS)
