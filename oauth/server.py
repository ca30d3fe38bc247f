"""Authorization server: client registration, consent, approval and token issuance.

Implements exactly the authorization-code grant with mandatory PKCE (S256)
plus refresh-token rotation for the single ``/mcp`` resource.

All store operations here are synchronous; no handler awaits in the middle of
a multi-step mutation, so the stores need no locking.
"""

import logging
import time
from typing import Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from errors import (
    CsrfMismatch,
    InvalidGrant,
    InvalidRedirectURI,
    MissingParameter,
    UnknownClient,
    UnsupportedGrantType,
    UnsupportedResponseType,
)
from logging_config import log_security_event, redact
from oauth.models import AuthorizationRequest, Client, CsrfToken, Token, TokenPair
from oauth.pkce import SUPPORTED_METHODS, verify_code_challenge
from oauth.stores import (
    AuthorizationCodeStore,
    ClientRegistry,
    CsrfTokenStore,
    TokenStore,
    is_acceptable_redirect_uri,
)

logger = logging.getLogger(__name__)

# Query parameters we own on the redirect back to the client.
REDIRECT_PARAMS = ("code", "state", "error", "error_description")


def build_redirect(redirect_uri: str, params: dict) -> str:
    """Append ``params`` to ``redirect_uri``, replacing any values we own."""
    parts = urlsplit(redirect_uri)
    query = [
        (key, value)
        for key, value in parse_qsl(parts.query, keep_blank_values=True)
        if key not in REDIRECT_PARAMS
    ]
    query.extend((key, value) for key, value in params.items() if value)
    return urlunsplit(parts._replace(query=urlencode(query)))


class AuthorizationServer:
    """Coordinates the four OAuth stores."""

    def __init__(
        self,
        clients: ClientRegistry,
        csrf_tokens: CsrfTokenStore,
        codes: AuthorizationCodeStore,
        tokens: TokenStore,
    ):
        self.clients = clients
        self.csrf_tokens = csrf_tokens
        self.codes = codes
        self.tokens = tokens

    @classmethod
    def from_config(cls, config, clock=time.time) -> "AuthorizationServer":
        return cls(
            clients=ClientRegistry(max_clients=config.max_clients, clock=clock),
            csrf_tokens=CsrfTokenStore(ttl=config.csrf_ttl, clock=clock),
            codes=AuthorizationCodeStore(ttl=config.code_ttl, clock=clock),
            tokens=TokenStore(
                access_ttl=config.access_token_ttl,
                refresh_ttl=config.refresh_token_ttl,
                clock=clock,
            ),
        )

    # ============== Registration ==============

    def register_client(self, payload: dict) -> Client:
        client = self.clients.register(
            name=payload.get("client_name"),
            redirect_uris=payload.get("redirect_uris"),
            grant_types=payload.get("grant_types"),
            response_types=payload.get("response_types"),
            auth_method=payload.get("token_endpoint_auth_method"),
        )
        logger.info(
            f"[OAUTH] Registered client {client.client_id} ({client.client_name!r}, "
            f"{len(client.redirect_uris)} redirect URIs, {len(self.clients)}/{self.clients.max_clients})"
        )
        return client

    # ============== Consent ==============

    def begin_authorization(
        self, request: AuthorizationRequest, response_type: Optional[str] = None
    ) -> tuple[Client, CsrfToken]:
        """Validate an authorization request and mint the CSRF token for its consent form."""
        if not request.client_id or not request.redirect_uri or not request.code_challenge:
            raise MissingParameter("Missing required OAuth parameters")
        if response_type and response_type != "code":
            raise UnsupportedResponseType("Only response_type=code is supported")

        client = self.clients.lookup(request.client_id)
        if client is None:
            raise UnknownClient("Unknown client")

        if request.code_challenge_method not in SUPPORTED_METHODS:
            raise MissingParameter("code_challenge_method must be S256")

        csrf = self.csrf_tokens.mint()
        return client, csrf

    # ============== Approval ==============

    def approve(self, csrf: str, request: AuthorizationRequest, ip: str = None, allow: bool = True) -> str:
        """Run the approval state machine and return the URL to redirect to.

        The CSRF token is deleted before any other check so it cannot be
        replayed, even when a later check rejects the approval.
        """
        csrf_valid = bool(csrf) and self.csrf_tokens.consume(csrf)
        if not csrf_valid:
            log_security_event("csrf_fail", ip, "OAuth approve CSRF mismatch")
            raise CsrfMismatch("Invalid or expired CSRF token")

        client = self.clients.lookup(request.client_id)
        if client is None:
            raise UnknownClient("Unknown client")

        if client.redirect_uris and request.redirect_uri not in client.redirect_uris:
            log_security_event(
                "oauth_redirect_mismatch", ip, f"client={client.client_id} uri={request.redirect_uri[:200]}"
            )
            raise InvalidRedirectURI("Invalid redirect URI for this client")
        if not is_acceptable_redirect_uri(request.redirect_uri):
            raise InvalidRedirectURI("Invalid redirect URI")

        if not allow:
            logger.info(f"[OAUTH] Consent denied for client {client.client_id}")
            return build_redirect(
                request.redirect_uri,
                {"error": "access_denied", "error_description": "User denied access", "state": request.state},
            )

        if not request.code_challenge:
            raise MissingParameter("code_challenge is required")
        if request.code_challenge_method not in SUPPORTED_METHODS:
            raise MissingParameter("code_challenge_method must be S256")

        code = self.codes.mint(request)
        logger.info(f"[OAUTH] Authorization code issued for client {client.client_id}")
        return build_redirect(request.redirect_uri, {"code": code.code, "state": request.state})

    def deny(self, csrf: str, request: AuthorizationRequest, ip: str = None) -> str:
        """Same checks as ``approve``; redirects with ``error=access_denied`` and mints no code."""
        return self.approve(csrf, request, ip=ip, allow=False)

    # ============== Token Endpoint ==============

    def exchange_token(
        self,
        grant_type: Optional[str],
        code: Optional[str] = None,
        redirect_uri: Optional[str] = None,
        client_id: Optional[str] = None,
        code_verifier: Optional[str] = None,
        refresh_token: Optional[str] = None,
        ip: str = None,
    ) -> TokenPair:
        # JSON bodies can carry any type; check before anything is consumed.
        fields = {
            "grant_type": grant_type,
            "code": code,
            "redirect_uri": redirect_uri,
            "client_id": client_id,
            "code_verifier": code_verifier,
            "refresh_token": refresh_token,
        }
        for name, value in fields.items():
            if value is not None and not isinstance(value, str):
                raise MissingParameter(f"{name} must be a string")

        if grant_type == "authorization_code":
            return self._redeem_code(code, redirect_uri, client_id, code_verifier, ip)
        if grant_type == "refresh_token":
            return self._rotate_refresh_token(refresh_token, client_id, ip)
        raise UnsupportedGrantType()

    def _redeem_code(self, code, redirect_uri, client_id, code_verifier, ip) -> TokenPair:
        # Popping consumes the code whatever the outcome of the checks below.
        auth_code = self.codes.consume(code)
        if auth_code is None:
            log_security_event("oauth_invalid_code", ip)
            raise InvalidGrant()

        if auth_code.client_id != client_id:
            log_security_event(
                "oauth_client_mismatch", ip, f"expected={auth_code.client_id} got={client_id}", severity="high"
            )
            raise InvalidGrant()
        if auth_code.redirect_uri != redirect_uri:
            raise InvalidGrant("redirect_uri mismatch")

        if auth_code.code_challenge:
            if not code_verifier:
                raise InvalidGrant("code_verifier required")
            if not verify_code_challenge(code_verifier, auth_code.code_challenge, auth_code.code_challenge_method):
                log_security_event("oauth_pkce_fail", ip, f"client={client_id}")
                raise InvalidGrant("PKCE verification failed")

        pair = self.tokens.issue_pair(auth_code.client_id, auth_code.scope)
        logger.info(
            f"[TOKEN] Issued token pair for client {auth_code.client_id} "
            f"(access {redact(pair.access_token.value)})"
        )
        return pair

    def _rotate_refresh_token(self, refresh_token, client_id, ip) -> TokenPair:
        current = self.tokens.lookup_refresh(refresh_token)
        if current is None:
            raise InvalidGrant()
        if client_id and client_id != current.client_id:
            log_security_event(
                "oauth_client_mismatch", ip, f"expected={current.client_id} got={client_id}", severity="high"
            )
            raise InvalidGrant()

        self.tokens.delete(current.value)
        pair = self.tokens.issue_pair(current.client_id, current.scope)
        logger.info(f"[TOKEN] Rotated refresh token for client {current.client_id}")
        return pair

    # ============== Resource access ==============

    def verify_access_token(self, value: str) -> Optional[Token]:
        return self.tokens.verify_access(value)

    # ============== Maintenance ==============

    def sweep(self) -> dict:
        return {
            "codes": self.codes.sweep(),
            "tokens": self.tokens.sweep(),
            "csrf": self.csrf_tokens.sweep(),
        }

    def stats(self) -> dict:
        return {
            "oauth_clients": len(self.clients),
            "oauth_tokens": self.tokens.live_count(),
            "authorization_codes": self.codes.live_count(),
            "csrf_tokens": self.csrf_tokens.live_count(),
        }
