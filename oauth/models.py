"""Records held by the OAuth stores.

Clients are referenced by ``client_id`` from codes and tokens, never by object.
"""

from dataclasses import dataclass, field
from typing import Optional

ACCESS = "access"
REFRESH = "refresh"

DEFAULT_SCOPE = "mcp:tools"


@dataclass(frozen=True)
class Client:
    """A dynamically registered OAuth client (RFC 7591)."""

    client_id: str
    client_secret: str
    client_name: str
    redirect_uris: tuple[str, ...]
    grant_types: tuple[str, ...]
    response_types: tuple[str, ...]
    token_endpoint_auth_method: str
    client_id_issued_at: int

    def to_dict(self) -> dict:
        return {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "client_name": self.client_name,
            "redirect_uris": list(self.redirect_uris),
            "grant_types": list(self.grant_types),
            "response_types": list(self.response_types),
            "token_endpoint_auth_method": self.token_endpoint_auth_method,
            "client_id_issued_at": self.client_id_issued_at,
        }


@dataclass
class CsrfToken:
    token: str
    expires_at: float


@dataclass
class AuthorizationCode:
    code: str
    client_id: str
    redirect_uri: str
    code_challenge: Optional[str]
    code_challenge_method: str
    scope: str
    expires_at: float


@dataclass
class Token:
    value: str
    kind: str
    client_id: str
    scope: str
    expires_at: float


@dataclass(frozen=True)
class AuthorizationRequest:
    """Authorization parameters, round-tripped verbatim through the consent form."""

    client_id: str = ""
    redirect_uri: str = ""
    state: str = ""
    code_challenge: str = ""
    code_challenge_method: str = "S256"
    scope: str = DEFAULT_SCOPE

    @classmethod
    def from_params(cls, params) -> "AuthorizationRequest":
        """Build from a query/form mapping, applying defaults for blank optional fields."""
        return cls(
            client_id=params.get("client_id") or "",
            redirect_uri=params.get("redirect_uri") or "",
            state=params.get("state") or "",
            code_challenge=params.get("code_challenge") or "",
            code_challenge_method=params.get("code_challenge_method") or "S256",
            scope=params.get("scope") or DEFAULT_SCOPE,
        )


@dataclass(frozen=True)
class TokenPair:
    access_token: Token
    refresh_token: Token
    expires_in: int
    scope: str = field(default=DEFAULT_SCOPE)

    def to_response(self) -> dict:
        return {
            "access_token": self.access_token.value,
            "token_type": "Bearer",
            "expires_in": self.expires_in,
            "refresh_token": self.refresh_token.value,
            "scope": self.scope,
        }
