"""In-memory stores for OAuth state.

These stores are constructed once per application and shared by the OAuth
endpoints and the MCP bearer gate. Nothing is persisted: a restart discards
every client, code, token and CSRF entry.

Every read path checks ``expires_at`` itself, so an expired entry is absent
as soon as its deadline passes even if the sweeper has not reclaimed it yet.
"""

import logging
import secrets
import time
import uuid
from typing import Callable, Generic, Iterable, Optional, TypeVar
from urllib.parse import urlsplit

from errors import CapacityExceeded, InvalidRedirectURI, MissingParameter
from oauth.models import (
    ACCESS,
    REFRESH,
    AuthorizationCode,
    AuthorizationRequest,
    Client,
    CsrfToken,
    Token,
    TokenPair,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], float]

MAX_REDIRECT_URIS = 10
MAX_REDIRECT_URI_LENGTH = 2048
MAX_CLIENT_NAME_LENGTH = 100
FORBIDDEN_SCHEMES = {"javascript", "data", "file", "vbscript"}

T = TypeVar("T")


def _new_secret() -> str:
    return secrets.token_hex(32)


class ExpiringStore(Generic[T]):
    """Keyed map whose entries carry an ``expires_at`` deadline (epoch seconds)."""

    def __init__(self, clock: Clock = time.time):
        self._entries: dict[str, T] = {}
        self._clock = clock

    def _expired(self, entry: T, now: float = None) -> bool:
        now = self._clock() if now is None else now
        return entry.expires_at <= now

    def insert(self, key: str, entry: T) -> None:
        self._entries[key] = entry

    def lookup(self, key: str) -> Optional[T]:
        entry = self._entries.get(key) if key else None
        if entry is None:
            return None
        if self._expired(entry):
            del self._entries[key]
            return None
        return entry

    def pop(self, key: str) -> Optional[T]:
        """Remove and return a live entry. Stale entries are removed but not returned."""
        entry = self._entries.pop(key, None) if key else None
        if entry is None or self._expired(entry):
            return None
        return entry

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def sweep(self) -> int:
        now = self._clock()
        stale = [key for key, entry in self._entries.items() if self._expired(entry, now)]
        for key in stale:
            del self._entries[key]
        return len(stale)

    def live_count(self) -> int:
        now = self._clock()
        return sum(1 for entry in self._entries.values() if not self._expired(entry, now))

    def __len__(self) -> int:
        return len(self._entries)


def validate_redirect_uris(redirect_uris) -> tuple[str, ...]:
    """Validate a registration's redirect URIs and return them as a tuple."""
    if redirect_uris is None:
        return ()
    if isinstance(redirect_uris, str) or not isinstance(redirect_uris, (list, tuple)):
        raise InvalidRedirectURI("redirect_uris must be an array of URIs")
    if len(redirect_uris) > MAX_REDIRECT_URIS:
        raise InvalidRedirectURI(f"At most {MAX_REDIRECT_URIS} redirect URIs may be registered")

    validated = []
    for uri in redirect_uris:
        if not isinstance(uri, str) or not uri:
            raise InvalidRedirectURI("redirect URIs must be non-empty strings")
        if len(uri) > MAX_REDIRECT_URI_LENGTH:
            raise InvalidRedirectURI(f"redirect URI longer than {MAX_REDIRECT_URI_LENGTH} characters")
        if not is_acceptable_redirect_uri(uri):
            raise InvalidRedirectURI(f"Invalid redirect URI: {uri[:100]}")
        validated.append(uri)
    return tuple(validated)


def is_acceptable_redirect_uri(uri: str) -> bool:
    """Absolute URI without fragment and with a scheme we are willing to redirect to."""
    try:
        parts = urlsplit(uri)
    except ValueError:
        return False
    scheme = parts.scheme.lower()
    if not scheme or scheme in FORBIDDEN_SCHEMES or parts.fragment:
        return False
    if scheme in ("http", "https") and not parts.netloc:
        return False
    return True


def _string_list(value, default: Iterable[str], field_name: str) -> tuple[str, ...]:
    if value is None or (isinstance(value, (str, list, tuple)) and not value):
        return tuple(default)
    if isinstance(value, str):
        return (value,)
    if not isinstance(value, (list, tuple)) or not all(isinstance(item, str) for item in value):
        raise MissingParameter(f"{field_name} must be an array of strings")
    return tuple(value)


class ClientRegistry:
    """Dynamically registered clients, bounded by ``max_clients``."""

    def __init__(self, max_clients: int = 500, clock: Clock = time.time):
        self.max_clients = max_clients
        self._clients: dict[str, Client] = {}
        self._clock = clock

    def register(
        self,
        name: Optional[str] = None,
        redirect_uris=None,
        grant_types=None,
        response_types=None,
        auth_method: Optional[str] = None,
    ) -> Client:
        """Create a client. The returned record is the only time the secret is disclosed."""
        if len(self._clients) >= self.max_clients:
            raise CapacityExceeded("Too many registered clients")

        for field_name, value in (("client_name", name), ("token_endpoint_auth_method", auth_method)):
            if value is not None and not isinstance(value, str):
                raise MissingParameter(f"{field_name} must be a string")
        uris = validate_redirect_uris(redirect_uris)

        client_id = str(uuid.uuid4())
        while client_id in self._clients:
            client_id = str(uuid.uuid4())

        client = Client(
            client_id=client_id,
            client_secret=_new_secret(),
            client_name=str(name or "Unknown")[:MAX_CLIENT_NAME_LENGTH],
            redirect_uris=uris,
            grant_types=_string_list(grant_types, ("authorization_code", "refresh_token"), "grant_types"),
            response_types=_string_list(response_types, ("code",), "response_types"),
            token_endpoint_auth_method=str(auth_method or "client_secret_post"),
            client_id_issued_at=int(self._clock()),
        )
        self._clients[client_id] = client
        return client

    def lookup(self, client_id: str) -> Optional[Client]:
        if not client_id:
            return None
        return self._clients.get(client_id)

    def __len__(self) -> int:
        return len(self._clients)


class CsrfTokenStore(ExpiringStore[CsrfToken]):
    """Single-use tokens bound to a rendered consent form."""

    def __init__(self, ttl: int = 600, clock: Clock = time.time):
        super().__init__(clock)
        self.ttl = ttl

    def mint(self) -> CsrfToken:
        token = CsrfToken(token=_new_secret(), expires_at=self._clock() + self.ttl)
        self.insert(token.token, token)
        return token

    def consume(self, token: str) -> bool:
        """Delete the token and report whether it was live. Never renews."""
        return self.pop(token) is not None


class AuthorizationCodeStore(ExpiringStore[AuthorizationCode]):
    """Short-lived single-use grants minted on consent approval."""

    def __init__(self, ttl: int = 600, clock: Clock = time.time):
        super().__init__(clock)
        self.ttl = ttl

    def mint(self, request: AuthorizationRequest) -> AuthorizationCode:
        code = AuthorizationCode(
            code=_new_secret(),
            client_id=request.client_id,
            redirect_uri=request.redirect_uri,
            code_challenge=request.code_challenge or None,
            code_challenge_method=request.code_challenge_method or "S256",
            scope=request.scope,
            expires_at=self._clock() + self.ttl,
        )
        self.insert(code.code, code)
        return code

    def consume(self, code: str) -> Optional[AuthorizationCode]:
        return self.pop(code)


class TokenStore(ExpiringStore[Token]):
    """Opaque access and refresh tokens."""

    def __init__(self, access_ttl: int = 3600, refresh_ttl: int = 30 * 86400, clock: Clock = time.time):
        super().__init__(clock)
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl

    def _issue(self, kind: str, client_id: str, scope: str, ttl: int) -> Token:
        token = Token(
            value=_new_secret(),
            kind=kind,
            client_id=client_id,
            scope=scope,
            expires_at=self._clock() + ttl,
        )
        self.insert(token.value, token)
        return token

    def issue_pair(self, client_id: str, scope: str) -> TokenPair:
        """Issue a fresh access/refresh pair bound to ``client_id``."""
        return TokenPair(
            access_token=self._issue(ACCESS, client_id, scope, self.access_ttl),
            refresh_token=self._issue(REFRESH, client_id, scope, self.refresh_ttl),
            expires_in=self.access_ttl,
            scope=scope,
        )

    def verify_access(self, value: str) -> Optional[Token]:
        token = self.lookup(value)
        if token is None or token.kind != ACCESS:
            return None
        return token

    def lookup_refresh(self, value: str) -> Optional[Token]:
        token = self.lookup(value)
        if token is None or token.kind != REFRESH:
            return None
        return token
