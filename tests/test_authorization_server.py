import pytest

from config import Config
from errors import (
    CapacityExceeded,
    CsrfMismatch,
    InvalidGrant,
    InvalidRedirectURI,
    MissingParameter,
    UnknownClient,
    UnsupportedGrantType,
    UnsupportedResponseType,
)
from oauth.models import AuthorizationRequest
from oauth.pkce import compute_s256_challenge
from oauth.server import AuthorizationServer, build_redirect

from conftest import REDIRECT_URI, VERIFIER, query_of


@pytest.fixture
def server(clock):
    return AuthorizationServer.from_config(Config({"max_clients": 3}), clock=clock)


@pytest.fixture
def registered(server):
    return server.register_client({"client_name": "Claude", "redirect_uris": [REDIRECT_URI]})


def make_request(owner_id, **overrides) -> AuthorizationRequest:
    params = {
        "client_id": owner_id,
        "redirect_uri": REDIRECT_URI,
        "state": "st-1",
        "code_challenge": compute_s256_challenge(VERIFIER),
        "code_challenge_method": "S256",
    }
    params.update(overrides)
    return AuthorizationRequest.from_params(params)


def issue_code(server, client) -> str:
    request = make_request(client.client_id)
    _, csrf = server.begin_authorization(request, "code")
    return query_of(server.approve(csrf.token, request))["code"]


class TestBuildRedirect:
    def test_appends_params(self):
        assert build_redirect("https://a/cb", {"code": "c1", "state": "s"}) == "https://a/cb?code=c1&state=s"

    def test_keeps_foreign_params_and_replaces_ours(self):
        url = build_redirect("https://a/cb?tenant=7&code=old", {"code": "new", "state": ""})
        assert query_of(url) == {"tenant": "7", "code": "new"}


class TestBeginAuthorization:
    def test_mints_csrf(self, server, registered):
        client, csrf = server.begin_authorization(make_request(registered.client_id), "code")
        assert client is registered
        assert server.csrf_tokens.lookup(csrf.token) is not None

    @pytest.mark.parametrize("missing", ["client_id", "redirect_uri", "code_challenge"])
    def test_missing_parameters(self, server, registered, missing):
        with pytest.raises(MissingParameter):
            server.begin_authorization(make_request(registered.client_id, **{missing: ""}), "code")

    def test_unknown_client(self, server):
        with pytest.raises(UnknownClient):
            server.begin_authorization(make_request("not-registered"), "code")

    def test_response_type_must_be_code(self, server, registered):
        with pytest.raises(UnsupportedResponseType):
            server.begin_authorization(make_request(registered.client_id), "token")

    def test_plain_challenge_rejected(self, server, registered):
        with pytest.raises(MissingParameter):
            server.begin_authorization(make_request(registered.client_id, code_challenge_method="plain"), "code")


class TestApprove:
    def test_redirects_with_code_and_state(self, server, registered):
        request = make_request(registered.client_id)
        _, csrf = server.begin_authorization(request)
        location = server.approve(csrf.token, request)

        assert location.startswith(REDIRECT_URI + "?")
        params = query_of(location)
        assert params["state"] == "st-1"
        assert server.codes.lookup(params["code"]).client_id == registered.client_id

    def test_csrf_is_single_use(self, server, registered):
        request = make_request(registered.client_id)
        _, csrf = server.begin_authorization(request)
        server.approve(csrf.token, request)
        with pytest.raises(CsrfMismatch):
            server.approve(csrf.token, request)

    def test_csrf_consumed_even_when_redirect_rejected(self, server, registered):
        request = make_request(registered.client_id)
        _, csrf = server.begin_authorization(request)
        with pytest.raises(InvalidRedirectURI):
            server.approve(csrf.token, make_request(registered.client_id, redirect_uri="https://evil.example/cb"))
        with pytest.raises(CsrfMismatch):
            server.approve(csrf.token, request)

    def test_expired_csrf(self, server, registered, clock):
        request = make_request(registered.client_id)
        _, csrf = server.begin_authorization(request)
        clock.now = csrf.expires_at
        with pytest.raises(CsrfMismatch):
            server.approve(csrf.token, request)

    def test_unregistered_redirect_uri_never_issues_code(self, server, registered):
        request = make_request(registered.client_id, redirect_uri="https://evil.example/cb")
        _, csrf = server.begin_authorization(request)
        with pytest.raises(InvalidRedirectURI):
            server.approve(csrf.token, request)
        assert len(server.codes) == 0

    def test_deny_redirects_with_access_denied(self, server, registered):
        request = make_request(registered.client_id)
        _, csrf = server.begin_authorization(request)
        params = query_of(server.deny(csrf.token, request))
        assert params["error"] == "access_denied"
        assert params["state"] == "st-1"
        assert "code" not in params
        assert len(server.codes) == 0

    def test_client_without_registered_uris_accepts_safe_uri(self, server):
        client = server.register_client({})
        request = make_request(client.client_id, redirect_uri="http://localhost:9999/cb")
        _, csrf = server.begin_authorization(request)
        assert server.approve(csrf.token, request).startswith("http://localhost:9999/cb?")

    def test_client_without_registered_uris_rejects_javascript(self, server):
        client = server.register_client({})
        request = make_request(client.client_id, redirect_uri="javascript:alert(1)")
        _, csrf = server.begin_authorization(request)
        with pytest.raises(InvalidRedirectURI):
            server.approve(csrf.token, request)


class TestAuthorizationCodeGrant:
    def test_exchange(self, server, registered):
        code = issue_code(server, registered)
        pair = server.exchange_token(
            "authorization_code", code=code, redirect_uri=REDIRECT_URI,
            client_id=registered.client_id, code_verifier=VERIFIER,
        )
        assert server.verify_access_token(pair.access_token.value).client_id == registered.client_id
        assert pair.scope == "mcp:tools"

    def test_code_is_single_use(self, server, registered):
        code = issue_code(server, registered)
        kwargs = dict(code=code, redirect_uri=REDIRECT_URI, client_id=registered.client_id, code_verifier=VERIFIER)
        server.exchange_token("authorization_code", **kwargs)
        with pytest.raises(InvalidGrant):
            server.exchange_token("authorization_code", **kwargs)

    def test_wrong_verifier_consumes_code(self, server, registered):
        code = issue_code(server, registered)
        with pytest.raises(InvalidGrant):
            server.exchange_token(
                "authorization_code", code=code, redirect_uri=REDIRECT_URI,
                client_id=registered.client_id, code_verifier="abc",
            )
        with pytest.raises(InvalidGrant):
            server.exchange_token(
                "authorization_code", code=code, redirect_uri=REDIRECT_URI,
                client_id=registered.client_id, code_verifier=VERIFIER,
            )

    def test_missing_verifier(self, server, registered):
        code = issue_code(server, registered)
        with pytest.raises(InvalidGrant):
            server.exchange_token(
                "authorization_code", code=code, redirect_uri=REDIRECT_URI, client_id=registered.client_id
            )

    def test_client_mismatch(self, server, registered):
        other = server.register_client({"redirect_uris": [REDIRECT_URI]})
        code = issue_code(server, registered)
        with pytest.raises(InvalidGrant):
            server.exchange_token(
                "authorization_code", code=code, redirect_uri=REDIRECT_URI,
                client_id=other.client_id, code_verifier=VERIFIER,
            )

    def test_redirect_uri_mismatch(self, server, registered):
        code = issue_code(server, registered)
        with pytest.raises(InvalidGrant):
            server.exchange_token(
                "authorization_code", code=code, redirect_uri="https://client.example/other",
                client_id=registered.client_id, code_verifier=VERIFIER,
            )

    def test_code_expiry_boundary(self, server, registered, clock):
        code = issue_code(server, registered)
        clock.now = server.codes.lookup(code).expires_at
        with pytest.raises(InvalidGrant):
            server.exchange_token(
                "authorization_code", code=code, redirect_uri=REDIRECT_URI,
                client_id=registered.client_id, code_verifier=VERIFIER,
            )

    def test_code_live_just_before_expiry(self, server, registered, clock):
        code = issue_code(server, registered)
        clock.now = server.codes.lookup(code).expires_at - 0.001
        pair = server.exchange_token(
            "authorization_code", code=code, redirect_uri=REDIRECT_URI,
            client_id=registered.client_id, code_verifier=VERIFIER,
        )
        assert pair.access_token.value

    def test_non_string_input_rejected_before_code_is_consumed(self, server, registered):
        code = issue_code(server, registered)
        kwargs = dict(code=code, redirect_uri=REDIRECT_URI, client_id=registered.client_id)
        with pytest.raises(MissingParameter):
            server.exchange_token("authorization_code", code_verifier=12345, **kwargs)
        assert server.exchange_token("authorization_code", code_verifier=VERIFIER, **kwargs).access_token.value

    def test_unsupported_grant_type(self, server):
        with pytest.raises(UnsupportedGrantType):
            server.exchange_token("password")
        with pytest.raises(UnsupportedGrantType):
            server.exchange_token(None)


class TestRefreshGrant:
    @pytest.fixture
    def pair(self, server, registered):
        return server.exchange_token(
            "authorization_code", code=issue_code(server, registered), redirect_uri=REDIRECT_URI,
            client_id=registered.client_id, code_verifier=VERIFIER,
        )

    def test_rotation(self, server, registered, pair):
        rotated = server.exchange_token("refresh_token", refresh_token=pair.refresh_token.value)

        assert rotated.refresh_token.value != pair.refresh_token.value
        assert server.tokens.lookup_refresh(pair.refresh_token.value) is None
        assert server.verify_access_token(rotated.access_token.value).client_id == registered.client_id
        with pytest.raises(InvalidGrant):
            server.exchange_token("refresh_token", refresh_token=pair.refresh_token.value)

    def test_access_token_cannot_refresh(self, server, pair):
        with pytest.raises(InvalidGrant):
            server.exchange_token("refresh_token", refresh_token=pair.access_token.value)

    def test_mismatched_client_does_not_consume(self, server, pair):
        with pytest.raises(InvalidGrant):
            server.exchange_token("refresh_token", refresh_token=pair.refresh_token.value, client_id="someone-else")
        assert server.tokens.lookup_refresh(pair.refresh_token.value) is not None

    def test_expired_refresh_token(self, server, pair, clock):
        clock.now = pair.refresh_token.expires_at
        with pytest.raises(InvalidGrant):
            server.exchange_token("refresh_token", refresh_token=pair.refresh_token.value)


class TestMaintenance:
    def test_registry_capacity(self, server):
        existing = [server.register_client({}) for _ in range(3)]
        with pytest.raises(CapacityExceeded):
            server.register_client({})
        assert len(server.clients) == 3
        assert all(server.clients.lookup(c.client_id) is c for c in existing)

    def test_sweep_and_stats(self, server, registered, clock):
        issue_code(server, registered)
        server.begin_authorization(make_request(registered.client_id))
        assert server.stats() == {
            "oauth_clients": 1,
            "oauth_tokens": 0,
            "authorization_codes": 1,
            "csrf_tokens": 1,
        }

        clock.advance(600)
        assert server.sweep() == {"codes": 1, "tokens": 0, "csrf": 1}
        assert server.stats()["authorization_codes"] == 0
