"""Tests for the credential store and OAuth session."""

import pytest

from ledgersheet.errors import AuthExpired
from ledgersheet.session import OAuthSession, SessionStore, mask
from tests.conftest import FakeHttp, FakeResponse


class Clock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def sessions(store):
    sessions = SessionStore(store)
    sessions.save_credentials("client-abcd", "secret-wxyz", "sandbox")
    sessions.connect("9130", "Sandbox Co")
    return sessions


@pytest.fixture
def clock():
    return Clock()


def test_mask():
    assert mask("secret-wxyz") == "*******wxyz"
    assert mask("abc") == "***"
    assert mask("") == ""
    assert mask(None) == ""


class TestSessionStore:
    """Tests for SessionStore."""

    def test_connect(self, sessions):
        assert sessions.realm_id == "9130"
        assert sessions.company_name == "Sandbox Co"
        assert sessions.last_connected_at is not None

    def test_new_credentials_disconnect(self, sessions):
        sessions.save_tokens({"access_token": "a"})
        sessions.save_credentials("other", "secret", "production")
        assert sessions.realm_id is None
        assert sessions.tokens == {}
        assert sessions.environment == "production"

    def test_unknown_environment_is_sandbox(self, store):
        store.set("qbo_environment", "staging")
        assert SessionStore(store).environment == "sandbox"

    def test_env_fallback(self, store, monkeypatch):
        monkeypatch.setenv("LEDGERSHEET_QBO_CLIENT_ID", " from-env ")
        assert SessionStore(store).client_id == "from-env"


class TestOAuthSession:
    """Tests for OAuthSession token handling."""

    def test_not_authorized(self, sessions, clock):
        with pytest.raises(AuthExpired, match="Not authorized"):
            OAuthSession(sessions, http=FakeHttp(), clock=clock).access_token()

    def test_store_token_response(self, sessions, clock):
        oauth = OAuthSession(sessions, http=FakeHttp(), clock=clock)
        oauth.store_token_response({"access_token": "a1", "refresh_token": "r1", "expires_in": 3600})
        assert sessions.tokens == {"access_token": "a1", "refresh_token": "r1", "expires_at": clock.now + 3600}
        assert oauth.access_token() == "a1"
        assert oauth.has_access()

    def test_refresh_keeps_refresh_token_when_omitted(self, sessions, clock):
        http = FakeHttp([FakeResponse(200, {"access_token": "a2", "expires_in": 3600})])
        oauth = OAuthSession(sessions, http=http, clock=clock)
        oauth.store_token_response({"access_token": "a1", "refresh_token": "r1"})

        oauth.refresh()

        assert sessions.tokens["access_token"] == "a2"
        assert sessions.tokens["refresh_token"] == "r1"
        assert http.calls[0]["data"] == {"grant_type": "refresh_token", "refresh_token": "r1"}

    def test_expired_token_refreshes_automatically(self, sessions, clock):
        http = FakeHttp([FakeResponse(200, {"access_token": "fresh", "refresh_token": "r2"})])
        oauth = OAuthSession(sessions, http=http, clock=clock)
        oauth.store_token_response({"access_token": "stale", "refresh_token": "r1", "expires_in": 100})

        clock.now += 50
        assert oauth.access_token() == "fresh"
        assert len(http.calls) == 1

    def test_refresh_rejected(self, sessions, clock):
        http = FakeHttp([FakeResponse(400, {"error": "invalid_grant"})])
        oauth = OAuthSession(sessions, http=http, clock=clock)
        oauth.store_token_response({"access_token": "a1", "refresh_token": "r1"})
        with pytest.raises(AuthExpired, match="400"):
            oauth.refresh()

    def test_refresh_without_refresh_token(self, sessions, clock):
        oauth = OAuthSession(sessions, http=FakeHttp(), clock=clock)
        with pytest.raises(AuthExpired, match="No refresh token"):
            oauth.refresh()

    def test_reset_keeps_credentials(self, sessions, clock):
        oauth = OAuthSession(sessions, http=FakeHttp(), clock=clock)
        oauth.store_token_response({"access_token": "a1", "refresh_token": "r1"})
        oauth.reset()
        assert not oauth.has_access()
        assert sessions.client_id == "client-abcd"
        assert oauth.realm_id == "9130"

    def test_status_masks_secrets(self, sessions, clock):
        status = OAuthSession(sessions, http=FakeHttp(), clock=clock).status()
        assert status["client_secret"] == "*******wxyz"
        assert status["realm_id"] == "9130"
        assert status["has_access"] is False
