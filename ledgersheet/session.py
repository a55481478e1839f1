"""
Credential & session store for the accounting API.

Holds OAuth client credentials, the access/refresh token pair and the
connected company in the key-value store under qbo_* keys. The consent
screen and redirect handling live elsewhere; this module only persists
what they produce and keeps the access token fresh.

OAuthSession is the token provider consumed by QboClient:
- access_token(): current bearer token (refreshed first if expired)
- refresh(): exchange the refresh token at the bearer-token endpoint
- reset(): drop tokens, keep client credentials
"""

import logging
import os
import time
from datetime import datetime, timezone
from typing import Any, Callable, Optional

import requests

from ledgersheet.errors import AuthExpired
from ledgersheet.store import KeyValueStore

logger = logging.getLogger(__name__)

TOKEN_URL = "https://oauth.platform.intuit.com/oauth2/v1/tokens/bearer"
EXPIRY_MARGIN_SECONDS = 60

KEY_CLIENT_ID = "qbo_client_id"
KEY_CLIENT_SECRET = "qbo_client_secret"
KEY_ENVIRONMENT = "qbo_environment"
KEY_REALM_ID = "qbo_realm_id"
KEY_COMPANY_NAME = "qbo_company_name"
KEY_LAST_CONNECTED = "qbo_last_connected_at"
KEY_TOKENS = "qbo_tokens"

ENV_CLIENT_ID = "LEDGERSHEET_QBO_CLIENT_ID"
ENV_CLIENT_SECRET = "LEDGERSHEET_QBO_CLIENT_SECRET"


def mask(value: Optional[str]) -> str:
    """Mask a secret, keeping the last four characters."""
    if not value:
        return ""
    if len(value) <= 4:
        return "*" * len(value)
    return "*" * (len(value) - 4) + value[-4:]


class SessionStore:
    """Typed access to the qbo_* keys."""

    def __init__(self, store: KeyValueStore, default_environment: str = "sandbox"):
        self._store = store
        self._default_environment = default_environment

    @property
    def client_id(self) -> str:
        return (self._store.get(KEY_CLIENT_ID) or os.environ.get(ENV_CLIENT_ID, "")).strip()

    @property
    def client_secret(self) -> str:
        return (self._store.get(KEY_CLIENT_SECRET) or os.environ.get(ENV_CLIENT_SECRET, "")).strip()

    @property
    def environment(self) -> str:
        env = self._store.get(KEY_ENVIRONMENT) or self._default_environment
        return "production" if env == "production" else "sandbox"

    @property
    def realm_id(self) -> Optional[str]:
        return self._store.get(KEY_REALM_ID) or None

    @property
    def company_name(self) -> Optional[str]:
        return self._store.get(KEY_COMPANY_NAME) or None

    @property
    def last_connected_at(self) -> Optional[str]:
        return self._store.get(KEY_LAST_CONNECTED) or None

    @property
    def tokens(self) -> dict[str, Any]:
        return self._store.get(KEY_TOKENS) or {}

    def save_credentials(self, client_id: str, client_secret: str, environment: str = "sandbox") -> None:
        """Store client credentials. Changing them disconnects the company."""
        self._store.set(KEY_CLIENT_ID, str(client_id or "").strip())
        self._store.set(KEY_CLIENT_SECRET, str(client_secret or "").strip())
        self._store.set(KEY_ENVIRONMENT, "production" if environment == "production" else "sandbox")
        self.disconnect()

    def connect(self, realm_id: str, company_name: Optional[str] = None) -> None:
        self._store.set(KEY_REALM_ID, realm_id)
        if company_name:
            self._store.set(KEY_COMPANY_NAME, company_name)
        self._store.set(KEY_LAST_CONNECTED, datetime.now(timezone.utc).isoformat())

    def disconnect(self) -> None:
        for key in (KEY_REALM_ID, KEY_COMPANY_NAME, KEY_LAST_CONNECTED, KEY_TOKENS):
            self._store.delete(key)

    def save_tokens(self, tokens: dict[str, Any]) -> None:
        self._store.set(KEY_TOKENS, tokens)

    def clear_tokens(self) -> None:
        self._store.delete(KEY_TOKENS)


class OAuthSession:
    """
    Token provider backed by a SessionStore.

    Args:
        sessions: SessionStore holding credentials and tokens
        http: requests.Session used for the token endpoint
        clock: Returns the current epoch time in seconds
    """

    def __init__(
        self,
        sessions: SessionStore,
        http: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.time,
        token_url: str = TOKEN_URL,
    ):
        self.sessions = sessions
        self._http = http or requests.Session()
        self._clock = clock
        self._token_url = token_url

    @property
    def realm_id(self) -> Optional[str]:
        return self.sessions.realm_id

    @property
    def environment(self) -> str:
        return self.sessions.environment

    def has_access(self) -> bool:
        return bool(self.sessions.tokens.get("access_token"))

    def store_token_response(self, payload: dict[str, Any]) -> None:
        """Persist a bearer-token endpoint response."""
        previous = self.sessions.tokens
        expires_in = int(payload.get("expires_in") or 3600)
        self.sessions.save_tokens({
            "access_token": payload["access_token"],
            "refresh_token": payload.get("refresh_token") or previous.get("refresh_token"),
            "expires_at": self._clock() + expires_in,
        })

    def access_token(self) -> str:
        """Return a bearer token, refreshing first if it has expired."""
        tokens = self.sessions.tokens
        if not tokens.get("access_token"):
            raise AuthExpired("Not authorized.")
        expires_at = tokens.get("expires_at")
        if expires_at is not None and self._clock() >= float(expires_at) - EXPIRY_MARGIN_SECONDS:
            if tokens.get("refresh_token"):
                self.refresh()
                tokens = self.sessions.tokens
        return tokens["access_token"]

    def refresh(self) -> None:
        """
        Exchange the refresh token for a new token pair.

        Raises:
            AuthExpired: If there is no refresh token or the endpoint refuses
        """
        refresh_token = self.sessions.tokens.get("refresh_token")
        if not refresh_token:
            raise AuthExpired("No refresh token. Re-authorize.")

        logger.info("Refreshing access token")
        response = self._http.post(
            self._token_url,
            auth=(self.sessions.client_id, self.sessions.client_secret),
            data={"grant_type": "refresh_token", "refresh_token": refresh_token},
            headers={"Accept": "application/json"},
            timeout=30,
        )
        if response.status_code != 200:
            raise AuthExpired(f"Token refresh failed ({response.status_code})")
        self.store_token_response(response.json())

    def reset(self) -> None:
        """Drop the token pair so the next call requires re-authorization."""
        logger.warning("Resetting OAuth session")
        self.sessions.clear_tokens()

    def status(self) -> dict[str, Any]:
        """Snapshot of the connection state with secrets masked."""
        return {
            "environment": self.environment,
            "client_id": mask(self.sessions.client_id),
            "client_secret": mask(self.sessions.client_secret),
            "has_access": self.has_access(),
            "realm_id": self.realm_id,
            "company_name": self.sessions.company_name,
            "last_connected_at": self.sessions.last_connected_at,
        }
