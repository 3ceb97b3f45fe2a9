"""
DLive OAuth token lifecycle

This module owns the bot's single OAuth credential: acquiring it through the
Authorization Code Grant, refreshing it before it expires, and mirroring every
change into a durable token store so a restart never loses a rotated refresh
token.

Key features:
- OAuth 2.0 Authorization Code Grant flow with expiring state values
- Refresh-before-expiry with a single in-flight refresh
- Pluggable persistence (memory, JSON file, environment/.env, SQLite)
- Credential wipe when the provider rejects the refresh grant
"""

import asyncio
import json
import logging
import os
import secrets
import sqlite3
import tempfile
import time
import urllib.parse
from abc import ABC, abstractmethod
from contextlib import closing
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import aiohttp
from dotenv import set_key

# Configure logging
logger = logging.getLogger(__name__)


class TokenError(Exception):
    """Base class for credential lifecycle failures."""
    pass


class NoRefreshTokenError(TokenError):
    """Raised when a refresh is needed but no refresh token is held."""
    pass


class RefreshRejectedError(TokenError):
    """Raised when the provider reports the refresh grant as invalid or expired."""
    pass


class ExchangeFailedError(TokenError):
    """Raised when the token endpoint answers a grant with a non-success response."""

    def __init__(self, status: int, body: Any):
        self.status = status
        self.body = body
        super().__init__(f"Token exchange failed ({status}): {body}")


@dataclass
class Credential:
    """The OAuth access/refresh token pair plus its expiry in epoch milliseconds."""

    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at_ms: int = 0

    @classmethod
    def empty(cls) -> "Credential":
        return cls()

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "Credential":
        if not data:
            return cls.empty()
        try:
            expires_at_ms = int(data.get("expires_at_ms") or 0)
        except (TypeError, ValueError):
            expires_at_ms = 0
        return cls(
            access_token=data.get("access_token") or None,
            refresh_token=data.get("refresh_token") or None,
            expires_at_ms=expires_at_ms,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @property
    def is_empty(self) -> bool:
        return not self.access_token and not self.refresh_token


# ---- Token stores ----

class TokenStore(ABC):
    """Durable mirror of the bot credential."""

    @abstractmethod
    async def load(self) -> Credential:
        """Return the stored credential, or an empty one when nothing is stored."""

    @abstractmethod
    async def save(self, credential: Credential) -> None:
        """Persist the full credential, replacing whatever was stored."""

    async def clear(self) -> None:
        await self.save(Credential.empty())


class MemoryTokenStore(TokenStore):
    """Keeps the credential for the lifetime of the process only."""

    def __init__(self, credential: Optional[Credential] = None):
        self._data = (credential or Credential.empty()).to_dict()

    async def load(self) -> Credential:
        return Credential.from_dict(self._data)

    async def save(self, credential: Credential) -> None:
        self._data = credential.to_dict()


class FileTokenStore(TokenStore):
    """
    Stores the credential as JSON on disk.

    Writes go to a temporary file in the same directory which is then renamed
    over the target, so a crash mid-write leaves the previous credential intact.
    """

    def __init__(self, path: str):
        self.path = Path(path)

    async def load(self) -> Credential:
        if not self.path.exists():
            logger.info(f"No token file at {self.path}")
            return Credential.empty()
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Could not read token file {self.path}: {e}")
            return Credential.empty()
        if not isinstance(data, dict):
            logger.warning(f"Ignoring malformed token file {self.path}")
            return Credential.empty()
        return Credential.from_dict(data)

    async def save(self, credential: Credential) -> None:
        directory = self.path.parent
        directory.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=".tokens-", suffix=".json", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(credential.to_dict(), f, indent=2)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
        logger.debug(f"Credential written to {self.path}")


class EnvTokenStore(TokenStore):
    """
    Reads the credential from environment variables.

    Saves update the running process environment and, when ``env_file`` is
    given, are written back to that ``.env`` file so they survive a restart.
    """

    ACCESS_KEY = "DLIVE_ACCESS_TOKEN"
    REFRESH_KEY = "DLIVE_REFRESH_TOKEN"
    EXPIRES_KEY = "DLIVE_TOKEN_EXPIRES_AT_MS"

    def __init__(self, env_file: Optional[str] = None):
        self.env_file = env_file

    async def load(self) -> Credential:
        return Credential.from_dict({
            "access_token": os.getenv(self.ACCESS_KEY),
            "refresh_token": os.getenv(self.REFRESH_KEY),
            "expires_at_ms": os.getenv(self.EXPIRES_KEY),
        })

    async def save(self, credential: Credential) -> None:
        values = {
            self.ACCESS_KEY: credential.access_token or "",
            self.REFRESH_KEY: credential.refresh_token or "",
            self.EXPIRES_KEY: str(credential.expires_at_ms),
        }
        os.environ.update(values)
        if not self.env_file:
            logger.warning("Credential updated in process environment only; it will not survive a restart")
            return
        Path(self.env_file).touch(exist_ok=True)
        for key, value in values.items():
            set_key(self.env_file, key, value)
        logger.debug(f"Credential written to {self.env_file}")


class SqliteTokenStore(TokenStore):
    """Stores the credential in a single-row SQLite table."""

    CREATE_TABLE = """
        CREATE TABLE IF NOT EXISTS oauth_credentials (
            id INTEGER PRIMARY KEY CHECK (id = 1),
            access_token TEXT,
            refresh_token TEXT,
            expires_at_ms INTEGER NOT NULL DEFAULT 0,
            updated_at TEXT NOT NULL
        )
    """

    def __init__(self, db_path: str):
        self.db_path = db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.execute(self.CREATE_TABLE)
        return conn

    def _load_sync(self) -> Credential:
        with closing(self._connect()) as conn:
            row = conn.execute(
                "SELECT access_token, refresh_token, expires_at_ms FROM oauth_credentials WHERE id = 1"
            ).fetchone()
        if row is None:
            return Credential.empty()
        return Credential(access_token=row[0], refresh_token=row[1], expires_at_ms=int(row[2] or 0))

    def _save_sync(self, credential: Credential) -> None:
        with closing(self._connect()) as conn:
            with conn:
                conn.execute(
                    """
                    INSERT INTO oauth_credentials (id, access_token, refresh_token, expires_at_ms, updated_at)
                    VALUES (1, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        access_token = excluded.access_token,
                        refresh_token = excluded.refresh_token,
                        expires_at_ms = excluded.expires_at_ms,
                        updated_at = excluded.updated_at
                    """,
                    (
                        credential.access_token,
                        credential.refresh_token,
                        credential.expires_at_ms,
                        datetime.now(timezone.utc).isoformat(),
                    ),
                )

    async def load(self) -> Credential:
        return await asyncio.to_thread(self._load_sync)

    async def save(self, credential: Credential) -> None:
        await asyncio.to_thread(self._save_sync, credential)


def build_token_store(kind: str, *, token_file: str = "tokens.json", db_path: str = "tokens.db",
                      env_file: Optional[str] = None) -> TokenStore:
    """
    Create the token store named by ``kind``.

    Raises:
        ValueError: If ``kind`` is not a known backend
    """
    if kind == "memory":
        return MemoryTokenStore()
    if kind == "file":
        return FileTokenStore(token_file)
    if kind == "env":
        return EnvTokenStore(env_file)
    if kind == "sqlite":
        return SqliteTokenStore(db_path)
    raise ValueError(f"Unknown token store: {kind}")


# ---- Token manager ----

class TokenManager:
    """
    Owner of the bot's OAuth credential.

    The manager is the only writer of the credential. Every successful grant
    is written through to the token store before the new token is handed out.
    Refreshes are serialized so concurrent callers never exchange the same
    refresh token twice.

    Attributes:
        client_id: DLive application client ID
        client_secret: DLive application client secret
        redirect_uri: OAuth redirect URI registered for the application
        store: Durable mirror of the credential
        oauth_states: Pending authorization states and the data attached to them
    """

    DLIVE_AUTHORIZE_URL = "https://dlive.tv/o/authorize"
    DLIVE_TOKEN_URL = "https://dlive.tv/o/token"

    # OAuth state expiration time (5 minutes)
    OAUTH_STATE_EXPIRY = 300

    # Assumed lifetime when the token endpoint omits expires_in
    DEFAULT_EXPIRES_IN = 3600

    INVALID_GRANT_ERRORS = {"invalid_grant", "invalid_token", "expired_token"}

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        store: TokenStore,
        *,
        token_url: Optional[str] = None,
        authorize_url: Optional[str] = None,
        scopes: Optional[List[str]] = None,
        timeout: float = 10.0,
        refresh_margin: float = 10,
        default_lifetime: int = DEFAULT_EXPIRES_IN,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the token manager.

        Args:
            client_id: DLive application client ID
            client_secret: DLive application client secret
            redirect_uri: OAuth redirect URI
            store: Token store the credential is mirrored into
            token_url: Token endpoint override
            authorize_url: Authorization endpoint override
            scopes: Scopes requested by the authorization URL
            timeout: Total timeout in seconds for each token endpoint call
            refresh_margin: Seconds before expiry at which a token is refreshed
            default_lifetime: Lifetime in seconds assumed when expires_in is missing
            clock: Source of the current time in epoch seconds

        Raises:
            ValueError: If client_id or client_secret is empty
        """
        if not client_id or not client_secret:
            raise ValueError("client_id and client_secret are required")

        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.store = store
        self.token_url = token_url or self.DLIVE_TOKEN_URL
        self.authorize_url = authorize_url or self.DLIVE_AUTHORIZE_URL
        self.scopes = scopes or ["identity", "chat:write"]
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.refresh_margin_ms = int(refresh_margin * 1000)
        self.default_lifetime = default_lifetime
        self._clock = clock

        self._credential = Credential.empty()
        self._refresh_lock = asyncio.Lock()

        self.oauth_states: Dict[str, Dict[str, Any]] = {}

        logger.info(f"TokenManager initialized for client_id: {client_id}")

    # ---- State inspection ----

    @property
    def credential(self) -> Credential:
        """A copy of the held credential."""
        return Credential(**self._credential.to_dict())

    @property
    def has_credential(self) -> bool:
        return not self._credential.is_empty

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _is_fresh(self) -> bool:
        return bool(self._credential.access_token) and (
            self._credential.expires_at_ms > self._now_ms() + self.refresh_margin_ms
        )

    def describe(self) -> Dict[str, Any]:
        """Summarize the credential without exposing the tokens."""
        expires_at_ms = self._credential.expires_at_ms
        return {
            "has_access_token": bool(self._credential.access_token),
            "has_refresh_token": bool(self._credential.refresh_token),
            "expires_at_ms": expires_at_ms,
            "expires_in_seconds": max(0, (expires_at_ms - self._now_ms()) // 1000) if expires_at_ms else 0,
        }

    # ---- Persistence ----

    async def load(self) -> Credential:
        """Load the stored credential into memory. Called once at startup."""
        self._credential = await self.store.load()
        if self._credential.is_empty:
            logger.info("No stored credential; authorization required")
        else:
            logger.info("Loaded stored credential")
        return self.credential

    async def _commit(self, credential: Credential) -> None:
        self._credential = credential
        await self.store.save(credential)

    async def clear(self) -> None:
        """Forget the credential in memory and in the store."""
        async with self._refresh_lock:
            await self._commit(Credential.empty())
        logger.info("Credential cleared")

    # ---- Authorization Code Grant ----

    def generate_auth_url(self, message: Optional[str] = None, target: Optional[str] = None,
                          state: Optional[str] = None) -> str:
        """
        Generate an authorization URL for the OAuth Authorization Code Grant flow.

        Args:
            message: Optional chat message to send once authorization completes
            target: Optional channel display name for that message
            state: Optional state parameter (auto-generated if not provided)

        Returns:
            The authorization URL to redirect users to
        """
        if not state:
            state = secrets.token_urlsafe(32)

        self.oauth_states[state] = {
            "message": message,
            "target": target,
            "timestamp": self._clock(),
        }

        self._cleanup_expired_states()

        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": " ".join(self.scopes),
            "state": state,
        }

        auth_url = f"{self.authorize_url}?{urllib.parse.urlencode(params)}"
        logger.info(f"Generated auth URL with scopes: {self.scopes}")
        return auth_url

    def _cleanup_expired_states(self) -> None:
        """Clean up expired OAuth states."""
        current_time = self._clock()
        expired_states = [
            state for state, data in self.oauth_states.items()
            if current_time - data["timestamp"] > self.OAUTH_STATE_EXPIRY
        ]

        for state in expired_states:
            del self.oauth_states[state]

        if expired_states:
            logger.debug(f"Cleaned up {len(expired_states)} expired OAuth states")

    def consume_state(self, state: str) -> Dict[str, Any]:
        """
        Validate and remove a pending OAuth state.

        Returns:
            The data attached to the state when the auth URL was generated

        Raises:
            ValueError: If the state is unknown or expired
        """
        if state not in self.oauth_states:
            raise ValueError("Invalid state parameter")

        data = self.oauth_states.pop(state)
        if self._clock() - data["timestamp"] > self.OAUTH_STATE_EXPIRY:
            raise ValueError("State parameter expired")
        return data

    async def complete_authorization(self, code: str) -> Credential:
        """
        Exchange an authorization code for the initial credential.

        Args:
            code: The authorization code received on the callback

        Returns:
            The stored credential

        Raises:
            ExchangeFailedError: If the token endpoint does not answer with a token
            ValueError: If code is empty
        """
        if not code:
            raise ValueError("Authorization code is required")

        status, data = await self._post_token({
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.redirect_uri,
        })
        if status != 200 or not data.get("access_token"):
            logger.error(f"Authorization code exchange failed ({status}): {data}")
            raise ExchangeFailedError(status, data)

        async with self._refresh_lock:
            credential = self._credential_from_response(data)
            await self._commit(credential)

        logger.info("Authorization completed; credential stored")
        return self.credential

    async def fetch_client_credentials(self) -> str:
        """
        Obtain an application access token via the Client Credentials grant.

        The app token is returned to the caller and never replaces the bot's
        user credential.

        Raises:
            ExchangeFailedError: If the token endpoint does not answer with a token
        """
        status, data = await self._post_token({"grant_type": "client_credentials"})
        if status != 200 or not data.get("access_token"):
            logger.error(f"Client credentials exchange failed ({status}): {data}")
            raise ExchangeFailedError(status, data)
        logger.info("Obtained application access token")
        return data["access_token"]

    # ---- Refresh ----

    async def ensure_valid_access_token(self) -> str:
        """
        Return an access token that is valid for at least the refresh margin.

        No network call is made while the held token is fresh. Otherwise the
        refresh token is exchanged, at most once across concurrent callers.

        Raises:
            NoRefreshTokenError: If a refresh is needed and no refresh token is held
            RefreshRejectedError: If the provider rejected the refresh grant
            ExchangeFailedError: If the refresh failed for any other reason
        """
        if self._is_fresh():
            return self._credential.access_token

        async with self._refresh_lock:
            # Another caller may have refreshed while we waited for the lock
            if self._is_fresh():
                return self._credential.access_token
            credential = await self._refresh_locked()
            return credential.access_token

    async def _refresh_locked(self) -> Credential:
        refresh_token = self._credential.refresh_token
        if not refresh_token:
            raise NoRefreshTokenError("No refresh token available. Please re-authorize the bot.")

        logger.info("Refreshing access token")
        status, data = await self._post_token({
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        })

        if status == 200 and data.get("access_token"):
            credential = self._credential_from_response(data, previous_refresh_token=refresh_token)
            await self._commit(credential)
            logger.info("Successfully refreshed access token")
            return credential

        error_code = self._error_code(data)
        if status in (400, 401) and error_code in self.INVALID_GRANT_ERRORS:
            logger.warning(f"Refresh grant rejected ({error_code}); clearing stored credential")
            await self._commit(Credential.empty())
            raise RefreshRejectedError(f"Refresh token rejected: {error_code}. Please re-authorize the bot.")

        logger.error(f"Token refresh failed ({status}): {data}")
        raise ExchangeFailedError(status, data)

    # ---- HTTP ----

    def _credential_from_response(self, data: Dict[str, Any],
                                  previous_refresh_token: Optional[str] = None) -> Credential:
        try:
            expires_in = int(data.get("expires_in") or self.default_lifetime)
        except (TypeError, ValueError):
            expires_in = self.default_lifetime
        return Credential(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token") or previous_refresh_token,
            expires_at_ms=self._now_ms() + expires_in * 1000,
        )

    @staticmethod
    def _error_code(data: Dict[str, Any]) -> Optional[str]:
        error = data.get("error")
        if isinstance(error, str):
            return error.lower()
        message = str(data.get("error_description") or data.get("message") or "").lower()
        for code in TokenManager.INVALID_GRANT_ERRORS:
            if code in message:
                return code
        return None

    async def _post_token(self, form: Dict[str, str]) -> Tuple[int, Dict[str, Any]]:
        """
        POST a form-encoded grant to the token endpoint with Basic client auth.

        Returns:
            The HTTP status and the decoded JSON body

        Raises:
            ExchangeFailedError: On network errors or timeouts
        """
        auth = aiohttp.BasicAuth(self.client_id, self.client_secret)
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(self.token_url, data=form, auth=auth,
                                        headers={"Accept": "application/json"}) as response:
                    text = await response.text()
                    try:
                        data = json.loads(text) if text else {}
                    except json.JSONDecodeError:
                        data = {"raw": text}
                    if not isinstance(data, dict):
                        data = {"raw": data}
                    return response.status, data

        except aiohttp.ClientError as e:
            logger.error(f"Network error during {form.get('grant_type')} exchange: {e}")
            raise ExchangeFailedError(0, str(e)) from e
        except asyncio.TimeoutError as e:
            logger.error(f"Timed out during {form.get('grant_type')} exchange")
            raise ExchangeFailedError(0, "timeout") from e
