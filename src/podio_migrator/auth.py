"""OAuth2 token lifecycle for the Podio API.

The AuthManager owns the only copy of the access/refresh token pair. Podio
rotates the refresh token on every use, so two refreshes running in parallel
would invalidate each other. All token acquisition therefore goes through a
single-flight guard: the first caller performs the network exchange and every
concurrent caller waits for and reuses its result.
"""

from __future__ import annotations

import json
import logging
import os
import threading
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final, TypeVar

import requests

from .exceptions import PodioAuthError

if TYPE_CHECKING:
    from .config import PodioConfig
    from .protocols import TokenStore

logger: logging.Logger = logging.getLogger(__name__)

REFRESH_WINDOW_SECONDS: Final[float] = 5 * 60
TOKEN_PATH: Final[str] = "/oauth/token/v2"  # noqa: S105

T = TypeVar("T")


@dataclass
class TokenRecord:
    """An OAuth2 token pair with its lifetime (epoch seconds)."""

    access_token: str
    refresh_token: str
    expires_at: float
    issued_at: float
    ref: dict[str, Any] | None = None
    scope: str | None = None

    def seconds_left(self, now: float) -> float:
        return self.expires_at - now

    def is_valid(self, now: float) -> bool:
        """True while the token is outside the pre-expiry refresh window."""
        return self.seconds_left(now) > REFRESH_WINDOW_SECONDS

    @classmethod
    def from_grant(cls, data: dict[str, Any], now: float) -> TokenRecord:
        return cls(
            access_token=data["access_token"],
            refresh_token=data["refresh_token"],
            expires_at=now + float(data.get("expires_in", 0)),
            issued_at=now,
            ref=data.get("ref"),
            scope=data.get("scope"),
        )


class MemoryTokenStore:
    """Keeps the token record in process memory."""

    def __init__(self, record: TokenRecord | None = None) -> None:
        self._record = record

    def load(self) -> TokenRecord | None:
        return self._record

    def save(self, record: TokenRecord) -> None:
        self._record = record

    def clear(self) -> None:
        self._record = None


class FileTokenStore:
    """Persists the token record as JSON, written atomically."""

    path: Path

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self.path = Path(path)

    def load(self) -> TokenRecord | None:
        if not self.path.exists():
            return None
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            return TokenRecord(**data)
        except (OSError, ValueError, TypeError) as e:
            logger.warning(f"Ignoring unreadable token cache {self.path}: {e}")
            return None

    def save(self, record: TokenRecord) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(asdict(record)), encoding="utf-8")
        os.chmod(tmp_path, 0o600)
        os.replace(tmp_path, self.path)

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)


class _Flight:
    """Outcome of one in-flight acquisition, shared with every waiter."""

    def __init__(self) -> None:
        self.done = threading.Event()
        self.result: Any = None
        self.error: BaseException | None = None


class _SingleFlight:
    """Runs at most one call at a time; concurrent callers share its outcome."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._current: _Flight | None = None

    def run(self, fn: Callable[[], T]) -> T:
        with self._lock:
            flight = self._current
            leader = flight is None
            if flight is None:
                flight = self._current = _Flight()

        if not leader:
            flight.done.wait()
            if flight.error is not None:
                raise flight.error
            return flight.result

        try:
            flight.result = fn()
        except BaseException as e:
            flight.error = e
            raise
        finally:
            with self._lock:
                self._current = None
            flight.done.set()
        return flight.result


class AuthManager:
    """Provides valid access tokens, refreshing or re-authenticating as needed.

    Usage:
        auth = AuthManager(config, FileTokenStore(config.token_cache_path))
        token = auth.get_access_token()
    """

    def __init__(
        self,
        config: PodioConfig,
        store: TokenStore,
        *,
        session: requests.Session | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config
        self._store = store
        self._session = session or requests.Session()
        self._clock = clock
        self._flight = _SingleFlight()
        self.refresh_count = 0
        self.grant_count = 0

    def get_access_token(self) -> str:
        """Return a currently valid access token.

        A cached token inside the 5-minute pre-expiry window is refreshed
        proactively. Without any cached token a password grant is performed.

        Raises:
            PodioAuthError: If no token could be obtained.
        """
        record = self._store.load()
        if record is not None and record.is_valid(self._clock()):
            return record.access_token
        return self._flight.run(self._acquire).access_token

    def force_refresh(self) -> str:
        """Refresh regardless of the cached token's expiry (used after a 401)."""
        stale = self._store.load()
        stale_token = stale.access_token if stale else None

        def acquire() -> TokenRecord:
            current = self._store.load()
            # Another caller already replaced the token that got the 401
            if current is not None and current.access_token != stale_token and current.is_valid(self._clock()):
                return current
            if current is not None and current.refresh_token:
                return self._refresh(current)
            return self._password_grant()

        return self._flight.run(acquire).access_token

    def clear_tokens(self) -> None:
        self._store.clear()
        logger.info("Cleared cached Podio tokens")

    def _acquire(self) -> TokenRecord:
        # Re-check: a previous flight may have finished while we were queued
        record = self._store.load()
        if record is not None and record.is_valid(self._clock()):
            return record
        if record is not None and record.refresh_token:
            return self._refresh(record)
        return self._password_grant()

    def _password_grant(self) -> TokenRecord:
        cfg = self._config
        if not (cfg.client_id and cfg.client_secret and cfg.username and cfg.password):
            msg = "Podio credentials are not configured"
            raise PodioAuthError(msg)
        logger.info("Authenticating with Podio using password grant")
        record = self._token_request(
            {
                "grant_type": "password",
                "client_id": cfg.client_id,
                "client_secret": cfg.client_secret,
                "username": cfg.username,
                "password": cfg.password,
            },
            action="password grant",
        )
        self.grant_count += 1
        return record

    def _refresh(self, record: TokenRecord) -> TokenRecord:
        logger.info("Refreshing Podio access token")
        try:
            refreshed = self._token_request(
                {
                    "grant_type": "refresh_token",
                    "client_id": self._config.client_id,
                    "client_secret": self._config.client_secret,
                    "refresh_token": record.refresh_token,
                },
                action="token refresh",
            )
        except PodioAuthError:
            self._store.clear()
            raise
        self.refresh_count += 1
        return refreshed

    def _token_request(self, form: dict[str, str], *, action: str) -> TokenRecord:
        url = f"{self._config.api_base}{TOKEN_PATH}"
        try:
            response = self._session.post(url, data=form, timeout=self._config.request_timeout)
        except requests.RequestException as e:
            msg = f"Podio {action} failed: {e}"
            raise PodioAuthError(msg) from e

        if not response.ok:
            body: dict[str, Any] = {}
            try:
                body = response.json()
            except ValueError:
                pass
            msg = f"Podio {action} failed with HTTP {response.status_code}: {body.get('error_description', '')}"
            raise PodioAuthError(
                msg,
                status_code=response.status_code,
                error_code=body.get("error"),
                error_detail=body.get("error_description"),
                response_body=body,
            )

        try:
            record = TokenRecord.from_grant(response.json(), self._clock())
        except (ValueError, KeyError) as e:
            msg = f"Podio {action} returned an invalid token response"
            raise PodioAuthError(msg, status_code=response.status_code) from e
        self._store.save(record)
        logger.debug(f"Obtained Podio token valid for {int(record.expires_at - record.issued_at)}s")
        return record


class InitLock:
    """Single-flight construction of a shared service instance.

    The first caller builds the instance; concurrent callers block until it
    is ready and receive the same object. Factories may themselves call
    ``get_or_create`` for their dependencies.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._instances: dict[str, Any] = {}

    def get_or_create(self, name: str, factory: Callable[[], T]) -> T:
        instance = self._instances.get(name)
        if instance is not None:
            return instance
        with self._lock:
            instance = self._instances.get(name)
            if instance is None:
                instance = factory()
                self._instances[name] = instance
            return instance

    def reset(self) -> None:
        with self._lock:
            self._instances.clear()
