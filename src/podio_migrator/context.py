"""Application context: explicit construction of the shared services.

The token manager, rate-limit tracker and HTTP gateway are process-wide
singletons in the sense that every collaborator must share one instance of
each. Rather than module-level globals they are owned by an ``AppContext``
and built lazily behind an ``InitLock``, so concurrent first access still
yields exactly one instance of each service.

Dependency order::

    config -> token store -> auth manager ─┐
                     rate-limit tracker ───┼─> http client ─> job manager
                              job store ───┘         progress channel ─┘
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import requests

from .auth import AuthManager, FileTokenStore, InitLock, MemoryTokenStore
from .http_client import PodioHttpClient
from .jobs import JobManager
from .progress import ProgressChannel
from .rate_limit import RateLimitTracker
from .state_store import FileJobStore, MemoryJobStore

if TYPE_CHECKING:
    from .config import PodioConfig
    from .protocols import JobStore, TokenStore

logger: logging.Logger = logging.getLogger(__name__)


class AppContext:
    """Owns one instance of every shared service.

    Usage:
        context = AppContext(PodioConfig.from_env())
        job_id = context.jobs.start_migration(request)

    Any service can be injected instead of built, which is how tests swap in
    memory stores or a fake session.
    """

    def __init__(
        self,
        config: PodioConfig,
        *,
        session: requests.Session | None = None,
        token_store: TokenStore | None = None,
        job_store: JobStore | None = None,
        tracker: RateLimitTracker | None = None,
        channel: ProgressChannel | None = None,
    ) -> None:
        self.config = config
        self._init = InitLock()
        self._session = session
        self._token_store = token_store
        self._job_store = job_store
        self._tracker = tracker
        self._channel = channel

    @classmethod
    def in_memory(cls, config: PodioConfig, *, session: requests.Session | None = None) -> AppContext:
        """A context that persists nothing to disk."""
        return cls(config, session=session, token_store=MemoryTokenStore(), job_store=MemoryJobStore())

    @property
    def session(self) -> requests.Session:
        return self._init.get_or_create("session", lambda: self._session or requests.Session())

    @property
    def token_store(self) -> TokenStore:
        return self._init.get_or_create(
            "token_store", lambda: self._token_store or FileTokenStore(self.config.token_cache_path)
        )

    @property
    def auth(self) -> AuthManager:
        return self._init.get_or_create(
            "auth", lambda: AuthManager(self.config, self.token_store, session=self.session)
        )

    @property
    def tracker(self) -> RateLimitTracker:
        return self._init.get_or_create("tracker", lambda: self._tracker or RateLimitTracker())

    @property
    def client(self) -> PodioHttpClient:
        return self._init.get_or_create(
            "client", lambda: PodioHttpClient(self.config, self.auth, self.tracker, session=self.session)
        )

    @property
    def job_store(self) -> JobStore:
        return self._init.get_or_create("job_store", lambda: self._job_store or FileJobStore(self.config.jobs_dir))

    @property
    def channel(self) -> ProgressChannel:
        return self._init.get_or_create("channel", lambda: self._channel or ProgressChannel())

    @property
    def jobs(self) -> JobManager:
        return self._init.get_or_create("jobs", self._build_job_manager)

    def _build_job_manager(self) -> JobManager:
        logger.debug(f"Building job manager for {self.config.api_base} (jobs in {self.config.jobs_dir})")
        return JobManager(self.client, self.job_store, channel=self.channel)
