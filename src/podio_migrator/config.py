"""Runtime configuration for the Podio migration tool.

Credentials come from environment variables first. When a ``pass_prefix`` is
given, any credential missing from the environment is looked up in the
``pass`` password store at ``<pass_prefix>/<name>`` (e.g. ``podio/client_id``).
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Final

from . import utils
from .exceptions import PodioConfigError

logger: logging.Logger = logging.getLogger(__name__)

DEFAULT_API_BASE: Final[str] = "https://api.podio.com"
DEFAULT_TOKEN_CACHE_PATH: Final[str] = "logs/podio-token-cache.json"  # noqa: S105
DEFAULT_JOBS_DIR: Final[str] = "data/migrations"

# env var name -> pass entry name
_CREDENTIAL_VARS: Final[dict[str, str]] = {
    "PODIO_CLIENT_ID": "client_id",
    "PODIO_CLIENT_SECRET": "client_secret",
    "PODIO_USERNAME": "username",
    "PODIO_PASSWORD": "password",
}


@dataclass(frozen=True)
class PodioConfig:
    """Credentials and locations used by the migration engine."""

    client_id: str
    client_secret: str
    username: str
    password: str
    api_base: str = DEFAULT_API_BASE
    token_cache_path: str = DEFAULT_TOKEN_CACHE_PATH
    jobs_dir: str = DEFAULT_JOBS_DIR
    request_timeout: float = 30.0

    def __repr__(self) -> str:
        # Keep secrets out of logs and tracebacks
        return (
            f"PodioConfig(client_id={self.client_id!r}, username={self.username!r}, "
            f"api_base={self.api_base!r}, jobs_dir={self.jobs_dir!r})"
        )

    @classmethod
    def from_env(cls, pass_prefix: str | None = None) -> PodioConfig:
        """Build the configuration from ``PODIO_*`` environment variables.

        Args:
            pass_prefix: Optional pass store prefix used for credentials missing
                from the environment.

        Returns:
            The loaded configuration.

        Raises:
            PodioConfigError: If any credential is still missing.
        """
        values: dict[str, str] = {}
        missing: list[str] = []
        for env_var, name in _CREDENTIAL_VARS.items():
            value = os.environ.get(env_var, "").strip()
            if not value and pass_prefix:
                try:
                    value = utils.get_pass_value(f"{pass_prefix}/{name}")
                except (utils.PassError, ValueError) as e:
                    logger.debug(f"No pass entry for {name}: {e}")
                    value = ""
            if value:
                values[name] = value
            else:
                missing.append(env_var)

        if missing:
            msg = f"Missing Podio configuration: {', '.join(missing)}"
            raise PodioConfigError(msg)

        return cls(
            client_id=values["client_id"],
            client_secret=values["client_secret"],
            username=values["username"],
            password=values["password"],
            api_base=os.environ.get("PODIO_API_BASE", DEFAULT_API_BASE).rstrip("/"),
            token_cache_path=os.environ.get("PODIO_TOKEN_CACHE", DEFAULT_TOKEN_CACHE_PATH),
            jobs_dir=os.environ.get("PODIO_JOBS_DIR", DEFAULT_JOBS_DIR),
        )
