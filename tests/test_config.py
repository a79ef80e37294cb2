from unittest.mock import patch

import pytest

from podio_migrator.config import DEFAULT_API_BASE, DEFAULT_JOBS_DIR, PodioConfig
from podio_migrator.exceptions import PodioConfigError
from podio_migrator.utils import InvalidPassPathError

CREDENTIALS = {
    "PODIO_CLIENT_ID": "cid",
    "PODIO_CLIENT_SECRET": "secret",
    "PODIO_USERNAME": "user@example.com",
    "PODIO_PASSWORD": "hunter2",
}


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    for name in (*CREDENTIALS, "PODIO_API_BASE", "PODIO_TOKEN_CACHE", "PODIO_JOBS_DIR"):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


@pytest.mark.unit
class TestPodioConfig:
    def test_from_env(self, clean_env: pytest.MonkeyPatch) -> None:
        for name, value in CREDENTIALS.items():
            clean_env.setenv(name, value)
        clean_env.setenv("PODIO_API_BASE", "https://podio.example.com/")

        config = PodioConfig.from_env()

        assert config.client_id == "cid"
        assert config.password == "hunter2"
        assert config.api_base == "https://podio.example.com"
        assert config.jobs_dir == DEFAULT_JOBS_DIR

    def test_missing_credentials_are_listed(self, clean_env: pytest.MonkeyPatch) -> None:
        clean_env.setenv("PODIO_CLIENT_ID", "cid")
        clean_env.setenv("PODIO_USERNAME", "   ")

        with pytest.raises(PodioConfigError) as exc_info:
            PodioConfig.from_env()

        assert "PODIO_CLIENT_SECRET" in str(exc_info.value)
        assert "PODIO_USERNAME" in str(exc_info.value)
        assert "PODIO_CLIENT_ID" not in str(exc_info.value)

    def test_pass_fills_missing_credentials(self, clean_env: pytest.MonkeyPatch) -> None:
        clean_env.setenv("PODIO_CLIENT_ID", "from-env")

        with patch("podio_migrator.config.utils.get_pass_value", side_effect=lambda path: f"pass:{path}") as get_pass:
            config = PodioConfig.from_env(pass_prefix="podio")

        assert config.client_id == "from-env"
        assert config.client_secret == "pass:podio/client_secret"
        assert config.api_base == DEFAULT_API_BASE
        assert get_pass.call_count == 3

    def test_pass_errors_count_as_missing(self, clean_env: pytest.MonkeyPatch) -> None:
        with (
            patch("podio_migrator.config.utils.get_pass_value", side_effect=InvalidPassPathError("not found")),
            pytest.raises(PodioConfigError, match="PODIO_PASSWORD"),
        ):
            PodioConfig.from_env(pass_prefix="podio")

    def test_repr_hides_secrets(self) -> None:
        config = PodioConfig(client_id="cid", client_secret="s3cret", username="u", password="p4ss")
        assert "s3cret" not in repr(config)
        assert "p4ss" not in repr(config)
