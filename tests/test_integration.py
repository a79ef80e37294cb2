"""
Integration tests against the live Podio API.

These tests need real credentials (PODIO_CLIENT_ID, PODIO_CLIENT_SECRET,
PODIO_USERNAME, PODIO_PASSWORD) and an app to read from (PODIO_TEST_APP_ID).
They are skipped when any of them is missing.

Every test here is read-only: migrations run as dry runs and cleanups only
detect, so the test app is never modified. Tokens and job records go to a
temporary directory.
"""

import os
from dataclasses import replace
from pathlib import Path

import pytest

from podio_migrator.config import PodioConfig
from podio_migrator.context import AppContext
from podio_migrator.field_mapping import get_app_fields, suggest_field_mapping
from podio_migrator.items import fetch_item_count, filter_items, stream_item_pages
from podio_migrator.models import CleanupRequest, MigrationRequest


@pytest.fixture(scope="module")
def test_app_id() -> int:
    return int(os.environ["PODIO_TEST_APP_ID"])


@pytest.fixture(scope="module")
def context(tmp_path_factory: pytest.TempPathFactory) -> AppContext:
    """A context whose token cache and job records live in a temporary directory."""
    workdir: Path = tmp_path_factory.mktemp("podio")
    config = replace(
        PodioConfig.from_env(),
        token_cache_path=str(workdir / "token-cache.json"),
        jobs_dir=str(workdir / "jobs"),
    )
    return AppContext(config)


@pytest.mark.integration
class TestReadOnlyAccess:
    def test_authentication(self, context: AppContext) -> None:
        assert context.auth.get_access_token()
        assert Path(context.config.token_cache_path).exists()

    def test_app_schema(self, context: AppContext, test_app_id: int) -> None:
        fields = get_app_fields(context.client, test_app_id)
        assert fields, "test app has no active fields"
        assert all(f.external_id for f in fields)

    def test_rate_limit_headers_are_tracked(self, context: AppContext, test_app_id: int) -> None:
        filter_items(context.client, test_app_id, limit=1)
        assert context.tracker.state is not None

    def test_streaming_matches_count(self, context: AppContext, test_app_id: int) -> None:
        total = fetch_item_count(context.client, test_app_id)
        streamed = sum(len(page.items) for page in stream_item_pages(context.client, test_app_id, page_size=100))
        assert streamed == total

    def test_mapping_an_app_onto_itself(self, context: AppContext, test_app_id: int) -> None:
        fields = get_app_fields(context.client, test_app_id)
        mapping = suggest_field_mapping(fields, fields)
        assert all(source == target for source, target in mapping.items())


@pytest.mark.integration
class TestDryRuns:
    def test_migration_dry_run(self, context: AppContext, test_app_id: int) -> None:
        request = MigrationRequest(source_app_id=test_app_id, target_app_id=test_app_id, dry_run=True)
        total = fetch_item_count(context.client, test_app_id)

        preview = context.jobs.dry_run(request)

        assert preview.summary["would_create"] == total
        assert context.jobs.list_jobs() == []

    def test_cleanup_dry_run(self, context: AppContext, test_app_id: int) -> None:
        fields = get_app_fields(context.client, test_app_id)
        match_field = next((f.external_id for f in fields if f.type == "text"), None)
        if match_field is None:
            pytest.skip("test app has no text field to match duplicates on")
        request = CleanupRequest(app_id=test_app_id, match_field=match_field, dry_run=True)

        job_id = context.jobs.start_cleanup(request)
        job = context.jobs.wait(job_id, timeout=600)

        assert job.status == "completed"
        assert all(g.keep_item_id is not None for g in job.duplicate_groups)
