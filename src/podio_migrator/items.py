"""Podio item resource: filtering, streaming, and single-item CRUD."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Final

from .exceptions import PodioApiError
from .models import PodioItem

if TYPE_CHECKING:
    from .http_client import PodioHttpClient

logger: logging.Logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE: Final[int] = 500
PAGE_FETCH_ATTEMPTS: Final[int] = 3


@dataclass
class FilterPage:
    """One page of ``POST /item/app/{app_id}/filter/``."""

    items: list[PodioItem]
    filtered: int
    total: int
    offset: int


@dataclass
class FetchByIdsResult:
    items: list[PodioItem] = field(default_factory=list)
    missing: dict[int, str] = field(default_factory=dict)  # item_id -> error message


def filter_items(
    client: PodioHttpClient,
    app_id: int,
    *,
    filters: dict[str, Any] | None = None,
    limit: int = DEFAULT_PAGE_SIZE,
    offset: int = 0,
    sort_by: str | None = None,
    sort_desc: bool | None = None,
) -> FilterPage:
    body: dict[str, Any] = {"filters": filters or {}, "limit": limit, "offset": offset}
    if sort_by:
        body["sort_by"] = sort_by
    if sort_desc is not None:
        body["sort_desc"] = sort_desc
    retry = client.retry_config.with_overrides(max_attempts=PAGE_FETCH_ATTEMPTS)
    data = client.post(f"/item/app/{app_id}/filter/", body, retry_config=retry) or {}
    return FilterPage(
        items=[PodioItem.from_api(i) for i in data.get("items") or []],
        filtered=int(data.get("filtered") or 0),
        total=int(data.get("total") or 0),
        offset=offset,
    )


def stream_item_pages(
    client: PodioHttpClient,
    app_id: int,
    *,
    page_size: int = DEFAULT_PAGE_SIZE,
    offset: int = 0,
    filters: dict[str, Any] | None = None,
    sort_by: str | None = None,
    sort_desc: bool | None = None,
) -> Iterator[FilterPage]:
    """Yield filter pages in offset order, starting at ``offset``.

    Stops once the next offset reaches the server-reported filtered count.
    Memory stays bounded by one page. Each page fetch is retried on its own,
    so one flaky page does not abort the stream.
    """
    fetched = 0
    while True:
        page = filter_items(
            client,
            app_id,
            filters=filters,
            limit=page_size,
            offset=offset,
            sort_by=sort_by,
            sort_desc=sort_desc,
        )
        if page.items:
            fetched += len(page.items)
            yield page
        offset += page_size
        logger.debug(f"Streamed app {app_id}: {fetched} items so far, next offset {offset}/{page.filtered}")
        if offset >= page.filtered or not page.items:
            break
    logger.info(f"Finished streaming app {app_id}: {fetched} items")


def stream_items(client: PodioHttpClient, app_id: int, **kwargs: Any) -> Iterator[PodioItem]:
    """Item-level view of ``stream_item_pages``."""
    for page in stream_item_pages(client, app_id, **kwargs):
        yield from page.items


def fetch_item_count(client: PodioHttpClient, app_id: int, filters: dict[str, Any] | None = None) -> int:
    """Number of items matching ``filters`` (the ``filtered`` count)."""
    page = filter_items(client, app_id, filters=filters, limit=1, offset=0)
    logger.info(f"App {app_id} has {page.filtered} matching items ({page.total} total)")
    return page.filtered


def get_item(client: PodioHttpClient, item_id: int) -> PodioItem:
    return PodioItem.from_api(client.get(f"/item/{item_id}"))


def fetch_items_by_ids(
    client: PodioHttpClient,
    item_ids: list[int],
    *,
    concurrency: int = 5,
) -> FetchByIdsResult:
    """Fetch items by id. Ids that cannot be fetched are reported, not raised."""
    result = FetchByIdsResult()
    if not item_ids:
        return result

    def fetch(item_id: int) -> PodioItem | PodioApiError:
        try:
            return get_item(client, item_id)
        except PodioApiError as e:
            logger.warning(f"Failed to fetch item {item_id}: {e}")
            return e

    with ThreadPoolExecutor(max_workers=max(1, concurrency)) as pool:
        for item_id, outcome in zip(item_ids, pool.map(fetch, item_ids), strict=True):
            if isinstance(outcome, PodioItem):
                result.items.append(outcome)
            else:
                result.missing[item_id] = str(outcome)

    logger.info(f"Fetched {len(result.items)}/{len(item_ids)} items by id")
    return result


def _write_params(hook: bool, silent: bool) -> dict[str, str]:
    return {"hook": str(hook).lower(), "silent": str(silent).lower()}


def create_item(
    client: PodioHttpClient,
    app_id: int,
    fields: dict[str, Any],
    *,
    external_id: str | None = None,
    hook: bool = False,
    silent: bool = True,
) -> int:
    """Create an item and return its id."""
    body: dict[str, Any] = {"fields": fields}
    if external_id:
        body["external_id"] = external_id
    data = client.post(f"/item/app/{app_id}/", body, params=_write_params(hook, silent))
    return int(data["item_id"])


def update_item(
    client: PodioHttpClient,
    item_id: int,
    fields: dict[str, Any],
    *,
    hook: bool = False,
    silent: bool = True,
) -> Any:
    return client.put(f"/item/{item_id}", {"fields": fields}, params=_write_params(hook, silent))


def delete_item(client: PodioHttpClient, item_id: int, *, hook: bool = False, silent: bool = True) -> None:
    client.delete(f"/item/{item_id}", params=_write_params(hook, silent))


def find_item_by_field_value(
    client: PodioHttpClient,
    app_id: int,
    field_external_id: str,
    value: Any,
) -> PodioItem | None:
    """Return the first item of ``app_id`` whose field equals ``value``, or None."""
    if value is None or value == "":
        return None
    page = filter_items(client, app_id, filters={field_external_id: value}, limit=1, offset=0)
    if not page.items:
        return None
    if page.filtered > 1:
        logger.debug(f"{page.filtered} items in app {app_id} match {field_external_id}={value!r}, using first")
    return page.items[0]
