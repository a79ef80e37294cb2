"""Duplicate detection and cleanup within a single Podio app.

Items are grouped by the normalized value of one match field. Empty values
never form a group. Inside a group items are ordered explicitly by creation
time (oldest first; unparseable timestamps last; ties broken by item id), so
"oldest" and "newest" keep choices never depend on the order the API
happened to return items in.

In manual mode the detected groups are handed back for approval and nothing
is deleted until ``approve_and_execute``. In automated mode the delete-set of
every group goes straight to the bulk executor. A dry run only detects.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import TYPE_CHECKING, Any

from . import bulk
from . import items as item_api
from .exceptions import CleanupValidationError
from .field_mapping import check_match_field_type, get_app_fields
from .models import DuplicateGroup, DuplicateItem
from .normalize import EMPTY, item_match_key
from .utils import parse_datetime

if TYPE_CHECKING:
    from .bulk import BatchProgress, BulkResult
    from .http_client import PodioHttpClient
    from .models import CleanupRequest, KeepStrategy, PodioItem

logger: logging.Logger = logging.getLogger(__name__)


@dataclass
class DetectionResult:
    groups: list[DuplicateGroup] = field(default_factory=list)
    items_scanned: int = 0
    warnings: list[str] = field(default_factory=list)
    stopped: bool = False

    @property
    def items_to_delete(self) -> int:
        return sum(len(g.delete_item_ids) for g in self.groups)


def _creation_sort_key(item: DuplicateItem) -> tuple[int, datetime | None, int]:
    created = parse_datetime(item.created_on)
    if created is None:
        return (1, None, item.item_id)
    return (0, created, item.item_id)


def order_group_items(items: Iterable[DuplicateItem]) -> list[DuplicateItem]:
    """Oldest first; items with missing or invalid timestamps go last."""
    return sorted(items, key=_creation_sort_key)


def apply_keep_strategy(groups: list[DuplicateGroup], strategy: KeepStrategy) -> list[DuplicateGroup]:
    """Choose the keep item of every group and derive its delete-set.

    Returns new groups; the input groups are not modified.
    """
    if strategy not in ("oldest", "newest"):
        msg = f"Unknown keep strategy: {strategy}"
        raise CleanupValidationError(msg)
    result = []
    for group in groups:
        ordered = order_group_items(group.items)
        keep = ordered[0] if strategy == "oldest" else ordered[-1]
        result.append(
            replace(
                group,
                items=ordered,
                keep_item_id=keep.item_id,
                delete_item_ids=[i.item_id for i in ordered if i.item_id != keep.item_id],
            )
        )
    return result


def detect_duplicate_groups(
    items: Iterable[PodioItem],
    match_field: str,
    keep_strategy: KeepStrategy = "oldest",
    *,
    max_groups: int | None = None,
) -> list[DuplicateGroup]:
    """Group items whose normalized match values collide.

    Groups are returned sorted by match value so repeated detection over an
    unchanged collection yields identical output.
    """
    buckets: dict[str, list[DuplicateItem]] = {}
    for item in items:
        key = item_match_key(item, match_field)
        if key == EMPTY:
            continue
        buckets.setdefault(key, []).append(
            DuplicateItem(item_id=item.item_id, title=item.title, created_on=item.created_on, match_value=key)
        )

    groups = [
        DuplicateGroup(match_value=key, items=members)
        for key, members in sorted(buckets.items())
        if len(members) > 1
    ]
    if max_groups is not None:
        groups = groups[:max_groups]
    return apply_keep_strategy(groups, keep_strategy)


def resolve_approved_groups(
    detected: list[DuplicateGroup],
    approved: list[DuplicateGroup | dict[str, Any]],
) -> list[DuplicateGroup]:
    """Validate an operator's approval overlay against the detected groups.

    Each approved entry names a detected group by match value and may pick a
    different keep item from that group's members. Only detected members can
    ever be deleted.

    Raises:
        CleanupValidationError: For unknown groups or keep items outside the group.
    """
    by_value = {g.match_value: g for g in detected}
    resolved = []
    for entry in approved:
        group = entry if isinstance(entry, DuplicateGroup) else DuplicateGroup.from_dict(entry)
        known = by_value.get(group.match_value)
        if known is None:
            msg = f"Approved group '{group.match_value}' was not part of the detection result"
            raise CleanupValidationError(msg)
        member_ids = [i.item_id for i in known.items]
        keep_id = group.keep_item_id if group.keep_item_id is not None else known.keep_item_id
        if keep_id not in member_ids:
            msg = f"Keep item {keep_id} is not a member of group '{group.match_value}'"
            raise CleanupValidationError(msg)
        resolved.append(
            replace(known, keep_item_id=keep_id, delete_item_ids=[i for i in member_ids if i != keep_id])
        )
    return resolved


class CleanupEngine:
    """Runs detection and deletion against the Podio API."""

    def __init__(self, client: PodioHttpClient) -> None:
        self._client = client

    def validate(self, request: CleanupRequest) -> list[str]:
        """Check the match field exists and can be matched on.

        Returns:
            Non-fatal warnings.

        Raises:
            CleanupValidationError: If the field is missing, or its type needs an
                override that the request did not give.
        """
        if request.keep_strategy not in ("oldest", "newest"):
            msg = f"Unknown keep strategy: {request.keep_strategy}"
            raise CleanupValidationError(msg)
        if request.mode not in ("manual", "automated"):
            msg = f"Unknown cleanup mode: {request.mode}"
            raise CleanupValidationError(msg)

        fields = get_app_fields(self._client, request.app_id)
        match = next((f for f in fields if f.external_id == request.match_field), None)
        if match is None:
            msg = f"Match field '{request.match_field}' not found in app {request.app_id}"
            raise CleanupValidationError(msg)

        check = check_match_field_type(match.type)
        if check.needs_override and not request.allow_unsupported_match_type:
            msg = f"{'; '.join(check.warnings)}. Pass allow_unsupported_match_type to match on it anyway"
            raise CleanupValidationError(msg)
        for warning in check.warnings:
            logger.warning(warning)
        return check.warnings

    def detect(
        self,
        request: CleanupRequest,
        *,
        should_stop: Callable[[], bool] = lambda: False,
        on_page: Callable[[int], None] | None = None,
    ) -> DetectionResult:
        """Stream the app oldest-first and compute duplicate groups."""
        result = DetectionResult()

        def scanned_items() -> Iterable[PodioItem]:
            for page in item_api.stream_item_pages(
                self._client, request.app_id, sort_by="created_on", sort_desc=False
            ):
                yield from page.items
                result.items_scanned += len(page.items)
                if on_page is not None:
                    on_page(result.items_scanned)
                if should_stop():
                    result.stopped = True
                    return

        groups = detect_duplicate_groups(
            scanned_items(), request.match_field, request.keep_strategy, max_groups=request.max_groups
        )
        if result.stopped:
            return result
        result.groups = groups
        logger.info(
            f"Detected {len(result.groups)} duplicate groups in app {request.app_id} "
            f"({result.items_scanned} items scanned, {result.items_to_delete} to delete)"
        )
        return result

    def delete(
        self,
        groups: list[DuplicateGroup],
        request: CleanupRequest,
        *,
        on_progress: Callable[[BatchProgress], None] | None = None,
    ) -> BulkResult[int, int]:
        delete_ids = [item_id for g in groups for item_id in g.delete_item_ids]
        logger.info(f"Deleting {len(delete_ids)} duplicate items from app {request.app_id}")
        return bulk.bulk_delete_items(
            self._client, delete_ids, concurrency=request.concurrency, on_progress=on_progress
        )
