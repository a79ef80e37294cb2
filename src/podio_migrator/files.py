"""File transfer between Podio items.

Podio has no copy endpoint for files: each file is downloaded from the source
item, uploaded again, and attached to the target item. Files are transferred
independently; a failed file is reported in the result and the remaining
files still go through. Only a transfer in which every file failed raises.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .exceptions import FileTransferError, PodioApiError

if TYPE_CHECKING:
    from .http_client import PodioHttpClient

logger: logging.Logger = logging.getLogger(__name__)

DEFAULT_CONCURRENT_TRANSFERS = 3


@dataclass
class FileTransferResult:
    """Outcome of transferring one item's files."""

    source_item_id: int
    target_item_id: int
    transferred: dict[int, int] = field(default_factory=dict)  # source file_id -> new file_id
    failed: dict[int, str] = field(default_factory=dict)  # source file_id -> error

    @property
    def total(self) -> int:
        return len(self.transferred) + len(self.failed)


def get_item_files(client: PodioHttpClient, item_id: int) -> list[dict[str, Any]]:
    """Files attached to an item (Podio includes them in ``GET /item/{id}``)."""
    item = client.get(f"/item/{item_id}") or {}
    return list(item.get("files") or [])


def get_file(client: PodioHttpClient, file_id: int) -> dict[str, Any]:
    return client.get(f"/file/{file_id}")


def download_file(client: PodioHttpClient, file_id: int) -> bytes:
    return client.get(f"/file/{file_id}/raw", raw=True)


def upload_file(client: PodioHttpClient, filename: str, content: bytes) -> int:
    """Upload a file and return its new file id."""
    data = client.request(
        "POST",
        "/file/",
        data={"filename": filename},
        files={"source": (filename, content)},
    )
    return int(data["file_id"])


def attach_file_to_item(client: PodioHttpClient, file_id: int, item_id: int) -> None:
    client.post(f"/file/{file_id}/attach", {"ref_type": "item", "ref_id": item_id})


def _transfer_one(client: PodioHttpClient, source_file: dict[str, Any], target_item_id: int) -> int:
    file_id = int(source_file["file_id"])
    info = source_file if source_file.get("name") else get_file(client, file_id)
    content = download_file(client, file_id)
    new_file_id = upload_file(client, info.get("name") or f"file-{file_id}", content)
    attach_file_to_item(client, new_file_id, target_item_id)
    return new_file_id


def transfer_item_files(
    client: PodioHttpClient,
    source_item_id: int,
    target_item_id: int,
    *,
    source_files: list[dict[str, Any]] | None = None,
    concurrent_transfers: int = DEFAULT_CONCURRENT_TRANSFERS,
) -> FileTransferResult:
    """Copy every file of ``source_item_id`` onto ``target_item_id``.

    Args:
        client: Podio gateway
        source_item_id: Item to copy files from
        target_item_id: Item to attach the copies to
        source_files: File list if already known (skips fetching the source item)
        concurrent_transfers: Number of files transferred at once

    Returns:
        Per-file outcome.

    Raises:
        FileTransferError: If the item has files and none could be transferred.
    """
    if source_files is None:
        source_files = get_item_files(client, source_item_id)
    result = FileTransferResult(source_item_id=source_item_id, target_item_id=target_item_id)
    if not source_files:
        return result

    def transfer(source_file: dict[str, Any]) -> int | PodioApiError:
        try:
            return _transfer_one(client, source_file, target_item_id)
        except PodioApiError as e:
            return e

    with ThreadPoolExecutor(max_workers=max(1, concurrent_transfers)) as pool:
        for source_file, outcome in zip(source_files, pool.map(transfer, source_files), strict=True):
            file_id = int(source_file["file_id"])
            if isinstance(outcome, PodioApiError):
                logger.warning(
                    f"Failed to transfer file {file_id} ({source_file.get('name', '?')}) "
                    f"from item {source_item_id} to {target_item_id}: {outcome}"
                )
                result.failed[file_id] = str(outcome)
            else:
                result.transferred[file_id] = outcome

    logger.info(
        f"Transferred {len(result.transferred)}/{result.total} files from item {source_item_id} to {target_item_id}"
    )
    if not result.transferred:
        msg = (
            f"All file transfers failed: 0/{result.total} files transferred "
            f"from item {source_item_id} to {target_item_id}"
        )
        raise FileTransferError(msg)
    return result
