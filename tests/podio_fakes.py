"""
In-memory stand-in for the Podio gateway used by the unit tests.

``FakePodio`` answers the same calls as ``PodioHttpClient`` (``get``,
``post``, ``put``, ``delete``, ``request``) from dicts of apps and items, and
records every call so tests can assert on writes.
"""

from __future__ import annotations

import itertools
import re
import threading
from collections.abc import Callable
from typing import Any

from podio_migrator.exceptions import PodioApiError
from podio_migrator.rate_limit import RateLimitTracker
from podio_migrator.retry import DEFAULT_RETRY_CONFIG

WRITE_METHODS = frozenset({"POST", "PUT", "DELETE"})

FailHook = Callable[[str, str, Any], Exception | None]


def text_field(external_id: str, value: Any, field_type: str = "text") -> dict[str, Any]:
    """A Podio item field entry with one value."""
    return {"external_id": external_id, "type": field_type, "values": [{"value": value}]}


def app_field(field_id: int, external_id: str, field_type: str = "text", label: str | None = None) -> dict[str, Any]:
    """A field definition as returned by ``GET /app/{app_id}``."""
    return {
        "field_id": field_id,
        "external_id": external_id,
        "type": field_type,
        "label": label or external_id.replace("-", " ").title(),
        "status": "active",
    }


def make_item(
    item_id: int, fields: list[dict[str, Any]], created_on: str | None = None, **extra: Any
) -> dict[str, Any]:
    """A raw item; ``created_on`` defaults to a timestamp that sorts by ``item_id``."""
    return {
        "item_id": item_id,
        "title": extra.pop("title", f"Item {item_id}"),
        "created_on": created_on or f"2024-01-01 00:{item_id // 60 % 60:02d}:{item_id % 60:02d}",
        "fields": fields,
        **extra,
    }


class FakePodio:
    """Fake gateway backed by in-memory apps.

    Attributes:
        apps: app_id -> list of field definitions
        items: app_id -> list of raw items, in insertion order
        calls: every call as (method, path, body)
        fail_hook: called before every call; a returned exception is raised
    """

    def __init__(self) -> None:
        self.tracker = RateLimitTracker(sleep=lambda _s: None)
        self.retry_config = DEFAULT_RETRY_CONFIG
        self.apps: dict[int, list[dict[str, Any]]] = {}
        self.items: dict[int, list[dict[str, Any]]] = {}
        self.files: dict[int, bytes] = {}
        self.calls: list[tuple[str, str, Any]] = []
        self.fail_hook: FailHook | None = None
        self._ids = itertools.count(100_000)
        self._lock = threading.RLock()

    # setup helpers

    def add_app(self, app_id: int, fields: list[dict[str, Any]]) -> None:
        self.apps[app_id] = fields
        self.items.setdefault(app_id, [])

    def add_item(self, app_id: int, item: dict[str, Any]) -> dict[str, Any]:
        self.items.setdefault(app_id, []).append(item)
        return item

    @property
    def writes(self) -> list[tuple[str, str, Any]]:
        """Mutating calls (filter queries are reads even though they are POSTs)."""
        return [c for c in self.calls if c[0] in WRITE_METHODS and not c[1].endswith("/filter/")]

    # gateway interface

    def get(self, path: str, **kwargs: Any) -> Any:
        return self.request("GET", path, **kwargs)

    def post(self, path: str, body: Any = None, **kwargs: Any) -> Any:
        return self.request("POST", path, json=body, **kwargs)

    def put(self, path: str, body: Any = None, **kwargs: Any) -> Any:
        return self.request("PUT", path, json=body, **kwargs)

    def delete(self, path: str, **kwargs: Any) -> Any:
        return self.request("DELETE", path, **kwargs)

    def request(self, method: str, path: str, *, json: Any = None, **kwargs: Any) -> Any:
        with self._lock:
            self.calls.append((method, path, json))
        if self.fail_hook is not None:
            error = self.fail_hook(method, path, json)
            if error is not None:
                raise error
        with self._lock:
            return self._dispatch(method, path, json, kwargs)

    def _dispatch(self, method: str, path: str, body: Any, kwargs: dict[str, Any]) -> Any:
        if m := re.fullmatch(r"/app/(\d+)", path):
            return {"app_id": int(m[1]), "fields": self.apps.get(int(m[1]), [])}
        if m := re.fullmatch(r"/item/app/(\d+)/filter/", path):
            return self._filter(int(m[1]), body or {})
        if m := re.fullmatch(r"/item/app/(\d+)/", path):
            return self._create(int(m[1]), body or {})
        if m := re.fullmatch(r"/item/(\d+)", path):
            item_id = int(m[1])
            if method == "GET":
                return self._find(item_id)[1]
            if method == "PUT":
                return self._update(item_id, body or {})
            if method == "DELETE":
                app_id, item = self._find(item_id)
                self.items[app_id].remove(item)
                return None
        if m := re.fullmatch(r"/file/(\d+)/raw", path):
            if int(m[1]) not in self.files:
                msg = f"File {m[1]} not found"
                raise PodioApiError(msg, status_code=404, error_code="not_found")
            return self.files[int(m[1])]
        if path == "/file/":
            new_id = next(self._ids)
            self.files[new_id] = kwargs["files"]["source"][1]
            return {"file_id": new_id}
        if re.fullmatch(r"/file/(\d+)/attach", path):
            return None
        msg = f"Unexpected call {method} {path}"
        raise PodioApiError(msg, status_code=404)

    def _find(self, item_id: int) -> tuple[int, dict[str, Any]]:
        for app_id, items in self.items.items():
            for item in items:
                if item["item_id"] == item_id:
                    return app_id, item
        msg = f"Item {item_id} not found"
        raise PodioApiError(msg, status_code=404, error_code="not_found")

    def _filter(self, app_id: int, body: dict[str, Any]) -> dict[str, Any]:
        items = list(self.items.get(app_id, []))
        for key, wanted in (body.get("filters") or {}).items():
            if key in ("created_on", "last_event_on", "tags"):
                continue
            items = [i for i in items if self._field_text(i, key) == str(wanted).strip().lower()]
        if body.get("sort_by") == "created_on":
            items.sort(key=lambda i: (i.get("created_on") or "", i["item_id"]), reverse=bool(body.get("sort_desc")))
        offset, limit = body.get("offset", 0), body.get("limit", 500)
        return {
            "filtered": len(items),
            "total": len(self.items.get(app_id, [])),
            "items": [dict(i) for i in items[offset : offset + limit]],
        }

    @staticmethod
    def _field_text(item: dict[str, Any], external_id: str) -> str:
        for f in item.get("fields", []):
            if f["external_id"] == external_id and f.get("values"):
                return str(f["values"][0].get("value")).strip().lower()
        return ""

    def _to_fields(self, app_id: int, payload: dict[str, Any]) -> list[dict[str, Any]]:
        types = {f["external_id"]: f["type"] for f in self.apps.get(app_id, [])}
        fields = []
        for external_id, value in payload.items():
            values = [{"value": v} for v in value] if isinstance(value, list) else [{"value": value}]
            fields.append({"external_id": external_id, "type": types.get(external_id, "text"), "values": values})
        return fields

    def _create(self, app_id: int, body: dict[str, Any]) -> dict[str, Any]:
        item_id = next(self._ids)
        item = make_item(item_id, self._to_fields(app_id, body.get("fields", {})), external_id=body.get("external_id"))
        self.items.setdefault(app_id, []).append(item)
        return {"item_id": item_id}

    def _update(self, item_id: int, body: dict[str, Any]) -> dict[str, Any]:
        app_id, item = self._find(item_id)
        updated = {f["external_id"]: f for f in item["fields"]}
        for f in self._to_fields(app_id, body.get("fields", {})):
            updated[f["external_id"]] = f
        item["fields"] = list(updated.values())
        return {"revision": 2}


def fail_once(predicate: Callable[[str, str, Any], bool], error: Callable[[], Exception]) -> FailHook:
    """A fail hook raising ``error()`` the first time each distinct matching call is seen."""
    seen: set[str] = set()
    lock = threading.Lock()

    def hook(method: str, path: str, body: Any) -> Exception | None:
        if not predicate(method, path, body):
            return None
        key = f"{method} {path} {body!r}"
        with lock:
            if key in seen:
                return None
            seen.add(key)
        return error()

    return hook
