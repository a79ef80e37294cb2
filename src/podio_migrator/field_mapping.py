"""Field mapping between two Podio apps and match-field validation.

A field mapping is a dict from source field external_id to target field
external_id. It can be proposed automatically (``suggest_field_mapping``)
from the two app schemas, or supplied by the operator. In both cases no entry
may point at a target field whose type is read-only in the Podio API.

Calculation fields are asymmetric: they are never a valid write target, but
their computed value can be read from a source item and written into a text
or number field of the target app.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from difflib import SequenceMatcher
from typing import TYPE_CHECKING, Any, Final

from .field_values import extract_field_value
from .models import AppField

if TYPE_CHECKING:
    from .http_client import PodioHttpClient
    from .models import PodioItem

logger: logging.Logger = logging.getLogger(__name__)

READ_ONLY_TARGET_FIELD_TYPES: Final[frozenset[str]] = frozenset(
    {"calculation", "created_on", "created_by", "created_via", "app_item_id_icon"}
)
# System fields whose values are never copied. Calculation values are.
SYSTEM_SOURCE_FIELD_TYPES: Final[frozenset[str]] = frozenset({"created_on", "created_by", "created_via"})

# Pairs that are not identical but still transfer meaningfully
COMPATIBLE_TYPES: Final[dict[str, frozenset[str]]] = {
    "text": frozenset({"link"}),
    "link": frozenset({"text"}),
    "number": frozenset({"money", "progress"}),
    "money": frozenset({"number"}),
    "progress": frozenset({"number"}),
    "date": frozenset({"duration"}),
    "duration": frozenset({"date"}),
    "calculation": frozenset({"text", "number"}),
}

MATCH_FIELD_TYPES: Final[frozenset[str]] = frozenset({"text", "number", "calculation"})
# Types with no stable equality at all; matching on them needs an explicit override
UNMATCHABLE_FIELD_TYPES: Final[frozenset[str]] = frozenset(
    {
        "app",
        "category",
        "contact",
        "date",
        "image",
        "file",
        "embed",
        "created_on",
        "created_by",
        "created_via",
    }
)

DEFAULT_LABEL_SIMILARITY: Final[float] = 0.8


@dataclass
class MatchFieldCheck:
    """Result of validating a match field. Warnings are overridable, errors are not."""

    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    needs_override: bool = False

    @property
    def ok(self) -> bool:
        return not self.errors


def get_app_fields(client: PodioHttpClient, app_id: int) -> list[AppField]:
    """Active fields of an app (``GET /app/{app_id}``)."""
    app = client.get(f"/app/{app_id}") or {}
    fields = [AppField.from_api(f) for f in app.get("fields") or []]
    return [f for f in fields if f.status != "deleted"]


def is_read_only_target(field_type: str) -> bool:
    return field_type in READ_ONLY_TARGET_FIELD_TYPES


def is_compatible(source_type: str, target_type: str) -> bool:
    """Whether a source field's values can be written to a target field type."""
    if is_read_only_target(target_type):
        return False
    return source_type == target_type or target_type in COMPATIBLE_TYPES.get(source_type, frozenset())


def _normalize_label(label: str) -> str:
    return re.sub(r"[\W_]+", " ", label).strip().lower()


def label_similarity(a: str, b: str) -> float:
    """Similarity of two field labels in [0, 1], ignoring case and punctuation."""
    left, right = _normalize_label(a), _normalize_label(b)
    if not left or not right:
        return 0.0
    if left == right:
        return 1.0
    return SequenceMatcher(None, left, right).ratio()


def suggest_field_mapping(
    source_fields: list[AppField],
    target_fields: list[AppField],
    *,
    min_similarity: float = DEFAULT_LABEL_SIMILARITY,
) -> dict[str, str]:
    """Propose a mapping from source to target external ids.

    First pass maps equal external ids. Second pass maps each remaining
    source field to the most similar unmapped target label, provided the
    types are compatible and the similarity reaches ``min_similarity``.
    Read-only targets are never proposed.
    """
    writable = [t for t in target_fields if not is_read_only_target(t.type) and t.external_id]
    mapping: dict[str, str] = {}
    used: set[str] = set()

    by_external_id = {t.external_id: t for t in writable}
    for source in source_fields:
        if source.type in SYSTEM_SOURCE_FIELD_TYPES or not source.external_id:
            continue
        target = by_external_id.get(source.external_id)
        if target is not None and is_compatible(source.type, target.type):
            mapping[source.external_id] = target.external_id
            used.add(target.external_id)
            logger.debug(f"Mapped field by external_id: {source.external_id} ({target.type})")

    for source in source_fields:
        if source.external_id in mapping or source.type in SYSTEM_SOURCE_FIELD_TYPES or not source.external_id:
            continue
        best: tuple[float, bool, AppField] | None = None
        for target in writable:
            if target.external_id in used or not is_compatible(source.type, target.type):
                continue
            score = label_similarity(source.label, target.label)
            if score < min_similarity:
                continue
            candidate = (score, source.type == target.type, target)
            if best is None or candidate[:2] > best[:2]:
                best = candidate
        if best is not None:
            target = best[2]
            mapping[source.external_id] = target.external_id
            used.add(target.external_id)
            logger.debug(f"Mapped field by label: '{source.label}' -> '{target.label}' ({best[0]:.2f})")

    logger.info(
        f"Suggested field mapping: {len(mapping)} of {len(source_fields)} source fields mapped "
        f"({len(writable)} writable target fields)"
    )
    return mapping


def is_field_id_mapping(mapping: dict[str, str]) -> bool:
    """Whether every key and value of a mapping is a numeric field id rather than an external id."""
    return bool(mapping) and all(str(k).isdigit() and str(v).isdigit() for k, v in mapping.items())


def convert_field_ids_to_external_ids(
    mapping: dict[str, str],
    source_fields: list[AppField],
    target_fields: list[AppField],
) -> dict[str, str]:
    """Turn a field_id-keyed mapping into an external_id-keyed one, dropping read-only targets."""
    sources = {str(f.field_id): f for f in source_fields}
    targets = {str(f.field_id): f for f in target_fields}
    converted: dict[str, str] = {}
    for source_id, target_id in mapping.items():
        source, target = sources.get(str(source_id)), targets.get(str(target_id))
        if source is None or target is None or not source.external_id or not target.external_id:
            logger.warning(f"Could not convert field mapping {source_id} -> {target_id} to external ids")
            continue
        if is_read_only_target(target.type):
            logger.debug(f"Dropping read-only target field {target.external_id} ({target.type})")
            continue
        converted[source.external_id] = target.external_id
    return converted


def validate_field_mapping(
    mapping: dict[str, str],
    source_fields: list[AppField],
    target_fields: list[AppField],
) -> list[str]:
    """Problems with a mapping against the current schemas (unknown or read-only fields)."""
    sources = {f.external_id: f for f in source_fields}
    targets = {f.external_id: f for f in target_fields}
    problems: list[str] = []
    for source_id, target_id in mapping.items():
        if source_id not in sources:
            problems.append(f"Source field '{source_id}' does not exist")
        target = targets.get(target_id)
        if target is None:
            problems.append(f"Target field '{target_id}' does not exist")
        elif is_read_only_target(target.type):
            problems.append(f"Target field '{target_id}' is read-only ({target.type}) and will be skipped")
    return problems


def check_match_field_type(field_type: str, *, role: str = "match") -> MatchFieldCheck:
    check = MatchFieldCheck()
    if field_type in MATCH_FIELD_TYPES:
        return check
    if field_type in UNMATCHABLE_FIELD_TYPES:
        check.needs_override = True
        check.warnings.append(
            f"{role} field type '{field_type}' has no stable equality; matches will be unreliable"
        )
    else:
        check.warnings.append(
            f"{role} field type '{field_type}' is not text, number or calculation; "
            "values are compared after normalization"
        )
    return check


def validate_match_fields(
    source_fields: list[AppField],
    target_fields: list[AppField],
    source_match_field: str,
    target_match_field: str,
) -> MatchFieldCheck:
    """Check that both match fields exist and have matchable, agreeing types."""
    check = MatchFieldCheck()
    source = next((f for f in source_fields if f.external_id == source_match_field), None)
    target = next((f for f in target_fields if f.external_id == target_match_field), None)
    if source is None:
        check.errors.append(f"Source match field '{source_match_field}' not found in source app")
    if target is None:
        check.errors.append(f"Target match field '{target_match_field}' not found in target app")
    if source is None or target is None:
        return check

    for role, f in (("Source match", source), ("Target match", target)):
        sub = check_match_field_type(f.type, role=role)
        check.warnings.extend(sub.warnings)
        check.needs_override = check.needs_override or sub.needs_override
    if source.type != target.type and not is_compatible(source.type, target.type):
        check.warnings.append(f"Match field types differ: {source.type} -> {target.type}")
    return check


def map_item_fields(
    item: PodioItem,
    mapping: dict[str, str],
    target_types: dict[str, str] | None = None,
) -> dict[str, Any]:
    """Build the target ``fields`` payload for one source item.

    Args:
        item: Source item
        mapping: Source external_id -> target external_id
        target_types: Target external_id -> field type, used to skip read-only targets

    Returns:
        Target external_id -> write value. Read-only targets are left out;
        ``validate_field_mapping`` reports them once per job.
    """
    payload: dict[str, Any] = {}
    target_types = target_types or {}
    for source_field in item.fields:
        target_id = mapping.get(source_field.get("external_id", ""))
        if not target_id:
            continue
        if source_field.get("type") in SYSTEM_SOURCE_FIELD_TYPES:
            continue
        if is_read_only_target(target_types.get(target_id, "")):
            continue
        value = extract_field_value(source_field)
        if value is None:
            continue
        payload[target_id] = value.to_payload()
    return payload
