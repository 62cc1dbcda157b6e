"""Declarative field mapping between canonical records and provider payloads.

Defines:
- MappingDirection: Which conversions a FieldMapping participates in.
- FieldMapping: One canonical field <-> provider field pair with optional
  pure transforms for each direction.
- map_to_crm(): Canonical record (model or dict) -> provider field dict.
- map_from_crm(): Provider field dict -> canonical field dict.

Missing and null source values are skipped in both directions so a
partial update never clobbers the other side with nulls. Empty tag lists
and empty custom-field dicts count as missing.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any

from pydantic import BaseModel

Transform = Callable[[Any], Any]


class MappingDirection(str, Enum):
    TO_CRM = "to_crm"
    FROM_CRM = "from_crm"
    BIDIRECTIONAL = "bidirectional"


@dataclass(frozen=True)
class FieldMapping:
    """Canonical field ``local_field`` maps to provider field ``crm_field``.

    ``crm_field`` may be dotted (``properties.email``) to address nested
    provider payloads.
    """

    local_field: str
    crm_field: str
    direction: MappingDirection = MappingDirection.BIDIRECTIONAL
    to_crm_transform: Transform | None = None
    from_crm_transform: Transform | None = None

    @property
    def writes_to_crm(self) -> bool:
        return self.direction in (MappingDirection.TO_CRM, MappingDirection.BIDIRECTIONAL)

    @property
    def reads_from_crm(self) -> bool:
        return self.direction in (MappingDirection.FROM_CRM, MappingDirection.BIDIRECTIONAL)


def _is_missing(value: Any) -> bool:
    return value is None or (isinstance(value, (list, dict, set, tuple)) and not value)


def _get_path(data: dict[str, Any], path: str) -> Any:
    current: Any = data
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return None
        current = current[part]
    return current


def _set_path(data: dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    target = data
    for part in parts[:-1]:
        target = target.setdefault(part, {})
    target[parts[-1]] = value


def map_to_crm(
    record: BaseModel | dict[str, Any],
    mappings: Sequence[FieldMapping],
) -> dict[str, Any]:
    """Convert a canonical record into provider fields.

    Args:
        record: Canonical model instance or a dict of canonical field names.
        mappings: Provider mapping table.

    Returns:
        Dict keyed by provider field names (nested for dotted paths).
    """
    data = record.model_dump() if isinstance(record, BaseModel) else record
    payload: dict[str, Any] = {}

    for mapping in mappings:
        if not mapping.writes_to_crm:
            continue
        value = data.get(mapping.local_field)
        if _is_missing(value):
            continue
        if mapping.to_crm_transform is not None:
            value = mapping.to_crm_transform(value)
            if _is_missing(value):
                continue
        _set_path(payload, mapping.crm_field, value)

    return payload


def map_from_crm(
    data: dict[str, Any],
    mappings: Sequence[FieldMapping],
) -> dict[str, Any]:
    """Convert provider fields into a canonical field dict.

    The result feeds the canonical model constructor; provider metadata
    (native id, timestamps) is added by each provider's mapping module.
    """
    fields: dict[str, Any] = {}

    for mapping in mappings:
        if not mapping.reads_from_crm:
            continue
        value = _get_path(data, mapping.crm_field)
        if _is_missing(value):
            continue
        if mapping.from_crm_transform is not None:
            value = mapping.from_crm_transform(value)
            if _is_missing(value):
                continue
        fields[mapping.local_field] = value

    return fields
