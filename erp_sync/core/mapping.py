"""
Field-mapping transformer.

A mapping table is ``{entity_type: {erp_field: internal_field}}``.  The
transforms below are pure: they never mutate their inputs and always
return a new dict.
"""

from __future__ import annotations

from typing import Any

MappingTable = dict[str, dict[str, str]]


def apply_mapping(
    record: dict[str, Any],
    entity_type: str,
    mappings: MappingTable | None,
) -> dict[str, Any]:
    """ERP record → internal record.

    Mapped fields are renamed; unmapped fields pass through unchanged.
    When a mapped value and a verbatim field share a name, the mapped
    value wins.
    """
    table = (mappings or {}).get(entity_type)
    if not table:
        return dict(record)

    mapped: dict[str, Any] = {}
    for erp_field, internal_field in table.items():
        if record.get(erp_field) is not None:
            mapped[internal_field] = record[erp_field]

    for key, value in record.items():
        if key not in table and key not in mapped:
            mapped[key] = value

    return mapped


def apply_reverse_mapping(
    record: dict[str, Any],
    entity_type: str,
    mappings: MappingTable | None,
) -> dict[str, Any]:
    """Internal record → ERP record.  Only mapped fields are emitted."""
    table = (mappings or {}).get(entity_type)
    if not table:
        return dict(record)

    reverse = {internal_field: erp_field for erp_field, internal_field in table.items()}
    return {
        erp_field: record[internal_field]
        for internal_field, erp_field in reverse.items()
        if record.get(internal_field) is not None
    }


def unmapped_fields(
    record: dict[str, Any],
    entity_type: str,
    mappings: MappingTable | None,
) -> set[str]:
    """Fields of an ERP record that a forward + reverse round-trip drops."""
    table = (mappings or {}).get(entity_type)
    if not table:
        return set()
    return {key for key in record if key not in table}


def merge_mappings(base: MappingTable | None, overlay: MappingTable | None) -> MappingTable:
    """Overlay *overlay* onto *base*; a supplied entity-type table replaces the old one."""
    merged: MappingTable = {k: dict(v) for k, v in (base or {}).items()}
    for entity_type, table in (overlay or {}).items():
        merged[entity_type] = dict(table)
    return merged
