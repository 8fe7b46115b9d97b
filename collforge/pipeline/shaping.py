"""
Input cleaning and result shaping for the collforge pipeline.

Input side (ValidateInput / RunValidators stages):
    clean_input() rejects unknown and read-only fields and coerces values.
    field_errors() checks required fields and each value's validation rule.

Output side (CoerceTypes stage):
    shape_record() coerces stored values to python types, evaluates computed
    fields in dependency order and applies the select projection.
"""

from __future__ import annotations

import logging
from difflib import get_close_matches
from typing import Any, Dict, List, Mapping, Optional, Sequence

from ..errors import HookError, UnknownFieldError, ValidationError
from ..schema.resolved import ResolvedCollection

logger = logging.getLogger(__name__)


def clean_input(collection: ResolvedCollection, data: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Reject unknown or read-only fields and coerce values.

    Raises:
        UnknownFieldError: For a field the collection does not have
        ValidationError: For system, computed or reverse-relation fields
    """
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ValidationError(
            f"data must be a mapping, got {type(data).__name__}", collection=collection.slug
        )

    errors: Dict[str, List[str]] = {}
    cleaned: Dict[str, Any] = {}
    for name, value in data.items():
        f = collection.get_field(name)
        if f is None:
            suggestions = get_close_matches(name, collection.get_field_names(), n=3)
            raise UnknownFieldError(name, collection.slug, suggestions)
        if f.system or not f.stored:
            errors.setdefault(name, []).append("read-only")
            continue
        cleaned[name] = f.coerce(value)

    if errors:
        raise ValidationError.from_field_errors(collection.slug, errors)
    return cleaned


def apply_defaults(collection: ResolvedCollection, data: Dict[str, Any]) -> Dict[str, Any]:
    """Fill missing input fields from their defaults (create only)."""
    result = dict(data)
    for f in collection.input_fields():
        if f.name not in result and f.definition.default is not None:
            result[f.name] = f.coerce(f.definition.default_value())
    return result


def field_errors(
    collection: ResolvedCollection,
    data: Mapping[str, Any],
    partial: bool = False,
) -> Dict[str, List[str]]:
    """Validate values against the resolved rules.

    Args:
        collection: Target collection
        data: Payload to check
        partial: Only check the fields present (update)

    Returns:
        Mapping of field name -> messages (empty when valid)
    """
    errors: Dict[str, List[str]] = {}
    for f in collection.input_fields():
        present = f.name in data
        value = data.get(f.name)
        if value is None:
            if f.required and (present or not partial):
                errors.setdefault(f.name, []).append(f"Field '{f.name}' is required")
            continue
        message = f.check(value)
        if message:
            errors.setdefault(f.name, []).append(message)
    return errors


def coerce_record(collection: ResolvedCollection, record: Mapping[str, Any]) -> Dict[str, Any]:
    """Convert stored values to python values."""
    result: Dict[str, Any] = {}
    for name, value in record.items():
        f = collection.get_field(name)
        result[name] = f.coerce(value) if f is not None else value
    return result


def apply_computed(collection: ResolvedCollection, record: Dict[str, Any]) -> Dict[str, Any]:
    """Evaluate computed fields after their dependencies are materialized."""
    for f in collection.computed_order():
        spec = f.definition.computed
        assert spec is not None
        values = {name: record.get(name) for name in spec.depends_on}
        try:
            record[f.name] = spec.compute(values)
        except Exception as e:
            logger.error(f"Computed field '{collection.slug}.{f.name}' failed: {e}")
            raise HookError(
                str(e), stage="compute", origin=f.owner, collection=collection.slug, hook=f.name
            ) from e
    return record


def project(record: Dict[str, Any], select: Optional[Sequence[str]]) -> Dict[str, Any]:
    """Keep the selected fields; id is always kept."""
    if select is None:
        return record
    keep = set(select) | {"id"}
    return {k: v for k, v in record.items() if k in keep}


def validate_select(collection: ResolvedCollection, names: Optional[Sequence[str]]) -> None:
    for name in names or ():
        if not collection.has_field(name):
            suggestions = get_close_matches(name, collection.get_field_names(), n=3)
            raise UnknownFieldError(name, collection.slug, suggestions)


def validate_include(collection: ResolvedCollection, names: Sequence[str]) -> None:
    for name in names:
        f = collection.get_field(name)
        if f is None:
            suggestions = get_close_matches(name, collection.get_field_names(), n=3)
            raise UnknownFieldError(name, collection.slug, suggestions)
        if not f.descriptor.relation:
            raise ValidationError(
                f"Field '{name}' is not a relation and cannot be included",
                collection=collection.slug,
                errors={name: ["not a relation"]},
            )


def shape_record(
    collection: ResolvedCollection,
    record: Optional[Mapping[str, Any]],
    select: Optional[Sequence[str]] = None,
) -> Optional[Dict[str, Any]]:
    """Coerce, compute and project one record."""
    if record is None:
        return None
    shaped = coerce_record(collection, record)
    apply_computed(collection, shaped)
    return project(shaped, select)
