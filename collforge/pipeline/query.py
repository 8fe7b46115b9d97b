"""
Query options and predicate evaluation for collforge.

A where clause is a predicate tree:

    {"title": "Hello"}                          equality
    {"deleted_at": None}                        IS NULL
    {"views": {"gte": 10, "lt": 100}}           operators (combined with AND)
    {"AND": [w1, w2]}, {"OR": [w1, w2]}, {"NOT": w}

Sibling keys in one mapping are combined with AND.

Operators:
    eq, ne, gt, gte, lt, lte, in, not_in, contains, starts_with, ends_with

Invariants:
    - Only stored fields (system fields included) can be filtered or sorted
    - Values are coerced to the field's python type during validation, so
      stores compare like with like
    - Comparisons against NULL never match (except eq/ne None)
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field, replace
from datetime import datetime
from difflib import get_close_matches
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from ..errors import UnknownFieldError, ValidationError
from ..schema.resolved import ResolvedCollection

OPERATORS = (
    "eq",
    "ne",
    "gt",
    "gte",
    "lt",
    "lte",
    "in",
    "not_in",
    "contains",
    "starts_with",
    "ends_with",
)
LOGICAL = ("AND", "OR", "NOT")

Where = Dict[str, Any]
OrderBy = Tuple[Tuple[str, str], ...]


@dataclass(frozen=True)
class FindOptions:
    """Options of a read operation.

    Attributes:
        where: Predicate tree
        select: Field names to return (None returns every field)
        include: Relation fields to expand into records
        order_by: (field, "asc"|"desc") pairs
        limit: Maximum number of records
        offset: Records to skip
        locale: Invoking locale (engine default when None)
        include_deleted: Return soft-deleted records too
        cache: Per-call cache options (tags, ttl, skip) or False to bypass
    """

    where: Where = field(default_factory=dict)
    select: Optional[Tuple[str, ...]] = None
    include: Tuple[str, ...] = ()
    order_by: OrderBy = ()
    limit: Optional[int] = None
    offset: int = 0
    locale: Optional[str] = None
    include_deleted: bool = False
    cache: Any = None

    @classmethod
    def build(
        cls,
        where: Optional[Where] = None,
        select: Optional[Iterable[str]] = None,
        include: Optional[Iterable[str]] = None,
        order_by: Any = None,
        limit: Optional[int] = None,
        offset: int = 0,
        locale: Optional[str] = None,
        include_deleted: bool = False,
        cache: Any = None,
    ) -> FindOptions:
        """Normalize caller-supplied options."""
        if limit is not None and (not isinstance(limit, int) or limit < 0):
            raise ValidationError(f"limit must be a non-negative integer, got {limit!r}")
        if not isinstance(offset, int) or offset < 0:
            raise ValidationError(f"offset must be a non-negative integer, got {offset!r}")
        return cls(
            where=dict(where or {}),
            select=tuple(select) if select is not None else None,
            include=tuple(include or ()),
            order_by=parse_order_by(order_by),
            limit=limit,
            offset=offset,
            locale=locale,
            include_deleted=include_deleted,
            cache=cache,
        )

    def with_where(self, where: Where) -> FindOptions:
        return replace(self, where=where)

    def cache_params(self) -> Dict[str, Any]:
        """Parameters that identify the result of this read."""
        return {
            "where": self.where,
            "select": list(self.select) if self.select is not None else None,
            "include": list(self.include),
            "order_by": [list(pair) for pair in self.order_by],
            "limit": self.limit,
            "offset": self.offset,
            "locale": self.locale,
            "include_deleted": self.include_deleted,
        }


def parse_order_by(value: Any) -> OrderBy:
    """Normalize order_by.

    Accepts "title", "-title", ["-created_at", "title"], {"title": "desc"}
    or [("title", "desc")].
    """
    if not value:
        return ()
    if isinstance(value, str):
        value = [value]
    if isinstance(value, Mapping):
        value = list(value.items())

    pairs: List[Tuple[str, str]] = []
    for item in value:
        if isinstance(item, str):
            if item.startswith("-"):
                pairs.append((item[1:], "desc"))
            else:
                pairs.append((item, "asc"))
        else:
            name, direction = item
            direction = str(direction).lower()
            if direction not in ("asc", "desc"):
                raise ValidationError(f"Invalid sort direction {direction!r} for '{name}'")
            pairs.append((name, direction))
    return tuple(pairs)


def and_where(*wheres: Optional[Where]) -> Where:
    """Combine predicates with AND, dropping empty ones."""
    parts = [w for w in wheres if w]
    if not parts:
        return {}
    if len(parts) == 1:
        return dict(parts[0])
    return {"AND": parts}


def _is_operator_map(value: Any) -> bool:
    return isinstance(value, Mapping) and bool(value) and all(k in OPERATORS for k in value)


def _require_field(collection: ResolvedCollection, name: str) -> Any:
    f = collection.get_field(name)
    if f is None or not f.stored:
        candidates = [x.name for x in collection.stored_fields()]
        suggestions = get_close_matches(name, candidates, n=3)
        raise UnknownFieldError(name, collection.slug, suggestions)
    return f


def validate_where(collection: ResolvedCollection, where: Optional[Where]) -> Where:
    """Check field names and operators, and coerce values.

    Returns:
        A new predicate tree with coerced values

    Raises:
        UnknownFieldError: If a field is not a stored field of the collection
        ValidationError: If an operator or logical combinator is malformed
    """
    if not where:
        return {}
    if not isinstance(where, Mapping):
        raise ValidationError(
            f"where must be a mapping, got {type(where).__name__}", collection=collection.slug
        )

    result: Where = {}
    for key, value in where.items():
        if key in ("AND", "OR"):
            if not isinstance(value, (list, tuple)):
                raise ValidationError(f"{key} expects a list of predicates", collection=collection.slug)
            result[key] = [validate_where(collection, w) for w in value]
        elif key == "NOT":
            result[key] = validate_where(collection, value)
        else:
            f = _require_field(collection, key)
            if _is_operator_map(value):
                ops: Dict[str, Any] = {}
                for op, operand in value.items():
                    if op in ("in", "not_in"):
                        if not isinstance(operand, (list, tuple, set)):
                            raise ValidationError(
                                f"Operator '{op}' on '{key}' expects a list",
                                collection=collection.slug,
                            )
                        ops[op] = [f.coerce(v) for v in operand]
                    elif op in ("contains", "starts_with", "ends_with"):
                        ops[op] = operand
                    else:
                        ops[op] = f.coerce(operand)
                result[key] = ops
            elif isinstance(value, Mapping) and any(k in OPERATORS for k in value):
                unknown = [k for k in value if k not in OPERATORS]
                raise ValidationError(
                    f"Unknown operator(s) {unknown} on '{key}'. Valid operators: {list(OPERATORS)}",
                    collection=collection.slug,
                )
            else:
                result[key] = f.coerce(value)
    return result


def validate_order_by(collection: ResolvedCollection, order_by: OrderBy) -> OrderBy:
    for name, _ in order_by:
        _require_field(collection, name)
    return order_by


def _compare(op: str, actual: Any, expected: Any) -> bool:
    if op == "eq":
        return actual == expected
    if op == "ne":
        return actual != expected
    if op == "in":
        return actual in expected
    if op == "not_in":
        return actual not in expected

    if actual is None or expected is None:
        return False

    if op in ("contains", "starts_with", "ends_with"):
        if op == "contains":
            if isinstance(actual, (list, tuple)):
                return expected in actual
            return isinstance(actual, str) and str(expected) in actual
        if not isinstance(actual, str):
            return False
        if op == "starts_with":
            return actual.startswith(str(expected))
        return actual.endswith(str(expected))

    try:
        if op == "gt":
            return actual > expected
        if op == "gte":
            return actual >= expected
        if op == "lt":
            return actual < expected
        if op == "lte":
            return actual <= expected
    except TypeError:
        return False
    raise ValidationError(f"Unknown operator '{op}'")


def matches(record: Mapping[str, Any], where: Optional[Where]) -> bool:
    """Evaluate a validated predicate tree against a record."""
    if not where:
        return True
    for key, value in where.items():
        if key == "AND":
            if not all(matches(record, w) for w in value):
                return False
        elif key == "OR":
            if not any(matches(record, w) for w in value):
                return False
        elif key == "NOT":
            if matches(record, value):
                return False
        elif _is_operator_map(value):
            actual = record.get(key)
            if not all(_compare(op, actual, operand) for op, operand in value.items()):
                return False
        elif record.get(key) != value:
            return False
    return True


def _sort_key(value: Any) -> Tuple[int, Any]:
    # NULLs sort first ascending, like SQLite
    if value is None:
        return (0, 0)
    if isinstance(value, bool):
        return (1, int(value))
    if isinstance(value, (int, float)):
        return (1, value)
    if isinstance(value, datetime):
        return (2, value.timestamp())
    if isinstance(value, str):
        return (3, value)
    return (4, json.dumps(value, sort_keys=True, default=str))


def sort_records(records: List[Dict[str, Any]], order_by: Sequence[Tuple[str, str]]) -> List[Dict[str, Any]]:
    """Stable multi-key sort."""
    result = list(records)
    for name, direction in reversed(order_by):
        result.sort(key=lambda r: _sort_key(r.get(name)), reverse=direction == "desc")
    return result


def paginate(records: List[Any], limit: Optional[int], offset: int) -> List[Any]:
    end = None if limit is None else offset + limit
    return records[offset:end]


def canonical_json(value: Any) -> str:
    """Deterministic serialization used for cache keys."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=_encode_default)


def _encode_default(value: Any) -> Union[str, List[Any]]:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (set, frozenset, tuple)):
        return sorted(value, key=str)
    return repr(value)


def params_digest(params: Mapping[str, Any]) -> str:
    return hashlib.sha256(canonical_json(params).encode("utf-8")).hexdigest()
