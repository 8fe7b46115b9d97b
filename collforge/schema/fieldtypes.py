"""
Field type registry for collforge.

A field type pairs a validation description with a storage-column
description. Named options adjust both; applying options never mutates a
descriptor, it produces a new one.

Invariants:
    - Descriptors are immutable once registered
    - An identifier is registered at most once per scope chain
    - Options apply in the order supplied; later options win on the same key
    - The registry does not detect contradictory options (min > max);
      the resolver reports those as InvalidFieldError

How to change safely:
    - Add new builtin types with new identifiers
    - Add options to a type by extending its options mapping
    - Keep coerce functions idempotent (they run on input and on output)

Example:
    >>> registry = FieldTypeRegistry.with_builtins()
    >>> text = registry.require("text")
    >>> title = resolve_options(text, (("max_length", 120),))
    >>> title.validation.max_length
    120
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, replace
from dataclasses import field as dataclass_field
from datetime import datetime, timezone
from difflib import get_close_matches
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Tuple

from ..errors import DuplicateFieldTypeError, UnknownFieldTypeError, UnknownOptionError

logger = logging.getLogger(__name__)


class ValueKind(Enum):
    """Value categories understood by ValidationRule."""

    TEXT = "text"
    INTEGER = "integer"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATETIME = "datetime"
    JSON = "json"
    SELECT = "select"
    RELATION = "relation"
    VIRTUAL = "virtual"  # never stored, never accepted on input


@dataclass(frozen=True)
class ValidationRule:
    """Validation description of a field type.

    Attributes:
        kind: Value category
        min: Lower bound for numbers
        max: Upper bound for numbers
        min_length: Minimum string length (or list length for multi-select)
        max_length: Maximum string length
        pattern: Regular expression the full value must match
        choices: Allowed values for select fields
        multiple: Whether a select field holds a list of choices
    """

    kind: ValueKind
    min: Optional[float] = None
    max: Optional[float] = None
    min_length: Optional[int] = None
    max_length: Optional[int] = None
    pattern: Optional[str] = None
    choices: Optional[Tuple[str, ...]] = None
    multiple: bool = False

    def check(self, name: str, value: Any) -> Optional[str]:
        """Validate a non-null value.

        Returns:
            Error message if invalid, None if valid
        """
        kind = self.kind

        if kind == ValueKind.TEXT:
            if not isinstance(value, str):
                return f"Field '{name}' must be a string, got {type(value).__name__}"
            if self.min_length is not None and len(value) < self.min_length:
                return f"Field '{name}' must be at least {self.min_length} characters"
            if self.max_length is not None and len(value) > self.max_length:
                return f"Field '{name}' must be at most {self.max_length} characters"
            if self.pattern and not re.fullmatch(self.pattern, value):
                return f"Field '{name}' does not match pattern {self.pattern!r}"

        elif kind in (ValueKind.INTEGER, ValueKind.NUMBER):
            if isinstance(value, bool):
                return f"Field '{name}' must be a number, got bool"
            if kind == ValueKind.INTEGER and not isinstance(value, int):
                return f"Field '{name}' must be an integer, got {type(value).__name__}"
            if not isinstance(value, (int, float)):
                return f"Field '{name}' must be a number, got {type(value).__name__}"
            if self.min is not None and value < self.min:
                return f"Field '{name}' must be >= {self.min}"
            if self.max is not None and value > self.max:
                return f"Field '{name}' must be <= {self.max}"

        elif kind == ValueKind.BOOLEAN:
            if not isinstance(value, bool):
                return f"Field '{name}' must be a boolean, got {type(value).__name__}"

        elif kind == ValueKind.DATETIME:
            if not isinstance(value, datetime):
                return f"Field '{name}' must be a datetime or ISO-8601 string"

        elif kind == ValueKind.JSON:
            if not _is_json(value):
                return f"Field '{name}' must be JSON-serializable"

        elif kind == ValueKind.SELECT:
            values = value if self.multiple else [value]
            if self.multiple and not isinstance(value, list):
                return f"Field '{name}' must be a list, got {type(value).__name__}"
            for item in values:
                if not isinstance(item, str):
                    return f"Field '{name}' must hold strings, got {type(item).__name__}"
                if self.choices and item not in self.choices:
                    return f"Field '{name}' must be one of {self.choices}, got '{item}'"
            if self.multiple and self.min_length is not None and len(values) < self.min_length:
                return f"Field '{name}' needs at least {self.min_length} selections"

        elif kind == ValueKind.RELATION:
            if isinstance(value, bool) or not isinstance(value, (str, int)):
                return f"Field '{name}' must be a record id, got {type(value).__name__}"

        elif kind == ValueKind.VIRTUAL:
            return f"Field '{name}' is read-only"

        return None

    def consistency_errors(self) -> list[str]:
        """List contradictions between constraints."""
        problems: list[str] = []
        if self.min is not None and self.max is not None and self.min > self.max:
            problems.append(f"min {self.min} is greater than max {self.max}")
        if (
            self.min_length is not None
            and self.max_length is not None
            and self.min_length > self.max_length
        ):
            problems.append(
                f"min_length {self.min_length} is greater than max_length {self.max_length}"
            )
        if self.kind == ValueKind.SELECT and not self.choices:
            problems.append("select fields need at least one choice")
        if self.pattern is not None:
            try:
                re.compile(self.pattern)
            except re.error as e:
                problems.append(f"invalid pattern {self.pattern!r}: {e}")
        return problems

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation (unset constraints omitted)."""
        result: dict[str, Any] = {"kind": self.kind.value}
        for key in ("min", "max", "min_length", "max_length", "pattern"):
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.choices:
            result["choices"] = list(self.choices)
        if self.multiple:
            result["multiple"] = True
        return result


@dataclass(frozen=True)
class StorageColumn:
    """Storage-column description of a field type.

    Attributes:
        sql_type: Column affinity used by SQL stores (TEXT, INTEGER, REAL)
        nullable: Whether the column accepts NULL
        length: Optional maximum length hint
        stored: False for virtual fields that have no column
        encoding: Value encoding applied by stores ("json", "datetime", "bool")
        indexed: Whether stores should create an index
        unique: Whether stores should enforce uniqueness
    """

    sql_type: str
    nullable: bool = True
    length: Optional[int] = None
    stored: bool = True
    encoding: Optional[str] = None
    indexed: bool = False
    unique: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation."""
        result: dict[str, Any] = {"sql_type": self.sql_type, "nullable": self.nullable}
        if self.length is not None:
            result["length"] = self.length
        if not self.stored:
            result["stored"] = False
        if self.encoding:
            result["encoding"] = self.encoding
        if self.indexed:
            result["indexed"] = True
        if self.unique:
            result["unique"] = True
        return result


@dataclass(frozen=True)
class OptionDelta:
    """Changes an option applies to a descriptor."""

    validation: Mapping[str, Any] = dataclass_field(default_factory=dict)
    storage: Mapping[str, Any] = dataclass_field(default_factory=dict)


FieldOption = Callable[[Any], OptionDelta]


@dataclass(frozen=True)
class FieldTypeDescriptor:
    """A registered field type.

    Attributes:
        identifier: Registry key (e.g. "text", "relation")
        validation: Base validation description
        storage: Base storage-column description
        options: Named options, each mapping a value to an OptionDelta
        coerce: Converts raw input/stored values to the python type
        relation: Whether the field references another collection
    """

    identifier: str
    validation: ValidationRule
    storage: StorageColumn
    options: Mapping[str, FieldOption] = dataclass_field(
        default_factory=dict, compare=False, hash=False
    )
    coerce: Optional[Callable[[Any], Any]] = dataclass_field(
        default=None, compare=False, hash=False
    )
    relation: bool = False

    @property
    def virtual(self) -> bool:
        """Whether the type has no storage column."""
        return not self.storage.stored

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation for fingerprinting."""
        return {
            "type": self.identifier,
            "validation": self.validation.to_dict(),
            "storage": self.storage.to_dict(),
        }


def resolve_options(
    descriptor: FieldTypeDescriptor,
    options: Iterable[Tuple[str, Any]],
) -> FieldTypeDescriptor:
    """Apply options in order and return a new descriptor.

    Args:
        descriptor: Base descriptor
        options: (option name, value) pairs, applied in order

    Returns:
        New descriptor with accumulated validation and storage deltas

    Raises:
        UnknownOptionError: If the type does not define an option
    """
    validation: Dict[str, Any] = {}
    storage: Dict[str, Any] = {}
    for name, value in options:
        option = descriptor.options.get(name)
        if option is None:
            raise UnknownOptionError(descriptor.identifier, name)
        delta = option(value)
        validation.update(delta.validation)
        storage.update(delta.storage)

    if not validation and not storage:
        return descriptor
    return replace(
        descriptor,
        validation=replace(descriptor.validation, **validation),
        storage=replace(descriptor.storage, **storage),
    )


class FieldTypeRegistry:
    """Scoped registry of field types.

    There is no process-wide instance: build one with with_builtins() and
    pass it through configuration. scope() creates a child that sees the
    parent's types; plugin field types are registered into a child so a
    resolution run never leaks types into the caller's registry.

    Example:
        >>> registry = FieldTypeRegistry.with_builtins()
        >>> child = registry.scope()
        >>> child.register("money", MONEY)
        >>> "money" in registry
        False
    """

    def __init__(self, parent: Optional[FieldTypeRegistry] = None) -> None:
        self._types: Dict[str, FieldTypeDescriptor] = {}
        self._parent = parent

    def register(self, identifier: str, descriptor: FieldTypeDescriptor) -> FieldTypeDescriptor:
        """Register a field type.

        Raises:
            DuplicateFieldTypeError: If identifier exists in the scope chain
        """
        if self.get(identifier) is not None:
            raise DuplicateFieldTypeError(identifier)
        if descriptor.identifier != identifier:
            descriptor = replace(descriptor, identifier=identifier)
        self._types[identifier] = descriptor
        logger.debug(f"Registered field type: {identifier}")
        return descriptor

    def get(self, identifier: str) -> Optional[FieldTypeDescriptor]:
        """Look up a field type in this scope or any parent."""
        registry: Optional[FieldTypeRegistry] = self
        while registry is not None:
            found = registry._types.get(identifier)
            if found is not None:
                return found
            registry = registry._parent
        return None

    def require(self, identifier: str) -> FieldTypeDescriptor:
        """Look up a field type or raise UnknownFieldTypeError."""
        found = self.get(identifier)
        if found is None:
            suggestions = get_close_matches(identifier, self.identifiers(), n=3)
            raise UnknownFieldTypeError(identifier, suggestions)
        return found

    def identifiers(self) -> list[str]:
        """All identifiers visible from this scope."""
        names: list[str] = []
        registry: Optional[FieldTypeRegistry] = self
        while registry is not None:
            names.extend(n for n in registry._types if n not in names)
            registry = registry._parent
        return sorted(names)

    def scope(self) -> FieldTypeRegistry:
        """Create a child scope."""
        return FieldTypeRegistry(parent=self)

    def __contains__(self, identifier: object) -> bool:
        return isinstance(identifier, str) and self.get(identifier) is not None

    @classmethod
    def with_builtins(cls) -> FieldTypeRegistry:
        """Create a registry holding the builtin field types."""
        registry = cls()
        for descriptor in builtin_field_types():
            registry.register(descriptor.identifier, descriptor)
        return registry


# ---------------------------------------------------------------------------
# Builtin types
# ---------------------------------------------------------------------------


def _is_json(value: Any) -> bool:
    if value is None or isinstance(value, (str, int, float, bool)):
        return True
    if isinstance(value, list):
        return all(_is_json(v) for v in value)
    if isinstance(value, dict):
        return all(isinstance(k, str) and _is_json(v) for k, v in value.items())
    return False


def coerce_datetime(value: Any) -> Any:
    """Parse ISO-8601 strings and normalize datetimes to UTC."""
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return value
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    return value


def coerce_boolean(value: Any) -> Any:
    """Stores without a boolean type hand back 0/1."""
    if isinstance(value, int) and not isinstance(value, bool) and value in (0, 1):
        return bool(value)
    return value


def _set(key: str, storage_key: Optional[str] = None) -> FieldOption:
    def option(value: Any) -> OptionDelta:
        storage = {storage_key: value} if storage_key else {}
        return OptionDelta(validation={key: value}, storage=storage)

    return option


def _choices(value: Any) -> OptionDelta:
    return OptionDelta(validation={"choices": tuple(value)})


_TEXT_OPTIONS: Mapping[str, FieldOption] = {
    "min_length": _set("min_length"),
    "max_length": _set("max_length", "length"),
    "pattern": _set("pattern"),
}

_NUMBER_OPTIONS: Mapping[str, FieldOption] = {
    "min": _set("min"),
    "max": _set("max"),
}

EMAIL_PATTERN = r"[^@\s]+@[^@\s]+\.[^@\s]+"
SLUG_PATTERN = r"[a-z0-9]+(?:-[a-z0-9]+)*"


def builtin_field_types() -> Tuple[FieldTypeDescriptor, ...]:
    """The field types every registry starts with."""
    return (
        FieldTypeDescriptor(
            "text", ValidationRule(ValueKind.TEXT), StorageColumn("TEXT"), _TEXT_OPTIONS
        ),
        FieldTypeDescriptor(
            "email",
            ValidationRule(ValueKind.TEXT, pattern=EMAIL_PATTERN, max_length=254),
            StorageColumn("TEXT", length=254),
            _TEXT_OPTIONS,
        ),
        FieldTypeDescriptor(
            "slug",
            ValidationRule(ValueKind.TEXT, pattern=SLUG_PATTERN),
            StorageColumn("TEXT"),
            {"max_length": _set("max_length", "length")},
        ),
        FieldTypeDescriptor(
            "integer", ValidationRule(ValueKind.INTEGER), StorageColumn("INTEGER"), _NUMBER_OPTIONS
        ),
        FieldTypeDescriptor(
            "number", ValidationRule(ValueKind.NUMBER), StorageColumn("REAL"), _NUMBER_OPTIONS
        ),
        FieldTypeDescriptor(
            "boolean",
            ValidationRule(ValueKind.BOOLEAN),
            StorageColumn("INTEGER", encoding="bool"),
            coerce=coerce_boolean,
        ),
        FieldTypeDescriptor(
            "datetime",
            ValidationRule(ValueKind.DATETIME),
            StorageColumn("TEXT", encoding="datetime"),
            coerce=coerce_datetime,
        ),
        FieldTypeDescriptor(
            "json", ValidationRule(ValueKind.JSON), StorageColumn("TEXT", encoding="json")
        ),
        FieldTypeDescriptor(
            "select",
            ValidationRule(ValueKind.SELECT),
            StorageColumn("TEXT"),
            {
                "choices": _choices,
                "multiple": lambda v: OptionDelta(
                    validation={"multiple": bool(v)},
                    storage={"encoding": "json"} if v else {},
                ),
                "min_selected": _set("min_length"),
            },
        ),
        FieldTypeDescriptor(
            "relation",
            ValidationRule(ValueKind.RELATION),
            StorageColumn("TEXT", indexed=True),
            relation=True,
        ),
        FieldTypeDescriptor(
            "reverse_relation",
            ValidationRule(ValueKind.VIRTUAL),
            StorageColumn("TEXT", stored=False),
            relation=True,
        ),
        FieldTypeDescriptor(
            "computed",
            ValidationRule(ValueKind.VIRTUAL),
            StorageColumn("TEXT", stored=False),
        ),
    )
