"""
Declaration types for the collforge schema system.

This module defines the immutable values a configuration is built from:
- FieldDef: A single field of a collection (type reference + options + modifiers)
- ComputedSpec: Dependencies and pure compute function of a virtual field
- HookSet: Ordered hooks per lifecycle stage
- CollectionDef: One domain entity (slug, fields, hooks, plugins, metadata)

Invariants:
    - Declarations are frozen; composition always builds new values
    - Field names are unique within a collection
    - id, created_at and updated_at are system fields and cannot be declared
    - Slugs and field names are identifier-safe (they become table/column names)

Example:
    >>> from collforge.schema.types import collection, field, relation
    >>> posts = collection(
    ...     "posts",
    ...     field("title", "text", required=True, max_length=200),
    ...     relation("author", "users"),
    ... )
"""

from __future__ import annotations

import re
from dataclasses import dataclass, replace
from dataclasses import field as dataclass_field
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Callable, Iterable, Mapping, Optional, Sequence, Tuple, Union

from ..errors import ConfigurationError

if TYPE_CHECKING:
    from .plugin import Plugin

RESERVED_FIELDS = ("id", "created_at", "updated_at")

_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_SLUG_RE = re.compile(r"^[a-z][a-z0-9_]*$")


class HookStage(Enum):
    """Pipeline stages where hooks execute.

    Read path:  BEFORE_READ -> (execute) -> AFTER_READ
    Write path: BEFORE_OPERATION -> BEFORE_<KIND> -> VALIDATE ->
                BEFORE_DATABASE -> (execute) -> AFTER_<KIND> -> AFTER_OPERATION
    """

    BEFORE_READ = "before_read"
    AFTER_READ = "after_read"
    BEFORE_OPERATION = "before_operation"
    BEFORE_CREATE = "before_create"
    BEFORE_UPDATE = "before_update"
    BEFORE_DELETE = "before_delete"
    VALIDATE = "validate"
    BEFORE_DATABASE = "before_database"
    AFTER_CREATE = "after_create"
    AFTER_UPDATE = "after_update"
    AFTER_DELETE = "after_delete"
    AFTER_OPERATION = "after_operation"

    @classmethod
    def from_str(cls, value: str) -> HookStage:
        """Convert a stage name to HookStage.

        Raises:
            ConfigurationError: If value is not a valid stage
        """
        for stage in cls:
            if stage.value == value:
                return stage
        valid = [s.value for s in cls]
        raise ConfigurationError(f"Invalid hook stage '{value}'. Valid stages: {valid}")


Hook = Callable[..., Any]


@dataclass(frozen=True)
class HookSet:
    """Hooks grouped by stage, each group in declaration order.

    Merging appends; hooks never replace each other.

    Example:
        >>> hs = HookSet.of(before_create=set_slug, after_create=[notify, index])
        >>> hs.get(HookStage.AFTER_CREATE)
        (notify, index)
    """

    entries: Mapping[HookStage, Tuple[Hook, ...]] = dataclass_field(
        default_factory=lambda: MappingProxyType({}), compare=False, hash=False
    )

    @classmethod
    def of(cls, **hooks: Union[Hook, Sequence[Hook]]) -> HookSet:
        """Build a HookSet from stage-name keyword arguments."""
        entries: dict[HookStage, Tuple[Hook, ...]] = {}
        for name, value in hooks.items():
            stage = HookStage.from_str(name)
            fns = tuple(value) if isinstance(value, (list, tuple)) else (value,)
            for fn in fns:
                if not callable(fn):
                    raise ConfigurationError(f"Hook for stage '{name}' is not callable: {fn!r}")
            entries[stage] = fns
        return cls(MappingProxyType(entries))

    def get(self, stage: HookStage) -> Tuple[Hook, ...]:
        """Hooks registered for a stage."""
        return self.entries.get(stage, ())

    def stages(self) -> list[HookStage]:
        """Stages with at least one hook, in enum order."""
        return [s for s in HookStage if self.entries.get(s)]

    def merged(self, other: HookSet) -> HookSet:
        """Append other's hooks after this set's hooks."""
        if not other:
            return self
        entries = dict(self.entries)
        for stage, fns in other.entries.items():
            entries[stage] = entries.get(stage, ()) + fns
        return HookSet(MappingProxyType(entries))

    def __bool__(self) -> bool:
        return any(self.entries.values())


@dataclass(frozen=True)
class ComputedSpec:
    """Virtual field computed from sibling fields.

    Attributes:
        depends_on: Names of the fields the value is derived from
        compute: Pure function receiving {dependency: value}
    """

    depends_on: Tuple[str, ...]
    compute: Callable[[Mapping[str, Any]], Any] = dataclass_field(compare=False, hash=False)


@dataclass(frozen=True)
class FieldDef:
    """Definition of a single field within a collection.

    Attributes:
        name: Field name (column name for stored fields)
        type: Field type identifier, resolved against the registry
        options: Ordered (option, value) pairs applied to the type
        required: Whether the field must hold a value after defaults apply
        unique: Whether stores enforce uniqueness
        indexed: Whether stores create an index
        default: Default value, or a zero-argument provider
        computed: Present for computed fields
        target: Target collection slug for relation fields
        via: Foreign-key field on the target (reverse relations only)
        label: Locale-keyed display label
        description: Human-readable description

    Example:
        >>> title = FieldDef("title", "text", options=(("max_length", 200),), required=True)
    """

    name: str
    type: str
    options: Tuple[Tuple[str, Any], ...] = ()
    required: bool = False
    unique: bool = False
    indexed: bool = False
    default: Any = dataclass_field(default=None, compare=False, hash=False)
    computed: Optional[ComputedSpec] = None
    target: Optional[str] = None
    via: Optional[str] = None
    label: Mapping[str, str] = dataclass_field(
        default_factory=lambda: MappingProxyType({}), compare=False, hash=False
    )
    description: str = ""

    def __post_init__(self) -> None:
        """Validate field definition."""
        if not self.name or not _NAME_RE.match(self.name):
            raise ConfigurationError(f"Invalid field name {self.name!r}")
        if not self.type:
            raise ConfigurationError(f"Field '{self.name}' has no type")
        if self.computed is not None and self.type != "computed":
            raise ConfigurationError(f"Field '{self.name}' has a compute spec but type '{self.type}'")
        if self.type == "computed" and self.computed is None:
            raise ConfigurationError(f"Computed field '{self.name}' needs a compute spec")

    def default_value(self) -> Any:
        """Evaluate the default (calling it when it is a provider)."""
        if callable(self.default):
            return self.default()
        return self.default

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation for serialization."""
        result: dict[str, Any] = {"name": self.name, "type": self.type}
        if self.options:
            result["options"] = [[k, _plain(v)] for k, v in self.options]
        for flag in ("required", "unique", "indexed"):
            if getattr(self, flag):
                result[flag] = True
        if self.default is not None and not callable(self.default):
            result["default"] = _plain(self.default)
        if self.computed is not None:
            result["depends_on"] = list(self.computed.depends_on)
        if self.target:
            result["target"] = self.target
        if self.via:
            result["via"] = self.via
        return result


def _plain(value: Any) -> Any:
    if isinstance(value, tuple):
        return [_plain(v) for v in value]
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, list):
        return [_plain(v) for v in value]
    if isinstance(value, Mapping):
        return {str(k): _plain(v) for k, v in value.items()}
    return repr(value)


@dataclass(frozen=True)
class CollectionDef:
    """Declaration of one domain entity.

    Attributes:
        slug: Unique identity (also the storage table name)
        fields: Ordered field definitions
        hooks: Inline hooks, executed after every plugin's hooks
        plugins: Collection-local plugins, applied after global plugins
        labels: Locale-keyed display labels
        descriptions: Locale-keyed descriptions
        access: Per-operation predicates (operation name or "*") consulted by
            the Authorize stage; each receives the OperationContext
        auxiliary: Set on collections contributed by a plugin
        owner: Name of the plugin that contributed an auxiliary collection

    Invariants:
        - slug is identifier-safe and unique within a resolved schema
        - field names are unique; reserved names are rejected
    """

    slug: str
    fields: Tuple[FieldDef, ...] = ()
    hooks: HookSet = dataclass_field(default_factory=HookSet)
    plugins: Tuple[Plugin, ...] = ()
    labels: Mapping[str, str] = dataclass_field(
        default_factory=lambda: MappingProxyType({}), compare=False, hash=False
    )
    descriptions: Mapping[str, str] = dataclass_field(
        default_factory=lambda: MappingProxyType({}), compare=False, hash=False
    )
    access: Mapping[str, Callable[..., Any]] = dataclass_field(
        default_factory=lambda: MappingProxyType({}), compare=False, hash=False
    )
    auxiliary: bool = False
    owner: Optional[str] = None

    def __post_init__(self) -> None:
        """Validate collection definition."""
        if not self.slug or not _SLUG_RE.match(self.slug):
            raise ConfigurationError(
                f"Invalid collection slug {self.slug!r}: use lowercase letters, digits and '_'"
            )

        names = [f.name for f in self.fields]
        if len(names) != len(set(names)):
            dupes = sorted({n for n in names if names.count(n) > 1})
            raise ConfigurationError(f"Duplicate field name(s) {dupes} in collection '{self.slug}'")

        reserved = [n for n in names if n in RESERVED_FIELDS]
        if reserved:
            raise ConfigurationError(
                f"Field name(s) {reserved} in collection '{self.slug}' are reserved"
            )

    def get_field(self, name: str) -> Optional[FieldDef]:
        """Get a field by name."""
        for f in self.fields:
            if f.name == name:
                return f
        return None

    def get_field_names(self) -> list[str]:
        """Get list of all field names."""
        return [f.name for f in self.fields]

    def __hash__(self) -> int:
        """Hash based on slug (stable identifier)."""
        return hash(self.slug)

    def __eq__(self, other: object) -> bool:
        """Equality based on slug."""
        if not isinstance(other, CollectionDef):
            return NotImplemented
        return self.slug == other.slug


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def field(
    name: str,
    type: str,
    *,
    required: bool = False,
    unique: bool = False,
    indexed: bool = False,
    default: Any = None,
    label: Optional[Mapping[str, str]] = None,
    description: str = "",
    **options: Any,
) -> FieldDef:
    """Convenience function to create a FieldDef.

    Keyword arguments that are not modifiers become type options, applied in
    the order written.

    Example:
        >>> title = field("title", "text", required=True, max_length=200)
        >>> status = field("status", "select", choices=("draft", "published"))
    """
    return FieldDef(
        name=name,
        type=type,
        options=tuple(options.items()),
        required=required,
        unique=unique,
        indexed=indexed,
        default=default,
        label=MappingProxyType(dict(label or {})),
        description=description,
    )


def relation(name: str, target: str, *, required: bool = False, **kwargs: Any) -> FieldDef:
    """A stored reference to a record of another collection."""
    fd = field(name, "relation", required=required, **kwargs)
    return _with(fd, target=target)


def reverse_relation(name: str, target: str, via: str, **kwargs: Any) -> FieldDef:
    """A virtual list of target records whose `via` field points back here."""
    fd = field(name, "reverse_relation", **kwargs)
    return _with(fd, target=target, via=via)


def computed(
    name: str,
    depends_on: Iterable[str],
    compute: Callable[[Mapping[str, Any]], Any],
    **kwargs: Any,
) -> FieldDef:
    """A virtual field evaluated from its dependencies after they are loaded."""
    return FieldDef(
        name=name,
        type="computed",
        computed=ComputedSpec(depends_on=tuple(depends_on), compute=compute),
        label=MappingProxyType(dict(kwargs.pop("label", None) or {})),
        description=kwargs.pop("description", ""),
    )


def _with(fd: FieldDef, **changes: Any) -> FieldDef:
    return replace(fd, **changes)


def collection(
    slug: str,
    *fields: FieldDef,
    hooks: Optional[Union[HookSet, Mapping[str, Any]]] = None,
    plugins: Sequence[Plugin] = (),
    labels: Optional[Mapping[str, str]] = None,
    descriptions: Optional[Mapping[str, str]] = None,
    access: Optional[Mapping[str, Callable[..., Any]]] = None,
) -> CollectionDef:
    """Convenience function to create a CollectionDef.

    Example:
        >>> users = collection(
        ...     "users",
        ...     field("email", "email", required=True, unique=True),
        ...     hooks={"before_create": normalize_email},
        ...     labels={"en": "Users", "de": "Benutzer"},
        ... )
    """
    if hooks is None:
        hook_set = HookSet()
    elif isinstance(hooks, HookSet):
        hook_set = hooks
    else:
        hook_set = HookSet.of(**hooks)
    return CollectionDef(
        slug=slug,
        fields=tuple(fields),
        hooks=hook_set,
        plugins=tuple(plugins),
        labels=MappingProxyType(dict(labels or {})),
        descriptions=MappingProxyType(dict(descriptions or {})),
        access=MappingProxyType(dict(access or {})),
    )
