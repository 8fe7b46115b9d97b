"""
Plugin descriptors for collforge.

A Plugin is a closed record of optional capabilities. The composer looks only
at which capabilities are present; it never inspects ad hoc attributes.

Capabilities:
    field_types: Field types registered into the resolution scope
    fields:      Fields added to every collection the plugin is applied to
    hooks:       Hooks appended per stage
    collections: Auxiliary collections, contributed once per resolution run
    extend:      Function of the collection-so-far returning a Partial
    operations:  Middlewares around the Execute stage, keyed by operation name
    methods:     Extra operations exposed on the collection client

Invariants:
    - name is the plugin's identity within one resolution run
    - requires names plugins that must appear earlier in the same list
    - override allows the plugin's fields to replace existing fields

Example:
    >>> stamp = Plugin(
    ...     name="stamp",
    ...     fields=(field("stamp", "text"),),
    ...     hooks=HookSet.of(before_create=lambda args: {**args.data, "stamp": "x"}),
    ... )
"""

from __future__ import annotations

from dataclasses import dataclass
from dataclasses import field as dataclass_field
from types import MappingProxyType
from typing import Any, Callable, Mapping, Optional, Tuple

from ..errors import ConfigurationError
from .fieldtypes import FieldTypeDescriptor
from .types import CollectionDef, FieldDef, HookSet

OPERATION_NAMES = ("find_many", "find_unique", "count", "create", "update", "delete")


def _empty() -> Mapping[str, Any]:
    return MappingProxyType({})


@dataclass(frozen=True)
class OperationMiddleware:
    """Pre/post callables around the Execute stage of one operation.

    before(args) may return Skip(result) to short-circuit Execute.
    after(args) may return a replacement result.
    """

    before: Optional[Callable[..., Any]] = None
    after: Optional[Callable[..., Any]] = None


@dataclass(frozen=True)
class Partial:
    """What a plugin's extend() contributes to one collection."""

    fields: Tuple[FieldDef, ...] = ()
    hooks: HookSet = dataclass_field(default_factory=HookSet)
    collections: Tuple[CollectionDef, ...] = ()
    methods: Mapping[str, Callable[..., Any]] = dataclass_field(
        default_factory=_empty, compare=False, hash=False
    )


@dataclass(frozen=True, eq=False)
class Plugin:
    """Declaration of a composable schema/pipeline contributor.

    Plugins compare by identity: the same instance applied to several
    collections is one plugin, two instances with one name are a conflict
    when they meet in the same effective list.
    """

    name: str
    requires: Tuple[str, ...] = ()
    field_types: Mapping[str, FieldTypeDescriptor] = dataclass_field(default_factory=_empty)
    fields: Tuple[FieldDef, ...] = ()
    hooks: HookSet = dataclass_field(default_factory=HookSet)
    collections: Tuple[CollectionDef, ...] = ()
    extend: Optional[Callable[[CollectionDef], Optional[Partial]]] = None
    operations: Mapping[str, OperationMiddleware] = dataclass_field(default_factory=_empty)
    methods: Mapping[str, Callable[..., Any]] = dataclass_field(default_factory=_empty)
    override: bool = False
    description: str = ""

    def __post_init__(self) -> None:
        """Validate plugin declaration."""
        if not self.name:
            raise ConfigurationError("Plugin name cannot be empty")
        unknown = [op for op in self.operations if op not in OPERATION_NAMES]
        if unknown:
            raise ConfigurationError(
                f"Plugin '{self.name}' declares middleware for unknown operation(s) {unknown}"
            )

    def capabilities(self) -> Tuple[str, ...]:
        """Names of the capabilities this plugin provides."""
        present = []
        if self.field_types:
            present.append("field_types")
        if self.fields:
            present.append("fields")
        if self.hooks:
            present.append("hooks")
        if self.collections:
            present.append("collections")
        if self.extend is not None:
            present.append("extend")
        if self.operations:
            present.append("operations")
        if self.methods:
            present.append("methods")
        return tuple(present)

    def __repr__(self) -> str:
        return f"Plugin(name={self.name!r}, capabilities={list(self.capabilities())})"
