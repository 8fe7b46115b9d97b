"""
Plugin composition for collforge.

compose_collection() merges one CollectionDef with its effective plugin list
(global plugins in configuration order, then collection-local plugins) and
returns a ResolvedCollection plus the auxiliary collections the plugins
contributed along the way.

Merge rules:
    - Fields: a name collision is a ConflictError unless the contributing
      plugin sets override=True; overrides are recorded for diagnostics
    - Hooks: appended per stage; global plugins, then local plugins, then the
      collection's inline hooks (this is the execution order)
    - Field types: registered into a scope private to this collection
    - Auxiliary collections: forwarded to the resolver, never merged

Invariants:
    - The base declaration is never mutated
    - Dependencies are checked before any plugin is applied
    - extend() always sees the accumulator as it stands at that point
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Tuple

from ..errors import (
    ConfigurationError,
    ConflictError,
    DuplicatePluginError,
    InvalidFieldError,
    MissingDependencyError,
)
from .fieldtypes import FieldTypeDescriptor, FieldTypeRegistry, resolve_options
from .plugin import OperationMiddleware, Plugin
from .resolved import FieldOverride, RegisteredHook, ResolvedCollection, ResolvedField
from .types import CollectionDef, FieldDef, HookSet, HookStage

logger = logging.getLogger(__name__)


@dataclass
class Composition:
    """Result of composing one collection."""

    collection: ResolvedCollection
    auxiliary: List[CollectionDef] = field(default_factory=list)


@dataclass
class _Accumulator:
    base: CollectionDef
    fields: Dict[str, FieldDef] = field(default_factory=dict)
    owners: Dict[str, str] = field(default_factory=dict)
    hooks: List[RegisteredHook] = field(default_factory=list)
    middlewares: Dict[str, List[Tuple[str, OperationMiddleware]]] = field(default_factory=dict)
    methods: Dict[str, Callable[..., Any]] = field(default_factory=dict)
    overrides: List[FieldOverride] = field(default_factory=list)
    auxiliary: List[CollectionDef] = field(default_factory=list)

    def snapshot(self) -> CollectionDef:
        """The accumulator as a declaration, for extend()."""
        return replace(self.base, fields=tuple(self.fields.values()))

    def add_field(self, fd: FieldDef, contributor: str, override: bool) -> None:
        existing = self.owners.get(fd.name)
        if existing is not None:
            if not override:
                raise ConflictError(self.base.slug, fd.name, existing, contributor)
            self.overrides.append(FieldOverride(fd.name, existing, contributor))
            logger.debug(f"Field '{self.base.slug}.{fd.name}' from '{existing}' overridden by '{contributor}'")
        self.fields[fd.name] = fd
        self.owners[fd.name] = contributor

    def add_hooks(self, hooks: HookSet, origin: str) -> None:
        for stage in hooks.stages():
            for fn in hooks.get(stage):
                self.hooks.append(RegisteredHook(stage, fn, origin))

    def add_methods(self, methods: Any, origin: str) -> None:
        for name, fn in methods.items():
            if name in self.methods:
                raise ConfigurationError(
                    f"Operation '{name}' on collection '{self.base.slug}' is contributed twice "
                    f"(second contributor: '{origin}')"
                )
            self.methods[name] = fn


def effective_plugins(
    collection: CollectionDef,
    global_plugins: Sequence[Plugin],
) -> List[Plugin]:
    """Global plugins followed by the collection's own plugins."""
    return list(global_plugins) + list(collection.plugins)


def check_dependencies(plugins: Sequence[Plugin], collection: Optional[str] = None) -> None:
    """Verify plugin names are unique and every requirement appears earlier.

    Raises:
        DuplicatePluginError: If a name appears twice
        MissingDependencyError: If a requirement is absent or later in the list
    """
    seen: Set[str] = set()
    for plugin in plugins:
        if plugin.name in seen:
            raise DuplicatePluginError(plugin.name, collection)
        for required in plugin.requires:
            if required not in seen:
                raise MissingDependencyError(plugin.name, required, collection)
        seen.add(plugin.name)


def compose_collection(
    collection: CollectionDef,
    global_plugins: Sequence[Plugin],
    registry: FieldTypeRegistry,
    contributed: Optional[Set[int]] = None,
) -> Composition:
    """Compose a collection with its effective plugin list.

    Args:
        collection: Base declaration
        global_plugins: Plugins applied to every collection (field types
            already registered in registry by the resolver)
        registry: Resolution-scope field type registry
        contributed: ids of plugins whose static auxiliary collections were
            already forwarded in this resolution run (updated in place)

    Returns:
        Composition with the resolved collection and auxiliary collections

    Raises:
        DuplicatePluginError, MissingDependencyError, ConflictError,
        UnknownFieldTypeError, UnknownOptionError, InvalidFieldError
    """
    plugins = effective_plugins(collection, global_plugins)
    check_dependencies(plugins, collection.slug)

    contributed = contributed if contributed is not None else set()
    local_ids = {id(p) for p in collection.plugins}
    scope = registry.scope()

    acc = _Accumulator(base=collection)
    own = f"collection:{collection.slug}"
    for fd in collection.fields:
        acc.add_field(fd, own, override=False)

    for plugin in plugins:
        if id(plugin) in local_ids:
            for identifier, descriptor in plugin.field_types.items():
                scope.register(identifier, descriptor)

        for fd in plugin.fields:
            acc.add_field(fd, plugin.name, plugin.override)
        if plugin.hooks:
            acc.add_hooks(plugin.hooks, plugin.name)
        if plugin.collections and id(plugin) not in contributed:
            acc.auxiliary.extend(_mark_auxiliary(c, plugin.name) for c in plugin.collections)
            contributed.add(id(plugin))

        if plugin.extend is not None:
            partial = plugin.extend(acc.snapshot())
            if partial is not None:
                for fd in partial.fields:
                    acc.add_field(fd, plugin.name, plugin.override)
                acc.add_hooks(partial.hooks, plugin.name)
                acc.auxiliary.extend(_mark_auxiliary(c, plugin.name) for c in partial.collections)
                acc.add_methods(partial.methods, plugin.name)

        for op_name, middleware in plugin.operations.items():
            acc.middlewares.setdefault(op_name, []).append((plugin.name, middleware))
        acc.add_methods(plugin.methods, plugin.name)

    acc.add_hooks(collection.hooks, own)

    resolved_fields = list(_system_fields(registry))
    for name, fd in acc.fields.items():
        resolved_fields.append(_resolve_field(collection.slug, fd, acc.owners[name], scope))

    resolved = ResolvedCollection(
        slug=collection.slug,
        fields=tuple(resolved_fields),
        hooks=MappingProxyType(_group_hooks(acc.hooks)),
        middlewares=MappingProxyType({k: tuple(v) for k, v in acc.middlewares.items()}),
        methods=MappingProxyType(dict(acc.methods)),
        plugins=tuple(p.name for p in plugins),
        overrides=tuple(acc.overrides),
        declaration=collection,
    )
    logger.debug(
        f"Composed collection '{collection.slug}' with plugins {list(resolved.plugins)}: "
        f"{len(resolved.fields)} fields, {len(acc.hooks)} hooks, {len(acc.auxiliary)} auxiliary"
    )
    return Composition(collection=resolved, auxiliary=acc.auxiliary)


def _mark_auxiliary(collection: CollectionDef, owner: str) -> CollectionDef:
    if collection.auxiliary and collection.owner:
        return collection
    return replace(collection, auxiliary=True, owner=owner)


def _group_hooks(hooks: List[RegisteredHook]) -> Dict[HookStage, Tuple[RegisteredHook, ...]]:
    grouped: Dict[HookStage, List[RegisteredHook]] = {}
    for hook in hooks:
        grouped.setdefault(hook.stage, []).append(hook)
    return {stage: tuple(chain) for stage, chain in grouped.items()}


def _resolve_field(
    slug: str,
    fd: FieldDef,
    owner: str,
    registry: FieldTypeRegistry,
) -> ResolvedField:
    base = registry.require(fd.type)
    descriptor = resolve_options(base, fd.options)
    descriptor = _apply_modifiers(descriptor, fd)

    problems = descriptor.validation.consistency_errors()
    if descriptor.relation and not fd.target:
        problems.append("relation fields need a target collection")
    if descriptor.relation and not descriptor.storage.stored and not fd.via:
        problems.append("reverse relations need a 'via' field on the target")
    if fd.computed is not None and fd.name in fd.computed.depends_on:
        problems.append("computed field cannot depend on itself")
    if problems:
        raise InvalidFieldError(slug, fd.name, problems)

    return ResolvedField(definition=fd, descriptor=descriptor, owner=owner)


def _apply_modifiers(descriptor: FieldTypeDescriptor, fd: FieldDef) -> FieldTypeDescriptor:
    storage = descriptor.storage
    changes: Dict[str, Any] = {}
    if fd.required and storage.nullable:
        changes["nullable"] = False
    if fd.unique and not storage.unique:
        changes["unique"] = True
    if fd.indexed and not storage.indexed:
        changes["indexed"] = True
    if not changes:
        return descriptor
    return replace(descriptor, storage=replace(storage, **changes))


def _system_fields(registry: FieldTypeRegistry) -> Tuple[ResolvedField, ...]:
    text = registry.require("text")
    stamp = registry.require("datetime")
    return (
        ResolvedField(
            FieldDef("id", "text"),
            replace(text, storage=replace(text.storage, nullable=False, unique=True)),
            owner="system",
            system=True,
        ),
        ResolvedField(FieldDef("created_at", "datetime"), stamp, owner="system", system=True),
        ResolvedField(FieldDef("updated_at", "datetime"), stamp, owner="system", system=True),
    )
