"""
Schema resolution for collforge.

resolve_schema() is the only way to build a ResolvedSchema. It is a pure
function of (collections, plugins, registry):

1. Check global plugin names and dependencies.
2. Register global plugin field types into a resolution scope.
3. Compose every declared collection (see composer.py).
4. Compose auxiliary collections contributed along the way; they are subject
   to global plugins too (a worklist, since composing them may contribute more).
5. Validate the closed graph: unique slugs, relation targets, reverse-relation
   back-references, computed dependencies.

Invariants:
    - Failures raise ConfigurationError subclasses and nothing is returned
    - The caller's registry is never modified
    - The result is immutable

Example:
    >>> schema = resolve_schema(
    ...     [users, posts],
    ...     plugins=[soft_delete(), versioning()],
    ... )
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Deque, Dict, Iterable, Optional, Sequence, Set

from ..errors import ConfigurationError, DuplicateCollectionError, UnknownCollectionError
from .composer import check_dependencies, compose_collection
from .fieldtypes import FieldTypeRegistry
from .plugin import Plugin
from .resolved import ResolvedCollection, ResolvedSchema
from .types import CollectionDef

logger = logging.getLogger(__name__)


def resolve_schema(
    collections: Iterable[CollectionDef],
    plugins: Sequence[Plugin] = (),
    registry: Optional[FieldTypeRegistry] = None,
) -> ResolvedSchema:
    """Compose every collection with its plugins into one ResolvedSchema.

    Args:
        collections: Declared collections
        plugins: Global plugins, applied to every collection in this order
        registry: Field type registry (builtins if omitted)

    Returns:
        Immutable ResolvedSchema

    Raises:
        ConfigurationError: On any resolution failure (duplicate slug or field
            type, missing plugin dependency, conflict, unknown relation target)
    """
    registry = registry or FieldTypeRegistry.with_builtins()
    global_plugins = list(plugins)
    check_dependencies(global_plugins)

    scope = registry.scope()
    for plugin in global_plugins:
        for identifier, descriptor in plugin.field_types.items():
            scope.register(identifier, descriptor)

    resolved: Dict[str, ResolvedCollection] = {}
    contributed: Set[int] = set()
    pending: Deque[CollectionDef] = deque(collections)

    while pending:
        declaration = pending.popleft()
        if declaration.slug in resolved:
            raise DuplicateCollectionError(declaration.slug)
        composition = compose_collection(declaration, global_plugins, scope, contributed)
        resolved[declaration.slug] = composition.collection
        for aux in composition.auxiliary:
            logger.debug(f"Plugin '{aux.owner}' contributed auxiliary collection '{aux.slug}'")
            pending.append(aux)

    _validate_references(resolved)
    return ResolvedSchema(resolved)


def _validate_references(resolved: Dict[str, ResolvedCollection]) -> None:
    """Check that the composed graph is closed."""
    for slug, coll in resolved.items():
        for f in coll.fields:
            where = f"{slug}.{f.name}"

            if f.descriptor.relation:
                target = resolved.get(f.target or "")
                if target is None:
                    raise UnknownCollectionError(f.target or "", referenced_by=where)
                if f.is_reverse_relation:
                    via = target.get_field(f.definition.via or "")
                    if via is None or not via.is_relation or via.target != slug:
                        raise ConfigurationError(
                            f"Reverse relation '{where}' needs '{target.slug}.{f.definition.via}' "
                            f"to be a relation to '{slug}'"
                        )

            if f.is_computed:
                spec = f.definition.computed
                assert spec is not None
                missing = [d for d in spec.depends_on if not coll.has_field(d)]
                if missing:
                    raise ConfigurationError(
                        f"Computed field '{where}' depends on unknown field(s) {missing}"
                    )

        coll.computed_order()
