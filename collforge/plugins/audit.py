"""
Audit-fields plugin for collforge.

Adds created_by and updated_by to every collection it applies to and fills
them from the operation's actor. Writes without an actor leave them as they
are. Auxiliary collections are skipped; version records carry their own
actor.
"""

from __future__ import annotations

from typing import Any, Dict, Optional, Sequence

from ..pipeline.hooks import HookArgs
from ..schema.plugin import Partial, Plugin
from ..schema.types import CollectionDef, HookSet, field


def audit(
    created_by: str = "created_by",
    updated_by: str = "updated_by",
    collections: Optional[Sequence[str]] = None,
    name: str = "audit",
) -> Plugin:
    """Build an audit-fields plugin.

    Example:
        >>> engine = await configure(collections=[posts], plugins=[audit()])
        >>> post = await engine.collections.posts.create({"title": "Hi"}, actor="user:1")
        >>> post["created_by"], post["updated_by"]
        ('user:1', 'user:1')
    """
    selected = set(collections) if collections is not None else None

    def stamp_create(args: HookArgs) -> Optional[Dict[str, Any]]:
        if args.actor is None:
            return None
        data = dict(args.data or {})
        data[created_by] = data.get(created_by) or args.actor
        data[updated_by] = args.actor
        return data

    def stamp_update(args: HookArgs) -> Optional[Dict[str, Any]]:
        if args.actor is None:
            return None
        return {**(args.data or {}), updated_by: args.actor}

    def extend(collection: CollectionDef) -> Optional[Partial]:
        if collection.auxiliary:
            return None
        if selected is not None and collection.slug not in selected:
            return None
        return Partial(
            fields=(field(created_by, "text", indexed=True), field(updated_by, "text")),
            hooks=HookSet.of(before_create=stamp_create, before_update=stamp_update),
        )

    return Plugin(name=name, extend=extend, description="created_by / updated_by from the actor")
