"""
Soft-delete plugin for collforge.

Deleting a record marks it with a deletion timestamp and the deleting actor
instead of removing it. The plugin:
- Adds deleted_at (datetime) and deleted_by (text) to every collection it
  applies to
- Rewrites delete into an update of those fields and skips the physical
  delete, unless the caller passes permanent=True
- Adds an implicit "deleted_at is null" filter to reads, and to the target
  lookup of update/delete, unless the caller passes include_deleted=True
- Cascades a delete to the collections named in cascade, inside the parent
  delete's transaction

Cascade behaviors:
    soft      delete every child record referencing the parent (a soft
              delete when the child collection has this plugin)
    nullify   set the child's reference to the parent to null
    restrict  refuse the delete while live child records exist

Invariants:
    - The delete rewrite is a nested update, so update hooks of other plugins
      (versioning, audit) observe it
    - Children soft-deleted by a cascade carry the parent's deleted_at value;
      restore() uses it to bring them back together with the parent

Example:
    >>> plugin = soft_delete(cascade={"posts": ["comments"]})
    >>> await engine.collections.posts.delete({"id": post_id}, actor="user:1")
    >>> await engine.collections.posts.find_many()          # post is hidden
    >>> await engine.collections.posts.restore({"id": post_id})
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from ..errors import ConfigurationError, RestrictError
from ..pipeline.context import OperationContext, OperationKind
from ..pipeline.hooks import HookArgs, Skip
from ..pipeline.query import FindOptions, Where, and_where
from ..schema.plugin import Partial, Plugin
from ..schema.resolved import ResolvedSchema
from ..schema.types import CollectionDef, HookSet, field

logger = logging.getLogger(__name__)

CASCADE_BEHAVIORS = ("soft", "nullify", "restrict")

_STAMP = "soft_delete.deleted_at"

Cascade = Union[Sequence[str], Mapping[str, Sequence[str]]]


def _inherited_stamp(ctx: OperationContext) -> Optional[datetime]:
    node = ctx.parent
    while node is not None:
        stamp = node.state.get(_STAMP)
        if stamp is not None:
            return stamp
        node = node.parent
    return None


def _references_where(fks: Sequence[str], record_id: Any) -> Where:
    if len(fks) == 1:
        return {fks[0]: record_id}
    return {"OR": [{fk: record_id} for fk in fks]}


def soft_delete(
    cascade: Optional[Cascade] = None,
    cascade_behavior: str = "soft",
    collections: Optional[Sequence[str]] = None,
    field_name: str = "deleted_at",
    actor_field: str = "deleted_by",
    name: str = "soft_delete",
) -> Plugin:
    """Build a soft-delete plugin.

    Args:
        cascade: Child collection slugs. A list applies to every collection
            the plugin runs on; a mapping names children per parent slug
        cascade_behavior: "soft", "nullify" or "restrict"
        collections: Slugs to apply to (every non-auxiliary collection if omitted)
        field_name: Deletion timestamp field
        actor_field: Deleting-actor field
        name: Plugin name

    Returns:
        Plugin

    Raises:
        ConfigurationError: For an unknown cascade behavior
    """
    if cascade_behavior not in CASCADE_BEHAVIORS:
        raise ConfigurationError(
            f"Unknown cascade behavior {cascade_behavior!r}. Valid behaviors: {list(CASCADE_BEHAVIORS)}"
        )
    selected = set(collections) if collections is not None else None

    def children_of(slug: str) -> Tuple[str, ...]:
        if not cascade:
            return ()
        if isinstance(cascade, Mapping):
            return tuple(cascade.get(slug, ()))
        return tuple(c for c in cascade if c != slug)

    def references(schema: ResolvedSchema, slug: str) -> List[Tuple[str, List[str]]]:
        """(child slug, relation fields pointing at slug) for every cascade child."""
        found = []
        for child_slug in children_of(slug):
            child = schema.require(child_slug)
            fks = [f.name for f in child.relation_fields(target=slug)]
            if not fks:
                raise ConfigurationError(
                    f"Cannot cascade from '{slug}' to '{child_slug}': "
                    f"no relation field on '{child_slug}' points at '{slug}'"
                )
            found.append((child_slug, fks))
        return found

    # -- hooks ---------------------------------------------------------

    def exclude_deleted(args: HookArgs) -> Optional[FindOptions]:
        query = args.query
        if query is None or query.include_deleted:
            return None
        return query.with_where(and_where(query.where, {field_name: None}))

    def exclude_deleted_targets(args: HookArgs) -> None:
        if args.operation == OperationKind.CREATE or args.context.state.get("include_deleted"):
            return
        args.where = and_where(args.where, {field_name: None})

    async def enforce_restrict(ctx: OperationContext, record_id: Any) -> None:
        executor = ctx.engine.executor
        for child_slug, fks in references(ctx.engine.schema, ctx.slug):
            options = FindOptions(where=_references_where(fks, record_id))
            dependents = await executor.count(child_slug, options, parent=ctx)
            if dependents:
                raise RestrictError(ctx.slug, child_slug, dependents)

    async def rewrite_delete(args: HookArgs) -> Optional[Skip]:
        ctx = args.context
        record = args.existing
        assert record is not None
        if cascade_behavior == "restrict":
            await enforce_restrict(ctx, record["id"])
        if ctx.state.get("permanent"):
            return None

        stamp = _inherited_stamp(ctx) or datetime.now(timezone.utc)
        ctx.state[_STAMP] = stamp
        updated = await ctx.engine.executor.update(
            ctx.slug,
            {"id": record["id"]},
            {field_name: stamp, actor_field: ctx.actor},
            include_deleted=bool(ctx.state.get("include_deleted")),
            parent=ctx,
        )
        logger.debug(f"Soft-deleted '{ctx.slug}' record {record['id']} (actor={ctx.actor!r})")
        return Skip(updated)

    async def cascade_delete(args: HookArgs) -> None:
        if cascade_behavior == "restrict":
            return
        ctx = args.context
        record = args.existing
        assert record is not None
        executor = ctx.engine.executor
        permanent = bool(ctx.state.get("permanent"))

        for child_slug, fks in references(ctx.engine.schema, ctx.slug):
            # Permanent deletes reach already soft-deleted children too
            options = FindOptions(where=_references_where(fks, record["id"]), include_deleted=permanent)
            children = await executor.find_many(child_slug, options, parent=ctx)
            for child in children:
                if cascade_behavior == "nullify":
                    changes = {fk: None for fk in fks if child.get(fk) == record["id"]}
                    await executor.update(
                        child_slug, {"id": child["id"]}, changes, include_deleted=permanent, parent=ctx
                    )
                else:
                    await executor.delete(
                        child_slug,
                        {"id": child["id"]},
                        permanent=permanent,
                        include_deleted=permanent,
                        parent=ctx,
                    )
            if children:
                logger.info(
                    f"Cascade ({cascade_behavior}) from '{ctx.slug}' {record['id']} "
                    f"touched {len(children)} record(s) in '{child_slug}'"
                )

    # -- collection operations -----------------------------------------

    async def restore(
        client: Any,
        where: Where,
        *,
        actor: Optional[str] = None,
        context: Optional[OperationContext] = None,
    ) -> Dict[str, Any]:
        """Undo a soft delete, and the cascade that came with it.

        Children carrying the same deleted_at as the restored record are
        restored too. Restoring a live record returns it unchanged.
        """
        engine = client.engine
        async with engine.executor.atomic(client.slug, actor=actor, parent=context):
            record = await client.find_unique(where, include_deleted=True)
            stamp = record.get(field_name)
            if stamp is None:
                return record

            restored = await client.update(
                {"id": record["id"]},
                {field_name: None, actor_field: None},
                include_deleted=True,
            )
            for child_slug, fks in references(engine.schema, client.slug):
                child_client = engine.collections[child_slug]
                if not child_client.collection.has_field(field_name):
                    continue
                child_where = and_where(_references_where(fks, record["id"]), {field_name: stamp})
                for child in await child_client.find_many(child_where, include_deleted=True):
                    await child_client.restore({"id": child["id"]})
        logger.info(f"Restored '{client.slug}' record {record['id']}")
        return restored

    async def find_deleted(
        client: Any,
        where: Optional[Where] = None,
        **options: Any,
    ) -> List[Dict[str, Any]]:
        """Soft-deleted records matching where."""
        options["include_deleted"] = True
        return await client.find_many(and_where(where, {field_name: {"ne": None}}), **options)

    def extend(collection: CollectionDef) -> Optional[Partial]:
        if collection.auxiliary:
            return None
        if selected is not None and collection.slug not in selected:
            return None
        return Partial(
            fields=(
                field(field_name, "datetime", indexed=True),
                field(actor_field, "text"),
            ),
            hooks=HookSet.of(
                before_read=exclude_deleted,
                before_operation=exclude_deleted_targets,
                before_delete=rewrite_delete,
                after_delete=cascade_delete,
            ),
            methods={"restore": restore, "find_deleted": find_deleted},
        )

    return Plugin(
        name=name,
        extend=extend,
        description="Mark records deleted instead of removing them",
    )
