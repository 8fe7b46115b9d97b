"""
Versioning plugin for collforge.

Every write to a versioned collection appends a version record to a shadow
collection named <slug>_versions. A version record holds:
- record: the versioned record's id
- version: 1 on create, then max(existing) + 1
- operation: create, update, delete or restore
- snapshot: full post-write state (snapshot_mode="full")
- diff: {field: {"from": old, "to": new}} for the fields that changed
- changed_fields, actor, note

History is append-only. restore_version() reconstructs a past state and
applies it as a normal update, which itself creates a new version; only
cleanup_versions() removes version records.

Invariants:
    - Version numbers of one record are gap-free: 1..N
    - Version records are written inside the write's transaction
    - compare_versions() never writes
    - A soft delete produces exactly one "delete" version

How to change safely:
    - Snapshots and diffs are JSON values; keep _jsonable() in step with the
      field types that can be tracked
    - Failures while writing a version are logged and skipped unless strict
      (or Settings.strict_plugins) is set, in which case they raise HookError
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from ..errors import ConfigurationError, HookError, VersioningError
from ..pipeline.context import OperationContext, OperationKind
from ..pipeline.hooks import HookArgs
from ..pipeline.query import FindOptions
from ..schema.plugin import Partial, Plugin
from ..schema.resolved import ResolvedCollection
from ..schema.types import CollectionDef, HookSet, collection, field, relation

logger = logging.getLogger(__name__)

SNAPSHOT_MODES = ("full", "diff")
VERSION_OPERATIONS = ("create", "update", "delete", "restore")

_RESTORE = "versioning.restore"
_NOTE = "versioning.note"


def _jsonable(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, Mapping):
        return {str(k): _jsonable(v) for k, v in value.items()}
    return value


def compute_diff(
    before: Mapping[str, Any],
    after: Mapping[str, Any],
    fields: Iterable[str],
) -> Dict[str, Dict[str, Any]]:
    """Field-level diff between two states.

    Example:
        >>> compute_diff({"title": "a"}, {"title": "b"}, ["title"])
        {'title': {'from': 'a', 'to': 'b'}}
    """
    diff: Dict[str, Dict[str, Any]] = {}
    for name in fields:
        old = _jsonable(before.get(name))
        new = _jsonable(after.get(name))
        if old != new:
            diff[name] = {"from": old, "to": new}
    return diff


def versioning(
    collections: Optional[Sequence[str]] = None,
    snapshot_mode: str = "full",
    track_fields: Optional[Sequence[str]] = None,
    ignore_fields: Sequence[str] = (),
    suffix: str = "_versions",
    strict: Optional[bool] = None,
    name: str = "versioning",
) -> Plugin:
    """Build a versioning plugin.

    Args:
        collections: Slugs to version (every non-auxiliary collection if omitted)
        snapshot_mode: "full" stores the post-write state, "diff" only the diff
        track_fields: Restrict history to these fields
        ignore_fields: Fields left out of history
        suffix: Shadow collection suffix
        strict: Raise on version write failures (Settings.strict_plugins if None)
        name: Plugin name

    Raises:
        ConfigurationError: For an unknown snapshot mode
    """
    if snapshot_mode not in SNAPSHOT_MODES:
        raise ConfigurationError(
            f"Unknown snapshot mode {snapshot_mode!r}. Valid modes: {list(SNAPSHOT_MODES)}"
        )
    selected = set(collections) if collections is not None else None
    tracked_only = set(track_fields) if track_fields is not None else None
    ignored = set(ignore_fields)

    def tracked(coll: ResolvedCollection) -> List[str]:
        names = [f.name for f in coll.input_fields()]
        if tracked_only is not None:
            names = [n for n in names if n in tracked_only]
        return [n for n in names if n not in ignored]

    def is_strict(ctx: OperationContext) -> bool:
        return strict if strict is not None else ctx.engine.settings.strict_plugins

    def operation_label(ctx: OperationContext) -> str:
        parent = ctx.parent
        if parent is not None and parent.slug == ctx.slug:
            if parent.state.get(_RESTORE) is not None:
                return "restore"
            if parent.operation == OperationKind.DELETE and ctx.operation == OperationKind.UPDATE:
                return "delete"
        return ctx.operation.value

    def shadow_for(slug: str) -> CollectionDef:
        return collection(
            f"{slug}{suffix}",
            relation("record", slug, required=True, indexed=True),
            field("version", "integer", required=True, indexed=True, min=1),
            field("operation", "select", required=True, choices=VERSION_OPERATIONS),
            field("snapshot", "json"),
            field("diff", "json"),
            field("changed_fields", "json"),
            field("actor", "text"),
            field("note", "text"),
            labels={"en": f"{slug} versions"},
        )

    async def next_version(ctx: OperationContext, shadow: str, record_id: str) -> int:
        options = FindOptions(where={"record": record_id}, order_by=(("version", "desc"),), limit=1)
        latest = await ctx.engine.executor.find_many(shadow, options, parent=ctx)
        return latest[0]["version"] + 1 if latest else 1

    async def write_version(args: HookArgs) -> None:
        ctx = args.context
        kind = ctx.operation
        if kind == OperationKind.DELETE and args.skipped:
            return

        before = args.existing or {}
        after = before if kind == OperationKind.DELETE else (args.result or {})
        record_id = after.get("id") or before.get("id")
        fields = tracked(ctx.collection)
        diff = {} if kind == OperationKind.DELETE else compute_diff(before, after, fields)
        snapshot = None
        if snapshot_mode == "full":
            snapshot = {n: _jsonable(after.get(n)) for n in fields}

        shadow = f"{ctx.slug}{suffix}"
        try:
            version = await next_version(ctx, shadow, record_id)
            await ctx.engine.executor.create(
                shadow,
                {
                    "record": record_id,
                    "version": version,
                    "operation": operation_label(ctx),
                    "snapshot": snapshot,
                    "diff": diff,
                    "changed_fields": sorted(diff),
                    "actor": ctx.actor,
                    "note": ctx.parent.state.get(_NOTE) if ctx.parent is not None else None,
                },
                parent=ctx,
            )
        except Exception as e:
            if is_strict(ctx):
                if isinstance(e, HookError):
                    raise
                raise HookError(
                    f"{type(e).__name__}: {e}",
                    stage=f"after_{kind.value}",
                    origin=name,
                    collection=ctx.slug,
                    hook=write_version.__qualname__,
                ) from e
            logger.warning(f"Could not record version of '{ctx.slug}' record {record_id}: {e}")
            return
        logger.debug(f"Recorded version {version} of '{ctx.slug}' record {record_id}")

    # -- collection operations -----------------------------------------

    def shadow_client(client: Any) -> Any:
        return client.engine.collections[f"{client.slug}{suffix}"]

    async def get_versions(
        client: Any,
        record_id: str,
        *,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        """Version records of one record, oldest first."""
        return await shadow_client(client).find_many(
            {"record": record_id}, order_by="version", limit=limit, offset=offset
        )

    async def get_version(client: Any, record_id: str, version: int) -> Dict[str, Any]:
        """One version record.

        Raises:
            NotFoundError: If the record has no such version
        """
        return await shadow_client(client).find_unique({"record": record_id, "version": version})

    async def state_at(client: Any, record_id: str, version: int) -> Dict[str, Any]:
        target = await get_version(client, record_id, version)
        if snapshot_mode == "full":
            if target.get("snapshot") is None:
                raise VersioningError(
                    f"Version {version} of '{client.slug}' record {record_id} has no snapshot",
                    collection=client.slug,
                )
            return dict(target["snapshot"])

        chain = await shadow_client(client).find_many(
            {"record": record_id, "version": {"lte": version}}, order_by="version"
        )
        state: Dict[str, Any] = {n: None for n in tracked(client.collection)}
        for entry in chain:
            for name_, change in (entry.get("diff") or {}).items():
                state[name_] = change.get("to")
        return state

    async def restore_version(
        client: Any,
        record_id: str,
        version: int,
        *,
        note: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Apply a past state as a normal update (recorded as a new version)."""
        state = await state_at(client, record_id, version)
        writable = set(tracked(client.collection))
        data = {k: v for k, v in state.items() if k in writable}
        async with client.engine.executor.atomic(client.slug, actor=actor) as ctx:
            ctx.state[_RESTORE] = version
            ctx.state[_NOTE] = note or f"Restored version {version}"
            restored = await client.update({"id": record_id}, data, include_deleted=True)
        logger.info(f"Restored '{client.slug}' record {record_id} to version {version}")
        return restored

    async def compare_versions(
        client: Any,
        record_id: str,
        from_version: int,
        to_version: int,
    ) -> Dict[str, Dict[str, Any]]:
        """Diff between two versions of a record (empty when identical)."""
        old = await state_at(client, record_id, from_version)
        new = await state_at(client, record_id, to_version)
        return compute_diff(old, new, sorted(set(old) | set(new)))

    async def cleanup_versions(
        client: Any,
        record_id: Optional[str] = None,
        *,
        keep_last: int = 10,
    ) -> int:
        """Delete all but the newest keep_last versions of a record (or of every record).

        Returns:
            Number of version records deleted

        Raises:
            VersioningError: In diff mode (older diffs are needed to rebuild
                newer states) or when keep_last < 1
        """
        if snapshot_mode != "full":
            raise VersioningError(
                "cleanup_versions requires snapshot_mode='full'", collection=client.slug
            )
        if keep_last < 1:
            raise VersioningError(f"keep_last must be at least 1, got {keep_last}", collection=client.slug)

        shadow = shadow_client(client)
        where = {"record": record_id} if record_id is not None else None
        removed = 0
        async with client.engine.executor.atomic(shadow.slug):
            entries = await shadow.find_many(where, order_by=[("record", "asc"), ("version", "desc")])
            kept: Dict[str, int] = {}
            for entry in entries:
                kept[entry["record"]] = kept.get(entry["record"], 0) + 1
                if kept[entry["record"]] > keep_last:
                    await shadow.delete({"id": entry["id"]})
                    removed += 1
        logger.info(f"Removed {removed} old version(s) from '{shadow.slug}'")
        return removed

    def extend(coll: CollectionDef) -> Optional[Partial]:
        if coll.auxiliary:
            return None
        if selected is not None and coll.slug not in selected:
            return None
        return Partial(
            hooks=HookSet.of(
                after_create=write_version,
                after_update=write_version,
                after_delete=write_version,
            ),
            collections=(shadow_for(coll.slug),),
            methods={
                "get_versions": get_versions,
                "get_version": get_version,
                "restore_version": restore_version,
                "compare_versions": compare_versions,
                "cleanup_versions": cleanup_versions,
            },
        )

    return Plugin(name=name, extend=extend, description="Append-only record history")
