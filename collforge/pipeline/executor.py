"""
Operation executor for collforge.

The executor drives every operation through a fixed-stage pipeline:

Read path (find_many, find_unique, count):
    ValidateQuery -> Authorize -> before_read -> middleware.before ->
    Execute -> middleware.after -> after_read -> CoerceTypes -> Return

Write path (create, update, delete):
    ValidateInput -> Authorize -> before_operation -> LookupTarget ->
    before_<kind> -> validate -> RunValidators -> before_database ->
    middleware.before -> Execute -> middleware.after -> after_<kind> ->
    after_operation -> CoerceTypes -> Return

Execute is the only stage that calls the store. Every write runs in a single
transaction that stays open through the after stages, so a failing after
hook rolls back the primary write. Operations started while another
operation is running (from a hook, directly or through a plugin method)
join the running operation's transaction.

Invariants:
    - Hooks of one stage run sequentially, never concurrently
    - A Skip signal replaces Execute; every other stage still runs
    - Any error rolls back the outermost transaction
"""

from __future__ import annotations

import inspect
import logging
import uuid
from contextlib import asynccontextmanager
from contextvars import ContextVar
from dataclasses import replace
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

from ..errors import AccessDeniedError, NotFoundError, ValidationError
from ..schema.resolved import ResolvedCollection, ResolvedField, ResolvedSchema
from ..schema.types import HookStage
from .context import OperationContext, OperationKind
from .hooks import HookArgs, run_middleware_after, run_middleware_before, run_stage
from .query import FindOptions, Where, validate_order_by, validate_where
from .shaping import (
    apply_defaults,
    clean_input,
    coerce_record,
    field_errors,
    project,
    shape_record,
    validate_include,
    validate_select,
)

if TYPE_CHECKING:
    from ..client import Engine
    from ..config import Settings
    from ..store.base import Store

logger = logging.getLogger(__name__)

_current: ContextVar[Optional[OperationContext]] = ContextVar("collforge_operation", default=None)

_BEFORE = {
    OperationKind.CREATE: HookStage.BEFORE_CREATE,
    OperationKind.UPDATE: HookStage.BEFORE_UPDATE,
    OperationKind.DELETE: HookStage.BEFORE_DELETE,
}
_AFTER = {
    OperationKind.CREATE: HookStage.AFTER_CREATE,
    OperationKind.UPDATE: HookStage.AFTER_UPDATE,
    OperationKind.DELETE: HookStage.AFTER_DELETE,
}


def current_operation() -> Optional[OperationContext]:
    """Context of the operation running in this task, if any."""
    return _current.get()


class OperationExecutor:
    """Runs operations against a resolved schema and a store.

    Attributes:
        schema: Resolved schema
        store: Persistence collaborator
        settings: Engine settings
        engine: Owning engine (exposed to hooks through the context)

    Example:
        >>> executor = OperationExecutor(schema, store, settings, engine)
        >>> post = await executor.create("posts", {"title": "Hello"})
        >>> await executor.find_many("posts", FindOptions.build(where={"title": "Hello"}))
    """

    def __init__(self, schema: ResolvedSchema, store: Store, settings: Settings, engine: Engine) -> None:
        self.schema = schema
        self.store = store
        self.settings = settings
        self.engine = engine

    # ------------------------------------------------------------------
    # Context
    # ------------------------------------------------------------------

    def _context(
        self,
        slug: str,
        kind: OperationKind,
        locale: Optional[str],
        actor: Optional[str],
        parent: Optional[OperationContext],
    ) -> OperationContext:
        collection = self.schema.require(slug)
        parent = parent if parent is not None else _current.get()
        if parent is not None:
            return parent.child(collection, kind, locale=locale, actor=actor)
        return OperationContext(
            collection=collection,
            operation=kind,
            engine=self.engine,
            locale=locale or self.settings.default_locale,
            actor=actor,
        )

    async def _run(
        self,
        ctx: OperationContext,
        body: Callable[[OperationContext], Awaitable[Any]],
        transactional: bool,
    ) -> Any:
        token = _current.set(ctx)
        try:
            if not transactional or ctx.transaction is not None:
                return await body(ctx)
            async with self.store.transaction() as tx:
                ctx.transaction = tx
                return await body(ctx)
        finally:
            _current.reset(token)

    async def _authorize(self, ctx: OperationContext) -> None:
        access = ctx.collection.access
        check = access.get(ctx.operation.value) or access.get("*")
        if check is None:
            return
        allowed = check(ctx)
        if inspect.isawaitable(allowed):
            allowed = await allowed
        if not allowed:
            logger.info(
                f"Access denied: actor={ctx.actor!r} operation={ctx.operation.value} "
                f"collection={ctx.slug}"
            )
            raise AccessDeniedError(ctx.slug, ctx.operation.value, ctx.actor)

    @asynccontextmanager
    async def atomic(
        self,
        slug: str,
        actor: Optional[str] = None,
        locale: Optional[str] = None,
        parent: Optional[OperationContext] = None,
    ) -> AsyncIterator[OperationContext]:
        """Run several operations in one transaction.

        Operations started inside the block join the transaction. When an
        operation is already running the block joins its transaction instead.

        Example:
            >>> async with executor.atomic("posts", actor="user:1"):
            ...     await executor.update("posts", {"id": a}, {"title": "A"})
            ...     await executor.update("posts", {"id": b}, {"title": "B"})
        """
        ctx = self._context(slug, OperationKind.UPDATE, locale, actor, parent)
        token = _current.set(ctx)
        try:
            if ctx.transaction is not None:
                yield ctx
            else:
                async with self.store.transaction() as tx:
                    ctx.transaction = tx
                    yield ctx
        finally:
            _current.reset(token)

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    async def find_many(
        self,
        slug: str,
        options: Optional[FindOptions] = None,
        actor: Optional[str] = None,
        parent: Optional[OperationContext] = None,
    ) -> List[Dict[str, Any]]:
        options = options or FindOptions()
        ctx = self._context(slug, OperationKind.FIND_MANY, options.locale, actor, parent)
        return await self._run(ctx, lambda c: self._read(c, options), transactional=False)

    async def find_unique(
        self,
        slug: str,
        options: Optional[FindOptions] = None,
        actor: Optional[str] = None,
        parent: Optional[OperationContext] = None,
    ) -> Dict[str, Any]:
        options = options or FindOptions()
        ctx = self._context(slug, OperationKind.FIND_UNIQUE, options.locale, actor, parent)
        return await self._run(ctx, lambda c: self._read(c, options), transactional=False)

    async def count(
        self,
        slug: str,
        options: Optional[FindOptions] = None,
        actor: Optional[str] = None,
        parent: Optional[OperationContext] = None,
    ) -> int:
        options = options or FindOptions()
        ctx = self._context(slug, OperationKind.COUNT, options.locale, actor, parent)
        return await self._run(ctx, lambda c: self._read(c, options), transactional=False)

    def _validate_query(self, collection: ResolvedCollection, options: FindOptions) -> FindOptions:
        validate_select(collection, options.select)
        validate_include(collection, options.include)
        return replace(
            options,
            where=validate_where(collection, options.where),
            order_by=validate_order_by(collection, options.order_by),
        )

    async def _read(self, ctx: OperationContext, options: FindOptions) -> Any:
        coll = ctx.collection
        options = self._validate_query(coll, options)
        await self._authorize(ctx)

        args = HookArgs(context=ctx, query=options, where=options.where)
        await run_stage(HookStage.BEFORE_READ, args, slot="query")
        args.query = self._validate_query(coll, args.query)
        args.where = args.query.where

        middlewares = coll.middlewares_for(ctx.operation.value)
        await run_middleware_before(middlewares, args)
        if args.skip is not None:
            args.result = args.skip.result
        else:
            args.result = await self._execute_read(ctx, args.query)
        await run_middleware_after(middlewares, args)

        await run_stage(HookStage.AFTER_READ, args, slot="result")
        return await self._shape_read(ctx, args.query, args.result)

    async def _execute_read(self, ctx: OperationContext, query: FindOptions) -> Any:
        coll = ctx.collection
        tx = ctx.transaction
        if ctx.operation == OperationKind.COUNT:
            return await self.store.count(coll.slug, query.where, tx=tx)

        if ctx.operation == OperationKind.FIND_UNIQUE:
            rows = await self.store.find_many(coll.slug, query.where, limit=2, tx=tx)
            if not rows:
                raise NotFoundError(coll.slug, query.where)
            if len(rows) > 1:
                raise ValidationError(
                    f"find_unique on '{coll.slug}' matched more than one record",
                    collection=coll.slug,
                )
            return coerce_record(coll, rows[0])

        rows = await self.store.find_many(
            coll.slug,
            query.where,
            order_by=query.order_by,
            limit=query.limit,
            offset=query.offset,
            tx=tx,
        )
        return [coerce_record(coll, r) for r in rows]

    async def _shape_read(self, ctx: OperationContext, query: FindOptions, result: Any) -> Any:
        if ctx.operation == OperationKind.COUNT:
            return result
        if ctx.operation == OperationKind.FIND_UNIQUE:
            if result is None:
                return None
            return await self._shape(ctx, result, query.select, query.include)
        return [await self._shape(ctx, r, query.select, query.include) for r in result or []]

    async def _shape(
        self,
        ctx: OperationContext,
        record: Dict[str, Any],
        select: Optional[tuple] = None,
        include: tuple = (),
    ) -> Dict[str, Any]:
        """CoerceTypes stage: coerce, compute, expand includes, project."""
        shaped = shape_record(ctx.collection, record)
        assert shaped is not None
        for name in include:
            f = ctx.collection.get_field(name)
            assert f is not None
            shaped[name] = await self._expand(ctx, f, shaped)
        if select is None:
            return shaped
        return project(shaped, tuple(select) + tuple(include))

    async def _expand(self, ctx: OperationContext, f: ResolvedField, record: Dict[str, Any]) -> Any:
        assert f.target is not None
        if f.is_reverse_relation:
            options = FindOptions(where={f.definition.via: record["id"]}, locale=ctx.locale)
            return await self.find_many(f.target, options, parent=ctx)

        value = record.get(f.name)
        if value is None:
            return None
        options = FindOptions(where={"id": value}, limit=1, locale=ctx.locale)
        found = await self.find_many(f.target, options, parent=ctx)
        return found[0] if found else None

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    async def create(
        self,
        slug: str,
        data: Dict[str, Any],
        locale: Optional[str] = None,
        actor: Optional[str] = None,
        parent: Optional[OperationContext] = None,
    ) -> Dict[str, Any]:
        ctx = self._context(slug, OperationKind.CREATE, locale, actor, parent)
        return await self._run(ctx, lambda c: self._write(c, data=data), transactional=True)

    async def update(
        self,
        slug: str,
        where: Where,
        data: Dict[str, Any],
        locale: Optional[str] = None,
        actor: Optional[str] = None,
        include_deleted: bool = False,
        parent: Optional[OperationContext] = None,
    ) -> Dict[str, Any]:
        ctx = self._context(slug, OperationKind.UPDATE, locale, actor, parent)
        ctx.state["include_deleted"] = include_deleted
        return await self._run(ctx, lambda c: self._write(c, data=data, where=where), transactional=True)

    async def delete(
        self,
        slug: str,
        where: Where,
        permanent: bool = False,
        locale: Optional[str] = None,
        actor: Optional[str] = None,
        include_deleted: bool = False,
        parent: Optional[OperationContext] = None,
    ) -> Dict[str, Any]:
        ctx = self._context(slug, OperationKind.DELETE, locale, actor, parent)
        ctx.state["permanent"] = permanent
        ctx.state["include_deleted"] = include_deleted
        return await self._run(ctx, lambda c: self._write(c, where=where), transactional=True)

    async def _write(
        self,
        ctx: OperationContext,
        data: Optional[Dict[str, Any]] = None,
        where: Optional[Where] = None,
    ) -> Dict[str, Any]:
        coll = ctx.collection
        kind = ctx.operation

        # ValidateInput
        if kind == OperationKind.CREATE:
            data = apply_defaults(coll, clean_input(coll, data))
        elif kind == OperationKind.UPDATE:
            data = clean_input(coll, data)
        else:
            data = None
        if kind != OperationKind.CREATE:
            if not where:
                raise ValidationError(f"{kind.value} on '{coll.slug}' needs a where clause", collection=coll.slug)
            where = validate_where(coll, where)

        await self._authorize(ctx)

        args = HookArgs(context=ctx, data=data, where=where)
        await run_stage(HookStage.BEFORE_OPERATION, args, slot="data")

        if kind != OperationKind.CREATE:
            args.where = validate_where(coll, args.where)
            args.existing = await self._find_target(ctx, args.where)

        await run_stage(_BEFORE[kind], args, slot="data")

        if kind != OperationKind.DELETE:
            await run_stage(HookStage.VALIDATE, args, slot="data")
            args.data = clean_input(coll, args.data)
            errors = field_errors(coll, args.data, partial=kind == OperationKind.UPDATE)
            if errors:
                raise ValidationError.from_field_errors(coll.slug, errors)

        await run_stage(HookStage.BEFORE_DATABASE, args, slot="data")

        middlewares = coll.middlewares_for(kind.value)
        await run_middleware_before(middlewares, args)
        if args.skip is not None:
            args.result = args.skip.result
        else:
            args.result = await self._execute_write(ctx, args)
        await run_middleware_after(middlewares, args)

        await run_stage(_AFTER[kind], args, slot="result")
        await run_stage(HookStage.AFTER_OPERATION, args, slot="result")

        logger.debug(
            f"{kind.value} on '{coll.slug}' completed"
            f"{' (execute skipped)' if args.skipped else ''}, depth={ctx.depth}"
        )
        if args.result is None:
            return None
        return await self._shape(ctx, args.result)

    async def _find_target(self, ctx: OperationContext, where: Where) -> Dict[str, Any]:
        coll = ctx.collection
        rows = await self.store.find_many(coll.slug, where, limit=2, tx=ctx.transaction)
        if not rows:
            raise NotFoundError(coll.slug, where)
        if len(rows) > 1:
            raise ValidationError(
                f"{ctx.operation.value} on '{coll.slug}' matched more than one record; "
                "narrow the where clause",
                collection=coll.slug,
            )
        return coerce_record(coll, rows[0])

    async def _execute_write(self, ctx: OperationContext, args: HookArgs) -> Optional[Dict[str, Any]]:
        coll = ctx.collection
        tx = ctx.transaction
        now = datetime.now(timezone.utc)

        if ctx.operation == OperationKind.CREATE:
            record: Dict[str, Any] = {f.name: None for f in coll.input_fields()}
            record.update(args.data or {})
            record.update(id=str(uuid.uuid4()), created_at=now, updated_at=now)
            stored = await self.store.insert(coll.slug, record, tx=tx)
            return coerce_record(coll, stored)

        assert args.existing is not None
        record_id = args.existing["id"]
        if ctx.operation == OperationKind.UPDATE:
            changes = dict(args.data or {})
            changes["updated_at"] = now
            stored = await self.store.update(coll.slug, record_id, changes, tx=tx)
            return coerce_record(coll, stored)

        await self.store.delete(coll.slug, record_id, tx=tx)
        return dict(args.existing)
