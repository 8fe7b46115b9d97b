"""
Hook execution for the collforge pipeline.

Every stage runs its hooks sequentially, in the order fixed by composition
(global plugins, then collection plugins, then inline hooks). A hook may be a
plain function or a coroutine function; the runner always awaits completion
before starting the next hook.

Hook contract:
    - The hook receives a HookArgs value
    - Returning None keeps the stage payload
    - Returning any other value replaces the stage payload
    - Returning Skip(result) marks the operation as handled: Execute becomes
      a no-op yielding result
    - Hooks may also assign args.data, args.where or args.query directly

Errors:
    - CollforgeError subclasses propagate unchanged
    - Any other exception is wrapped in HookError naming the stage and the
      contributor of the hook
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, Iterable, Optional, Tuple

from ..errors import CollforgeError, HookError
from ..schema.plugin import OperationMiddleware
from ..schema.resolved import RegisteredHook, ResolvedCollection
from ..schema.types import HookStage
from .context import OperationContext, OperationKind

if TYPE_CHECKING:
    from .query import FindOptions

logger = logging.getLogger(__name__)

__all__ = ["HookArgs", "HookStage", "Skip", "run_stage", "run_middleware_before", "run_middleware_after"]


@dataclass(frozen=True)
class Skip:
    """Signal returned by a hook or middleware to bypass Execute."""

    result: Any = None


@dataclass
class HookArgs:
    """Arguments passed to every hook.

    Attributes:
        context: Operation context
        data: Write payload (create/update)
        result: Operation result (after stages)
        where: Target predicate (update/delete)
        query: Read options (read path)
        existing: Current record of an update/delete target
        skip: Skip signal raised by an earlier stage, if any
    """

    context: OperationContext
    data: Optional[Dict[str, Any]] = None
    result: Any = None
    where: Optional[Dict[str, Any]] = None
    query: Optional[FindOptions] = None
    existing: Optional[Dict[str, Any]] = None
    skip: Optional[Skip] = None

    @property
    def locale(self) -> str:
        return self.context.locale

    @property
    def collection(self) -> ResolvedCollection:
        return self.context.collection

    @property
    def operation(self) -> OperationKind:
        return self.context.operation

    @property
    def actor(self) -> Optional[str]:
        return self.context.actor

    @property
    def skipped(self) -> bool:
        return self.skip is not None


async def _call(fn: Any, args: HookArgs) -> Any:
    value = fn(args)
    if inspect.isawaitable(value):
        value = await value
    return value


def _name(fn: Any) -> str:
    return getattr(fn, "__qualname__", None) or repr(fn)


def _wrap(e: Exception, stage: str, origin: str, hook: str, args: HookArgs) -> HookError:
    logger.error(
        f"Hook '{hook}' from '{origin}' failed at {stage} on '{args.collection.slug}': "
        f"{type(e).__name__}: {e}"
    )
    return HookError(
        f"{type(e).__name__}: {e}",
        stage=stage,
        origin=origin,
        collection=args.collection.slug,
        hook=hook,
    )


async def run_stage(stage: HookStage, args: HookArgs, slot: Optional[str] = None) -> HookArgs:
    """Run every hook of a stage.

    Args:
        stage: Stage to run
        args: In-flight arguments (updated in place)
        slot: Name of the HookArgs attribute a returned value replaces

    Returns:
        The same args

    Raises:
        HookError: If a hook raised a non-framework exception
        CollforgeError: If a hook raised one
    """
    hooks: Tuple[RegisteredHook, ...] = args.collection.hooks_for(stage)
    for hook in hooks:
        try:
            value = await _call(hook.fn, args)
        except CollforgeError:
            raise
        except Exception as e:
            raise _wrap(e, stage.value, hook.origin, hook.name, args) from e

        if isinstance(value, Skip):
            logger.debug(f"Hook '{hook.name}' from '{hook.origin}' skipped execute at {stage.value}")
            args.skip = value
        elif value is not None and slot is not None:
            setattr(args, slot, value)
    return args


async def run_middleware_before(
    middlewares: Iterable[Tuple[str, OperationMiddleware]],
    args: HookArgs,
) -> HookArgs:
    """Run the before half of every middleware; Skip short-circuits Execute."""
    for origin, middleware in middlewares:
        if middleware.before is None:
            continue
        try:
            value = await _call(middleware.before, args)
        except CollforgeError:
            raise
        except Exception as e:
            stage = f"{args.operation.value}:before"
            raise _wrap(e, stage, origin, _name(middleware.before), args) from e
        if isinstance(value, Skip):
            args.skip = value
    return args


async def run_middleware_after(
    middlewares: Iterable[Tuple[str, OperationMiddleware]],
    args: HookArgs,
) -> HookArgs:
    """Run the after half of every middleware; a returned value replaces the result."""
    for origin, middleware in middlewares:
        if middleware.after is None:
            continue
        try:
            value = await _call(middleware.after, args)
        except CollforgeError:
            raise
        except Exception as e:
            stage = f"{args.operation.value}:after"
            raise _wrap(e, stage, origin, _name(middleware.after), args) from e
        if value is not None and not isinstance(value, Skip):
            args.result = value
    return args
