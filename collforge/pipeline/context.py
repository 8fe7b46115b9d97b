"""
Operation context for the collforge pipeline.

An OperationContext is created per call and discarded when the call returns.
It carries the resolved collection, the invoking locale, the actor (used for
audit fields) and the active transaction when one is open.

Nested operations started from a hook receive a child context: the child
shares the parent's transaction, actor and locale, so its writes commit or
roll back together with the parent's.

Invariants:
    - A context never outlives its operation
    - A child context always joins its parent's transaction
    - state is private to one operation; hooks use it to pass values
      between stages
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Optional

from ..schema.resolved import ResolvedCollection

if TYPE_CHECKING:
    from ..client import Engine
    from ..store.base import Transaction


class OperationKind(Enum):
    """Operations the executor runs."""

    FIND_MANY = "find_many"
    FIND_UNIQUE = "find_unique"
    COUNT = "count"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"

    @property
    def is_write(self) -> bool:
        return self in (OperationKind.CREATE, OperationKind.UPDATE, OperationKind.DELETE)


@dataclass
class OperationContext:
    """Per-call operation state.

    Attributes:
        collection: Resolved collection the operation targets
        operation: Operation kind
        engine: Engine running the operation (for nested operations)
        locale: Invoking locale
        actor: Current actor, if known
        transaction: Active transaction, if one is open
        parent: Context of the operation that started this one
        state: Scratch space shared by the hooks of this operation
    """

    collection: ResolvedCollection
    operation: OperationKind
    engine: Engine
    locale: str
    actor: Optional[str] = None
    transaction: Optional[Transaction] = None
    parent: Optional[OperationContext] = None
    state: Dict[str, Any] = field(default_factory=dict)

    @property
    def slug(self) -> str:
        return self.collection.slug

    @property
    def depth(self) -> int:
        """Nesting depth (0 for operations started by application code)."""
        depth = 0
        ctx = self.parent
        while ctx is not None:
            depth += 1
            ctx = ctx.parent
        return depth

    @property
    def in_transaction(self) -> bool:
        return self.transaction is not None

    def child(
        self,
        collection: ResolvedCollection,
        operation: OperationKind,
        locale: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> OperationContext:
        """Context for a nested operation joining this one's transaction."""
        return OperationContext(
            collection=collection,
            operation=operation,
            engine=self.engine,
            locale=locale or self.locale,
            actor=actor if actor is not None else self.actor,
            transaction=self.transaction,
            parent=self,
        )

    def is_nested_in(self, operation: OperationKind) -> bool:
        """Whether an enclosing operation has the given kind."""
        ctx = self.parent
        while ctx is not None:
            if ctx.operation == operation:
                return True
            ctx = ctx.parent
        return False

    def __repr__(self) -> str:
        return (
            f"OperationContext({self.operation.value} on {self.slug!r}, "
            f"actor={self.actor!r}, depth={self.depth})"
        )
