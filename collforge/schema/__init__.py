"""
Schema module for collforge.

This module provides the declaration and resolution layer:
- Field type registry (descriptors, options, builtin types)
- Declarations (FieldDef, CollectionDef, HookSet) and their builders
- Plugin descriptors and the plugin composer
- The schema resolver and the immutable ResolvedSchema

Invariants:
    - Declarations are frozen values; composition builds new ones
    - A ResolvedSchema is built once and never mutated
    - Field type identifiers are unique within a resolution scope

How to change safely:
    - Anything that changes the resolved shape must change the fingerprint
    - Keep composition order (global, local, inline) stable; it is hook order
"""

from .composer import compose_collection, effective_plugins
from .fieldtypes import (
    FieldTypeDescriptor,
    FieldTypeRegistry,
    OptionDelta,
    StorageColumn,
    ValidationRule,
    ValueKind,
)
from .plugin import OperationMiddleware, Partial, Plugin
from .resolved import ResolvedCollection, ResolvedField, ResolvedSchema
from .resolver import resolve_schema
from .types import (
    CollectionDef,
    ComputedSpec,
    FieldDef,
    HookSet,
    HookStage,
    collection,
    computed,
    field,
    relation,
    reverse_relation,
)

__all__ = [
    # Field types
    "FieldTypeDescriptor",
    "FieldTypeRegistry",
    "OptionDelta",
    "StorageColumn",
    "ValidationRule",
    "ValueKind",
    # Declarations
    "CollectionDef",
    "ComputedSpec",
    "FieldDef",
    "HookSet",
    "HookStage",
    "collection",
    "computed",
    "field",
    "relation",
    "reverse_relation",
    # Plugins
    "Plugin",
    "Partial",
    "OperationMiddleware",
    "compose_collection",
    "effective_plugins",
    # Resolution
    "ResolvedCollection",
    "ResolvedField",
    "ResolvedSchema",
    "resolve_schema",
]
