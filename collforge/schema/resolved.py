"""
Resolved schema for collforge.

A ResolvedSchema is the closed, cross-referenced graph of collections the
engine runs against. It is produced once by resolve_schema() and never
changes for the lifetime of the process.

It provides:
- Lookup of resolved collections by slug
- Per-collection hook chains tagged with their contributor
- Schema fingerprinting for consistency checks against a store

Invariants:
    - Read-only after construction (no registration path exists)
    - Every relation target is a member of the schema
    - Field names are unique within a resolved collection
    - Fingerprint changes whenever the resolved shape changes

Example:
    >>> schema = resolve_schema([users, posts], plugins=[soft_delete()])
    >>> schema["posts"].get_field("deleted_at").owner
    'soft_delete'
    >>> schema.fingerprint
    'sha256:...'
"""

from __future__ import annotations

import hashlib
import json
import logging
from collections.abc import Mapping as MappingABC
from dataclasses import dataclass
from dataclasses import field as dataclass_field
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterator, Mapping, Optional, Tuple

from ..errors import ConfigurationError, UnknownCollectionError
from .fieldtypes import FieldTypeDescriptor
from .plugin import OperationMiddleware
from .types import CollectionDef, FieldDef, HookStage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolvedField:
    """A field with its type descriptor fully resolved.

    Attributes:
        definition: The declaration as contributed
        descriptor: Type descriptor after options and modifiers were applied
        owner: Contributor ("collection:<slug>" or a plugin name)
        system: True for id / created_at / updated_at
    """

    definition: FieldDef
    descriptor: FieldTypeDescriptor
    owner: str
    system: bool = False

    @property
    def name(self) -> str:
        return self.definition.name

    @property
    def required(self) -> bool:
        return self.definition.required

    @property
    def stored(self) -> bool:
        return self.descriptor.storage.stored

    @property
    def is_relation(self) -> bool:
        return self.descriptor.relation and self.stored

    @property
    def is_reverse_relation(self) -> bool:
        return self.descriptor.relation and not self.stored

    @property
    def is_computed(self) -> bool:
        return self.definition.computed is not None

    @property
    def target(self) -> Optional[str]:
        return self.definition.target

    def check(self, value: Any) -> Optional[str]:
        """Validate a non-null value against the resolved rule."""
        return self.descriptor.validation.check(self.name, value)

    def coerce(self, value: Any) -> Any:
        """Convert a raw value to the field's python type."""
        if value is None or self.descriptor.coerce is None:
            return value
        return self.descriptor.coerce(value)

    def to_dict(self) -> dict[str, Any]:
        result = self.definition.to_dict()
        result.update(self.descriptor.to_dict())
        result["owner"] = self.owner
        if self.system:
            result["system"] = True
        return result


@dataclass(frozen=True)
class RegisteredHook:
    """A hook together with the contributor that declared it."""

    stage: HookStage
    fn: Callable[..., Any]
    origin: str

    @property
    def name(self) -> str:
        return getattr(self.fn, "__qualname__", None) or repr(self.fn)


@dataclass(frozen=True)
class FieldOverride:
    """Diagnostic record of an override during composition."""

    field: str
    replaced: str
    by: str


@dataclass(frozen=True, eq=False)
class ResolvedCollection:
    """A collection composed with every applicable plugin.

    Attributes:
        slug: Collection identity
        fields: Resolved fields, system fields first
        hooks: Per-stage hook chains in execution order
        middlewares: Per-operation (plugin name, middleware) chains
        methods: Plugin-contributed operations by name
        plugins: Names of the plugins applied, in order
        overrides: Field replacements recorded during composition
        declaration: The base declaration
    """

    slug: str
    fields: Tuple[ResolvedField, ...]
    hooks: Mapping[HookStage, Tuple[RegisteredHook, ...]]
    middlewares: Mapping[str, Tuple[Tuple[str, OperationMiddleware], ...]]
    methods: Mapping[str, Callable[..., Any]]
    plugins: Tuple[str, ...]
    overrides: Tuple[FieldOverride, ...]
    declaration: CollectionDef
    _by_name: Mapping[str, ResolvedField] = dataclass_field(
        default_factory=dict, init=False, repr=False
    )

    def __post_init__(self) -> None:
        object.__setattr__(self, "_by_name", MappingProxyType({f.name: f for f in self.fields}))

    @property
    def auxiliary(self) -> bool:
        return self.declaration.auxiliary

    @property
    def owner(self) -> Optional[str]:
        return self.declaration.owner

    @property
    def access(self) -> Mapping[str, Callable[..., Any]]:
        return self.declaration.access

    def get_field(self, name: str) -> Optional[ResolvedField]:
        """Get a field by name."""
        return self._by_name.get(name)

    def has_field(self, name: str) -> bool:
        return name in self._by_name

    def get_field_names(self) -> list[str]:
        """Names of all fields, system fields included."""
        return [f.name for f in self.fields]

    def stored_fields(self) -> list[ResolvedField]:
        """Fields with a storage column."""
        return [f for f in self.fields if f.stored]

    def input_fields(self) -> list[ResolvedField]:
        """Fields callers may write."""
        return [f for f in self.fields if f.stored and not f.system]

    def computed_fields(self) -> list[ResolvedField]:
        return [f for f in self.fields if f.is_computed]

    def computed_order(self) -> list[ResolvedField]:
        """Computed fields ordered so every dependency is evaluated first.

        Raises:
            ConfigurationError: If computed fields depend on each other in a cycle
        """
        pending = {f.name: f for f in self.computed_fields()}
        ordered: list[ResolvedField] = []
        done: set[str] = set()
        while pending:
            ready = [
                f
                for f in pending.values()
                if all(d not in pending or d in done for d in f.definition.computed.depends_on)
            ]
            if not ready:
                raise ConfigurationError(
                    f"Computed fields {sorted(pending)} in '{self.slug}' form a dependency cycle"
                )
            for f in ready:
                ordered.append(f)
                done.add(f.name)
                del pending[f.name]
        return ordered

    def relation_fields(self, target: Optional[str] = None) -> list[ResolvedField]:
        """Stored relation fields, optionally only those pointing at target."""
        return [
            f for f in self.fields if f.is_relation and (target is None or f.target == target)
        ]

    def hooks_for(self, stage: HookStage) -> Tuple[RegisteredHook, ...]:
        return self.hooks.get(stage, ())

    def middlewares_for(self, operation: str) -> Tuple[Tuple[str, OperationMiddleware], ...]:
        return self.middlewares.get(operation, ())

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation."""
        result: dict[str, Any] = {
            "slug": self.slug,
            "fields": [f.to_dict() for f in self.fields],
            "plugins": list(self.plugins),
            "hooks": {
                stage.value: [h.origin for h in chain]
                for stage, chain in self.hooks.items()
                if chain
            },
        }
        if self.auxiliary:
            result["auxiliary"] = True
            result["owner"] = self.owner
        if self.overrides:
            result["overrides"] = [
                {"field": o.field, "replaced": o.replaced, "by": o.by} for o in self.overrides
            ]
        return result


class ResolvedSchema(MappingABC):
    """Immutable mapping of slug -> ResolvedCollection.

    Lookups are lock-free: nothing mutates the schema after construction.

    Attributes:
        fingerprint: SHA-256 hash of the canonical schema representation
    """

    def __init__(self, collections: Mapping[str, ResolvedCollection]) -> None:
        self._collections: Mapping[str, ResolvedCollection] = MappingProxyType(dict(collections))
        self._fingerprint = self._compute_fingerprint()
        logger.info(
            f"Schema resolved with {len(self._collections)} collections, "
            f"fingerprint={self._fingerprint}"
        )

    @property
    def fingerprint(self) -> str:
        """Schema fingerprint."""
        return self._fingerprint

    def __getitem__(self, slug: str) -> ResolvedCollection:
        return self._collections[slug]

    def __iter__(self) -> Iterator[str]:
        return iter(self._collections)

    def __len__(self) -> int:
        return len(self._collections)

    def require(self, slug: str) -> ResolvedCollection:
        """Get a collection or raise UnknownCollectionError."""
        found = self._collections.get(slug)
        if found is None:
            raise UnknownCollectionError(slug)
        return found

    def _compute_fingerprint(self) -> str:
        """Compute SHA-256 fingerprint of the schema.

        The fingerprint is computed from a canonical JSON representation
        of all collections, sorted by slug for determinism.

        Returns:
            Fingerprint string in format 'sha256:<hash>'
        """
        canonical = json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))
        hash_bytes = hashlib.sha256(canonical.encode("utf-8")).hexdigest()
        return f"sha256:{hash_bytes}"

    def to_dict(self) -> Dict[str, Any]:
        """Convert schema to dictionary representation, sorted by slug."""
        return {
            "collections": [self._collections[s].to_dict() for s in sorted(self._collections)]
        }

    def to_json(self, indent: Optional[int] = 2) -> str:
        """Convert schema to JSON string."""
        return json.dumps(self.to_dict(), indent=indent, sort_keys=True)
