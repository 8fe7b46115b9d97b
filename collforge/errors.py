"""
Error types for collforge.

This module defines every exception raised by the engine:
- CollforgeError: Base exception
- ConfigurationError: Schema resolution failures (fatal at startup)
- ConflictError: Plugin field-name collision without override
- ValidationError: Field constraint violations (field-attributed)
- HookError: A lifecycle hook raised
- NotFoundError: No record matches a write or unique lookup
- AccessDeniedError: The Authorize stage rejected the operation
- CacheError / VersioningError: Plugin side-effect failures

Invariants:
    - All errors inherit from CollforgeError
    - Errors carry a machine-readable code and a details dict
    - Configuration-time errors are raised before any operation runs
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence


class CollforgeError(Exception):
    """Base exception for all collforge errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "COLLFORGE_ERROR"
        self.details = details or {}


# ---------------------------------------------------------------------------
# Configuration-time errors
# ---------------------------------------------------------------------------


class ConfigurationError(CollforgeError):
    """Schema resolution failed.

    Raised when:
    - A field type or collection slug is registered twice
    - A plugin dependency is missing
    - A relation points at an undeclared collection
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, code=code or "CONFIGURATION_ERROR", details=details)


class DuplicateFieldTypeError(ConfigurationError):
    """A field type identifier is already registered in the active scope."""

    def __init__(self, identifier: str) -> None:
        super().__init__(
            f"Field type '{identifier}' is already registered",
            code="DUPLICATE_FIELD_TYPE",
            details={"identifier": identifier},
        )
        self.identifier = identifier


class UnknownFieldTypeError(ConfigurationError):
    """A field references a type that is not registered."""

    def __init__(self, identifier: str, suggestions: Optional[List[str]] = None) -> None:
        suggestions = suggestions or []
        msg = f"Unknown field type '{identifier}'"
        if suggestions:
            msg += f". Did you mean: {', '.join(suggestions)}?"
        super().__init__(
            msg,
            code="UNKNOWN_FIELD_TYPE",
            details={"identifier": identifier, "suggestions": suggestions},
        )
        self.identifier = identifier
        self.suggestions = suggestions


class UnknownOptionError(ConfigurationError):
    """A field applies an option its type does not define."""

    def __init__(self, identifier: str, option: str) -> None:
        super().__init__(
            f"Field type '{identifier}' has no option '{option}'",
            code="UNKNOWN_OPTION",
            details={"identifier": identifier, "option": option},
        )
        self.identifier = identifier
        self.option = option


class InvalidFieldError(ConfigurationError):
    """A field declaration is internally inconsistent."""

    def __init__(self, collection: str, field_name: str, problems: Sequence[str]) -> None:
        super().__init__(
            f"Invalid field '{collection}.{field_name}': {'; '.join(problems)}",
            code="INVALID_FIELD",
            details={"collection": collection, "field": field_name, "problems": list(problems)},
        )
        self.collection = collection
        self.field_name = field_name
        self.problems = list(problems)


class DuplicateCollectionError(ConfigurationError):
    """Two collections resolve to the same slug."""

    def __init__(self, slug: str) -> None:
        super().__init__(
            f"Collection '{slug}' is declared more than once",
            code="DUPLICATE_COLLECTION",
            details={"slug": slug},
        )
        self.slug = slug


class UnknownCollectionError(ConfigurationError):
    """A relation targets a collection that does not exist."""

    def __init__(self, slug: str, referenced_by: Optional[str] = None) -> None:
        msg = f"Unknown collection '{slug}'"
        if referenced_by:
            msg += f" (referenced by {referenced_by})"
        super().__init__(
            msg,
            code="UNKNOWN_COLLECTION",
            details={"slug": slug, "referenced_by": referenced_by},
        )
        self.slug = slug
        self.referenced_by = referenced_by


class DuplicatePluginError(ConfigurationError):
    """The same plugin name appears twice in one effective plugin list."""

    def __init__(self, name: str, collection: Optional[str] = None) -> None:
        where = f" for collection '{collection}'" if collection else ""
        super().__init__(
            f"Plugin '{name}' is applied more than once{where}",
            code="DUPLICATE_PLUGIN",
            details={"plugin": name, "collection": collection},
        )
        self.name = name


class MissingDependencyError(ConfigurationError):
    """A plugin requires another plugin that is not applied before it."""

    def __init__(self, plugin: str, missing: str, collection: Optional[str] = None) -> None:
        where = f" on collection '{collection}'" if collection else ""
        super().__init__(
            f"Plugin '{plugin}' requires '{missing}', which is not applied before it{where}",
            code="MISSING_PLUGIN_DEPENDENCY",
            details={"plugin": plugin, "missing": missing, "collection": collection},
        )
        self.plugin = plugin
        self.missing = missing


class ConflictError(ConfigurationError):
    """Two contributors declare the same field without an override flag.

    Attributes:
        collection: Collection being composed
        field_name: The contested field
        contributors: (existing owner, new contributor)
    """

    def __init__(self, collection: str, field_name: str, existing: str, contributor: str) -> None:
        super().__init__(
            f"Field '{field_name}' on collection '{collection}' is declared by both "
            f"'{existing}' and '{contributor}'",
            code="FIELD_CONFLICT",
            details={
                "collection": collection,
                "field": field_name,
                "contributors": [existing, contributor],
            },
        )
        self.collection = collection
        self.field_name = field_name
        self.contributors = (existing, contributor)


class SchemaMismatchError(ConfigurationError):
    """The resolved schema does not match the expected fingerprint."""

    def __init__(self, expected_fingerprint: str, actual_fingerprint: str) -> None:
        super().__init__(
            f"Schema fingerprint mismatch: expected {expected_fingerprint}, "
            f"resolved {actual_fingerprint}",
            code="SCHEMA_MISMATCH",
            details={
                "expected_fingerprint": expected_fingerprint,
                "actual_fingerprint": actual_fingerprint,
            },
        )
        self.expected_fingerprint = expected_fingerprint
        self.actual_fingerprint = actual_fingerprint


# ---------------------------------------------------------------------------
# Operation-time errors
# ---------------------------------------------------------------------------


class ValidationError(CollforgeError):
    """Input or query validation failed.

    Attributes:
        collection: Collection slug
        errors: Mapping of field name -> list of messages
    """

    def __init__(
        self,
        message: str,
        collection: Optional[str] = None,
        errors: Optional[Dict[str, List[str]]] = None,
        code: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            code=code or "VALIDATION_ERROR",
            details={"collection": collection, "errors": errors or {}},
        )
        self.collection = collection
        self.errors = errors or {}

    @classmethod
    def from_field_errors(cls, collection: str, errors: Dict[str, List[str]]) -> ValidationError:
        """Build an error whose message lists every field failure."""
        parts = [f"{name}: {msg}" for name, msgs in errors.items() for msg in msgs]
        return cls(
            f"Validation failed for {collection}: {'; '.join(parts)}",
            collection=collection,
            errors=errors,
        )


class UnknownFieldError(ValidationError):
    """Unknown field in input or query.

    Includes suggestions for similar field names.
    """

    def __init__(
        self,
        field_name: str,
        collection: str,
        suggestions: Optional[List[str]] = None,
    ) -> None:
        suggestions = suggestions or []
        msg = f"Unknown field '{field_name}' in collection '{collection}'"
        if suggestions:
            msg += f". Did you mean: {', '.join(suggestions)}?"
        super().__init__(
            msg,
            collection=collection,
            errors={field_name: ["unknown field"]},
            code="UNKNOWN_FIELD",
        )
        self.field_name = field_name
        self.suggestions = suggestions


class UniqueViolationError(ValidationError):
    """A unique field already holds the submitted value."""

    def __init__(self, collection: str, field_name: str) -> None:
        super().__init__(
            f"Field '{field_name}' must be unique in collection '{collection}'",
            collection=collection,
            errors={field_name: ["must be unique"]},
            code="UNIQUE_VIOLATION",
        )
        self.field_name = field_name


class HookError(CollforgeError):
    """A lifecycle hook raised.

    Attributes:
        stage: Pipeline stage that was running
        origin: Contributor of the hook (plugin or collection)
        hook: Name of the failing hook function
    """

    def __init__(
        self,
        message: str,
        stage: str,
        origin: str,
        collection: Optional[str] = None,
        hook: Optional[str] = None,
    ) -> None:
        name = f" '{hook}'" if hook else ""
        super().__init__(
            f"Hook{name} from '{origin}' failed at stage '{stage}': {message}",
            code="HOOK_ERROR",
            details={"stage": stage, "origin": origin, "hook": hook, "collection": collection},
        )
        self.stage = stage
        self.origin = origin
        self.hook = hook
        self.collection = collection


class NotFoundError(CollforgeError):
    """No record matches the lookup."""

    def __init__(self, collection: str, where: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(
            f"No record in '{collection}' matches {where!r}",
            code="NOT_FOUND",
            details={"collection": collection, "where": where},
        )
        self.collection = collection
        self.where = where


class AccessDeniedError(CollforgeError):
    """The actor may not run this operation."""

    def __init__(self, collection: str, operation: str, actor: Optional[str] = None) -> None:
        super().__init__(
            f"Actor {actor!r} may not {operation} on '{collection}'",
            code="ACCESS_DENIED",
            details={"collection": collection, "operation": operation, "actor": actor},
        )
        self.collection = collection
        self.operation = operation
        self.actor = actor


class RestrictError(CollforgeError):
    """A delete was refused because dependent records exist."""

    def __init__(self, collection: str, dependent: str, count: int) -> None:
        super().__init__(
            f"Cannot delete from '{collection}': {count} dependent record(s) in '{dependent}'",
            code="RESTRICTED",
            details={"collection": collection, "dependent": dependent, "count": count},
        )
        self.collection = collection
        self.dependent = dependent
        self.count = count


class CacheError(CollforgeError):
    """The cache backing store failed."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="CACHE_ERROR")


class VersioningError(CollforgeError):
    """A version record could not be written or read."""

    def __init__(self, message: str, collection: Optional[str] = None) -> None:
        super().__init__(message, code="VERSIONING_ERROR", details={"collection": collection})
        self.collection = collection


class StoreError(CollforgeError):
    """The persistence collaborator failed."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="STORE_ERROR")
