"""
Schema CLI tool for collforge.

This tool inspects the resolved schema of an application:
- snapshot: Export the resolved schema and its fingerprint to JSON
- check: Compare the resolved schema with a baseline snapshot
- diff: Show differences between two snapshots
- validate: Resolve the schema and report configuration errors

The application module named with --module must expose either
get_schema() returning a ResolvedSchema, or `collections` (and optionally
`plugins`) lists of declarations.

Usage:
    collforge-schema snapshot --module app.schema > schema.lock.json
    collforge-schema check --module app.schema --baseline schema.lock.json
    collforge-schema diff --old schema.v1.json --new schema.v2.json

Invariants:
    - Breaking changes (removed collections or fields, changed field types)
      cause a non-zero exit code
    - Snapshot files are deterministic (sorted JSON)

How to change safely:
    - Add new commands, don't modify existing ones
    - Keep output format stable for CI parsing
"""

from __future__ import annotations

import argparse
import importlib
import json
import logging
import sys
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from ..errors import ConfigurationError
from ..log import setup_logging
from ..schema import ResolvedSchema, resolve_schema

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SchemaChange:
    """One difference between two schema snapshots."""

    kind: str
    path: str
    message: str
    is_breaking: bool

    def __str__(self) -> str:
        return f"{self.kind} {self.path}: {self.message}"


class SchemaCLI:
    """CLI tool for schema management.

    Example:
        >>> cli = SchemaCLI()
        >>> cli.snapshot(schema)  # JSON string
        >>> cli.check(schema, "schema.lock.json")
        (True, [])
    """

    def snapshot(self, schema: ResolvedSchema) -> str:
        """Export a resolved schema to JSON."""
        output = {
            "version": 1,
            "fingerprint": schema.fingerprint,
            "schema": schema.to_dict(),
        }
        return json.dumps(output, indent=2, sort_keys=True)

    def check(self, schema: ResolvedSchema, baseline_path: str) -> tuple[bool, list[str]]:
        """Compare a resolved schema with a baseline snapshot.

        Returns:
            Tuple of (is_compatible, list_of_breaking_issues)
        """
        with open(baseline_path) as f:
            baseline = json.load(f)
        if baseline.get("fingerprint") == schema.fingerprint:
            return True, []

        changes = self.diff_dicts(baseline.get("schema", baseline), schema.to_dict())
        issues = [str(c) for c in changes if c.is_breaking]
        return len(issues) == 0, issues

    def diff(self, old_path: str, new_path: str) -> List[Dict[str, Any]]:
        """Differences between two snapshot files."""
        with open(old_path) as f:
            old_data = json.load(f)
        with open(new_path) as f:
            new_data = json.load(f)
        changes = self.diff_dicts(old_data.get("schema", old_data), new_data.get("schema", new_data))
        return [
            {"kind": c.kind, "path": c.path, "message": c.message, "is_breaking": c.is_breaking}
            for c in changes
        ]

    def diff_dicts(self, old: Dict[str, Any], new: Dict[str, Any]) -> List[SchemaChange]:
        """Differences between two schema dictionaries (ResolvedSchema.to_dict())."""
        old_colls = {c["slug"]: c for c in old.get("collections", [])}
        new_colls = {c["slug"]: c for c in new.get("collections", [])}
        changes: List[SchemaChange] = []

        for slug in sorted(set(old_colls) - set(new_colls)):
            changes.append(SchemaChange("REMOVED", slug, "collection removed", True))
        for slug in sorted(set(new_colls) - set(old_colls)):
            changes.append(SchemaChange("ADDED", slug, "collection added", False))

        for slug in sorted(set(old_colls) & set(new_colls)):
            old_fields = {f["name"]: f for f in old_colls[slug].get("fields", [])}
            new_fields = {f["name"]: f for f in new_colls[slug].get("fields", [])}
            for name in sorted(set(old_fields) - set(new_fields)):
                changes.append(SchemaChange("REMOVED", f"{slug}.{name}", "field removed", True))
            for name in sorted(set(new_fields) - set(old_fields)):
                required = new_fields[name].get("required", False)
                message = "required field added" if required else "field added"
                changes.append(SchemaChange("ADDED", f"{slug}.{name}", message, required))
            for name in sorted(set(old_fields) & set(new_fields)):
                before, after = old_fields[name], new_fields[name]
                if before == after:
                    continue
                if before.get("type") != after.get("type"):
                    message = f"type changed from {before.get('type')} to {after.get('type')}"
                    changes.append(SchemaChange("CHANGED", f"{slug}.{name}", message, True))
                else:
                    changes.append(
                        SchemaChange("CHANGED", f"{slug}.{name}", "field options changed", False)
                    )
        return changes


def load_schema(module_path: str) -> ResolvedSchema:
    """Resolve the schema declared by an application module.

    Raises:
        ConfigurationError: If the module exposes neither get_schema() nor
            collections, or the declarations do not resolve
    """
    module = importlib.import_module(module_path)
    if hasattr(module, "get_schema"):
        return module.get_schema()
    if hasattr(module, "collections"):
        return resolve_schema(module.collections, getattr(module, "plugins", ()))
    raise ConfigurationError(f"Module {module_path} has no 'get_schema()' or 'collections'")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="collforge schema tool")
    subparsers = parser.add_subparsers(dest="command", required=True)

    snapshot_parser = subparsers.add_parser("snapshot", help="Export resolved schema to JSON")
    snapshot_parser.add_argument("--module", required=True, help="Module declaring the schema")
    snapshot_parser.add_argument("--output", "-o", help="Output file (default: stdout)")

    check_parser = subparsers.add_parser("check", help="Compare with a baseline snapshot")
    check_parser.add_argument("--module", required=True, help="Module declaring the schema")
    check_parser.add_argument("--baseline", "-b", required=True, help="Path to baseline JSON")

    diff_parser = subparsers.add_parser("diff", help="Show differences between snapshots")
    diff_parser.add_argument("--old", required=True, help="Path to old snapshot JSON")
    diff_parser.add_argument("--new", required=True, help="Path to new snapshot JSON")
    diff_parser.add_argument(
        "--format", choices=["text", "json"], default="text", help="Output format"
    )

    validate_parser = subparsers.add_parser("validate", help="Resolve and report errors")
    validate_parser.add_argument("--module", required=True, help="Module declaring the schema")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    """CLI entry point for the schema tool."""
    args = build_parser().parse_args(argv)
    setup_logging()
    cli = SchemaCLI()

    if args.command == "snapshot":
        output = cli.snapshot(load_schema(args.module))
        if args.output:
            with open(args.output, "w") as f:
                f.write(output)
            print(f"Schema exported to {args.output}", file=sys.stderr)
        else:
            print(output)
        return 0

    if args.command == "check":
        schema = load_schema(args.module)
        is_compatible, issues = cli.check(schema, args.baseline)
        if is_compatible:
            print(f"Schema is compatible with baseline ({schema.fingerprint})")
            return 0
        print(f"Schema check FAILED with {len(issues)} breaking change(s):")
        for issue in issues:
            print(f"  - {issue}")
        return 1

    if args.command == "diff":
        changes = cli.diff(args.old, args.new)
        if args.format == "json":
            print(json.dumps(changes, indent=2))
        elif not changes:
            print("No changes detected")
        else:
            print(f"Found {len(changes)} change(s):")
            for change in changes:
                status = "BREAKING" if change["is_breaking"] else "OK"
                print(f"  [{status}] {change['kind']}: {change['path']}")
                print(f"          {change['message']}")
        return 1 if any(c["is_breaking"] for c in changes) else 0

    try:
        schema = load_schema(args.module)
    except ConfigurationError as e:
        print(f"Schema validation failed: {e.message}")
        return 1
    print(f"Schema is valid: {len(schema)} collection(s), {schema.fingerprint}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
