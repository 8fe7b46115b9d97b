"""
SEO plugin for collforge.

Adds search metadata to collections that have a source field (title by
default):
- meta_title and meta_description, length-limited text fields
- slug, generated from the source field when the caller supplies none
  (skipped when the collection declares its own slug field)

Slugs are transliterated to ASCII with unidecode, so "Über Café" becomes
"uber-cafe". An existing slug is never regenerated on update.
"""

from __future__ import annotations

import re
from typing import Any, Dict, Optional, Sequence

from unidecode import unidecode

from ..pipeline.hooks import HookArgs
from ..schema.plugin import Partial, Plugin
from ..schema.types import CollectionDef, HookSet, field

_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def slugify(text: str) -> str:
    """URL-safe slug of a text.

    Example:
        >>> slugify("Hello, World!")
        'hello-world'
    """
    return _NON_ALNUM.sub("-", unidecode(text).lower()).strip("-")


def truncate(text: str, length: int) -> str:
    """Cut text to length, preferring a word boundary."""
    text = " ".join(text.split())
    if len(text) <= length:
        return text
    cut = text[:length]
    if " " in cut:
        cut = cut.rsplit(" ", 1)[0]
    return cut.rstrip(" ,.;:-")


def seo(
    source_field: str = "title",
    slug_field: str = "slug",
    collections: Optional[Sequence[str]] = None,
    title_length: int = 60,
    description_length: int = 160,
    name: str = "seo",
) -> Plugin:
    """Build an SEO plugin.

    Args:
        source_field: Field the slug and meta title are derived from
        slug_field: Slug field (added when the collection has none)
        collections: Slugs to apply to (every collection with source_field if omitted)
        title_length: Maximum meta_title length
        description_length: Maximum meta_description length
        name: Plugin name
    """
    selected = set(collections) if collections is not None else None

    def fill(data: Dict[str, Any], existing: Dict[str, Any]) -> Dict[str, Any]:
        source = data.get(source_field)
        if not isinstance(source, str) or not source.strip():
            return data
        if not data.get(slug_field) and not existing.get(slug_field):
            generated = slugify(source)
            if generated:
                data[slug_field] = generated
        if not data.get("meta_title") and not existing.get("meta_title"):
            data["meta_title"] = truncate(source, title_length)
        return data

    def on_create(args: HookArgs) -> Dict[str, Any]:
        return fill(dict(args.data or {}), {})

    def on_update(args: HookArgs) -> Dict[str, Any]:
        return fill(dict(args.data or {}), args.existing or {})

    def extend(collection: CollectionDef) -> Optional[Partial]:
        if collection.auxiliary or collection.get_field(source_field) is None:
            return None
        if selected is not None and collection.slug not in selected:
            return None
        fields = [
            field("meta_title", "text", max_length=title_length),
            field("meta_description", "text", max_length=description_length),
        ]
        if collection.get_field(slug_field) is None:
            fields.append(field(slug_field, "slug", unique=True))
        return Partial(
            fields=tuple(fields),
            hooks=HookSet.of(before_create=on_create, before_update=on_update),
        )

    return Plugin(name=name, extend=extend, description="Slugs and search metadata")
