"""
Locale-string lookups for collforge.

String storage is external: the engine only asks a LocaleCatalog for a key
in a locale. When the locale has no entry the default locale is tried, then
the caller's fallback.

Keys used by the engine:
    collections.<slug>.label
    collections.<slug>.description
    collections.<slug>.fields.<field>.label
"""

from __future__ import annotations

import logging
from typing import Mapping, Optional, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class LocaleCatalog(Protocol):
    """Protocol for locale-string collaborators."""

    def lookup(self, key: str, locale: str) -> Optional[str]:
        """String for key in locale, or None."""
        ...


class DictCatalog:
    """In-process catalog backed by {locale: {key: text}}.

    Example:
        >>> catalog = DictCatalog({"en": {"collections.posts.label": "Posts"}})
        >>> catalog.lookup("collections.posts.label", "de")
        >>> catalog.lookup("collections.posts.label", "en")
        'Posts'
    """

    def __init__(self, strings: Optional[Mapping[str, Mapping[str, str]]] = None) -> None:
        self._strings = {locale: dict(entries) for locale, entries in (strings or {}).items()}

    def lookup(self, key: str, locale: str) -> Optional[str]:
        return self._strings.get(locale, {}).get(key)

    def add(self, locale: str, key: str, text: str) -> None:
        self._strings.setdefault(locale, {})[key] = text

    def locales(self) -> list[str]:
        return sorted(self._strings)


def resolve_string(
    catalog: Optional[LocaleCatalog],
    key: str,
    locale: str,
    default_locale: str,
    fallback: Optional[Mapping[str, str]] = None,
    default: str = "",
) -> str:
    """Look a key up with fallback to the default locale.

    Order: catalog[locale], catalog[default_locale], fallback[locale],
    fallback[default_locale], default.
    """
    if catalog is not None:
        for candidate in (locale, default_locale):
            text = catalog.lookup(key, candidate)
            if text:
                return text
    if fallback:
        text = fallback.get(locale) or fallback.get(default_locale)
        if text:
            return text
    logger.debug(f"No string for '{key}' in locale '{locale}', using default")
    return default
