"""Map an LLM-suggested category label onto the user's category list."""

from __future__ import annotations

from collections.abc import Sequence

from .models import Category


def resolve_category(suggested_name: str | None, categories: Sequence[Category]) -> str | None:
    """Return the id of the best-matching category, or ``None`` (uncategorized).

    Case-insensitive exact match first; otherwise the first category (in list
    order) whose name contains the suggestion or is contained by it.
    """

    needle = (suggested_name or "").strip().casefold()
    if not needle:
        return None

    names = [(c, c.name.strip().casefold()) for c in categories]
    for cat, name in names:
        if name == needle:
            return cat.id
    for cat, name in names:
        if name and (needle in name or name in needle):
            return cat.id
    return None


def category_names(categories: Sequence[Category]) -> list[str]:
    """Non-blank category names in list order, used to bias extraction."""

    return [c.name.strip() for c in categories if c.name and c.name.strip()]


__all__ = ["category_names", "resolve_category"]
