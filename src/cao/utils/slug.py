"""Filesystem-friendly names for log artifacts."""

from __future__ import annotations

import hashlib
import re
from typing import Pattern

_UNSAFE: Pattern[str] = re.compile(r"[^a-z0-9_.-]+")
_HYPHENS: Pattern[str] = re.compile(r"-{2,}")


def slugify(value: str | None, *, fallback: str = "item", max_length: int = 60) -> str:
    """Lower-case ``value`` and replace unsafe runs with single hyphens.

    Slugs longer than ``max_length`` keep a prefix plus a short digest so that
    distinct long inputs stay distinct.
    """
    slug = _HYPHENS.sub("-", _UNSAFE.sub("-", (value or "").strip().lower())).strip("-")
    if not slug:
        slug = _HYPHENS.sub("-", _UNSAFE.sub("-", fallback.lower())).strip("-") or "item"
    if len(slug) <= max_length:
        return slug
    digest = hashlib.sha256(slug.encode("utf-8")).hexdigest()[:8]
    prefix = slug[: max(max_length - len(digest) - 1, 1)].rstrip("-")
    return f"{prefix}-{digest}"


__all__ = ["slugify"]
