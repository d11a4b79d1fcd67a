"""Runtime-safe resource naming."""

from __future__ import annotations

import re
import uuid

_UNSAFE = re.compile(r"[^a-z0-9_.-]+")


def slugify(value: str, *, max_length: int = 40) -> str:
    """Lower-case a name into something Docker accepts in resource names."""
    slug = _UNSAFE.sub("-", value.lower()).strip("-.") or "x"
    return slug[:max_length].rstrip("-.")


def short_id() -> str:
    return uuid.uuid4().hex[:8]
