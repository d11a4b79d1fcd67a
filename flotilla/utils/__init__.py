"""Small shared helpers."""

from flotilla.utils.calls import is_async_callable
from flotilla.utils.duration import parse_duration
from flotilla.utils.naming import short_id, slugify

__all__ = ["is_async_callable", "parse_duration", "short_id", "slugify"]
