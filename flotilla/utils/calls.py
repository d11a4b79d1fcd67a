"""Callable helpers."""

from __future__ import annotations

import inspect
from typing import Any


def is_async_callable(func: Any) -> bool:
    """True for coroutine functions and objects whose __call__ is one."""
    return inspect.iscoroutinefunction(func) or inspect.iscoroutinefunction(
        getattr(func, "__call__", None)
    )
