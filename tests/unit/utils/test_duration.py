"""Unit tests for the small shared helpers."""

from __future__ import annotations

import pytest

from flotilla.utils.calls import is_async_callable
from flotilla.utils.duration import parse_duration
from flotilla.utils.naming import short_id, slugify


class TestParseDuration:
    @pytest.mark.parametrize(
        "value, expected",
        [
            ("250ms", 0.25),
            ("30", 30.0),
            ("30s", 30.0),
            ("5m", 300.0),
            ("1h", 3600.0),
            (" 2M ", 120.0),
            (1.5, 1.5),
        ],
    )
    def test_valid(self, value, expected):
        assert parse_duration(value) == pytest.approx(expected)

    @pytest.mark.parametrize("value", ["", "soon", "-5s", "0", 0, "nan", "inf", "infs", float("nan")])
    def test_invalid(self, value):
        with pytest.raises(ValueError):
            parse_duration(value)


class TestNaming:
    @pytest.mark.parametrize(
        "value, expected",
        [
            ("Replication Works", "replication-works"),
            ("kv/get::missing", "kv-get-missing"),
            ("---", "x"),
            ("a" * 50, "a" * 40),
        ],
    )
    def test_slugify(self, value, expected):
        assert slugify(value) == expected

    def test_short_id(self):
        assert len(short_id()) == 8
        assert short_id() != short_id()


class TestIsAsyncCallable:
    def test_functions_and_callable_objects(self):
        async def coro(x):
            return x

        class AsyncCheck:
            async def __call__(self, service):
                return True

        class SyncCheck:
            def __call__(self, service):
                return True

        assert is_async_callable(coro)
        assert is_async_callable(AsyncCheck())
        assert not is_async_callable(SyncCheck())
        assert not is_async_callable(lambda s: True)
