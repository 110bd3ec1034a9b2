from __future__ import annotations

import asyncio

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from packbattle.db import with_retry


def _transient() -> OperationalError:
    return OperationalError("SELECT 1", {}, Exception("connection reset"))


def test_retry_recovers_from_transient_errors():
    calls = []

    async def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise _transient()
        return "ok"

    result = asyncio.run(with_retry(flaky, "test:flaky", attempts=3, delay=0))
    assert result == "ok"
    assert len(calls) == 3


def test_retry_gives_up_with_last_error():
    calls = []

    async def down():
        calls.append(1)
        raise _transient()

    with pytest.raises(OperationalError):
        asyncio.run(with_retry(down, "test:down", attempts=2, delay=0))
    assert len(calls) == 2


def test_retry_does_not_retry_other_errors():
    calls = []

    async def broken():
        calls.append(1)
        raise IntegrityError("INSERT", {}, Exception("duplicate"))

    with pytest.raises(IntegrityError):
        asyncio.run(with_retry(broken, "test:broken", attempts=3, delay=0))
    assert len(calls) == 1


def test_retry_always_makes_one_attempt():
    calls = []

    async def down():
        calls.append(1)
        raise _transient()

    async def ok():
        return "ok"

    assert asyncio.run(with_retry(ok, "test:zero", attempts=0, delay=0)) == "ok"
    with pytest.raises(OperationalError):
        asyncio.run(with_retry(down, "test:zero", attempts=0, delay=0))
    assert len(calls) == 1
