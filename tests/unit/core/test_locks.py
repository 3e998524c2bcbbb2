import asyncio

import pytest

from factmemory.core.locks import UserLockRegistry


@pytest.mark.asyncio
async def test_writes_for_one_user_are_serialized():
    locks = UserLockRegistry()
    events = []

    async def write(tag):
        async with locks.acquire("user-1"):
            events.append(f"{tag}-start")
            await asyncio.sleep(0.01)
            events.append(f"{tag}-end")

    await asyncio.gather(write("a"), write("b"))

    assert events == ["a-start", "a-end", "b-start", "b-end"]


@pytest.mark.asyncio
async def test_users_do_not_contend():
    locks = UserLockRegistry()

    async with locks.acquire("user-1"):
        assert locks.is_locked("user-1")
        assert not locks.is_locked("user-2")
        async with locks.acquire("user-2"):
            assert locks.is_locked("user-2")

    assert not locks.is_locked("user-1")


def test_same_lock_per_user():
    locks = UserLockRegistry()

    assert locks.get("user-1") is locks.get("user-1")
    assert locks.get("user-1") is not locks.get("user-2")
