from __future__ import annotations

import asyncio

import pytest

from taskforge.errors import ErrorCode, LockTimeoutError
from taskforge.storage.locks import LockManager, normalize_key


@pytest.mark.asyncio
async def test_acquire_release_and_reacquire(tmp_path) -> None:
    locks = LockManager(default_timeout_ms=100)
    resource = tmp_path / 'a.json'

    token = await locks.acquire(resource)
    assert locks.is_locked(resource)
    assert locks.holder(resource) == token

    assert await locks.release(resource, token) is True
    assert not locks.is_locked(resource)
    assert await locks.release(resource) is False


@pytest.mark.asyncio
async def test_equivalent_paths_share_one_lock(tmp_path) -> None:
    locks = LockManager(default_timeout_ms=50)
    (tmp_path / 'sub').mkdir()
    await locks.acquire(tmp_path / 'a.json')

    with pytest.raises(LockTimeoutError) as exc_info:
        await locks.acquire(tmp_path / 'sub' / '..' / 'a.json')

    assert exc_info.value.code is ErrorCode.LOCK_TIMEOUT
    assert exc_info.value.details['timeout_ms'] == 50
    assert normalize_key(tmp_path / 'sub' / '..' / 'a.json') == normalize_key(tmp_path / 'a.json')


@pytest.mark.asyncio
async def test_waiter_gets_lock_after_release(tmp_path) -> None:
    locks = LockManager(default_timeout_ms=2000)
    resource = tmp_path / 'c.json'
    first = await locks.acquire(resource, holder='first')

    waiter = asyncio.create_task(locks.acquire(resource, holder='second'))
    await asyncio.sleep(0.01)
    assert not waiter.done()

    await locks.release(resource, first)
    assert await asyncio.wait_for(waiter, timeout=1) == 'second'
    assert locks.holder(resource) == 'second'


@pytest.mark.asyncio
async def test_release_by_non_holder_is_refused(tmp_path) -> None:
    locks = LockManager()
    resource = tmp_path / 'd.json'
    await locks.acquire(resource, holder='owner')

    assert await locks.release(resource, 'intruder') is False
    assert locks.holder(resource) == 'owner'


@pytest.mark.asyncio
async def test_distinct_resources_do_not_contend(tmp_path) -> None:
    locks = LockManager(default_timeout_ms=10)
    await locks.acquire(tmp_path / 'one.json')
    await locks.acquire(tmp_path / 'two.json')

    assert locks.is_locked(tmp_path / 'one.json')
    assert locks.is_locked(tmp_path / 'two.json')


@pytest.mark.asyncio
async def test_hold_releases_on_error(tmp_path) -> None:
    locks = LockManager()
    resource = tmp_path / 'e.json'

    with pytest.raises(RuntimeError):
        async with locks.hold(resource):
            assert locks.is_locked(resource)
            raise RuntimeError('boom')

    assert not locks.is_locked(resource)


@pytest.mark.asyncio
async def test_serialized_holders_never_overlap(tmp_path) -> None:
    locks = LockManager(default_timeout_ms=5000)
    resource = tmp_path / 'f.json'
    inside = 0
    peak = 0

    async def worker() -> None:
        nonlocal inside, peak
        async with locks.hold(resource):
            inside += 1
            peak = max(peak, inside)
            await asyncio.sleep(0.001)
            inside -= 1

    await asyncio.gather(*(worker() for _ in range(20)))

    assert peak == 1
    assert not locks.is_locked(resource)
