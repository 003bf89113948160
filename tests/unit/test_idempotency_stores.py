"""Tests for idempotency store backends."""

import pytest

from actflow.idempotency import IdempotencyGate, IdempotencyRecord, InMemoryIdempotencyStore, SQLiteIdempotencyStore


def _record(key: str, created: float, ttl: float = 100, result=None) -> IdempotencyRecord:
    return IdempotencyRecord(
        key=key,
        result=result if result is not None else {"id": key},
        action_type="create_task",
        target="trello",
        created_at=created,
        expires_at=created + ttl,
    )


@pytest.fixture(params=["inmemory", "sqlite"])
def store(request, tmp_path):
    if request.param == "inmemory":
        yield InMemoryIdempotencyStore()
    else:
        sqlite_store = SQLiteIdempotencyStore(tmp_path / "idem.db")
        yield sqlite_store
        sqlite_store.close()


@pytest.mark.asyncio
async def test_store_put_get_and_delete(store):
    await store.put(_record("a", 10))
    await store.put(_record("b", 20))

    fetched = await store.get("a")
    assert fetched is not None
    assert fetched.result == {"id": "a"}
    assert await store.get("missing") is None
    assert await store.size() == 2

    assert await store.delete_many(["a", "missing"]) == 1
    assert await store.size() == 1


@pytest.mark.asyncio
async def test_store_orders_and_expires(store):
    await store.put(_record("new", 30, ttl=100))
    await store.put(_record("old", 10, ttl=5))
    await store.put(_record("mid", 20, ttl=100))

    assert await store.oldest_keys(2) == ["old", "mid"]
    assert await store.expired_keys(50) == ["old"]


@pytest.mark.asyncio
async def test_store_hit_counters(store):
    await store.put(_record("a", 10))
    assert await store.hit_count("a") == 0
    await store.record_hit("a")
    await store.record_hit("a")
    assert await store.hit_count("a") == 2
    assert await store.clear() == 1
    assert await store.hit_count("a") == 0


@pytest.mark.asyncio
async def test_sqlite_store_survives_reopen(tmp_path):
    path = tmp_path / "idem.db"
    first = SQLiteIdempotencyStore(path)
    gate = IdempotencyGate(first)
    await gate.mark_executed("k", {"fileId": "f-1"})
    first.close()

    second = SQLiteIdempotencyStore(path)
    check = await IdempotencyGate(second).check_executed("k")
    second.close()

    assert check.executed is True
    assert check.cached_result == {"fileId": "f-1"}
