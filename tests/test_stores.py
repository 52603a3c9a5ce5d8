import asyncio
from pathlib import Path

import pytest
import pytest_asyncio

from config import Config
from errors import StorageError
from models import IssuedToken
from stores import MemoryStore, SQLiteStore, TokenStore, create_store


@pytest_asyncio.fixture(params=["memory", "sqlite"])
async def store(request, tmp_path: Path):
    if request.param == "memory":
        kv = MemoryStore("test")
    else:
        kv = SQLiteStore(tmp_path / "oauth.db", "test")
    await kv.initialize()
    yield kv
    await kv.close()


@pytest.mark.asyncio
async def test_put_get_and_replace(store):
    assert await store.get("k") is None

    await store.put("k", {"value": 1, "items": ["a", "b"]})
    assert await store.get("k") == {"value": 1, "items": ["a", "b"]}

    await store.put("k", {"value": 2})
    assert await store.get("k") == {"value": 2}


@pytest.mark.asyncio
async def test_pop_returns_record_once(store):
    await store.put("code", {"client_id": "c1"})

    assert await store.pop("code") == {"client_id": "c1"}
    assert await store.pop("code") is None
    assert await store.get("code") is None


@pytest.mark.asyncio
async def test_delete_reports_existence(store):
    await store.put("k", {"v": 1})

    assert await store.delete("k") is True
    assert await store.delete("k") is False


@pytest.mark.asyncio
async def test_concurrent_pops_have_one_winner(store):
    await store.put("code", {"client_id": "c1"})

    results = await asyncio.gather(*[store.pop("code") for _ in range(25)])

    assert [r for r in results if r is not None] == [{"client_id": "c1"}]


@pytest.mark.asyncio
async def test_cleanup_expired(store):
    await store.put("old", {"v": 1}, expires_at=100.0)
    await store.put("edge", {"v": 2}, expires_at=200.0)
    await store.put("new", {"v": 3}, expires_at=300.0)
    await store.put("forever", {"v": 4})

    assert await store.cleanup_expired(now=200.0) == 2

    assert await store.get("old") is None
    assert await store.get("edge") is None
    assert await store.get("new") == {"v": 3}
    assert await store.get("forever") == {"v": 4}


@pytest.mark.asyncio
async def test_memory_store_returns_copies():
    store = MemoryStore("copies")
    await store.put("k", {"v": 1})

    record = await store.get("k")
    record["v"] = 2

    assert await store.get("k") == {"v": 1}
    assert len(store) == 1


@pytest.mark.asyncio
async def test_sqlite_store_persists_across_instances(tmp_path):
    db_path = tmp_path / "nested" / "oauth.db"

    first = SQLiteStore(db_path, "clients")
    await first.initialize()
    await first.put("client-1", {"client_name": "Desktop"})
    await first.close()

    second = SQLiteStore(db_path, "clients")
    await second.initialize()
    try:
        assert await second.get("client-1") == {"client_name": "Desktop"}
    finally:
        await second.close()


@pytest.mark.asyncio
async def test_sqlite_store_shares_file_between_tables(tmp_path):
    db_path = tmp_path / "oauth.db"
    codes = SQLiteStore(db_path, "codes")
    tokens = SQLiteStore(db_path, "tokens")
    await codes.initialize()
    await tokens.initialize()
    try:
        await codes.put("k", {"kind": "code"})
        await tokens.put("k", {"kind": "token"})

        assert await codes.pop("k") == {"kind": "code"}
        assert await tokens.get("k") == {"kind": "token"}
    finally:
        await codes.close()
        await tokens.close()


@pytest.mark.asyncio
async def test_sqlite_store_failure_raises_storage_error(tmp_path):
    store = SQLiteStore(tmp_path / "oauth.db", "uninitialized")

    try:
        with pytest.raises(StorageError):
            await store.get("k")
    finally:
        await store.close()


def test_sqlite_store_rejects_unsafe_table_name(tmp_path):
    with pytest.raises(ValueError):
        SQLiteStore(tmp_path / "oauth.db", "codes; DROP TABLE x")


def test_create_store_selects_backend(config: Config, tmp_path):
    assert isinstance(create_store(config, "codes"), MemoryStore)

    config.storage_backend = "sqlite"
    config.storage_path = str(tmp_path / "oauth.db")
    sqlite_store = create_store(config, "codes")
    assert isinstance(sqlite_store, SQLiteStore)
    sqlite_store._executor.shutdown(wait=False)

    config.storage_backend = "redis"
    with pytest.raises(ValueError):
        create_store(config, "codes")


def _token(access: str, refresh: str) -> IssuedToken:
    return IssuedToken(
        access_token=access,
        refresh_token=refresh,
        client_id="c1",
        scopes=["mcp:read"],
        tenant_endpoint="https://docs.example.com",
        issued_at=1000.0,
        expires_at=4600.0,
        refresh_expires_at=100000.0,
    )


@pytest.mark.asyncio
async def test_token_store_indexes_both_tokens():
    tokens = TokenStore(MemoryStore("access"), MemoryStore("refresh"))
    await tokens.save(_token("at-1", "rt-1"))

    assert (await tokens.get_access_token("at-1")).refresh_token == "rt-1"
    assert (await tokens.get_refresh_token("rt-1")).access_token == "at-1"
    assert await tokens.access_store.get("rt-1") is None


@pytest.mark.asyncio
async def test_token_store_take_refresh_token_once():
    tokens = TokenStore(MemoryStore("access"), MemoryStore("refresh"))
    await tokens.save(_token("at-1", "rt-1"))

    assert (await tokens.take_refresh_token("rt-1")).access_token == "at-1"
    assert await tokens.take_refresh_token("rt-1") is None
    # Access token survives until explicitly revoked
    assert await tokens.get_access_token("at-1") is not None


@pytest.mark.asyncio
async def test_token_store_revoke():
    tokens = TokenStore(MemoryStore("access"), MemoryStore("refresh"))
    await tokens.save(_token("at-1", "rt-1"))
    await tokens.save(_token("at-2", "rt-2"))

    assert await tokens.revoke("rt-1") is True
    assert await tokens.get_access_token("at-1") is None

    assert await tokens.revoke("at-2") is True
    assert await tokens.get_refresh_token("rt-2") is not None

    assert await tokens.revoke("unknown") is False


@pytest.mark.asyncio
async def test_replace_only_existing_records(store):
    assert await store.replace("missing", {"v": 1}) is False
    assert await store.get("missing") is None

    await store.put("k", {"v": 1}, expires_at=100.0)
    assert await store.replace("k", {"v": 2}, expires_at=300.0) is True
    assert await store.get("k") == {"v": 2}

    assert await store.cleanup_expired(now=200.0) == 0


@pytest.mark.asyncio
async def test_replace_after_pop_does_not_recreate(store):
    await store.put("code", {"subject": None})
    await store.pop("code")

    assert await store.replace("code", {"subject": "user-1"}) is False
    assert await store.get("code") is None


@pytest.mark.asyncio
async def test_sqlite_pop_is_atomic_across_connections(tmp_path):
    db_path = tmp_path / "oauth.db"
    stores = [SQLiteStore(db_path, "codes") for _ in range(4)]
    for kv in stores:
        await kv.initialize()
    try:
        for i in range(5):
            await stores[0].put(f"code-{i}", {"n": i})

            results = await asyncio.gather(*[kv.pop(f"code-{i}") for kv in stores for _ in range(3)])

            assert [r for r in results if r is not None] == [{"n": i}]
    finally:
        for kv in stores:
            await kv.close()
