"""Storage for the authorization server.

All shared state (registered clients, pending authorizations, issued tokens)
goes through one capability, ``KeyValueStore``: get / put / delete-if-present.
``pop`` is the atomic primitive that makes code and refresh-token redemption
single use. ``replace`` overwrites a record only while it still exists,
so a concurrent ``pop`` is never undone. Two backends are provided and chosen by ``STORAGE_BACKEND``:

- ``MemoryStore``: a dict guarded by a lock for mutations; reads take no lock.
- ``SQLiteStore``: one table per store in a SQLite file, accessed from a
  single worker thread; ``pop`` runs inside a ``BEGIN IMMEDIATE`` transaction
  so it stays atomic across processes sharing the file.
"""

import asyncio
import json
import logging
import sqlite3
import threading
import time
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple

from config import Config
from errors import StorageError
from models import IssuedToken, PendingAuthorization, RegisteredClient

logger = logging.getLogger(__name__)


class KeyValueStore(ABC):
    """Abstract store of JSON-serializable records keyed by string"""

    async def initialize(self) -> None:
        pass

    async def close(self) -> None:
        pass

    @abstractmethod
    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        """Return the record for key, or None"""

    @abstractmethod
    async def put(self, key: str, value: Dict[str, Any], expires_at: Optional[float] = None) -> None:
        """Insert or replace a record"""

    @abstractmethod
    async def pop(self, key: str) -> Optional[Dict[str, Any]]:
        """Atomically remove and return the record for key, or None if absent"""

    @abstractmethod
    async def replace(self, key: str, value: Dict[str, Any], expires_at: Optional[float] = None) -> bool:
        """Atomically overwrite the record for key if present; return whether it was"""

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Remove the record for key; return whether it existed"""

    @abstractmethod
    async def cleanup_expired(self, now: Optional[float] = None) -> int:
        """Drop records whose expires_at has passed and return how many"""


class MemoryStore(KeyValueStore):
    """In-process store used for development and tests"""

    def __init__(self, name: str = "default"):
        self.name = name
        self._data: Dict[str, Tuple[Dict[str, Any], Optional[float]]] = {}
        self._lock = threading.Lock()

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        entry = self._data.get(key)
        if entry is None:
            return None
        return dict(entry[0])

    async def put(self, key: str, value: Dict[str, Any], expires_at: Optional[float] = None) -> None:
        with self._lock:
            self._data[key] = (dict(value), expires_at)

    async def pop(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            entry = self._data.pop(key, None)
        return None if entry is None else entry[0]

    async def replace(self, key: str, value: Dict[str, Any], expires_at: Optional[float] = None) -> bool:
        with self._lock:
            if key not in self._data:
                return False
            self._data[key] = (dict(value), expires_at)
        return True

    async def delete(self, key: str) -> bool:
        return await self.pop(key) is not None

    async def cleanup_expired(self, now: Optional[float] = None) -> int:
        now = time.time() if now is None else now
        with self._lock:
            expired = [
                key for key, (_, expires_at) in self._data.items()
                if expires_at is not None and expires_at <= now
            ]
            for key in expired:
                del self._data[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._data)


class SQLiteStore(KeyValueStore):
    """SQLite-backed store; one table per store name"""

    def __init__(self, db_path: Path, name: str):
        if not name.isidentifier():
            raise ValueError(f"Invalid store name: {name}")
        self.db_path = Path(db_path)
        self.name = name
        self.conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"oauth-db-{name}")
        self._initialized = False

    async def _run(self, func: Callable, *args):
        try:
            return await asyncio.get_running_loop().run_in_executor(self._executor, func, *args)
        except sqlite3.Error as e:
            logger.error(f"SQLite store '{self.name}' failed: {e}")
            raise StorageError(f"Storage backend unavailable: {self.name}") from e

    async def initialize(self) -> None:
        if self._initialized:
            return
        await self._run(self._sync_initialize)

    def _sync_initialize(self) -> None:
        with self._lock:
            if self._initialized:
                return

            self.db_path.parent.mkdir(parents=True, exist_ok=True)

            # Autocommit mode; transactions are opened explicitly where needed
            self.conn = sqlite3.connect(str(self.db_path), check_same_thread=False, timeout=30, isolation_level=None)
            self.conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {self.name} (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    expires_at REAL
                )
            """
            )
            self.conn.execute(
                f"CREATE INDEX IF NOT EXISTS idx_{self.name}_expires_at ON {self.name}(expires_at)"
            )

            self._initialized = True
            logger.info(f"Initialized SQLite store '{self.name}' at {self.db_path}")

    async def close(self) -> None:
        await self._run(self._sync_close)
        self._executor.shutdown(wait=True)

    def _sync_close(self) -> None:
        with self._lock:
            if self.conn:
                self.conn.close()
                self.conn = None
                self._initialized = False

    def _connection(self) -> sqlite3.Connection:
        if self.conn is None:
            raise sqlite3.OperationalError(f"store '{self.name}' is not initialized")
        return self.conn

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        return await self._run(self._sync_get, key)

    def _sync_get(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._connection().execute(
                f"SELECT value FROM {self.name} WHERE key = ?", (key,)
            ).fetchone()
        return None if row is None else json.loads(row[0])

    async def put(self, key: str, value: Dict[str, Any], expires_at: Optional[float] = None) -> None:
        await self._run(self._sync_put, key, json.dumps(value), expires_at)

    def _sync_put(self, key: str, value: str, expires_at: Optional[float]) -> None:
        with self._lock:
            self._connection().execute(
                f"INSERT OR REPLACE INTO {self.name} (key, value, expires_at) VALUES (?, ?, ?)",
                (key, value, expires_at),
            )

    async def pop(self, key: str) -> Optional[Dict[str, Any]]:
        return await self._run(self._sync_pop, key)

    def _sync_pop(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            conn = self._connection()
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = conn.execute(
                    f"SELECT value FROM {self.name} WHERE key = ?", (key,)
                ).fetchone()
                if row is not None:
                    conn.execute(f"DELETE FROM {self.name} WHERE key = ?", (key,))
                conn.execute("COMMIT")
            except BaseException:
                conn.execute("ROLLBACK")
                raise
        return None if row is None else json.loads(row[0])

    async def replace(self, key: str, value: Dict[str, Any], expires_at: Optional[float] = None) -> bool:
        return await self._run(self._sync_replace, key, json.dumps(value), expires_at)

    def _sync_replace(self, key: str, value: str, expires_at: Optional[float]) -> bool:
        with self._lock:
            cursor = self._connection().execute(
                f"UPDATE {self.name} SET value = ?, expires_at = ? WHERE key = ?",
                (value, expires_at, key),
            )
            return cursor.rowcount > 0

    async def delete(self, key: str) -> bool:
        return await self._run(self._sync_delete, key)

    def _sync_delete(self, key: str) -> bool:
        with self._lock:
            cursor = self._connection().execute(f"DELETE FROM {self.name} WHERE key = ?", (key,))
            return cursor.rowcount > 0

    async def cleanup_expired(self, now: Optional[float] = None) -> int:
        now = time.time() if now is None else now
        return await self._run(self._sync_cleanup_expired, now)

    def _sync_cleanup_expired(self, now: float) -> int:
        with self._lock:
            cursor = self._connection().execute(
                f"DELETE FROM {self.name} WHERE expires_at IS NOT NULL AND expires_at <= ?", (now,)
            )
            return cursor.rowcount


def create_store(config: Config, name: str) -> KeyValueStore:
    """Create the store backend selected by configuration"""
    if config.storage_backend == "memory":
        return MemoryStore(name)
    if config.storage_backend == "sqlite":
        return SQLiteStore(Path(config.storage_path), name)
    raise ValueError(f"Unsupported storage backend: {config.storage_backend}")


class ClientRegistry:
    """Registered OAuth clients"""

    def __init__(self, store: KeyValueStore):
        self.store = store

    async def save(self, client: RegisteredClient) -> None:
        await self.store.put(client.client_id, client.model_dump(mode="json"))

    async def get(self, client_id: str) -> Optional[RegisteredClient]:
        if not client_id:
            return None
        data = await self.store.get(client_id)
        return None if data is None else RegisteredClient.model_validate(data)


class PendingAuthorizationStore:
    """Authorization requests waiting to be redeemed, keyed by code"""

    def __init__(self, store: KeyValueStore):
        self.store = store

    async def save(self, pending: PendingAuthorization) -> None:
        await self.store.put(pending.code, pending.model_dump(mode="json"), expires_at=pending.expires_at)

    async def get(self, code: str) -> Optional[PendingAuthorization]:
        data = await self.store.get(code)
        return None if data is None else PendingAuthorization.model_validate(data)

    async def replace_if_present(self, pending: PendingAuthorization) -> bool:
        """Overwrite a pending authorization that has not been redeemed yet"""
        return await self.store.replace(pending.code, pending.model_dump(mode="json"), expires_at=pending.expires_at)

    async def take(self, code: str) -> Optional[PendingAuthorization]:
        """Remove and return the pending authorization; at most one caller gets it"""
        if not code:
            return None
        data = await self.store.pop(code)
        return None if data is None else PendingAuthorization.model_validate(data)


class TokenStore:
    """Issued tokens, indexed by access token and by refresh token"""

    def __init__(self, access_store: KeyValueStore, refresh_store: KeyValueStore):
        self.access_store = access_store
        self.refresh_store = refresh_store

    async def save(self, token: IssuedToken) -> None:
        data = token.model_dump(mode="json")
        # Refresh index first so an access token never exists without its refresh record
        await self.refresh_store.put(token.refresh_token, data, expires_at=token.refresh_expires_at)
        await self.access_store.put(token.access_token, data, expires_at=token.expires_at)

    async def get_access_token(self, access_token: str) -> Optional[IssuedToken]:
        if not access_token:
            return None
        data = await self.access_store.get(access_token)
        return None if data is None else IssuedToken.model_validate(data)

    async def get_refresh_token(self, refresh_token: str) -> Optional[IssuedToken]:
        if not refresh_token:
            return None
        data = await self.refresh_store.get(refresh_token)
        return None if data is None else IssuedToken.model_validate(data)

    async def take_refresh_token(self, refresh_token: str) -> Optional[IssuedToken]:
        """Remove and return the refresh record; at most one caller gets it"""
        if not refresh_token:
            return None
        data = await self.refresh_store.pop(refresh_token)
        return None if data is None else IssuedToken.model_validate(data)

    async def delete_access_token(self, access_token: str) -> bool:
        return await self.access_store.delete(access_token)

    async def revoke(self, token: str) -> bool:
        """Revoke an access or refresh token; a refresh token takes its access token with it"""
        record = await self.refresh_store.pop(token)
        if record is not None:
            await self.access_store.delete(record["access_token"])
            return True
        return await self.access_store.delete(token)
