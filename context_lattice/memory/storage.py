"""
Context Window - Storage Layer

Persists one snapshot of the layered context per session.

- SnapshotStore: async load/save/delete of raw records
- SQLiteSnapshotStore: one row per session in a `context_snapshots` table
- JsonFileSnapshotStore: one JSON file per session, atomic temp-file replace
- ContextStorage: (de)serializes the layered state and applies field
  encryption to `context_data` and `summary`

Blocking sqlite3 and file calls run in the default executor.
"""

import asyncio
import json
import logging
import re
import sqlite3
import threading
from dataclasses import dataclass, field
from datetime import datetime
from functools import partial
from pathlib import Path
from typing import Any, Dict, Optional, Protocol, runtime_checkable

from ..errors import PersistenceError
from .encryption import EncryptionService

logger = logging.getLogger(__name__)

ENCRYPTED_FIELDS = ("context_data", "summary")


def _empty_snapshot() -> Dict[str, Any]:
    return {"version": 1, "layers": {}}


@runtime_checkable
class SnapshotStore(Protocol):
    """Raw record store. Records are flat dicts of JSON-safe values."""

    async def load(self, session_key: str) -> Optional[Dict[str, Any]]:
        ...

    async def save(self, session_key: str, record: Dict[str, Any]) -> None:
        ...

    async def delete(self, session_key: str) -> bool:
        ...


async def _in_executor(func, *args, **kwargs):
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, partial(func, *args, **kwargs))


# ============================================================================
# SQLITE
# ============================================================================

class SQLiteSnapshotStore:
    """
    SQLite-backed snapshot store.

    Args:
        db_path: Path to the database file (":memory:" for tests)
    """

    def __init__(self, db_path: str = "context_lattice.db"):
        self.db_path = db_path
        self.conn = None
        self._lock = threading.Lock()
        self._initialize_database()

    def _initialize_database(self):
        """Create database and tables if they don't exist"""
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row

        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS context_snapshots (
                session_key TEXT PRIMARY KEY,
                context_data TEXT,
                summary TEXT,
                tokens_used INTEGER NOT NULL DEFAULT 0,
                compression_version TEXT,
                last_compressed TIMESTAMP,
                created_at TIMESTAMP NOT NULL,
                updated_at TIMESTAMP NOT NULL
            )
        """)
        self.conn.commit()

    def load_sync(self, session_key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM context_snapshots WHERE session_key = ?",
                (session_key,),
            ).fetchone()
        return dict(row) if row else None

    def save_sync(self, session_key: str, record: Dict[str, Any]) -> None:
        now = datetime.now().isoformat()
        with self._lock:
            try:
                self.conn.execute("""
                    INSERT INTO context_snapshots
                        (session_key, context_data, summary, tokens_used,
                         compression_version, last_compressed, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(session_key) DO UPDATE SET
                        context_data = excluded.context_data,
                        summary = excluded.summary,
                        tokens_used = excluded.tokens_used,
                        compression_version = excluded.compression_version,
                        last_compressed = excluded.last_compressed,
                        updated_at = excluded.updated_at
                """, (
                    session_key,
                    record.get("context_data"),
                    record.get("summary"),
                    record.get("tokens_used") or 0,
                    record.get("compression_version"),
                    record.get("last_compressed"),
                    record.get("created_at") or now,
                    now,
                ))
                self.conn.commit()
            except sqlite3.Error:
                self.conn.rollback()
                raise

    def delete_sync(self, session_key: str) -> bool:
        with self._lock:
            cursor = self.conn.execute(
                "DELETE FROM context_snapshots WHERE session_key = ?",
                (session_key,),
            )
            self.conn.commit()
        return cursor.rowcount > 0

    async def load(self, session_key: str) -> Optional[Dict[str, Any]]:
        return await _in_executor(self.load_sync, session_key)

    async def save(self, session_key: str, record: Dict[str, Any]) -> None:
        await _in_executor(self.save_sync, session_key, record)

    async def delete(self, session_key: str) -> bool:
        return await _in_executor(self.delete_sync, session_key)

    def close(self):
        """Close database connection"""
        if self.conn:
            self.conn.close()
            self.conn = None
            logger.debug("Snapshot store connection closed")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


# ============================================================================
# JSON FILES
# ============================================================================

class JsonFileSnapshotStore:
    """
    One `<session_key>.json` file per session under `directory`.

    Writes go to a temp file that then replaces the target.
    """

    def __init__(self, directory: str = "context_snapshots"):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, session_key: str) -> Path:
        safe = re.sub(r'[^A-Za-z0-9_.-]', '_', session_key)
        return self.directory / f"{safe}.json"

    def load_sync(self, session_key: str) -> Optional[Dict[str, Any]]:
        path = self._path(session_key)
        if not path.exists():
            return None
        with open(path, 'r', encoding='utf-8') as f:
            return json.load(f)

    def save_sync(self, session_key: str, record: Dict[str, Any]) -> None:
        path = self._path(session_key)
        now = datetime.now().isoformat()

        created_at = record.get("created_at")
        if created_at is None and path.exists():
            try:
                created_at = (self.load_sync(session_key) or {}).get("created_at")
            except (OSError, json.JSONDecodeError):
                created_at = None

        data = dict(record)
        data["session_key"] = session_key
        data["created_at"] = created_at or now
        data["updated_at"] = now

        temp_file = path.with_suffix('.tmp')
        with open(temp_file, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2)
        temp_file.replace(path)

    def delete_sync(self, session_key: str) -> bool:
        path = self._path(session_key)
        if not path.exists():
            return False
        path.unlink()
        return True

    async def load(self, session_key: str) -> Optional[Dict[str, Any]]:
        return await _in_executor(self.load_sync, session_key)

    async def save(self, session_key: str, record: Dict[str, Any]) -> None:
        await _in_executor(self.save_sync, session_key, record)

    async def delete(self, session_key: str) -> bool:
        return await _in_executor(self.delete_sync, session_key)


# ============================================================================
# ADAPTER
# ============================================================================

@dataclass
class StoredContext:
    """Decrypted, parsed snapshot of one session"""
    session_key: str
    context_data: Any = field(default_factory=_empty_snapshot)
    summary: Optional[str] = None
    tokens_used: int = 0
    compression_version: Optional[str] = None
    last_compressed: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class ContextStorage:
    """
    Saves and loads layered context through a SnapshotStore.

    Args:
        store: SnapshotStore backend
        encryption: EncryptionService applied to context_data and summary
    """

    def __init__(self, store: SnapshotStore, encryption: Optional[EncryptionService] = None):
        self.store = store
        self.encryption = encryption or EncryptionService(enabled=False)

    def _encrypt_record(self, record: Dict[str, Any]) -> Dict[str, Any]:
        encrypted = dict(record)
        for name in ENCRYPTED_FIELDS:
            if encrypted.get(name) is not None:
                encrypted[name] = self.encryption.encrypt(encrypted[name], name)
        return encrypted

    def _decrypt_record(self, record: Dict[str, Any]) -> Dict[str, Any]:
        decrypted = dict(record)
        for name in ENCRYPTED_FIELDS:
            if decrypted.get(name) is not None:
                decrypted[name] = self.encryption.decrypt(decrypted[name], name)
        return decrypted

    def _parse(self, session_key: str, record: Dict[str, Any]) -> StoredContext:
        raw = record.get("context_data")
        context_data: Any = _empty_snapshot()
        if raw:
            try:
                context_data = json.loads(raw) if isinstance(raw, str) else raw
            except json.JSONDecodeError as e:
                logger.warning(f"Stored context for {session_key} is not valid JSON, starting empty: {e}")
                context_data = _empty_snapshot()

        return StoredContext(
            session_key=session_key,
            context_data=context_data,
            summary=record.get("summary"),
            tokens_used=int(record.get("tokens_used") or 0),
            compression_version=record.get("compression_version"),
            last_compressed=record.get("last_compressed"),
            created_at=record.get("created_at"),
            updated_at=record.get("updated_at"),
        )

    async def load_context(self, session_key: str) -> Optional[StoredContext]:
        logger.debug(f"Loading context from storage: {session_key}")
        try:
            record = await self.store.load(session_key)
        except Exception as e:
            raise PersistenceError(f"Failed to load context {session_key}: {e}") from e

        if record is None:
            logger.debug(f"No context found in storage: {session_key}")
            return None

        record = await _in_executor(self._decrypt_record, record)
        return self._parse(session_key, record)

    async def save_context(
        self,
        session_key: str,
        context_data: Any,
        summary: Optional[str] = None,
        tokens_used: int = 0,
        compression_version: Optional[str] = None,
    ) -> StoredContext:
        record = {
            "context_data": json.dumps(context_data),
            "summary": summary,
            "tokens_used": tokens_used,
            "compression_version": compression_version,
            "last_compressed": datetime.now().isoformat() if compression_version else None,
        }
        encrypted = await _in_executor(self._encrypt_record, record)

        try:
            await self.store.save(session_key, encrypted)
        except Exception as e:
            raise PersistenceError(f"Failed to save context {session_key}: {e}") from e

        logger.debug(f"Saved context {session_key}: {tokens_used} tokens")
        return self._parse(session_key, record)

    async def update_context_metadata(
        self,
        session_key: str,
        tokens_used: Optional[int] = None,
        compression_version: Optional[str] = None,
        summary: Optional[str] = None,
    ) -> bool:
        """Update bookkeeping fields of an existing snapshot. Returns False if none exists."""
        try:
            record = await self.store.load(session_key)
        except Exception as e:
            raise PersistenceError(f"Failed to load context {session_key}: {e}") from e
        if record is None:
            return False

        record = dict(record)
        if tokens_used is not None:
            record["tokens_used"] = tokens_used
        if compression_version is not None:
            record["compression_version"] = compression_version
            record["last_compressed"] = datetime.now().isoformat()
        if summary is not None:
            record["summary"] = await _in_executor(self.encryption.encrypt, summary, "summary")

        try:
            await self.store.save(session_key, record)
        except Exception as e:
            raise PersistenceError(f"Failed to update context {session_key}: {e}") from e
        return True

    async def delete_context(self, session_key: str) -> bool:
        try:
            deleted = await self.store.delete(session_key)
        except Exception as e:
            raise PersistenceError(f"Failed to delete context {session_key}: {e}") from e
        logger.debug(f"Context deletion result for {session_key}: {deleted}")
        return deleted
