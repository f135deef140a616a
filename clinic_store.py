"""
File: clinic_store.py
Author notes: Centralized persistence layer for ClinicDesk. Each collection
(patients, appointments, prescriptions, visits) is one JSON array stored in a
single `documents` row keyed by category, so every screen/handler goes through
these typed methods instead of parsing payloads inline.

Every write bumps the row's `version` and records which store handle wrote it;
events.ChangeWatcher uses that to tell other processes sharing the same file
that a key changed.
"""

import json
import secrets
import sqlite3
import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from schemas import COLLECTIONS

logger = logging.getLogger("uvicorn.error")


class StoreUnavailableError(RuntimeError):
    """The underlying storage call failed (disk full, read-only, locked). Not retried."""


class DuplicateIdError(ValueError):
    """An entity with the same id already exists in the collection."""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _check_collection(collection: str):
    if collection not in COLLECTIONS:
        raise ValueError(f"Invalid collection: {collection}")


class RecordStore:
    """Read/write named collections in one SQLite file.

    `writer` identifies this handle (one per process or per simulated tab).
    """

    def __init__(self, path: Path, writer: Optional[str] = None, timeout: float = 5.0):
        self.path = Path(path).resolve()
        self.writer = writer or f"store-{secrets.token_hex(4)}"
        self.timeout = timeout
        self._own_writes: Dict[str, int] = {}
        self._own_lock = threading.Lock()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    # --- connection helpers ---

    def _conn(self):
        conn = sqlite3.connect(str(self.path), timeout=self.timeout, isolation_level=None, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _tx(self, action: str):
        """One IMMEDIATE transaction; sqlite errors surface as StoreUnavailableError."""
        try:
            conn = self._conn()
        except sqlite3.Error as e:
            logger.exception("%s failed: cannot open store", action, extra={"db_path": str(self.path)})
            raise StoreUnavailableError(f"{action}: {e}") from e
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            logger.exception("%s failed", action, extra={"db_path": str(self.path)})
            raise StoreUnavailableError(f"{action}: {e}") from e
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    def _init_db(self):
        """Create the documents table. No implicit teardown; the file outlives this handle."""
        with self._tx("init") as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS documents (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    category TEXT NOT NULL UNIQUE,
                    payload TEXT NOT NULL,
                    version INTEGER NOT NULL DEFAULT 0,
                    writer TEXT,
                    updated_at TEXT NOT NULL
                );
                """
            )

    # --- raw payload access ---

    def _load(self, conn, collection: str) -> Optional[str]:
        row = conn.execute("SELECT payload FROM documents WHERE category=?", (collection,)).fetchone()
        return row["payload"] if row else None

    def _save(self, conn, collection: str, payload: str):
        conn.execute(
            """
            INSERT INTO documents(category, payload, version, writer, updated_at)
            VALUES (:category, :payload, 1, :writer, :updated_at)
            ON CONFLICT(category) DO UPDATE SET
                payload=excluded.payload,
                version=documents.version + 1,
                writer=excluded.writer,
                updated_at=excluded.updated_at;
            """,
            {"category": collection, "payload": payload, "writer": self.writer, "updated_at": _now()},
        )

    def _decode(self, collection: str, payload: Optional[str]) -> Optional[List[dict]]:
        """Parse a stored payload. None means corrupt (caller resets)."""
        if payload is None:
            return []
        try:
            data = json.loads(payload)
        except (TypeError, ValueError):
            data = None
        if not isinstance(data, list):
            logger.warning(
                "Corrupt payload for %s; resetting collection to []",
                collection,
                extra={"db_path": str(self.path)},
            )
            return None
        return [e for e in data if isinstance(e, dict)]

    @staticmethod
    def _encode(entities: List[dict]) -> str:
        return json.dumps(list(entities), ensure_ascii=False)

    def raw_payload(self, collection: str) -> Optional[str]:
        _check_collection(collection)
        with self._tx(f"read {collection}") as conn:
            return self._load(conn, collection)

    def set_raw_payload(self, collection: str, payload: str):
        """Store text verbatim (imports of legacy exports, corruption fixtures)."""
        _check_collection(collection)
        with self._tx(f"write {collection}") as conn:
            self._save(conn, collection, payload)
        self._wrote(collection)

    # --- collection API ---

    def read(self, collection: str) -> List[dict]:
        _check_collection(collection)
        with self._tx(f"read {collection}") as conn:
            entities = self._decode(collection, self._load(conn, collection))
            if entities is None:
                self._save(conn, collection, "[]")
        if entities is None:
            self._wrote(collection)
            return []
        return entities

    def write(self, collection: str, entities: List[dict]):
        """Whole-collection replace; last writer wins."""
        _check_collection(collection)
        payload = self._encode(entities)
        with self._tx(f"write {collection}") as conn:
            self._save(conn, collection, payload)
        self._wrote(collection)

    def append(self, collection: str, entity: dict):
        _check_collection(collection)
        with self._tx(f"append {collection}") as conn:
            entities = self._decode(collection, self._load(conn, collection)) or []
            eid = entity.get("id")
            if eid and any(e.get("id") == eid for e in entities):
                raise DuplicateIdError(f"{collection} already contains id {eid}")
            entities.append(entity)
            self._save(conn, collection, self._encode(entities))
        self._wrote(collection)

    def update(self, collection: str, entity_id: str, patch: Dict[str, Any]) -> bool:
        _check_collection(collection)
        changes = {k: v for k, v in (patch or {}).items() if k != "id"}
        with self._tx(f"update {collection}") as conn:
            entities = self._decode(collection, self._load(conn, collection)) or []
            for idx, e in enumerate(entities):
                if e.get("id") == entity_id:
                    entities[idx] = {**e, **changes}
                    break
            else:
                return False
            self._save(conn, collection, self._encode(entities))
        self._wrote(collection)
        return True

    def remove(self, collection: str, entity_id: str) -> bool:
        _check_collection(collection)
        with self._tx(f"remove {collection}") as conn:
            entities = self._decode(collection, self._load(conn, collection)) or []
            kept = [e for e in entities if e.get("id") != entity_id]
            if len(kept) == len(entities):
                return False
            self._save(conn, collection, self._encode(kept))
        self._wrote(collection)
        return True

    def remove_where(self, collection: str, field: str, value: Any) -> int:
        """Drop every entity whose `field` equals `value`; returns how many were removed."""
        _check_collection(collection)
        with self._tx(f"remove {collection}") as conn:
            entities = self._decode(collection, self._load(conn, collection)) or []
            kept = [e for e in entities if e.get(field) != value]
            removed = len(entities) - len(kept)
            if removed:
                self._save(conn, collection, self._encode(kept))
        if removed:
            self._wrote(collection)
        return removed

    def find(self, collection: str, entity_id: str) -> Optional[dict]:
        return next((e for e in self.read(collection) if e.get("id") == entity_id), None)

    def snapshot(self) -> Dict[str, List[dict]]:
        return {c: self.read(c) for c in COLLECTIONS}

    # --- change tracking ---

    def _wrote(self, collection: str):
        with self._own_lock:
            self._own_writes[collection] = self._own_writes.get(collection, 0) + 1

    def own_writes(self, collection: str) -> int:
        """Committed writes this handle has made to `collection`."""
        with self._own_lock:
            return self._own_writes.get(collection, 0)

    def version_rows(self) -> Dict[str, Tuple[int, str]]:
        """{collection: (version, writer)} for every initialized key."""
        with self._tx("read versions") as conn:
            rows = conn.execute("SELECT category, version, writer FROM documents").fetchall()
        return {r["category"]: (r["version"], r["writer"] or "") for r in rows if r["category"] in COLLECTIONS}

    def versions(self) -> Dict[str, int]:
        rows = self.version_rows()
        return {c: rows.get(c, (0, ""))[0] for c in COLLECTIONS}


# Process default store used by the HTTP app.
_store: Optional[RecordStore] = None


def configure_db(path: Path, writer: Optional[str] = None) -> RecordStore:
    """Configure the default store path and ensure the schema exists."""
    global _store
    _store = RecordStore(path, writer=writer)
    return _store


def get_store() -> RecordStore:
    if _store is None:
        raise RuntimeError("Record store not configured; call configure_db() first")
    return _store
