"""
Durable item store using SQLite.

The item store is the source of truth for every MemoryItem. The in-memory
BM25 and embedding indexes are derived from it and rebuilt from
scan_all() at startup.

Single writer, many readers:
- One writer connection, guarded by a lock held only for each commit.
- Each reading thread gets its own connection, so reads run concurrently
  with each other (WAL mode lets them run alongside the writer too).

A commit either lands completely or not at all, so a row is never
half-written even after an unclean shutdown. Rows that fail to decode
are reported as StorageError, never returned.
"""

import json
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Iterator, Optional

import numpy as np

from .errors import StorageError
from .types import MemoryItem, SourceKind, format_timestamp, parse_timestamp

logger = logging.getLogger(__name__)

# Embedding blobs are little-endian float32
_EMBEDDING_DTYPE = np.dtype("<f4")

_COLUMNS = "rowid, id, text, source_kind, created_at, metadata_json, embedding"


def encode_embedding(embedding) -> bytes:
    """Pack a vector into the stored blob format. Raises ValueError if it overflows float32."""
    with np.errstate(over="ignore"):
        arr = np.asarray(embedding, dtype=_EMBEDDING_DTYPE)
    if not np.all(np.isfinite(arr)):
        raise ValueError("embedding has components that are not finite as float32")
    return arr.tobytes()


def decode_embedding(blob: bytes) -> tuple[float, ...]:
    """Unpack a stored blob. Raises ValueError on a truncated blob."""
    if len(blob) % _EMBEDDING_DTYPE.itemsize:
        raise ValueError(f"embedding blob of {len(blob)} bytes is not a whole number of float32s")
    return tuple(float(x) for x in np.frombuffer(blob, dtype=_EMBEDDING_DTYPE))


class ItemStore:
    """
    SQLite-backed durable store for memory items.

    All methods are blocking. Async callers run them via asyncio.to_thread().
    """

    def __init__(self, db_path: Path, *, embedding_dimension: Optional[int] = None):
        """
        Args:
            db_path: Path to SQLite database file
            embedding_dimension: If set, stored embeddings of any other
                length are treated as corrupt rows

        Raises:
            StorageError: If the database cannot be opened or fails its
                integrity check
        """
        self._db_path = Path(db_path)
        self._embedding_dimension = embedding_dimension
        self._write_lock = threading.Lock()
        self._local = threading.local()
        self._readers: list[sqlite3.Connection] = []
        self._readers_lock = threading.Lock()
        self._closed = False
        self._conn: Optional[sqlite3.Connection] = None
        try:
            self._init_db()
        except sqlite3.Error as e:
            self.close()
            raise StorageError(f"Cannot open item store {self._db_path}: {e}") from e

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            str(self._db_path), check_same_thread=False,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row
        # Wait up to 5 seconds for locks instead of failing immediately
        conn.execute("PRAGMA busy_timeout=5000")
        return conn

    def _init_db(self) -> None:
        """Initialize the SQLite database."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        # isolation_level=None gives us manual transaction control
        self._conn = self._connect()
        self._conn.execute("PRAGMA journal_mode=WAL")
        # Commit returns only after the WAL is fsynced
        self._conn.execute("PRAGMA synchronous=FULL")

        row = self._conn.execute("PRAGMA quick_check").fetchone()
        if row is None or row[0] != "ok":
            raise sqlite3.DatabaseError(f"integrity check failed: {row[0] if row else 'no result'}")

        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS memory_items (
                id TEXT PRIMARY KEY,
                text TEXT NOT NULL,
                source_kind TEXT NOT NULL,
                created_at TEXT NOT NULL,
                metadata_json TEXT NOT NULL DEFAULT '{}',
                embedding BLOB
            )
        """)

        # Index for retention queries
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_memory_items_created
            ON memory_items(created_at)
        """)

        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_memory_items_source
            ON memory_items(source_kind)
        """)

    def _reader(self) -> sqlite3.Connection:
        """This thread's read connection, opened on first use."""
        self._check_open()
        conn = getattr(self._local, "conn", None)
        if conn is None:
            try:
                conn = self._connect()
            except sqlite3.Error as e:
                raise StorageError(f"Cannot open item store {self._db_path}: {e}") from e
            self._local.conn = conn
            with self._readers_lock:
                self._readers.append(conn)
        return conn

    def _check_open(self) -> None:
        if self._closed:
            raise StorageError("Item store is closed")

    def _row_to_item(self, row: sqlite3.Row) -> MemoryItem:
        try:
            embedding = None
            if row["embedding"] is not None:
                embedding = decode_embedding(row["embedding"])
                if self._embedding_dimension and len(embedding) != self._embedding_dimension:
                    raise ValueError(
                        f"embedding has {len(embedding)} dimensions, expected {self._embedding_dimension}"
                    )
            metadata = json.loads(row["metadata_json"])
            if not isinstance(metadata, dict):
                raise ValueError("metadata is not an object")
            return MemoryItem(
                id=row["id"],
                text=row["text"],
                source_kind=SourceKind(row["source_kind"]),
                created_at=parse_timestamp(row["created_at"]),
                embedding=embedding,
                metadata={str(k): str(v) for k, v in metadata.items()},
            )
        except (ValueError, TypeError) as e:
            raise StorageError(f"Corrupt row for item {row['id']!r}: {e}") from e

    # -------------------------------------------------------------------------
    # Write Operations
    # -------------------------------------------------------------------------

    def append(self, item: MemoryItem) -> str:
        """
        Durably store a new item.

        Returns only after the row is committed.

        Args:
            item: The item to store

        Returns:
            The item's id

        Raises:
            StorageError: If the id already exists or the store is
                unavailable, full or closed
        """
        self._check_open()
        metadata_json = json.dumps(item.metadata, ensure_ascii=False, sort_keys=True)
        try:
            blob = encode_embedding(item.embedding) if item.embedding is not None else None
        except ValueError as e:
            raise StorageError(f"Cannot store item {item.id!r}: {e}") from e

        with self._write_lock:
            try:
                self._conn.execute("BEGIN IMMEDIATE")
                try:
                    self._conn.execute("""
                        INSERT INTO memory_items
                        (id, text, source_kind, created_at, metadata_json, embedding)
                        VALUES (?, ?, ?, ?, ?, ?)
                    """, (
                        item.id,
                        item.text,
                        item.source_kind.value,
                        format_timestamp(item.created_at),
                        metadata_json,
                        blob,
                    ))
                    self._conn.execute("COMMIT")
                except BaseException:
                    self._conn.execute("ROLLBACK")
                    raise
            except sqlite3.IntegrityError as e:
                raise StorageError(f"Item {item.id!r} already exists") from e
            except sqlite3.Error as e:
                raise StorageError(f"Failed to store item {item.id!r}: {e}") from e

        logger.debug("Stored item %s (%s)", item.id, item.source_kind.value)
        return item.id

    def delete(self, id: str) -> bool:
        """
        Delete an item. Idempotent.

        Returns:
            True if the item existed and was deleted
        """
        self._check_open()
        with self._write_lock:
            try:
                cursor = self._conn.execute("DELETE FROM memory_items WHERE id = ?", (id,))
            except sqlite3.Error as e:
                raise StorageError(f"Failed to delete item {id!r}: {e}") from e
        return cursor.rowcount > 0

    def clear(self) -> int:
        """
        Delete every item.

        Returns:
            Number of items deleted
        """
        self._check_open()
        with self._write_lock:
            try:
                cursor = self._conn.execute("DELETE FROM memory_items")
            except sqlite3.Error as e:
                raise StorageError(f"Failed to clear item store: {e}") from e
        return cursor.rowcount

    # -------------------------------------------------------------------------
    # Read Operations
    # -------------------------------------------------------------------------

    def _query(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        try:
            return self._reader().execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"Item store read failed: {e}") from e

    def get(self, id: str) -> Optional[MemoryItem]:
        """
        Get an item by id.

        Returns:
            MemoryItem if found, None otherwise
        """
        rows = self._query(f"SELECT {_COLUMNS} FROM memory_items WHERE id = ?", (id,))
        return self._row_to_item(rows[0]) if rows else None

    def get_many(self, ids: list[str]) -> dict[str, MemoryItem]:
        """
        Get multiple items by id.

        Returns:
            Dict mapping id → MemoryItem (missing ids omitted)
        """
        if not ids:
            return {}
        placeholders = ",".join("?" * len(ids))
        rows = self._query(
            f"SELECT {_COLUMNS} FROM memory_items WHERE id IN ({placeholders})",
            tuple(ids),
        )
        return {row["id"]: self._row_to_item(row) for row in rows}

    def exists(self, id: str) -> bool:
        """Check if an item exists."""
        return bool(self._query("SELECT 1 FROM memory_items WHERE id = ?", (id,)))

    def scan_all(self, batch_size: int = 256) -> Iterator[MemoryItem]:
        """
        Iterate over every item in insertion order.

        Lazy: rows are fetched one batch at a time by rowid, so no read
        transaction is held between batches. Restartable: each call
        starts again from the first row.
        """
        last_rowid = 0
        while True:
            rows = self._query(
                f"SELECT {_COLUMNS} FROM memory_items WHERE rowid > ? ORDER BY rowid LIMIT ?",
                (last_rowid, batch_size),
            )
            if not rows:
                return
            for row in rows:
                yield self._row_to_item(row)
            last_rowid = rows[-1]["rowid"]

    def expired_ids(self, cutoff) -> list[str]:
        """
        Ids of items created strictly before ``cutoff`` (a datetime).

        Oldest first.
        """
        rows = self._query(
            "SELECT id FROM memory_items WHERE created_at < ? ORDER BY created_at, rowid",
            (format_timestamp(cutoff),),
        )
        return [row["id"] for row in rows]

    def count(self) -> int:
        """Count stored items."""
        return self._query("SELECT COUNT(*) FROM memory_items")[0][0]

    def count_with_embeddings(self) -> int:
        """Count stored items that carry an embedding."""
        return self._query("SELECT COUNT(*) FROM memory_items WHERE embedding IS NOT NULL")[0][0]

    def latest_created_at(self):
        """created_at of the newest item, or None if the store is empty."""
        rows = self._query("SELECT MAX(created_at) FROM memory_items")
        value = rows[0][0] if rows else None
        return parse_timestamp(value) if value else None

    def storage_size(self) -> int:
        """On-disk size of the database and its WAL, in bytes."""
        total = 0
        for suffix in ("", "-wal"):
            path = Path(str(self._db_path) + suffix)
            if path.exists():
                total += path.stat().st_size
        return total

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @property
    def path(self) -> Path:
        return self._db_path

    def close(self) -> None:
        """Close all database connections."""
        self._closed = True
        with self._readers_lock:
            readers, self._readers = self._readers, []
        for conn in readers:
            conn.close()
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
