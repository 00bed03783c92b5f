"""
Protocol definitions for the memory store and its durable backend.

Defines interface contracts at two levels:
- MemoryStoreProtocol: the public async API used by assistant features
- ItemStoreProtocol: the blocking durable store behind it (SQLite locally,
  or a test double)
"""

from datetime import datetime
from typing import Iterator, Optional, Protocol, Sequence, runtime_checkable

from .types import MemoryItem, MemoryStoreStats, QueryResult, SourceKind


@runtime_checkable
class MemoryStoreProtocol(Protocol):
    """
    The public interface for hybrid memory operations.

    Implemented by:
    - MemoryStore (SQLite + in-memory BM25/embedding indexes)
    """

    # -- Lifecycle --

    async def ensure_ready(self) -> None: ...

    async def close(self) -> None: ...

    # -- Write operations --

    async def ingest(
        self,
        text: str,
        source_kind: SourceKind | str,
        metadata: Optional[dict[str, str]] = None,
        embedding: Optional[Sequence[float]] = None,
        *,
        supersedes: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> str: ...

    async def delete(self, id: str) -> bool: ...

    async def purge_expired(self, now: Optional[datetime] = None) -> list[str]: ...

    async def clear(self) -> int: ...

    # -- Query operations --

    async def hybrid_search(
        self,
        query: str,
        embedding: Optional[Sequence[float]] = None,
        top_k: Optional[int] = None,
        *,
        source_kinds: Optional[Sequence[SourceKind | str]] = None,
        include_superseded: bool = False,
    ) -> list[QueryResult]: ...

    async def keyword_search(
        self,
        query: str,
        top_k: Optional[int] = None,
    ) -> list[QueryResult]: ...

    async def semantic_search(
        self,
        embedding: Sequence[float],
        top_k: Optional[int] = None,
    ) -> list[QueryResult]: ...

    async def get(self, id: str) -> MemoryItem: ...

    async def stats(self) -> MemoryStoreStats: ...


@runtime_checkable
class ItemStoreProtocol(Protocol):
    """
    Durable, single-writer storage for memory items.

    All methods block; the memory store calls them from worker threads.
    """

    def append(self, item: MemoryItem) -> str: ...

    def delete(self, id: str) -> bool: ...

    def clear(self) -> int: ...

    def get(self, id: str) -> Optional[MemoryItem]: ...

    def get_many(self, ids: list[str]) -> dict[str, MemoryItem]: ...

    def exists(self, id: str) -> bool: ...

    def scan_all(self, batch_size: int = 256) -> Iterator[MemoryItem]: ...

    def expired_ids(self, cutoff: datetime) -> list[str]: ...

    def count(self) -> int: ...

    def count_with_embeddings(self) -> int: ...

    def latest_created_at(self) -> Optional[datetime]: ...

    def storage_size(self) -> int: ...

    def close(self) -> None: ...
