"""
Core API for hybrid memory.

MemoryStore is the only public entry point:
- ingest(): validate → durable append → BM25 + embedding indexing
- hybrid_search(): BM25 + cosine → weighted fusion → load items
- delete(): indexes first, durable store last

Every operation first awaits ensure_ready(), which opens the SQLite store
and rebuilds both in-memory indexes exactly once (retrying on the next
call if a previous attempt failed).
"""

import asyncio
import logging
import time
from collections import deque
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Optional, Sequence

from .config import StoreConfig, load_or_create_config
from .coordinator import InitializationCoordinator, InitState
from .embedding_index import EmbeddingIndex
from .errors import ConfigError, InitializationError, NotFoundError, QueryError, StorageError
from .hybrid import HybridQueryEngine
from .item_store import ItemStore
from .lexical import BM25Index, highlight
from .protocol import ItemStoreProtocol
from .types import (
    SUPERSEDES_KEY,
    MemoryItem,
    MemoryStoreStats,
    QueryResult,
    SourceKind,
    utc_now,
)

logger = logging.getLogger(__name__)

# Rolling window for average search time
SEARCH_TIME_WINDOW = 100


def _open_item_store(config: StoreConfig) -> ItemStoreProtocol:
    return ItemStore(config.items_path, embedding_dimension=config.embedding_dimension)


class MemoryStore:
    """
    Hybrid keyword + semantic memory over a durable SQLite store.

    Construct one instance at startup and pass it to the features that
    need recall. Nothing is opened until the first call.

    Example:
        memory = MemoryStore("~/.recall")
        item_id = await memory.ingest("Decided to ship on Friday", "decision")
        results = await memory.hybrid_search("ship date", embedding=query_vec)
    """

    def __init__(
        self,
        store_path: Optional[str | Path] = None,
        *,
        config: Optional[StoreConfig] = None,
        item_store_factory: Optional[Callable[[StoreConfig], ItemStoreProtocol]] = None,
        ops_log: bool = True,
    ) -> None:
        """
        Create a memory store. Does no I/O beyond reading the config.

        Args:
            store_path: Store directory. Uses RECALL_STORE_PATH or ~/.recall
                if not specified.
            config: Pre-loaded StoreConfig (skips filesystem config discovery).
            item_store_factory: Opens the durable store (default: SQLite in
                the store directory). Called from a worker thread on each
                initialization attempt.
            ops_log: Attach the rotating operations log in the store directory.

        Raises:
            ConfigError: If the configuration is invalid
        """
        # --- Config resolution ---
        if config is not None:
            self._config = config.validate()
        else:
            if store_path is not None:
                store_path = Path(store_path).expanduser().resolve()
            self._config = load_or_create_config(store_path)
        self._store_path = self._config.path

        # Fail fast on bad constants: these raise ConfigError
        self._engine = HybridQueryEngine(self._config.alpha)
        self._lexical = BM25Index(self._config.k1, self._config.b)
        self._embeddings = EmbeddingIndex(self._config.embedding_dimension)

        self._item_store_factory = item_store_factory or _open_item_store
        self._item_store: Optional[ItemStoreProtocol] = None

        # superseded id → id of the item that corrects it
        self._superseded: dict[str, str] = {}
        self._kinds: dict[str, SourceKind] = {}
        self._search_times: deque[float] = deque(maxlen=SEARCH_TIME_WINDOW)
        self._closed = False
        # Shielded append-then-index steps still running
        self._pending_commits: set[asyncio.Task] = set()

        self._coordinator = InitializationCoordinator(self._open_and_rebuild, name="memory-store")

        # --- Persistent operations log ---
        self._ops_log_handler = None
        if ops_log:
            from .logging_config import configure_ops_log
            self._ops_log_handler = configure_ops_log(self._store_path)

    # -------------------------------------------------------------------------
    # Initialization
    # -------------------------------------------------------------------------

    @property
    def config(self) -> StoreConfig:
        return self._config

    @property
    def state(self) -> InitState:
        return self._coordinator.state

    @property
    def is_ready(self) -> bool:
        return self._coordinator.is_ready

    async def ensure_ready(self) -> None:
        """
        Open the durable store and rebuild indexes, once.

        Concurrent callers share one run. A failed run is retried by the
        next caller.

        Raises:
            StorageError: If the store has been closed
            InitializationError: If the run this caller waited on failed
        """
        if self._closed:
            raise StorageError("Memory store is closed")
        await self._coordinator.ensure_ready()

    async def _open_and_rebuild(self) -> None:
        """Startup work guarded by the coordinator."""
        started = time.perf_counter()
        store = await asyncio.to_thread(self._item_store_factory, self._config)
        try:
            lexical, embeddings, kinds, superseded = await asyncio.to_thread(
                self._build_indexes, store
            )
        except BaseException:
            store.close()
            raise

        # Swap in complete indexes; a failed rebuild never leaves partial ones
        self._item_store = store
        self._lexical = lexical
        self._embeddings = embeddings
        self._kinds = kinds
        self._superseded = superseded
        logger.info(
            "Rebuilt indexes from %s: %d items, %d embeddings, %d terms in %.3fs",
            self._store_path, len(lexical), len(embeddings), lexical.term_count,
            time.perf_counter() - started,
        )

    def _build_indexes(self, store: ItemStoreProtocol):
        """Scan the durable store into fresh indexes. Runs in a worker thread."""
        lexical = BM25Index(self._config.k1, self._config.b)
        embeddings = EmbeddingIndex(self._config.embedding_dimension)
        kinds: dict[str, SourceKind] = {}
        superseded: dict[str, str] = {}
        for item in store.scan_all():
            lexical.index(item)
            if item.embedding is not None:
                try:
                    embeddings.index(item.id, item.embedding)
                except (ConfigError, QueryError) as e:
                    # Item stays searchable by keyword
                    logger.warning("Skipping stored embedding for %s: %s", item.id, e)
            kinds[item.id] = item.source_kind
            if item.supersedes:
                superseded[item.supersedes] = item.id
        return lexical, embeddings, kinds, superseded

    def _require_store(self) -> ItemStoreProtocol:
        if self._item_store is None:
            raise StorageError("Memory store is closed")
        return self._item_store

    # -------------------------------------------------------------------------
    # Write Operations
    # -------------------------------------------------------------------------

    async def ingest(
        self,
        text: str,
        source_kind: SourceKind | str,
        metadata: Optional[dict[str, str]] = None,
        embedding: Optional[Sequence[float]] = None,
        *,
        supersedes: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> str:
        """
        Remember a fragment of activity.

        The item is durably committed before it is indexed. Once this
        returns, searches by the same caller will see the item.

        Args:
            text: Item text (non-empty)
            source_kind: conversation, journal, todo, activity, decision or note
            metadata: Optional str → str map
            embedding: Optional precomputed vector of the configured dimension
            supersedes: Id of an earlier item this one corrects
            created_at: Override the creation time (defaults to now)

        Returns:
            The new item's id

        Raises:
            QueryError: Malformed text, source kind or metadata
            ConfigError: Embedding of the wrong dimension
            NotFoundError: ``supersedes`` names an unknown item
            StorageError: The durable append failed
        """
        if embedding is not None:
            self._embeddings.validate(embedding)
        meta = dict(metadata or {})
        if supersedes is not None:
            meta[SUPERSEDES_KEY] = supersedes
        item = MemoryItem.create(text, source_kind, meta, embedding, created_at=created_at)

        await self.ensure_ready()
        if supersedes is not None and supersedes not in self._kinds:
            raise NotFoundError(f"Cannot supersede unknown item {supersedes!r}")

        # Caller cancellation must not split the append from the indexing
        commit = asyncio.ensure_future(self._commit(item))
        self._pending_commits.add(commit)
        commit.add_done_callback(self._commit_done)
        return await asyncio.shield(commit)

    def _commit_done(self, task: asyncio.Task) -> None:
        self._pending_commits.discard(task)
        # Retrieve the outcome even if the caller was cancelled
        if not task.cancelled() and task.exception() is not None:
            logger.debug("Commit failed: %s", task.exception())

    async def _commit(self, item: MemoryItem) -> str:
        store = self._require_store()
        await asyncio.to_thread(store.append, item)
        self._index_item(item)
        logger.info("Ingested %s (%s, %d chars)", item.id, item.source_kind.value, len(item.text))
        return item.id

    def _index_item(self, item: MemoryItem) -> None:
        self._lexical.index(item)
        if item.embedding is not None:
            self._embeddings.index(item.id, item.embedding)
        self._kinds[item.id] = item.source_kind
        if item.supersedes:
            self._superseded[item.supersedes] = item.id

    def _unindex_item(self, id: str) -> bool:
        found = self._lexical.remove(id)
        found = self._embeddings.remove(id) or found
        self._kinds.pop(id, None)
        self._superseded.pop(id, None)
        for old, new in list(self._superseded.items()):
            if new == id:
                del self._superseded[old]
        return found

    async def delete(self, id: str) -> bool:
        """
        Forget an item. Idempotent.

        Removes the item from both indexes first and from the durable
        store last, so an interrupted delete leaves the item recoverable
        at the next startup rather than orphaned in an index.

        Returns:
            True if the item existed
        """
        await self.ensure_ready()
        store = self._require_store()
        indexed = self._unindex_item(id)
        stored = await asyncio.to_thread(store.delete, id)
        if indexed or stored:
            logger.info("Deleted %s", id)
        return indexed or stored

    async def purge_expired(self, now: Optional[datetime] = None) -> list[str]:
        """
        Delete items older than the configured retention horizon.

        Returns:
            Ids that were deleted (empty if retention is disabled)
        """
        if self._config.retention_days <= 0:
            return []
        await self.ensure_ready()
        cutoff = (now or utc_now()) - timedelta(days=self._config.retention_days)
        store = self._require_store()
        expired = await asyncio.to_thread(store.expired_ids, cutoff)
        for id in expired:
            await self.delete(id)
        if expired:
            logger.info("Purged %d items created before %s", len(expired), cutoff.isoformat())
        return expired

    async def clear(self) -> int:
        """
        Delete every item.

        Returns:
            Number of items deleted from the durable store
        """
        await self.ensure_ready()
        store = self._require_store()
        self._lexical.clear()
        self._embeddings.clear()
        self._kinds.clear()
        self._superseded.clear()
        count = await asyncio.to_thread(store.clear)
        logger.info("Cleared %d items", count)
        return count

    # -------------------------------------------------------------------------
    # Query Operations
    # -------------------------------------------------------------------------

    def _resolve_top_k(self, top_k: Optional[int]) -> int:
        if top_k is None:
            return self._config.default_top_k
        if not isinstance(top_k, int) or isinstance(top_k, bool) or top_k < 1:
            raise QueryError(f"top_k must be a positive integer, got {top_k!r}")
        return top_k

    async def hybrid_search(
        self,
        query: str,
        embedding: Optional[Sequence[float]] = None,
        top_k: Optional[int] = None,
        *,
        source_kinds: Optional[Sequence[SourceKind | str]] = None,
        include_superseded: bool = False,
    ) -> list[QueryResult]:
        """
        Find items by keyword relevance and (optionally) semantic similarity.

        Args:
            query: Keyword query text (may be empty when embedding is given)
            embedding: Query vector from the external embedding service
            top_k: Maximum results (default from config)
            source_kinds: Only return items of these kinds
            include_superseded: Also return items that a later item corrects

        Returns:
            Ranked QueryResults with their items loaded

        Raises:
            QueryError: Malformed query or top_k
            ConfigError: Query embedding of the wrong dimension
        """
        return await self._search(
            query, embedding, top_k,
            use_lexical=True,
            use_semantic=embedding is not None,
            source_kinds=source_kinds,
            include_superseded=include_superseded,
        )

    async def keyword_search(self, query: str, top_k: Optional[int] = None) -> list[QueryResult]:
        """BM25-only search."""
        return await self._search(query, None, top_k, use_lexical=True, use_semantic=False)

    async def semantic_search(
        self,
        embedding: Sequence[float],
        top_k: Optional[int] = None,
    ) -> list[QueryResult]:
        """Cosine-similarity-only search."""
        if embedding is None:
            raise QueryError("semantic_search requires an embedding")
        return await self._search("", embedding, top_k, use_lexical=False, use_semantic=True)

    async def _search(
        self,
        query: str,
        embedding: Optional[Sequence[float]],
        top_k: Optional[int],
        *,
        use_lexical: bool,
        use_semantic: bool,
        source_kinds: Optional[Sequence[SourceKind | str]] = None,
        include_superseded: bool = False,
    ) -> list[QueryResult]:
        if query is None:
            query = ""
        if not isinstance(query, str):
            raise QueryError(f"Query must be a string, got {type(query).__name__}")
        limit = self._resolve_top_k(top_k)
        kinds = {SourceKind.parse(k) for k in source_kinds} if source_kinds else None
        if use_semantic:
            self._embeddings.validate(embedding, "Query embedding")

        await self.ensure_ready()
        started = time.perf_counter()

        pool = limit * self._config.candidate_multiplier
        hiding = bool(self._superseded) and not include_superseded
        if kinds or hiding:
            # Filters drop candidates after ranking; rank everything
            pool = max(pool, len(self._lexical), 1)

        lexical = self._lexical.search(query, pool) if use_lexical else []
        semantic = []
        if use_semantic and len(self._embeddings):
            semantic = self._embeddings.search(embedding, pool)

        fused = self._engine.fuse(lexical, semantic, created_at=self._lexical.created_at)
        visible = [
            r for r in fused
            if (kinds is None or self._kinds.get(r.item_id) in kinds)
            and not (hiding and r.item_id in self._superseded)
        ][:limit]

        results = await self._load_items(visible, query)
        self._search_times.append((time.perf_counter() - started) * 1000)
        logger.debug(
            "Search %r: %d lexical, %d semantic, %d returned",
            query[:50], len(lexical), len(semantic), len(results),
        )
        return results

    async def _load_items(self, results: list[QueryResult], query: str) -> list[QueryResult]:
        if not results:
            return []
        store = self._require_store()
        items = await asyncio.to_thread(store.get_many, [r.item_id for r in results])
        loaded = []
        for r in results:
            item = items.get(r.item_id)
            if item is None:
                # Deleted while this search was in flight
                continue
            r.item = item
            r.highlighted = highlight(item.text, query) if query.strip() else None
            loaded.append(r)
        return loaded

    async def recall_context(
        self,
        query: str,
        embedding: Optional[Sequence[float]] = None,
        top_k: Optional[int] = None,
        **kwargs,
    ) -> list[QueryResult]:
        """
        hybrid_search() for assistant features that can live without memory.

        If the store cannot be opened, logs a warning and returns no
        results instead of raising. The next call retries initialization.
        """
        try:
            return await self.hybrid_search(query, embedding, top_k, **kwargs)
        except (StorageError, InitializationError) as e:
            logger.warning("Memory unavailable, continuing without context: %s", e)
            return []

    async def get(self, id: str) -> MemoryItem:
        """
        Look up an item by id.

        Raises:
            NotFoundError: If no such item exists
        """
        await self.ensure_ready()
        store = self._require_store()
        item = await asyncio.to_thread(store.get, id)
        if item is None:
            raise NotFoundError(f"Item not found: {id}")
        return item

    async def stats(self) -> MemoryStoreStats:
        """Counts, timings and on-disk size."""
        await self.ensure_ready()
        store = self._require_store()

        def _collect():
            return (
                store.count(),
                store.count_with_embeddings(),
                store.storage_size(),
                store.latest_created_at(),
            )

        total, embedded, size, latest = await asyncio.to_thread(_collect)
        times = self._search_times
        return MemoryStoreStats(
            total_items=total,
            embedded_items=embedded,
            indexed_terms=self._lexical.term_count,
            average_search_ms=sum(times) / len(times) if times else 0.0,
            storage_size_bytes=size,
            last_ingested_at=latest,
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def close(self) -> None:
        """Close the durable store and detach the operations log."""
        if self._closed:
            return
        self._closed = True
        await self._coordinator.wait_idle()
        if self._pending_commits:
            await asyncio.wait(set(self._pending_commits))
        store, self._item_store = self._item_store, None
        if store is not None:
            await asyncio.to_thread(store.close)
        self._lexical.clear()
        self._embeddings.clear()
        self._kinds.clear()
        self._superseded.clear()
        self._coordinator.reset()
        if self._ops_log_handler is not None:
            from .logging_config import remove_ops_log
            remove_ops_log(self._ops_log_handler)
            self._ops_log_handler = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
        return False
