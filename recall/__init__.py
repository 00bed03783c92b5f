"""
Recall

Hybrid keyword + semantic memory for an assistant. Items are durably stored
in SQLite and searched with BM25 over their text and cosine similarity over
precomputed embeddings, fused into a single ranking.

Quick Start:
    from recall import MemoryStore

    memory = MemoryStore()  # uses ~/.recall/
    item_id = await memory.ingest("Decided to ship on Friday", "decision")
    results = await memory.hybrid_search("ship date", embedding=query_vec)

CLI Usage:
    recall ingest "Decided to ship on Friday" --kind decision
    recall search "ship date" --limit 5
    recall stats --json

Default Store:
    ~/.recall/ (created automatically).
    Override with RECALL_STORE_PATH or explicit path argument.

Environment Variables:
    RECALL_STORE_PATH  - Override default store location
    RECALL_VERBOSE     - Set to 1 for debug logging from the CLI

The store is opened and its indexes rebuilt on first use. Configuration is
persisted in a TOML file within the store directory.
"""

from .api import MemoryStore
from .config import StoreConfig, load_or_create_config
from .coordinator import InitializationCoordinator, InitState
from .errors import (
    ConfigError,
    InitializationError,
    NotFoundError,
    QueryError,
    RecallError,
    StorageError,
)
from .protocol import ItemStoreProtocol, MemoryStoreProtocol
from .types import MatchedBy, MemoryItem, MemoryStoreStats, QueryResult, SourceKind

__version__ = "0.1.0"
__all__ = [
    "MemoryStore",
    "StoreConfig",
    "load_or_create_config",
    "InitializationCoordinator",
    "InitState",
    "RecallError",
    "ConfigError",
    "StorageError",
    "InitializationError",
    "QueryError",
    "NotFoundError",
    "MemoryStoreProtocol",
    "ItemStoreProtocol",
    "MemoryItem",
    "MemoryStoreStats",
    "QueryResult",
    "SourceKind",
    "MatchedBy",
]
