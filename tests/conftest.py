"""
Shared pytest fixtures for recall tests.

Stores use a 3-dimensional embedding space so vectors can be written by hand.
"""

import threading
from pathlib import Path

import pytest

from recall.api import MemoryStore
from recall.config import StoreConfig
from recall.errors import StorageError
from recall.item_store import ItemStore


DIMENSION = 3


def make_config(path: Path, **overrides) -> StoreConfig:
    """StoreConfig for a temp directory with a small embedding dimension."""
    settings = {"embedding_dimension": DIMENSION}
    settings.update(overrides)
    return StoreConfig(path=path, **settings).validate()


class FlakyItemStoreFactory:
    """
    Item store factory that fails its first ``failures`` calls.

    Counts calls so tests can check how many times startup actually ran.
    An optional gate makes each call block until released.
    """

    def __init__(self, failures: int = 0, gate: threading.Event = None):
        self.failures = failures
        self.gate = gate
        self.calls = 0
        self._lock = threading.Lock()

    def __call__(self, config: StoreConfig) -> ItemStore:
        with self._lock:
            self.calls += 1
            call = self.calls
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if call <= self.failures:
            raise StorageError(f"disk unavailable (call {call})")
        return ItemStore(config.items_path, embedding_dimension=config.embedding_dimension)


@pytest.fixture
def store_config(tmp_path) -> StoreConfig:
    return make_config(tmp_path / "store")


@pytest.fixture
async def memory(store_config):
    """A MemoryStore on a temp directory, closed after the test."""
    store = MemoryStore(config=store_config, ops_log=False)
    yield store
    await store.close()


@pytest.fixture
def item_store(tmp_path):
    store = ItemStore(tmp_path / "items.db", embedding_dimension=DIMENSION)
    yield store
    store.close()


class GatedItemStore(ItemStore):
    """
    ItemStore whose appends or batch reads can be held in the worker thread.

    Set ``append_gate`` or ``read_gate`` to an Event; the call signals
    ``entered`` and blocks until the gate is set.
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.append_gate: threading.Event = None
        self.read_gate: threading.Event = None
        self.entered = threading.Event()

    def append(self, item):
        gate = self.append_gate
        if gate is not None:
            self.entered.set()
            gate.wait(timeout=5)
        return super().append(item)

    def get_many(self, ids):
        gate = self.read_gate
        if gate is not None:
            self.entered.set()
            gate.wait(timeout=5)
        return super().get_many(ids)


class GatedItemStoreFactory:
    """Opens a GatedItemStore and keeps a reference to it."""

    def __init__(self):
        self.store: GatedItemStore = None

    def __call__(self, config: StoreConfig) -> GatedItemStore:
        self.store = GatedItemStore(config.items_path, embedding_dimension=config.embedding_dimension)
        return self.store
