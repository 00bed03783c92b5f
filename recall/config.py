"""
Configuration management for recall stores.

The configuration is stored as a TOML file in the store directory.
It specifies the embedding dimension, BM25 constants, fusion weight,
default result count and retention horizon.
"""

import math
import os
import tomllib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import tomli_w

from .errors import ConfigError


CONFIG_FILENAME = "recall.toml"
CONFIG_VERSION = 1

DEFAULT_EMBEDDING_DIMENSION = 384
DEFAULT_K1 = 1.2
DEFAULT_B = 0.75
DEFAULT_ALPHA = 0.5
DEFAULT_TOP_K = 10
DEFAULT_CANDIDATE_MULTIPLIER = 2


@dataclass
class StoreConfig:
    """Complete store configuration."""
    path: Path
    version: int = CONFIG_VERSION
    created: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    # Embedding vectors are produced externally; this only fixes their length
    embedding_dimension: int = DEFAULT_EMBEDDING_DIMENSION

    # BM25 constants
    k1: float = DEFAULT_K1
    b: float = DEFAULT_B

    # Fusion: alpha weights the lexical signal, (1 - alpha) the semantic one
    alpha: float = DEFAULT_ALPHA
    default_top_k: int = DEFAULT_TOP_K
    candidate_multiplier: int = DEFAULT_CANDIDATE_MULTIPLIER

    # Items older than this are purged by purge_expired(); 0 keeps forever
    retention_days: float = 0

    @property
    def config_path(self) -> Path:
        """Path to the TOML config file."""
        return self.path / CONFIG_FILENAME

    @property
    def items_path(self) -> Path:
        """Path to the SQLite item database."""
        return self.path / "items.db"

    def exists(self) -> bool:
        """Check if config file exists."""
        return self.config_path.exists()

    def validate(self) -> "StoreConfig":
        """
        Check every setting is usable.

        Raises:
            ConfigError: On the first invalid setting
        """
        if not isinstance(self.embedding_dimension, int) or self.embedding_dimension < 1:
            raise ConfigError(f"embedding dimension must be a positive integer, got {self.embedding_dimension!r}")
        if not _finite(self.k1) or self.k1 < 0:
            raise ConfigError(f"BM25 k1 must be a non-negative number, got {self.k1!r}")
        if not _finite(self.b) or not 0 <= self.b <= 1:
            raise ConfigError(f"BM25 b must be in [0, 1], got {self.b!r}")
        if not _finite(self.alpha) or not 0 <= self.alpha <= 1:
            raise ConfigError(f"fusion alpha must be in [0, 1], got {self.alpha!r}")
        if not isinstance(self.default_top_k, int) or self.default_top_k < 1:
            raise ConfigError(f"default_top_k must be a positive integer, got {self.default_top_k!r}")
        if not isinstance(self.candidate_multiplier, int) or self.candidate_multiplier < 1:
            raise ConfigError(
                f"candidate_multiplier must be a positive integer, got {self.candidate_multiplier!r}"
            )
        if not _finite(self.retention_days) or self.retention_days < 0:
            raise ConfigError(f"retention days must be >= 0, got {self.retention_days!r}")
        return self


def _finite(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def get_default_store_path() -> Path:
    """
    Resolve the default store directory.

    Priority:
    1. RECALL_STORE_PATH environment variable
    2. ~/.recall
    """
    env_path = os.environ.get("RECALL_STORE_PATH")
    if env_path:
        return Path(env_path).expanduser().resolve()
    return Path.home() / ".recall"


def load_config(store_path: Path) -> StoreConfig:
    """
    Load configuration from a store directory.

    Raises:
        FileNotFoundError: If config doesn't exist
        ConfigError: If config is invalid
    """
    config_path = store_path / CONFIG_FILENAME

    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    try:
        with open(config_path, "rb") as f:
            data = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid config file {config_path}: {e}") from e

    # Validate version
    version = data.get("store", {}).get("version", 1)
    if version > CONFIG_VERSION:
        raise ConfigError(f"Config version {version} is newer than supported ({CONFIG_VERSION})")

    embedding = data.get("embedding", {})
    lexical = data.get("lexical", {})
    fusion = data.get("fusion", {})
    retention = data.get("retention", {})

    config = StoreConfig(
        path=store_path,
        version=version,
        created=data.get("store", {}).get("created", ""),
        embedding_dimension=embedding.get("dimension", DEFAULT_EMBEDDING_DIMENSION),
        k1=lexical.get("k1", DEFAULT_K1),
        b=lexical.get("b", DEFAULT_B),
        alpha=fusion.get("alpha", DEFAULT_ALPHA),
        default_top_k=fusion.get("default_top_k", DEFAULT_TOP_K),
        candidate_multiplier=fusion.get("candidate_multiplier", DEFAULT_CANDIDATE_MULTIPLIER),
        retention_days=retention.get("days", 0),
    )
    return config.validate()


def save_config(config: StoreConfig) -> None:
    """
    Save configuration to the store directory.

    Creates the directory if it doesn't exist.
    """
    config.validate()
    config.path.mkdir(parents=True, exist_ok=True)

    data = {
        "store": {
            "version": config.version,
            "created": config.created,
        },
        "embedding": {"dimension": config.embedding_dimension},
        "lexical": {"k1": config.k1, "b": config.b},
        "fusion": {
            "alpha": config.alpha,
            "default_top_k": config.default_top_k,
            "candidate_multiplier": config.candidate_multiplier,
        },
        "retention": {"days": config.retention_days},
    }

    with open(config.config_path, "wb") as f:
        tomli_w.dump(data, f)


def load_or_create_config(store_path: Optional[Path] = None) -> StoreConfig:
    """
    Load existing config or create a new one with defaults.

    This is the main entry point for config management.
    """
    if store_path is None:
        store_path = get_default_store_path()
    store_path = Path(store_path)

    if (store_path / CONFIG_FILENAME).exists():
        return load_config(store_path)
    config = StoreConfig(path=store_path)
    save_config(config)
    return config
