"""
Data types for hybrid memory.
"""

import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from .errors import QueryError


# Metadata key recording that an item corrects an earlier one
SUPERSEDES_KEY = "supersedes"

MAX_METADATA_KEYS = 32
MAX_METADATA_KEY_LENGTH = 128
MAX_METADATA_VALUE_LENGTH = 4096

# Metadata keys must be simple: alphanumeric, underscore, hyphen
_METADATA_KEY_RE = re.compile(r'^[a-zA-Z_][a-zA-Z0-9_-]*$')


class SourceKind(str, Enum):
    """Which upstream producer an item came from."""
    CONVERSATION = "conversation"
    JOURNAL = "journal"
    TODO = "todo"
    ACTIVITY = "activity"
    DECISION = "decision"
    NOTE = "note"

    @classmethod
    def parse(cls, value: "SourceKind | str") -> "SourceKind":
        """Accept an enum member or its string value (case-insensitive)."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            allowed = ", ".join(k.value for k in cls)
            raise QueryError(f"Unknown source kind {value!r} (expected one of: {allowed})") from None


class MatchedBy(str, Enum):
    """Which ranking signal(s) surfaced a result."""
    LEXICAL = "lexical"
    SEMANTIC = "semantic"
    BOTH = "both"


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_utc(dt: datetime) -> datetime:
    """Aware UTC datetime. Naive values are taken to be UTC already."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_timestamp(dt: datetime) -> str:
    """Canonical stored form: UTC ISO 8601 with microseconds, no suffix.

    Fixed width so that string order matches time order in SQL.
    """
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.%f")


def parse_timestamp(ts: str) -> datetime:
    """Parse a stored timestamp string to a timezone-aware UTC datetime.

    Handles the canonical format as well as 'Z' or '+00:00' suffixes.
    """
    ts = ts.replace("Z", "+00:00")
    dt = datetime.fromisoformat(ts)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def new_item_id() -> str:
    """Generate a fresh, stable item id."""
    return uuid.uuid4().hex


def validate_text(text: str) -> str:
    """Reject empty or whitespace-only item text."""
    if not isinstance(text, str) or not text.strip():
        raise QueryError("Item text must be a non-empty string")
    return text


def validate_metadata(metadata: Optional[dict[str, str]]) -> dict[str, str]:
    """Check metadata is a bounded str -> str map and return a copy."""
    if not metadata:
        return {}
    if len(metadata) > MAX_METADATA_KEYS:
        raise QueryError(f"Metadata may have at most {MAX_METADATA_KEYS} keys, got {len(metadata)}")
    result = {}
    for key, value in metadata.items():
        if not isinstance(key, str) or not key or len(key) > MAX_METADATA_KEY_LENGTH:
            raise QueryError(f"Metadata key must be 1-{MAX_METADATA_KEY_LENGTH} characters: {key!r}")
        if not _METADATA_KEY_RE.match(key):
            raise QueryError(
                f"Metadata key contains invalid characters (allowed: a-z, 0-9, _, -): {key!r}"
            )
        if not isinstance(value, str):
            raise QueryError(f"Metadata value for {key!r} must be a string, got {type(value).__name__}")
        if len(value) > MAX_METADATA_VALUE_LENGTH:
            raise QueryError(
                f"Metadata value for {key!r} exceeds {MAX_METADATA_VALUE_LENGTH} characters"
            )
        result[key] = value
    return result


@dataclass(frozen=True)
class MemoryItem:
    """
    A single remembered fragment.

    Items are append-only. A correction is a new item whose metadata
    names the superseded id under ``supersedes``.
    """
    id: str
    text: str
    source_kind: SourceKind
    created_at: datetime
    embedding: Optional[tuple[float, ...]] = None
    metadata: dict[str, str] = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        text: str,
        source_kind: "SourceKind | str",
        metadata: Optional[dict[str, str]] = None,
        embedding: Optional[list[float]] = None,
        *,
        created_at: Optional[datetime] = None,
    ) -> "MemoryItem":
        """Validate inputs and build a new item with a fresh id."""
        return cls(
            id=new_item_id(),
            text=validate_text(text),
            source_kind=SourceKind.parse(source_kind),
            created_at=to_utc(created_at) if created_at is not None else utc_now(),
            embedding=tuple(float(x) for x in embedding) if embedding is not None else None,
            metadata=validate_metadata(metadata),
        )

    @property
    def supersedes(self) -> Optional[str]:
        """Id of the item this one corrects, if any."""
        return self.metadata.get(SUPERSEDES_KEY)

    def to_dict(self) -> dict:
        """JSON-friendly representation (embedding omitted)."""
        return {
            "id": self.id,
            "text": self.text,
            "source_kind": self.source_kind.value,
            "created_at": self.created_at.isoformat(),
            "metadata": dict(self.metadata),
            "has_embedding": self.embedding is not None,
        }


@dataclass
class QueryResult:
    """One ranked hit from a search."""
    item_id: str
    score: float
    matched_by: MatchedBy
    lexical_score: Optional[float] = None
    semantic_score: Optional[float] = None
    item: Optional[MemoryItem] = None
    highlighted: Optional[str] = None

    def to_dict(self) -> dict:
        d = {
            "id": self.item_id,
            "score": round(self.score, 6),
            "matched_by": self.matched_by.value,
        }
        if self.lexical_score is not None:
            d["lexical_score"] = round(self.lexical_score, 6)
        if self.semantic_score is not None:
            d["semantic_score"] = round(self.semantic_score, 6)
        if self.item is not None:
            d["text"] = self.item.text
            d["source_kind"] = self.item.source_kind.value
            d["created_at"] = self.item.created_at.isoformat()
        if self.highlighted is not None:
            d["highlighted"] = self.highlighted
        return d


@dataclass
class MemoryStoreStats:
    """Point-in-time statistics for a memory store."""
    total_items: int
    embedded_items: int
    indexed_terms: int
    average_search_ms: float
    storage_size_bytes: int
    last_ingested_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "total_items": self.total_items,
            "embedded_items": self.embedded_items,
            "indexed_terms": self.indexed_terms,
            "average_search_ms": round(self.average_search_ms, 3),
            "storage_size_bytes": self.storage_size_bytes,
            "last_ingested_at": self.last_ingested_at.isoformat() if self.last_ingested_at else None,
        }
