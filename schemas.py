#!/usr/bin/env python3
"""
Data shapes passed between pipeline stages.

Rows coming out of SQLite are turned into these dataclasses by ``DatabaseQueue``
so the rest of the pipeline never handles ``sqlite3.Row`` objects directly.
"""

from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional


class SourceKind(str, Enum):
    RSS = "rss"
    ATOM = "atom"
    YOUTUBE = "youtube"


class ItemKind(str, Enum):
    RSS = "rss"
    YOUTUBE = "youtube"


class InteractionField(str, Enum):
    IS_READ = "is_read"
    IS_FAVORITE = "is_favorite"
    IS_READ_LATER = "is_read_later"


class SyncStage(str, Enum):
    PENDING = "pending"
    FETCHING = "fetching"
    PARSING = "parsing"
    UPSERTING = "upserting"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class SyncStatus(str, Enum):
    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class Feed:
    id: int
    owner_id: str
    url: str
    source_kind: SourceKind
    title: str = ""
    description: str = ""
    icon_url: Optional[str] = None
    category: Optional[str] = None
    channel_id: Optional[str] = None
    is_active: bool = True
    last_fetched_at: Optional[int] = None
    last_updated_at: Optional[int] = None
    deleted_at: Optional[int] = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Feed":
        return cls(
            id=row["id"],
            owner_id=row["owner_id"],
            url=row["url"],
            source_kind=SourceKind(row["source_kind"]),
            title=row["title"] or "",
            description=row["description"] or "",
            icon_url=row["icon_url"],
            category=row["category"],
            channel_id=row["channel_id"],
            is_active=bool(row["is_active"]),
            last_fetched_at=row["last_fetched_at"],
            last_updated_at=row["last_updated_at"],
            deleted_at=row["deleted_at"],
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["source_kind"] = self.source_kind.value
        return data


@dataclass
class Item:
    id: int
    feed_id: int
    external_id: str
    title: str
    description: str
    link: str
    thumbnail_url: Optional[str]
    author: Optional[str]
    published_at: int
    created_at: int

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Item":
        return cls(**{name: row[name] for name in cls.__dataclass_fields__})


@dataclass
class InteractionState:
    user_id: str
    item_id: int
    item_kind: ItemKind
    is_read: bool = False
    is_favorite: bool = False
    is_read_later: bool = False
    updated_at: Optional[int] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "InteractionState":
        return cls(
            user_id=row["user_id"],
            item_id=row["item_id"],
            item_kind=ItemKind(row["item_kind"]),
            is_read=bool(row["is_read"]),
            is_favorite=bool(row["is_favorite"]),
            is_read_later=bool(row["is_read_later"]),
            updated_at=row["updated_at"],
        )


@dataclass
class RawContent:
    """Body and response metadata handed from the fetcher to a parser."""
    url: str
    final_url: str
    status: int
    content_type: str
    body: bytes

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")


@dataclass
class ParsedItem:
    title: str = ""
    description: str = ""
    link: str = ""
    published_at: Optional[int] = None
    author: Optional[str] = None
    thumbnail: Optional[str] = None
    guid: str = ""


@dataclass
class ParsedFeed:
    feed_title: str = ""
    feed_description: str = ""
    feed_link: str = ""
    feed_icon: Optional[str] = None
    items: List[ParsedItem] = field(default_factory=list)


@dataclass
class UpsertResult:
    added: int = 0
    skipped: int = 0


@dataclass
class SyncResult:
    feed_id: int
    status: SyncStatus
    stage: SyncStage
    items_added: int = 0
    items_skipped: int = 0
    error: Optional[Dict[str, Any]] = None
    duration: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "feed_id": self.feed_id,
            "status": self.status.value,
            "stage": self.stage.value,
            "items_added": self.items_added,
            "items_skipped": self.items_skipped,
            "error": self.error,
            "duration": round(self.duration, 3),
        }


@dataclass
class SyncReport:
    results: List[SyncResult] = field(default_factory=list)
    duration: float = 0.0

    def _count(self, status: SyncStatus) -> int:
        return sum(1 for r in self.results if r.status is status)

    @property
    def succeeded(self) -> int:
        return self._count(SyncStatus.SUCCESS)

    @property
    def failed(self) -> int:
        return self._count(SyncStatus.FAILED)

    @property
    def skipped(self) -> int:
        return self._count(SyncStatus.SKIPPED)

    @property
    def items_added(self) -> int:
        return sum(r.items_added for r in self.results)

    @property
    def items_skipped(self) -> int:
        return sum(r.items_skipped for r in self.results)

    def result_for(self, feed_id: int) -> Optional[SyncResult]:
        for result in self.results:
            if result.feed_id == feed_id:
                return result
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": len(self.results),
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "items_added": self.items_added,
            "items_skipped": self.items_skipped,
            "duration": round(self.duration, 3),
            "results": [r.to_dict() for r in self.results],
        }
