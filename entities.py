#!/usr/bin/env python3
"""
Entity types for feeds, their sources, raw feed files and feed items.

Entities are immutable snapshots. How a write behaves when the key already
exists is not a property of the entity: every store call receives an
UpsertPolicy naming the conflict mode and the columns that must survive
re-ingestion.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, FrozenSet, Literal, Mapping, Optional, Tuple

from utils import as_bool, as_optional_int, as_string_list, join_string_list

FeedType = Literal["podcast", "blog"]
ConflictMode = Literal["update", "ignore"]


@dataclass(frozen=True, slots=True)
class UpsertPolicy:
    """Conflict behaviour for one persistence call.

    on_conflict="ignore" keeps the stored row untouched. on_conflict="update"
    overwrites every column except the key and exclude_fields.
    """

    on_conflict: ConflictMode = "ignore"
    exclude_fields: FrozenSet[str] = frozenset()

    def update_columns(self, columns, key: str) -> Tuple[str, ...]:
        if self.on_conflict != "update":
            return ()
        return tuple(c for c in columns if c != key and c not in self.exclude_fields)


FEED_POLICY = UpsertPolicy("update", frozenset({"guid", "input_url", "alias", "active", "categories"}))
FEED_SOURCE_POLICY = UpsertPolicy("update", frozenset({"feed_url"}))
FEED_FILE_POLICY = UpsertPolicy("ignore")
FEED_ITEM_POLICY = UpsertPolicy(
    "update", frozenset({"guid", "feed_guid", "finished", "progress", "bookmarked"})
)
# Archive-sourced writes only fill gaps and never overwrite live data
DEFERRED = UpsertPolicy("ignore")


def _row_to_dict(row: Any) -> Dict[str, Any]:
    if isinstance(row, Mapping):
        return dict(row)
    return {key: row[key] for key in row.keys()}


@dataclass(frozen=True, slots=True)
class Feed:
    guid: str
    input_url: str
    source_url: str
    title: str
    type: FeedType = "blog"
    alias: str = ""
    description: str = ""
    author: str = ""
    ongoing: Optional[bool] = True
    active: bool = True
    image_src: Optional[str] = None
    image_alt: Optional[str] = None
    last_updated: int = 0
    update_frequency: int = 1
    link: str = ""
    categories: Tuple[str, ...] = ()

    table = "feeds"
    key = "guid"

    def to_row(self) -> Dict[str, Any]:
        row = asdict(self)
        row["categories"] = join_string_list(self.categories)
        row["active"] = int(self.active)
        row["ongoing"] = None if self.ongoing is None else int(self.ongoing)
        return row

    @classmethod
    def from_row(cls, row: Any) -> "Feed":
        data = _row_to_dict(row)
        return cls(
            guid=data["guid"],
            input_url=data.get("input_url") or "",
            source_url=data.get("source_url") or "",
            title=data.get("title") or "",
            type="podcast" if data.get("type") == "podcast" else "blog",
            alias=data.get("alias") or "",
            description=data.get("description") or "",
            author=data.get("author") or "",
            ongoing=None if data.get("ongoing") is None else as_bool(data["ongoing"]),
            active=as_bool(data.get("active", True)),
            image_src=data.get("image_src"),
            image_alt=data.get("image_alt"),
            last_updated=int(data.get("last_updated") or 0),
            update_frequency=int(data.get("update_frequency") or 1),
            link=data.get("link") or "",
            categories=tuple(as_string_list(data.get("categories"))),
        )


@dataclass(frozen=True, slots=True)
class FeedSource:
    feed_url: str
    feed_guid: str
    actively_updating: bool = True
    archive: bool = False
    primary_source: bool = False
    last_fetched: int = 0
    last_updated: int = 0

    table = "feed_sources"
    key = "feed_url"

    @property
    def pollable(self) -> bool:
        """Live sources that are still updating are the only ones refreshed."""
        return self.actively_updating and not self.archive

    def to_row(self) -> Dict[str, Any]:
        row = asdict(self)
        for flag in ("actively_updating", "archive", "primary_source"):
            row[flag] = int(row[flag])
        return row

    @classmethod
    def from_row(cls, row: Any) -> "FeedSource":
        data = _row_to_dict(row)
        return cls(
            feed_url=data["feed_url"],
            feed_guid=data["feed_guid"],
            actively_updating=as_bool(data.get("actively_updating", True)),
            archive=as_bool(data.get("archive", False)),
            primary_source=as_bool(data.get("primary_source", False)),
            last_fetched=int(data.get("last_fetched") or 0),
            last_updated=int(data.get("last_updated") or 0),
        )


@dataclass(frozen=True, slots=True)
class FeedFile:
    """One immutable, content-addressed capture of raw feed bytes."""

    sha256_hash: str
    feed_url: str
    feed_guid: str
    fetched_at: int
    cached_file: str

    table = "feed_files"
    key = "sha256_hash"

    def to_row(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_row(cls, row: Any) -> "FeedFile":
        data = _row_to_dict(row)
        return cls(
            sha256_hash=data["sha256_hash"],
            feed_url=data["feed_url"],
            feed_guid=data["feed_guid"],
            fetched_at=int(data.get("fetched_at") or 0),
            cached_file=data["cached_file"],
        )


@dataclass(frozen=True, slots=True)
class FeedItem:
    guid: str
    feed_guid: str
    title: str = ""
    season: Optional[int] = None
    episode: Optional[int] = None
    description: Optional[str] = None
    link: str = ""
    date: Optional[int] = None
    enclosure_url: Optional[str] = None
    enclosure_length: Optional[int] = None
    enclosure_type: Optional[str] = None
    duration: int = 0
    duration_unit: str = "seconds"
    encoded_content: str = ""
    keywords: Tuple[str, ...] = field(default_factory=tuple)
    finished: bool = False
    progress: float = 0.0
    bookmarked: bool = False

    table = "feed_items"
    key = "guid"

    def to_row(self) -> Dict[str, Any]:
        row = asdict(self)
        row["keywords"] = join_string_list(self.keywords)
        row["finished"] = int(self.finished)
        row["bookmarked"] = int(self.bookmarked)
        return row

    @classmethod
    def from_row(cls, row: Any) -> "FeedItem":
        data = _row_to_dict(row)
        return cls(
            guid=data["guid"],
            feed_guid=data["feed_guid"],
            title=data.get("title") or "",
            season=as_optional_int(data.get("season")),
            episode=as_optional_int(data.get("episode")),
            description=data.get("description"),
            link=data.get("link") or "",
            date=as_optional_int(data.get("date")),
            enclosure_url=data.get("enclosure_url"),
            enclosure_length=as_optional_int(data.get("enclosure_length")),
            enclosure_type=data.get("enclosure_type"),
            duration=int(data.get("duration") or 0),
            duration_unit=data.get("duration_unit") or "seconds",
            encoded_content=data.get("encoded_content") or "",
            keywords=tuple(as_string_list(data.get("keywords"))),
            finished=as_bool(data.get("finished", False)),
            progress=float(data.get("progress") or 0.0),
            bookmarked=as_bool(data.get("bookmarked", False)),
        )
