#!/usr/bin/env python3
"""
Feed normalizer: raw RSS 2.0 / RSS 1.0 (RDF) / Atom bytes to a canonical
channel plus item list.

The document is parsed with ElementTree into a small typed tree of Node
objects whose element names keep their namespace prefix (``itunes:duration``,
``podcast:guid``). Each logical field then has an ordered list of candidate
paths; the first path that yields a non-empty value wins.

Path syntax: segments separated by dots, each naming a child element, with an
optional final ``@attr`` segment naming an attribute. When a segment matches
several elements, every match is explored in document order.
"""

from __future__ import annotations

import io
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union
from xml.etree import ElementTree

from config import get_logger
from errors import MalformedFeedError
from telemetry import trace_span
from utils import as_optional_int, now_ts, parse_date

# Module-specific logger
logger = get_logger("normalizer")

# Canonical prefixes for namespaces feeds commonly use, whatever prefix the document picked
KNOWN_NAMESPACES = {
    "http://www.itunes.com/dtds/podcast-1.0.dtd": "itunes",
    "http://www.itunes.com/DTDs/Podcast-1.0.dtd": "itunes",
    "https://podcastindex.org/namespace/1.0": "podcast",
    "https://github.com/Podcastindex-org/podcast-namespace/blob/main/docs/1.0.md": "podcast",
    "http://purl.org/rss/1.0/modules/content/": "content",
    "http://www.w3.org/2005/Atom": "atom",
    "http://purl.org/dc/elements/1.1/": "dc",
    "http://www.w3.org/1999/02/22-rdf-syntax-ns#": "rdf",
    "http://search.yahoo.com/mrss/": "media",
    "http://www.w3.org/XML/1998/namespace": "xml",
}

PODCAST_KEYS = (
    "itunes:summary", "itunes:type", "itunes:author",
    "podcast:guid", "podcast:locked", "podcast:person", "podcast:podping",
)

CHANNEL_PATHS = {
    "guid": ("guid", "podcast:guid", "id", "title"),
    "source_url": ("link", "atom:link.@href", "itunes:new-feed-url", "link.@href"),
    "title": ("title", "image.title"),
    "description": ("description", "itunes:summary", "subtitle"),
    "author": ("author", "itunes:author", "itunes:owner.itunes:name", "author.name"),
    "image_src": ("image.url", "itunes:image.@href", "logo", "icon"),
    "image_alt": ("image.title",),
    "last_updated": ("pubDate", "lastBuildDate", "updated", "dc:date"),
    "link": ("link", "image.link", "link.@href"),
}

ITEM_PATHS = {
    "guid": ("guid", "id", "title"),
    "season": ("season", "itunes:season", "podcast:season"),
    "episode": ("episode", "itunes:episode", "podcast:episode"),
    "title": ("title", "itunes:title"),
    "description": ("description", "itunes:summary", "itunes:subtitle", "summary"),
    "link": ("link", "link.@href"),
    "date": ("pubDate", "atom:updated", "published", "updated", "dc:date"),
    "enclosure_url": ("enclosure.@url",),
    "enclosure_length": ("enclosure.@length",),
    "enclosure_type": ("enclosure.@type",),
    "duration": ("itunes:duration",),
    "encoded_content": ("content:encoded", "content"),
    "keywords": ("itunes:keywords",),
}


@dataclass
class Node:
    """One XML element: stripped text, attributes and children grouped by name."""

    name: str
    text: str = ""
    attrs: Dict[str, str] = field(default_factory=dict)
    children: Dict[str, List["Node"]] = field(default_factory=dict)

    def add(self, child: "Node") -> None:
        self.children.setdefault(child.name, []).append(child)

    def child(self, name: str) -> Optional["Node"]:
        matches = self.children.get(name)
        return matches[0] if matches else None

    def has(self, name: str) -> bool:
        return bool(self.children.get(name))


@dataclass(frozen=True)
class ParsedChannel:
    guid: str
    title: str
    type: str
    source_url: str = ""
    description: str = ""
    author: str = ""
    image_src: Optional[str] = None
    image_alt: Optional[str] = None
    last_updated: int = 0
    link: str = ""
    categories: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ParsedItem:
    guid: str
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
    keywords: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ParsedFeed:
    channel: ParsedChannel
    items: List[ParsedItem]


class _NameMapper:
    """Turns ElementTree '{uri}local' names into 'prefix:local' names."""

    def __init__(self, declared: Dict[str, str], bare_uris: Iterable[str]):
        self.declared = declared
        self.bare_uris = set(bare_uris)

    def __call__(self, qualified: str) -> str:
        if not qualified.startswith("{"):
            return qualified
        uri, _, local = qualified[1:].partition("}")
        if uri in self.bare_uris:
            return local
        prefix = KNOWN_NAMESPACES.get(uri) or self.declared.get(uri)
        return f"{prefix}:{local}" if prefix else local


def _to_node(element, mapper: _NameMapper) -> Node:
    node = Node(
        name=mapper(element.tag),
        text=(element.text or "").strip(),
        attrs={mapper(k): v for k, v in element.attrib.items()},
    )
    for child in element:
        node.add(_to_node(child, mapper))
    return node


def build_tree(content: Union[bytes, str]) -> Node:
    """Parse XML bytes into a Node tree, raising MalformedFeedError on bad XML."""
    if isinstance(content, str):
        content = content.encode("utf-8")
    content = content.lstrip()
    if not content:
        raise MalformedFeedError("Empty document")

    declared: Dict[str, str] = {}
    default_uris = set()
    try:
        events = ElementTree.iterparse(io.BytesIO(content), events=("start-ns", "start"))
        root = None
        for event, payload in events:
            if event == "start-ns":
                prefix, uri = payload
                if prefix:
                    declared.setdefault(uri, prefix)
                else:
                    default_uris.add(uri)
            elif root is None:
                root = payload
    except ElementTree.ParseError as e:
        raise MalformedFeedError(f"Document is not well-formed XML: {e}") from e

    if root is None:
        raise MalformedFeedError("Document has no root element")
    if root.tag.startswith("{"):
        default_uris.add(root.tag[1:].partition("}")[0])
    return _to_node(root, _NameMapper(declared, default_uris))


def resolve(node: Node, path: str) -> Optional[str]:
    """Resolve one candidate path; None when every expansion is missing or empty."""
    current = [node]
    for segment in path.split("."):
        if segment.startswith("@"):
            for candidate in current:
                value = (candidate.attrs.get(segment[1:]) or "").strip()
                if value:
                    return value
            return None
        expanded: List[Node] = []
        for candidate in current:
            expanded.extend(candidate.children.get(segment, ()))
        if not expanded:
            return None
        current = expanded
    for candidate in current:
        if candidate.text:
            return candidate.text
    return None


def coalesce(node: Node, paths: Sequence[str]) -> Optional[str]:
    """First non-empty value among the candidate paths."""
    for path in paths:
        value = resolve(node, path)
        if value is not None:
            return value
    return None


def parse_duration(raw: Optional[str]) -> int:
    """Normalize H:MM:SS, MM:SS or a bare number of seconds to whole seconds."""
    if raw is None:
        return 0
    text = str(raw).strip()
    if not text:
        return 0
    if ":" in text:
        parts = text.split(":")
        if len(parts) > 3:
            return 0
        total = 0
        for part in parts:
            part = part.strip()
            if not part.isdigit():
                return 0
            total = total * 60 + int(part)
        return total
    try:
        seconds = int(float(text))
    except ValueError:
        return 0
    return max(seconds, 0)


def clean_list(raw: Optional[str]) -> Tuple[str, ...]:
    if not raw:
        return ()
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def classify_channel(channel: Node) -> str:
    return "podcast" if any(channel.has(key) for key in PODCAST_KEYS) else "blog"


def _locate_channel(root: Node) -> Tuple[Node, List[Node]]:
    if root.name == "rss":
        channel = root.child("channel")
        if channel is None:
            raise MalformedFeedError("RSS document has no channel element")
        return channel, channel.children.get("item", [])
    if root.name == "RDF":
        channel = root.child("channel")
        if channel is None:
            raise MalformedFeedError("RDF document has no channel element")
        return channel, root.children.get("item", []) + channel.children.get("item", [])
    if root.name == "feed":
        return root, root.children.get("entry", [])
    if root.name == "channel":
        return root, root.children.get("item", [])
    raise MalformedFeedError(f"Unrecognized feed root element: {root.name}")


def parse_channel(channel: Node) -> ParsedChannel:
    values = {name: coalesce(channel, paths) for name, paths in CHANNEL_PATHS.items()}
    guid = values["guid"]
    if not guid:
        raise MalformedFeedError("Feed channel has no guid, id or title")
    return ParsedChannel(
        guid=guid,
        title=values["title"] or "",
        type=classify_channel(channel),
        source_url=values["source_url"] or "",
        description=values["description"] or "",
        author=values["author"] or "",
        image_src=values["image_src"],
        image_alt=values["image_alt"],
        last_updated=parse_date(values["last_updated"]) or now_ts(),
        link=values["link"] or "",
    )


def parse_item(item: Node) -> Optional[ParsedItem]:
    values = {name: coalesce(item, paths) for name, paths in ITEM_PATHS.items()}
    if not values["guid"]:
        return None
    return ParsedItem(
        guid=values["guid"],
        title=values["title"] or "",
        season=as_optional_int(values["season"]),
        episode=as_optional_int(values["episode"]),
        description=values["description"],
        link=values["link"] or "",
        date=parse_date(values["date"]),
        enclosure_url=values["enclosure_url"],
        enclosure_length=as_optional_int(values["enclosure_length"]),
        enclosure_type=values["enclosure_type"],
        duration=parse_duration(values["duration"]),
        encoded_content=values["encoded_content"] or "",
        keywords=clean_list(values["keywords"]),
    )


@trace_span("normalizer.parse_feed", tracer_name="normalizer")
def parse_feed(content: Union[bytes, str]) -> ParsedFeed:
    """Parse raw feed content into a channel and its items.

    Raises:
        MalformedFeedError: the content is not XML or has no channel structure.
    """
    root = build_tree(content)
    channel_node, item_nodes = _locate_channel(root)
    channel = parse_channel(channel_node)

    items: List[ParsedItem] = []
    skipped = 0
    for item_node in item_nodes:
        item = parse_item(item_node)
        if item is None:
            skipped += 1
            continue
        items.append(item)
    if skipped:
        logger.warning(f"Skipped {skipped} item(s) without guid, id or title in feed {channel.guid}")
    return ParsedFeed(channel=channel, items=items)
