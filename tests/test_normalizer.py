from datetime import datetime, timezone

import pytest

from errors import MalformedFeedError
from normalizer import build_tree, classify_channel, coalesce, parse_duration, parse_feed, resolve

from feed_fixtures import ATOM_FEED, BLOG_RSS, PODCAST_RSS, RDF_FEED


def ts(*args):
    return int(datetime(*args, tzinfo=timezone.utc).timestamp())


def test_podcast_channel_fields():
    feed = parse_feed(PODCAST_RSS)
    channel = feed.channel

    assert channel.guid == "podcast-guid-1"
    assert channel.type == "podcast"
    assert channel.title == "Test Podcast"
    assert channel.author == "Jane Host"
    assert channel.source_url == "https://podcast.example.com/"
    assert channel.image_src == "https://podcast.example.com/cover.png"
    assert channel.image_alt == "Cover art"
    assert channel.last_updated == ts(2023, 6, 5, 10)


def test_podcast_item_fields():
    items = {item.guid: item for item in parse_feed(PODCAST_RSS).items}
    episode = items["ep-2"]

    assert episode.title == "Episode Two"
    assert episode.season == 1
    assert episode.episode == 2
    assert episode.enclosure_url == "https://podcast.example.com/ep2.mp3"
    assert episode.enclosure_length == 1234
    assert episode.enclosure_type == "audio/mpeg"
    assert episode.duration == 5025
    assert episode.keywords == ("tech", "testing", "python")
    assert episode.encoded_content == "<p>Show notes</p>"
    assert episode.date == ts(2023, 6, 5, 10)


def test_zero_episode_number_is_kept():
    items = {item.guid: item for item in parse_feed(PODCAST_RSS).items}

    assert items["ep-0"].episode == 0
    assert items["ep-0"].duration == 2730
    assert items["ep-0"].season is None


def test_blog_channel_falls_back_to_title_for_guid():
    feed = parse_feed(BLOG_RSS)

    assert feed.channel.type == "blog"
    assert feed.channel.guid == "Example Blog"
    assert feed.channel.link == "https://blog.example.com/"


def test_single_item_channel_yields_one_item_list():
    feed = parse_feed(BLOG_RSS)

    assert len(feed.items) == 1
    assert feed.items[0].guid == "https://blog.example.com/only-post"
    assert feed.items[0].description == "Hello"


def test_atom_feed():
    feed = parse_feed(ATOM_FEED)

    assert feed.channel.guid == "urn:uuid:atom-feed"
    assert feed.channel.source_url == "https://atom.example.com/"
    assert feed.channel.description == "Entries in Atom"
    assert feed.channel.author == "Ada Writer"
    assert [item.guid for item in feed.items] == ["urn:entry:1", "urn:entry:2"]
    assert feed.items[0].link == "https://atom.example.com/1"
    assert feed.items[0].description == "Summary one"
    assert feed.items[1].date == ts(2023, 6, 2)


def test_rdf_feed():
    feed = parse_feed(RDF_FEED)

    assert feed.channel.guid == "RDF Blog"
    assert feed.channel.type == "blog"
    assert len(feed.items) == 1
    assert feed.items[0].guid == "RDF One"
    assert feed.items[0].date == ts(2023, 5, 1, 12)


def test_guid_text_is_preferred_over_attributes():
    tree = build_tree(b'<item><guid isPermaLink="false">abc</guid></item>')

    assert resolve(tree, "guid") == "abc"
    assert resolve(tree, "guid.@isPermaLink") == "false"


def test_coalesce_skips_empty_values():
    tree = build_tree(b"<item><guid></guid><id>  </id><title>Fallback</title></item>")

    assert coalesce(tree, ("guid", "id", "title")) == "Fallback"
    assert coalesce(tree, ("missing", "also.missing")) is None


def test_paths_explore_every_repeated_element():
    tree = build_tree(b"<channel><image/><image><url>https://x.example/a.png</url></image></channel>")

    assert resolve(tree, "image.url") == "https://x.example/a.png"


def test_items_without_identity_are_skipped():
    content = b"""<rss><channel><title>T</title>
        <item><description>no guid, id or title</description></item>
        <item><title>Kept</title></item>
    </channel></rss>"""

    feed = parse_feed(content)

    assert [item.guid for item in feed.items] == ["Kept"]


def test_custom_namespace_prefixes_are_canonicalized():
    content = b"""<rss xmlns:it="http://www.itunes.com/dtds/podcast-1.0.dtd"><channel>
        <title>Renamed prefix</title><it:author>Someone</it:author>
    </channel></rss>"""

    feed = parse_feed(content)

    assert feed.channel.type == "podcast"
    assert feed.channel.author == "Someone"


def test_classification():
    assert classify_channel(build_tree(b"<channel><title>x</title></channel>")) == "blog"
    podcast = build_tree(
        b'<channel xmlns:podcast="https://podcastindex.org/namespace/1.0"><podcast:locked>yes</podcast:locked></channel>'
    )
    assert classify_channel(podcast) == "podcast"


@pytest.mark.parametrize("raw,expected", [
    ("1:23:45", 5025),
    ("45:30", 2730),
    ("3600", 3600),
    ("123.0", 123),
    (None, 0),
    ("", 0),
    ("soon", 0),
    ("1:2:3:4", 0),
    ("1:xx", 0),
])
def test_duration_parsing(raw, expected):
    assert parse_duration(raw) == expected


@pytest.mark.parametrize("content", [
    b"",
    b"this is not xml",
    b"<rss><channel><title>unterminated",
    b"<html><body>hello</body></html>",
    b"<rss version='2.0'></rss>",
])
def test_malformed_documents(content):
    with pytest.raises(MalformedFeedError):
        parse_feed(content)


def test_channel_without_identity_is_malformed():
    with pytest.raises(MalformedFeedError):
        parse_feed(b"<rss><channel><description>anonymous</description></channel></rss>")
