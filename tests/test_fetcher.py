import asyncio

import pytest
from aiohttp import ClientConnectionError

from fetcher import (
    FeedFetcher, RSS_ACCEPT_MIMES, HTML_ACCEPT,
    REASON_BOT_PROTECTION, REASON_NETWORK, REASON_NO_FEED_LINK, REASON_TOO_MANY_HOPS,
    extract_feed_link, is_bot_challenge_page, resolve_known_feed_url,
)
from utils import sha256_hex

from feed_fixtures import (
    BLOG_RSS, BOT_CHALLENGE_HTML, HTML_WITH_FEED_LINK, HTML_WITHOUT_FEED_LINK, PODCAST_RSS,
    FakeResponse, FakeSession, feed_response, html_response,
)


# Known feed URL rewriting

def test_medium_profile_urls_resolve_to_feed():
    assert resolve_known_feed_url("https://medium.com/@netflixtechblog") == "https://medium.com/feed/@netflixtechblog"
    assert resolve_known_feed_url("https://medium.com/@someuser/") == "https://medium.com/feed/@someuser"


def test_medium_subdomains_resolve_to_profile_feed():
    assert resolve_known_feed_url("https://netflixtechblog.medium.com") == "https://medium.com/feed/@netflixtechblog"
    assert resolve_known_feed_url("https://netflixtechblog.medium.com/") == "https://medium.com/feed/@netflixtechblog"


def test_medium_publications_resolve_to_feed():
    assert resolve_known_feed_url("https://medium.com/towards-data-science") == "https://medium.com/feed/towards-data-science"


def test_rewritten_feed_urls_do_not_match_again():
    assert resolve_known_feed_url("https://medium.com/feed/@netflixtechblog") is None
    assert resolve_known_feed_url("https://medium.com/feed/towards-data-science") is None


def test_unknown_hosts_are_not_rewritten():
    assert resolve_known_feed_url("https://example.com/blog") is None
    assert resolve_known_feed_url("https://www.johndcook.com/blog/feed/") is None


def test_http_medium_urls_resolve_to_https_feed():
    assert resolve_known_feed_url("http://medium.com/@user") == "https://medium.com/feed/@user"


# Bot challenge detection

@pytest.mark.parametrize("html", [
    "<html><head><title>Just a moment...</title></head><body><script>window._cf_chl_opt = {};</script></body></html>",
    '<html><head></head><body><script src="/cdn-cgi/challenge-platform/something"></script></body></html>',
    '<html><head><title>Just a moment</title></head><body><div class="cf-browser-verification"></div></body></html>',
])
def test_detects_challenge_pages(html):
    assert is_bot_challenge_page(html)
    assert is_bot_challenge_page(html.encode("utf-8"))


@pytest.mark.parametrize("content", [
    "<html><head><title>My Blog</title></head><body><p>Hello</p></body></html>",
    '<?xml version="1.0"?><rss><channel><title>Feed</title></channel></rss>',
])
def test_ordinary_pages_are_not_challenges(content):
    assert not is_bot_challenge_page(content)


# Feed link discovery

def test_extracts_rss_link_from_head():
    html = """<!DOCTYPE html><html><head>
        <title>My Blog</title>
        <link rel="alternate" type="application/rss+xml" title="RSS" href="https://example.com/feed.xml">
    </head><body></body></html>"""
    assert extract_feed_link(html) == "https://example.com/feed.xml"


def test_extracts_atom_link():
    html = """<!DOCTYPE html><html><head>
        <link rel="alternate" type="application/atom+xml" title="Atom" href="https://example.com/atom.xml">
    </head><body></body></html>"""
    assert extract_feed_link(html) == "https://example.com/atom.xml"


def test_first_of_several_feed_links_wins():
    html = """<!DOCTYPE html><html><head>
        <link rel="alternate" type="application/rss+xml" href="https://example.com/rss1.xml">
        <link rel="alternate" type="application/rss+xml" href="https://example.com/rss2.xml">
    </head><body></body></html>"""
    assert extract_feed_link(html) == "https://example.com/rss1.xml"


def test_stylesheet_links_are_ignored():
    html = """<!DOCTYPE html><html><head>
        <link rel="stylesheet" type="text/css" href="/style.css">
        <link rel="alternate" type="application/rss+xml" href="https://example.com/feed.xml">
    </head><body></body></html>"""
    assert extract_feed_link(html) == "https://example.com/feed.xml"


def test_no_feed_link_found():
    html = """<!DOCTYPE html><html><head>
        <title>No Feed</title>
        <link rel="stylesheet" type="text/css" href="/style.css">
    </head><body></body></html>"""
    assert extract_feed_link(html) is None


def test_missing_head_and_non_html_give_no_link():
    assert extract_feed_link("<!DOCTYPE html><html><body><p>No head</p></body></html>") is None
    assert extract_feed_link('<?xml version="1.0"?><rss><channel></channel></rss>') is None


def test_relative_feed_links_resolve_against_page_url():
    assert extract_feed_link(HTML_WITH_FEED_LINK, base_url="https://blog.example.com/posts/") == \
        "https://blog.example.com/feed.xml"


# Fetch cascade

@pytest.mark.asyncio
async def test_fetch_returns_feed_content_with_hash():
    session = FakeSession({"https://podcast.example.com/rss": feed_response(PODCAST_RSS)})

    result = await FeedFetcher().fetch("https://podcast.example.com/rss", session)

    assert result.ok
    assert result.content == PODCAST_RSS
    assert result.request_url == "https://podcast.example.com/rss"
    assert result.content_hash == sha256_hex(PODCAST_RSS)
    assert result.timestamp > 0
    _, kwargs = session.requests[0]
    assert kwargs["headers"]["Accept"] == RSS_ACCEPT_MIMES
    assert "User-Agent" in kwargs["headers"]


@pytest.mark.asyncio
async def test_fetch_uses_response_date_header():
    response = FakeResponse(body=BLOG_RSS, headers={"Date": "Thu, 01 Jun 2023 08:00:00 GMT"})
    session = FakeSession({"https://blog.example.com/feed.xml": response})

    result = await FeedFetcher().fetch("https://blog.example.com/feed.xml", session)

    assert result.timestamp == 1685606400


@pytest.mark.asyncio
async def test_fetch_follows_feed_link_in_html():
    session = FakeSession({
        "https://blog.example.com/": html_response(HTML_WITH_FEED_LINK),
        "https://blog.example.com/feed.xml": feed_response(BLOG_RSS),
    })

    result = await FeedFetcher().fetch("https://blog.example.com/", session)

    assert result.ok
    assert result.request_url == "https://blog.example.com/feed.xml"
    assert result.content == BLOG_RSS
    assert session.urls() == ["https://blog.example.com/", "https://blog.example.com/feed.xml"]


@pytest.mark.asyncio
async def test_bot_challenge_is_terminal():
    session = FakeSession({"https://protected.example.com/": html_response(BOT_CHALLENGE_HTML)})

    result = await FeedFetcher().fetch("https://protected.example.com/", session)

    assert not result.ok
    assert result.reason == REASON_BOT_PROTECTION
    assert len(session.requests) == 1


@pytest.mark.asyncio
async def test_html_without_feed_link_reports_no_link():
    session = FakeSession({"https://plain.example.com/": html_response(HTML_WITHOUT_FEED_LINK)})

    result = await FeedFetcher().fetch("https://plain.example.com/", session)

    assert not result.ok
    assert result.reason == REASON_NO_FEED_LINK
    # Second attempt asks for HTML explicitly
    assert session.requests[1][1]["headers"]["Accept"] == HTML_ACCEPT


@pytest.mark.asyncio
async def test_failed_feed_request_falls_back_to_html_request():
    def negotiate(kwargs):
        if kwargs["headers"]["Accept"] == HTML_ACCEPT:
            return html_response(HTML_WITH_FEED_LINK)
        return FakeResponse(status=406)

    session = FakeSession({
        "https://picky.example.com/": negotiate,
        "https://picky.example.com/feed.xml": feed_response(BLOG_RSS),
    })

    result = await FeedFetcher().fetch("https://picky.example.com/", session)

    assert result.ok
    assert result.request_url == "https://picky.example.com/feed.xml"


@pytest.mark.asyncio
async def test_upstream_status_is_reported():
    session = FakeSession({"https://gone.example.com/feed": FakeResponse(status=410)})

    result = await FeedFetcher().fetch("https://gone.example.com/feed", session)

    assert not result.ok
    assert result.reason == "upstream-error-410"


@pytest.mark.asyncio
async def test_network_errors_are_returned_not_raised():
    session = FakeSession({"https://down.example.com/feed": ClientConnectionError("refused")})

    result = await FeedFetcher().fetch("https://down.example.com/feed", session)

    assert not result.ok
    assert result.reason == REASON_NETWORK


@pytest.mark.asyncio
async def test_timeouts_are_network_errors():
    session = FakeSession({"https://slow.example.com/feed": asyncio.TimeoutError()})

    result = await FeedFetcher().fetch("https://slow.example.com/feed", session)

    assert result.reason == REASON_NETWORK


@pytest.mark.asyncio
async def test_feed_link_loops_are_bounded():
    looping = b"""<!DOCTYPE html><html><head>
        <link rel="alternate" type="application/rss+xml" href="https://loop.example.com/b">
    </head></html>"""
    looping_back = looping.replace(b"/b", b"/a")
    session = FakeSession({
        "https://loop.example.com/a": html_response(looping),
        "https://loop.example.com/b": html_response(looping_back),
    })

    result = await FeedFetcher(max_hops=3).fetch("https://loop.example.com/a", session)

    assert not result.ok
    assert result.reason == REASON_TOO_MANY_HOPS


@pytest.mark.asyncio
async def test_medium_urls_are_fetched_from_feed_endpoint():
    session = FakeSession({"https://medium.com/feed/@someuser": feed_response(BLOG_RSS)})

    result = await FeedFetcher().fetch("https://medium.com/@someuser", session)

    assert result.ok
    assert session.urls() == ["https://medium.com/feed/@someuser"]


@pytest.mark.asyncio
async def test_fetch_raw_does_not_follow_fallbacks():
    session = FakeSession({"https://archive.example.com/snap": html_response(HTML_WITH_FEED_LINK)})
    fetcher = FeedFetcher()

    result = await fetcher.fetch_raw("https://archive.example.com/snap", session)
    missing = await fetcher.fetch_raw("https://archive.example.com/missing", session)

    assert result.ok
    assert result.content == HTML_WITH_FEED_LINK
    assert missing.reason == "upstream-error-404"
    assert len(session.requests) == 2
