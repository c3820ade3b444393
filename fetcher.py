#!/usr/bin/env python3
"""
Feed content fetcher.

Resolves a user- or source-supplied URL to raw feed bytes. The fetch walks a
short cascade of fallbacks:

1. Known vendor URLs (Medium profiles and publications) are rewritten to
   their canonical feed URL.
2. The URL is requested with an Accept header preferring feed MIME types.
3. A successful non-HTML body is the feed.
4. An HTML body is checked for bot-challenge interstitials (terminal), then
   scanned for <link type="application/rss+xml|atom+xml"> in <head>, which is
   followed.
5. If the first request failed outright, the same HTML handling is tried
   against a second request that asks for text/html.

The fetcher never raises for upstream problems: it returns a FetchSuccess or a
FetchFailure carrying a reason code.
"""

import re
from asyncio import TimeoutError
from dataclasses import dataclass
from typing import Optional, Union
from urllib.parse import urljoin

from aiohttp import ClientError, ClientSession, ClientTimeout, TooManyRedirects
from bs4 import BeautifulSoup

from config import config, get_logger
from telemetry import trace_span
from utils import now_ts, parse_date, sha256_hex

# Module-specific logger
logger = get_logger("fetcher")

RSS_ACCEPT_MIMES = ", ".join([
    "application/rss+xml",
    "application/rdf+xml;q=0.8",
    "application/atom+xml;q=0.6",
    "application/xml;q=0.4",
    "text/xml;q=0.4",
])
HTML_ACCEPT = "text/html"
FEED_LINK_TYPES = ("application/rss+xml", "application/atom+xml")

HTML_SNIFF_BYTES = 2000
BOT_SNIFF_BYTES = 5000

# Fetch failure reasons
REASON_BOT_PROTECTION = "blocked-by-bot-protection"
REASON_NO_FEED_LINK = "no-rss-link-found"
REASON_NETWORK = "network-error"
REASON_TOO_MANY_HOPS = "too-many-redirects"

# Rewritten URLs all live under medium.com/feed/, which none of the patterns match
KNOWN_FEED_URL_RULES = [
    (re.compile(r"^https?://medium\.com/@([^/?#]+)"), "https://medium.com/feed/@{0}"),
    (re.compile(r"^https?://([^./]+)\.medium\.com"), "https://medium.com/feed/@{0}"),
    (re.compile(r"^https?://medium\.com/(?!feed/)([^@/?#][^/?#]*)"), "https://medium.com/feed/{0}"),
]


@dataclass(frozen=True)
class FetchSuccess:
    content: bytes
    timestamp: int
    request_url: str
    content_hash: str

    ok = True


@dataclass(frozen=True)
class FetchFailure:
    reason: str
    url: str = ""

    ok = False


FetchResult = Union[FetchSuccess, FetchFailure]


def upstream_error(status: int) -> str:
    return f"upstream-error-{status}"


def resolve_known_feed_url(url: str) -> Optional[str]:
    """Return the canonical feed URL for known hosting platforms, or None."""
    for pattern, template in KNOWN_FEED_URL_RULES:
        match = pattern.match(url)
        if match:
            return template.format(match.group(1))
    return None


def _sniff(content: bytes, size: int) -> str:
    return content[:size].decode("utf-8", errors="replace").lower()


def looks_like_html(content: bytes) -> bool:
    return "<!doctype html" in _sniff(content, HTML_SNIFF_BYTES)


def is_bot_challenge_page(content: Union[bytes, str]) -> bool:
    """Detect Cloudflare-style interstitial verification pages."""
    if isinstance(content, str):
        head = content[:BOT_SNIFF_BYTES].lower()
    else:
        head = _sniff(content, BOT_SNIFF_BYTES)
    return (
        "_cf_chl_opt" in head
        or "challenge-platform" in head
        or ("just a moment" in head and "cf-" in head)
    )


def extract_feed_link(html: Union[bytes, str], base_url: Optional[str] = None) -> Optional[str]:
    """Return the first feed <link> advertised in the document <head>."""
    soup = BeautifulSoup(html, "html.parser")
    head = soup.head
    if head is None:
        return None
    for link in head.find_all("link"):
        link_type = (link.get("type") or "").strip().lower()
        href = (link.get("href") or "").strip()
        if link_type in FEED_LINK_TYPES and href:
            return urljoin(base_url, href) if base_url else href
    return None


class FeedFetcher:
    """Fetch feed bytes over HTTP, following the fallback cascade described above."""

    def __init__(self, user_agent: Optional[str] = None, timeout: Optional[int] = None,
                 max_hops: Optional[int] = None) -> None:
        self.user_agent = user_agent or config.USER_AGENT
        self.timeout = ClientTimeout(total=timeout or config.HTTP_TIMEOUT)
        self.max_hops = max_hops if max_hops is not None else config.MAX_FEED_LINK_HOPS

    def _request_kwargs(self, accept: str) -> dict:
        return {
            "headers": {"Accept": accept, "User-Agent": self.user_agent},
            "timeout": self.timeout,
            "max_redirects": config.MAX_REDIRECTS,
        }

    def _response_timestamp(self, response) -> int:
        date_header = response.headers.get("Date") if response.headers else None
        return parse_date(date_header) or now_ts()

    @trace_span(
        "fetch_feed",
        tracer_name="fetcher",
        attr_from_args=lambda self, url, session: {"feed.url": url},
    )
    async def fetch(self, url: str, session: ClientSession) -> FetchResult:
        """Fetch feed content for a URL."""
        result = await self._fetch(url, session, hops=0)
        if result.ok:
            logger.info(f"Fetched feed {result.request_url} ({len(result.content)} bytes)")
        else:
            logger.info(f"Fetch failed for {url}: {result.reason}")
        return result

    async def _fetch(self, url: str, session: ClientSession, hops: int) -> FetchResult:
        known_url = resolve_known_feed_url(url)
        if known_url:
            logger.debug(f"Resolved known feed URL: {url} -> {known_url}")
            url = known_url

        try:
            async with session.get(url, **self._request_kwargs(RSS_ACCEPT_MIMES)) as response:
                status = response.status
                first_ok = 200 <= status < 300
                if first_ok:
                    content = await response.read()
                    if not looks_like_html(content):
                        return FetchSuccess(
                            content=content,
                            timestamp=self._response_timestamp(response),
                            request_url=url,
                            content_hash=sha256_hex(content),
                        )
                    logger.debug(f"Content appears to be HTML, not a feed (url: {url})")
                    outcome = await self._follow_html(url, content, session, hops)
                    if outcome is not None:
                        return outcome
                else:
                    logger.debug(f"Non-ok response from upstream: {status} (url: {url})")
        except TooManyRedirects:
            return FetchFailure(REASON_TOO_MANY_HOPS, url)
        except (ClientError, TimeoutError) as e:
            logger.warning(f"Network error fetching {url}: {e.__class__.__name__} {e}")
            return FetchFailure(REASON_NETWORK, url)

        try:
            async with session.get(url, **self._request_kwargs(HTML_ACCEPT)) as response:
                if 200 <= response.status < 300:
                    html = await response.read()
                    outcome = await self._follow_html(url, html, session, hops)
                    if outcome is not None:
                        return outcome
        except (ClientError, TimeoutError) as e:
            logger.debug(f"HTML fallback request failed for {url}: {e}")

        return FetchFailure(REASON_NO_FEED_LINK if first_ok else upstream_error(status), url)

    async def _follow_html(self, url: str, html: bytes, session: ClientSession, hops: int) -> Optional[FetchResult]:
        """Handle an HTML body: bot challenge is terminal, a feed link is followed."""
        if is_bot_challenge_page(html):
            logger.info(f"Detected bot challenge page (url: {url})")
            return FetchFailure(REASON_BOT_PROTECTION, url)

        feed_url = extract_feed_link(html, base_url=url)
        if not feed_url or feed_url == url:
            return None
        if hops >= self.max_hops:
            logger.warning(f"Feed link chain too long at {url}")
            return FetchFailure(REASON_TOO_MANY_HOPS, url)
        logger.debug(f"Found feed link in HTML: {feed_url}")
        return await self._fetch(feed_url, session, hops + 1)

    @trace_span(
        "fetch_raw",
        tracer_name="fetcher",
        attr_from_args=lambda self, url, session: {"feed.url": url},
    )
    async def fetch_raw(self, url: str, session: ClientSession) -> FetchResult:
        """Plain GET with no fallbacks, used for archive snapshots."""
        try:
            async with session.get(url, **self._request_kwargs(RSS_ACCEPT_MIMES)) as response:
                if not 200 <= response.status < 300:
                    return FetchFailure(upstream_error(response.status), url)
                content = await response.read()
                return FetchSuccess(
                    content=content,
                    timestamp=self._response_timestamp(response),
                    request_url=url,
                    content_hash=sha256_hex(content),
                )
        except (ClientError, TimeoutError) as e:
            logger.warning(f"Network error fetching {url}: {e.__class__.__name__} {e}")
            return FetchFailure(REASON_NETWORK, url)
