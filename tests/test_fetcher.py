"""Tests for the verified fetcher."""

import base64
import hashlib
import sqlite3

import pytest
import requests
from requests.structures import CaseInsensitiveDict

from stickyproxy.cache import CacheGeneration, CacheStorage
from stickyproxy.fetcher import UpstreamUnavailable, VerifiedFetcher, clean_response, fallback_url
from stickyproxy.integrity import IntegrityMismatch
from stickyproxy.models import CachedResponse, Candidate

ORIGIN = "https://app.example.com"
PAGE = b"<h1>about</h1>"


def _candidate(path: str, body: bytes = PAGE) -> Candidate:
    return Candidate(path=path, url=f"{ORIGIN}{path}", digest=hashlib.sha256(body).hexdigest())


@pytest.fixture
def generation(db_conn: sqlite3.Connection) -> CacheGeneration:
    return CacheStorage(db_conn).open("#test")


@pytest.fixture
def fetcher(session) -> VerifiedFetcher:
    return VerifiedFetcher(session, digest_scheme="content-hash", timeout=5, user_agent="Test/1.0")


class TestFallbackUrl:
    """Tests for fallback_url."""

    @pytest.mark.parametrize(
        ("url", "expected"),
        [
            (f"{ORIGIN}/docs/index.html", f"{ORIGIN}/docs"),
            (f"{ORIGIN}/index.html", f"{ORIGIN}/"),
            (f"{ORIGIN}/about.html", f"{ORIGIN}/about"),
            (f"{ORIGIN}/about.html?x=1", f"{ORIGIN}/about?x=1"),
            (f"{ORIGIN}/app.js", None),
        ],
    )
    def test_rewrite(self, url: str, expected: str | None) -> None:
        """Only HTML paths have a single rewrite."""
        assert fallback_url(url) == expected


class TestCleanResponse:
    """Tests for clean_response."""

    def test_strips_transport_headers(self) -> None:
        """Hop-by-hop and transfer headers are dropped; content headers stay."""
        response = requests.Response()
        response.status_code = 200
        response.reason = "OK"
        response._content = b"body"
        response.headers = CaseInsensitiveDict(
            {
                "Content-Type": "text/html",
                "Content-Length": "4",
                "Date": "Mon, 01 Jan 2024 00:00:00 GMT",
                "Transfer-Encoding": "chunked",
                "ETag": '"abc"',
            }
        )

        cleaned = clean_response(response)

        assert cleaned == CachedResponse(200, "OK", {"Content-Type": "text/html", "ETag": '"abc"'}, b"body")


class TestVerifiedFetcher:
    """Tests for VerifiedFetcher.get."""

    def test_cache_hit_skips_network(self, fetcher, session, generation) -> None:
        """A stored entry is returned without any request."""
        candidate = _candidate("/about.html")
        stored = CachedResponse(200, "OK", {"Content-Type": "text/html"}, PAGE)
        generation.put(candidate.key, stored)

        assert fetcher.get(candidate, generation) == stored
        session.get.assert_not_called()

    def test_miss_fetches_verifies_and_stores(self, fetcher, session, routes, generation) -> None:
        """A miss is fetched once and stored; the second call is served from the generation."""
        candidate = _candidate("/about.html")
        routes[candidate.url] = (200, PAGE, {"Content-Type": "text/html", "Date": "now"})

        first = fetcher.get(candidate, generation)
        second = fetcher.get(candidate, generation)

        assert first.body == PAGE
        assert first.headers == {"Content-Type": "text/html"}
        assert second == first
        assert session.get.call_count == 1
        assert generation.keys() == [candidate.url]

    def test_sends_reload_headers(self, fetcher, session, routes, generation) -> None:
        """Fetches bypass HTTP caches and identify the client."""
        candidate = _candidate("/about.html")
        routes[candidate.url] = (200, PAGE, {})

        fetcher.get(candidate, generation)

        _, kwargs = session.get.call_args
        assert kwargs["headers"]["Cache-Control"] == "no-cache"
        assert kwargs["headers"]["User-Agent"] == "Test/1.0"
        assert kwargs["timeout"] == 5

    def test_mismatch_is_never_stored(self, fetcher, routes, generation) -> None:
        """Tampered content raises and leaves the generation empty."""
        candidate = _candidate("/about.html")
        routes[candidate.url] = (200, b"<h1>tampered</h1>", {})

        with pytest.raises(IntegrityMismatch) as exc_info:
            fetcher.get(candidate, generation)

        assert exc_info.value.expected == candidate.digest
        assert exc_info.value.received == hashlib.sha256(b"<h1>tampered</h1>").hexdigest()
        assert generation.count() == 0

    def test_reload_bypasses_cache(self, fetcher, session, routes, generation) -> None:
        """reload=True refetches and replaces the stored entry."""
        candidate = _candidate("/about.html")
        generation.put(candidate.key, CachedResponse(200, "OK", {"X-Old": "1"}, PAGE))
        routes[candidate.url] = (200, PAGE, {"X-New": "1"})

        response = fetcher.get(candidate, generation, reload=True)

        assert response.headers == {"X-New": "1"}
        assert generation.match(candidate.key).headers == {"X-New": "1"}
        session.get.assert_called_once()

    def test_fallback_rewrite(self, fetcher, session, routes, generation) -> None:
        """A failed .html fetch is retried once without the suffix."""
        candidate = _candidate("/about.html")
        routes[f"{ORIGIN}/about"] = (200, PAGE, {})

        response = fetcher.get(candidate, generation)

        assert response.body == PAGE
        assert session.get.call_count == 2
        assert generation.keys() == [candidate.url]

    def test_fallback_rewrite_also_fails(self, fetcher, session, generation) -> None:
        """When both attempts fail, the original status is passed through."""
        candidate = _candidate("/docs/index.html")

        with pytest.raises(UpstreamUnavailable) as exc_info:
            fetcher.get(candidate, generation)

        assert exc_info.value.response.status == 404
        assert exc_info.value.url == candidate.url
        assert session.get.call_count == 2
        assert generation.count() == 0

    def test_fallback_rewrite_network_error(self, fetcher, session, routes, generation) -> None:
        """A transport error on the rewrite still reports the original response."""
        candidate = _candidate("/docs/index.html")
        routes[f"{ORIGIN}/docs"] = requests.ConnectionError("refused")

        with pytest.raises(UpstreamUnavailable) as exc_info:
            fetcher.get(candidate, generation)

        assert exc_info.value.url == candidate.url
        assert exc_info.value.response.status == 404
        assert session.get.call_count == 2
        assert generation.count() == 0

    def test_non_html_has_no_fallback(self, fetcher, session, routes, generation) -> None:
        """Non-HTML failures are not retried."""
        candidate = _candidate("/app.js")
        routes[candidate.url] = (500, b"oops", {})

        with pytest.raises(UpstreamUnavailable) as exc_info:
            fetcher.get(candidate, generation)

        assert exc_info.value.response.status == 500
        session.get.assert_called_once()

    def test_network_error(self, fetcher, routes, generation) -> None:
        """Transport errors become UpstreamUnavailable without a response."""
        candidate = _candidate("/app.js")
        routes[candidate.url] = requests.ConnectionError("refused")

        with pytest.raises(UpstreamUnavailable) as exc_info:
            fetcher.get(candidate, generation)

        assert exc_info.value.response is None
        assert "refused" in str(exc_info.value)

    def test_transport_integrity(self, session, routes, generation) -> None:
        """SRI digests are verified when configured."""
        token = "sha384-" + base64.b64encode(hashlib.sha384(PAGE).digest()).decode()
        candidate = Candidate("/about.html", f"{ORIGIN}/about.html", token)
        routes[candidate.url] = (200, PAGE, {})
        fetcher = VerifiedFetcher(session, digest_scheme="transport-integrity")

        assert fetcher.get(candidate, generation).body == PAGE
