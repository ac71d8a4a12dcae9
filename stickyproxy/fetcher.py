"""Fetch-and-verify of manifest resources into a cache generation."""

import logging
import posixpath
from typing import TYPE_CHECKING
from urllib.parse import urlsplit, urlunsplit

import requests

from .integrity import verify
from .models import CachedResponse, Candidate

if TYPE_CHECKING:
    from .cache import CacheGeneration

logger = logging.getLogger(__name__)

# Headers describing the transfer rather than the content. Dropped before a
# response is stored so identical bytes always compare equal.
_TRANSPORT_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "transfer-encoding",
        "upgrade",
        "date",
        "age",
        "content-length",
        "content-encoding",
        "set-cookie",
    }
)

# Sent on every fetch so intermediate HTTP caches are bypassed
_RELOAD_HEADERS = {
    "Cache-Control": "no-cache",
    "Pragma": "no-cache",
    "Accept-Encoding": "identity",
}


class UpstreamUnavailable(Exception):
    """Raised when a resource cannot be retrieved from the network.

    Attributes:
        url: URL that was requested.
        response: The cleaned non-success response, or None on network failure.
    """

    def __init__(self, url: str, message: str, response: CachedResponse | None = None) -> None:
        self.url = url
        self.response = response
        super().__init__(f"Failed to fetch {url}: {message}")


def clean_response(response: requests.Response) -> CachedResponse:
    """Copy a requests response, dropping redirect flags and transport headers."""
    headers = {
        name: value
        for name, value in response.headers.items()
        if name.lower() not in _TRANSPORT_HEADERS
    }
    return CachedResponse(
        status=response.status_code,
        reason=response.reason or "",
        headers=headers,
        body=response.content,
    )


def fallback_url(url: str) -> str | None:
    """Return the single rewrite tried after a failed fetch, or None.

    "/docs/index.html" becomes "/docs", and "/about.html" becomes "/about".
    """
    parts = urlsplit(url)
    path = parts.path

    if path.endswith("/index.html"):
        rewritten = posixpath.dirname(path) or "/"
    elif path.endswith(".html"):
        rewritten = path[: -len(".html")]
    else:
        return None

    return urlunsplit(parts._replace(path=rewritten))


class VerifiedFetcher:
    """Serves candidates from a generation, fetching and verifying on miss.

    Nothing that failed verification is ever written to a generation.

    Example:
        fetcher = VerifiedFetcher(session, digest_scheme="content-hash")
        response = fetcher.get(candidate, generation)
    """

    def __init__(
        self,
        session: requests.Session,
        digest_scheme: str = "content-hash",
        timeout: int = 30,
        user_agent: str = "StickyProxy/0.1",
    ) -> None:
        self._session = session
        self._digest_scheme = digest_scheme
        self._timeout = timeout
        self._user_agent = user_agent

    def _fetch(self, url: str) -> CachedResponse:
        headers = dict(_RELOAD_HEADERS)
        headers["User-Agent"] = self._user_agent
        try:
            response = self._session.get(url, headers=headers, timeout=self._timeout, allow_redirects=True)
        except requests.RequestException as e:
            raise UpstreamUnavailable(url, str(e))
        return clean_response(response)

    def get(self, candidate: Candidate, generation: "CacheGeneration", reload: bool = False) -> CachedResponse:
        """Return a verified response for candidate.

        Args:
            candidate: Resource and expected digest.
            generation: Cache generation to read from and write to.
            reload: Skip the cache lookup and go to the network.

        Returns:
            The verified response.

        Raises:
            IntegrityMismatch: If the fetched content does not match the digest.
            UpstreamUnavailable: If the network fails or no successful response
                was obtained after the single fallback rewrite.
        """
        if not reload:
            cached = generation.match(candidate.key)
            if cached is not None:
                logger.debug("Cache hit for %s in %s", candidate.path, generation.name)
                return cached

        response = self._fetch(candidate.url)

        if not response.ok:
            retry_url = fallback_url(candidate.url)
            if retry_url is None:
                raise UpstreamUnavailable(candidate.url, f"HTTP {response.status}", response)

            logger.debug("HTTP %d for %s, retrying as %s", response.status, candidate.url, retry_url)
            try:
                retried = self._fetch(retry_url)
            except UpstreamUnavailable as e:
                logger.debug("Rewrite %s failed: %s", retry_url, e)
                retried = None
            if retried is None or not retried.ok:
                # Surface the original failure, not the rewrite's
                raise UpstreamUnavailable(candidate.url, f"HTTP {response.status}", response)
            response = retried

        verify(response.body, candidate.digest, self._digest_scheme, url=candidate.url)

        generation.put(candidate.key, response)
        logger.debug("Cached %s in %s", candidate.path, generation.name)
        return response
