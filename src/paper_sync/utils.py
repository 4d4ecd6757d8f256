"""Shared utilities for paper_sync.

Includes text normalization, author parsing, title similarity scoring,
and the async HTTP infrastructure (rate limiting, caching, retry) used by
the remote source adapters.
"""

from __future__ import annotations

import asyncio
import json
import os
import re
import tempfile
import threading
import time
import unicodedata
from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any

import httpx

# ------------- Text Normalization -------------


def strip_diacritics(text: str) -> str:
    """Remove diacritics from text (e.g., 'café' -> 'cafe')."""
    nfkd = unicodedata.normalize("NFKD", text)
    return "".join([c for c in nfkd if not unicodedata.combining(c)])


_LATEX_CMD_RE = re.compile(r"\\[a-zA-Z]+(\s*\[[^\]]*\])?(\s*\{[^}]*\})?")
_LATEX_MATH_RE = re.compile(r"\$[^$]*\$")
_BRACES_RE = re.compile(r"[{}]")


def latex_to_plain(text: str) -> str:
    """Remove LaTeX commands, math, and braces from text."""
    if not text:
        return ""
    t = _LATEX_MATH_RE.sub(" ", text)
    t = _LATEX_CMD_RE.sub(" ", t)
    t = _BRACES_RE.sub("", t)
    t = re.sub(r"\s+", " ", t)
    return t.strip()


def normalize_title_for_match(title: str) -> str:
    """Normalize a title for fuzzy matching.

    Removes LaTeX, diacritics, punctuation, and extra whitespace.
    Converts to lowercase.
    """
    t = latex_to_plain(title)
    t = strip_diacritics(t).lower()
    t = re.sub(r"[^a-z0-9\s]", " ", t)
    t = re.sub(r"\s+", " ", t).strip()
    return t


# ------------- Author Handling -------------


def split_authors(author_field: str) -> list[str]:
    """Split an author string into individual names.

    Accepts BibTeX style 'A and B and C' as well as 'A; B; C'.
    """
    if not author_field:
        return []
    parts = re.split(r"\s+\band\b\s+|;", author_field, flags=re.IGNORECASE)
    return [p.strip() for p in parts if p.strip()]


def surname_from_person(name: str) -> str:
    """Extract the family name from a person name, keeping its original case.

    Handles both 'Family, Given' and 'Given Family' formats.
    """
    name = latex_to_plain(name or "")
    if "," in name:
        return name.split(",", 1)[0].strip()
    toks = name.split()
    return toks[-1].strip() if toks else ""


def first_author_surname(authors: list[str] | str | None) -> str:
    """Get the first author's surname from an author list or author string."""
    if not authors:
        return ""
    if isinstance(authors, str):
        authors = split_authors(authors)
        if not authors:
            return ""
    return surname_from_person(authors[0])


# ------------- Matching Utilities -------------

TITLE_STOPWORDS = frozenset(
    {
        "the",
        "and",
        "for",
        "with",
        "from",
        "that",
        "this",
        "have",
        "been",
        "were",
        "their",
        "which",
        "through",
        "about",
        "into",
        "using",
        "based",
    }
)


def jaccard_similarity(a: Iterable[str], b: Iterable[str]) -> float:
    """Compute Jaccard similarity between two iterables of strings."""
    sa, sb = set(a), set(b)
    if not sa and not sb:
        return 0.0
    inter = len(sa & sb)
    union = len(sa | sb)
    return inter / union if union else 0.0


def title_words(title: str) -> set[str]:
    """Significant words of a title: longer than two characters, no stopwords."""
    words = re.sub(r"[^\w\s]", " ", (title or "").lower()).split()
    return {w for w in words if len(w) > 2 and w not in TITLE_STOPWORDS}


def title_similarity(title1: str | None, title2: str | None) -> float:
    """Word-set Jaccard similarity of two titles in [0, 1]."""
    if not title1 or not title2:
        return 0.0
    w1, w2 = title_words(title1), title_words(title2)
    if not w1 or not w2:
        return 0.0
    return jaccard_similarity(w1, w2)


# ------------- Time -------------


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(dt: datetime) -> str:
    """Serialize a datetime as ISO-8601, assuming UTC for naive values."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()


def parse_timestamp(value: str | datetime | None) -> datetime | None:
    """Parse an ISO-8601 timestamp; returns None for missing or malformed input."""
    if value is None:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        text = str(value).strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


# ------------- Atomic Files -------------


def atomic_write_text(path: str, text: str, suffix: str = ".tmp") -> None:
    """Write ``text`` to ``path`` through a temp file in the same directory and os.replace."""
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)
    tmp = tempfile.NamedTemporaryFile("w", delete=False, encoding="utf-8", suffix=suffix, prefix=".tmp_", dir=directory)
    try:
        tmp.write(text)
        tmp.flush()
        os.fsync(tmp.fileno())
    finally:
        tmp.close()
    os.replace(tmp.name, path)


def atomic_write_json(path: str, data: Any) -> None:
    atomic_write_text(path, json.dumps(data, indent=2, sort_keys=True), suffix=".json")


class DiskCache:
    """Thread-safe on-disk JSON cache for API responses."""

    def __init__(self, path: str | None) -> None:
        self.path = path
        self.lock = threading.Lock()
        self.data: dict[str, Any] = {}
        if path and os.path.exists(path):
            try:
                with open(path, encoding="utf-8") as f:
                    self.data = json.load(f)
            except (OSError, ValueError):
                self.data = {}

    def get(self, key: str) -> Any | None:
        """Get a cached value by key."""
        if not self.path:
            return None
        with self.lock:
            return self.data.get(key)

    def set(self, key: str, value: Any) -> None:
        """Set a cached value."""
        if not self.path:
            return
        with self.lock:
            self.data[key] = value
            atomic_write_json(self.path, self.data)


# ------------- Async Rate Limiting -------------


class AsyncRateLimiter:
    """Async-compatible rate limiter using a sliding one-minute window."""

    def __init__(self, req_per_min: int) -> None:
        self.req_per_min = max(req_per_min, 1)
        self.lock = asyncio.Lock()
        self.timestamps: list[float] = []

    async def wait(self) -> None:
        """Sleep until a request can be made within the rate limit."""
        async with self.lock:
            now = time.time()
            window = 60.0
            self.timestamps = [t for t in self.timestamps if now - t < window]

            if len(self.timestamps) >= self.req_per_min:
                earliest = min(self.timestamps)
                sleep_for = window - (now - earliest) + 0.01
                if sleep_for > 0:
                    await asyncio.sleep(sleep_for)
                    now = time.time()
                    self.timestamps = [t for t in self.timestamps if now - t < window]

            self.timestamps.append(now)


class AsyncRateLimiterRegistry:
    """Manages per-service async rate limiters."""

    DEFAULT_LIMITS = {
        "ads": 300,  # ADS: 5000/day per token, bursts are tolerated
        "inspire": 60,
        "arxiv": 30,
    }

    def __init__(self, limits: dict[str, int] | None = None) -> None:
        """Initialize the registry with optional custom limits.

        Args:
            limits: Optional dict of service name to requests per minute.
                   Overrides DEFAULT_LIMITS for specified services.
        """
        self._limits = {**self.DEFAULT_LIMITS, **(limits or {})}
        self._limiters: dict[str, AsyncRateLimiter] = {}

    def get(self, service: str) -> AsyncRateLimiter:
        """Get or create the async rate limiter for a service."""
        if service not in self._limiters:
            limit = self._limits.get(service, 30)
            self._limiters[service] = AsyncRateLimiter(limit)
        return self._limiters[service]

    async def wait(self, service: str) -> None:
        await self.get(service).wait()


# ------------- Async HTTP Client -------------


class AsyncHttpClient:
    """Async HTTP client with rate limiting, caching, and retry logic.

    This client provides async HTTP requests with:
    - Per-service rate limiting via AsyncRateLimiterRegistry
    - Response caching via DiskCache (GET only)
    - Automatic retry with exponential backoff for transient failures
    """

    RETRYABLE_STATUS = {429, 500, 502, 503, 504}
    MAX_ATTEMPTS = 6

    def __init__(
        self,
        rate_limiters: AsyncRateLimiterRegistry,
        cache: DiskCache | None = None,
        timeout: float = 20.0,
        user_agent: str = "paper-sync/0.1 (async)",
        transport: httpx.AsyncBaseTransport | None = None,
        backoff_start: float = 1.0,
    ) -> None:
        """Initialize the async HTTP client.

        Args:
            rate_limiters: AsyncRateLimiterRegistry for per-service rate limiting
            cache: Optional DiskCache for caching responses
            timeout: Request timeout in seconds
            user_agent: User-Agent header value
            transport: Optional httpx transport (used by tests to mock the network)
            backoff_start: Initial retry delay in seconds
        """
        self.rate_limiters = rate_limiters
        self.cache = cache
        self.timeout = timeout
        self.user_agent = user_agent
        self.transport = transport
        self.backoff_start = backoff_start
        self._client: httpx.AsyncClient | None = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Get or create the async HTTP client instance."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                headers={"User-Agent": self.user_agent},
                follow_redirects=True,
                transport=self.transport,
            )
        return self._client

    def _cached_response(self, data: Any) -> httpx.Response:
        return httpx.Response(
            200,
            content=json.dumps(data).encode("utf-8"),
            headers={"Content-Type": "application/json", "X-From-Cache": "1"},
        )

    async def request(
        self,
        method: str,
        url: str,
        service: str = "default",
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | list[Any] | None = None,
        headers: dict[str, str] | None = None,
        accept: str = "application/json",
        use_cache: bool = True,
    ) -> httpx.Response:
        """Make an async HTTP request with rate limiting and retry.

        GET responses go through the DiskCache unless ``use_cache`` is False.

        Returns:
            httpx.Response object (non-retryable error statuses are returned as-is)

        Raises:
            RuntimeError: If the request fails after all retry attempts
        """
        cache_key = None
        if method == "GET" and self.cache and use_cache:
            cache_key = json.dumps({"m": method, "u": url, "p": params, "a": accept}, sort_keys=True)
            cached = self.cache.get(cache_key)
            if cached is not None:
                return self._cached_response(cached)

        request_headers = {**(headers or {}), "Accept": accept}
        if json_body is not None:
            request_headers["Content-Type"] = "application/json"

        backoff = self.backoff_start

        for attempt in range(self.MAX_ATTEMPTS):
            await self.rate_limiters.wait(service)
            try:
                resp = await self.client.request(
                    method,
                    url,
                    params=params,
                    json=json_body,
                    headers=request_headers,
                )
                if resp.status_code in self.RETRYABLE_STATUS:
                    raise httpx.HTTPStatusError(
                        f"Status {resp.status_code}",
                        request=resp.request,
                        response=resp,
                    )

                if (
                    cache_key
                    and resp.status_code == 200
                    and "application/json" in resp.headers.get("content-type", "")
                ):
                    try:
                        self.cache.set(cache_key, resp.json())
                    except (OSError, ValueError):
                        pass

                return resp
            except httpx.HTTPError:
                if attempt < self.MAX_ATTEMPTS - 1:
                    await asyncio.sleep(backoff)
                    backoff = min(backoff * 2, 16.0)

        raise RuntimeError(f"Network failure after retries for {url}")

    async def get(
        self,
        url: str,
        service: str = "default",
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        accept: str = "application/json",
        use_cache: bool = True,
    ) -> httpx.Response:
        return await self.request(
            "GET", url, service=service, params=params, headers=headers, accept=accept, use_cache=use_cache
        )

    async def post(
        self,
        url: str,
        service: str = "default",
        json_body: dict[str, Any] | list[Any] | None = None,
        headers: dict[str, str] | None = None,
        accept: str = "application/json",
    ) -> httpx.Response:
        return await self.request(
            "POST", url, service=service, json_body=json_body, headers=headers, accept=accept
        )

    async def close(self) -> None:
        """Close the underlying httpx client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> AsyncHttpClient:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()
