"""Shared fixtures for paper_sync tests."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any

import pytest

from paper_sync import (
    CitationEdge,
    CitationGraphCache,
    LibraryStore,
    Paper,
    RemoteLookupClient,
    RemoteLookupError,
    RemoteRecord,
    SearchHints,
    SourceCapabilities,
    SourceRegistry,
    SyncConfig,
)


def bibtex_for(bibcode: str, title: str = "Remote Title") -> str:
    return (
        f"@ARTICLE{{{bibcode},\n"
        f"  title = {{{title}}},\n"
        f"  year = {{2020}},\n"
        f"  adsurl = {{https://ui.adsabs.harvard.edu/abs/{bibcode}}},\n"
        "}\n\n"
    )


class FakeRemoteClient(RemoteLookupClient):
    """Scripted remote source that records every call.

    ``fail`` names methods that raise RemoteLookupError. ``gate`` (an
    asyncio.Event) makes get_by_bibcodes wait until it is set.
    """

    name = "ads"
    capabilities = SourceCapabilities(references=True, citations=True, pdf_download=True, bibtex=True)

    def __init__(
        self,
        records: list[RemoteRecord] | None = None,
        by_doi: dict[str, RemoteRecord] | None = None,
        by_arxiv: dict[str, RemoteRecord] | None = None,
        search: dict[str, RemoteRecord] | None = None,
        references: dict[str, list[CitationEdge]] | None = None,
        citations: dict[str, list[CitationEdge]] | None = None,
        fail: set[str] | None = None,
        credentials: bool = True,
    ) -> None:
        self.records = {r.bibcode: r for r in records or []}
        self.by_doi = by_doi or {}
        self.by_arxiv = by_arxiv or {}
        self.search = search or {}
        self.references = references or {}
        self.citations = citations or {}
        self.fail = set(fail or ())
        self.credentials = credentials
        self.calls: list[tuple[str, Any]] = []
        self.gate: asyncio.Event | None = None
        self.in_flight = 0
        self.max_in_flight = 0

    @property
    def has_credentials(self) -> bool:
        return self.credentials

    async def _enter(self, method: str, arg: Any) -> None:
        self.calls.append((method, arg))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
        finally:
            self.in_flight -= 1
        if method in self.fail:
            raise RemoteLookupError(f"{method} unavailable")

    def count(self, method: str) -> int:
        return sum(1 for name, _ in self.calls if name == method)

    async def get_by_bibcodes(self, bibcodes: list[str]) -> list[RemoteRecord]:
        if self.gate is not None:
            await self.gate.wait()
        await self._enter("get_by_bibcodes", list(bibcodes))
        return [self.records[b] for b in bibcodes if b in self.records]

    async def get_by_bibcode(self, bibcode: str) -> RemoteRecord | None:
        await self._enter("get_by_bibcode", bibcode)
        return self.records.get(bibcode)

    async def get_by_doi(self, doi: str) -> RemoteRecord | None:
        await self._enter("get_by_doi", doi)
        return self.by_doi.get(doi)

    async def get_by_arxiv(self, arxiv_id: str) -> RemoteRecord | None:
        await self._enter("get_by_arxiv", arxiv_id)
        return self.by_arxiv.get(arxiv_id)

    async def smart_search(self, hints: SearchHints) -> RemoteRecord | None:
        await self._enter("smart_search", hints)
        return self.search.get(hints.title or "")

    async def export_citations(self, bibcodes: list[str]) -> str:
        await self._enter("export_citations", list(bibcodes))
        return "".join(bibtex_for(b) for b in bibcodes)

    async def get_references(self, source_id: str) -> list[CitationEdge]:
        await self._enter("get_references", source_id)
        return list(self.references.get(source_id, []))

    async def get_citations(self, source_id: str) -> list[CitationEdge]:
        await self._enter("get_citations", source_id)
        return list(self.citations.get(source_id, []))


class Clock:
    """Settable clock for freshness tests."""

    def __init__(self, now: datetime | None = None) -> None:
        self.now = now or datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def store(clock):
    """An in-memory library."""
    return LibraryStore(now=clock)


@pytest.fixture
def graph_cache(store, clock):
    return CitationGraphCache(store, now=clock)


@pytest.fixture
def config():
    return SyncConfig(ads_token="test-token", window_delay=0.0, refresh_graphs=False)


@pytest.fixture
def registry(store, config, graph_cache, clock):
    return SourceRegistry(store, config, graph_cache=graph_cache, now=clock)


@pytest.fixture
def make_paper(store):
    """Factory fixture that adds a paper to the store."""

    def _make_paper(**kwargs) -> Paper:
        data = {
            "title": "Example Title",
            "authors": ["Doe, Jane", "Smith, John"],
            "year": 2020,
        }
        data.update(kwargs)
        return store.add_paper(Paper(**data))

    return _make_paper


@pytest.fixture
def make_record():
    """Factory fixture for remote records."""

    def _make_record(bibcode: str, **kwargs) -> RemoteRecord:
        data = {
            "source": "ads",
            "source_id": bibcode,
            "bibcode": bibcode,
            "title": "Remote Title",
            "authors": ["Doe, J."],
            "year": 2020,
            "journal": "ApJ",
        }
        data.update(kwargs)
        return RemoteRecord(**data)

    return _make_record
