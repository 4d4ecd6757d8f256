"""Interface for remote bibliographic sources."""

from __future__ import annotations

from abc import ABC, abstractmethod

from paper_sync.models import CitationEdge, RemoteRecord, SearchHints, SourceCapabilities


class RemoteLookupError(RuntimeError):
    """A remote source answered with an error or could not be reached."""


class RemoteLookupClient(ABC):
    """A remote source that can identify papers and export citations.

    Every call may raise; callers are expected to catch and record the
    failure. ``None`` or an empty list means the source has nothing.
    """

    name: str = "remote"
    capabilities: SourceCapabilities = SourceCapabilities()

    @property
    def has_credentials(self) -> bool:
        return True

    @abstractmethod
    async def get_by_bibcodes(self, bibcodes: list[str]) -> list[RemoteRecord]:
        """Fetch many records in as few calls as possible."""

    @abstractmethod
    async def get_by_bibcode(self, bibcode: str) -> RemoteRecord | None: ...

    @abstractmethod
    async def get_by_doi(self, doi: str) -> RemoteRecord | None: ...

    @abstractmethod
    async def get_by_arxiv(self, arxiv_id: str) -> RemoteRecord | None: ...

    @abstractmethod
    async def smart_search(self, hints: SearchHints) -> RemoteRecord | None:
        """Best match for loose metadata, or None."""

    @abstractmethod
    async def export_citations(self, bibcodes: list[str]) -> str:
        """Citation text (BibTeX) for the given records, concatenated."""

    async def get_references(self, source_id: str) -> list[CitationEdge]:
        return []

    async def get_citations(self, source_id: str) -> list[CitationEdge]:
        return []

    async def close(self) -> None:
        return None
