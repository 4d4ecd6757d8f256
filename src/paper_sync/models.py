"""Data model for the paper library and its external source links."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Any

DEFAULT_PRIORITY = 50

# Fields that remote metadata may refresh on a Paper
MERGEABLE_FIELDS = (
    "doi",
    "arxiv_id",
    "bibcode",
    "title",
    "authors",
    "year",
    "journal",
    "abstract",
    "keywords",
    "citation_count",
)


@dataclass
class Paper:
    """A scholarly work in the local library."""

    id: int | None = None
    title: str = ""
    authors: list[str] = field(default_factory=list)
    year: int | None = None
    journal: str | None = None
    abstract: str | None = None
    keywords: list[str] = field(default_factory=list)
    doi: str | None = None
    arxiv_id: str | None = None
    bibcode: str | None = None
    citation_count: int | None = None
    citation_text: str | None = None
    text_path: str | None = None
    created_at: str | None = None
    modified_at: str | None = None

    def metadata(self) -> dict[str, Any]:
        """The mergeable fields of this paper."""
        return {name: getattr(self, name) for name in MERGEABLE_FIELDS}

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Paper:
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class SourceCapabilities:
    """What an external source can provide for a paper."""

    references: bool = False
    citations: bool = False
    pdf_download: bool = False
    bibtex: bool = False
    priority: int | None = None


@dataclass
class PaperSource:
    """Link between a local Paper and its record in an external source."""

    paper_id: int
    source: str
    source_id: str
    metadata: dict[str, Any] = field(default_factory=dict)
    has_references: bool = False
    has_citations: bool = False
    has_pdf: bool = False
    has_bibtex: bool = False
    priority: int = DEFAULT_PRIORITY
    last_synced: str | None = None
    is_primary: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class EdgeKind(str, Enum):
    """Direction of a cached citation-graph edge."""

    REFERENCES = "references"
    CITATIONS = "citations"


@dataclass
class CitationEdge:
    """One cached reference or citation of a paper.

    ``source_record_id`` is the external source's own identifier for the
    referenced work (an INSPIRE record id, for instance).
    """

    title: str = ""
    authors: list[str] = field(default_factory=list)
    year: int | None = None
    journal: str | None = None
    doi: str | None = None
    arxiv_id: str | None = None
    bibcode: str | None = None
    source_record_id: str | None = None
    citation_count: int | None = None
    source_plugin: str | None = None
    cached_at: str | None = None
    linked_paper_id: int | None = None

    @property
    def in_library(self) -> bool:
        return self.linked_paper_id is not None

    def has_identifier(self) -> bool:
        return bool(self.doi or self.arxiv_id or self.bibcode)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CitationEdge:
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class CachedEdges:
    """Result of reading one direction of a paper's cached graph."""

    edges: list[CitationEdge] = field(default_factory=list)
    source_plugin: str | None = None
    cached_at: str | None = None
    is_stale: bool = True


@dataclass
class RemoteRecord:
    """Canonical shape of a record fetched from any remote source."""

    source: str
    source_id: str | None
    title: str = ""
    authors: list[str] = field(default_factory=list)
    year: int | None = None
    journal: str | None = None
    abstract: str | None = None
    keywords: list[str] = field(default_factory=list)
    doi: str | None = None
    arxiv_id: str | None = None
    bibcode: str | None = None
    citation_count: int | None = None

    def to_paper_fields(self) -> dict[str, Any]:
        return {name: getattr(self, name) for name in MERGEABLE_FIELDS}


@dataclass
class SearchHints:
    """Loose metadata used when no identifier is available."""

    title: str | None = None
    first_author: str | None = None
    year: int | None = None
    journal: str | None = None

    def usable(self) -> bool:
        return bool(self.title or (self.first_author and self.year))


@dataclass
class DedupResult:
    paper: Paper | None
    is_new: bool


# ------------- Sync results -------------


@dataclass
class SyncError:
    paper_id: int | None
    title: str
    message: str


@dataclass
class DuplicateNotice:
    """A remote record already owned by another local paper."""

    paper_id: int | None
    title: str
    bibcode: str
    existing_paper_id: int | None
    existing_title: str


@dataclass
class SyncOutcome:
    """Counters and details of one synchronization run."""

    total: int = 0
    updated: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[SyncError] = field(default_factory=list)
    duplicates: list[DuplicateNotice] = field(default_factory=list)
    cancelled: bool = False

    @property
    def processed(self) -> int:
        return self.updated + self.failed + self.skipped


@dataclass
class ProgressEvent:
    current: int
    total: int
    label: str = ""
    done: bool = False


@dataclass
class SyncReport:
    """What a call to ``LibrarySynchronizer.sync`` returns."""

    success: bool
    error: str | None = None
    outcome: SyncOutcome | None = None

    @classmethod
    def busy(cls) -> SyncReport:
        return cls(success=False, error="Sync already in progress")

    @classmethod
    def setup_failure(cls, message: str) -> SyncReport:
        return cls(success=False, error=message)
