"""paper_sync - identity resolution and synchronization for a paper library.

This package provides tools for:
- Deduplicating papers that arrive from several bibliographic sources
- Caching reference and citation graphs with a freshness window
- Merging fresh remote metadata without losing known data
- Reconciling a whole library against NASA ADS in bounded concurrent batches

Example usage:
    from paper_sync import AdsClient, LibraryStore, LibrarySynchronizer

    store = LibraryStore("library.json")
    syncer = LibrarySynchronizer(store, AdsClient(token))
    report = asyncio.run(syncer.sync())
"""

from paper_sync._version import __version__

# Configuration
from paper_sync.config import SyncConfig, load_config

# Content extraction
from paper_sync.extraction import ContentExtractor, InferredMetadata, MetadataAssist

# Citation graph cache
from paper_sync.graph_cache import CitationGraphCache, is_cache_stale

# Identifiers
from paper_sync.identifiers import (
    CONTENT_STRATEGIES,
    ContentIdentifiers,
    clean_doi,
    extract_arxiv_id,
    extract_identifiers_from_content,
    normalize_arxiv_id,
    normalize_bibcode,
    normalize_doi,
)

# Persistence
from paper_sync.library import LibraryStore

# Metadata merge
from paper_sync.merge import is_meaningful, merge_metadata

# Data model
from paper_sync.models import (
    CachedEdges,
    CitationEdge,
    DedupResult,
    DuplicateNotice,
    EdgeKind,
    Paper,
    PaperSource,
    ProgressEvent,
    RemoteRecord,
    SearchHints,
    SourceCapabilities,
    SyncError,
    SyncOutcome,
    SyncReport,
)

# Source registry
from paper_sync.registry import SourceRegistry, find_best_source_for_cites, find_best_source_for_refs

# Remote sources
from paper_sync.sources import AdsClient, RemoteLookupClient, RemoteLookupError

# Synchronization
from paper_sync.sync import CancellationToken, LibrarySynchronizer, SyncState, partition_papers

__all__ = [
    "__version__",
    # Configuration
    "SyncConfig",
    "load_config",
    # Content extraction
    "ContentExtractor",
    "InferredMetadata",
    "MetadataAssist",
    # Citation graph cache
    "CitationGraphCache",
    "is_cache_stale",
    # Identifiers
    "CONTENT_STRATEGIES",
    "ContentIdentifiers",
    "clean_doi",
    "extract_arxiv_id",
    "extract_identifiers_from_content",
    "normalize_arxiv_id",
    "normalize_bibcode",
    "normalize_doi",
    # Persistence
    "LibraryStore",
    # Metadata merge
    "is_meaningful",
    "merge_metadata",
    # Data model
    "CachedEdges",
    "CitationEdge",
    "DedupResult",
    "DuplicateNotice",
    "EdgeKind",
    "Paper",
    "PaperSource",
    "ProgressEvent",
    "RemoteRecord",
    "SearchHints",
    "SourceCapabilities",
    "SyncError",
    "SyncOutcome",
    "SyncReport",
    # Source registry
    "SourceRegistry",
    "find_best_source_for_cites",
    "find_best_source_for_refs",
    # Remote sources
    "AdsClient",
    "RemoteLookupClient",
    "RemoteLookupError",
    # Synchronization
    "CancellationToken",
    "LibrarySynchronizer",
    "SyncState",
    "partition_papers",
]
