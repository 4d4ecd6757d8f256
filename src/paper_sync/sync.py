"""Batch synchronization of the local library against ADS.

Usage:
    paper-sync --library library.json
    paper-sync --library library.json --paper-id 12 --paper-id 40 --verbose

Papers are split into three buckets by what they already know:

(a) papers with a bibcode: one batched lookup and one BibTeX export for the
    whole bucket, then finalized in concurrent windows
(b) papers with a DOI or arXiv ID but no bibcode: looked up one at a time,
    DOI first, then arXiv ID, then smart search
(c) papers with no identifier: identifiers are recovered from the citation
    text or the cached full text before falling back to smart search

Every match goes through the same finishing routine: merge the remote
metadata, attach citation text, link the remote record in the source
registry, and refresh a stale reference/citation cache. A failing paper
never stops the run; the library is saved once at the end.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from paper_sync.bibtex import split_bibtex_entries
from paper_sync.config import SyncConfig, load_config
from paper_sync.extraction import ContentExtractor, InferredMetadata, MetadataAssist
from paper_sync.graph_cache import CitationGraphCache
from paper_sync.identifiers import bibcode_from_ads_url, clean_doi, normalize_bibcode
from paper_sync.library import LibraryStore
from paper_sync.merge import merge_metadata
from paper_sync.models import (
    DuplicateNotice,
    EdgeKind,
    Paper,
    ProgressEvent,
    RemoteRecord,
    SearchHints,
    SyncError,
    SyncOutcome,
    SyncReport,
)
from paper_sync.registry import SourceRegistry
from paper_sync.sources.ads import AdsClient
from paper_sync.sources.base import RemoteLookupClient
from paper_sync.utils import first_author_surname

ProgressCallback = Callable[[ProgressEvent], None]
CompleteCallback = Callable[[SyncReport], None]


class SyncState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    CANCEL_REQUESTED = "cancel_requested"


class CancellationToken:
    """Cooperative cancellation flag polled between units of work."""

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


# ------------- Partitioning -------------


@dataclass
class Buckets:
    by_bibcode: list[Paper] = field(default_factory=list)
    by_identifier: list[Paper] = field(default_factory=list)
    by_metadata: list[Paper] = field(default_factory=list)


def partition_papers(papers: list[Paper]) -> Buckets:
    """Split papers by the strongest identifier they carry."""
    buckets = Buckets()
    for paper in papers:
        if paper.bibcode:
            buckets.by_bibcode.append(paper)
        elif paper.doi or paper.arxiv_id:
            buckets.by_identifier.append(paper)
        else:
            buckets.by_metadata.append(paper)
    return buckets


def partition_citation_text(text: str | None, bibcodes: list[str]) -> dict[str, str]:
    """Assign the entries of a combined BibTeX export to bibcodes.

    An entry whose ``adsurl`` names the bibcode (exactly or with padding dots
    removed) is preferred; otherwise the first entry containing the bibcode
    text is used.
    """
    entries = split_bibtex_entries(text)
    by_url: dict[str, str] = {}
    for entry in entries:
        url_bibcode = bibcode_from_ads_url(entry)
        if url_bibcode:
            by_url.setdefault(url_bibcode, entry)
            by_url.setdefault(normalize_bibcode(url_bibcode), entry)

    assigned: dict[str, str] = {}
    for bibcode in bibcodes:
        if not bibcode:
            continue
        entry = by_url.get(bibcode) or by_url.get(normalize_bibcode(bibcode))
        if entry is None:
            stripped = normalize_bibcode(bibcode)
            entry = next((e for e in entries if bibcode in e or (stripped and stripped in e)), None)
        if entry is not None:
            assigned[bibcode] = entry
    return assigned


def hints_for_paper(paper: Paper) -> SearchHints:
    return SearchHints(
        title=paper.title or None,
        first_author=first_author_surname(paper.authors) or None,
        year=paper.year,
        journal=paper.journal,
    )


# ------------- Per-item results -------------


UPDATED = "updated"
SKIPPED = "skipped"
FAILED = "failed"
DUPLICATE = "duplicate"


@dataclass
class ItemResult:
    status: str
    message: str | None = None
    duplicate: DuplicateNotice | None = None


class LookupTrail:
    """Runs remote lookups for one paper and remembers the last failure.

    A paper that ends with no match is "not found" when every lookup
    answered cleanly, and "failed" when at least one of them raised.
    """

    def __init__(self, paper: Paper, logger: logging.Logger) -> None:
        self.paper = paper
        self.logger = logger
        self.last_error: str | None = None

    async def call(self, what: str, fn: Callable[..., Awaitable[Any]], *args: Any) -> Any:
        try:
            return await fn(*args)
        except Exception as e:
            self.last_error = f"{what} lookup failed: {e}"
            self.logger.debug("%s lookup failed for paper %s: %s", what, self.paper.id, e)
            return None

    def not_found(self) -> ItemResult:
        if self.last_error:
            return ItemResult(FAILED, self.last_error)
        return ItemResult(SKIPPED, "Not found in ADS")


# ------------- Synchronizer -------------


class LibrarySynchronizer:
    """Reconciles every paper in a library with a remote source.

    Only one run may be active per instance. ``cancel()`` asks the active
    run to stop before its next window or paper; work already in flight
    finishes and is kept.
    """

    def __init__(
        self,
        store: LibraryStore | None,
        client: RemoteLookupClient,
        registry: SourceRegistry | None = None,
        graph_cache: CitationGraphCache | None = None,
        config: SyncConfig | None = None,
        extractor: ContentExtractor | None = None,
        assist: MetadataAssist | None = None,
        on_progress: ProgressCallback | None = None,
        on_complete: CompleteCallback | None = None,
        logger: logging.Logger | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.client = client
        self.config = config or SyncConfig()
        self.logger = logger or logging.getLogger(__name__)
        if store is not None:
            self.graph_cache = graph_cache or CitationGraphCache(store, freshness_days=self.config.cache_freshness_days)
            self.registry = registry or SourceRegistry(store, self.config, graph_cache=self.graph_cache)
        else:
            self.graph_cache = graph_cache
            self.registry = registry
        self.extractor = extractor or ContentExtractor()
        self.assist = assist
        self.on_progress = on_progress
        self.on_complete = on_complete
        self.sleep = sleep

        self.state = SyncState.IDLE
        self._token: CancellationToken | None = None
        self._progress_total = 0

    @property
    def is_running(self) -> bool:
        return self.state is not SyncState.IDLE

    def cancel(self) -> bool:
        """Request cancellation of the active run. Returns False when idle."""
        if self.state is not SyncState.RUNNING or self._token is None:
            return False
        self._token.cancel()
        self.state = SyncState.CANCEL_REQUESTED
        self.logger.info("Sync cancellation requested")
        return True

    def _setup_error(self) -> str | None:
        if self.store is None:
            return "Library not open"
        if not self.client.has_credentials:
            return "ADS API token not configured"
        return None

    async def sync(self, paper_ids: list[int] | None = None) -> SyncReport:
        """Synchronize the library (or only ``paper_ids``) against the remote source.

        Returns:
            SyncReport; ``success`` is False when another run is active, when
            setup fails, or when the run itself crashes. A cancelled run is
            still successful and carries ``outcome.cancelled``.
        """
        if self.state is not SyncState.IDLE:
            return SyncReport.busy()
        setup_error = self._setup_error()
        if setup_error:
            self.logger.error(setup_error)
            return SyncReport.setup_failure(setup_error)

        self.state = SyncState.RUNNING
        token = CancellationToken()
        self._token = token
        outcome = SyncOutcome()
        try:
            papers = self._select_papers(paper_ids)
            outcome.total = len(papers)
            self._progress_total = len(papers)
            buckets = partition_papers(papers)
            self.logger.info(
                "Syncing %d papers (%d by bibcode, %d by identifier, %d by metadata)",
                len(papers),
                len(buckets.by_bibcode),
                len(buckets.by_identifier),
                len(buckets.by_metadata),
            )

            await self._sync_bibcode_bucket(buckets.by_bibcode, outcome, token)
            if not token.cancelled:
                await self._sync_one_by_one(buckets.by_identifier, self._resolve_by_identifier, outcome, token)
            if not token.cancelled:
                await self._sync_one_by_one(buckets.by_metadata, self._resolve_by_content, outcome, token)

            outcome.cancelled = token.cancelled
            self.store.flush()
            self._export_master_bib()
            report = SyncReport(success=True, outcome=outcome)
        except Exception as e:
            self.logger.error("Sync failed: %s", e)
            outcome.cancelled = token.cancelled
            report = SyncReport(success=False, error=str(e), outcome=outcome)
        finally:
            self.state = SyncState.IDLE
            self._token = None

        self._emit(ProgressEvent(outcome.processed, outcome.total, "done", done=True))
        if self.on_complete is not None:
            self.on_complete(report)
        return report

    def _select_papers(self, paper_ids: list[int] | None) -> list[Paper]:
        if paper_ids is None:
            return self.store.get_all_papers()
        papers = []
        for paper_id in paper_ids:
            paper = self.store.get_paper(paper_id)
            if paper is None:
                self.logger.warning("Paper %s not found in library", paper_id)
                continue
            papers.append(paper)
        return papers

    def _export_master_bib(self) -> None:
        if not self.config.master_bib_path:
            return
        try:
            self.store.export_master_bib(self.config.master_bib_path)
        except OSError as e:
            self.logger.warning("Could not write %s: %s", self.config.master_bib_path, e)

    # ------------- Progress & bookkeeping -------------

    def _emit(self, event: ProgressEvent) -> None:
        if self.on_progress is not None:
            self.on_progress(event)

    def _record(self, outcome: SyncOutcome, paper: Paper, result: ItemResult) -> None:
        if result.status == UPDATED:
            outcome.updated += 1
        elif result.status == FAILED:
            outcome.failed += 1
            outcome.errors.append(SyncError(paper.id, paper.title, result.message or "Unknown error"))
        else:
            outcome.skipped += 1
            if result.duplicate is not None:
                outcome.duplicates.append(result.duplicate)
        self.logger.debug("Paper %s: %s%s", paper.id, result.status, f" ({result.message})" if result.message else "")

    # ------------- Bucket (a): bibcodes -------------

    async def _sync_bibcode_bucket(self, papers: list[Paper], outcome: SyncOutcome, token: CancellationToken) -> None:
        if not papers:
            return
        bibcodes = [p.bibcode for p in papers]

        batch_error: str | None = None
        records: list[RemoteRecord] = []
        try:
            records = await self.client.get_by_bibcodes(bibcodes)
        except Exception as e:
            batch_error = f"batch lookup failed: {e}"
            self.logger.warning("Batch bibcode lookup failed: %s", e)

        index: dict[str, RemoteRecord] = {}
        for record in records:
            if record.bibcode:
                index.setdefault(record.bibcode, record)
                index.setdefault(normalize_bibcode(record.bibcode), record)

        citations: dict[str, str] = {}
        found = [r.bibcode for r in records if r.bibcode]
        if found:
            try:
                citations = partition_citation_text(await self.client.export_citations(found), bibcodes)
            except Exception as e:
                self.logger.warning("BibTeX export failed: %s", e)

        size = self.config.window_size
        for start in range(0, len(papers), size):
            if token.cancelled:
                break
            window = papers[start : start + size]
            results = await asyncio.gather(
                *(self._finish_bibcode_paper(p, index, citations, batch_error) for p in window),
                return_exceptions=True,
            )
            for paper, result in zip(window, results):
                if isinstance(result, BaseException):
                    result = ItemResult(FAILED, str(result) or type(result).__name__)
                self._record(outcome, paper, result)
            self._emit(ProgressEvent(outcome.processed, self._progress_total, f"bibcode window {start // size + 1}"))
            if start + size < len(papers) and not token.cancelled:
                await self.sleep(self.config.window_delay)

    async def _finish_bibcode_paper(
        self,
        paper: Paper,
        index: dict[str, RemoteRecord],
        citations: dict[str, str],
        batch_error: str | None,
    ) -> ItemResult:
        record = index.get(paper.bibcode) or index.get(normalize_bibcode(paper.bibcode))
        trail = LookupTrail(paper, self.logger)
        trail.last_error = batch_error
        if record is None and paper.doi:
            record = await trail.call("DOI", self.client.get_by_doi, clean_doi(paper.doi))
        if record is None:
            return trail.not_found()
        return await self._apply_match(paper, record, citations.get(paper.bibcode))

    # ------------- Buckets (b) and (c): one at a time -------------

    async def _sync_one_by_one(
        self,
        papers: list[Paper],
        resolve: Callable[[Paper], Awaitable[ItemResult]],
        outcome: SyncOutcome,
        token: CancellationToken,
    ) -> None:
        for paper in papers:
            if token.cancelled:
                break
            try:
                result = await resolve(paper)
            except Exception as e:
                self.logger.warning("Sync of paper %s failed: %s", paper.id, e)
                result = ItemResult(FAILED, str(e) or type(e).__name__)
            self._record(outcome, paper, result)
            self._emit(ProgressEvent(outcome.processed, self._progress_total, (paper.title or "")[:60]))

    async def _resolve_by_identifier(self, paper: Paper) -> ItemResult:
        trail = LookupTrail(paper, self.logger)
        record = None
        if paper.doi:
            record = await trail.call("DOI", self.client.get_by_doi, clean_doi(paper.doi))
        if record is None and paper.arxiv_id:
            record = await trail.call("arXiv", self.client.get_by_arxiv, paper.arxiv_id)
        if record is None:
            record = await self._smart_search(trail, hints_for_paper(paper))
        if record is None:
            return trail.not_found()
        return await self._apply_match(paper, record)

    async def _resolve_by_content(self, paper: Paper) -> ItemResult:
        trail = LookupTrail(paper, self.logger)
        discovered: dict[str, str] = {}
        record = None

        url_bibcode = bibcode_from_ads_url(paper.citation_text)
        if url_bibcode:
            record = await trail.call("bibcode", self.client.get_by_bibcode, url_bibcode)

        text = self.store.load_text(paper) if record is None else None
        if text:
            record = await self._lookup_content_identifiers(trail, text, discovered)
            if record is None and self.assist is not None:
                record = await self._lookup_inferred(trail, text, discovered)
            if record is None:
                record = await self._smart_search(trail, self.extractor.extract_metadata(text))

        if record is None:
            record = await self._smart_search(trail, hints_for_paper(paper))
        if record is None:
            return trail.not_found()

        return await self._apply_match(paper, record, discovered=discovered)

    async def _lookup_content_identifiers(
        self, trail: LookupTrail, text: str, discovered: dict[str, str]
    ) -> RemoteRecord | None:
        try:
            ids = self.extractor.extract_identifiers(text)
        except Exception as e:
            self.logger.debug("Identifier extraction failed for paper %s: %s", trail.paper.id, e)
            return None
        return await self._lookup_identifiers(trail, ids.doi, ids.arxiv_id, ids.bibcode, discovered)

    async def _lookup_inferred(
        self, trail: LookupTrail, text: str, discovered: dict[str, str]
    ) -> RemoteRecord | None:
        try:
            inferred: InferredMetadata | None = self.assist.infer(text)
        except Exception as e:
            self.logger.debug("Metadata assist failed for paper %s: %s", trail.paper.id, e)
            return None
        if inferred is None:
            return None
        record = await self._lookup_identifiers(trail, inferred.doi, inferred.arxiv_id, inferred.bibcode, discovered)
        if record is None:
            record = await self._smart_search(trail, inferred.hints())
        return record

    async def _lookup_identifiers(
        self,
        trail: LookupTrail,
        doi: str | None,
        arxiv_id: str | None,
        bibcode: str | None,
        discovered: dict[str, str],
    ) -> RemoteRecord | None:
        doi = clean_doi(doi) if doi else None
        lookups = (
            ("doi", "DOI", doi, self.client.get_by_doi),
            ("arxiv_id", "arXiv", arxiv_id, self.client.get_by_arxiv),
            ("bibcode", "bibcode", bibcode, self.client.get_by_bibcode),
        )
        for field_name, what, value, fn in lookups:
            if not value:
                continue
            record = await trail.call(what, fn, value)
            if record is not None:
                discovered[field_name] = value
                return record
        return None

    async def _smart_search(self, trail: LookupTrail, hints: SearchHints) -> RemoteRecord | None:
        if not hints.usable():
            return None
        return await trail.call("smart search", self.client.smart_search, hints)

    # ------------- Finishing -------------

    async def _apply_match(
        self,
        paper: Paper,
        record: RemoteRecord,
        citation_text: str | None = None,
        discovered: dict[str, str] | None = None,
    ) -> ItemResult:
        """Merge a matched remote record into a paper and link it.

        ``discovered`` holds identifiers found in the paper's own content; they
        are written only once the match is known not to be a duplicate.
        """
        if record.bibcode:
            owner = self.store.get_paper_by_bibcode(record.bibcode)
            if owner is not None and owner.id != paper.id:
                self.logger.info(
                    "Skipping paper %s: %s already belongs to paper %s", paper.id, record.bibcode, owner.id
                )
                notice = DuplicateNotice(
                    paper_id=paper.id,
                    title=paper.title,
                    bibcode=record.bibcode,
                    existing_paper_id=owner.id,
                    existing_title=owner.title,
                )
                return ItemResult(DUPLICATE, f"Duplicate of paper {owner.id}", duplicate=notice)

        if discovered:
            self.store.update_paper(paper.id, discovered, flush=False)

        if citation_text is None and record.bibcode:
            try:
                citation_text = await self.client.export_citations([record.bibcode]) or None
            except Exception as e:
                self.logger.debug("BibTeX export failed for %s: %s", record.bibcode, e)

        fields = merge_metadata(paper.metadata(), record.to_paper_fields())
        if citation_text:
            fields["citation_text"] = citation_text
        self.store.update_paper(paper.id, fields, flush=False)

        source_id = record.source_id or record.bibcode
        if source_id:
            links = self.registry.get_paper_sources(paper.id)
            current = next((s for s in links if s.source == self.client.name), None)
            is_primary = current.is_primary if current else not any(s.is_primary for s in links)
            self.registry.add_paper_source(
                paper.id,
                self.client.name,
                source_id,
                metadata=record.to_paper_fields(),
                capabilities=self.client.capabilities,
                is_primary=is_primary,
                flush=False,
            )
            if self.config.refresh_graphs:
                await self._refresh_graph(paper.id, source_id)
        return ItemResult(UPDATED)

    async def _refresh_graph(self, paper_id: int, source_id: str) -> None:
        directions = (
            (EdgeKind.REFERENCES, self.client.get_references, self.graph_cache.cache_references),
            (EdgeKind.CITATIONS, self.client.get_citations, self.graph_cache.cache_citations),
        )
        try:
            for kind, fetch, cache in directions:
                if self.graph_cache.needs_refresh(paper_id, kind):
                    cache(paper_id, await fetch(source_id), self.client.name, flush=False)
        except Exception as e:
            self.logger.debug("Graph refresh failed for paper %s: %s", paper_id, e)


# ------------- CLI -------------


def init_logging(verbose: bool = False) -> logging.Logger:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="%(levelname)s: %(message)s")
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    return logging.getLogger("paper_sync")


def summarize(report: SyncReport, logger: logging.Logger) -> None:
    """Log a summary of a sync run."""
    if not report.success and report.outcome is None:
        logger.error("Sync did not run: %s", report.error)
        return
    outcome = report.outcome or SyncOutcome()

    logger.info("")
    logger.info("=" * 50)
    logger.info("LIBRARY SYNC SUMMARY%s", " (cancelled)" if outcome.cancelled else "")
    logger.info("=" * 50)
    logger.info(f"  Papers:     {outcome.total}")
    logger.info(f"  Updated:    {outcome.updated}")
    logger.info(f"  Skipped:    {outcome.skipped}")
    logger.info(f"  Failed:     {outcome.failed}")
    logger.info(f"  Duplicates: {len(outcome.duplicates)}")

    if outcome.duplicates:
        logger.info("")
        logger.info("--- Duplicates ---")
        for d in outcome.duplicates:
            logger.info(f"  [{d.paper_id}] {d.title} -> {d.bibcode} (paper {d.existing_paper_id})")

    if outcome.errors:
        logger.info("")
        logger.info("--- Errors ---")
        for err in outcome.errors:
            logger.info(f"  [{err.paper_id}] {err.title}: {err.message}")

    if not report.success:
        logger.error("Sync aborted: %s", report.error)


async def run_sync(config: SyncConfig, paper_ids: list[int] | None, logger: logging.Logger) -> SyncReport:
    """Open the library, run one sync against ADS, and close the client."""
    store = LibraryStore(config.library_path, logger=logger)
    graph_cache = CitationGraphCache(store, freshness_days=config.cache_freshness_days)
    registry = SourceRegistry(store, config, graph_cache=graph_cache)
    client = AdsClient(config.ads_token, config=config, logger=logger)
    syncer = LibrarySynchronizer(store, client, registry=registry, graph_cache=graph_cache, config=config, logger=logger)

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, syncer.cancel)
    except (NotImplementedError, RuntimeError):
        pass
    try:
        return await syncer.sync(paper_ids)
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass
        await client.close()


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Reconcile a paper library with NASA ADS",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--library", help="Library JSON file")
    parser.add_argument("--config", help="YAML config file")
    parser.add_argument("--paper-id", type=int, action="append", dest="paper_ids", help="Only sync this paper (repeatable)")
    parser.add_argument("--window-size", type=int, help="Concurrent bibcode lookups per window")
    parser.add_argument("--no-graph-refresh", action="store_true", help="Do not refresh references/citations")
    parser.add_argument("--master-bib", help="Write all citations to this .bib file after syncing")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")
    return parser


def main(argv: list[str] | None = None) -> int:
    """Run the CLI. Exit codes: 0 ok, 1 setup error, 2 finished with failures."""
    args = build_arg_parser().parse_args(argv)
    logger = init_logging(args.verbose)

    try:
        config = load_config(
            args.config,
            library_path=args.library,
            window_size=args.window_size,
            master_bib_path=args.master_bib,
            verbose=args.verbose or None,
        )
    except (FileNotFoundError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    if args.no_graph_refresh:
        config.refresh_graphs = False

    if not config.library_path:
        print("Error: --library or library_path in the config file is required", file=sys.stderr)
        return 1
    if not os.path.exists(config.library_path):
        print(f"Error: library not found: {config.library_path}", file=sys.stderr)
        return 1
    if not config.ads_token:
        print("Error: ADS_API_TOKEN required (environment variable or ads_token in the config file)", file=sys.stderr)
        return 1

    report = asyncio.run(run_sync(config, args.paper_ids, logger))
    summarize(report, logger)

    if not report.success:
        return 1
    return 2 if report.outcome and report.outcome.failed else 0


if __name__ == "__main__":
    sys.exit(main())
