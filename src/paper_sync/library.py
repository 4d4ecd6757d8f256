"""Local library persistence.

``LibraryStore`` keeps papers, their external source links and the cached
citation graph in memory and persists them as a single JSON document.
Writes happen under a lock; saving is atomic (temp file, fsync, replace).
Callers doing many writes pass ``flush=False`` and call ``flush()`` once.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from collections.abc import Callable, Iterator
from datetime import datetime
from typing import Any

from paper_sync.bibtex import BibWriter, build_master_database
from paper_sync.identifiers import normalize_arxiv_id, normalize_doi
from paper_sync.models import CitationEdge, EdgeKind, Paper
from paper_sync.utils import atomic_write_json, isoformat, utc_now

FORMAT_VERSION = 1


class LibraryStore:
    """In-memory paper library with optional JSON file persistence."""

    def __init__(
        self,
        path: str | None = None,
        library_dir: str | None = None,
        now: Callable[[], datetime] = utc_now,
        logger: logging.Logger | None = None,
    ) -> None:
        """Open (or create) a library.

        Args:
            path: JSON file backing the library; None keeps everything in memory
            library_dir: Directory that paper ``text_path`` values are relative to
            now: Clock used for created/modified timestamps
            logger: Logger instance (creates one if not provided)
        """
        self.path = path
        self.library_dir = library_dir or (os.path.dirname(os.path.abspath(path)) if path else None)
        self.now = now
        self.logger = logger or logging.getLogger(__name__)
        self.lock = threading.RLock()
        self.flush_count = 0

        self._papers: dict[int, Paper] = {}
        self._next_id = 1
        # Raw source rows; metadata is kept as a JSON string
        self._sources: list[dict[str, Any]] = []
        self._edges: dict[str, dict[int, list[CitationEdge]]] = {kind.value: {} for kind in EdgeKind}
        self._dirty = False

        if path and os.path.exists(path):
            self._load()

    # ------------- Persistence -------------

    def _load(self) -> None:
        with open(self.path, encoding="utf-8") as f:
            data = json.load(f)
        for raw in data.get("papers", []):
            paper = Paper.from_dict(raw)
            self._papers[paper.id] = paper
        self._next_id = max(int(data.get("next_id", 1)), max(self._papers, default=0) + 1)
        self._sources = list(data.get("paper_sources", []))
        for kind in EdgeKind:
            for paper_id, rows in data.get(kind.value, {}).items():
                self._edges[kind.value][int(paper_id)] = [CitationEdge.from_dict(r) for r in rows]
        self.logger.debug("Loaded %d papers from %s", len(self._papers), self.path)

    def _snapshot(self) -> dict[str, Any]:
        return {
            "version": FORMAT_VERSION,
            "next_id": self._next_id,
            "papers": [p.to_dict() for p in self._papers.values()],
            "paper_sources": list(self._sources),
            **{
                kind: {str(pid): [e.to_dict() for e in rows] for pid, rows in by_paper.items()}
                for kind, by_paper in self._edges.items()
            },
        }

    def flush(self) -> None:
        """Persist pending changes to disk (no-op for in-memory libraries)."""
        with self.lock:
            self.flush_count += 1
            if not self.path or not self._dirty:
                return
            atomic_write_json(self.path, self._snapshot())
            self._dirty = False

    def _touch(self, flush: bool) -> None:
        self._dirty = True
        if flush:
            self.flush()

    # ------------- Papers -------------

    def get_paper(self, paper_id: int) -> Paper | None:
        return self._papers.get(paper_id)

    def get_all_papers(self) -> list[Paper]:
        return list(self._papers.values())

    def get_paper_by_doi(self, doi: str | None) -> Paper | None:
        key = normalize_doi(doi)
        if not key:
            return None
        for paper in self._papers.values():
            if normalize_doi(paper.doi) == key:
                return paper
        return None

    def get_paper_by_arxiv(self, arxiv_id: str | None) -> Paper | None:
        key = normalize_arxiv_id(arxiv_id)
        if not key:
            return None
        for paper in self._papers.values():
            if normalize_arxiv_id(paper.arxiv_id) == key:
                return paper
        return None

    def get_paper_by_bibcode(self, bibcode: str | None) -> Paper | None:
        if not bibcode:
            return None
        for paper in self._papers.values():
            if paper.bibcode == bibcode:
                return paper
        return None

    def add_paper(self, paper: Paper, flush: bool = True) -> Paper:
        """Insert a paper, assigning its id and timestamps."""
        with self.lock:
            paper.id = self._next_id
            self._next_id += 1
            stamp = isoformat(self.now())
            paper.created_at = paper.created_at or stamp
            paper.modified_at = stamp
            self._papers[paper.id] = paper
            self._touch(flush)
        return paper

    def update_paper(self, paper_id: int, fields: dict[str, Any], flush: bool = True) -> Paper:
        """Set the given fields on a paper.

        Raises:
            KeyError: If no paper has this id
        """
        with self.lock:
            paper = self._papers[paper_id]
            for name, value in fields.items():
                if name == "id" or not hasattr(paper, name):
                    continue
                setattr(paper, name, value)
            paper.modified_at = isoformat(self.now())
            self._touch(flush)
        return paper

    def load_text(self, paper: Paper) -> str | None:
        """Cached full text of a paper, or None when unavailable."""
        if not paper.text_path:
            return None
        path = paper.text_path
        if not os.path.isabs(path) and self.library_dir:
            path = os.path.join(self.library_dir, path)
        try:
            with open(path, encoding="utf-8", errors="replace") as f:
                return f.read()
        except OSError as e:
            self.logger.debug("No text for paper %s: %s", paper.id, e)
            return None

    # ------------- Source links -------------

    def source_rows(self, paper_id: int | None = None) -> list[dict[str, Any]]:
        """Copies of stored source rows, optionally restricted to one paper."""
        return [dict(r) for r in self._sources if paper_id is None or r["paper_id"] == paper_id]

    def upsert_source_row(self, row: dict[str, Any], flush: bool = True) -> None:
        """Insert a source row, replacing rows that share either unique key.

        Unique keys are (paper_id, source) and (source, source_id).
        """
        with self.lock:
            self._sources = [
                r
                for r in self._sources
                if not (r["paper_id"] == row["paper_id"] and r["source"] == row["source"])
                and not (r["source"] == row["source"] and r["source_id"] == row["source_id"])
            ]
            self._sources.append(dict(row))
            self._touch(flush)

    # ------------- Citation graph -------------

    def replace_edges(self, kind: EdgeKind, paper_id: int, edges: list[CitationEdge], flush: bool = True) -> None:
        """Swap out every cached edge of one kind for a paper in a single step."""
        with self.lock:
            if edges:
                self._edges[kind.value][paper_id] = list(edges)
            else:
                self._edges[kind.value].pop(paper_id, None)
            self._touch(flush)

    def get_edges(self, kind: EdgeKind, paper_id: int) -> list[CitationEdge]:
        return list(self._edges[kind.value].get(paper_id, []))

    def iter_edges(self, kind: EdgeKind) -> Iterator[tuple[int, CitationEdge]]:
        for paper_id, rows in self._edges[kind.value].items():
            for edge in rows:
                yield paper_id, edge

    def mark_dirty(self, flush: bool = True) -> None:
        with self.lock:
            self._touch(flush)

    # ------------- Export -------------

    def export_master_bib(self, path: str) -> int:
        """Write every paper to a single .bib file; returns the entry count."""
        db = build_master_database(sorted(self._papers.values(), key=lambda p: p.id or 0))
        BibWriter().dump_to_file(db, path)
        self.logger.info("Wrote %d entries to %s", len(db.entries), path)
        return len(db.entries)
