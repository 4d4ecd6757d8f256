"""BibTeX reading and writing for citation text and the master .bib export."""

from __future__ import annotations

import re
from typing import Any

import bibtexparser
from bibtexparser.bibdatabase import BibDatabase
from bibtexparser.bparser import BibTexParser
from bibtexparser.bwriter import BibTexWriter

from paper_sync.models import Paper
from paper_sync.utils import atomic_write_text

_ENTRY_START_RE = re.compile(r"(?=@)")


class BibLoader:
    """Parses BibTeX text with a fresh BibTexParser per call."""

    def _parser(self) -> BibTexParser:
        parser = BibTexParser(common_strings=True)
        parser.customization = None
        parser.ignore_nonstandard_types = False
        return parser

    def loads(self, text: str) -> BibDatabase:
        return bibtexparser.loads(text, parser=self._parser())


class BibWriter:
    def __init__(self) -> None:
        self.writer = BibTexWriter()
        self.writer.indent = "  "
        self.writer.order_entries_by = None
        self.writer.comma_first = False

    def dumps(self, db: BibDatabase) -> str:
        return bibtexparser.dumps(db, writer=self.writer)

    def dump_to_file(self, db: BibDatabase, path: str) -> None:
        atomic_write_text(path, self.dumps(db), suffix=".bib")


def split_bibtex_entries(text: str | None) -> list[str]:
    """Split a multi-entry BibTeX blob into per-entry chunks, keeping raw text."""
    if not text:
        return []
    return [chunk.strip() for chunk in _ENTRY_START_RE.split(text) if chunk.strip().startswith("@")]


def entry_key_for(paper: Paper) -> str:
    if paper.bibcode:
        return paper.bibcode
    if paper.arxiv_id:
        return "arXiv:" + paper.arxiv_id
    return f"paper{paper.id}"


def paper_to_entry(paper: Paper) -> dict[str, Any]:
    """Build a BibTeX entry dict from a paper's own metadata."""
    entry: dict[str, Any] = {
        "ENTRYTYPE": "article",
        "ID": entry_key_for(paper),
        "title": paper.title or "",
    }
    if paper.authors:
        entry["author"] = " and ".join(paper.authors)
    if paper.year:
        entry["year"] = str(paper.year)
    if paper.journal:
        entry["journal"] = paper.journal
    if paper.doi:
        entry["doi"] = paper.doi
    if paper.arxiv_id:
        entry["eprint"] = paper.arxiv_id
        entry["archiveprefix"] = "arXiv"
    if paper.bibcode:
        entry["adsurl"] = f"https://ui.adsabs.harvard.edu/abs/{paper.bibcode}"
    return entry


def build_master_database(papers: list[Paper], loader: BibLoader | None = None) -> BibDatabase:
    """Collect every paper into one database.

    Stored citation text is used as-is when it parses; otherwise an entry
    is generated from the paper's metadata. Duplicate keys keep the first.
    """
    loader = loader or BibLoader()
    db = BibDatabase()
    seen: set[str] = set()
    for paper in papers:
        entries: list[dict[str, Any]] = []
        if paper.citation_text:
            try:
                entries = list(loader.loads(paper.citation_text).entries)
            except Exception:
                entries = []
        if not entries:
            entries = [paper_to_entry(paper)]
        for entry in entries:
            key = entry.get("ID", "")
            if key in seen:
                continue
            seen.add(key)
            db.entries.append(entry)
    return db
