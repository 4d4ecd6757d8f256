"""Identifier and metadata discovery from a paper's full text.

``ContentExtractor`` applies the regex strategies from
:mod:`paper_sync.identifiers` and a layout heuristic for title, first author
and year. ``MetadataAssist`` is the hook for a smarter (e.g. LLM based)
inference service; none ships with this package.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass

from paper_sync.identifiers import ContentIdentifiers, extract_identifiers_from_content
from paper_sync.models import SearchHints

MIN_YEAR = 1990
MAX_YEAR = 2030

_MONTHS = "January|February|March|April|May|June|July|August|September|October|November|December"
_YEAR_RES = (
    re.compile(r"(?:published|submitted|received|accepted|copyright|\(c\)|©)\s*(?:\w+\s*)?(\d{4})", re.IGNORECASE),
    re.compile(rf"(\d{{4}})\s*(?:{_MONTHS})", re.IGNORECASE),
    re.compile(rf"(?:{_MONTHS})\s*(?:\d{{1,2}})?,?\s*(\d{{4}})", re.IGNORECASE),
    re.compile(r"\b(20[0-3][0-9])\b"),
)
_TITLE_SKIP_RE = re.compile(r"^(?:page|vol|volume|issue|doi|arxiv)", re.IGNORECASE)
_AFFILIATION_RE = re.compile(r"university|institute|department|laboratory|center|college", re.IGNORECASE)
# Given name, optional initials, optional family name
_AUTHOR_RE = re.compile(r"^([A-Z][a-z]+(?:\s+[A-Z]\.?(?![a-z]))*(?:\s+[A-Z][a-z]+)?)")


@dataclass
class InferredMetadata:
    """Metadata proposed by a MetadataAssist implementation."""

    title: str | None = None
    first_author: str | None = None
    year: int | None = None
    journal: str | None = None
    doi: str | None = None
    arxiv_id: str | None = None
    bibcode: str | None = None

    def hints(self) -> SearchHints:
        return SearchHints(title=self.title, first_author=self.first_author, year=self.year, journal=self.journal)


class MetadataAssist(ABC):
    """Optional service that reads a paper's text and proposes metadata."""

    @abstractmethod
    def infer(self, text: str) -> InferredMetadata | None: ...


def guess_title(lines: list[str]) -> str | None:
    for line in lines[:10]:
        if len(line) > 20 and not line.isdigit() and "@" not in line and not _TITLE_SKIP_RE.match(line):
            return line[:300]
    return None


def guess_year(text: str) -> int | None:
    header = text[:3000]
    for pattern in _YEAR_RES:
        m = pattern.search(header)
        if m:
            year = int(m.group(1))
            if MIN_YEAR <= year <= MAX_YEAR:
                return year
    return None


def guess_first_author(lines: list[str]) -> str | None:
    """Surname of the first plausible author line after the title."""
    for line in lines[1:15]:
        if _AFFILIATION_RE.search(line):
            continue
        if "@" in line or line[:1].isdigit():
            continue
        m = _AUTHOR_RE.match(line)
        if m and len(m.group(1)) > 3:
            return m.group(1).split()[-1]
    return None


class ContentExtractor:
    """Pulls identifiers and search hints out of document text."""

    def extract_identifiers(self, text: str | None) -> ContentIdentifiers:
        return extract_identifiers_from_content(text)

    def extract_metadata(self, text: str | None) -> SearchHints:
        """Heuristic title, first-author surname and year from the opening lines."""
        if not text:
            return SearchHints()
        lines = [line.strip() for line in text.split("\n") if line.strip()]
        if not lines:
            return SearchHints()
        return SearchHints(
            title=guess_title(lines),
            first_author=guess_first_author(lines),
            year=guess_year(text),
        )
