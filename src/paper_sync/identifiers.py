"""Identifier extraction and normalization.

Pure functions for the three cross-source identifiers of a scholarly work:
DOI, arXiv ID, and ADS bibcode. Nothing here raises on malformed input;
unusable values come back as ``None``.

Content-level identifier discovery is table driven: ``CONTENT_STRATEGIES``
is an ordered list of ``(field, strategy)`` pairs, and each strategy is a
``text -> str | None`` function. New sources are supported by appending to
that list.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from urllib.parse import unquote

# ------------- Constants & Regex -------------

_DOI_PREFIX_RE = re.compile(r"^(?:https?://(?:dx\.)?doi\.org/|doi:)\s*", re.IGNORECASE)
_DOI_SUFFIX_RES = (
    re.compile(r"/CITE/REFWORKS$", re.IGNORECASE),
    re.compile(r"/abstract$", re.IGNORECASE),
    re.compile(r"/full$", re.IGNORECASE),
    re.compile(r"/pdf$", re.IGNORECASE),
    re.compile(r"/ASSET/.*$", re.IGNORECASE),
    re.compile(r"/\d+/[^/]*\.(?:gif|jpeg|jpg|png|svg|webp)$", re.IGNORECASE),
    re.compile(r"/[^/]*\.(?:gif|jpeg|jpg|png|svg|webp)$", re.IGNORECASE),
)

_ARXIV_NEW_RE = re.compile(r"(?:arXiv:)?(\d{4}\.\d{4,5}(?:v\d+)?)", re.IGNORECASE)
_ARXIV_OLD_RE = re.compile(r"(?:arXiv:)?([a-z-]+(?:\.[A-Z]{2})?/\d{7}(?:v\d+)?)", re.IGNORECASE)
_ARXIV_PREFIX_RE = re.compile(r"^arxiv:\s*", re.IGNORECASE)
_ARXIV_VERSION_RE = re.compile(r"v\d+$", re.IGNORECASE)

CONTENT_HEADER_CHARS = 5000

_CONTENT_DOI_RES = (
    re.compile(r"DOI[:\s]+\s*(10\.\d{4,}/[^\s<>]+)", re.IGNORECASE),
    re.compile(r"doi\.org/(10\.\d{4,}/[^\s<>]+)", re.IGNORECASE),
    re.compile(r"https?://dx\.doi\.org/(10\.\d{4,}/[^\s<>]+)", re.IGNORECASE),
)
_DOI_TRAILING_PUNCT_RE = re.compile(r"[.,;)\]]+$")

_CONTENT_ARXIV_RES = (
    re.compile(r"arXiv[:\s]+(\d{4}\.\d{4,5}(?:v\d+)?)", re.IGNORECASE),
    re.compile(r"arxiv\.org/(?:abs|pdf)/(\d{4}\.\d{4,5}(?:v\d+)?)", re.IGNORECASE),
    re.compile(r"arXiv[:\s]+([a-z-]+/\d{7}(?:v\d+)?)", re.IGNORECASE),
)

# YYYY + journal(5) + volume(4) + qualifier(1) + page(4) + author initial
BIBCODE_RE = re.compile(r"(\d{4}[A-Za-z&.]{5}[A-Za-z0-9.]{4}[A-Za-z.][A-Za-z0-9.]{4}[A-Z.])")

_ADSURL_RE = re.compile(r"adsurl\s*=\s*[{\"]\s*https?://[^\s}\"]*?/abs/([^/\s}\"]+)", re.IGNORECASE)


# ------------- DOI -------------


def clean_doi(raw: str | None) -> str | None:
    """Strip resolver prefixes and publisher URL debris from a DOI.

    Removes ``https://doi.org/`` and ``doi:`` prefixes plus trailing
    ``/CITE/REFWORKS``, ``/abstract``, ``/full``, ``/pdf``, ``/ASSET/...`` and
    image paths. Idempotent: suffixes are stripped until nothing changes.
    Empty input comes back unchanged.
    """
    if not raw:
        return raw
    doi = raw.strip()
    while True:
        before = doi
        doi = _DOI_PREFIX_RE.sub("", doi)
        for pattern in _DOI_SUFFIX_RES:
            doi = pattern.sub("", doi)
        doi = doi.strip()
        if doi == before:
            return doi


def normalize_doi(raw: str | None) -> str | None:
    """Cleaned, lowercased DOI suitable for equality comparison."""
    doi = clean_doi(raw)
    return doi.lower() if doi else None


# ------------- arXiv -------------


def extract_arxiv_id(identifiers: Iterable[str] | str | None) -> str | None:
    """Return the first arXiv ID found in an ordered identifier list.

    Both new-style (``2301.12345v2``) and old-style (``astro-ph/0601001``)
    IDs are recognised, with or without an ``arXiv:`` prefix. An entry must
    be the ID as a whole, so DOIs and bibcodes containing digit runs are
    ignored. The version suffix is kept.
    """
    if not identifiers:
        return None
    if isinstance(identifiers, str):
        identifiers = [identifiers]
    for ident in identifiers:
        if not isinstance(ident, str):
            continue
        ident = ident.strip()
        m = _ARXIV_NEW_RE.fullmatch(ident) or _ARXIV_OLD_RE.fullmatch(ident)
        if m:
            return m.group(1)
    return None


def normalize_arxiv_id(raw: str | None) -> str | None:
    """Lowercase an arXiv ID and drop its ``arXiv:`` prefix and version suffix."""
    if not raw:
        return None
    ident = _ARXIV_PREFIX_RE.sub("", raw.strip())
    ident = _ARXIV_VERSION_RE.sub("", ident)
    return ident.lower() or None


# ------------- Bibcode -------------


def normalize_bibcode(raw: str | None) -> str:
    """Bibcode with the padding dots removed, used for tolerant matching."""
    if not raw:
        return ""
    return raw.replace(".", "").strip()


# ------------- Content strategies -------------


def doi_from_text(text: str) -> str | None:
    for pattern in _CONTENT_DOI_RES:
        m = pattern.search(text)
        if m:
            return _DOI_TRAILING_PUNCT_RE.sub("", m.group(1)) or None
    return None


def arxiv_id_from_text(text: str) -> str | None:
    for pattern in _CONTENT_ARXIV_RES:
        m = pattern.search(text)
        if m:
            return m.group(1)
    return None


def bibcode_from_text(text: str) -> str | None:
    m = BIBCODE_RE.search(text)
    return m.group(1) if m else None


def bibcode_from_ads_url(citation_text: str | None) -> str | None:
    """Bibcode from the ``adsurl`` field of an ADS BibTeX export."""
    if not citation_text:
        return None
    m = _ADSURL_RE.search(citation_text)
    return unquote(m.group(1)) if m else None


ContentStrategy = Callable[[str], "str | None"]

CONTENT_STRATEGIES: list[tuple[str, ContentStrategy]] = [
    ("doi", doi_from_text),
    ("arxiv_id", arxiv_id_from_text),
    ("bibcode", bibcode_from_text),
]


@dataclass
class ContentIdentifiers:
    """Identifiers discovered in document text."""

    doi: str | None = None
    arxiv_id: str | None = None
    bibcode: str | None = None

    def any(self) -> bool:
        return bool(self.doi or self.arxiv_id or self.bibcode)


def extract_identifiers_from_content(
    text: str | None,
    strategies: list[tuple[str, ContentStrategy]] | None = None,
) -> ContentIdentifiers:
    """Run each content strategy over the document header.

    Only the first ``CONTENT_HEADER_CHARS`` characters are scanned; the first
    strategy to produce a value for a field wins.
    """
    found = ContentIdentifiers()
    if not text:
        return found
    header = text[:CONTENT_HEADER_CHARS]
    for field_name, strategy in strategies if strategies is not None else CONTENT_STRATEGIES:
        if getattr(found, field_name, None):
            continue
        value = strategy(header)
        if value:
            setattr(found, field_name, value)
    return found
