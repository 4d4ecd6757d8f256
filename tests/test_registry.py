"""Tests for the source registry and deduplicator."""

from __future__ import annotations

import asyncio
from datetime import timedelta

from conftest import FakeRemoteClient

from paper_sync import (
    CitationEdge,
    LibrarySynchronizer,
    Paper,
    PaperSource,
    SourceCapabilities,
    SourceRegistry,
    SyncConfig,
    find_best_source_for_cites,
    find_best_source_for_refs,
)


def link(source: str, priority: int = 50, primary: bool = False, refs: bool = True, cites: bool = True) -> PaperSource:
    return PaperSource(
        paper_id=1,
        source=source,
        source_id=f"{source}-id",
        has_references=refs,
        has_citations=cites,
        priority=priority,
        is_primary=primary,
    )


class TestFindOrCreatePaper:
    """Tests for cross-source deduplication."""

    def test_doi_match_is_case_insensitive(self, registry, make_paper, store):
        existing = make_paper(doi="10.1093/MNRAS/stab001")
        candidate = Paper(title="Other", doi="10.1093/mnras/STAB001")

        result = registry.find_or_create_paper(candidate, "inspire", "12345")

        assert result.is_new is False
        assert result.paper.id == existing.id
        assert len(store.get_all_papers()) == 1

    def test_arxiv_variants_match(self, registry, make_paper):
        existing = make_paper(arxiv_id="2301.12345")
        for variant in ["arXiv:2301.12345", "2301.12345v2"]:
            result = registry.find_or_create_paper(Paper(arxiv_id=variant), "arxiv", variant)
            assert result.paper.id == existing.id

    def test_bibcode_match(self, registry, make_paper):
        existing = make_paper(bibcode="2020ApJ...900..100D")
        result = registry.find_or_create_paper(Paper(bibcode="2020ApJ...900..100D"), "ads", "2020ApJ...900..100D")
        assert result.paper.id == existing.id

    def test_doi_checked_before_arxiv(self, registry, make_paper):
        by_doi = make_paper(doi="10.1/a")
        make_paper(arxiv_id="2301.00001")
        result = registry.find_or_create_paper(Paper(doi="10.1/A", arxiv_id="2301.00001"), "inspire", "9")
        assert result.paper.id == by_doi.id

    def test_miss_creates_nothing(self, registry, store):
        result = registry.find_or_create_paper(Paper(doi="10.1/new"), "inspire", "1")
        assert result.is_new is True
        assert result.paper is None
        assert store.get_all_papers() == []

    def test_hit_links_source_without_touching_metadata(self, registry, make_paper):
        existing = make_paper(doi="10.1/a", title="Local title")
        candidate = Paper(doi="10.1/a", title="Remote title")

        registry.find_or_create_paper(candidate, "inspire", "777", SourceCapabilities(references=True))

        assert existing.title == "Local title"
        sources = registry.get_paper_sources(existing.id)
        assert [(s.source, s.source_id, s.is_primary) for s in sources] == [("inspire", "777", False)]
        assert sources[0].has_references is True


class TestAddPaperSource:
    def test_upsert_on_paper_and_source(self, registry, make_paper):
        paper = make_paper()
        registry.add_paper_source(paper.id, "ads", "OLD")
        registry.add_paper_source(paper.id, "ads", "NEW", metadata={"k": 1})

        sources = registry.get_paper_sources(paper.id)
        assert len(sources) == 1
        assert sources[0].source_id == "NEW"
        assert sources[0].metadata == {"k": 1}

    def test_source_id_unique_per_source(self, registry, make_paper, store):
        first = make_paper(title="First")
        second = make_paper(title="Second")
        registry.add_paper_source(first.id, "ads", "SAME")
        registry.add_paper_source(second.id, "ads", "SAME")

        assert registry.get_paper_sources(first.id) == []
        assert len(registry.get_paper_sources(second.id)) == 1
        assert len(store.source_rows()) == 1

    def test_capability_flags_copied(self, registry, make_paper):
        paper = make_paper()
        caps = SourceCapabilities(references=True, citations=False, pdf_download=True, bibtex=True, priority=5)
        created = registry.add_paper_source(paper.id, "inspire", "1", capabilities=caps)
        assert (created.has_references, created.has_citations, created.has_pdf, created.has_bibtex) == (
            True,
            False,
            True,
            True,
        )
        assert created.priority == 5

    def test_configured_priority_used_when_not_given(self, store, make_paper):
        registry = SourceRegistry(store, SyncConfig(ads_token="t", source_priorities={"inspire": 7}))
        paper = make_paper()
        assert registry.add_paper_source(paper.id, "inspire", "1").priority == 7
        assert registry.add_paper_source(paper.id, "unknown", "1").priority == 50

    def test_malformed_metadata_decodes_to_empty(self, registry, make_paper, store):
        paper = make_paper()
        row = PaperSource(paper_id=paper.id, source="ads", source_id="X").to_dict()
        row["metadata"] = "{not json"
        store.upsert_source_row(row)

        assert registry.get_paper_sources(paper.id)[0].metadata == {}

    def test_sources_ordered_primary_then_recent(self, registry, make_paper, clock):
        paper = make_paper()
        registry.add_paper_source(paper.id, "arxiv", "a")
        clock.now += timedelta(days=1)
        registry.add_paper_source(paper.id, "inspire", "b")
        registry.add_paper_source(paper.id, "ads", "c", is_primary=True)

        assert [s.source for s in registry.get_paper_sources(paper.id)] == ["ads", "inspire", "arxiv"]


class TestBestSource:
    """Tests for reference/citation source selection."""

    def test_primary_beats_priority(self):
        sources = [link("inspire", priority=1), link("ads", priority=90, primary=True)]
        assert find_best_source_for_refs(sources).source == "ads"

    def test_lowest_priority_wins(self):
        sources = [link("arxiv", priority=30), link("inspire", priority=20)]
        assert find_best_source_for_cites(sources).source == "inspire"

    def test_ties_keep_input_order(self):
        sources = [link("first", priority=50), link("second", priority=50)]
        assert find_best_source_for_refs(sources).source == "first"

    def test_capability_filter(self):
        sources = [link("ads", priority=1, refs=False), link("inspire", priority=99)]
        assert find_best_source_for_refs(sources).source == "inspire"
        assert find_best_source_for_cites([link("x", cites=False)]) is None

    def test_empty(self):
        assert find_best_source_for_refs([]) is None


class TestImportPaper:
    def test_new_paper_gets_primary_link(self, registry, store):
        result = registry.import_paper(Paper(title="New", doi="10.1/n"), "ads", "2024X", SourceCapabilities(bibtex=True))

        assert result.is_new is True
        assert result.paper.id is not None
        sources = registry.get_paper_sources(result.paper.id)
        assert sources[0].is_primary is True

    def test_import_links_cached_edges(self, registry, graph_cache, make_paper, store):
        citing = make_paper(title="Citing paper")
        graph_cache.cache_references(citing.id, [CitationEdge(title="Cited", doi="10.1/cited")], "ads")

        result = registry.import_paper(Paper(title="Cited", doi="10.1/CITED"), "ads", "B")

        edges = graph_cache.get_cached_references(citing.id).edges
        assert edges[0].linked_paper_id == result.paper.id
        assert edges[0].in_library

    def test_duplicate_import_returns_existing(self, registry, make_paper, store):
        existing = make_paper(arxiv_id="2301.12345")
        result = registry.import_paper(Paper(arxiv_id="arXiv:2301.12345v3"), "arxiv", "2301.12345")
        assert result.is_new is False
        assert result.paper.id == existing.id
        assert len(store.get_all_papers()) == 1

    def test_reimport_from_same_source_keeps_primary(self, registry):
        first = registry.import_paper(Paper(title="Once", doi="10.1/once"), "ads", "2024Once.....1....O")
        registry.import_paper(Paper(title="Again", doi="10.1/ONCE"), "ads", "2024Once.....1....O")

        sources = registry.get_paper_sources(first.paper.id)
        assert [(s.source, s.is_primary) for s in sources] == [("ads", True)]


class TestOneRecordPerWork:
    """A work seen through two sources stays one paper with two links."""

    def test_bibcode_import_then_doi_import(self, store, config, registry, make_record):
        bibcode = "2023ApJ...1A"
        first = registry.import_paper(Paper(title="Seen by bibcode", bibcode=bibcode), "ads", bibcode)
        client = FakeRemoteClient(records=[make_record(bibcode, doi="10.3847/one-record")])
        syncer = LibrarySynchronizer(store, client, registry=registry, config=config)

        asyncio.run(syncer.sync())
        assert store.get_paper(first.paper.id).doi == "10.3847/one-record"

        second = registry.import_paper(Paper(title="Seen by DOI", doi="10.3847/ONE-RECORD"), "inspire", "2650001")

        assert second.is_new is False
        assert second.paper.id == first.paper.id
        assert len(store.get_all_papers()) == 1
        sources = registry.get_paper_sources(first.paper.id)
        assert [(s.source, s.source_id, s.is_primary) for s in sources] == [
            ("ads", bibcode, True),
            ("inspire", "2650001", False),
        ]
