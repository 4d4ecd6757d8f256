"""Tests for the ADS client and its record adapters."""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from paper_sync import AdsClient, RemoteLookupError, SearchHints, SyncConfig
from paper_sync.sources.ads import (
    accept_candidate,
    ads_doc_to_edge,
    ads_doc_to_record,
    build_search_strategies,
    score_candidates,
)
from paper_sync.utils import AsyncHttpClient, AsyncRateLimiterRegistry, DiskCache

ADS_DOC = {
    "bibcode": "2020ApJ...900..100D",
    "title": ["Dark Matter in Dwarf Galaxies"],
    "author": ["Doe, Jane", "Smith, John"],
    "year": "2020",
    "doi": ["10.3847/1538-4357/abcd"],
    "identifier": ["2020ApJ...900..100D", "arXiv:2007.01234", "10.3847/1538-4357/abcd"],
    "pub": "The Astrophysical Journal",
    "abstract": "We study dwarfs.",
    "keyword": ["dark matter", "dwarf galaxies"],
    "citation_count": 42,
}


def make_client(handler, cache=None, **config_kwargs) -> AdsClient:
    config = SyncConfig(ads_token="secret", **config_kwargs)
    http = AsyncHttpClient(
        AsyncRateLimiterRegistry({"ads": 10_000}),
        cache=cache,
        transport=httpx.MockTransport(handler),
        backoff_start=0.0,
    )
    return AdsClient("secret", http=http, config=config)


def search_response(docs):
    return httpx.Response(200, json={"response": {"numFound": len(docs), "docs": docs}})


class TestAdapters:
    """Tests for ADS document conversion."""

    def test_doc_to_record(self):
        record = ads_doc_to_record(ADS_DOC)
        assert record.source == "ads"
        assert record.source_id == record.bibcode == "2020ApJ...900..100D"
        assert record.doi == "10.3847/1538-4357/abcd"
        assert record.arxiv_id == "2007.01234"
        assert record.title == "Dark Matter in Dwarf Galaxies"
        assert record.authors == ["Doe, Jane", "Smith, John"]
        assert record.year == 2020
        assert record.journal == "The Astrophysical Journal"
        assert record.keywords == ["dark matter", "dwarf galaxies"]
        assert record.citation_count == 42

    def test_sparse_doc(self):
        record = ads_doc_to_record({"bibcode": "2000X"})
        assert record.title == "Untitled"
        assert record.doi is None
        assert record.arxiv_id is None
        assert record.year is None
        assert record.authors == []
        assert record.citation_count == 0

    def test_doi_digits_not_taken_as_arxiv(self):
        doc = {
            "bibcode": "2019NuPhB.946k4567X",
            "identifier": ["2019NuPhB.946k4567X", "10.1016/j.nuclphysb.2019.114567", "arXiv:1907.01234"],
        }
        assert ads_doc_to_record(doc).arxiv_id == "1907.01234"
        assert ads_doc_to_edge(doc).arxiv_id == "1907.01234"

    def test_doc_to_edge(self):
        edge = ads_doc_to_edge(ADS_DOC)
        assert edge.bibcode == "2020ApJ...900..100D"
        assert edge.arxiv_id == "2007.01234"
        assert edge.year == 2020
        assert edge.linked_paper_id is None


class TestSearchStrategies:
    def test_full_hints_order(self):
        hints = SearchHints(title="Dark Matter in Dwarf Spheroidal Galaxies", first_author="Doe", year=2020)
        names = [s.name for s in build_search_strategies(hints)]
        assert names == [
            "exact_title",
            "title_words_author_year",
            "author_year_keywords",
            "author_year_only",
            "title_words_only",
        ]

    def test_queries(self):
        hints = SearchHints(title='Dark Matter: "Dwarf" Galaxies', first_author="Doe", year=2020)
        strategies = {s.name: s for s in build_search_strategies(hints)}
        assert strategies["exact_title"].query == 'title:"Dark Matter Dwarf Galaxies"'
        assert strategies["title_words_author_year"].query == 'title:(Dark Matter Dwarf Galaxies) author:"^Doe" year:2020'
        assert strategies["author_year_only"].query == 'author:"^Doe" year:2020'

    def test_title_only(self):
        names = [s.name for s in build_search_strategies(SearchHints(title="Short title here"))]
        assert names == ["exact_title", "title_words_author_year"]

    def test_author_year_only(self):
        names = [s.name for s in build_search_strategies(SearchHints(first_author="Doe", year=2020))]
        assert names == ["author_year_only"]

    def test_author_year_confirmation(self):
        hints = SearchHints(title="Galaxy rotation", first_author="Rubin", year=1970)
        docs = [{"title": ["Rotation of the Andromeda Nebula"], "author": ["Rubin, V. C."], "year": "1970"}]
        best = score_candidates(docs, hints)[0]
        strategy = build_search_strategies(hints)[0]
        assert best.similarity < strategy.min_similarity
        assert best.author_match and best.year_match
        assert accept_candidate(best, strategy)


class TestAdsClient:
    """Tests for AdsClient against a mocked transport."""

    def test_search_sends_token_and_params(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return search_response([ADS_DOC])

        record = asyncio.run(make_client(handler).get_by_doi("10.3847/1538-4357/abcd"))

        assert record.bibcode == "2020ApJ...900..100D"
        request = seen[0]
        assert request.headers["Authorization"] == "Bearer secret"
        assert request.url.path == "/v1/search/query"
        assert request.url.params["q"] == 'doi:"10.3847/1538-4357/abcd"'
        assert request.url.params["rows"] == "1"
        assert "citation_count" in request.url.params["fl"]

    def test_get_by_arxiv_strips_prefix(self):
        seen = []

        def handler(request):
            seen.append(request.url.params["q"])
            return search_response([])

        assert asyncio.run(make_client(handler).get_by_arxiv("arXiv:2007.01234")) is None
        assert seen == ["arxiv:2007.01234"]

    def test_bibcodes_are_batched(self):
        queries = []

        def handler(request):
            queries.append(request.url.params["q"])
            return search_response([ADS_DOC])

        records = asyncio.run(make_client(handler, bibcode_batch_size=2).get_by_bibcodes(["A", "B", " C "]))

        assert queries == ['bibcode:"A" OR bibcode:"B"', 'bibcode:"C"']
        assert len(records) == 2

    def test_all_batches_failing_raises(self):
        def handler(request):
            return httpx.Response(401, json={"error": "Unauthorized"})

        with pytest.raises(RemoteLookupError):
            asyncio.run(make_client(handler).get_by_bibcodes(["A"]))

    def test_partial_batch_failure_keeps_results(self):
        calls = []

        def handler(request):
            calls.append(1)
            if len(calls) == 1:
                return httpx.Response(400, json={})
            return search_response([ADS_DOC])

        records = asyncio.run(make_client(handler, bibcode_batch_size=1).get_by_bibcodes(["A", "B"]))
        assert len(records) == 1

    def test_retry_on_server_error(self):
        calls = []

        def handler(request):
            calls.append(1)
            if len(calls) < 3:
                return httpx.Response(503)
            return search_response([ADS_DOC])

        record = asyncio.run(make_client(handler).get_by_bibcode("2020ApJ...900..100D"))
        assert record is not None
        assert len(calls) == 3

    def test_export_posts_bibcodes(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"msg": "ok", "export": "@ARTICLE{2020ApJ...900..100D,}"})

        text = asyncio.run(make_client(handler).export_citations(["2020ApJ...900..100D"]))

        assert text.startswith("@ARTICLE")
        assert seen[0].method == "POST"
        assert seen[0].url.path == "/v1/export/bibtex"
        assert json.loads(seen[0].content) == {"bibcode": ["2020ApJ...900..100D"]}

    def test_export_nothing(self):
        def handler(request):
            raise AssertionError("no request expected")

        assert asyncio.run(make_client(handler).export_citations([])) == ""

    def test_references_and_citations_queries(self):
        seen = []

        def handler(request):
            seen.append((request.url.params["q"], request.url.params["rows"]))
            return search_response([ADS_DOC])

        client = make_client(handler)

        async def fetch():
            async with client.http:
                return (
                    await client.get_references("2020ApJ...900..100D"),
                    await client.get_citations("2020ApJ...900..100D"),
                )

        refs, cites = asyncio.run(fetch())

        assert refs[0].bibcode == cites[0].bibcode == "2020ApJ...900..100D"
        assert seen == [
            ('references(bibcode:"2020ApJ...900..100D")', "500"),
            ('citations(bibcode:"2020ApJ...900..100D")', "50"),
        ]

    def test_graph_queries_skip_response_cache(self, tmp_path):
        queries = []

        def handler(request):
            queries.append(request.url.params["q"])
            return search_response([ADS_DOC])

        client = make_client(handler, cache=DiskCache(str(tmp_path / "responses.json")))

        async def fetch_twice():
            async with client.http:
                for _ in range(2):
                    await client.get_by_bibcode("2020ApJ...900..100D")
                    await client.get_references("2020ApJ...900..100D")
                    await client.get_citations("2020ApJ...900..100D")

        asyncio.run(fetch_twice())

        assert queries.count('bibcode:"2020ApJ...900..100D"') == 1
        assert queries.count('references(bibcode:"2020ApJ...900..100D")') == 2
        assert queries.count('citations(bibcode:"2020ApJ...900..100D")') == 2

    def test_smart_search_accepts_first_good_strategy(self):
        queries = []

        def handler(request):
            queries.append(request.url.params["q"])
            assert request.url.params["sort"] == "score desc"
            return search_response([ADS_DOC])

        hints = SearchHints(title="Dark Matter in Dwarf Galaxies", first_author="Doe", year=2020)
        record = asyncio.run(make_client(handler).smart_search(hints))

        assert record.bibcode == "2020ApJ...900..100D"
        assert queries == ['title:"Dark Matter in Dwarf Galaxies"']

    def test_smart_search_rejects_poor_matches(self):
        queries = []

        def handler(request):
            queries.append(request.url.params["q"])
            return search_response([{"bibcode": "1999X", "title": ["Completely unrelated topic"], "year": "1999"}])

        hints = SearchHints(title="Dark Matter in Dwarf Galaxies", first_author="Doe", year=2020)
        assert asyncio.run(make_client(handler).smart_search(hints)) is None
        assert len(queries) == len(build_search_strategies(hints))

    def test_smart_search_all_failing_raises(self):
        def handler(request):
            return httpx.Response(401)

        with pytest.raises(RemoteLookupError):
            asyncio.run(make_client(handler).smart_search(SearchHints(first_author="Doe", year=2020)))

    def test_credentials(self):
        assert AdsClient("t", config=SyncConfig(ads_token="t")).has_credentials
        assert not AdsClient("", config=SyncConfig(ads_token="x")).has_credentials
