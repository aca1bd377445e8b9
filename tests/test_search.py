import pytest

from alexandrie.domain.models import SearchDocument
from alexandrie.services.search import SearchEngine, tokenize


def doc(crate_id, name, description=None, keywords=()):
    return SearchDocument(crate_id=crate_id, name=name, description=description, keywords=list(keywords))


@pytest.fixture
def engine():
    engine = SearchEngine()
    engine.rebuild(
        [
            doc(1, "serde", "A generic serialization framework", ["serialization", "no_std"]),
            doc(2, "serde_json", "A JSON serialization file format", ["json", "serde"]),
            doc(3, "json", "JSON implementation in Rust", ["json"]),
            doc(4, "tokio", "An event-driven, non-blocking I/O platform", ["async", "io"]),
            doc(5, "tokio-util", "Additional utilities for working with Tokio", ["async"]),
        ]
    )
    return engine


def names(engine, results):
    return [engine._entries[crate_id].name for crate_id, _ in results.hits]


class TestTokenize:
    def test_splits_on_punctuation(self):
        assert tokenize("Serde-JSON_rs, v2") == ["serde", "json", "rs", "v2"]

    def test_empty(self):
        assert tokenize(None) == []
        assert tokenize("  ") == []


class TestSearch:
    def test_exact_name_ranks_first(self, engine):
        assert names(engine, engine.search("json"))[0] == "json"
        assert names(engine, engine.search("serde"))[0] == "serde"

    def test_multi_word_query_matches_full_name(self, engine):
        assert names(engine, engine.search("serde json"))[0] == "serde_json"
        assert names(engine, engine.search("tokio util"))[0] == "tokio-util"

    def test_prefix(self, engine):
        assert set(names(engine, engine.search("tok"))) == {"tokio", "tokio-util"}

    def test_description_and_keywords(self, engine):
        assert "tokio" in names(engine, engine.search("platform"))
        assert "tokio-util" in names(engine, engine.search("async"))

    def test_stop_words_only(self, engine):
        assert engine.search("the").total == 0
        assert engine.search("").total == 0

    def test_paging(self, engine):
        everything = engine.search("json")
        page = engine.search("json", limit=1, offset=1)
        assert page.total == everything.total
        assert page.hits == everything.hits[1:2]

    def test_reindex_replaces(self, engine):
        engine.index(doc(3, "json", "Rust object notation"))
        assert 3 not in [crate_id for crate_id, _ in engine.search("implementation").hits]
        assert len(engine) == 5

    def test_remove(self, engine):
        engine.remove(1)
        assert 1 not in engine
        assert "serde" not in names(engine, engine.search("serde"))


class TestSuggest:
    def test_prefix_shortest_first(self, engine):
        assert engine.suggest("tok") == ["tokio", "tokio-util"]

    def test_dash_and_underscore_equivalent(self, engine):
        assert engine.suggest("serde-j") == ["serde_json"]

    def test_limit(self, engine):
        assert engine.suggest("s", limit=1) == ["serde"]
        assert engine.suggest("   ") == []
