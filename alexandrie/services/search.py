"""
In-process full-text search over crates.

Each crate is indexed in several fields with their own weight; a query is
scored with BM25 per field and the weighted field scores are summed.

    name_full    the whole canonical name, matched against the whole query
    name         name tokens (`serde_json` -> `serde`, `json`)
    name_prefix  prefixes of the name and its tokens, for search-as-you-type
    keywords     crate keywords
    description  description tokens without stop words
"""

from __future__ import annotations

import logging
import math
import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set, Tuple

from alexandrie.domain.crate_utils import canonical_name
from alexandrie.domain.models import SearchDocument
from alexandrie.services.locks import ReadWriteLock

logger = logging.getLogger(__name__)

FIELD_WEIGHTS: Dict[str, float] = {
    "name_full": 10.0,
    "name": 5.0,
    "name_prefix": 1.0,
    "keywords": 0.5,
    "description": 0.2,
}

MIN_PREFIX = 2

STOP_WORDS = frozenset(
    "a an and are as at be but by for from has have in into is it its of on or "
    "that the this to was were will with".split()
)

_TOKEN_RE = re.compile(r"[a-z0-9]+")


def tokenize(text: Optional[str]) -> List[str]:
    if not text:
        return []
    return _TOKEN_RE.findall(text.lower())


def _prefixes(word: str) -> List[str]:
    return [word[:i] for i in range(MIN_PREFIX, len(word) + 1)]


def _analyze(doc: SearchDocument) -> Dict[str, List[str]]:
    canon = canonical_name(doc.name)
    name_tokens = tokenize(doc.name)
    prefixes: List[str] = _prefixes(canon)
    for token in name_tokens:
        prefixes.extend(_prefixes(token))
    return {
        "name_full": [canon],
        "name": name_tokens,
        "name_prefix": prefixes,
        "keywords": [t for kw in doc.keywords for t in tokenize(kw)],
        "description": [t for t in tokenize(doc.description) if t not in STOP_WORDS],
    }


@dataclass
class _Entry:
    name: str
    terms: Dict[str, Counter] = field(default_factory=dict)
    lengths: Dict[str, int] = field(default_factory=dict)


@dataclass
class SearchResults:
    total: int
    hits: List[Tuple[int, float]]


class SearchEngine:
    def __init__(self, k1: float = 1.2, b: float = 0.75):
        self.k1 = k1
        self.b = b
        self._lock = ReadWriteLock()
        self._entries: Dict[int, _Entry] = {}
        self._postings: Dict[str, Dict[str, Set[int]]] = {f: {} for f in FIELD_WEIGHTS}
        self._total_length: Dict[str, int] = {f: 0 for f in FIELD_WEIGHTS}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, crate_id: int) -> bool:
        return crate_id in self._entries

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _drop(self, crate_id: int) -> None:
        entry = self._entries.pop(crate_id, None)
        if entry is None:
            return
        for fname, counts in entry.terms.items():
            postings = self._postings[fname]
            for term in counts:
                ids = postings.get(term)
                if ids is not None:
                    ids.discard(crate_id)
                    if not ids:
                        del postings[term]
            self._total_length[fname] -= entry.lengths[fname]

    def _add(self, doc: SearchDocument) -> None:
        entry = _Entry(name=doc.name)
        for fname, terms in _analyze(doc).items():
            counts = Counter(terms)
            entry.terms[fname] = counts
            entry.lengths[fname] = len(terms)
            self._total_length[fname] += len(terms)
            postings = self._postings[fname]
            for term in counts:
                postings.setdefault(term, set()).add(doc.crate_id)
        self._entries[doc.crate_id] = entry

    def index(self, doc: SearchDocument) -> None:
        """Add or replace the document of a crate."""
        with self._lock.write():
            self._drop(doc.crate_id)
            self._add(doc)

    def remove(self, crate_id: int) -> None:
        with self._lock.write():
            self._drop(crate_id)

    def rebuild(self, docs: Iterable[SearchDocument]) -> None:
        with self._lock.write():
            self._entries.clear()
            for fname in FIELD_WEIGHTS:
                self._postings[fname] = {}
                self._total_length[fname] = 0
            for doc in docs:
                self._add(doc)
        logger.info(f"Search index rebuilt with {len(self._entries)} crates")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _field_score(self, fname: str, term: str, scores: Dict[int, float]) -> None:
        ids = self._postings[fname].get(term)
        if not ids:
            return
        n = len(self._entries)
        avg_len = self._total_length[fname] / n if n else 0.0
        idf = math.log(1.0 + (n - len(ids) + 0.5) / (len(ids) + 0.5))
        weight = FIELD_WEIGHTS[fname]
        for crate_id in ids:
            entry = self._entries[crate_id]
            tf = entry.terms[fname][term]
            length = entry.lengths[fname]
            norm = 1.0 - self.b + self.b * (length / avg_len if avg_len else 0.0)
            scores[crate_id] = scores.get(crate_id, 0.0) + weight * idf * (tf * (self.k1 + 1.0)) / (tf + self.k1 * norm)

    def search(self, query: str, limit: int = 10, offset: int = 0) -> SearchResults:
        tokens = tokenize(query)
        if not tokens:
            return SearchResults(total=0, hits=[])

        with self._lock.read():
            scores: Dict[int, float] = {}
            self._field_score("name_full", "_".join(tokens), scores)
            for token in tokens:
                self._field_score("name", token, scores)
                self._field_score("name_prefix", token, scores)
                self._field_score("keywords", token, scores)
                if token not in STOP_WORDS:
                    self._field_score("description", token, scores)
            ranked = sorted(scores.items(), key=lambda kv: (-kv[1], self._entries[kv[0]].name))

        return SearchResults(total=len(ranked), hits=ranked[offset:offset + limit])

    def suggest(self, query: str, limit: int = 10) -> List[str]:
        """Crate names starting with `query`, shortest first."""
        prefix = canonical_name(query.strip())
        if not prefix:
            return []
        with self._lock.read():
            names = [e.name for e in self._entries.values() if canonical_name(e.name).startswith(prefix)]
        return sorted(names, key=lambda n: (len(n), n))[:limit]
