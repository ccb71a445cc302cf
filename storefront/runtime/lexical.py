# storefront/runtime/lexical.py
"""
Lexical scorer: BM25-style sparse vectors for hybrid retrieval.

Term statistics come from a LexicalStatsBackend. Every call analyses the text
inside its own short-lived scratch index, so the text is scored as a corpus
of one document (idf with N=1, df=1). That approximation is what the stored
document vectors were built with, so query vectors must keep it too.

Term indices are stable FNV-1a hashes into a large feature space, which keeps
query and document vectors aligned without a shared vocabulary.
"""
from __future__ import annotations

import logging
import math
import re
import threading
import time
import uuid
from collections import Counter
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, Iterator, List, Protocol, Tuple, runtime_checkable

from nltk.stem.porter import PorterStemmer

from storefront.runtime.models import SparseVector

logger = logging.getLogger(__name__)

_WORD = re.compile(r"\w+", re.UNICODE)

# Lucene's default English stop set.
ENGLISH_STOP_WORDS = frozenset(
    {
        "a", "an", "and", "are", "as", "at", "be", "but", "by", "for", "if", "in",
        "into", "is", "it", "no", "not", "of", "on", "or", "such", "that", "the",
        "their", "then", "there", "these", "they", "this", "to", "was", "will", "with",
    }
)

_FNV_OFFSET = 0x811C9DC5
_FNV_PRIME = 0x01000193


@dataclass
class LexicalConfig:
    """Tunables for the BM25 approximation."""

    k1: float = 1.2
    b: float = 0.75
    query_max_terms: int = 1000
    index_max_terms: int = 32000
    feature_space: int = 2_000_003  # index 0 is reserved
    min_word_length: int = 2
    min_gram: int = 3
    max_gram: int = 4


def fnv1a32(term: str) -> int:
    h = _FNV_OFFSET
    for byte in term.encode("utf-8"):
        h ^= byte
        h = (h * _FNV_PRIME) & 0xFFFFFFFF
    return h


def hash_term(term: str, feature_space: int) -> int:
    return (fnv1a32(term) % (feature_space - 1)) + 1


# ── Analyzer ─────────────────────────────────────────────────────────


class Analyzer:
    """lowercase -> stop -> porter stem -> unique -> n-gram augmentation."""

    def __init__(self, min_word_length: int = 2, min_gram: int = 3, max_gram: int = 4):
        self.min_word_length = min_word_length
        self.min_gram = min_gram
        self.max_gram = max_gram
        self._stemmer = PorterStemmer()

    def stems(self, text: str) -> List[str]:
        out: List[str] = []
        seen = set()
        for token in _WORD.findall((text or "").lower()):
            if token in ENGLISH_STOP_WORDS:
                continue
            stem = self._stemmer.stem(token)
            if len(stem) < self.min_word_length or stem in seen:
                continue
            seen.add(stem)
            out.append(stem)
        return out

    def analyze(self, text: str) -> List[str]:
        terms: List[str] = []
        for stem in self.stems(text):
            terms.append(stem)
            for n in range(self.min_gram, self.max_gram + 1):
                if len(stem) <= n:
                    continue
                terms.extend(stem[i : i + n] for i in range(len(stem) - n + 1))
        return terms


# ── Statistics backend ───────────────────────────────────────────────


@dataclass(frozen=True)
class TermStats:
    term_freq: int
    doc_freq: int


@runtime_checkable
class LexicalStatsBackend(Protocol):
    """Term-statistics service with named, disposable indices."""

    def create_index(self, name: str) -> None: ...

    def index_document(self, name: str, text: str) -> None: ...

    def term_vectors(self, name: str, text: str) -> Dict[str, TermStats]: ...

    def delete_index(self, name: str) -> None: ...


class InProcessStatsBackend:
    """Thread-safe in-process backend keyed by index name."""

    def __init__(self, analyzer: Analyzer | None = None) -> None:
        self.analyzer = analyzer or Analyzer()
        self._indices: Dict[str, List[Counter]] = {}
        self._lock = threading.Lock()

    def create_index(self, name: str) -> None:
        with self._lock:
            if name in self._indices:
                raise ValueError(f"index already exists: {name}")
            self._indices[name] = []

    def index_document(self, name: str, text: str) -> None:
        doc = Counter(self.analyzer.analyze(text))
        with self._lock:
            if name not in self._indices:
                raise KeyError(f"no such index: {name}")
            self._indices[name].append(doc)

    def term_vectors(self, name: str, text: str) -> Dict[str, TermStats]:
        tf = Counter(self.analyzer.analyze(text))
        with self._lock:
            if name not in self._indices:
                raise KeyError(f"no such index: {name}")
            docs = list(self._indices[name])
        stats: Dict[str, TermStats] = {}
        for term, freq in tf.items():
            df = sum(1 for d in docs if term in d)
            stats[term] = TermStats(term_freq=freq, doc_freq=max(df, 1))
        return stats

    def delete_index(self, name: str) -> None:
        with self._lock:
            self._indices.pop(name, None)

    def exists(self, name: str) -> bool:
        with self._lock:
            return name in self._indices


@contextmanager
def scratch_index(backend: LexicalStatsBackend) -> Iterator[str]:
    """Create a uniquely named index and always delete it afterwards."""
    name = f"temp-analysis-{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"
    backend.create_index(name)
    try:
        yield name
    finally:
        try:
            backend.delete_index(name)
        except Exception as e:
            logger.warning("[LEXICAL] failed to delete scratch index %s: %s", name, e)


# ── Scorer ───────────────────────────────────────────────────────────


class LexicalScorer:
    """Turns text into a normalized sparse term-weight vector."""

    def __init__(self, backend: LexicalStatsBackend | None = None, config: LexicalConfig | None = None):
        self.config = config or LexicalConfig()
        self.backend = backend or InProcessStatsBackend(
            Analyzer(self.config.min_word_length, self.config.min_gram, self.config.max_gram)
        )

    def score(self, text: str, mode: str = "query") -> SparseVector:
        if mode not in ("query", "index"):
            raise ValueError(f"unknown scoring mode: {mode}")
        if not (text or "").strip():
            return SparseVector.degenerate()

        max_terms = self.config.query_max_terms if mode == "query" else self.config.index_max_terms
        try:
            with scratch_index(self.backend) as name:
                self.backend.index_document(name, text)
                stats = self.backend.term_vectors(name, text)
        except Exception as e:
            logger.warning("[LEXICAL] term statistics unavailable, using fallback vector: %s", e)
            return SparseVector.degenerate()

        return self.weigh(stats, max_terms)

    def weigh(self, stats: Dict[str, TermStats], max_terms: int) -> SparseVector:
        cfg = self.config
        doc_len = sum(s.term_freq for s in stats.values())
        if doc_len == 0:
            return SparseVector.degenerate()
        avg_doc_len = float(doc_len)
        total_docs = 1

        scored: List[Tuple[str, float]] = []
        for term, s in stats.items():
            idf = math.log(1 + (total_docs - s.doc_freq + 0.5) / (s.doc_freq + 0.5))
            tf = s.term_freq
            weight = idf * tf * (cfg.k1 + 1) / (tf + cfg.k1 * (1 - cfg.b + cfg.b * doc_len / avg_doc_len))
            if weight > 0:
                scored.append((term, weight))

        if not scored:
            return SparseVector.degenerate()

        scored.sort(key=lambda kv: (-kv[1], kv[0]))
        scored = scored[:max_terms]

        by_index: Dict[int, float] = {}
        for term, weight in scored:
            idx = hash_term(term, cfg.feature_space)
            by_index[idx] = by_index.get(idx, 0.0) + weight

        ordered = sorted(by_index.items(), key=lambda kv: (-kv[1], kv[0]))
        top = ordered[0][1]
        return SparseVector(
            indices=[i for i, _ in ordered],
            values=[w / top for _, w in ordered],
        )
