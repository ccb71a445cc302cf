# storefront/runtime/retrieval.py
"""
Hybrid retrieval and reranking.

Two lanes run concurrently for every turn:

  main lane   catalogue content (products, collections, posts, pages,
              discounts) queried with the raw utterance
  QA lane     question/answer exemplars queried with the utterance plus
              the last prior turns

Each lane builds a dense embedding and a lexical sparse vector at the same
time, queries the hybrid index, then applies its own multiplicative rerank.
A failing lane degrades to an empty list; the other lane is unaffected.
"""
from __future__ import annotations

import logging
import re
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Sequence, Tuple

from storefront.runtime.embeddings import EmbedFn, scale_hybrid
from storefront.runtime.errors import RetrievalError
from storefront.runtime.lexical import LexicalScorer
from storefront.runtime.models import (
    CandidateRecord,
    Classification,
    ConversationContext,
    RankedCandidate,
    SparseVector,
)
from storefront.runtime.vector_index import VectorIndex

logger = logging.getLogger(__name__)

_WORD = re.compile(r"\w+")
_ENTITY = re.compile(r"\b[A-Z][\w'-]*(?:\s+[A-Z0-9][\w'-]*){0,3}")
_SHOPPING = re.compile(
    r"\b(?:buy|purchase|shop|shopping|price|prices|cost|sale|deal|deals|in stock|add to cart|sell|selling)\b",
    re.IGNORECASE,
)

QA_STOP_TERMS = frozenset(
    {"what", "how", "where", "when", "why", "do", "does", "is", "are", "the", "a", "an", "it", "this", "that"}
)
CHECKOUT_TERMS = ("buy", "purchase", "checkout", "order", "get it", "add to cart")
FOLLOWUP_CATEGORIES = ("statement", "cart_action")
PURCHASE_CATEGORIES = ("statement", "intent_signal")

# Generic storefront vocabulary, expanded on the sparse side only.
GENERIC_SYNONYMS: Dict[str, Tuple[str, ...]] = {
    "stuff": ("products", "items", "parts", "catalog", "collections"),
    "things": ("products", "items", "parts"),
    "have": ("sell", "offer", "stock", "carry"),
    "sell": ("offer", "stock", "carry"),
    "inventory": ("stock", "products", "catalog"),
}


# ── Config ───────────────────────────────────────────────────────────


@dataclass
class RerankConfig:
    """Multipliers for both lanes. Override per deployment."""

    collection_match_boost: float = 30.0  # classification and item both collections
    type_match_boost: float = 3.0
    classification_match_weight: float = 2.0  # score *= 1 + match/3 * weight
    exact_title_boost: float = 100.0
    partial_title_boost: float = 10.0
    entity_followup_boost: float = 50.0  # product statement / cart_action follow-ups
    entity_boost: float = 10.0

    qa_term_overlap_weight: float = 2.0
    qa_checkout_boost: float = 3.0
    qa_url_boost: float = 2.0
    qa_entity_followup_boost: float = 5.0
    qa_entity_boost: float = 2.0
    qa_score_cap: float = 1000.0


@dataclass
class RetrievalConfig:
    top_k: int = 20
    main_limit: int = 2
    qa_limit: int = 3
    qa_history_turns: int = 2
    hybrid_alpha: float = 0.5
    expand_query: bool = True
    # interaction type -> namespace suffixes searched
    namespace_groups: Dict[str, Tuple[str, ...]] = field(
        default_factory=lambda: {
            "sales": ("sales", "general"),
            "support": ("support", "general"),
            "discounts": ("discounts", "sales"),
            "noneSpecified": ("sales", "support", "discounts", "general"),
        }
    )
    rerank: RerankConfig = field(default_factory=RerankConfig)


@dataclass
class RetrievalResult:
    main_results: List[RankedCandidate] = field(default_factory=list)
    qa_results: List[RankedCandidate] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    namespaces: Dict[str, List[str]] = field(default_factory=dict)
    timings: Dict[str, int] = field(default_factory=dict)


# ── Pure helpers ─────────────────────────────────────────────────────


def extract_entities(text: str) -> List[str]:
    """Capitalized runs of one to four words, e.g. product names in the last answer."""
    seen: Dict[str, None] = {}
    for match in _ENTITY.finditer(text or ""):
        entity = match.group(0).strip()
        if len(entity) >= 3:
            seen.setdefault(entity, None)
    return list(seen)


def expand_query(text: str) -> str:
    extra: List[str] = []
    for token in _WORD.findall((text or "").lower()):
        extra.extend(GENERIC_SYNONYMS.get(token, ()))
    return f"{text} {' '.join(extra)}".strip() if extra else text


def select_namespaces(
    site_id: str, classification: Classification, utterance: str, config: RetrievalConfig
) -> Tuple[List[str], List[str]]:
    interaction = classification.interaction_type or "noneSpecified"
    if _SHOPPING.search(utterance or ""):
        interaction = "sales"
    elif interaction == "noneSpecified" and classification.type in ("product", "collection"):
        interaction = "sales"
    suffixes = config.namespace_groups.get(interaction) or config.namespace_groups["noneSpecified"]
    main = [f"{site_id}-{s}" for s in suffixes]
    return main, [f"{ns}-qa" for ns in main]


def classification_match(record: CandidateRecord, classification: Classification) -> int:
    """0..3: type, then category, then sub-category (general or missing counts)."""
    if record.type != classification.type:
        return 0
    match = 1
    if record.category == classification.category:
        match += 1
    if (
        not record.sub_category
        or classification.sub_category == "general"
        or record.sub_category == classification.sub_category
    ):
        match += 1
    return match


def _is_followup(classification: Classification) -> bool:
    return classification.type == "product" and classification.category in FOLLOWUP_CATEGORIES


def _dedupe(records: Sequence[CandidateRecord], key) -> List[CandidateRecord]:
    best: Dict[str, CandidateRecord] = {}
    for rec in records:
        k = key(rec)
        if k not in best or rec.score > best[k].score:
            best[k] = rec
    return list(best.values())


def _ordered(ranked: List[RankedCandidate]) -> List[RankedCandidate]:
    ranked.sort(key=lambda r: (-r.rerank_score, -r.record.score, r.record.id))
    return ranked


def rerank_main(
    records: Sequence[CandidateRecord],
    classification: Classification,
    utterance: str,
    entities: Sequence[str] = (),
    config: Optional[RerankConfig] = None,
) -> List[RankedCandidate]:
    cfg = config or RerankConfig()
    query = (utterance or "").strip().lower()
    lowered_entities = [e.lower() for e in entities]

    ranked: List[RankedCandidate] = []
    for rec in _dedupe(records, key=lambda r: r.handle or r.id):
        score = rec.score
        match = classification_match(rec, classification)

        if classification.type == "collection" and rec.type == "collection":
            score *= cfg.collection_match_boost
        elif rec.type == classification.type:
            score *= cfg.type_match_boost
        score *= 1 + (match / 3) * cfg.classification_match_weight

        if rec.type == "product":
            name = (rec.title or "").strip().lower()
            if name and name == query:
                score *= cfg.exact_title_boost
            elif name and query and (name in query or query in name):
                score *= cfg.partial_title_boost
            if name and name in lowered_entities:
                score *= cfg.entity_followup_boost if _is_followup(classification) else cfg.entity_boost

        ranked.append(RankedCandidate(record=rec, rerank_score=score, classification_match=match))
    return _ordered(ranked)


def rerank_qa(
    records: Sequence[CandidateRecord],
    classification: Classification,
    utterance: str,
    entities: Sequence[str] = (),
    config: Optional[RerankConfig] = None,
) -> List[RankedCandidate]:
    cfg = config or RerankConfig()
    query = (utterance or "").lower()
    terms = [t for t in _WORD.findall(query) if t not in QA_STOP_TERMS]
    lowered_entities = [e.lower() for e in entities]
    purchase_intent = (
        classification.type == "product"
        and classification.category in PURCHASE_CATEGORIES
        and "buy" in query
    )

    # QA exemplars are measured against the current request, not their stored labels.
    forced = [
        replace(
            rec,
            metadata={
                **rec.metadata,
                "type": classification.type,
                "category": classification.category,
                "sub_category": classification.sub_category,
            },
        )
        for rec in records
    ]

    ranked: List[RankedCandidate] = []
    for rec in _dedupe(forced, key=lambda r: (r.question or r.id).strip().lower()):
        match = classification_match(rec, classification)
        score = rec.score * (1 + (match / 3) * cfg.classification_match_weight)

        qa_text = f"{rec.question or ''} {rec.answer or ''}".lower()
        overlap = sum(1 for t in terms if t in qa_text) / len(terms) if terms else 0.0
        score *= 1 + overlap * cfg.qa_term_overlap_weight

        if purchase_intent:
            if any(w in qa_text for w in CHECKOUT_TERMS):
                score *= cfg.qa_checkout_boost
            if rec.url:
                score *= cfg.qa_url_boost

        if any(e in qa_text for e in lowered_entities):
            score *= cfg.qa_entity_followup_boost if _is_followup(classification) else cfg.qa_entity_boost

        score = min(score, cfg.qa_score_cap)
        ranked.append(RankedCandidate(record=rec, rerank_score=score, classification_match=match))
    return _ordered(ranked)


# ── Engine ───────────────────────────────────────────────────────────


class RetrievalEngine:
    def __init__(
        self,
        index: VectorIndex,
        embed_fn: EmbedFn,
        scorer: Optional[LexicalScorer] = None,
        config: Optional[RetrievalConfig] = None,
    ):
        self.index = index
        self.embed_fn = embed_fn
        self.scorer = scorer or LexicalScorer()
        self.config = config or RetrievalConfig()

    def retrieve(
        self,
        utterance: str,
        classification: Classification,
        context: Optional[ConversationContext] = None,
        site_id: str = "",
    ) -> RetrievalResult:
        context = context or ConversationContext()
        main_ns, qa_ns = select_namespaces(site_id, classification, utterance, self.config)
        entities = extract_entities(context.last_answer or "")
        result = RetrievalResult(namespaces={"main": main_ns, "qa": qa_ns})

        started = time.perf_counter()
        with ThreadPoolExecutor(max_workers=2) as pool:
            main_future = pool.submit(self._main_lane, utterance, classification, entities, main_ns)
            qa_future = pool.submit(self._qa_lane, utterance, classification, context, entities, qa_ns)
            result.main_results = self._settle("main", main_future, result.errors)
            result.qa_results = self._settle("qa", qa_future, result.errors)
        result.timings["retrieval_ms"] = int((time.perf_counter() - started) * 1000)

        logger.info(
            "[RETRIEVE] main=%d qa=%d namespaces=%s errors=%d",
            len(result.main_results),
            len(result.qa_results),
            main_ns,
            len(result.errors),
        )
        return result

    @staticmethod
    def _settle(lane: str, future: Future, errors: List[str]) -> List[RankedCandidate]:
        try:
            return future.result()
        except RetrievalError as e:
            logger.warning("[RETRIEVE] %s lane degraded: %s", lane, e)
            errors.append(f"RetrievalError: {e}")
            return []

    def query_vectors(self, text: str, lane: str) -> Tuple[List[float], SparseVector]:
        """Dense and sparse query vectors, built concurrently and alpha-scaled."""
        sparse_text = expand_query(text) if self.config.expand_query else text
        try:
            with ThreadPoolExecutor(max_workers=2) as pool:
                dense_future = pool.submit(self.embed_fn, [text])
                sparse_future = pool.submit(self.scorer.score, sparse_text, "query")
                dense_vecs = dense_future.result()
                sparse = sparse_future.result()
        except Exception as e:
            raise RetrievalError(lane, f"query vectors failed: {e}") from e
        if not dense_vecs or not dense_vecs[0]:
            raise RetrievalError(lane, "embedding service returned no vector")
        return scale_hybrid(dense_vecs[0], sparse, self.config.hybrid_alpha)

    def _search(
        self, lane: str, namespaces: List[str], dense: List[float], sparse: SparseVector
    ) -> List[CandidateRecord]:
        hits: List[CandidateRecord] = []
        for ns in namespaces:
            try:
                hits.extend(self.index.query(ns, dense, sparse, top_k=self.config.top_k))
            except Exception as e:
                raise RetrievalError(lane, f"index query on {ns} failed: {e}") from e
        return hits

    def _main_lane(
        self,
        utterance: str,
        classification: Classification,
        entities: List[str],
        namespaces: List[str],
    ) -> List[RankedCandidate]:
        queries = [utterance]
        if classification.type == "collection":
            queries.append(f"{utterance} collection")

        hits: List[CandidateRecord] = []
        for q in queries:
            dense, sparse = self.query_vectors(q, "main")
            hits.extend(self._search("main", namespaces, dense, sparse))

        merged = _dedupe(hits, key=lambda r: r.id)
        ranked = rerank_main(merged, classification, utterance, entities, self.config.rerank)
        return ranked[: self.config.main_limit]

    def _qa_lane(
        self,
        utterance: str,
        classification: Classification,
        context: ConversationContext,
        entities: List[str],
        namespaces: List[str],
    ) -> List[RankedCandidate]:
        history = context.recent_text(self.config.qa_history_turns)
        enhanced = " ".join([utterance, *history]).strip()
        dense, sparse = self.query_vectors(enhanced, "qa")
        hits = self._search("qa", namespaces, dense, sparse)
        ranked = rerank_qa(hits, classification, utterance, entities, self.config.rerank)
        return ranked[: self.config.qa_limit]
