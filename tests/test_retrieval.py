# tests/test_retrieval.py
"""Tests for hybrid retrieval lanes and the two rerankers."""
from __future__ import annotations

import math
import re
from typing import List

from storefront.runtime.lexical import LexicalScorer
from storefront.runtime.models import (
    CandidateRecord,
    Classification,
    ConversationContext,
    Turn,
)
from storefront.runtime.retrieval import (
    RerankConfig,
    RetrievalConfig,
    RetrievalEngine,
    classification_match,
    expand_query,
    extract_entities,
    rerank_main,
    rerank_qa,
    select_namespaces,
)
from storefront.runtime.vector_index import InMemoryVectorIndex


def _fake_embed(texts: List[str]) -> List[List[float]]:
    out = []
    for text in texts:
        vec = [0.0] * 16
        for w in re.findall(r"\w+", text.lower()):
            vec[sum(map(ord, w)) % 16] += 1.0
        norm = math.sqrt(sum(v * v for v in vec)) or 1.0
        out.append([v / norm for v in vec])
    return out


def _rec(id: str, score: float, **metadata) -> CandidateRecord:
    return CandidateRecord(id=id, score=score, metadata=metadata)


# ── Main-lane rerank ──────────────────────────────────────────────────


def test_type_match_outranks_equal_base_score():
    cls = Classification(type="product", category="discovery")
    ranked = rerank_main(
        [_rec("page-1", 0.5, type="page", handle="about-us"), _rec("prod-1", 0.5, type="product", handle="alpine")],
        cls,
        "warm jackets",
    )
    assert [r.record.id for r in ranked] == ["prod-1", "page-1"]
    assert ranked[0].rerank_score > ranked[1].rerank_score


def test_collection_boost_and_classification_match():
    cls = Classification(type="collection", category="discovery")
    coll = _rec("c1", 0.2, type="collection", category="discovery", handle="winter")
    prod = _rec("p1", 0.9, type="product", category="discovery", handle="boots")
    ranked = rerank_main([prod, coll], cls, "winter gear")
    assert ranked[0].record.id == "c1"
    assert ranked[0].classification_match == 3
    # 0.2 * 30 * (1 + 3/3 * 2)
    assert ranked[0].rerank_score == 0.2 * 30 * 3


def test_exact_title_boost_and_handle_dedupe():
    cls = Classification(type="product", category="discovery")
    records = [
        _rec("a", 0.3, type="product", handle="alpine-jacket", title="Alpine Jacket"),
        _rec("a-dup", 0.1, type="product", handle="alpine-jacket", title="Alpine Jacket"),
        _rec("b", 0.9, type="product", handle="trail-boots", title="Trail Boots"),
    ]
    ranked = rerank_main(records, cls, "alpine jacket")
    assert [r.record.id for r in ranked] == ["a", "b"]


def test_previous_answer_entity_boost_for_followups():
    cls = Classification(type="product", category="statement")
    entities = extract_entities("You might like The Alpine Jacket in our winter range.")
    ranked = rerank_main(
        [
            _rec("alpine", 0.1, type="product", title="The Alpine Jacket"),
            _rec("boots", 0.5, type="product", title="Trail Boots"),
        ],
        cls,
        "I'll take it",
        entities,
    )
    assert ranked[0].record.id == "alpine"


def test_rerank_config_is_overridable():
    cls = Classification(type="product", category="discovery")
    flat = RerankConfig(type_match_boost=1.0, classification_match_weight=0.0)
    ranked = rerank_main(
        [_rec("page", 0.6, type="page"), _rec("prod", 0.5, type="product")], cls, "x", config=flat
    )
    assert ranked[0].record.id == "page"


def test_classification_match_counts():
    cls = Classification(type="product", category="discovery", sub_category="jackets")
    assert classification_match(_rec("x", 1, type="page"), cls) == 0
    assert classification_match(_rec("x", 1, type="product", category="other", sub_category="boots"), cls) == 1
    assert classification_match(_rec("x", 1, type="product", category="discovery"), cls) == 3


# ── QA-lane rerank ────────────────────────────────────────────────────


def test_qa_dedupes_by_question_and_caps_score():
    cls = Classification(type="page", category="discovery")
    records = [
        _rec("q1", 400.0, question="What is the return window?", answer="30 days."),
        _rec("q1-copy", 1.0, question="what is the return window?", answer="30 days."),
    ]
    ranked = rerank_qa(records, cls, "return window")
    assert len(ranked) == 1
    assert ranked[0].rerank_score == 1000.0


def test_qa_metadata_forced_to_current_classification():
    cls = Classification(type="product", category="discovery")
    original = _rec("q", 1.0, type="page", category="policy", question="Do you ship abroad?", answer="Yes.")
    ranked = rerank_qa([original], cls, "ship abroad")
    assert ranked[0].record.type == "product"
    assert original.type == "page"


def test_qa_purchase_intent_prefers_checkout_answers():
    cls = Classification(type="product", category="statement")
    records = [
        _rec("info", 1.0, question="Is the jacket warm?", answer="Rated to -20C."),
        _rec("buy", 1.0, question="How do I order?", answer="Add to cart and checkout.", url="/cart"),
    ]
    ranked = rerank_qa(records, cls, "I want to buy the jacket")
    assert ranked[0].record.id == "buy"


# ── Helpers ───────────────────────────────────────────────────────────


def test_select_namespaces():
    cfg = RetrievalConfig()
    support = Classification(type="page", category="discovery", interaction_type="support")
    main, qa = select_namespaces("demo", support, "what is your return policy", cfg)
    assert main == ["demo-support", "demo-general"]
    assert qa == ["demo-support-qa", "demo-general-qa"]

    main, _ = select_namespaces("demo", support, "I want to buy a gift card", cfg)
    assert main[0] == "demo-sales"


def test_expand_query_adds_storefront_synonyms():
    assert "products" in expand_query("what stuff do you sell")
    assert expand_query("winter jackets") == "winter jackets"


# ── Engine ────────────────────────────────────────────────────────────


def _seeded_index() -> InMemoryVectorIndex:
    index = InMemoryVectorIndex()
    scorer = LexicalScorer()
    catalogue = [
        ("p-jacket", "Alpine Jacket waterproof winter jacket", {"type": "product", "handle": "alpine-jacket", "title": "Alpine Jacket"}),
        ("p-boots", "Trail Boots hiking boots", {"type": "product", "handle": "trail-boots", "title": "Trail Boots"}),
        ("p-gloves", "Summit Gloves warm winter gloves", {"type": "product", "handle": "summit-gloves", "title": "Summit Gloves"}),
        ("c-winter", "Winter Sports Collection skiing snowboarding", {"type": "collection", "handle": "winter-sports-collection", "title": "Winter Sports"}),
    ]
    for rid, text, meta in catalogue:
        index.upsert("demo-sales", rid, _fake_embed([text])[0], scorer.score(text, "index"), meta)
    for n in range(5):
        text = f"Question {n} about winter shipping"
        index.upsert(
            "demo-sales-qa",
            f"qa-{n}",
            _fake_embed([text])[0],
            scorer.score(text, "index"),
            {"question": text, "answer": f"Answer {n}"},
        )
    return index


class _FlakyIndex(InMemoryVectorIndex):
    def query(self, namespace, dense, sparse=None, top_k=20, filter=None):
        if namespace.endswith("-qa"):
            raise ConnectionError("qa index down")
        return super().query(namespace, dense, sparse, top_k, filter)


def test_engine_limits_lane_sizes():
    engine = RetrievalEngine(_seeded_index(), _fake_embed)
    cls = Classification(type="product", category="discovery", interaction_type="sales")
    result = engine.retrieve("warm winter jacket", cls, ConversationContext(), "demo")
    assert 0 < len(result.main_results) <= 2
    assert 0 < len(result.qa_results) <= 3
    assert result.errors == []
    assert result.namespaces["main"] == ["demo-sales", "demo-general"]


def test_engine_degrades_failed_lane_only():
    source = _seeded_index()
    flaky = _FlakyIndex()
    flaky._namespaces = source._namespaces
    engine = RetrievalEngine(flaky, _fake_embed)
    cls = Classification(type="collection", category="discovery", interaction_type="sales")

    result = engine.retrieve("winter gear", cls, ConversationContext(), "demo")
    assert result.qa_results == []
    assert len(result.errors) == 1 and "qa" in result.errors[0]
    assert result.main_results[0].record.id == "c-winter"


def test_engine_embedding_failure_degrades_both_lanes():
    def broken_embed(texts):
        raise TimeoutError("embedding timeout")

    engine = RetrievalEngine(_seeded_index(), broken_embed)
    cls = Classification(type="product", category="discovery")
    result = engine.retrieve("jacket", cls, ConversationContext(), "demo")
    assert result.main_results == [] and result.qa_results == []
    assert len(result.errors) == 2


def test_qa_lane_uses_prior_turns():
    seen = []

    def recording_embed(texts):
        seen.extend(texts)
        return _fake_embed(texts)

    engine = RetrievalEngine(_seeded_index(), recording_embed)
    context = ConversationContext.from_turns(
        [Turn("user", "do you ship to Norway"), Turn("assistant", "Yes, we ship worldwide.")]
    )
    cls = Classification(type="page", category="discovery", interaction_type="support")
    engine.retrieve("how long does it take", cls, context, "demo")
    assert "how long does it take do you ship to Norway Yes, we ship worldwide." in seen
