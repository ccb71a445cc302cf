# tests/test_classifier.py
"""Tests for the intent classifier: heuristics, continuity and schema checks."""
from __future__ import annotations

import json

import pytest

from storefront.runtime.classifier import (
    ACTION_PROMPT,
    CONTENT_PROMPT,
    IntentClassifier,
    detect_signals,
)
from storefront.runtime.errors import ClassificationError, UpstreamUnavailable
from storefront.runtime.models import ConversationContext, Turn


def _fake_complete(content=None, action=None):
    content = content if content is not None else {
        "type": "page",
        "category": "discovery",
        "sub-category": "general",
        "interaction_type": "support",
    }
    action = action if action is not None else {"action_intent": "none", "context_dependency": "low"}
    calls = []

    def complete(system_prompt: str, user_prompt: str) -> str:
        calls.append((system_prompt, user_prompt))
        if system_prompt == CONTENT_PROMPT:
            return content if isinstance(content, str) else json.dumps(content)
        assert system_prompt == ACTION_PROMPT
        return action if isinstance(action, str) else json.dumps(action)

    complete.calls = calls
    return complete


def _orders_context() -> ConversationContext:
    return ConversationContext.from_turns(
        [
            Turn("user", "show me my orders"),
            Turn("assistant", "Sure, what's the email on your account?", recorded_action="get_orders"),
        ]
    )


# ── Heuristics ────────────────────────────────────────────────────────


def test_detect_signals():
    assert detect_signals("jane@example.com").email
    assert detect_signals("#10234").order_number
    assert detect_signals("yes please").confirmation
    assert detect_signals("how much is it").ambiguous
    assert detect_signals("do you have winter gear").short_reply
    assert not detect_signals("I am looking for a warm jacket for skiing").short_reply


def test_explicit_highlight_text_captured_verbatim():
    signals = detect_signals("Please highlight Free shipping on orders over $50. Thanks")
    assert signals.explicit_text == "Free shipping on orders over $50"


# ── Continuity ────────────────────────────────────────────────────────


def test_bare_email_continues_previous_get_orders():
    complete = _fake_complete()
    result = IntentClassifier(complete).classify("jane@example.com", _orders_context())

    assert result.ok
    assert result.classification.action_intent == "get_orders"
    assert result.classification.context_dependency == "high"
    assert "CONTINUATION of the previous get_orders action" in result.enhanced_utterance
    assert len(complete.calls) == 2


def test_continuation_keeps_explicit_new_action():
    complete = _fake_complete(action={"action_intent": "cancel_order", "context_dependency": "high"})
    result = IntentClassifier(complete).classify("actually cancel the last one", _orders_context())
    assert result.classification.action_intent == "cancel_order"


def test_ambiguous_reference_rewritten_with_previous_question():
    context = ConversationContext.from_turns(
        [Turn("user", "tell me about the Alpine Jacket"), Turn("assistant", "The Alpine Jacket is waterproof.")]
    )
    complete = _fake_complete(
        content={"type": "product", "category": "clarifying", "interaction_type": "sales"}
    )
    result = IntentClassifier(complete).classify("how much is it", context)

    assert "(regarding previous context: tell me about the Alpine Jacket)" in result.enhanced_utterance
    assert result.classification.context_dependency == "high"
    assert "regarding previous context" in complete.calls[0][1]


def test_defaults_filled_when_action_fields_missing():
    complete = _fake_complete(
        content={"type": "collection", "category": "discovery"},
        action={},
    )
    result = IntentClassifier(complete).classify("I am looking for a warm jacket for skiing trips")
    cls = result.classification
    assert cls.action_intent == "none"
    assert cls.sub_category == "general"
    assert cls.content_targets == {}
    assert cls.context_dependency == "low"
    assert cls.interaction_type == "noneSpecified"


def test_explicit_text_lands_in_content_targets():
    complete = _fake_complete(action={"action_intent": "highlight_text"})
    result = IntentClassifier(complete).classify("highlight the warranty section on this page")
    assert result.classification.explicit_text == "the warranty section on this page"
    assert result.classification.content_targets["exact_text"] == "the warranty section on this page"


# ── Failures ──────────────────────────────────────────────────────────


def test_non_json_reply_is_classification_error():
    result = IntentClassifier(_fake_complete(content="I think it's a product")).classify("hello there friend")
    assert not result.ok
    assert isinstance(result.error, ClassificationError)
    assert result.classification is None


def test_unknown_type_rejected_by_schema():
    complete = _fake_complete(content={"type": "widget", "category": "discovery"})
    result = IntentClassifier(complete).classify("show me widgets please now")
    assert not result.ok
    assert "type" in str(result.error)


def test_upstream_unavailable_propagates():
    def down(system_prompt, user_prompt):
        raise UpstreamUnavailable("completion service unreachable")

    with pytest.raises(UpstreamUnavailable):
        IntentClassifier(down).classify("do you have winter gear")
