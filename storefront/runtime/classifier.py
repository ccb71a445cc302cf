# storefront/runtime/classifier.py
"""
Intent classifier.

Cheap lexical heuristics decide whether an utterance leans on the previous
turn (pronouns, confirmations, a bare email or order number). Leaning
utterances are rewritten with the prior context before two completion
prompts, one for content and one for action, run concurrently. Their JSON
replies are merged and schema-checked into a Classification.
"""
from __future__ import annotations

import json
import logging
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Tuple

from storefront.runtime.errors import ClassificationError
from storefront.runtime.models import (
    CONTINUABLE_ACTIONS,
    Classification,
    ConversationContext,
    PageSnapshot,
)
from storefront.shared.schemas.validate import validate_classification

logger = logging.getLogger(__name__)

CompletionFn = Callable[[str, str], str]

AMBIGUOUS_WORDS = (
    "it", "this", "that", "them", "these", "those", "one", "ones",
    "yes", "sure", "ok", "okay", "no", "here", "there",
)
CONFIRMATION_TERMS = (
    "yes", "yeah", "sure", "ok", "okay", "correct", "that's right",
    "exactly", "confirmed", "please", "go ahead",
)
SHORT_REPLY_MAX_WORDS = 5

_AMBIGUOUS = re.compile(r"\b(?:" + "|".join(AMBIGUOUS_WORDS) + r")\b", re.IGNORECASE)
_EMAIL = re.compile(r"^[a-zA-Z0-9._-]+@[a-zA-Z0-9._-]+\.[a-zA-Z0-9_-]+$")
_ORDER_NUMBER = re.compile(r"^#?\d{4,}$")
_EXPLICIT_TEXT = re.compile(r"\b(?:highlight|scroll to)\s+([^.!?]+)", re.IGNORECASE)
_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)

_CONTENT_FIELDS = ("type", "category", "sub-category", "sub_category", "interaction_type")
_ACTION_FIELDS = ("action_intent", "context_dependency", "language", "content_targets")


# ── Heuristics ───────────────────────────────────────────────────────


@dataclass(frozen=True)
class UtteranceSignals:
    ambiguous: bool = False
    confirmation: bool = False
    short_reply: bool = False
    email: bool = False
    order_number: bool = False
    explicit_text: Optional[str] = None

    @property
    def fired(self) -> bool:
        return self.ambiguous or self.confirmation or self.short_reply or self.email or self.order_number

    @property
    def supplies_data(self) -> bool:
        return self.email or self.order_number or self.confirmation


def _is_confirmation(text: str) -> bool:
    for term in CONFIRMATION_TERMS:
        if text == term or text.startswith(term + " ") or text.endswith(" " + term):
            return True
    return False


def detect_signals(utterance: str) -> UtteranceSignals:
    stripped = (utterance or "").strip()
    lowered = stripped.lower()
    explicit = _EXPLICIT_TEXT.search(stripped)
    return UtteranceSignals(
        ambiguous=bool(_AMBIGUOUS.search(lowered)),
        confirmation=_is_confirmation(lowered.rstrip(".!")),
        short_reply=0 < len(stripped.split()) <= SHORT_REPLY_MAX_WORDS,
        email=bool(_EMAIL.match(stripped)),
        order_number=bool(_ORDER_NUMBER.match(stripped)),
        explicit_text=explicit.group(1).strip() if explicit else None,
    )


def rewrite_with_context(
    utterance: str, signals: UtteranceSignals, context: ConversationContext
) -> Tuple[str, bool]:
    """Return (text sent to the classifier, whether dependency is forced high)."""
    previous_action = context.previous_action
    if previous_action in CONTINUABLE_ACTIONS:
        return (
            f"{utterance} (IMPORTANT: This is a CONTINUATION of the previous {previous_action} action)",
            True,
        )
    if signals.fired and not context.is_empty:
        prior = " ".join(p for p in (context.previous_question, previous_action) if p)
        return f"{utterance} (regarding previous context: {prior})", True
    return utterance, signals.fired


# ── Prompts ──────────────────────────────────────────────────────────

CONTENT_PROMPT = """You classify shopper messages for an online store.
Return a JSON object with keys "type", "category", "sub-category", "interaction_type".

type and category:
- product: discovery, on-page, statement, clarifying, objection_handling, cart_action
- collection: discovery, on-page, filter_sort
- post: discovery, content, topic
- page: discovery, on-page, statement
- discount: discount, discovery, on-page, filter_sort

sub-category is a short free-form refinement, or "general".
interaction_type is one of: sales, support, discounts, noneSpecified.
Questions about orders, returns, accounts and policies are support.
Browsing, comparing and buying are sales."""

ACTION_PROMPT = """You decide which action a shopper message asks the store assistant to perform.
Return a JSON object with keys "action_intent", "context_dependency", "language", "content_targets".

action_intent is one of: none, redirect, scroll, highlight_text, click, fill_form,
cancel_order, return_order, exchange_order, refund_order, track_order, get_orders,
account_management, account_reset, login, logout, generate_image, contact.
context_dependency is "high" when the message only makes sense with the previous turns, else "low".
language is the ISO 639-1 code of the message.
content_targets is an object; put verbatim text the user wants highlighted under "exact_text".
If the message is marked as a CONTINUATION, keep the previous action unless the user clearly changes course."""


def build_user_prompt(text: str, context: ConversationContext, page: Optional[PageSnapshot]) -> str:
    lines = [f"Message: {text}"]
    if not context.is_empty:
        lines.append("Previous conversation:")
        for t in context.turns:
            suffix = f" [action: {t.recorded_action}]" if t.recorded_action else ""
            lines.append(f"- {t.role}: {t.content}{suffix}")
    if page is not None:
        lines.append(f"Current page: {page.title} ({page.url})")
        if page.headings:
            lines.append("Headings: " + "; ".join(page.headings[:10]))
    return "\n".join(lines)


def parse_json_reply(raw: str) -> Dict[str, Any]:
    text = _FENCE.sub("", (raw or "").strip())
    try:
        doc = json.loads(text)
    except json.JSONDecodeError as e:
        raise ClassificationError(f"classifier reply is not JSON: {e}", raw=raw) from e
    if not isinstance(doc, dict):
        raise ClassificationError("classifier reply is not a JSON object", raw=raw)
    return doc


# ── Classifier ───────────────────────────────────────────────────────


@dataclass
class ClassificationResult:
    """Ok(classification) or Err(error); never both."""

    classification: Optional[Classification] = None
    error: Optional[ClassificationError] = None
    enhanced_utterance: str = ""
    signals: UtteranceSignals = field(default_factory=UtteranceSignals)

    @property
    def ok(self) -> bool:
        return self.classification is not None and self.error is None


class IntentClassifier:
    def __init__(self, complete: CompletionFn):
        self._complete = complete

    def classify(
        self,
        utterance: str,
        context: Optional[ConversationContext] = None,
        page: Optional[PageSnapshot] = None,
    ) -> ClassificationResult:
        context = context or ConversationContext()
        signals = detect_signals(utterance)
        enhanced, forced_high = rewrite_with_context(utterance, signals, context)
        user_prompt = build_user_prompt(enhanced, context, page)

        # UpstreamUnavailable from either call propagates to the caller.
        with ThreadPoolExecutor(max_workers=2) as pool:
            content_future = pool.submit(self._complete, CONTENT_PROMPT, user_prompt)
            action_future = pool.submit(self._complete, ACTION_PROMPT, user_prompt)
            content_raw = content_future.result()
            action_raw = action_future.result()

        try:
            merged = self._merge(parse_json_reply(content_raw), parse_json_reply(action_raw))
            problems = validate_classification(merged)
            if problems:
                raise ClassificationError("; ".join(problems), raw=content_raw)
        except ClassificationError as e:
            logger.warning("[CLASSIFY] rejected classifier output: %s", e)
            return ClassificationResult(error=e, enhanced_utterance=enhanced, signals=signals)

        classification = self._build(merged, signals, context, forced_high)
        logger.info(
            "[CLASSIFY] type=%s category=%s action=%s dependency=%s",
            classification.type,
            classification.category,
            classification.action_intent,
            classification.context_dependency,
        )
        return ClassificationResult(
            classification=classification, enhanced_utterance=enhanced, signals=signals
        )

    @staticmethod
    def _merge(content_doc: Dict[str, Any], action_doc: Dict[str, Any]) -> Dict[str, Any]:
        merged: Dict[str, Any] = {k: content_doc[k] for k in _CONTENT_FIELDS if k in content_doc}
        for k in _ACTION_FIELDS:
            if k in action_doc:
                merged[k] = action_doc[k]
        return merged

    @staticmethod
    def _build(
        merged: Dict[str, Any],
        signals: UtteranceSignals,
        context: ConversationContext,
        forced_high: bool,
    ) -> Classification:
        action_intent = merged.get("action_intent") or "none"
        previous_action = context.previous_action
        if previous_action in CONTINUABLE_ACTIONS and (signals.supplies_data or action_intent == "none"):
            action_intent = previous_action

        content_targets = dict(merged.get("content_targets") or {})
        if signals.explicit_text:
            content_targets["exact_text"] = signals.explicit_text

        return Classification(
            type=merged["type"],
            category=merged["category"],
            sub_category=merged.get("sub-category") or merged.get("sub_category") or "general",
            action_intent=action_intent,
            context_dependency="high" if forced_high else (merged.get("context_dependency") or "low"),
            content_targets=content_targets,
            interaction_type=merged.get("interaction_type") or "noneSpecified",
            language=merged.get("language"),
            explicit_text=signals.explicit_text,
        )
