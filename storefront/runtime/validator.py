# storefront/runtime/validator.py
"""
Response validator.

Turns the raw completion text into a ResolvedAction that is safe to hand to
the storefront widget: parse (with salvage for broken JSON), block address
edits, re-check permissions, verify redirect targets and tidy scroll or
highlight text.
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional

from storefront.runtime.errors import ResolutionAmbiguous
from storefront.runtime.models import (
    CONTINUABLE_ACTIONS,
    Classification,
    PermissionSet,
    ResolvedAction,
)
from storefront.runtime.permission_gate import PermissionGate
from storefront.runtime.url_resolver import AvailableContent, UrlResolver
from storefront.shared.returns import coerce_return_note, normalize_return_reason
from storefront.shared.schemas.validate import validate_model_reply

logger = logging.getLogger(__name__)

FALLBACK_ANSWER = "I apologize, but I couldn't process your request correctly."
ADDRESS_ANSWER = (
    "I'm sorry, address updates are not currently supported through the chat assistant. "
    "You can only update your name, phone number, and email here. "
    "Please go to your account settings to update your address information."
)

ADDRESS_KEYS = ("default_address", "defaultAddress", "address", "address1", "address2")
ACCOUNT_ACTIONS = ("account_management", "account_reset", "updateCustomer", "update_customer")
EXPLICIT_ACTION_PHRASES = (
    "take me", "show me", "go to", "open", "navigate", "click", "highlight", "scroll",
    "add to cart", "buy", "purchase", "log in", "login", "log out", "logout", "track",
    "return", "cancel", "exchange",
)
CONTINUATION_FLOWS = CONTINUABLE_ACTIONS | {"account_management", "account_reset"}

_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)
_ANSWER_FIELD = re.compile(r'"answer"\s*:\s*"((?:[^"\\]|\\.)*)"', re.DOTALL)
_ADDRESS_WORDS = re.compile(r"\b(?:address|city|province|zip|postal|country)\b", re.IGNORECASE)
_SENTENCE_END = re.compile(r"[.!?]")


@dataclass
class ValidatorConfig:
    enforce_minimal_actions: bool = False  # drop UI actions the user never asked for
    scroll_text_max_chars: int = 100
    scroll_text_max_words: int = 15
    sentence_cut_min_index: int = 30


def parse_reply(raw: str) -> Dict[str, Any]:
    """Parse the completion text, salvaging an answer from malformed JSON."""
    text = _FENCE.sub("", (raw or "").strip())
    try:
        doc = json.loads(text)
    except json.JSONDecodeError:
        doc = None
    if isinstance(doc, dict):
        return doc
    if isinstance(doc, str):
        return {"action": "none", "answer": doc or FALLBACK_ANSWER}

    if text.startswith("{") and text.endswith("}"):
        m = _ANSWER_FIELD.search(text)
        answer = FALLBACK_ANSWER
        if m:
            try:
                answer = json.loads(f'"{m.group(1)}"') or FALLBACK_ANSWER
            except json.JSONDecodeError:
                answer = m.group(1)
        logger.warning("[VALIDATE] malformed JSON reply, salvaged answer field")
        return {"action": "none", "answer": answer}
    return {"action": "none", "answer": text or FALLBACK_ANSWER}


def coerce_reply(doc: Dict[str, Any]) -> Dict[str, Any]:
    problems = validate_model_reply(doc)
    if problems:
        logger.info("[VALIDATE] coercing reply fields: %s", problems)

    action_context = doc.get("action_context")
    if isinstance(action_context, str):
        try:
            action_context = json.loads(action_context)
        except json.JSONDecodeError:
            action_context = {}
    if not isinstance(action_context, dict):
        action_context = {}

    answer = doc.get("answer")
    url = doc.get("url")
    scroll_text = doc.get("scroll_text") or doc.get("scrollText")
    return {
        "action": str(doc.get("action") or "none"),
        "answer": answer if isinstance(answer, str) and answer else FALLBACK_ANSWER,
        "url": url if isinstance(url, str) and url else None,
        "scroll_text": scroll_text if isinstance(scroll_text, str) else None,
        "action_context": action_context,
    }


def clean_scroll_text(text: Optional[str], user_specified: bool = False, config: Optional[ValidatorConfig] = None) -> str:
    cfg = config or ValidatorConfig()
    cleaned = re.sub(r"\s+", " ", (text or "").replace("\n", " ")).strip()
    if user_specified or len(cleaned) <= cfg.scroll_text_max_chars:
        return cleaned
    truncated = " ".join(cleaned.split()[: cfg.scroll_text_max_words])
    m = _SENTENCE_END.search(truncated)
    if m and m.start() > cfg.sentence_cut_min_index:
        truncated = truncated[: m.start() + 1]
    return truncated


def is_address_change(action: str, action_context: Dict[str, Any], raw: str = "") -> bool:
    raw_mentions = "default_address" in (raw or "") or "defaultAddress" in (raw or "")
    if action not in ACCOUNT_ACTIONS and not raw_mentions:
        return False
    if action == "updateCustomer" or raw_mentions:
        return True
    if any(key in action_context for key in ADDRESS_KEYS):
        return True
    return bool(_ADDRESS_WORDS.search(json.dumps(action_context)))


class ResponseValidator:
    def __init__(
        self,
        gate: Optional[PermissionGate] = None,
        resolver: Optional[UrlResolver] = None,
        config: Optional[ValidatorConfig] = None,
    ):
        self.gate = gate or PermissionGate()
        self.resolver = resolver or UrlResolver()
        self.config = config or ValidatorConfig()

    def validate(
        self,
        raw: str,
        classification: Classification,
        available: Optional[AvailableContent],
        permissions: PermissionSet,
        utterance: str = "",
    ) -> ResolvedAction:
        reply = coerce_reply(parse_reply(raw))
        action = reply["action"]
        answer = reply["answer"]
        action_context = reply["action_context"]

        if is_address_change(action, action_context, raw):
            logger.info("[VALIDATE] blocked address update disguised as %s", action)
            return ResolvedAction(action="none", answer=ADDRESS_ANSWER)

        decision = self.gate.review(action, answer, permissions)
        if not decision.allowed:
            return decision.response

        if self.config.enforce_minimal_actions and not self._explicitly_requested(action, utterance):
            logger.info("[VALIDATE] minimal-actions filter dropped %s", action)
            return ResolvedAction(action="none", answer=answer)

        if action == "redirect":
            return self._redirect(reply, classification, available, utterance)
        if action in ("scroll", "highlight_text"):
            return self._scroll(reply, classification)
        if action == "return_order":
            action_context = dict(action_context)
            action_context["reason"] = normalize_return_reason(action_context.get("reason"))
            note = coerce_return_note(action_context.get("note"))
            if note is None:
                action_context.pop("note", None)
            else:
                action_context["note"] = note

        return ResolvedAction(action=action, answer=answer, action_context=action_context)

    @staticmethod
    def _explicitly_requested(action: str, utterance: str) -> bool:
        if action in ("none", "contact") or action in CONTINUATION_FLOWS:
            return True
        lowered = (utterance or "").lower()
        return any(p in lowered for p in EXPLICIT_ACTION_PHRASES)

    def _redirect(
        self,
        reply: Dict[str, Any],
        classification: Classification,
        available: Optional[AvailableContent],
        utterance: str,
    ) -> ResolvedAction:
        context = reply["action_context"]
        target = reply["url"] or context.get("url")
        try:
            resolved = self.resolver.verify(target, utterance, classification, available)
        except ResolutionAmbiguous as e:
            logger.info("[VALIDATE] redirect dropped: %s", e)
            return ResolvedAction(action="none", answer=reply["answer"])
        logger.info("[VALIDATE] redirect %s -> %s", target, resolved)
        return ResolvedAction(
            action="redirect",
            answer=reply["answer"],
            url=resolved,
            action_context={**context, "url": resolved},
        )

    def _scroll(self, reply: Dict[str, Any], classification: Classification) -> ResolvedAction:
        context = reply["action_context"]
        explicit = classification.explicit_text
        text = (
            explicit
            or context.get("exact_text")
            or context.get("scroll_text")
            or reply["scroll_text"]
            or classification.content_targets.get("exact_text")
        )
        cleaned = clean_scroll_text(text if isinstance(text, str) else "", bool(explicit), self.config)
        if not cleaned:
            return ResolvedAction(action="none", answer=reply["answer"])
        return ResolvedAction(
            action=reply["action"],
            answer=reply["answer"],
            scroll_text=cleaned,
            action_context={**context, "exact_text": cleaned},
        )
