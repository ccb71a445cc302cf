# storefront/runtime/prompts.py
"""Prompt assembly for the answer completion."""
from __future__ import annotations

import json
from typing import List, Optional, Sequence

from storefront.runtime.models import (
    Classification,
    ConversationContext,
    PageSnapshot,
    RankedCandidate,
)
from storefront.runtime.site_config import SiteConfig

BASE_PROMPTS = {
    "sales": (
        "You are a friendly shopping assistant for an online store. Help shoppers discover products, "
        "compare options and decide what to buy. Only recommend items from the provided content."
    ),
    "support": (
        "You are a customer support assistant for an online store. Answer questions about orders, "
        "shipping, returns and store policies accurately and briefly."
    ),
    "discounts": (
        "You are a shopping assistant focused on promotions. Explain active discounts and which items they apply to."
    ),
    "noneSpecified": "You are a helpful assistant for an online store. Answer briefly using the provided content.",
}

TYPE_GUIDANCE = {
    "product": "The shopper is asking about products. Use product titles and handles exactly as provided.",
    "collection": "The shopper is browsing collections. Link to a collection only if its handle is provided.",
    "post": "The shopper is asking about blog content. Summarize the relevant post.",
    "page": "The shopper is asking about store pages or policies.",
    "discount": "The shopper is asking about discounts and promotions.",
}

ACTION_GUIDANCE = {
    "redirect": "If navigation helps, set action to \"redirect\" and url to a path built from a provided handle.",
    "scroll": "For on-page questions, set action to \"scroll\" and action_context.exact_text to text copied from the page.",
    "highlight_text": "Set action to \"highlight_text\" and action_context.exact_text to text copied verbatim from the page.",
    "return_order": "Collect the order number, the item and a return reason before setting action to \"return_order\".",
    "fill_form": "Set action to \"fill_form\" with action_context.fields mapping input names to values.",
}

REPLY_FORMAT = (
    "Respond with a single JSON object: "
    '{"action": "<action or none>", "answer": "<reply to the shopper>", "url": "<path or null>", '
    '"action_context": {}}. Default action to "none" unless the shopper explicitly asks for one. '
    "Never invent URLs or handles."
)


def build_system_prompt(classification: Classification, site: SiteConfig) -> str:
    parts: List[str] = [BASE_PROMPTS.get(classification.interaction_type, BASE_PROMPTS["noneSpecified"])]
    if classification.type in TYPE_GUIDANCE:
        parts.append(TYPE_GUIDANCE[classification.type])
    if classification.action_intent in ACTION_GUIDANCE:
        parts.append(ACTION_GUIDANCE[classification.action_intent])
    if classification.explicit_text:
        parts.append(f'The shopper named the exact text "{classification.explicit_text}"; use it verbatim.')
    if site.custom_instructions:
        parts.append(f"Store instructions: {site.custom_instructions}")
    language = classification.language or site.language
    if language:
        parts.append(f"Reply in the language with ISO code {language}.")
    parts.append(REPLY_FORMAT)
    return "\n\n".join(parts)


def _content_line(candidate: RankedCandidate) -> str:
    meta = {k: v for k, v in candidate.record.metadata.items() if k not in ("text", "embedding")}
    return json.dumps(meta, ensure_ascii=False, default=str)


def build_answer_prompt(
    utterance: str,
    context: ConversationContext,
    main_results: Sequence[RankedCandidate],
    qa_results: Sequence[RankedCandidate],
    page: Optional[PageSnapshot] = None,
) -> str:
    lines: List[str] = []
    if not context.is_empty:
        lines.append("Conversation so far:")
        lines.extend(f"- {t.role}: {t.content}" for t in context.turns)
    if page is not None:
        lines.append(f"Current page: {page.title} ({page.url})")
        if page.full_text:
            lines.append(f"Page text: {page.full_text[:4000]}")
    if main_results:
        lines.append("Relevant store content:")
        lines.extend(f"- {_content_line(c)}" for c in main_results)
    if qa_results:
        lines.append("Similar questions answered before:")
        for c in qa_results:
            lines.append(f"- Q: {c.record.question or ''} A: {c.record.answer or ''}")
    lines.append(f"Shopper: {utterance}")
    return "\n".join(lines)
