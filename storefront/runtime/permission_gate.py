# storefront/runtime/permission_gate.py
"""
Action permission gate.

Every automatable action maps to one permission flag and one denial shape in
DENIAL_POLICIES. The same table is consulted three times per turn: on the
raw utterance (keyword pre-check, before any completion call), on the
classified intent and carried-over previous action, and again by the
validator on the model's final action.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from storefront.runtime.models import PermissionSet, ResolvedAction

logger = logging.getLogger(__name__)


class DenialKind(str, Enum):
    HARD_DISABLED = "hard_disabled"  # hand off to support
    SOFT_UNSUPPORTED = "soft_unsupported"
    COMING_SOON = "coming_soon"
    DOWNGRADE = "downgrade"  # keep the answer, drop the action


@dataclass(frozen=True)
class DenialPolicy:
    flag: str
    kind: DenialKind
    phrase: str  # "I'm unable to {phrase} ..."
    handoff: str = ""  # pre-filled support message for HARD_DISABLED


DENIAL_POLICIES: Dict[str, DenialPolicy] = {
    "cancel_order": DenialPolicy(
        "allow_auto_cancel", DenialKind.HARD_DISABLED, "cancel orders",
        "User is requesting to cancel an order.",
    ),
    "return_order": DenialPolicy(
        "allow_auto_return", DenialKind.HARD_DISABLED, "process returns",
        "User is requesting to return an order.",
    ),
    "exchange_order": DenialPolicy(
        "allow_auto_exchange", DenialKind.HARD_DISABLED, "process exchanges",
        "User is requesting to exchange an order.",
    ),
    "generate_image": DenialPolicy("allow_auto_generate_image", DenialKind.COMING_SOON, "generate images"),
    "login": DenialPolicy("allow_auto_login", DenialKind.SOFT_UNSUPPORTED, "log you in"),
    "logout": DenialPolicy("allow_auto_logout", DenialKind.SOFT_UNSUPPORTED, "log you out"),
    "track_order": DenialPolicy("allow_auto_track_order", DenialKind.SOFT_UNSUPPORTED, "track orders"),
    "get_orders": DenialPolicy("allow_auto_get_user_orders", DenialKind.SOFT_UNSUPPORTED, "access your orders"),
    "account_management": DenialPolicy(
        "allow_auto_update_user_info", DenialKind.SOFT_UNSUPPORTED, "update account information"
    ),
    "account_reset": DenialPolicy(
        "allow_auto_update_user_info", DenialKind.SOFT_UNSUPPORTED, "reset account information"
    ),
    "scroll": DenialPolicy("allow_auto_scroll", DenialKind.DOWNGRADE, "scroll"),
    "highlight_text": DenialPolicy("allow_auto_highlight", DenialKind.DOWNGRADE, "highlight text"),
    "redirect": DenialPolicy("allow_auto_redirect", DenialKind.DOWNGRADE, "redirect"),
    "click": DenialPolicy("allow_auto_click", DenialKind.DOWNGRADE, "click"),
    "fill_form": DenialPolicy("allow_auto_fill_form", DenialKind.DOWNGRADE, "fill forms"),
}

REFUND_ANSWER = (
    "I'll connect you with our customer service team to process your refund request. "
    "Could you provide your order number and any relevant details?"
)
REFUND_HANDOFF = "User is requesting a refund for an order."

_ORDER_NOUN = r"(?:order|orders|item|items|purchase|package)"

# Always routed to support, whatever the flags say.
_POLICY_OVERRIDES: List[Tuple[re.Pattern, str, str]] = [
    (
        re.compile(rf"\brefund\w*\b.*\b{_ORDER_NOUN}\b|\b{_ORDER_NOUN}\b.*\brefund", re.I),
        REFUND_ANSWER,
        REFUND_HANDOFF,
    ),
    (
        re.compile(rf"\breturn(?:ing|ed)?\b.*\b{_ORDER_NOUN}\b|\b{_ORDER_NOUN}\b.*\breturn", re.I),
        "I'll connect you with our customer service team to help with your return. "
        "Could you provide your order number and the item you'd like to return?",
        "User is requesting to return an order.",
    ),
    (
        re.compile(rf"\bexchang(?:e|ing|ed)\b.*\b{_ORDER_NOUN}\b|\b{_ORDER_NOUN}\b.*\bexchang", re.I),
        "I'll connect you with our customer service team to help with your exchange. "
        "Could you provide your order number and the item you'd like to exchange?",
        "User is requesting to exchange an order.",
    ),
]

# Raw-utterance detections that short-circuit when the flag is off.
_KEYWORD_ACTIONS: List[Tuple[re.Pattern, str]] = [
    (re.compile(rf"\bcancel\w*\b.*\b{_ORDER_NOUN}\b", re.I), "cancel_order"),
    (re.compile(r"\bgenerate\b.*\bimages?\b", re.I), "generate_image"),
    (re.compile(r"\b(?:log|sign)\s?(?:me\s+)?out\b", re.I), "logout"),
    (re.compile(r"\b(?:log|sign)\s?(?:me\s+)?in\b", re.I), "login"),
    (re.compile(r"\btrack\w*\b.*\border", re.I), "track_order"),
    (re.compile(r"\b(?:get|view|see|my)\b.*\borders\b", re.I), "get_orders"),
    (
        re.compile(r"\b(?:update|change|edit)\b.*\b(?:account|profile|information|details)\b", re.I),
        "account_management",
    ),
]


@dataclass
class GateDecision:
    allowed: bool = True
    reason: str = ""
    action: Optional[str] = None
    kind: Optional[DenialKind] = None
    response: Optional[ResolvedAction] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


def denial_response(action: str, policy: DenialPolicy, answer: str = "") -> ResolvedAction:
    """Build the user-facing result for a denied action."""
    if policy.kind is DenialKind.HARD_DISABLED:
        return ResolvedAction(
            action="contact",
            answer=(
                f"I'm currently unable to {policy.phrase} automatically. "
                "Please contact the company directly for assistance, or share your order number "
                "and details and I'll pass them on to our customer service team."
            ),
            action_context={"contact_help_form": True, "message": policy.handoff},
        )
    if policy.kind is DenialKind.COMING_SOON:
        return ResolvedAction(
            action="none",
            answer=(
                f"I'm unable to {policy.phrase} right now, but this feature will be available very soon. "
                "Please check back in the near future!"
            ),
        )
    if policy.kind is DenialKind.DOWNGRADE:
        return ResolvedAction(action="none", answer=answer)
    return ResolvedAction(
        action="none",
        answer=f"I'm sorry, I'm unable to {policy.phrase} automatically right now. Would you like to try something else?",
    )


def _handoff(reason: str, answer: str, handoff: str) -> GateDecision:
    return GateDecision(
        allowed=False,
        reason=reason,
        action="contact",
        kind=DenialKind.HARD_DISABLED,
        response=ResolvedAction(
            action="contact",
            answer=answer,
            action_context={"contact_help_form": True, "message": handoff},
        ),
    )


class PermissionGate:
    def __init__(self, policies: Optional[Dict[str, DenialPolicy]] = None):
        self.policies = policies if policies is not None else DENIAL_POLICIES

    def precheck(self, utterance: str, permissions: PermissionSet) -> GateDecision:
        """Keyword checks on the raw utterance, before classification."""
        text = utterance or ""
        for pattern, answer, handoff in _POLICY_OVERRIDES:
            if pattern.search(text):
                logger.info("[GATE] policy override -> contact (%s)", pattern.pattern[:24])
                return _handoff("policy_override", answer, handoff)

        for pattern, action in _KEYWORD_ACTIONS:
            if pattern.search(text):
                decision = self.check(action, permissions, source="keyword")
                if not decision.allowed:
                    return decision
        return GateDecision(allowed=True)

    def check(self, action: Optional[str], permissions: PermissionSet, source: str = "intent") -> GateDecision:
        """Pre-completion check. DOWNGRADE actions pass; the validator handles them."""
        if action == "refund_order":
            return _handoff(f"{source}_refund", REFUND_ANSWER, REFUND_HANDOFF)
        policy = self.policies.get(action or "")
        if policy is None or permissions.allows(policy.flag) or policy.kind is DenialKind.DOWNGRADE:
            return GateDecision(allowed=True, action=action)
        logger.info("[GATE] denied %s (%s, flag %s off)", action, source, policy.flag)
        return GateDecision(
            allowed=False,
            reason=f"{source}_denied:{action}",
            action=action,
            kind=policy.kind,
            response=denial_response(action, policy),
        )

    def review(self, action: str, answer: str, permissions: PermissionSet) -> GateDecision:
        """Post-completion re-check of the model's proposed action."""
        if action == "refund_order":
            logger.info("[GATE] review routed refund_order -> contact")
            return _handoff("review_refund", REFUND_ANSWER, REFUND_HANDOFF)
        policy = self.policies.get(action or "")
        if policy is None or permissions.allows(policy.flag):
            return GateDecision(allowed=True, action=action)
        logger.info("[GATE] review downgraded %s (flag %s off)", action, policy.flag)
        return GateDecision(
            allowed=False,
            reason=f"review_denied:{action}",
            action=action,
            kind=policy.kind,
            response=denial_response(action, policy, answer=answer),
        )
