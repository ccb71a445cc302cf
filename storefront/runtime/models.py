# storefront/runtime/models.py
"""
Data model shared by every stage of a chat turn.

Page snapshots, conversation context and candidate records are read-only for
the core: stages build new objects instead of mutating what they receive.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

CONTENT_TYPES = ("product", "collection", "post", "page", "discount")
INTERACTION_TYPES = ("sales", "support", "discounts", "noneSpecified")

# Actions that may be continued by a follow-up reply carrying data
# (an email, an order number, a confirmation).
CONTINUABLE_ACTIONS = frozenset(
    {"get_orders", "track_order", "return_order", "cancel_order", "exchange_order", "fill_form"}
)

MAX_CONTEXT_TURNS = 4


# ── Page ─────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class PageSnapshot:
    url: str = ""
    title: str = ""
    full_text: str = ""
    headings: List[str] = field(default_factory=list)
    buttons: List[str] = field(default_factory=list)
    forms: List[Dict[str, Any]] = field(default_factory=list)
    inputs: List[Dict[str, Any]] = field(default_factory=list)
    links: List[str] = field(default_factory=list)
    sections: List[str] = field(default_factory=list)

    @staticmethod
    def from_dict(data: Optional[Dict[str, Any]]) -> Optional["PageSnapshot"]:
        if not data:
            return None

        def _list(key: str) -> list:
            value = data.get(key) or []
            return list(value) if isinstance(value, (list, tuple)) else []

        return PageSnapshot(
            url=str(data.get("url") or ""),
            title=str(data.get("title") or ""),
            full_text=str(data.get("full_text") or data.get("fullText") or ""),
            headings=[str(h) for h in _list("headings")],
            buttons=[str(b) for b in _list("buttons")],
            forms=[f for f in _list("forms") if isinstance(f, dict)],
            inputs=[i for i in _list("inputs") if isinstance(i, dict)],
            links=[str(link) for link in _list("links")],
            sections=[str(s) for s in _list("sections")],
        )


# ── Classification ───────────────────────────────────────────────────


@dataclass(frozen=True)
class Classification:
    type: str
    category: str
    sub_category: str = "general"
    action_intent: str = "none"
    context_dependency: str = "low"
    content_targets: Dict[str, Any] = field(default_factory=dict)
    interaction_type: str = "noneSpecified"
    language: Optional[str] = None
    explicit_text: Optional[str] = None  # verbatim "highlight X" / "scroll to X"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ── Conversation ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class Turn:
    role: str  # "user" | "assistant"
    content: str
    recorded_action: Optional[str] = None


@dataclass(frozen=True)
class ConversationContext:
    turns: tuple = ()
    last_answer: Optional[str] = None

    @staticmethod
    def from_turns(turns: List[Turn], last_answer: Optional[str] = None) -> "ConversationContext":
        bounded = tuple(turns[-MAX_CONTEXT_TURNS:])
        if last_answer is None:
            for t in reversed(bounded):
                if t.role == "assistant":
                    last_answer = t.content
                    break
        return ConversationContext(turns=bounded, last_answer=last_answer)

    @staticmethod
    def from_payload(items: Optional[List[Dict[str, Any]]]) -> "ConversationContext":
        """Build a context from the inbound `conversation_context` list."""
        turns: List[Turn] = []
        for item in items or []:
            if not isinstance(item, dict):
                continue
            role = str(item.get("role") or "user")
            content = str(item.get("content") or "")
            action = item.get("recorded_action") or item.get("action")
            turns.append(Turn(role=role, content=content, recorded_action=action))
        return ConversationContext.from_turns(turns)

    @property
    def is_empty(self) -> bool:
        return not self.turns

    @property
    def previous_action(self) -> Optional[str]:
        for t in reversed(self.turns):
            if t.role == "assistant":
                if t.recorded_action and t.recorded_action != "none":
                    return t.recorded_action
                return None
        return None

    @property
    def previous_question(self) -> Optional[str]:
        for t in reversed(self.turns):
            if t.role == "user":
                return t.content
        return None

    def recent_text(self, limit: int = 2) -> List[str]:
        return [t.content for t in self.turns[-limit:] if t.content]


# ── Candidates ───────────────────────────────────────────────────────


@dataclass(frozen=True)
class CandidateRecord:
    id: str
    score: float
    dense_score: float = 0.0
    sparse_score: float = 0.0
    metadata: Dict[str, Any] = field(default_factory=dict)

    def _meta(self, key: str) -> Optional[str]:
        value = self.metadata.get(key)
        return str(value) if value not in (None, "") else None

    @property
    def type(self) -> Optional[str]:
        return self._meta("type")

    @property
    def category(self) -> Optional[str]:
        return self._meta("category")

    @property
    def sub_category(self) -> Optional[str]:
        return self._meta("sub_category") or self._meta("sub-category")

    @property
    def handle(self) -> Optional[str]:
        return self._meta("handle")

    @property
    def title(self) -> Optional[str]:
        return self._meta("title")

    @property
    def question(self) -> Optional[str]:
        return self._meta("question")

    @property
    def answer(self) -> Optional[str]:
        return self._meta("answer")

    @property
    def url(self) -> Optional[str]:
        return self._meta("url")

    @property
    def blog_handle(self) -> Optional[str]:
        return self._meta("blog_handle")

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "score": self.score, **self.metadata}


@dataclass(frozen=True)
class RankedCandidate:
    record: CandidateRecord
    rerank_score: float
    classification_match: int = 0

    def to_dict(self) -> Dict[str, Any]:
        d = self.record.to_dict()
        d["rerank_score"] = self.rerank_score
        d["classification_match"] = self.classification_match
        return d


@dataclass(frozen=True)
class SparseVector:
    indices: List[int]
    values: List[float]

    @staticmethod
    def degenerate() -> "SparseVector":
        return SparseVector(indices=[0], values=[1.0])

    def scaled(self, factor: float) -> "SparseVector":
        return SparseVector(indices=list(self.indices), values=[v * factor for v in self.values])

    def dot(self, other: "SparseVector") -> float:
        lookup = dict(zip(other.indices, other.values))
        return sum(v * lookup.get(i, 0.0) for i, v in zip(self.indices, self.values))

    def __len__(self) -> int:
        return len(self.indices)


# ── Actions ──────────────────────────────────────────────────────────


@dataclass
class PermissionSet:
    allow_auto_cancel: bool = False
    allow_auto_return: bool = False
    allow_auto_exchange: bool = False
    allow_auto_click: bool = True
    allow_auto_scroll: bool = True
    allow_auto_highlight: bool = True
    allow_auto_redirect: bool = True
    allow_auto_get_user_orders: bool = False
    allow_auto_update_user_info: bool = False
    allow_auto_fill_form: bool = True
    allow_auto_track_order: bool = False
    allow_auto_logout: bool = False
    allow_auto_login: bool = False
    allow_auto_generate_image: bool = False

    @staticmethod
    def from_dict(data: Optional[Dict[str, Any]]) -> "PermissionSet":
        """Accept snake_case keys or the camelCase keys stored by site admins."""
        perms = PermissionSet()
        for key, value in (data or {}).items():
            attr = _camel_to_snake(str(key))
            if hasattr(perms, attr):
                setattr(perms, attr, bool(value))
        return perms

    def allows(self, flag: str) -> bool:
        return bool(getattr(self, flag, False))


def _camel_to_snake(name: str) -> str:
    out = []
    for ch in name:
        if ch.isupper():
            out.append("_")
            out.append(ch.lower())
        else:
            out.append(ch)
    return "".join(out).lstrip("_")


@dataclass
class ResolvedAction:
    action: str = "none"
    answer: str = ""
    url: Optional[str] = None
    action_context: Dict[str, Any] = field(default_factory=dict)
    scroll_text: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action,
            "answer": self.answer,
            "url": self.url,
            "action_context": dict(self.action_context),
            "scroll_text": self.scroll_text,
        }


# ── Turn request / result ────────────────────────────────────────────


@dataclass
class TurnRequest:
    utterance: str
    site_id: str
    thread_id: Optional[str] = None
    turn_type: str = "text"
    conversation_context: Optional[ConversationContext] = None
    current_page_url: Optional[str] = None
    page_snapshot: Optional[PageSnapshot] = None


@dataclass
class TurnResult:
    action: ResolvedAction
    classification: Optional[Classification] = None
    main_results: List[RankedCandidate] = field(default_factory=list)
    qa_results: List[RankedCandidate] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    timings: Dict[str, int] = field(default_factory=dict)
    page_reference: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        cls = self.classification
        return {
            "action": self.action.action,
            "answer": self.action.answer,
            "category": cls.category if cls else None,
            "sub_category": cls.sub_category if cls else None,
            "page_reference": self.page_reference,
            "scroll_text": self.action.scroll_text,
            "type": cls.type if cls else None,
            "url": self.action.url,
            "action_context": dict(self.action.action_context),
            "diagnostics": {
                "main_results": [c.to_dict() for c in self.main_results],
                "qa_results": [c.to_dict() for c in self.qa_results],
                "classification": cls.to_dict() if cls else None,
                "errors": list(self.errors),
                "timings": dict(self.timings),
            },
        }
