# storefront/runtime/url_resolver.py
"""
Navigation target resolution.

A model-proposed URL is only returned when it can be verified: a canonical
store path, a policy page, or a handle that appears in the content the turn
actually retrieved (main results, QA exemplars, current page). Near misses
are snapped to the closest known handle of the right type. Anything else
resolves to "" and the caller drops the redirect.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple
from urllib.parse import urlparse

from storefront.runtime.errors import ResolutionAmbiguous
from storefront.runtime.models import (
    CandidateRecord,
    Classification,
    PageSnapshot,
    RankedCandidate,
)

logger = logging.getLogger(__name__)

CANONICAL_PATHS = frozenset(
    {
        "/",
        "/account",
        "/account/login",
        "/account/register",
        "/account/addresses",
        "/account/orders",
        "/cart",
        "/checkout",
        "/collections/all",
    }
)

# Matched against the utterance as "my X", "to X", "the X", "your X", "X" or "X page".
STANDARD_PATHS: Tuple[Tuple[str, str], ...] = (
    ("addresses", "/account/addresses"),
    ("orders", "/account/orders"),
    ("login", "/account/login"),
    ("register", "/account/register"),
    ("account", "/account"),
    ("checkout", "/checkout"),
    ("cart", "/cart"),
)

POLICY_TERMS = (
    "privacy-policy",
    "return-policy",
    "refund-policy",
    "contact-information",
    "terms-of-service",
    "shipping-policy",
)

BLOG_TERMS = ("blogs do you have", "blog section", "what blogs", "show me your blogs", "blog posts", "your blog")
CATALOGUE_TERMS = ("products", "collections", "shop", "categories", "items")

# Words too common in handles to count as a match on their own.
GENERIC_HANDLE_WORDS = frozenset({"collection", "collections", "all", "page", "pages", "products", "product", "the", "and"})

FUZZY_THRESHOLD = 0.3

_HANDLE_PATH = re.compile(r"/(products|collections|pages)/([\w-]+)", re.IGNORECASE)
_BLOG_PATH = re.compile(r"/blogs/([\w-]+)(?:/([\w-]+))?", re.IGNORECASE)
_SPLIT = re.compile(r"[-_\s]+")

_TYPE_KIND = {
    "product": "products",
    "collection": "collections",
    "discount": "collections",
    "page": "pages",
    "post": "posts",
}


# ── Available content ────────────────────────────────────────────────


@dataclass
class ContentHandles:
    products: Set[str] = field(default_factory=set)
    collections: Set[str] = field(default_factory=set)
    pages: Set[str] = field(default_factory=set)
    blogs: Set[str] = field(default_factory=set)
    posts: Set[Tuple[str, str]] = field(default_factory=set)  # (blog, post)

    def add_path(self, path: str) -> None:
        for kind, handle in _HANDLE_PATH.findall(path or ""):
            getattr(self, kind.lower()).add(handle.lower())
        for blog, post in _BLOG_PATH.findall(path or ""):
            self.blogs.add(blog.lower())
            if post:
                self.posts.add((blog.lower(), post.lower()))


def _record_of(item: Any) -> Optional[CandidateRecord]:
    if isinstance(item, RankedCandidate):
        return item.record
    if isinstance(item, CandidateRecord):
        return item
    if isinstance(item, dict):
        return CandidateRecord(id=str(item.get("id") or ""), score=0.0, metadata=item)
    return None


@dataclass
class AvailableContent:
    """Everything the current turn can legitimately link to."""

    main_content: Sequence[Any] = ()
    relevant_qas: Sequence[Any] = ()
    page: Optional[PageSnapshot] = None

    def handles(self) -> ContentHandles:
        found = ContentHandles()
        for item in self.main_content:
            rec = _record_of(item)
            if rec is None or not rec.handle:
                continue
            handle = rec.handle.lower()
            if rec.type == "product":
                found.products.add(handle)
            elif rec.type in ("collection", "discount"):
                found.collections.add(handle)
            elif rec.type == "page":
                found.pages.add(handle)
            elif rec.type == "post":
                blog = (rec.blog_handle or "news").lower()
                found.blogs.add(blog)
                found.posts.add((blog, handle))
            if rec.url:
                found.add_path(rec.url)
        for item in self.relevant_qas:
            rec = _record_of(item)
            if rec is not None and rec.url:
                found.add_path(rec.url)
        if self.page is not None:
            found.add_path(self.page.url)
            found.add_path(self.page.full_text)
            for link in self.page.links:
                found.add_path(link)
        return found


# ── Matching ─────────────────────────────────────────────────────────


def _words(handle: str) -> List[str]:
    return [w for w in _SPLIT.split(handle.lower()) if w and w not in GENERIC_HANDLE_WORDS]


def _word_hit(word: str, others: Iterable[str]) -> bool:
    for other in others:
        if word == other:
            return True
        if len(word) >= 4 and len(other) >= 4 and (word in other or other in word):
            return True
    return False


def closest_handle(target: str, candidates: Iterable[str], threshold: float = FUZZY_THRESHOLD) -> Optional[str]:
    """
    Best fuzzy match for a proposed handle, or None.

    A candidate must share at least one meaningful word with the target;
    character overlap alone never produces a match.
    """
    t = (target or "").strip().lower()
    if not t:
        return None
    t_words = _words(t)
    best: Optional[str] = None
    best_score = 0.0
    for cand in sorted(candidates):
        c = cand.lower()
        if c == t:
            return cand
        shared = [w for w in t_words if _word_hit(w, _words(c))]
        if not shared:
            continue
        if t in c or c in t:
            score = min(len(t), len(c)) / max(len(t), len(c)) * 0.8
        else:
            t_chars, c_chars = set(t), set(c)
            score = len(t_chars & c_chars) / max(len(t_chars), len(c_chars)) * 0.5
        score += len(shared) / max(len(t_words), 1) * 0.3
        if score > best_score:
            best, best_score = cand, score
    return best if best_score >= threshold else None


def normalize_path(url: str) -> str:
    parsed = urlparse((url or "").strip())
    path = parsed.path or ""
    if path and not path.startswith("/"):
        path = "/" + path
    if len(path) > 1:
        path = path.rstrip("/")
    return path.lower()


def standard_path_for_query(query: str) -> Optional[str]:
    q = (query or "").strip().lower().rstrip("?.!")
    for key, path in STANDARD_PATHS:
        if q == key or q == f"{key} page":
            return path
        if any(re.search(rf"\b{prefix} {key}\b", q) for prefix in ("my", "to", "the", "your")):
            return path
    return None


def _policy_handle(handle: str) -> bool:
    return any(term in handle for term in POLICY_TERMS)


# ── Resolver ─────────────────────────────────────────────────────────


class UrlResolver:
    def resolve(
        self,
        url: Optional[str],
        utterance: str = "",
        classification: Optional[Classification] = None,
        available: Optional[AvailableContent] = None,
    ) -> str:
        """Verified store path for a proposed target, or "" when it cannot be verified."""
        try:
            return self.verify(url, utterance, classification, available)
        except ResolutionAmbiguous as e:
            logger.info("[RESOLVE] blocked %s", e)
            return ""

    def verify(
        self,
        url: Optional[str],
        utterance: str = "",
        classification: Optional[Classification] = None,
        available: Optional[AvailableContent] = None,
    ) -> str:
        """Like resolve() but raises ResolutionAmbiguous instead of returning ""."""
        query = (utterance or "").lower()
        path = normalize_path(url or "")

        standard = standard_path_for_query(query)
        if standard:
            return standard
        if path in CANONICAL_PATHS:
            return path

        policy = re.match(r"^/(?:pages|policies)/([\w-]+)$", path)
        if policy and _policy_handle(policy.group(1)):
            return f"/policies/{policy.group(1)}"

        handles = (available or AvailableContent()).handles()
        found = self._lookup(path, classification, handles)
        if found:
            return found

        fallback = self._vocabulary_fallback(query, classification, handles)
        if fallback:
            return fallback
        raise ResolutionAmbiguous(url or "", "no verified handle")

    def _lookup(self, path: str, classification: Optional[Classification], handles: ContentHandles) -> Optional[str]:
        if not path or path == "/":
            return None

        m = re.match(r"^/(products|collections|pages)/([\w-]+)$", path)
        if m:
            kind, handle = m.group(1), m.group(2)
            if kind == "pages" and path.startswith("/pages/") and _policy_handle(handle):
                return f"/policies/{handle}"
            match = closest_handle(handle, getattr(handles, kind))
            return f"/{kind}/{match}" if match else None

        m = re.match(r"^/blogs/([\w-]+)(?:/([\w-]+))?$", path)
        if m:
            return self._lookup_post(m.group(1), m.group(2), handles)

        if path.startswith("/policies/"):
            return None

        # Bare handle: prefer the classified type, then anything that matches exactly.
        handle = path.strip("/").split("/")[-1]
        preferred = _TYPE_KIND.get(classification.type) if classification else None
        kinds = ([preferred] if preferred else []) + [k for k in ("collections", "products", "pages", "posts") if k != preferred]
        for kind in kinds:
            if kind == "posts":
                for blog, post in sorted(handles.posts):
                    if post == handle:
                        return f"/blogs/{blog}/{post}"
            elif handle in getattr(handles, kind):
                return f"/{kind}/{handle}"
        if preferred and preferred != "posts":
            match = closest_handle(handle, getattr(handles, preferred))
            if match:
                return f"/{preferred}/{match}"
        return None

    @staticmethod
    def _lookup_post(blog: str, post: Optional[str], handles: ContentHandles) -> Optional[str]:
        if not post:
            match = closest_handle(blog, handles.blogs)
            return f"/blogs/{match}" if match else None
        if (blog, post) in handles.posts:
            return f"/blogs/{blog}/{post}"
        by_post = {p: b for b, p in sorted(handles.posts)}
        match = closest_handle(post, by_post)
        return f"/blogs/{by_post[match]}/{match}" if match else None

    @staticmethod
    def _vocabulary_fallback(
        query: str, classification: Optional[Classification], handles: ContentHandles
    ) -> Optional[str]:
        if not query:
            return None
        if any(term in query for term in BLOG_TERMS) or re.search(r"\bblogs?\b", query):
            if len(handles.blogs) == 1:
                return f"/blogs/{next(iter(handles.blogs))}"
            return None
        if any(re.search(rf"\b{term}\b", query) for term in CATALOGUE_TERMS):
            return "/collections/all"
        if re.search(r"\b(?:account|profile)\b", query) or "my page" in query:
            return "/account"
        return None
