# storefront/runtime/indexer.py
"""
Index-time vectorization of store content into per-site namespaces.

Catalogue items land in `<site>-<interaction>` and QA exemplars in
`<site>-<interaction>-qa`, matching what the retrieval engine queries.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from storefront.runtime.embeddings import EmbedFn
from storefront.runtime.lexical import LexicalScorer
from storefront.runtime.vector_index import VectorIndex

logger = logging.getLogger(__name__)

DEFAULT_INTERACTION = {
    "product": "sales",
    "collection": "sales",
    "discount": "discounts",
    "page": "general",
    "post": "general",
}

_TAG = re.compile(r"<[^>]+>")

_METADATA_KEYS = ("type", "category", "sub_category", "handle", "title", "url", "blog_handle", "price")


@dataclass
class IndexStats:
    added: int = 0
    errors: int = 0
    namespaces: List[str] = field(default_factory=list)
    details: List[str] = field(default_factory=list)


def _strip_html(text: Any) -> str:
    return re.sub(r"\s+", " ", _TAG.sub(" ", str(text or ""))).strip()


def build_text(item: Dict[str, Any]) -> str:
    """Searchable text for one content item, by type."""
    kind = item.get("type")
    title = str(item.get("title") or "")
    body = _strip_html(item.get("description") or item.get("body") or item.get("content") or "")
    if kind == "product":
        extra = " ".join(str(t) for t in item.get("tags") or [])
        variants = " ".join(str(v.get("title", "")) for v in item.get("variants") or [] if isinstance(v, dict))
        return " ".join(p for p in (title, item.get("vendor") or "", body, extra, variants) if p)
    if kind == "discount":
        code = item.get("code") or ""
        return " ".join(p for p in (title, f"code {code}" if code else "", body) if p)
    return " ".join(p for p in (title, body) if p)


class ContentIndexer:
    def __init__(
        self,
        index: VectorIndex,
        embed_fn: EmbedFn,
        scorer: Optional[LexicalScorer] = None,
        batch_size: int = 50,
    ):
        self.index = index
        self.embed_fn = embed_fn
        self.scorer = scorer or LexicalScorer()
        self.batch_size = batch_size

    @staticmethod
    def namespace_for(site_id: str, item: Dict[str, Any]) -> str:
        interaction = item.get("interaction_type") or DEFAULT_INTERACTION.get(item.get("type"), "general")
        return f"{site_id}-{interaction}"

    def index_site(
        self,
        site_id: str,
        content: Iterable[Dict[str, Any]] = (),
        qas: Iterable[Dict[str, Any]] = (),
        replace: bool = True,
    ) -> IndexStats:
        stats = IndexStats()
        docs: List[Dict[str, Any]] = []

        for item in content:
            if item.get("type") not in DEFAULT_INTERACTION or not item.get("handle"):
                stats.errors += 1
                stats.details.append(f"skipped item without type/handle: {item.get('id')}")
                continue
            docs.append(
                {
                    "id": str(item.get("id") or f"{item['type']}-{item['handle']}"),
                    "namespace": self.namespace_for(site_id, item),
                    "text": build_text(item),
                    "metadata": {k: item[k] for k in _METADATA_KEYS if item.get(k) not in (None, "")},
                }
            )

        for n, qa in enumerate(qas):
            question = str(qa.get("question") or "").strip()
            if not question:
                stats.errors += 1
                continue
            metadata = {"question": question, "answer": str(qa.get("answer") or "")}
            if qa.get("url"):
                metadata["url"] = qa["url"]
            docs.append(
                {
                    "id": str(qa.get("id") or f"qa-{n}"),
                    "namespace": self.namespace_for(site_id, qa) + "-qa",
                    "text": f"{question} {metadata['answer']}",
                    "metadata": metadata,
                }
            )

        ready: List[Dict[str, Any]] = []
        for start in range(0, len(docs), self.batch_size):
            batch = docs[start : start + self.batch_size]
            try:
                vectors = self.embed_fn([d["text"] for d in batch])
            except Exception as e:
                stats.errors += len(batch)
                stats.details.append(f"embedding batch at {start} failed: {e}")
                logger.warning("[INDEX] embedding batch at %d failed: %s", start, e)
                continue
            if len(vectors) < len(batch):
                missing = len(batch) - len(vectors)
                stats.errors += missing
                stats.details.append(f"embedding batch at {start} returned {missing} vectors short")
            for doc, dense in zip(batch, vectors):
                ready.append(dict(doc, dense=dense, sparse=self.scorer.score(doc["text"], mode="index")))

        # Namespaces are cleared only once their replacement vectors exist.
        stats.namespaces = sorted({d["namespace"] for d in ready})
        if replace:
            for ns in stats.namespaces:
                self.index.delete_all(ns)

        for doc in ready:
            try:
                self.index.upsert(doc["namespace"], doc["id"], doc["dense"], doc["sparse"], doc["metadata"])
                stats.added += 1
            except Exception as e:
                stats.errors += 1
                stats.details.append(f"{doc['id']}: {e}")
                logger.warning("[INDEX] failed to upsert %s: %s", doc["id"], e)

        logger.info("[INDEX] site=%s added=%d errors=%d namespaces=%s", site_id, stats.added, stats.errors, stats.namespaces)
        return stats
