# storefront/runtime/vector_index.py
"""
Hybrid vector index contract plus an in-memory implementation.

A query scores each stored record as dense dot product plus sparse dot
product, the same additive fusion the hosted index performs.
"""
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from storefront.runtime.models import CandidateRecord, SparseVector


@runtime_checkable
class VectorIndex(Protocol):
    def upsert(
        self,
        namespace: str,
        id: str,
        dense: List[float],
        sparse: Optional[SparseVector],
        metadata: Dict[str, Any],
    ) -> None: ...

    def query(
        self,
        namespace: str,
        dense: List[float],
        sparse: Optional[SparseVector] = None,
        top_k: int = 20,
        filter: Optional[Dict[str, Any]] = None,
    ) -> List[CandidateRecord]: ...

    def delete_all(self, namespace: str) -> None: ...


@dataclass
class _Stored:
    dense: List[float]
    sparse: Optional[SparseVector]
    metadata: Dict[str, Any] = field(default_factory=dict)


def _dot(a: List[float], b: List[float]) -> float:
    return sum(x * y for x, y in zip(a, b))


def _matches(metadata: Dict[str, Any], flt: Optional[Dict[str, Any]]) -> bool:
    """Subset of the hosted filter language: equality, $eq, $in, $ne."""
    if not flt:
        return True
    for key, cond in flt.items():
        value = metadata.get(key)
        if isinstance(cond, dict):
            if "$eq" in cond and value != cond["$eq"]:
                return False
            if "$in" in cond and value not in cond["$in"]:
                return False
            if "$ne" in cond and value == cond["$ne"]:
                return False
        elif value != cond:
            return False
    return True


class InMemoryVectorIndex:
    """Dict-of-namespaces index, suitable for tests and single-process serving."""

    def __init__(self) -> None:
        self._namespaces: Dict[str, Dict[str, _Stored]] = {}
        self._lock = threading.Lock()

    def upsert(
        self,
        namespace: str,
        id: str,
        dense: List[float],
        sparse: Optional[SparseVector],
        metadata: Dict[str, Any],
    ) -> None:
        with self._lock:
            self._namespaces.setdefault(namespace, {})[id] = _Stored(
                dense=list(dense), sparse=sparse, metadata=dict(metadata)
            )

    def query(
        self,
        namespace: str,
        dense: List[float],
        sparse: Optional[SparseVector] = None,
        top_k: int = 20,
        filter: Optional[Dict[str, Any]] = None,
    ) -> List[CandidateRecord]:
        with self._lock:
            items = list(self._namespaces.get(namespace, {}).items())

        hits: List[CandidateRecord] = []
        for rid, stored in items:
            if not _matches(stored.metadata, filter):
                continue
            d = _dot(dense, stored.dense)
            s = sparse.dot(stored.sparse) if sparse is not None and stored.sparse is not None else 0.0
            hits.append(
                CandidateRecord(
                    id=rid,
                    score=d + s,
                    dense_score=d,
                    sparse_score=s,
                    metadata=dict(stored.metadata),
                )
            )
        hits.sort(key=lambda h: (-h.score, h.id))
        return hits[:top_k]

    def delete_all(self, namespace: str) -> None:
        with self._lock:
            self._namespaces.pop(namespace, None)

    def namespaces(self) -> List[str]:
        with self._lock:
            return sorted(self._namespaces)

    def count(self, namespace: str) -> int:
        with self._lock:
            return len(self._namespaces.get(namespace, {}))
