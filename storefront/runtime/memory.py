# storefront/runtime/memory.py
"""
Thread-scoped conversation memory.

The serving layer owns persistence: it reads a bounded ConversationContext
before a turn and appends the user utterance plus the resolved assistant
action afterwards. The core pipeline never writes here.

Uses a dict-based in-memory backend. The MemoryBackend Protocol allows
swapping to Redis/Postgres later.
"""
from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Tuple, runtime_checkable

from storefront.runtime.models import (
    MAX_CONTEXT_TURNS,
    ConversationContext,
    ResolvedAction,
    Turn,
)


@dataclass
class MemoryTurn:
    """A single stored message."""

    turn_id: int
    timestamp: float
    role: str
    content: str
    recorded_action: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def as_turn(self) -> Turn:
        return Turn(role=self.role, content=self.content, recorded_action=self.recorded_action)


@runtime_checkable
class MemoryBackend(Protocol):
    """Swappable backend protocol (dict -> Redis -> Postgres)."""

    def store_turn(self, thread_id: str, turn: MemoryTurn) -> None: ...

    def get_turns(self, thread_id: str, limit: int = 20) -> List[MemoryTurn]: ...

    def clear(self, thread_id: str) -> None: ...


class DictMemoryBackend:
    def __init__(self, max_turns_per_thread: int = 20) -> None:
        self._turns: Dict[str, List[MemoryTurn]] = {}
        self._lock = threading.Lock()
        self.max_turns_per_thread = max_turns_per_thread

    def store_turn(self, thread_id: str, turn: MemoryTurn) -> None:
        with self._lock:
            turns = self._turns.setdefault(thread_id, [])
            turns.append(turn)
            # Oldest turns drop off first.
            del turns[: max(0, len(turns) - self.max_turns_per_thread)]

    def get_turns(self, thread_id: str, limit: int = 20) -> List[MemoryTurn]:
        with self._lock:
            turns = list(self._turns.get(thread_id, []))
        return turns[-limit:] if limit else turns

    def clear(self, thread_id: str) -> None:
        with self._lock:
            self._turns.pop(thread_id, None)


class ConversationMemory:
    def __init__(self, backend: Optional[MemoryBackend] = None) -> None:
        self._backend: MemoryBackend = backend or DictMemoryBackend()
        self._turn_counters: Dict[str, int] = {}
        self._lock = threading.Lock()

    def record_turn(
        self,
        thread_id: str,
        role: str,
        content: str,
        recorded_action: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> MemoryTurn:
        with self._lock:
            count = self._turn_counters.get(thread_id, 0) + 1
            self._turn_counters[thread_id] = count
        turn = MemoryTurn(
            turn_id=count,
            timestamp=time.time(),
            role=role,
            content=content,
            recorded_action=recorded_action,
            metadata=dict(metadata) if metadata else {},
        )
        self._backend.store_turn(thread_id, turn)
        return turn

    def record_exchange(
        self, thread_id: str, utterance: str, resolved: ResolvedAction
    ) -> Tuple[MemoryTurn, MemoryTurn]:
        """Append the user message and the assistant's resolved action."""
        user = self.record_turn(thread_id, "user", utterance)
        assistant = self.record_turn(
            thread_id,
            "assistant",
            resolved.answer,
            recorded_action=resolved.action,
            metadata={"url": resolved.url} if resolved.url else None,
        )
        return user, assistant

    def get_context(self, thread_id: str, limit: int = MAX_CONTEXT_TURNS) -> ConversationContext:
        turns = self._backend.get_turns(thread_id, limit=limit)
        return ConversationContext.from_turns([t.as_turn() for t in turns])

    def get_turns(self, thread_id: str, limit: int = 20) -> List[MemoryTurn]:
        return self._backend.get_turns(thread_id, limit=limit)

    def clear(self, thread_id: str) -> None:
        with self._lock:
            self._turn_counters.pop(thread_id, None)
        self._backend.clear(thread_id)
