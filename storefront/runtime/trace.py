# storefront/runtime/trace.py
from __future__ import annotations

import json
import os
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class TraceEvent:
    ts_ms: int
    stage: str
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class TurnTrace:
    """Stage-by-stage record of one chat turn, with elapsed time per stage."""

    request_id: str
    started_ts_ms: int
    site_id: str
    utterance: str
    thread_id: Optional[str] = None
    events: List[TraceEvent] = field(default_factory=list)
    _last_ms: int = 0

    @staticmethod
    def start(utterance: str, site_id: str, thread_id: Optional[str] = None) -> "TurnTrace":
        now = _now_ms()
        return TurnTrace(
            request_id=str(uuid.uuid4()),
            started_ts_ms=now,
            site_id=site_id,
            utterance=utterance,
            thread_id=thread_id,
            _last_ms=now,
        )

    def add(self, stage: str, **data: Any) -> None:
        now = _now_ms()
        data.setdefault("elapsed_ms", now - self._last_ms)
        self._last_ms = now
        self.events.append(TraceEvent(ts_ms=now, stage=stage, data=data))

    def timings(self) -> Dict[str, int]:
        out: Dict[str, int] = {}
        for e in self.events:
            out[e.stage] = out.get(e.stage, 0) + int(e.data.get("elapsed_ms", 0))
        out["total"] = self._last_ms - self.started_ts_ms
        return out

    def to_dict(self) -> Dict[str, Any]:
        return {
            "request_id": self.request_id,
            "started_ts_ms": self.started_ts_ms,
            "site_id": self.site_id,
            "thread_id": self.thread_id,
            "utterance": self.utterance,
            "events": [{"ts_ms": e.ts_ms, "stage": e.stage, "data": e.data} for e in self.events],
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, default=str)


class JsonlTraceWriter:
    def __init__(self, audit_dir: str | None = None, filename: str = "turn_traces.jsonl"):
        self.audit_dir = Path(audit_dir or os.getenv("SA_AUDIT_DIR", ".storefront/audit"))
        self.path = self.audit_dir / filename
        self.audit_dir.mkdir(parents=True, exist_ok=True)

    def write(self, trace: TurnTrace) -> None:
        with self.path.open("a", encoding="utf-8") as f:
            f.write(trace.to_json() + "\n")
