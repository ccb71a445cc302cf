# storefront/shared/returns.py
"""Return-reason vocabulary accepted by the store's returns API."""
from __future__ import annotations

import re
from typing import Any, List, Optional, Tuple

ALLOWED_RETURN_REASONS = (
    "SIZE_TOO_SMALL",
    "SIZE_TOO_LARGE",
    "UNWANTED",
    "NOT_AS_DESCRIBED",
    "WRONG_ITEM",
    "DEFECTIVE",
    "STYLE",
    "COLOR",
    "OTHER",
    "UNKNOWN",
)

MAX_NOTE_CHARS = 500

# First match wins.
_REASON_PATTERNS: List[Tuple[str, re.Pattern]] = [
    ("SIZE_TOO_SMALL", re.compile(r"too\s*small|didn'?t\s*fit\b.*(?:small|tight)|tight|smaller\s*than\s*expected", re.I)),
    ("SIZE_TOO_LARGE", re.compile(r"too\s*large|too\s*big|loose|bigger\s*than\s*expected", re.I)),
    ("UNWANTED", re.compile(r"don'?t\s*want|no\s*longer\s*want|changed\s*my\s*mind|unwanted", re.I)),
    (
        "NOT_AS_DESCRIBED",
        re.compile(
            r"not\s*as\s*described|different\s*than\s*(?:described|advertised|expected)|not\s*as\s*(?:pictured|shown)",
            re.I,
        ),
    ),
    ("WRONG_ITEM", re.compile(r"wrong\s*item|incorrect\s*(?:item|product)|received\s*the\s*wrong", re.I)),
    (
        "DEFECTIVE",
        re.compile(r"defective|broken|damaged|does\s*not\s*work|doesn'?t\s*work|faulty|malfunction", re.I),
    ),
    ("STYLE", re.compile(r"style|ugly|looks\s*bad", re.I)),
    ("COLOR", re.compile(r"colou?r", re.I)),
    ("OTHER", re.compile(r"other|misc", re.I)),
]


def normalize_return_reason(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        return "UNKNOWN"
    text = value.strip()
    direct = re.sub(r"[^A-Z_]", "", re.sub(r"[\s-]+", "_", text.upper()))
    if direct in ALLOWED_RETURN_REASONS:
        return direct
    for reason, pattern in _REASON_PATTERNS:
        if pattern.search(text):
            return reason
    return "UNKNOWN"


def coerce_return_note(note: Any) -> Optional[str]:
    text = note.strip() if isinstance(note, str) else ""
    return text[:MAX_NOTE_CHARS] if text else None
