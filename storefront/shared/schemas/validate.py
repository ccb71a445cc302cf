from __future__ import annotations
from pathlib import Path
import json
from jsonschema import Draft202012Validator

SCHEMA_DIR = Path(__file__).parent


def _load_schema(filename: str) -> dict:
    path = SCHEMA_DIR / filename
    return json.loads(path.read_text(encoding="utf-8"))


_CLASSIFICATION_SCHEMA = None
_REPLY_SCHEMA = None


def _errors(schema: dict, doc: dict) -> list[str]:
    v = Draft202012Validator(schema)
    errors = sorted(v.iter_errors(doc), key=lambda e: list(e.path))
    return [f"path={'/'.join(map(str, e.path))} msg={e.message}" for e in errors]


def validate_classification(doc: dict) -> list[str]:
    global _CLASSIFICATION_SCHEMA
    if _CLASSIFICATION_SCHEMA is None:
        _CLASSIFICATION_SCHEMA = _load_schema("classification.schema.json")
    return _errors(_CLASSIFICATION_SCHEMA, doc)


def validate_model_reply(doc: dict) -> list[str]:
    global _REPLY_SCHEMA
    if _REPLY_SCHEMA is None:
        _REPLY_SCHEMA = _load_schema("model_reply.schema.json")
    return _errors(_REPLY_SCHEMA, doc)
