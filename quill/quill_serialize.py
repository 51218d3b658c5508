"""
JSON and YAML conversion between wire text and Quill values.
"""
from __future__ import annotations

import json
import re
from typing import Any, Optional

import yaml

from quill.quill_datatypes import QuillDict, QuillSet, to_value
from quill.quill_errors import QuillTypeError, QuillValueError


# --------------------------
# Helpers
# --------------------------

def _norm_text(data: bytes | bytearray | str, *, encoding: Optional[str] = None) -> str:
    if isinstance(data, (bytes, bytearray)):
        try:
            return data.decode(encoding or 'utf-8', errors='replace')
        except LookupError:
            return data.decode('utf-8', errors='replace')
    return data


def _encoding_from_content_type(content_type: Optional[str]) -> Optional[str]:
    if not content_type:
        return None
    m = re.search(r'charset\s*=\s*([^\s;]+)', content_type, re.IGNORECASE)
    if m:
        return m.group(1).strip('"').strip("'")
    return None


def _written_key(key: Any, fmt: str) -> Any:
    """The key as `fmt` writes it. JSON object keys are always strings."""
    if fmt == 'json' and not isinstance(key, str):
        return json.dumps(key)
    return key


def _to_builtin(value: Any, fmt: str = 'json') -> Any:
    """
    Script value -> plain JSON/YAML-compatible Python data.

    Dict keys that are distinct in a script but equal once written (1 and
    True in a Python dict, 1 and "1" as JSON text) raise ValueError rather
    than silently dropping an entry.
    """
    match value:
        case None | bool() | int() | float() | str():
            return value
        case QuillDict():
            out = {}
            written = {}
            originals = {}
            for k, v in value.items():
                if not isinstance(k, (str, int, float, bool)) and k is not None:
                    raise QuillTypeError(f"keys must be str, int, float, bool or None, not {type(k).__name__}")
                text = _written_key(k, fmt)
                if text in written or k in originals:
                    first = written[text] if text in written else originals[k]
                    raise QuillValueError(f"keys {first!r} and {k!r} collide when serialized to {fmt}")
                written[text] = k
                originals[k] = k
                out[k] = _to_builtin(v, fmt)
            return out
        case list() | tuple():
            return [_to_builtin(v, fmt) for v in value]
        case QuillSet():
            return [_to_builtin(v, fmt) for v in value]
    raise QuillTypeError(f"Object of type {type(value).__name__} is not serializable")


def detect_format(content_type: Optional[str] = None, data_hint: Optional[str] = None) -> Optional[str]:
    """
    Returns 'json' or 'yaml' from a Content-Type, falling back to sniffing
    the data when given.
    """
    ct = (content_type or "").lower()
    if 'json' in ct:
        return 'json'
    if 'yaml' in ct:
        return 'yaml'
    if data_hint is not None:
        s = data_hint.lstrip()
        if s.startswith('{') or s.startswith('['):
            return 'json'
    return None


# --------------------------
# Public API
# --------------------------

def deserialize(data: bytes | bytearray | str, *, fmt: str, content_type: Optional[str] = None) -> Any:
    """Parses text in `fmt` ('json' | 'yaml') into script values. Raises ValueError on bad input."""
    text = _norm_text(data, encoding=_encoding_from_content_type(content_type))
    match fmt:
        case 'json':
            try:
                return to_value(json.loads(text))
            except json.JSONDecodeError as e:
                raise QuillValueError(f"invalid JSON: {e}") from None
        case 'yaml':
            try:
                return to_value(yaml.safe_load(text))
            except yaml.YAMLError as e:
                raise QuillValueError(f"invalid YAML: {e}") from None
    raise QuillValueError(f"Unsupported serialization format: {fmt!r}")


def try_deserialize(data: bytes | bytearray | str, *, content_type: Optional[str] = None) -> Any:
    """Best-effort parse of a response body; None when it is not JSON/YAML."""
    text = _norm_text(data, encoding=_encoding_from_content_type(content_type))
    fmt = detect_format(content_type, text)
    if fmt is None:
        return None
    try:
        return deserialize(text, fmt=fmt)
    except QuillValueError:
        return None


def serialize(value: Any, *, fmt: str, indent: Optional[int] = None, sort_keys: bool = False) -> str:
    """Script value -> text in `fmt` ('json' | 'yaml')."""
    built = _to_builtin(value, fmt)
    match fmt:
        case 'json':
            return json.dumps(built, ensure_ascii=False, indent=indent, sort_keys=sort_keys)
        case 'yaml':
            return yaml.safe_dump(built, sort_keys=sort_keys, allow_unicode=True)
    raise QuillValueError(f"Unsupported serialization format: {fmt!r}")


__all__ = [
    "deserialize",
    "try_deserialize",
    "serialize",
    "detect_format",
]
