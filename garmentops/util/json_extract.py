# garmentops/util/json_extract.py
import json
from typing import Any, Optional

_CLOSERS = {"{": "}", "[": "]"}

def _balanced_end(text: str, start: int) -> Optional[int]:
    """Index of the bracket closing the one at `start`, or None if it never balances."""
    stack = []
    in_str = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_str:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_str = False
            continue
        if ch == '"':
            in_str = True
        elif ch in _CLOSERS:
            stack.append(_CLOSERS[ch])
        elif ch in "}]":
            if not stack or stack.pop() != ch:
                return None
            if not stack:
                return i
    return None

def extract_json(text: str) -> str:
    """
    Return the first balanced {...} or [...] in `text` that parses as JSON.
    Models like to wrap their JSON in prose or ``` fences; this digs it out.
    Falls back to the trimmed input when nothing qualifies.
    """
    text = text or ""
    for start, ch in enumerate(text):
        if ch not in _CLOSERS:
            continue
        end = _balanced_end(text, start)
        if end is None:
            continue
        candidate = text[start:end + 1]
        try:
            json.loads(candidate)
        except ValueError:
            continue
        return candidate
    return text.strip()

def parse_json(text: str) -> Any:
    return json.loads(extract_json(text))
