"""Recovery parser for truncated or malformed LLM JSON output.

LLM responses are sometimes cut off mid-array when they hit the output token
limit. ``recover_json`` first tries a strict parse; failing that, it scans
each known array field and keeps only the leading elements that are
complete (balanced objects, closed string literals). Trailing fragments are
discarded, so recovery is lossy but never invents data.
"""
import json
import logging
import re
from typing import Any, Dict, List, Optional, Sequence

logger = logging.getLogger(__name__)

_CODE_FENCE = re.compile(r"^```[a-zA-Z]*\s*|\s*```$")


def strip_code_fences(text: str) -> str:
    """Remove a surrounding markdown code fence, if any."""
    return _CODE_FENCE.sub("", text.strip()).strip()


def recover_json(text: str, array_fields: Sequence[str]) -> Optional[Dict[str, Any]]:
    """
    Parse an LLM JSON object, salvaging complete array elements if truncated.

    Args:
        text: Raw LLM output
        array_fields: Top-level keys whose values are arrays worth salvaging

    Returns:
        The parsed object, a partial object holding the recovered arrays, or
        None when nothing could be recovered
    """
    if not text or not text.strip():
        return None

    cleaned = strip_code_fences(text)
    try:
        parsed = json.loads(cleaned)
        if isinstance(parsed, dict):
            return parsed
        logger.warning(f"Expected a JSON object, got {type(parsed).__name__}")
        return None
    except json.JSONDecodeError:
        pass

    recovered: Dict[str, Any] = {}
    for field in array_fields:
        items = _recover_array(cleaned, field)
        if items is not None:
            recovered[field] = items

    if not recovered:
        logger.warning("Unrecoverable JSON in LLM response")
        return None

    counts = ", ".join(f"{k}={len(v)}" for k, v in recovered.items())
    logger.warning(f"Recovered partial JSON from truncated response ({counts})")
    return recovered


def _recover_array(text: str, field: str) -> Optional[List[Any]]:
    """Complete leading elements of ``"field": [ ... ``, or None if absent."""
    match = re.search(r'"' + re.escape(field) + r'"\s*:\s*\[', text)
    if not match:
        return None

    items: List[Any] = []
    pos = match.end()
    length = len(text)
    while pos < length:
        char = text[pos]
        if char in " \t\r\n,":
            pos += 1
            continue
        if char == "]":
            break

        if char == "{":
            end = _find_balanced_end(text, pos)
        elif char == '"':
            end = _find_string_end(text, pos)
        else:
            end = None

        if end is None:
            break

        try:
            items.append(json.loads(text[pos:end]))
        except json.JSONDecodeError:
            break
        pos = end

    return items


def _find_string_end(text: str, start: int) -> Optional[int]:
    """Index just past the closing quote of the string starting at ``start``."""
    escaped = False
    for i in range(start + 1, len(text)):
        char = text[i]
        if escaped:
            escaped = False
        elif char == "\\":
            escaped = True
        elif char == '"':
            return i + 1
    return None


def _find_balanced_end(text: str, start: int) -> Optional[int]:
    """Index just past the brace closing the object starting at ``start``."""
    stack: List[str] = []
    closers = {"}": "{", "]": "["}
    i = start
    while i < len(text):
        char = text[i]
        if char == '"':
            end = _find_string_end(text, i)
            if end is None:
                return None
            i = end
            continue
        if char in ("{", "["):
            stack.append(char)
        elif char in closers:
            if not stack or stack[-1] != closers[char]:
                return None
            stack.pop()
            if not stack:
                return i + 1
        i += 1
    return None
