"""
Tolerant JSON Parsing
=====================

Model output is often wrapped in markdown fences or surrounded by prose.
These helpers recover the JSON payload, or return None.

INVARIANT: Nothing in this module raises on malformed model output.
"""

from __future__ import annotations
import json
import re
from typing import Any, Dict, List, Optional

_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*\n?(.*?)```", re.DOTALL)


def strip_code_fences(text: str) -> str:
    """Return the body of the first fenced block, or the text itself."""
    match = _FENCE_RE.search(text)
    if match:
        return match.group(1).strip()
    return text.replace("```json", "").replace("```", "").strip()


def extract_json(text: Optional[str]) -> Optional[str]:
    """
    Slice out the JSON document from model output.

    Starts at the earliest '[' or '{' and ends at the last matching
    closer of the same kind.
    """
    if not text:
        return None
    body = strip_code_fences(text)

    starts = [i for i in (body.find("["), body.find("{")) if i != -1]
    if not starts:
        return None
    start = min(starts)
    closer = "]" if body[start] == "[" else "}"
    end = body.rfind(closer)
    if end <= start:
        return None
    return body[start:end + 1]


def _loads(candidate: Optional[str]) -> Any:
    if candidate is None:
        return None
    try:
        return json.loads(candidate)
    except json.JSONDecodeError:
        pass
    # Trailing commas are the most common defect in model JSON
    repaired = re.sub(r",\s*([\]}])", r"\1", candidate)
    try:
        return json.loads(repaired)
    except json.JSONDecodeError:
        return None


def parse_json_array(text: Optional[str]) -> Optional[List[Any]]:
    """Parse a JSON array; a bare object is not accepted."""
    if not text:
        return None
    body = strip_code_fences(text)
    start = body.find("[")
    end = body.rfind("]")
    if start == -1 or end <= start:
        return None
    data = _loads(body[start:end + 1])
    return data if isinstance(data, list) else None


def parse_json_object(text: Optional[str]) -> Optional[Dict[str, Any]]:
    """Parse a JSON object; a bare array is not accepted."""
    if not text:
        return None
    body = strip_code_fences(text)
    start = body.find("{")
    end = body.rfind("}")
    if start == -1 or end <= start:
        return None
    data = _loads(body[start:end + 1])
    return data if isinstance(data, dict) else None


def parse_json(text: Optional[str]) -> Any:
    """Parse whichever JSON document appears first."""
    return _loads(extract_json(text))
