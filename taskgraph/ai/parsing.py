"""Helpers for turning raw model output into JSON payloads."""

import json
import re
from typing import Any

from taskgraph.core.exceptions import ResponseFormatError

_FENCE_RE = re.compile(r"```(?:json)?\s*\n?(.*?)```", re.DOTALL)


def extract_json(response_text: str) -> Any:
    """
    Parse JSON from a model response.

    Handles bare JSON, markdown code fences and leading prose before the
    first object or array.

    Args:
        response_text: Raw text returned by the provider.

    Returns:
        Decoded JSON value.

    Raises:
        ResponseFormatError: If no JSON value can be decoded.

    Example:
        >>> extract_json('```json\\n{"score": 7}\\n```')
        {'score': 7}
    """
    text = response_text.strip()
    if not text:
        raise ResponseFormatError("Empty response from provider")

    # Handle potential markdown code blocks
    match = _FENCE_RE.search(text)
    if match:
        text = match.group(1).strip()
    elif text.startswith("```"):
        text = re.sub(r"```(?:json)?\n?", "", text).rstrip("`").strip()

    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    # Fall back to the outermost object or array embedded in prose
    for opener, closer in (("{", "}"), ("[", "]")):
        start = text.find(opener)
        end = text.rfind(closer)
        if start != -1 and end > start:
            try:
                return json.loads(text[start : end + 1])
            except json.JSONDecodeError:
                continue

    raise ResponseFormatError(
        f"Could not parse JSON from response: {response_text[:200]}",
        {"raw": response_text[:500]},
    )
