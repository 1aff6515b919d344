"""
Shared helpers for walking nested payloads and normalizing timestamps.
"""

import re
from datetime import datetime, timezone
from typing import Any, List, Optional, Union

_SEGMENT = re.compile(r"([^.\[\]]+)|\[(\d+|\*)\]")


def split_path(path: str) -> List[str]:
    """
    Split a dot path into segments.

    Supports ``a.b.c``, ``$.a.b``, ``items[0].name`` and ``items[*].name``.
    Index segments are returned as their bracket content (``"0"``, ``"*"``).
    """
    if path.startswith("$"):
        path = path[1:]
    segments = []
    for name, index in _SEGMENT.findall(path):
        segments.append(name if name else index)
    return segments


def extract_by_path(data: Any, path: Optional[str], default: Any = None) -> Any:
    """
    Extract a value from nested dicts/lists using a dot path.

    A ``*`` segment maps the rest of the path over every element of a list
    and returns the list of results. Missing keys return ``default``.
    """
    if not path or path == "$":
        return data

    def walk(node: Any, segments: List[str]) -> Any:
        for position, segment in enumerate(segments):
            if node is None:
                return default
            if segment == "*":
                if not isinstance(node, list):
                    return default
                rest = segments[position + 1:]
                return [walk(element, rest) for element in node] if rest else list(node)
            if isinstance(node, list):
                if not segment.isdigit():
                    return default
                idx = int(segment)
                if idx >= len(node):
                    return default
                node = node[idx]
            elif isinstance(node, dict):
                if segment not in node:
                    return default
                node = node[segment]
            else:
                return default
        return node

    return walk(data, split_path(path))


def parse_timestamp(value: Union[str, int, float, datetime, None]) -> Optional[datetime]:
    """
    Parse an ISO-8601 string, epoch seconds or datetime into an aware UTC datetime.

    Returns None for empty or unparseable values. Naive values are assumed UTC.
    """
    if value is None or value == "":
        return None

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, bool):
        return None
    elif isinstance(value, (int, float)):
        # Millisecond epochs are common in JSON APIs
        seconds = value / 1000 if value > 1e11 else value
        parsed = datetime.fromtimestamp(seconds, tz=timezone.utc)
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z") or text.endswith("z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Render a datetime as an ISO-8601 UTC string."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
