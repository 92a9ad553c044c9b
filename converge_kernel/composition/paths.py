"""
Field paths over nested dicts and lists.

A path is a dot-separated list of keys with optional list indexes, e.g.
``spec.forProvider.size`` or ``spec.containers[0].image``.
"""

import re
from typing import Any, List, Union

MISSING = object()

_SEGMENT = re.compile(r"^([^\[\]]+)((?:\[\d+\])*)$")
_INDEX = re.compile(r"\[(\d+)\]")


def parse_path(path: str) -> List[Union[str, int]]:
    """Split a field path into keys and list indexes."""
    if not path:
        raise ValueError("Empty field path")
    segments: List[Union[str, int]] = []
    for part in path.split("."):
        match = _SEGMENT.match(part)
        if not match:
            raise ValueError(f"Invalid field path segment {part!r} in {path!r}")
        segments.append(match.group(1))
        segments.extend(int(i) for i in _INDEX.findall(match.group(2)))
    return segments


def _step(current: Any, segment: Union[str, int]) -> Any:
    if isinstance(segment, int):
        if isinstance(current, list) and 0 <= segment < len(current):
            return current[segment]
        return MISSING
    if isinstance(current, dict) and segment in current:
        return current[segment]
    return MISSING


def get_path(obj: Any, path: str) -> Any:
    """Return the value at ``path`` or MISSING."""
    current = obj
    for segment in parse_path(path):
        current = _step(current, segment)
        if current is MISSING:
            return MISSING
    return current


def set_path(obj: Any, path: str, value: Any) -> None:
    """
    Set the value at ``path``. Every parent container must already exist;
    only the leaf may be created. Raises KeyError otherwise.
    """
    segments = parse_path(path)
    parent = obj
    for segment in segments[:-1]:
        parent = _step(parent, segment)
        if parent is MISSING:
            raise KeyError(path)

    leaf = segments[-1]
    if isinstance(leaf, int):
        if not isinstance(parent, list) or not 0 <= leaf < len(parent):
            raise KeyError(path)
        parent[leaf] = value
    elif isinstance(parent, dict):
        parent[leaf] = value
    else:
        raise KeyError(path)
