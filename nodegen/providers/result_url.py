"""
Find the first result URL in a provider response of unknown shape
"""

import json
import re
from typing import Any, List, Optional, Set

URL_PATTERN = re.compile(r"^https?://", re.IGNORECASE)

DIRECT_FIELDS = (
    "url", "file_url", "fileUrl", "result_url", "resultUrl",
    "video_url", "videoUrl", "image_url", "imageUrl",
    "download_url", "downloadUrl",
)
LIST_FIELDS = (
    "resultUrls", "result_urls", "urls", "video_urls", "image_urls",
    "images", "videos", "items", "outputs",
)
NESTED_FIELDS = ("data", "result", "output", "resultJson", "response", "video", "image")


def is_url(value: Any) -> bool:
    return isinstance(value, str) and bool(URL_PATTERN.match(value))


def _parse_json(value: str) -> Any:
    trimmed = value.strip()
    if not (trimmed.startswith("{") or trimmed.startswith("[")):
        return None
    try:
        return json.loads(trimmed)
    except (ValueError, RecursionError):
        return None


class ResultUrlFinder:
    """Depth-first search over dict / list / str with an explicit stack.

    Containers are visited at most once, so self-referencing payloads terminate,
    and nesting depth is bounded only by memory.
    """

    def __init__(self):
        self._visited: Set[int] = set()

    def _enter(self, container: Any) -> bool:
        key = id(container)
        if key in self._visited:
            return False
        self._visited.add(key)
        return True

    def find(self, value: Any) -> Optional[str]:
        stack = [value]
        while stack:
            current = stack.pop()

            if isinstance(current, str):
                if is_url(current):
                    return current
                parsed = _parse_json(current)
                if parsed is not None:
                    stack.append(parsed)

            elif isinstance(current, (list, tuple)):
                if self._enter(current):
                    # Reversed so the first item is searched first
                    stack.extend(reversed(current))

            elif isinstance(current, dict):
                if not self._enter(current):
                    continue
                for name in DIRECT_FIELDS:
                    if is_url(current.get(name)):
                        return current[name]

                children = []
                for name in LIST_FIELDS:
                    items = current.get(name)
                    if isinstance(items, (list, tuple)) and items:
                        children.append(items[0])
                for name in NESTED_FIELDS:
                    if name in current:
                        children.append(current[name])
                stack.extend(reversed(children))

        return None


def extract_result_url(payload: Any) -> Optional[str]:
    """First plausible http(s) URL in the payload, or None. Never raises."""
    return ResultUrlFinder().find(payload)


def extract_result_urls(payload: Any) -> List[str]:
    """Every URL in the first non-empty list field found, else just the first URL."""
    if isinstance(payload, (list, tuple)):
        return [url for url in (extract_result_url(item) for item in payload) if url]
    urls = _collect_list_urls(payload)
    if urls:
        return urls
    url = extract_result_url(payload)
    return [url] if url else []


def _collect_list_urls(payload: Any) -> List[str]:
    seen: Set[int] = set()
    stack = [payload]
    while stack:
        current = stack.pop()
        if isinstance(current, str):
            current = _parse_json(current)
        if not isinstance(current, dict) or id(current) in seen:
            continue
        seen.add(id(current))

        for name in LIST_FIELDS:
            items = current.get(name)
            if isinstance(items, list) and items:
                urls = [url for url in (extract_result_url(item) for item in items) if url]
                if urls:
                    return urls
        stack.extend(reversed([current.get(name) for name in NESTED_FIELDS]))
    return []
