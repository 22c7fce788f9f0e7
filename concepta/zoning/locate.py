"""
Locate a JSON payload inside free-form completion text.

Completions usually wrap the payload in commentary or a fenced code block.
Preference order:

1. the first fenced block labelled ``json``
2. the longest top-level ``{...}`` / ``[...]`` span (earliest wins on ties)
3. the whole trimmed text

Brackets are matched with a small scanner that understands JSON strings and
escapes, so braces inside string values never end a span early.
"""

from __future__ import annotations

import json
from typing import Any, List, NamedTuple, Optional, Tuple

from loguru import logger

from concepta.exceptions import ParseError


FENCE = "```"
_CLOSERS = {"{": "}", "[": "]"}


class LocatedPayload(NamedTuple):
    text: str
    strategy: str  # "fence", "span" or "raw"


def _first_json_fence(text: str) -> Optional[str]:
    start = 0
    while True:
        open_idx = text.find(FENCE, start)
        if open_idx < 0:
            return None
        label_start = open_idx + len(FENCE)
        label_end = label_start
        while label_end < len(text) and not text[label_end].isspace() and text[label_end] not in "{[`":
            label_end += 1
        close_idx = text.find(FENCE, label_end)
        if close_idx < 0:
            return None
        if text[label_start:label_end].lower() == "json":
            return text[label_end:close_idx].strip()
        start = close_idx + len(FENCE)


def candidate_spans(text: str) -> List[Tuple[int, int]]:
    """All balanced top-level bracket spans as ``(start, end)`` slices.

    Single pass. Each open bracket collects the spans closed directly inside
    it; when the enclosing bracket is mismatched or never closes, those inner
    spans are promoted to top level.
    """
    spans: List[Tuple[int, int]] = []
    # (expected closer, start index, spans closed directly inside)
    stack: List[Tuple[str, int, List[Tuple[int, int]]]] = []
    in_string = False
    escaped = False

    def abandon() -> None:
        for _, _, inner in stack:
            spans.extend(inner)
        stack.clear()

    for idx, ch in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = bool(stack)
        elif ch in _CLOSERS:
            stack.append((_CLOSERS[ch], idx, []))
        elif ch in "}]" and stack:
            closer, start, _ = stack[-1]
            if closer != ch:
                abandon()
                continue
            stack.pop()
            if stack:
                stack[-1][2].append((start, idx + 1))
            else:
                spans.append((start, idx + 1))
    abandon()
    return spans


def _longest_span(text: str) -> Optional[str]:
    best: Optional[Tuple[int, int]] = None
    for start, end in candidate_spans(text):
        if best is None or end - start > best[1] - best[0]:
            best = (start, end)
    if best is None:
        return None
    return text[best[0]:best[1]]


def locate_payload(raw_text: str) -> LocatedPayload:
    text = raw_text.lstrip("\ufeff")
    fenced = _first_json_fence(text)
    if fenced is not None:
        return LocatedPayload(fenced, "fence")
    span = _longest_span(text)
    if span is not None:
        return LocatedPayload(span, "span")
    return LocatedPayload(text.strip(), "raw")


def locate_json(raw_text: str) -> str:
    return locate_payload(raw_text).text


def parse_json_payload(raw_text: str) -> Any:
    """Locate and decode the JSON payload of a completion.

    Raises:
        ParseError: No payload could be decoded; carries the raw text.
    """
    if not raw_text or not raw_text.strip():
        raise ParseError("Completion text is empty", raw_text or "")
    located = locate_payload(raw_text)
    try:
        payload = json.loads(located.text)
    except json.JSONDecodeError as exc:
        raise ParseError(
            f"Failed to parse JSON payload: {exc.msg}",
            raw_text,
            {"strategy": located.strategy, "line": exc.lineno, "column": exc.colno},
        ) from exc
    logger.debug("Located JSON payload via {strategy} ({size} chars)", strategy=located.strategy, size=len(located.text))
    return payload
