"""Turn segmentation output into exactly four panel descriptions.

The NLP model is asked for four scenes but its output is free text: a list
of four strings when it behaves, a token stream or a numbered list when it
does not. parse_segmentation_output() accepts all of these and normalizes
the result to PANEL_COUNT non-empty descriptions, splitting the longest
segment or merging the shortest adjacent pair as needed.
"""

import logging
import re
from typing import Any

from stripforge.jobs.schemas import PANEL_COUNT

logger = logging.getLogger(__name__)

_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+")
_NUMBERED_LINE = re.compile(r"^\s*(?:panel|scene)?\s*\d+\s*[:.)-]\s*(.+)$", re.IGNORECASE)


def split_sentences(text: str) -> list[str]:
    return [s.strip() for s in _SENTENCE_SPLIT.split(text.strip()) if s.strip()]


def expand_segments(segments: list[str], count: int = PANEL_COUNT) -> list[str]:
    """Split the longest segment in half by sentences until there are `count`.

    A segment that cannot be split any further is duplicated.
    """
    segments = list(segments)
    while len(segments) < count:
        longest = max(range(len(segments)), key=lambda i: len(segments[i]))
        sentences = split_sentences(segments[longest])
        if len(sentences) < 2:
            segments.append(segments[longest])
            continue
        midpoint = (len(sentences) + 1) // 2
        first = " ".join(sentences[:midpoint])
        second = " ".join(sentences[midpoint:])
        segments[longest:longest + 1] = [first, second]
    return segments


def consolidate_segments(segments: list[str], count: int = PANEL_COUNT) -> list[str]:
    """Merge the shortest adjacent pair until there are `count` segments."""
    segments = list(segments)
    while len(segments) > count:
        shortest = min(
            range(len(segments) - 1),
            key=lambda i: len(segments[i]) + len(segments[i + 1]),
        )
        merged = f"{segments[shortest]} {segments[shortest + 1]}"
        segments[shortest:shortest + 2] = [merged]
    return segments


def normalize_segments(segments: list[str], count: int = PANEL_COUNT) -> list[str]:
    segments = [s.strip() for s in segments if s and s.strip()]
    if not segments:
        raise ValueError("Segmentation produced no usable text")
    if len(segments) < count:
        segments = expand_segments(segments, count)
    elif len(segments) > count:
        segments = consolidate_segments(segments, count)
    return segments


def _segments_from_text(text: str) -> list[str]:
    lines = [line.strip() for line in text.splitlines() if line.strip()]
    numbered = [m.group(1).strip() for m in map(_NUMBERED_LINE.match, lines) if m]
    if len(numbered) >= 2:
        return numbered
    if len(lines) >= 2:
        return lines
    return split_sentences(text)


def parse_segmentation_output(output: Any, count: int = PANEL_COUNT) -> list[str]:
    """Extract exactly `count` panel descriptions from a segmentation result.

    Raises ValueError if nothing usable is present.
    """
    if isinstance(output, dict):
        for key in ("segments", "panels", "output"):
            if key in output:
                return parse_segmentation_output(output[key], count)
        raise ValueError(f"Unrecognized segmentation payload keys: {sorted(output)}")

    if isinstance(output, list):
        if not all(isinstance(part, str) for part in output):
            raise ValueError("Segmentation output list must contain strings")
        if len(output) == count and all(part.strip() for part in output):
            return [part.strip() for part in output]
        if all(" " in part.strip() for part in output if part.strip()) and any(p.strip() for p in output):
            return normalize_segments(output, count)
        # Streaming language models report a list of tokens
        text = "".join(output)
    elif isinstance(output, str):
        text = output
    else:
        raise ValueError(f"Unsupported segmentation output type: {type(output).__name__}")

    segments = normalize_segments(_segments_from_text(text), count)
    logger.debug(f"Normalized segmentation output into {len(segments)} panels")
    return segments
