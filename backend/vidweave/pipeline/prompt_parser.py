"""Keyword-based prompt parsing.

Extracts mood, style, constraints, keywords and an aspect ratio from the
free-text prompt. Pure function: no I/O, no model calls.

Usage:
    from vidweave.pipeline.prompt_parser import parse_prompt

    parsed = parse_prompt("A calm cinematic sunrise, no people", 30)
"""

import re
from typing import Optional

from vidweave.schemas.scenes import ParsedPrompt

MOOD_KEYWORDS = [
    "energetic", "calm", "mysterious", "joyful",
    "dramatic", "peaceful", "intense", "relaxed",
]
STYLE_KEYWORDS = [
    "cinematic", "animated", "realistic", "abstract",
    "minimalist", "vibrant", "dark", "bright",
]

_CONSTRAINT_PATTERNS = [
    re.compile(r"(?:no|avoid|don't|do not)\s+([^.,!?]+)", re.IGNORECASE),
    re.compile(r"(?:must|should|include|have)\s+([^.,!?]+)", re.IGNORECASE),
]

_STOPWORDS = frozenset({
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to",
    "for", "of", "with", "by", "is", "are", "was", "were",
})

_MAX_KEYWORDS = 10

_RATIO_PATTERN = re.compile(r"\b(\d{1,2}):(\d{1,2})\b")

ASPECT_RATIO_NAMES = {
    "landscape": "16:9",
    "widescreen": "16:9",
    "desktop": "16:9",
    "portrait": "9:16",
    "vertical": "9:16",
    "mobile": "9:16",
    "square": "1:1",
}


def _detect_aspect_ratio(lower_prompt: str) -> Optional[str]:
    match = _RATIO_PATTERN.search(lower_prompt)
    if match:
        return f"{int(match.group(1))}:{int(match.group(2))}"
    for word in re.findall(r"[a-z]+", lower_prompt):
        if word in ASPECT_RATIO_NAMES:
            return ASPECT_RATIO_NAMES[word]
    return None


def parse_prompt(prompt: str, duration: float) -> ParsedPrompt:
    """Extract generation hints from a prompt.

    Args:
        prompt: Free-text user prompt
        duration: Target video duration in seconds (carried through unchanged)

    Returns:
        ParsedPrompt with the first matching mood/style keyword, joined
        constraint phrases, up to 10 unique keywords and an aspect ratio
        if one is named.
    """
    lower_prompt = prompt.lower()

    mood = next((k for k in MOOD_KEYWORDS if k in lower_prompt), None)
    style = next((k for k in STYLE_KEYWORDS if k in lower_prompt), None)

    constraints: list[str] = []
    for pattern in _CONSTRAINT_PATTERNS:
        for match in pattern.finditer(prompt):
            phrase = match.group(1).strip()
            if phrase:
                constraints.append(phrase)

    keywords: list[str] = []
    for word in lower_prompt.split():
        if len(word) > 3 and word not in _STOPWORDS and word not in keywords:
            keywords.append(word)
            if len(keywords) == _MAX_KEYWORDS:
                break

    return ParsedPrompt(
        duration=duration,
        mood=mood,
        style=style,
        constraints="; ".join(constraints) if constraints else None,
        keywords=keywords,
        aspect_ratio=_detect_aspect_ratio(lower_prompt),
    )
