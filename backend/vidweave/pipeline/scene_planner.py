"""Scene planning: split one prompt and duration into ordered scenes.

Deterministic and side-effect free. The number of scenes depends only on
the duration (one scene per started ``max_scene_duration`` block); the
duration is then shared equally between scenes so the last one is never
a short leftover.

Per-scene text is cut out of the full prompt, tried in this order until
there are enough segments:

1. line breaks
2. sentence boundaries
3. comma clauses longer than ``min_clause_chars``
4. equal word chunks
5. equal character chunks

Usage:
    from vidweave.pipeline.scene_planner import plan_scenes

    scenes = plan_scenes(prompt, 65, parsed_prompt)
"""

import math
import re
from typing import Optional

from vidweave.config import settings
from vidweave.schemas.scenes import ParsedPrompt, SceneDescriptor

_SENTENCE_SPLIT = re.compile(r"[.!?]\s+")

OPENING_PREFIX = "Opening scene, establishing shot: "
CLOSING_PREFIX = "Closing scene, finale: "
MIDDLE_PREFIX = "Middle scene, main action: "
TRANSITION_CONTINUED_PREFIX = (
    "Transition scene (continuing from previous scene, maintaining visual consistency): "
)
TRANSITION_PREFIX = "Transition scene: "
CONTINUITY_SUFFIX = ". Maintain visual continuity with previous scenes, same style and aesthetic."


def _equal_chunks(items: list, count: int) -> list:
    """Split items into exactly ``count`` contiguous, near-equal, non-empty chunks."""
    total = len(items)
    return [items[(i * total) // count:((i + 1) * total) // count] for i in range(count)]


def split_segments(prompt: str, num_scenes: int, min_clause_chars: int) -> list[str]:
    """Cut the prompt into candidate scene segments.

    Returns the first strategy that yields at least ``num_scenes`` non-empty
    segments. If none does, returns the strategy with the most segments
    (earliest wins a tie); the caller then groups segments per scene.
    """
    candidates: list[list[str]] = []

    lines = [p.strip() for p in prompt.split("\n") if p.strip()]
    candidates.append(lines)
    if len(lines) >= num_scenes:
        return lines

    sentences = [p.strip() for p in _SENTENCE_SPLIT.split(prompt) if p.strip()]
    candidates.append(sentences)
    if len(sentences) >= num_scenes:
        return sentences

    clauses = [p.strip() for p in prompt.split(",") if len(p.strip()) > min_clause_chars]
    candidates.append(clauses)
    if len(clauses) >= num_scenes:
        return clauses

    words = prompt.split()
    if len(words) >= num_scenes:
        return [" ".join(chunk) for chunk in _equal_chunks(words, num_scenes)]

    text = prompt.strip()
    if len(text) >= num_scenes:
        chars = [c.strip() for c in ("".join(chunk) for chunk in _equal_chunks(list(text), num_scenes))]
        chars = [c for c in chars if c]
        candidates.append(chars)
        if len(chars) >= num_scenes:
            return chars

    return max(candidates, key=len)


def _segment_for_scene(segments: list[str], scene_number: int, num_scenes: int) -> str:
    if not segments:
        return ""
    if len(segments) >= num_scenes:
        return segments[scene_number - 1]

    # Fewer segments than scenes: contiguous groups, later scenes reuse the tail
    per_scene = math.ceil(len(segments) / num_scenes)
    start = min((scene_number - 1) * per_scene, len(segments) - 1)
    end = min(start + per_scene, len(segments))
    return ". ".join(segments[start:end])


def _position_prefix(scene_number: int, num_scenes: int) -> str:
    position = scene_number / num_scenes
    if position <= 0.2:
        return OPENING_PREFIX
    if position >= 0.8:
        return CLOSING_PREFIX
    if 0.4 <= position <= 0.6:
        return MIDDLE_PREFIX
    if scene_number > 1:
        return TRANSITION_CONTINUED_PREFIX
    return TRANSITION_PREFIX


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def scene_count(duration: float, max_scene_duration: Optional[float] = None) -> int:
    """Number of scenes for a duration: one per started max_scene_duration block."""
    if max_scene_duration is None:
        max_scene_duration = settings.pipeline.max_scene_duration
    return max(1, math.ceil(duration / max_scene_duration))


def plan_scenes(
    prompt: str,
    duration: float,
    hints: Optional[ParsedPrompt] = None,
    *,
    max_scene_duration: Optional[float] = None,
    short_segment_chars: Optional[int] = None,
    long_prompt_chars: Optional[int] = None,
    min_clause_chars: Optional[int] = None,
) -> list[SceneDescriptor]:
    """Plan the scenes for one job.

    Args:
        prompt: Full user prompt
        duration: Total video duration in seconds (must be > 0)
        hints: Parsed prompt; style and mood are appended to each scene
        max_scene_duration: Longest single clip, defaults to settings
        short_segment_chars: Segments shorter than this are replaced by the
            full prompt when the prompt is long
        long_prompt_chars: Prompt length above which short segments are replaced
        min_clause_chars: Minimum comma-clause length to count as a segment

    Returns:
        Ordered SceneDescriptors with scene numbers 1..n

    Raises:
        ValueError: If duration is not positive
    """
    if not duration or duration <= 0 or not math.isfinite(duration):
        raise ValueError(f"Duration must be a positive number of seconds, got {duration}")

    cfg = settings.pipeline
    short_segment_chars = cfg.short_segment_chars if short_segment_chars is None else short_segment_chars
    long_prompt_chars = cfg.long_prompt_chars if long_prompt_chars is None else long_prompt_chars
    min_clause_chars = cfg.min_clause_chars if min_clause_chars is None else min_clause_chars

    num_scenes = scene_count(duration, max_scene_duration)
    scene_length = duration / num_scenes
    segments = split_segments(prompt, num_scenes, min_clause_chars)
    full_prompt = prompt.strip()
    prompt_is_long = len(full_prompt) > long_prompt_chars

    style_mood = []
    if hints is not None and hints.style:
        style_mood.append(f"in {hints.style} style")
    if hints is not None and hints.mood:
        style_mood.append(f"with {hints.mood} mood")

    scenes: list[SceneDescriptor] = []
    for index in range(num_scenes):
        scene_number = index + 1
        start_time = index * scene_length
        end_time = scene_number * scene_length

        content = _segment_for_scene(segments, scene_number, num_scenes)
        if prompt_is_long and len(content) < short_segment_chars:
            content = full_prompt

        if scene_number > 1 or style_mood:
            # The suffixes bring their own full stop
            content = content.rstrip().rstrip(".!?")

        text = _position_prefix(scene_number, num_scenes) + content
        if scene_number > 1:
            text += CONTINUITY_SUFFIX
        if style_mood:
            text += f". {', '.join(style_mood)}"
        text += f" ({_round_half_up(start_time)}s - {_round_half_up(end_time)}s)"

        scenes.append(
            SceneDescriptor(
                scene_number=scene_number,
                prompt=text,
                duration=scene_length,
                start_time=start_time,
                end_time=end_time,
            )
        )

    return scenes
