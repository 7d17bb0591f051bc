"""Job state machine and progress checkpoints.

queued -> active -> completed | failed. Terminal states are absorbing:
a completed or failed job is never revived.
"""

from vidweave.errors import JobStateError

JOB_STATES = {
    "queued": "Accepted, waiting for a free worker",
    "active": "Claimed by a worker and running",
    "completed": "Final video produced",
    "failed": "Stopped on an unrecoverable error",
}

TRANSITIONS = {
    "queued": {"active", "failed"},
    "active": {"completed", "failed"},
    "completed": set(),
    "failed": set(),
}

TERMINAL_STATES = {"completed", "failed"}

# Progress reported at each pipeline step
PROGRESS = {
    "load_project": 5,
    "parse_prompt": 10,
    "plan_scenes": 15,
    "scenes_done": 75,
    "concatenate": 85,
    "mix_audio": 90,
    "upload": 95,
    "completed": 100,
}

_SCENE_SPAN = PROGRESS["scenes_done"] - PROGRESS["plan_scenes"]


def can_transition(current: str, new: str) -> bool:
    return new in TRANSITIONS.get(current, set())


def check_transition(current: str, new: str) -> None:
    """Raise JobStateError unless ``current -> new`` is legal."""
    if not can_transition(current, new):
        raise JobStateError(f"Illegal job transition {current} -> {new}")


def scene_progress(completed_scenes: int, total_scenes: int) -> int:
    """Progress after ``completed_scenes`` of ``total_scenes`` are done (15..75)."""
    return PROGRESS["plan_scenes"] + int(_SCENE_SPAN * completed_scenes / total_scenes)
