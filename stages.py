"""
stages.py — Garden Walk · Conversational stage inference
========================================================
Infers how far the garden walk has progressed from what the assistant has
said so far.  The walk moves through six ordered stages:

    start → plant_id → symptoms → environment → care_history → complete

Each assistant message is tested against the keyword tables below, most
advanced stage first; the message contributes the first stage it matches.
The inferred stage is the furthest stage contributed by any message, not the
last one, so a later message that happens not to repeat an earlier keyword
cannot pull the walk backwards.

The observed stage only ever moves forward (``advance_stage``).  The heuristic
is noisy turn-to-turn, and a stage indicator that jumps back is a defect.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Iterable, Optional, Sequence

from messages import Message

log = logging.getLogger("garden_walk.stages")


class Stage(str, Enum):
    START        = "start"
    PLANT_ID     = "plant_id"
    SYMPTOMS     = "symptoms"
    ENVIRONMENT  = "environment"
    CARE_HISTORY = "care_history"
    COMPLETE     = "complete"

    @property
    def index(self) -> int:
        return STAGE_ORDER.index(self)


STAGE_ORDER: tuple[Stage, ...] = (
    Stage.START,
    Stage.PLANT_ID,
    Stage.SYMPTOMS,
    Stage.ENVIRONMENT,
    Stage.CARE_HISTORY,
    Stage.COMPLETE,
)

# ---------------------------------------------------------------------------
# Keyword tables (substring match on the lower-cased message)
# ---------------------------------------------------------------------------
# Loose on purpose: overlapping triggers are expected ("water" shows up in
# care questions and in an overwatering diagnosis alike).  Tune the data,
# not the control flow.

STAGE_KEYWORDS: dict[Stage, tuple[str, ...]] = {
    Stage.COMPLETE: (
        "happy gardening",
        "it's likely",
        "i suspect",
        "i think it",
        "sounds like",
        "i'd recommend",
        "my recommendation",
        "what to do today",
        "do today",
        "root rot",
        "fungal",
        "bacterial",
        "deficien",
        "overwater",
        "underwater",
    ),
    Stage.CARE_HISTORY: (
        "water",
        "fertiliz",
        "care",
        "routine",
        "how long have you had",
    ),
    Stage.ENVIRONMENT: (
        "sun",
        "light",
        "indoor",
        "outdoor",
        "where",
        "soil",
        "temperature",
    ),
    Stage.SYMPTOMS: (
        "symptom",
        "yellow",
        "brown",
        "spot",
        "wilt",
        "droop",
        "color",
        "leaves",
        "describe",
        "seeing",
        "notice",
    ),
    Stage.PLANT_ID: (
        "take a walk",
        "kind of plant",
    ),
}

# "caused by" only reads as a diagnosis inside a longer explanation.
DIAGNOSIS_EXPLANATION_PHRASE = "caused by"
DIAGNOSIS_EXPLANATION_MIN_CHARS = 50

# Optional floor from the number of user turns: (min user turns, stage).
TURN_COUNT_FLOOR: tuple[tuple[int, Stage], ...] = (
    (2, Stage.SYMPTOMS),
    (3, Stage.ENVIRONMENT),
    (4, Stage.CARE_HISTORY),
)

# Most advanced first; START has no triggers.
_MATCH_ORDER: tuple[Stage, ...] = tuple(reversed(STAGE_ORDER[1:]))


def _normalise(text: str) -> str:
    # STT output mixes typographic and plain apostrophes
    return text.lower().replace("’", "'")


def match_stage(text: str) -> Stage:
    """Return the most advanced stage a single assistant utterance triggers."""
    lower = _normalise(text)
    for stage in _MATCH_ORDER:
        if any(keyword in lower for keyword in STAGE_KEYWORDS[stage]):
            return stage
        if (
            stage is Stage.COMPLETE
            and DIAGNOSIS_EXPLANATION_PHRASE in lower
            and len(lower) > DIAGNOSIS_EXPLANATION_MIN_CHARS
        ):
            return stage
    return Stage.START


def infer_stage(
    messages: Sequence[Message],
    in_flight_ai_text: Optional[str] = None,
    *,
    turn_count_floor: bool = False,
) -> Stage:
    """Furthest stage reached by the transcript.

    Args:
        messages:          Committed transcript, in conversational order.
        in_flight_ai_text: Partial assistant utterance not yet committed.  It
                           counts as one more assistant message for this call
                           only.
        turn_count_floor:  When True, the number of user turns raises the
                           result to at least the stage in TURN_COUNT_FLOOR.

    Returns:
        The highest stage any assistant utterance triggered; START when
        nothing has been said.
    """
    assistant_texts: list[str] = [m.content for m in messages if m.role == "assistant"]
    if in_flight_ai_text and in_flight_ai_text.strip():
        assistant_texts.append(in_flight_ai_text)

    best = Stage.START
    for text in assistant_texts:
        stage = match_stage(text)
        if stage.index > best.index:
            best = stage

    if turn_count_floor:
        user_turns = sum(1 for m in messages if m.role == "user")
        for min_turns, floor in TURN_COUNT_FLOOR:
            if user_turns >= min_turns and best.index < floor.index:
                best = floor

    return best


def advance_stage(current: Stage, inferred: Stage) -> Stage:
    """Monotonic update: the stage never moves backwards."""
    return inferred if inferred.index > current.index else current


def infer_stage_sequence(
    transcripts: Iterable[Sequence[Message]],
    *,
    turn_count_floor: bool = False,
) -> list[Stage]:
    """Observed stage after each snapshot of a growing transcript."""
    current = Stage.START
    observed: list[Stage] = []
    for messages in transcripts:
        current = advance_stage(current, infer_stage(messages, turn_count_floor=turn_count_floor))
        observed.append(current)
    return observed


class StageTracker:
    """Holds the externally observed stage for one walk."""

    def __init__(self, turn_count_floor: bool = False) -> None:
        self.turn_count_floor = turn_count_floor
        self.stage = Stage.START

    def update(self, messages: Sequence[Message], in_flight_ai_text: Optional[str] = None) -> bool:
        """Re-infer from the transcript; return True when the stage advanced."""
        inferred = infer_stage(messages, in_flight_ai_text, turn_count_floor=self.turn_count_floor)
        return self._set(advance_stage(self.stage, inferred), reason="inference")

    def mark_complete(self) -> bool:
        """The relay reported the walk is over; skip straight to COMPLETE."""
        return self._set(Stage.COMPLETE, reason="conversation_complete")

    def reset(self) -> None:
        self.stage = Stage.START

    def _set(self, stage: Stage, reason: str) -> bool:
        if stage is self.stage:
            return False
        log.info("event=stage_advanced from=%s to=%s reason=%s", self.stage.value, stage.value, reason)
        self.stage = stage
        return True
