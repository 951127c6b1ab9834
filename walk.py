"""
walk.py — Garden Walk · Walk controller
=======================================
Sits on top of a client Session and turns its lifecycle events into the
three things the user sees during a walk:

  • the current stage (StageTracker, monotonic)
  • the photo side-flow (PhotoState)
  • the wrap-up: the walk ends a short delay after the assistant signs off

Photo side-flow
---------------
    NONE ──cue──▶ CHOOSING_SOURCE ──"yes"──▶ CAPTURING ──submit_photo()──▶ PROCESSING ──▶ NONE
                        │                         │
                        └──"no" / cancel_photo()──┴──────────────────────────────────────▶ NONE

The microphone is paused while CAPTURING or PROCESSING so the user's
commentary while framing the shot does not become a turn.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Callable, Optional

from config import WalkConfig
from intent import is_affirmative, is_photo_decline, is_photo_request, is_wrap_up
from messages import (
    Closed,
    ConversationComplete,
    InputTranscriptDelta,
    Interrupted,
    LifecycleEvent,
    OutputTranscriptDelta,
    TurnComplete,
)
from session import Session
from stages import Stage, StageTracker

log = logging.getLogger("garden_walk.walk")


class PhotoState(str, Enum):
    NONE            = "none"
    CHOOSING_SOURCE = "choosing_source"
    CAPTURING       = "capturing"
    PROCESSING      = "processing"


_MIC_PAUSED_STATES = frozenset({PhotoState.CAPTURING, PhotoState.PROCESSING})


class GardenWalk:
    """Drives one garden walk over a Session.

    Takes over ``session.on_event``; pass ``on_event`` to keep receiving the
    raw lifecycle events.
    """

    def __init__(
        self,
        session: Session,
        config: Optional[WalkConfig] = None,
        *,
        on_stage_change: Optional[Callable[[Stage], None]] = None,
        on_photo_state_change: Optional[Callable[[PhotoState], None]] = None,
        on_finished: Optional[Callable[[], None]] = None,
        on_event: Optional[Callable[[LifecycleEvent], None]] = None,
    ):
        self.session = session
        self.config = config or WalkConfig()
        self.on_stage_change = on_stage_change
        self.on_photo_state_change = on_photo_state_change
        self.on_finished = on_finished
        self.on_event = on_event

        self.tracker = StageTracker(turn_count_floor=self.config.turn_count_floor)
        self.photo_state = PhotoState.NONE
        self.finished = False
        self._wrap_up_detected = False
        self._finish_task: Optional[asyncio.Task] = None
        self._seen_messages = 0
        # Start of the user's reply to the chooser within pending_user_text
        self._reply_offset = 0

        session.on_event = self.handle_event

    @property
    def stage(self) -> Stage:
        return self.tracker.stage

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------

    async def start(self) -> None:
        """Reset walk state and connect the session."""
        self.reset()
        await self.session.connect()
        log.info("event=walk_started")

    async def finish(self) -> None:
        """End the walk now.  Runs ``on_finished`` once."""
        task, self._finish_task = self._finish_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
        await self._finish()

    def reset(self) -> None:
        if self._finish_task is not None:
            self._finish_task.cancel()
            self._finish_task = None
        self.tracker.reset()
        self.photo_state = PhotoState.NONE
        self.finished = False
        self._wrap_up_detected = False
        self._seen_messages = 0
        self._reply_offset = 0

    # -----------------------------------------------------------------------
    # Event handling
    # -----------------------------------------------------------------------

    def handle_event(self, event: LifecycleEvent) -> None:
        if isinstance(event, InputTranscriptDelta):
            self._on_user_speech()
            self._update_stage()

        elif isinstance(event, OutputTranscriptDelta):
            self._update_stage()

        elif isinstance(event, (TurnComplete, Interrupted)):
            self._on_messages_committed()
            self._update_stage()

        elif isinstance(event, ConversationComplete):
            if self.tracker.mark_complete():
                self._stage_changed()
            self._schedule_finish(reason="conversation_complete")

        elif isinstance(event, Closed):
            if self._wrap_up_detected and not self.finished:
                log.info("event=walk_closed_before_finish")

        if self.on_event:
            self.on_event(event)

    def _update_stage(self) -> None:
        if self.tracker.update(self.session.messages, self.session.pending_ai_text):
            self._stage_changed()

    def _stage_changed(self) -> None:
        if self.on_stage_change:
            self.on_stage_change(self.tracker.stage)

    def _on_user_speech(self) -> None:
        text = self.session.pending_user_text
        if self.photo_state is PhotoState.CHOOSING_SOURCE:
            text = text[self._reply_offset:]
        if not text.strip():
            return
        if self.photo_state is PhotoState.CHOOSING_SOURCE:
            if is_photo_decline(text):
                log.info("event=photo_declined_verbally")
                self._set_photo_state(PhotoState.NONE)
            elif is_affirmative(text):
                log.info("event=photo_accepted_verbally")
                self._set_photo_state(PhotoState.CAPTURING)
        elif self.photo_state is PhotoState.NONE and is_photo_request(text, "user"):
            log.info("event=photo_cue source=user")
            self._set_photo_state(PhotoState.CHOOSING_SOURCE)

    def _on_messages_committed(self) -> None:
        new = self.session.messages[self._seen_messages:]
        self._seen_messages = len(self.session.messages)
        self._reply_offset = len(self.session.pending_user_text)
        for message in new:
            if message.role != "assistant":
                continue
            if is_wrap_up(message.content):
                self._schedule_finish(reason="wrap_up_phrase")
            elif self.photo_state is PhotoState.NONE and is_photo_request(message.content, "assistant"):
                log.info("event=photo_cue source=assistant")
                self._set_photo_state(PhotoState.CHOOSING_SOURCE)

    # -----------------------------------------------------------------------
    # Photo side-flow
    # -----------------------------------------------------------------------

    def request_photo(self) -> None:
        """Open the photo chooser directly (photo button)."""
        if self.photo_state is PhotoState.NONE:
            self._set_photo_state(PhotoState.CHOOSING_SOURCE)

    def begin_capture(self) -> None:
        if self.photo_state in (PhotoState.NONE, PhotoState.CHOOSING_SOURCE):
            self._set_photo_state(PhotoState.CAPTURING)

    def submit_photo(self, image: bytes | str, context_text: Optional[str] = None) -> bool:
        """Send the photo as one image turn and close the side-flow."""
        self._set_photo_state(PhotoState.PROCESSING)
        sent = self.session.send_image(image, context_text)
        if not sent:
            log.warning("event=photo_not_sent state=%s", self.session.state.value)
        self._set_photo_state(PhotoState.NONE)
        return sent

    def cancel_photo(self) -> None:
        self._set_photo_state(PhotoState.NONE)

    def _set_photo_state(self, state: PhotoState) -> None:
        if state is self.photo_state:
            return
        log.info("event=photo_state from=%s to=%s", self.photo_state.value, state.value)
        self.photo_state = state
        if state is PhotoState.CHOOSING_SOURCE:
            self._reply_offset = len(self.session.pending_user_text)
        if state in _MIC_PAUSED_STATES:
            self.session.pause_capture()
        else:
            self.session.resume_capture()
        if self.on_photo_state_change:
            self.on_photo_state_change(state)

    # -----------------------------------------------------------------------
    # Wrap-up
    # -----------------------------------------------------------------------

    def _schedule_finish(self, reason: str) -> None:
        if self._wrap_up_detected or self.finished:
            return
        self._wrap_up_detected = True
        delay = self.config.finish_delay_sec
        log.info("event=wrap_up_detected reason=%s finish_in_sec=%.1f", reason, delay)
        self._finish_task = asyncio.get_running_loop().create_task(
            self._finish_after(delay), name="walk_finish",
        )

    async def _finish_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._finish_task = None
        await self._finish()

    async def _finish(self) -> None:
        if self.finished:
            return
        self.finished = True
        await self.session.disconnect()
        log.info("event=walk_finished stage=%s messages=%d", self.tracker.stage.value, len(self.session.messages))
        if self.on_finished:
            self.on_finished()
