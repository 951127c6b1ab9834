"""
playback.py — Garden Walk · Playback scheduler
==============================================
FIFO of decoded speech segments drained by a sounddevice output callback.

  • enqueue()    — append a float32 segment; starts a speaking episode if idle
  • render()     — pull side, called on the PortAudio thread for every block
  • interrupt()  — barge-in: drop the current segment and everything queued

Segments play back-to-back with no overlap and no gap: a block that finishes
one segment is topped up from the next.  ``on_speaking_start`` and
``on_speaking_end`` fire once per speaking episode, not once per segment.
Callbacks may run on the audio thread; callers marshal them as they need.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from typing import Callable, Optional

import numpy as np

from codec import CHANNELS, PLAYBACK_SAMPLE_RATE

log = logging.getLogger("garden_walk.playback")


def _default_output_stream(**kwargs):
    # PortAudio is loaded on first use so headless hosts can import this module
    import sounddevice as sd
    return sd.OutputStream(**kwargs)


class PlaybackScheduler:
    """Thread-safe gapless segment queue in front of an sd.OutputStream."""

    BLOCKSIZE = 1024

    def __init__(
        self,
        samplerate: int = PLAYBACK_SAMPLE_RATE,
        device=None,
        on_speaking_start: Optional[Callable[[], None]] = None,
        on_speaking_end: Optional[Callable[[], None]] = None,
        stream_factory: Callable[..., object] = _default_output_stream,
    ):
        self.samplerate = samplerate
        self.device = device
        self.on_speaking_start = on_speaking_start
        self.on_speaking_end = on_speaking_end
        self._stream_factory = stream_factory

        self._queue: deque[np.ndarray] = deque()
        self._current: np.ndarray | None = None
        self._pos = 0
        self._playing = False
        self._lock = threading.Lock()
        self._stream = None

    # -- stream lifecycle ---------------------------------------------------

    def open(self) -> None:
        if self._stream is not None:
            return
        stream = self._stream_factory(
            samplerate=self.samplerate,
            channels=CHANNELS,
            dtype="float32",
            blocksize=self.BLOCKSIZE,
            device=self.device,
            callback=self._callback,
        )
        try:
            stream.start()
        except Exception:
            stream.close()
            raise
        self._stream = stream
        log.info("event=playback_stream_open samplerate=%d", self.samplerate)

    def close(self) -> None:
        """Stop output and forget everything queued.  Safe to call twice."""
        with self._lock:
            self._queue.clear()
            self._current = None
            self._pos = 0
            self._playing = False
        stream, self._stream = self._stream, None
        if stream is not None:
            try:
                stream.stop()
                stream.close()
            except Exception as exc:
                log.warning("event=playback_stream_close_error error=%s", exc)

    # -- producer side -------------------------------------------------------

    @property
    def is_playing(self) -> bool:
        return self._playing

    @property
    def queued_segments(self) -> int:
        with self._lock:
            return len(self._queue) + (1 if self._current is not None else 0)

    def enqueue(self, samples: np.ndarray) -> None:
        """Append one decoded segment; start playing immediately when idle."""
        segment = np.asarray(samples, dtype=np.float32).reshape(-1)
        if segment.size == 0:
            return
        with self._lock:
            self._queue.append(segment)
            starting = not self._playing
            self._playing = True
        if not starting:
            return
        try:
            self.open()
        except Exception:
            # No output device: the next enqueue retries from a clean slate
            with self._lock:
                self._queue.clear()
                self._current = None
                self._pos = 0
                self._playing = False
            raise
        log.debug("event=speaking_start samples=%d", segment.size)
        if self.on_speaking_start:
            self.on_speaking_start()

    def interrupt(self) -> bool:
        """Stop the current segment and drop the queue.

        Returns True when a speaking episode was cut short.
        """
        with self._lock:
            dropped = len(self._queue) + (1 if self._current is not None else 0)
            self._queue.clear()
            self._current = None
            self._pos = 0
            was_playing = self._playing
            self._playing = False
        if was_playing:
            log.info("event=playback_interrupted dropped_segments=%d", dropped)
            if self.on_speaking_end:
                self.on_speaking_end()
        return was_playing

    # -- consumer side (PortAudio thread) ---------------------------------------

    def render(self, out: np.ndarray) -> int:
        """Fill ``out`` (1-D float32) from the queue; pad the rest with silence.

        Returns the number of real samples written.
        """
        needed = len(out)
        written = 0
        drained = False
        with self._lock:
            while needed > 0:
                if self._current is None:
                    if not self._queue:
                        break
                    self._current = self._queue.popleft()
                    self._pos = 0
                take = min(needed, len(self._current) - self._pos)
                out[written:written + take] = self._current[self._pos:self._pos + take]
                written += take
                needed -= take
                self._pos += take
                if self._pos >= len(self._current):
                    self._current = None
                    self._pos = 0
            if self._playing and self._current is None and not self._queue:
                self._playing = False
                drained = True
        if needed > 0:
            out[written:] = 0.0
        if drained:
            log.debug("event=speaking_end reason=drained")
            if self.on_speaking_end:
                self.on_speaking_end()
        return written

    def _callback(self, outdata: np.ndarray, frames: int, _time, status) -> None:
        if status:
            log.warning("event=playback_status status=%s", status)
        self.render(outdata[:, 0])
