"""Microphone capture: 16 kHz mono float32 blocks converted to PCM16 frames."""

from __future__ import annotations

import logging
from typing import Callable, Optional

import numpy as np

from codec import CAPTURE_SAMPLE_RATE, CHANNELS, float_to_pcm16_bytes
from errors import DeviceError

log = logging.getLogger("garden_walk.capture")


def _default_input_stream(**kwargs):
    import sounddevice as sd
    return sd.InputStream(**kwargs)


class MicrophoneCapture:
    """Owns one sd.InputStream and hands each block to ``on_frame`` as bytes.

    ``on_frame`` runs on the PortAudio thread.  It must not block.
    """

    def __init__(
        self,
        on_frame: Callable[[bytes], None],
        samplerate: int = CAPTURE_SAMPLE_RATE,
        blocksize: int = 320,
        device=None,
        stream_factory: Callable[..., object] = _default_input_stream,
    ):
        self.on_frame = on_frame
        self.samplerate = samplerate
        self.blocksize = blocksize
        self.device = device
        self._stream_factory = stream_factory
        self._stream = None

    @property
    def is_open(self) -> bool:
        return self._stream is not None

    def open(self) -> None:
        """Acquire and start the input device.  Blocking; run it in an executor."""
        if self._stream is not None:
            return
        try:
            stream = self._stream_factory(
                samplerate=self.samplerate,
                channels=CHANNELS,
                dtype="float32",
                blocksize=self.blocksize,
                device=self.device,
                callback=self._callback,
            )
            stream.start()
        except Exception as exc:
            raise DeviceError(f"Microphone unavailable: {exc}") from exc
        self._stream = stream
        log.info("event=mic_started samplerate=%d blocksize=%d device=%s",
                 self.samplerate, self.blocksize, self.device)

    def close(self) -> None:
        stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            stream.stop()
            stream.close()
        except Exception as exc:
            log.warning("event=mic_close_error error=%s", exc)
        log.info("event=mic_stopped")

    def _callback(self, indata: np.ndarray, frames: int, time_info, status) -> None:
        if status:
            log.warning("event=mic_status status=%s", status)
        self.on_frame(float_to_pcm16_bytes(indata[:, 0]))
