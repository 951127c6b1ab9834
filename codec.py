"""
codec.py — Garden Walk · PCM frame codec
========================================
Float32 <-> signed 16-bit PCM conversion for the capture and playback paths.

  • capture:  float32 mic block  → float_to_pcm16  → 16 kHz PCM16 bytes on the wire
  • playback: 24 kHz PCM16 bytes → pcm16_to_float → float32 segment for the speaker

Encoding scales asymmetrically (0x7FFF for positive samples, 0x8000 for
negative ones) so that -1.0 maps to -32768 and 1.0 maps to 32767.
Decoding always divides by 32768.
"""

from __future__ import annotations

import numpy as np

CAPTURE_SAMPLE_RATE  = 16000   # what the AI endpoint expects from the mic
PLAYBACK_SAMPLE_RATE = 24000   # what the AI endpoint speaks back
CHANNELS             = 1

_POSITIVE_SCALE = 0x7FFF
_NEGATIVE_SCALE = 0x8000
_DECODE_SCALE   = 32768.0


def float_to_pcm16(samples) -> np.ndarray:
    """Convert float samples in [-1, 1] to int16 PCM.

    Out-of-range samples are clamped first.  Scaled values are truncated
    toward zero, matching a plain integer store of ``s * scale``.
    """
    s = np.clip(np.asarray(samples, dtype=np.float32), -1.0, 1.0)
    scaled = np.where(s < 0, s * _NEGATIVE_SCALE, s * _POSITIVE_SCALE)
    return np.trunc(scaled).astype(np.int16)


def float_to_pcm16_bytes(samples) -> bytes:
    """Little-endian PCM16 bytes for one capture block."""
    return float_to_pcm16(samples).astype("<i2", copy=False).tobytes()


def pcm16_to_float(data) -> np.ndarray:
    """Decode little-endian PCM16 into float32 samples in [-1, 1).

    Accepts bytes-like input or an int16 array.  A trailing odd byte cannot
    form a sample and is ignored.
    """
    if isinstance(data, np.ndarray) and data.dtype == np.int16:
        pcm = data
    else:
        raw = memoryview(data).cast("B")
        usable = len(raw) - (len(raw) % 2)
        pcm = np.frombuffer(raw[:usable], dtype="<i2")
    return pcm.astype(np.float32) / _DECODE_SCALE
