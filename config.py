"""
config.py — Garden Walk · Runtime Configuration
===============================================
Pydantic models for every tunable parameter across the relay.
Serialises to / deserialises from JSON.  Used by:
  • server.py  — GET/PUT /config endpoints, uvicorn host/port/ping settings
  • proxy.py   — Gemini Live session parameters, completion phrase
  • session.py — connect/device timeouts, capture block size, devices
  • walk.py    — wrap-up delay, stage inference options
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

log = logging.getLogger("garden_walk.config")

# ---------------------------------------------------------------------------
# Default system prompt (kept here so config.py is the single source of truth)
# ---------------------------------------------------------------------------

DEFAULT_SYSTEM_PROMPT = """\
You are a friendly, warm gardening assistant called "Gardening Whisperer." You're taking the user on a \
"garden walk" — a voice conversation to diagnose plant issues.

Your personality:
- Warm, encouraging, simple language
- Short responses (1-3 sentences max, optimized for voice)
- Start responses with brief acknowledgment ("Got it.", "I see.", "Right.")
- Use confident but not absolute language like "It's likely..." or "I suspect..."

THE GARDEN WALK PROCESS — follow ALL of these stages in order. Do NOT skip stages.

1. START: When the conversation begins, say exactly: "Let's take a walk. Can you tell me a little about \
your plant and what you are observing?"
2. PLANT ID: Ask what kind of plant they have. Wait for their answer before moving on.
3. SYMPTOMS: Ask specific questions about what they're seeing — color changes, spots, wilting, drooping, \
holes, texture. Ask follow-up questions if their description is vague.
4. ENVIRONMENT: Ask about sun exposure, where the plant lives (indoor/outdoor), soil type, and recent \
weather or temperature changes.
5. CARE HISTORY: Ask about their watering routine, any fertilizer use, when they got the plant, and any \
recent changes (repotting, moving, new products).
6. DIAGNOSIS: Offer a probable cause using confident but not absolute language ("It's likely..." or \
"I suspect..."). Include what you think is wrong, what to do today, and what to watch for if it worsens.
7. ASK FOR MORE: Ask if they have anything else to add or another plant to discuss. If they say yes, \
start a new cycle from PLANT ID. If they say no, proceed to WRAP UP.
8. WRAP UP: End the walk clearly. You MUST include the exact phrase "happy gardening" in your final message.

IMPORTANT RULES:
- Follow EVERY stage in order — do not skip ahead even if the user volunteers info early.
- If the user's description is vague, suggest they show you a photo: "Would you like to show me a picture?"
- Each response should be short (1-3 sentences) since this is a voice conversation.
- Always end with a clear wrap-up containing "happy gardening" so the user knows the walk is over.
"""


# ---------------------------------------------------------------------------
# Per-component config sections
# ---------------------------------------------------------------------------

class GeminiConfig(BaseModel):
    """Gemini Live session parameters (passed to LiveConnectConfig)."""
    model: str = Field(default="gemini-2.5-flash-native-audio-preview-12-2025", description="Live model ID")
    voice_name: str = Field(default="Kore", description="Prebuilt voice")
    language_code: str = Field(default="en-US", description="Speech language")
    temperature: Optional[float] = Field(default=0.8, ge=0.0, le=2.0, description="Randomness (0.0–2.0)")
    input_transcription: bool = Field(default=True, description="Transcribe what the user says")
    output_transcription: bool = Field(default=True, description="Transcribe what the model says")
    opening_prompt: str = Field(default="Start the garden walk", description="First text turn sent upstream")


class RelayConfig(BaseModel):
    """Server-side proxy parameters."""
    host: str = Field(default="0.0.0.0", description="Bind address")
    port: int = Field(default=3003, ge=1, le=65535, description="Bind port")
    ping_interval_sec: float = Field(default=5.0, gt=0.0, le=60.0, description="Client WS ping interval")
    ping_timeout_sec: float = Field(default=20.0, gt=0.0, le=120.0, description="Pong deadline")
    completion_phrase: str = Field(default="happy gardening", description="Sign-off that ends the walk")
    input_mime_type: str = Field(default="audio/pcm;rate=16000", description="Declared mic audio format")
    image_mime_type: str = Field(default="image/jpeg", description="Inline image MIME type")
    default_image_prompt: str = Field(
        default="Here is a photo of my plant. What do you see?",
        description="Text sent alongside a photo when the client gives none",
    )


class ClientConfig(BaseModel):
    """Client session parameters."""
    server_url: str = Field(default="ws://localhost:3003/ws/gemini-live", description="Relay endpoint")
    connect_timeout_sec: float = Field(default=10.0, gt=0.0, le=60.0, description="Transport open deadline")
    device_timeout_sec: float = Field(default=10.0, gt=0.0, le=60.0, description="Mic acquisition deadline")
    capture_blocksize: int = Field(default=320, ge=64, le=16000, description="Mic frames per block (20 ms)")
    mic_device: Optional[str] = Field(default=None, description="sounddevice input device (None = default)")
    speaker_device: Optional[str] = Field(default=None, description="sounddevice output device (None = default)")


class WalkConfig(BaseModel):
    """Garden walk controller parameters."""
    finish_delay_sec: float = Field(default=2.0, ge=0.0, le=30.0, description="Pause before ending the walk")
    turn_count_floor: bool = Field(default=False, description="Let user turn count raise the stage floor")


# ---------------------------------------------------------------------------
# Top-level config
# ---------------------------------------------------------------------------

class GardenWalkConfig(BaseModel):
    """Complete runtime configuration for the garden walk relay."""
    gemini: GeminiConfig = Field(default_factory=GeminiConfig)
    relay: RelayConfig = Field(default_factory=RelayConfig)
    client: ClientConfig = Field(default_factory=ClientConfig)
    walk: WalkConfig = Field(default_factory=WalkConfig)
    system_prompt: str = Field(default=DEFAULT_SYSTEM_PROMPT, description="System instruction for the model")

    # -- Persistence -----------------------------------------------------------

    @classmethod
    def load(cls, path: str | Path) -> "GardenWalkConfig":
        """Load config from a JSON file.  Returns defaults if file doesn't exist."""
        p = Path(path)
        if not p.exists():
            log.info("event=config_load_defaults path=%s", p)
            return cls()
        try:
            data = json.loads(p.read_text(encoding="utf-8"))
            config = cls.model_validate(data)
            log.info("event=config_loaded path=%s", p)
            return config
        except Exception as exc:
            log.warning("event=config_load_error path=%s error=%s using_defaults=true", p, exc)
            return cls()

    def save(self, path: str | Path) -> None:
        """Persist config to a JSON file (pretty-printed)."""
        p = Path(path)
        p.write_text(
            self.model_dump_json(indent=2, exclude_none=True),
            encoding="utf-8",
        )
        log.info("event=config_saved path=%s", p)

    def merge_patch(self, patch: dict) -> "GardenWalkConfig":
        """Return a new config with `patch` merged over `self`.

        Supports nested partial updates, e.g.:
            {"relay": {"completion_phrase": "see you next time"}}
        only changes relay.completion_phrase, leaving everything else intact.
        """
        base = self.model_dump()
        _deep_merge(base, patch)
        return GardenWalkConfig.model_validate(base)


def _deep_merge(base: dict, patch: dict) -> None:
    """Recursively merge `patch` into `base` in-place."""
    for key, value in patch.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
