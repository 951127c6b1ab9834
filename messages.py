"""
messages.py — Garden Walk · Wire and lifecycle message types
============================================================
Closed tagged unions for everything that crosses a boundary:

  • ClientMessage  — JSON control frames, client → server   (discriminator: ``type``)
  • ServerMessage  — JSON control frames, server → client   (discriminator: ``type``)
  • LifecycleEvent — what the client session hands to its consumer
  • Message        — one committed transcript entry

Raw PCM audio never goes through these models; it travels as binary frames.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from errors import ParseError


# ---------------------------------------------------------------------------
# Client → server control frames
# ---------------------------------------------------------------------------

class TextTurn(BaseModel):
    """A single text-only user turn."""
    type: Literal["text"] = "text"
    text: str


class ImageTurn(BaseModel):
    """A single user turn carrying an inline JPEG plus accompanying text."""
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["image"] = "image"
    image_data: str = Field(alias="imageData", description="base64, no data: prefix")
    text: Optional[str] = None


ClientMessage = Annotated[Union[TextTurn, ImageTurn], Field(discriminator="type")]


# ---------------------------------------------------------------------------
# Server → client control frames
# ---------------------------------------------------------------------------

class SetupComplete(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["setup_complete"] = "setup_complete"
    session_id: Optional[str] = Field(default=None, alias="sessionId")


class InputTranscript(BaseModel):
    type: Literal["input_transcript"] = "input_transcript"
    text: str


class OutputTranscript(BaseModel):
    type: Literal["output_transcript"] = "output_transcript"
    text: str


class TurnCompleteSignal(BaseModel):
    type: Literal["turn_complete"] = "turn_complete"


class InterruptedSignal(BaseModel):
    type: Literal["interrupted"] = "interrupted"


class WalkComplete(BaseModel):
    type: Literal["walk_complete"] = "walk_complete"


class ErrorNotice(BaseModel):
    type: Literal["error"] = "error"
    message: str = "Unknown error"


class ClosedNotice(BaseModel):
    type: Literal["closed"] = "closed"


ServerMessage = Annotated[
    Union[
        SetupComplete,
        InputTranscript,
        OutputTranscript,
        TurnCompleteSignal,
        InterruptedSignal,
        WalkComplete,
        ErrorNotice,
        ClosedNotice,
    ],
    Field(discriminator="type"),
]

_client_adapter: TypeAdapter = TypeAdapter(ClientMessage)
_server_adapter: TypeAdapter = TypeAdapter(ServerMessage)


def load_json(raw: str | bytes) -> dict:
    """Decode a frame as a JSON object or raise ParseError."""
    try:
        payload = json.loads(raw)
    except (ValueError, TypeError) as exc:   # JSONDecodeError and UnicodeDecodeError are ValueErrors
        raise ParseError(f"Payload is not JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise ParseError("Control message must be a JSON object")
    return payload


def _validate(adapter: TypeAdapter, payload: dict):
    try:
        return adapter.validate_python(payload)
    except ValidationError as exc:
        raise ParseError(f"Unsupported control message type={payload.get('type')!r}") from exc


def validate_client_message(payload: dict) -> TextTurn | ImageTurn:
    return _validate(_client_adapter, payload)


def validate_server_message(payload: dict):
    return _validate(_server_adapter, payload)


def parse_client_message(raw: str | bytes) -> TextTurn | ImageTurn:
    """Decode one client → server control frame or raise ParseError."""
    return validate_client_message(load_json(raw))


def parse_server_message(raw: str | bytes):
    """Decode one server → client control frame or raise ParseError."""
    return validate_server_message(load_json(raw))


def encode(message: BaseModel) -> str:
    """Serialise a control frame exactly as it goes on the wire."""
    return message.model_dump_json(by_alias=True)


def looks_like_json(data: bytes) -> bool:
    """Intermediaries sometimes turn text frames into binary ones; catch that."""
    return data[:1] == b"{"


# ---------------------------------------------------------------------------
# Transcript entries
# ---------------------------------------------------------------------------

Role = Literal["user", "assistant"]


@dataclass(frozen=True)
class Message:
    role: Role
    content: str


# ---------------------------------------------------------------------------
# Lifecycle events (session → consumer)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SetupReady:
    session_id: Optional[str] = None
    kind: Literal["setup_ready"] = "setup_ready"


@dataclass(frozen=True)
class InputTranscriptDelta:
    text: str
    kind: Literal["input_transcript_delta"] = "input_transcript_delta"


@dataclass(frozen=True)
class OutputTranscriptDelta:
    text: str
    kind: Literal["output_transcript_delta"] = "output_transcript_delta"


@dataclass(frozen=True)
class TurnComplete:
    kind: Literal["turn_complete"] = "turn_complete"


@dataclass(frozen=True)
class Interrupted:
    kind: Literal["interrupted"] = "interrupted"


@dataclass(frozen=True)
class ConversationComplete:
    kind: Literal["conversation_complete"] = "conversation_complete"


@dataclass(frozen=True)
class ErrorEvent:
    message: str
    kind: Literal["error"] = "error"


@dataclass(frozen=True)
class Closed:
    kind: Literal["closed"] = "closed"


LifecycleEvent = Union[
    SetupReady,
    InputTranscriptDelta,
    OutputTranscriptDelta,
    TurnComplete,
    Interrupted,
    ConversationComplete,
    ErrorEvent,
    Closed,
]
