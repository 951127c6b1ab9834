"""
proxy.py — Garden Walk · Gemini Live relay, server side
=======================================================
One GeminiLiveProxy per accepted client WebSocket, and exactly one Gemini
Live session per proxy.  The proxy translates in both directions:

  client → upstream
    binary PCM16 16 kHz        → send_realtime_input(audio=Blob)
    {"type":"text"}            → one user turn, turn_complete=True
    {"type":"image"}           → one user turn: text part + inline JPEG part

  upstream → client
    setup                      → {"type":"setup_complete","sessionId"}   (once)
    input transcription        → {"type":"input_transcript","text"}
    output transcription       → {"type":"output_transcript","text"}  (+ accumulator)
    model_turn inline audio    → raw binary PCM16 24 kHz
    turn_complete              → walk_complete? then turn_complete; accumulator reset
    interrupted                → {"type":"interrupted"}  (accumulator kept)
    upstream failure           → error, then closed
    upstream send failure      → error, then the client socket closes
    upstream end               → closed

Setup failure sends a single ``error`` frame and closes the client socket.
Nothing is retried.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import uuid
from contextlib import AsyncExitStack
from typing import Optional

from fastapi import WebSocket, WebSocketDisconnect
from google.genai import types
from pydantic import BaseModel
from starlette.websockets import WebSocketState
from websockets.exceptions import ConnectionClosedOK

from config import GardenWalkConfig
from errors import ParseError, UpstreamError
from messages import (
    ClosedNotice,
    ErrorNotice,
    ImageTurn,
    InputTranscript,
    InterruptedSignal,
    OutputTranscript,
    SetupComplete,
    TextTurn,
    TurnCompleteSignal,
    WalkComplete,
    encode,
    load_json,
    looks_like_json,
    parse_client_message,
    validate_client_message,
)

log = logging.getLogger("garden_walk.proxy")

UPSTREAM_ERROR_MESSAGE = "Gemini connection error"


def build_live_config(config: GardenWalkConfig) -> types.LiveConnectConfig:
    """Map runtime config onto the Live API session setup."""
    gemini = config.gemini
    return types.LiveConnectConfig(
        response_modalities=[types.Modality.AUDIO],
        speech_config=types.SpeechConfig(
            voice_config=types.VoiceConfig(
                prebuilt_voice_config=types.PrebuiltVoiceConfig(voice_name=gemini.voice_name),
            ),
            language_code=gemini.language_code,
        ),
        system_instruction=types.Content(parts=[types.Part(text=config.system_prompt)]),
        temperature=gemini.temperature,
        input_audio_transcription=types.AudioTranscriptionConfig() if gemini.input_transcription else None,
        output_audio_transcription=types.AudioTranscriptionConfig() if gemini.output_transcription else None,
    )


class GeminiLiveProxy:
    """Bridges one client WebSocket to one Gemini Live session."""

    def __init__(self, websocket: WebSocket, genai_client, config: Optional[GardenWalkConfig] = None):
        self.websocket = websocket
        self.genai_client = genai_client
        self.config = config or GardenWalkConfig()

        self.session = None
        self.session_id: Optional[str] = None
        self.is_connected = False
        self._accumulated_ai_text = ""
        self._setup_sent = False
        self._stack: Optional[AsyncExitStack] = None

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------

    async def connect(self) -> None:
        """Open the upstream session and kick off the walk.

        Raises:
            UpstreamError: no API key configured, or the Live API refused.
        """
        if self.genai_client is None:
            raise UpstreamError("GEMINI_API_KEY not set")

        model = self.config.gemini.model
        log.info("event=upstream_connecting model=%s", model)
        stack = AsyncExitStack()
        try:
            self.session = await stack.enter_async_context(
                self.genai_client.aio.live.connect(model=model, config=build_live_config(self.config))
            )
        except Exception as exc:
            await stack.aclose()
            log.error("event=upstream_connect_failed error=%s", exc, exc_info=True)
            raise UpstreamError(f"Gemini connection failed: {exc}") from exc

        self._stack = stack
        self.is_connected = True
        self.session_id = getattr(self.session, "session_id", None) or uuid.uuid4().hex
        log.info("event=upstream_connected session_id=%s", self.session_id)

        try:
            await self.session.send_client_content(
                turns=types.Content(role="user", parts=[types.Part(text=self.config.gemini.opening_prompt)]),
                turn_complete=True,
            )
        except Exception as exc:
            await self.disconnect()
            raise UpstreamError(f"Gemini rejected the opening turn: {exc}") from exc

        await self._send_setup_complete(self.session_id)

    async def disconnect(self) -> None:
        """Close the upstream session.  Idempotent."""
        self.is_connected = False
        stack, self._stack = self._stack, None
        self.session = None
        if stack is None:
            return
        try:
            await stack.aclose()
        except Exception as exc:
            log.warning("event=upstream_close_error error=%s", exc)
        log.info("event=upstream_disconnected session_id=%s", self.session_id)

    async def serve(self) -> None:
        """Connect, relay until either side ends, then tear down.

        A setup failure is reported to the client as one ``error`` frame
        followed by a close.
        """
        try:
            await self.connect()
        except UpstreamError as exc:
            await self._send_to_client(ErrorNotice(message=str(exc)))
            await self._close_client()
            return
        await self.run()

    async def run(self) -> None:
        """Pump both directions until one of them stops."""
        client_task = asyncio.create_task(self._client_pump(), name="proxy_client_pump")
        upstream_task = asyncio.create_task(self._upstream_pump(), name="proxy_upstream_pump")
        try:
            done, pending = await asyncio.wait(
                {client_task, upstream_task}, return_when=asyncio.FIRST_COMPLETED,
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        finally:
            for task in (client_task, upstream_task):
                task.cancel()
            await self.disconnect()
            await self._close_client()

    # -----------------------------------------------------------------------
    # Client → upstream
    # -----------------------------------------------------------------------

    async def _client_pump(self) -> None:
        while True:
            try:
                message = await self.websocket.receive()
            except (WebSocketDisconnect, RuntimeError):
                break
            if message["type"] == "websocket.disconnect":
                log.info("event=client_disconnected code=%s", message.get("code"))
                break
            data = message.get("bytes")
            if data is None:
                data = message.get("text")
            if data is None:
                continue
            try:
                await self.handle_client_message(data)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                log.error("event=upstream_send_failed error=%s", exc, exc_info=True)
                self.is_connected = False
                await self._send_to_client(ErrorNotice(message=UPSTREAM_ERROR_MESSAGE))
                break

    async def handle_client_message(self, data: bytes | str) -> None:
        """Route one client frame to the upstream session."""
        if self.session is None or not self.is_connected:
            log.warning("event=client_message_dropped reason=not_connected")
            return

        if isinstance(data, str):
            try:
                control = parse_client_message(data)
            except ParseError as exc:
                log.warning("event=client_parse_error error=%s", exc)
                return
            await self._send_control(control)
            return

        if looks_like_json(data):
            try:
                obj = load_json(data)
            except ParseError:
                obj = None
            if obj is not None:
                try:
                    control = validate_client_message(obj)
                except ParseError as exc:
                    log.warning("event=client_parse_error error=%s", exc)
                    return
                await self._send_control(control)
                return

        await self.session.send_realtime_input(
            audio=types.Blob(data=bytes(data), mime_type=self.config.relay.input_mime_type),
        )

    async def _send_control(self, control: TextTurn | ImageTurn) -> None:
        if isinstance(control, TextTurn):
            log.info("event=text_turn chars=%d", len(control.text))
            parts = [types.Part(text=control.text)]
        else:
            try:
                image = base64.b64decode(control.image_data, validate=True)
            except (binascii.Error, ValueError) as exc:
                log.warning("event=client_parse_error error=invalid_image_base64 detail=%s", exc)
                return
            log.info("event=image_turn bytes=%d", len(image))
            parts = [
                types.Part(text=control.text or self.config.relay.default_image_prompt),
                types.Part(inline_data=types.Blob(data=image, mime_type=self.config.relay.image_mime_type)),
            ]
        await self.session.send_client_content(
            turns=types.Content(role="user", parts=parts),
            turn_complete=True,
        )

    # -----------------------------------------------------------------------
    # Upstream → client
    # -----------------------------------------------------------------------

    async def _upstream_pump(self) -> None:
        session = self.session
        try:
            while True:
                received = False
                # receive() yields one model turn and then returns
                async for msg in session.receive():
                    received = True
                    await self._handle_upstream_message(msg)
                if not received:
                    break
        except asyncio.CancelledError:
            raise
        except ConnectionClosedOK:
            log.info("event=upstream_closed reason=normal")
        except Exception as exc:
            log.error("event=upstream_error error=%s", exc, exc_info=True)
            await self._send_to_client(ErrorNotice(message=UPSTREAM_ERROR_MESSAGE))
        else:
            log.info("event=upstream_closed reason=end_of_stream")
        self.is_connected = False
        await self._send_to_client(ClosedNotice())

    async def _handle_upstream_message(self, msg) -> None:
        setup = getattr(msg, "setup_complete", None)
        if setup is not None:
            await self._send_setup_complete(getattr(setup, "session_id", None) or self.session_id)

        content = getattr(msg, "server_content", None)
        if content is None:
            return

        if content.input_transcription and content.input_transcription.text:
            text = content.input_transcription.text
            log.debug("event=user_transcript text=%.80r", text)
            await self._send_to_client(InputTranscript(text=text))

        if content.output_transcription and content.output_transcription.text:
            text = content.output_transcription.text
            log.debug("event=ai_transcript text=%.80r", text)
            self._accumulated_ai_text += text
            await self._send_to_client(OutputTranscript(text=text))

        if content.model_turn and content.model_turn.parts:
            for part in content.model_turn.parts:
                if part.inline_data and part.inline_data.data:
                    await self._send_bytes_to_client(part.inline_data.data)

        if content.turn_complete:
            phrase = self.config.relay.completion_phrase.lower()
            if phrase and phrase in self._accumulated_ai_text.lower():
                log.info("event=walk_complete_detected phrase=%r", phrase)
                await self._send_to_client(WalkComplete())
            self._accumulated_ai_text = ""
            log.info("event=turn_complete")
            await self._send_to_client(TurnCompleteSignal())

        if content.interrupted:
            log.info("event=turn_interrupted")
            await self._send_to_client(InterruptedSignal())

    # -----------------------------------------------------------------------
    # Helpers
    # -----------------------------------------------------------------------

    async def _send_setup_complete(self, session_id: Optional[str]) -> None:
        if self._setup_sent:
            return
        self._setup_sent = True
        await self._send_to_client(SetupComplete(session_id=session_id))

    def _client_open(self) -> bool:
        return (
            self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )

    async def _send_to_client(self, message: BaseModel) -> None:
        if not self._client_open():
            return
        payload = encode(message)
        log.debug("event=send_to_client type=%s bytes=%d", message.type, len(payload))
        try:
            await self.websocket.send_text(payload)
        except (WebSocketDisconnect, RuntimeError, OSError) as exc:
            log.debug("event=send_to_client_failed type=%s error=%s", message.type, exc)

    async def _send_bytes_to_client(self, data: bytes) -> None:
        if not self._client_open():
            return
        try:
            await self.websocket.send_bytes(data)
        except (WebSocketDisconnect, RuntimeError, OSError) as exc:
            log.debug("event=send_audio_failed error=%s", exc)

    async def _close_client(self) -> None:
        if self.websocket.application_state != WebSocketState.CONNECTED:
            return
        try:
            await self.websocket.close()
        except (WebSocketDisconnect, RuntimeError, OSError) as exc:
            log.debug("event=client_close_error error=%s", exc)
