"""
session.py — Garden Walk · Duplex audio relay, client side
==========================================================
One Session owns one WebSocket to the relay server, one microphone and one
playback scheduler.  Everything the conversation needs to remember lives on
the Session object: there is no module-level state.

State machine
-------------
    IDLE ──connect()──▶ CONNECTING ──transport open + mic wired──▶ OPEN
                            │                                      │
                            └──DeviceError / RelayConnectionError──┤
                                                                   ▼
                                                  CLOSED  or  ERRORED

  • connect() opens the transport and the mic concurrently and returns as
    soon as both are ready.  It does not wait for the backend's
    ``setup_complete``; that arrives later as a ``SetupReady`` event.
  • A server ``error`` frame or an abnormal transport close moves an OPEN
    session to ERRORED and nothing more is sent.
  • disconnect() is the local, normal close.  It is idempotent.

Wire
----
  outbound  binary  PCM16 mono 16 kHz mic frames (dropped while paused)
            text    {"type":"text"|"image", ...}   (see messages.py)
  inbound   binary  PCM16 mono 24 kHz speech → Playback scheduler
            text    control frames (setup_complete, transcripts, turn
                    boundaries, walk_complete, error, closed)

Audio and control frames share one outbound queue so their relative order is
preserved.

Message log
-----------
Pending transcript text is committed to ``messages`` at three points only:
turn_complete (user then assistant), interrupted (assistant only; the user
may still be talking) and teardown (whatever is left).
"""

from __future__ import annotations

import asyncio
import base64
import logging
from enum import Enum
from typing import Callable, Optional

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from capture import MicrophoneCapture
from codec import CAPTURE_SAMPLE_RATE, PLAYBACK_SAMPLE_RATE, pcm16_to_float
from config import ClientConfig
from errors import DeviceError, ParseError, RelayConnectionError
from messages import (
    Closed,
    ClosedNotice,
    ConversationComplete,
    ErrorEvent,
    ErrorNotice,
    ImageTurn,
    InputTranscript,
    InputTranscriptDelta,
    Interrupted,
    InterruptedSignal,
    LifecycleEvent,
    Message,
    OutputTranscript,
    OutputTranscriptDelta,
    SetupComplete,
    SetupReady,
    TextTurn,
    TurnComplete,
    TurnCompleteSignal,
    WalkComplete,
    encode,
    load_json,
    looks_like_json,
    validate_server_message,
)
from playback import PlaybackScheduler

log = logging.getLogger("garden_walk.session")

NORMAL_CLOSURE   = 1000
ABNORMAL_CLOSURE = 1006

CONNECTION_LOST_MESSAGE = "Connection lost, please retry"
DEFAULT_IMAGE_TEXT = "Here is a photo of my plant. What do you see?"


class SessionState(Enum):
    IDLE       = "idle"
    CONNECTING = "connecting"
    OPEN       = "open"
    CLOSED     = "closed"
    ERRORED    = "errored"


def _default_transport(url: str):
    return websockets.connect(url, max_size=None)


class Session:
    """Client end of the duplex relay."""

    def __init__(
        self,
        url: Optional[str] = None,
        config: Optional[ClientConfig] = None,
        *,
        on_event: Optional[Callable[[LifecycleEvent], None]] = None,
        on_speaking_start: Optional[Callable[[], None]] = None,
        on_speaking_end: Optional[Callable[[], None]] = None,
        transport_factory: Callable[[str], object] = _default_transport,
        capture_factory: Callable[..., MicrophoneCapture] = MicrophoneCapture,
        playback_factory: Callable[..., PlaybackScheduler] = PlaybackScheduler,
    ):
        self.config = config or ClientConfig()
        self.url = url or self.config.server_url
        self.on_event = on_event
        self.on_speaking_start = on_speaking_start
        self.on_speaking_end = on_speaking_end
        self._transport_factory = transport_factory
        self._capture_factory = capture_factory
        self._playback_factory = playback_factory

        # Conversation state
        self.state = SessionState.IDLE
        self.mic_paused = False
        self.pending_user_text = ""
        self.pending_ai_text = ""
        self.messages: list[Message] = []
        self.server_session_id: Optional[str] = None
        self.last_error: Optional[str] = None

        # Owned resources (one set per connection)
        self._ws = None
        self._capture: Optional[MicrophoneCapture] = None
        self._playback: Optional[PlaybackScheduler] = None
        self._outbox: Optional[asyncio.Queue] = None
        self._sender_task: Optional[asyncio.Task] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

        # Bumped on every connect(); stale callbacks compare against it
        self._generation = 0
        self._closing = False

    # -----------------------------------------------------------------------
    # Read-only views
    # -----------------------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        return self.state is SessionState.OPEN

    @property
    def is_listening(self) -> bool:
        return self.state is SessionState.OPEN and not self.mic_paused

    @property
    def is_speaking(self) -> bool:
        return self._playback is not None and self._playback.is_playing

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------

    async def connect(self) -> None:
        """Open the transport and the microphone concurrently.

        Raises:
            DeviceError:          the microphone could not be opened in time.
            RelayConnectionError: the transport could not be opened in time.
            RuntimeError:         the session is already connecting or open.
        """
        if self.state in (SessionState.CONNECTING, SessionState.OPEN):
            raise RuntimeError(f"Session already {self.state.value}")
        if self.state in (SessionState.ERRORED, SessionState.CLOSED):
            # Retry path: the previous connection must give up its devices first
            await self._teardown()

        self._generation += 1
        generation = self._generation
        self._loop = asyncio.get_running_loop()
        self._closing = False
        self._reset_conversation()
        self._set_state(SessionState.CONNECTING)

        capture = self._capture_factory(
            on_frame=self._frame_handler(generation),
            samplerate=CAPTURE_SAMPLE_RATE,
            blocksize=self.config.capture_blocksize,
            device=self.config.mic_device,
        )
        self._capture = capture

        ws, device = await asyncio.gather(
            self._open_transport(),
            self._acquire_capture(capture),
            return_exceptions=True,
        )

        failure = device if isinstance(device, BaseException) else None
        if failure is None and isinstance(ws, BaseException):
            failure = ws
        if failure is not None:
            if not isinstance(ws, BaseException):
                await self._close_transport(ws)
            capture.close()
            self._capture = None
            self.last_error = str(failure)
            self._set_state(SessionState.ERRORED)
            log.error("event=connect_failed error_type=%s error=%s", type(failure).__name__, failure)
            raise failure

        self._ws = ws
        self._outbox = asyncio.Queue()
        self._playback = self._playback_factory(
            samplerate=PLAYBACK_SAMPLE_RATE,
            device=self.config.speaker_device,
            on_speaking_start=self._threadsafe(self._speaking_started, generation),
            on_speaking_end=self._threadsafe(self._speaking_ended, generation),
        )
        self._sender_task = asyncio.create_task(
            self._send_loop(ws, self._outbox), name=f"session_sender_{generation}",
        )
        self._reader_task = asyncio.create_task(
            self._receive_loop(ws, generation), name=f"session_receiver_{generation}",
        )
        self._set_state(SessionState.OPEN)

    async def disconnect(self) -> None:
        """Tear down capture, playback and transport.  Idempotent."""
        if self.state is SessionState.IDLE:
            return
        was_open = self.state is SessionState.OPEN
        await self._teardown()
        self._flush_pending()

        if self.state is not SessionState.CLOSED:
            self._set_state(SessionState.CLOSED)
        if was_open:
            self._emit(Closed())

    async def __aenter__(self) -> "Session":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.disconnect()

    # -----------------------------------------------------------------------
    # Outbound
    # -----------------------------------------------------------------------

    def pause_capture(self) -> None:
        """Stop forwarding mic frames; the device and transport stay open."""
        if not self.mic_paused:
            self.mic_paused = True
            log.info("event=mic_paused")

    def resume_capture(self) -> None:
        if self.mic_paused:
            self.mic_paused = False
            log.info("event=mic_resumed")

    def send_text(self, text: str) -> bool:
        """Queue a text-only turn.  Dropped unless the session is open."""
        return self._send_control(TextTurn(text=text))

    def send_image(self, image: bytes | str, context_text: Optional[str] = None) -> bool:
        """Queue a single image turn.

        ``image`` may be raw JPEG bytes, a base64 string or a ``data:`` URL.
        Dropped unless the session is open.
        """
        if isinstance(image, (bytes, bytearray, memoryview)):
            image_b64 = base64.b64encode(bytes(image)).decode("ascii")
        else:
            image_b64 = image.split(",", 1)[1] if "," in image else image
        return self._send_control(ImageTurn(image_data=image_b64, text=context_text or DEFAULT_IMAGE_TEXT))

    def _send_control(self, message) -> bool:
        if self.state is not SessionState.OPEN or self._outbox is None:
            log.debug("event=send_dropped type=%s state=%s", message.type, self.state.value)
            return False
        self._outbox.put_nowait(encode(message))
        log.info("event=control_queued type=%s", message.type)
        return True

    def _frame_handler(self, generation: int) -> Callable[[bytes], None]:
        loop = self._loop

        def on_frame(frame: bytes) -> None:
            # PortAudio thread
            if loop is None or loop.is_closed():
                return
            loop.call_soon_threadsafe(self._on_capture_frame, frame, generation)

        return on_frame

    def _on_capture_frame(self, frame: bytes, generation: int) -> None:
        if (
            generation != self._generation
            or self.state is not SessionState.OPEN
            or self.mic_paused
            or self._outbox is None
        ):
            return
        self._outbox.put_nowait(frame)

    async def _send_loop(self, ws, outbox: asyncio.Queue) -> None:
        while True:
            payload = await outbox.get()
            if self.state is not SessionState.OPEN:
                continue
            try:
                await ws.send(payload)
            except ConnectionClosed:
                # The receiver reports how the transport ended
                return

    # -----------------------------------------------------------------------
    # Inbound
    # -----------------------------------------------------------------------

    async def _receive_loop(self, ws, generation: int) -> None:
        try:
            async for payload in ws:
                if generation != self._generation:
                    return
                self.dispatch(payload)
        except ConnectionClosed as exc:
            code = exc.rcvd.code if exc.rcvd is not None else ABNORMAL_CLOSURE
        else:
            code = getattr(ws, "close_code", None) or NORMAL_CLOSURE
        self._on_transport_closed(code, generation)

    def dispatch(self, payload: bytes | str) -> None:
        """Single entry point for every inbound frame."""
        if isinstance(payload, (bytes, bytearray, memoryview)):
            data = bytes(payload)
            if looks_like_json(data):
                try:
                    obj = load_json(data)
                except ParseError:
                    # PCM that happens to start with 0x7B
                    self._handle_audio(data)
                    return
                self._handle_control_object(obj)
                return
            self._handle_audio(data)
            return

        try:
            obj = load_json(payload)
        except ParseError as exc:
            log.warning("event=control_parse_error error=%s", exc)
            return
        self._handle_control_object(obj)

    def _handle_control_object(self, obj: dict) -> None:
        try:
            message = validate_server_message(obj)
        except ParseError as exc:
            log.warning("event=control_parse_error error=%s", exc)
            return
        self._handle_control(message)

    def _handle_audio(self, data: bytes) -> None:
        if self.state is not SessionState.OPEN or self._playback is None:
            return
        samples = pcm16_to_float(data)
        try:
            self._playback.enqueue(samples)
        except Exception as exc:
            log.error("event=playback_enqueue_failed error=%s", exc, exc_info=True)

    def _handle_control(self, message) -> None:
        if isinstance(message, SetupComplete):
            self.server_session_id = message.session_id
            log.info("event=setup_complete session_id=%s", message.session_id)
            self._emit(SetupReady(session_id=message.session_id))

        elif isinstance(message, InputTranscript):
            self.pending_user_text += message.text
            self._emit(InputTranscriptDelta(text=message.text))

        elif isinstance(message, OutputTranscript):
            self.pending_ai_text += message.text
            self._emit(OutputTranscriptDelta(text=message.text))

        elif isinstance(message, TurnCompleteSignal):
            self._commit_user()
            self._commit_ai()
            self._emit(TurnComplete())

        elif isinstance(message, InterruptedSignal):
            if self._playback is not None:
                self._playback.interrupt()
            self._commit_ai()
            log.info("event=turn_interrupted")
            self._emit(Interrupted())

        elif isinstance(message, WalkComplete):
            log.info("event=walk_complete")
            self._emit(ConversationComplete())

        elif isinstance(message, ErrorNotice):
            log.error("event=server_error message=%s", message.message)
            self.last_error = message.message
            if self.state is SessionState.OPEN:
                self._set_state(SessionState.ERRORED)
            self._emit(ErrorEvent(message=message.message))

        elif isinstance(message, ClosedNotice):
            if self.state is SessionState.OPEN:
                self._set_state(SessionState.CLOSED)
            self._emit(Closed())

    def _on_transport_closed(self, code: int, generation: int) -> None:
        if generation != self._generation or self._closing:
            return
        was_open = self.state is SessionState.OPEN
        log.info("event=transport_closed code=%s state=%s", code, self.state.value)

        sender, self._sender_task = self._sender_task, None
        if sender is not None:
            sender.cancel()
        self._release_devices()
        self._flush_pending()

        if not was_open:
            return
        if code == NORMAL_CLOSURE:
            self._set_state(SessionState.CLOSED)
            self._emit(Closed())
        else:
            self.last_error = CONNECTION_LOST_MESSAGE
            self._set_state(SessionState.ERRORED)
            self._emit(ErrorEvent(message=CONNECTION_LOST_MESSAGE))

    # -----------------------------------------------------------------------
    # Message log
    # -----------------------------------------------------------------------

    def _commit_user(self) -> None:
        text, self.pending_user_text = self.pending_user_text.strip(), ""
        if text:
            self.messages.append(Message(role="user", content=text))

    def _commit_ai(self) -> None:
        text, self.pending_ai_text = self.pending_ai_text.strip(), ""
        if text:
            self.messages.append(Message(role="assistant", content=text))

    def _flush_pending(self) -> None:
        before = len(self.messages)
        self._commit_user()
        self._commit_ai()
        if len(self.messages) != before:
            log.info("event=pending_text_flushed entries=%d", len(self.messages) - before)

    def _reset_conversation(self) -> None:
        self.messages = []
        self.pending_user_text = ""
        self.pending_ai_text = ""
        self.mic_paused = False
        self.server_session_id = None
        self.last_error = None

    # -----------------------------------------------------------------------
    # Helpers
    # -----------------------------------------------------------------------

    async def _open_transport(self):
        timeout = self.config.connect_timeout_sec
        try:
            ws = await asyncio.wait_for(self._transport_factory(self.url), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise RelayConnectionError(f"Timed out connecting to {self.url} after {timeout:.0f}s") from exc
        except (OSError, WebSocketException) as exc:
            raise RelayConnectionError(f"Could not connect to {self.url}: {exc}") from exc
        log.info("event=transport_open url=%s", self.url)
        return ws

    async def _acquire_capture(self, capture: MicrophoneCapture) -> None:
        timeout = self.config.device_timeout_sec
        loop = asyncio.get_running_loop()
        opening = loop.run_in_executor(None, capture.open)
        try:
            await asyncio.wait_for(asyncio.shield(opening), timeout=timeout)
        except asyncio.TimeoutError as exc:
            # The executor thread may still open the device later; release it then.
            opening.add_done_callback(lambda _fut: capture.close())
            raise DeviceError(f"Timed out opening the microphone after {timeout:.0f}s") from exc

    async def _teardown(self) -> None:
        """Cancel the pumps, release both devices and close the transport."""
        self._closing = True
        current = asyncio.current_task()
        tasks = [t for t in (self._sender_task, self._reader_task) if t is not None and t is not current]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._sender_task = None
        self._reader_task = None

        self._release_devices()

        ws, self._ws = self._ws, None
        if ws is not None:
            await self._close_transport(ws)
        self._outbox = None

    async def _close_transport(self, ws) -> None:
        try:
            await ws.close(code=NORMAL_CLOSURE)
        except Exception as exc:
            log.warning("event=transport_close_error error=%s", exc)

    def _release_devices(self) -> None:
        capture, self._capture = self._capture, None
        if capture is not None:
            capture.close()
        playback, self._playback = self._playback, None
        if playback is not None:
            playback.close()

    def _threadsafe(self, fn: Callable[[], None], generation: int) -> Callable[[], None]:
        loop = self._loop

        def call() -> None:
            if loop is None or loop.is_closed():
                return
            loop.call_soon_threadsafe(self._if_current, fn, generation)

        return call

    def _if_current(self, fn: Callable[[], None], generation: int) -> None:
        if generation == self._generation:
            fn()

    def _speaking_started(self) -> None:
        if self.on_speaking_start:
            self.on_speaking_start()

    def _speaking_ended(self) -> None:
        if self.on_speaking_end:
            self.on_speaking_end()

    def _set_state(self, new_state: SessionState) -> None:
        prev = self.state
        self.state = new_state
        log.info("event=state_change from=%s to=%s generation=%d", prev.value, new_state.value, self._generation)

    def _emit(self, event: LifecycleEvent) -> None:
        if self.on_event is None:
            return
        try:
            self.on_event(event)
        except Exception:
            log.error("event=consumer_error kind=%s", event.kind, exc_info=True)
