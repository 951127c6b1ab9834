"""In-process fakes for sound devices, the client transport and the Gemini Live session."""

from __future__ import annotations

import asyncio
from types import SimpleNamespace

import pytest
from starlette.websockets import WebSocketState

from config import ClientConfig
from errors import DeviceError
from session import Session


async def settle(rounds: int = 5) -> None:
    """Let call_soon callbacks and freshly created tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


# ---------------------------------------------------------------------------
# Client side
# ---------------------------------------------------------------------------

class FakeTransport:
    """Stands in for a websockets client connection."""

    def __init__(self) -> None:
        self.sent: list = []
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.closed_with: int | None = None
        self.close_code: int | None = None

    async def send(self, payload) -> None:
        self.sent.append(payload)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self.incoming.get()
        if item is None:
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            raise item
        return item

    async def close(self, code: int = 1000) -> None:
        self.closed_with = code

    # test helpers
    def feed(self, payload) -> None:
        self.incoming.put_nowait(payload)

    def end(self, code: int = 1000) -> None:
        self.close_code = code
        self.incoming.put_nowait(None)


class FakeCapture:
    instances: list["FakeCapture"] = []

    def __init__(self, on_frame, samplerate=16000, blocksize=320, device=None):
        self.on_frame = on_frame
        self.samplerate = samplerate
        self.opened = False
        self.close_calls = 0
        FakeCapture.instances.append(self)

    def open(self) -> None:
        self.opened = True

    def close(self) -> None:
        self.close_calls += 1


class FailingCapture(FakeCapture):
    def open(self) -> None:
        raise DeviceError("Microphone unavailable: permission denied")


class FakePlayback:
    def __init__(self, samplerate=24000, device=None, on_speaking_start=None, on_speaking_end=None):
        self.samplerate = samplerate
        self.segments: list = []
        self.interrupts = 0
        self.closed = False

    @property
    def is_playing(self) -> bool:
        return bool(self.segments)

    def enqueue(self, samples) -> None:
        self.segments.append(samples)

    def interrupt(self) -> bool:
        self.interrupts += 1
        was_playing = bool(self.segments)
        self.segments.clear()
        return was_playing

    def close(self) -> None:
        self.closed = True


@pytest.fixture(autouse=True)
def _reset_fake_captures():
    FakeCapture.instances.clear()
    yield
    FakeCapture.instances.clear()


@pytest.fixture
def make_session():
    """Build a Session wired to fakes.  Returns (session, transports, events)."""

    def build(capture_factory=FakeCapture, transport_error: BaseException | None = None, **config):
        transports: list[FakeTransport] = []
        events: list = []

        async def transport_factory(url):
            if transport_error is not None:
                raise transport_error
            transport = FakeTransport()
            transports.append(transport)
            return transport

        session = Session(
            "ws://relay.test/ws/gemini-live",
            ClientConfig(**config),
            on_event=events.append,
            transport_factory=transport_factory,
            capture_factory=capture_factory,
            playback_factory=FakePlayback,
        )
        return session, transports, events

    return build


# ---------------------------------------------------------------------------
# Server side
# ---------------------------------------------------------------------------

class FakeLiveSession:
    """Records what the proxy sends upstream and replays scripted turns."""

    def __init__(self, turns=None, error: BaseException | None = None):
        self.client_content: list[dict] = []
        self.realtime_input: list[dict] = []
        self.session_id = "upstream-session-1"
        self._turns = list(turns or [])
        self._error = error

    async def send_client_content(self, **kwargs) -> None:
        self.client_content.append(kwargs)

    async def send_realtime_input(self, **kwargs) -> None:
        self.realtime_input.append(kwargs)

    async def receive(self):
        if self._turns:
            for msg in self._turns.pop(0):
                yield msg
            return
        if self._error is not None:
            raise self._error


class FakeLiveConnect:
    def __init__(self, session: FakeLiveSession):
        self.session = session
        self.exited = False

    async def __aenter__(self):
        return self.session

    async def __aexit__(self, *exc_info):
        self.exited = True
        return False


class FakeGenaiClient:
    """Mimics ``genai.Client`` down to ``client.aio.live.connect``."""

    def __init__(self, session: FakeLiveSession | None = None, connect_error: BaseException | None = None):
        self.session = session or FakeLiveSession()
        self.connect_error = connect_error
        self.connect_calls: list[dict] = []
        self.contexts: list[FakeLiveConnect] = []
        self.aio = SimpleNamespace(live=SimpleNamespace(connect=self._connect))

    def _connect(self, model, config):
        self.connect_calls.append({"model": model, "config": config})
        if self.connect_error is not None:
            raise self.connect_error
        ctx = FakeLiveConnect(self.session)
        self.contexts.append(ctx)
        return ctx


class FakeClientSocket:
    """Enough of starlette's WebSocket for GeminiLiveProxy."""

    def __init__(self, incoming=None) -> None:
        self.client_state = WebSocketState.CONNECTED
        self.application_state = WebSocketState.CONNECTED
        self.sent: list = []
        self.closed = False
        self._incoming: asyncio.Queue = asyncio.Queue()
        for item in incoming or []:
            self._incoming.put_nowait(item)

    async def accept(self) -> None:
        pass

    async def receive(self) -> dict:
        return await self._incoming.get()

    async def send_text(self, data: str) -> None:
        self.sent.append(data)

    async def send_bytes(self, data: bytes) -> None:
        self.sent.append(data)

    async def close(self, code: int = 1000) -> None:
        self.closed = True
        self.application_state = WebSocketState.DISCONNECTED

    def push(self, message: dict) -> None:
        self._incoming.put_nowait(message)
