import asyncio
import base64
import json

import numpy as np
import pytest
from websockets.exceptions import ConnectionClosedError

from conftest import FailingCapture, FakeCapture, settle
from errors import DeviceError, RelayConnectionError
from messages import (
    Closed,
    ConversationComplete,
    ErrorEvent,
    InputTranscriptDelta,
    Interrupted,
    Message,
    OutputTranscriptDelta,
    SetupReady,
    TurnComplete,
)
from session import CONNECTION_LOST_MESSAGE, SessionState


def control(**payload) -> str:
    return json.dumps(payload)


# ---------------------------------------------------------------------------
# connect / disconnect
# ---------------------------------------------------------------------------

def test_connect_opens_transport_and_mic_without_waiting_for_setup(make_session):
    async def scenario():
        session, transports, events = make_session()
        await session.connect()
        assert session.state is SessionState.OPEN
        assert session.is_connected and session.is_listening
        assert len(transports) == 1
        assert FakeCapture.instances[0].opened
        assert events == []

        transports[0].feed(control(type="setup_complete", sessionId="abc"))
        await settle()
        assert events == [SetupReady(session_id="abc")]
        assert session.server_session_id == "abc"
        await session.disconnect()

    asyncio.run(scenario())


def test_connect_twice_raises(make_session):
    async def scenario():
        session, _, _ = make_session()
        await session.connect()
        with pytest.raises(RuntimeError):
            await session.connect()
        await session.disconnect()

    asyncio.run(scenario())


def test_transport_failure_releases_mic(make_session):
    async def scenario():
        session, _, events = make_session(transport_error=OSError("connection refused"))
        with pytest.raises(RelayConnectionError) as info:
            await session.connect()
        assert isinstance(info.value, ConnectionError)
        assert session.state is SessionState.ERRORED
        assert FakeCapture.instances[0].close_calls >= 1
        assert events == []

    asyncio.run(scenario())


def test_device_failure_closes_transport(make_session):
    async def scenario():
        session, transports, _ = make_session(capture_factory=FailingCapture)
        with pytest.raises(DeviceError):
            await session.connect()
        assert session.state is SessionState.ERRORED
        assert transports[0].closed_with == 1000
        assert session.send_text("hello") is False

    asyncio.run(scenario())


def test_device_error_wins_when_both_fail(make_session):
    async def scenario():
        session, _, _ = make_session(capture_factory=FailingCapture, transport_error=OSError("down"))
        with pytest.raises(DeviceError):
            await session.connect()

    asyncio.run(scenario())


def test_disconnect_flushes_pending_text_and_is_idempotent(make_session):
    async def scenario():
        session, transports, events = make_session()
        await session.connect()
        transports[0].feed(control(type="input_transcript", text="my fern "))
        transports[0].feed(control(type="output_transcript", text="Got it."))
        await settle()

        await session.disconnect()
        await session.disconnect()

        assert session.state is SessionState.CLOSED
        assert session.messages == [
            Message(role="user", content="my fern"),
            Message(role="assistant", content="Got it."),
        ]
        assert transports[0].closed_with == 1000
        assert FakeCapture.instances[0].close_calls == 1
        assert [e for e in events if isinstance(e, Closed)] == [Closed()]

    asyncio.run(scenario())


def test_disconnect_before_connect_is_a_no_op(make_session):
    async def scenario():
        session, _, events = make_session()
        await session.disconnect()
        assert session.state is SessionState.IDLE
        assert events == []

    asyncio.run(scenario())


def test_reconnect_uses_fresh_devices_and_ignores_stale_frames(make_session):
    async def scenario():
        session, transports, _ = make_session()
        await session.connect()
        transports[0].feed(control(type="output_transcript", text="Hello there."))
        transports[0].feed(control(type="turn_complete"))
        await settle()
        assert len(session.messages) == 1

        await session.disconnect()
        await session.connect()

        assert len(transports) == 2
        assert len(FakeCapture.instances) == 2
        old_capture, new_capture = FakeCapture.instances
        assert old_capture is not new_capture and new_capture.opened
        assert session.messages == []

        old_capture.on_frame(b"\x01\x00" * 4)
        await settle()
        assert transports[1].sent == []

        new_capture.on_frame(b"\x02\x00" * 4)
        await settle()
        assert transports[1].sent == [b"\x02\x00" * 4]
        await session.disconnect()

    asyncio.run(scenario())


# ---------------------------------------------------------------------------
# outbound
# ---------------------------------------------------------------------------

def test_audio_and_control_frames_share_one_ordered_queue(make_session):
    async def scenario():
        session, transports, _ = make_session()
        await session.connect()
        capture = FakeCapture.instances[0]

        capture.on_frame(b"\x10\x00")
        await settle()
        session.send_text("It's a tomato")
        capture.on_frame(b"\x20\x00")
        await settle()

        assert transports[0].sent == [
            b"\x10\x00",
            '{"type":"text","text":"It\'s a tomato"}',
            b"\x20\x00",
        ]
        await session.disconnect()

    asyncio.run(scenario())


def test_paused_capture_drops_frames(make_session):
    async def scenario():
        session, transports, _ = make_session()
        await session.connect()
        capture = FakeCapture.instances[0]

        session.pause_capture()
        assert not session.is_listening
        capture.on_frame(b"\x01\x00")
        await settle()
        assert transports[0].sent == []

        session.resume_capture()
        capture.on_frame(b"\x02\x00")
        await settle()
        assert transports[0].sent == [b"\x02\x00"]
        await session.disconnect()

    asyncio.run(scenario())


def test_send_image_accepts_bytes_and_data_urls(make_session):
    async def scenario():
        session, transports, _ = make_session()
        await session.connect()
        jpeg = b"\xff\xd8\xff\xe0fake-jpeg"
        b64 = base64.b64encode(jpeg).decode()

        assert session.send_image(jpeg)
        assert session.send_image(f"data:image/jpeg;base64,{b64}", "Here is the photo")
        await settle()

        first, second = (json.loads(frame) for frame in transports[0].sent)
        assert first == {
            "type": "image",
            "imageData": b64,
            "text": "Here is a photo of my plant. What do you see?",
        }
        assert second == {"type": "image", "imageData": b64, "text": "Here is the photo"}
        await session.disconnect()

    asyncio.run(scenario())


def test_sends_are_dropped_unless_open(make_session):
    session, _, _ = make_session()
    assert session.send_text("hello") is False
    assert session.send_image(b"\xff\xd8") is False


# ---------------------------------------------------------------------------
# inbound
# ---------------------------------------------------------------------------

def test_turn_complete_commits_user_then_assistant(make_session):
    async def scenario():
        session, _, events = make_session()
        await session.connect()
        session.dispatch(control(type="input_transcript", text="The leaves are "))
        session.dispatch(control(type="input_transcript", text="yellow."))
        session.dispatch(control(type="output_transcript", text="I see. "))
        session.dispatch(control(type="output_transcript", text="How often do you water?"))
        session.dispatch(control(type="turn_complete"))

        assert session.messages == [
            Message(role="user", content="The leaves are yellow."),
            Message(role="assistant", content="I see. How often do you water?"),
        ]
        assert session.pending_user_text == "" and session.pending_ai_text == ""
        assert events == [
            InputTranscriptDelta(text="The leaves are "),
            InputTranscriptDelta(text="yellow."),
            OutputTranscriptDelta(text="I see. "),
            OutputTranscriptDelta(text="How often do you water?"),
            TurnComplete(),
        ]
        await session.disconnect()

    asyncio.run(scenario())


def test_empty_buffers_commit_nothing(make_session):
    async def scenario():
        session, _, _ = make_session()
        await session.connect()
        session.dispatch(control(type="output_transcript", text="   "))
        session.dispatch(control(type="turn_complete"))
        assert session.messages == []
        await session.disconnect()

    asyncio.run(scenario())


def test_interrupted_commits_only_ai_text_and_flushes_playback(make_session):
    async def scenario():
        session, _, events = make_session()
        await session.connect()
        session.dispatch(b"\x00\x10" * 8)
        session.dispatch(control(type="input_transcript", text="wait, actually"))
        session.dispatch(control(type="output_transcript", text="It sounds like"))
        playback = session._playback
        assert len(playback.segments) == 1

        session.dispatch(control(type="interrupted"))

        assert session.messages == [Message(role="assistant", content="It sounds like")]
        assert session.pending_user_text == "wait, actually"
        assert playback.interrupts == 1
        assert playback.segments == []
        assert events[-1] == Interrupted()
        await session.disconnect()

    asyncio.run(scenario())


def test_binary_audio_is_decoded_onto_playback(make_session):
    async def scenario():
        session, _, _ = make_session()
        await session.connect()
        session.dispatch(b"\x00\x80\x00\x40")
        segment = session._playback.segments[0]
        assert segment.dtype == np.float32
        assert segment.tolist() == [-1.0, 0.5]
        await session.disconnect()

    asyncio.run(scenario())


def test_binary_json_is_treated_as_control(make_session):
    async def scenario():
        session, _, events = make_session()
        await session.connect()
        session.dispatch(b'{"type":"walk_complete"}')
        assert events == [ConversationComplete()]
        assert session._playback.segments == []

        # starts with "{" but is not JSON: audio
        session.dispatch(b"{\x00\x01\x00")
        assert len(session._playback.segments) == 1
        await session.disconnect()

    asyncio.run(scenario())


def test_malformed_control_is_dropped_without_closing(make_session):
    async def scenario():
        session, _, events = make_session()
        await session.connect()
        session.dispatch("{not json")
        session.dispatch(control(type="mystery"))
        session.dispatch(b'{"type":"mystery"}')
        session.dispatch("[1, 2, 3]")
        assert session.state is SessionState.OPEN
        assert events == []
        assert session._playback.segments == []
        await session.disconnect()

    asyncio.run(scenario())


def test_server_error_stops_sending(make_session):
    async def scenario():
        session, transports, events = make_session()
        await session.connect()
        transports[0].feed(control(type="error", message="Gemini connection error"))
        await settle()

        assert session.state is SessionState.ERRORED
        assert events == [ErrorEvent(message="Gemini connection error")]
        assert session.send_text("anyone there?") is False
        FakeCapture.instances[0].on_frame(b"\x01\x00")
        await settle()
        assert transports[0].sent == []
        await session.disconnect()

    asyncio.run(scenario())


def test_server_closed_notice(make_session):
    async def scenario():
        session, transports, events = make_session()
        await session.connect()
        transports[0].feed(control(type="closed"))
        await settle()
        assert session.state is SessionState.CLOSED
        assert events == [Closed()]
        await session.disconnect()

    asyncio.run(scenario())


def test_normal_remote_close(make_session):
    async def scenario():
        session, transports, events = make_session()
        await session.connect()
        transports[0].feed(control(type="output_transcript", text="Happy gardening!"))
        transports[0].end(code=1000)
        await settle()

        assert session.state is SessionState.CLOSED
        assert events[-1] == Closed()
        assert session.messages == [Message(role="assistant", content="Happy gardening!")]
        assert FakeCapture.instances[0].close_calls == 1
        await session.disconnect()

    asyncio.run(scenario())


def test_abnormal_remote_close_is_an_error(make_session):
    async def scenario():
        session, transports, events = make_session()
        await session.connect()
        transports[0].feed(ConnectionClosedError(None, None))
        await settle()

        assert session.state is SessionState.ERRORED
        assert events == [ErrorEvent(message=CONNECTION_LOST_MESSAGE)]
        assert session.last_error == CONNECTION_LOST_MESSAGE
        await session.disconnect()
        assert session.state is SessionState.CLOSED

    asyncio.run(scenario())


@pytest.mark.parametrize("notice", [
    control(type="error", message="Gemini connection error"),
    control(type="closed"),
])
def test_retry_after_server_notice_releases_previous_connection(make_session, notice):
    async def scenario():
        session, transports, _ = make_session()
        await session.connect()
        old_reader = session._reader_task
        old_playback = session._playback
        transports[0].feed(notice)
        await settle()
        assert session.state in (SessionState.ERRORED, SessionState.CLOSED)

        await session.connect()

        assert session.state is SessionState.OPEN
        assert FakeCapture.instances[0].close_calls == 1
        assert transports[0].closed_with == 1000
        assert old_playback.closed
        assert old_reader.done()
        assert len(transports) == 2
        assert FakeCapture.instances[1].close_calls == 0
        await session.disconnect()

    asyncio.run(scenario())


def test_unexpected_close_stops_the_sender(make_session):
    async def scenario():
        session, transports, _ = make_session()
        await session.connect()
        sender = session._sender_task
        transports[0].feed(ConnectionClosedError(None, None))
        await settle()

        assert sender.cancelled()
        assert session._sender_task is None
        await session.disconnect()

    asyncio.run(scenario())


def test_consumer_exceptions_do_not_break_dispatch(make_session):
    async def scenario():
        session, _, _ = make_session()

        def explode(event):
            raise ValueError("consumer bug")

        session.on_event = explode
        await session.connect()
        session.dispatch(control(type="output_transcript", text="Still here."))
        session.dispatch(control(type="turn_complete"))
        assert session.messages == [Message(role="assistant", content="Still here.")]
        await session.disconnect()

    asyncio.run(scenario())
