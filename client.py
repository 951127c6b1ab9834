"""
client.py — Garden Walk · Terminal client
=========================================
Hands-free garden walk against a running relay server.  Speak into the
default microphone; the assistant answers through the default speaker.

    python client.py [--url ws://localhost:3003/ws/gemini-live]

stdin commands
--------------
  /photo <path>    send a JPEG as one image turn
  /text <message>  send a typed turn
  /pause           stop forwarding the microphone
  /resume          resume forwarding the microphone
  /quit            end the walk
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
import threading
from pathlib import Path

from dotenv import load_dotenv

from config import GardenWalkConfig
from errors import RelayError
from messages import ErrorEvent, InputTranscriptDelta, LifecycleEvent, OutputTranscriptDelta, SetupReady, TurnComplete
from session import Session
from stages import Stage
from walk import GardenWalk, PhotoState

load_dotenv()

logging.basicConfig(
    level=logging.DEBUG if os.getenv("VOICE_DEBUG") else logging.INFO,
    format="%(asctime)s.%(msecs)03d [%(levelname)s] %(name)s – %(message)s",
    datefmt="%H:%M:%S",
)
log = logging.getLogger("garden_walk.client")


class TerminalWalk:
    """Wires a GardenWalk to the terminal."""

    def __init__(self, config: GardenWalkConfig, url: str | None = None):
        self.config = config
        self.done = asyncio.Event()
        self.session = Session(
            url,
            config.client,
            on_speaking_start=lambda: log.debug("event=assistant_speaking"),
            on_speaking_end=lambda: log.debug("event=assistant_quiet"),
        )
        self.walk = GardenWalk(
            self.session,
            config.walk,
            on_stage_change=self._on_stage_change,
            on_photo_state_change=self._on_photo_state_change,
            on_finished=self.done.set,
            on_event=self._on_event,
        )

    def _on_stage_change(self, stage: Stage) -> None:
        log.info("event=stage stage=%s step=%d/%d", stage.value, stage.index, len(Stage) - 1)

    def _on_photo_state_change(self, state: PhotoState) -> None:
        if state is PhotoState.CHOOSING_SOURCE:
            print("📷  Want to share a photo?  /photo <path> to send one, or just say no.", flush=True)
        elif state is PhotoState.CAPTURING:
            print("📷  Waiting for /photo <path> …", flush=True)

    def _on_event(self, event: LifecycleEvent) -> None:
        if isinstance(event, SetupReady):
            log.info("event=ready session_id=%s", event.session_id)
        elif isinstance(event, (InputTranscriptDelta, OutputTranscriptDelta)):
            log.debug("event=%s text=%r", event.kind, event.text)
        elif isinstance(event, TurnComplete):
            for message in self.session.messages[-2:]:
                print(f"{message.role:>9}: {message.content}", flush=True)
        elif isinstance(event, ErrorEvent):
            log.error("event=session_error message=%s", event.message)
            self.done.set()
        elif event.kind == "closed":
            self.done.set()

    async def handle_command(self, line: str) -> None:
        command, _, arg = line.strip().partition(" ")
        if command == "/quit":
            await self.walk.finish()
        elif command == "/text" and arg:
            self.session.send_text(arg)
        elif command == "/photo" and arg:
            path = Path(arg).expanduser()
            try:
                image = path.read_bytes()
            except OSError as exc:
                log.error("event=photo_read_failed path=%s error=%s", path, exc)
                return
            self.walk.submit_photo(image)
        elif command == "/pause":
            self.session.pause_capture()
        elif command == "/resume":
            self.session.resume_capture()
        elif command:
            print("commands: /photo <path>  /text <message>  /pause  /resume  /quit", flush=True)

    def _start_command_reader(self, loop: asyncio.AbstractEventLoop) -> None:
        # Blocking stdin reads live on a daemon thread so shutdown never waits on them
        def pump() -> None:
            for line in sys.stdin:
                if loop.is_closed() or self.done.is_set():
                    return
                asyncio.run_coroutine_threadsafe(self.handle_command(line), loop)
            if not loop.is_closed():
                loop.call_soon_threadsafe(self.done.set)

        threading.Thread(target=pump, name="stdin_commands", daemon=True).start()

    async def run(self) -> int:
        try:
            await self.walk.start()
        except RelayError as exc:
            log.error("event=connect_failed error=%s", exc)
            return 1

        self._start_command_reader(asyncio.get_running_loop())
        try:
            await self.done.wait()
        finally:
            await self.session.disconnect()

        for message in self.session.messages:
            log.debug("event=transcript role=%s content=%r", message.role, message.content)
        log.info("event=walk_summary stage=%s messages=%d", self.walk.stage.value, len(self.session.messages))
        return 0 if self.session.last_error is None else 1


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Hands-free garden walk in the terminal")
    parser.add_argument("--url", help="relay endpoint (default from config)")
    parser.add_argument(
        "--config", default=os.getenv("CONFIG_PATH", "garden_walk_config.json"),
        help="runtime config JSON",
    )
    args = parser.parse_args(argv)

    config = GardenWalkConfig.load(args.config)
    try:
        return asyncio.run(TerminalWalk(config, args.url).run())
    except KeyboardInterrupt:
        print("\nShutdown requested")
        return 130


if __name__ == "__main__":
    sys.exit(main())
