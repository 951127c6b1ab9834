"""
server.py — Garden Walk · FastAPI relay server
==============================================
Terminates client WebSockets and bridges each one to its own Gemini Live
session through a GeminiLiveProxy.

Endpoints
---------
  WS  /ws/gemini-live   Duplex audio + control relay (one upstream per socket)
  GET /health           Service liveness and active relay count
  GET /config           Current runtime configuration
  PUT /config           Deep-merge patch, persisted to CONFIG_PATH
  WS  /ws/logs          Real-time server log stream

Concurrency model
-----------------
Everything runs on one asyncio loop.  Relays share no state apart from the
``active_relays`` registry used by /health; a failing upstream only ever
tears down its own client socket.

Liveness: uvicorn pings every client WebSocket (``ws_ping_interval``, 5 s
by default) and drops sockets that stop answering.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from collections import deque
from contextlib import asynccontextmanager
from typing import Set

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from google import genai
from pydantic import ValidationError

from config import GardenWalkConfig
from proxy import GeminiLiveProxy

load_dotenv()

# ---------------------------------------------------------------------------
# Relay log stream for /ws/logs
# ---------------------------------------------------------------------------

LOG_HISTORY = 500
RELAY_LOGGER = "garden_walk"


def log_frame(record: logging.LogRecord, line: str) -> dict:
    """One /ws/logs frame; ``event=name key=value`` messages are split into fields."""
    message = record.getMessage()
    fields = dict(
        token.split("=", 1) for token in message.split() if "=" in token and not token.startswith("=")
    )
    return {
        "logger": record.name,
        "level":  record.levelname,
        "event":  fields.pop("event", None),
        "fields": fields,
        "line":   line,
        "ts":     record.created,
    }


class LogBroadcaster:
    """Relay log frames to every /ws/logs subscriber; late joiners get the backlog."""
    def __init__(self, history: int = LOG_HISTORY) -> None:
        self._subscribers: Set[WebSocket] = set()
        self._backlog: deque[str] = deque(maxlen=history)

    async def subscribe(self, ws: WebSocket) -> None:
        await ws.accept()
        self._subscribers.add(ws)
        for payload in list(self._backlog):
            if not await self._deliver(ws, payload):
                self._subscribers.discard(ws)
                break

    def unsubscribe(self, ws: WebSocket) -> None:
        self._subscribers.discard(ws)

    async def publish(self, frame: dict) -> None:
        payload = json.dumps(frame)
        self._backlog.append(payload)
        for ws in list(self._subscribers):
            if not await self._deliver(ws, payload):
                self._subscribers.discard(ws)

    @staticmethod
    async def _deliver(ws: WebSocket, payload: str) -> bool:
        try:
            await ws.send_text(payload)
        except (WebSocketDisconnect, RuntimeError, OSError):
            return False
        return True


broadcaster = LogBroadcaster()


class _LogStreamHandler(logging.Handler):
    """Queues each relay log record for publication on the running loop."""
    def emit(self, record: logging.LogRecord) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return  # records from outside the loop (import time, audio threads)
        frame = log_frame(record, self.format(record))
        loop.create_task(broadcaster.publish(frame))


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
LOG_FORMAT = "%(asctime)s.%(msecs)03d [%(levelname)s] %(name)s – %(message)s"

logging.basicConfig(
    level=logging.DEBUG if os.getenv("VOICE_DEBUG") else logging.INFO,
    format=LOG_FORMAT,
    datefmt="%H:%M:%S",
)
log = logging.getLogger("garden_walk.server")

# Only the relay's own loggers are streamed, not uvicorn's access log
_log_stream_handler = _LogStreamHandler()
_log_stream_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%H:%M:%S"))
logging.getLogger(RELAY_LOGGER).addHandler(_log_stream_handler)

# ---------------------------------------------------------------------------
# Config (from environment + JSON file)
# ---------------------------------------------------------------------------
CONFIG_PATH = os.getenv("CONFIG_PATH", "garden_walk_config.json")

_config = GardenWalkConfig.load(CONFIG_PATH)

# Live proxies, for /health
active_relays: Set[GeminiLiveProxy] = set()


def _make_genai_client():
    """Gemini client from GEMINI_API_KEY, or None so relays fail with a clear error."""
    api_key = os.getenv("GEMINI_API_KEY")
    if not api_key:
        log.warning("event=gemini_api_key_missing")
        return None
    return genai.Client(api_key=api_key)


# ---------------------------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------------------------

@asynccontextmanager
async def _lifespan(app: FastAPI):
    app.state.genai_client = _make_genai_client()
    log.info(
        "event=server_start model=%s upstream_configured=%s",
        _config.gemini.model, app.state.genai_client is not None,
    )
    yield
    log.info("event=server_shutdown active_relays=%d", len(active_relays))
    for relay in list(active_relays):
        await relay.disconnect()
    log.info("event=server_stopped")


app = FastAPI(
    title="Garden Walk Relay",
    version="1.0.0",
    description="WebSocket relay between garden walk clients and Gemini Live",
    lifespan=_lifespan,
)

# Allow file:// and any local origin to reach the API (dev only)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@app.websocket("/ws/gemini-live")
async def ws_gemini_live(ws: WebSocket) -> None:
    """One client, one Gemini Live session, until either side hangs up."""
    await ws.accept()
    log.info("event=client_connected remote=%s", ws.client)
    relay = GeminiLiveProxy(ws, getattr(ws.app.state, "genai_client", None), _config)
    active_relays.add(relay)
    try:
        await relay.serve()
    finally:
        active_relays.discard(relay)
        log.info("event=client_session_ended remote=%s active_relays=%d", ws.client, len(active_relays))


@app.get("/health")
async def health() -> JSONResponse:
    """Liveness probe."""
    return JSONResponse({
        "status":              "ok",
        "active_relays":       len(active_relays),
        "upstream_configured": getattr(app.state, "genai_client", None) is not None,
        "model":               _config.gemini.model,
    })


@app.get("/config")
async def get_config() -> dict:
    return _config.model_dump()


@app.put("/config")
async def put_config(patch: dict) -> dict:
    """Deep-merge ``patch`` into the running config and persist it.

    Applies to relays opened after the call; live relays keep their config.
    """
    global _config
    try:
        updated = _config.merge_patch(patch)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=json.loads(exc.json())) from exc
    updated.save(CONFIG_PATH)
    _config = updated
    log.info("event=config_updated keys=%s", ",".join(sorted(patch)))
    return _config.model_dump()


@app.websocket("/ws/logs")
async def ws_logs(ws: WebSocket) -> None:
    """
    Relay log stream.  Each ``garden_walk.*`` record arrives as:
    {
      "logger": "garden_walk.proxy",
      "level":  "INFO" | "WARNING" | "ERROR" | ...,
      "event":  "turn_complete" | null,
      "fields": {"session_id": "..."},
      "line":   "<formatted line>",
      "ts":     <unix float>
    }
    """
    await broadcaster.subscribe(ws)
    log.info("event=log_subscriber_joined remote=%s", ws.client)
    try:
        while True:
            # Inbound frames are ignored; receiving only notices the hang-up
            await ws.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        broadcaster.unsubscribe(ws)
        log.info("event=log_subscriber_left remote=%s", ws.client)


def main() -> None:
    relay = _config.relay
    log.info("event=server_listen host=%s port=%d ping_interval_sec=%.1f", relay.host, relay.port, relay.ping_interval_sec)
    uvicorn.run(
        app,
        host=relay.host,
        port=relay.port,
        ws_ping_interval=relay.ping_interval_sec,
        ws_ping_timeout=relay.ping_timeout_sec,
        log_config=None,
    )


if __name__ == "__main__":
    main()
