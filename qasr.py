#!/usr/bin/env -S uv run --index https://pypi.org/simple --script
# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "websockets>=14",
#     "uuid6>=2024.1.12",
# ]
# ///
"""Realtime ASR client: raw PCM on stdin, recognition events on stdout.

Audio is read from stdin as PCM s16le (16-bit signed little-endian), mono,
streamed to a realtime speech-recognition endpoint over a WebSocket, and
every text event the endpoint sends back is printed as one JSON line.

Usage:
    ffmpeg -f avfoundation -i ":0" -f s16le -ar 16000 -ac 1 - 2>/dev/null | qasr
    ffmpeg -f alsa -i default -f s16le -ar 16000 -ac 1 - 2>/dev/null | qasr -l en
    cat speech.pcm | qasr --keep                   # stay connected after EOF

Pipeline:
    stdin → audio-source thread → AudioChannel → uplink loop → WebSocket
    WebSocket → downlink loop → stdout

The process ends on whichever comes first: the server closing the stream,
SIGINT/SIGTERM, or the end of stdin (unless --keep is given).
"""

from __future__ import annotations

import argparse
import asyncio
import base64
import concurrent.futures
import enum
import io
import json
import logging
import os
import signal
import sys
import threading
from dataclasses import dataclass, field
from typing import Any, BinaryIO, TextIO

import uuid6
import websockets
from websockets.exceptions import ConnectionClosed, ConnectionClosedError, WebSocketException

logger = logging.getLogger(__name__)

# ── Constants ────────────────────────────────────────────────────────────────

DEFAULT_MODEL = "qwen3-asr-flash-realtime"
DEFAULT_BASE_URL = "wss://dashscope.aliyuncs.com/api-ws/v1/realtime"
DEFAULT_SAMPLE_RATE = 16000
DEFAULT_LANGUAGE = "zh"
DEFAULT_VAD_THRESHOLD = 0.2
DEFAULT_VAD_SILENCE_MS = 800
API_KEY_ENV = "DASHSCOPE_API_KEY"

READ_BLOCK_BYTES = 8192  # max bytes per stdin read (one chunk)
AUDIO_QUEUE_MAX = 128    # chunks buffered before the reader blocks
CLOSE_TIMEOUT = 2.0      # seconds to wait for the closing handshake on exit

SESSION_UPDATE = "session.update"
AUDIO_APPEND = "input_audio_buffer.append"


# ── Configuration ────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Config:
    """Validated, read-only settings for one streaming session."""

    api_key: str = field(repr=False)
    model: str = DEFAULT_MODEL
    base_url: str = DEFAULT_BASE_URL
    sample_rate: int = DEFAULT_SAMPLE_RATE
    language: str = DEFAULT_LANGUAGE
    vad_threshold: float = DEFAULT_VAD_THRESHOLD
    vad_silence_ms: int = DEFAULT_VAD_SILENCE_MS
    keep_open: bool = False

    def __post_init__(self) -> None:
        if not self.api_key:
            raise ValueError("api_key must not be empty")
        if self.sample_rate <= 0:
            raise ValueError(f"sample rate must be positive, got {self.sample_rate}")
        if not 0.0 <= self.vad_threshold <= 1.0:
            raise ValueError(f"VAD threshold must be within 0.0-1.0, got {self.vad_threshold}")
        if self.vad_silence_ms < 0:
            raise ValueError(f"VAD silence duration must be >= 0, got {self.vad_silence_ms}")


# ── Session protocol ─────────────────────────────────────────────────────────

def new_event_id() -> str:
    """Time-ordered unique id (UUIDv7) for an outgoing event."""
    return str(uuid6.uuid7())


def session_update_event(config: Config) -> dict[str, Any]:
    """The first event of a session: text-only output, server-side VAD."""
    return {
        "event_id": new_event_id(),
        "type": SESSION_UPDATE,
        "session": {
            "modalities": ["text"],
            "input_audio_format": "pcm",
            "sample_rate": config.sample_rate,
            "input_audio_transcription": {
                "language": config.language,
            },
            "turn_detection": {
                "type": "server_vad",
                "threshold": config.vad_threshold,
                "silence_duration_ms": config.vad_silence_ms,
            },
        },
    }


def audio_append_event(chunk: bytes) -> dict[str, Any]:
    return {
        "event_id": new_event_id(),
        "type": AUDIO_APPEND,
        "audio": base64.b64encode(chunk).decode("ascii"),
    }


def encode_event(event: dict[str, Any]) -> str:
    return json.dumps(event, ensure_ascii=False, separators=(",", ":"))


def relayable_text(frame: str | bytes) -> str | None:
    """Return the frame to relay verbatim, or None for frames that are skipped.

    Server events are already serialized JSON; only text frames are relayed.
    """
    if isinstance(frame, str):
        return frame
    return None


# ── Audio channel ────────────────────────────────────────────────────────────

class ChannelClosed(Exception):
    """The event loop receiving from an AudioChannel is gone."""


class AudioChannel:
    """Bounded FIFO from the blocking reader thread to the event loop.

    ``push`` and ``close`` are called from the reader thread and block while
    the queue is full. ``recv`` runs on the loop and returns None once the
    sender closed and every queued chunk has been handed out.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop, maxsize: int = AUDIO_QUEUE_MAX) -> None:
        self._loop = loop
        self._queue: asyncio.Queue[bytes | None] = asyncio.Queue(maxsize=maxsize)
        self._drained = False

    def _put_blocking(self, item: bytes | None) -> None:
        coro = self._queue.put(item)
        try:
            fut = asyncio.run_coroutine_threadsafe(coro, self._loop)
        except RuntimeError as e:
            coro.close()
            raise ChannelClosed("audio channel receiver is gone") from e
        try:
            fut.result()
        except concurrent.futures.CancelledError as e:
            raise ChannelClosed("audio channel receiver is gone") from e

    def push(self, chunk: bytes) -> None:
        self._put_blocking(chunk)

    def close(self) -> None:
        """Mark end of input. Closing a channel nobody reads is a no-op."""
        try:
            self._put_blocking(None)
        except ChannelClosed:
            logger.debug("Audio channel closed after its receiver went away")

    async def recv(self) -> bytes | None:
        if self._drained:
            return None
        chunk = await self._queue.get()
        if chunk is None:
            self._drained = True
        return chunk

    def qsize(self) -> int:
        return self._queue.qsize()


# ── Audio source ─────────────────────────────────────────────────────────────

def read_audio_source(stream: BinaryIO, channel: AudioChannel,
                      block_size: int = READ_BLOCK_BYTES) -> int:
    """Read blocks from ``stream`` into ``channel`` until EOF or an error.

    Blocking; runs on its own thread. The channel is closed on every exit
    path. Returns the number of chunks pushed.
    """
    read = getattr(stream, "read1", None) or stream.read
    pushed = 0
    try:
        while True:
            data = read(block_size)
            if not data:
                logger.debug("Audio input: EOF after %d chunks", pushed)
                break
            channel.push(bytes(data))
            pushed += 1
    except (OSError, ValueError) as e:
        logger.error("Error reading audio input: %s", e)
    except ChannelClosed:
        logger.debug("Audio input: channel closed, stopping after %d chunks", pushed)
    finally:
        channel.close()
    return pushed


def start_audio_source(stream: BinaryIO, channel: AudioChannel) -> threading.Thread:
    """Run read_audio_source on a daemon thread so a blocked read never delays exit."""
    thread = threading.Thread(
        target=read_audio_source, args=(stream, channel),
        name="audio-source", daemon=True,
    )
    thread.start()
    return thread


# ── Streaming session ────────────────────────────────────────────────────────

class ExitReason(enum.Enum):
    DOWNLINK = "downlink"    # server closed the stream or the read failed
    INTERRUPT = "interrupt"  # SIGINT / SIGTERM
    SHUTDOWN = "shutdown"    # audio input ended and keep_open is off


class ShutdownSignal:
    """One-shot notification fired by the uplink when audio input is done.

    Firing is idempotent: only the first call has an effect.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def fired(self) -> bool:
        return self._event.is_set()

    def fire(self) -> bool:
        """Fire the signal. Returns False if it had already fired."""
        if self._event.is_set():
            return False
        self._event.set()
        return True

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class StreamSession:
    """State for one connection's uplink and downlink loops."""

    config: Config
    shutdown: ShutdownSignal = field(default_factory=ShutdownSignal)
    chunks_sent: int = 0
    frames_relayed: int = 0
    uplink_task: asyncio.Task | None = None
    downlink_task: asyncio.Task | None = None


async def uplink_loop(session: StreamSession, ws, channel: AudioChannel) -> None:
    """Forward queued audio chunks to the server, in read order.

    The connection's write side belongs to this loop alone once the session
    is configured. A failed send drops whatever audio is still queued.
    """
    while True:
        chunk = await channel.recv()
        if chunk is None:
            logger.debug("Uplink: audio input drained")
            break
        try:
            await ws.send(encode_event(audio_append_event(chunk)))
        except (ConnectionClosed, OSError) as e:
            logger.error("Failed to send audio data: %s", e)
            break
        session.chunks_sent += 1

    if not session.config.keep_open:
        session.shutdown.fire()


async def downlink_loop(session: StreamSession, ws, out: TextIO) -> None:
    """Print each text frame from the server as one line, in arrival order."""
    try:
        async for frame in ws:
            text = relayable_text(frame)
            if text is None:
                continue
            try:
                print(text, file=out, flush=True)
            except (OSError, UnicodeError, ValueError) as e:
                logger.error("Error writing output: %s", e)
                return
            session.frames_relayed += 1
    except (ConnectionClosedError, OSError) as e:
        logger.error("Error receiving message: %s", e)
    else:
        logger.debug("Downlink: server closed the stream")


async def wait_first(downlink: asyncio.Task, shutdown: ShutdownSignal,
                     interrupt: asyncio.Event) -> ExitReason:
    """Wait until the downlink ends, an interrupt arrives, or shutdown fires.

    Whichever completes first wins; the others are abandoned.
    """
    waiters = {
        downlink: ExitReason.DOWNLINK,
        asyncio.create_task(interrupt.wait()): ExitReason.INTERRUPT,
        asyncio.create_task(shutdown.wait()): ExitReason.SHUTDOWN,
    }
    done, pending = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
    for t in pending:
        if t is not downlink:
            t.cancel()
    return next(reason for task, reason in waiters.items() if task in done)


async def run_pipeline(ws, config: Config, audio_in: BinaryIO, out: TextIO,
                       interrupt: asyncio.Event | None = None) -> ExitReason:
    """Stream ``audio_in`` over an already configured connection.

    Returns once the first exit condition is met. Tasks still running at
    that point are cancelled and queued audio is discarded.
    """
    loop = asyncio.get_running_loop()
    if interrupt is None:
        interrupt = asyncio.Event()

    session = StreamSession(config=config)
    channel = AudioChannel(loop)
    start_audio_source(audio_in, channel)
    session.uplink_task = asyncio.create_task(uplink_loop(session, ws, channel))
    session.downlink_task = asyncio.create_task(downlink_loop(session, ws, out))

    try:
        reason = await wait_first(session.downlink_task, session.shutdown, interrupt)
    finally:
        for task in (session.uplink_task, session.downlink_task):
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.exception("Task %s failed", task.get_name())

    logger.info(
        "Stream ended (%s): %d chunks sent, %d frames relayed",
        reason.value, session.chunks_sent, session.frames_relayed,
    )
    return reason


# ── Connection ───────────────────────────────────────────────────────────────

def build_url(base_url: str, model: str) -> str:
    sep = "&" if "?" in base_url else "?"
    return f"{base_url}{sep}model={model}"


def build_headers(api_key: str) -> dict[str, str]:
    return {
        "Authorization": f"Bearer {api_key}",
        "OpenAI-Beta": "realtime=v1",
    }


def install_interrupt_handlers(loop: asyncio.AbstractEventLoop,
                               interrupt: asyncio.Event) -> list[int]:
    """Route SIGINT/SIGTERM into ``interrupt``. Returns the signals installed."""
    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, interrupt.set)
        except (NotImplementedError, RuntimeError):
            # Windows, or not on the main thread: KeyboardInterrupt still applies
            continue
        installed.append(sig)
    return installed


async def stream(config: Config, audio_in: BinaryIO, out: TextIO) -> ExitReason:
    """Connect, configure the session, and run the pipeline until it ends."""
    loop = asyncio.get_running_loop()
    interrupt = asyncio.Event()
    url = build_url(config.base_url, config.model)

    async with websockets.connect(
        url,
        additional_headers=build_headers(config.api_key),
        max_size=None,
        close_timeout=CLOSE_TIMEOUT,
    ) as ws:
        logger.info("Connected to %s", url)
        await ws.send(encode_event(session_update_event(config)))
        # Until here Ctrl-C raises KeyboardInterrupt and aborts the handshake
        installed = install_interrupt_handlers(loop, interrupt)
        try:
            return await run_pipeline(ws, config, audio_in, out, interrupt)
        finally:
            for sig in installed:
                loop.remove_signal_handler(sig)


# ── CLI ──────────────────────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="qasr",
        description="Realtime ASR: read audio from stdin, write JSON events to stdout",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f"""\
Input audio: PCM s16le (16-bit signed little-endian), mono

Examples (ffmpeg -> stdin):
  macOS (AVFoundation):
    ffmpeg -f avfoundation -i ":0" -f s16le -ar 16000 -ac 1 - 2>/dev/null | %(prog)s

  Linux (ALSA):
    ffmpeg -f alsa -i default -f s16le -ar 16000 -ac 1 - 2>/dev/null | %(prog)s

  Windows (DirectShow):
    ffmpeg -f dshow -i audio="Microphone" -f s16le -ar 16000 -ac 1 - 2>/dev/null | %(prog)s

Environment:
  {API_KEY_ENV}  API key (or use --api-key)
""",
    )
    parser.add_argument("--api-key", default=os.environ.get(API_KEY_ENV),
                        help=f"API key (default: ${API_KEY_ENV})")
    parser.add_argument("-m", "--model", default=DEFAULT_MODEL, help="Realtime ASR model")
    parser.add_argument("--base-url", default=DEFAULT_BASE_URL, help="Realtime WebSocket endpoint")
    parser.add_argument("-s", "--sample-rate", type=int, default=DEFAULT_SAMPLE_RATE,
                        help="Sample rate of the stdin audio in Hz")
    parser.add_argument("-l", "--language", default=DEFAULT_LANGUAGE, help="Recognition language")
    parser.add_argument("--vad-threshold", type=float, default=DEFAULT_VAD_THRESHOLD,
                        help="Server VAD sensitivity (0.0-1.0)")
    parser.add_argument("--vad-silence-ms", type=int, default=DEFAULT_VAD_SILENCE_MS,
                        help="Silence that ends a speech turn, in ms")
    parser.add_argument("-k", "--keep", action="store_true",
                        help="Keep the session open after stdin ends")
    parser.add_argument("--log-level", default="WARNING", help="Logging level (logs go to stderr)")
    return parser


def config_from_args(args: argparse.Namespace) -> Config:
    if not args.api_key:
        raise ValueError(f"no API key: pass --api-key or set {API_KEY_ENV}")
    return Config(
        api_key=args.api_key,
        model=args.model,
        base_url=args.base_url,
        sample_rate=args.sample_rate,
        language=args.language,
        vad_threshold=args.vad_threshold,
        vad_silence_ms=args.vad_silence_ms,
        keep_open=args.keep,
    )


def utf8_stdout() -> TextIO:
    """Relayed events are UTF-8 JSON whatever the locale encoding is."""
    if isinstance(sys.stdout, io.TextIOWrapper):
        sys.stdout.reconfigure(encoding="utf-8")
    return sys.stdout


def open_stdin_audio() -> BinaryIO:
    """Unbuffered raw stdin, so a read returns as soon as any audio is available."""
    return open(sys.stdin.fileno(), "rb", buffering=0, closefd=False)


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    # Nothing is piped in: show usage instead of recording the terminal
    if sys.stdin.isatty():
        parser.print_help()
        sys.exit(0)

    try:
        config = config_from_args(args)
    except ValueError as e:
        parser.error(str(e))

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logging.getLogger("websockets").setLevel(logging.WARNING)

    audio_in = open_stdin_audio()

    try:
        reason = asyncio.run(stream(config, audio_in, utf8_stdout()))
    except KeyboardInterrupt:
        sys.exit(130)
    except (OSError, WebSocketException) as e:
        logger.error("Connection to %s failed: %s", config.base_url, e)
        sys.exit(1)

    if reason is ExitReason.INTERRUPT:
        sys.exit(130)


if __name__ == "__main__":
    main()
