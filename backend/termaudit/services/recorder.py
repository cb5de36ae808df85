"""Recorder - gzip asciicast v2 recordings of raw terminal I/O.

Frames are pushed onto a bounded per-session queue and written by a
background task, so a slow disk never delays a command verdict. When the
queue is full or a write fails the frame is dropped and the recording is
flagged as degraded; the session itself is never affected.

File layout: ``<recordings_dir>/<session_id>-<stream_id>.cast.gz``. The
session id keeps artifacts unique when a stream id is reused or two ids
sanitize to the same name. While a session is live the data goes to
``<name>.cast.gz.part``, which is renamed into place by ``finalize``.
"""

import asyncio
import gzip
import json
import logging
import os
import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Optional

from termaudit.core.config import settings
from termaudit.core.exceptions import RecordingNotFoundError
from termaudit.models.terminal_session import TerminalSession

logger = logging.getLogger(__name__)

ASCIICAST_VERSION = 2
RECORDING_SUFFIX = ".cast.gz"
PARTIAL_SUFFIX = ".part"

# Frames written per worker-thread hop
WRITE_BATCH_SIZE = 64

# How many finalized paths to remember for repeated finalize calls
FINALIZED_HISTORY_SIZE = 4096

DIRECTIONS = ("o", "i")


@dataclass
class _Recording:
    session_id: int
    stream_id: str
    path: Path
    part_path: Path
    started: float
    queue: asyncio.Queue
    handle: IO[str] | None = None
    writer: asyncio.Task | None = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    degraded: bool = False
    dropped: int = 0
    finalized: bool = False
    on_degraded: Callable[[int], None] | None = None


class Recorder:
    """Owns the live recordings of every session in this process."""

    _instance: Optional["Recorder"] = None
    _instance_lock: threading.Lock = threading.Lock()

    def __init__(self, recordings_dir: str | Path | None = None, queue_size: int | None = None):
        self.recordings_dir = Path(recordings_dir or settings.recordings_dir)
        self.queue_size = queue_size or settings.recorder_queue_size
        self._recordings: dict[int, _Recording] = {}
        self._finalized: OrderedDict[int, tuple[str | None, bool]] = OrderedDict()

    @classmethod
    def get_instance(cls) -> "Recorder":
        """Get or create singleton instance (thread-safe)."""
        if cls._instance is None:
            with cls._instance_lock:
                # Double-check locking pattern
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    def path_for(self, session_id: int, stream_id: str) -> Path:
        # Stream ids come from the proxy; keep them inside recordings_dir
        safe = "".join(c if c.isalnum() or c in "-_." else "_" for c in stream_id)
        return self.recordings_dir / f"{session_id}-{safe}{RECORDING_SUFFIX}"

    async def open(
        self,
        session_id: int,
        stream_id: str,
        width: int = 80,
        height: int = 24,
        on_degraded: Callable[[int], None] | None = None,
    ) -> None:
        """Start recording a session. Failures only mark it degraded.

        on_degraded is called with the session id the first time the
        recording loses data, while the session may still be live.
        """
        if session_id in self._recordings:
            return

        path = self.path_for(session_id, stream_id)
        recording = _Recording(
            session_id=session_id,
            stream_id=stream_id,
            path=path,
            part_path=path.with_name(path.name + PARTIAL_SUFFIX),
            started=time.monotonic(),
            queue=asyncio.Queue(maxsize=self.queue_size),
            on_degraded=on_degraded,
        )
        self._recordings[session_id] = recording

        header = {
            "version": ASCIICAST_VERSION,
            "width": width,
            "height": height,
            "timestamp": int(time.time()),
            "env": {"TERM": "xterm"},
        }
        try:
            recording.handle = await asyncio.to_thread(
                self._open_file, recording.part_path, json.dumps(header)
            )
        except OSError as e:
            self._degrade(recording, f"could not open recording: {e}")
            return

        recording.writer = asyncio.create_task(self._writer_loop(recording))
        logger.debug(f"Recording session {session_id} to {path}", extra={"session_id": session_id})

    def append(self, session_id: int, data: bytes | str, direction: str = "o") -> bool:
        """Queue one frame. Never blocks; returns False if the frame was dropped."""
        recording = self._recordings.get(session_id)
        if recording is None or recording.finalized:
            return False
        if recording.handle is None:
            self._drop(recording, "recording file is not open")
            return False

        if isinstance(data, bytes):
            data = data.decode("utf-8", errors="replace")
        elapsed = round(time.monotonic() - recording.started, 6)
        try:
            recording.queue.put_nowait((elapsed, direction if direction in DIRECTIONS else "o", data))
        except asyncio.QueueFull:
            self._drop(recording, "recorder queue is full")
            return False
        return True

    async def finalize(self, session_id: int) -> str | None:
        """Flush, close and move the recording into place.

        Idempotent: later calls return the same path without touching the
        file. Returns None when the recording never got a file.

        Raises:
            RecordingNotFoundError: no recording was ever opened for the session
        """
        recording = self._recordings.get(session_id)
        if recording is None:
            if session_id in self._finalized:
                return self._finalized[session_id][0]
            raise RecordingNotFoundError(session_id, "no open recording")

        async with recording.lock:
            if recording.finalized:
                return str(recording.path) if recording.handle is not None else None

            result: str | None = None
            if recording.handle is not None:
                if recording.writer is not None:
                    # Sentinel goes in after every queued frame
                    await recording.queue.put(None)
                    await recording.writer
                try:
                    await asyncio.to_thread(self._close_file, recording)
                    result = str(recording.path)
                except OSError as e:
                    self._degrade(recording, f"could not finalize recording: {e}")
                    recording.handle = None

            recording.finalized = True
            self._recordings.pop(session_id, None)
            self._finalized[session_id] = (result, recording.degraded)
            while len(self._finalized) > FINALIZED_HISTORY_SIZE:
                self._finalized.popitem(last=False)

        if recording.dropped:
            logger.warning(
                f"Recording for session {session_id} dropped {recording.dropped} frames",
                extra={"session_id": session_id},
            )
        return result

    def is_degraded(self, session_id: int) -> bool:
        recording = self._recordings.get(session_id)
        if recording is not None:
            return recording.degraded
        return self._finalized.get(session_id, (None, False))[1]

    def get_recording(self, session: TerminalSession) -> Path:
        """Path of a finalized recording artifact.

        Raises:
            RecordingNotFoundError: recording disabled, not finalized, or missing
        """
        if not session.recording_enabled:
            raise RecordingNotFoundError(session.id, "recording disabled for this session")
        if not session.recording_path:
            raise RecordingNotFoundError(session.id, "recording not finalized")
        path = Path(session.recording_path)
        if not path.is_file():
            raise RecordingNotFoundError(session.id, "recording file is missing")
        return path

    async def close_all(self) -> None:
        """Finalize every open recording (shutdown)."""
        for session_id in list(self._recordings):
            await self.finalize(session_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _drop(self, recording: _Recording, reason: str) -> None:
        recording.dropped += 1
        self._degrade(recording, reason)

    def _degrade(self, recording: _Recording, reason: str) -> None:
        if recording.degraded:
            return
        recording.degraded = True
        logger.warning(
            f"Recording for session {recording.session_id} degraded: {reason}",
            extra={"session_id": recording.session_id, "stream_id": recording.stream_id},
        )
        if recording.on_degraded is not None:
            recording.on_degraded(recording.session_id)

    async def _writer_loop(self, recording: _Recording) -> None:
        while True:
            frame = await recording.queue.get()
            batch = [frame]
            while frame is not None and len(batch) < WRITE_BATCH_SIZE:
                try:
                    frame = recording.queue.get_nowait()
                except asyncio.QueueEmpty:
                    break
                batch.append(frame)

            stop = batch[-1] is None
            frames = [f for f in batch if f is not None]
            if frames:
                lines = "".join(json.dumps(list(f)) + "\n" for f in frames)
                try:
                    await asyncio.to_thread(recording.handle.write, lines)
                except OSError as e:
                    recording.dropped += len(frames) - 1
                    self._drop(recording, f"write failed: {e}")
            if stop:
                return

    @staticmethod
    def _open_file(part_path: Path, header: str) -> IO[str]:
        part_path.parent.mkdir(parents=True, exist_ok=True)
        handle = gzip.open(part_path, "wt", encoding="utf-8")
        handle.write(header + "\n")
        handle.flush()
        return handle

    @staticmethod
    def _close_file(recording: _Recording) -> None:
        recording.handle.close()
        os.replace(recording.part_path, recording.path)


def get_recorder() -> Recorder:
    """Get the recorder singleton."""
    return Recorder.get_instance()
