"""
Loopcast Process Supervisor — owns the encoder subprocess of each stream slot.

  - At most one process per slot; starting into an occupied slot terminates
    the old process and waits (bounded) for it to exit before spawning
  - stdout/stderr are drained by background tasks, logged, and matched
    against known ffmpeg messages for advisory diagnostics only
  - Process exit and launch failure are published as ``EncoderEvent`` on
    ``events`` — the supervisor itself holds no playback policy

Job lifecycle:  spawned → running → exited (clean | failed | stopped)
                spawn error → FAILED event, never registered
"""
from __future__ import annotations

import asyncio
import logging
import re
import time
import uuid
from asyncio.subprocess import DEVNULL, PIPE
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Set

from app.core.metrics import ENCODER_DIAGNOSTICS, ENCODER_EXITS, ENCODER_STARTS

logger = logging.getLogger(__name__)

# Advisory ffmpeg output patterns
DIAGNOSTIC_PATTERNS: Dict[str, tuple] = {
    "connected": ("Stream mapping:", "Press [q] to stop"),
    "connection_refused": ("Connection refused", "No route to host"),
    "auth_rejected": ("401 Unauthorized", "403 Forbidden", "Invalid stream name"),
    "network_unreachable": ("Network is unreachable", "Connection timed out"),
}

DIAGNOSTIC_HINTS: Dict[str, str] = {
    "connected": "encoder connected to RTMP server",
    "connection_refused": "connection error - check stream key and network",
    "auth_rejected": "authentication error - check the stream key",
    "network_unreachable": "network error - check internet connection",
}

_LINE_SPLIT = re.compile(r"[\r\n]+")

DiagnosticCallback = Callable[[str, str, str], Awaitable[None]]


def classify_output(line: str) -> Optional[str]:
    """Map one line of encoder output to a diagnostic kind, if it matches one."""
    for kind, needles in DIAGNOSTIC_PATTERNS.items():
        if any(needle in line for needle in needles):
            return kind
    return None


class EncoderEventType(str, Enum):
    EXITED = "exited"
    FAILED = "failed"


@dataclass
class EncoderEvent:
    slot_key: str
    job_id: str
    event_type: EncoderEventType
    video_id: Optional[int] = None
    return_code: Optional[int] = None
    error: Optional[str] = None
    requested: bool = False   # process was stopped on request
    connected: bool = False   # encoder reported a successful connection

    @property
    def failed(self) -> bool:
        return self.event_type == EncoderEventType.FAILED or (
            self.return_code is not None and self.return_code != 0 and not self.requested
        )


@dataclass
class EncodeJob:
    id: str
    slot_key: str
    argv: List[str]
    process: asyncio.subprocess.Process
    video_id: Optional[int] = None
    started_at: float = field(default_factory=time.time)
    stop_requested: bool = False
    connected: bool = False
    readers: List[asyncio.Task] = field(default_factory=list)
    watcher: Optional[asyncio.Task] = None

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid


class ProcessSupervisor:
    """Slot-keyed encoder process registry."""

    def __init__(
        self,
        binary: str = "ffmpeg",
        stop_timeout: float = 5.0,
        on_diagnostic: Optional[DiagnosticCallback] = None,
    ):
        self._binary = binary
        self._stop_timeout = stop_timeout
        self.on_diagnostic = on_diagnostic
        self._jobs: Dict[str, EncodeJob] = {}
        # Watchers of processes signalled but not yet reaped
        self._stopping: Set[asyncio.Task] = set()
        self._lock = asyncio.Lock()
        self.events: asyncio.Queue[EncoderEvent] = asyncio.Queue()

    # ── Public API ───────────────────────────────────────────────────

    async def start(
        self,
        slot_key: str,
        argv: List[str],
        video_id: Optional[int] = None,
    ) -> Optional[EncodeJob]:
        """Spawn the encoder for a slot, replacing any process already there.

        Returns the job, or None when the process could not be launched
        (a FAILED event is published in that case).
        """
        async with self._lock:
            existing = self._jobs.pop(slot_key, None)
            if existing:
                logger.info(f"Replacing encoder in slot {slot_key} (pid={existing.pid})")
                await self._terminate(existing, wait=True)

            job_id = str(uuid.uuid4())
            logger.info(f"Starting encoder [{slot_key}]: {self._binary} {' '.join(argv)}")
            try:
                process = await asyncio.create_subprocess_exec(
                    self._binary, *argv,
                    stdin=DEVNULL,
                    stdout=PIPE,
                    stderr=PIPE,
                )
            except OSError as e:
                logger.error(f"Encoder launch failed [{slot_key}]: {e}")
                ENCODER_EXITS.labels(outcome="launch_error").inc()
                await self.events.put(EncoderEvent(
                    slot_key=slot_key,
                    job_id=job_id,
                    event_type=EncoderEventType.FAILED,
                    video_id=video_id,
                    error=str(e),
                ))
                return None

            job = EncodeJob(
                id=job_id,
                slot_key=slot_key,
                argv=list(argv),
                process=process,
                video_id=video_id,
            )
            job.readers = [
                asyncio.create_task(self._drain(job, process.stdout, "stdout")),
                asyncio.create_task(self._drain(job, process.stderr, "stderr")),
            ]
            job.watcher = asyncio.create_task(self._watch(job))
            self._jobs[slot_key] = job
            ENCODER_STARTS.inc()
            logger.info(f"Encoder started [{slot_key}] pid={process.pid}")
            return job

    async def stop(self, slot_key: str) -> bool:
        """Send the termination signal to a slot's process. Does not wait for exit."""
        async with self._lock:
            job = self._jobs.pop(slot_key, None)
            if not job:
                return False
            await self._terminate(job, wait=False)
            logger.info(f"Stopped stream: {slot_key}")
            return True

    async def stop_all(self) -> None:
        for slot_key in list(self._jobs):
            await self.stop(slot_key)

    async def wait_all(self, timeout: Optional[float] = None) -> None:
        """Wait for every watched process (including stopped ones) to be reaped."""
        watchers = [t for t in self._watchers if not t.done()]
        if watchers:
            await asyncio.wait(watchers, timeout=timeout or self._stop_timeout)

    def is_active(self, slot_key: str) -> bool:
        return slot_key in self._jobs

    def list_active(self) -> List[str]:
        return list(self._jobs)

    def current_job_id(self, slot_key: str) -> Optional[str]:
        job = self._jobs.get(slot_key)
        return job.id if job else None

    def get_job(self, slot_key: str) -> Optional[EncodeJob]:
        return self._jobs.get(slot_key)

    # ── Internals ────────────────────────────────────────────────────

    @property
    def _watchers(self) -> List[asyncio.Task]:
        return list(self._stopping) + [j.watcher for j in self._jobs.values() if j.watcher]

    async def _terminate(self, job: EncodeJob, wait: bool) -> None:
        job.stop_requested = True
        if job.watcher:
            self._stopping.add(job.watcher)
        if job.process.returncode is None:
            try:
                job.process.terminate()
            except ProcessLookupError:
                pass
            except OSError as e:
                logger.warning(f"SIGTERM failed for pid={job.pid} ({e}), killing")
                self._kill(job)

        if not wait:
            return

        try:
            await asyncio.wait_for(job.process.wait(), timeout=self._stop_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                f"Encoder pid={job.pid} still running {self._stop_timeout}s after SIGTERM, killing"
            )
            self._kill(job)
            await job.process.wait()

    @staticmethod
    def _kill(job: EncodeJob) -> None:
        try:
            job.process.kill()
        except ProcessLookupError:
            pass

    async def _drain(self, job: EncodeJob, stream: Optional[asyncio.StreamReader], name: str):
        """Consume one output pipe chunk by chunk (ffmpeg progress uses bare CR)."""
        if stream is None:
            return
        pending = ""
        try:
            while True:
                chunk = await stream.read(4096)
                if not chunk:
                    break
                pending += chunk.decode(errors="replace")
                lines = _LINE_SPLIT.split(pending)
                pending = lines.pop()
                for line in lines:
                    await self._handle_line(job, name, line)
            if pending:
                await self._handle_line(job, name, pending)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Encoder {name} reader error [{job.slot_key}]: {e}")

    async def _handle_line(self, job: EncodeJob, name: str, line: str):
        line = line.strip()
        if not line:
            return
        logger.debug(f"ffmpeg {name} [{job.slot_key}]: {line}")

        kind = classify_output(line)
        if not kind:
            return
        ENCODER_DIAGNOSTICS.labels(kind=kind).inc()
        if kind == "connected":
            if job.connected:
                return
            job.connected = True
            logger.info(f"[{job.slot_key}] {DIAGNOSTIC_HINTS[kind]}")
        else:
            logger.warning(f"[{job.slot_key}] {DIAGNOSTIC_HINTS[kind]}: {line}")

        if self.on_diagnostic:
            try:
                await self.on_diagnostic(job.slot_key, kind, line)
            except Exception as e:
                logger.debug(f"Diagnostic listener error: {e}")

    async def _watch(self, job: EncodeJob):
        """Wait for exit, then publish an EXITED event."""
        return_code = await job.process.wait()
        if job.readers:
            await asyncio.gather(*job.readers, return_exceptions=True)

        async with self._lock:
            if self._jobs.get(job.slot_key) is job:
                del self._jobs[job.slot_key]
            self._stopping.discard(job.watcher)

        if job.stop_requested:
            outcome = "stopped"
        elif return_code == 0:
            outcome = "clean"
        else:
            outcome = "failed"
        ENCODER_EXITS.labels(outcome=outcome).inc()
        logger.info(
            f"Encoder exited [{job.slot_key}] pid={job.pid} code={return_code} "
            f"after {time.time() - job.started_at:.1f}s ({outcome})"
        )

        await self.events.put(EncoderEvent(
            slot_key=job.slot_key,
            job_id=job.id,
            event_type=EncoderEventType.EXITED,
            video_id=job.video_id,
            return_code=return_code,
            requested=job.stop_requested,
            connected=job.connected,
        ))
