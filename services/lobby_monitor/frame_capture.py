# services/lobby_monitor/frame_capture.py
from __future__ import annotations
import asyncio, time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from PIL import Image

from common.logging import get_logger, redact_url
from common.schemas import FrameCaptured

log = get_logger("frame_capture")

# ----------------- one-shot extractor -----------------
@dataclass
class ExtractResult:
    ok: bool
    returncode: Optional[int] = None
    error: str = ""

class FrameExtractor:
    """Pulls exactly one JPEG out of the RTSP source with a short-lived ffmpeg run."""

    def __init__(self, ffmpeg_bin: str = "ffmpeg", quality: int = 2, timeout_sec: float = 30.0,
                 spawn=asyncio.create_subprocess_exec):
        self.ffmpeg_bin = ffmpeg_bin
        self.quality = quality
        self.timeout_sec = timeout_sec
        self._spawn = spawn

    def command(self, source_url: str, out_path: Path) -> List[str]:
        return [
            self.ffmpeg_bin,
            "-rtsp_transport", "tcp",
            "-i", source_url,
            "-frames:v", "1",
            "-q:v", str(self.quality),
            "-y",
            str(out_path),
        ]

    async def extract(self, source_url: str, out_path: Path) -> ExtractResult:
        parts = self.command(source_url, out_path)
        try:
            proc = await self._spawn(
                *parts,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            return ExtractResult(ok=False, error=f"spawn failed: {e}")

        try:
            _, err = await asyncio.wait_for(proc.communicate(), timeout=self.timeout_sec)
        except asyncio.TimeoutError:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()
            return ExtractResult(ok=False, returncode=proc.returncode,
                                 error=f"timed out after {self.timeout_sec:g}s")

        # exit code alone is not trusted: the file must exist too
        if proc.returncode == 0 and Path(out_path).exists():
            return ExtractResult(ok=True, returncode=0)
        return ExtractResult(ok=False, returncode=proc.returncode,
                             error=(err or b"").decode(errors="ignore")[-500:])

# ----------------- scheduler -----------------
class CaptureState(str, Enum):
    IDLE = "idle"
    CAPTURING = "capturing"
    DISABLED = "disabled"

class CycleOutcome(str, Enum):
    CAPTURED = "captured"
    FAILED = "failed"
    SKIPPED = "skipped"

def _probe_size(path: Path):
    try:
        with Image.open(path) as img:
            return img.size
    except OSError as e:
        log.warning(f"Could not read dimensions of {path.name}: {e}")
        return None, None

FrameHandler = Callable[[FrameCaptured], Awaitable[Any]]

class CaptureScheduler:
    """
    Periodic capture: one frame right away, then one every `interval_ms`.
    Ticks do not wait for the previous frame's analysis, so cycles may overlap.
    `max_consecutive_failures` failed extractions in a row disable the scheduler.
    """

    def __init__(self, extractor: FrameExtractor, on_frame: FrameHandler, capture_dir: Path,
                 interval_ms: int = 60000, max_consecutive_failures: int = 5,
                 clock: Callable[[], float] = time.time):
        self.extractor = extractor
        self.on_frame = on_frame
        self.capture_dir = Path(capture_dir)
        self.interval_ms = interval_ms
        self.max_consecutive_failures = max_consecutive_failures
        self._clock = clock

        self.state = CaptureState.IDLE
        self.source_url: Optional[str] = None
        self.consecutive_failures = 0
        self.last_capture_at: Optional[str] = None
        self.disabled_reason: Optional[str] = None
        self._supervisor = None
        self._timer: Optional[asyncio.Task] = None
        self._cycles: Set[asyncio.Task] = set()
        self._last_id = 0

    @property
    def is_capturing(self) -> bool:
        return self.state is CaptureState.CAPTURING

    async def start(self, source_url: str, supervisor=None) -> Dict[str, Any]:
        if self.is_capturing:
            log.info("Frame capture is already running")
            return {"success": True, "message": "Frame capture is already running"}

        self.capture_dir.mkdir(parents=True, exist_ok=True)
        self.source_url = source_url
        self._supervisor = supervisor
        self.consecutive_failures = 0
        self.disabled_reason = None
        self.state = CaptureState.CAPTURING
        self._timer = asyncio.create_task(self._run())
        log.info(f"Frame capture started for {redact_url(source_url)} - every {self.interval_ms / 1000:g}s")
        return {"success": True, "message": "Frame capture started"}

    def stop(self) -> Dict[str, Any]:
        was_capturing = self.is_capturing
        self._cancel_timer()
        self.consecutive_failures = 0
        if not was_capturing:
            return {"success": False, "message": "No capture is running"}
        self.state = CaptureState.IDLE
        log.info("Frame capture stopped")
        return {"success": True, "message": "Frame capture stopped"}

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            if self._timer is not asyncio.current_task():
                self._timer.cancel()
            self._timer = None

    async def _run(self) -> None:
        # fixed period; a slow cycle never delays the next tick
        while self.is_capturing:
            task = asyncio.create_task(self.run_cycle())
            self._cycles.add(task)
            task.add_done_callback(self._cycles.discard)
            await asyncio.sleep(self.interval_ms / 1000)

    async def drain(self) -> None:
        """Wait for cycles already in flight."""
        while self._cycles:
            await asyncio.gather(*list(self._cycles), return_exceptions=True)

    def _next_id(self) -> int:
        frame_id = max(int(self._clock() * 1000), self._last_id + 1)
        self._last_id = frame_id
        return frame_id

    async def run_cycle(self) -> CycleOutcome:
        if not self.is_capturing or not self.source_url:
            return CycleOutcome.SKIPPED
        if self._supervisor is not None and not self._supervisor.is_running:
            log.debug("Live stream is down; skipping capture tick")
            return CycleOutcome.SKIPPED

        frame_id = self._next_id()
        filename = f"frame_{frame_id}.jpg"
        path = self.capture_dir / filename
        captured_at = datetime.fromtimestamp(frame_id / 1000, tz=timezone.utc).isoformat()
        log.info(f"Capturing frame at {captured_at}")

        result = await self.extractor.extract(self.source_url, path)
        if not result.ok:
            # ffmpeg may leave a partial JPEG behind
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                log.warning(f"Could not delete {path}: {e}")
            self._record_failure(result)
            return CycleOutcome.FAILED

        self.consecutive_failures = 0
        self.last_capture_at = captured_at
        width, height = _probe_size(path)
        frame = FrameCaptured(id=frame_id, filename=filename, file_path=str(path.resolve()),
                              url_path=f"/captures/{filename}", captured_at=captured_at,
                              width=width, height=height)
        log.info(f"Frame captured successfully: {filename}")
        try:
            await self.on_frame(frame)
        except Exception as e:
            log.exception(f"Frame handler failed for {filename}: {e}")
        return CycleOutcome.CAPTURED

    def _record_failure(self, result: ExtractResult) -> None:
        if not self.is_capturing:
            return
        self.consecutive_failures += 1
        log.error(f"Failed to capture frame. Exit code: {result.returncode} "
                  f"({self.consecutive_failures}/{self.max_consecutive_failures}) {result.error[:300]}")
        if self.consecutive_failures >= self.max_consecutive_failures:
            self._cancel_timer()
            self.state = CaptureState.DISABLED
            self.disabled_reason = f"{self.consecutive_failures} consecutive capture failures"
            log.error(f"Frame capture disabled after {self.consecutive_failures} consecutive failures")

    def get_status(self) -> Dict[str, Any]:
        return {
            "is_capturing": self.is_capturing,
            "state": self.state.value,
            "interval_ms": self.interval_ms,
            "consecutive_failures": self.consecutive_failures,
            "max_consecutive_failures": self.max_consecutive_failures,
            "source_url": redact_url(self.source_url),
            "last_capture_at": self.last_capture_at,
            "disabled_reason": self.disabled_reason,
        }
