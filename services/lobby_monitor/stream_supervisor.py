# services/lobby_monitor/stream_supervisor.py
from __future__ import annotations
import asyncio, re
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from common.logging import get_logger, redact_url

log = get_logger("stream_supervisor")

ERROR_MARKERS = ("error",)
CONNECTION_MARKERS = ("connection",)
STDERR_CHUNK = 4096
_LINE_SPLIT_RE = re.compile(r"[\r\n]")  # ffmpeg progress lines end in \r only

class StreamState(str, Enum):
    IDLE = "idle"               # never started, or the transcoder ended cleanly
    RUNNING = "running"
    RESTARTING = "restarting"   # waiting out the restart delay
    DISABLED = "disabled"       # restart budget exhausted; needs a manual start
    STOPPED = "stopped"         # manual stop latched

class ProcessSupervisor:
    """
    Owns the RTSP -> HLS ffmpeg process.

    Exit handling:
      manual stop                       -> stopped, never restarted
      non-zero exit or stderr errors    -> restart after `restart_delay` (bounded)
      clean exit, no errors seen        -> idle
    """

    def __init__(self, stream_dir: Path, ffmpeg_bin: str = "ffmpeg", playlist_name: str = "stream.m3u8",
                 restart_delay: float = 5.0, max_restart_attempts: int = 10,
                 hls_time: float = 0.5, hls_list_size: int = 6,
                 spawn=asyncio.create_subprocess_exec):
        self.stream_dir = Path(stream_dir)
        self.ffmpeg_bin = ffmpeg_bin
        self.playlist_name = playlist_name
        self.restart_delay = restart_delay
        self.max_restart_attempts = max_restart_attempts
        self.hls_time = hls_time
        self.hls_list_size = hls_list_size
        self._spawn = spawn

        self.state = StreamState.IDLE
        self.source_url: Optional[str] = None
        self.restart_attempts = 0
        self.auto_restart = True
        self.had_error = False
        self.manual_stop = False
        self.last_exit_code: Optional[int] = None
        self._process = None
        self._monitor_task: Optional[asyncio.Task] = None
        self._restart_task: Optional[asyncio.Task] = None
        self._launch_lock = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        return self.state is StreamState.RUNNING

    @property
    def stream_url(self) -> str:
        return f"/stream/{self.playlist_name}"

    def command(self, source_url: str) -> List[str]:
        return [
            self.ffmpeg_bin,
            "-rtsp_transport", "tcp",
            "-fflags", "nobuffer",
            "-flags", "low_delay",
            "-i", source_url,
            "-c:v", "libx264",
            "-preset", "ultrafast",
            "-tune", "zerolatency",
            "-g", "30",
            "-keyint_min", "30",
            "-sc_threshold", "0",
            "-force_key_frames", "expr:gte(t,n_forced*0.5)",  # keyframe every 0.5s so segments cut cleanly
            "-max_delay", "0",
            "-c:a", "aac",
            "-b:a", "128k",
            "-f", "hls",
            "-hls_time", f"{self.hls_time:g}",
            "-hls_list_size", str(self.hls_list_size),
            "-hls_flags", "delete_segments+append_list+omit_endlist",
            "-hls_allow_cache", "0",
            "-hls_segment_filename", str(self.stream_dir / "segment%d.ts"),
            str(self.stream_dir / self.playlist_name),
        ]

    # ----------------- control -----------------
    async def start(self, source_url: str) -> Dict[str, Any]:
        # check and spawn under one lock so concurrent starts launch a single transcoder
        async with self._launch_lock:
            if self.is_running and self._process is not None:
                log.info("Stream is already running")
                return {"success": True, "message": "Stream is already running", "streamUrl": self.stream_url}

            self._cancel_restart()
            self.source_url = source_url
            self.auto_restart = True
            self.restart_attempts = 0
            self.manual_stop = False
            launched = await self._launch()
        if launched:
            return {"success": True, "message": "Stream started successfully", "streamUrl": self.stream_url}
        if self.manual_stop:
            return {"success": False, "message": "Stream stopped before launch", "state": self.state.value}
        return {"success": False, "message": "Failed to launch transcoder; retrying automatically",
                "state": self.state.value}

    def stop(self) -> Dict[str, Any]:
        self.manual_stop = True
        self.auto_restart = False
        had_pending = self._cancel_restart()

        proc, self._process = self._process, None
        if proc is None and not had_pending:
            return {"success": False, "message": "No stream is running"}

        if proc is not None and proc.returncode is None:
            try:
                proc.terminate()
            except ProcessLookupError:
                pass
        self.state = StreamState.STOPPED
        self.restart_attempts = 0
        self.had_error = False
        log.info("Stream stopped manually")
        return {"success": True, "message": "Stream stopped"}

    async def close(self, timeout: float = 5.0) -> None:
        """Stop and wait briefly for the transcoder to exit (service shutdown)."""
        proc = self._process
        self.stop()
        task = self._monitor_task
        if task is not None and not task.done():
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
            except asyncio.TimeoutError:
                if proc is not None and proc.returncode is None:
                    log.warning("Transcoder ignored SIGTERM; killing")
                    proc.kill()

    # ----------------- lifecycle -----------------
    async def _launch(self) -> bool:
        self.stream_dir.mkdir(parents=True, exist_ok=True)
        self.had_error = False  # reset for this attempt
        log.info(f"Starting FFmpeg stream for {redact_url(self.source_url)} (attempt {self.restart_attempts + 1})...")
        try:
            proc = await self._spawn(
                *self.command(self.source_url),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            log.error(f"FFmpeg error: {e}")
            self._process = None
            self.state = StreamState.IDLE
            self._on_exit(None, reason=f"spawn error: {e}")
            return False

        if self.manual_stop:
            # stop() arrived while the spawn was pending
            proc.terminate()
            return False

        self._process = proc
        self.state = StreamState.RUNNING
        self._monitor_task = asyncio.create_task(self._monitor(proc))
        log.info("Stream started successfully")
        return True

    async def _monitor(self, proc) -> None:
        if proc.stderr is not None:
            # read in chunks: progress output never ends in \n, so readline() would overrun its limit
            pending = ""
            while True:
                chunk = await proc.stderr.read(STDERR_CHUNK)
                if not chunk:
                    break
                lines = _LINE_SPLIT_RE.split(pending + chunk.decode(errors="ignore"))
                pending = lines.pop()[-STDERR_CHUNK:]
                for line in lines:
                    self._scan(proc, line)
            if pending:
                self._scan(proc, pending)
        code = await proc.wait()
        log.info(f"FFmpeg process exited with code {code}")
        if proc is not self._process:
            return  # stopped or replaced; its exit does not drive the state machine
        self._process = None
        self._on_exit(code)

    def _scan(self, proc, line: str) -> None:
        line = line.strip()
        low = line.lower()
        if any(m in low for m in ERROR_MARKERS):
            log.warning(f"FFmpeg: {line[:200]}")
            if proc is self._process:
                self.had_error = True
        elif any(m in low for m in CONNECTION_MARKERS):
            log.info(f"FFmpeg: {line[:200]}")

    def _on_exit(self, code: Optional[int], reason: Optional[str] = None) -> None:
        self.last_exit_code = code
        if self.manual_stop:
            self.state = StreamState.STOPPED
            log.info("Stream stopped manually")
            return

        failed = reason is not None or code != 0 or self.had_error
        if not failed:
            self.state = StreamState.IDLE
            log.info("Stream ended normally (no errors detected)")
            return

        if not self.auto_restart:
            self.state = StreamState.DISABLED
            return

        if self.restart_attempts < self.max_restart_attempts:
            self.restart_attempts += 1
            why = reason or (f"exit code {code}" if code != 0 else "streaming errors detected")
            log.warning(f"Stream disconnected ({why}). Attempting restart in {self.restart_delay:g} seconds... "
                        f"({self.restart_attempts}/{self.max_restart_attempts})")
            self.state = StreamState.RESTARTING
            self._restart_task = asyncio.create_task(self._restart_later())
        else:
            self.auto_restart = False
            self.state = StreamState.DISABLED
            log.error(f"Maximum restart attempts ({self.max_restart_attempts}) reached. "
                      "Please check the RTSP connection and restart manually.")

    async def _restart_later(self) -> None:
        await asyncio.sleep(self.restart_delay)
        async with self._launch_lock:
            self._restart_task = None
            if self.auto_restart and not self.manual_stop and self._process is None:
                log.info("Restarting stream...")
                await self._launch()

    def _cancel_restart(self) -> bool:
        task, self._restart_task = self._restart_task, None
        if task is not None and not task.done():
            task.cancel()
            return True
        return False

    def get_status(self) -> Dict[str, Any]:
        return {
            "is_running": self.is_running,
            "state": self.state.value,
            "stream_url": self.stream_url if self.is_running else None,
            "auto_restart_enabled": self.auto_restart,
            "restart_attempts": self.restart_attempts,
            "max_restart_attempts": self.max_restart_attempts,
            "source_url": redact_url(self.source_url),
            "had_error_since_last_start": self.had_error,
            "manual_stop_requested": self.manual_stop,
            "last_exit_code": self.last_exit_code,
        }
