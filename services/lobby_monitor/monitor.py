# services/lobby_monitor/monitor.py
from __future__ import annotations
import asyncio
from typing import Any, Dict, List, Optional, Set

from common.bus import EventBus
from common.logging import get_logger
from common.schemas import AnalyzedFrame
from services.lobby_monitor.dispatcher import AnalysisDispatcher, AnalysisMode
from services.lobby_monitor.frame_capture import CaptureScheduler, FrameExtractor
from services.lobby_monitor.frame_store import FrameStore
from services.lobby_monitor.normalizer import ResponseNormalizer
from services.lobby_monitor.pipeline import FramePipeline
from services.lobby_monitor.scenarios import ScenarioConfig, ScenarioRegistry
from services.lobby_monitor.settings import Settings
from services.lobby_monitor.stream_supervisor import ProcessSupervisor

log = get_logger("lobby_monitor")

class LobbyMonitor:
    """Composition root: builds every component from Settings and exposes the operations the API needs."""

    def __init__(self, settings: Settings, *, supervisor: Optional[ProcessSupervisor] = None,
                 extractor: Optional[FrameExtractor] = None, dispatcher: Optional[AnalysisDispatcher] = None,
                 scenarios: Optional[ScenarioRegistry] = None, bus: Optional[EventBus] = None):
        self.settings = settings
        s = settings

        self.supervisor = supervisor or ProcessSupervisor(
            stream_dir=s.stream.stream_dir,
            ffmpeg_bin=s.stream.ffmpeg_bin,
            playlist_name=s.stream.playlist_name,
            restart_delay=s.stream.restart_delay_sec,
            max_restart_attempts=s.stream.max_restart_attempts,
            hls_time=s.stream.hls_time,
            hls_list_size=s.stream.hls_list_size,
        )
        self.scenarios = scenarios or ScenarioRegistry.from_file(s.analysis.scenarios_path,
                                                                  s.analysis.default_scenario)
        self.dispatcher = dispatcher or AnalysisDispatcher(s.cloud, s.edge, mode=s.analysis.mode)
        self.store = FrameStore(max_frames=s.analysis.max_frames)
        self.normalizer = ResponseNormalizer()
        if bus is None and s.runtime.redis_url:
            bus = EventBus(s.runtime.redis_url)
        self.bus = bus
        self.pipeline = FramePipeline(
            self.dispatcher, self.normalizer, self.store, self.scenarios,
            keep_failed_frames=s.analysis.keep_failed_frames,
            bus=self.bus, stream_out=s.runtime.stream_analyzed,
        )
        self.capture = CaptureScheduler(
            extractor or FrameExtractor(s.capture.ffmpeg_bin, s.capture.quality, s.capture.timeout_sec),
            on_frame=self.pipeline.handle_frame,
            capture_dir=s.capture.capture_dir,
            interval_ms=s.capture.interval_ms,
            max_consecutive_failures=s.capture.max_consecutive_failures,
        )
        self._background: Set[asyncio.Task] = set()

    # ----------------- lifecycle -----------------
    async def startup(self) -> None:
        self.settings.stream.stream_dir.mkdir(parents=True, exist_ok=True)
        self.settings.capture.capture_dir.mkdir(parents=True, exist_ok=True)
        if self.bus is not None:
            try:
                await self.bus.connect()
            except Exception as e:
                log.error(f"Event publication disabled: {e}")
        log.info(f"Lobby monitor ready: mode={self.dispatcher.mode.value} scenario={self.scenarios.active.id} "
                 f"max_frames={self.store.max_frames}")

    async def shutdown(self) -> None:
        self.capture.stop()
        await self.supervisor.close()
        if self.bus is not None:
            await self.bus.close()

    # ----------------- pipeline control -----------------
    async def start(self, source_url: str) -> Dict[str, Any]:
        stream = await self.supervisor.start(source_url)
        capture = await self.capture.start(source_url, self.supervisor)
        return {"stream": stream, "capture": capture}

    def stop(self) -> Dict[str, Any]:
        return {"stream": self.supervisor.stop(), "capture": self.capture.stop()}

    def status(self) -> Dict[str, Any]:
        """Best-known state; never waits on the network."""
        if self.dispatcher.mode is AnalysisMode.EDGE:
            self._refresh_health_in_background()
        capture = self.capture.get_status()
        capture["frame_count"] = len(self.store)
        capture["scenario"] = self.scenarios.active.id
        return {
            "stream": self.supervisor.get_status(),
            "capture": capture,
            "model": self.mode_info(),
        }

    def _refresh_health_in_background(self) -> None:
        if self._background:
            return  # a probe is already running
        try:
            task = asyncio.get_running_loop().create_task(self.dispatcher.check_edge_health())
        except RuntimeError:
            return
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # ----------------- frames -----------------
    def frames(self) -> List[AnalyzedFrame]:
        return self.store.list()

    def frame(self, frame_id: int) -> Optional[AnalyzedFrame]:
        return self.store.get(frame_id)

    # ----------------- scenarios -----------------
    def list_scenarios(self) -> List[Dict[str, Any]]:
        return self.scenarios.list()

    def current_scenario(self) -> ScenarioConfig:
        return self.scenarios.active

    def switch_scenario(self, scenario_id: str) -> ScenarioConfig:
        scenario = self.scenarios.switch(scenario_id)
        self.store.clear()
        return scenario

    # ----------------- model mode -----------------
    def set_mode(self, mode: str, endpoint_url: Optional[str] = None) -> Dict[str, Any]:
        self.dispatcher.set_mode(mode, endpoint_url)
        if self.dispatcher.mode is AnalysisMode.EDGE:
            self._refresh_health_in_background()
        return self.mode_info()

    def mode_info(self) -> Dict[str, Any]:
        d = self.dispatcher
        return {
            "mode": d.mode.value,
            "deployment_name": d.cloud.deployment,
            "cloud_configured": d.cloud.configured,
            "slm_url": d.edge.url,
            "edge_model": d.edge.model,
            "edge_healthy": d.edge_healthy,
            "edge_checked_at": d.edge_checked_at,
        }
