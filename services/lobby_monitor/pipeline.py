# services/lobby_monitor/pipeline.py
from __future__ import annotations
from pathlib import Path
from typing import Any, Dict, Optional

from common.bus import EventBus
from common.logging import get_logger
from common.schemas import AnalyzedFrame, FrameCaptured
from services.lobby_monitor.dispatcher import AnalysisDispatcher, AnalysisMode
from services.lobby_monitor.frame_store import FrameStore
from services.lobby_monitor.normalizer import ResponseNormalizer
from services.lobby_monitor.scenarios import ScenarioRegistry

log = get_logger("pipeline")

class FramePipeline:
    """Capture completion handler: dispatch -> normalize -> store -> publish."""

    def __init__(self, dispatcher: AnalysisDispatcher, normalizer: ResponseNormalizer, store: FrameStore,
                 scenarios: ScenarioRegistry, keep_failed_frames: bool = True,
                 bus: Optional[EventBus] = None, stream_out: str = "frames.analyzed"):
        self.dispatcher = dispatcher
        self.normalizer = normalizer
        self.store = store
        self.scenarios = scenarios
        self.keep_failed_frames = keep_failed_frames
        self.bus = bus
        self.stream_out = stream_out

    @staticmethod
    def _discard(frame: FrameCaptured, why: str) -> None:
        log.info(f"[discarded] frame={frame.id} ({why})")
        try:
            Path(frame.file_path).unlink(missing_ok=True)
        except OSError as e:
            log.warning(f"Could not delete {frame.file_path}: {e}")

    async def handle_frame(self, frame: FrameCaptured) -> Optional[AnalyzedFrame]:
        scenario = self.scenarios.active
        result = await self.dispatcher.analyze(Path(frame.file_path), scenario)
        edge = result.mode is AnalysisMode.EDGE

        if result.ok:
            analysis = self.normalizer.normalize(result.text, scenario, edge_mode=edge, timestamp=frame.id)
        elif self.keep_failed_frames:
            analysis = self.normalizer.failure(result.status.value, result.text, scenario,
                                               edge_mode=edge, timestamp=frame.id)
        else:
            self._discard(frame, f"analysis {result.status.value}")
            return None

        # results from a scenario that is no longer active are not comparable
        if self.scenarios.active.id != scenario.id:
            self._discard(frame, f"scenario changed from '{scenario.id}'")
            return None

        record = AnalyzedFrame(**frame.model_dump(exclude={"event"}), scenario_id=scenario.id,
                               mode=result.mode.value, analysis=analysis)
        self.store.push(record)
        log.info(f"Frame analyzed: id={record.id} parser={analysis.parser} status={analysis.status} "
                 f"persons={analysis.total_persons} alert={'yes' if analysis.alert_message else 'no'}")
        await self._publish(record)
        return record

    async def _publish(self, record: AnalyzedFrame) -> None:
        if self.bus is None or not self.bus.connected:
            return
        a = record.analysis
        event: Dict[str, Any] = {
            "event": record.event,
            "frame_id": record.id,
            "ts": record.captured_at,
            "path": record.url_path,
            "scenario": record.scenario_id,
            "mode": record.mode,
            "status": a.status,
            "total_persons": a.total_persons,
            "counts": a.counts,
            "caption": a.caption,
            "alert_message": a.alert_message,
        }
        try:
            await self.bus.xadd_json(self.stream_out, event)
        except Exception as e:
            log.error(f"Publishing frame {record.id} to {self.stream_out} failed: {e}")
