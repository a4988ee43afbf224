import asyncio
import json

import httpx
import pytest

from services.lobby_monitor.dispatcher import AnalysisDispatcher
from services.lobby_monitor.errors import UnknownScenarioError
from services.lobby_monitor.monitor import LobbyMonitor
from services.lobby_monitor.normalizer import FAILURE_CAPTION
from services.lobby_monitor.stream_supervisor import ProcessSupervisor

from conftest import FakeExtractor, FakeSpawner, chat_reply, settle

URL = "rtsp://10.0.0.9:554/live"

LOBBY_REPLY = json.dumps({
    "total_persons": 2, "persons_near_doors": 1, "persons_at_reception": 1, "persons_in_other_areas": 0,
    "scene_description": '<span class="ai-caption">Two visitors arrive</span>\n\n'
                         "**📊 Overall Status:**\nNormal.",
})


class FakeBus:
    def __init__(self, fail=False):
        self.connected = True
        self.fail = fail
        self.events = []

    async def connect(self):
        return self

    async def close(self):
        self.connected = False

    async def xadd_json(self, stream, payload):
        if self.fail:
            raise ConnectionError("redis went away")
        self.events.append((stream, payload))
        return "1-0"


def make_monitor(settings, handler=None, extractor=None, bus=None):
    handler = handler or (lambda request: chat_reply(LOBBY_REPLY))
    dispatcher = AnalysisDispatcher(settings.cloud, settings.edge, mode=settings.analysis.mode,
                                    transport=httpx.MockTransport(handler))
    supervisor = ProcessSupervisor(settings.stream.stream_dir, restart_delay=0, spawn=FakeSpawner())
    return LobbyMonitor(settings, supervisor=supervisor, extractor=extractor or FakeExtractor(),
                        dispatcher=dispatcher, bus=bus)


async def run_cycles(monitor, n):
    await monitor.start(URL)
    await asyncio.sleep(0)
    await monitor.capture.drain()
    for _ in range(n - 1):
        await monitor.capture.run_cycle()


def test_eleven_cycles_keep_the_ten_newest(settings):
    extractor = FakeExtractor()

    async def scenario():
        m = make_monitor(settings, extractor=extractor)
        await run_cycles(m, 11)
        frames = m.frames()
        m.stop()
        await settle()
        return frames

    frames = asyncio.run(scenario())
    ids = [f.id for f in frames]
    assert len(frames) == 10
    assert ids == sorted(ids, reverse=True)
    assert frames[0].filename == extractor.paths[-1].name
    assert extractor.paths[0].name not in {f.filename for f in frames}
    assert not extractor.paths[0].exists()
    assert frames[0].analysis.total_persons == 2
    assert frames[0].analysis.caption == "Two visitors arrive"
    assert frames[0].scenario_id == "lobby"
    assert frames[0].mode == "cloud"


def test_switching_scenario_clears_frames(settings):
    async def scenario():
        m = make_monitor(settings)
        await run_cycles(m, 3)
        before = len(m.frames())
        m.switch_scenario("safety")
        after = m.frames()
        again = m.switch_scenario("safety")
        m.stop()
        await settle()
        return m, before, after, again

    m, before, after, again = asyncio.run(scenario())
    assert before == 3
    assert after == []
    assert again.id == "safety"
    assert m.current_scenario().id == "safety"
    assert [s["id"] for s in m.list_scenarios() if s["active"]] == ["safety"]


def test_unknown_scenario_is_rejected(settings):
    m = make_monitor(settings)
    with pytest.raises(UnknownScenarioError):
        m.switch_scenario("parking")
    assert m.current_scenario().id == "lobby"


def test_result_for_superseded_scenario_is_discarded(settings):
    extractor = FakeExtractor()
    holder = {}

    def handler(request):
        holder["monitor"].switch_scenario("safety")
        return chat_reply(LOBBY_REPLY)

    async def scenario():
        m = make_monitor(settings, handler=handler, extractor=extractor)
        holder["monitor"] = m
        await run_cycles(m, 1)
        frames = m.frames()
        m.stop()
        await settle()
        return frames

    assert asyncio.run(scenario()) == []
    assert not extractor.paths[0].exists()


def test_failed_analysis_is_kept_as_zero_count_frame(settings):
    unconfigured = settings.model_copy(update={"cloud": settings.cloud.model_copy(update={"api_key": None})})

    async def scenario():
        m = make_monitor(unconfigured)
        await run_cycles(m, 1)
        frames = m.frames()
        m.stop()
        await settle()
        return frames

    frames = asyncio.run(scenario())
    assert len(frames) == 1
    a = frames[0].analysis
    assert a.status == "not_configured"
    assert a.caption == FAILURE_CAPTION
    assert a.total_persons == 0
    assert "AZURE_OPENAI_API_KEY" in a.error


def test_failed_analysis_can_be_discarded(settings):
    settings.analysis.keep_failed_frames = False
    extractor = FakeExtractor()

    async def scenario():
        m = make_monitor(settings, handler=lambda request: httpx.Response(502), extractor=extractor)
        await run_cycles(m, 1)
        frames = m.frames()
        m.stop()
        await settle()
        return frames

    assert asyncio.run(scenario()) == []
    assert not extractor.paths[0].exists()


def test_analyzed_frames_are_published(settings):
    bus = FakeBus()

    async def scenario():
        m = make_monitor(settings, bus=bus)
        await run_cycles(m, 1)
        m.stop()
        await settle()

    asyncio.run(scenario())
    stream, event = bus.events[0]
    assert stream == "frames.analyzed"
    assert event["event"] == "frame.analyzed"
    assert event["total_persons"] == 2
    assert event["scenario"] == "lobby"


def test_publish_failure_does_not_lose_the_frame(settings):
    async def scenario():
        m = make_monitor(settings, bus=FakeBus(fail=True))
        await run_cycles(m, 1)
        frames = m.frames()
        m.stop()
        await settle()
        return frames

    assert len(asyncio.run(scenario())) == 1


def test_status_reports_every_component(settings):
    async def scenario():
        m = make_monitor(settings)
        await run_cycles(m, 2)
        status = m.status()
        m.stop()
        await settle()
        return status

    status = asyncio.run(scenario())
    assert status["stream"]["is_running"] is True
    assert status["capture"]["is_capturing"] is True
    assert status["capture"]["frame_count"] == 2
    assert status["capture"]["scenario"] == "lobby"
    assert status["model"]["mode"] == "cloud"
    assert status["model"]["cloud_configured"] is True


def test_status_in_edge_mode_refreshes_health_in_background(settings):
    async def scenario():
        m = make_monitor(settings, handler=lambda request: httpx.Response(200))
        m.set_mode("edge")
        await settle()
        m.dispatcher.edge_healthy = None
        status = m.status()
        await settle()
        return m, status

    m, status = asyncio.run(scenario())
    assert status["model"]["mode"] == "edge"
    assert status["model"]["edge_healthy"] is None
    assert m.dispatcher.edge_healthy is True


def test_stop_reports_both_components(settings):
    async def scenario():
        m = make_monitor(settings)
        await m.start(URL)
        result = m.stop()
        await settle()
        return m, result

    m, result = asyncio.run(scenario())
    assert result["stream"]["success"] is True
    assert result["capture"]["success"] is True
    assert not m.capture.is_capturing
