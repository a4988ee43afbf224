import asyncio
import os
from pathlib import Path

os.environ.setdefault("LOG_TO_FILE", "0")

import httpx
import pytest

from services.lobby_monitor.frame_capture import ExtractResult
from services.lobby_monitor.scenarios import ScenarioRegistry
from services.lobby_monitor.settings import REPO_ROOT, Settings


class FakeProcess:
    """Stand-in for asyncio.subprocess.Process: real StreamReader stderr, exit on demand."""

    def __init__(self, stderr_lines=()):
        self.stderr = asyncio.StreamReader()
        for line in stderr_lines:
            self.stderr.feed_data(line.encode() + b"\n")
        self.returncode = None
        self.terminated = False
        self._exited = asyncio.Event()

    def emit(self, line: str) -> None:
        self.stderr.feed_data(line.encode() + b"\n")

    def feed(self, raw: bytes) -> None:
        self.stderr.feed_data(raw)

    def exit(self, code: int = 0) -> None:
        if self.returncode is not None:
            return
        self.returncode = code
        self.stderr.feed_eof()
        self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode

    def terminate(self) -> None:
        self.terminated = True
        self.exit(-15)

    def kill(self) -> None:
        self.exit(-9)


class FakeSpawner:
    """Replacement for asyncio.create_subprocess_exec recording every launch."""

    def __init__(self, exit_code=None, stderr_lines=(), error=None):
        self.exit_code = exit_code      # when set, each process exits right after spawning
        self.stderr_lines = stderr_lines
        self.error = error
        self.calls = []
        self.processes = []

    async def __call__(self, *args, **kwargs):
        self.calls.append(list(args))
        if self.error is not None:
            raise self.error
        proc = FakeProcess(self.stderr_lines)
        self.processes.append(proc)
        if self.exit_code is not None:
            asyncio.get_running_loop().call_soon(proc.exit, self.exit_code)
        return proc


class FakeExtractor:
    """Frame extractor that writes a small JPEG instead of running ffmpeg."""

    def __init__(self, outcomes=()):
        self.outcomes = list(outcomes)
        self.paths = []

    async def extract(self, source_url, out_path):
        ok = self.outcomes.pop(0) if self.outcomes else True
        self.paths.append(Path(out_path))
        if ok:
            Path(out_path).write_bytes(b"\xff\xd8\xff\xe0fake-jpeg\xff\xd9")
            return ExtractResult(ok=True, returncode=0)
        return ExtractResult(ok=False, returncode=1, error="Connection refused")


async def settle(rounds: int = 50) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


def chat_reply(text: str) -> httpx.Response:
    return httpx.Response(200, json={"choices": [{"message": {"role": "assistant", "content": text}}]})


@pytest.fixture
def registry():
    return ScenarioRegistry.from_file(REPO_ROOT / "config" / "scenarios.yaml")


@pytest.fixture
def lobby(registry):
    return registry.get("lobby")


@pytest.fixture
def safety(registry):
    return registry.get("safety")


@pytest.fixture
def frame_file(tmp_path):
    p = tmp_path / "frame_1.jpg"
    p.write_bytes(b"\xff\xd8\xff\xe0fake-jpeg\xff\xd9")
    return p


@pytest.fixture
def settings(tmp_path):
    return Settings.model_validate({
        "stream": {"stream_dir": tmp_path / "stream", "restart_delay_sec": 0},
        "capture": {"capture_dir": tmp_path / "captures", "interval_ms": 60000},
        "analysis": {"max_frames": 10, "scenarios_path": REPO_ROOT / "config" / "scenarios.yaml"},
        "cloud": {"endpoint": "https://example.openai.azure.com", "api_key": "test-key"},
        "edge": {"url": "http://edge.local:8080"},
    })
