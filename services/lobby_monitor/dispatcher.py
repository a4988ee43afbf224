# services/lobby_monitor/dispatcher.py
from __future__ import annotations
import asyncio, base64, time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

import aiofiles
import httpx

from common.logging import get_logger
from services.lobby_monitor.errors import InvalidModeError
from services.lobby_monitor.scenarios import ScenarioConfig
from services.lobby_monitor.settings import CloudSettings, EdgeSettings

log = get_logger("dispatcher")

NOT_CONFIGURED_TEXT = (
    "Azure OpenAI is not configured. Please set AZURE_OPENAI_ENDPOINT and "
    "AZURE_OPENAI_API_KEY environment variables."
)

class AnalysisMode(str, Enum):
    CLOUD = "cloud"
    EDGE = "edge"

class DispatchStatus(str, Enum):
    OK = "ok"
    NOT_CONFIGURED = "not_configured"
    UNAVAILABLE = "unavailable"
    REFUSED = "refused"
    TIMED_OUT = "timed_out"
    TRANSPORT_ERROR = "transport_error"
    MALFORMED = "malformed"
    IMAGE_UNREADABLE = "image_unreadable"

@dataclass
class DispatchResult:
    status: DispatchStatus
    text: str
    mode: AnalysisMode
    attempts: int = 1
    elapsed_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.status is DispatchStatus.OK

# ----------------- helpers -----------------
async def _read_image_b64(path: Path) -> str:
    async with aiofiles.open(path, "rb") as f:
        data = await f.read()
    return base64.b64encode(data).decode("utf-8")

def _vision_messages(prompt: str, image_b64: str) -> list:
    return [{
        "role": "user",
        "content": [
            {"type": "text", "text": prompt},
            {"type": "image_url", "image_url": {"url": f"data:image/jpeg;base64,{image_b64}"}},
        ],
    }]

def _message_content(data: Any) -> str:
    """Text of an OpenAI-style (or Ollama-style) chat reply; '' when absent."""
    if not isinstance(data, dict):
        return ""
    choices = data.get("choices") or []
    if choices and isinstance(choices[0], dict):
        content = (choices[0].get("message") or {}).get("content")
        if isinstance(content, list):
            content = "".join(p.get("text", "") for p in content if isinstance(p, dict))
        return (content or "").strip()
    msg = data.get("message")
    if isinstance(msg, dict):
        return (msg.get("content") or "").strip()
    return (data.get("response") or "").strip()

def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()

# ----------------- dispatcher -----------------
class AnalysisDispatcher:
    """
    Sends one captured frame to the active backend and always returns a DispatchResult.
    Nothing here raises for backend trouble: callers inspect `result.status`.
    """

    def __init__(self, cloud: CloudSettings, edge: EdgeSettings, mode: str = "cloud",
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.cloud = cloud
        self.edge = edge
        self._mode = self._parse_mode(mode)
        self._transport = transport
        self.edge_healthy: Optional[bool] = None
        self.edge_checked_at: Optional[str] = None

    @property
    def mode(self) -> AnalysisMode:
        return self._mode

    @staticmethod
    def _parse_mode(mode: Any) -> AnalysisMode:
        if isinstance(mode, AnalysisMode):
            return mode
        try:
            return AnalysisMode(str(mode).strip().lower())
        except ValueError:
            raise InvalidModeError(mode) from None

    def set_mode(self, mode: Any, endpoint_url: Optional[str] = None) -> AnalysisMode:
        """Switch backend. Requests already in flight keep the settings they started with."""
        new_mode = self._parse_mode(mode)
        if endpoint_url:
            self.edge = self.edge.model_copy(update={"url": endpoint_url.rstrip("/")})
            self.edge_healthy = None
            self.edge_checked_at = None
        if new_mode is not self._mode:
            log.info(f"Analysis mode {self._mode.value} -> {new_mode.value}")
        self._mode = new_mode
        return new_mode

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self._transport)

    @staticmethod
    def is_refusal(text: str, phrases) -> bool:
        low = (text or "").lower().replace("’", "'")
        return any(p.lower() in low for p in phrases)

    async def analyze(self, file_path: Path, scenario: ScenarioConfig) -> DispatchResult:
        t0 = time.monotonic()
        mode, cloud, edge = self._mode, self.cloud, self.edge

        if mode is AnalysisMode.CLOUD and not cloud.configured:
            log.warning("Azure OpenAI client not configured")
            return DispatchResult(DispatchStatus.NOT_CONFIGURED, NOT_CONFIGURED_TEXT, mode)

        try:
            image_b64 = await _read_image_b64(Path(file_path))
        except OSError as e:
            log.error(f"Cannot read frame {file_path}: {e}")
            return DispatchResult(DispatchStatus.IMAGE_UNREADABLE,
                                  f"Error analyzing frame: cannot read image ({e})", mode)

        prompt = scenario.prompt_for(edge=(mode is AnalysisMode.EDGE))
        if mode is AnalysisMode.CLOUD:
            result = await self._analyze_cloud(image_b64, prompt, cloud)
        else:
            result = await self._analyze_edge(image_b64, prompt, edge)

        result.elapsed_ms = int((time.monotonic() - t0) * 1000)
        if result.ok:
            log.info(f"[analyzed] mode={mode.value} attempts={result.attempts} elapsed_ms={result.elapsed_ms}")
        else:
            log.error(f"[analysis failed] mode={mode.value} status={result.status.value} {result.text[:200]}")
        return result

    # ----------------- cloud -----------------
    async def _analyze_cloud(self, image_b64: str, prompt: str, cfg: CloudSettings) -> DispatchResult:
        mode = AnalysisMode.CLOUD
        url = f"{cfg.endpoint.rstrip('/')}/openai/deployments/{cfg.deployment}/chat/completions"
        payload = {
            "messages": _vision_messages(prompt, image_b64),
            "max_tokens": cfg.max_tokens,
            "temperature": cfg.temperature,
        }
        try:
            async with self._client(cfg.timeout_sec) as client:
                resp = await asyncio.wait_for(
                    client.post(url, params={"api-version": cfg.api_version},
                                headers={"api-key": cfg.api_key}, json=payload),
                    timeout=cfg.timeout_sec,
                )
            resp.raise_for_status()
            data = resp.json()
        except (asyncio.TimeoutError, httpx.TimeoutException):
            return DispatchResult(DispatchStatus.TIMED_OUT,
                                  f"Error analyzing frame: cloud request timed out after {cfg.timeout_sec:g}s", mode)
        except httpx.HTTPStatusError as e:
            return DispatchResult(DispatchStatus.TRANSPORT_ERROR,
                                  f"Error analyzing frame: cloud backend returned HTTP {e.response.status_code}", mode)
        except httpx.HTTPError as e:
            return DispatchResult(DispatchStatus.TRANSPORT_ERROR, f"Error analyzing frame: {e}", mode)
        except ValueError:
            return DispatchResult(DispatchStatus.MALFORMED,
                                  "Error analyzing frame: cloud backend reply was not JSON", mode)

        content = _message_content(data)
        if not content:
            return DispatchResult(DispatchStatus.MALFORMED,
                                  "Error analyzing frame: cloud backend returned no content", mode)
        return DispatchResult(DispatchStatus.OK, content, mode)

    # ----------------- edge -----------------
    async def check_edge_health(self, edge: Optional[EdgeSettings] = None) -> bool:
        edge = edge or self.edge
        url = f"{edge.url.rstrip('/')}{edge.health_path}"
        try:
            async with self._client(edge.health_timeout_sec) as client:
                resp = await asyncio.wait_for(client.get(url), timeout=edge.health_timeout_sec)
            healthy = resp.is_success
            if not healthy:
                log.warning(f"Edge health check {url} returned HTTP {resp.status_code}")
        except (asyncio.TimeoutError, httpx.HTTPError) as e:
            log.warning(f"Edge health check {url} failed: {e!r}")
            healthy = False
        self.edge_healthy = healthy
        self.edge_checked_at = _now_iso()
        return healthy

    async def _edge_chat(self, image_b64: str, prompt: str, edge: EdgeSettings) -> DispatchResult:
        mode = AnalysisMode.EDGE
        url = f"{edge.url.rstrip('/')}{edge.chat_path}"
        payload: Dict[str, Any] = {
            "model": edge.model,
            "messages": _vision_messages(prompt, image_b64),
            "max_tokens": edge.max_tokens,
            "temperature": edge.temperature,
            "stream": False,
        }
        try:
            async with self._client(edge.timeout_sec) as client:
                resp = await asyncio.wait_for(client.post(url, json=payload), timeout=edge.timeout_sec)
            resp.raise_for_status()
            data = resp.json()
        except (asyncio.TimeoutError, httpx.TimeoutException):
            return DispatchResult(DispatchStatus.TIMED_OUT,
                                  f"Error analyzing frame: edge model timed out after {edge.timeout_sec:g}s", mode)
        except httpx.HTTPStatusError as e:
            return DispatchResult(DispatchStatus.TRANSPORT_ERROR,
                                  f"Error analyzing frame: edge model returned HTTP {e.response.status_code}", mode)
        except httpx.HTTPError as e:
            return DispatchResult(DispatchStatus.TRANSPORT_ERROR, f"Error analyzing frame: {e}", mode)
        except ValueError:
            return DispatchResult(DispatchStatus.MALFORMED,
                                  "Error analyzing frame: edge model reply was not JSON", mode)

        content = _message_content(data)
        if not content:
            return DispatchResult(DispatchStatus.MALFORMED,
                                  "Error analyzing frame: edge model returned no content", mode)
        return DispatchResult(DispatchStatus.OK, content, mode)

    async def _analyze_edge(self, image_b64: str, prompt: str, edge: EdgeSettings) -> DispatchResult:
        # health probe first; skip inference entirely when the server is down
        if not await self.check_edge_health(edge):
            return DispatchResult(DispatchStatus.UNAVAILABLE,
                                  f"Error analyzing frame: edge model unavailable at {edge.url}",
                                  AnalysisMode.EDGE, attempts=0)

        result = None
        for attempt in range(1, 3):
            result = await self._edge_chat(image_b64, prompt, edge)
            result.attempts = attempt
            if not result.ok or not self.is_refusal(result.text, edge.refusal_phrases):
                return result
            log.warning(f"Edge model refused to analyze image (attempt {attempt}/2): {result.text[:120]}")

        return DispatchResult(DispatchStatus.REFUSED,
                              "Error analyzing frame: edge model refused to analyze the image after retry",
                              AnalysisMode.EDGE, attempts=result.attempts)
