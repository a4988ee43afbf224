# services/lobby_monitor/settings.py
from __future__ import annotations
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field

REPO_ROOT = Path(__file__).resolve().parents[2]
DEFAULT_CONFIG_PATH = REPO_ROOT / "config" / "config.yaml"

DEFAULT_REFUSAL_PHRASES = [
    "cannot view images",
    "can't view images",
    "unable to view images",
    "not able to view images",
    "cannot see images",
    "can't see images",
    "unable to see images",
    "cannot process images",
    "unable to process images",
    "don't have the ability to view",
    "do not have the ability to view",
    "text-based model",
    "text-based ai",
    "as a text model",
]

class RuntimeSettings(BaseModel):
    log_level: str = "INFO"
    redis_url: Optional[str] = None
    stream_analyzed: str = "frames.analyzed"

class ServerSettings(BaseModel):
    host: str = "0.0.0.0"
    port: int = 3001
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])

class StreamSettings(BaseModel):
    ffmpeg_bin: str = "ffmpeg"
    stream_dir: Path = REPO_ROOT / "stream"
    playlist_name: str = "stream.m3u8"
    restart_delay_sec: float = 5.0
    max_restart_attempts: int = 10
    hls_time: float = 0.5
    hls_list_size: int = 6

class CaptureSettings(BaseModel):
    ffmpeg_bin: str = "ffmpeg"
    capture_dir: Path = REPO_ROOT / "captures"
    interval_ms: int = 60000
    max_consecutive_failures: int = 5
    timeout_sec: float = 30.0
    quality: int = 2

class AnalysisSettings(BaseModel):
    mode: str = "cloud"
    max_frames: int = 10
    keep_failed_frames: bool = True
    scenarios_path: Path = REPO_ROOT / "config" / "scenarios.yaml"
    default_scenario: Optional[str] = None

class CloudSettings(BaseModel):
    endpoint: Optional[str] = None
    api_key: Optional[str] = None
    deployment: str = "gpt-4o"
    api_version: str = "2024-02-15-preview"
    max_tokens: int = 800
    temperature: float = 0.1
    timeout_sec: float = 60.0

    @property
    def configured(self) -> bool:
        return bool(self.endpoint and self.api_key)

class EdgeSettings(BaseModel):
    url: str = "http://127.0.0.1:8080"
    model: str = "phi-4-multimodal"
    health_path: str = "/health"
    chat_path: str = "/v1/chat/completions"
    health_timeout_sec: float = 5.0
    timeout_sec: float = 120.0
    max_tokens: int = 600
    temperature: float = 0.2
    refusal_phrases: List[str] = Field(default_factory=lambda: list(DEFAULT_REFUSAL_PHRASES))

class Settings(BaseModel):
    runtime: RuntimeSettings = Field(default_factory=RuntimeSettings)
    server: ServerSettings = Field(default_factory=ServerSettings)
    stream: StreamSettings = Field(default_factory=StreamSettings)
    capture: CaptureSettings = Field(default_factory=CaptureSettings)
    analysis: AnalysisSettings = Field(default_factory=AnalysisSettings)
    cloud: CloudSettings = Field(default_factory=CloudSettings)
    edge: EdgeSettings = Field(default_factory=EdgeSettings)

def _resolve(p: Any) -> Path:
    path = Path(str(p))
    return path if path.is_absolute() else (REPO_ROOT / path)

def _env_overrides(cfg: Dict[str, Any]) -> None:
    def put(section: str, key: str, env: str, cast=str):
        val = os.getenv(env)
        if val is None or val == "":
            return
        cfg.setdefault(section, {})
        cfg[section][key] = cast(val)

    put("cloud", "endpoint", "AZURE_OPENAI_ENDPOINT")
    put("cloud", "api_key", "AZURE_OPENAI_API_KEY")
    put("cloud", "deployment", "AZURE_OPENAI_DEPLOYMENT_NAME")
    put("analysis", "max_frames", "MAX_ANALYZED_FRAMES", int)
    put("analysis", "mode", "MODEL_MODE")
    put("edge", "url", "SLM_URL")
    put("capture", "interval_ms", "CAPTURE_INTERVAL_MS", int)
    put("runtime", "redis_url", "REDIS_URL")
    put("runtime", "log_level", "LOG_LEVEL")
    put("server", "port", "PORT", int)

def load_settings(config_path: Optional[str] = None) -> Settings:
    """Read config/config.yaml (or $CONFIG_PATH), apply env overrides, validate."""
    path = Path(config_path or os.getenv("CONFIG_PATH") or DEFAULT_CONFIG_PATH)
    cfg: Dict[str, Any] = {}
    if path.exists():
        cfg = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    cfg = {k: (v or {}) for k, v in cfg.items() if isinstance(v, dict) or v is None}
    _env_overrides(cfg)

    stream = cfg.get("stream", {}) or {}
    capture = cfg.get("capture", {}) or {}
    analysis = cfg.get("analysis", {}) or {}
    if "stream_dir" in stream:
        stream["stream_dir"] = _resolve(stream["stream_dir"])
    if "capture_dir" in capture:
        capture["capture_dir"] = _resolve(capture["capture_dir"])
    if "scenarios_path" in analysis:
        analysis["scenarios_path"] = _resolve(analysis["scenarios_path"])

    origins = (cfg.get("server", {}) or {}).get("allowed_origins")
    if isinstance(origins, str):
        cfg["server"]["allowed_origins"] = [o.strip() for o in origins.split(",") if o.strip()]

    return Settings.model_validate(cfg)
