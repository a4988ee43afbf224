from __future__ import annotations
from typing import Dict, Optional
from pydantic import BaseModel, Field

class FrameCaptured(BaseModel):
    event: str = "frame.captured"
    id: int                 # capture timestamp (ms), unique key
    filename: str
    file_path: str          # absolute path to JPEG
    url_path: str           # path under the /captures static mount
    captured_at: str        # ISO8601 UTC
    width: Optional[int] = None
    height: Optional[int] = None

class AnalysisResult(BaseModel):
    timestamp: int
    total_persons: int = 0
    counts: Dict[str, int] = Field(default_factory=dict)
    scene_description: str = ""     # caption span + sections markup
    caption: str = ""
    sections: Dict[str, str] = Field(default_factory=dict)
    alert_message: Optional[str] = None
    edge_mode: bool = False
    parser: str = "fallback"        # normalizer stage that produced this result
    status: str = "ok"              # dispatch status
    error: Optional[str] = None

class AnalyzedFrame(FrameCaptured):
    event: str = "frame.analyzed"
    scenario_id: str
    mode: str
    analysis: AnalysisResult
