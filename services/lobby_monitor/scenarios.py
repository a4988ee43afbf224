# services/lobby_monitor/scenarios.py
from __future__ import annotations
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field

from common.logging import get_logger
from services.lobby_monitor.errors import UnknownScenarioError

log = get_logger("scenarios")

class Metric(BaseModel):
    key: str
    label: str

class Section(BaseModel):
    key: str
    title: str
    emoji: str = ""
    aliases: List[str] = Field(default_factory=list)

    @property
    def heading(self) -> str:
        return f"**{self.emoji} {self.title}:**" if self.emoji else f"**{self.title}:**"

class AlertRules(BaseModel):
    enabled: bool = False
    title: str = "Alert"
    trigger_keys: List[str] = Field(default_factory=list)
    threshold: int = 0
    message_template: str = "{title}: {fields}"

class ScenarioConfig(BaseModel):
    id: str
    name: str
    description: str = ""
    prompt: str
    edge_prompt: Optional[str] = None
    total_metric: Metric = Field(default_factory=lambda: Metric(key="total_persons", label="Total Visible"))
    metrics: List[Metric] = Field(default_factory=list)
    sections: List[Section] = Field(default_factory=list)
    alerts: AlertRules = Field(default_factory=AlertRules)

    def prompt_for(self, edge: bool) -> str:
        return (self.edge_prompt or self.prompt) if edge else self.prompt

    @property
    def metric_keys(self) -> List[str]:
        return [m.key for m in self.metrics]

    def label_for(self, key: str) -> str:
        for m in self.metrics:
            if m.key == key:
                return m.label
        return key.replace("_", " ")

    def summary(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "description": self.description}

# ----------------- Built-in default -----------------
_LOBBY_SECTIONS = [
    Section(key="location", emoji="🏢", title="Location & Environment",
            aliases=["location", "environment", "setting", "scene"]),
    Section(key="people", emoji="👥", title="People & Activities",
            aliases=["people", "persons", "activities", "activity"]),
    Section(key="notable", emoji="🔍", title="Notable Elements",
            aliases=["notable", "details", "objects", "elements"]),
    Section(key="overall", emoji="📊", title="Overall Status",
            aliases=["overall", "status", "summary", "assessment"]),
]

# built-in fallback for a missing config/scenarios.yaml; keep in step with its lobby entry
LOBBY_PROMPT = (
    "You are analyzing a frame from a lobby surveillance camera. Count every visible person and "
    "describe the scene. Respond with JSON ONLY, using exactly this structure:\n\n"
    "{\n"
    "  \"total_persons\": <int>,\n"
    "  \"persons_near_doors\": <int>,\n"
    "  \"persons_at_reception\": <int>,\n"
    "  \"persons_in_other_areas\": <int>,\n"
    "  \"scene_description\": \"<span class=\\\"ai-caption\\\">one catchy sentence</span>\\n\\n"
    "**🏢 Location & Environment:**\\n...\\n\\n**👥 People & Activities:**\\n...\\n\\n"
    "**🔍 Notable Elements:**\\n...\\n\\n**📊 Overall Status:**\\n...\"\n"
    "}\n\n"
    "total_persons MUST equal the sum of the three area counts. Be precise and factual."
)

LOBBY_EDGE_PROMPT = (
    "Describe this lobby camera image. Start with one short caption line, then write short "
    "sections titled Environment:, People:, Details: and Status:."
)

def default_scenario() -> ScenarioConfig:
    return ScenarioConfig(
        id="lobby",
        name="Lobby Occupancy",
        description="Counts people near doors, at reception and elsewhere in the lobby.",
        prompt=LOBBY_PROMPT,
        edge_prompt=LOBBY_EDGE_PROMPT,
        metrics=[
            Metric(key="persons_near_doors", label="Near Doors"),
            Metric(key="persons_at_reception", label="At Reception"),
            Metric(key="persons_in_other_areas", label="Other Areas"),
        ],
        sections=list(_LOBBY_SECTIONS),
    )

# ----------------- Registry -----------------
class ScenarioRegistry:
    """Named scenarios loaded from YAML; exactly one is active at a time."""

    def __init__(self, scenarios: List[ScenarioConfig], default: Optional[str] = None):
        if not scenarios:
            scenarios = [default_scenario()]
        self._scenarios: Dict[str, ScenarioConfig] = {s.id: s for s in scenarios}
        active = default if default in self._scenarios else scenarios[0].id
        if default and default not in self._scenarios:
            log.warning(f"Default scenario '{default}' not found; using '{active}'")
        self._active_id = active

    @classmethod
    def from_file(cls, path: Path, default: Optional[str] = None) -> "ScenarioRegistry":
        path = Path(path)
        if not path.exists():
            log.warning(f"Scenario file {path} not found; using built-in lobby scenario")
            return cls([default_scenario()], default)
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        raw = data.get("scenarios", {}) or {}
        scenarios = []
        for sid, body in raw.items():
            body = dict(body or {})
            body.setdefault("id", sid)
            scenarios.append(ScenarioConfig.model_validate(body))
        log.info(f"Loaded {len(scenarios)} scenario(s) from {path}")
        return cls(scenarios, default or data.get("default"))

    @property
    def active(self) -> ScenarioConfig:
        return self._scenarios[self._active_id]

    def list(self) -> List[Dict[str, Any]]:
        return [dict(s.summary(), active=(s.id == self._active_id)) for s in self._scenarios.values()]

    def get(self, scenario_id: str) -> ScenarioConfig:
        try:
            return self._scenarios[scenario_id]
        except KeyError:
            raise UnknownScenarioError(scenario_id) from None

    def switch(self, scenario_id: str) -> ScenarioConfig:
        scenario = self.get(scenario_id)
        if scenario.id != self._active_id:
            log.info(f"Scenario switched {self._active_id} -> {scenario.id}")
        self._active_id = scenario.id
        return scenario
