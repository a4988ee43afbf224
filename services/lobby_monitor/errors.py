"""Caller-facing errors. Transient failures never raise; they become status fields or sentinel results."""
from __future__ import annotations


class LobbyMonitorError(Exception):
    """Base class for rejected requests (caller mistakes, never retried)."""


class InvalidModeError(LobbyMonitorError, ValueError):
    def __init__(self, mode: object):
        self.mode = mode
        super().__init__(f"Invalid mode '{mode}'. Expected 'cloud' or 'edge'.")


class UnknownScenarioError(LobbyMonitorError, KeyError):
    def __init__(self, scenario_id: str):
        self.scenario_id = scenario_id
        super().__init__(scenario_id)

    def __str__(self) -> str:
        return f"Unknown scenario '{self.scenario_id}'"
