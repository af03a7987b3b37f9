"""Engine package - Lifecycle automation and scoring.

Modules:
    - notifications: Best-effort fan-out of state changes
    - scoring: Lead score events and the pure initial score
    - templates: Jinja2 rendering of message steps
    - steps: Step executors and the executor registry
    - runner: Durable step runner shared by workflows and sequences
    - workflow: Trigger-driven workflows
    - sequence: Drip sequences with stop-on-reply
    - event_bus: Lifecycle event ingress and dispatch
"""

from nexus.engine.scoring import (
    SCORE_ADJUSTMENTS,
    ScoreOutcome,
    ScoreStatus,
    ScoringEngine,
    calculate_initial_score,
    clamp_score,
)
from nexus.engine.steps import StepOutcome, StepStatus

__all__ = [
    "SCORE_ADJUSTMENTS",
    "ScoreOutcome",
    "ScoreStatus",
    "ScoringEngine",
    "calculate_initial_score",
    "clamp_score",
    "StepOutcome",
    "StepStatus",
]
