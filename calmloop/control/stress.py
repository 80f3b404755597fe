# calmloop/control/stress.py
from __future__ import annotations
import enum
import math
from dataclasses import dataclass
from typing import Tuple


class StressState(str, enum.Enum):
    CALM = "calm"
    STRESSED = "stressed"


class Edge(str, enum.Enum):
    NONE = "none"
    STRESSED = "stressed"   # calm -> stressed
    CALMED = "calmed"       # stressed -> calm


@dataclass
class StressRules:
    threshold_bpm: float = 95.0
    # slider range of the dashboard; informational, samples outside it still count
    min_bpm: float = 50.0
    max_bpm: float = 150.0


def evaluate(sample: float, threshold: float) -> StressState:
    """Instantaneous comparison, no hysteresis: sample >= threshold is stressed."""
    return StressState.STRESSED if float(sample) >= float(threshold) else StressState.CALM


class StressEvaluator:
    """Remembers only the previous state so edges can be reported."""

    def __init__(self, rules: StressRules | None = None):
        self.rules = rules or StressRules()
        self.state = StressState.CALM
        self.last_sample: float | None = None

    def update(self, sample: float) -> Tuple[StressState, Edge]:
        s = float(sample)
        if not math.isfinite(s):
            raise ValueError(f"vital sample must be finite (got {sample!r})")
        self.last_sample = s
        prev, self.state = self.state, evaluate(s, self.rules.threshold_bpm)
        if prev is self.state:
            return self.state, Edge.NONE
        if self.state is StressState.STRESSED:
            return self.state, Edge.STRESSED
        return self.state, Edge.CALMED
