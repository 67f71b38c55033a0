from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

TRUST_BASELINE = 5.0
TENSION_BASELINE = 0.0


class DecayCurve(Protocol):
    """Moves trust/tension toward their baselines over elapsed conversation turns.

    `interval` is the number of turns in one decay step; callers only invoke
    `decay` with whole steps and advance their clock by `steps * interval`.
    """

    interval: int

    def decay(self, trust: float, tension: float, steps: int) -> tuple[float, float]: ...


def _toward(value: float, target: float, amount: float) -> float:
    if value > target:
        return max(target, value - amount)
    if value < target:
        return min(target, value + amount)
    return value


@dataclass(slots=True)
class IntervalDecay:
    """Linear decay: fixed amount per step, clamped at the baseline."""

    interval: int = 50
    tension_rate: float = 0.5
    trust_rate: float = 0.1

    def decay(self, trust: float, tension: float, steps: int) -> tuple[float, float]:
        if steps <= 0:
            return trust, tension
        return (
            _toward(trust, TRUST_BASELINE, self.trust_rate * steps),
            _toward(tension, TENSION_BASELINE, self.tension_rate * steps),
        )


@dataclass(slots=True)
class ExponentialDecay:
    """Keeps a fixed share of the distance to baseline per step."""

    interval: int = 50
    tension_retention: float = 0.5
    trust_retention: float = 0.9

    def decay(self, trust: float, tension: float, steps: int) -> tuple[float, float]:
        if steps <= 0:
            return trust, tension
        trust_factor = max(0.0, min(1.0, self.trust_retention)) ** steps
        tension_factor = max(0.0, min(1.0, self.tension_retention)) ** steps
        return (
            TRUST_BASELINE + (trust - TRUST_BASELINE) * trust_factor,
            TENSION_BASELINE + (tension - TENSION_BASELINE) * tension_factor,
        )
