# cascadenet/core/escalation.py
from __future__ import annotations

import math
from dataclasses import dataclass

from cascadenet.core.errors import ConfigurationError

ESCALATE_VALUE = 1.0
CONFIDENT_VALUE = 0.0
ESCALATION_TOLERANCE = 0.2


@dataclass(frozen=True)
class EscalationPolicy:
    """
    How the escalation channel is labelled during training and read at inference.

    Training labels an example `escalate_value` when the probe stage got it
    wrong and `confident_value` otherwise. At inference an input is forwarded
    to the backup iff abs(signal - escalate_value) < tolerance (strict). A
    distance equal to the tolerance up to float rounding (1.0 - 0.8, say)
    is on the edge and stays with the primary.
    """

    escalate_value: float = ESCALATE_VALUE
    confident_value: float = CONFIDENT_VALUE
    tolerance: float = ESCALATION_TOLERANCE

    def __post_init__(self) -> None:
        if not self.tolerance > 0.0:
            raise ConfigurationError("escalation tolerance must be > 0")
        if abs(self.escalate_value - self.confident_value) < self.tolerance:
            raise ConfigurationError(
                "confident_value lies inside the escalation band "
                f"({self.confident_value} vs {self.escalate_value} +/- {self.tolerance})"
            )

    def should_escalate(self, signal: float) -> bool:
        distance = abs(float(signal) - self.escalate_value)
        return distance < self.tolerance and not math.isclose(distance, self.tolerance)

    def label(self, *, probe_correct: bool) -> float:
        return self.confident_value if probe_correct else self.escalate_value


DEFAULT_POLICY = EscalationPolicy()
