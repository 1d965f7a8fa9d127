"""
Weighted decision over the two class probabilities.

"Remove background" is boosted by a fixed 1.5x before being compared to
"Keep background", so removal wins from roughly 0.6 upwards instead of 0.5.
The multiplier and the strict comparison are part of the service contract.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping

import numpy as np

from .errors import LabelMismatchError

REMOVE_LABEL = "Odstranit pozadí"
KEEP_LABEL = "Ponechat pozadí"
REMOVE_WEIGHT = 1.5

DECISION_REMOVE = "Remove background"
DECISION_KEEP = "Keep background"


@dataclass(frozen=True)
class Scores:
    remove: float
    keep: float
    weighted_remove: float


@dataclass(frozen=True)
class PredictionResult:
    should_remove_background: bool
    confidence: float
    scores: Scores
    decision: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "shouldRemoveBackground": self.should_remove_background,
            "confidence": self.confidence,
            "scores": {
                "remove": self.scores.remove,
                "keep": self.scores.keep,
                "weightedRemove": self.scores.weighted_remove,
            },
            "decision": self.decision,
        }


def _model_precision(value: float) -> float:
    # The classifier emits float32; compare at that precision.
    return float(np.float32(value))


def decide(
    probabilities: Mapping[str, float],
    remove_label: str = REMOVE_LABEL,
    keep_label: str = KEEP_LABEL,
) -> PredictionResult:
    """
    Turn class probabilities into a `PredictionResult`.

    Raises:
        LabelMismatchError: when either expected label is missing.
    """
    missing = [label for label in (remove_label, keep_label) if label not in probabilities]
    if missing:
        raise LabelMismatchError(
            f"Unexpected prediction output - classes not found: {missing}; got {sorted(probabilities)}"
        )

    remove = _model_precision(probabilities[remove_label])
    keep = _model_precision(probabilities[keep_label])
    weighted_remove = remove * REMOVE_WEIGHT
    should_remove = weighted_remove > keep

    return PredictionResult(
        should_remove_background=should_remove,
        confidence=max(remove, keep),
        scores=Scores(remove=remove, keep=keep, weighted_remove=weighted_remove),
        decision=DECISION_REMOVE if should_remove else DECISION_KEEP,
    )
