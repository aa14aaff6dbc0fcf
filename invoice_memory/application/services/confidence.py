"""Confidence aggregation and reinforcement arithmetic."""
from typing import List

MAX_CONFIDENCE = 0.95
MIN_REINFORCED_CONFIDENCE = 0.1
REINFORCE_RATE = 0.1
FAILURE_PENALTY = 0.15

AUTO_ACCEPT_THRESHOLD = 0.75
RECALL_CONFIDENCE_FLOOR = 0.3
PO_MATCH_CONFIDENCE = 0.7


def clamp_confidence(value: float) -> float:
    return min(MAX_CONFIDENCE, max(0.0, value))


def reinforced_confidence(confidence: float, successful: bool) -> float:
    if successful:
        return min(MAX_CONFIDENCE, confidence + REINFORCE_RATE * (1 - confidence))
    return max(MIN_REINFORCED_CONFIDENCE, confidence - FAILURE_PENALTY)


class ConfidenceAccumulator:
    """Running arithmetic mean of confidence samples.

    Seeded with the extraction confidence; every applied pattern, rule or
    PO match adds one sample.
    """

    def __init__(self, seed: float):
        self.samples: List[float] = [seed]

    def add(self, sample: float) -> None:
        self.samples.append(sample)

    def score(self) -> float:
        return clamp_confidence(sum(self.samples) / len(self.samples))
