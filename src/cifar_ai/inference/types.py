from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum

from torch import Tensor


class EngineState(str, Enum):
    uninitialized = "uninitialized"
    loading = "loading"
    ready = "ready"
    error = "error"


@dataclass(frozen=True)
class Prediction:
    label: str
    probability: float
    index: int


@dataclass(frozen=True)
class RankedPredictions:
    predictions: tuple[Prediction, ...]  # descending by probability
    model_id: str
    latency_ms: int = 0

    @property
    def top(self) -> Prediction:
        return self.predictions[0]

    def secondary(self, k: int, min_probability: float = 0.0) -> tuple[Prediction, ...]:
        rest = self.predictions[1 : 1 + max(0, k)]
        return tuple(p for p in rest if p.probability >= min_probability)


@dataclass(frozen=True)
class PreprocessOutput:
    tensor: Tensor  # 1x3x32x32, values in [0, 1]
    width: int
    height: int


Probs = Sequence[float]
