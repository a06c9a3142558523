from __future__ import annotations

from pydantic.dataclasses import dataclass as pydantic_dataclass


@pydantic_dataclass(frozen=True)
class PredictionItem:
    label: str
    probability: float


@pydantic_dataclass(frozen=True)
class ClassifyResponse:
    label: str
    confidence: float
    confidence_pct: str
    predictions: list[PredictionItem]
    secondary: list[PredictionItem]
    model_id: str
    latency_ms: int
