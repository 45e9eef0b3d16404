from __future__ import annotations

from pydantic.dataclasses import dataclass as pydantic_dataclass


@pydantic_dataclass(frozen=True)
class PredictResponse:
    class_name: str
    confidence: float
    is_fresh: bool
    fruit_type: str
    scores: list[float]
    model_id: str
    degraded: bool
    badge: str
    advice: str
    confidence_pct: int
    confidence_band: str
    latency_ms: int
