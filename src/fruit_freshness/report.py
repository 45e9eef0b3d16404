from __future__ import annotations

from dataclasses import dataclass
from typing import Final, Literal

from .inference.types import PredictionResult

ConfidenceBand = Literal["high", "medium", "low"]

_HIGH_CONFIDENCE: Final[float] = 0.8
_MEDIUM_CONFIDENCE: Final[float] = 0.6


@dataclass(frozen=True)
class ResultCard:
    badge: str
    advice: str
    fruit: str
    confidence_pct: int
    confidence_band: ConfidenceBand
    degraded: bool

    def lines(self) -> list[str]:
        out = [
            f"{self.fruit}: {self.badge}",
            f"Confidence: {self.confidence_pct}% ({self.confidence_band})",
            f"Status: {self.advice}",
        ]
        if self.degraded:
            out.append("Warning: degraded result, not a real prediction")
        return out


def confidence_band(confidence: float) -> ConfidenceBand:
    if confidence >= _HIGH_CONFIDENCE:
        return "high"
    if confidence >= _MEDIUM_CONFIDENCE:
        return "medium"
    return "low"


def result_card(result: PredictionResult) -> ResultCard:
    return ResultCard(
        badge="FRESH" if result.is_fresh else "ROTTEN",
        advice="Good to eat!" if result.is_fresh else "Consider discarding",
        fruit=result.fruit_type[:1].upper() + result.fruit_type[1:],
        confidence_pct=int(round(result.confidence * 100)),
        confidence_band=confidence_band(result.confidence),
        degraded=result.degraded,
    )
