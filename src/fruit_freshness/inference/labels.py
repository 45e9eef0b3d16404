from __future__ import annotations

import math
from collections.abc import Sequence
from enum import Enum
from typing import Final

from ..errors import InferenceFailure
from .types import PredictionResult


class FruitClass(str, Enum):
    freshapples = "freshapples"
    freshbanana = "freshbanana"
    freshoranges = "freshoranges"
    rottenapples = "rottenapples"
    rottenbanana = "rottenbanana"
    rottenoranges = "rottenoranges"

    @property
    def is_fresh(self) -> bool:
        return self.value.startswith(_FRESH)

    @property
    def fruit_type(self) -> str:
        prefix = _FRESH if self.is_fresh else _ROTTEN
        return self.value[len(prefix) :]


_FRESH: Final[str] = "fresh"
_ROTTEN: Final[str] = "rotten"

# Training order of the classifier head; index i of a score vector is CLASS_LABELS[i].
CLASS_LABELS: Final[tuple[FruitClass, ...]] = (
    FruitClass.freshapples,
    FruitClass.freshbanana,
    FruitClass.freshoranges,
    FruitClass.rottenapples,
    FruitClass.rottenbanana,
    FruitClass.rottenoranges,
)
N_CLASSES: Final[int] = len(CLASS_LABELS)


def label_names() -> tuple[str, ...]:
    return tuple(c.value for c in CLASS_LABELS)


def argmax_first(scores: Sequence[float]) -> int:
    """Index of the largest score; equal maxima resolve to the lowest index."""
    top_idx = 0
    best = scores[0]
    for i in range(1, len(scores)):
        if scores[i] > best:
            best = scores[i]
            top_idx = i
    return top_idx


def round_confidence(value: float) -> float:
    # Half-up to two decimals, so 0.125 shows as 0.13 rather than banker's 0.12
    return math.floor(value * 100.0 + 0.5) / 100.0


def decode_scores(
    scores: Sequence[float], *, model_id: str = "", degraded: bool = False
) -> PredictionResult:
    if len(scores) != N_CLASSES:
        raise InferenceFailure(f"expected {N_CLASSES} scores, got {len(scores)}")
    vec = tuple(float(s) for s in scores)
    if not all(math.isfinite(s) for s in vec):
        raise InferenceFailure("score vector contains non-finite values")
    idx = argmax_first(vec)
    label = CLASS_LABELS[idx]
    return PredictionResult(
        class_name=label.value,
        confidence=round_confidence(vec[idx]),
        is_fresh=label.is_fresh,
        fruit_type=label.fruit_type,
        scores=vec,
        model_id=model_id,
        degraded=degraded,
    )
