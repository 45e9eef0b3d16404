from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from torch import Tensor

InputScale = Literal["unit", "raw"]
ScoreVector = tuple[float, ...]


@dataclass(frozen=True)
class InputSpec:
    size: int  # square side in pixels
    scale: InputScale

    def signature(self) -> str:
        return f"v1/rgb+resize{self.size}+{self.scale}+nhwc"


@dataclass(frozen=True)
class PreprocessOutput:
    tensor: Tensor  # [1, size, size, 3] float32
    degraded: bool


@dataclass(frozen=True)
class PredictionResult:
    class_name: str
    confidence: float
    is_fresh: bool
    fruit_type: str
    scores: ScoreVector  # length 6, label-table order
    model_id: str
    degraded: bool

    def to_dict(self) -> dict[str, object]:
        return {
            "class_name": self.class_name,
            "confidence": self.confidence,
            "is_fresh": self.is_fresh,
            "fruit_type": self.fruit_type,
            "scores": list(self.scores),
            "model_id": self.model_id,
            "degraded": self.degraded,
        }
