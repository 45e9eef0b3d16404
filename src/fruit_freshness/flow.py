from __future__ import annotations

from enum import Enum
from typing import Final

from .inference.types import PredictionResult


class ScreenState(str, Enum):
    loading = "loading"
    camera = "camera"
    predicting = "predicting"
    result = "result"


class FlowEvent(str, Enum):
    model_loaded = "model_loaded"
    photo_captured = "photo_captured"
    prediction_completed = "prediction_completed"
    prediction_failed = "prediction_failed"
    retake = "retake"


_TRANSITIONS: Final[dict[tuple[ScreenState, FlowEvent], ScreenState]] = {
    (ScreenState.loading, FlowEvent.model_loaded): ScreenState.camera,
    (ScreenState.camera, FlowEvent.photo_captured): ScreenState.predicting,
    (ScreenState.predicting, FlowEvent.prediction_completed): ScreenState.result,
    (ScreenState.predicting, FlowEvent.prediction_failed): ScreenState.camera,
    (ScreenState.result, FlowEvent.retake): ScreenState.camera,
}


class FlowError(ValueError):
    pass


class ScreenFlow:
    """Single active screen state driven by discrete events."""

    def __init__(self) -> None:
        self._state = ScreenState.loading
        self._photo: str | None = None
        self._result: PredictionResult | None = None

    @property
    def state(self) -> ScreenState:
        return self._state

    @property
    def photo(self) -> str | None:
        return self._photo

    @property
    def result(self) -> PredictionResult | None:
        return self._result

    def _advance(self, event: FlowEvent) -> None:
        nxt = _TRANSITIONS.get((self._state, event))
        if nxt is None:
            raise FlowError(f"{event.value} not allowed in state {self._state.value}")
        self._state = nxt

    def model_loaded(self) -> None:
        self._advance(FlowEvent.model_loaded)

    def photo_captured(self, photo: str) -> None:
        self._advance(FlowEvent.photo_captured)
        self._photo = photo

    def prediction_completed(self, result: PredictionResult) -> None:
        self._advance(FlowEvent.prediction_completed)
        self._result = result

    def prediction_failed(self) -> None:
        self._advance(FlowEvent.prediction_failed)
        self._photo = None

    def retake(self) -> None:
        self._advance(FlowEvent.retake)
        self._photo = None
        self._result = None
