from __future__ import annotations

import pytest

from fruit_freshness.flow import FlowError, ScreenFlow, ScreenState
from fruit_freshness.inference.labels import decode_scores


def test_happy_path_and_retake() -> None:
    flow = ScreenFlow()
    assert flow.state is ScreenState.loading
    flow.model_loaded()
    assert flow.state is ScreenState.camera
    flow.photo_captured("apple.jpg")
    assert flow.state is ScreenState.predicting
    assert flow.photo == "apple.jpg"
    res = decode_scores([0.9, 0.02, 0.02, 0.02, 0.02, 0.02])
    flow.prediction_completed(res)
    assert flow.state is ScreenState.result
    assert flow.result == res
    flow.retake()
    assert flow.state is ScreenState.camera
    assert flow.photo is None and flow.result is None


def test_prediction_failure_returns_to_camera() -> None:
    flow = ScreenFlow()
    flow.model_loaded()
    flow.photo_captured("bad.png")
    flow.prediction_failed()
    assert flow.state is ScreenState.camera
    assert flow.photo is None
    assert flow.result is None


def test_invalid_transitions_raise() -> None:
    flow = ScreenFlow()
    with pytest.raises(FlowError):
        flow.photo_captured("early.jpg")
    flow.model_loaded()
    with pytest.raises(FlowError):
        flow.retake()
    with pytest.raises(FlowError):
        flow.model_loaded()
    flow.photo_captured("a.jpg")
    with pytest.raises(FlowError):
        flow.photo_captured("b.jpg")
    # state untouched by rejected events
    assert flow.state is ScreenState.predicting
    assert flow.photo == "a.jpg"
