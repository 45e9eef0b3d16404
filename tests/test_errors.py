from __future__ import annotations

from fruit_freshness.errors import (
    AppError,
    ErrorCode,
    InferenceFailure,
    PreprocessingFailure,
    new_error,
    status_for,
)


def test_status_for_codes() -> None:
    assert int(status_for(ErrorCode.preprocessing_failed)) == 400
    assert int(status_for(ErrorCode.invalid_image)) == 400
    assert int(status_for(ErrorCode.unsupported_media_type)) == 415
    assert int(status_for(ErrorCode.too_large)) == 413
    assert int(status_for(ErrorCode.service_not_ready)) == 503
    assert int(status_for(ErrorCode.model_load_failed)) == 503
    assert int(status_for(ErrorCode.inference_failed)) == 500
    assert int(status_for(ErrorCode.internal_error)) == 500


def test_failure_kinds_are_app_errors() -> None:
    pf = PreprocessingFailure("bad pixels")
    assert isinstance(pf, AppError)
    assert pf.code is ErrorCode.preprocessing_failed and pf.http_status == 400
    inf = InferenceFailure("not yet", ErrorCode.service_not_ready)
    assert isinstance(inf, AppError)
    assert inf.http_status == 503 and inf.message == "not yet"


def test_new_error_default_message() -> None:
    body = new_error(ErrorCode.model_load_failed, "rid-1").to_dict()
    assert body == {
        "code": "model_load_failed",
        "message": "Model could not be loaded.",
        "request_id": "rid-1",
    }
    assert new_error(ErrorCode.too_large, "r", message="x").message == "x"
