from __future__ import annotations

from dataclasses import replace
from pathlib import Path

import pytest
from _fixtures import FixedModel, engine_with_model, image_bytes, make_settings, write_artifacts
from fastapi import FastAPI
from fastapi.testclient import TestClient

from fruit_freshness.api.app import create_app
from fruit_freshness.config import SecurityConfig, Settings
from fruit_freshness.inference.engine import InferenceEngine


def _client(settings: Settings, row: list[float] | None = None) -> TestClient:
    eng = engine_with_model(settings, FixedModel(row or [0.92, 0.0, 0.0, 0.0, 0.0, 0.08]))
    return TestClient(create_app(settings, engine_provider=lambda: eng))


def _unloaded_client(tmp_path: Path) -> TestClient:
    s = make_settings(tmp_path)
    return TestClient(create_app(s))


def test_healthz_and_request_id_roundtrip() -> None:
    client = _client(make_settings())
    r = client.get("/healthz", headers={"X-Request-ID": "req-123"})
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}
    assert r.headers.get("x-request-id") == "req-123"


def test_version_reports_service() -> None:
    r = _client(make_settings()).get("/version")
    assert r.status_code == 200
    assert r.json()["service"] == "fruit-freshness"


def test_predict_returns_result_and_card() -> None:
    client = _client(make_settings())
    files = {"file": ("apple.png", image_bytes(), "image/png")}
    r = client.post("/v1/predict", files=files)
    assert r.status_code == 200
    body = r.json()
    assert body["class_name"] == "freshapples"
    assert body["confidence"] == 0.92
    assert body["is_fresh"] is True
    assert body["fruit_type"] == "apples"
    assert len(body["scores"]) == 6
    assert body["degraded"] is False
    assert body["badge"] == "FRESH"
    assert body["advice"] == "Good to eat!"
    assert body["confidence_pct"] == 92
    assert body["confidence_band"] == "high"
    assert isinstance(body["latency_ms"], int)


def test_predict_accepts_jpeg() -> None:
    client = _client(make_settings(), row=[0.0, 0.0, 0.0, 0.1, 0.7, 0.2])
    files = {"file": ("b.jpg", image_bytes(fmt="JPEG"), "image/jpeg")}
    r = client.post("/v1/predict", files=files)
    assert r.status_code == 200
    assert r.json()["class_name"] == "rottenbanana"
    assert r.json()["badge"] == "ROTTEN"


def test_invalid_image_bytes_returns_400() -> None:
    client = _client(make_settings())
    files = {"file": ("img.png", b"not-a-valid-image", "image/png")}
    r = client.post("/v1/predict", files=files)
    assert r.status_code == 400
    assert r.json()["code"] == "invalid_image"


def test_unsupported_media_type_returns_415() -> None:
    client = _client(make_settings())
    files = {"file": ("img.gif", b"GIF89a", "image/gif")}
    r = client.post("/v1/predict", files=files)
    assert r.status_code == 415


def test_rejects_extra_form_field_and_multiple_files() -> None:
    client = _client(make_settings())
    files = {"file": ("img.png", image_bytes(), "image/png")}
    r = client.post("/v1/predict", files=files, data={"note": "extra"})
    assert r.status_code == 400 and r.json()["code"] == "malformed_multipart"
    files_list = [
        ("file", ("a.png", image_bytes(), "image/png")),
        ("file", ("b.png", image_bytes(), "image/png")),
    ]
    r2 = client.post("/v1/predict", files=files_list)
    assert r2.status_code == 400 and r2.json()["code"] == "malformed_multipart"


def test_size_and_dimension_limits() -> None:
    s = make_settings(max_image_mb=0)
    r = _client(s).post("/v1/predict", files={"file": ("a.png", image_bytes(), "image/png")})
    assert r.status_code == 413 and r.json()["code"] == "too_large"

    s2 = make_settings(max_image_side_px=32)
    r2 = _client(s2).post("/v1/predict", files={"file": ("a.png", image_bytes(), "image/png")})
    assert r2.status_code == 400 and r2.json()["code"] == "bad_dimensions"


def test_api_key_required_when_configured() -> None:
    s = replace(make_settings(), security=SecurityConfig(api_key="k1"))
    client = _client(s)
    files = {"file": ("a.png", image_bytes(), "image/png")}
    assert client.post("/v1/predict", files=files).status_code == 401
    ok = client.post("/v1/predict", files=files, headers={"X-API-Key": "k1"})
    assert ok.status_code == 200


def test_not_ready_when_model_missing(tmp_path: Path) -> None:
    client = _unloaded_client(tmp_path)
    ready = client.get("/readyz").json()
    assert ready["status"] == "not_ready"
    assert "manifest.json" in str(ready["load_error"])
    active = client.get("/v1/models/active").json()
    assert active["model_loaded"] is False

    r = client.post("/v1/predict", files={"file": ("a.png", image_bytes(), "image/png")})
    assert r.status_code == 503
    body = r.json()
    assert body["code"] == "model_load_failed"
    assert isinstance(body["request_id"], str) and len(body["request_id"]) > 0


def test_startup_loads_packaged_model(tmp_path: Path) -> None:
    s = make_settings(tmp_path)
    write_artifacts(s.model.model_dir / s.model.active_model)
    client = TestClient(create_app(s))
    assert client.get("/readyz").json() == {"status": "ready", "degraded": False}
    active = client.get("/v1/models/active").json()
    assert active["model_loaded"] is True
    assert active["arch"] == "mobilenet_v3_small"
    assert active["preprocess_signature"] == "v1/rgb+resize224+unit+nhwc"
    r = client.post("/v1/predict", files={"file": ("a.png", image_bytes(), "image/png")})
    assert r.status_code == 200
    assert r.json()["model_id"] == "fruit_freshness_test"


def test_degraded_mode_is_visible(tmp_path: Path) -> None:
    s = make_settings(tmp_path, degraded_mode=True)
    client = TestClient(create_app(s))
    assert client.get("/readyz").json()["degraded"] is True
    r = client.post("/v1/predict", files={"file": ("a.png", image_bytes(), "image/png")})
    assert r.status_code == 200
    assert r.json()["degraded"] is True


def test_lifespan_disposes_engine() -> None:
    s = make_settings()
    eng = engine_with_model(s, FixedModel([0.1] * 6))
    app = create_app(s, engine_provider=lambda: eng)
    with TestClient(app) as client:
        assert client.get("/readyz").json()["status"] == "ready"
    assert isinstance(eng, InferenceEngine)
    assert eng.ready is False


def test_server_entry_uses_configured_port(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    from fruit_freshness.api import __main__ as server

    seen: dict[str, object] = {}

    def _fake_run(app: object, *, host: str, port: int, log_config: object) -> None:
        seen["app"] = app
        seen["port"] = port

    monkeypatch.setattr(server.uvicorn, "run", _fake_run)
    monkeypatch.setenv("APP__PORT", "9123")
    monkeypatch.setenv("MODEL__MODEL_DIR", (tmp_path / "none").as_posix())
    monkeypatch.setenv("FRESHNESS_CONFIG", (tmp_path / "missing.toml").as_posix())
    server.main()
    assert seen["port"] == 9123
    assert isinstance(seen["app"], FastAPI)
