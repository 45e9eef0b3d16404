from __future__ import annotations

import io
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import Depends, FastAPI, File, Header, Request, UploadFile
from fastapi.params import Depends as DependsParamType
from fastapi.responses import JSONResponse
from PIL import Image, ImageFile, UnidentifiedImageError
from starlette.datastructures import FormData

from ..config import Limits, Settings
from ..errors import AppError, ErrorCode, InferenceFailure, new_error, status_for
from ..inference.engine import InferenceEngine
from ..logging import get_logger, init_logging, request_id_var
from ..middleware import RequestIdMiddleware, api_key_dependency
from ..pipeline import FreshnessPipeline
from ..report import result_card
from ..version import get_version
from .schemas import PredictResponse

ImageFile.LOAD_TRUNCATED_IMAGES = False


async def _handle_app_error(_: Request, exc: Exception) -> JSONResponse:
    rid = request_id_var.get()
    if not isinstance(exc, AppError):
        body = new_error(ErrorCode.internal_error, rid, message=str(exc))
        return JSONResponse(status_code=500, content=body.to_dict())
    body = new_error(exc.code, rid, message=exc.message)
    return JSONResponse(status_code=exc.http_status, content=body.to_dict())


async def _handle_unexpected(_: Request, exc: Exception) -> JSONResponse:
    get_logger().error("unhandled_exception type=%s", type(exc).__name__)
    body = new_error(ErrorCode.internal_error, request_id_var.get())
    return JSONResponse(status_code=500, content=body.to_dict())


def _create_engine(settings: Settings) -> InferenceEngine:
    engine = InferenceEngine(settings)
    try:
        engine.load()
    except InferenceFailure as exc:
        # Kept not-ready; /readyz and /v1/predict report the failure
        get_logger().error("startup_model_unavailable code=%s", exc.code.value)
    return engine


def _register_basic(app: FastAPI, engine: InferenceEngine) -> None:
    async def _healthz() -> dict[str, str]:
        return {"status": "ok"}

    async def _readyz() -> dict[str, object]:
        if engine.ready:
            return {"status": "ready", "degraded": engine.degraded}
        return {
            "status": "not_ready",
            "model_loaded": False,
            "load_error": engine.load_error,
            "build": get_version().build,
        }

    async def _version() -> dict[str, object]:
        v = get_version()
        return {"service": v.service, "version": v.version, "build": v.build, "commit": v.commit}

    app.add_api_route("/healthz", _healthz, methods=["GET"])
    app.add_api_route("/readyz", _readyz, methods=["GET"])
    app.add_api_route("/version", _version, methods=["GET"])


def _register_models(app: FastAPI, engine: InferenceEngine) -> None:
    async def _model_active() -> dict[str, object]:
        man = engine.manifest
        if man is None:
            return {"model_loaded": False, "model_id": None, "load_error": engine.load_error}
        return {
            "model_loaded": True,
            "model_id": man.model_id,
            "arch": man.arch,
            "n_classes": man.n_classes,
            "input_size": man.input_size,
            "input_scale": man.input_scale,
            "preprocess_signature": man.input_spec.signature(),
            "version": man.version,
            "created_at": man.created_at.isoformat(),
            "schema_version": man.schema_version,
            "val_acc": man.val_acc,
            "source": engine.source,
            "degraded": engine.degraded,
        }

    app.add_api_route("/v1/models/active", _model_active, methods=["GET"])


def _raise_if_too_large(raw: bytes, limits: Limits) -> None:
    if len(raw) > limits.max_bytes:
        raise AppError(ErrorCode.too_large, status_for(ErrorCode.too_large), "File exceeds size limit")


def _strict_validate_multipart(form: FormData) -> None:
    for key in form:
        if key != "file":
            raise AppError(
                ErrorCode.malformed_multipart,
                status_for(ErrorCode.malformed_multipart),
                "Unexpected form field",
            )
    n_files = len(form.getlist("file"))
    if n_files != 1:
        raise AppError(
            ErrorCode.malformed_multipart,
            status_for(ErrorCode.malformed_multipart),
            "Multiple file parts not allowed" if n_files > 1 else "Missing file part",
        )


def _validate_image_dimensions(raw: bytes, limits: Limits) -> None:
    # Header-only open; pixel data is decoded later by the configured decoder
    try:
        with Image.open(io.BytesIO(raw)) as img:
            w, h = img.size
    except UnidentifiedImageError:
        raise AppError(
            ErrorCode.invalid_image, status_for(ErrorCode.invalid_image), "Failed to decode image"
        ) from None
    except Image.DecompressionBombError:
        raise AppError(
            ErrorCode.too_large, status_for(ErrorCode.too_large), "Decompression bomb triggered"
        ) from None
    if max(w, h) > limits.max_side_px:
        raise AppError(
            ErrorCode.bad_dimensions,
            status_for(ErrorCode.bad_dimensions),
            "Image dimensions too large",
        )


def _ensure_supported_content_type(ctype: str) -> None:
    if ctype not in ("image/png", "image/jpeg", "image/jpg"):
        raise AppError(
            ErrorCode.unsupported_media_type,
            status_for(ErrorCode.unsupported_media_type),
            "Only PNG and JPEG are supported",
        )


def _register_predict(
    app: FastAPI,
    dep_api_key: Callable[[str | None], None],
    provide_pipeline: Callable[[], FreshnessPipeline],
    provide_limits: Callable[[], Limits],
) -> None:
    async def _predict(
        request: Request,
        file: Annotated[UploadFile, File(...)],
        content_length: int | None = Header(default=None, alias="Content-Length"),
    ) -> dict[str, object]:
        pipeline = provide_pipeline()
        limits = provide_limits()

        form = await request.form()
        _strict_validate_multipart(form)
        _ensure_supported_content_type((file.content_type or "").lower())

        if content_length is not None and content_length > limits.max_bytes:
            raise AppError(ErrorCode.too_large, status_for(ErrorCode.too_large), "Request body too large")

        raw = await file.read()
        _raise_if_too_large(raw, limits)
        _validate_image_dimensions(raw, limits)

        t0 = time.perf_counter()
        result = pipeline.scan(raw)
        dt_ms = int((time.perf_counter() - t0) * 1000.0)
        card = result_card(result)
        return {
            **result.to_dict(),
            "badge": card.badge,
            "advice": card.advice,
            "confidence_pct": card.confidence_pct,
            "confidence_band": card.confidence_band,
            "latency_ms": dt_ms,
        }

    api_dep: DependsParamType = Depends(dep_api_key)
    app.add_api_route(
        "/v1/predict",
        _predict,
        methods=["POST"],
        response_model=PredictResponse,
        dependencies=[api_dep],
    )


def create_app(
    settings: Settings | None = None,
    engine_provider: Callable[[], InferenceEngine] | None = None,
) -> FastAPI:
    """Application factory.

    Parameters:
    - `settings`: Optional pre-loaded settings; when omitted, loads from env/TOML.
    - `engine_provider`: Optional provider for a custom `InferenceEngine` (primarily for tests).
      A provided engine is used as-is; loading it is the provider's job.
    """
    s = settings or Settings.load()
    init_logging()
    engine: InferenceEngine = engine_provider() if engine_provider is not None else _create_engine(s)

    @asynccontextmanager
    async def _lifespan(_: FastAPI) -> AsyncIterator[None]:
        yield
        engine.dispose()

    app = FastAPI(title="fruit-freshness", version=get_version().version, lifespan=_lifespan)
    app.add_middleware(RequestIdMiddleware)

    pipeline = FreshnessPipeline(s, engine)
    limits = Limits.from_settings(s)
    _api_key_dep = api_key_dependency(s)

    app.add_exception_handler(AppError, _handle_app_error)
    app.add_exception_handler(Exception, _handle_unexpected)

    def _provide_pipeline() -> FreshnessPipeline:
        return pipeline

    def _provide_limits() -> Limits:
        return limits

    app.state.provide_pipeline = _provide_pipeline
    app.state.provide_limits = _provide_limits

    _register_basic(app, engine)
    _register_models(app, engine)
    _register_predict(app, _api_key_dep, _provide_pipeline, _provide_limits)
    return app
