from __future__ import annotations

import threading
from collections.abc import Sequence
from concurrent.futures import Future, ThreadPoolExecutor

import torch
from torch import Tensor

from ..config import Settings
from ..errors import ErrorCode, InferenceFailure
from ..logging import get_logger, log_event
from .artifacts import (
    ArtifactSource,
    HttpArtifactSource,
    LoadedModel,
    LocalArtifactSource,
    TorchModel,
    load_artifacts,
    placeholder_model,
)
from .labels import N_CLASSES, decode_scores
from .manifest import ModelManifest
from .types import InputSpec, PredictionResult, ScoreVector


def default_sources(settings: Settings) -> list[ArtifactSource]:
    m = settings.model
    sources: list[ArtifactSource] = [LocalArtifactSource(m.model_dir / m.active_model)]
    if m.fallback_url:
        url = f"{m.fallback_url.rstrip('/')}/{m.active_model}"
        sources.append(HttpArtifactSource(url, m.cache_dir / m.active_model))
    return sources


class InferenceEngine:
    """Owns one classifier for the process lifetime.

    ``load()`` must succeed before predictions are accepted. Forward passes are
    queued on a single worker thread, so calls against the model never overlap.
    """

    def __init__(self, settings: Settings, sources: Sequence[ArtifactSource] | None = None) -> None:
        self._settings = settings
        self._logger = get_logger()
        self._sources: tuple[ArtifactSource, ...] = (
            tuple(sources) if sources is not None else tuple(default_sources(settings))
        )
        self._pool: ThreadPoolExecutor | None = ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="predict"
        )
        self._load_lock = threading.Lock()
        self._model: TorchModel | None = None
        self._manifest: ModelManifest | None = None
        self._source: str | None = None
        self._degraded = False
        self._load_error: str | None = None

    @property
    def ready(self) -> bool:
        return self._model is not None and self._manifest is not None

    @property
    def degraded(self) -> bool:
        return self._degraded

    @property
    def model_id(self) -> str | None:
        return self._manifest.model_id if self._manifest is not None else None

    @property
    def manifest(self) -> ModelManifest | None:
        return self._manifest

    @property
    def source(self) -> str | None:
        return self._source

    @property
    def load_error(self) -> str | None:
        return self._load_error

    @property
    def input_spec(self) -> InputSpec:
        man = self._manifest
        if man is None:
            raise InferenceFailure("Model not loaded", ErrorCode.service_not_ready)
        return man.input_spec

    def load(self) -> None:
        with self._load_lock:
            if self._model is not None:
                return
            if self._pool is None:
                raise InferenceFailure("Engine has been disposed", ErrorCode.service_not_ready)
            outcome = load_artifacts(self._sources)
            if isinstance(outcome, LoadedModel):
                self._install(outcome, degraded=False)
                self._load_error = None
                return
            self._load_error = outcome.message
            if not self._settings.model.degraded_mode:
                self._logger.error("model_load_failed attempts=%d", len(outcome.attempts))
                raise InferenceFailure(
                    f"Model could not be loaded: {outcome.message}", ErrorCode.model_load_failed
                )
            self._logger.warning("model_placeholder_installed reason=load_failed")
            self._install(placeholder_model(), degraded=True)

    def ensure_loaded(self) -> None:
        if not self.ready:
            self.load()

    def _install(self, loaded: LoadedModel, *, degraded: bool) -> None:
        self._model = loaded.model
        self._manifest = loaded.manifest
        self._source = loaded.source
        self._degraded = degraded
        log_event(
            "model_loaded",
            fields={
                "model_id": loaded.manifest.model_id,
                "source": loaded.source,
                "input_size": loaded.manifest.input_size,
                "n_shards": len(loaded.manifest.weights),
                "degraded": degraded,
            },
        )
        self._logger.info("preprocess_signature sig=%s", loaded.manifest.input_spec.signature())

    def submit_predict(self, tensor: Tensor) -> Future[ScoreVector]:
        pool = self._pool
        if pool is None or not self.ready:
            raise InferenceFailure("Model not loaded", ErrorCode.service_not_ready)
        return pool.submit(self._predict_impl, tensor)

    def predict(self, tensor: Tensor) -> ScoreVector:
        return self.submit_predict(tensor).result()

    def classify(self, tensor: Tensor, *, degraded_input: bool = False) -> PredictionResult:
        scores = self.predict(tensor)
        return decode_scores(
            scores,
            model_id=self.model_id or "",
            degraded=self._degraded or degraded_input,
        )

    def _predict_impl(self, tensor: Tensor) -> ScoreVector:
        man = self._manifest
        model_obj = self._model
        if man is None or model_obj is None:
            raise InferenceFailure("Model not loaded", ErrorCode.service_not_ready)
        batch = _to_model_layout(tensor, man.input_size)
        try:
            with torch.inference_mode():
                out = model_obj(batch)
                probs = torch.softmax(out, dim=1) if man.output == "logits" else out
                vec = [float(x) for x in probs[0].tolist()] if probs.ndim == 2 else []
        except (RuntimeError, ValueError, TypeError, IndexError) as exc:
            raise InferenceFailure(f"Forward pass failed: {exc}") from None
        if probs.ndim != 2 or int(probs.shape[0]) != 1 or len(vec) != N_CLASSES:
            raise InferenceFailure(f"Unexpected model output shape {tuple(probs.shape)}")
        return tuple(vec)

    def dispose(self) -> None:
        with self._load_lock:
            pool = self._pool
            self._pool = None
            self._model = None
            self._manifest = None
            self._source = None
            self._degraded = False
        if pool is not None:
            pool.shutdown(wait=True)


def _to_model_layout(x: Tensor, size: int) -> Tensor:
    # [1, H, W, 3] channel-last in, [1, 3, H, W] out for torchvision backbones
    if tuple(x.shape) != (1, size, size, 3):
        raise InferenceFailure(f"Expected input shape (1, {size}, {size}, 3), got {tuple(x.shape)}")
    return x.to(dtype=torch.float32).permute(0, 3, 1, 2).contiguous()
