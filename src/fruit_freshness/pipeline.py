from __future__ import annotations

import time

from .config import Settings
from .inference.engine import InferenceEngine
from .inference.types import PredictionResult
from .logging import log_event
from .preprocess import ImageDecoder, decoder_for, run_preprocess


class FreshnessPipeline:
    """Photo bytes in, one PredictionResult out.

    The engine is loaded lazily on the first scan and reused afterwards.
    """

    def __init__(
        self,
        settings: Settings,
        engine: InferenceEngine,
        decoder: ImageDecoder | None = None,
    ) -> None:
        self._settings = settings
        self._engine = engine
        self._decoder = decoder if decoder is not None else decoder_for(settings.model.decoder)

    @property
    def engine(self) -> InferenceEngine:
        return self._engine

    @property
    def decoder(self) -> ImageDecoder:
        return self._decoder

    def scan(self, raw: bytes) -> PredictionResult:
        self._engine.ensure_loaded()
        t0 = time.perf_counter()
        pre = run_preprocess(
            raw,
            self._engine.input_spec,
            self._decoder,
            degraded_mode=self._settings.model.degraded_mode,
        )
        result = self._engine.classify(pre.tensor, degraded_input=pre.degraded)
        dt_ms = int((time.perf_counter() - t0) * 1000.0)
        log_event(
            "scan_finished",
            fields={
                "latency_ms": dt_ms,
                "class_name": result.class_name,
                "confidence": result.confidence,
                "model_id": result.model_id,
                "fresh": result.is_fresh,
                "degraded": result.degraded,
                "decoder": self._decoder.name,
            },
        )
        return result
