from __future__ import annotations

import io
import json
from dataclasses import replace
from datetime import UTC, datetime
from pathlib import Path

import torch
from PIL import Image

from fruit_freshness.config import AppConfig, ModelConfig, SecurityConfig, Settings
from fruit_freshness.inference.artifacts import LoadedModel, build_fresh_state_dict
from fruit_freshness.inference.engine import InferenceEngine
from fruit_freshness.inference.labels import label_names
from fruit_freshness.inference.manifest import ModelManifest


def image_bytes(
    color: tuple[int, ...] = (200, 40, 40),
    size: tuple[int, int] = (64, 48),
    mode: str = "RGB",
    fmt: str = "PNG",
) -> bytes:
    img = Image.new(mode, size, color if len(color) > 1 else color[0])
    buf = io.BytesIO()
    img.save(buf, format=fmt)
    return buf.getvalue()


def noise_image_bytes(size: tuple[int, int], seed: int = 0) -> bytes:
    """Seeded RGB noise PNG."""
    w, h = size
    g = torch.Generator().manual_seed(seed)
    px = torch.randint(0, 256, (h, w, 3), generator=g, dtype=torch.uint8)
    img = Image.frombytes("RGB", (w, h), bytes(px.flatten().tolist()))
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def wide_png_bytes(size: tuple[int, int], seed: int = 0) -> bytes:
    """Seeded 16-bit grayscale PNG."""
    w, h = size
    g = torch.Generator().manual_seed(seed)
    vals = torch.randint(0, 65536, (h * w,), generator=g, dtype=torch.int64).tolist()
    data = b"".join(int(v).to_bytes(2, "little") for v in vals)
    img = Image.frombytes("I;16", (w, h), data)
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def make_settings(root: Path | None = None, **model_overrides: object) -> Settings:
    base = ModelConfig()
    if root is not None:
        base = replace(base, model_dir=root / "models", cache_dir=root / "cache")
    model = replace(base, **model_overrides)
    return Settings(app=AppConfig(), model=model, security=SecurityConfig())


def manifest_dict(**overrides: object) -> dict[str, object]:
    d: dict[str, object] = {
        "schema_version": "v1",
        "model_id": "fruit_freshness_test",
        "arch": "mobilenet_v3_small",
        "n_classes": 6,
        "input_size": 224,
        "input_scale": "unit",
        "output": "logits",
        "weights": ["model.pt"],
        "labels": list(label_names()),
        "version": "1.0.0",
        "created_at": datetime.now(UTC).isoformat(),
        "val_acc": 0.97,
    }
    d.update(overrides)
    return d


def write_artifacts(directory: Path, *, n_shards: int = 1, **overrides: object) -> dict[str, object]:
    """Write a randomly initialized model split into ``n_shards`` files plus its manifest."""
    directory.mkdir(parents=True, exist_ok=True)
    names = [f"model-{i + 1:05d}.pt" for i in range(n_shards)] if n_shards > 1 else ["model.pt"]
    man = manifest_dict(weights=names, **overrides)
    sd = build_fresh_state_dict(str(man["arch"]))
    keys = sorted(sd)
    for i, name in enumerate(names):
        part = {k: sd[k] for k in keys[i::n_shards]}
        torch.save(part, directory / name)
    (directory / "manifest.json").write_text(json.dumps(man), encoding="utf-8")
    return man


class FixedModel:
    """Stand-in network that always returns the same output row."""

    def __init__(self, row: list[float]) -> None:
        self._out = torch.tensor([row], dtype=torch.float32)
        self.last_shape: tuple[int, ...] | None = None
        self.calls = 0

    def eval(self) -> object:
        return self

    def __call__(self, x: torch.Tensor) -> torch.Tensor:
        self.last_shape = tuple(x.shape)
        self.calls += 1
        return self._out.clone()

    def load_state_dict(self, sd: dict[str, torch.Tensor], strict: bool = True) -> object:
        return self


def engine_with_model(
    settings: Settings, model: FixedModel, *, output: str = "probs", input_size: int = 224
) -> InferenceEngine:
    eng = InferenceEngine(settings, sources=())
    man = ModelManifest.from_dict(manifest_dict(output=output, input_size=input_size))
    eng._install(LoadedModel(model=model, manifest=man, source="test"), degraded=False)
    return eng
