"""Model artifact discovery and loading.

An artifact directory holds ``manifest.json`` plus the weight shards it names.
Sources are tried in order by :func:`load_artifacts`, which returns either a
:class:`LoadedModel` or a :class:`LoadFailure` describing every attempt.
"""

from __future__ import annotations

import pickle
import zipfile
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Final, Protocol

import httpx
import torch
from torch import Tensor, nn

from ..logging import get_logger
from .labels import N_CLASSES
from .manifest import ModelManifest

MANIFEST_NAME: Final[str] = "manifest.json"
_ARCHS: Final[tuple[str, ...]] = (
    "efficientnet_b1",
    "efficientnet_v2_s",
    "vgg16",
    "mobilenet_v3_small",
)
LOAD_ERRORS: Final[tuple[type[BaseException], ...]] = (
    OSError,
    ValueError,
    RuntimeError,
    TypeError,
    KeyError,
    EOFError,
    pickle.UnpicklingError,
    zipfile.BadZipFile,
    httpx.HTTPError,
)


class TorchModel(Protocol):
    def eval(self) -> object: ...
    def __call__(self, x: Tensor) -> Tensor: ...
    def load_state_dict(self, sd: dict[str, Tensor], strict: bool = ...) -> object: ...


@dataclass(frozen=True)
class LoadedModel:
    model: TorchModel
    manifest: ModelManifest
    source: str


@dataclass(frozen=True)
class LoadFailure:
    attempts: tuple[str, ...]

    @property
    def message(self) -> str:
        if not self.attempts:
            return "no artifact sources configured"
        return "; ".join(self.attempts)


class ArtifactSource(Protocol):
    @property
    def name(self) -> str: ...

    def fetch(self) -> Path:
        """Return a local directory containing the manifest and its shards."""
        ...


class LocalArtifactSource:
    """Packaged model directory on disk."""

    def __init__(self, directory: Path) -> None:
        self._directory = directory

    @property
    def name(self) -> str:
        return f"local:{self._directory.as_posix()}"

    def fetch(self) -> Path:
        manifest_path = self._directory / MANIFEST_NAME
        if not manifest_path.is_file():
            raise FileNotFoundError(f"missing {manifest_path.as_posix()}")
        return self._directory


class HttpArtifactSource:
    """Development fallback that mirrors a served model directory into a cache."""

    def __init__(self, base_url: str, cache_dir: Path, client: httpx.Client | None = None) -> None:
        self._base_url = base_url.rstrip("/")
        self._cache_dir = cache_dir
        self._client = client

    @property
    def name(self) -> str:
        return f"http:{self._base_url}"

    def fetch(self) -> Path:
        if self._client is not None:
            return self._download(self._client)
        with httpx.Client(timeout=30.0, follow_redirects=True) as client:
            return self._download(client)

    def _download(self, client: httpx.Client) -> Path:
        resp = client.get(f"{self._base_url}/{MANIFEST_NAME}")
        resp.raise_for_status()
        manifest_text = resp.text
        manifest = ModelManifest.from_json(manifest_text)
        self._cache_dir.mkdir(parents=True, exist_ok=True)
        for shard in manifest.weights:
            r = client.get(f"{self._base_url}/{shard}")
            r.raise_for_status()
            (self._cache_dir / shard).write_bytes(r.content)
        # Manifest last, so a partial download never looks complete
        (self._cache_dir / MANIFEST_NAME).write_text(manifest_text, encoding="utf-8")
        get_logger().info(
            "artifacts_downloaded url=%s shards=%d dest=%s",
            self._base_url,
            len(manifest.weights),
            self._cache_dir.as_posix(),
        )
        return self._cache_dir


def load_artifacts(sources: Sequence[ArtifactSource]) -> LoadedModel | LoadFailure:
    logger = get_logger()
    attempts: list[str] = []
    for src in sources:
        try:
            directory = src.fetch()
            return load_model_dir(directory, source=src.name)
        except LOAD_ERRORS as exc:
            logger.warning("artifact_source_failed source=%s error=%s", src.name, exc)
            attempts.append(f"{src.name}: {exc}")
    return LoadFailure(attempts=tuple(attempts))


def load_model_dir(directory: Path, *, source: str) -> LoadedModel:
    manifest = ModelManifest.from_path(directory / MANIFEST_NAME)
    sd = load_shards([directory / w for w in manifest.weights])
    model = build_model(arch=manifest.arch, n_classes=manifest.n_classes)
    # strict=True: missing or unexpected keys and shape mismatches raise RuntimeError
    model.load_state_dict(sd, strict=True)
    model.eval()
    return LoadedModel(model=model, manifest=manifest, source=source)


def load_shards(paths: Sequence[Path]) -> dict[str, Tensor]:
    merged: dict[str, Tensor] = {}
    for path in paths:
        for k, v in _load_state_dict_file(path).items():
            if k in merged:
                raise ValueError(f"tensor {k} appears in more than one shard")
            merged[k] = v
    if not merged:
        raise ValueError("weight shards are empty")
    return merged


if TYPE_CHECKING:

    def _load_state_dict_file(path: Path) -> dict[str, Tensor]: ...
else:

    def _load_state_dict_file(path: Path) -> dict[str, Tensor]:
        obj = torch.load(path.as_posix(), map_location=torch.device("cpu"), weights_only=True)
        sd_obj = obj["state_dict"] if isinstance(obj, dict) and "state_dict" in obj else obj
        if not isinstance(sd_obj, dict):
            raise ValueError(f"{path.name} did not contain a dict")
        out: dict[str, Tensor] = {}
        for k, v in sd_obj.items():
            if isinstance(k, str) and torch.is_tensor(v):
                out[k] = v
            else:
                raise ValueError(f"invalid state dict entry in {path.name}")
        return out


if TYPE_CHECKING:

    def build_model(arch: str, n_classes: int) -> TorchModel: ...
else:

    def build_model(arch: str, n_classes: int) -> TorchModel:
        if arch not in _ARCHS:
            raise ValueError(f"unsupported arch: {arch}")
        from torchvision import models as tv_models

        fn_obj = getattr(tv_models, arch, None)
        if not callable(fn_obj):
            raise RuntimeError(f"torchvision.models.{arch} is not callable")
        return fn_obj(weights=None, num_classes=int(n_classes))


def build_fresh_state_dict(arch: str, n_classes: int = N_CLASSES) -> dict[str, Tensor]:
    """Randomly initialized weights for ``arch``, in the shape a shard must have."""
    m = build_model(arch=arch, n_classes=n_classes)
    if not isinstance(m, nn.Module):
        raise RuntimeError("model builder did not return a torch module")
    return {k: v for k, v in m.state_dict().items() if torch.is_tensor(v)}


class _PlaceholderNet(nn.Module):
    def __init__(self, n_classes: int) -> None:
        super().__init__()
        self.pool = nn.AdaptiveAvgPool2d(1)
        self.head = nn.Linear(3, n_classes)

    def forward(self, x: Tensor) -> Tensor:
        return self.head(torch.flatten(self.pool(x), 1))


def placeholder_model(input_size: int = 224) -> LoadedModel:
    """Untrained stand-in used only when degraded mode is switched on."""
    manifest = ModelManifest(
        schema_version="v1",
        model_id="placeholder",
        arch="placeholder",
        n_classes=N_CLASSES,
        input_size=input_size,
        input_scale="unit",
        output="logits",
        weights=(),
        version="0",
        created_at=datetime.now(UTC),
        val_acc=0.0,
    )
    net = _PlaceholderNet(N_CLASSES)
    net.eval()
    return LoadedModel(model=net, manifest=manifest, source="placeholder")
