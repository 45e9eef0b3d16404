from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Final, Literal

from .labels import N_CLASSES, label_names
from .types import InputScale, InputSpec

OutputKind = Literal["logits", "probs"]

_SCHEMA_VERSIONS: Final[tuple[str, ...]] = ("v1",)
_INPUT_SCALES: Final[tuple[str, ...]] = ("unit", "raw")
_OUTPUT_KINDS: Final[tuple[str, ...]] = ("logits", "probs")


@dataclass(frozen=True)
class ModelManifest:
    schema_version: str
    model_id: str
    arch: str
    n_classes: int
    input_size: int
    input_scale: InputScale
    output: OutputKind
    weights: tuple[str, ...]
    version: str
    created_at: datetime
    val_acc: float

    @property
    def input_spec(self) -> InputSpec:
        return InputSpec(size=self.input_size, scale=self.input_scale)

    @staticmethod
    def from_path(path: Path) -> ModelManifest:
        return ModelManifest.from_json(path.read_text(encoding="utf-8"))

    @staticmethod
    def from_json(s: str) -> ModelManifest:
        obj: object = json.loads(s)
        if not isinstance(obj, dict):
            raise ValueError("manifest must be a JSON object")
        data: dict[str, object] = {str(k): v for k, v in obj.items()}
        return ModelManifest.from_dict(data)

    @staticmethod
    def from_dict(d: dict[str, object]) -> ModelManifest:
        schema_version = str(d.get("schema_version", "")).strip()
        model_id = str(d.get("model_id", "")).strip()
        arch = str(d.get("arch", "")).strip()
        version = str(d.get("version", "")).strip()
        if not schema_version or not model_id or not arch or not version:
            raise ValueError("manifest is missing required fields")
        if schema_version not in _SCHEMA_VERSIONS:
            raise ValueError("unsupported manifest schema version")

        n_classes = int(str(d.get("n_classes", N_CLASSES)))
        if n_classes != N_CLASSES:
            raise ValueError(f"n_classes must be {N_CLASSES}")
        labels = d.get("labels")
        if labels is not None:
            if not isinstance(labels, list) or tuple(str(x) for x in labels) != label_names():
                raise ValueError("manifest labels do not match the class table order")

        input_size = int(str(d.get("input_size", 0)))
        if input_size <= 0:
            raise ValueError("input_size must be > 0")
        # No default: a wrong value range silently degrades every prediction.
        scale = str(d.get("input_scale", "")).strip()
        if scale not in _INPUT_SCALES:
            raise ValueError("input_scale must be 'unit' or 'raw'")
        output = str(d.get("output", "logits")).strip()
        if output not in _OUTPUT_KINDS:
            raise ValueError("output must be 'logits' or 'probs'")

        weights = _parse_weights(d.get("weights"))

        created_at_str = str(d["created_at"]) if "created_at" in d else ""
        created = datetime.fromisoformat(created_at_str) if created_at_str else datetime.now()
        val_acc = float(str(d.get("val_acc", 0.0)))
        if not (0.0 <= val_acc <= 1.0):
            raise ValueError("val_acc must be within [0,1]")
        return ModelManifest(
            schema_version=schema_version,
            model_id=model_id,
            arch=arch,
            n_classes=n_classes,
            input_size=input_size,
            input_scale="unit" if scale == "unit" else "raw",
            output="logits" if output == "logits" else "probs",
            weights=weights,
            version=version,
            created_at=created,
            val_acc=val_acc,
        )


def _parse_weights(raw: object) -> tuple[str, ...]:
    if not isinstance(raw, list) or not raw:
        raise ValueError("weights must be a non-empty list of shard names")
    names: list[str] = []
    for item in raw:
        name = str(item).strip()
        if not name or "/" in name or "\\" in name or name in {".", ".."}:
            raise ValueError(f"invalid shard name: {item!r}")
        if name in names:
            raise ValueError(f"duplicate shard name: {name}")
        names.append(name)
    return tuple(names)
