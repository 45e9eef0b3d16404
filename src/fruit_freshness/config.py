from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Final

_DEFAULT_CONFIG_PATH: Final[Path] = Path("config/freshness.toml")
DECODER_NAMES: Final[tuple[str, ...]] = ("pillow", "torchvision")


@dataclass(frozen=True)
class AppConfig:
    port: int = 8081


@dataclass(frozen=True)
class ModelConfig:
    model_dir: Path = Path("/data/freshness/models")
    active_model: str = "fruit_freshness_effnet_b1_v1"
    # Development-time fallback; empty disables the network source
    fallback_url: str = ""
    cache_dir: Path = Path("/data/freshness/cache")
    decoder: str = "pillow"
    degraded_mode: bool = False
    max_image_mb: int = 10
    max_image_side_px: int = 8192


@dataclass(frozen=True)
class SecurityConfig:
    # Empty string disables check
    api_key: str = ""


@dataclass(frozen=True)
class Settings:
    app: AppConfig
    model: ModelConfig
    security: SecurityConfig

    @staticmethod
    def _toml_path() -> Path:
        env_val = os.getenv("FRESHNESS_CONFIG")
        if env_val:
            return Path(env_val)
        return _DEFAULT_CONFIG_PATH

    @classmethod
    def load(cls) -> Settings:
        # Env first, TOML values win where present.
        base = cls(
            app=_load_app_from_env(),
            model=_load_model_from_env(),
            security=_load_security_from_env(),
        )
        cfg_path = cls._toml_path()
        if not cfg_path.exists():
            return base
        try:
            raw: object = tomllib.loads(cfg_path.read_text(encoding="utf-8"))
        except OSError as exc:
            raise RuntimeError(f"Failed to read config TOML: {cfg_path}") from exc
        except tomllib.TOMLDecodeError as exc:
            raise RuntimeError(f"Invalid TOML config: {cfg_path}") from exc
        return cls(
            app=_merge_app(base.app, _toml_table(raw, "app")),
            model=_merge_model(base.model, _toml_table(raw, "model")),
            security=_merge_security(base.security, _toml_table(raw, "security")),
        )


def _check_port(p: int) -> int:
    if not (1 <= p <= 65535):
        raise RuntimeError("port out of range")
    return p


def _check_decoder(name: str) -> str:
    n = name.strip().lower()
    if n not in DECODER_NAMES:
        raise RuntimeError(f"unknown decoder: {name}")
    return n


def _truthy(v: str) -> bool:
    return v.strip().lower() in {"1", "true", "yes", "on", "y"}


def _load_app_from_env() -> AppConfig:
    a = AppConfig()
    pt = os.getenv("APP__PORT")
    if pt is not None and pt.isdigit():
        a = replace(a, port=_check_port(int(pt)))
    return a


def _load_model_from_env() -> ModelConfig:
    m = ModelConfig()
    md = os.getenv("MODEL__MODEL_DIR")
    am = os.getenv("MODEL__ACTIVE_MODEL")
    fu = os.getenv("MODEL__FALLBACK_URL")
    cd = os.getenv("MODEL__CACHE_DIR")
    dec = os.getenv("MODEL__DECODER")
    dm = os.getenv("MODEL__DEGRADED_MODE")
    mb = os.getenv("MODEL__MAX_IMAGE_MB")
    mx = os.getenv("MODEL__MAX_IMAGE_SIDE_PX")
    if md:
        m = replace(m, model_dir=Path(md))
    if am:
        m = replace(m, active_model=am)
    if fu is not None:
        m = replace(m, fallback_url=fu.strip())
    if cd:
        m = replace(m, cache_dir=Path(cd))
    if dec:
        m = replace(m, decoder=_check_decoder(dec))
    if dm is not None:
        m = replace(m, degraded_mode=_truthy(dm))
    if mb is not None:
        m = replace(m, max_image_mb=int(mb))
    if mx is not None:
        m = replace(m, max_image_side_px=int(mx))
    return m


def _load_security_from_env() -> SecurityConfig:
    s = SecurityConfig()
    key = os.getenv("SECURITY__API_KEY")
    if key is not None:
        s = replace(s, api_key=key)
    return s


def _merge_app(base: AppConfig, data: dict[str, object]) -> AppConfig:
    out = base
    if "port" in data:
        out = replace(out, port=_check_port(int(str(data["port"]))))
    return out


def _merge_model(base: ModelConfig, data: dict[str, object]) -> ModelConfig:
    out = base
    if "model_dir" in data:
        out = replace(out, model_dir=Path(str(data["model_dir"])))
    if "active_model" in data:
        out = replace(out, active_model=str(data["active_model"]))
    if "fallback_url" in data:
        out = replace(out, fallback_url=str(data["fallback_url"]).strip())
    if "cache_dir" in data:
        out = replace(out, cache_dir=Path(str(data["cache_dir"])))
    if "decoder" in data:
        out = replace(out, decoder=_check_decoder(str(data["decoder"])))
    degraded = data.get("degraded_mode")
    if isinstance(degraded, bool):
        out = replace(out, degraded_mode=degraded)
    elif degraded is not None:
        raise RuntimeError("model.degraded_mode must be a boolean")
    if "max_image_mb" in data:
        out = replace(out, max_image_mb=int(str(data["max_image_mb"])))
    if "max_image_side_px" in data:
        out = replace(out, max_image_side_px=int(str(data["max_image_side_px"])))
    return out


def _toml_table(raw: object, key: str) -> dict[str, object]:
    if isinstance(raw, dict):
        tab: object = raw.get(key, {})
        if isinstance(tab, dict):
            return {str(k): v for k, v in tab.items()}
    return {}


def _merge_security(base: SecurityConfig, data: dict[str, object]) -> SecurityConfig:
    out = base
    api_key_val = data.get("api_key")
    if isinstance(api_key_val, str):
        out = replace(out, api_key=api_key_val)
    enabled = data.get("api_key_enabled")
    if isinstance(enabled, bool) and not enabled:
        out = replace(out, api_key="")
    return out


@dataclass(frozen=True)
class Limits:
    max_bytes: int
    max_side_px: int

    @staticmethod
    def from_settings(s: Settings) -> Limits:
        return Limits(
            max_bytes=int(s.model.max_image_mb) * 1024 * 1024,
            max_side_px=int(s.model.max_image_side_px),
        )
