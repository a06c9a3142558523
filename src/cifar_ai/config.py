from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Final

_DEFAULT_CONFIG_PATH: Final[Path] = Path("config/cifar.toml")
_DEFAULT_SOURCES: Final[tuple[str, ...]] = (
    "https://abhinav00215-hash.github.io/mtech/",
    "https://raw.githubusercontent.com/abhinav00215-hash/mtech/main/",
)


@dataclass(frozen=True)
class AppConfig:
    threads: int = 0
    port: int = 8081


@dataclass(frozen=True)
class ModelConfig:
    # Tried in order; later entries are fallbacks
    sources: tuple[str, ...] = _DEFAULT_SOURCES
    weight_path_prefix: str = ""
    fetch_timeout_seconds: float = 30.0
    no_cache: bool = True
    max_fetch_workers: int = 4
    preload: bool = True


@dataclass(frozen=True)
class ClassifyConfig:
    top_k: int = 3
    min_secondary_probability: float = 0.0
    check_mime: bool = True
    max_image_mb: int = 5
    max_image_side_px: int = 4096
    predict_timeout_seconds: int = 5


@dataclass(frozen=True)
class SecurityConfig:
    # Empty string disables the check
    api_key: str = ""


@dataclass(frozen=True)
class Settings:
    app: AppConfig
    model: ModelConfig
    classify: ClassifyConfig
    security: SecurityConfig

    @staticmethod
    def _toml_path() -> Path:
        env_val = os.getenv("CIFAR_CONFIG")
        if env_val:
            return Path(env_val)
        return _DEFAULT_CONFIG_PATH

    @classmethod
    def load(cls) -> Settings:
        # Load env first, then override from TOML if present.
        base = cls(
            app=_load_app_from_env(),
            model=_load_model_from_env(),
            classify=_load_classify_from_env(),
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
            classify=_merge_classify(base.classify, _toml_table(raw, "classify")),
            security=_merge_security(base.security, _toml_table(raw, "security")),
        )


def _truthy(v: str) -> bool:
    return v.strip().lower() in {"1", "true", "yes"}


def _check_port(p: int) -> int:
    if not (1 <= p <= 65535):
        raise RuntimeError("port out of range")
    return p


def _check_probability(p: float) -> float:
    if not (0.0 <= p <= 1.0):
        raise RuntimeError("min_secondary_probability must be within [0,1]")
    return p


def _split_sources(raw: str) -> tuple[str, ...]:
    return tuple(s.strip() for s in raw.split(",") if s.strip())


def _load_app_from_env() -> AppConfig:
    a = AppConfig()
    th = os.getenv("APP__THREADS")
    pt = os.getenv("APP__PORT")
    if th is not None and th.isdigit():
        a = replace(a, threads=int(th))
    if pt is not None and pt.isdigit():
        a = replace(a, port=_check_port(int(pt)))
    return a


def _load_model_from_env() -> ModelConfig:
    m = ModelConfig()
    src = os.getenv("MODEL__SOURCES")
    wp = os.getenv("MODEL__WEIGHT_PATH_PREFIX")
    to = os.getenv("MODEL__FETCH_TIMEOUT_SECONDS")
    nc = os.getenv("MODEL__NO_CACHE")
    mw = os.getenv("MODEL__MAX_FETCH_WORKERS")
    pl = os.getenv("MODEL__PRELOAD")
    if src:
        sources = _split_sources(src)
        if not sources:
            raise RuntimeError("MODEL__SOURCES is empty")
        m = replace(m, sources=sources)
    if wp is not None:
        m = replace(m, weight_path_prefix=wp.strip())
    if to is not None:
        m = replace(m, fetch_timeout_seconds=float(to))
    if nc is not None:
        m = replace(m, no_cache=_truthy(nc))
    if mw is not None and mw.isdigit():
        m = replace(m, max_fetch_workers=max(1, int(mw)))
    if pl is not None:
        m = replace(m, preload=_truthy(pl))
    return m


def _load_classify_from_env() -> ClassifyConfig:
    c = ClassifyConfig()
    tk = os.getenv("CLASSIFY__TOP_K")
    mp = os.getenv("CLASSIFY__MIN_SECONDARY_PROBABILITY")
    cm = os.getenv("CLASSIFY__CHECK_MIME")
    mb = os.getenv("CLASSIFY__MAX_IMAGE_MB")
    mx = os.getenv("CLASSIFY__MAX_IMAGE_SIDE_PX")
    to = os.getenv("CLASSIFY__PREDICT_TIMEOUT_SECONDS")
    if tk is not None:
        c = replace(c, top_k=int(tk))
    if mp is not None:
        c = replace(c, min_secondary_probability=_check_probability(float(mp)))
    if cm is not None:
        c = replace(c, check_mime=_truthy(cm))
    if mb is not None:
        c = replace(c, max_image_mb=int(mb))
    if mx is not None:
        c = replace(c, max_image_side_px=int(mx))
    if to is not None:
        c = replace(c, predict_timeout_seconds=int(to))
    return c


def _load_security_from_env() -> SecurityConfig:
    s = SecurityConfig()
    key = os.getenv("SECURITY__API_KEY")
    if key is not None:
        s = replace(s, api_key=key)
    return s


def _merge_app(base: AppConfig, data: dict[str, object]) -> AppConfig:
    out = base
    if "threads" in data:
        out = replace(out, threads=int(str(data["threads"])))
    if "port" in data:
        out = replace(out, port=_check_port(int(str(data["port"]))))
    return out


def _merge_model(base: ModelConfig, data: dict[str, object]) -> ModelConfig:
    out = base
    if "sources" in data:
        raw = data["sources"]
        if isinstance(raw, list):
            sources = tuple(str(s).strip() for s in raw if str(s).strip())
        else:
            sources = _split_sources(str(raw))
        if not sources:
            raise RuntimeError("model.sources is empty")
        out = replace(out, sources=sources)
    if "weight_path_prefix" in data:
        out = replace(out, weight_path_prefix=str(data["weight_path_prefix"]).strip())
    if "fetch_timeout_seconds" in data:
        out = replace(out, fetch_timeout_seconds=float(str(data["fetch_timeout_seconds"])))
    if "no_cache" in data:
        out = replace(out, no_cache=bool(data["no_cache"]))
    if "max_fetch_workers" in data:
        out = replace(out, max_fetch_workers=max(1, int(str(data["max_fetch_workers"]))))
    if "preload" in data:
        out = replace(out, preload=bool(data["preload"]))
    return out


def _merge_classify(base: ClassifyConfig, data: dict[str, object]) -> ClassifyConfig:
    out = base
    if "top_k" in data:
        out = replace(out, top_k=int(str(data["top_k"])))
    if "min_secondary_probability" in data:
        p = _check_probability(float(str(data["min_secondary_probability"])))
        out = replace(out, min_secondary_probability=p)
    if "check_mime" in data:
        out = replace(out, check_mime=bool(data["check_mime"]))
    if "max_image_mb" in data:
        out = replace(out, max_image_mb=int(str(data["max_image_mb"])))
    if "max_image_side_px" in data:
        out = replace(out, max_image_side_px=int(str(data["max_image_side_px"])))
    if "predict_timeout_seconds" in data:
        out = replace(out, predict_timeout_seconds=int(str(data["predict_timeout_seconds"])))
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


def default_settings() -> Settings:
    return Settings(
        app=AppConfig(), model=ModelConfig(), classify=ClassifyConfig(), security=SecurityConfig()
    )


@dataclass(frozen=True)
class Limits:
    max_bytes: int
    max_side_px: int

    @staticmethod
    def from_settings(s: Settings) -> Limits:
        return Limits(
            max_bytes=int(s.classify.max_image_mb) * 1024 * 1024,
            max_side_px=int(s.classify.max_image_side_px),
        )
