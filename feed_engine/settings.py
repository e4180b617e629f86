"""
Engine settings, read from `FEED_ENGINE_*` environment variables (and an
optional `.env` file).

Each config field maps to `FEED_ENGINE_<SECTION>_<FIELD>`, e.g.
`FEED_ENGINE_CACHE_MAX_ENTRIES=500` or `FEED_ENGINE_PRELOADER_REFRESH_INTERVAL=900`.
Tuple fields take comma-separated values.
"""
from __future__ import annotations

import dataclasses
import os
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Type, TypeVar

from dotenv import load_dotenv

from .cache import CacheConfig
from .fetcher import DEFAULT_USER_AGENT
from .parser import ParserConfig
from .preloader import PreloaderConfig

ENV_PREFIX = "FEED_ENGINE_"

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}

T = TypeVar("T")


def _type_name(f: dataclasses.Field) -> str:
    # Annotations are strings here (postponed evaluation).
    return f.type if isinstance(f.type, str) else getattr(f.type, "__name__", "")


def _coerce(raw: str, kind: str, name: str) -> Any:
    raw = raw.strip()
    if kind == "bool":
        low = raw.lower()
        if low in _TRUE:
            return True
        if low in _FALSE:
            return False
        raise ValueError(f"{name}: expected a boolean, got {raw!r}")
    if kind == "int":
        return int(raw)
    if kind == "float":
        return float(raw)
    if kind.lower().startswith("tuple"):
        return tuple(p.strip() for p in raw.split(",") if p.strip())
    return raw


def _section(cls: Type[T], section: str, env: Mapping[str, str]) -> T:
    values = {}
    for f in dataclasses.fields(cls):  # type: ignore[arg-type]
        name = f"{ENV_PREFIX}{section}_{f.name.upper()}"
        raw = env.get(name)
        if raw is None:
            continue
        values[f.name] = _coerce(raw, _type_name(f), name)
    return cls(**values)


@dataclass(frozen=True)
class EngineSettings:
    cache: CacheConfig = field(default_factory=CacheConfig)
    parser: ParserConfig = field(default_factory=ParserConfig)
    preloader: PreloaderConfig = field(default_factory=PreloaderConfig)
    log_level: str = "INFO"
    storage_dir: Optional[str] = None
    user_agent: str = DEFAULT_USER_AGENT

    @classmethod
    def from_env(cls, env_file: Optional[str] = None,
                 environ: Optional[Mapping[str, str]] = None) -> "EngineSettings":
        """
        Build settings from the environment. A `.env` file (or `env_file`) is
        loaded first unless an explicit `environ` mapping is given.
        """
        if environ is None:
            load_dotenv(env_file)
            environ = os.environ

        return cls(
            cache=_section(CacheConfig, "CACHE", environ),
            parser=_section(ParserConfig, "PARSER", environ),
            preloader=_section(PreloaderConfig, "PRELOADER", environ),
            log_level=environ.get(f"{ENV_PREFIX}LOG_LEVEL", "INFO"),
            storage_dir=environ.get(f"{ENV_PREFIX}STORAGE_DIR") or None,
            user_agent=environ.get(f"{ENV_PREFIX}USER_AGENT") or DEFAULT_USER_AGENT,
        )
