"""Configuration loading, validation, and access."""

from __future__ import annotations

import os
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from pydantic import BaseModel, ConfigDict, field_validator

from quotefeed.core.exceptions import ConfigError
from quotefeed.core.models import ProviderName, StorageBackend

# Upstream caps one real-time request at 100 symbols
MAX_BATCH_SIZE = 100


class HttpConfig(BaseModel):
    """Transport settings shared by every upstream call."""

    model_config = ConfigDict(frozen=True)

    user_agent: str = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"
    )
    request_timeout: float = 10.0
    max_retries: int = 2
    retry_interval: float = 0.05
    backoff_factor: float = 2.0
    retry_jitter: float = 0.5
    rate_limit: int = 10
    max_concurrency: int = 4

    @field_validator("request_timeout")
    @classmethod
    def timeout_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("request_timeout must be > 0")
        return v

    @field_validator("max_retries")
    @classmethod
    def retries_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("max_retries must be >= 0")
        return v

    @field_validator("retry_jitter")
    @classmethod
    def jitter_fraction(cls, v: float) -> float:
        if v < 0 or v > 1:
            raise ValueError("retry_jitter must be between 0 and 1")
        return v

    @field_validator("rate_limit", "max_concurrency")
    @classmethod
    def at_least_one(cls, v: int) -> int:
        if v < 1:
            raise ValueError("rate_limit and max_concurrency must be >= 1")
        return v


class ProviderConfig(BaseModel):
    """Which upstream to use and where it lives."""

    model_config = ConfigDict(frozen=True)

    name: ProviderName | None = ProviderName.TENCENT
    quote_url: str = "http://qt.gtimg.cn"
    history_url: str = "http://web.ifzq.gtimg.cn/appstock/app/kline/kline"
    search_url: str = "https://proxy.finance.qq.com/cgi/cgi-bin/smartbox/search"
    batch_size: int = MAX_BATCH_SIZE
    history_limit: int = 640
    base_currency: str = "CNY"
    market_timezone: str = "Asia/Shanghai"

    @field_validator("batch_size")
    @classmethod
    def batch_size_within_cap(cls, v: int) -> int:
        if v < 1 or v > MAX_BATCH_SIZE:
            raise ValueError(f"batch_size must be between 1 and {MAX_BATCH_SIZE}")
        return v

    @field_validator("quote_url", "history_url", "search_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @field_validator("base_currency")
    @classmethod
    def currency_code(cls, v: str) -> str:
        v = v.strip().upper()
        if len(v) != 3 or not v.isalpha():
            raise ValueError("base_currency must be a 3-letter ISO code")
        return v

    @field_validator("market_timezone")
    @classmethod
    def known_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"unknown market_timezone: {v}") from e
        return v


class StorageConfig(BaseModel):
    """Storage backend configuration."""

    model_config = ConfigDict(frozen=True)

    backend: StorageBackend = StorageBackend.SQLITE
    sqlite_path: str = "./data/quotefeed.db"


class FeedConfig(BaseModel):
    """Root configuration for quotefeed."""

    model_config = ConfigDict(frozen=True)

    provider: ProviderConfig = ProviderConfig()
    http: HttpConfig = HttpConfig()
    storage: StorageConfig = StorageConfig()


def load_config(
    config_path: str | None = None,
    env_prefix: str = "QUOTEFEED_",
) -> FeedConfig:
    """Build a FeedConfig from defaults, an optional YAML file and the environment.

    Later sources win: built-in defaults, then the YAML file (``config_path``,
    else ``$QUOTEFEED_CONFIG``, else ``./quotefeed.yml`` if present), then
    ``QUOTEFEED_<SECTION>__<KEY>`` environment variables, e.g.
    ``QUOTEFEED_HTTP__MAX_RETRIES=3``.

    Raises:
        ConfigError: The file is missing or unreadable, or a value fails
            validation.
    """
    try:
        path = _find_config_file(config_path)
        settings = _read_yaml(path) if path is not None else {}
        return FeedConfig.model_validate(_overlay_env(settings, env_prefix))
    except ConfigError:
        raise
    except Exception as e:
        raise ConfigError(str(e), context={"source": "load_config"}) from e


def _find_config_file(explicit: str | None) -> Path | None:
    candidates = (
        ("config_path", explicit),
        ("QUOTEFEED_CONFIG", os.environ.get("QUOTEFEED_CONFIG") or None),
    )
    for origin, raw in candidates:
        if raw is None:
            continue
        path = Path(raw)
        if not path.exists():
            raise ConfigError(
                f"Config file not found: {raw} (from {origin})",
                context={"field": origin, "value": raw},
            )
        return path

    fallback = Path("quotefeed.yml")
    return fallback if fallback.exists() else None


def _read_yaml(path: Path) -> dict:
    try:
        data = yaml.safe_load(path.read_text())
    except yaml.YAMLError as e:
        raise ConfigError(
            f"Invalid YAML in {path}: {e}",
            context={"field": "config_file", "value": str(path)},
        ) from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(
            f"Top level of {path} must be a mapping, not {type(data).__name__}",
            context={"field": "config_file", "value": str(path)},
        )
    return data


def _overlay_env(settings: dict, prefix: str) -> dict:
    """Return a copy of ``settings`` with ``PREFIX_A__B`` variables set at ``a.b``."""
    merged = dict(settings)
    for name, raw in os.environ.items():
        if not name.startswith(prefix):
            continue
        path = name[len(prefix) :].lower().split("__")
        if path == ["config"]:
            continue

        node = merged
        for section in path[:-1]:
            child = node.get(section)
            node[section] = dict(child) if isinstance(child, dict) else {}
            node = node[section]
        node[path[-1]] = _coerce(raw)
    return merged


def _coerce(raw: str) -> str | int | float | bool | None:
    """Environment strings to bool / None / int / float where they look like one."""
    keyword = raw.strip().lower()
    if keyword in ("true", "false"):
        return keyword == "true"
    if keyword in ("none", "null"):
        return None
    for number in (int, float):
        try:
            return number(raw)
        except ValueError:
            continue
    return raw
