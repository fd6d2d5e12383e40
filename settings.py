from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Callable, Optional, TypeVar

N = TypeVar("N", int, float)

_BACKEND_ENV = "TWIN_GRAPH_BACKEND"
_GRAPH_PATH_ENV = "TWIN_GRAPH_PERSISTENCE_PATH"
_ENDPOINT_ENV = "TWIN_GRAPH_ENDPOINT"
_API_VERSION_ENV = "TWIN_GRAPH_API_VERSION"
_TOKEN_ENV = "TWIN_GRAPH_TOKEN"
_TIMEOUT_ENV = "TWIN_GRAPH_TIMEOUT"
_SENSOR_MODEL_ENV = "TWIN_SENSOR_MODEL"
_RESULTS_PATH_ENV = "BATCH_RESULTS_PERSISTENCE_PATH"
_WORKER_COUNT_ENV = "PROCESSOR_WORKER_COUNT"
_FLUSH_ENV = "TWIN_FLUSH_EVENTS"
_LOG_LEVEL_ENV = "LOG_LEVEL"

_BACKENDS = {"local", "http"}
_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class Settings:
    graph_backend: str
    graph_persistence_path: Optional[str]
    graph_endpoint: Optional[str]
    graph_api_version: str
    graph_token: Optional[str]
    graph_timeout: float
    sensor_model: str
    results_persistence_path: Optional[str]
    processor_workers: int
    flush_events: bool
    log_level: str


def _read_str_env(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    return candidate or default


def _read_optional_env(name: str, default: Optional[str]) -> Optional[str]:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    return candidate or None


def _read_backend(default: str) -> str:
    candidate = _read_str_env(_BACKEND_ENV, default).lower()
    return candidate if candidate in _BACKENDS else default


def _read_positive(name: str, default: N, cast: Callable[[str], N]) -> N:
    """Parse a strictly positive number; anything else yields ``default``."""
    candidate = (os.getenv(name) or "").strip()
    if not candidate:
        return default
    try:
        parsed = cast(candidate)
    except ValueError:
        return default
    return parsed if parsed > 0 else default


def _read_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip().lower()
    if candidate in _TRUTHY:
        return True
    if candidate in _FALSY:
        return False
    return default


def _read_log_level(default: str) -> str:
    return _read_str_env(_LOG_LEVEL_ENV, default).upper()


@lru_cache
def get_settings() -> Settings:
    return Settings(
        graph_backend=_read_backend("local"),
        graph_persistence_path=_read_optional_env(_GRAPH_PATH_ENV, "./tmp/twin_graph.json"),
        graph_endpoint=_read_optional_env(_ENDPOINT_ENV, None),
        graph_api_version=_read_str_env(_API_VERSION_ENV, "2020-10-31"),
        graph_token=_read_optional_env(_TOKEN_ENV, None),
        graph_timeout=_read_positive(_TIMEOUT_ENV, 30.0, float),
        sensor_model=_read_str_env(_SENSOR_MODEL_ENV, "dtmi:adt:chb:Sensor;1"),
        results_persistence_path=_read_optional_env(
            _RESULTS_PATH_ENV, "./tmp/batch_results.json"
        ),
        processor_workers=_read_positive(_WORKER_COUNT_ENV, 4, int),
        flush_events=_read_flag(_FLUSH_ENV, False),
        log_level=_read_log_level("INFO"),
    )
