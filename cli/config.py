from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

DEFAULT_BASE_URL = "http://localhost:8000"
DEFAULT_POLL_INTERVAL = 0.25
DEFAULT_TIMEOUT = 30.0

_BASE_URL_ENV = "API_BASE_URL"
_POLL_INTERVAL_ENV = "CLI_POLL_INTERVAL"
_TIMEOUT_ENV = "CLI_POLL_TIMEOUT"


@dataclass(frozen=True)
class CLIConfig:
    base_url: str = DEFAULT_BASE_URL
    poll_interval: float = DEFAULT_POLL_INTERVAL
    poll_timeout: float = DEFAULT_TIMEOUT


def _positive_float(explicit: Optional[float], env_name: str, default: float) -> float:
    """Explicit flag first, then the environment, then ``default``.

    Non-positive or unparsable values fall through to the next source.
    """
    if explicit is not None and explicit > 0:
        return explicit
    raw = (os.getenv(env_name) or "").strip()
    try:
        parsed = float(raw) if raw else default
    except ValueError:
        return default
    return parsed if parsed > 0 else default


def load_config(
    base_url: Optional[str] = None,
    poll_interval: Optional[float] = None,
    poll_timeout: Optional[float] = None,
) -> CLIConfig:
    url = (base_url or os.getenv(_BASE_URL_ENV) or DEFAULT_BASE_URL).strip()
    return CLIConfig(
        base_url=url.rstrip("/"),
        poll_interval=_positive_float(poll_interval, _POLL_INTERVAL_ENV, DEFAULT_POLL_INTERVAL),
        poll_timeout=_positive_float(poll_timeout, _TIMEOUT_ENV, DEFAULT_TIMEOUT),
    )
