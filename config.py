import logging
import os
import re
from dataclasses import dataclass
from typing import Mapping, Optional

from fixtures import parse_duration
from query_engine import DEFAULT_LOOKBACK_MS

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


def _parse_bool(name: str, raw: str) -> bool:
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ValueError(f"{name} must be a boolean, got {raw!r}")


def parse_origin(raw: str) -> str:
    try:
        re.compile(raw)
    except re.error as exc:
        raise ValueError(f"CORS_ORIGIN must be a regular expression, got {raw!r}: {exc}") from exc
    return raw


def parse_log_level(raw: str) -> str:
    level = raw.strip().upper()
    if not isinstance(logging.getLevelName(level), int):
        raise ValueError(f"LOG_LEVEL must be a logging level name, got {raw!r}")
    return level


@dataclass(frozen=True)
class Settings:
    fixture_file: Optional[str] = None
    eval_time_ms: int = 60_000
    lookback_ms: int = DEFAULT_LOOKBACK_MS
    honor_request_time: bool = False
    cors_origin: str = ".*"
    host: str = "127.0.0.1"
    port: int = 9090
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        try:
            port = int(env.get("PORT", "9090"))
        except ValueError as exc:
            raise ValueError(f"PORT must be an integer, got {env.get('PORT')!r}") from exc
        return cls(
            fixture_file=env.get("FIXTURE_FILE") or None,
            eval_time_ms=parse_duration(env.get("FIXTURE_EVAL_TIME", "1m")),
            lookback_ms=parse_duration(env.get("FIXTURE_LOOKBACK", "5m")),
            honor_request_time=_parse_bool("FIXTURE_HONOR_REQUEST_TIME", env.get("FIXTURE_HONOR_REQUEST_TIME", "false")),
            cors_origin=parse_origin(env.get("CORS_ORIGIN", ".*")),
            host=env.get("HOST", "127.0.0.1"),
            port=port,
            log_level=parse_log_level(env.get("LOG_LEVEL", "INFO")),
        )
