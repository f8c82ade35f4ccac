"""
Runtime settings for winecellar, read from environment variables.

    WINECELLAR_HOME           data root (default: $XDG_DATA_HOME/winecellar)
    WINECELLAR_LOCK_TIMEOUT   seconds to wait for an artifact/prefix lock
    WINECELLAR_RETRIES        attempts for network operations
    WINECELLAR_BACKOFF        base backoff in seconds (doubles per attempt)
    WINECELLAR_HTTP_TIMEOUT   per-request socket timeout
    WINECELLAR_RUN_TIMEOUT    overall deadline for one pipeline run
    WINECELLAR_LATEST_TTL     seconds a confirmed "latest" alias may be reused
    WINECELLAR_GITHUB_TOKEN   bearer token (falls back to GITHUB_TOKEN)
    WINECELLAR_DEBUG          verbose logging
"""

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Mapping, Optional

DEBUG_ENV_VAR = "WINECELLAR_DEBUG"


def _default_home(environ: Mapping[str, str]) -> Path:
    data_home = environ.get("XDG_DATA_HOME") or str(Path.home() / ".local" / "share")
    return Path(data_home) / "winecellar"


def _float(environ: Mapping[str, str], name: str, default: float) -> float:
    value = environ.get(name)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {value!r}")


def is_debug(environ: Optional[Mapping[str, str]] = None) -> bool:
    environ = os.environ if environ is None else environ
    return environ.get(DEBUG_ENV_VAR, "0").lower() not in ("0", "false", "no", "off", "")


@dataclass(frozen=True)
class Settings:
    home: Path
    lock_timeout: float = 600.0
    retries: int = 3
    backoff: float = 1.0
    http_timeout: float = 30.0
    run_timeout: float = 1800.0
    latest_ttl: float = 0.0
    github_token: Optional[str] = None
    home_pinned: bool = False  # WINECELLAR_HOME was set explicitly

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        environ = os.environ if environ is None else environ
        home = environ.get("WINECELLAR_HOME")
        return cls(
            home=Path(home).expanduser() if home else _default_home(environ),
            lock_timeout=_float(environ, "WINECELLAR_LOCK_TIMEOUT", 600.0),
            retries=max(1, int(_float(environ, "WINECELLAR_RETRIES", 3))),
            backoff=_float(environ, "WINECELLAR_BACKOFF", 1.0),
            http_timeout=_float(environ, "WINECELLAR_HTTP_TIMEOUT", 30.0),
            run_timeout=_float(environ, "WINECELLAR_RUN_TIMEOUT", 1800.0),
            latest_ttl=_float(environ, "WINECELLAR_LATEST_TTL", 0.0),
            github_token=environ.get("WINECELLAR_GITHUB_TOKEN") or environ.get("GITHUB_TOKEN") or None,
            home_pinned=bool(home),
        )

    def with_home(self, home: Optional[Path]) -> "Settings":
        """Manifest [paths].home wins over the environment default."""
        if home is None or self.home_pinned:
            return self
        return replace(self, home=Path(home).expanduser())
