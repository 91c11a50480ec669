from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


def _env_str(name: str, default: str = "") -> str:
    return str(os.getenv(name, default) or default).strip()


def _env_float(name: str) -> float | None:
    raw = _env_str(name)
    if not raw:
        return None
    try:
        v = float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number (got={raw!r})")
    # 0 disables the timeout.
    return v if v > 0 else None


def _env_int(name: str, default: int) -> int:
    raw = _env_str(name)
    if not raw:
        return default
    try:
        v = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer (got={raw!r})")
    if v < 0:
        raise ValueError(f"{name} must be >= 0 (got={v})")
    return v


def default_catalog_path() -> Path:
    p = _env_str("GOALFLOW_CATALOG_PATH")
    if p:
        return Path(p)
    return Path(__file__).resolve().parents[1] / "goals" / "catalogs" / "delivery_v1.yaml"


@dataclass(frozen=True)
class EngineConfig:
    catalog_path: Path
    fulfillment_timeout_seconds: float | None
    log_level: str
    # Finished runs kept for lookup and idempotent resubmission; live runs are never dropped.
    retain_finished_runs: int = 100

    @classmethod
    def from_env(cls) -> "EngineConfig":
        return cls(
            catalog_path=default_catalog_path(),
            fulfillment_timeout_seconds=_env_float("GOALFLOW_FULFILLMENT_TIMEOUT_SECONDS"),
            log_level=_env_str("GOALFLOW_LOG_LEVEL", "INFO").upper() or "INFO",
            retain_finished_runs=_env_int("GOALFLOW_RETAIN_FINISHED_RUNS", 100),
        )
