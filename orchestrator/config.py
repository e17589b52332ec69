"""Runtime configuration read from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import timedelta, timezone, tzinfo
from pathlib import Path
from typing import List, Mapping, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from notifications.dispatcher import BROADCAST_MODES, BROADCAST_TRANSIENT

STORE_BACKENDS = ("memory", "firestore")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _zone(name: str) -> tzinfo:
    if name.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(name)


def _int(env: Mapping[str, str], key: str, default: int, *, minimum: int = 0) -> int:
    raw = env.get(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValueError(f"{key} must be an integer, got {raw!r}") from exc
    if value < minimum:
        raise ValueError(f"{key} must be >= {minimum}, got {value}")
    return value


def _choice(env: Mapping[str, str], key: str, default: str, choices) -> str:
    value = (env.get(key) or default).strip()
    if value not in choices:
        raise ValueError(f"{key} must be one of {', '.join(choices)}, got {value!r}")
    return value


@dataclass(frozen=True)
class Settings:
    """Service settings. ``from_env`` validates every value up front."""

    host: str = "0.0.0.0"
    port: int = 5000
    store_backend: str = "memory"
    firestore_project_id: Optional[str] = None
    firestore_database: str = "(default)"
    firestore_emulator_host: Optional[str] = None
    firestore_access_token: Optional[str] = None
    firestore_timeout: int = 30
    sweep_interval_seconds: int = 60
    expiry_grace_seconds: int = 60
    broadcast_mode: str = BROADCAST_TRANSIENT
    clinic_timezone: str = "UTC"
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    task_log_path: Optional[Path] = None
    log_level: str = "INFO"

    @property
    def expiry_grace(self) -> timedelta:
        return timedelta(seconds=self.expiry_grace_seconds)

    @property
    def tz(self) -> tzinfo:
        return _zone(self.clinic_timezone)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if env is None else env

        store_backend = _choice(env, "STORE_BACKEND", "memory", STORE_BACKENDS)
        project_id = env.get("FIRESTORE_PROJECT_ID") or None
        if store_backend == "firestore" and not project_id:
            raise ValueError("FIRESTORE_PROJECT_ID is required when STORE_BACKEND=firestore")

        clinic_timezone = env.get("CLINIC_TIMEZONE") or "UTC"
        try:
            _zone(clinic_timezone)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"CLINIC_TIMEZONE {clinic_timezone!r} is not a known timezone") from exc

        origins = [item.strip() for item in (env.get("CORS_ORIGINS") or "*").split(",") if item.strip()]
        task_log = env.get("TASK_LOG_PATH")
        log_level = (env.get("LOG_LEVEL") or "INFO").strip().upper()
        if log_level not in LOG_LEVELS:
            raise ValueError(f"LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}, got {log_level!r}")

        return cls(
            host=env.get("HOST") or "0.0.0.0",
            port=_int(env, "PORT", 5000, minimum=1),
            store_backend=store_backend,
            firestore_project_id=project_id,
            firestore_database=env.get("FIRESTORE_DATABASE") or "(default)",
            firestore_emulator_host=env.get("FIRESTORE_EMULATOR_HOST") or None,
            firestore_access_token=env.get("FIRESTORE_ACCESS_TOKEN") or None,
            firestore_timeout=_int(env, "FIRESTORE_TIMEOUT", 30, minimum=1),
            sweep_interval_seconds=_int(env, "SWEEP_INTERVAL_SECONDS", 60, minimum=1),
            expiry_grace_seconds=_int(env, "EXPIRY_GRACE_SECONDS", 60),
            broadcast_mode=_choice(env, "BROADCAST_MODE", BROADCAST_TRANSIENT, BROADCAST_MODES),
            clinic_timezone=clinic_timezone,
            cors_origins=origins or ["*"],
            task_log_path=Path(task_log) if task_log else None,
            log_level=log_level,
        )
