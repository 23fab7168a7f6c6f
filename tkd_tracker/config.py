from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    database_url: str
    score_min: float
    score_max: float
    duplicate_window_seconds: float
    verify_retries: int
    lock_timeout_seconds: float
    log_level: str


def load_settings() -> Settings:
    return Settings(
        database_url=os.getenv("DATABASE_URL", "sqlite:///./tkd_tracker.db"),
        score_min=float(os.getenv("TKD_SCORE_MIN", "0")),
        score_max=float(os.getenv("TKD_SCORE_MAX", "10")),
        duplicate_window_seconds=float(os.getenv("TKD_DUPLICATE_WINDOW_SECONDS", "5")),
        verify_retries=int(os.getenv("TKD_VERIFY_RETRIES", "1")),
        lock_timeout_seconds=float(os.getenv("TKD_LOCK_TIMEOUT_SECONDS", "10")),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
    )


settings = load_settings()
