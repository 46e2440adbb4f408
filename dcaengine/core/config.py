# dcaengine/core/config.py
from __future__ import annotations

import json
import logging
from typing import Any, List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

log = logging.getLogger("dcaengine.config")


DEFAULT_TRANSIENT_REASONS = [
    "insufficient funds",
    "rate limit",
    "too many requests",
    "timeout",
    "temporarily",
    "service unavailable",
]

DEFAULT_PERMANENT_REASONS = [
    "invalid",
    "permission denied",
    "unknown asset pair",
]


def _parse_list(v: Any, *, upper: bool = False) -> List[str]:
    """
    Accepts:
      - list: ["rate limit","timeout"]
      - csv:  "rate limit,timeout"
      - json: '["rate limit","timeout"]'
    Returns trimmed, non-empty items.
    """
    if v is None:
        return []

    def _norm(x: Any) -> str:
        s = str(x).strip()
        return s.upper() if upper else s

    if isinstance(v, list):
        return [_norm(x) for x in v if str(x).strip()]
    s = str(v).strip()
    if not s:
        return []
    if s.startswith("["):
        try:
            arr = json.loads(s)
            return [_norm(x) for x in arr if str(x).strip()]
        except ValueError:
            # fall back to csv parse
            pass
    return [_norm(p) for p in s.split(",") if p.strip()]


class Settings(BaseSettings):
    """Runtime configuration loaded from .env / environment variables."""

    # enable_decoding=False prevents pydantic-settings from auto-json-decoding List fields.
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
        enable_decoding=False,
    )

    # --- Backend (market data / holdings / orders) ---
    BACKEND_BASE_URL: str = "http://localhost:3001/api"
    BACKEND_API_KEY: str = ""
    BACKEND_TIMEOUT_SECONDS: float = 15.0

    # --- Execution ---
    EXECUTION_MODE: str = "paper"  # paper/live

    # --- Persistence ---
    DB_PATH: str = "data/dca.db"
    AUDIT_JSONL_PATH: str = "logs/dca_audit.jsonl"

    # --- Scheduler ---
    TICK_INTERVAL_SECONDS: int = 300
    MAX_CONCURRENT_BOTS: int = 8
    BOT_LOCK_TIMEOUT_SECONDS: float = 30.0
    AUTOSTART_SCHEDULER: bool = False

    # --- Read-through caches ---
    MARKET_CACHE_TTL_SECONDS: float = 30.0
    HOLDINGS_CACHE_TTL_SECONDS: float = 30.0
    # last good context served (flagged stale) for this long after a failed refresh
    MARKET_MAX_STALE_SECONDS: float = 300.0

    # --- Exit policy ---
    TREND_THRESHOLD: float = 50.0
    EXIT_BEARISH_MODE: str = "both"  # both/either
    EXIT_RETRACE_BUFFER_PCT: float = 1.0

    # --- Exit retries ---
    EXIT_MAX_TRANSIENT_ATTEMPTS: int = 5
    EXIT_RETRY_INITIAL_SECONDS: float = 10.0
    EXIT_RETRY_MAX_SECONDS: float = 3600.0
    EXIT_RETRY_BACKOFF: float = 2.0

    # --- Rejection classification (substring match, case-insensitive) ---
    TRANSIENT_REJECTION_REASONS: List[str] = Field(
        default_factory=lambda: list(DEFAULT_TRANSIENT_REASONS)
    )
    PERMANENT_REJECTION_REASONS: List[str] = Field(
        default_factory=lambda: list(DEFAULT_PERMANENT_REASONS)
    )

    @field_validator("TRANSIENT_REJECTION_REASONS", mode="before")
    @classmethod
    def parse_transient(cls, v: Any) -> List[str]:
        return [s.lower() for s in _parse_list(v)]

    @field_validator("PERMANENT_REJECTION_REASONS", mode="before")
    @classmethod
    def parse_permanent(cls, v: Any) -> List[str]:
        return [s.lower() for s in _parse_list(v)]

    def model_post_init(self, __context: Any) -> None:
        # Normalize enums
        self.EXECUTION_MODE = (self.EXECUTION_MODE or "paper").lower().strip()
        self.EXIT_BEARISH_MODE = (self.EXIT_BEARISH_MODE or "both").lower().strip()
        self.BACKEND_BASE_URL = (self.BACKEND_BASE_URL or "").strip().rstrip("/")

    def validate_runtime(self) -> List[str]:
        """
        Fail-fast validation. Returns warnings (non-fatal).
        Raises ValueError for fatal misconfiguration.
        """
        errors: List[str] = []
        warnings: List[str] = []

        if self.EXECUTION_MODE not in {"paper", "live"}:
            errors.append("EXECUTION_MODE must be 'paper' or 'live'.")

        if self.EXIT_BEARISH_MODE not in {"both", "either"}:
            errors.append("EXIT_BEARISH_MODE must be 'both' or 'either'.")

        if self.TICK_INTERVAL_SECONDS <= 0:
            errors.append("TICK_INTERVAL_SECONDS must be > 0.")
        elif self.TICK_INTERVAL_SECONDS < 30:
            warnings.append(
                f"TICK_INTERVAL_SECONDS={self.TICK_INTERVAL_SECONDS} is very short; "
                "backend rate limits may reject orders."
            )

        if self.MAX_CONCURRENT_BOTS <= 0:
            errors.append("MAX_CONCURRENT_BOTS must be > 0.")

        if not (0 <= self.TREND_THRESHOLD <= 100):
            errors.append("TREND_THRESHOLD must be within 0..100.")

        if self.EXIT_RETRACE_BUFFER_PCT < 0:
            errors.append("EXIT_RETRACE_BUFFER_PCT must be >= 0.")

        # Retry sanity
        if self.EXIT_MAX_TRANSIENT_ATTEMPTS < 1:
            errors.append("EXIT_MAX_TRANSIENT_ATTEMPTS must be >= 1.")
        if self.EXIT_RETRY_INITIAL_SECONDS < 0:
            errors.append("EXIT_RETRY_INITIAL_SECONDS must be >= 0.")
        if self.EXIT_RETRY_BACKOFF < 1:
            errors.append("EXIT_RETRY_BACKOFF must be >= 1.")
        if self.EXIT_RETRY_MAX_SECONDS < self.EXIT_RETRY_INITIAL_SECONDS:
            warnings.append(
                "EXIT_RETRY_MAX_SECONDS is below EXIT_RETRY_INITIAL_SECONDS; "
                "every retry will use the cap."
            )

        if self.MARKET_CACHE_TTL_SECONDS < 0 or self.HOLDINGS_CACHE_TTL_SECONDS < 0:
            errors.append("Cache TTLs must be >= 0.")
        if self.MARKET_MAX_STALE_SECONDS < 0:
            errors.append("MARKET_MAX_STALE_SECONDS must be >= 0.")

        if self.BOT_LOCK_TIMEOUT_SECONDS <= 0:
            errors.append("BOT_LOCK_TIMEOUT_SECONDS must be > 0.")

        # Live mode needs a backend
        if self.EXECUTION_MODE == "live":
            if not self.BACKEND_BASE_URL:
                errors.append("EXECUTION_MODE=live requires BACKEND_BASE_URL.")
            if not self.BACKEND_API_KEY:
                warnings.append(
                    "BACKEND_API_KEY is empty; live order submission may be rejected."
                )
            warnings.append(
                "EXECUTION_MODE=live submits REAL orders through the backend."
            )

        if errors:
            msg = "Config validation failed:\n" + "\n".join([f"- {e}" for e in errors])
            raise ValueError(msg)

        return warnings


# Pydantic v2 + postponed annotations safety
Settings.model_rebuild()
settings = Settings()
