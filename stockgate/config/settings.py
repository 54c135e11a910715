import os
from functools import lru_cache

from pydantic import BaseModel, Field, model_validator

_FINNHUB_BASE_URL = "https://finnhub.io/api/v1"


class Settings(BaseModel):
    FINNHUB_API_KEY: str | None = None
    FINNHUB_BASE_URL: str = _FINNHUB_BASE_URL
    MAX_REQUESTS_PER_MINUTE: int = Field(default=50, gt=0)
    RATE_WINDOW_SEC: float = Field(default=60.0, gt=0)
    REQUEST_INTERVAL_SEC: float | None = Field(default=None, ge=0)
    MAX_QUEUE_SIZE: int = Field(default=100, gt=0)
    UPSTREAM_TIMEOUT_SEC: float = Field(default=5.0, gt=0)
    CALLER_TIMEOUT_SEC: float = Field(default=8.0, gt=0)
    FRESH_TTL_SEC: float = Field(default=300.0, gt=0)
    STALE_TTL_SEC: float = Field(default=3600.0, gt=0)
    DEFAULT_SYMBOL: str = "TSLA"
    LOG_LEVEL: str = "INFO"

    @model_validator(mode="after")
    def check_windows(self) -> "Settings":
        if self.STALE_TTL_SEC <= self.FRESH_TTL_SEC:
            raise ValueError("STALE_TTL_SEC must be greater than FRESH_TTL_SEC")
        if self.REQUEST_INTERVAL_SEC is None:
            # spread the per-window budget evenly instead of bursting at each rollover
            self.REQUEST_INTERVAL_SEC = self.RATE_WINDOW_SEC / self.MAX_REQUESTS_PER_MINUTE
        self.DEFAULT_SYMBOL = self.DEFAULT_SYMBOL.strip().upper()
        self.LOG_LEVEL = self.LOG_LEVEL.upper()
        return self

    @classmethod
    def from_env(cls) -> "Settings":
        keys = [
            "FINNHUB_API_KEY",
            "FINNHUB_BASE_URL",
            "MAX_REQUESTS_PER_MINUTE",
            "RATE_WINDOW_SEC",
            "REQUEST_INTERVAL_SEC",
            "MAX_QUEUE_SIZE",
            "UPSTREAM_TIMEOUT_SEC",
            "CALLER_TIMEOUT_SEC",
            "FRESH_TTL_SEC",
            "STALE_TTL_SEC",
            "DEFAULT_SYMBOL",
            "LOG_LEVEL",
        ]
        raw = {k: os.getenv(k) for k in keys}
        # unset or blank vars fall back to defaults
        return cls.model_validate({k: v for k, v in raw.items() if v is not None and v.strip() != ""})


@lru_cache
def get_settings() -> Settings:
    return Settings.from_env()
