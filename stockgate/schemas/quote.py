from typing import Literal

from pydantic import BaseModel, ConfigDict

QuoteState = Literal["FRESH", "LIVE", "STALE", "SYNTHETIC"]


class Quote(BaseModel):
    model_config = ConfigDict(frozen=True)

    symbol: str
    price: float | None = None
    change: float | None = None
    change_percent: float | None = None
    volume: int | None = None
    last_updated: int
    synthetic: bool = False

    @classmethod
    def placeholder(cls, symbol: str, now: float) -> "Quote":
        return cls(symbol=symbol, last_updated=int(now), synthetic=True)


class CacheEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    quote: Quote
    fetched_at: float


class QuoteResult(BaseModel):
    quote: Quote
    state: QuoteState
    degraded: bool = False
    age_sec: float = 0.0

    def to_payload(self) -> dict:
        return {
            **self.quote.model_dump(),
            "state": self.state,
            "degraded": self.degraded,
            "age_sec": round(self.age_sec, 3),
        }
