from __future__ import annotations

import time
from typing import Any, Dict, Optional

import requests

from stockgate.errors import UpstreamError, UpstreamRateLimitedError
from stockgate.schemas.quote import Quote


def _to_float(value: Any, default: float = 0.0) -> float:
    try:
        if value is None or value == "":
            return default
        return float(value)
    except (TypeError, ValueError):
        return default


def parse_quote_payload(symbol: str, payload: Dict[str, Any], now: float | None = None) -> Quote:
    """Build a Quote from a raw Finnhub /quote payload.

    Finnhub answers unknown symbols with 200 and all-zero fields, so a zero
    or missing current price is treated as an upstream failure.
    """
    if not isinstance(payload, dict):
        raise UpstreamError("INVALID_PAYLOAD", symbol=symbol)

    price = _to_float(payload.get("c"))
    if price == 0.0:
        raise UpstreamError("EMPTY_QUOTE", symbol=symbol)

    ts = int(_to_float(payload.get("t")))
    if ts <= 0:
        ts = int(time.time() if now is None else now)

    return Quote(
        symbol=symbol,
        price=round(price, 2),
        change=round(_to_float(payload.get("d")), 2),
        change_percent=round(_to_float(payload.get("dp")), 2),
        volume=int(_to_float(payload.get("v"))),
        last_updated=ts,
        synthetic=False,
    )


class FinnhubRestClient:
    """Finnhub quote endpoint client. Blocking; the gateway runs it off-loop."""

    def __init__(
        self,
        api_key: Optional[str],
        *,
        base_url: str = "https://finnhub.io/api/v1",
        session: Optional[Any] = None,
        timeout: float = 5.0,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.session = session or requests
        self.timeout = timeout
        self.calls = 0

    @staticmethod
    def _status_code_from_error(exc: Exception) -> int | None:
        response = getattr(exc, "response", None)
        code = getattr(response, "status_code", None)
        if isinstance(code, int):
            return code
        return None

    def get_quote(self, symbol: str) -> Dict[str, Any]:
        if not self.api_key:
            raise UpstreamError("API_KEY_NOT_CONFIGURED", symbol=symbol)

        self.calls += 1
        try:
            response = self.session.get(
                f"{self.base_url}/quote",
                params={"symbol": symbol, "token": self.api_key},
                timeout=self.timeout,
            )
            response.raise_for_status()
            payload = response.json()
        except requests.RequestException as exc:
            status_code = self._status_code_from_error(exc)
            if status_code == 429:
                raise UpstreamRateLimitedError("UPSTREAM_RATE_LIMITED", symbol=symbol, status_code=429) from exc
            raise UpstreamError(str(exc) or "UPSTREAM_ERROR", symbol=symbol, status_code=status_code) from exc
        except ValueError as exc:
            raise UpstreamError("INVALID_JSON", symbol=symbol) from exc

        if not isinstance(payload, dict):
            raise UpstreamError("INVALID_PAYLOAD", symbol=symbol)
        return payload
