"""Base-rate feeds for quoting.

- usdt_binance: Binance USDT/BRL spot ticker ({"symbol": "USDTBRL", "price": "5.8234"})
- commercial_dollar: AwesomeAPI USD-BRL ({"USDBRL": {"bid": "5.25", "ask": "5.26"}}), mid price

Failures raise ``PriceFeedError``; the quote path turns it into an UpstreamFailure.
"""

from __future__ import annotations

import logging
import math
import time
from typing import Optional, Protocol

import httpx

from otc_desk.config import settings
from otc_desk.models import PricingSource

logger = logging.getLogger("otc_desk.price_feed")


class PriceFeedError(Exception):
    pass


class PriceFeed(Protocol):
    async def fetch_base_rate(self, source: PricingSource) -> float: ...


def _positive_float(raw) -> float:
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise PriceFeedError(f"Invalid price format: {raw!r}") from None
    if not math.isfinite(value) or value <= 0:
        raise PriceFeedError(f"Non-positive price: {raw!r}")
    return value


class HttpPriceFeed:
    def __init__(
        self,
        binance_url: Optional[str] = None,
        commercial_dollar_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.binance_url = binance_url or settings.binance_price_url
        self.commercial_dollar_url = commercial_dollar_url or settings.commercial_dollar_url
        self.timeout = timeout if timeout is not None else settings.price_feed_timeout_seconds
        self._transport = transport

    async def _get_json(self, url: str, source: PricingSource) -> dict:
        started = time.perf_counter()
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(url)
        except httpx.TimeoutException:
            logger.warning("price_feed_timeout", extra={"source": source.value, "timeout_s": self.timeout})
            raise PriceFeedError(f"{source.value} price feed timed out") from None
        except httpx.RequestError as exc:
            logger.warning("price_feed_request_error", extra={"source": source.value, "error": str(exc)})
            raise PriceFeedError(f"{source.value} price feed request failed: {exc}") from exc

        latency_ms = round((time.perf_counter() - started) * 1000.0, 2)
        if response.status_code != 200:
            logger.warning(
                "price_feed_http_error",
                extra={"source": source.value, "status_code": response.status_code, "latency_ms": latency_ms},
            )
            raise PriceFeedError(f"{source.value} price feed returned HTTP {response.status_code}")
        try:
            data = response.json()
        except ValueError:
            raise PriceFeedError(f"{source.value} price feed returned invalid JSON") from None
        if not isinstance(data, dict):
            raise PriceFeedError(f"{source.value} price feed returned an unexpected payload")
        logger.debug("price_feed_ok", extra={"source": source.value, "latency_ms": latency_ms})
        return data

    async def fetch_base_rate(self, source: PricingSource) -> float:
        if source == PricingSource.commercial_dollar:
            data = await self._get_json(self.commercial_dollar_url, source)
            quote = data.get("USDBRL")
            if not isinstance(quote, dict):
                raise PriceFeedError("commercial_dollar payload missing USDBRL")
            bid = _positive_float(quote.get("bid"))
            ask = _positive_float(quote.get("ask"))
            return (bid + ask) / 2

        data = await self._get_json(self.binance_url, source)
        return _positive_float(data.get("price"))
