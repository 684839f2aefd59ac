import httpx
import pytest

from otc_desk.models import PricingSource
from otc_desk.services.price_feed import HttpPriceFeed, PriceFeedError

BINANCE_URL = "https://prices.test/binance"
AWESOME_URL = "https://prices.test/usd-brl"


def _feed(handler) -> HttpPriceFeed:
    return HttpPriceFeed(
        binance_url=BINANCE_URL,
        commercial_dollar_url=AWESOME_URL,
        timeout=1.0,
        transport=httpx.MockTransport(handler),
    )


async def test_binance_ticker_price():
    def handler(request: httpx.Request) -> httpx.Response:
        assert str(request.url) == BINANCE_URL
        return httpx.Response(200, json={"symbol": "USDTBRL", "price": "5.8234"})

    assert await _feed(handler).fetch_base_rate(PricingSource.usdt_binance) == pytest.approx(5.8234)


async def test_commercial_dollar_uses_mid_price():
    def handler(request: httpx.Request) -> httpx.Response:
        assert str(request.url) == AWESOME_URL
        return httpx.Response(200, json={"USDBRL": {"bid": "5.20", "ask": "5.30"}})

    assert await _feed(handler).fetch_base_rate(PricingSource.commercial_dollar) == pytest.approx(5.25)


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(503, text="maintenance"),
        httpx.Response(200, text="<html>"),
        httpx.Response(200, json={"price": "0"}),
        httpx.Response(200, json={"price": "abc"}),
        httpx.Response(200, json=["5.8"]),
    ],
)
async def test_bad_binance_responses_raise(response):
    with pytest.raises(PriceFeedError):
        await _feed(lambda request: response).fetch_base_rate(PricingSource.usdt_binance)


async def test_missing_usdbrl_block_raises():
    feed = _feed(lambda request: httpx.Response(200, json={"EURBRL": {}}))
    with pytest.raises(PriceFeedError):
        await feed.fetch_base_rate(PricingSource.commercial_dollar)


async def test_network_errors_become_price_feed_errors():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(PriceFeedError):
        await _feed(handler).fetch_base_rate(PricingSource.usdt_binance)


async def test_timeouts_become_price_feed_errors():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("too slow", request=request)

    with pytest.raises(PriceFeedError, match="timed out"):
        await _feed(handler).fetch_base_rate(PricingSource.usdt_binance)
