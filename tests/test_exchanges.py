import httpx
import pytest

from tradebot.config import BinanceExchangeConfig, RequestsConfig, SimulatedExchangeConfig
from tradebot.errors import MarketDataError, RequestError
from tradebot.providers.binance import BinanceExchange, parse_kline, sign_query
from tradebot.providers.simulated import SimulatedExchange
from tradebot.requester import Requester
from tradebot.schemas import TradingPair


async def _no_sleep(_seconds: float) -> None:
    return None


def _binance(handler, **cfg_kw) -> BinanceExchange:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    requester = Requester(RequestsConfig(max_attempts=1), client, sleep=_no_sleep)
    cfg = BinanceExchangeConfig(base_url="https://api.test", api_key="key", api_secret="secret", **cfg_kw)
    return BinanceExchange(cfg, requester, clock_ms=lambda: 1_700_000_000_000)


def test_sign_query_reference_vector():
    secret = "NhqPtmdSJYdKjVHjA7PZj4Mge3R5YNiP1e3UZjInClVN65XAbvqqM6A7H5fATj0j"
    params = {
        "symbol": "LTCBTC",
        "side": "BUY",
        "type": "LIMIT",
        "timeInForce": "GTC",
        "quantity": 1,
        "price": 0.1,
        "recvWindow": 5000,
        "timestamp": 1499827319559,
    }
    assert sign_query(secret, params) == "c8db56825ae71d6d79447849e617115f4a920fa2acdcab2b053c4b2838bd6b71"


def test_parse_kline():
    c = parse_kline([1700000000000, "600.1", "610", "590.5", "605.2", "1234.5", 1700003599999, "0", 10])
    assert (c.open_time, c.open, c.high, c.low, c.close, c.volume) == (1700000000000, 600.1, 610.0, 590.5, 605.2, 1234.5)


def test_missing_credentials_rejected():
    requester = Requester(RequestsConfig(), httpx.AsyncClient())
    with pytest.raises(ValueError):
        BinanceExchange(BinanceExchangeConfig(api_key="k"), requester)


@pytest.mark.asyncio
async def test_place_order_is_signed_limit_gtc():
    seen = {}

    def handler(request: httpx.Request):
        seen["method"] = request.method
        seen["path"] = request.url.path
        seen["params"] = dict(request.url.params)
        seen["query"] = request.url.query.decode()
        seen["key"] = request.headers.get("X-MBX-APIKEY")
        return httpx.Response(200, json={"orderId": 12345, "status": "NEW"})

    ex = _binance(handler)
    ack = await ex.place_order("BTCBNB", "BUY", 0.0123456789, 123.456789012345)

    assert ack.order_id == "12345"
    assert ack.status == "NEW"
    assert seen["method"] == "POST"
    assert seen["path"] == "/api/v3/order"
    assert seen["key"] == "key"
    p = seen["params"]
    assert p["type"] == "LIMIT"
    assert p["timeInForce"] == "GTC"
    assert p["quantity"] == "0.012346"
    assert p["price"] == "123.45678901"
    assert p["recvWindow"] == "5000"
    assert p["timestamp"] == "1700000000000"
    unsigned, _, signature = seen["query"].rpartition("&signature=")
    assert signature == p["signature"]
    assert sign_query("secret", dict(pair.split("=", 1) for pair in unsigned.split("&"))) == signature


@pytest.mark.asyncio
async def test_place_order_without_order_id_is_an_error():
    ex = _binance(lambda request: httpx.Response(200, json={"code": -1013}))
    with pytest.raises(RequestError):
        await ex.place_order("BNBUSDT", "SELL", 1.0, 600.0)


@pytest.mark.asyncio
async def test_candles_parsed_and_sorted():
    rows = [
        [3, "3", "3", "3", "3", "30"],
        [1, "1", "1", "1", "1", "10"],
        [2, "2", "2", "2", "2", "20"],
    ]

    def handler(request):
        assert request.url.path == "/api/v3/klines"
        assert request.url.params["interval"] == "1h"
        assert request.url.params["limit"] == "3"
        assert "signature" not in request.url.params
        return httpx.Response(200, json=rows)

    candles = await _binance(handler).get_candles("BNBUSDT", "1h", 3)
    assert [c.open_time for c in candles] == [1, 2, 3]
    assert candles[-1].volume == 30.0


@pytest.mark.asyncio
async def test_price_status_and_balances():
    def handler(request):
        path = request.url.path
        if path == "/api/v3/ticker/price":
            return httpx.Response(200, json={"symbol": "BNBUSDT", "price": "612.34000000"})
        if path == "/api/v3/order":
            assert request.url.params["orderId"] == "77"
            return httpx.Response(200, json={"orderId": 77, "status": "FILLED"})
        if path == "/api/v3/account":
            return httpx.Response(
                200,
                json={
                    "balances": [
                        {"asset": "BNB", "free": "1.5", "locked": "0.1"},
                        {"asset": "XRP", "free": "0.0", "locked": "0.0"},
                    ]
                },
            )
        return httpx.Response(404)

    ex = _binance(handler)
    assert await ex.get_current_price("BNBUSDT") == pytest.approx(612.34)
    assert await ex.get_order_status("BNBUSDT", "77") == "FILLED"
    assert await ex.get_account_balances() == {"BNB": {"free": 1.5, "locked": 0.1}}


@pytest.mark.asyncio
async def test_bad_ticker_payload():
    ex = _binance(lambda request: httpx.Response(200, json={"msg": "nope"}))
    with pytest.raises(MarketDataError):
        await ex.get_current_price("BNBUSDT")


@pytest.mark.asyncio
async def test_http_failure_surfaces_request_error():
    ex = _binance(lambda request: httpx.Response(418, text="banned"))
    with pytest.raises(RequestError) as ei:
        await ex.get_candles("BNBUSDT", "1h", 10)
    assert ei.value.endpoint == "/api/v3/klines"


PAIRS = [TradingPair("BNBUSDT", "BNB", "USDT"), TradingPair("ETHBNB", "ETH", "BNB")]


def _sim(seed=7, balances=None) -> SimulatedExchange:
    cfg = SimulatedExchangeConfig(seed=seed, start_prices={"BNBUSDT": 600.0})
    return SimulatedExchange(cfg, PAIRS, balances or {"BNB": 1.0, "USDT": 1000.0}, start_time_ms=1_700_000_000_000)


@pytest.mark.asyncio
async def test_simulated_candles_are_ordered_and_advance():
    ex = _sim()
    first = await ex.get_candles("BNBUSDT", "1h", 50)
    assert len(first) == 50
    assert all(a.open_time < b.open_time for a, b in zip(first, first[1:]))
    assert all(c.low <= min(c.open, c.close) and c.high >= max(c.open, c.close) for c in first)

    second = await ex.get_candles("BNBUSDT", "1h", 50)
    assert second[-1].open_time == first[-1].open_time + 3_600_000
    assert await ex.get_current_price("BNBUSDT") == second[-1].close


@pytest.mark.asyncio
async def test_simulated_is_deterministic_per_seed():
    a = await _sim(seed=3).get_candles("BNBUSDT", "1h", 40)
    b = await _sim(seed=3).get_candles("BNBUSDT", "1h", 40)
    assert a == b


@pytest.mark.asyncio
async def test_simulated_orders_fill_on_first_query():
    ex = _sim()
    ack = await ex.place_order("BNBUSDT", "BUY", 0.5, 600.0)
    assert ack.status == "NEW"
    assert await ex.get_order_status("BNBUSDT", ack.order_id) == "FILLED"
    assert await ex.get_order_status("BNBUSDT", ack.order_id) == "FILLED"
    balances = await ex.get_account_balances()
    assert balances["BNB"]["free"] == pytest.approx(1.5)
    assert balances["USDT"]["free"] == pytest.approx(700.0)


@pytest.mark.asyncio
async def test_simulated_unknown_symbol_and_order():
    ex = _sim()
    with pytest.raises(MarketDataError):
        await ex.get_candles("XRPUSDT", "1h", 10)
    with pytest.raises(MarketDataError):
        await ex.get_order_status("BNBUSDT", "999")
