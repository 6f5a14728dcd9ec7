import asyncio
import json
from decimal import Decimal
from typing import Any

import ccxt.async_support as ccxt
import pytest

from perpdesk.core.errors import ConfigurationError, ExchangeError
from perpdesk.services.binance_gateway import BinanceAPIError, BinanceFuturesGateway, create_exchange, render_param


class _FakeExchange:
    """Stands in for ``ccxt.binanceusdm``; replies are queued per raw endpoint."""

    def __init__(self, replies: dict[str, Any] | None = None) -> None:
        self.replies = dict(replies or {})
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.time_syncs = 0
        self.options: dict[str, Any] = {"timeDifference": 0}
        self.closed = False

    async def load_time_difference(self) -> int:
        self.time_syncs += 1
        return 0

    async def close(self) -> None:
        self.closed = True

    def __getattr__(self, name: str):
        if not name.startswith("fapi"):
            raise AttributeError(name)

        async def endpoint(params: dict[str, Any]) -> Any:
            self.calls.append((name, params))
            reply = self.replies.get(name, [])
            if isinstance(reply, list) and reply and isinstance(reply[0], Exception):
                error = reply.pop(0)
                if not reply:
                    self.replies.pop(name)
                raise error
            if isinstance(reply, Exception):
                raise reply
            if callable(reply):
                return reply(params)
            return reply

        return endpoint


def _gateway(exchange: _FakeExchange, **kwargs) -> BinanceFuturesGateway:
    kwargs.setdefault("api_key", "test-key")
    kwargs.setdefault("secret_key", "test-secret")
    return BinanceFuturesGateway(exchange=exchange, **kwargs)


def test_render_param_formats_plain_numbers() -> None:
    assert render_param(Decimal("0.00100")) == "0.001"
    assert render_param(Decimal("1E+2")) == "100"
    assert render_param(Decimal("0")) == "0"
    assert render_param(0.5) == "0.5"
    assert render_param(True) == "true"
    assert render_param("BTCUSDT") == "BTCUSDT"


def test_create_exchange_configures_usdm_client() -> None:
    async def scenario() -> None:
        exchange = create_exchange(
            api_key="k",
            secret_key="s",
            base_url="https://fapi.test/",
            recv_window=7000,
            timeout=5.0,
        )
        try:
            assert exchange.id == "binanceusdm"
            assert exchange.apiKey == "k"
            assert exchange.options["recvWindow"] == 7000
            assert exchange.timeout == 5000
            assert exchange.urls["api"]["fapiPrivate"] == "https://fapi.test/fapi/v1"
            assert exchange.urls["api"]["fapiPrivateV2"] == "https://fapi.test/fapi/v2"
        finally:
            await exchange.close()

    asyncio.run(scenario())


def test_klines_are_public_and_parsed() -> None:
    exchange = _FakeExchange(
        {
            "fapiPublicGetKlines": [
                [1, "100.0", "102.0", "99.0", "101.5", "12.3", 59999, "0", 10, "0", "0", "0"],
                [60000, "101.5", "103.0", "100.0", "102.0", "8.0", 119999, "0", 8, "0", "0", "0"],
            ]
        }
    )
    gateway = _gateway(exchange, api_key=None, secret_key=None)

    candles = asyncio.run(gateway.get_klines("BTCUSDT", "1h", 2))

    assert exchange.calls == [("fapiPublicGetKlines", {"symbol": "BTCUSDT", "interval": "1h", "limit": "2"})]
    assert exchange.time_syncs == 0
    assert candles[0].close == Decimal("101.5")
    assert candles[1].open_time == 60000


def test_signed_call_syncs_clock_once_and_renders_params() -> None:
    exchange = _FakeExchange({"fapiPrivatePostOrder": {"orderId": 11}})
    gateway = _gateway(exchange)

    async def scenario() -> None:
        await gateway.place_order(symbol="BTCUSDT", side="BUY", type="MARKET", quantity=Decimal("0.0100"), reduceOnly=True)
        await gateway.get_open_orders("BTCUSDT")

    asyncio.run(scenario())

    assert exchange.time_syncs == 1
    name, params = exchange.calls[0]
    assert name == "fapiPrivatePostOrder"
    assert params == {"symbol": "BTCUSDT", "side": "BUY", "type": "MARKET", "quantity": "0.01", "reduceOnly": "true"}
    assert exchange.calls[1] == ("fapiPrivateGetOpenOrders", {"symbol": "BTCUSDT"})


def test_timestamp_rejection_resyncs_once() -> None:
    rejected = ccxt.InvalidNonce('binanceusdm {"code":-1021,"msg":"Timestamp for this request is outside of the recvWindow."}')
    exchange = _FakeExchange({"fapiPrivateV2GetPositionRisk": [rejected]})
    gateway = _gateway(exchange)

    assert asyncio.run(gateway.get_position_risk()) == []
    assert exchange.time_syncs == 2
    assert [name for name, _ in exchange.calls] == ["fapiPrivateV2GetPositionRisk"] * 2


def test_repeated_timestamp_rejection_surfaces() -> None:
    rejected = ccxt.InvalidNonce('binanceusdm {"code":-1021,"msg":"Timestamp outside recvWindow."}')
    exchange = _FakeExchange({"fapiPrivateV2GetPositionRisk": rejected})
    gateway = _gateway(exchange)

    with pytest.raises(BinanceAPIError) as excinfo:
        asyncio.run(gateway.get_position_risk())

    assert excinfo.value.code == -1021
    assert len(exchange.calls) == 2


def test_exchange_rejection_maps_to_api_error() -> None:
    exchange = _FakeExchange(
        {"fapiPrivatePostOrder": ccxt.InsufficientFunds('binanceusdm {"code":-2019,"msg":"Margin is insufficient."}')}
    )
    gateway = _gateway(exchange)

    with pytest.raises(BinanceAPIError) as excinfo:
        asyncio.run(gateway.place_order(symbol="BTCUSDT", side="BUY", type="MARKET", quantity=Decimal("1")))

    error = excinfo.value
    assert isinstance(error, ExchangeError)
    assert error.code == -2019
    assert error.message == "Margin is insufficient."
    assert error.status_code == 500


def test_network_failure_becomes_exchange_error() -> None:
    exchange = _FakeExchange({"fapiPublicGetKlines": ccxt.NetworkError("binanceusdm GET connection refused")})
    gateway = _gateway(exchange)

    with pytest.raises(ExchangeError) as excinfo:
        asyncio.run(gateway.get_klines("BTCUSDT", "5m"))

    assert not isinstance(excinfo.value, BinanceAPIError)
    assert "connection refused" in excinfo.value.message


def test_signed_call_without_credentials_never_reaches_exchange() -> None:
    exchange = _FakeExchange()
    gateway = _gateway(exchange, api_key=None, secret_key=None)

    with pytest.raises(ConfigurationError):
        asyncio.run(gateway.get_account())
    assert exchange.calls == []
    assert exchange.time_syncs == 0
    assert gateway.has_credentials is False


def test_warm_up_skips_without_credentials_and_tolerates_failure() -> None:
    class _BrokenClock(_FakeExchange):
        async def load_time_difference(self) -> int:
            raise ccxt.RequestTimeout("binanceusdm GET /fapi/v1/time timed out")

    idle = _FakeExchange()
    asyncio.run(_gateway(idle, api_key=None, secret_key=None).warm_up())
    assert idle.time_syncs == 0

    asyncio.run(_gateway(_BrokenClock()).warm_up())


def test_batch_orders_are_chunked_by_five() -> None:
    exchange = _FakeExchange(
        {"fapiPrivatePostBatchOrders": lambda params: [{"orderId": i} for i, _ in enumerate(json.loads(params["batchOrders"]))]}
    )
    gateway = _gateway(exchange)
    orders = [
        {"symbol": "BTCUSDT", "side": "BUY", "type": "MARKET", "quantity": Decimal("0.001") * (i + 1)}
        for i in range(7)
    ]

    results = asyncio.run(gateway.place_batch_orders(orders))

    batches = [json.loads(params["batchOrders"]) for _, params in exchange.calls]
    assert [len(chunk) for chunk in batches] == [5, 2]
    assert batches[0][0]["quantity"] == "0.001"
    assert len(results) == 7


def test_account_snapshot_keeps_active_positions() -> None:
    exchange = _FakeExchange(
        {
            "fapiPrivateV2GetAccount": {
                "totalMarginBalance": "1050.5",
                "totalWalletBalance": "1000",
                "totalUnrealizedProfit": "50.5",
                "availableBalance": "900",
            },
            "fapiPrivateV2GetPositionRisk": [
                {
                    "symbol": "BTCUSDT",
                    "positionAmt": "0.010",
                    "entryPrice": "60000",
                    "markPrice": "65050",
                    "unRealizedProfit": "50.5",
                    "liquidationPrice": "0",
                    "leverage": "10",
                    "marginType": "cross",
                    "isolatedMargin": "0.00000000",
                    "positionSide": "BOTH",
                },
                {"symbol": "ETHUSDT", "positionAmt": "0.000", "entryPrice": "0.0", "leverage": "20"},
            ],
        }
    )
    gateway = _gateway(exchange)

    snapshot = asyncio.run(gateway.get_account_snapshot())

    assert snapshot.total_wallet_balance == Decimal("1000")
    [position] = snapshot.positions
    assert position.symbol == "BTCUSDT"
    assert position.unrealized_profit == Decimal("50.5")
    assert position.leverage == 10
    payload = snapshot.to_payload()
    assert payload["positions"][0]["positionAmt"] == "0.010"


def test_find_active_position_ignores_flat_entries() -> None:
    exchange = _FakeExchange({"fapiPrivateV2GetPositionRisk": [{"symbol": "BTCUSDT", "positionAmt": "0"}]})
    gateway = _gateway(exchange)

    assert asyncio.run(gateway.find_active_position("btcusdt")) is None
    assert exchange.calls == [("fapiPrivateV2GetPositionRisk", {"symbol": "BTCUSDT"})]


def test_symbol_overview_degrades_per_leg() -> None:
    exchange = _FakeExchange(
        {
            "fapiPrivateGetLeverageBracket": ccxt.BadSymbol('binanceusdm {"code":-1121,"msg":"Invalid symbol."}'),
            "fapiPrivateGetOpenOrders": [{"orderId": 7, "type": "STOP_MARKET"}],
            "fapiPrivateGetUserTrades": [{"id": 1}],
            "fapiPrivateV2GetPositionRisk": [{"symbol": "BTCUSDT", "positionAmt": "-0.5"}],
        }
    )
    gateway = _gateway(exchange)

    overview = asyncio.run(gateway.get_symbol_overview("BTCUSDT", detailed=True))

    assert overview["position"]["positionAmt"] == "-0.5"
    assert overview["openOrders"] == [{"orderId": 7, "type": "STOP_MARKET"}]
    assert overview["recentTrades"] == [{"id": 1}]
    assert overview["leverageInfo"] is None


def test_close_releases_only_owned_exchange() -> None:
    injected = _FakeExchange()
    asyncio.run(_gateway(injected).close())
    assert injected.closed is False
