import asyncio
from decimal import Decimal
from typing import Any

import pytest

from perpdesk.core.errors import PositionNotFoundError, ValidationError
from perpdesk.models.trade import Position, TradeAction, TradeRequest
from perpdesk.services.order_dispatcher import OrderActionDispatcher, infer_direction


class _RecordingGateway:
    def __init__(self, position_amt: str | None = None, open_orders: list[dict[str, Any]] | None = None) -> None:
        self.calls: list[tuple[str, Any]] = []
        self.position = (
            Position(symbol="BTCUSDT", position_amt=Decimal(position_amt)) if position_amt is not None else None
        )
        self.open_orders = open_orders or []

    async def find_active_position(self, symbol: str) -> Position | None:
        self.calls.append(("find_active_position", symbol))
        if self.position is None or not self.position.is_active:
            return None
        return self.position

    async def get_open_orders(self, symbol: str | None = None) -> list[dict[str, Any]]:
        self.calls.append(("get_open_orders", symbol))
        return list(self.open_orders)

    async def place_order(self, **params: Any) -> dict[str, Any]:
        self.calls.append(("place_order", params))
        return {"orderId": 999, "status": "NEW"}

    async def cancel_order(self, symbol: str, order_id: int) -> dict[str, Any]:
        self.calls.append(("cancel_order", order_id))
        return {"orderId": order_id, "status": "CANCELED"}

    async def cancel_all_open_orders(self, symbol: str) -> dict[str, Any]:
        self.calls.append(("cancel_all_open_orders", symbol))
        return {"code": 200, "msg": "The operation of cancel all open order is done."}

    async def place_batch_orders(self, orders: list[dict[str, Any]]) -> list[Any]:
        self.calls.append(("place_batch_orders", orders))
        return [{"orderId": index} for index, _ in enumerate(orders)]

    async def change_leverage(self, symbol: str, leverage: int) -> dict[str, Any]:
        self.calls.append(("change_leverage", leverage))
        return {"symbol": symbol, "leverage": leverage}

    def placed(self) -> list[dict[str, Any]]:
        return [params for name, params in self.calls if name == "place_order"]

    def names(self) -> list[str]:
        return [name for name, _ in self.calls]


def _dispatch(gateway: _RecordingGateway, **fields: Any):
    dispatcher = OrderActionDispatcher(gateway)
    return asyncio.run(dispatcher.dispatch(TradeRequest(**fields)))


def test_every_action_has_a_handler() -> None:
    dispatcher = OrderActionDispatcher(_RecordingGateway())

    assert set(dispatcher._handlers) == set(TradeAction)


def test_infer_direction_from_position_sign() -> None:
    assert infer_direction(Decimal("2")) == ("SELL", "LONG")
    assert infer_direction("-2") == ("BUY", "SHORT")
    with pytest.raises(PositionNotFoundError):
        infer_direction(0, "BTCUSDT")


@pytest.mark.parametrize(
    ("amount", "side", "quantity"),
    [("0.5", "SELL", Decimal("0.5")), ("-0.3", "BUY", Decimal("0.3"))],
)
def test_close_position_uses_opposite_side(amount: str, side: str, quantity: Decimal) -> None:
    gateway = _RecordingGateway(position_amt=amount)

    result = _dispatch(gateway, action="close_position", symbol="BTCUSDT")

    [order] = gateway.placed()
    assert order["side"] == side
    assert order["type"] == "MARKET"
    assert order["quantity"] == quantity
    assert order["reduceOnly"] is True
    assert result.action is TradeAction.CLOSE_POSITION


@pytest.mark.parametrize(
    ("amount", "side", "position_side"),
    [("2", "SELL", "LONG"), ("-2", "BUY", "SHORT")],
)
def test_stop_loss_infers_direction(amount: str, side: str, position_side: str) -> None:
    gateway = _RecordingGateway(position_amt=amount)

    _dispatch(gateway, action="set_stop_loss", symbol="BTCUSDT", stop_price="50000")

    [order] = gateway.placed()
    assert order["side"] == side
    assert order["positionSide"] == position_side
    assert order["type"] == "STOP_MARKET"
    assert order["stopPrice"] == Decimal("50000")
    assert order["closePosition"] is True


def test_take_profit_uses_take_profit_market() -> None:
    gateway = _RecordingGateway(position_amt="1")

    _dispatch(gateway, action="set_take_profit", symbol="BTCUSDT", stop_price="70000")

    assert gateway.placed()[0]["type"] == "TAKE_PROFIT_MARKET"


@pytest.mark.parametrize("amount", ["0", None])
def test_stop_loss_without_position_is_not_found(amount: str | None) -> None:
    gateway = _RecordingGateway(position_amt=amount)

    with pytest.raises(PositionNotFoundError) as excinfo:
        _dispatch(gateway, action="set_stop_loss", symbol="BTCUSDT", stop_price="50000")

    assert excinfo.value.status_code == 404
    assert gateway.placed() == []


def test_move_stop_loss_cancels_protective_orders_first() -> None:
    gateway = _RecordingGateway(
        position_amt="1",
        open_orders=[
            {"orderId": 1, "type": "STOP_MARKET"},
            {"orderId": 2, "type": "LIMIT"},
            {"orderId": 3, "type": "TAKE_PROFIT_MARKET"},
        ],
    )

    result = _dispatch(gateway, action="move_stop_loss", symbol="BTCUSDT", stop_price="51000")

    names = gateway.names()
    place_index = names.index("place_order")
    cancel_indexes = [index for index, name in enumerate(names) if name == "cancel_order"]
    assert len(cancel_indexes) == 2
    assert all(index < place_index for index in cancel_indexes)
    cancelled = [payload for name, payload in gateway.calls if name == "cancel_order"]
    assert cancelled == [1, 3]
    assert result.cancelled_order_ids == [1, 3]
    assert gateway.placed()[0]["stopPrice"] == Decimal("51000")


def test_risk_orders_require_stop_price() -> None:
    gateway = _RecordingGateway(position_amt="1")

    with pytest.raises(ValidationError):
        _dispatch(gateway, action="set_stop_loss", symbol="BTCUSDT")
    with pytest.raises(ValidationError):
        _dispatch(gateway, action="move_take_profit", symbol="BTCUSDT")

    assert gateway.calls == []


def test_limit_order_needs_price_and_sets_gtc() -> None:
    gateway = _RecordingGateway()

    with pytest.raises(ValidationError):
        _dispatch(gateway, action="buy", symbol="BTCUSDT", quantity="0.01", order_type="LIMIT")

    _dispatch(gateway, action="buy", symbol="BTCUSDT", quantity="0.01", order_type="LIMIT", price="60000")

    [order] = gateway.placed()
    assert order["side"] == "BUY"
    assert order["timeInForce"] == "GTC"
    assert order["price"] == Decimal("60000")
    assert "reduceOnly" not in order


def test_market_order_requires_quantity() -> None:
    gateway = _RecordingGateway()

    with pytest.raises(ValidationError):
        _dispatch(gateway, action="sell", symbol="BTCUSDT")

    assert gateway.calls == []


def test_enhanced_buy_accepts_stop_market_with_stop_price() -> None:
    gateway = _RecordingGateway()

    with pytest.raises(ValidationError):
        _dispatch(gateway, action="buy", symbol="BTCUSDT", quantity="1", order_type="STOP_MARKET")

    _dispatch(gateway, action="buy", symbol="BTCUSDT", quantity="1", order_type="STOP_MARKET", stop_price="65000")

    assert gateway.placed()[0]["stopPrice"] == Decimal("65000")


def test_simple_dispatch_rejects_enhanced_only_actions() -> None:
    gateway = _RecordingGateway(position_amt="1")
    dispatcher = OrderActionDispatcher(gateway)

    for action in ("close_position", "cancel_all_orders", "batch_orders"):
        with pytest.raises(ValidationError):
            asyncio.run(dispatcher.dispatch_simple(TradeRequest(action=action, symbol="BTCUSDT")))
    with pytest.raises(ValidationError):
        asyncio.run(
            dispatcher.dispatch_simple(
                TradeRequest(action="buy", symbol="BTCUSDT", quantity="1", order_type="STOP_MARKET", stop_price="1")
            )
        )

    assert gateway.calls == []


def test_set_leverage_and_cancel_order() -> None:
    gateway = _RecordingGateway()

    leverage = _dispatch(gateway, action="set_leverage", symbol="BTCUSDT", leverage=10)
    cancelled = _dispatch(gateway, action="cancel_order", symbol="BTCUSDT", order_id=42)

    assert leverage.data == {"symbol": "BTCUSDT", "leverage": 10}
    assert cancelled.cancelled_order_ids == [42]
    with pytest.raises(ValidationError):
        _dispatch(gateway, action="cancel_order", symbol="BTCUSDT")


def test_batch_orders_validate_before_submitting() -> None:
    gateway = _RecordingGateway()

    with pytest.raises(ValidationError):
        _dispatch(
            gateway,
            action="batch_orders",
            symbol="BTCUSDT",
            orders=[{"side": "buy", "quantity": "0.1"}, {"side": "sell"}],
        )
    assert gateway.calls == []

    result = _dispatch(
        gateway,
        action="batch_orders",
        symbol="BTCUSDT",
        orders=[{"side": "buy", "quantity": "0.1"}, {"side": "sell", "quantity": "0.2", "type": "LIMIT", "price": "1"}],
    )

    [(_, submitted)] = gateway.calls
    assert [order["side"] for order in submitted] == ["BUY", "SELL"]
    assert all(order["symbol"] == "BTCUSDT" for order in submitted)
    assert submitted[0]["type"] == "MARKET"
    assert len(result.data) == 2
