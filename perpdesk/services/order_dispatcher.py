from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Awaitable, Callable, NamedTuple, Protocol

from perpdesk.core.errors import PositionNotFoundError, ValidationError
from perpdesk.models.trade import OrderResult, Position, TradeAction, TradeRequest

logger = logging.getLogger(__name__)

PROTECTIVE_ORDER_TYPES = frozenset({"STOP_MARKET", "TAKE_PROFIT_MARKET"})
SIMPLE_ORDER_TYPES = frozenset({"MARKET", "LIMIT"})

# actions exposed by the plain /trade endpoint
SIMPLE_TRADE_ACTIONS = frozenset(
    {
        TradeAction.BUY,
        TradeAction.SELL,
        TradeAction.SET_STOP_LOSS,
        TradeAction.SET_TAKE_PROFIT,
        TradeAction.MOVE_STOP_LOSS,
        TradeAction.MOVE_TAKE_PROFIT,
        TradeAction.SET_LEVERAGE,
    }
)

_RISK_ORDER_TYPE = {
    TradeAction.SET_STOP_LOSS: "STOP_MARKET",
    TradeAction.MOVE_STOP_LOSS: "STOP_MARKET",
    TradeAction.SET_TAKE_PROFIT: "TAKE_PROFIT_MARKET",
    TradeAction.MOVE_TAKE_PROFIT: "TAKE_PROFIT_MARKET",
}


class Direction(NamedTuple):
    """Order side that closes a position, plus the position side it belongs to."""

    side: str
    position_side: str


def infer_direction(position_amt: Decimal | float | str, symbol: str = "") -> Direction:
    amount = Decimal(str(position_amt))
    if amount > 0:
        return Direction(side="SELL", position_side="LONG")
    if amount < 0:
        return Direction(side="BUY", position_side="SHORT")
    raise PositionNotFoundError(symbol)


class ExchangeGateway(Protocol):
    async def find_active_position(self, symbol: str) -> Position | None: ...

    async def get_open_orders(self, symbol: str | None = None) -> list[dict[str, Any]]: ...

    async def place_order(self, **params: Any) -> dict[str, Any]: ...

    async def cancel_order(self, symbol: str, order_id: int) -> dict[str, Any]: ...

    async def cancel_all_open_orders(self, symbol: str) -> dict[str, Any]: ...

    async def place_batch_orders(self, orders: list[dict[str, Any]]) -> list[Any]: ...

    async def change_leverage(self, symbol: str, leverage: int) -> dict[str, Any]: ...


Handler = Callable[[TradeRequest], Awaitable[OrderResult]]


class OrderActionDispatcher:
    """Maps a trade action onto one or more exchange order calls."""

    def __init__(self, gateway: ExchangeGateway) -> None:
        self.gateway = gateway
        self._handlers: dict[TradeAction, Handler] = {
            TradeAction.BUY: self._open_order,
            TradeAction.SELL: self._open_order,
            TradeAction.CLOSE_POSITION: self._close_position,
            TradeAction.SET_STOP_LOSS: self._set_risk_order,
            TradeAction.SET_TAKE_PROFIT: self._set_risk_order,
            TradeAction.MOVE_STOP_LOSS: self._move_risk_order,
            TradeAction.MOVE_TAKE_PROFIT: self._move_risk_order,
            TradeAction.SET_LEVERAGE: self._set_leverage,
            TradeAction.CANCEL_ORDER: self._cancel_order,
            TradeAction.CANCEL_ALL_ORDERS: self._cancel_all_orders,
            TradeAction.BATCH_ORDERS: self._batch_orders,
        }
        missing = set(TradeAction) - set(self._handlers)
        if missing:
            names = ", ".join(sorted(action.value for action in missing))
            raise RuntimeError(f"no dispatcher handler registered for: {names}")

    async def dispatch(self, request: TradeRequest) -> OrderResult:
        logger.info("Dispatching %s for %s", request.action.value, request.symbol)
        logger.debug("Trade request payload: %s", request.model_dump(mode="json", by_alias=True))
        return await self._handlers[request.action](request)

    async def dispatch_simple(self, request: TradeRequest) -> OrderResult:
        """Dispatch through the restricted action and order-type set of the plain trade endpoint."""
        if request.action not in SIMPLE_TRADE_ACTIONS:
            raise ValidationError(f"unsupported action: {request.action.value}")
        if request.action in (TradeAction.BUY, TradeAction.SELL) and request.order_type not in SIMPLE_ORDER_TYPES:
            raise ValidationError(f"unsupported order type: {request.order_type}")
        return await self.dispatch(request)

    async def _require_position(self, symbol: str) -> Position:
        position = await self.gateway.find_active_position(symbol)
        if position is None or not position.is_active:
            raise PositionNotFoundError(symbol)
        return position

    async def _open_order(self, request: TradeRequest) -> OrderResult:
        if request.quantity is None or request.quantity <= 0:
            raise ValidationError("quantity is required for buy/sell orders")
        params: dict[str, Any] = {
            "symbol": request.symbol,
            "side": request.action.value.upper(),
            "type": request.order_type,
            "quantity": request.quantity,
            "positionSide": request.position_side,
        }
        if request.reduce_only:
            params["reduceOnly"] = True
        if request.order_type == "LIMIT":
            if request.price is None:
                raise ValidationError("price is required for LIMIT orders")
            params["price"] = request.price
            params["timeInForce"] = "GTC"
        elif request.order_type in PROTECTIVE_ORDER_TYPES:
            if request.stop_price is None:
                raise ValidationError(f"stopPrice is required for {request.order_type} orders")
            params["stopPrice"] = request.stop_price
        data = await self.gateway.place_order(**params)
        return OrderResult(action=request.action, symbol=request.symbol, data=data)

    async def _close_position(self, request: TradeRequest) -> OrderResult:
        position = await self._require_position(request.symbol)
        direction = infer_direction(position.position_amt, request.symbol)
        data = await self.gateway.place_order(
            symbol=request.symbol,
            side=direction.side,
            type="MARKET",
            quantity=abs(position.position_amt),
            positionSide=position.position_side,
            reduceOnly=True,
        )
        return OrderResult(action=request.action, symbol=request.symbol, data=data)

    async def _place_risk_order(self, action: TradeAction, symbol: str, stop_price: Decimal) -> Any:
        position = await self._require_position(symbol)
        direction = infer_direction(position.position_amt, symbol)
        return await self.gateway.place_order(
            symbol=symbol,
            side=direction.side,
            type=_RISK_ORDER_TYPE[action],
            stopPrice=stop_price,
            closePosition=True,
            positionSide=direction.position_side,
        )

    async def _set_risk_order(self, request: TradeRequest) -> OrderResult:
        if request.stop_price is None:
            raise ValidationError("stopPrice is required for stop-loss/take-profit orders")
        data = await self._place_risk_order(request.action, request.symbol, request.stop_price)
        return OrderResult(action=request.action, symbol=request.symbol, data=data)

    async def _move_risk_order(self, request: TradeRequest) -> OrderResult:
        if request.stop_price is None:
            raise ValidationError("a new stopPrice is required to move stop-loss/take-profit orders")
        open_orders = await self.gateway.get_open_orders(request.symbol)
        cancelled: list[int] = []
        # every protective order goes, whichever kind is being moved
        for order in open_orders or []:
            if order.get("type") not in PROTECTIVE_ORDER_TYPES:
                continue
            order_id = int(order["orderId"])
            await self.gateway.cancel_order(request.symbol, order_id)
            cancelled.append(order_id)
        data = await self._place_risk_order(request.action, request.symbol, request.stop_price)
        return OrderResult(
            action=request.action,
            symbol=request.symbol,
            data=data,
            cancelled_order_ids=cancelled,
        )

    async def _set_leverage(self, request: TradeRequest) -> OrderResult:
        if not request.leverage or request.leverage < 1:
            raise ValidationError("leverage is required to change leverage")
        data = await self.gateway.change_leverage(request.symbol, request.leverage)
        return OrderResult(action=request.action, symbol=request.symbol, data=data)

    async def _cancel_order(self, request: TradeRequest) -> OrderResult:
        if request.order_id is None:
            raise ValidationError("orderId is required to cancel an order")
        data = await self.gateway.cancel_order(request.symbol, request.order_id)
        return OrderResult(
            action=request.action,
            symbol=request.symbol,
            data=data,
            cancelled_order_ids=[request.order_id],
        )

    async def _cancel_all_orders(self, request: TradeRequest) -> OrderResult:
        data = await self.gateway.cancel_all_open_orders(request.symbol)
        return OrderResult(action=request.action, symbol=request.symbol, data=data)

    async def _batch_orders(self, request: TradeRequest) -> OrderResult:
        if not request.orders:
            raise ValidationError("orders must be a non-empty list for batch_orders")
        prepared: list[dict[str, Any]] = []
        for index, order in enumerate(request.orders):
            if not isinstance(order, dict) or not order.get("side") or not order.get("quantity"):
                raise ValidationError(f"batch order #{index + 1} must include side and quantity")
            entry = dict(order)
            entry.setdefault("symbol", request.symbol)
            entry.setdefault("type", "MARKET")
            entry["side"] = str(entry["side"]).upper()
            prepared.append(entry)
        data = await self.gateway.place_batch_orders(prepared)
        return OrderResult(action=request.action, symbol=request.symbol, data=data)


__all__ = [
    "Direction",
    "ExchangeGateway",
    "OrderActionDispatcher",
    "PROTECTIVE_ORDER_TYPES",
    "SIMPLE_TRADE_ACTIONS",
    "infer_direction",
]
