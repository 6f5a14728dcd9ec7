from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class TradeAction(str, Enum):
    BUY = "buy"
    SELL = "sell"
    CLOSE_POSITION = "close_position"
    SET_STOP_LOSS = "set_stop_loss"
    SET_TAKE_PROFIT = "set_take_profit"
    MOVE_STOP_LOSS = "move_stop_loss"
    MOVE_TAKE_PROFIT = "move_take_profit"
    SET_LEVERAGE = "set_leverage"
    CANCEL_ORDER = "cancel_order"
    CANCEL_ALL_ORDERS = "cancel_all_orders"
    BATCH_ORDERS = "batch_orders"


OrderType = Literal["MARKET", "LIMIT", "STOP_MARKET", "TAKE_PROFIT_MARKET"]
DecisionAction = Literal["buy", "sell", "close", "add", "reduce", "hold"]


def _normalize_symbol(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        msg = "Symbol must be provided"
        raise ValueError(msg)
    return value.strip().upper()


class Candle(BaseModel):
    """One OHLCV bucket as returned by the futures kline endpoint."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    open_time: int = Field(alias="openTime")
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: Decimal
    close_time: Optional[int] = Field(default=None, alias="closeTime")

    @classmethod
    def from_kline(cls, row: list[Any]) -> "Candle":
        return cls(
            open_time=int(row[0]),
            open=Decimal(str(row[1])),
            high=Decimal(str(row[2])),
            low=Decimal(str(row[3])),
            close=Decimal(str(row[4])),
            volume=Decimal(str(row[5])),
            close_time=int(row[6]) if len(row) > 6 and row[6] is not None else None,
        )


class Position(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    symbol: str
    position_amt: Decimal = Field(alias="positionAmt")
    entry_price: Optional[Decimal] = Field(default=None, alias="entryPrice")
    mark_price: Optional[Decimal] = Field(default=None, alias="markPrice")
    unrealized_profit: Optional[Decimal] = Field(default=None, alias="unrealizedProfit")
    liquidation_price: Optional[Decimal] = Field(default=None, alias="liquidationPrice")
    leverage: Optional[int] = None
    margin_type: Optional[str] = Field(default=None, alias="marginType")
    isolated_margin: Optional[Decimal] = Field(default=None, alias="isolatedMargin")
    position_side: str = Field(default="BOTH", alias="positionSide")

    @field_validator("symbol", mode="before")
    def normalize_symbol(cls, value: Any) -> str:  # noqa: N805
        return _normalize_symbol(value)

    @field_validator("leverage", mode="before")
    def coerce_leverage(cls, value: Any) -> Optional[int]:  # noqa: N805
        if value in (None, ""):
            return None
        return int(Decimal(str(value)))

    @property
    def is_active(self) -> bool:
        return self.position_amt != 0

    @classmethod
    def from_exchange(cls, record: dict[str, Any]) -> "Position":
        payload = dict(record)
        # positionRisk spells it unRealizedProfit
        if "unRealizedProfit" in payload and "unrealizedProfit" not in payload:
            payload["unrealizedProfit"] = payload.pop("unRealizedProfit")
        for key in ("entryPrice", "markPrice", "unrealizedProfit", "liquidationPrice", "isolatedMargin"):
            if payload.get(key) == "":
                payload[key] = None
        return cls.model_validate(payload)

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class AccountSnapshot(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    total_margin_balance: Optional[Decimal] = Field(default=None, alias="totalMarginBalance")
    total_wallet_balance: Optional[Decimal] = Field(default=None, alias="totalWalletBalance")
    total_unrealized_profit: Optional[Decimal] = Field(default=None, alias="totalUnrealizedProfit")
    available_balance: Optional[Decimal] = Field(default=None, alias="availableBalance")
    positions: list[Position] = Field(default_factory=list)

    @property
    def active_positions(self) -> list[Position]:
        return [position for position in self.positions if position.is_active]

    def find_position(self, symbol: str) -> Position | None:
        target = symbol.strip().upper()
        for position in self.active_positions:
            if position.symbol == target:
                return position
        return None

    def to_payload(self) -> dict[str, Any]:
        account = self.model_dump(mode="json", by_alias=True, exclude={"positions"})
        return {
            "account": account,
            "positions": [position.to_payload() for position in self.active_positions],
        }


class TradeDecision(BaseModel):
    """Structured decision extracted from an LLM reply."""

    model_config = ConfigDict(populate_by_name=True)

    action: DecisionAction
    quantity: Optional[Decimal] = None
    price: Optional[Decimal] = None
    order_type: Literal["MARKET", "LIMIT"] = Field(default="MARKET", alias="orderType")
    stop_loss: Optional[Decimal] = Field(default=None, alias="stopLoss")
    take_profit: Optional[Decimal] = Field(default=None, alias="takeProfit")
    reason: str = ""
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)

    @field_validator("action", mode="before")
    def normalize_action(cls, value: Any) -> Any:  # noqa: N805
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("order_type", mode="before")
    def normalize_order_type(cls, value: Any) -> Any:  # noqa: N805
        if value is None:
            return "MARKET"
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @field_validator("reason", mode="before")
    def default_reason(cls, value: Any) -> str:  # noqa: N805
        return "" if value is None else str(value)

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class TradeRequest(BaseModel):
    """Body accepted by the trade endpoints and produced by the decision pipeline."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    action: TradeAction
    symbol: str
    quantity: Optional[Decimal] = None
    price: Optional[Decimal] = None
    stop_price: Optional[Decimal] = Field(default=None, alias="stopPrice")
    order_type: OrderType = Field(default="MARKET", alias="orderType")
    leverage: Optional[int] = None
    position_side: Literal["BOTH", "LONG", "SHORT"] = Field(default="BOTH", alias="positionSide")
    reduce_only: bool = Field(default=False, alias="reduceOnly")
    order_id: Optional[int] = Field(default=None, alias="orderId")
    orders: Optional[list[dict[str, Any]]] = None

    @field_validator("symbol", mode="before")
    def normalize_symbol(cls, value: Any) -> str:  # noqa: N805
        return _normalize_symbol(value)

    @field_validator("action", mode="before")
    def normalize_action(cls, value: Any) -> Any:  # noqa: N805
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("order_type", "position_side", mode="before")
    def upper_enums(cls, value: Any) -> Any:  # noqa: N805
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @field_validator("quantity", "price", "stop_price", "leverage", "order_id", mode="before")
    def blank_as_missing(cls, value: Any) -> Any:  # noqa: N805
        if isinstance(value, str) and not value.strip():
            return None
        return value


class OrderResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    action: TradeAction
    symbol: str
    data: Any = None
    cancelled_order_ids: list[int] = Field(default_factory=list, alias="cancelledOrderIds")

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


__all__ = [
    "AccountSnapshot",
    "Candle",
    "DecisionAction",
    "OrderResult",
    "OrderType",
    "Position",
    "TradeAction",
    "TradeDecision",
    "TradeRequest",
]
