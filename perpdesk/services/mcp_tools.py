from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Sequence

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, field_validator

from perpdesk.core.errors import ExchangeError, ValidationError
from perpdesk.core.timeutils import format_to_beijing, utc_now_iso
from perpdesk.services.indicator_service import (
    INDICATOR_TYPES,
    MACD_FAST,
    MACD_SIGNAL,
    MACD_SLOW,
    KlineSource,
    compute_single_indicator,
    normalize_symbol,
)

logger = logging.getLogger(__name__)

TOOL_NAME = "crypto_indicators"
TOOL_TIMEFRAMES = ("1m", "5m", "15m", "1h", "4h", "1d")


class IndicatorToolArguments(BaseModel):
    symbol: str
    timeframe: str
    indicator: str
    period: int = Field(default=14, ge=1, le=200)
    limit: int = Field(default=100, ge=50, le=1000)

    @field_validator("symbol", "indicator", "timeframe", mode="before")
    def strip_text(cls, value: Any) -> Any:  # noqa: N805
        if isinstance(value, str):
            return value.strip()
        return value

    @field_validator("symbol")
    def upper_symbol(cls, value: str) -> str:  # noqa: N805
        return value.upper()

    @field_validator("indicator")
    def known_indicator(cls, value: str) -> str:  # noqa: N805
        lowered = value.lower()
        if lowered not in INDICATOR_TYPES:
            raise ValueError(f"indicator must be one of: {', '.join(INDICATOR_TYPES)}")
        return lowered

    @field_validator("timeframe")
    def known_timeframe(cls, value: str) -> str:  # noqa: N805
        if value not in TOOL_TIMEFRAMES:
            raise ValueError(f"timeframe must be one of: {', '.join(TOOL_TIMEFRAMES)}")
        return value


def _input_schema(coin_options: Sequence[str]) -> dict[str, Any]:
    return {
        "type": "object",
        "properties": {
            "symbol": {"type": "string", "description": "Base asset code", "enum": list(coin_options)},
            "timeframe": {"type": "string", "description": "Candle interval", "enum": list(TOOL_TIMEFRAMES)},
            "indicator": {"type": "string", "description": "Indicator type", "enum": list(INDICATOR_TYPES)},
            "period": {
                "type": "integer",
                "description": "Window for SMA/EMA/RSI; MACD always uses fast=12, slow=26, signal=9",
                "minimum": 1,
                "maximum": 200,
                "default": 14,
            },
            "limit": {
                "type": "integer",
                "description": "Number of candles to fetch",
                "minimum": 50,
                "maximum": 1000,
                "default": 100,
            },
        },
        "required": ["symbol", "timeframe", "indicator"],
    }


class IndicatorToolbox:
    """Tool catalogue and executor for the single-indicator calculation tool."""

    def __init__(self, gateway: KlineSource, coin_options: Sequence[str]) -> None:
        self.gateway = gateway
        self.coin_options = [coin.upper() for coin in coin_options]

    def catalogue(self) -> list[dict[str, Any]]:
        return [
            {
                "name": TOOL_NAME,
                "description": "Calculate SMA, EMA, RSI or MACD for a futures contract",
                "inputSchema": _input_schema(self.coin_options),
                "examples": [
                    {
                        "name": "calculate_rsi",
                        "description": "1h RSI for BTC",
                        "arguments": {"symbol": "BTC", "timeframe": "1h", "indicator": "rsi", "period": 14, "limit": 100},
                    },
                    {
                        "name": "calculate_macd",
                        "description": "4h MACD for ETH",
                        "arguments": {"symbol": "ETH", "timeframe": "4h", "indicator": "macd", "limit": 200},
                    },
                ],
            }
        ]

    def parse_arguments(self, arguments: dict[str, Any] | None) -> IndicatorToolArguments:
        try:
            args = IndicatorToolArguments.model_validate(arguments or {})
        except PydanticValidationError as exc:
            first = exc.errors()[0]
            field = ".".join(str(part) for part in first["loc"])
            raise ValidationError(f"invalid tool argument {field}: {first['msg']}") from exc
        if args.symbol not in self.coin_options:
            raise ValidationError(f"unsupported symbol, expected one of: {', '.join(self.coin_options)}")
        return args

    async def call(self, tool: str | None, arguments: dict[str, Any] | None) -> dict[str, Any]:
        if tool != TOOL_NAME:
            raise ValidationError(f"unknown tool: {tool}")
        return await self.calculate(self.parse_arguments(arguments))

    async def calculate(self, args: IndicatorToolArguments) -> dict[str, Any]:
        candles = await self.gateway.get_klines(normalize_symbol(args.symbol), args.timeframe, args.limit)
        if not candles:
            raise ExchangeError(f"no {args.timeframe} candles returned for {args.symbol}")
        data = await asyncio.to_thread(compute_single_indicator, candles, args.indicator, args.period)
        effective = data.pop("effectiveValues")
        logger.info("Computed %s %s %s over %s candles", args.symbol, args.timeframe, args.indicator, len(candles))
        return {
            "symbol": args.symbol,
            "timeframe": args.timeframe,
            "indicator": args.indicator,
            "period": (
                {"fast": MACD_FAST, "slow": MACD_SLOW, "signal": MACD_SIGNAL}
                if args.indicator == "macd"
                else args.period
            ),
            "data": data,
            "metadata": {
                "fetchedCandles": len(candles),
                "effectiveValues": effective,
                "updateTime": utc_now_iso(),
                "updateTimeBeijing": format_to_beijing(),
                "note": "Leading null values mark candles without enough history for the indicator.",
            },
        }

    async def rpc_call(self, params: dict[str, Any] | None) -> dict[str, Any]:
        """``tools/call`` in JSON-RPC form: the indicator series as a text content block."""
        params = params or {}
        result = await self.call(params.get("name", TOOL_NAME), params.get("arguments"))
        text = json.dumps(result["data"]["indicator"], ensure_ascii=False)
        return {"content": [{"type": "text", "text": text}]}


__all__ = ["IndicatorToolArguments", "IndicatorToolbox", "TOOL_NAME", "TOOL_TIMEFRAMES"]
