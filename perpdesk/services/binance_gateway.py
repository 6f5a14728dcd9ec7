from __future__ import annotations

import asyncio
import json
import logging
from decimal import Decimal
from typing import Any, Awaitable, Iterable, Optional

import ccxt.async_support as ccxt

from perpdesk.core.config import Settings, get_settings
from perpdesk.core.errors import ConfigurationError, ExchangeError
from perpdesk.models.trade import AccountSnapshot, Candle, Position

logger = logging.getLogger(__name__)

DEFAULT_FUTURES_URL = "https://fapi.binance.com"


class BinanceAPIError(ExchangeError):
    """The futures API rejected a request; ``code`` is Binance's error code when one was returned."""


def render_param(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Decimal):
        rendered = format(value, "f")
        if "." in rendered:
            rendered = rendered.rstrip("0").rstrip(".")
        return rendered or "0"
    if isinstance(value, float):
        return render_param(Decimal(repr(value)))
    return str(value)


async def _resolved(value: Any) -> Any:
    return value


def _clean_params(params: Optional[dict[str, Any]]) -> dict[str, str]:
    cleaned: dict[str, str] = {}
    for key, value in (params or {}).items():
        if value is None:
            continue
        cleaned[key] = render_param(value)
    return cleaned


def _error_details(exc: Exception) -> tuple[int | None, str]:
    """Split a ccxt error message (``"binanceusdm {json body}"``) into Binance's code and msg."""
    text = str(exc)
    start = text.find("{")
    if start < 0:
        return None, text
    try:
        body = json.loads(text[start:])
    except ValueError:
        return None, text
    if not isinstance(body, dict):
        return None, text
    code = body.get("code")
    message = body.get("msg") or body.get("message") or text
    try:
        parsed_code = int(code) if code is not None else None
    except (TypeError, ValueError):
        parsed_code = None
    return parsed_code, str(message)


def create_exchange(
    *,
    api_key: str | None,
    secret_key: str | None,
    base_url: str = DEFAULT_FUTURES_URL,
    recv_window: int = 5000,
    timeout: float = 10.0,
) -> Any:
    config: dict[str, Any] = {
        "enableRateLimit": True,
        "timeout": int(timeout * 1000),
        "options": {
            "defaultType": "future",
            "adjustForTimeDifference": True,
            "recvWindow": recv_window,
        },
    }
    if api_key and secret_key:
        config["apiKey"] = api_key
        config["secret"] = secret_key
    exchange = ccxt.binanceusdm(config)
    base = base_url.rstrip("/")
    if base != DEFAULT_FUTURES_URL:
        exchange.urls["api"].update(
            {
                "fapiPublic": f"{base}/fapi/v1",
                "fapiPublicV2": f"{base}/fapi/v2",
                "fapiPrivate": f"{base}/fapi/v1",
                "fapiPrivateV2": f"{base}/fapi/v2",
            }
        )
    return exchange


class BinanceFuturesGateway:
    """Binance USD-M futures access through ccxt's raw ``fapi`` endpoints.

    Replies keep Binance's own JSON shapes. ccxt signs requests and applies
    ``recvWindow`` plus the server time difference loaded by ``_sync_time``.
    """

    MAX_BATCH_ORDERS = 5

    def __init__(
        self,
        *,
        api_key: str | None = None,
        secret_key: str | None = None,
        base_url: str = DEFAULT_FUTURES_URL,
        recv_window: int = 5000,
        timeout: float = 10.0,
        exchange: Any | None = None,
    ) -> None:
        self.api_key = api_key
        self.secret_key = secret_key
        self.recv_window = recv_window
        self._owns_exchange = exchange is None
        self.exchange = exchange if exchange is not None else create_exchange(
            api_key=api_key,
            secret_key=secret_key,
            base_url=base_url,
            recv_window=recv_window,
            timeout=timeout,
        )
        self._time_synced = False

    @classmethod
    def from_settings(cls, settings: Settings | None = None, **kwargs: Any) -> "BinanceFuturesGateway":
        settings = settings or get_settings()
        return cls(
            api_key=settings.binance_api_key,
            secret_key=settings.binance_secret_key,
            base_url=settings.binance_futures_url,
            recv_window=settings.binance_recv_window,
            timeout=settings.http_timeout_seconds,
            **kwargs,
        )

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key and self.secret_key)

    async def close(self) -> None:
        if self._owns_exchange:
            await self.exchange.close()

    def _require_credentials(self) -> None:
        if not self.has_credentials:
            raise ConfigurationError("Binance API credentials are not configured")

    async def warm_up(self) -> None:
        """Sync the server clock offset ahead of the first signed request."""
        if not self.has_credentials:
            logger.info("Binance credentials not configured; skipping clock sync")
            return
        try:
            await self._sync_time()
        except ExchangeError as exc:
            logger.warning("Binance clock sync failed: %s", exc)

    # ------------------------------------------------------------------
    # transport
    # ------------------------------------------------------------------

    async def _sync_time(self) -> None:
        try:
            await self.exchange.load_time_difference()
        except ccxt.BaseError as exc:
            logger.error("Binance server time unavailable: %s", exc)
            raise ExchangeError(f"Binance clock sync failed: {exc}") from exc
        self._time_synced = True
        offset = self.exchange.options.get("timeDifference", 0)
        if abs(offset) > 1000:
            logger.info("Binance clock offset is %sms", offset)

    async def _call(
        self,
        endpoint: str,
        params: Optional[dict[str, Any]] = None,
        *,
        signed: bool = False,
        _retry: bool = False,
    ) -> Any:
        if signed:
            self._require_credentials()
            if not self._time_synced:
                await self._sync_time()
        method = getattr(self.exchange, endpoint)
        logger.debug("Binance %s", endpoint)
        try:
            return await method(_clean_params(params))
        except ccxt.InvalidNonce as exc:
            if signed and not _retry:
                logger.warning("Binance timestamp rejected; re-syncing clock")
                await self._sync_time()
                return await self._call(endpoint, params, signed=True, _retry=True)
            raise self._api_error(endpoint, exc) from exc
        except ccxt.NetworkError as exc:
            logger.error("Binance %s failed: %s", endpoint, exc)
            raise ExchangeError(f"Binance request failed: {exc}") from exc
        except ccxt.BaseError as exc:
            raise self._api_error(endpoint, exc) from exc

    @staticmethod
    def _api_error(endpoint: str, exc: Exception) -> BinanceAPIError:
        code, message = _error_details(exc)
        logger.error("Binance %s rejected (code=%s): %s", endpoint, code, message)
        return BinanceAPIError(message, code=code)

    # ------------------------------------------------------------------
    # market data
    # ------------------------------------------------------------------

    async def get_klines(self, symbol: str, interval: str, limit: int = 60) -> list[Candle]:
        rows = await self._call(
            "fapiPublicGetKlines",
            {"symbol": symbol, "interval": interval, "limit": limit},
        )
        return [Candle.from_kline(row) for row in rows]

    # ------------------------------------------------------------------
    # account
    # ------------------------------------------------------------------

    async def get_account(self) -> dict[str, Any]:
        return await self._call("fapiPrivateV2GetAccount", signed=True)

    async def get_position_risk(self, symbol: str | None = None) -> list[dict[str, Any]]:
        return await self._call("fapiPrivateV2GetPositionRisk", {"symbol": symbol}, signed=True)

    async def get_open_orders(self, symbol: str | None = None) -> list[dict[str, Any]]:
        return await self._call("fapiPrivateGetOpenOrders", {"symbol": symbol}, signed=True)

    async def get_user_trades(self, symbol: str, limit: int = 10) -> list[dict[str, Any]]:
        return await self._call("fapiPrivateGetUserTrades", {"symbol": symbol, "limit": limit}, signed=True)

    async def get_leverage_bracket(self, symbol: str) -> Any:
        return await self._call("fapiPrivateGetLeverageBracket", {"symbol": symbol}, signed=True)

    async def get_positions(self, symbol: str | None = None) -> list[Position]:
        records = await self.get_position_risk(symbol)
        return [Position.from_exchange(record) for record in records]

    async def find_active_position(self, symbol: str) -> Position | None:
        """Fetch position state fresh and return the non-flat entry for ``symbol``."""
        target = symbol.upper()
        for position in await self.get_positions(target):
            if position.symbol == target and position.is_active:
                return position
        return None

    async def _soft(self, call: Awaitable[Any], default: Any, label: str) -> Any:
        try:
            return await call
        except ExchangeError as exc:
            logger.warning("Binance %s unavailable: %s", label, exc)
            return default

    async def get_overview(self) -> dict[str, Any]:
        """Active positions, open orders and balance summary; each part degrades independently."""
        self._require_credentials()
        risk, open_orders, account = await asyncio.gather(
            self._soft(self.get_position_risk(), [], "positions"),
            self._soft(self.get_open_orders(), [], "open orders"),
            self._soft(self.get_account(), None, "account"),
        )
        positions = [Position.from_exchange(record) for record in risk]
        account_info = None
        if account:
            account_info = {
                key: account.get(key)
                for key in ("totalWalletBalance", "totalUnrealizedProfit", "totalMarginBalance", "availableBalance")
            }
        return {
            "positions": [position.to_payload() for position in positions if position.is_active],
            "openOrders": open_orders,
            "accountInfo": account_info,
        }

    async def get_symbol_overview(self, symbol: str, detailed: bool = False) -> dict[str, Any]:
        self._require_credentials()
        trades_call: Awaitable[Any] = (
            self._soft(self.get_user_trades(symbol, 10), [], "user trades") if detailed else _resolved([])
        )
        risk, open_orders, trades, leverage = await asyncio.gather(
            self._soft(self.get_position_risk(symbol), [], "positions"),
            self._soft(self.get_open_orders(symbol), [], "open orders"),
            trades_call,
            self._soft(self.get_leverage_bracket(symbol), None, "leverage bracket"),
        )
        active = [Position.from_exchange(record) for record in risk]
        current = next((position for position in active if position.is_active), None)
        return {
            "symbol": symbol,
            "position": current.to_payload() if current else None,
            "openOrders": open_orders,
            "recentTrades": trades,
            "leverageInfo": leverage,
        }

    async def get_account_snapshot(self) -> AccountSnapshot:
        account, risk = await asyncio.gather(self.get_account(), self.get_position_risk())
        positions = [Position.from_exchange(record) for record in risk]
        return AccountSnapshot(
            total_margin_balance=account.get("totalMarginBalance"),
            total_wallet_balance=account.get("totalWalletBalance"),
            total_unrealized_profit=account.get("totalUnrealizedProfit"),
            available_balance=account.get("availableBalance"),
            positions=[position for position in positions if position.is_active],
        )

    # ------------------------------------------------------------------
    # orders
    # ------------------------------------------------------------------

    async def place_order(self, **params: Any) -> dict[str, Any]:
        result = await self._call("fapiPrivatePostOrder", params, signed=True)
        logger.info(
            "Placed %s %s order on %s (id=%s)",
            params.get("side"),
            params.get("type"),
            params.get("symbol"),
            result.get("orderId") if isinstance(result, dict) else None,
        )
        return result

    async def cancel_order(self, symbol: str, order_id: int) -> dict[str, Any]:
        result = await self._call("fapiPrivateDeleteOrder", {"symbol": symbol, "orderId": order_id}, signed=True)
        logger.info("Cancelled order %s on %s", order_id, symbol)
        return result

    async def cancel_all_open_orders(self, symbol: str) -> dict[str, Any]:
        result = await self._call("fapiPrivateDeleteAllOpenOrders", {"symbol": symbol}, signed=True)
        logger.info("Cancelled all open orders on %s", symbol)
        return result

    async def place_batch_orders(self, orders: Iterable[dict[str, Any]]) -> list[Any]:
        prepared = [_clean_params(order) for order in orders]
        results: list[Any] = []
        for start in range(0, len(prepared), self.MAX_BATCH_ORDERS):
            chunk = prepared[start : start + self.MAX_BATCH_ORDERS]
            reply = await self._call(
                "fapiPrivatePostBatchOrders",
                {"batchOrders": json.dumps(chunk, separators=(",", ":"))},
                signed=True,
            )
            results.extend(reply if isinstance(reply, list) else [reply])
        logger.info("Submitted %s batch orders", len(prepared))
        return results

    async def change_leverage(self, symbol: str, leverage: int) -> dict[str, Any]:
        result = await self._call(
            "fapiPrivatePostLeverage", {"symbol": symbol, "leverage": int(leverage)}, signed=True
        )
        logger.info("Leverage for %s set to %sx", symbol, leverage)
        return result


__all__ = ["BinanceAPIError", "BinanceFuturesGateway", "create_exchange", "render_param"]
