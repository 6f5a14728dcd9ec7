from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Optional, Protocol, Sequence

from perpdesk.core.errors import PerpdeskError, PositionNotFoundError, ValidationError
from perpdesk.core.timeutils import format_to_beijing, utc_now_iso
from perpdesk.models.trade import AccountSnapshot, OrderResult, Position, TradeAction, TradeDecision, TradeRequest
from perpdesk.services.analysis_cache import AnalysisCache
from perpdesk.services.decision_parser import (
    AUTO_TRADE_CONFIDENCE_THRESHOLD,
    DecisionFound,
    extract_decision,
    parse_trade_instructions,
    should_auto_trade,
)
from perpdesk.services.indicator_service import (
    DEFAULT_TIMEFRAMES,
    IndicatorService,
    base_asset,
    normalize_symbol,
)
from perpdesk.services.llm_service import LLMService
from perpdesk.services.order_dispatcher import OrderActionDispatcher, infer_direction
from perpdesk.services.prompt_builder import (
    DEFAULT_ANALYST_INSTRUCTIONS,
    DEFAULT_TRADER_INSTRUCTIONS,
    PromptLibrary,
    build_analysis_prompt,
    build_context_prompt,
    build_decision_prompt,
    build_fast_prompt,
    build_smart_trade_prompt,
)

logger = logging.getLogger(__name__)

FAST_TIMEFRAMES = ("15m", "1h")
FAST_TECHNICAL_TIMEOUT = 8.0
FAST_ACCOUNT_TIMEOUT = 3.0


def fallback_technical_data(symbol: str) -> dict[str, Any]:
    """Placeholder market data used when the quick analysis cannot reach the exchange in time."""
    return {
        "symbol": symbol,
        "data": {
            "15m": {"closes": [50000, 50100, 50200], "indicators": {"rsi": [50, 52, 54]}},
            "1h": {"closes": [49800, 50000, 50200], "indicators": {"rsi": [48, 50, 52]}},
        },
    }


def fallback_fast_analysis(symbol: str) -> str:
    return f"{symbol}当前市场稳定，建议观望。"


class AccountGateway(Protocol):
    async def get_account_snapshot(self) -> AccountSnapshot: ...

    async def find_active_position(self, symbol: str) -> Position | None: ...


@dataclass(slots=True)
class RiskOrderOutcome:
    kind: str
    success: bool
    data: Any = None
    error: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return {"type": self.kind, "success": self.success, "data": self.data, "error": self.error}


@dataclass(slots=True)
class AutoTradeResult:
    request: TradeRequest | None = None
    order: OrderResult | None = None
    error: str | None = None
    risk_orders: list[RiskOrderOutcome] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.order is not None and self.error is None

    def to_payload(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "request": self.request.model_dump(mode="json", by_alias=True, exclude_none=True) if self.request else None,
            "order": self.order.to_payload() if self.order else None,
            "error": self.error,
            "riskManagement": [outcome.to_payload() for outcome in self.risk_orders],
        }


@dataclass(slots=True)
class AnalysisResult:
    symbol: str
    analysis: str
    technical_data: dict[str, Any]
    decision: TradeDecision | None = None
    auto_trade: AutoTradeResult | None = None
    error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "symbol": self.symbol,
            "analysis": self.analysis,
            "decision": self.decision.to_payload() if self.decision else None,
            "autoTrade": self.auto_trade.to_payload() if self.auto_trade else None,
            "technicalData": self.technical_data,
            "metadata": self.metadata,
            "timestamp": utc_now_iso(),
            "timestampBeijing": format_to_beijing(),
        }
        if self.error:
            payload["error"] = self.error
        return payload


@dataclass(slots=True)
class FastAnalysis:
    symbol: str
    analysis: str
    technical_fallback: bool
    positions: list[dict[str, Any]]


class AnalysisOrchestrator:
    """Feeds market data and indicators to the LLM and routes decisions to the dispatcher."""

    def __init__(
        self,
        gateway: AccountGateway,
        indicators: IndicatorService,
        llm: LLMService,
        dispatcher: OrderActionDispatcher,
        prompts: PromptLibrary,
    ) -> None:
        self.gateway = gateway
        self.indicators = indicators
        self.llm = llm
        self.dispatcher = dispatcher
        self.prompts = prompts

    async def technical_data(self, symbol: str, timeframes: Sequence[str] = DEFAULT_TIMEFRAMES) -> dict[str, Any]:
        return await self.indicators.collect_report(symbol, timeframes)

    # ------------------------------------------------------------------
    # narrative analysis
    # ------------------------------------------------------------------

    async def analyze(self, symbol: str) -> AnalysisResult:
        asset = base_asset(symbol)
        technical = await self.technical_data(asset)
        system = self.prompts.analysis_prompt() or DEFAULT_ANALYST_INSTRUCTIONS
        text = await self.llm.complete(
            build_analysis_prompt(asset, technical),
            system=system,
            temperature=0.7,
            max_tokens=2000,
        )
        return AnalysisResult(
            symbol=asset,
            analysis=text,
            technical_data=technical,
            metadata={
                "model": self.llm.model_id,
                "autoTrading": False,
                "analysisTimeBeijing": format_to_beijing(),
            },
        )

    async def analyze_cached(
        self,
        symbol: str,
        cache: AnalysisCache,
        *,
        refresh: bool = False,
    ) -> tuple[dict[str, Any], bool]:
        asset = base_asset(symbol)
        if refresh and cache.expire(asset):
            logger.info("Dropped cached analysis for %s on request", asset)
        cached = cache.get(asset)
        if cached is not None:
            return cached, True
        result = await self.analyze(asset)
        payload = result.to_payload()
        cache.purge_expired()
        cache.set(asset, payload)
        return payload, False

    # ------------------------------------------------------------------
    # decision analysis with optional execution
    # ------------------------------------------------------------------

    async def analyze_with_auto_trading(
        self,
        symbol: str,
        confidence_threshold: Optional[float] = None,
    ) -> AnalysisResult:
        asset = base_asset(symbol)
        contract = normalize_symbol(asset)
        technical, snapshot = await asyncio.gather(
            self.technical_data(asset),
            self.gateway.get_account_snapshot(),
        )
        position = snapshot.find_position(contract)
        system = self.prompts.trading_prompt() or DEFAULT_TRADER_INSTRUCTIONS
        text = await self.llm.complete(
            build_decision_prompt(asset, technical, position.to_payload() if position else None),
            system=system,
            temperature=0.3,
            max_tokens=1000,
        )
        metadata: dict[str, Any] = {
            "model": self.llm.model_id,
            "autoTrading": True,
            # the gate is fixed; the requested threshold is only echoed
            "confidenceThreshold": confidence_threshold,
            "appliedConfidenceThreshold": AUTO_TRADE_CONFIDENCE_THRESHOLD,
            "analysisTimeBeijing": format_to_beijing(),
        }
        outcome = extract_decision(text)
        if not isinstance(outcome, DecisionFound):
            logger.warning("No usable decision in model reply for %s: %s", asset, outcome.error)
            metadata["autoTradeTriggered"] = False
            return AnalysisResult(
                symbol=asset,
                analysis=text,
                technical_data=technical,
                error=outcome.error,
                metadata=metadata,
            )

        decision = outcome.decision
        auto_trade: AutoTradeResult | None = None
        triggered = should_auto_trade(decision)
        if triggered:
            auto_trade = await self.execute_decision(contract, decision)
        else:
            logger.info(
                "Auto trade skipped for %s (action=%s confidence=%.2f)",
                asset,
                decision.action,
                decision.confidence,
            )
        metadata["autoTradeTriggered"] = triggered
        return AnalysisResult(
            symbol=asset,
            analysis=text,
            technical_data=technical,
            decision=decision,
            auto_trade=auto_trade,
            metadata=metadata,
        )

    async def _decision_to_request(
        self,
        symbol: str,
        decision: TradeDecision,
    ) -> TradeRequest:
        if decision.action == "hold":
            raise ValidationError("hold decisions are never executed")
        if decision.action == "close":
            return TradeRequest(action=TradeAction.CLOSE_POSITION, symbol=symbol)
        if decision.action in ("buy", "sell"):
            return TradeRequest(
                action=TradeAction(decision.action),
                symbol=symbol,
                quantity=decision.quantity,
                price=decision.price,
                order_type=decision.order_type,
            )

        # add/reduce act on the position as the exchange reports it now
        position = await self.gateway.find_active_position(symbol)
        if position is None:
            raise PositionNotFoundError(symbol)
        closing = infer_direction(position.position_amt, symbol)
        if decision.action == "add":
            side = "BUY" if closing.side == "SELL" else "SELL"
            return TradeRequest(
                action=TradeAction(side.lower()),
                symbol=symbol,
                quantity=decision.quantity,
                price=decision.price,
                order_type=decision.order_type,
            )
        return TradeRequest(
            action=TradeAction(closing.side.lower()),
            symbol=symbol,
            quantity=decision.quantity if decision.quantity is not None else abs(position.position_amt),
            price=decision.price,
            order_type=decision.order_type,
            reduce_only=True,
        )

    async def execute_decision(
        self,
        symbol: str,
        decision: TradeDecision,
    ) -> AutoTradeResult:
        """Submit a decision as orders; failures are recorded on the result, never raised."""
        result = AutoTradeResult()
        try:
            result.request = await self._decision_to_request(symbol, decision)
            result.order = await self.dispatcher.dispatch(result.request)
        except PerpdeskError as exc:
            logger.error("Auto trade for %s failed: %s", symbol, exc)
            result.error = str(exc)
            return result

        if decision.action in ("buy", "sell", "add"):
            result.risk_orders = await self._place_risk_orders(symbol, decision)
        return result

    async def _place_risk_orders(self, symbol: str, decision: TradeDecision) -> list[RiskOrderOutcome]:
        legs: list[tuple[str, TradeRequest]] = []
        if decision.stop_loss is not None:
            legs.append(
                ("stop_loss", TradeRequest(action=TradeAction.SET_STOP_LOSS, symbol=symbol, stop_price=decision.stop_loss))
            )
        if decision.take_profit is not None:
            legs.append(
                (
                    "take_profit",
                    TradeRequest(action=TradeAction.SET_TAKE_PROFIT, symbol=symbol, stop_price=decision.take_profit),
                )
            )
        if not legs:
            return []
        replies = await asyncio.gather(
            *(self.dispatcher.dispatch(request) for _, request in legs),
            return_exceptions=True,
        )
        outcomes: list[RiskOrderOutcome] = []
        for (kind, _), reply in zip(legs, replies):
            if isinstance(reply, BaseException):
                logger.warning("Failed to place %s for %s: %s", kind, symbol, reply)
                outcomes.append(RiskOrderOutcome(kind=kind, success=False, error=str(reply)))
            else:
                outcomes.append(RiskOrderOutcome(kind=kind, success=True, data=reply.data))
        return outcomes

    # ------------------------------------------------------------------
    # quick analysis
    # ------------------------------------------------------------------

    async def _fast_technical(self, asset: str) -> tuple[dict[str, Any], bool]:
        try:
            data = await asyncio.wait_for(self.technical_data(asset, FAST_TIMEFRAMES), FAST_TECHNICAL_TIMEOUT)
        except Exception as exc:
            logger.warning("Quick analysis market data unavailable for %s: %s", asset, exc)
            return fallback_technical_data(asset), True
        return data, False

    async def _fast_positions(self) -> list[dict[str, Any]]:
        try:
            snapshot = await asyncio.wait_for(self.gateway.get_account_snapshot(), FAST_ACCOUNT_TIMEOUT)
        except Exception as exc:
            logger.warning("Quick analysis account data unavailable: %s", exc)
            return []
        return [position.to_payload() for position in snapshot.active_positions]

    @staticmethod
    def _latest(technical: dict[str, Any], timeframe: str, default_price: float = 50000, default_rsi: float = 50) -> tuple[float, float]:
        frame = (technical.get("data") or {}).get(timeframe) or {}
        closes = frame.get("closes") or []
        rsi = (frame.get("indicators") or {}).get("rsi") or []
        return (closes[-1] if closes else default_price), (rsi[-1] if rsi else default_rsi)

    async def _fast_inputs(self, asset: str) -> tuple[dict[str, Any], bool, list[dict[str, Any]]]:
        (technical, used_fallback), positions = await asyncio.gather(
            self._fast_technical(asset),
            self._fast_positions(),
        )
        return technical, used_fallback, positions

    async def _fast_text(self, asset: str, technical: dict[str, Any]) -> str:
        price_15m, rsi_15m = self._latest(technical, "15m")
        price_1h, rsi_1h = self._latest(technical, "1h")
        prompt = build_fast_prompt(
            asset,
            price_15m=round(price_15m, 4),
            rsi_15m=round(rsi_15m, 2),
            price_1h=round(price_1h, 4),
            rsi_1h=round(rsi_1h, 2),
        )
        try:
            return await self.llm.complete(prompt, system=DEFAULT_ANALYST_INSTRUCTIONS, temperature=0.1, max_tokens=150)
        except PerpdeskError as exc:
            logger.warning("Quick analysis LLM call failed for %s: %s", asset, exc)
            return fallback_fast_analysis(asset)

    async def fast_analysis(self, symbol: str) -> FastAnalysis:
        asset = base_asset(symbol)
        technical, used_fallback, positions = await self._fast_inputs(asset)
        text = await self._fast_text(asset, technical)
        return FastAnalysis(symbol=asset, analysis=text, technical_fallback=used_fallback, positions=positions)

    async def fast_analysis_events(self, symbol: str) -> AsyncIterator[dict[str, Any]]:
        """Progress and result events for the server-sent quick analysis stream."""
        asset = base_asset(symbol) or "BTC"
        yield {"type": "chunk", "content": "快速获取市场数据...\n"}
        try:
            technical, _, _ = await self._fast_inputs(asset)
            yield {"type": "chunk", "content": "生成快速分析...\n"}
            text = await self._fast_text(asset, technical)
        except Exception:
            logger.exception("Quick analysis stream failed for %s", asset)
            text = f"分析完成：{asset}市场数据获取成功"
        yield {"type": "chunk", "content": text}
        yield {"type": "complete"}

    # ------------------------------------------------------------------
    # instruction-style trading
    # ------------------------------------------------------------------

    async def smart_trade(self, symbol: str, auto_execute: bool = False) -> dict[str, Any]:
        asset = base_asset(symbol)
        technical = await self.technical_data(asset)
        try:
            snapshot = await self.gateway.get_account_snapshot()
            positions = [position.to_payload() for position in snapshot.active_positions]
        except PerpdeskError as exc:
            logger.warning("Smart trade continuing without positions: %s", exc)
            positions = []
        system = self.prompts.trading_prompt() or DEFAULT_TRADER_INSTRUCTIONS
        text = await self.llm.complete(
            build_smart_trade_prompt(asset, technical, positions),
            system=system,
            temperature=0.3,
            max_tokens=1500,
        )
        instructions = parse_trade_instructions(text)
        executions: list[dict[str, Any]] = []
        if auto_execute:
            for instruction in instructions:
                record: dict[str, Any] = {"instruction": instruction.to_payload()}
                try:
                    order = await self.dispatcher.dispatch_simple(instruction.to_request())
                except PerpdeskError as exc:
                    logger.error("Smart trade instruction %s failed: %s", instruction.to_payload(), exc)
                    record["error"] = str(exc)
                else:
                    record["result"] = order.to_payload()
                executions.append(record)
        return {
            "symbol": asset,
            "analysis": text,
            "instructions": [instruction.to_payload() for instruction in instructions],
            "autoExecute": auto_execute,
            "executions": executions,
            "positions": positions,
            "timestamp": utc_now_iso(),
            "timestampBeijing": format_to_beijing(),
        }

    async def prompt_analysis(
        self,
        symbol: str,
        prompt_type: str,
        market_data: dict[str, Any],
        indicators: dict[str, Any],
    ) -> dict[str, Any]:
        template = self.prompts.by_type(prompt_type)
        source = "file"
        if not template:
            template = DEFAULT_ANALYST_INSTRUCTIONS
            source = "builtin"
        context = {
            "symbol": symbol,
            "marketData": market_data,
            "indicators": indicators,
            "timestamp": utc_now_iso(),
        }
        text = await self.llm.complete(
            build_context_prompt(symbol, context),
            system=template,
            temperature=0.7,
            max_tokens=1000,
        )
        outcome = extract_decision(text)
        return {
            "success": True,
            "symbol": symbol,
            "promptType": prompt_type,
            "analysis": text,
            "decision": outcome.decision.to_payload() if outcome.decision else None,
            "error": outcome.error,
            "metadata": {
                "promptUsed": prompt_type,
                "promptSource": source,
                "timestamp": utc_now_iso(),
            },
        }


__all__ = [
    "AnalysisOrchestrator",
    "AnalysisResult",
    "AutoTradeResult",
    "FAST_TIMEFRAMES",
    "FastAnalysis",
    "RiskOrderOutcome",
    "fallback_fast_analysis",
    "fallback_technical_data",
]
