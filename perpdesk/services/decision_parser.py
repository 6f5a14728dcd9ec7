from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Iterator, Optional

from pydantic import ValidationError as PydanticValidationError

from perpdesk.models.trade import TradeAction, TradeDecision, TradeRequest

AUTO_TRADE_CONFIDENCE_THRESHOLD = 0.7
QUOTE_SUFFIX = "USDT"


@dataclass(slots=True, frozen=True)
class DecisionFound:
    decision: TradeDecision
    raw_text: str

    @property
    def error(self) -> None:
        return None


@dataclass(slots=True, frozen=True)
class NoDecisionFound:
    raw_text: str

    @property
    def decision(self) -> None:
        return None

    @property
    def error(self) -> str:
        return "no JSON decision found in the model reply"


@dataclass(slots=True, frozen=True)
class DecisionParseError:
    raw_text: str
    reason: str

    @property
    def decision(self) -> None:
        return None

    @property
    def error(self) -> str:
        return f"failed to parse decision: {self.reason}"


DecisionOutcome = DecisionFound | NoDecisionFound | DecisionParseError


def iter_balanced_objects(text: str) -> Iterator[str]:
    """Yield every top-level balanced ``{...}`` substring, left to right.

    Braces inside JSON string literals (including escaped quotes) do not count.
    """
    depth = 0
    start = -1
    in_string = False
    escaped = False
    for index, char in enumerate(text):
        if depth and in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"' and depth:
            in_string = True
        elif char == "{":
            if depth == 0:
                start = index
            depth += 1
        elif char == "}" and depth:
            depth -= 1
            if depth == 0:
                yield text[start : index + 1]


def extract_decision(text: Optional[str]) -> DecisionOutcome:
    """Pull a ``TradeDecision`` out of free-form model output without raising."""
    raw_text = text or ""
    first_error: str | None = None
    for candidate in iter_balanced_objects(raw_text):
        try:
            payload = json.loads(candidate)
        except json.JSONDecodeError as exc:
            first_error = first_error or f"invalid JSON: {exc.msg}"
            continue
        if not isinstance(payload, dict):
            continue
        try:
            decision = TradeDecision.model_validate(payload)
        except PydanticValidationError as exc:
            details = "; ".join(
                f"{'.'.join(str(part) for part in error['loc']) or 'decision'}: {error['msg']}"
                for error in exc.errors()
            )
            return DecisionParseError(raw_text=raw_text, reason=details)
        return DecisionFound(decision=decision, raw_text=raw_text)
    if first_error:
        return DecisionParseError(raw_text=raw_text, reason=first_error)
    if "{" in raw_text:
        return DecisionParseError(raw_text=raw_text, reason="unbalanced braces")
    return NoDecisionFound(raw_text=raw_text)


def should_auto_trade(decision: TradeDecision | None) -> bool:
    if decision is None:
        return False
    return decision.action != "hold" and decision.confidence > AUTO_TRADE_CONFIDENCE_THRESHOLD


_NUMBER = r"(\d+(?:\.\d+)?)"
_SYMBOL = r"([A-Za-z0-9]+)"
_PRICE_SUFFIX = rf"(?:\s*[（(]?\s*(?:价格|限价)\s*[:：]?\s*{_NUMBER})?"

_ORDER_PATTERNS = (
    (TradeAction.BUY, re.compile(rf"买入\s*{_SYMBOL}\s*{_NUMBER}{_PRICE_SUFFIX}", re.ASCII)),
    (TradeAction.SELL, re.compile(rf"卖出\s*{_SYMBOL}\s*{_NUMBER}{_PRICE_SUFFIX}", re.ASCII)),
)
_RISK_PATTERNS = (
    (TradeAction.SET_STOP_LOSS, re.compile(rf"止损\s*[:：]?\s*{_SYMBOL}\s*{_NUMBER}", re.ASCII)),
    (TradeAction.SET_TAKE_PROFIT, re.compile(rf"止盈\s*[:：]?\s*{_SYMBOL}\s*{_NUMBER}", re.ASCII)),
)


def to_contract_symbol(symbol: str) -> str:
    cleaned = symbol.strip().upper()
    if cleaned.endswith(QUOTE_SUFFIX) and cleaned != QUOTE_SUFFIX:
        return cleaned
    return f"{cleaned}{QUOTE_SUFFIX}"


@dataclass(slots=True, frozen=True)
class TradeInstruction:
    action: TradeAction
    symbol: str
    quantity: str | None = None
    price: str | None = None
    stop_price: str | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"action": self.action.value, "symbol": self.symbol}
        if self.quantity is not None:
            payload["quantity"] = self.quantity
        if self.price is not None:
            payload["price"] = self.price
        if self.stop_price is not None:
            payload["stopPrice"] = self.stop_price
        return payload

    def to_request(self) -> TradeRequest:
        if self.action in (TradeAction.BUY, TradeAction.SELL):
            return TradeRequest(
                action=self.action,
                symbol=self.symbol,
                quantity=self.quantity,
                price=self.price,
                order_type="LIMIT" if self.price else "MARKET",
            )
        return TradeRequest(action=self.action, symbol=self.symbol, stop_price=self.stop_price)


def parse_trade_instructions(text: Optional[str]) -> list[TradeInstruction]:
    """Collect every buy/sell/stop-loss/take-profit instruction line in ``text``.

    Recognised forms::

        买入 BTC 0.01
        卖出 ETH 0.1 价格3500
        止损 BTC 50000
        止盈 BTC 55000
    """
    instructions: list[TradeInstruction] = []
    for line in (text or "").splitlines():
        stripped = line.strip()
        if not stripped:
            continue
        for action, pattern in _ORDER_PATTERNS:
            match = pattern.search(stripped)
            if match:
                instructions.append(
                    TradeInstruction(
                        action=action,
                        symbol=to_contract_symbol(match.group(1)),
                        quantity=match.group(2),
                        price=match.group(3),
                    )
                )
        for action, pattern in _RISK_PATTERNS:
            match = pattern.search(stripped)
            if match:
                instructions.append(
                    TradeInstruction(
                        action=action,
                        symbol=to_contract_symbol(match.group(1)),
                        stop_price=match.group(2),
                    )
                )
    return instructions


__all__ = [
    "AUTO_TRADE_CONFIDENCE_THRESHOLD",
    "DecisionFound",
    "DecisionOutcome",
    "DecisionParseError",
    "NoDecisionFound",
    "TradeInstruction",
    "extract_decision",
    "iter_balanced_objects",
    "parse_trade_instructions",
    "should_auto_trade",
    "to_contract_symbol",
]
