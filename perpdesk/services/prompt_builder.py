from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Optional

from perpdesk.core.config import Settings, get_settings
from perpdesk.services.prompt_utils import dump_context, sanitize_prompt_text

logger = logging.getLogger(__name__)

PROMPT_TYPES = ("analysis", "trading", "default")

DEFAULT_ANALYST_INSTRUCTIONS = (
    "你是一个专业的加密货币分析师，擅长技术分析和市场趋势判断。"
    "请基于提供的多周期K线与技术指标数据给出专业、客观的分析，并用中文回答。"
)

DEFAULT_TRADER_INSTRUCTIONS = (
    "你是一个专业的加密货币交易AI，擅长自动交易决策和风险管理。请基于市场数据做出精确的交易决策。"
)

DECISION_JSON_TEMPLATE = """{
  "action": "buy|sell|close|add|reduce|hold",
  "quantity": 0.001,
  "price": 50000,
  "orderType": "MARKET|LIMIT",
  "stopLoss": 49000,
  "takeProfit": 51000,
  "reason": "分析原因",
  "confidence": 0.8
}"""


class PromptLibrary:
    """Prompt text files looked up by type under the configured prompts directory."""

    def __init__(
        self,
        prompts_dir: str | Path = "./prompts",
        *,
        default_file: str = "prompt.txt",
        analysis_file: str = "analysis_prompt.txt",
        trading_file: str = "trading_prompt.txt",
    ) -> None:
        self.prompts_dir = Path(prompts_dir)
        self.default_file = default_file
        self.analysis_file = analysis_file
        self.trading_file = trading_file

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "PromptLibrary":
        settings = settings or get_settings()
        return cls(
            settings.prompts_dir,
            default_file=settings.default_prompt_file,
            analysis_file=settings.analysis_prompt_file,
            trading_file=settings.trading_prompt_file,
        )

    def read(self, filename: str, default: str = "") -> str:
        path = self.prompts_dir / filename
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.warning("Prompt file not found: %s", path)
            return default
        except OSError as exc:
            logger.error("Failed to read prompt file %s: %s", path, exc)
            return default
        return sanitize_prompt_text(text) or default

    def default_prompt(self) -> str:
        return self.read(self.default_file)

    def analysis_prompt(self) -> str:
        return self.read(self.analysis_file, self.default_prompt())

    def trading_prompt(self) -> str:
        return self.read(self.trading_file, self.default_prompt())

    def by_type(self, prompt_type: str) -> str:
        if prompt_type == "analysis":
            return self.analysis_prompt()
        if prompt_type == "trading":
            return self.trading_prompt()
        return self.default_prompt()

    def available_files(self) -> list[str]:
        if not self.prompts_dir.is_dir():
            return []
        return sorted(path.name for path in self.prompts_dir.glob("*.txt") if path.is_file())

    def describe(self) -> dict[str, Any]:
        return {
            "promptTypes": list(PROMPT_TYPES),
            "availableFiles": self.available_files(),
            "files": {
                "default": self.default_file,
                "analysis": self.analysis_file,
                "trading": self.trading_file,
            },
            "promptsDir": str(self.prompts_dir),
        }


def build_analysis_prompt(symbol: str, technical_data: dict[str, Any]) -> str:
    return (
        f"请分析{symbol}的市场行情，基于以下技术指标：\n\n"
        f"{dump_context(technical_data)}\n\n"
        "请提供：\n"
        "1. 当前趋势分析\n"
        "2. 关键支撑位和阻力位\n"
        "3. 技术指标解读\n"
        "4. 交易建议\n\n"
        "请用中文回答，保持专业、客观。"
    )


def build_decision_prompt(
    symbol: str,
    technical_data: dict[str, Any],
    position: Optional[dict[str, Any]] = None,
) -> str:
    prompt = (
        f"请分析{symbol}的市场行情并直接给出交易决策。\n\n"
        f"市场数据：\n{dump_context(technical_data)}\n\n"
        "当前要求：\n"
        "1. 基于技术指标分析市场趋势\n"
        "2. 评估当前持仓风险\n"
        "3. 直接给出具体的交易操作（买入/卖出/平仓/加仓/减仓）\n"
        "4. 给出操作的数量和价格建议\n"
        "5. 设置止损和止盈位\n\n"
        f"请严格按照以下JSON格式返回决策结果：\n{DECISION_JSON_TEMPLATE}\n\n"
        "重要规则：\n"
        "- 只有在高置信度时才建议交易\n"
        "- 必须设置止损保护\n"
        "- 保持风险控制"
    )
    if position:
        prompt += f"\n\n当前持仓信息：\n{dump_context(position)}\n\n请基于当前持仓情况给出最优操作决策。"
    return prompt


def build_smart_trade_prompt(
    symbol: str,
    technical_data: dict[str, Any],
    positions: list[dict[str, Any]],
) -> str:
    return (
        f"请分析{symbol}的市场数据并给出具体的交易指令。\n\n"
        f"市场数据：\n{dump_context(technical_data)}\n\n"
        f"仓位信息：\n{dump_context(positions)}\n\n"
        "请按照以下步骤进行分析和决策：\n"
        "1. 市场趋势分析：价格走势、关键支撑位和阻力位、技术指标信号\n"
        "2. 仓位风险评估：当前持仓盈亏与风险敞口\n"
        "3. 交易决策：每条指令单独一行，格式如下\n"
        "买入 BTC 0.01\n"
        "卖出 ETH 0.1 价格3500\n"
        "止损 BTC 50000\n"
        "止盈 BTC 55000\n"
        "4. 风险控制：说明建议的止损位和止盈位"
    )


def build_fast_prompt(
    symbol: str,
    *,
    price_15m: float,
    rsi_15m: float,
    price_1h: float,
    rsi_1h: float,
) -> str:
    return (
        f"快速分析{symbol}：\n"
        f"15分钟价格:{price_15m}, RSI:{rsi_15m}\n"
        f"1小时价格:{price_1h}, RSI:{rsi_1h}\n\n"
        "用50字内给出交易建议。"
    )


def build_context_prompt(symbol: str, context: dict[str, Any]) -> str:
    return (
        f"请分析以下{symbol}数据，并按照JSON格式返回决策结果：\n"
        f"{dump_context(context)}\n\n"
        f"返回格式：\n{DECISION_JSON_TEMPLATE}"
    )


__all__ = [
    "DECISION_JSON_TEMPLATE",
    "DEFAULT_ANALYST_INSTRUCTIONS",
    "DEFAULT_TRADER_INSTRUCTIONS",
    "PROMPT_TYPES",
    "PromptLibrary",
    "build_analysis_prompt",
    "build_context_prompt",
    "build_decision_prompt",
    "build_fast_prompt",
    "build_smart_trade_prompt",
]
