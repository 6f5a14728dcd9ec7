from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from perpdesk.services.prompt_builder import PROMPT_TYPES


def _strip_upper(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip().upper()
    return value


class IndicatorsRequest(BaseModel):
    symbol: str = Field(min_length=1)

    @field_validator("symbol", mode="before")
    def normalize_symbol(cls, value: Any) -> Any:  # noqa: N805
        return _strip_upper(value)


class AnalysisRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    symbol: str = Field(default="BTC", min_length=1)
    enable_auto_trading: bool = Field(default=False, alias="enableAutoTrading")
    confidence_threshold: Optional[float] = Field(default=None, alias="confidenceThreshold", ge=0, le=1)

    @field_validator("symbol", mode="before")
    def normalize_symbol(cls, value: Any) -> Any:  # noqa: N805
        return _strip_upper(value)


class SmartTradeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    symbol: str = Field(default="BTC", min_length=1)
    auto_execute: bool = Field(default=False, alias="autoExecute")

    @field_validator("symbol", mode="before")
    def normalize_symbol(cls, value: Any) -> Any:  # noqa: N805
        return _strip_upper(value)


class PromptAnalysisRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    symbol: str = Field(min_length=1)
    prompt_type: str = Field(default="analysis", alias="promptType")
    market_data: dict[str, Any] = Field(alias="marketData")
    indicators: dict[str, Any]

    @field_validator("symbol", mode="before")
    def normalize_symbol(cls, value: Any) -> Any:  # noqa: N805
        return _strip_upper(value)

    @field_validator("prompt_type")
    def known_prompt_type(cls, value: str) -> str:  # noqa: N805
        if value not in PROMPT_TYPES:
            raise ValueError(f"promptType must be one of: {', '.join(PROMPT_TYPES)}")
        return value


class ToolCallRequest(BaseModel):
    tool: str
    arguments: dict[str, Any] = Field(default_factory=dict)


class JsonRpcRequest(BaseModel):
    jsonrpc: str = "2.0"
    id: Any = None
    method: str = "tools/list"
    params: Optional[dict[str, Any]] = None


__all__ = [
    "AnalysisRequest",
    "IndicatorsRequest",
    "JsonRpcRequest",
    "PromptAnalysisRequest",
    "SmartTradeRequest",
    "ToolCallRequest",
]
