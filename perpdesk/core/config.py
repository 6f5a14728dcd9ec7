from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_COIN_OPTIONS = ["BTC", "ETH", "SOL"]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    binance_api_key: Optional[str] = Field(default=None, alias="BINANCE_API_KEY")
    binance_secret_key: Optional[str] = Field(default=None, alias="BINANCE_SECRET_KEY")
    binance_futures_url: str = Field(default="https://fapi.binance.com", alias="BINANCE_FUTURES_URL")
    binance_recv_window: int = Field(default=5000, alias="BINANCE_RECV_WINDOW", ge=1, le=60000)
    http_timeout_seconds: float = Field(default=10.0, alias="HTTP_TIMEOUT_SECONDS", gt=0)
    openrouter_api_key: Optional[str] = Field(default=None, alias="OPENROUTER_API_KEY")
    llm_model_id: str = Field(default="deepseek/deepseek-chat", alias="LLM_MODEL_ID")
    coin_options_raw: str = Field(default="BTC,ETH,SOL", alias="COIN_OPTIONS")
    prompts_dir: str = Field(default="./prompts", alias="PROMPTS_DIR")
    default_prompt_file: str = Field(default="prompt.txt", alias="DEFAULT_PROMPT_FILE")
    analysis_prompt_file: str = Field(default="analysis_prompt.txt", alias="AI_ANALYSIS_PROMPT_FILE")
    trading_prompt_file: str = Field(default="trading_prompt.txt", alias="AI_TRADING_PROMPT_FILE")
    analysis_cache_ttl: int = Field(default=60, alias="ANALYSIS_CACHE_TTL", ge=1)
    candle_limit: int = Field(default=60, alias="CANDLE_LIMIT", ge=1, le=1500)
    max_rows: int = Field(default=20, alias="INDICATOR_MAX_ROWS", ge=1)

    @property
    def coin_options(self) -> list[str]:
        raw = self.coin_options_raw
        if isinstance(raw, str):
            coins = [item.strip().upper() for item in raw.split(",") if item.strip()]
        elif isinstance(raw, (list, tuple)):
            coins = [str(item).strip().upper() for item in raw if str(item).strip()]
        else:
            coins = []
        return coins or list(DEFAULT_COIN_OPTIONS)

    @property
    def has_exchange_credentials(self) -> bool:
        return bool(self.binance_api_key and self.binance_secret_key)

    def missing_credentials(self) -> list[str]:
        missing = []
        if not self.openrouter_api_key:
            missing.append("OPENROUTER_API_KEY")
        if not self.binance_api_key:
            missing.append("BINANCE_API_KEY")
        if not self.binance_secret_key:
            missing.append("BINANCE_SECRET_KEY")
        return missing


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
