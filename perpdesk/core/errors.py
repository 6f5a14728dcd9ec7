from __future__ import annotations


class PerpdeskError(Exception):
    """Base class for errors surfaced to API callers with an HTTP status."""

    status_code = 500

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ConfigurationError(PerpdeskError):
    """Required credentials or settings are missing."""

    status_code = 500


class ValidationError(PerpdeskError):
    """Request parameters are missing or malformed; nothing was sent upstream."""

    status_code = 400


class PositionNotFoundError(PerpdeskError):
    status_code = 404

    def __init__(self, symbol: str) -> None:
        super().__init__(f"no position found for {symbol}")
        self.symbol = symbol


class ExchangeError(PerpdeskError):
    """The exchange rejected a request; the upstream message is passed through."""

    status_code = 500

    def __init__(self, message: str, *, code: int | str | None = None, status_code: int | None = None) -> None:
        super().__init__(message, status_code=status_code)
        self.code = code


class LLMServiceError(PerpdeskError):
    status_code = 500


__all__ = [
    "ConfigurationError",
    "ExchangeError",
    "LLMServiceError",
    "PerpdeskError",
    "PositionNotFoundError",
    "ValidationError",
]
