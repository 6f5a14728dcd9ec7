from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Protocol, Sequence

import pandas as pd
import pandas_ta as ta

from perpdesk.core.errors import ExchangeError, ValidationError
from perpdesk.core.timeutils import utc_now_iso
from perpdesk.models.trade import Candle

logger = logging.getLogger(__name__)

DEFAULT_TIMEFRAMES = ("5m", "15m", "1h", "4h", "1d")
INDICATOR_TYPES = ("sma", "ema", "rsi", "macd")
DEFAULT_PERIOD = 14
MACD_FAST = 12
MACD_SLOW = 26
MACD_SIGNAL = 9
QUOTE_ASSET = "USDT"


def normalize_symbol(symbol: str, quote: str = QUOTE_ASSET) -> str:
    """Return the futures contract symbol for a base asset (``btc`` -> ``BTCUSDT``)."""
    cleaned = (symbol or "").strip().upper()
    if not cleaned:
        raise ValidationError("symbol is required")
    if cleaned.endswith(quote) and cleaned != quote:
        return cleaned
    return f"{cleaned}{quote}"


def base_asset(symbol: str, quote: str = QUOTE_ASSET) -> str:
    cleaned = (symbol or "").strip().upper()
    if cleaned.endswith(quote) and cleaned != quote:
        return cleaned[: -len(quote)]
    return cleaned


@dataclass(slots=True)
class MacdSeries:
    dif: list[float] = field(default_factory=list)
    dea: list[float] = field(default_factory=list)
    histogram: list[float] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.dif)

    def tail_from(self, start: int) -> "MacdSeries":
        return MacdSeries(self.dif[start:], self.dea[start:], self.histogram[start:])

    def to_dict(self) -> dict[str, list[float]]:
        return {"DIF": list(self.dif), "DEA": list(self.dea), "MACD": list(self.histogram)}


@dataclass(slots=True)
class IndicatorSeries:
    """Indicator values emitted from each indicator's first defined candle."""

    length: int
    sma: list[float]
    ema: list[float]
    rsi: list[float]
    macd: MacdSeries

    @property
    def offsets(self) -> dict[str, int]:
        return {
            "sma": self.length - len(self.sma),
            "ema": self.length - len(self.ema),
            "rsi": self.length - len(self.rsi),
            "macd": self.length - len(self.macd),
        }

    @property
    def valid_start_index(self) -> int:
        return max(self.offsets.values())


@dataclass(slots=True)
class AlignedDataset:
    timestamps: list[int]
    opens: list[float]
    closes: list[float]
    volumes: list[float]
    sma: list[float]
    ema: list[float]
    rsi: list[float]
    macd: MacdSeries
    valid_start_index: int
    fetched_candles: int
    update_time: str = field(default_factory=utc_now_iso)

    def __len__(self) -> int:
        return len(self.timestamps)

    @property
    def is_empty(self) -> bool:
        return not self.timestamps

    @property
    def rows(self) -> list[dict[str, Any]]:
        return [
            {
                "timestamp": self.timestamps[i],
                "open": self.opens[i],
                "close": self.closes[i],
                "volume": self.volumes[i],
                "sma": self.sma[i],
                "ema": self.ema[i],
                "rsi": self.rsi[i],
                "dif": self.macd.dif[i],
                "dea": self.macd.dea[i],
                "histogram": self.macd.histogram[i],
            }
            for i in range(len(self.timestamps))
        ]

    def to_dict(self) -> dict[str, Any]:
        returned = len(self.timestamps)
        return {
            "timestamps": list(self.timestamps),
            "opens": list(self.opens),
            "closes": list(self.closes),
            "volumes": list(self.volumes),
            "indicators": {
                "sma": list(self.sma),
                "ema": list(self.ema),
                "rsi": list(self.rsi),
                "macd": self.macd.to_dict(),
            },
            "metadata": {
                "fetchedCandles": self.fetched_candles,
                "returnedCandles": returned,
                "validStartIndex": self.valid_start_index,
                "updateTime": self.update_time,
                "note": (
                    f"Fetched {self.fetched_candles} candles and returned {returned} rows "
                    "where every indicator is defined."
                ),
            },
        }


def _close_series(closes: Sequence[float | Decimal]) -> pd.Series:
    return pd.Series([float(value) for value in closes], dtype="float64")


def _after_warm_up(series: pd.Series | None, warm_up: int) -> list[float]:
    """Values from index ``warm_up`` on; everything before it is warm-up by construction."""
    if series is None or len(series) <= warm_up:
        return []
    return [float(value) for value in series.iloc[warm_up:]]


def seeded_smoothing(values: pd.Series, period: int, alpha: float) -> pd.Series:
    """Recursive smoothing ``y[t] = alpha * x[t] + (1 - alpha) * y[t-1]`` seeded with an SMA.

    The seed is the simple average of the first ``period`` values, so the result
    has ``len(values) - period + 1`` entries and starts at input index ``period - 1``.
    """
    values = values.reset_index(drop=True)
    if len(values) < period:
        return pd.Series(dtype="float64")
    seed = float(ta.sma(values.iloc[:period], length=period).iloc[-1])
    chained = pd.concat([pd.Series([seed]), values.iloc[period:]], ignore_index=True)
    return chained.ewm(alpha=alpha, adjust=False).mean()


def sma_values(close: pd.Series, period: int) -> list[float]:
    if len(close) < period:
        return []
    return _after_warm_up(ta.sma(close.reset_index(drop=True), length=period), period - 1)


def ema_values(close: pd.Series, period: int) -> list[float]:
    if len(close) < period:
        return []
    return [float(value) for value in seeded_smoothing(close, period, 2 / (period + 1))]


def rsi_values(close: pd.Series, period: int) -> list[float]:
    """Wilder RSI; the first value needs ``period`` price changes, i.e. ``period + 1`` closes."""
    if len(close) < period + 1:
        return []
    change = close.reset_index(drop=True).diff().iloc[1:]
    gain = seeded_smoothing(change.clip(lower=0), period, 1 / period)
    loss = seeded_smoothing((-change).clip(lower=0), period, 1 / period)
    strength = gain / loss
    rsi = 100 - 100 / (1 + strength)
    # no losses in the window means maximum strength
    rsi = rsi.where(loss != 0, 100.0)
    return [float(value) for value in rsi]


def macd_values(
    close: pd.Series,
    fast: int = MACD_FAST,
    slow: int = MACD_SLOW,
    signal: int = MACD_SIGNAL,
) -> MacdSeries:
    """DIF = EMA(fast) - EMA(slow); DEA = EMA(signal) of DIF; histogram = DIF - DEA.

    DIF starts at candle ``slow - 1`` and DEA ``signal - 1`` rows later, so the
    first complete row is candle ``slow + signal - 2``.
    """
    if len(close) < slow + signal - 1:
        return MacdSeries()
    fast_ema = seeded_smoothing(close, fast, 2 / (fast + 1))
    slow_ema = seeded_smoothing(close, slow, 2 / (slow + 1))
    dif = fast_ema.iloc[slow - fast :].reset_index(drop=True) - slow_ema
    dea = seeded_smoothing(dif, signal, 2 / (signal + 1))
    dif_tail = dif.iloc[signal - 1 :].reset_index(drop=True)
    histogram = dif_tail - dea
    return MacdSeries(
        dif=[float(value) for value in dif_tail],
        dea=[float(value) for value in dea],
        histogram=[float(value) for value in histogram],
    )


def compute_indicators(
    closes: Sequence[float | Decimal],
    *,
    period: int = DEFAULT_PERIOD,
    fast: int = MACD_FAST,
    slow: int = MACD_SLOW,
    signal: int = MACD_SIGNAL,
) -> IndicatorSeries:
    """Compute SMA, EMA, RSI and MACD independently over the full close sequence."""
    if period < 1:
        raise ValidationError("period must be at least 1")
    close = _close_series(closes)
    return IndicatorSeries(
        length=len(close),
        sma=sma_values(close, period),
        ema=ema_values(close, period),
        rsi=rsi_values(close, period),
        macd=macd_values(close, fast, slow, signal),
    )


def align_and_trim(
    candles: Sequence[Candle],
    indicators: IndicatorSeries,
    max_rows: int = 20,
) -> AlignedDataset:
    """Slice candles and indicators to the most recent rows where all indicators exist.

    ``valid_start_index`` is the largest individual warm-up offset. Inputs too
    short for the slowest indicator produce an empty dataset rather than an error.
    """
    length = len(candles)
    if length != indicators.length:
        raise ValueError("indicator series were computed over a different candle window")
    offsets = indicators.offsets
    valid_start = max(offsets.values())
    available = length - valid_start
    return_count = min(max_rows, available)
    if return_count <= 0:
        return AlignedDataset(
            timestamps=[],
            opens=[],
            closes=[],
            volumes=[],
            sma=[],
            ema=[],
            rsi=[],
            macd=MacdSeries(),
            valid_start_index=valid_start,
            fetched_candles=length,
        )
    slice_start = max(valid_start, length - return_count)
    window = candles[slice_start:]
    return AlignedDataset(
        timestamps=[candle.open_time for candle in window],
        opens=[float(candle.open) for candle in window],
        closes=[float(candle.close) for candle in window],
        volumes=[float(candle.volume) for candle in window],
        sma=indicators.sma[slice_start - offsets["sma"] :],
        ema=indicators.ema[slice_start - offsets["ema"] :],
        rsi=indicators.rsi[slice_start - offsets["rsi"] :],
        macd=indicators.macd.tail_from(slice_start - offsets["macd"]),
        valid_start_index=valid_start,
        fetched_candles=length,
    )


def build_aligned_dataset(candles: Sequence[Candle], *, period: int = DEFAULT_PERIOD, max_rows: int = 20) -> AlignedDataset:
    indicators = compute_indicators([candle.close for candle in candles], period=period)
    return align_and_trim(candles, indicators, max_rows)


def compute_single_indicator(candles: Sequence[Candle], indicator: str, period: int = DEFAULT_PERIOD) -> dict[str, Any]:
    """Full-length indicator series, left-padded with ``None`` during warm-up."""
    indicator = (indicator or "").lower()
    if indicator not in INDICATOR_TYPES:
        raise ValidationError(f"unsupported indicator, expected one of: {', '.join(INDICATOR_TYPES)}")
    close = _close_series([candle.close for candle in candles])
    length = len(close)
    if indicator == "macd":
        macd = macd_values(close)
        padding: list[float | None] = [None] * (length - len(macd))
        aligned: Any = {
            "DIF": padding + macd.dif,
            "DEA": padding + macd.dea,
            "MACD": padding + macd.histogram,
        }
        effective = len(macd)
    else:
        compute = {"sma": sma_values, "ema": ema_values, "rsi": rsi_values}[indicator]
        values = compute(close, period)
        aligned = [None] * (length - len(values)) + values
        effective = len(values)
    return {
        "timestamps": [candle.open_time for candle in candles],
        "opens": [float(candle.open) for candle in candles],
        "closes": [float(candle.close) for candle in candles],
        "volumes": [float(candle.volume) for candle in candles],
        "indicator": aligned,
        "effectiveValues": effective,
    }


class KlineSource(Protocol):
    async def get_klines(self, symbol: str, interval: str, limit: int = 60) -> list[Candle]: ...


@dataclass(slots=True)
class TimeframeResult:
    timeframe: str
    dataset: AlignedDataset | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.dataset is not None

    def to_payload(self) -> dict[str, Any]:
        if self.dataset is None:
            return {"error": self.error or f"failed to load {self.timeframe} data"}
        return self.dataset.to_dict()


class IndicatorService:
    """Fetches candles per timeframe and turns them into aligned indicator datasets."""

    def __init__(
        self,
        gateway: KlineSource,
        *,
        candle_limit: int = 60,
        max_rows: int = 20,
        period: int = DEFAULT_PERIOD,
    ) -> None:
        self.gateway = gateway
        self.candle_limit = candle_limit
        self.max_rows = max_rows
        self.period = period

    async def fetch_timeframe(self, symbol: str, timeframe: str) -> AlignedDataset:
        candles = await self.gateway.get_klines(symbol, timeframe, self.candle_limit)
        if not candles:
            raise ExchangeError(f"no {timeframe} candles returned for {symbol}")
        return await asyncio.to_thread(
            build_aligned_dataset, candles, period=self.period, max_rows=self.max_rows
        )

    async def _collect_one(self, symbol: str, timeframe: str) -> TimeframeResult:
        try:
            dataset = await self.fetch_timeframe(symbol, timeframe)
        except Exception as exc:
            logger.warning("Failed to load %s %s indicators: %s", symbol, timeframe, exc)
            return TimeframeResult(timeframe=timeframe, error=f"failed to load {timeframe} data: {exc}")
        return TimeframeResult(timeframe=timeframe, dataset=dataset)

    async def collect_timeframes(
        self,
        symbol: str,
        timeframes: Sequence[str] = DEFAULT_TIMEFRAMES,
    ) -> list[TimeframeResult]:
        """Load every timeframe concurrently; one failure never cancels its siblings."""
        contract = normalize_symbol(symbol)
        return list(
            await asyncio.gather(*(self._collect_one(contract, timeframe) for timeframe in timeframes))
        )

    async def collect_report(self, symbol: str, timeframes: Sequence[str] = DEFAULT_TIMEFRAMES) -> dict[str, Any]:
        """Multi-timeframe payload: aligned data per timeframe or an inline ``{"error"}`` marker."""
        results = await self.collect_timeframes(symbol, timeframes)
        failed = [result.timeframe for result in results if not result.ok]
        return {
            "symbol": base_asset(symbol),
            "data": {result.timeframe: result.to_payload() for result in results},
            "metadata": {
                "updateTime": utc_now_iso(),
                "timeframes": list(timeframes),
                "failedTimeframes": failed,
                "note": (
                    f"SMA/EMA/RSI/MACD and volume for every timeframe, at most {self.max_rows} rows "
                    "each, every returned row fully populated."
                ),
            },
        }


__all__ = [
    "AlignedDataset",
    "DEFAULT_TIMEFRAMES",
    "INDICATOR_TYPES",
    "IndicatorSeries",
    "IndicatorService",
    "MacdSeries",
    "TimeframeResult",
    "align_and_trim",
    "base_asset",
    "build_aligned_dataset",
    "compute_indicators",
    "compute_single_indicator",
    "normalize_symbol",
]
