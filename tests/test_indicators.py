import asyncio
import math
from decimal import Decimal

import pytest

from perpdesk.core.errors import ExchangeError, ValidationError
from perpdesk.models.trade import Candle
from perpdesk.services.indicator_service import (
    DEFAULT_TIMEFRAMES,
    IndicatorService,
    align_and_trim,
    base_asset,
    build_aligned_dataset,
    compute_indicators,
    compute_single_indicator,
    normalize_symbol,
)


def _closes(count: int) -> list[float]:
    return [round(100 + 5 * math.sin(i / 3) + i * 0.1, 4) for i in range(count)]


def make_candles(count: int) -> list[Candle]:
    candles = []
    for i, close in enumerate(_closes(count)):
        price = Decimal(str(close))
        candles.append(
            Candle(
                open_time=1_700_000_000_000 + i * 60_000,
                open=price - Decimal("0.5"),
                high=price + Decimal("1"),
                low=price - Decimal("1"),
                close=price,
                volume=Decimal("10") + i,
            )
        )
    return candles


@pytest.mark.parametrize("length", [35, 40, 60, 120])
def test_aligned_rows_are_fully_populated(length: int) -> None:
    candles = make_candles(length)
    indicators = compute_indicators([candle.close for candle in candles])

    dataset = align_and_trim(candles, indicators, max_rows=500)

    assert dataset.valid_start_index == max(indicators.offsets.values())
    assert len(dataset) == length - dataset.valid_start_index
    for row in dataset.rows:
        for key in ("sma", "ema", "rsi", "dif", "dea", "histogram"):
            assert row[key] is not None
            assert not math.isnan(row[key])


def test_offsets_follow_indicator_warm_up() -> None:
    indicators = compute_indicators(_closes(60))

    assert indicators.offsets == {"sma": 13, "ema": 13, "rsi": 14, "macd": 33}
    assert indicators.valid_start_index == 33


def test_aligned_values_line_up_with_their_candles() -> None:
    candles = make_candles(60)
    dataset = build_aligned_dataset(candles, max_rows=5)

    closes = [float(candle.close) for candle in candles]
    assert dataset.closes == closes[-5:]
    assert dataset.timestamps == [candle.open_time for candle in candles[-5:]]
    assert dataset.sma[-1] == pytest.approx(sum(closes[-14:]) / 14)


@pytest.mark.parametrize("length", [5, 20, 33])
def test_short_input_yields_empty_dataset(length: int) -> None:
    dataset = build_aligned_dataset(make_candles(length))

    assert dataset.is_empty
    assert dataset.rows == []
    assert dataset.to_dict()["metadata"]["returnedCandles"] == 0


@pytest.mark.parametrize("length", [10, 34, 35, 40, 60])
@pytest.mark.parametrize("max_rows", [1, 5, 20, 100])
def test_row_count_is_bounded(length: int, max_rows: int) -> None:
    dataset = build_aligned_dataset(make_candles(length), max_rows=max_rows)

    expected = max(0, min(max_rows, length - dataset.valid_start_index))
    assert len(dataset.rows) == expected


def _reference_ema(values: list[float], period: int) -> list[float]:
    smoothing = 2 / (period + 1)
    averaged = [sum(values[:period]) / period]
    for value in values[period:]:
        averaged.append(value * smoothing + averaged[-1] * (1 - smoothing))
    return averaged


def _reference_rsi(closes: list[float], period: int) -> list[float]:
    changes = [current - previous for previous, current in zip(closes, closes[1:])]
    gains = [max(change, 0.0) for change in changes]
    losses = [max(-change, 0.0) for change in changes]
    avg_gain = sum(gains[:period]) / period
    avg_loss = sum(losses[:period]) / period

    def strength_index() -> float:
        if avg_loss == 0:
            return 100.0
        return 100 - 100 / (1 + avg_gain / avg_loss)

    values = [strength_index()]
    for gain, loss in zip(gains[period:], losses[period:]):
        avg_gain = (avg_gain * (period - 1) + gain) / period
        avg_loss = (avg_loss * (period - 1) + loss) / period
        values.append(strength_index())
    return values


def _reference_macd(closes: list[float]) -> tuple[list[float], list[float], list[float]]:
    fast = _reference_ema(closes, 12)
    slow = _reference_ema(closes, 26)
    dif = [f - s for f, s in zip(fast[26 - 12 :], slow)]
    dea = _reference_ema(dif, 9)
    dif_tail = dif[9 - 1 :]
    return dif_tail, dea, [d - s for d, s in zip(dif_tail, dea)]


def test_ema_is_sma_seeded() -> None:
    closes = _closes(60)

    ema = compute_indicators(closes).ema

    assert ema[0] == pytest.approx(sum(closes[:14]) / 14)
    assert ema == pytest.approx(_reference_ema(closes, 14))


def test_rsi_uses_wilder_smoothing() -> None:
    closes = _closes(60)

    rsi = compute_indicators(closes).rsi

    assert len(rsi) == 46
    assert rsi == pytest.approx(_reference_rsi(closes, 14))


def test_rsi_warm_up_holds_for_one_sided_moves() -> None:
    rising = [100 + i for i in range(30)]

    indicators = compute_indicators(rising)

    assert indicators.offsets["rsi"] == 14
    assert indicators.rsi == [100.0] * 16
    padded = compute_single_indicator(make_candles(20), "rsi", 14)["indicator"]
    assert padded[:14] == [None] * 14


def test_macd_follows_ema_difference_and_signal() -> None:
    closes = _closes(80)

    macd = compute_indicators(closes).macd
    dif, dea, histogram = _reference_macd(closes)

    assert len(macd) == 80 - 33
    assert macd.dif == pytest.approx(dif)
    assert macd.dea == pytest.approx(dea)
    assert macd.histogram == pytest.approx(histogram)


def test_aligned_rows_match_reference_values() -> None:
    candles = make_candles(60)
    closes = [float(candle.close) for candle in candles]

    dataset = build_aligned_dataset(candles, max_rows=20)

    dif, dea, histogram = _reference_macd(closes)
    assert dataset.sma == pytest.approx([sum(closes[i - 13 : i + 1]) / 14 for i in range(40, 60)])
    assert dataset.ema == pytest.approx(_reference_ema(closes, 14)[-20:])
    assert dataset.rsi == pytest.approx(_reference_rsi(closes, 14)[-20:])
    assert dataset.macd.dif == pytest.approx(dif[-20:])
    assert dataset.macd.dea == pytest.approx(dea[-20:])
    assert dataset.macd.histogram == pytest.approx(histogram[-20:])


def test_compute_indicators_rejects_non_positive_period() -> None:
    with pytest.raises(ValidationError):
        compute_indicators(_closes(40), period=0)


def test_align_and_trim_rejects_mismatched_window() -> None:
    indicators = compute_indicators(_closes(40))

    with pytest.raises(ValueError):
        align_and_trim(make_candles(39), indicators)


def test_single_indicator_series_is_left_padded() -> None:
    candles = make_candles(60)

    rsi = compute_single_indicator(candles, "RSI", 14)
    macd = compute_single_indicator(candles, "macd")

    assert len(rsi["indicator"]) == 60
    assert rsi["indicator"][:14] == [None] * 14
    assert rsi["indicator"][14] is not None
    assert rsi["effectiveValues"] == 46
    assert len(macd["indicator"]["DIF"]) == 60
    assert macd["indicator"]["DEA"][:33] == [None] * 33
    assert macd["effectiveValues"] == 27


def test_single_indicator_rejects_unknown_type() -> None:
    with pytest.raises(ValidationError):
        compute_single_indicator(make_candles(60), "vwap")


def test_symbol_normalisation() -> None:
    assert normalize_symbol("btc") == "BTCUSDT"
    assert normalize_symbol("ETHUSDT") == "ETHUSDT"
    assert base_asset("solusdt") == "SOL"
    with pytest.raises(ValidationError):
        normalize_symbol("  ")


class _FlakyKlines:
    def __init__(self, failing: set[str]) -> None:
        self.failing = failing
        self.requests: list[tuple[str, str, int]] = []

    async def get_klines(self, symbol: str, interval: str, limit: int = 60) -> list[Candle]:
        self.requests.append((symbol, interval, limit))
        if interval in self.failing:
            raise ExchangeError(f"{interval} unavailable")
        return make_candles(limit)


def test_one_failed_timeframe_does_not_sink_the_others() -> None:
    gateway = _FlakyKlines({"1h"})
    service = IndicatorService(gateway, candle_limit=60, max_rows=10)

    report = asyncio.run(service.collect_report("BTC"))

    assert report["symbol"] == "BTC"
    assert set(report["data"]) == set(DEFAULT_TIMEFRAMES)
    assert "error" in report["data"]["1h"]
    assert "1h unavailable" in report["data"]["1h"]["error"]
    for timeframe in ("5m", "15m", "4h", "1d"):
        payload = report["data"][timeframe]
        assert "error" not in payload
        assert len(payload["timestamps"]) == 10
        assert payload["metadata"]["fetchedCandles"] == 60
    assert report["metadata"]["failedTimeframes"] == ["1h"]
    assert {symbol for symbol, _, _ in gateway.requests} == {"BTCUSDT"}


def test_empty_kline_reply_becomes_error_marker() -> None:
    class _Empty:
        async def get_klines(self, symbol, interval, limit=60):
            return []

    service = IndicatorService(_Empty())

    results = asyncio.run(service.collect_timeframes("ETH", ["15m"]))

    assert len(results) == 1
    assert not results[0].ok
    assert "no 15m candles" in results[0].to_payload()["error"]
