from __future__ import annotations

from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

DISPLAY_TIMEZONE = "Asia/Shanghai"

try:
    _DISPLAY_ZONE = ZoneInfo(DISPLAY_TIMEZONE)
except ZoneInfoNotFoundError:  # pragma: no cover - fallback when tzdata unavailable
    _DISPLAY_ZONE = timezone.utc


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def utc_now_iso() -> str:
    return to_iso(utc_now())


def format_to_beijing(value: datetime | str | None = None) -> str:
    """Render a timestamp as ``YYYY-MM-DD HH:MM:SS`` in Beijing time."""
    if value is None:
        moment = utc_now()
    elif isinstance(value, str):
        moment = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    else:
        moment = value
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(_DISPLAY_ZONE).strftime("%Y-%m-%d %H:%M:%S")


__all__ = ["format_to_beijing", "to_iso", "utc_now", "utc_now_iso"]
