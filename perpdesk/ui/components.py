from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Optional

from nicegui import ui


class PollingStore:
    """Client-side helper that re-fetches a payload on a timer and fans it out to listeners."""

    def __init__(self, fetcher: Callable[[], Awaitable[Any]], interval: float = 10.0) -> None:
        self._fetcher = fetcher
        self.interval = interval
        self.payload: dict[str, Any] | None = None
        self.error: str | None = None
        self._timer: Optional[ui.timer] = None
        self._listeners: list[Callable[[dict[str, Any] | None], None]] = []

    def start(self) -> None:
        if self._timer is not None:
            return

        async def refresh() -> None:
            await self.refresh_now()

        self._timer = ui.timer(self.interval, refresh)
        asyncio.create_task(refresh())

    def stop(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def subscribe(self, callback: Callable[[dict[str, Any] | None], None]) -> None:
        self._listeners.append(callback)

    async def refresh_now(self) -> None:
        try:
            self.payload = await self._fetcher()
            self.error = None
        except Exception as exc:  # pragma: no cover - UI resilience
            self.error = str(exc)
            ui.notify(f"Refresh failed: {exc}", color="negative")
            return
        for listener in self._listeners:
            listener(self.payload)


def badge_stat(label: str, value: Any, color: str = "primary") -> ui.element:
    with ui.card().classes("items-center justify-center p-4") as card:
        ui.label(label).classes("text-xs text-gray-500")
        value_label = ui.label(value).classes(f"text-xl font-semibold text-{color}")
    card.value_label = value_label  # type: ignore[attr-defined]
    return card


def format_amount(value: Any, digits: int = 2) -> str:
    try:
        return f"{float(value):,.{digits}f}"
    except (TypeError, ValueError):
        return "--"


def pnl_color(value: Any) -> str:
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return "grey-7"
    if numeric > 0:
        return "positive"
    if numeric < 0:
        return "negative"
    return "grey-7"


__all__ = ["PollingStore", "badge_stat", "format_amount", "pnl_color"]
