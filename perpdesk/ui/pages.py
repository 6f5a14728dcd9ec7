from __future__ import annotations

import json
from typing import Any

from fastapi import FastAPI
from nicegui import ui

from perpdesk.core.config import get_settings
from perpdesk.core.errors import PerpdeskError
from perpdesk.core.timeutils import format_to_beijing
from perpdesk.ui.components import PollingStore, badge_stat, format_amount, pnl_color

NAV_LINKS = [
    ("DASHBOARD", "/"),
    ("LOGS", "/logs"),
]

ACCOUNT_REFRESH_SECONDS = 15.0

POSITION_COLUMNS = [
    {"name": "symbol", "label": "Symbol", "field": "symbol", "align": "left"},
    {"name": "side", "label": "Side", "field": "side"},
    {"name": "amount", "label": "Size", "field": "amount"},
    {"name": "entry", "label": "Entry", "field": "entry"},
    {"name": "mark", "label": "Mark", "field": "mark"},
    {"name": "pnl", "label": "uPnL", "field": "pnl"},
    {"name": "leverage", "label": "Lev", "field": "leverage"},
]


def position_rows(positions: list[dict[str, Any]]) -> list[dict[str, Any]]:
    rows = []
    for position in positions:
        try:
            amount = float(position.get("positionAmt") or 0)
        except (TypeError, ValueError):
            amount = 0.0
        rows.append(
            {
                "symbol": position.get("symbol"),
                "side": "LONG" if amount > 0 else "SHORT",
                "amount": format_amount(abs(amount), 4),
                "entry": format_amount(position.get("entryPrice"), 4),
                "mark": format_amount(position.get("markPrice"), 4),
                "pnl": format_amount(position.get("unrealizedProfit")),
                "leverage": f"{position.get('leverage') or '--'}x",
            }
        )
    return rows


def render_log_entry(entry: Any) -> str:
    if isinstance(entry, dict):
        message = entry.get("message") or json.dumps(entry, ensure_ascii=False)
        level = str(entry.get("level") or "info").upper()
        stamp = entry.get("timestamp")
        label = format_to_beijing(stamp) if stamp else format_to_beijing()
        return f"{label} [{level}] {message}"
    return f"{format_to_beijing()} {entry}"


def register_pages(app: FastAPI) -> None:
    def page_container() -> ui.element:
        container = ui.card().classes(
            "w-full max-w-6xl mx-auto bg-white/95 p-6 md:p-8 gap-6 shadow-sm"
        )
        container.style("border-radius: 1.25rem")
        return container

    def navigation(active: str) -> dict[str, ui.element]:
        nav_refs: dict[str, ui.element] = {}
        with ui.header().classes("bg-slate-900 text-white shadow-md").style("height:64px"):
            with ui.row().classes("w-full items-center px-4 gap-4"):
                ui.label("PERPDESK").classes("font-semibold tracking-wide text-lg hidden md:block")
                with ui.row().classes(
                    "flex-1 justify-center items-center gap-2 text-xs md:text-sm"
                ):
                    for label, path in NAV_LINKS:
                        link = ui.link(label, path).classes(
                            "text-white/70 no-underline px-2 py-1 rounded-md hover:text-white"
                        )
                        if label == active:
                            link.classes("bg-white/10 text-white font-semibold")
                        nav_refs[label] = link
                ui.label(f"{format_to_beijing()} CST").classes("text-xs text-white/70")
        return nav_refs

    def make_account_store() -> PollingStore:
        async def fetch_account() -> dict[str, Any] | None:
            gateway = getattr(app.state, "gateway", None)
            if gateway is None or not getattr(gateway, "has_credentials", True):
                return None
            snapshot = await gateway.get_account_snapshot()
            return snapshot.to_payload()

        store = PollingStore(fetch_account, interval=ACCOUNT_REFRESH_SECONDS)
        store.start()
        return store

    def render_dashboard_page() -> None:
        navigation("DASHBOARD")
        wrapper = page_container()
        page_client = ui.context.client
        coin_options = get_settings().coin_options
        analysis_state = {"busy": False}

        with wrapper:
            with ui.row().classes("w-full items-center justify-between"):
                ui.label("Account").classes("text-lg font-semibold")
                status_label = ui.label("Waiting for account data...").classes("text-xs text-slate-500")
            with ui.row().classes("w-full gap-4"):
                wallet_card = badge_stat("Wallet Balance", "--")
                margin_card = badge_stat("Margin Balance", "--")
                pnl_card = badge_stat("Unrealized PnL", "--")
                available_card = badge_stat("Available", "--")

            ui.label("Positions").classes("text-lg font-semibold")
            positions_table = ui.table(
                columns=POSITION_COLUMNS,
                rows=[],
                row_key="symbol",
            ).classes("w-full")

            ui.separator()
            ui.label("AI Analysis").classes("text-lg font-semibold")
            with ui.row().classes("w-full items-center gap-4"):
                symbol_select = ui.select(coin_options, value=coin_options[0], label="Symbol").classes("w-40")
                auto_trade_switch = ui.switch("Auto trade")
                analyze_button = ui.button("Analyze", icon="insights")
                fast_button = ui.button("Quick take", icon="bolt").props("outline")
            analysis_meta = ui.label("").classes("text-xs text-slate-500")
            analysis_text = ui.markdown("").classes("w-full")
            decision_view = ui.code("", language="json").classes("w-full")
            decision_view.set_visibility(False)

        def apply_account(payload: dict[str, Any] | None) -> None:
            if payload is None:
                status_label.set_text("Binance credentials not configured")
                return
            account = payload.get("account") or {}
            wallet_card.value_label.set_text(format_amount(account.get("totalWalletBalance")))
            margin_card.value_label.set_text(format_amount(account.get("totalMarginBalance")))
            pnl_value = account.get("totalUnrealizedProfit")
            pnl_card.value_label.set_text(format_amount(pnl_value))
            pnl_card.value_label.classes(replace=f"text-xl font-semibold text-{pnl_color(pnl_value)}")
            available_card.value_label.set_text(format_amount(account.get("availableBalance")))
            positions_table.rows = position_rows(payload.get("positions") or [])
            positions_table.update()
            status_label.set_text(f"Updated {format_to_beijing()}")

        store = make_account_store()
        store.subscribe(apply_account)

        def show_decision(decision: dict[str, Any] | None, auto_trade: dict[str, Any] | None) -> None:
            if decision is None and auto_trade is None:
                decision_view.set_visibility(False)
                return
            body = {"decision": decision, "autoTrade": auto_trade}
            decision_view.set_content(json.dumps(body, ensure_ascii=False, indent=2))
            decision_view.set_visibility(True)

        async def run_analysis() -> None:
            if analysis_state["busy"]:
                return
            analysis_state["busy"] = True
            analyze_button.disable()
            analysis_meta.set_text("Analyzing...")
            orchestrator = app.state.orchestrator
            try:
                if auto_trade_switch.value:
                    result = await orchestrator.analyze_with_auto_trading(symbol_select.value)
                else:
                    result = await orchestrator.analyze(symbol_select.value)
            except PerpdeskError as exc:
                with page_client:
                    ui.notify(f"Analysis failed: {exc.message}", color="negative")
                analysis_meta.set_text("")
            else:
                payload = result.to_payload()
                analysis_text.set_content(payload["analysis"] or "")
                show_decision(payload.get("decision"), payload.get("autoTrade"))
                note = payload.get("error") or ""
                analysis_meta.set_text(f"{payload['symbol']} at {payload['timestampBeijing']} {note}".strip())
                if payload.get("autoTrade"):
                    await store.refresh_now()
            finally:
                analysis_state["busy"] = False
                analyze_button.enable()

        async def run_fast_analysis() -> None:
            fast_button.disable()
            try:
                result = await app.state.orchestrator.fast_analysis(symbol_select.value)
                analysis_text.set_content(result.analysis)
                show_decision(None, None)
                suffix = " (fallback market data)" if result.technical_fallback else ""
                analysis_meta.set_text(f"Quick take for {result.symbol}{suffix}")
            finally:
                fast_button.enable()

        analyze_button.on_click(run_analysis)
        fast_button.on_click(run_fast_analysis)

    def render_logs_page() -> None:
        navigation("LOGS")
        wrapper = page_container()
        with wrapper:
            ui.label("Backend Logs").classes("text-lg font-semibold")
            ui.label("Exchange, indicator and LLM diagnostics").classes("text-xs text-slate-500")
            backend_log = (
                ui.log(max_lines=2000)
                .classes("w-full font-mono text-xs bg-slate-900/90 text-white rounded-xl")
                .style("min-height: 32rem; max-height: 32rem; overflow-y: auto;")
            )

        backend_seen = {"seq": 0}

        def push_backend() -> None:
            events = list(getattr(app.state, "backend_events", []))
            for entry in events:
                seq = entry.get("seq", 0) if isinstance(entry, dict) else 0
                if seq <= backend_seen["seq"]:
                    continue
                backend_log.push(render_log_entry(entry))
                backend_seen["seq"] = seq

        ui.timer(3, push_backend)
        push_backend()

    @ui.page("/")
    def home() -> None:
        render_dashboard_page()

    @ui.page("/logs")
    def logs() -> None:
        render_logs_page()


__all__ = ["NAV_LINKS", "position_rows", "register_pages", "render_log_entry"]
