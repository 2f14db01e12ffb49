from __future__ import annotations

import asyncio
from decimal import Decimal
from typing import Any, Optional

from fastapi import FastAPI
from nicegui import ui

from perpdesk.core.config import get_settings
from perpdesk.models.tpsl import PNL_KINDS, TpslResult
from perpdesk.services.tpsl_calculator import format_decimal
from perpdesk.ui.components import SnapshotPoller, badge_stat, show_notification
from perpdesk.ui.panel import TpslPanelController

NAV_LINKS = [
    ("TRADE", "/trade"),
]

KIND_TITLES = {"take_profit": "Take Profit", "stop_loss": "Stop Loss"}


def _fmt(value: Optional[Decimal], places: int = 2) -> str:
    if value is None:
        return "--"
    return format_decimal(value, places=places)


def _pnl_class(value: Optional[Decimal]) -> str:
    if value is None or value == 0:
        return "text-slate-500"
    return "text-emerald-600" if value > 0 else "text-rose-600"


def register_pages(app: FastAPI) -> None:
    settings = get_settings()

    def current_snapshot() -> dict[str, Any]:
        feed = getattr(app.state, "feed_service", None)
        if feed is not None:
            return feed.snapshot()
        store = getattr(app.state, "snapshot_store", None)
        return store.snapshot() if store is not None else {}

    def build_nav() -> None:
        with ui.row().classes("w-full items-center gap-4 px-4 py-2 bg-slate-900 text-white"):
            ui.label("perpdesk").classes("text-lg font-bold tracking-wide")
            for label, target in NAV_LINKS:
                ui.link(label, target).classes("text-sm text-slate-200 no-underline")

    def position_rows() -> list[dict[str, Any]]:
        rows: list[dict[str, Any]] = []
        store = app.state.snapshot_store
        registry = app.state.pending_orders
        for position in store.positions():
            pending = registry.get(position.symbol)
            mark = position.mark_price
            unrealized = None
            if mark is not None:
                unrealized = position.size * (mark - position.entry_price) * position.sign
            rows.append(
                {
                    "symbol": position.symbol,
                    "side": position.direction.upper(),
                    "mode": position.margin_mode,
                    "size": format_decimal(position.size, places=4, separators=False),
                    "entry": _fmt(position.entry_price, 4),
                    "mark": _fmt(mark, 4),
                    "leverage": f"{format_decimal(position.leverage, places=0)}x",
                    "pnl": _fmt(unrealized),
                    "pnl_cls": _pnl_class(unrealized),
                    "tp": "set" if pending.take_profit else "--",
                    "sl": "set" if pending.stop_loss else "--",
                }
            )
        return rows

    def render_result(labels: dict[str, ui.label], result: TpslResult) -> None:
        for kind in PNL_KINDS:
            price = result.price_for(kind)
            pnl = getattr(result, f"{kind}_pnl")
            percent = getattr(result, f"{kind}_percent")
            text = f"Trigger {_fmt(price, 4)} | PnL {_fmt(pnl)} USDT | {_fmt(percent)}%"
            if result.errors.for_kind(kind):
                text = f"Invalid {KIND_TITLES[kind].lower()}: {text}"
            labels[kind].set_text(text)
            labels[kind].classes(
                replace="text-sm " + ("text-rose-600" if result.errors.for_kind(kind) else _pnl_class(pnl))
            )

    def open_tpsl_dialog(symbol: str) -> None:
        controller = TpslPanelController(
            app.state.coordinator,
            app.state.snapshot_store,
            app.state.order_book,
            symbol=symbol,
            max_price_deviation=settings.tpsl_max_price_deviation,
            notify=show_notification,
        )
        controller.open()
        client = ui.context.client
        client.on_disconnect(controller.close)

        result_labels: dict[str, ui.label] = {}
        value_inputs: dict[str, ui.input] = {}
        limit_inputs: dict[str, ui.input] = {}

        with ui.dialog() as dialog, ui.card().classes("w-[28rem] gap-3"):
            ui.label(f"TP/SL for {symbol}").classes("text-lg font-semibold")
            position = controller.position
            if position is not None:
                ui.label(
                    f"{position.direction.upper()} {format_decimal(position.size, places=4, separators=False)}"
                    f" @ {_fmt(position.entry_price, 4)} ({format_decimal(position.leverage, places=0)}x)"
                ).classes("text-sm text-slate-500")
            with ui.row().classes("gap-4"):
                anchor_toggle = ui.toggle({"price": "Price", "pnl": "PnL"}, value=controller.input.anchor_field)
                variant_toggle = ui.toggle({"percent": "%", "dollar": "USDT"}, value=controller.input.variant)
            for kind in PNL_KINDS:
                with ui.row().classes("w-full items-center gap-2"):
                    value_inputs[kind] = ui.input(KIND_TITLES[kind]).props("dense outlined").classes("grow")
                    cancel_button = ui.button("Cancel", color="grey").props("flat dense")
                    cancel_button.on("click", lambda _e, k=kind: asyncio.create_task(cancel_leg(k)))
                result_labels[kind] = ui.label("").classes("text-sm")
            limit_switch = ui.switch("Limit price", value=controller.limit_enabled)
            with ui.row().classes("w-full gap-2") as limit_row:
                for kind in PNL_KINDS:
                    limit_inputs[kind] = ui.input(f"{KIND_TITLES[kind]} limit").props("dense outlined").classes("grow")
            limit_row.bind_visibility_from(limit_switch, "value")
            ui.label("Amount (% of position)").classes("text-xs text-slate-500")
            size_slider = ui.slider(min=1, max=100, step=1, value=100).props("label")
            with ui.row().classes("w-full justify-end gap-2"):
                ui.button("Close", color="grey", on_click=lambda: dialog.close()).props("flat")
                submit_button = ui.button("Confirm", color="primary")

        def refresh_view() -> None:
            render_result(result_labels, controller.result)
            if controller.can_submit:
                submit_button.enable()
            else:
                submit_button.disable()
            if controller.in_flight:
                submit_button.props("loading")
            else:
                submit_button.props(remove="loading")

        def reset_inputs() -> None:
            for kind in PNL_KINDS:
                value = getattr(controller.input, kind)
                value_inputs[kind].value = "" if value is None else str(value)
                limit = getattr(controller.input, f"{kind}_limit_price")
                limit_inputs[kind].value = "" if limit is None else str(limit)
            limit_switch.value = controller.limit_enabled
            anchor_toggle.value = controller.input.anchor_field

        def on_value_change(kind: str, event: Any) -> None:
            controller.set_value(kind, event.value)  # type: ignore[arg-type]
            refresh_view()

        def on_limit_toggle(event: Any) -> None:
            controller.set_limit_enabled(bool(event.value))
            if not controller.limit_enabled:
                for kind in PNL_KINDS:
                    limit_inputs[kind].value = ""
            refresh_view()

        def on_limit_change(kind: str, event: Any) -> None:
            controller.set_limit_price(kind, event.value)  # type: ignore[arg-type]
            refresh_view()

        def on_anchor_change(event: Any) -> None:
            controller.set_anchor(event.value)
            reset_inputs()
            refresh_view()

        def on_variant_change(event: Any) -> None:
            controller.set_variant(event.value)
            reset_inputs()
            refresh_view()

        def on_size_change(event: Any) -> None:
            controller.edit(size_fraction=Decimal(str(event.value)) / Decimal(100))
            refresh_view()

        async def submit() -> None:
            task = asyncio.create_task(controller.submit())
            refresh_view()
            outcome = await task
            if outcome is not None and controller.is_open:
                reset_inputs()
            refresh_view()

        async def cancel_leg(kind: str) -> None:
            task = asyncio.create_task(controller.cancel_leg(kind))  # type: ignore[arg-type]
            refresh_view()
            outcome = await task
            if outcome is not None and controller.is_open:
                reset_inputs()
            refresh_view()

        reset_inputs()
        for kind in PNL_KINDS:
            value_inputs[kind].on_value_change(lambda e, k=kind: on_value_change(k, e))
            limit_inputs[kind].on_value_change(lambda e, k=kind: on_limit_change(k, e))
        limit_switch.on_value_change(on_limit_toggle)
        anchor_toggle.on_value_change(on_anchor_change)
        variant_toggle.on_value_change(on_variant_change)
        size_slider.on_value_change(on_size_change)
        submit_button.on("click", submit)
        dialog.on("hide", lambda _e: controller.close())
        refresh_view()
        dialog.open()

    def render_trade_page() -> None:
        build_nav()
        with ui.column().classes("w-full max-w-6xl mx-auto p-4 gap-4"):
            with ui.row().classes("w-full gap-4"):
                positions_badge = badge_stat("Open positions", "0")
                orders_badge = badge_stat("Resting TP/SL", "0", color="secondary")
                updated_badge = badge_stat("Updated", "--", color="grey-8")

            positions_table = ui.table(
                columns=[
                    {"name": "symbol", "label": "Symbol", "field": "symbol"},
                    {"name": "side", "label": "Side", "field": "side"},
                    {"name": "mode", "label": "Mode", "field": "mode"},
                    {"name": "size", "label": "Size", "field": "size"},
                    {"name": "entry", "label": "Entry", "field": "entry"},
                    {"name": "mark", "label": "Mark", "field": "mark"},
                    {"name": "leverage", "label": "Leverage", "field": "leverage"},
                    {"name": "pnl", "label": "PNL", "field": "pnl"},
                    {"name": "tp", "label": "TP", "field": "tp"},
                    {"name": "sl", "label": "SL", "field": "sl"},
                ],
                rows=[],
                row_key="symbol",
            ).classes("w-full font-semibold cursor-pointer")
            positions_table.add_slot(
                "body-cell-pnl",
                """
                <q-td :props="props">
                    <span :class="props.row.pnl_cls">{{ props.value }}</span>
                </q-td>
                """,
            )
            ui.label("Click a position to set TP/SL").classes("text-xs text-slate-500")

            orders_table = ui.table(
                columns=[
                    {"name": "symbol", "label": "Symbol", "field": "symbol"},
                    {"name": "kind", "label": "Type", "field": "kind"},
                    {"name": "trigger_price", "label": "Trigger", "field": "trigger_price"},
                    {"name": "limit_price", "label": "Limit", "field": "limit_price"},
                    {"name": "size", "label": "Size", "field": "size"},
                    {"name": "order_id", "label": "Order ID", "field": "order_id"},
                ],
                rows=[],
                row_key="order_id",
            ).classes("w-full")

        def on_row_click(event: Any) -> None:
            args = event.args
            row = args[1] if isinstance(args, list) and len(args) > 1 else None
            if isinstance(row, dict) and row.get("symbol"):
                open_tpsl_dialog(row["symbol"])

        positions_table.on("rowClick", on_row_click)

        def apply_snapshot(snapshot: dict[str, Any] | None) -> None:
            rows = position_rows()
            positions_table.rows = rows
            positions_table.update()
            resting = list((snapshot or {}).get("resting_orders") or [])
            orders_table.rows = [
                {
                    **order,
                    "kind": KIND_TITLES.get(order.get("kind"), order.get("kind")),
                    "limit_price": order.get("limit_price") or "Market",
                } for order in resting
            ]
            orders_table.update()
            positions_badge.value_label.set_text(str(len(rows)))  # type: ignore[attr-defined]
            pending = (snapshot or {}).get("pending_tpsl") or {}
            active = sum(1 for entry in pending.values() for order_id in entry.values() if order_id)
            orders_badge.value_label.set_text(str(active))  # type: ignore[attr-defined]
            generated = (snapshot or {}).get("generated_at") or "--"
            updated_badge.value_label.set_text(str(generated)[11:19] or "--")  # type: ignore[attr-defined]

        poller = SnapshotPoller(current_snapshot, interval=float(settings.position_poll_interval))
        poller.subscribe(apply_snapshot)
        poller.start()

    @ui.page("/")
    def home() -> None:
        render_trade_page()

    @ui.page("/trade")
    def trade() -> None:
        render_trade_page()


__all__ = ["register_pages"]
