from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional

from perpdesk.models.position import Position
from perpdesk.services.venue import RestingTriggerOrder

logger = logging.getLogger(__name__)

SnapshotListener = Callable[[dict[str, Any]], None]
ClosureListener = Callable[[str], None]


class SnapshotStore:
    """Selected instrument plus the account's open positions as last pushed by the venue."""

    def __init__(self, default_symbol: str | None = None) -> None:
        self._selected_symbol = (default_symbol or "").upper() or None
        self._positions: dict[str, Position] = {}
        self._resting_orders: list[RestingTriggerOrder] = []
        self._updated_at: Optional[datetime] = None
        self._listeners: list[SnapshotListener] = []
        self._closure_listeners: list[ClosureListener] = []

    @property
    def selected_symbol(self) -> Optional[str]:
        return self._selected_symbol

    def positions(self) -> list[Position]:
        return list(self._positions.values())

    def get_position(self, symbol: str | None) -> Optional[Position]:
        if not symbol:
            return None
        return self._positions.get(symbol.upper())

    def resting_orders(self, symbol: str | None = None) -> list[RestingTriggerOrder]:
        if symbol is None:
            return list(self._resting_orders)
        key = symbol.upper()
        return [order for order in self._resting_orders if order.symbol == key]

    def subscribe(self, callback: SnapshotListener) -> None:
        self._listeners.append(callback)

    def on_position_closed(self, callback: ClosureListener) -> None:
        self._closure_listeners.append(callback)

    def apply_positions(self, positions: Iterable[Position]) -> list[str]:
        """Replace all positions wholesale and return the symbols that closed."""
        incoming = {position.symbol: position for position in positions if position.is_open}
        closed = [symbol for symbol in self._positions if symbol not in incoming]
        self._positions = incoming
        self._updated_at = datetime.now(timezone.utc)
        for symbol in closed:
            for listener in list(self._closure_listeners):
                try:
                    listener(symbol)
                except Exception:  # pragma: no cover - listener resilience
                    logger.exception("Position closure listener failed for %s", symbol)
        self._notify()
        return closed

    def apply_resting_orders(self, orders: Iterable[RestingTriggerOrder]) -> None:
        self._resting_orders = list(orders)
        self._notify()

    def add_resting_order(self, order: RestingTriggerOrder) -> None:
        self._resting_orders = [existing for existing in self._resting_orders if existing.order_id != order.order_id]
        self._resting_orders.append(order)
        self._notify()

    def remove_resting_orders(self, symbol: str, order_ids: Optional[Iterable[str]] = None) -> None:
        """Drop resolved orders for a symbol; without ids, drop all of them."""
        key = symbol.upper()
        resolved = None if order_ids is None else {str(order_id) for order_id in order_ids}
        remaining = [
            order
            for order in self._resting_orders
            if order.symbol != key or (resolved is not None and order.order_id not in resolved)
        ]
        if len(remaining) == len(self._resting_orders):
            return
        self._resting_orders = remaining
        self._notify()

    def snapshot(self) -> dict[str, Any]:
        return {
            "generated_at": (
                self._updated_at.isoformat().replace("+00:00", "Z") if self._updated_at else None
            ),
            "symbol": self._selected_symbol,
            "positions": [position.model_dump(mode="json") for position in self._positions.values()],
            "resting_orders": [
                {
                    "order_id": order.order_id,
                    "symbol": order.symbol,
                    "kind": order.kind,
                    "trigger_price": str(order.trigger_price),
                    "size": str(order.size) if order.size is not None else None,
                    "limit_price": str(order.limit_price) if order.limit_price is not None else None,
                }
                for order in self._resting_orders
            ],
        }

    def _notify(self) -> None:
        if not self._listeners:
            return
        payload = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(payload)
            except Exception:  # pragma: no cover - UI resilience
                logger.exception("Snapshot listener failed")


__all__ = ["SnapshotStore"]
