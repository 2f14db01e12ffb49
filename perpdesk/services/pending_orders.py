from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from perpdesk.models.tpsl import PnlKind
from perpdesk.services.venue import RestingTriggerOrder

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PendingOrderSet:
    """TP/SL order ids resting on the venue for one position."""

    take_profit: Optional[str] = None
    stop_loss: Optional[str] = None

    def get(self, kind: PnlKind) -> Optional[str]:
        return self.take_profit if kind == "take_profit" else self.stop_loss

    def ids(self) -> list[str]:
        return list(dict.fromkeys(order_id for order_id in (self.take_profit, self.stop_loss) if order_id))

    @property
    def empty(self) -> bool:
        return not (self.take_profit or self.stop_loss)

    def as_dict(self) -> dict[str, Optional[str]]:
        return {"take_profit": self.take_profit, "stop_loss": self.stop_loss}


class PendingOrderRegistry:
    """Per-position pending TP/SL ids, changed only on venue confirmations."""

    def __init__(self) -> None:
        self._entries: dict[str, PendingOrderSet] = {}

    def get(self, symbol: str) -> PendingOrderSet:
        entry = self._entries.get(symbol.upper())
        if entry is None:
            return PendingOrderSet()
        return PendingOrderSet(take_profit=entry.take_profit, stop_loss=entry.stop_loss)

    def record(self, symbol: str, kind: PnlKind, order_id: str) -> None:
        key = symbol.upper()
        entry = self._entries.setdefault(key, PendingOrderSet())
        current = entry.get(kind)
        if current and current != order_id:
            msg = f"{key} already has an active {kind} order {current}"
            raise ValueError(msg)
        setattr(entry, kind, order_id)

    def discard(self, symbol: str, order_ids: Iterable[str]) -> None:
        key = symbol.upper()
        entry = self._entries.get(key)
        if entry is None:
            return
        resolved = {str(order_id) for order_id in order_ids}
        if entry.take_profit in resolved:
            entry.take_profit = None
        if entry.stop_loss in resolved:
            entry.stop_loss = None
        if entry.empty:
            self._entries.pop(key, None)

    def clear(self, symbol: str) -> None:
        if self._entries.pop(symbol.upper(), None) is not None:
            logger.info("Cleared pending TP/SL orders for closed position %s", symbol.upper())

    def reconcile(self, orders: Iterable[RestingTriggerOrder]) -> None:
        """Replace the registry with the trigger orders the venue reports as resting."""
        entries: dict[str, PendingOrderSet] = {}
        for order in orders:
            entry = entries.setdefault(order.symbol.upper(), PendingOrderSet())
            if entry.get(order.kind):
                logger.warning(
                    "Venue reports several %s orders for %s; tracking %s",
                    order.kind,
                    order.symbol,
                    entry.get(order.kind),
                )
                continue
            setattr(entry, order.kind, order.order_id)
        self._entries = entries

    def restore(self, snapshot: dict[str, dict[str, Optional[str]]]) -> None:
        """Load ids saved by ``snapshot``; unknown legs and blank ids are ignored."""
        entries: dict[str, PendingOrderSet] = {}
        for symbol, legs in (snapshot or {}).items():
            if not isinstance(legs, dict):
                continue
            entry = PendingOrderSet(
                take_profit=legs.get("take_profit") or None,
                stop_loss=legs.get("stop_loss") or None,
            )
            if not entry.empty:
                entries[str(symbol).upper()] = entry
        self._entries = entries

    def symbols(self) -> list[str]:
        return sorted(self._entries)

    def snapshot(self) -> dict[str, dict[str, Optional[str]]]:
        return {symbol: entry.as_dict() for symbol, entry in self._entries.items()}


__all__ = ["PendingOrderRegistry", "PendingOrderSet"]
