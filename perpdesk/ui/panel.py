from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Callable, Optional

from perpdesk.models.position import Position
from perpdesk.models.tpsl import (
    AnchorField,
    PNL_KINDS,
    Notification,
    PnlKind,
    SubmissionOutcome,
    SubmissionState,
    TpslInput,
    TpslResult,
    TpslVariant,
)
from perpdesk.services.order_book import OrderBookStore
from perpdesk.services.snapshot_store import SnapshotStore
from perpdesk.services.tpsl_calculator import compute_tpsl, parse_decimal, sanitize_decimal_input
from perpdesk.services.tpsl_coordinator import (
    SubmissionInFlightError,
    TpslCoordinator,
    TpslSubmissionFailed,
)

logger = logging.getLogger(__name__)


class TpslPanelController:
    """State behind the TP/SL dialog of one position.

    Holds the raw form input, recomputes the result on every edit and gates submission while
    an attempt for the same position is in flight.
    """

    def __init__(
        self,
        coordinator: TpslCoordinator,
        snapshot_store: SnapshotStore,
        order_book: OrderBookStore,
        *,
        symbol: str,
        max_price_deviation: Optional[float] = None,
        notify: Callable[[Notification], None] | None = None,
    ) -> None:
        self._coordinator = coordinator
        self._snapshot_store = snapshot_store
        self._order_book = order_book
        self.symbol = symbol.upper()
        self._max_price_deviation = max_price_deviation
        self._notify = notify
        self.input = TpslInput()
        self.result = TpslResult()
        self.is_open = False
        self.submitting = False
        self.limit_enabled = False

    @property
    def position(self) -> Optional[Position]:
        return self._snapshot_store.get_position(self.symbol)

    @property
    def in_flight(self) -> bool:
        return self.submitting or self._coordinator.is_in_flight(self.symbol)

    @property
    def can_submit(self) -> bool:
        position = self.position
        return (
            self.is_open
            and position is not None
            and position.is_open
            and not self.in_flight
            and not self.result.errors.any
            and not self.result.is_empty
        )

    def open(self) -> TpslResult:
        """Start the form from the TP/SL orders already resting for this position."""
        self.is_open = True
        self._reset_input()
        return self.recompute()

    def close(self) -> None:
        """Discard the form; an attempt still in flight finishes without UI feedback."""
        self.is_open = False
        self.limit_enabled = False
        self.input = TpslInput()
        self.result = TpslResult()
        self._coordinator.detach(self.symbol)

    def existing_triggers(self) -> dict[str, Decimal]:
        """Trigger and limit prices of the tracked resting orders, keyed like ``TpslInput``."""
        pending = self._coordinator.registry.get(self.symbol)
        seeded: dict[str, Decimal] = {}
        for order in self._snapshot_store.resting_orders(self.symbol):
            if pending.get(order.kind) != order.order_id:
                continue
            seeded[order.kind] = order.trigger_price
            if order.limit_price is not None:
                seeded[f"{order.kind}_limit_price"] = order.limit_price
        return seeded

    def _reset_input(self) -> None:
        seeded = self.existing_triggers()
        self.input = TpslInput(**seeded)
        self.limit_enabled = any(f"{kind}_limit_price" in seeded for kind in PNL_KINDS)

    def price_bounds(self):
        if not self._max_price_deviation:
            return None
        return self._order_book.sanity_bounds(self.symbol, self._max_price_deviation)

    def recompute(self) -> TpslResult:
        self.result = compute_tpsl(self.position, self.input, price_bounds=self.price_bounds())
        return self.result

    def edit(self, **changes: Any) -> TpslResult:
        self.input = TpslInput.model_validate({**self.input.model_dump(), **changes})
        return self.recompute()

    def set_value(self, kind: PnlKind, raw: Any) -> TpslResult:
        """Apply free-text input for one leg; blank clears the leg."""
        allow_negative = self.input.anchor_field == "pnl"
        text = sanitize_decimal_input(str(raw or ""), allow_negative=allow_negative)
        return self.edit(**{kind: parse_decimal(text)})

    def set_limit_enabled(self, enabled: bool) -> TpslResult:
        """Toggle limit execution; turning it off sends market orders on trigger."""
        self.limit_enabled = bool(enabled)
        if self.limit_enabled:
            return self.result
        return self.edit(take_profit_limit_price=None, stop_loss_limit_price=None)

    def set_limit_price(self, kind: PnlKind, raw: Any) -> TpslResult:
        if not self.limit_enabled:
            return self.result
        text = sanitize_decimal_input(str(raw or ""))
        return self.edit(**{f"{kind}_limit_price": parse_decimal(text)})

    def set_anchor(self, anchor_field: AnchorField) -> TpslResult:
        """Switch between price and PnL entry, carrying the derived values across."""
        if anchor_field == self.input.anchor_field:
            return self.result
        carried: dict[str, Any] = {"anchor_field": anchor_field}
        for kind in ("take_profit", "stop_loss"):
            if anchor_field == "price":
                carried[kind] = getattr(self.result, f"{kind}_price")
            elif self.input.variant == "percent":
                carried[kind] = getattr(self.result, f"{kind}_percent")
            else:
                carried[kind] = getattr(self.result, f"{kind}_pnl")
        return self.edit(**carried)

    def set_variant(self, variant: TpslVariant) -> TpslResult:
        if variant == self.input.variant:
            return self.result
        changes: dict[str, Any] = {"variant": variant}
        if self.input.anchor_field == "pnl":
            suffix = "percent" if variant == "percent" else "pnl"
            for kind in ("take_profit", "stop_loss"):
                changes[kind] = getattr(self.result, f"{kind}_{suffix}")
        return self.edit(**changes)

    async def submit(self) -> Optional[SubmissionOutcome]:
        """Send the current result; returns None when submission is blocked."""
        if not self.can_submit:
            return None
        position = self.position
        assert position is not None
        self.submitting = True
        try:
            outcome = await self._coordinator.submit(position, self.result, notify=self._notify)
        except TpslSubmissionFailed as exc:
            return exc.outcome
        except SubmissionInFlightError:
            logger.info("TP/SL submission for %s already running", self.symbol)
            return None
        finally:
            self.submitting = False
        if self.is_open:
            self._reset_input()
            self.recompute()
        return outcome

    async def cancel_leg(self, kind: PnlKind) -> Optional[SubmissionOutcome]:
        position = self.position
        if position is None or self.in_flight:
            return None
        self.submitting = True
        try:
            outcome = await self._coordinator.cancel_leg(position, kind, notify=self._notify)
        except TpslSubmissionFailed as exc:
            return exc.outcome
        except SubmissionInFlightError:
            return None
        finally:
            self.submitting = False
        if self.is_open and outcome.status is SubmissionState.CONFIRMED:
            self.edit(**{kind: None, f"{kind}_limit_price": None})
        return outcome

    def pending_orders(self) -> dict[str, Optional[str]]:
        return self._coordinator.registry.get(self.symbol).as_dict()


__all__ = ["TpslPanelController"]
