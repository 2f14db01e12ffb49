"""Replace a position's TP/SL orders on the venue: cancel stale ones, then place new ones.

Each attempt moves through ``idle -> cancelling -> placing`` and ends in ``confirmed``,
``partially_confirmed`` or ``failed``. At most one attempt runs per symbol. Attempts are
never retried automatically.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from perpdesk.models.position import Position
from perpdesk.models.tpsl import (
    PNL_KINDS,
    Notification,
    PnlKind,
    SubmissionOutcome,
    SubmissionState,
    TpSlValidationError,
    TpslResult,
)
from perpdesk.services.pending_orders import PendingOrderRegistry
from perpdesk.services.snapshot_store import SnapshotStore
from perpdesk.services.venue import (
    CancelAck,
    RestingTriggerOrder,
    TriggerOrderRequest,
    VenueClient,
    VenueError,
    VenueErrorCategory,
)

logger = logging.getLogger(__name__)

NotifyCallback = Callable[[Notification], None]
StateListener = Callable[[str, SubmissionState], None]

KIND_LABELS = {"take_profit": "Take profit", "stop_loss": "Stop loss"}
HARD_FAILURES = {
    VenueErrorCategory.INSUFFICIENT_MARGIN,
    VenueErrorCategory.INVALID_ORDER,
    VenueErrorCategory.NETWORK,
}


class TpslValidationFailed(ValueError):
    def __init__(self, errors: TpSlValidationError) -> None:
        fields = [kind for kind in PNL_KINDS if errors.for_kind(kind)]
        super().__init__(f"TP/SL input invalid for: {', '.join(fields) or 'position'}")
        self.errors = errors


class SubmissionInFlightError(RuntimeError):
    def __init__(self, symbol: str) -> None:
        super().__init__(f"A TP/SL submission for {symbol} is already in progress")
        self.symbol = symbol


class TpslSubmissionFailed(RuntimeError):
    def __init__(self, outcome: SubmissionOutcome) -> None:
        detail = outcome.error or next(iter(outcome.leg_errors.values()), None)
        super().__init__(f"TP/SL submission for {outcome.symbol} failed: {detail or 'unknown error'}")
        self.outcome = outcome


@dataclass(slots=True)
class _Attempt:
    symbol: str
    notify: Optional[NotifyCallback]


def _failure_notification(error: VenueError | None, title_prefix: str) -> Notification:
    message = str(error) if error else "An error occurred"
    category = error.category if error else VenueErrorCategory.UNKNOWN
    if category is VenueErrorCategory.RATE_LIMITED:
        return Notification("warning", "Too Many Requests", f"{title_prefix}: {message}")
    if category in HARD_FAILURES:
        return Notification("negative", "Request Failed", f"{title_prefix}: {message}")
    return Notification("negative", "Error", f"{title_prefix}: {message}")


def describe_outcome(outcome: SubmissionOutcome) -> Notification:
    """Build the single user-facing notification for a terminal outcome."""
    symbol = outcome.symbol
    if outcome.status is SubmissionState.FAILED:
        primary = outcome.error or next(iter(outcome.leg_errors.values()), None)
        return _failure_notification(primary, f"TP/SL for {symbol} not updated")
    placed = [KIND_LABELS[kind] for kind in PNL_KINDS if kind in outcome.placed]
    if outcome.status is SubmissionState.PARTIALLY_CONFIRMED:
        rejected = "; ".join(
            f"{KIND_LABELS[kind]} rejected: {exc}" for kind, exc in outcome.leg_errors.items()
        )
        return Notification(
            "warning",
            "TP/SL partially placed",
            f"{' and '.join(placed)} placed for {symbol}. {rejected}",
        )
    if placed:
        return Notification("positive", "TP/SL updated", f"{' and '.join(placed)} set for {symbol}")
    if outcome.cancelled_ids:
        return Notification("positive", "TP/SL cancelled", f"Removed TP/SL orders for {symbol}")
    return Notification("info", "Nothing to update", f"No TP/SL orders to change for {symbol}")


class TpslCoordinator:
    """Sole writer of the pending TP/SL registry; serializes venue calls per position.

    When a snapshot store is given, its resting-order list follows every confirmed cancel and
    placement.
    """

    def __init__(
        self,
        venue: VenueClient,
        registry: PendingOrderRegistry,
        *,
        snapshot_store: SnapshotStore | None = None,
        log_sink: Callable[[str], None] | None = None,
        on_state_change: StateListener | None = None,
    ) -> None:
        self._venue = venue
        self._registry = registry
        self._snapshot_store = snapshot_store
        self._log_sink = log_sink or (lambda msg: None)
        self._on_state_change = on_state_change
        self._attempts: dict[str, _Attempt] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._states: dict[str, SubmissionState] = {}

    @property
    def registry(self) -> PendingOrderRegistry:
        return self._registry

    def state(self, symbol: str) -> SubmissionState:
        return self._states.get(symbol.upper(), SubmissionState.IDLE)

    def is_in_flight(self, symbol: str) -> bool:
        return symbol.upper() in self._attempts

    def detach(self, symbol: str) -> None:
        """Stop UI feedback for an in-flight attempt whose panel was closed."""
        attempt = self._attempts.get(symbol.upper())
        if attempt is not None:
            attempt.notify = None

    async def wait_idle(self, symbol: str | None = None) -> None:
        """Wait for the attempt on ``symbol`` (or every attempt) to settle."""
        if symbol is None:
            tasks = set(self._tasks.values())
        else:
            task = self._tasks.get(symbol.upper())
            tasks = {task} if task is not None else set()
        if tasks:
            await asyncio.wait(tasks)

    async def submit(
        self,
        position: Position,
        result: TpslResult,
        *,
        notify: NotifyCallback | None = None,
    ) -> SubmissionOutcome:
        if not position.is_open:
            raise TpslValidationFailed(TpSlValidationError(take_profit_error=True, stop_loss_error=True))
        if result.errors.any:
            raise TpslValidationFailed(result.errors)
        return await self._run(
            position.symbol,
            notify,
            lambda attempt: self._replace_orders(attempt, position, result),
        )

    async def cancel_leg(
        self,
        position: Position,
        kind: PnlKind,
        *,
        notify: NotifyCallback | None = None,
    ) -> SubmissionOutcome:
        return await self._run(
            position.symbol,
            notify,
            lambda attempt: self._cancel_single(attempt, kind),
        )

    async def _run(
        self,
        symbol: str,
        notify: NotifyCallback | None,
        work: Callable[[_Attempt], Awaitable[SubmissionOutcome]],
    ) -> SubmissionOutcome:
        key = symbol.upper()
        if key in self._attempts:
            self._emit_debug(f"Rejected TP/SL request for {key}: submission already in flight")
            raise SubmissionInFlightError(key)
        attempt = _Attempt(symbol=key, notify=notify)
        self._attempts[key] = attempt
        self._set_state(key, SubmissionState.IDLE)
        task = asyncio.create_task(self._guarded(attempt, work), name=f"tpsl-{key}")
        self._tasks[key] = task
        try:
            outcome = await asyncio.shield(task)
        except asyncio.CancelledError:
            attempt.notify = None
            self._emit_debug(f"Caller left while TP/SL for {key} was in flight; result will apply silently")
            raise
        if outcome.status is SubmissionState.FAILED:
            raise TpslSubmissionFailed(outcome)
        return outcome

    async def _guarded(
        self,
        attempt: _Attempt,
        work: Callable[[_Attempt], Awaitable[SubmissionOutcome]],
    ) -> SubmissionOutcome:
        try:
            try:
                outcome = await work(attempt)
            except Exception as exc:
                logger.exception("Unexpected TP/SL failure for %s", attempt.symbol)
                error = exc if isinstance(exc, VenueError) else VenueError(str(exc) or type(exc).__name__)
                outcome = SubmissionOutcome(symbol=attempt.symbol, status=SubmissionState.FAILED, error=error)
            return self._finish(attempt, outcome)
        finally:
            self._attempts.pop(attempt.symbol, None)
            self._tasks.pop(attempt.symbol, None)

    async def _cancel_pending(self, attempt: _Attempt, order_ids: list[str]) -> CancelAck:
        """Cancel resting ids; ids the venue no longer knows count as cancelled."""
        symbol = attempt.symbol
        self._set_state(symbol, SubmissionState.CANCELLING)
        self._emit_debug(f"Cancelling TP/SL orders {order_ids} for {symbol}")
        try:
            ack = await self._venue.cancel_orders(symbol, order_ids)
        except VenueError as exc:
            if not exc.already_resolved:
                raise
            self._emit_debug(f"TP/SL orders for {symbol} already resolved on venue")
            ack = CancelAck(missing_ids=list(order_ids))
        self._registry.discard(symbol, ack.resolved_ids)
        if self._snapshot_store is not None:
            self._snapshot_store.remove_resting_orders(symbol, ack.resolved_ids)
        unresolved = [order_id for order_id in order_ids if order_id not in ack.resolved_ids]
        if unresolved:
            raise VenueError(
                f"Venue did not confirm cancellation of {', '.join(unresolved)}",
                category=VenueErrorCategory.UNKNOWN,
            )
        return ack

    async def _replace_orders(
        self,
        attempt: _Attempt,
        position: Position,
        result: TpslResult,
    ) -> SubmissionOutcome:
        symbol = attempt.symbol
        outcome = SubmissionOutcome(symbol=symbol, status=SubmissionState.FAILED)
        pending = self._registry.get(symbol)
        if not pending.empty:
            try:
                ack = await self._cancel_pending(attempt, pending.ids())
            except VenueError as exc:
                outcome.error = exc
                return outcome
            outcome.cancelled_ids = ack.resolved_ids

        self._set_state(symbol, SubmissionState.PLACING)
        size = result.size if result.size is not None and result.size > 0 else position.size
        for kind in PNL_KINDS:
            price = result.price_for(kind)
            if price is None:
                continue
            request = TriggerOrderRequest(
                symbol=symbol,
                side=position.close_side,
                kind=kind,
                trigger_price=price,
                size=size,
                margin_mode=position.margin_mode,
                pos_side=position.direction,
                limit_price=result.limit_price_for(kind),
            )
            try:
                ack = await self._venue.place_trigger_order(request)
            except VenueError as exc:
                self._emit_debug(f"{KIND_LABELS[kind]} for {symbol} rejected: {exc}")
                outcome.leg_errors[kind] = exc
                continue
            self._registry.record(symbol, kind, ack.order_id)
            outcome.placed[kind] = ack.order_id
            if self._snapshot_store is not None:
                self._snapshot_store.add_resting_order(
                    RestingTriggerOrder(
                        order_id=ack.order_id,
                        symbol=symbol,
                        kind=kind,
                        trigger_price=price,
                        size=size,
                        limit_price=request.limit_price,
                    )
                )

        if outcome.leg_errors and not outcome.placed:
            outcome.status = SubmissionState.FAILED
        elif outcome.leg_errors:
            outcome.status = SubmissionState.PARTIALLY_CONFIRMED
        else:
            outcome.status = SubmissionState.CONFIRMED
        return outcome

    async def _cancel_single(self, attempt: _Attempt, kind: PnlKind) -> SubmissionOutcome:
        symbol = attempt.symbol
        outcome = SubmissionOutcome(symbol=symbol, status=SubmissionState.CONFIRMED)
        order_id = self._registry.get(symbol).get(kind)
        if not order_id:
            return outcome
        try:
            ack = await self._cancel_pending(attempt, [order_id])
        except VenueError as exc:
            outcome.status = SubmissionState.FAILED
            outcome.error = exc
            return outcome
        outcome.cancelled_ids = ack.resolved_ids
        return outcome

    def _finish(self, attempt: _Attempt, outcome: SubmissionOutcome) -> SubmissionOutcome:
        self._set_state(attempt.symbol, outcome.status)
        outcome.notification = describe_outcome(outcome)
        log_level = logging.WARNING if outcome.status is not SubmissionState.CONFIRMED else logging.INFO
        logger.log(log_level, "TP/SL %s for %s: %s", outcome.status.value, attempt.symbol, outcome.notification.message)
        self._emit_debug(f"TP/SL {outcome.status.value} for {attempt.symbol}: {outcome.notification.message}")
        if attempt.notify is not None:
            try:
                attempt.notify(outcome.notification)
            except Exception:  # pragma: no cover - UI resilience
                logger.exception("TP/SL notification failed for %s", attempt.symbol)
        return outcome

    def _set_state(self, symbol: str, state: SubmissionState) -> None:
        self._states[symbol] = state
        if self._on_state_change is not None:
            try:
                self._on_state_change(symbol, state)
            except Exception:  # pragma: no cover - listener resilience
                logger.exception("TP/SL state listener failed for %s", symbol)

    def _emit_debug(self, message: str) -> None:
        text = str(message)
        try:
            self._log_sink(text)
        except Exception:  # pragma: no cover - defensive
            logger.debug("Debug sink failed", exc_info=True)
        logger.debug(text)


__all__ = [
    "SubmissionInFlightError",
    "TpslCoordinator",
    "TpslSubmissionFailed",
    "TpslValidationFailed",
    "describe_outcome",
]
