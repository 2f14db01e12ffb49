from __future__ import annotations

import asyncio
from decimal import Decimal

from perpdesk.models.position import Position
from perpdesk.models.tpsl import Notification, SubmissionState
from perpdesk.services.order_book import OrderBookStore
from perpdesk.services.pending_orders import PendingOrderRegistry
from perpdesk.services.snapshot_store import SnapshotStore
from perpdesk.services.tpsl_coordinator import TpslCoordinator
from perpdesk.services.venue import (
    BestQuote,
    CancelAck,
    PlaceAck,
    RestingTriggerOrder,
    VenueError,
    VenueErrorCategory,
)
from perpdesk.ui.panel import TpslPanelController

SYMBOL = "ETH-USDT-SWAP"


class _Venue:
    def __init__(self) -> None:
        self.placed: list[tuple[str, Decimal, Decimal]] = []
        self.limits: list[Decimal | None] = []
        self.gate: asyncio.Event | None = None
        self.fail_all = False

    async def place_trigger_order(self, request):
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_all:
            raise VenueError("Order price out of range", category=VenueErrorCategory.INVALID_ORDER, code="51050")
        self.placed.append((request.kind, request.trigger_price, request.size))
        self.limits.append(request.limit_price)
        return PlaceAck(order_id=f"{request.kind}-{len(self.placed)}")

    async def cancel_orders(self, symbol, order_ids):
        return CancelAck(cancelled_ids=list(order_ids))

    async def list_trigger_orders(self, symbol=None):
        return []

    async def subscribe_market(self, symbol):
        return
        yield

    async def subscribe_positions(self):
        return
        yield


def _controller(venue: _Venue | None = None, notes: list[Notification] | None = None, **kwargs) -> TpslPanelController:
    store = SnapshotStore(SYMBOL)
    store.apply_positions(
        [
            Position(
                symbol=SYMBOL,
                direction="short",
                entry_price=Decimal("2000"),
                size=Decimal("2"),
                leverage=Decimal("10"),
            )
        ]
    )
    coordinator = TpslCoordinator(venue or _Venue(), PendingOrderRegistry())
    notify = notes.append if notes is not None else None
    return TpslPanelController(coordinator, store, OrderBookStore(), symbol=SYMBOL, notify=notify, **kwargs)


def test_edits_recompute_on_every_change() -> None:
    controller = _controller()
    controller.open()

    result = controller.set_value("take_profit", "1,900")

    assert result.take_profit_price == Decimal("1900")
    assert result.take_profit_pnl == Decimal("200")
    assert result.take_profit_percent == Decimal("50")
    assert controller.can_submit is True

    result = controller.set_value("stop_loss", "1950")
    assert result.errors.stop_loss_error is True
    assert controller.can_submit is False

    controller.set_value("stop_loss", "")
    assert controller.result.stop_loss_price is None
    assert controller.can_submit is True


def test_switching_anchor_carries_values_across() -> None:
    controller = _controller()
    controller.open()
    controller.set_value("take_profit", "1900")
    controller.set_value("stop_loss", "2050")

    result = controller.set_anchor("pnl")

    assert controller.input.take_profit == Decimal("50")
    assert controller.input.stop_loss == Decimal("-25")
    assert result.take_profit_price == Decimal("1900")
    assert result.stop_loss_price == Decimal("2050")

    controller.set_variant("dollar")
    assert controller.input.take_profit == Decimal("200")
    assert controller.result.stop_loss_price == Decimal("2050")


def test_price_bounds_come_from_the_order_book() -> None:
    controller = _controller(max_price_deviation=0.05)
    controller._order_book.apply_quote(BestQuote(SYMBOL, Decimal("1999"), Decimal("2001")))
    controller.open()

    result = controller.set_value("take_profit", "1000")

    assert result.errors.take_profit_error is True


def test_submit_sends_fraction_of_position_and_resets_input() -> None:
    async def scenario():
        venue = _Venue()
        notes: list[Notification] = []
        controller = _controller(venue, notes)
        controller.open()
        controller.set_value("take_profit", "1900")
        controller.edit(size_fraction=Decimal("0.5"))
        outcome = await controller.submit()
        return venue, notes, controller, outcome

    venue, notes, controller, outcome = asyncio.run(scenario())

    assert outcome.status is SubmissionState.CONFIRMED
    assert venue.placed == [("take_profit", Decimal("1900"), Decimal("1.0"))]
    assert controller.input.take_profit is None
    assert controller.pending_orders()["take_profit"] == "take_profit-1"
    assert [note.level for note in notes] == ["positive"]


def test_submit_is_blocked_by_errors_and_while_in_flight() -> None:
    async def scenario():
        venue = _Venue()
        venue.gate = asyncio.Event()
        controller = _controller(venue)
        controller.open()
        controller.set_value("take_profit", "2100")
        blocked = await controller.submit()
        controller.set_value("take_profit", "1900")
        first = asyncio.create_task(controller.submit())
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        second = await controller.submit()
        in_flight = controller.in_flight
        venue.gate.set()
        outcome = await first
        return blocked, second, in_flight, outcome, venue

    blocked, second, in_flight, outcome, venue = asyncio.run(scenario())

    assert blocked is None
    assert second is None
    assert in_flight is True
    assert outcome.status is SubmissionState.CONFIRMED
    assert len(venue.placed) == 1


def test_failed_submission_returns_outcome_and_reenables_panel() -> None:
    async def scenario():
        venue = _Venue()
        venue.fail_all = True
        notes: list[Notification] = []
        controller = _controller(venue, notes)
        controller.open()
        controller.set_value("stop_loss", "2100")
        outcome = await controller.submit()
        return controller, notes, outcome

    controller, notes, outcome = asyncio.run(scenario())

    assert outcome.status is SubmissionState.FAILED
    assert controller.submitting is False
    assert controller.can_submit is True
    assert controller.input.stop_loss == Decimal("2100")
    assert [note.level for note in notes] == ["negative"]


def test_closing_mid_flight_silences_feedback() -> None:
    async def scenario():
        venue = _Venue()
        venue.gate = asyncio.Event()
        notes: list[Notification] = []
        controller = _controller(venue, notes)
        controller.open()
        controller.set_value("take_profit", "1900")
        task = asyncio.create_task(controller.submit())
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        controller.close()
        venue.gate.set()
        await task
        return controller, notes

    controller, notes = asyncio.run(scenario())

    assert notes == []
    assert controller.is_open is False
    assert controller.pending_orders()["take_profit"] == "take_profit-1"


def test_without_position_nothing_can_be_submitted() -> None:
    controller = _controller()
    controller._snapshot_store.apply_positions([])
    controller.open()

    result = controller.set_value("take_profit", "1900")

    assert result.errors.take_profit_error is True
    assert result.errors.stop_loss_error is True
    assert controller.can_submit is False


def test_open_prefills_tracked_resting_triggers() -> None:
    controller = _controller()
    resting = [
        RestingTriggerOrder("tp-1", SYMBOL, "take_profit", Decimal("1900"), None, Decimal("1905")),
        RestingTriggerOrder("sl-1", SYMBOL, "stop_loss", Decimal("2100")),
        RestingTriggerOrder("untracked", SYMBOL, "stop_loss", Decimal("2200")),
    ]
    controller._coordinator.registry.reconcile(resting[:2])
    controller._snapshot_store.apply_resting_orders(resting)

    result = controller.open()

    assert controller.input.take_profit == Decimal("1900")
    assert controller.input.stop_loss == Decimal("2100")
    assert controller.input.take_profit_limit_price == Decimal("1905")
    assert controller.limit_enabled is True
    assert result.take_profit_pnl == Decimal("200")
    assert result.errors.any is False

    controller.close()
    assert controller.input.take_profit is None
    assert controller.limit_enabled is False


def test_limit_prices_follow_the_toggle_and_reach_the_venue() -> None:
    async def scenario():
        venue = _Venue()
        controller = _controller(venue)
        controller.open()
        controller.set_value("take_profit", "1900")
        ignored = controller.set_limit_price("take_profit", "1890")
        controller.set_limit_enabled(True)
        controller.set_limit_price("take_profit", "1,890")
        limited = controller.result.take_profit_limit_price
        controller.set_limit_enabled(False)
        cleared = controller.result.take_profit_limit_price
        controller.set_limit_enabled(True)
        controller.set_limit_price("take_profit", "1890")
        await controller.submit()
        return ignored, limited, cleared, venue

    ignored, limited, cleared, venue = asyncio.run(scenario())

    assert ignored.take_profit_limit_price is None
    assert limited == Decimal("1890")
    assert cleared is None
    assert venue.limits == [Decimal("1890")]


def test_cancelling_a_leg_clears_it_from_the_form() -> None:
    async def scenario():
        controller = _controller()
        resting = [RestingTriggerOrder("sl-1", SYMBOL, "stop_loss", Decimal("2100"))]
        controller._coordinator.registry.reconcile(resting)
        controller._snapshot_store.apply_resting_orders(resting)
        controller.open()
        prefilled = controller.input.stop_loss
        outcome = await controller.cancel_leg("stop_loss")
        return controller, prefilled, outcome

    controller, prefilled, outcome = asyncio.run(scenario())

    assert prefilled == Decimal("2100")
    assert outcome.status is SubmissionState.CONFIRMED
    assert controller.input.stop_loss is None
    assert controller.pending_orders()["stop_loss"] is None
