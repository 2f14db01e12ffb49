from __future__ import annotations

import asyncio
from decimal import Decimal
from typing import Any

import pytest

from perpdesk.models.position import Position
from perpdesk.services.feed_service import FeedService
from perpdesk.services.order_book import OrderBookStore
from perpdesk.services.pending_orders import PendingOrderRegistry
from perpdesk.services.snapshot_store import SnapshotStore
from perpdesk.services.venue import BestQuote, RestingTriggerOrder, VenueError


def _position(symbol: str = "BTC-USDT-SWAP", size: str = "1") -> Position:
    return Position(
        symbol=symbol,
        direction="long",
        entry_price=Decimal("100"),
        size=Decimal(size),
        leverage=Decimal("2"),
    )


def test_order_book_keeps_last_known_side() -> None:
    book = OrderBookStore()
    book.apply_quote(BestQuote("btc-usdt-swap", Decimal("99"), Decimal("101")))
    book.apply_quote(BestQuote("BTC-USDT-SWAP", None, Decimal("102")))

    quote = book.get("BTC-USDT-SWAP")

    assert quote.best_bid == Decimal("99")
    assert quote.best_ask == Decimal("102")
    assert book.mid_price("BTC-USDT-SWAP") == Decimal("100.5")


def test_order_book_sanity_bounds() -> None:
    book = OrderBookStore()
    assert book.sanity_bounds("BTC-USDT-SWAP", 0.1) is None

    book.apply_quote(BestQuote("BTC-USDT-SWAP", Decimal("99"), Decimal("101")))

    assert book.sanity_bounds("BTC-USDT-SWAP", 0.1) == (Decimal("90.0"), Decimal("110.0"))
    book.clear("BTC-USDT-SWAP")
    assert book.get("BTC-USDT-SWAP") is None


def test_registry_allows_one_order_per_leg() -> None:
    registry = PendingOrderRegistry()
    registry.record("btc-usdt-swap", "take_profit", "1")
    registry.record("BTC-USDT-SWAP", "take_profit", "1")

    with pytest.raises(ValueError):
        registry.record("BTC-USDT-SWAP", "take_profit", "2")

    registry.discard("BTC-USDT-SWAP", ["1"])
    assert registry.get("BTC-USDT-SWAP").empty
    assert registry.symbols() == []


def test_registry_get_returns_a_copy() -> None:
    registry = PendingOrderRegistry()
    registry.record("BTC-USDT-SWAP", "stop_loss", "7")

    view = registry.get("BTC-USDT-SWAP")
    view.stop_loss = None

    assert registry.get("BTC-USDT-SWAP").stop_loss == "7"


def test_registry_reconcile_keeps_first_order_per_leg() -> None:
    registry = PendingOrderRegistry()
    registry.record("SOL-USDT-SWAP", "take_profit", "stale")
    registry.reconcile(
        [
            RestingTriggerOrder("1", "BTC-USDT-SWAP", "take_profit", Decimal("110")),
            RestingTriggerOrder("2", "BTC-USDT-SWAP", "take_profit", Decimal("120")),
            RestingTriggerOrder("3", "BTC-USDT-SWAP", "stop_loss", Decimal("90")),
        ]
    )

    assert registry.snapshot() == {"BTC-USDT-SWAP": {"take_profit": "1", "stop_loss": "3"}}


def test_snapshot_store_replaces_positions_and_reports_closures() -> None:
    store = SnapshotStore("btc-usdt-swap")
    closed_events: list[str] = []
    payloads: list[dict[str, Any]] = []
    store.on_position_closed(closed_events.append)
    store.subscribe(payloads.append)

    store.apply_positions([_position("BTC-USDT-SWAP"), _position("ETH-USDT-SWAP")])
    closed = store.apply_positions([_position("ETH-USDT-SWAP"), _position("SOL-USDT-SWAP", size="0")])

    assert closed == ["BTC-USDT-SWAP"]
    assert closed_events == ["BTC-USDT-SWAP"]
    assert [position.symbol for position in store.positions()] == ["ETH-USDT-SWAP"]
    assert store.get_position("sol-usdt-swap") is None
    assert payloads[-1]["symbol"] == "BTC-USDT-SWAP"
    assert payloads[-1]["positions"][0]["symbol"] == "ETH-USDT-SWAP"
    assert payloads[-1]["generated_at"].endswith("Z")


def test_snapshot_store_filters_resting_orders_by_symbol() -> None:
    store = SnapshotStore()
    store.apply_resting_orders(
        [
            RestingTriggerOrder("1", "BTC-USDT-SWAP", "take_profit", Decimal("110")),
            RestingTriggerOrder("2", "ETH-USDT-SWAP", "stop_loss", Decimal("90"), Decimal("3")),
        ]
    )

    assert [order.order_id for order in store.resting_orders("eth-usdt-swap")] == ["2"]
    assert store.snapshot()["resting_orders"][1]["size"] == "3"


class _StreamingVenue:
    def __init__(self) -> None:
        self.position_batches = [
            [_position("BTC-USDT-SWAP")],
            [],
        ]
        self.quotes = [BestQuote("BTC-USDT-SWAP", Decimal("99"), Decimal("101"))]
        self.resting = [RestingTriggerOrder("42", "BTC-USDT-SWAP", "stop_loss", Decimal("90"))]
        self.list_error: Exception | None = None
        self.drained = asyncio.Event()

    async def list_trigger_orders(self, symbol: str | None = None):
        if self.list_error:
            raise self.list_error
        return list(self.resting)

    async def subscribe_positions(self):
        for batch in self.position_batches:
            yield batch
        self.drained.set()

    async def subscribe_market(self, symbol: str):
        for quote in self.quotes:
            if quote.symbol == symbol:
                yield quote
        await asyncio.Event().wait()

    async def place_trigger_order(self, request):  # pragma: no cover - unused
        raise NotImplementedError

    async def cancel_orders(self, symbol, order_ids):  # pragma: no cover - unused
        raise NotImplementedError


class _RecordingState:
    def __init__(self) -> None:
        self.snapshots: list[dict[str, Any]] = []
        self.pending: list[dict[str, Any]] = []

    async def set_snapshot(self, snapshot: dict[str, Any]) -> None:
        self.snapshots.append(snapshot)

    async def set_pending_orders(self, pending: dict[str, Any]) -> None:
        self.pending.append(pending)


def test_feed_service_reconciles_then_streams_into_stores() -> None:
    async def scenario():
        venue = _StreamingVenue()
        store = SnapshotStore()
        book = OrderBookStore()
        registry = PendingOrderRegistry()
        state = _RecordingState()
        feed = FeedService(venue, store, book, registry, symbols=["btc-usdt-swap"], state_service=state)
        await feed.start()
        reconciled = registry.snapshot()
        await asyncio.wait_for(venue.drained.wait(), timeout=1)
        for _ in range(5):
            await asyncio.sleep(0)
        watched = feed.watched_symbols
        await feed.stop()
        return reconciled, store, book, registry, state, watched

    reconciled, store, book, registry, state, watched = asyncio.run(scenario())

    assert reconciled == {"BTC-USDT-SWAP": {"take_profit": None, "stop_loss": "42"}}
    assert store.positions() == []
    assert registry.snapshot() == {}
    assert book.get("BTC-USDT-SWAP").best_bid == Decimal("99")
    assert watched == ["BTC-USDT-SWAP"]
    assert len(state.snapshots) == 2
    assert state.snapshots[0]["pending_tpsl"] == {"BTC-USDT-SWAP": {"take_profit": None, "stop_loss": "42"}}
    assert state.snapshots[0]["quotes"] is not None
    assert state.pending[-1] == {}


def test_feed_service_survives_reconcile_failure() -> None:
    async def scenario():
        venue = _StreamingVenue()
        venue.list_error = VenueError("down")
        messages: list[str] = []
        feed = FeedService(
            venue,
            SnapshotStore(),
            OrderBookStore(),
            PendingOrderRegistry(),
            log_sink=messages.append,
        )
        await feed.reconcile_pending_orders()
        return messages

    messages = asyncio.run(scenario())

    assert any("reconcile failed" in message for message in messages)


def test_snapshot_store_adds_and_removes_resting_orders() -> None:
    store = SnapshotStore()
    payloads: list[dict[str, Any]] = []
    store.subscribe(payloads.append)
    store.apply_resting_orders(
        [
            RestingTriggerOrder("1", "BTC-USDT-SWAP", "take_profit", Decimal("110")),
            RestingTriggerOrder("2", "BTC-USDT-SWAP", "stop_loss", Decimal("90")),
            RestingTriggerOrder("3", "ETH-USDT-SWAP", "stop_loss", Decimal("1800")),
        ]
    )

    store.remove_resting_orders("btc-usdt-swap", ["1", "unknown"])
    store.add_resting_order(RestingTriggerOrder("4", "BTC-USDT-SWAP", "take_profit", Decimal("115"), None, Decimal("114")))
    notified = len(payloads)
    store.remove_resting_orders("SOL-USDT-SWAP")

    assert [order.order_id for order in store.resting_orders()] == ["2", "3", "4"]
    assert payloads[-1]["resting_orders"][-1]["limit_price"] == "114"
    assert len(payloads) == notified

    store.remove_resting_orders("BTC-USDT-SWAP")
    assert [order.order_id for order in store.resting_orders()] == ["3"]


def test_registry_restore_skips_empty_entries() -> None:
    registry = PendingOrderRegistry()
    registry.record("SOL-USDT-SWAP", "take_profit", "stale")

    registry.restore(
        {
            "btc-usdt-swap": {"take_profit": "7", "stop_loss": None},
            "ETH-USDT-SWAP": {"take_profit": None, "stop_loss": ""},
            "XRP-USDT-SWAP": "garbage",
        }
    )

    assert registry.snapshot() == {"BTC-USDT-SWAP": {"take_profit": "7", "stop_loss": None}}


def test_feed_service_drops_resting_orders_of_closed_positions() -> None:
    store = SnapshotStore()
    registry = PendingOrderRegistry()
    FeedService(_StreamingVenue(), store, OrderBookStore(), registry)
    orders = [RestingTriggerOrder("42", "BTC-USDT-SWAP", "stop_loss", Decimal("90"))]
    registry.reconcile(orders)
    store.apply_resting_orders(orders)
    store.apply_positions([_position("BTC-USDT-SWAP")])

    store.apply_positions([])

    assert store.resting_orders() == []
    assert registry.snapshot() == {}


def test_feed_service_restores_mirrored_ids_when_venue_listing_fails() -> None:
    class _MirrorState(_RecordingState):
        async def get_pending_orders(self):
            return {"BTC-USDT-SWAP": {"take_profit": "11", "stop_loss": "12"}}

    async def scenario():
        venue = _StreamingVenue()
        venue.list_error = VenueError("down")
        registry = PendingOrderRegistry()
        feed = FeedService(venue, SnapshotStore(), OrderBookStore(), registry, state_service=_MirrorState())
        await feed.reconcile_pending_orders()
        return registry

    registry = asyncio.run(scenario())

    assert registry.snapshot() == {"BTC-USDT-SWAP": {"take_profit": "11", "stop_loss": "12"}}
