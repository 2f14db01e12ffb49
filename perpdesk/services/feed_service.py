from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Callable, Iterable, Optional

from perpdesk.services.order_book import OrderBookStore
from perpdesk.services.pending_orders import PendingOrderRegistry
from perpdesk.services.snapshot_store import SnapshotStore
from perpdesk.services.state_service import StateService
from perpdesk.services.venue import VenueClient, VenueError

logger = logging.getLogger(__name__)


class FeedService:
    """Pumps venue position and best bid/ask streams into the in-memory stores."""

    def __init__(
        self,
        venue: VenueClient,
        snapshot_store: SnapshotStore,
        order_book: OrderBookStore,
        registry: PendingOrderRegistry,
        *,
        symbols: Iterable[str] = (),
        state_service: Optional[StateService] = None,
        log_sink: Callable[[str], None] | None = None,
        reconnect_delay: float = 5.0,
    ) -> None:
        self._venue = venue
        self.snapshot_store = snapshot_store
        self.order_book = order_book
        self.registry = registry
        self._symbols = [symbol.upper() for symbol in symbols]
        self._state_service = state_service
        self._log_sink = log_sink or (lambda msg: None)
        self._reconnect_delay = max(0.0, float(reconnect_delay))
        self._position_task: Optional[asyncio.Task] = None
        self._market_tasks: dict[str, asyncio.Task] = {}
        snapshot_store.on_position_closed(self._handle_position_closed)

    @property
    def running(self) -> bool:
        return self._position_task is not None

    @property
    def watched_symbols(self) -> list[str]:
        return sorted(self._market_tasks)

    async def start(self) -> None:
        """Reconcile resting TP/SL orders, then launch the position and quote consumers."""
        if self._position_task:
            return
        await self.reconcile_pending_orders()
        self._position_task = asyncio.create_task(self._position_loop(), name="perpdesk-positions")
        for symbol in self._symbols:
            self.watch_symbol(symbol)
        logger.info("FeedService started for %s", ", ".join(self._symbols) or "account positions")

    async def stop(self) -> None:
        """Cancel every background consumer and wait for them to unwind."""
        tasks = [task for task in (self._position_task, *self._market_tasks.values()) if task]
        self._position_task = None
        self._market_tasks.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        logger.info("FeedService stopped")

    def watch_symbol(self, symbol: str) -> None:
        key = symbol.upper()
        if not key or key in self._market_tasks:
            return
        self._market_tasks[key] = asyncio.create_task(self._market_loop(key), name=f"perpdesk-bbo-{key}")

    async def reconcile_pending_orders(self) -> None:
        try:
            orders = await self._venue.list_trigger_orders()
        except VenueError as exc:
            logger.warning("Unable to load resting TP/SL orders: %s", exc)
            self._emit_debug(f"TP/SL reconcile failed: {exc}")
            await self._restore_mirrored_orders()
            return
        self.registry.reconcile(orders)
        self.snapshot_store.apply_resting_orders(orders)
        self._emit_debug(f"Reconciled {len(orders)} resting TP/SL orders")

    async def _restore_mirrored_orders(self) -> None:
        """Fall back to the ids last mirrored to Redis when the venue cannot be listed."""
        if self._state_service is None:
            return
        try:
            mirrored = await self._state_service.get_pending_orders()
        except Exception as exc:  # pragma: no cover - network dependent
            logger.warning("Failed to read mirrored TP/SL orders: %s", exc)
            return
        if mirrored:
            self.registry.restore(mirrored)
            self._emit_debug(f"Restored pending TP/SL ids for {len(mirrored)} positions from Redis")

    def snapshot(self) -> dict[str, Any]:
        payload = self.snapshot_store.snapshot()
        payload["quotes"] = self.order_book.snapshot()
        payload["pending_tpsl"] = self.registry.snapshot()
        return payload

    async def publish_snapshot(self) -> None:
        if self._state_service is None:
            return
        try:
            await self._state_service.set_snapshot(self.snapshot())
            await self._state_service.set_pending_orders(self.registry.snapshot())
        except Exception as exc:  # pragma: no cover - network dependent
            logger.warning("Failed to mirror snapshot to Redis: %s", exc)

    async def _position_loop(self) -> None:
        while True:
            try:
                async for positions in self._venue.subscribe_positions():
                    self.snapshot_store.apply_positions(positions)
                    for position in positions:
                        self.watch_symbol(position.symbol)
                    await self.publish_snapshot()
                return
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # pragma: no cover - defensive logging
                logger.exception("Position stream failed: %s", exc)
            await asyncio.sleep(self._reconnect_delay)

    async def _market_loop(self, symbol: str) -> None:
        while True:
            received = False
            try:
                async for quote in self._venue.subscribe_market(symbol):
                    received = True
                    self.order_book.apply_quote(quote)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("Quote stream for %s dropped: %s", symbol, exc)
                self._emit_debug(f"Quote stream for {symbol} dropped: {exc}")
                self.order_book.clear(symbol)
            else:
                if not received:
                    logger.info("Quote stream for %s unavailable; not reconnecting", symbol)
                    return
            await asyncio.sleep(self._reconnect_delay)

    def _handle_position_closed(self, symbol: str) -> None:
        self.registry.clear(symbol)
        self.snapshot_store.remove_resting_orders(symbol)
        self._emit_debug(f"Position {symbol} closed; pending TP/SL cleared")

    def _emit_debug(self, message: str) -> None:
        text = str(message)
        try:
            self._log_sink(text)
        except Exception:  # pragma: no cover - defensive
            logger.debug("Debug sink failed", exc_info=True)
        logger.debug(text)


__all__ = ["FeedService"]
