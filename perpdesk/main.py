import asyncio
import contextlib
import logging
import os
from collections import deque
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from nicegui import ui

from perpdesk.core.config import get_settings
from perpdesk.models.tpsl import PnlKind, TpslInput
from perpdesk.services.feed_service import FeedService
from perpdesk.services.okx_venue import OkxVenue
from perpdesk.services.order_book import OrderBookStore
from perpdesk.services.pending_orders import PendingOrderRegistry
from perpdesk.services.snapshot_store import SnapshotStore
from perpdesk.services.state_service import StateService, close_redis_client, ensure_redis_connection
from perpdesk.services.tpsl_calculator import compute_tpsl
from perpdesk.services.tpsl_coordinator import (
    SubmissionInFlightError,
    TpslCoordinator,
    TpslSubmissionFailed,
    TpslValidationFailed,
)
from perpdesk.services.venue import VenueClient
from perpdesk.ui.pages import register_pages

logger = logging.getLogger(__name__)


class TpslRequest(TpslInput):
    symbol: str


class BackendEventHandler(logging.Handler):
    """Mirror application logs into the in-memory backend event log."""

    def __init__(self, sink):
        super().__init__()
        self._sink = sink

    def emit(self, record: logging.LogRecord) -> None:
        try:
            message = self.format(record)
        except Exception:  # pragma: no cover - defensive
            message = record.getMessage()
        now_utc = datetime.now(timezone.utc).replace(microsecond=0)
        timestamp = now_utc.isoformat().replace("+00:00", "Z")
        entry = {
            "timestamp": timestamp,
            "message": message,
            "level": (record.levelname or "INFO").lower(),
            "source": "backend",
        }
        try:
            self._sink(entry)
        except Exception:  # pragma: no cover - defensive
            pass


def _create_lifespan(enable_background_services: bool, venue: VenueClient | None):
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        settings = get_settings()
        trading_pairs = settings.trading_pairs
        app.state.state_service = None
        app.state.backend_events = deque(maxlen=2000)
        app.state.websocket_events = deque(maxlen=1000)
        backend_handler = BackendEventHandler(app.state.backend_events.append)
        backend_handler.setLevel(logging.INFO)
        backend_handler.setFormatter(logging.Formatter("%(message)s"))
        target_logger_names = {
            "perpdesk",
            "uvicorn",
            "uvicorn.error",
            "uvicorn.access",
        }
        attached_loggers: list[logging.Logger] = []
        for name in target_logger_names:
            logger_ref = logging.getLogger(name)
            logger_ref.setLevel(logging.INFO)
            if backend_handler not in logger_ref.handlers:
                logger_ref.addHandler(backend_handler)
                attached_loggers.append(logger_ref)
        app.state.backend_log_handler = backend_handler
        app.state.backend_log_targets = attached_loggers

        def log_sink(message: str) -> None:
            app.state.backend_events.append(
                {
                    "timestamp": datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z"),
                    "message": message,
                    "level": "debug",
                    "source": "tpsl",
                }
            )

        app.state.snapshot_store = SnapshotStore(trading_pairs[0] if trading_pairs else None)
        app.state.order_book = OrderBookStore()
        app.state.pending_orders = PendingOrderRegistry()
        if venue is None and not settings.has_okx_credentials:
            logger.warning("OKX credentials not configured; TP/SL orders will be rejected by the venue")
        app.state.venue = venue or OkxVenue(settings=settings, log_sink=log_sink)
        app.state.coordinator = TpslCoordinator(
            app.state.venue,
            app.state.pending_orders,
            snapshot_store=app.state.snapshot_store,
            log_sink=log_sink,
        )

        if enable_background_services and settings.redis_url:
            try:
                await ensure_redis_connection()
            except Exception as exc:  # pragma: no cover - requires Redis
                logger.error("Failed to connect to Redis: %s", exc)
            else:
                app.state.state_service = StateService()
        elif not enable_background_services:
            logger.info("Background services disabled; skipping Redis init")
        else:
            logger.info("REDIS_URL not configured; snapshot mirror disabled")

        app.state.feed_service = FeedService(
            app.state.venue,
            app.state.snapshot_store,
            app.state.order_book,
            app.state.pending_orders,
            symbols=trading_pairs,
            state_service=app.state.state_service,
            log_sink=log_sink,
        )
        if enable_background_services:
            await app.state.feed_service.start()

        try:
            yield
        finally:
            handler = getattr(app.state, "backend_log_handler", None)
            if handler:
                for logger_ref in getattr(app.state, "backend_log_targets", []):
                    try:
                        logger_ref.removeHandler(handler)
                    except (ValueError, AttributeError):
                        continue
                handler.close()
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(app.state.coordinator.wait_idle(), timeout=settings.venue_timeout_seconds)
            await app.state.feed_service.stop()
            await close_redis_client()

    return lifespan


def create_app(
    enable_background_services: bool | None = None,
    venue: VenueClient | None = None,
) -> FastAPI:
    settings = get_settings()
    if enable_background_services is None:
        enable_background_services = os.environ.get("PYTEST_CURRENT_TEST") is None
    app = FastAPI(
        title="perpdesk",
        version="0.1.0",
        lifespan=_create_lifespan(enable_background_services, venue),
    )

    @app.get("/health")
    async def health() -> dict[str, str]:
        venue_ref = getattr(app.state, "venue", None)
        available = getattr(venue_ref, "available", venue_ref is not None)
        return {
            "status": "ok",
            "venue": "available" if available else "unavailable",
            "credentials": "configured" if settings.has_okx_credentials else "missing",
            "poll_interval": str(settings.position_poll_interval),
        }

    @app.get("/state/latest")
    async def latest_state() -> JSONResponse:
        state_service = app.state.state_service
        if not state_service:
            return JSONResponse({"detail": "state service unavailable"}, status_code=503)
        snapshot = await state_service.get_snapshot()
        if not snapshot:
            return JSONResponse({"detail": "snapshot unavailable"}, status_code=503)
        return JSONResponse(snapshot, status_code=200)

    @app.get("/positions")
    async def positions() -> JSONResponse:
        store: SnapshotStore = app.state.snapshot_store
        items = [position.model_dump(mode="json") for position in store.positions()]
        return JSONResponse({"items": items}, status_code=200)

    @app.get("/orders/pending")
    async def pending_orders() -> JSONResponse:
        snapshot = app.state.feed_service.snapshot()
        return JSONResponse(
            {"pending": snapshot["pending_tpsl"], "resting_orders": snapshot["resting_orders"]},
            status_code=200,
        )

    def _compute(request: TpslRequest):
        position = app.state.snapshot_store.get_position(request.symbol)
        tpsl_input = TpslInput.model_validate(request.model_dump(exclude={"symbol"}))
        bounds = None
        if settings.tpsl_max_price_deviation:
            bounds = app.state.order_book.sanity_bounds(request.symbol, settings.tpsl_max_price_deviation)
        return position, compute_tpsl(position, tpsl_input, price_bounds=bounds)

    @app.post("/tpsl/compute")
    async def tpsl_compute(request: TpslRequest) -> JSONResponse:
        _, result = _compute(request)
        return JSONResponse(result.model_dump(mode="json"), status_code=200)

    @app.post("/tpsl/submit")
    async def tpsl_submit(request: TpslRequest) -> JSONResponse:
        position, result = _compute(request)
        if position is None:
            return JSONResponse({"detail": f"no open position for {request.symbol.upper()}"}, status_code=404)
        coordinator: TpslCoordinator = app.state.coordinator
        try:
            outcome = await coordinator.submit(position, result)
        except TpslValidationFailed as exc:
            return JSONResponse(
                {"detail": str(exc), "errors": exc.errors.model_dump(), "result": result.model_dump(mode="json")},
                status_code=422,
            )
        except SubmissionInFlightError as exc:
            return JSONResponse({"detail": str(exc)}, status_code=409)
        except TpslSubmissionFailed as exc:
            return JSONResponse({"detail": str(exc), "outcome": exc.outcome.as_dict()}, status_code=502)
        return JSONResponse(outcome.as_dict(), status_code=200)

    @app.delete("/tpsl/{symbol}/{kind}")
    async def tpsl_cancel(symbol: str, kind: PnlKind) -> JSONResponse:
        position = app.state.snapshot_store.get_position(symbol)
        if position is None:
            return JSONResponse({"detail": f"no open position for {symbol.upper()}"}, status_code=404)
        coordinator: TpslCoordinator = app.state.coordinator
        try:
            outcome = await coordinator.cancel_leg(position, kind)
        except SubmissionInFlightError as exc:
            return JSONResponse({"detail": str(exc)}, status_code=409)
        except TpslSubmissionFailed as exc:
            return JSONResponse({"detail": str(exc), "outcome": exc.outcome.as_dict()}, status_code=502)
        return JSONResponse(outcome.as_dict(), status_code=200)

    def _record_websocket_event(message: str, snapshot: dict[str, Any] | None = None) -> None:
        events = getattr(app.state, "websocket_events", None)
        if events is None:
            return
        entry = {
            "message": message,
            "symbol": (snapshot or {}).get("symbol"),
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "source": "websocket",
        }
        events.append(entry)

    @app.get("/debug/events")
    async def debug_events(limit: int = 200) -> JSONResponse:
        limit = max(1, min(limit, 2000))
        backend = list(getattr(app.state, "backend_events", []))[-limit:]
        websocket = list(getattr(app.state, "websocket_events", []))[-limit:]
        return JSONResponse({"backend": backend, "websocket": websocket}, status_code=200)

    @app.websocket("/ws/state")
    async def state_stream(ws: WebSocket) -> None:
        state_service = app.state.state_service
        if not state_service:
            await ws.close(code=1013)
            return
        await ws.accept()
        _record_websocket_event("websocket client connected")
        initial = await state_service.get_snapshot()
        if initial:
            await ws.send_json(initial)
            _record_websocket_event("initial snapshot delivered", initial)
        else:
            _record_websocket_event("snapshot unavailable for websocket client")
        try:
            async for snapshot in state_service.subscribe_snapshots():
                await ws.send_json(snapshot)
                _record_websocket_event("snapshot broadcast", snapshot)
        except WebSocketDisconnect:
            _record_websocket_event("client disconnected from websocket")
            return
        except Exception as exc:
            _record_websocket_event(f"websocket stream error: {exc}")
            raise

    register_pages(app)
    ui.run_with(app)
    return app


app = create_app()
