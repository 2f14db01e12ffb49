from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import secrets
import time
from decimal import Decimal, InvalidOperation
from typing import Any, AsyncIterator, Callable, Optional

from perpdesk.core.config import Settings, get_settings
from perpdesk.models.position import Position
from perpdesk.models.tpsl import PnlKind
from perpdesk.services.okx_sdk_adapter import OkxAccountAdapter, OkxTradeAdapter, build_okx_sdk_clients
from perpdesk.services.venue import (
    BestQuote,
    CancelAck,
    PlaceAck,
    RestingTriggerOrder,
    TriggerOrderRequest,
    VenueError,
    VenueErrorCategory,
)

try:  # pragma: no cover - import guarded for optional dependency
    from okx.websocket.WsPublicAsync import WsPublicAsync
except ImportError:  # pragma: no cover
    WsPublicAsync = None

logger = logging.getLogger(__name__)

PUBLIC_WS_URL = "wss://ws.okx.com:8443/ws/v5/public"
DEMO_PUBLIC_WS_URL = "wss://wspap.okx.com:8443/ws/v5/public?brokerId=9999"
SUCCESS_CODES = {"0", "200", ""}
RATE_LIMIT_CODES = {"50011", "50061"}
INSUFFICIENT_MARGIN_CODES = {"51008", "59300"}
ORDER_NOT_FOUND_CODES = {"51400", "51401", "51402", "51603"}
TRIGGER_PRICE_ERROR_CODES = {"51047", "51048", "51049", "51050", "51051", "51052"}
NETWORK_EXCEPTIONS = (ConnectionError, OSError)


def classify_error_code(code: str | None, message: str | None = None) -> VenueErrorCategory:
    """Map an OKX error code (or, lacking one, its message) onto a venue error category."""
    normalized = str(code or "").strip()
    if normalized in RATE_LIMIT_CODES:
        return VenueErrorCategory.RATE_LIMITED
    if normalized in INSUFFICIENT_MARGIN_CODES:
        return VenueErrorCategory.INSUFFICIENT_MARGIN
    if normalized in ORDER_NOT_FOUND_CODES:
        return VenueErrorCategory.NOT_FOUND
    if normalized in TRIGGER_PRICE_ERROR_CODES:
        return VenueErrorCategory.INVALID_ORDER
    text = str(message or "").lower()
    if "too many requests" in text or "rate limit" in text:
        return VenueErrorCategory.RATE_LIMITED
    if "does not exist" in text or "not found" in text or "already" in text:
        return VenueErrorCategory.NOT_FOUND
    if "insufficient" in text:
        return VenueErrorCategory.INSUFFICIENT_MARGIN
    if normalized.startswith("51"):
        return VenueErrorCategory.INVALID_ORDER
    return VenueErrorCategory.UNKNOWN


def _entry_code(entry: dict[str, Any]) -> tuple[str, str | None]:
    code = str(entry.get("sCode") if entry.get("sCode") not in (None, "") else entry.get("code") or "").strip()
    message = entry.get("sMsg") or entry.get("msg")
    return code, message


def _error_from_entry(entry: dict[str, Any], fallback: str) -> VenueError:
    code, message = _entry_code(entry)
    return VenueError(
        message or fallback,
        category=classify_error_code(code, message),
        code=code or None,
    )


def _to_decimal(value: Any) -> Optional[Decimal]:
    if value in (None, ""):
        return None
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return result if result.is_finite() else None


def _format_decimal(value: Decimal) -> str:
    """Render a Decimal for OKX payloads without exponents or trailing zeros."""
    text = f"{value:f}"
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text or "0"


def _safe_data(response: Any) -> list[Any]:
    if isinstance(response, dict):
        data = response.get("data")
        if isinstance(data, list):
            return data
    return []


def _best_level(levels: Any) -> Optional[Decimal]:
    if isinstance(levels, list) and levels:
        first = levels[0]
        if isinstance(first, (list, tuple)) and first:
            return _to_decimal(first[0])
    return None


class OkxVenue:
    """VenueClient backed by the python-okx REST and websocket clients."""

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        account_api: Any | None = None,
        trade_api: Any | None = None,
        websocket_factory: Callable[[str], Any] | None = None,
        log_sink: Callable[[str], None] | None = None,
        timeout: float | None = None,
        poll_interval: float | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        sub_account = (self.settings.okx_sub_account or "").strip() or None
        if account_api is None or trade_api is None:
            clients = build_okx_sdk_clients(
                api_key=self.settings.okx_api_key,
                api_secret=self.settings.okx_secret_key,
                passphrase=self.settings.okx_passphrase,
                flag=str(self.settings.okx_api_flag or "0"),
            )
            account_api = account_api or clients.account
            trade_api = trade_api or clients.trade
        self._account = OkxAccountAdapter(account_api, sub_account=sub_account)
        self._trade = OkxTradeAdapter(trade_api, sub_account=sub_account)
        self._websocket_factory = websocket_factory or WsPublicAsync
        self._log_sink = log_sink or (lambda msg: None)
        self._timeout = float(timeout or self.settings.venue_timeout_seconds)
        self._poll_interval = float(poll_interval or self.settings.position_poll_interval)

    @property
    def available(self) -> bool:
        return self._trade.available

    def _emit_debug(self, message: str) -> None:
        text = str(message)
        try:
            self._log_sink(text)
        except Exception:  # pragma: no cover - defensive
            logger.debug("Debug sink failed", exc_info=True)
        logger.debug(text)

    async def _call(self, description: str, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run a blocking SDK call off-loop, bounded by the venue timeout."""
        try:
            return await asyncio.wait_for(asyncio.to_thread(func, *args, **kwargs), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            raise VenueError(
                f"{description} timed out after {self._timeout:g}s",
                category=VenueErrorCategory.NETWORK,
            ) from exc
        except VenueError:
            raise
        except RuntimeError as exc:
            raise VenueError(f"{description} failed: {exc}", category=VenueErrorCategory.UNKNOWN) from exc
        except Exception as exc:
            status = getattr(exc, "status_code", None) or getattr(getattr(exc, "response", None), "status_code", None)
            if status == 429:
                category = VenueErrorCategory.RATE_LIMITED
            elif isinstance(exc, NETWORK_EXCEPTIONS) or status is not None:
                category = VenueErrorCategory.NETWORK
            else:
                category = classify_error_code(getattr(exc, "code", None), str(exc))
                if category is VenueErrorCategory.UNKNOWN:
                    category = VenueErrorCategory.NETWORK
            raise VenueError(f"{description} failed: {exc}", category=category) from exc

    @staticmethod
    def _generate_client_order_id(prefix: str) -> str:
        """Generate a short, unique client order ID compatible with OKX limits."""
        safe_prefix = "".join(ch for ch in (prefix or "") if ch.isalnum()) or "pd"
        timestamp = str(int(time.time() * 1000))
        random_suffix = secrets.token_hex(3)
        value = f"{safe_prefix}{timestamp}{random_suffix}"
        return value[:32]

    def _build_algo_payload(self, request: TriggerOrderRequest) -> dict[str, Any]:
        prefix = "pdtp" if request.kind == "take_profit" else "pdsl"
        payload: dict[str, Any] = {
            "instId": request.symbol,
            "tdMode": request.margin_mode,
            "side": request.side,
            "ordType": "conditional",
            "sz": _format_decimal(request.size),
            "reduceOnly": "true",
            "algoClOrdId": self._generate_client_order_id(prefix),
        }
        trigger_px = _format_decimal(request.trigger_price)
        # -1 asks OKX for a market order once the trigger fires
        order_px = _format_decimal(request.limit_price) if request.limit_price else "-1"
        px_type = self.settings.tpsl_trigger_px_type
        if request.kind == "take_profit":
            payload.update({"tpTriggerPx": trigger_px, "tpOrdPx": order_px, "tpTriggerPxType": px_type})
        else:
            payload.update({"slTriggerPx": trigger_px, "slOrdPx": order_px, "slTriggerPxType": px_type})
        if request.pos_side and self.settings.okx_pos_mode == "long_short":
            payload["posSide"] = request.pos_side
        return payload

    async def place_trigger_order(self, request: TriggerOrderRequest) -> PlaceAck:
        if not self._trade.available:
            raise VenueError("OKX trade API unavailable", category=VenueErrorCategory.NETWORK)
        payload = self._build_algo_payload(request)
        self._emit_debug(
            f"Submitting {request.kind} algo for {request.symbol} | sz={payload['sz']} "
            f"trigger={request.trigger_price} side={request.side}"
        )
        response = await self._call(f"Placing {request.kind} for {request.symbol}", self._trade.place_algo_order, **payload)
        if not isinstance(response, dict):
            raise VenueError("OKX returned an unexpected order response")
        data = _safe_data(response)
        entry = data[0] if data and isinstance(data[0], dict) else {}
        top_code = str(response.get("code", "")).strip()
        entry_code, _ = _entry_code(entry) if entry else ("", None)
        if top_code not in SUCCESS_CODES or entry_code not in SUCCESS_CODES:
            error = _error_from_entry(entry or response, "OKX rejected the trigger order")
            self._emit_debug(f"OKX rejected {request.kind} algo for {request.symbol}: {error}")
            raise error
        order_id = entry.get("algoId") or entry.get("algoClOrdId") or payload["algoClOrdId"]
        self._emit_debug(f"Registered {request.kind} algo {order_id} for {request.symbol}")
        return PlaceAck(order_id=str(order_id), client_order_id=payload["algoClOrdId"])

    async def cancel_orders(self, symbol: str, order_ids: list[str]) -> CancelAck:
        unique_ids = list(dict.fromkeys(str(order_id) for order_id in order_ids if order_id))
        ack = CancelAck()
        if not unique_ids:
            return ack
        if not self._trade.available:
            raise VenueError("OKX trade API unavailable", category=VenueErrorCategory.NETWORK)
        response = await self._call(f"Cancelling TP/SL for {symbol}", self._trade.cancel_algo_order, symbol, unique_ids)
        if not isinstance(response, dict):
            raise VenueError("OKX returned an unexpected cancel response")
        entries = [entry for entry in _safe_data(response) if isinstance(entry, dict)]
        if not entries:
            top_code, message = _entry_code(response)
            if top_code in SUCCESS_CODES:
                ack.cancelled_ids.extend(unique_ids)
                return ack
            error = _error_from_entry(response, "OKX rejected the cancellation")
            if error.already_resolved:
                ack.missing_ids.extend(unique_ids)
                return ack
            raise error
        seen: set[str] = set()
        failures: list[VenueError] = []
        for entry in entries:
            algo_id = str(entry.get("algoId") or "")
            code, _ = _entry_code(entry)
            seen.add(algo_id)
            if code in SUCCESS_CODES:
                ack.cancelled_ids.append(algo_id)
                continue
            error = _error_from_entry(entry, "OKX rejected the cancellation")
            if error.already_resolved:
                self._emit_debug(f"Algo {algo_id} for {symbol} already resolved on OKX")
                ack.missing_ids.append(algo_id)
            else:
                failures.append(error)
        if failures:
            raise failures[0]
        top_code, _ = _entry_code(response)
        for order_id in unique_ids:
            if order_id not in seen and top_code in SUCCESS_CODES:
                ack.cancelled_ids.append(order_id)
        return ack

    async def list_trigger_orders(self, symbol: str | None = None) -> list[RestingTriggerOrder]:
        if not self._trade.available:
            return []
        response = await self._call("Listing TP/SL orders", self._trade.list_pending_algo_orders, instId=symbol)
        orders: list[RestingTriggerOrder] = []
        for entry in _safe_data(response):
            if not isinstance(entry, dict):
                continue
            order_id = str(entry.get("algoId") or "")
            inst_id = str(entry.get("instId") or "").upper()
            if not order_id or not inst_id:
                continue
            size = _to_decimal(entry.get("sz"))
            legs: list[tuple[PnlKind, Any, Any]] = [
                ("take_profit", entry.get("tpTriggerPx"), entry.get("tpOrdPx")),
                ("stop_loss", entry.get("slTriggerPx"), entry.get("slOrdPx")),
            ]
            for kind, raw_price, raw_limit in legs:
                price = _to_decimal(raw_price)
                if price is None or price <= 0:
                    continue
                limit = _to_decimal(raw_limit)
                orders.append(
                    RestingTriggerOrder(
                        order_id=order_id,
                        symbol=inst_id,
                        kind=kind,
                        trigger_price=price,
                        size=size,
                        limit_price=limit if limit is not None and limit > 0 else None,
                    )
                )
        return orders

    @staticmethod
    def parse_position(entry: dict[str, Any]) -> Position | None:
        """Convert an OKX positions row into a Position, skipping flat or malformed rows."""
        size = _to_decimal(entry.get("pos"))
        entry_price = _to_decimal(entry.get("avgPx"))
        leverage = _to_decimal(entry.get("lever"))
        symbol = str(entry.get("instId") or "").strip()
        if not symbol or size is None or size == 0 or not entry_price or not leverage or leverage <= 0:
            return None
        pos_side = str(entry.get("posSide") or "net").lower()
        if pos_side in {"long", "short"}:
            direction = pos_side
        else:
            direction = "long" if size > 0 else "short"
        margin_mode = str(entry.get("mgnMode") or "cross").lower()
        return Position(
            symbol=symbol,
            direction=direction,
            entry_price=entry_price,
            size=abs(size),
            leverage=leverage,
            margin_mode=margin_mode if margin_mode in {"cross", "isolated"} else "cross",
            mark_price=_to_decimal(entry.get("markPx")),
        )

    async def fetch_positions(self) -> list[Position]:
        response = await self._call("Fetching positions", self._account.get_positions, instType="SWAP")
        positions: list[Position] = []
        for entry in _safe_data(response):
            if not isinstance(entry, dict):
                continue
            position = self.parse_position(entry)
            if position is not None:
                positions.append(position)
        return positions

    async def subscribe_positions(self) -> AsyncIterator[list[Position]]:
        """Poll account positions and yield every successful snapshot."""
        if not self._account.available:
            logger.warning("OKX account API unavailable; position stream disabled")
            return
        while True:
            try:
                yield await self.fetch_positions()
            except VenueError as exc:
                self._emit_debug(f"Position refresh failed: {exc}")
            await asyncio.sleep(max(1.0, self._poll_interval))

    @staticmethod
    def parse_quote(message: Any) -> BestQuote | None:
        if isinstance(message, (bytes, bytearray)):
            message = message.decode(errors="ignore")
        if isinstance(message, str):
            try:
                message = json.loads(message)
            except json.JSONDecodeError:
                logger.debug("WS message not JSON: %s", message)
                return None
        if not isinstance(message, dict):
            return None
        arg = message.get("arg") or {}
        data = message.get("data") or []
        if not data or not isinstance(data[0], dict):
            return None
        symbol = data[0].get("instId") or arg.get("instId")
        if not symbol:
            return None
        return BestQuote(
            symbol=str(symbol).upper(),
            best_bid=_best_level(data[0].get("bids")),
            best_ask=_best_level(data[0].get("asks")),
        )

    async def subscribe_market(self, symbol: str) -> AsyncIterator[BestQuote]:
        """Stream best bid/ask for a symbol from the public bbo-tbt channel."""
        if self._websocket_factory is None:
            logger.warning("python-okx websocket modules not available; skipping market stream")
            return
        url = DEMO_PUBLIC_WS_URL if str(self.settings.okx_api_flag) == "1" else PUBLIC_WS_URL
        queue: asyncio.Queue[BestQuote] = asyncio.Queue(maxsize=1000)

        def _on_message(message: Any) -> None:
            quote = self.parse_quote(message)
            if quote is None:
                return
            if queue.full():
                with contextlib.suppress(asyncio.QueueEmpty):
                    queue.get_nowait()
            queue.put_nowait(quote)

        client = self._websocket_factory(url)
        await client.connect()
        await client.subscribe([{"channel": "bbo-tbt", "instId": symbol}], _on_message)
        consumer = asyncio.create_task(client.consume(), name=f"okx-bbo-{symbol}")
        try:
            while True:
                yield await queue.get()
        finally:  # pragma: no cover - network resource cleanup
            consumer.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await consumer
            await client.stop()


__all__ = ["OkxVenue", "classify_error_code"]
