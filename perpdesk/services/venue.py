from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import AsyncIterator, Literal, Optional, Protocol, runtime_checkable

from perpdesk.models.position import Position
from perpdesk.models.tpsl import PnlKind


class VenueErrorCategory(str, Enum):
    RATE_LIMITED = "rate_limited"
    INSUFFICIENT_MARGIN = "insufficient_margin"
    INVALID_ORDER = "invalid_order"
    NOT_FOUND = "not_found"
    NETWORK = "network"
    UNKNOWN = "unknown"


class VenueError(RuntimeError):
    """Venue rejected or failed to acknowledge a request."""

    def __init__(
        self,
        message: str,
        *,
        category: VenueErrorCategory = VenueErrorCategory.UNKNOWN,
        code: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.category = category
        self.code = code

    @property
    def already_resolved(self) -> bool:
        return self.category is VenueErrorCategory.NOT_FOUND

    def __str__(self) -> str:
        suffix = f" (code={self.code})" if self.code else ""
        return f"{self.message}{suffix}"


@dataclass(slots=True, frozen=True)
class TriggerOrderRequest:
    symbol: str
    side: Literal["buy", "sell"]
    kind: PnlKind
    trigger_price: Decimal
    size: Decimal
    margin_mode: str = "cross"
    pos_side: Optional[str] = None
    limit_price: Optional[Decimal] = None


@dataclass(slots=True, frozen=True)
class PlaceAck:
    order_id: str
    client_order_id: Optional[str] = None


@dataclass(slots=True)
class CancelAck:
    cancelled_ids: list[str] = field(default_factory=list)
    missing_ids: list[str] = field(default_factory=list)

    @property
    def resolved_ids(self) -> list[str]:
        return [*self.cancelled_ids, *self.missing_ids]


@dataclass(slots=True, frozen=True)
class RestingTriggerOrder:
    order_id: str
    symbol: str
    kind: PnlKind
    trigger_price: Decimal
    size: Optional[Decimal] = None
    limit_price: Optional[Decimal] = None


@dataclass(slots=True, frozen=True)
class BestQuote:
    symbol: str
    best_bid: Optional[Decimal]
    best_ask: Optional[Decimal]


@runtime_checkable
class VenueClient(Protocol):
    async def place_trigger_order(self, request: TriggerOrderRequest) -> PlaceAck:
        ...

    async def cancel_orders(self, symbol: str, order_ids: list[str]) -> CancelAck:
        ...

    async def list_trigger_orders(self, symbol: str | None = None) -> list[RestingTriggerOrder]:
        ...

    def subscribe_market(self, symbol: str) -> AsyncIterator[BestQuote]:
        ...

    def subscribe_positions(self) -> AsyncIterator[list[Position]]:
        ...


__all__ = [
    "BestQuote",
    "CancelAck",
    "PlaceAck",
    "RestingTriggerOrder",
    "TriggerOrderRequest",
    "VenueClient",
    "VenueError",
    "VenueErrorCategory",
]
