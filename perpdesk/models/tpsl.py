from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

if TYPE_CHECKING:  # pragma: no cover
    from perpdesk.services.venue import VenueError

AnchorField = Literal["price", "pnl"]
TpslVariant = Literal["percent", "dollar"]
PnlKind = Literal["take_profit", "stop_loss"]
NotificationLevel = Literal["positive", "warning", "negative", "info"]

PNL_KINDS: tuple[PnlKind, PnlKind] = ("take_profit", "stop_loss")


class TpslInput(BaseModel):
    """Raw TP/SL form state, re-evaluated on every edit."""

    anchor_field: AnchorField = "price"
    variant: TpslVariant = "percent"
    take_profit: Optional[Decimal] = None
    stop_loss: Optional[Decimal] = None
    take_profit_limit_price: Optional[Decimal] = None
    stop_loss_limit_price: Optional[Decimal] = None
    size_fraction: Decimal = Field(default=Decimal("1"), gt=0, le=1)


class TpSlValidationError(BaseModel):
    model_config = ConfigDict(frozen=True)

    take_profit_error: bool = False
    stop_loss_error: bool = False

    @property
    def any(self) -> bool:
        return self.take_profit_error or self.stop_loss_error

    def merge(self, other: "TpSlValidationError") -> "TpSlValidationError":
        return TpSlValidationError(
            take_profit_error=self.take_profit_error or other.take_profit_error,
            stop_loss_error=self.stop_loss_error or other.stop_loss_error,
        )

    def for_kind(self, kind: PnlKind) -> bool:
        return self.take_profit_error if kind == "take_profit" else self.stop_loss_error


class TpslLeg(BaseModel):
    """One side (take-profit or stop-loss) of a computed TP/SL result."""

    model_config = ConfigDict(frozen=True)

    kind: PnlKind
    price: Optional[Decimal] = None
    pnl: Optional[Decimal] = None
    percent: Optional[Decimal] = None
    error: bool = False


class TpslResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    take_profit_price: Optional[Decimal] = None
    stop_loss_price: Optional[Decimal] = None
    take_profit_pnl: Optional[Decimal] = None
    stop_loss_pnl: Optional[Decimal] = None
    take_profit_percent: Optional[Decimal] = None
    stop_loss_percent: Optional[Decimal] = None
    take_profit_limit_price: Optional[Decimal] = None
    stop_loss_limit_price: Optional[Decimal] = None
    size: Optional[Decimal] = None
    errors: TpSlValidationError = Field(default_factory=TpSlValidationError)

    def price_for(self, kind: PnlKind) -> Optional[Decimal]:
        return self.take_profit_price if kind == "take_profit" else self.stop_loss_price

    def limit_price_for(self, kind: PnlKind) -> Optional[Decimal]:
        """Limit price for the leg, or None for a market order on trigger."""
        return self.take_profit_limit_price if kind == "take_profit" else self.stop_loss_limit_price

    @property
    def is_empty(self) -> bool:
        return self.take_profit_price is None and self.stop_loss_price is None


class SubmissionState(str, Enum):
    IDLE = "idle"
    CANCELLING = "cancelling"
    PLACING = "placing"
    CONFIRMED = "confirmed"
    PARTIALLY_CONFIRMED = "partially_confirmed"
    FAILED = "failed"


@dataclass(slots=True, frozen=True)
class Notification:
    level: NotificationLevel
    title: str
    message: str


@dataclass(slots=True)
class SubmissionOutcome:
    """Aggregate result of one cancel-then-place attempt."""

    symbol: str
    status: SubmissionState
    cancelled_ids: list[str] = field(default_factory=list)
    placed: dict[str, str] = field(default_factory=dict)
    leg_errors: dict[str, "VenueError"] = field(default_factory=dict)
    error: Optional["VenueError"] = None
    notification: Optional[Notification] = None

    def as_dict(self) -> dict[str, object]:
        return {
            "symbol": self.symbol,
            "status": self.status.value,
            "cancelled_ids": list(self.cancelled_ids),
            "placed": dict(self.placed),
            "leg_errors": {kind: str(exc) for kind, exc in self.leg_errors.items()},
            "error": str(self.error) if self.error else None,
            "notification": (
                {
                    "level": self.notification.level,
                    "title": self.notification.title,
                    "message": self.notification.message,
                }
                if self.notification
                else None
            ),
        }


__all__ = [
    "AnchorField",
    "Notification",
    "NotificationLevel",
    "PNL_KINDS",
    "PnlKind",
    "SubmissionOutcome",
    "SubmissionState",
    "TpSlValidationError",
    "TpslInput",
    "TpslLeg",
    "TpslResult",
    "TpslVariant",
]
