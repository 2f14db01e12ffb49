from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

Direction = Literal["long", "short"]
MarginMode = Literal["cross", "isolated"]


class Position(BaseModel):
    """Open perpetual position as last reported by the venue."""

    model_config = ConfigDict(frozen=True)

    symbol: str
    direction: Direction
    entry_price: Decimal = Field(gt=0)
    size: Decimal = Field(ge=0)
    leverage: Decimal = Field(gt=0)
    margin_mode: MarginMode = "cross"
    mark_price: Optional[Decimal] = None
    tick_size: Optional[Decimal] = None

    @field_validator("symbol", mode="before")
    def normalize_symbol(cls, value: str) -> str:  # noqa: N805
        if not isinstance(value, str) or not value.strip():
            msg = "Symbol must be provided"
            raise ValueError(msg)
        return value.strip().upper()

    @field_validator("direction", "margin_mode", mode="before")
    def normalize_lower(cls, value: Any) -> Any:  # noqa: N805
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("size", mode="before")
    def absolute_size(cls, value: Any) -> Any:  # noqa: N805
        try:
            return abs(Decimal(str(value)))
        except (InvalidOperation, ValueError):
            return value

    @property
    def sign(self) -> int:
        return 1 if self.direction == "long" else -1

    @property
    def close_side(self) -> Literal["buy", "sell"]:
        return "sell" if self.direction == "long" else "buy"

    @property
    def is_open(self) -> bool:
        return self.size > 0

    @property
    def initial_margin(self) -> Decimal:
        return self.entry_price * self.size / self.leverage


__all__ = ["Direction", "MarginMode", "Position"]
