"""Pure TP/SL conversions between trigger prices and PnL.

PnL follows ``pnl = size * (trigger - entry) * sign`` with sign +1 for longs and -1 for shorts.
Percent values are relative to the initial margin ``entry * size / leverage`` so that the
displayed percentage already accounts for leverage. When an order covers only part of the
position, PnL is reported for that part.
"""

from __future__ import annotations

import re
from decimal import ROUND_CEILING, ROUND_FLOOR, Context, Decimal, InvalidOperation, localcontext
from typing import Any, Optional

from perpdesk.models.position import Direction, Position
from perpdesk.models.tpsl import (
    PNL_KINDS,
    PnlKind,
    TpSlValidationError,
    TpslInput,
    TpslLeg,
    TpslResult,
    TpslVariant,
)

DECIMAL_CONTEXT = Context(prec=28)
DEFAULT_PRICE_QUANTUM = Decimal("0.00000001")
HUNDRED = Decimal("100")

_NON_NUMERIC = re.compile(r"[^0-9.]")
_THOUSANDS = re.compile(r"\B(?=(\d{3})+(?!\d))")


def _to_decimal(value: Any) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        candidate = value
    else:
        try:
            candidate = Decimal(str(value))
        except (InvalidOperation, ValueError):
            return None
    if not candidate.is_finite():
        return None
    return candidate


def sanitize_decimal_input(value: str, *, allow_negative: bool = False) -> str:
    """Strip everything but digits and one decimal point from raw keystrokes."""
    if not value:
        return ""
    negative = allow_negative and value.startswith("-")
    cleaned = _NON_NUMERIC.sub("", value[1:] if negative else value)
    head, dot, tail = cleaned.partition(".")
    tail = tail.replace(".", "")
    if head not in ("", "0"):
        head = head.lstrip("0") or "0"
    if dot:
        result = f"{head or '0'}.{tail}"
    else:
        result = head
    return f"-{result}" if negative and result else result


def parse_decimal(value: Any) -> Optional[Decimal]:
    """Parse user input into a Decimal, returning None for blanks and garbage."""
    if isinstance(value, str):
        text = value.replace(",", "").strip()
        if not text or text in {"-", ".", "-."}:
            return None
        return _to_decimal(text)
    return _to_decimal(value)


def format_decimal(value: Optional[Decimal], *, places: int = 2, separators: bool = True) -> str:
    if value is None:
        return ""
    with localcontext(DECIMAL_CONTEXT):
        quantized = value.quantize(Decimal(1).scaleb(-places)) if places >= 0 else value
    text = f"{quantized:f}"
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    if text in {"-0", ""}:
        text = "0"
    if not separators:
        return text
    sign = "-" if text.startswith("-") else ""
    digits = text.lstrip("-")
    int_part, dot, dec_part = digits.partition(".")
    return f"{sign}{_THOUSANDS.sub(',', int_part)}{dot}{dec_part}"


def strip_trailing_zeros(value: Decimal) -> Decimal:
    if value == value.to_integral_value():
        return value.quantize(Decimal(1))
    return value.normalize()


def quantize_price(price: Decimal, tick_size: Optional[Decimal], *, prefer_up: bool) -> Decimal:
    """Snap a trigger price onto the venue grid, nudging away from entry."""
    quantum = tick_size if tick_size and tick_size > 0 else DEFAULT_PRICE_QUANTUM
    rounding = ROUND_CEILING if prefer_up else ROUND_FLOOR
    with localcontext(DECIMAL_CONTEXT):
        steps = (price / quantum).to_integral_value(rounding=rounding)
        return strip_trailing_zeros(steps * quantum)


def price_on_valid_side(kind: PnlKind, direction: Direction, price: Decimal, entry_price: Decimal) -> bool:
    if kind == "take_profit":
        return price > entry_price if direction == "long" else price < entry_price
    return price < entry_price if direction == "long" else price > entry_price


def _crosses_opposite(kind: PnlKind, direction: Direction, price: Decimal, opposite: Optional[Decimal]) -> bool:
    if opposite is None or opposite <= 0:
        return False
    take_profit, stop_loss = (price, opposite) if kind == "take_profit" else (opposite, price)
    if direction == "long":
        return stop_loss >= take_profit
    return stop_loss <= take_profit


def _has_position(position: Optional[Position]) -> bool:
    return position is not None and position.is_open


def compute_from_price(
    position: Optional[Position],
    kind: PnlKind,
    price: Any,
    *,
    opposite_price: Any = None,
) -> TpslLeg:
    """Derive signed PnL and percent-of-margin for an absolute trigger price."""
    value = _to_decimal(price)
    if not _has_position(position) or value is None:
        return TpslLeg(kind=kind, error=True)
    assert position is not None
    if value <= 0:
        return TpslLeg(kind=kind, price=value, error=True)
    with localcontext(DECIMAL_CONTEXT):
        pnl = position.size * (value - position.entry_price) * position.sign
        percent = pnl / position.initial_margin * HUNDRED
    error = not price_on_valid_side(kind, position.direction, value, position.entry_price)
    error = error or _crosses_opposite(kind, position.direction, value, _to_decimal(opposite_price))
    return TpslLeg(kind=kind, price=value, pnl=pnl, percent=percent, error=error)


def compute_from_pnl(
    position: Optional[Position],
    kind: PnlKind,
    pnl_value: Any,
    variant: TpslVariant,
    *,
    opposite_price: Any = None,
) -> TpslLeg:
    """Solve the trigger price that realizes a target PnL (dollar or percent of margin).

    A positive stop-loss value is read as the size of the loss.
    """
    value = _to_decimal(pnl_value)
    if not _has_position(position) or value is None:
        return TpslLeg(kind=kind, error=True)
    assert position is not None
    with localcontext(DECIMAL_CONTEXT):
        if variant == "percent":
            pnl = value / HUNDRED * position.initial_margin
        else:
            pnl = value
        if kind == "stop_loss" and pnl > 0:
            pnl = -pnl
        raw_price = position.entry_price + pnl / (position.size * position.sign)
    if raw_price <= 0:
        return TpslLeg(kind=kind, pnl=pnl, error=True)
    prefer_up = raw_price > position.entry_price
    price = quantize_price(raw_price, position.tick_size, prefer_up=prefer_up)
    if price <= 0:
        return TpslLeg(kind=kind, pnl=pnl, error=True)
    return compute_from_price(position, kind, price, opposite_price=opposite_price)


def validate_pair(
    take_profit: Any,
    stop_loss: Any,
    direction: Direction,
    entry_price: Any,
) -> TpSlValidationError:
    """Cross-check both triggers; an out-of-order value flags only its own field."""
    entry = _to_decimal(entry_price)
    tp = _to_decimal(take_profit)
    sl = _to_decimal(stop_loss)
    if entry is None or entry <= 0:
        return TpSlValidationError(take_profit_error=tp is not None, stop_loss_error=sl is not None)
    tp_error = tp is not None and (tp <= 0 or not price_on_valid_side("take_profit", direction, tp, entry))
    sl_error = sl is not None and (sl <= 0 or not price_on_valid_side("stop_loss", direction, sl, entry))
    if tp is not None and sl is not None and not (tp_error or sl_error):
        if _crosses_opposite("take_profit", direction, tp, sl):
            tp_error = sl_error = True
    return TpSlValidationError(take_profit_error=tp_error, stop_loss_error=sl_error)


def _out_of_bounds(price: Optional[Decimal], bounds: Optional[tuple[Decimal, Decimal]]) -> bool:
    if price is None or bounds is None:
        return False
    low, high = bounds
    return price < low or price > high


def compute_tpsl(
    position: Optional[Position],
    tpsl_input: TpslInput,
    *,
    price_bounds: Optional[tuple[Decimal, Decimal]] = None,
) -> TpslResult:
    """Evaluate the whole form against the slice of the position the orders will close."""
    if not _has_position(position):
        return TpslResult(errors=TpSlValidationError(take_profit_error=True, stop_loss_error=True))
    assert position is not None

    with localcontext(DECIMAL_CONTEXT):
        size = position.size * tpsl_input.size_fraction
    sized = position if size == position.size else position.model_copy(update={"size": size})

    legs: dict[PnlKind, Optional[TpslLeg]] = {"take_profit": None, "stop_loss": None}
    limits: dict[PnlKind, Optional[Decimal]] = {"take_profit": None, "stop_loss": None}
    limit_errors: dict[PnlKind, bool] = {"take_profit": False, "stop_loss": False}
    for kind in PNL_KINDS:
        raw = getattr(tpsl_input, kind)
        if raw is None:
            continue
        if tpsl_input.anchor_field == "price":
            legs[kind] = compute_from_price(sized, kind, raw)
        else:
            legs[kind] = compute_from_pnl(sized, kind, raw, tpsl_input.variant)
        limit = _to_decimal(getattr(tpsl_input, f"{kind}_limit_price"))
        if limit is not None:
            limits[kind] = limit
            limit_errors[kind] = limit <= 0

    tp_leg = legs["take_profit"]
    sl_leg = legs["stop_loss"]
    errors = TpSlValidationError(
        take_profit_error=bool(tp_leg and tp_leg.error) or limit_errors["take_profit"],
        stop_loss_error=bool(sl_leg and sl_leg.error) or limit_errors["stop_loss"],
    )
    tp_price = tp_leg.price if tp_leg else None
    sl_price = sl_leg.price if sl_leg else None
    errors = errors.merge(validate_pair(tp_price, sl_price, position.direction, position.entry_price))
    errors = errors.merge(
        TpSlValidationError(
            take_profit_error=_out_of_bounds(tp_price, price_bounds),
            stop_loss_error=_out_of_bounds(sl_price, price_bounds),
        )
    )
    return TpslResult(
        take_profit_price=tp_price,
        stop_loss_price=sl_price,
        take_profit_pnl=tp_leg.pnl if tp_leg else None,
        stop_loss_pnl=sl_leg.pnl if sl_leg else None,
        take_profit_percent=tp_leg.percent if tp_leg else None,
        stop_loss_percent=sl_leg.percent if sl_leg else None,
        take_profit_limit_price=limits["take_profit"],
        stop_loss_limit_price=limits["stop_loss"],
        size=size,
        errors=errors,
    )


__all__ = [
    "compute_from_pnl",
    "compute_from_price",
    "compute_tpsl",
    "format_decimal",
    "parse_decimal",
    "price_on_valid_side",
    "quantize_price",
    "sanitize_decimal_input",
    "validate_pair",
]
