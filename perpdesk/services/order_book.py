from __future__ import annotations

from decimal import Decimal
from typing import Optional

from perpdesk.services.venue import BestQuote


class OrderBookStore:
    """Best bid/ask per instrument, written only by the market feed."""

    def __init__(self) -> None:
        self._quotes: dict[str, BestQuote] = {}

    def apply_quote(self, quote: BestQuote) -> None:
        symbol = quote.symbol.upper()
        previous = self._quotes.get(symbol)
        best_bid = quote.best_bid if quote.best_bid is not None else (previous.best_bid if previous else None)
        best_ask = quote.best_ask if quote.best_ask is not None else (previous.best_ask if previous else None)
        self._quotes[symbol] = BestQuote(symbol=symbol, best_bid=best_bid, best_ask=best_ask)

    def clear(self, symbol: str | None = None) -> None:
        if symbol is None:
            self._quotes.clear()
            return
        self._quotes.pop(symbol.upper(), None)

    def get(self, symbol: str) -> Optional[BestQuote]:
        return self._quotes.get(symbol.upper())

    def mid_price(self, symbol: str) -> Optional[Decimal]:
        quote = self.get(symbol)
        if quote is None:
            return None
        if quote.best_bid is not None and quote.best_ask is not None:
            return (quote.best_bid + quote.best_ask) / 2
        return quote.best_bid if quote.best_bid is not None else quote.best_ask

    def sanity_bounds(self, symbol: str, max_deviation: float) -> Optional[tuple[Decimal, Decimal]]:
        """Return the (low, high) trigger band around mid, or None without a live quote."""
        mid = self.mid_price(symbol)
        if mid is None or mid <= 0:
            return None
        deviation = Decimal(str(max_deviation))
        return mid * (1 - deviation), mid * (1 + deviation)

    def snapshot(self) -> dict[str, dict[str, str | None]]:
        return {
            symbol: {
                "best_bid": str(quote.best_bid) if quote.best_bid is not None else None,
                "best_ask": str(quote.best_ask) if quote.best_ask is not None else None,
            }
            for symbol, quote in self._quotes.items()
        }


__all__ = ["OrderBookStore"]
