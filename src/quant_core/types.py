"""Core domain datatypes."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Any

import pandas as pd

from quant_core.fixed_point import checked, div_round, units_to_float


class TradeReason(StrEnum):
    REBALANCE = "rebalance"
    STOP = "stop"


@dataclass(frozen=True, slots=True)
class Trade:
    """Executed transaction. Prices and fees are integer cents."""

    symbol: str
    timestamp: pd.Timestamp
    quantity: int
    price: int
    fee: int
    reason: TradeReason

    @property
    def notional(self) -> int:
        return checked(self.quantity * self.price)

    @property
    def side(self) -> str:
        return "BUY" if self.quantity > 0 else "SELL"

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "event_time": self.timestamp.isoformat(),
            "quantity": self.quantity,
            "price": units_to_float(self.price),
            "fee": units_to_float(self.fee),
            "notional": units_to_float(self.notional),
            "reason": str(self.reason),
        }


@dataclass(frozen=True, slots=True)
class Holding:
    """Per-period, per-symbol snapshot taken after the period's trades."""

    timestamp: pd.Timestamp
    symbol: str
    quantity: int
    price: int
    market_value: int
    weight: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_time": self.timestamp.isoformat(),
            "symbol": self.symbol,
            "quantity": self.quantity,
            "price": units_to_float(self.price),
            "market_value": units_to_float(self.market_value),
            "weight": self.weight,
        }


@dataclass(frozen=True, slots=True)
class StopEvent:
    """Stop trigger record: threshold in force and the realized exit price."""

    symbol: str
    timestamp: pd.Timestamp
    kind: str
    threshold: int
    exit_price: int
    quantity: int
    gapped: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "event_time": self.timestamp.isoformat(),
            "kind": self.kind,
            "threshold": units_to_float(self.threshold),
            "exit_price": units_to_float(self.exit_price),
            "quantity": self.quantity,
            "gapped": self.gapped,
        }


@dataclass(slots=True)
class Position:
    """Open long position with average-cost accounting."""

    symbol: str
    quantity: int = 0
    avg_entry_price: int = 0
    total_cost: int = 0
    realized_pnl: int = 0

    def apply_fill(self, quantity: int, price: int) -> None:
        """Apply a signed fill at ``price`` cents, updating cost basis and realized PnL."""
        if quantity > 0:
            self.total_cost = checked(self.total_cost + quantity * price)
            self.quantity += quantity
            self.avg_entry_price = div_round(self.total_cost, self.quantity)
        elif quantity < 0:
            sold = min(-quantity, self.quantity)
            self.realized_pnl = checked(self.realized_pnl + sold * (price - self.avg_entry_price))
            self.quantity -= sold
            self.total_cost = checked(self.avg_entry_price * self.quantity)
            if self.quantity == 0:
                self.avg_entry_price = 0

    def market_value(self, price: int) -> int:
        return checked(self.quantity * price)

    def unrealized_pnl(self, price: int) -> int:
        return checked(self.quantity * (price - self.avg_entry_price))
