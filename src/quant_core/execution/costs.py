"""Transaction cost model applied to simulated fills."""

from __future__ import annotations

from dataclasses import dataclass

from quant_core.config import CostModelConfig
from quant_core.errors import InvalidInputError
from quant_core.fixed_point import checked, div_round, to_units

BPS_DENOMINATOR = 10_000


@dataclass(frozen=True, slots=True)
class CostBreakdown:
    commission: int
    slippage: int
    floor_topup: int

    @property
    def total(self) -> int:
        return self.commission + self.slippage + self.floor_topup


@dataclass(frozen=True, slots=True)
class CostModel:
    """
    Basis-point commission and slippage with a per-trade fee floor.

    commission_bps and slippage_bps are integers (1 bps = 0.01%); min_trade_fee is
    in cents and applies to every non-zero trade.
    """

    commission_bps: int = 0
    slippage_bps: int = 0
    min_trade_fee: int = 0

    def __post_init__(self) -> None:
        if self.commission_bps < 0 or self.slippage_bps < 0 or self.min_trade_fee < 0:
            raise InvalidInputError("cost model parameters must be non-negative")

    @classmethod
    def zero(cls) -> "CostModel":
        return cls()

    @classmethod
    def from_config(cls, config: CostModelConfig) -> "CostModel":
        for name in ("commission_bps", "slippage_bps"):
            value = float(getattr(config, name))
            if not value.is_integer():
                raise InvalidInputError(f"{name} must be a whole number of basis points, got {value}")
        return cls(
            commission_bps=int(round(config.commission_bps)),
            slippage_bps=int(round(config.slippage_bps)),
            min_trade_fee=to_units(config.min_trade_fee),
        )

    @property
    def total_bps(self) -> int:
        return self.commission_bps + self.slippage_bps

    def breakdown(self, notional: int) -> CostBreakdown:
        """Split the cost of a trade of ``notional`` cents into its components."""
        gross = abs(checked(notional))
        if gross == 0:
            return CostBreakdown(0, 0, 0)
        commission = div_round(gross * self.commission_bps, BPS_DENOMINATOR)
        slippage = div_round(gross * self.slippage_bps, BPS_DENOMINATOR)
        topup = max(self.min_trade_fee - commission - slippage, 0)
        return CostBreakdown(commission=commission, slippage=slippage, floor_topup=topup)

    def compute_cost(self, notional: int) -> int:
        """Total fee in cents for a trade of ``notional`` cents (sign ignored)."""
        return checked(self.breakdown(notional).total)
