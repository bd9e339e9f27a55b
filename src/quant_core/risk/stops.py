"""
Per-position stop-loss state machine.

Each open position may carry one stop. States move ``active -> triggered -> closed``
and are evaluated once per period before any rebalancing. Thresholds are integer
cents. A breach is tested against the threshold in force at the start of the period;
trailing stops then ratchet upward from the period's best price and never loosen.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
import logging
from typing import Iterable, Mapping, Sequence

from quant_core.errors import InvalidInputError
from quant_core.fixed_point import checked, div_round, scale_units, to_units

logger = logging.getLogger(__name__)


class StopKind(StrEnum):
    FIXED = "fixed"
    ATR = "atr"
    TRAILING = "trailing"


class StopStatus(StrEnum):
    ACTIVE = "active"
    TRIGGERED = "triggered"
    CLOSED = "closed"


class GapPolicy(StrEnum):
    THRESHOLD = "threshold"
    WORSE_PRICE = "worse_price"


def parse_gap_policy(value: str | GapPolicy) -> GapPolicy:
    try:
        return GapPolicy(value)
    except ValueError as exc:
        choices = [p.value for p in GapPolicy]
        raise InvalidInputError(f"gap_policy must be one of {choices}, got {value!r}") from exc


@dataclass(frozen=True, slots=True)
class StopConfig:
    """
    Exit rule attached to a position at entry.

    fixed:    threshold = entry * (1 - pct)
    atr:      threshold = entry - multiplier * ATR(lookback) at entry
    trailing: threshold = best price since entry - offset, where the offset is either
              an absolute dollar amount or multiplier * ATR(lookback) at entry
    """

    kind: StopKind
    pct: float | None = None
    multiplier: float | None = None
    offset: float | None = None
    lookback: int = 14

    def __post_init__(self) -> None:
        try:
            kind = StopKind(self.kind)
        except ValueError as exc:
            raise InvalidInputError(f"unknown stop kind {self.kind!r}") from exc
        object.__setattr__(self, "kind", kind)
        if self.lookback < 1:
            raise InvalidInputError("stop lookback must be >= 1")
        if kind is StopKind.FIXED:
            if self.pct is None or not 0.0 < self.pct < 1.0:
                raise InvalidInputError("fixed stop requires 0 < pct < 1")
        elif kind is StopKind.ATR:
            if self.multiplier is None or self.multiplier <= 0:
                raise InvalidInputError("ATR stop requires a positive multiplier")
        elif kind is StopKind.TRAILING:
            has_offset = self.offset is not None
            has_mult = self.multiplier is not None
            if has_offset == has_mult:
                raise InvalidInputError("trailing stop needs exactly one of offset or multiplier")
            if (has_offset and self.offset <= 0) or (has_mult and self.multiplier <= 0):
                raise InvalidInputError("trailing stop offset must be positive")

    @classmethod
    def fixed(cls, pct: float) -> "StopConfig":
        return cls(kind=StopKind.FIXED, pct=pct)

    @classmethod
    def atr(cls, multiplier: float, lookback: int = 14) -> "StopConfig":
        return cls(kind=StopKind.ATR, multiplier=multiplier, lookback=lookback)

    @classmethod
    def trailing(
        cls,
        offset: float | None = None,
        multiplier: float | None = None,
        lookback: int = 14,
    ) -> "StopConfig":
        return cls(kind=StopKind.TRAILING, offset=offset, multiplier=multiplier, lookback=lookback)

    @property
    def uses_atr(self) -> bool:
        return self.kind is StopKind.ATR or (self.kind is StopKind.TRAILING and self.multiplier is not None)


@dataclass(frozen=True, slots=True)
class PriceBar:
    """One period's prices for a symbol in cents; open/high/low may be missing."""

    close: int
    open: int | None = None
    high: int | None = None
    low: int | None = None

    @property
    def worst(self) -> int:
        return self.low if self.low is not None else self.close

    @property
    def best(self) -> int:
        return self.high if self.high is not None else self.close

    @property
    def gap_reference(self) -> int:
        if self.open is not None:
            return self.open
        if self.high is not None:
            return self.high
        return self.close


def true_ranges(bars: Sequence[PriceBar]) -> list[int]:
    """True range per bar in cents; the first bar only counts when it has a high/low."""
    out: list[int] = []
    prev_close: int | None = None
    for bar in bars:
        if bar.high is not None and bar.low is not None:
            rng = bar.high - bar.low
            if prev_close is not None:
                rng = max(rng, abs(bar.high - prev_close), abs(bar.low - prev_close))
            out.append(rng)
        elif prev_close is not None:
            out.append(abs(bar.close - prev_close))
        prev_close = bar.close
    return out


def average_true_range(bars: Sequence[PriceBar], lookback: int) -> int | None:
    """Mean of the last ``lookback`` true ranges in cents, or None when none exist."""
    ranges = true_ranges(bars)[-lookback:]
    if not ranges:
        return None
    return div_round(sum(ranges), len(ranges))


@dataclass(slots=True)
class StopState:
    symbol: str
    config: StopConfig
    entry_price: int
    status: StopStatus = StopStatus.ACTIVE
    threshold: int | None = None
    peak: int = 0
    offset: int | None = None

    def arm(self, atr: int | None) -> None:
        """Set the initial threshold; ATR-based stops wait until a positive ATR is available."""
        cfg = self.config
        if cfg.kind is StopKind.FIXED:
            self.threshold = checked(self.entry_price - scale_units(self.entry_price, cfg.pct))
            return
        if cfg.uses_atr:
            if atr is None or atr <= 0:
                return
            self.offset = scale_units(atr, cfg.multiplier)
        else:
            self.offset = to_units(cfg.offset)
        if cfg.kind is StopKind.ATR:
            self.threshold = max(checked(self.entry_price - self.offset), 0)
        else:
            self.threshold = max(checked(self.peak - self.offset), 0)

    @property
    def armed(self) -> bool:
        return self.threshold is not None

    def ratchet(self, bar: PriceBar) -> None:
        if self.config.kind is not StopKind.TRAILING:
            return
        self.peak = max(self.peak, bar.best)
        if self.offset is None:
            return
        candidate = max(self.peak - self.offset, 0)
        if self.threshold is None or candidate > self.threshold:
            self.threshold = candidate


@dataclass(frozen=True, slots=True)
class StopTrigger:
    symbol: str
    kind: StopKind
    threshold: int
    exit_price: int
    gapped: bool


def stop_order(symbols: Iterable[str], priority: Sequence[str] = ()) -> list[str]:
    """Deterministic processing order: ``priority`` symbols first, the rest ascending."""
    rank = {sym: i for i, sym in enumerate(priority)}
    return sorted(symbols, key=lambda s: (0, rank[s], s) if s in rank else (1, 0, s))


@dataclass(slots=True)
class StopEvaluator:
    """Holds stop state for every open position during one simulation."""

    configs: Mapping[str, StopConfig]
    gap_policy: GapPolicy = GapPolicy.WORSE_PRICE
    priority: tuple[str, ...] = ()
    states: dict[str, StopState] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.gap_policy = parse_gap_policy(self.gap_policy)
        self.priority = tuple(self.priority)

    def config_for(self, symbol: str) -> StopConfig | None:
        return self.configs.get(symbol)

    def open(self, symbol: str, entry_price: int, history: Sequence[PriceBar]) -> StopState | None:
        """Attach a fresh stop to a new position entered at ``entry_price`` cents."""
        cfg = self.config_for(symbol)
        if cfg is None:
            return None
        state = StopState(symbol=symbol, config=cfg, entry_price=entry_price, peak=entry_price)
        state.arm(average_true_range(history, cfg.lookback) if cfg.uses_atr else None)
        self.states[symbol] = state
        logger.debug("Armed %s stop for %s at threshold %s", cfg.kind, symbol, state.threshold)
        return state

    def release(self, symbol: str) -> None:
        """Drop the stop of a position closed by rebalancing."""
        state = self.states.pop(symbol, None)
        if state is not None:
            state.status = StopStatus.CLOSED

    def evaluate(
        self,
        bars: Mapping[str, PriceBar],
        histories: Mapping[str, Sequence[PriceBar]],
    ) -> list[StopTrigger]:
        """
        Test every active stop against this period's bars, in tie-break order.

        Triggered states are left in ``triggered`` until the engine confirms the exit
        via ``close``. Surviving stops are ratcheted and pending ATR stops armed.
        """
        triggers: list[StopTrigger] = []
        for symbol in stop_order(self.states.keys(), self.priority):
            state = self.states[symbol]
            bar = bars.get(symbol)
            if bar is None or state.status is not StopStatus.ACTIVE:
                continue
            if state.armed and bar.worst <= state.threshold:
                gapped = bar.gap_reference <= state.threshold
                if gapped and self.gap_policy is GapPolicy.WORSE_PRICE:
                    exit_price = bar.gap_reference
                else:
                    exit_price = state.threshold
                state.status = StopStatus.TRIGGERED
                triggers.append(
                    StopTrigger(
                        symbol=symbol,
                        kind=state.config.kind,
                        threshold=state.threshold,
                        exit_price=exit_price,
                        gapped=gapped,
                    )
                )
                continue
            if not state.armed:
                state.arm(average_true_range(histories.get(symbol, ()), state.config.lookback))
            state.ratchet(bar)
        return triggers

    def close(self, symbol: str) -> StopState:
        state = self.states.pop(symbol)
        state.status = StopStatus.CLOSED
        return state


def resolve_stop_configs(
    stop_configs: StopConfig | Mapping[str, StopConfig] | None,
    symbols: Iterable[str],
) -> dict[str, StopConfig]:
    """Expand a single shared config to every symbol, or validate a per-symbol mapping."""
    if stop_configs is None:
        return {}
    if isinstance(stop_configs, StopConfig):
        return {sym: stop_configs for sym in symbols}
    out: dict[str, StopConfig] = {}
    for sym, cfg in stop_configs.items():
        if not isinstance(cfg, StopConfig):
            raise InvalidInputError(f"stop config for {sym} must be a StopConfig")
        out[str(sym)] = cfg
    return out


