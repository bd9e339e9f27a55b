"""Risk controls package."""

from .stops import GapPolicy, PriceBar, StopConfig, StopEvaluator, StopKind, average_true_range

__all__ = ["GapPolicy", "PriceBar", "StopConfig", "StopEvaluator", "StopKind", "average_true_range"]
