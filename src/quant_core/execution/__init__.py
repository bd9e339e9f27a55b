"""Execution cost modeling package."""

from .costs import CostBreakdown, CostModel

__all__ = ["CostBreakdown", "CostModel"]
