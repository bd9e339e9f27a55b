"""Typed error hierarchy surfaced by the compute core."""

from __future__ import annotations


class QuantCoreError(Exception):
    """Base class for every error raised by quant_core."""


class InvalidInputError(QuantCoreError, ValueError):
    """Caller supplied malformed data (lengths, non-finite values, empty series)."""


class PriceOverflowError(QuantCoreError, OverflowError):
    """A fixed-point amount left the representable range."""


class ResourceExceededError(QuantCoreError, RuntimeError):
    """A bounded computation produced neither a result nor its fallback."""
