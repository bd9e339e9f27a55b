"""Datetime normalization helpers."""

from __future__ import annotations

import pandas as pd


def to_utc_timestamp(value: object) -> pd.Timestamp:
    """Normalize datetime-like values to UTC pandas Timestamp."""
    ts = pd.Timestamp(value)
    if ts.tzinfo is None:
        return ts.tz_localize("UTC")
    return ts.tz_convert("UTC")


def to_utc_index(values: object) -> pd.DatetimeIndex:
    """Normalize an iterable of datetime-likes to a UTC DatetimeIndex."""
    idx = pd.DatetimeIndex(pd.to_datetime(values))
    if idx.tz is None:
        return idx.tz_localize("UTC")
    return idx.tz_convert("UTC")
