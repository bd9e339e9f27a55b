"""Volatility forecasting package."""

from .garch import GarchForecast, forecast_garch

__all__ = ["GarchForecast", "forecast_garch"]
