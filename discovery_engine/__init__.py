"""Flare discovery engine: mines a user's health-event history for flare associations."""

__version__ = "1.0.0"
