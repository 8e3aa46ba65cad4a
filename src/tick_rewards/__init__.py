"""Reward points for completed TickTick tasks."""

__version__ = "0.3.0"
