"""Autonomous repository operations driven by a durable action pipeline."""

__version__ = "0.3.0"
