"""ZKOM worker node agent: device registration, heartbeat and stream job processing."""

__version__ = "0.1.0"
