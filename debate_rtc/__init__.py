"""Real-time voice mesh for live debate rooms."""

__version__ = "0.1.0"
