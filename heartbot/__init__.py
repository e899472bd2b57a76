"""heartbot — proactive notification heartbeat engine."""

__version__ = "0.1.0"
