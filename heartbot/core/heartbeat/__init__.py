"""Heartbeat engine — sub-schedulers and the tick orchestrator."""
