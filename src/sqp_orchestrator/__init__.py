"""Search Query Performance report orchestrator."""

__version__ = "1.0.0"
