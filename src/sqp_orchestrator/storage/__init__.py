"""Persistence for sellers, work units, activity and downloads."""

from .memory import InMemoryReportStore
from .sqlite_store import SqliteReportStore

__all__ = ["InMemoryReportStore", "SqliteReportStore"]
