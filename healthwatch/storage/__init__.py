"""Storage backends for samples and outages."""

from healthwatch.storage.base import MonitorStorage, outage_durations
from healthwatch.storage.memory import InMemoryStorage
from healthwatch.storage.sqlite import SQLiteStorage

__all__ = ["InMemoryStorage", "MonitorStorage", "SQLiteStorage", "outage_durations"]
