"""Persistence backends for the sync engine."""

from src.wearables.store.base import MetricWrite, SyncStore
from src.wearables.store.memory import MemorySyncStore

__all__ = ["MemorySyncStore", "MetricWrite", "SyncStore"]
