"""History store backends."""
from .base import HistoryStore, HistoryWriter
from .memory import InMemoryHistoryStore

__all__ = ["HistoryStore", "HistoryWriter", "InMemoryHistoryStore"]
