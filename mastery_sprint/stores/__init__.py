"""
Storage adapters.

- base: async collaborator contracts (MetricStore, DocumentStore, ExerciseProvider)
- memory: in-memory implementations
- sql: SQLAlchemy implementations
- offline_queue: deferred write queue replayed in order
"""

from mastery_sprint.stores.base import DocumentStore, ExerciseProvider, MetricStore
from mastery_sprint.stores.memory import InMemoryDocumentStore, InMemoryMetricStore
from mastery_sprint.stores.offline_queue import OfflineQueue, QueuedOperation

__all__ = [
    "DocumentStore",
    "ExerciseProvider",
    "MetricStore",
    "InMemoryDocumentStore",
    "InMemoryMetricStore",
    "OfflineQueue",
    "QueuedOperation",
]
