"""Repository modules - Data access layer"""
from .store import StoreAdapter
from .inmemory_store import InMemoryStoreAdapter
from .mongo_store import MongoStoreAdapter
from .workflow_repo import WorkflowRepository

__all__ = [
    "StoreAdapter",
    "InMemoryStoreAdapter",
    "MongoStoreAdapter",
    "WorkflowRepository",
]
