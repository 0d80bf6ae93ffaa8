"""
Persistence
===========

Workflow stores: in-memory, JSON files and SQLite.
"""

from .base import WorkflowStore, InMemoryWorkflowStore, create_store
from .json_store import JsonWorkflowStore
from .sqlite_store import SQLiteWorkflowStore

__all__ = [
    "WorkflowStore",
    "InMemoryWorkflowStore",
    "JsonWorkflowStore",
    "SQLiteWorkflowStore",
    "create_store",
]
