"""
Workflow Store
==============

Persistence contract for the workflow aggregate.

Every save writes the whole aggregate (last writer wins). Implementations
must never leave a half-written aggregate behind, and must serialize the
workflow before their first suspension point so the stored snapshot is the
state at the time ``save`` was called.
"""

import copy
import logging
from abc import ABC, abstractmethod
from typing import Optional, List, Dict, Any, TYPE_CHECKING

from ..workflow.models import Workflow

if TYPE_CHECKING:
    from ..core.config import Config

logger = logging.getLogger(__name__)


class WorkflowStore(ABC):
    """Durable mirror of workflows, keyed by workflow id."""

    @abstractmethod
    async def load(self, workflow_id: str) -> Optional[Workflow]:
        """Load a workflow, or None if it does not exist."""
        pass

    @abstractmethod
    async def save(self, workflow: Workflow) -> None:
        """Write the whole aggregate."""
        pass

    @abstractmethod
    async def list_for_owner(self, owner_key: str) -> List[Workflow]:
        """All workflows of an owner, most recently updated first."""
        pass

    @abstractmethod
    async def delete(self, workflow_id: str) -> bool:
        """Delete a workflow; True if something was removed."""
        pass

    async def list_active_for_owner(self, owner_key: str) -> List[Workflow]:
        """
        Workflows of an owner that can still be resumed.

        Args:
            owner_key: Owner key (hash of the user's API key)

        Returns:
            Non-final workflows, most recently updated first
        """
        workflows = await self.list_for_owner(owner_key)
        return [w for w in workflows if not w.status.is_final]


class InMemoryWorkflowStore(WorkflowStore):
    """
    Store that keeps serialized copies in a dict.

    Holds dictionaries rather than live objects, so callers can never mutate
    stored state by accident.
    """

    def __init__(self):
        self._data: Dict[str, Dict[str, Any]] = {}
        self.save_count = 0

    async def load(self, workflow_id: str) -> Optional[Workflow]:
        data = self._data.get(workflow_id)
        return Workflow.from_dict(copy.deepcopy(data)) if data else None

    async def save(self, workflow: Workflow) -> None:
        self._data[workflow.id] = copy.deepcopy(workflow.to_dict())
        self.save_count += 1

    async def list_for_owner(self, owner_key: str) -> List[Workflow]:
        matches = [
            Workflow.from_dict(copy.deepcopy(data))
            for data in self._data.values()
            if data.get("owner_key") == owner_key
        ]
        return sorted(matches, key=lambda w: w.updated_at, reverse=True)

    async def delete(self, workflow_id: str) -> bool:
        return self._data.pop(workflow_id, None) is not None


def create_store(config: "Config") -> WorkflowStore:
    """Build the workflow store selected by ``storage.backend``."""
    backend = config.storage.backend
    if backend == "memory":
        return InMemoryWorkflowStore()
    if backend == "sqlite":
        from .sqlite_store import SQLiteWorkflowStore
        return SQLiteWorkflowStore(f"{config.storage.workflows_path.rstrip('/')}/workflows.db")
    from .json_store import JsonWorkflowStore
    return JsonWorkflowStore(config.storage.workflows_path)
