"""
JSON Workflow Store
===================

One ``<workflow id>.json`` file per workflow.

Writes go to a temp file in the same directory which then replaces the
target, so a crash mid-write leaves the previous version intact.
"""

import json
import logging
from pathlib import Path
from typing import Optional, List, Union
import aiofiles

from .base import WorkflowStore
from ..core.exceptions import StorageError, ValidationError
from ..core.security import sanitize_filename
from ..utils.storage import atomic_write_bytes, ensure_dir
from ..workflow.models import Workflow

logger = logging.getLogger(__name__)


class JsonWorkflowStore(WorkflowStore):
    """
    File-per-workflow JSON store.

    Usage:
        store = JsonWorkflowStore("./output/workflows")
        await store.save(workflow)
        restored = await store.load(workflow.id)
    """

    def __init__(self, directory: Union[str, Path]):
        self.directory = ensure_dir(directory)

    def _path(self, workflow_id: str) -> Path:
        if not workflow_id or sanitize_filename(workflow_id) != workflow_id:
            raise ValidationError("Invalid workflow id", field="workflow_id", value=workflow_id)
        return self.directory / f"{workflow_id}.json"

    async def load(self, workflow_id: str) -> Optional[Workflow]:
        path = self._path(workflow_id)
        if not path.exists():
            return None
        return await self._read(path)

    async def save(self, workflow: Workflow) -> None:
        # Serialize before awaiting so the file reflects this exact moment
        payload = json.dumps(workflow.to_dict(), ensure_ascii=False, indent=2).encode("utf-8")
        await atomic_write_bytes(self._path(workflow.id), payload)
        logger.debug(f"Saved workflow {workflow.id} ({len(payload)} bytes)")

    async def list_for_owner(self, owner_key: str) -> List[Workflow]:
        workflows = []
        for path in sorted(self.directory.glob("*.json")):
            if path.name.startswith("."):
                continue
            workflow = await self._read(path)
            if workflow.owner_key == owner_key:
                workflows.append(workflow)
        return sorted(workflows, key=lambda w: w.updated_at, reverse=True)

    async def delete(self, workflow_id: str) -> bool:
        path = self._path(workflow_id)
        if not path.exists():
            return False
        path.unlink()
        logger.info(f"Deleted workflow {workflow_id}")
        return True

    async def _read(self, path: Path) -> Workflow:
        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            raw = await f.read()
        try:
            return Workflow.from_dict(json.loads(raw))
        except (json.JSONDecodeError, KeyError, ValueError) as e:
            raise StorageError(f"Corrupt workflow file {path.name}: {e}", key=path.name, recoverable=False)
