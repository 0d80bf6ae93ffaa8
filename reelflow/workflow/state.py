"""
Workflow State
==============

Item lifecycle rules and the derived workflow stage.

Item status only moves along ``ALLOWED_TRANSITIONS``; the one exception is an
explicit retry (``reset_item``), which puts any item back to ``pending`` under
a new epoch. The workflow stage is never set directly: ``derive_stage`` is a
pure function of the aggregate and ``recompute_stage`` stores its result.
"""

import logging
from datetime import datetime
from typing import Optional, List, Dict, Any, Iterable

from ..core.exceptions import InvalidTransitionError
from .models import (
    Item,
    ItemKind,
    ItemStatus,
    StepStatus,
    Workflow,
    WorkflowStage,
    WorkflowStatus,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Item State Machine
# =============================================================================


ALLOWED_TRANSITIONS: Dict[ItemStatus, frozenset] = {
    # Uploading straight from pending is a manual image upload
    ItemStatus.PENDING: frozenset({
        ItemStatus.GENERATING, ItemStatus.SUBMITTING, ItemStatus.UPLOADING, ItemStatus.ERROR,
    }),
    ItemStatus.GENERATING: frozenset({
        ItemStatus.POLLING, ItemStatus.UPLOADING, ItemStatus.ERROR, ItemStatus.INTERRUPTED,
    }),
    ItemStatus.SUBMITTING: frozenset({
        ItemStatus.POLLING, ItemStatus.UPLOADING, ItemStatus.ERROR, ItemStatus.INTERRUPTED,
    }),
    ItemStatus.POLLING: frozenset({ItemStatus.UPLOADING, ItemStatus.ERROR, ItemStatus.INTERRUPTED}),
    ItemStatus.UPLOADING: frozenset({ItemStatus.DONE, ItemStatus.ERROR, ItemStatus.INTERRUPTED}),
    ItemStatus.INTERRUPTED: frozenset({ItemStatus.POLLING, ItemStatus.UPLOADING, ItemStatus.ERROR}),
    # Re-attaching to a task that was stopped or timed out while polling
    ItemStatus.ERROR: frozenset({ItemStatus.POLLING}),
    ItemStatus.DONE: frozenset(),
}

ENTRY_STATUS = {
    ItemKind.CHARACTER: ItemStatus.GENERATING,
    ItemKind.SCENE: ItemStatus.GENERATING,
    ItemKind.VIDEO: ItemStatus.SUBMITTING,
}


def can_transition(item: Item, target: ItemStatus) -> bool:
    """Whether ``item`` may move to ``target``."""
    if target not in ALLOWED_TRANSITIONS[item.status]:
        return False
    if target == ItemStatus.POLLING and not item.task_handle:
        return False
    # An async submission must be polled before its artifact can be uploaded
    if (
        target == ItemStatus.UPLOADING
        and item.status in (ItemStatus.GENERATING, ItemStatus.SUBMITTING)
        and item.task_handle
    ):
        return False
    return True


def transition(
    item: Item,
    target: ItemStatus,
    error: Optional[str] = None,
    error_code: Optional[str] = None,
) -> Item:
    """
    Move an item to ``target``.

    Args:
        item: Item to update in place
        target: New status
        error: Human readable message (for ``error``)
        error_code: Error class name (for ``error``)

    Returns:
        The same item

    Raises:
        InvalidTransitionError: If the edge is not part of the lifecycle
    """
    if not can_transition(item, target):
        raise InvalidTransitionError(
            f"{item.kind.value} {item.id}: cannot go from {item.status.value} to {target.value}",
            item_id=item.id,
            current=item.status.value,
            target=target.value,
        )

    previous = item.status
    item.status = target
    item.interrupted_from = previous if target == ItemStatus.INTERRUPTED else None

    if target in (ItemStatus.GENERATING, ItemStatus.SUBMITTING):
        item.started_at = datetime.now()
        item.completed_at = None
    elif target == ItemStatus.DONE:
        item.completed_at = datetime.now()
        item.error = None
        item.error_code = None
    elif target == ItemStatus.ERROR:
        item.completed_at = datetime.now()
        item.error = error or "Unknown error"
        item.error_code = error_code
    elif previous in (ItemStatus.ERROR, ItemStatus.INTERRUPTED):
        item.error = None
        item.error_code = None

    logger.debug(f"{item.kind.value} {item.id}: {previous.value} -> {target.value}")
    return item


def reset_item(item: Item, epoch: int, overrides: Optional[Dict[str, Any]] = None) -> Item:
    """
    Explicit retry: back to ``pending`` under a new epoch.

    Overrides (prompt, model, size, ...) replace the stored values. The
    previous artifact is kept until a new one replaces it.
    """
    for key, value in (overrides or {}).items():
        if value is None:
            continue
        if not hasattr(item, key):
            raise InvalidTransitionError(
                f"{item.kind.value} has no field {key!r}",
                item_id=item.id,
            )
        setattr(item, key, value)

    item.status = ItemStatus.PENDING
    item.epoch = epoch
    item.task_handle = None
    item.interrupted_from = None
    item.error = None
    item.error_code = None
    item.started_at = None
    item.completed_at = None
    return item


# =============================================================================
# Stage Derivation
# =============================================================================


def _all_terminal(items: Iterable[Item]) -> bool:
    return all(item.status.is_terminal for item in items)


def _started(items: Iterable[Item]) -> bool:
    return any(item.status != ItemStatus.PENDING for item in items)


def derive_stage(workflow: Workflow) -> WorkflowStage:
    """
    Compute the stage from the aggregate.

    Depends only on item collections and the script/merge steps, never on
    the stored ``stage``, so recomputation is idempotent.
    """
    if workflow.script_status == StepStatus.ERROR:
        return WorkflowStage.FAILED

    if not workflow.parsed:
        if workflow.script_status == StepStatus.RUNNING:
            return WorkflowStage.SCRIPT
        if workflow.script:
            return WorkflowStage.SCRIPT_DONE
        return WorkflowStage.IDLE

    if not _all_terminal(workflow.characters):
        return WorkflowStage.CHARACTERS if _started(workflow.characters) else WorkflowStage.PARSING_DONE

    if not _all_terminal(workflow.scenes):
        return WorkflowStage.SCENES if _started(workflow.scenes) else WorkflowStage.CHARACTERS_DONE

    if not workflow.videos:
        return WorkflowStage.SCENES_DONE

    if not _all_terminal(workflow.videos):
        return WorkflowStage.VIDEOS if _started(workflow.videos) else WorkflowStage.SCENES_DONE

    if workflow.merge_status == StepStatus.RUNNING:
        return WorkflowStage.MERGING
    if workflow.merge_status == StepStatus.DONE:
        return WorkflowStage.COMPLETED
    return WorkflowStage.VIDEOS_DONE


def recompute_stage(workflow: Workflow) -> WorkflowStage:
    """Store the derived stage on the workflow and return it."""
    workflow.stage = derive_stage(workflow)
    return workflow.stage


def has_item_errors(workflow: Workflow) -> bool:
    return any(
        item.status == ItemStatus.ERROR
        for kind in ItemKind
        for item in workflow.items(kind)
    )


def final_status(workflow: Workflow) -> WorkflowStatus:
    """
    Status of a run that has nothing left to do.

    ``completed`` needs the merge to have succeeded and no item in error;
    a run that ended with any item error is ``partial``.
    """
    stage = derive_stage(workflow)
    if stage == WorkflowStage.FAILED:
        return WorkflowStatus.FAILED
    if stage == WorkflowStage.COMPLETED and not has_item_errors(workflow):
        return WorkflowStatus.COMPLETED
    return WorkflowStatus.PARTIAL


# =============================================================================
# Progress
# =============================================================================


STAGE_PROGRESS = {
    WorkflowStage.IDLE: 0,
    WorkflowStage.SCRIPT: 10,
    WorkflowStage.SCRIPT_DONE: 20,
    WorkflowStage.PARSING_DONE: 30,
    WorkflowStage.CHARACTERS: 30,
    WorkflowStage.CHARACTERS_DONE: 50,
    WorkflowStage.SCENES: 50,
    WorkflowStage.SCENES_DONE: 70,
    WorkflowStage.VIDEOS: 70,
    WorkflowStage.VIDEOS_DONE: 95,
    WorkflowStage.MERGING: 95,
    WorkflowStage.COMPLETED: 100,
    WorkflowStage.FAILED: 0,
}


def _done(items: List[Item]) -> int:
    return sum(1 for item in items if item.status == ItemStatus.DONE)


def progress(workflow: Workflow) -> Dict[str, Any]:
    """Percent complete plus per-collection counts, for progress bars."""
    stage = derive_stage(workflow)
    percent = float(STAGE_PROGRESS[stage])

    # Within a collection stage, interpolate by finished items
    spans = {
        WorkflowStage.CHARACTERS: (workflow.characters, 20),
        WorkflowStage.SCENES: (workflow.scenes, 20),
        WorkflowStage.VIDEOS: (workflow.videos, 30),
    }
    if stage in spans:
        items, span = spans[stage]
        if items:
            percent += _done(items) / len(items) * span

    return {
        "stage": stage.value,
        "percent": round(percent),
        "characters_total": len(workflow.characters),
        "characters_done": _done(workflow.characters),
        "scenes_total": len(workflow.scenes),
        "scenes_done": _done(workflow.scenes),
        "videos_total": len(workflow.videos),
        "videos_done": _done(workflow.videos),
    }
