"""
Workflow Orchestration
======================

The workflow aggregate and everything that drives it.

Components:
- WorkflowOrchestrator: command surface, pipeline and checkpoints
- Dispatcher: bounded-concurrency job runner
- Poller / with_retry: task polling and submission retry
- FFmpegMerger: joins finished clips into the final video
"""

from .models import (
    Workflow,
    Character,
    Scene,
    Video,
    ChatMessage,
    WorkflowSettings,
    ItemKind,
    ItemStatus,
    WorkflowStage,
    WorkflowStatus,
    StepStatus,
)
from .state import can_transition, transition, reset_item, derive_stage, recompute_stage, progress
from .retry import with_retry, is_retryable, backoff_delay
from .poller import Poller
from .dispatcher import Dispatcher, DispatchReport, Job
from .script import parse_script, build_script_prompt, ParsedScript
from .merger import Merger, FFmpegMerger, MergeResult
from .orchestrator import (
    WorkflowOrchestrator,
    WorkflowInput,
    ItemOverrides,
    WorkflowSnapshot,
)

__all__ = [
    "Workflow",
    "Character",
    "Scene",
    "Video",
    "ChatMessage",
    "WorkflowSettings",
    "ItemKind",
    "ItemStatus",
    "WorkflowStage",
    "WorkflowStatus",
    "StepStatus",
    "can_transition",
    "transition",
    "reset_item",
    "derive_stage",
    "recompute_stage",
    "progress",
    "with_retry",
    "is_retryable",
    "backoff_delay",
    "Poller",
    "Dispatcher",
    "DispatchReport",
    "Job",
    "parse_script",
    "build_script_prompt",
    "ParsedScript",
    "Merger",
    "FFmpegMerger",
    "MergeResult",
    "WorkflowOrchestrator",
    "WorkflowInput",
    "ItemOverrides",
    "WorkflowSnapshot",
]
