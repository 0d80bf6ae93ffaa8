"""
Reelflow
========

Background workflow orchestrator for AI short-form video: script, character
images, scene images, scene clips and a merged final video.

Features:
- Item and stage state machines with derived workflow stages
- Bounded-concurrency dispatch per job class (images vs. videos)
- Task polling, submission retry and stop signals
- Checkpointing to JSON files or SQLite with resume after interruption
- Epoch-guarded retries, batch regeneration and add/delete/reorder

Quick Start:
    from reelflow import Config, WorkflowInput, build_orchestrator

    config = Config.load()
    orchestrator = build_orchestrator(config)
    workflow = await orchestrator.start(WorkflowInput(idea="A paper boat crosses a city"))
    print(workflow.merged_url)

Resume after a restart:
    orchestrator = build_orchestrator(config)
    workflow = await orchestrator.resume()
"""

__version__ = "0.1.0"

from typing import Optional

# Core Utilities
from .core.config import Config
from .core.exceptions import (
    ReelflowError,
    ConfigurationError,
    ProviderError,
    GenerationError,
    ProviderBusyError,
    PollTimeoutError,
    StoppedError,
    ScriptParseError,
    ValidationError,
    MergeError,
    StorageError,
)
from .core.security import hash_api_key

# Workflow
from .workflow import (
    Workflow,
    ItemKind,
    ItemStatus,
    WorkflowStage,
    WorkflowStatus,
    WorkflowOrchestrator,
    WorkflowInput,
    ItemOverrides,
    WorkflowSnapshot,
    FFmpegMerger,
)

# Collaborators
from .api import create_client_from_config, get_client
from .persistence import create_store
from .utils.storage import LocalObjectStore


def build_orchestrator(config: Config, owner_key: Optional[str] = None) -> WorkflowOrchestrator:
    """
    Wire an orchestrator from configuration.

    Args:
        config: Loaded configuration
        owner_key: Owner of the workflows; defaults to the hash of the API key

    Returns:
        WorkflowOrchestrator using the configured provider, stores and merger

    Raises:
        ConfigurationError: If stored images would not be reachable by the provider
    """
    config.validate_for_provider()
    object_store = LocalObjectStore(config.storage.base_path, config.storage.public_base_url)
    return WorkflowOrchestrator(
        client=create_client_from_config(config),
        object_store=object_store,
        store=create_store(config),
        merger=FFmpegMerger(object_store, config.merge),
        config=config,
        owner_key=owner_key or hash_api_key(config.provider.api_key),
    )


__all__ = [
    "__version__",
    "build_orchestrator",
    # Core
    "Config",
    "hash_api_key",
    # Exceptions
    "ReelflowError",
    "ConfigurationError",
    "ProviderError",
    "GenerationError",
    "ProviderBusyError",
    "PollTimeoutError",
    "StoppedError",
    "ScriptParseError",
    "ValidationError",
    "MergeError",
    "StorageError",
    # Workflow
    "Workflow",
    "ItemKind",
    "ItemStatus",
    "WorkflowStage",
    "WorkflowStatus",
    "WorkflowOrchestrator",
    "WorkflowInput",
    "ItemOverrides",
    "WorkflowSnapshot",
    # Collaborators
    "create_client_from_config",
    "get_client",
    "create_store",
]
