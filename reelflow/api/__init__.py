"""
API Integration Layer
=====================

Generation clients for scripts, images and videos.

Supported Providers:
- GPTProto (Gemini, Seedream, Wan images; Sora 2 Pro, Seedance, Hailuo, Wan videos)

Usage:
    from reelflow.api import get_client, GenerationRequest, GenerationKind

    client = get_client("gptproto", api_key="...")
    result = await client.generate(
        GenerationRequest(kind=GenerationKind.TEXT_TO_IMAGE, prompt="A lighthouse at dusk")
    )
    if result.task_handle:
        status = await client.get_status(result.task_handle)
"""

from .base import (
    BaseGenerationClient,
    GenerationKind,
    GenerationRequest,
    GenerationResult,
    StatusResult,
    TaskStatus,
)
from .factory import get_client, list_clients, create_client_from_config, register_client

__all__ = [
    "BaseGenerationClient",
    "GenerationKind",
    "GenerationRequest",
    "GenerationResult",
    "StatusResult",
    "TaskStatus",
    "get_client",
    "list_clients",
    "create_client_from_config",
    "register_client",
]
