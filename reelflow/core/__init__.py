"""
Core Module
===========

Configuration, exceptions and security helpers shared by the orchestrator.
"""

from .config import (
    Config,
    ProviderConfig,
    GenerationConfig,
    ConcurrencyConfig,
    PollingConfig,
    RetryConfig,
    StorageConfig,
    MergeConfig,
    WorkflowConfig,
)
from .exceptions import (
    ReelflowError,
    ConfigurationError,
    ProviderError,
    GenerationError,
    ProviderBusyError,
    PollTimeoutError,
    StoppedError,
    ScriptParseError,
    ValidationError,
    InvalidTransitionError,
    MergeError,
    StorageError,
    ResourceNotFoundError,
    ItemNotFoundError,
    WorkflowNotFoundError,
)
from .security import clean_api_key, hash_api_key, sanitize_filename, redact_api_key, validate_url

__all__ = [
    # Configuration
    "Config",
    "ProviderConfig",
    "GenerationConfig",
    "ConcurrencyConfig",
    "PollingConfig",
    "RetryConfig",
    "StorageConfig",
    "MergeConfig",
    "WorkflowConfig",
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
    "InvalidTransitionError",
    "MergeError",
    "StorageError",
    "ResourceNotFoundError",
    "ItemNotFoundError",
    "WorkflowNotFoundError",
    # Security
    "clean_api_key",
    "hash_api_key",
    "sanitize_filename",
    "redact_api_key",
    "validate_url",
]
