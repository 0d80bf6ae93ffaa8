"""
Custom Exceptions
=================

Unified exception hierarchy for consistent error handling across the orchestrator.

The classes map onto the error taxonomy the workflow surfaces to its callers:
transient submission failures (``ProviderError``), provider-reported content
failures (``GenerationError``), provider busy (``ProviderBusyError``), unknown
outcome after the polling budget ran out (``PollTimeoutError``), cancellation
(``StoppedError``) and structural errors (``ScriptParseError``,
``ValidationError``).
"""

from typing import Optional, Dict, Any


class ReelflowError(Exception):
    """Base exception for all reelflow errors."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = False,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        self.recoverable = recoverable

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for serialization."""
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
            "recoverable": self.recoverable,
        }


class ConfigurationError(ReelflowError):
    """Configuration-related errors."""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        expected_type: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if config_key:
            details["config_key"] = config_key
        if expected_type:
            details["expected_type"] = expected_type
        super().__init__(message, details=details, **kwargs)


class ProviderError(ReelflowError):
    """Provider/API errors raised while submitting work (network, HTTP status)."""

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        status_code: Optional[int] = None,
        response_body: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if provider:
            details["provider"] = provider
        if status_code:
            details["status_code"] = status_code
        if response_body:
            # Truncate large responses
            details["response_body"] = response_body[:500] if len(response_body) > 500 else response_body

        self.status_code = status_code
        recoverable = kwargs.pop("recoverable", status_code in (429, 500, 502, 503, 504) if status_code else False)
        super().__init__(message, recoverable=recoverable, details=details, **kwargs)


class GenerationError(ReelflowError):
    """The provider reported that a generation task failed."""

    def __init__(
        self,
        message: str,
        task_handle: Optional[str] = None,
        prompt: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if task_handle:
            details["task_handle"] = task_handle
        if prompt:
            # Truncate long prompts
            details["prompt"] = prompt[:200] if len(prompt) > 200 else prompt
        super().__init__(message, details=details, **kwargs)


class ProviderBusyError(ReelflowError):
    """The provider had no resource available for the task (``no_resource``)."""

    DEFAULT_MESSAGE = "No resource available (server busy, please try again later)"

    def __init__(self, message: str = DEFAULT_MESSAGE, task_handle: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        if task_handle:
            details["task_handle"] = task_handle
        super().__init__(message, recoverable=True, details=details, **kwargs)


class PollTimeoutError(ReelflowError):
    """Polling budget exhausted; the provider task may still finish later."""

    DEFAULT_MESSAGE = "Polling timeout (max attempts reached)"

    def __init__(
        self,
        message: str = DEFAULT_MESSAGE,
        task_handle: Optional[str] = None,
        attempts: Optional[int] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if task_handle:
            details["task_handle"] = task_handle
        if attempts:
            details["attempts"] = attempts
        super().__init__(message, recoverable=True, details=details, **kwargs)


class StoppedError(ReelflowError):
    """Work abandoned because the workflow was stopped by the user."""

    DEFAULT_MESSAGE = "Polling stopped by user"

    def __init__(self, message: str = DEFAULT_MESSAGE, **kwargs):
        super().__init__(message, recoverable=True, **kwargs)


class ScriptParseError(ReelflowError):
    """The generated script could not be turned into characters and scenes."""

    def __init__(self, message: str, excerpt: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        if excerpt:
            details["excerpt"] = excerpt[:200]
        super().__init__(message, details=details, **kwargs)


class ValidationError(ReelflowError):
    """Input validation errors."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        constraint: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)[:100]
        if constraint:
            details["constraint"] = constraint
        super().__init__(message, details=details, **kwargs)


class InvalidTransitionError(ReelflowError):
    """An item status change that the lifecycle does not allow."""

    def __init__(
        self,
        message: str,
        item_id: Optional[str] = None,
        current: Optional[str] = None,
        target: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if item_id:
            details["item_id"] = item_id
        if current:
            details["from"] = current
        if target:
            details["to"] = target
        super().__init__(message, details=details, **kwargs)


class MergeError(ReelflowError):
    """Merging the finished clips failed with every strategy."""

    def __init__(self, message: str, strategy: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        if strategy:
            details["strategy"] = strategy
        super().__init__(message, recoverable=True, details=details, **kwargs)


class StorageError(ReelflowError):
    """Durable object store or workflow store failures."""

    def __init__(self, message: str, key: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        if key:
            details["key"] = key
        recoverable = kwargs.pop("recoverable", True)
        super().__init__(message, recoverable=recoverable, details=details, **kwargs)


class ResourceNotFoundError(ReelflowError):
    """Resource not found errors."""

    def __init__(
        self,
        message: str,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if resource_type:
            details["resource_type"] = resource_type
        if resource_id:
            details["resource_id"] = resource_id
        super().__init__(message, recoverable=False, details=details, **kwargs)


class ItemNotFoundError(ResourceNotFoundError):
    """A command referenced an item id that is not in the workflow."""

    def __init__(self, kind: str, item_id: str, **kwargs):
        super().__init__(f"No {kind} with id {item_id!r}", resource_type=kind, resource_id=item_id, **kwargs)


class WorkflowNotFoundError(ResourceNotFoundError):
    """No stored workflow matched the requested id or owner."""

    def __init__(self, message: str, workflow_id: Optional[str] = None, **kwargs):
        super().__init__(message, resource_type="workflow", resource_id=workflow_id, **kwargs)
