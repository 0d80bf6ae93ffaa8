"""
Base Generation Client
======================

Contract shared by every generation provider: one call to ``generate`` yields
either a finished artifact URL or an opaque task handle, and ``get_status``
reports the state of a task handle in normalized form.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, List, Dict, Any
import httpx

from ..core.exceptions import ValidationError
from ..core.security import clean_api_key

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================


DEFAULT_TIMEOUT = 120.0


# =============================================================================
# Data Classes
# =============================================================================


class TaskStatus(Enum):
    """Normalized status of a provider task."""

    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    UNAVAILABLE = "unavailable"

    @classmethod
    def from_provider_status(cls, status: Optional[str]) -> "TaskStatus":
        """
        Normalize provider-specific status strings to TaskStatus.

        ``no_resource`` is kept apart from failures: the provider declined
        the task for capacity reasons, not because of its content.
        """
        status_lower = (status or "").lower().strip()

        if status_lower in ("completed", "succeeded", "success", "done", "finished"):
            return cls.SUCCEEDED

        if status_lower in ("failed", "error", "failure", "errored", "cancelled", "canceled"):
            return cls.FAILED

        if status_lower in ("no_resource", "unavailable"):
            return cls.UNAVAILABLE

        return cls.PENDING

    @property
    def is_terminal(self) -> bool:
        return self is not TaskStatus.PENDING


class GenerationKind(Enum):
    """What a generation request produces."""

    TEXT_TO_IMAGE = "text_to_image"
    IMAGE_EDIT = "image_edit"
    VIDEO = "video"


@dataclass
class GenerationRequest:
    """Request parameters for one generation call."""

    kind: GenerationKind
    prompt: str
    model: Optional[str] = None

    # Image settings
    reference_images: List[str] = field(default_factory=list)
    size: Optional[str] = None
    aspect_ratio: Optional[str] = None

    # Video settings
    first_frame: Optional[str] = None
    last_frame: Optional[str] = None
    duration: Optional[int] = None

    extra_params: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.prompt or not self.prompt.strip():
            raise ValidationError("Prompt is required", field="prompt")
        if self.kind == GenerationKind.VIDEO and not self.first_frame:
            raise ValidationError(
                "Video generation requires a first frame",
                field="first_frame",
                constraint="required for video",
            )


@dataclass
class GenerationResult:
    """Outcome of a submission: a finished artifact or a task handle to poll."""

    artifact_url: Optional[str] = None
    task_handle: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    def __post_init__(self):
        if bool(self.artifact_url) == bool(self.task_handle):
            raise ValidationError(
                "Generation result must carry exactly one of artifact_url or task_handle",
                field="artifact_url",
            )

    @property
    def is_async(self) -> bool:
        return self.task_handle is not None


@dataclass
class StatusResult:
    """Result of one status query."""

    status: TaskStatus
    artifact_url: Optional[str] = None
    error: Optional[str] = None


# =============================================================================
# Base Client Class
# =============================================================================


class BaseGenerationClient(ABC):
    """
    Abstract base class for generation providers.

    Features:
    - Lazily created, lock-guarded ``httpx.AsyncClient``
    - Status normalization through ``TaskStatus``
    - Async context manager protocol
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the client.

        Args:
            api_key: Provider API key
            base_url: Base URL for the API
            timeout: Request timeout in seconds
            transport: Optional httpx transport (tests pass ``httpx.MockTransport``)
        """
        self.api_key = clean_api_key(api_key)
        self.base_url = (base_url or self._get_default_base_url()).rstrip("/")
        self.timeout = timeout
        self._transport = transport

        self._client: Optional[httpx.AsyncClient] = None
        self._client_lock = asyncio.Lock()

        if not self.api_key:
            logger.warning(f"No API key configured for {self.provider_name}")

    # -------------------------------------------------------------------------
    # Abstract Methods (must be implemented by subclasses)
    # -------------------------------------------------------------------------

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the provider name."""
        pass

    @abstractmethod
    def _get_default_base_url(self) -> str:
        """Return the default base URL for this provider."""
        pass

    @abstractmethod
    async def generate(self, request: GenerationRequest) -> GenerationResult:
        """
        Submit one generation.

        Raises:
            ProviderError: network or HTTP failures (retryable)
            GenerationError: the provider rejected the content outright
        """
        pass

    @abstractmethod
    async def get_status(self, task_handle: str) -> StatusResult:
        """Query the status of a previously submitted task."""
        pass

    @abstractmethod
    async def generate_script(
        self,
        prompt: str,
        source_video_url: Optional[str] = None,
        model: Optional[str] = None,
    ) -> str:
        """Generate a shot script, optionally grounded on a source video."""
        pass

    # -------------------------------------------------------------------------
    # Provider Capabilities
    # -------------------------------------------------------------------------

    def supports_last_frame(self, model: Optional[str]) -> bool:
        """Whether the video model accepts a last-frame image."""
        return False

    # -------------------------------------------------------------------------
    # Helper Methods
    # -------------------------------------------------------------------------

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        async with self._client_lock:
            if self._client is None:
                self._client = httpx.AsyncClient(
                    timeout=httpx.Timeout(self.timeout),
                    headers=self._get_headers(),
                    transport=self._transport,
                )
            return self._client

    def _get_headers(self) -> Dict[str, str]:
        """Get default headers for requests."""
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    # -------------------------------------------------------------------------
    # Context Manager Protocol
    # -------------------------------------------------------------------------

    async def close(self) -> None:
        """Close the HTTP client."""
        async with self._client_lock:
            if self._client:
                await self._client.aclose()
                self._client = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
