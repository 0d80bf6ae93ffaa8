"""
Configuration System
====================

Centralized, validated configuration management with typed dataclasses.

There is no process-wide configuration: a ``Config`` instance is built once
(usually with ``Config.load()``) and handed to the orchestrator and its
collaborators, so tests can inject deterministic values.
"""

import os
import re
import logging
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Optional, Dict, Any, Union
import yaml

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)


# =============================================================================
# Configuration Dataclasses
# =============================================================================


@dataclass
class ProviderConfig:
    """Generation provider connection settings."""

    name: str = "gptproto"
    base_url: str = "https://gptproto.com"
    api_key: str = ""
    timeout: float = 120.0

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """Validate configuration values."""
        if not self.base_url.startswith(("http://", "https://")):
            raise ConfigurationError(
                f"base_url must be an http(s) URL, got {self.base_url}",
                config_key="provider.base_url",
            )
        if self.timeout <= 0:
            raise ConfigurationError(
                f"timeout must be positive, got {self.timeout}",
                config_key="provider.timeout",
            )


@dataclass
class GenerationConfig:
    """Default models and output parameters for new items."""

    script_model: str = "gemini-3-pro-preview"
    image_model: str = "gemini"
    edit_model: str = "gemini-edit"
    image_size: str = "1K"
    aspect_ratio: str = "9:16"
    video_model: str = "sora-2-pro"
    video_duration: int = 10
    video_mode: str = "first-last-frame"

    VALID_ASPECT_RATIOS = {"9:16", "16:9", "1:1", "3:4", "4:3"}
    VALID_VIDEO_MODES = {"first-last-frame", "single-image"}

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """Validate configuration values."""
        if self.aspect_ratio not in self.VALID_ASPECT_RATIOS:
            raise ConfigurationError(
                f"Invalid aspect ratio: {self.aspect_ratio}",
                config_key="generation.aspect_ratio",
            )
        if self.video_mode not in self.VALID_VIDEO_MODES:
            raise ConfigurationError(
                f"Invalid video mode: {self.video_mode}",
                config_key="generation.video_mode",
            )
        if not 1 <= self.video_duration <= 60:
            raise ConfigurationError(
                f"video_duration must be 1-60 seconds, got {self.video_duration}",
                config_key="generation.video_duration",
            )
        if not self.image_size or ":" in self.image_size:
            # Sizes look like "1K" or "1024*1024"; a colon means an aspect ratio slipped in
            raise ConfigurationError(
                f"Invalid image size: {self.image_size!r}",
                config_key="generation.image_size",
            )


@dataclass
class ConcurrencyConfig:
    """Per job-class parallelism ceilings."""

    max_images: int = 3
    max_videos: int = 2

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """Validate configuration values."""
        for name, value in [("max_images", self.max_images), ("max_videos", self.max_videos)]:
            if value < 1:
                raise ConfigurationError(
                    f"{name} must be at least 1, got {value}",
                    config_key=f"concurrency.{name}",
                )


@dataclass
class PollingConfig:
    """Provider task polling settings."""

    interval: float = 5.0
    image_max_attempts: int = 60
    video_max_attempts: int = 120

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """Validate configuration values."""
        if self.interval < 0:
            raise ConfigurationError(
                f"interval must not be negative, got {self.interval}",
                config_key="polling.interval",
            )
        for name, value in [
            ("image_max_attempts", self.image_max_attempts),
            ("video_max_attempts", self.video_max_attempts),
        ]:
            if value < 1:
                raise ConfigurationError(
                    f"{name} must be at least 1, got {value}",
                    config_key=f"polling.{name}",
                )


@dataclass
class RetryConfig:
    """Submission retry settings (exponential backoff)."""

    max_attempts: int = 3
    base_delay: float = 2.0

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """Validate configuration values."""
        if not 1 <= self.max_attempts <= 10:
            raise ConfigurationError(
                f"max_attempts must be 1-10, got {self.max_attempts}",
                config_key="retry.max_attempts",
            )
        if self.base_delay < 0:
            raise ConfigurationError(
                f"base_delay must not be negative, got {self.base_delay}",
                config_key="retry.base_delay",
            )


@dataclass
class StorageConfig:
    """Durable artifact and workflow storage settings."""

    base_path: str = "./output"
    public_base_url: Optional[str] = None
    backend: str = "json"
    workflows_path: str = "./output/workflows"

    VALID_BACKENDS = {"json", "sqlite", "memory"}

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """Validate configuration values."""
        if self.backend not in self.VALID_BACKENDS:
            raise ConfigurationError(
                f"Invalid storage backend: {self.backend}",
                config_key="storage.backend",
            )


@dataclass
class MergeConfig:
    """ffmpeg merge settings."""

    ffmpeg_path: str = "ffmpeg"
    download_timeout: float = 120.0
    concat_timeout: float = 300.0
    reencode_timeout: float = 600.0


@dataclass
class WorkflowConfig:
    """Pipeline behaviour."""

    auto_advance: bool = True
    language: str = "en"


# =============================================================================
# Main Configuration Class
# =============================================================================


@dataclass
class Config:
    """
    Main configuration container with validation and loading.

    Provides a unified interface to all configuration settings with:
    - Type-safe access to configuration values
    - Validation on load and modification
    - Environment variable interpolation
    - Sensible defaults for all values
    """

    provider: ProviderConfig = field(default_factory=ProviderConfig)
    generation: GenerationConfig = field(default_factory=GenerationConfig)
    concurrency: ConcurrencyConfig = field(default_factory=ConcurrencyConfig)
    polling: PollingConfig = field(default_factory=PollingConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    merge: MergeConfig = field(default_factory=MergeConfig)
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)

    SECTIONS = ("provider", "generation", "concurrency", "polling", "retry", "storage", "merge", "workflow")

    @classmethod
    def load(cls, path: Optional[Union[str, Path]] = None) -> "Config":
        """
        Load configuration from file with environment variable interpolation.

        Args:
            path: Path to YAML config file

        Returns:
            Validated Config instance
        """
        search_paths = [
            Path("./config.yaml"),
            Path("./config/config.yaml"),
            Path.home() / ".reelflow" / "config.yaml",
        ]

        if path:
            if not Path(path).exists():
                raise ConfigurationError(f"Config file not found: {path}", config_key=str(path))
            search_paths.insert(0, Path(path))

        config_data = {}

        for search_path in search_paths:
            if search_path.exists():
                logger.info(f"Loading config from: {search_path}")
                try:
                    with open(search_path, "r") as f:
                        config_data = yaml.safe_load(f) or {}
                    break
                except yaml.YAMLError as e:
                    raise ConfigurationError(
                        f"Invalid YAML in config file: {e}",
                        config_key=str(search_path),
                    )
        else:
            logger.info("No config file found, using defaults")

        config_data = cls._interpolate_env_vars(config_data)
        config_data.setdefault("provider", {})
        if not config_data["provider"].get("api_key"):
            config_data["provider"]["api_key"] = os.environ.get("GPTPROTO_API_KEY", "")

        return cls.from_dict(config_data)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Config":
        """Create Config from dictionary with validation."""
        try:
            return cls(
                provider=ProviderConfig(**data.get("provider", {})),
                generation=GenerationConfig(**data.get("generation", {})),
                concurrency=ConcurrencyConfig(**data.get("concurrency", {})),
                polling=PollingConfig(**data.get("polling", {})),
                retry=RetryConfig(**data.get("retry", {})),
                storage=StorageConfig(**data.get("storage", {})),
                merge=MergeConfig(**data.get("merge", {})),
                workflow=WorkflowConfig(**data.get("workflow", {})),
            )
        except TypeError as e:
            raise ConfigurationError(f"Invalid configuration: {e}")

    @staticmethod
    def _interpolate_env_vars(data: Any) -> Any:
        """Recursively interpolate ${VAR} patterns with environment variables."""
        if isinstance(data, str):
            # Handle ${VAR} and ${VAR:-default} patterns
            pattern = r"\$\{([^}:]+)(?::-([^}]*))?\}"

            def replace(match):
                var_name = match.group(1)
                default = match.group(2) or ""
                return os.environ.get(var_name, default)

            return re.sub(pattern, replace, data)
        elif isinstance(data, dict):
            return {k: Config._interpolate_env_vars(v) for k, v in data.items()}
        elif isinstance(data, list):
            return [Config._interpolate_env_vars(item) for item in data]
        return data

    def to_dict(self, include_secrets: bool = False) -> Dict[str, Any]:
        """Convert config to dictionary."""
        result = {}
        for section in self.SECTIONS:
            result[section] = asdict(getattr(self, section))
        if not include_secrets and result["provider"]["api_key"]:
            result["provider"]["api_key"] = "***"
        return result

    def validate_for_provider(self) -> None:
        """
        Check the settings a remote provider depends on.

        The provider fetches character and scene images by URL, so stored
        objects need a public URL rather than a local file path.

        Raises:
            ConfigurationError: If ``storage.public_base_url`` is missing
        """
        if not self.storage.public_base_url:
            raise ConfigurationError(
                "storage.public_base_url is required: the provider must be able to fetch stored images",
                config_key="storage.public_base_url",
            )

    def job_class_limits(self) -> Dict[str, int]:
        """Concurrency ceilings keyed by dispatcher job class."""
        return {
            "image": self.concurrency.max_images,
            "video": self.concurrency.max_videos,
        }
