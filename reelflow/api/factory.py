"""
Client Factory
==============

Factory for creating generation client instances.
"""

import logging
from typing import Optional, List, Dict, Type, TYPE_CHECKING

from .base import BaseGenerationClient

if TYPE_CHECKING:
    from ..core.config import Config

logger = logging.getLogger(__name__)

# Registry of available clients
_CLIENTS: Dict[str, Type[BaseGenerationClient]] = {}


def register_client(name: str):
    """Decorator to register a client class."""
    def decorator(cls: Type[BaseGenerationClient]):
        _CLIENTS[name.lower()] = cls
        return cls
    return decorator


def get_client(
    name: str,
    api_key: Optional[str] = None,
    **kwargs,
) -> BaseGenerationClient:
    """
    Get a generation client instance.

    Args:
        name: Client name (e.g., 'gptproto')
        api_key: Provider API key
        **kwargs: Additional client-specific arguments

    Returns:
        Configured client instance

    Raises:
        ValueError: If client name is not recognized
    """
    name_lower = name.lower()

    if name_lower not in _CLIENTS:
        if name_lower == "gptproto":
            from . import gptproto  # noqa: F401  (registers itself)
        else:
            raise ValueError(f"Unknown client: {name}")

    client_class = _CLIENTS.get(name_lower)
    if client_class is None:
        raise ValueError(f"Client '{name}' not registered")

    return client_class(api_key=api_key, **kwargs)


def list_clients() -> List[str]:
    """
    List all available client names.

    Returns:
        List of client names
    """
    from . import gptproto  # noqa: F401

    return list(_CLIENTS.keys())


def create_client_from_config(config: "Config", **kwargs) -> BaseGenerationClient:
    """Build the configured client from a ``Config``."""
    provider = config.provider
    logger.info(f"Creating generation client: {provider.name}")
    return get_client(
        provider.name,
        api_key=provider.api_key,
        base_url=provider.base_url,
        timeout=provider.timeout,
        **kwargs,
    )
