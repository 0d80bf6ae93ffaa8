"""
Utilities
=========

Object storage and file helpers.
"""

from .storage import (
    ObjectStore,
    LocalObjectStore,
    atomic_write_bytes,
    ensure_dir,
    object_key,
)

__all__ = [
    "ObjectStore",
    "LocalObjectStore",
    "atomic_write_bytes",
    "ensure_dir",
    "object_key",
]
