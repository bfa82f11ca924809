"""Offline attachment queue and its remote client."""

from .client import AttachmentClient
from .queue import DEFAULT_CACHE_LIMIT, AttachmentQueue, DrainResult

__all__ = ["AttachmentClient", "AttachmentQueue", "DrainResult", "DEFAULT_CACHE_LIMIT"]
