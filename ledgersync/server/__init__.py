"""Reference implementation of the structured backend and attachment endpoint."""

from .app import create_app
from .storage import ServerStore

__all__ = ["ServerStore", "create_app"]
