"""Packet engine bindings."""

from .base import WireGuardBackend
from .factory import create_backend
from .mock import MockBackend

__all__ = ["WireGuardBackend", "MockBackend", "create_backend"]
