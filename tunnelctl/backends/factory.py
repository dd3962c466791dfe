import os

from .base import WireGuardBackend
from .mock import MockBackend


def create_backend(use_mock: bool = False, library_path=None) -> WireGuardBackend:
    """Create the packet engine binding. TUNNELCTL_MOCK_BACKEND=true forces the mock."""
    if use_mock or os.getenv("TUNNELCTL_MOCK_BACKEND", "false").lower() == "true":
        return MockBackend()

    from .libwg import LibWireGuardBackend
    return LibWireGuardBackend(library_path)
