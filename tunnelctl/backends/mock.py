from typing import Dict, List, Optional

from .base import BackendLogger, WireGuardBackend


class MockBackend(WireGuardBackend):
    """In-memory backend for tests and dry runs. Records every call."""

    def __init__(self, turn_on_result: Optional[int] = None):
        # a negative turn_on_result makes every turn_on fail with that code
        self.turn_on_result = turn_on_result
        self.configs: Dict[int, str] = {}
        self.calls: List[tuple] = []
        self.logger: Optional[BackendLogger] = None
        self._next_handle = 0

    def turn_on(self, settings: str, tun_fd: int) -> int:
        self.calls.append(("turn_on", settings, tun_fd))
        if self.turn_on_result is not None and self.turn_on_result < 0:
            return self.turn_on_result
        handle = self._next_handle
        self._next_handle += 1
        self.configs[handle] = settings
        self._log(1, f"Device started (handle {handle})")
        return handle

    def turn_off(self, handle: int) -> None:
        self.calls.append(("turn_off", handle))
        self.configs.pop(handle, None)

    def set_config(self, handle: int, settings: str) -> int:
        self.calls.append(("set_config", handle, settings))
        if handle not in self.configs:
            return -1
        # a full config replaces the dump, endpoint-only updates do not
        if settings.startswith("private_key="):
            self.configs[handle] = settings
        return 0

    def get_config(self, handle: int) -> Optional[str]:
        self.calls.append(("get_config", handle))
        return self.configs.get(handle)

    def bump_sockets(self, handle: int) -> None:
        self.calls.append(("bump_sockets", handle))

    def disable_some_roaming_for_broken_mobile_semantics(self, handle: int) -> None:
        self.calls.append(("disable_roaming", handle))

    def set_logger(self, logger: Optional[BackendLogger]) -> None:
        self.logger = logger

    def version(self) -> str:
        return "mock"

    def _log(self, level: int, message: str):
        if self.logger:
            self.logger(level, message)

    def call_names(self) -> List[str]:
        return [call[0] for call in self.calls]
