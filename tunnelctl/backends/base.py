from abc import ABC, abstractmethod
from typing import Callable, Optional

# (level, message) where level is 0 debug, 1 info, 2 error
BackendLogger = Callable[[int, str], None]


class WireGuardBackend(ABC):
    """The packet engine, driven only through key=value configuration text."""

    @abstractmethod
    def turn_on(self, settings: str, tun_fd: int) -> int:
        """Start a tunnel on the given device. Returns a handle, or a negative error code."""
        pass

    @abstractmethod
    def turn_off(self, handle: int) -> None:
        pass

    @abstractmethod
    def set_config(self, handle: int, settings: str) -> int:
        """Apply settings to a running tunnel. Returns 0 on success."""
        pass

    @abstractmethod
    def get_config(self, handle: int) -> Optional[str]:
        pass

    @abstractmethod
    def bump_sockets(self, handle: int) -> None:
        """Rebind sockets after the default route changed."""
        pass

    @abstractmethod
    def disable_some_roaming_for_broken_mobile_semantics(self, handle: int) -> None:
        pass

    @abstractmethod
    def set_logger(self, logger: Optional[BackendLogger]) -> None:
        pass

    @abstractmethod
    def version(self) -> str:
        pass
