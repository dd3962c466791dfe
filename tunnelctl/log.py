import enum
import logging
from typing import Optional

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s %(message)s"


class WireGuardLogLevel(enum.IntEnum):
    """Levels used by the backend's logger callback."""

    DEBUG = 0
    INFO = 1
    ERROR = 2

    @property
    def logging_level(self) -> int:
        return {
            WireGuardLogLevel.DEBUG: logging.DEBUG,
            WireGuardLogLevel.INFO: logging.INFO,
            WireGuardLogLevel.ERROR: logging.ERROR,
        }[self]

    @classmethod
    def from_backend(cls, level: int) -> "WireGuardLogLevel":
        try:
            return cls(level)
        except ValueError:
            return cls.DEBUG


def setup_logging(level="INFO", log_file: Optional[str] = None):
    handlers = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers, force=True)
