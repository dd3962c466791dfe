import enum
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

logger = logging.getLogger(__name__)


class PathStatus(enum.Enum):
    SATISFIED = "satisfied"
    UNSATISFIED = "unsatisfied"
    REQUIRES_CONNECTION = "requiresConnection"


@dataclass(frozen=True)
class Path:
    """Snapshot of the host's network reachability."""

    status: PathStatus
    interfaces: Tuple[str, ...] = ()

    @property
    def is_viable(self) -> bool:
        return self.status in (PathStatus.SATISFIED, PathStatus.REQUIRES_CONNECTION)


PathHandler = Callable[[Path], None]


class PathMonitor(ABC):
    @abstractmethod
    def start(self, handler: PathHandler) -> None:
        pass

    @abstractmethod
    def cancel(self) -> None:
        pass


class ManualPathMonitor(PathMonitor):
    """Monitor fed by its owner, e.g. a host integration or a test."""

    def __init__(self):
        self._handler: Optional[PathHandler] = None
        self.current_path: Optional[Path] = None

    @property
    def is_running(self) -> bool:
        return self._handler is not None

    def start(self, handler: PathHandler) -> None:
        self._handler = handler

    def cancel(self) -> None:
        self._handler = None

    def update(self, path: Path) -> None:
        self.current_path = path
        if self._handler is not None:
            self._handler(path)


class PollingPathMonitor(PathMonitor):
    """Probes reachability on a background thread and reports every change."""

    def __init__(self, probe: Callable[[], Path], interval: float = 5.0):
        self._probe = probe
        self._interval = interval
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._last: Optional[Path] = None

    def start(self, handler: PathHandler) -> None:
        self._stop.clear()

        def run():
            while not self._stop.is_set():
                try:
                    path = self._probe()
                except OSError as e:
                    logger.debug("Path probe failed: %s", e)
                    path = Path(PathStatus.UNSATISFIED)
                if path != self._last:
                    self._last = path
                    handler(path)
                self._stop.wait(self._interval)

        self._thread = threading.Thread(target=run, name="path-monitor", daemon=True)
        self._thread.start()

    def cancel(self) -> None:
        self._stop.set()
        self._thread = None
