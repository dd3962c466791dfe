"""
Drives one running tunnel: resolves endpoints, applies network settings to
the host, hands the wire configuration to the backend and follows network
path changes. Every operation runs on a private single-worker queue so at
most one state transition is ever in flight.
"""
import logging
import threading
from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, List, Optional

from . import dns_resolver
from .backends.base import WireGuardBackend
from .errors import (
    CannotLocateTunnelFileDescriptorError,
    DNSResolutionError,
    DNSResolutionFailureError,
    InvalidStateError,
    SetNetworkSettingsError,
    StartWireGuardBackendError,
)
from .log import WireGuardLogLevel
from .model import Endpoint, TunnelConfiguration
from .path_monitor import ManualPathMonitor, Path, PathMonitor
from .platforms import DESKTOP, PlatformProfile
from .settings import NetworkSettings, SettingsGenerator

logger = logging.getLogger(__name__)

# The host sometimes never acknowledges new network settings
SET_NETWORK_SETTINGS_TIMEOUT = 5.0

LogHandler = Callable[[WireGuardLogLevel, str], None]


class TunnelHost(ABC):
    """The process that owns the tunnel device, as seen by the adapter."""

    reasserting: bool = False
    # called with the error after the tunnel is cancelled from inside the adapter
    on_cancel: Optional[Callable[[Exception], None]] = None

    @property
    @abstractmethod
    def tunnel_file_descriptor(self) -> Optional[int]:
        pass

    @abstractmethod
    def set_tunnel_network_settings(self, settings: NetworkSettings,
                                    completion: Callable[[Optional[Exception]], None]) -> None:
        """Apply settings and call ``completion(error_or_None)`` when done, from any thread."""
        pass

    def cancel_tunnel_with_error(self, error: Exception) -> None:
        logger.error("Tunnel cancelled: %s", error)
        if self.on_cancel is not None:
            self.on_cancel(error)

    @property
    def interface_name(self) -> Optional[str]:
        return None

    def close(self) -> None:
        pass


@dataclass
class StoppedState:
    pass


@dataclass
class StartedState:
    handle: int
    settings_generator: SettingsGenerator


@dataclass
class TemporaryShutdownState:
    settings_generator: SettingsGenerator


def _default_log_handler(level: WireGuardLogLevel, message: str):
    logger.log(level.logging_level, message)


class TunnelAdapter:
    def __init__(self, host: TunnelHost, backend: WireGuardBackend,
                 platform: PlatformProfile = DESKTOP,
                 path_monitor_factory: Callable[[], PathMonitor] = ManualPathMonitor,
                 log_handler: Optional[LogHandler] = None,
                 resolve_batch=dns_resolver.resolve_batch,
                 settings_timeout: float = SET_NETWORK_SETTINGS_TIMEOUT):
        self.host = host
        self.backend = backend
        self.platform = platform
        self._path_monitor_factory = path_monitor_factory
        self._log_handler = log_handler or _default_log_handler
        self._resolve_batch = resolve_batch
        self._settings_timeout = settings_timeout

        self._queue = ThreadPoolExecutor(max_workers=1, thread_name_prefix="tunnel-adapter")
        self._state = StoppedState()
        self._path_monitor: Optional[PathMonitor] = None
        self._last_path: Optional[Path] = None
        self._closed = False

        self.backend.set_logger(self._handle_backend_log)

    @property
    def state(self):
        return self._state

    @property
    def backend_version(self) -> str:
        return self.backend.version()

    @property
    def interface_name(self) -> Optional[str]:
        """Name of the tunnel device, once the host has opened it."""
        if isinstance(self._state, StoppedState):
            return None
        return self.host.interface_name

    @property
    def path_monitor(self) -> Optional[PathMonitor]:
        return self._path_monitor

    def close(self):
        """Detach from the backend and stop the work queue. Turns the tunnel off if it is running."""
        if self._closed:
            return
        self._closed = True

        def _close():
            self.backend.set_logger(None)
            self._cancel_path_monitor()
            if isinstance(self._state, StartedState):
                self.backend.turn_off(self._state.handle)
            self._state = StoppedState()
        self._queue.submit(_close).result()
        self._queue.shutdown(wait=True)

    # --- Public operations, all serialized on the work queue -------------------

    def start(self, tunnel_configuration: TunnelConfiguration) -> Future:
        return self._queue.submit(self._start, tunnel_configuration)

    def stop(self) -> Future:
        return self._queue.submit(self._stop)

    def update(self, tunnel_configuration: TunnelConfiguration) -> Future:
        return self._queue.submit(self._update, tunnel_configuration)

    def get_runtime_configuration(self) -> Future:
        """Resolves to the backend's current key=value dump, or None when not running."""
        def _get():
            if isinstance(self._state, StartedState):
                return self.backend.get_config(self._state.handle)
            return None
        return self._queue.submit(_get)

    # --- Work queue bodies ------------------------------------------------------

    def _start(self, tunnel_configuration: TunnelConfiguration):
        if not isinstance(self._state, StoppedState):
            raise InvalidStateError(self._state)

        monitor = self._path_monitor_factory()
        monitor.start(self._on_path_update)
        self._path_monitor = monitor

        try:
            settings_generator = self._make_settings_generator(tunnel_configuration)
            self._set_network_settings(settings_generator.generate_network_settings())
            handle = self._start_backend(settings_generator)
        except Exception:
            self._cancel_path_monitor()
            raise
        self._state = StartedState(handle, settings_generator)
        self._log(WireGuardLogLevel.INFO, f"Tunnel started (backend {self.backend.version()})")

    def _stop(self):
        if isinstance(self._state, StoppedState):
            raise InvalidStateError(self._state)
        if isinstance(self._state, StartedState):
            self.backend.turn_off(self._state.handle)
        self._cancel_path_monitor()
        self._state = StoppedState()
        self._log(WireGuardLogLevel.INFO, "Tunnel stopped")

    def _update(self, tunnel_configuration: TunnelConfiguration):
        if isinstance(self._state, StoppedState):
            raise InvalidStateError(self._state)

        # observers see a reconnect rather than a failure while this runs
        self.host.reasserting = True
        try:
            settings_generator = self._make_settings_generator(tunnel_configuration)
            self._set_network_settings(settings_generator.generate_network_settings())
            if isinstance(self._state, StartedState):
                uapi, _ = settings_generator.uapi_configuration()
                self.backend.set_config(self._state.handle, uapi)
                self._state = StartedState(self._state.handle, settings_generator)
            else:
                self._state = TemporaryShutdownState(settings_generator)
        finally:
            self.host.reasserting = False

    # --- Helpers ----------------------------------------------------------------

    def _start_backend(self, settings_generator: SettingsGenerator) -> int:
        tun_fd = self.host.tunnel_file_descriptor
        if tun_fd is None:
            raise CannotLocateTunnelFileDescriptorError()
        uapi, resolution_results = settings_generator.uapi_configuration()
        self._log_resolution_errors(resolution_results)
        handle = self.backend.turn_on(uapi, tun_fd)
        if handle < 0:
            raise StartWireGuardBackendError(handle)
        if not self.platform.transparent_roaming:
            self.backend.disable_some_roaming_for_broken_mobile_semantics(handle)
        return handle

    def _resolve_peers(self, tunnel_configuration: TunnelConfiguration) -> List[Optional[Endpoint]]:
        endpoints = [peer.endpoint for peer in tunnel_configuration.peers]
        results = self._resolve_batch(endpoints)
        assert len(results) == len(endpoints)
        failures = [r for r in results if isinstance(r, DNSResolutionError)]
        if failures:
            for failure in failures:
                self._log(WireGuardLogLevel.ERROR, f"DNS resolution failed for {failure.address}: {failure.description}")
            raise DNSResolutionFailureError(failures)
        return results

    def _make_settings_generator(self, tunnel_configuration: TunnelConfiguration) -> SettingsGenerator:
        resolved = self._resolve_peers(tunnel_configuration)
        return SettingsGenerator(tunnel_configuration, resolved, platform=self.platform)

    def _set_network_settings(self, settings: NetworkSettings):
        done = threading.Event()
        outcome: List[Optional[Exception]] = []

        def completion(error: Optional[Exception]):
            outcome.append(error)
            done.set()

        self.host.set_tunnel_network_settings(settings, completion)
        if not done.wait(self._settings_timeout):
            self._log(WireGuardLogLevel.ERROR,
                      f"set_tunnel_network_settings timed out after {self._settings_timeout} seconds; proceeding anyway")
            return
        if outcome[0] is not None:
            raise SetNetworkSettingsError(outcome[0])

    def _cancel_path_monitor(self):
        if self._path_monitor is not None:
            self._path_monitor.cancel()
            self._path_monitor = None
        self._last_path = None

    def _on_path_update(self, path: Path):
        # monitors call from their own threads and may still fire while closing
        if self._closed:
            logger.debug("Ignoring path update after close: %s", path)
            return
        try:
            self._queue.submit(self._did_receive_path_update, path)
        except RuntimeError:
            logger.debug("Ignoring path update after close: %s", path)

    def _did_receive_path_update(self, path: Path):
        if isinstance(self._state, StoppedState):
            return
        self._log(WireGuardLogLevel.DEBUG,
                  f"Network change detected with {path.status.value} route and interface order {list(path.interfaces)}")

        if self.platform.transparent_roaming:
            if isinstance(self._state, StartedState):
                self.backend.bump_sockets(self._state.handle)
            self._last_path = path
            return

        if isinstance(self._state, StartedState):
            if path.is_viable:
                if path != self._last_path:
                    uapi, results = self._state.settings_generator.endpoint_uapi_configuration()
                    self._log_resolution_errors(results)
                    self.backend.set_config(self._state.handle, uapi)
                    self.backend.bump_sockets(self._state.handle)
            else:
                self._log(WireGuardLogLevel.INFO, "Connectivity offline, pausing backend")
                self.backend.turn_off(self._state.handle)
                self._state = TemporaryShutdownState(self._state.settings_generator)
        elif isinstance(self._state, TemporaryShutdownState) and path.is_viable:
            self._log(WireGuardLogLevel.INFO, "Connectivity online, resuming backend")
            tunnel_configuration = self._state.settings_generator.tunnel_configuration
            try:
                settings_generator = self._make_settings_generator(tunnel_configuration)
                self._set_network_settings(settings_generator.generate_network_settings())
                handle = self._start_backend(settings_generator)
            except (DNSResolutionFailureError, SetNetworkSettingsError,
                    CannotLocateTunnelFileDescriptorError, StartWireGuardBackendError) as e:
                self._log(WireGuardLogLevel.ERROR, f"Failed to restart backend: {e}")
                self.host.cancel_tunnel_with_error(e)
            else:
                self._state = StartedState(handle, settings_generator)
        self._last_path = path

    def _log_resolution_errors(self, results):
        for result in results:
            if isinstance(result, DNSResolutionError):
                self._log(WireGuardLogLevel.ERROR, f"Failed to re-resolve {result.address}: {result.description}")

    def _handle_backend_log(self, level: int, message: str):
        self._log(WireGuardLogLevel.from_backend(level), message)

    def _log(self, level: WireGuardLogLevel, message: str):
        self._log_handler(level, message)
