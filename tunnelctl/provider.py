"""
In-process tunnel provider: a TunnelSession that runs a TunnelAdapter in this
process, and a Linux host that owns a TUN device and applies network settings
with iproute2.
"""
import fcntl
import ipaddress
import logging
import os
import shutil
import struct
import subprocess
import threading
from concurrent.futures import Future
from typing import Callable, Dict, Optional

from .adapter import TunnelAdapter, TunnelHost
from .backends.base import WireGuardBackend
from .errors import (
    AlertText,
    CannotLocateTunnelFileDescriptorError,
    DNSResolutionFailureError,
    PacketTunnelProviderError,
    SetNetworkSettingsError,
    VPNSystemError,
)
from .keychain import CredentialStore
from .profiles import TunnelProfile, TunnelSession
from .settings import NetworkSettings
from .status import SessionStatus

logger = logging.getLogger(__name__)

TUNSETIFF = 0x400454CA
IFF_TUN = 0x0001
IFF_NO_PI = 0x1000

RUNTIME_CONFIGURATION_TIMEOUT = 5.0


def provider_error_for(error: Exception) -> PacketTunnelProviderError:
    if isinstance(error, DNSResolutionFailureError):
        return PacketTunnelProviderError(PacketTunnelProviderError.DNS_RESOLUTION_FAILURE)
    if isinstance(error, SetNetworkSettingsError):
        return PacketTunnelProviderError(PacketTunnelProviderError.COULD_NOT_SET_NETWORK_SETTINGS)
    if isinstance(error, CannotLocateTunnelFileDescriptorError):
        return PacketTunnelProviderError(PacketTunnelProviderError.COULD_NOT_DETERMINE_FILE_DESCRIPTOR)
    # backend start failures and anything unexpected
    return PacketTunnelProviderError(PacketTunnelProviderError.COULD_NOT_START_BACKEND)


class LocalTunnelSession(TunnelSession):
    """
    Runs the tunnel for one profile inside this process.

    Status moves connecting -> connected when the adapter starts, or back to
    disconnected with a recorded provider error when it does not. Errors are
    kept per activation attempt so the manager can ask why a given attempt
    failed.
    """

    def __init__(self, profile_source: Callable[[], TunnelProfile], credentials: CredentialStore,
                 host: TunnelHost, backend_factory: Callable[[], WireGuardBackend], **adapter_kwargs):
        super().__init__()
        self._profile_source = profile_source
        self._credentials = credentials
        self.host = host
        self.host.on_cancel = self._handle_cancel
        self._backend_factory = backend_factory
        self._adapter_kwargs = adapter_kwargs
        self._adapter: Optional[TunnelAdapter] = None
        self._lock = threading.Lock()
        self._errors: Dict[Optional[str], PacketTunnelProviderError] = {}
        self._attempt_id: Optional[str] = None

    @property
    def adapter(self) -> TunnelAdapter:
        # the backend library is only loaded once a tunnel is first started
        if self._adapter is None:
            self._adapter = TunnelAdapter(self.host, self._backend_factory(), **self._adapter_kwargs)
        return self._adapter

    def start_tunnel(self, options: Optional[dict] = None) -> None:
        profile = self._profile_source()
        if not profile.is_enabled:
            raise VPNSystemError(VPNSystemError.CONFIGURATION_DISABLED)
        if self.status not in (SessionStatus.DISCONNECTED, SessionStatus.INVALID):
            raise VPNSystemError(VPNSystemError.CONNECTION_FAILED, "session is already running")

        with self._lock:
            self._attempt_id = (options or {}).get("activationAttemptId")
        self._set_status(SessionStatus.CONNECTING)

        config = profile.tunnel_configuration(self._credentials)
        if config is None:
            self._fail(PacketTunnelProviderError(PacketTunnelProviderError.SAVED_PROTOCOL_CONFIGURATION_IS_INVALID))
            return

        logger.info("Starting tunnel '%s' (activation attempt %s)", profile.name, self._attempt_id)
        self.adapter.start(config).add_done_callback(self._on_started)

    def stop_tunnel(self) -> None:
        if self.status in (SessionStatus.DISCONNECTED, SessionStatus.DISCONNECTING):
            return
        self._set_status(SessionStatus.DISCONNECTING)
        self.adapter.stop().add_done_callback(self._on_stopped)

    def last_error_text(self, activation_attempt_id: Optional[str] = None) -> Optional[AlertText]:
        with self._lock:
            key = activation_attempt_id if activation_attempt_id is not None else self._attempt_id
            error = self._errors.get(key)
        return error.alert_text if error else None

    def get_runtime_configuration(self) -> Optional[str]:
        if self.status != SessionStatus.CONNECTED:
            return None
        return self.adapter.get_runtime_configuration().result(RUNTIME_CONFIGURATION_TIMEOUT)

    def close(self):
        if self._adapter is not None:
            self._adapter.close()
            self._adapter = None
        self.host.close()

    def _on_started(self, future: Future):
        error = future.exception()
        if error is None:
            self._set_status(SessionStatus.CONNECTED)
            return
        logger.error("Starting tunnel failed: %s", error)
        self._fail(provider_error_for(error))

    def _on_stopped(self, future: Future):
        error = future.exception()
        if error is not None:
            logger.debug("Stop finished with %s", error)
        self._set_status(SessionStatus.DISCONNECTED)

    def _handle_cancel(self, error: Exception):
        with self._lock:
            self._errors[self._attempt_id] = provider_error_for(error)
        self.stop_tunnel()

    def _fail(self, error: PacketTunnelProviderError):
        with self._lock:
            self._errors[self._attempt_id] = error
        self._set_status(SessionStatus.DISCONNECTED)


class LinuxTunnelHost(TunnelHost):
    """Owns a TUN device on Linux and configures it with ``ip``."""

    def __init__(self, interface: str = "tunnelctl0", use_sudo_if_needed: bool = True):
        self.interface = interface
        self._fd: Optional[int] = None
        try:
            is_root = os.geteuid() == 0
        except AttributeError:
            is_root = False
        self._sudo = ["sudo"] if (use_sudo_if_needed and not is_root) else []

    @property
    def interface_name(self) -> Optional[str]:
        return self.interface if self._fd is not None else None

    def _run(self, cmd: list, check: bool = True) -> subprocess.CompletedProcess:
        return subprocess.run(self._sudo + cmd, capture_output=True, text=True, check=check)

    @property
    def tunnel_file_descriptor(self) -> Optional[int]:
        if self._fd is None:
            try:
                fd = os.open("/dev/net/tun", os.O_RDWR)
                request = struct.pack("16sH", self.interface.encode(), IFF_TUN | IFF_NO_PI)
                fcntl.ioctl(fd, TUNSETIFF, request)
            except OSError as e:
                logger.error("Unable to open TUN device %s: %s", self.interface, e)
                return None
            self._fd = fd
        return self._fd

    def set_tunnel_network_settings(self, settings: NetworkSettings, completion) -> None:
        try:
            self._apply(settings)
        except (subprocess.CalledProcessError, OSError) as e:
            stderr = getattr(e, "stderr", None)
            logger.error("Applying network settings to %s failed: %s %s", self.interface, e, stderr or "")
            completion(e)
            return
        completion(None)

    def _apply(self, settings: NetworkSettings):
        dev = self.interface
        self._run(["ip", "link", "set", "dev", dev, "mtu", str(settings.mtu), "up"])
        self._run(["ip", "address", "flush", "dev", dev])

        v4 = settings.ipv4_settings
        v6 = settings.ipv6_settings
        # looked up before any tunnel route exists, so these see the underlying network
        exclusions = [self._exclusion_route("-4", route.destination_address, 32) for route in v4.excluded_routes]
        exclusions += [self._exclusion_route("-6", route.destination_address, 128) for route in v6.excluded_routes]

        for address, mask in zip(v4.addresses, v4.subnet_masks):
            prefix = ipaddress.IPv4Network(f"0.0.0.0/{mask}").prefixlen
            self._run(["ip", "-4", "address", "add", f"{address}/{prefix}", "dev", dev])
        for address, prefix in zip(v6.addresses, v6.network_prefix_lengths):
            self._run(["ip", "-6", "address", "add", f"{address}/{prefix}", "dev", dev])

        for cmd in exclusions:
            if cmd is not None:
                self._run(cmd)
        for route in v4.included_routes:
            network = ipaddress.IPv4Network(f"{route.destination_address}/{route.subnet_mask}", strict=False)
            self._run(["ip", "-4", "route", "replace", network.with_prefixlen, "dev", dev])
        for route in v6.included_routes:
            network = ipaddress.IPv6Network(f"{route.destination_address}/{route.network_prefix_length}",
                                            strict=False)
            self._run(["ip", "-6", "route", "replace", network.with_prefixlen, "dev", dev])

        dns = settings.dns_settings
        if dns is not None:
            if not shutil.which("resolvectl"):
                logger.warning("resolvectl not found, DNS servers for %s not applied", dev)
                return
            self._run(["resolvectl", "dns", dev] + list(dns.servers))
            domains = list(dns.search_domains)
            if dns.match_domains == [""]:
                domains.append("~.")
            if domains:
                self._run(["resolvectl", "domain", dev] + domains)

    def _exclusion_route(self, family: str, address: str, prefix: int) -> Optional[list]:
        """Host route for a peer endpoint through whatever currently carries it."""
        result = self._run(["ip", family, "route", "get", address], check=False)
        fields = result.stdout.split() if result.returncode == 0 else []
        if "dev" not in fields or fields.index("dev") + 1 >= len(fields):
            logger.warning("No route to endpoint %s, leaving it to the tunnel routes", address)
            return None
        device = fields[fields.index("dev") + 1]
        if device == self.interface:
            logger.warning("Endpoint %s already routes through %s", address, device)
            return None
        cmd = ["ip", family, "route", "replace", f"{address}/{prefix}"]
        if "via" in fields:
            cmd += ["via", fields[fields.index("via") + 1]]
        return cmd + ["dev", device]

    def close(self):
        if self._fd is not None:
            os.close(self._fd)
            self._fd = None
