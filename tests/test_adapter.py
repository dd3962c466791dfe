"""Tests for the tunnel adapter state machine."""
import base64

import pytest

from tunnelctl import wgquick
from tunnelctl.adapter import StartedState, StoppedState, TemporaryShutdownState, TunnelAdapter, TunnelHost
from tunnelctl.backends import MockBackend
from tunnelctl.errors import (
    CannotLocateTunnelFileDescriptorError,
    DNSResolutionError,
    DNSResolutionFailureError,
    InvalidStateError,
    SetNetworkSettingsError,
    StartWireGuardBackendError,
)
from tunnelctl.log import WireGuardLogLevel
from tunnelctl.path_monitor import ManualPathMonitor, Path, PathStatus
from tunnelctl.platforms import DESKTOP, MOBILE

PRIVATE = base64.b64encode(bytes([1]) * 32).decode()
PEER = base64.b64encode(bytes([2]) * 32).decode()

CONFIG_TEXT = f"""[Interface]
PrivateKey = {PRIVATE}
Address = 10.0.0.2/32

[Peer]
PublicKey = {PEER}
AllowedIPs = 0.0.0.0/0
Endpoint = 203.0.113.1:51820
"""

WIFI = Path(PathStatus.SATISFIED, ("wlan0",))
CELL = Path(PathStatus.SATISFIED, ("rmnet0",))
OFFLINE = Path(PathStatus.UNSATISFIED)
TIMEOUT = 5


class FakeHost(TunnelHost):
    def __init__(self, fd=4, settings_error=None, respond=True):
        self.fd = fd
        self.settings_error = settings_error
        self.respond = respond
        self.applied = []
        self.reasserting_seen = []
        self.cancelled = []

    @property
    def tunnel_file_descriptor(self):
        return self.fd

    @property
    def interface_name(self):
        return "utun3"

    def set_tunnel_network_settings(self, settings, completion):
        self.applied.append(settings)
        self.reasserting_seen.append(self.reasserting)
        if self.respond:
            completion(self.settings_error)

    def cancel_tunnel_with_error(self, error):
        self.cancelled.append(error)


class Harness:
    def __init__(self, platform=DESKTOP, host=None, backend=None, resolve_batch=None, settings_timeout=TIMEOUT):
        self.host = host or FakeHost()
        self.backend = backend or MockBackend()
        self.logs = []
        self.monitors = []

        def monitor_factory():
            monitor = ManualPathMonitor()
            self.monitors.append(monitor)
            return monitor

        self.adapter = TunnelAdapter(
            self.host, self.backend, platform=platform,
            path_monitor_factory=monitor_factory,
            log_handler=lambda level, message: self.logs.append((level, message)),
            resolve_batch=resolve_batch or (lambda endpoints: list(endpoints)),
            settings_timeout=settings_timeout,
        )

    def drain(self):
        # the queue is FIFO with one worker, so this waits for everything before it
        self.adapter.get_runtime_configuration().result(TIMEOUT)


@pytest.fixture
def config():
    return wgquick.parse(CONFIG_TEXT, name="office")


@pytest.fixture
def harnesses():
    created = []

    def make(**kwargs):
        harness = Harness(**kwargs)
        created.append(harness)
        return harness

    yield make
    for harness in created:
        harness.adapter.close()


class TestStartStop:
    def test_start(self, config, harnesses):
        h = harnesses()
        h.adapter.start(config).result(TIMEOUT)

        assert isinstance(h.adapter.state, StartedState)
        assert len(h.host.applied) == 1
        name, uapi, fd = h.backend.calls[0]
        assert name == "turn_on"
        assert fd == 4
        assert uapi.startswith("private_key=" + "01" * 32)
        assert "endpoint=203.0.113.1:51820\n" in uapi
        assert h.monitors[0].is_running
        assert "disable_roaming" not in h.backend.call_names()

    def test_start_twice_is_invalid(self, config, harnesses):
        h = harnesses()
        h.adapter.start(config).result(TIMEOUT)
        with pytest.raises(InvalidStateError):
            h.adapter.start(config).result(TIMEOUT)

    def test_stop(self, config, harnesses):
        h = harnesses()
        h.adapter.start(config).result(TIMEOUT)
        h.adapter.stop().result(TIMEOUT)
        assert isinstance(h.adapter.state, StoppedState)
        assert h.backend.call_names()[-1] == "turn_off"
        assert not h.monitors[0].is_running

    def test_stop_when_stopped_is_invalid(self, harnesses):
        h = harnesses()
        with pytest.raises(InvalidStateError):
            h.adapter.stop().result(TIMEOUT)

    def test_interface_name_only_while_running(self, config, harnesses):
        h = harnesses()
        assert h.adapter.interface_name is None
        h.adapter.start(config).result(TIMEOUT)
        assert h.adapter.interface_name == "utun3"
        h.adapter.stop().result(TIMEOUT)
        assert h.adapter.interface_name is None

    def test_mobile_disables_roaming(self, config, harnesses):
        h = harnesses(platform=MOBILE)
        h.adapter.start(config).result(TIMEOUT)
        assert "disable_roaming" in h.backend.call_names()

    def test_runtime_configuration(self, config, harnesses):
        h = harnesses()
        assert h.adapter.get_runtime_configuration().result(TIMEOUT) is None
        h.adapter.start(config).result(TIMEOUT)
        assert h.adapter.get_runtime_configuration().result(TIMEOUT).startswith("private_key=")

    def test_backend_logs_are_forwarded(self, config, harnesses):
        h = harnesses()
        h.adapter.start(config).result(TIMEOUT)
        assert (WireGuardLogLevel.INFO, "Device started (handle 0)") in h.logs


class TestStartFailures:
    def test_dns_failure(self, config, harnesses):
        failure = DNSResolutionError("vpn.example.com", 8, "nodename nor servname provided")
        h = harnesses(resolve_batch=lambda endpoints: [failure])
        with pytest.raises(DNSResolutionFailureError) as exc_info:
            h.adapter.start(config).result(TIMEOUT)
        assert exc_info.value.errors == [failure]
        assert isinstance(h.adapter.state, StoppedState)
        assert not h.monitors[0].is_running
        assert h.backend.calls == []

    def test_no_file_descriptor(self, config, harnesses):
        h = harnesses(host=FakeHost(fd=None))
        with pytest.raises(CannotLocateTunnelFileDescriptorError):
            h.adapter.start(config).result(TIMEOUT)
        assert isinstance(h.adapter.state, StoppedState)

    def test_backend_refuses(self, config, harnesses):
        h = harnesses(backend=MockBackend(turn_on_result=-22))
        with pytest.raises(StartWireGuardBackendError) as exc_info:
            h.adapter.start(config).result(TIMEOUT)
        assert exc_info.value.code == -22

    def test_settings_error(self, config, harnesses):
        h = harnesses(host=FakeHost(settings_error=OSError("RTNETLINK answers: Operation not permitted")))
        with pytest.raises(SetNetworkSettingsError):
            h.adapter.start(config).result(TIMEOUT)
        assert h.backend.calls == []

    def test_settings_timeout_is_not_fatal(self, config, harnesses):
        h = harnesses(host=FakeHost(respond=False), settings_timeout=0.05)
        h.adapter.start(config).result(TIMEOUT)
        assert isinstance(h.adapter.state, StartedState)
        assert any(level == WireGuardLogLevel.ERROR and "timed out" in message for level, message in h.logs)


class TestUpdate:
    def test_update_while_started(self, config, harnesses):
        h = harnesses()
        h.adapter.start(config).result(TIMEOUT)
        h.adapter.update(config).result(TIMEOUT)

        assert h.host.reasserting_seen == [False, True]
        assert h.host.reasserting is False
        assert h.backend.call_names()[-1] == "set_config"
        assert isinstance(h.adapter.state, StartedState)

    def test_update_when_stopped_is_invalid(self, config, harnesses):
        h = harnesses()
        with pytest.raises(InvalidStateError):
            h.adapter.update(config).result(TIMEOUT)


class TestPathChanges:
    def test_desktop_only_bumps_sockets(self, config, harnesses):
        h = harnesses()
        h.adapter.start(config).result(TIMEOUT)
        h.monitors[0].update(WIFI)
        h.monitors[0].update(OFFLINE)
        h.drain()
        names = h.backend.call_names()
        assert names.count("bump_sockets") == 2
        assert "set_config" not in names
        assert isinstance(h.adapter.state, StartedState)

    def test_mobile_viable_change_sends_endpoints(self, config, harnesses):
        h = harnesses(platform=MOBILE)
        h.adapter.start(config).result(TIMEOUT)
        h.monitors[0].update(WIFI)
        h.monitors[0].update(WIFI)
        h.monitors[0].update(CELL)
        h.drain()

        set_configs = [call for call in h.backend.calls if call[0] == "set_config"]
        assert len(set_configs) == 2
        assert set_configs[0][2].startswith("public_key=" + "02" * 32)
        assert "private_key" not in set_configs[0][2]
        assert h.backend.call_names().count("bump_sockets") == 2

    def test_mobile_suspend_and_resume(self, config, harnesses):
        h = harnesses(platform=MOBILE)
        h.adapter.start(config).result(TIMEOUT)

        h.monitors[0].update(OFFLINE)
        h.drain()
        assert isinstance(h.adapter.state, TemporaryShutdownState)
        assert h.backend.call_names()[-1] == "turn_off"

        h.monitors[0].update(WIFI)
        h.drain()
        assert isinstance(h.adapter.state, StartedState)
        assert h.backend.call_names().count("turn_on") == 2
        assert len(h.host.applied) == 2

    def test_update_while_suspended_keeps_suspension(self, config, harnesses):
        h = harnesses(platform=MOBILE)
        h.adapter.start(config).result(TIMEOUT)
        h.monitors[0].update(OFFLINE)
        h.drain()
        h.adapter.update(config).result(TIMEOUT)
        assert isinstance(h.adapter.state, TemporaryShutdownState)

    def test_failed_resume_cancels_tunnel(self, config, harnesses):
        calls = {"count": 0}

        def resolve_batch(endpoints):
            calls["count"] += 1
            if calls["count"] > 1:
                return [DNSResolutionError("vpn.example.com", 8, "offline")]
            return list(endpoints)

        h = harnesses(platform=MOBILE, resolve_batch=resolve_batch)
        h.adapter.start(config).result(TIMEOUT)
        h.monitors[0].update(OFFLINE)
        h.monitors[0].update(WIFI)
        h.drain()
        assert len(h.host.cancelled) == 1
        assert isinstance(h.host.cancelled[0], DNSResolutionFailureError)
        assert isinstance(h.adapter.state, TemporaryShutdownState)

    def test_updates_after_stop_are_ignored(self, config, harnesses):
        h = harnesses(platform=MOBILE)
        h.adapter.start(config).result(TIMEOUT)
        monitor = h.monitors[0]
        h.adapter.stop().result(TIMEOUT)
        before = list(h.backend.calls)
        monitor.update(WIFI)
        h.drain()
        assert [c for c in h.backend.calls if c[0] != "get_config"] == [c for c in before if c[0] != "get_config"]

    def test_update_racing_close_is_dropped(self, config, harnesses):
        h = harnesses(platform=MOBILE)
        h.adapter.start(config).result(TIMEOUT)
        # a monitor thread that grabbed the handler before close cancelled it
        handler = h.monitors[0]._handler
        h.adapter.close()
        handler(OFFLINE)
        handler(WIFI)
        assert h.host.cancelled == []

    def test_close_twice(self, config, harnesses):
        h = harnesses()
        h.adapter.start(config).result(TIMEOUT)
        h.adapter.close()
        h.adapter.close()
        assert "turn_off" in h.backend.call_names()
