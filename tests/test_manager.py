"""Tests for the tunnels manager."""
import base64

import pytest

from tunnelctl import wgquick
from tunnelctl.errors import (
    ActivationFailedError,
    ActivationFailedNoInternetError,
    ActivationFailedWithExtensionError,
    AnotherTunnelOperationalError,
    FailedBecauseOfTooManyErrorsError,
    FailedWhileLoadingError,
    FailedWhileStartingError,
    ProfileStoreError,
    SystemErrorOnAddTunnel,
    SystemErrorOnListingTunnels,
    SystemErrorOnRemoveTunnel,
    TunnelAlreadyExistsWithThatNameError,
    TunnelIsNotInactiveError,
    TunnelNameEmptyError,
    VPNSystemError,
)
from tunnelctl.keychain import InMemoryCredentialStore
from tunnelctl.manager import (
    MAX_ACTIVATION_ATTEMPTS,
    TunnelActivationListener,
    TunnelsListListener,
    TunnelsManager,
    tunnel_sort_key,
)
from tunnelctl.profiles import InMemoryProfileStore, TunnelProfile, TunnelSession
from tunnelctl.status import SessionStatus, TunnelStatus

PRIVATE = base64.b64encode(bytes([1]) * 32).decode()
PEER = base64.b64encode(bytes([2]) * 32).decode()


def make_config(name, endpoint="203.0.113.1:51820"):
    return wgquick.parse(
        f"[Interface]\nPrivateKey = {PRIVATE}\nAddress = 10.0.0.2/32\n\n"
        f"[Peer]\nPublicKey = {PEER}\nAllowedIPs = 0.0.0.0/0\nEndpoint = {endpoint}\n",
        name=name)


class FakeSession(TunnelSession):
    def __init__(self, tunnel):
        super().__init__()
        self.tunnel = tunnel
        self.start_calls = []
        self.stop_calls = 0
        self.start_error = None
        self.error_text = None
        self.runtime = None

    def start_tunnel(self, options=None):
        self.start_calls.append(options)
        if self.start_error is not None:
            raise self.start_error
        self._set_status(SessionStatus.CONNECTING)

    def stop_tunnel(self):
        self.stop_calls += 1
        self._set_status(SessionStatus.DISCONNECTING)

    def last_error_text(self, activation_attempt_id=None):
        return self.error_text

    def get_runtime_configuration(self):
        return self.runtime

    def connect(self):
        self._set_status(SessionStatus.CONNECTED)

    def disconnect(self):
        self._set_status(SessionStatus.DISCONNECTED)


class FlakyProfileStore(InMemoryProfileStore):
    def __init__(self, profiles=None):
        super().__init__(profiles)
        self.fail_save = False
        self.fail_remove = False
        self.fail_reload = False
        self.fail_load = False

    def load_all(self):
        if self.fail_load:
            raise ProfileStoreError("load failed")
        return super().load_all()

    def save(self, profile):
        if self.fail_save:
            raise ProfileStoreError("save failed")
        super().save(profile)

    def remove(self, profile):
        if self.fail_remove:
            raise ProfileStoreError("remove failed")
        super().remove(profile)

    def reload(self, profile):
        if self.fail_reload:
            raise ProfileStoreError("reload failed")
        return super().reload(profile)


class RecordingListener(TunnelsListListener, TunnelActivationListener):
    def __init__(self):
        self.events = []

    def tunnel_added(self, index):
        self.events.append(("added", index))

    def tunnel_modified(self, index):
        self.events.append(("modified", index))

    def tunnel_moved(self, old_index, new_index):
        self.events.append(("moved", old_index, new_index))

    def tunnel_removed(self, index, tunnel):
        self.events.append(("removed", index, tunnel.name))

    def activation_attempt_failed(self, tunnel, error):
        self.events.append(("attempt_failed", tunnel.name, error))

    def activation_attempt_succeeded(self, tunnel):
        self.events.append(("attempt_succeeded", tunnel.name))

    def activation_failed(self, tunnel, error):
        self.events.append(("failed", tunnel.name, error))

    def activation_succeeded(self, tunnel):
        self.events.append(("succeeded", tunnel.name))

    def of(self, kind):
        return [event for event in self.events if event[0] == kind]


class Env:
    def __init__(self, profiles=None, credentials=None):
        self.store = FlakyProfileStore(profiles)
        self.credentials = credentials or InMemoryCredentialStore()
        self.reachable = True
        self.listener = RecordingListener()
        self.manager = TunnelsManager.create(
            self.store, self.credentials, FakeSession, is_network_reachable=lambda: self.reachable)
        self.manager.add_list_listener(self.listener)
        self.manager.add_activation_listener(self.listener)

    def names(self):
        return [self.manager.tunnel_at(i).name for i in range(self.manager.number_of_tunnels())]


@pytest.fixture
def env():
    return Env()


def test_sort_key_is_natural_and_case_insensitive():
    names = ["tun10", "Tun2", "alpha", "tun1"]
    assert sorted(names, key=tunnel_sort_key) == ["alpha", "tun1", "Tun2", "tun10"]


class TestListManagement:
    def test_add_keeps_sorted_order(self, env):
        env.manager.add(make_config("tun10"))
        env.manager.add(make_config("Tun2"))
        env.manager.add(make_config("alpha"))
        assert env.names() == ["alpha", "Tun2", "tun10"]
        assert env.listener.of("added") == [("added", 0), ("added", 0), ("added", 0)]
        assert len(env.store.load_all()) == 3

    def test_add_rejects_bad_names(self, env):
        with pytest.raises(TunnelNameEmptyError):
            env.manager.add(make_config(""))
        env.manager.add(make_config("office"))
        with pytest.raises(TunnelAlreadyExistsWithThatNameError):
            env.manager.add(make_config("office"))

    def test_add_save_failure_releases_reference(self, env):
        env.store.fail_save = True
        with pytest.raises(SystemErrorOnAddTunnel):
            env.manager.add(make_config("office"))
        assert list(env.credentials.all_references()) == []
        assert env.manager.number_of_tunnels() == 0

    def test_add_multiple_reports_last_error(self, env):
        env.manager.add(make_config("b"))
        added, error = env.manager.add_multiple([make_config("a"), make_config("b"), make_config("c")])
        assert added == 2
        assert isinstance(error, TunnelAlreadyExistsWithThatNameError)

    def test_remove(self, env):
        env.manager.add(make_config("a"))
        tunnel = env.manager.add(make_config("b"))
        env.manager.remove(tunnel)
        assert env.names() == ["a"]
        assert env.listener.of("removed") == [("removed", 1, "b")]
        assert len(list(env.credentials.all_references())) == 1

    def test_remove_failure(self, env):
        tunnel = env.manager.add(make_config("a"))
        env.store.fail_remove = True
        with pytest.raises(SystemErrorOnRemoveTunnel):
            env.manager.remove(tunnel)
        assert env.names() == ["a"]

    def test_remove_multiple(self, env):
        tunnels = [env.manager.add(make_config(name)) for name in ("a", "b", "c")]
        env.manager.remove_multiple(tunnels[:2])
        assert env.names() == ["c"]

    def test_rename_moves_tunnel(self, env):
        env.manager.add(make_config("a"))
        tunnel = env.manager.add(make_config("b"))
        env.manager.modify(tunnel, make_config("0-first"))
        assert env.names() == ["0-first", "a"]
        assert env.listener.of("moved") == [("moved", 1, 0)]
        assert env.listener.of("modified") == [("modified", 0)]
        assert sorted(p.name for p in env.store.load_all()) == ["0-first", "a"]

    def test_rename_to_existing_name(self, env):
        env.manager.add(make_config("a"))
        tunnel = env.manager.add(make_config("b"))
        with pytest.raises(TunnelAlreadyExistsWithThatNameError):
            env.manager.modify(tunnel, make_config("a"))

    def test_modify_replaces_configuration_blob(self, env):
        tunnel = env.manager.add(make_config("a"))
        old_reference = tunnel.profile.config_reference
        env.manager.modify(tunnel, make_config("a", endpoint="198.51.100.1:51820"))
        assert not env.credentials.verify_reference(old_reference)
        assert str(tunnel.tunnel_configuration(env.credentials).peers[0].endpoint) == "198.51.100.1:51820"
        assert tunnel.profile.server_address == "198.51.100.1:51820"

    def test_set_on_demand_enabled(self, env):
        tunnel = env.manager.add(make_config("a"))
        env.manager.set_on_demand_enabled(True, tunnel)
        assert tunnel.is_activate_on_demand_enabled
        assert env.store.load_all()[0].is_on_demand_enabled

    def test_reload_picks_up_outside_changes(self, env):
        a = env.manager.add(make_config("a"))
        env.manager.add(make_config("b"))
        env.store.remove(a.profile)
        outside = TunnelProfile.from_configuration(make_config("c"), env.credentials)
        env.store.save(outside)

        env.manager.reload()
        assert env.names() == ["b", "c"]
        assert ("removed", 0, "a") in env.listener.events

    def test_reload_failure(self, env):
        env.store.fail_load = True
        with pytest.raises(SystemErrorOnListingTunnels):
            env.manager.reload()


class TestCreate:
    def test_drops_orphans(self):
        credentials = InMemoryCredentialStore()
        good = TunnelProfile.from_configuration(make_config("good"), credentials)
        dangling = TunnelProfile(name="dangling", config_reference=b"feedface")
        orphan_blob = credentials.make_reference("[Interface]\n", "gone")

        env = Env(profiles=[good, dangling], credentials=credentials)
        assert env.names() == ["good"]
        assert [p.name for p in env.store.load_all()] == ["good"]
        assert not credentials.verify_reference(orphan_blob)
        assert credentials.verify_reference(good.config_reference)

    def test_listing_failure(self):
        store = FlakyProfileStore()
        store.fail_load = True
        with pytest.raises(SystemErrorOnListingTunnels):
            TunnelsManager.create(store, InMemoryCredentialStore(), FakeSession)


class TestActivation:
    def test_activation_succeeds(self, env):
        tunnel = env.manager.add(make_config("a"))
        env.manager.start_activation(tunnel)
        assert tunnel.status == TunnelStatus.ACTIVATING
        assert tunnel.session.start_calls == [{"activationAttemptId": tunnel.activation_attempt_id}]
        assert env.listener.of("attempt_succeeded") == [("attempt_succeeded", "a")]

        tunnel.session.connect()
        assert tunnel.status == TunnelStatus.ACTIVE
        assert env.listener.of("succeeded") == [("succeeded", "a")]
        assert env.manager.tunnel_in_operation() is tunnel

    def test_only_one_tunnel_operational(self, env):
        a = env.manager.add(make_config("a"))
        b = env.manager.add(make_config("b"))
        env.manager.start_activation(a)

        with pytest.raises(AnotherTunnelOperationalError) as exc_info:
            env.manager.start_activation(b)
        assert exc_info.value.name == "a"
        assert env.listener.of("attempt_failed")[0][1] == "b"
        assert b.status == TunnelStatus.INACTIVE
        assert b.session.start_calls == []

        a.session.connect()
        env.manager.start_deactivation(a)
        assert a.status == TunnelStatus.DEACTIVATING
        with pytest.raises(AnotherTunnelOperationalError):
            env.manager.start_activation(b)

        a.session.disconnect()
        assert a.status == TunnelStatus.INACTIVE
        env.manager.start_activation(b)
        assert b.status == TunnelStatus.ACTIVATING

    def test_already_active(self, env):
        tunnel = env.manager.add(make_config("a"))
        env.manager.start_activation(tunnel)
        with pytest.raises(TunnelIsNotInactiveError):
            env.manager.start_activation(tunnel)

    def test_stale_profile_gives_up_after_eight_attempts(self, env):
        tunnel = env.manager.add(make_config("a"))
        tunnel.session.start_error = VPNSystemError(VPNSystemError.CONFIGURATION_STALE)
        with pytest.raises(FailedBecauseOfTooManyErrorsError) as exc_info:
            env.manager.start_activation(tunnel)
        assert MAX_ACTIVATION_ATTEMPTS == 8
        assert len(tunnel.session.start_calls) == 8
        assert exc_info.value.system_error.code == VPNSystemError.CONFIGURATION_STALE
        assert tunnel.status == TunnelStatus.INACTIVE
        assert not tunnel.is_attempting_activation

    def test_stale_profile_recovers_after_reload(self, env):
        tunnel = env.manager.add(make_config("a"))
        session = tunnel.session
        errors = [VPNSystemError(VPNSystemError.CONFIGURATION_INVALID)]

        def start(options=None):
            session.start_calls.append(options)
            if errors:
                raise errors.pop()
            session._set_status(SessionStatus.CONNECTING)

        session.start_tunnel = start
        env.manager.start_activation(tunnel)
        assert len(session.start_calls) == 2
        assert tunnel.status == TunnelStatus.ACTIVATING

    def test_disabled_profile_is_enabled_first(self, env):
        tunnel = env.manager.add(make_config("a"))
        tunnel.profile.is_enabled = False
        env.manager.start_activation(tunnel)
        assert len(tunnel.session.start_calls) == 1
        assert env.store.load_all()[0].is_enabled

    def test_other_start_errors_are_terminal(self, env):
        tunnel = env.manager.add(make_config("a"))
        tunnel.session.start_error = VPNSystemError(VPNSystemError.CONNECTION_FAILED)
        with pytest.raises(FailedWhileStartingError):
            env.manager.start_activation(tunnel)
        assert len(tunnel.session.start_calls) == 1
        assert tunnel.status == TunnelStatus.INACTIVE

    def test_reload_failure_during_retry(self, env):
        tunnel = env.manager.add(make_config("a"))
        tunnel.session.start_error = VPNSystemError(VPNSystemError.CONFIGURATION_STALE)
        env.store.fail_reload = True
        with pytest.raises(FailedWhileLoadingError):
            env.manager.start_activation(tunnel)
        assert tunnel.status == TunnelStatus.INACTIVE

    def test_failure_without_internet(self, env):
        tunnel = env.manager.add(make_config("a"))
        env.manager.start_activation(tunnel)
        env.reachable = False
        tunnel.session.disconnect()
        (_, name, error), = env.listener.of("failed")
        assert isinstance(error, ActivationFailedNoInternetError)
        assert tunnel.status == TunnelStatus.INACTIVE

    def test_failure_with_provider_message(self, env):
        tunnel = env.manager.add(make_config("a"))
        env.manager.start_activation(tunnel)
        tunnel.session.error_text = ("DNS resolution failure", "One or more endpoint domains could not be resolved.")
        tunnel.session.disconnect()
        (_, _, error), = env.listener.of("failed")
        assert isinstance(error, ActivationFailedWithExtensionError)
        assert error.alert_text == tunnel.session.error_text

    def test_generic_failure(self, env):
        tunnel = env.manager.add(make_config("a"), on_demand_enabled=True)
        env.manager.start_activation(tunnel)
        tunnel.session.disconnect()
        (_, _, error), = env.listener.of("failed")
        assert type(error) is ActivationFailedError
        assert error.was_on_demand_enabled

    def test_deactivation_of_inactive_tunnel_is_a_no_op(self, env):
        tunnel = env.manager.add(make_config("a"))
        env.manager.start_deactivation(tunnel)
        assert tunnel.session.stop_calls == 0

    def test_status_listener(self, env):
        tunnel = env.manager.add(make_config("a"))
        seen = []
        tunnel.add_status_listener(lambda t, status: seen.append(status))
        env.manager.start_activation(tunnel)
        tunnel.session.connect()
        assert seen == [TunnelStatus.ACTIVATING, TunnelStatus.ACTIVE]


class TestSwitching:
    def test_switch_waits_for_deactivation(self, env):
        a = env.manager.add(make_config("a"), on_demand_enabled=True)
        b = env.manager.add(make_config("b"))
        env.manager.start_activation(a)
        a.session.connect()

        env.manager.switch_to(b)
        assert b.status == TunnelStatus.WAITING
        assert env.manager.waiting_tunnel() is b
        assert env.manager.tunnel_in_operation() is b
        assert a.session.stop_calls == 1
        assert not a.is_activate_on_demand_enabled
        assert b.session.start_calls == []

        a.session.disconnect()
        assert a.status == TunnelStatus.INACTIVE
        assert b.status == TunnelStatus.ACTIVATING
        assert len(b.session.start_calls) == 1

    def test_switch_with_nothing_running_activates(self, env):
        a = env.manager.add(make_config("a"))
        env.manager.switch_to(a)
        assert a.status == TunnelStatus.ACTIVATING


class TestModifyWhileActive:
    def test_config_change_restarts_tunnel(self, env):
        tunnel = env.manager.add(make_config("a"))
        env.manager.start_activation(tunnel)
        tunnel.session.connect()

        env.manager.modify(tunnel, make_config("a", endpoint="198.51.100.1:51820"))
        assert tunnel.status == TunnelStatus.RESTARTING
        assert tunnel.session.stop_calls == 1

        tunnel.session.disconnect()
        assert tunnel.status == TunnelStatus.ACTIVATING
        assert len(tunnel.session.start_calls) == 2

    def test_unchanged_config_does_not_restart(self, env):
        tunnel = env.manager.add(make_config("a"))
        env.manager.start_activation(tunnel)
        tunnel.session.connect()
        env.manager.modify(tunnel, make_config("a"))
        assert tunnel.status == TunnelStatus.ACTIVE
        assert tunnel.session.stop_calls == 0

    def test_enabling_on_demand_waits_for_deactivation(self, env):
        tunnel = env.manager.add(make_config("a"))
        env.manager.start_activation(tunnel)
        tunnel.session.connect()

        env.manager.modify(tunnel, make_config("a"), on_demand_enabled=True)
        assert tunnel.session.stop_calls == 1
        assert not tunnel.profile.is_on_demand_enabled

        tunnel.session.disconnect()
        assert tunnel.profile.is_on_demand_enabled
        assert env.store.load_all()[0].is_on_demand_enabled


def test_runtime_configuration_overlays_live_stats(env):
    tunnel = env.manager.add(make_config("a"))
    env.manager.start_activation(tunnel)
    tunnel.session.connect()
    tunnel.session.runtime = ("private_key=" + "01" * 32 + "\n"
                              "public_key=" + "02" * 32 + "\n"
                              "endpoint=203.0.113.1:51820\nallowed_ip=0.0.0.0/0\nrx_bytes=42\n\n")
    config = tunnel.runtime_configuration(env.credentials)
    assert config.peers[0].rx_bytes == 42
    assert [str(a) for a in config.interface.addresses] == ["10.0.0.2/32"]
    assert config.name == "a"
