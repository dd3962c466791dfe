"""
The tunnels manager owns the list of tunnels, keeps them sorted by name and
makes sure at most one of them is operational at a time.

Session status changes arrive on whatever thread the session runs on; every
entry point takes the manager's lock so list changes and status handling are
serialized.
"""
import copy
import logging
import re
import threading
import uuid
from typing import Callable, Iterable, List, Optional, Tuple

from . import connectivity, uapi
from .errors import (
    ActivationAttemptError,
    ActivationError,
    ActivationFailedError,
    ActivationFailedNoInternetError,
    ActivationFailedWithExtensionError,
    AnotherTunnelOperationalError,
    CredentialStoreError,
    FailedBecauseOfTooManyErrorsError,
    FailedWhileLoadingError,
    FailedWhileSavingError,
    FailedWhileStartingError,
    ParseError,
    ProfileStoreError,
    SystemErrorOnAddTunnel,
    SystemErrorOnListingTunnels,
    SystemErrorOnModifyTunnel,
    SystemErrorOnRemoveTunnel,
    TunnelAlreadyExistsWithThatNameError,
    TunnelIsNotInactiveError,
    TunnelNameEmptyError,
    TunnelsManagerError,
    VPNSystemError,
)
from .keychain import CredentialStore
from .model import TunnelConfiguration
from .profiles import ProfileStore, TunnelProfile, TunnelSession
from .status import SessionStatus, TunnelStatus

logger = logging.getLogger(__name__)

MAX_ACTIVATION_ATTEMPTS = 8


def tunnel_sort_key(name: str):
    """Case-insensitive and numeric-aware: "tun2" sorts before "Tun10"."""
    parts = re.split(r"(\d+)", name)
    return [int(part) if i % 2 else part.casefold() for i, part in enumerate(parts)], name


class TunnelsListListener:
    def tunnel_added(self, index: int):
        pass

    def tunnel_modified(self, index: int):
        pass

    def tunnel_moved(self, old_index: int, new_index: int):
        pass

    def tunnel_removed(self, index: int, tunnel: "TunnelContainer"):
        pass


class TunnelActivationListener:
    def activation_attempt_failed(self, tunnel: "TunnelContainer", error: ActivationAttemptError):
        pass

    def activation_attempt_succeeded(self, tunnel: "TunnelContainer"):
        pass

    def activation_failed(self, tunnel: "TunnelContainer", error: ActivationError):
        pass

    def activation_succeeded(self, tunnel: "TunnelContainer"):
        pass


StatusListener = Callable[["TunnelContainer", TunnelStatus], None]


class TunnelContainer:
    """One tunnel as seen by the manager: its stored profile, its session and its status."""

    def __init__(self, profile: TunnelProfile):
        self.profile = profile
        self.name = profile.name
        self.session: Optional[TunnelSession] = None
        self._status = TunnelStatus.INACTIVE
        self.is_attempting_activation = False
        self.activation_attempt_id: Optional[str] = None
        # runs once the next time the session reports disconnected
        self.on_deactivated: Optional[Callable[[], None]] = None
        self._status_listeners: List[StatusListener] = []

    def attach_session(self, session: TunnelSession):
        self.session = session
        self._status = TunnelStatus.from_session_status(session.status)

    @property
    def status(self) -> TunnelStatus:
        return self._status

    @status.setter
    def status(self, value: TunnelStatus):
        if value == self._status:
            return
        self._status = value
        for listener in list(self._status_listeners):
            listener(self, value)

    def add_status_listener(self, listener: StatusListener):
        self._status_listeners.append(listener)

    def remove_status_listener(self, listener: StatusListener):
        if listener in self._status_listeners:
            self._status_listeners.remove(listener)

    @property
    def is_activate_on_demand_enabled(self) -> bool:
        return self.profile.is_on_demand_enabled and self.profile.is_enabled

    def tunnel_configuration(self, credentials: CredentialStore) -> Optional[TunnelConfiguration]:
        return self.profile.tunnel_configuration(credentials)

    def runtime_configuration(self, credentials: CredentialStore) -> Optional[TunnelConfiguration]:
        """The stored configuration overlaid with live peer statistics when the tunnel is up."""
        base = self.tunnel_configuration(credentials)
        if self.status == TunnelStatus.INACTIVE or self.session is None:
            return base
        text = self.session.get_runtime_configuration()
        if not text:
            return base
        try:
            return uapi.parse_uapi_config(text, base=base)
        except ParseError as e:
            logger.warning("Runtime configuration for '%s' could not be parsed: %s", self.name, e)
            return base

    def refresh_status(self):
        if self.status == TunnelStatus.RESTARTING:
            return
        if self.status == TunnelStatus.WAITING and self.session.status == SessionStatus.DISCONNECTED:
            return
        self.status = TunnelStatus.from_session_status(self.session.status)

    def __repr__(self):
        return f"TunnelContainer(name={self.name!r}, status={self.status})"


SessionFactory = Callable[[TunnelContainer], TunnelSession]


class TunnelsManager:
    def __init__(self, profiles: Iterable[TunnelProfile], store: ProfileStore,
                 credentials: CredentialStore, session_factory: SessionFactory,
                 is_network_reachable: Callable[[], bool] = connectivity.is_network_reachable):
        self.store = store
        self.credentials = credentials
        self._session_factory = session_factory
        self._is_network_reachable = is_network_reachable
        self._lock = threading.RLock()
        self._list_listeners: List[TunnelsListListener] = []
        self._activation_listeners: List[TunnelActivationListener] = []
        # tunnel whose deactivation the waiting tunnel is queued behind
        self._waitee: Optional[TunnelContainer] = None

        self._tunnels = [self._make_container(profile) for profile in profiles]
        self._sort()

    @classmethod
    def create(cls, store: ProfileStore, credentials: CredentialStore,
               session_factory: SessionFactory, **kwargs) -> "TunnelsManager":
        """Load every stored profile, dropping those whose configuration blob is gone."""
        try:
            profiles = store.load_all()
        except ProfileStoreError as e:
            raise SystemErrorOnListingTunnels(e) from e

        valid = []
        references = set()
        for profile in profiles:
            reference = profile.config_reference
            if reference is not None and credentials.verify_reference(reference):
                valid.append(profile)
                references.add(reference)
                continue
            logger.info("Removing orphaned profile '%s'", profile.name)
            try:
                store.remove(profile)
            except ProfileStoreError as e:
                logger.error("Unable to remove orphaned profile '%s': %s", profile.name, e)
        credentials.delete_references(references)
        return cls(valid, store, credentials, session_factory, **kwargs)

    # --- Listeners ----------------------------------------------------------------

    def add_list_listener(self, listener: TunnelsListListener):
        self._list_listeners.append(listener)

    def add_activation_listener(self, listener: TunnelActivationListener):
        self._activation_listeners.append(listener)

    def _notify_list(self, method: str, *args):
        for listener in list(self._list_listeners):
            getattr(listener, method)(*args)

    def _notify_activation(self, method: str, *args):
        for listener in list(self._activation_listeners):
            getattr(listener, method)(*args)

    # --- Accessors ----------------------------------------------------------------

    def number_of_tunnels(self) -> int:
        return len(self._tunnels)

    def tunnel_at(self, index: int) -> TunnelContainer:
        return self._tunnels[index]

    def tunnel_named(self, name: str) -> Optional[TunnelContainer]:
        return next((t for t in self._tunnels if t.name == name), None)

    def index_of(self, tunnel: TunnelContainer) -> Optional[int]:
        for index, candidate in enumerate(self._tunnels):
            if candidate is tunnel:
                return index
        return None

    def waiting_tunnel(self) -> Optional[TunnelContainer]:
        return next((t for t in self._tunnels if t.status == TunnelStatus.WAITING), None)

    def tunnel_in_operation(self) -> Optional[TunnelContainer]:
        waiting = self.waiting_tunnel()
        if waiting is not None:
            return waiting
        return next((t for t in self._tunnels if t.status != TunnelStatus.INACTIVE), None)

    def refresh_statuses(self):
        with self._lock:
            for tunnel in self._tunnels:
                tunnel.refresh_status()

    # --- List management ----------------------------------------------------------

    def add(self, config: TunnelConfiguration, on_demand_enabled: bool = False) -> TunnelContainer:
        with self._lock:
            name = config.name or ""
            if not name:
                raise TunnelNameEmptyError()
            if self.tunnel_named(name) is not None:
                raise TunnelAlreadyExistsWithThatNameError(name)

            try:
                profile = TunnelProfile.from_configuration(config, self.credentials)
            except CredentialStoreError as e:
                raise SystemErrorOnAddTunnel(e) from e
            profile.is_enabled = True
            profile.is_on_demand_enabled = on_demand_enabled

            try:
                self.store.save(profile)
            except ProfileStoreError as e:
                profile.destroy_configuration_reference(self.credentials)
                raise SystemErrorOnAddTunnel(e) from e

            tunnel = self._make_container(profile)
            self._tunnels.append(tunnel)
            self._sort()
            logger.info("Added tunnel '%s'", name)
            self._notify_list("tunnel_added", self.index_of(tunnel))
            return tunnel

    def add_multiple(self, configs: Iterable[TunnelConfiguration]) -> Tuple[int, Optional[TunnelsManagerError]]:
        """Add what can be added. Returns the count added and the last error seen."""
        added = 0
        last_error = None
        for config in configs:
            try:
                self.add(config)
                added += 1
            except TunnelsManagerError as e:
                logger.warning("Skipping '%s': %s", config.name, e)
                last_error = e
        return added, last_error

    def modify(self, tunnel: TunnelContainer, config: TunnelConfiguration,
               on_demand_enabled: Optional[bool] = None):
        with self._lock:
            name = config.name or ""
            if not name:
                raise TunnelNameEmptyError()
            is_name_changed = name != tunnel.name
            if is_name_changed and self.tunnel_named(name) is not None:
                raise TunnelAlreadyExistsWithThatNameError(name)

            is_introducing_on_demand = (
                on_demand_enabled is True
                and not tunnel.profile.is_on_demand_enabled
                and tunnel.status not in (TunnelStatus.INACTIVE, TunnelStatus.DEACTIVATING)
            )
            if is_introducing_on_demand:
                # the host only applies new on-demand rules after a reconnect
                def resume():
                    try:
                        self.modify(tunnel, config, on_demand_enabled=True)
                    except TunnelsManagerError as e:
                        logger.error("Deferred modification of '%s' failed: %s", tunnel.name, e)
                tunnel.on_deactivated = resume
                self.start_deactivation(tunnel)
                return
            tunnel.on_deactivated = None

            old_config = tunnel.tunnel_configuration(self.credentials)
            is_config_changed = old_config != config
            old_reference = tunnel.profile.config_reference

            try:
                if is_config_changed:
                    profile = TunnelProfile.from_configuration(config, self.credentials, previous=tunnel.profile)
                else:
                    profile = copy.deepcopy(tunnel.profile)
                    profile.name = name
            except CredentialStoreError as e:
                raise SystemErrorOnModifyTunnel(e) from e
            profile.is_enabled = True
            if on_demand_enabled is not None:
                profile.is_on_demand_enabled = on_demand_enabled

            try:
                self.store.save(profile)
            except ProfileStoreError as e:
                if is_config_changed:
                    profile.destroy_configuration_reference(self.credentials)
                raise SystemErrorOnModifyTunnel(e) from e
            if is_config_changed and old_reference is not None:
                self.credentials.delete_reference(old_reference)

            tunnel.profile = profile
            if is_name_changed:
                old_index = self.index_of(tunnel)
                tunnel.name = name
                self._sort()
                self._notify_list("tunnel_moved", old_index, self.index_of(tunnel))
            self._notify_list("tunnel_modified", self.index_of(tunnel))
            logger.info("Modified tunnel '%s'", name)

            if is_config_changed and tunnel.status in (
                    TunnelStatus.ACTIVE, TunnelStatus.ACTIVATING, TunnelStatus.REASSERTING):
                tunnel.status = TunnelStatus.RESTARTING
                tunnel.session.stop_tunnel()

    def remove(self, tunnel: TunnelContainer):
        with self._lock:
            try:
                self.store.remove(tunnel.profile)
            except ProfileStoreError as e:
                raise SystemErrorOnRemoveTunnel(e) from e
            tunnel.profile.destroy_configuration_reference(self.credentials)
            index = self.index_of(tunnel)
            if index is not None:
                del self._tunnels[index]
                self._notify_list("tunnel_removed", index, tunnel)
            logger.info("Removed tunnel '%s'", tunnel.name)

    def remove_multiple(self, tunnels: Iterable[TunnelContainer]):
        for tunnel in list(tunnels):
            self.remove(tunnel)

    def set_on_demand_enabled(self, enabled: bool, tunnel: TunnelContainer):
        with self._lock:
            if tunnel.is_activate_on_demand_enabled == enabled:
                return
            profile = copy.deepcopy(tunnel.profile)
            profile.is_enabled = True
            profile.is_on_demand_enabled = enabled
            try:
                self.store.save(profile)
            except ProfileStoreError as e:
                raise SystemErrorOnModifyTunnel(e) from e
            tunnel.profile = profile

    def reload(self):
        """Reconcile the list with the profile store after an outside change."""
        with self._lock:
            try:
                profiles = self.store.load_all()
            except ProfileStoreError as e:
                raise SystemErrorOnListingTunnels(e) from e
            by_identifier = {p.identifier: p for p in profiles}

            for index in reversed(range(len(self._tunnels))):
                tunnel = self._tunnels[index]
                if tunnel.profile.identifier not in by_identifier:
                    del self._tunnels[index]
                    self._notify_list("tunnel_removed", index, tunnel)

            for profile in profiles:
                tunnel = next((t for t in self._tunnels if t.profile.identifier == profile.identifier), None)
                if tunnel is None:
                    tunnel = self._make_container(profile)
                    self._tunnels.append(tunnel)
                    self._sort()
                    self._notify_list("tunnel_added", self.index_of(tunnel))
                    continue
                if profile.name != tunnel.name:
                    old_index = self.index_of(tunnel)
                    tunnel.name = profile.name
                    self._sort()
                    self._notify_list("tunnel_moved", old_index, self.index_of(tunnel))
                if profile != tunnel.profile:
                    tunnel.profile = profile
                    self._notify_list("tunnel_modified", self.index_of(tunnel))
                tunnel.refresh_status()

    # --- Activation -----------------------------------------------------------------

    def start_activation(self, tunnel: TunnelContainer):
        """Activate ``tunnel``. Refused while any other tunnel is operational."""
        with self._lock:
            if self.index_of(tunnel) is None:
                return
            if tunnel.status != TunnelStatus.INACTIVE:
                self._reject(tunnel, TunnelIsNotInactiveError())
            blocker = next((t for t in self._tunnels
                            if t is not tunnel and t.status != TunnelStatus.INACTIVE), None)
            if blocker is not None:
                self._reject(tunnel, AnotherTunnelOperationalError(blocker.name))
            self._activate(tunnel)

    def switch_to(self, tunnel: TunnelContainer):
        """Deactivate whichever tunnel is operational, then activate ``tunnel``."""
        with self._lock:
            if self.index_of(tunnel) is None:
                return
            if tunnel.status != TunnelStatus.INACTIVE:
                self._reject(tunnel, TunnelIsNotInactiveError())

            waiting = self.waiting_tunnel()
            if waiting is not None:
                waiting.status = TunnelStatus.INACTIVE

            in_operation = next((t for t in self._tunnels
                                 if t is not tunnel and t.status != TunnelStatus.INACTIVE), None)
            if in_operation is None:
                self._activate(tunnel)
                return

            tunnel.status = TunnelStatus.WAITING
            self._waitee = in_operation
            if in_operation.status == TunnelStatus.DEACTIVATING:
                return
            if in_operation.is_activate_on_demand_enabled:
                # on-demand would bring it straight back up
                self.set_on_demand_enabled(False, in_operation)
            self.start_deactivation(in_operation)

    def start_deactivation(self, tunnel: TunnelContainer):
        with self._lock:
            tunnel.is_attempting_activation = False
            if tunnel.status in (TunnelStatus.INACTIVE, TunnelStatus.DEACTIVATING):
                return
            logger.info("Deactivating tunnel '%s'", tunnel.name)
            tunnel.session.stop_tunnel()

    def _reject(self, tunnel: TunnelContainer, error: ActivationAttemptError):
        self._notify_activation("activation_attempt_failed", tunnel, error)
        raise error

    def _activate(self, tunnel: TunnelContainer):
        last_error: Optional[Exception] = None
        for attempt in range(MAX_ACTIVATION_ATTEMPTS):
            tunnel.status = TunnelStatus.ACTIVATING

            if not tunnel.profile.is_enabled:
                logger.debug("Tunnel '%s' is disabled, enabling and saving (attempt %d)", tunnel.name, attempt + 1)
                tunnel.profile.is_enabled = True
                try:
                    self.store.save(tunnel.profile)
                except ProfileStoreError as e:
                    logger.error("Saving '%s' before activation failed: %s", tunnel.name, e)
                    tunnel.status = TunnelStatus.INACTIVE
                    self._reject(tunnel, FailedWhileSavingError(e))
                last_error = VPNSystemError(VPNSystemError.CONFIGURATION_UNKNOWN)
                continue

            tunnel.is_attempting_activation = True
            tunnel.activation_attempt_id = uuid.uuid4().hex
            logger.info("Starting tunnel '%s' (attempt %d)", tunnel.name, attempt + 1)
            try:
                tunnel.session.start_tunnel({"activationAttemptId": tunnel.activation_attempt_id})
            except VPNSystemError as e:
                last_error = e
                if e.code not in (VPNSystemError.CONFIGURATION_INVALID, VPNSystemError.CONFIGURATION_STALE):
                    tunnel.is_attempting_activation = False
                    tunnel.status = TunnelStatus.INACTIVE
                    self._reject(tunnel, FailedWhileStartingError(e))
                logger.debug("Profile for '%s' is %s, reloading", tunnel.name, e.code)
                try:
                    tunnel.profile = self.store.reload(tunnel.profile)
                except ProfileStoreError as reload_error:
                    tunnel.is_attempting_activation = False
                    tunnel.status = TunnelStatus.INACTIVE
                    self._reject(tunnel, FailedWhileLoadingError(reload_error))
                continue

            self._notify_activation("activation_attempt_succeeded", tunnel)
            return

        logger.error("Giving up on '%s' after %d attempts", tunnel.name, MAX_ACTIVATION_ATTEMPTS)
        tunnel.is_attempting_activation = False
        tunnel.status = TunnelStatus.INACTIVE
        self._reject(tunnel, FailedBecauseOfTooManyErrorsError(last_error))

    def _activate_from_callback(self, tunnel: TunnelContainer):
        try:
            self._activate(tunnel)
        except ActivationAttemptError as e:
            # listeners were told in _reject
            logger.error("Activating '%s' failed: %s", tunnel.name, e)

    # --- Session status -------------------------------------------------------------

    def _make_container(self, profile: TunnelProfile) -> TunnelContainer:
        tunnel = TunnelContainer(profile)
        session = self._session_factory(tunnel)
        tunnel.attach_session(session)
        session.add_status_observer(lambda _session, t=tunnel: self._handle_session_status(t))
        return tunnel

    def _handle_session_status(self, tunnel: TunnelContainer):
        with self._lock:
            session_status = tunnel.session.status
            logger.debug("Session for '%s' is now %s", tunnel.name, session_status.value)

            if tunnel.is_attempting_activation:
                if session_status == SessionStatus.CONNECTED:
                    tunnel.is_attempting_activation = False
                    self._notify_activation("activation_succeeded", tunnel)
                elif session_status == SessionStatus.DISCONNECTED:
                    tunnel.is_attempting_activation = False
                    self._notify_activation("activation_failed", tunnel, self._activation_error_for(tunnel))

            if session_status == SessionStatus.DISCONNECTED and tunnel.on_deactivated is not None:
                callback, tunnel.on_deactivated = tunnel.on_deactivated, None
                callback()

            if tunnel.status == TunnelStatus.RESTARTING and session_status == SessionStatus.DISCONNECTED:
                self._activate_from_callback(tunnel)
                return

            tunnel.refresh_status()

            if tunnel is self._waitee and tunnel.status == TunnelStatus.INACTIVE:
                self._waitee = None
                waiting = self.waiting_tunnel()
                if waiting is not None:
                    self._activate_from_callback(waiting)

    def _activation_error_for(self, tunnel: TunnelContainer) -> ActivationError:
        was_on_demand_enabled = tunnel.is_activate_on_demand_enabled
        if not self._is_network_reachable():
            return ActivationFailedNoInternetError(was_on_demand_enabled)
        alert = tunnel.session.last_error_text(tunnel.activation_attempt_id)
        if alert is not None:
            title, message = alert
            return ActivationFailedWithExtensionError(title, message, was_on_demand_enabled)
        return ActivationFailedError(was_on_demand_enabled)

    def _sort(self):
        self._tunnels.sort(key=lambda t: tunnel_sort_key(t.name))
