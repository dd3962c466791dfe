"""
Stored VPN profiles and the sessions that run them.

A profile is what the host VPN subsystem persists for each tunnel: a display
name, flags, and a reference into the credential store holding the wg-quick
text. A session is the live connection for one profile.
"""
import copy
import json
import logging
import os
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from typing import Callable, Dict, List, Optional

from . import wgquick
from .errors import AlertText, ParseError, ProfileStoreError
from .keychain import CredentialStore
from .model import TunnelConfiguration
from .status import SessionStatus

logger = logging.getLogger(__name__)


def server_address_for(config: TunnelConfiguration) -> str:
    endpoints = [peer.endpoint for peer in config.peers if peer.endpoint is not None]
    if not endpoints:
        return "Unspecified"
    if len(endpoints) == 1:
        return str(endpoints[0])
    return "Multiple endpoints"


@dataclass
class TunnelProfile:
    name: str
    config_reference: Optional[bytes] = None
    server_address: str = "Unspecified"
    is_enabled: bool = True
    is_on_demand_enabled: bool = False
    on_demand_rules: List[dict] = field(default_factory=list)
    identifier: str = field(default_factory=lambda: uuid.uuid4().hex)

    @classmethod
    def from_configuration(cls, config: TunnelConfiguration, credentials: CredentialStore,
                           previous: Optional["TunnelProfile"] = None) -> "TunnelProfile":
        """
        Store the configuration text and return a profile pointing at it. Flags
        are carried over from ``previous``; its old blob is left for the caller
        to delete once the new profile is saved.
        """
        reference = credentials.make_reference(wgquick.serialize(config), config.name or "")
        profile = copy.deepcopy(previous) if previous is not None else cls(name=config.name or "")
        profile.name = config.name or ""
        profile.config_reference = reference
        profile.server_address = server_address_for(config)
        return profile

    def tunnel_configuration(self, credentials: CredentialStore) -> Optional[TunnelConfiguration]:
        if self.config_reference is None:
            return None
        text = credentials.open_reference(self.config_reference)
        if text is None:
            return None
        try:
            return wgquick.parse(text, name=self.name)
        except ParseError as e:
            logger.error("Stored configuration for '%s' is invalid: %s", self.name, e)
            return None

    def destroy_configuration_reference(self, credentials: CredentialStore):
        if self.config_reference is not None:
            credentials.delete_reference(self.config_reference)
            self.config_reference = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["config_reference"] = self.config_reference.decode() if self.config_reference else None
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "TunnelProfile":
        data = dict(data)
        if data.get("config_reference"):
            data["config_reference"] = data["config_reference"].encode()
        return cls(**data)


class ProfileStore(ABC):
    """Persistence for profiles. Every method raises ProfileStoreError on failure."""

    @abstractmethod
    def load_all(self) -> List[TunnelProfile]:
        pass

    @abstractmethod
    def save(self, profile: TunnelProfile) -> None:
        pass

    @abstractmethod
    def remove(self, profile: TunnelProfile) -> None:
        pass

    def reload(self, profile: TunnelProfile) -> TunnelProfile:
        for stored in self.load_all():
            if stored.identifier == profile.identifier:
                return stored
        raise ProfileStoreError(f"Profile '{profile.name}' no longer exists")


class InMemoryProfileStore(ProfileStore):
    def __init__(self, profiles=None):
        self._profiles: Dict[str, TunnelProfile] = {}
        self._lock = threading.Lock()
        for profile in profiles or []:
            self._profiles[profile.identifier] = copy.deepcopy(profile)

    def load_all(self) -> List[TunnelProfile]:
        with self._lock:
            return [copy.deepcopy(p) for p in self._profiles.values()]

    def save(self, profile: TunnelProfile) -> None:
        with self._lock:
            self._profiles[profile.identifier] = copy.deepcopy(profile)

    def remove(self, profile: TunnelProfile) -> None:
        with self._lock:
            if self._profiles.pop(profile.identifier, None) is None:
                raise ProfileStoreError(f"Profile '{profile.name}' does not exist")


class JsonProfileStore(ProfileStore):
    """Profiles kept as a JSON list in one file."""

    def __init__(self, path: str):
        self.path = path
        self._lock = threading.Lock()

    def _read(self) -> List[TunnelProfile]:
        if not os.path.exists(self.path):
            return []
        try:
            with open(self.path, "r") as f:
                return [TunnelProfile.from_dict(item) for item in json.load(f)]
        except (OSError, ValueError, TypeError) as e:
            raise ProfileStoreError(f"Unable to read profiles from {self.path}: {e}") from e

    def _write(self, profiles: List[TunnelProfile]):
        try:
            os.makedirs(os.path.dirname(os.path.abspath(self.path)), exist_ok=True)
            tmp_path = self.path + ".tmp"
            with open(tmp_path, "w") as f:
                json.dump([p.to_dict() for p in profiles], f, indent=2)
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise ProfileStoreError(f"Unable to write profiles to {self.path}: {e}") from e

    def load_all(self) -> List[TunnelProfile]:
        with self._lock:
            return self._read()

    def save(self, profile: TunnelProfile) -> None:
        with self._lock:
            profiles = [p for p in self._read() if p.identifier != profile.identifier]
            profiles.append(profile)
            self._write(profiles)

    def remove(self, profile: TunnelProfile) -> None:
        with self._lock:
            profiles = self._read()
            remaining = [p for p in profiles if p.identifier != profile.identifier]
            if len(remaining) == len(profiles):
                raise ProfileStoreError(f"Profile '{profile.name}' does not exist")
            self._write(remaining)


StatusObserver = Callable[["TunnelSession"], None]


class TunnelSession(ABC):
    """Live connection for one profile. Status changes are pushed to observers."""

    def __init__(self):
        self._observers: List[StatusObserver] = []
        self._status = SessionStatus.DISCONNECTED

    @property
    def status(self) -> SessionStatus:
        return self._status

    def add_status_observer(self, observer: StatusObserver):
        self._observers.append(observer)

    def _set_status(self, status: SessionStatus):
        if status == self._status:
            return
        self._status = status
        for observer in list(self._observers):
            observer(self)

    @abstractmethod
    def start_tunnel(self, options: Optional[dict] = None) -> None:
        """Ask the host to start the tunnel. Raises VPNSystemError when the request is refused."""
        pass

    @abstractmethod
    def stop_tunnel(self) -> None:
        pass

    def last_error_text(self, activation_attempt_id: Optional[str] = None) -> Optional[AlertText]:
        """Alert text for why the given activation attempt ended, if the provider recorded one."""
        return None

    def get_runtime_configuration(self) -> Optional[str]:
        return None
