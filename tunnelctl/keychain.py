"""
Credential store for tunnel configuration blobs. Callers only ever hold an
opaque reference; the configuration text is read back through ``open_reference``.
"""
import logging
import os
import secrets
import threading
from abc import ABC, abstractmethod
from typing import Dict, Iterable, Optional

from .errors import CredentialStoreError

logger = logging.getLogger(__name__)


class CredentialStore(ABC):
    @abstractmethod
    def make_reference(self, value: str, name: str) -> bytes:
        """Store ``value`` and return a reference to it."""
        pass

    @abstractmethod
    def open_reference(self, reference: bytes) -> Optional[str]:
        pass

    @abstractmethod
    def delete_reference(self, reference: bytes) -> None:
        pass

    @abstractmethod
    def all_references(self) -> Iterable[bytes]:
        pass

    def verify_reference(self, reference: bytes) -> bool:
        return self.open_reference(reference) is not None

    def delete_references(self, except_references: Iterable[bytes]) -> None:
        keep = set(except_references)
        for reference in list(self.all_references()):
            if reference not in keep:
                logger.info("Deleting orphaned credential reference")
                self.delete_reference(reference)


class InMemoryCredentialStore(CredentialStore):
    def __init__(self):
        self._items: Dict[bytes, str] = {}
        self._lock = threading.Lock()

    def make_reference(self, value: str, name: str) -> bytes:
        reference = secrets.token_hex(16).encode()
        with self._lock:
            self._items[reference] = value
        return reference

    def open_reference(self, reference: bytes) -> Optional[str]:
        with self._lock:
            return self._items.get(reference)

    def delete_reference(self, reference: bytes) -> None:
        with self._lock:
            self._items.pop(reference, None)

    def all_references(self) -> Iterable[bytes]:
        with self._lock:
            return list(self._items)


class FileCredentialStore(CredentialStore):
    """One file per reference in a private directory, readable by the owner only."""

    def __init__(self, directory: str):
        self.directory = directory
        try:
            os.makedirs(directory, mode=0o700, exist_ok=True)
        except OSError as e:
            raise CredentialStoreError(f"Cannot create credential directory {directory}: {e}") from e

    def _path(self, reference: bytes) -> str:
        name = reference.decode("ascii", errors="replace")
        if not (name.isascii() and name.isalnum()):
            raise CredentialStoreError("Malformed credential reference")
        return os.path.join(self.directory, name + ".conf")

    def make_reference(self, value: str, name: str) -> bytes:
        reference = secrets.token_hex(16).encode()
        path = self._path(reference)
        try:
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
            with os.fdopen(fd, "w") as f:
                f.write(value)
        except OSError as e:
            raise CredentialStoreError(f"Unable to store configuration for '{name}': {e}") from e
        return reference

    def open_reference(self, reference: bytes) -> Optional[str]:
        try:
            with open(self._path(reference), "r") as f:
                return f.read()
        except (OSError, UnicodeDecodeError, CredentialStoreError):
            return None

    def delete_reference(self, reference: bytes) -> None:
        try:
            os.remove(self._path(reference))
        except FileNotFoundError:
            pass
        except OSError as e:
            raise CredentialStoreError(f"Unable to delete configuration: {e}") from e

    def all_references(self) -> Iterable[bytes]:
        return [name[:-5].encode() for name in os.listdir(self.directory) if name.endswith(".conf")]
