import ctypes
import ctypes.util
from typing import Optional

from .base import BackendLogger, WireGuardBackend


LOGGER_CALLBACK = ctypes.CFUNCTYPE(None, ctypes.c_void_p, ctypes.c_int, ctypes.c_char_p)


def find_libwg(path: Optional[str] = None) -> str:
    found = path or ctypes.util.find_library("wg-go") or ctypes.util.find_library("wg")
    if not found:
        raise RuntimeError("libwg-go not found. Build wireguard-go's libwg-go or set TUNNELCTL_LIBWG.")
    return found


class LibWireGuardBackend(WireGuardBackend):
    """Binding to the wireguard-go bridge library (wgTurnOn, wgSetConfig, ...)."""

    def __init__(self, library_path: Optional[str] = None):
        self._lib = ctypes.CDLL(find_libwg(library_path))
        self._libc = ctypes.CDLL(ctypes.util.find_library("c"))
        self._callback = None
        self._declare()

    def _declare(self):
        lib = self._lib
        lib.wgTurnOn.argtypes = [ctypes.c_char_p, ctypes.c_int32]
        lib.wgTurnOn.restype = ctypes.c_int
        lib.wgTurnOff.argtypes = [ctypes.c_int]
        lib.wgTurnOff.restype = None
        lib.wgSetConfig.argtypes = [ctypes.c_int, ctypes.c_char_p]
        lib.wgSetConfig.restype = ctypes.c_int64
        # returned buffer is malloc'd by the library, released with free()
        lib.wgGetConfig.argtypes = [ctypes.c_int]
        lib.wgGetConfig.restype = ctypes.c_void_p
        lib.wgBumpSockets.argtypes = [ctypes.c_int]
        lib.wgBumpSockets.restype = None
        lib.wgDisableSomeRoamingForBrokenMobileSemantics.argtypes = [ctypes.c_int]
        lib.wgDisableSomeRoamingForBrokenMobileSemantics.restype = None
        lib.wgSetLogger.argtypes = [ctypes.c_void_p, LOGGER_CALLBACK]
        lib.wgSetLogger.restype = None
        lib.wgVersion.argtypes = []
        lib.wgVersion.restype = ctypes.c_char_p
        self._libc.free.argtypes = [ctypes.c_void_p]
        self._libc.free.restype = None

    def turn_on(self, settings: str, tun_fd: int) -> int:
        return self._lib.wgTurnOn(settings.encode(), tun_fd)

    def turn_off(self, handle: int) -> None:
        self._lib.wgTurnOff(handle)

    def set_config(self, handle: int, settings: str) -> int:
        return self._lib.wgSetConfig(handle, settings.encode())

    def get_config(self, handle: int) -> Optional[str]:
        pointer = self._lib.wgGetConfig(handle)
        if not pointer:
            return None
        try:
            return ctypes.string_at(pointer).decode()
        finally:
            self._libc.free(pointer)

    def bump_sockets(self, handle: int) -> None:
        self._lib.wgBumpSockets(handle)

    def disable_some_roaming_for_broken_mobile_semantics(self, handle: int) -> None:
        self._lib.wgDisableSomeRoamingForBrokenMobileSemantics(handle)

    def set_logger(self, log: Optional[BackendLogger]) -> None:
        if log is None:
            self._callback = LOGGER_CALLBACK()
        else:
            def _on_log(_context, level, message):
                log(level, (message or b"").decode(errors="replace").rstrip("\n"))
            self._callback = LOGGER_CALLBACK(_on_log)
        # keep a reference so the callback outlives this call
        self._lib.wgSetLogger(None, self._callback)

    def version(self) -> str:
        raw = self._lib.wgVersion()
        return raw.decode() if raw else "unknown"
