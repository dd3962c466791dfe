import logging
import socket

from .path_monitor import Path, PathStatus

logger = logging.getLogger(__name__)

# Any routable address works, nothing is sent on a connected UDP socket
PROBE_ADDRESSES = (("192.0.2.1", 53, socket.AF_INET), ("2001:db8::1", 53, socket.AF_INET6))


def reachable_families():
    families = []
    for address, port, family in PROBE_ADDRESSES:
        try:
            with socket.socket(family, socket.SOCK_DGRAM) as s:
                s.connect((address, port))
            families.append("ipv4" if family == socket.AF_INET else "ipv6")
        except OSError:
            continue
    return families


def is_network_reachable() -> bool:
    """True when the host has a route to the outside world in at least one family."""
    reachable = bool(reachable_families())
    if not reachable:
        logger.info("Network is unreachable")
    return reachable


def current_path() -> Path:
    families = reachable_families()
    return Path(PathStatus.SATISFIED if families else PathStatus.UNSATISFIED, tuple(families))
