import logging
import socket
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional, Sequence, Union

from .errors import DNSResolutionError
from .model import Endpoint

logger = logging.getLogger(__name__)

# Upper bound on concurrent getaddrinfo calls for one batch
MAX_RESOLVER_THREADS = 8

Resolution = Union[Endpoint, DNSResolutionError]


def _gai_error(host: str, exc: socket.gaierror) -> DNSResolutionError:
    code = exc.errno if exc.errno is not None else 0
    description = exc.strerror or str(exc)
    return DNSResolutionError(host, code, description)


def resolve(endpoint: Endpoint) -> Endpoint:
    """Resolve a name endpoint to a literal one, preferring IPv4. Literal endpoints are returned as is."""
    if endpoint.has_host_as_ip_address():
        return endpoint
    try:
        # AI_ALL so v4 addresses are returned even on DNS64 networks
        infos = socket.getaddrinfo(endpoint.host, str(endpoint.port), socket.AF_UNSPEC,
                                   socket.SOCK_DGRAM, socket.IPPROTO_UDP, socket.AI_ALL)
    except socket.gaierror as e:
        raise _gai_error(endpoint.host, e) from e
    except UnicodeError as e:
        # IDNA rejects empty or over-long labels before any lookup happens
        raise DNSResolutionError(endpoint.host, socket.EAI_NONAME, str(e)) from e

    ipv6_address = None
    for family, _, _, _, sockaddr in infos:
        if family == socket.AF_INET:
            return Endpoint(sockaddr[0], endpoint.port)
        if family == socket.AF_INET6 and ipv6_address is None:
            ipv6_address = sockaddr[0]
    if ipv6_address is not None:
        return Endpoint(ipv6_address, endpoint.port)
    raise DNSResolutionError(endpoint.host, socket.EAI_NONAME, "no usable address")


def reresolve(endpoint: Endpoint) -> Endpoint:
    """
    Look the endpoint up again without AI_ALL so a DNS64 resolver can
    synthesize an address for the current network. Used after path changes.
    """
    host = str(endpoint.address) if endpoint.address is not None else endpoint.host
    try:
        infos = socket.getaddrinfo(host, str(endpoint.port), socket.AF_UNSPEC,
                                   socket.SOCK_DGRAM, socket.IPPROTO_UDP, 0)
    except socket.gaierror as e:
        raise _gai_error(host, e) from e
    except UnicodeError as e:
        raise DNSResolutionError(host, socket.EAI_NONAME, str(e)) from e
    for family, _, _, _, sockaddr in infos:
        if family in (socket.AF_INET, socket.AF_INET6):
            return Endpoint(sockaddr[0], endpoint.port)
    raise DNSResolutionError(host, socket.EAI_NONAME, "no usable address")


def _resolve_slot(endpoint: Optional[Endpoint]) -> Optional[Resolution]:
    if endpoint is None:
        return None
    try:
        return resolve(endpoint)
    except DNSResolutionError as e:
        logger.debug("Resolution of %s failed: %s", endpoint.host, e.description)
        return e


def resolve_batch(endpoints: Sequence[Optional[Endpoint]]) -> List[Optional[Resolution]]:
    """
    Resolve every endpoint, keeping input order. Each slot of the result is
    None (no endpoint), a literal Endpoint, or the DNSResolutionError for
    that host. Blocks until every lookup has finished.
    """
    if all(e is None or e.has_host_as_ip_address() for e in endpoints):
        return list(endpoints)

    workers = min(MAX_RESOLVER_THREADS, sum(1 for e in endpoints if e is not None and not e.has_host_as_ip_address()))
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="dns-resolver") as pool:
        return list(pool.map(_resolve_slot, endpoints))
