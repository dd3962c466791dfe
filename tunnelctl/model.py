"""Value types describing a tunnel: interface, peers, endpoints and address ranges."""
from __future__ import annotations

import ipaddress
import string
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Union

from .errors import DuplicatePeerPublicKeyError
from .keys import PreSharedKey, PrivateKey, PublicKey

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

# Characters allowed in the host part of a URL
_HOST_ALLOWED = set(string.ascii_letters + string.digits + "-._~!$&'()*+,;=:[]%")


def _is_decimal(value: str) -> bool:
    return value.isascii() and value.isdigit()


def parse_ip_address(value: str) -> Optional[IPAddress]:
    try:
        return ipaddress.ip_address(value)
    except ValueError:
        return None


@dataclass(frozen=True)
class Endpoint:
    host: str
    port: int

    @classmethod
    def parse(cls, value: str) -> Optional["Endpoint"]:
        """Split ``host:port`` or ``[v6host]:port`` the way wg(8) does."""
        if not value:
            return None
        if value[0] == "[":
            end = value.find("]", 1)
            if end < 0 or end + 1 >= len(value) or value[end + 1] != ":":
                return None
            host, port_string = value[1:end], value[end + 2:]
        else:
            host, sep, port_string = value.partition(":")
            if not sep:
                return None
        if not _is_decimal(port_string) or int(port_string) > 65535:
            return None
        if not host or any(c not in _HOST_ALLOWED and not c.isalnum() for c in host):
            return None
        return cls(host=host, port=int(port_string))

    @property
    def address(self) -> Optional[IPAddress]:
        return parse_ip_address(self.host)

    def has_host_as_ip_address(self) -> bool:
        return self.address is not None

    def hostname(self) -> Optional[str]:
        return None if self.has_host_as_ip_address() else self.host

    def __str__(self):
        address = self.address
        if isinstance(address, ipaddress.IPv6Address):
            return f"[{address}]:{self.port}"
        if address is not None:
            return f"{address}:{self.port}"
        return f"{self.host}:{self.port}"


@dataclass(frozen=True)
class IPAddressRange:
    address: IPAddress
    network_prefix_length: int

    @classmethod
    def parse(cls, value: str) -> Optional["IPAddressRange"]:
        address_string, sep, prefix_string = value.rpartition("/")
        if not sep:
            address_string, prefix_string = value, ""
        address = parse_ip_address(address_string)
        if address is None:
            return None
        max_prefix = address.max_prefixlen
        if sep:
            if not _is_decimal(prefix_string) or int(prefix_string) > 255:
                return None
            prefix = min(int(prefix_string), max_prefix)
        else:
            prefix = max_prefix
        return cls(address=address, network_prefix_length=prefix)

    @property
    def is_ipv4(self) -> bool:
        return self.address.version == 4

    def subnet_mask(self) -> IPAddress:
        bits = self.address.max_prefixlen
        mask = ((1 << bits) - 1) ^ ((1 << (bits - self.network_prefix_length)) - 1)
        return ipaddress.ip_address(mask.to_bytes(bits // 8, "big"))

    def masked_address(self) -> IPAddress:
        raw = bytes(a & m for a, m in zip(self.address.packed, self.subnet_mask().packed))
        return ipaddress.ip_address(raw)

    def __str__(self):
        return f"{self.address}/{self.network_prefix_length}"


@dataclass(frozen=True)
class DNSServer:
    address: IPAddress

    @classmethod
    def parse(cls, value: str) -> Optional["DNSServer"]:
        address = parse_ip_address(value)
        return cls(address) if address is not None else None

    def __str__(self):
        return str(self.address)


# Obfuscation parameters passed through to the backend untouched, in wire order.
VENDOR_PARAMS_16 = ("jc", "jmin", "jmax", "s1", "s2")
VENDOR_PARAMS_32 = ("h1", "h2", "h3", "h4")
VENDOR_PARAMS = VENDOR_PARAMS_16 + VENDOR_PARAMS_32


@dataclass(eq=False)
class InterfaceConfiguration:
    private_key: PrivateKey
    addresses: List[IPAddressRange] = field(default_factory=list)
    listen_port: Optional[int] = None
    mtu: Optional[int] = None
    dns: List[DNSServer] = field(default_factory=list)
    dns_search: List[str] = field(default_factory=list)
    jc: Optional[int] = None
    jmin: Optional[int] = None
    jmax: Optional[int] = None
    s1: Optional[int] = None
    s2: Optional[int] = None
    h1: Optional[int] = None
    h2: Optional[int] = None
    h3: Optional[int] = None
    h4: Optional[int] = None

    def vendor_params(self):
        """(name, value) for each obfuscation parameter that is set, in wire order."""
        return [(name, getattr(self, name)) for name in VENDOR_PARAMS if getattr(self, name) is not None]

    def _family_ordered_addresses(self):
        return [a for a in self.addresses if a.is_ipv4] + [a for a in self.addresses if not a.is_ipv4]

    def __eq__(self, other):
        if not isinstance(other, InterfaceConfiguration):
            return NotImplemented
        return (self.private_key == other.private_key
                and self._family_ordered_addresses() == other._family_ordered_addresses()
                and self.listen_port == other.listen_port
                and self.mtu == other.mtu
                and self.dns == other.dns
                and self.dns_search == other.dns_search
                and self.vendor_params() == other.vendor_params())


@dataclass(eq=False)
class PeerConfiguration:
    public_key: PublicKey
    preshared_key: Optional[PreSharedKey] = None
    allowed_ips: List[IPAddressRange] = field(default_factory=list)
    endpoint: Optional[Endpoint] = None
    persistent_keepalive: Optional[int] = None
    # Runtime statistics, only ever filled in from the backend
    rx_bytes: Optional[int] = None
    tx_bytes: Optional[int] = None
    last_handshake_time: Optional[datetime] = None

    def _identity(self):
        return (self.public_key, self.preshared_key, frozenset(self.allowed_ips),
                self.endpoint, self.persistent_keepalive)

    def __eq__(self, other):
        if not isinstance(other, PeerConfiguration):
            return NotImplemented
        return self._identity() == other._identity()

    def __hash__(self):
        return hash(self._identity())


@dataclass(eq=False)
class TunnelConfiguration:
    interface: InterfaceConfiguration
    peers: List[PeerConfiguration] = field(default_factory=list)
    name: Optional[str] = None

    def __post_init__(self):
        seen = set()
        for peer in self.peers:
            if peer.public_key in seen:
                raise DuplicatePeerPublicKeyError(peer.public_key.base64_key)
            seen.add(peer.public_key)

    def __eq__(self, other):
        if not isinstance(other, TunnelConfiguration):
            return NotImplemented
        return (self.name == other.name
                and self.interface == other.interface
                and set(self.peers) == set(other.peers))
