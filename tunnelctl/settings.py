"""
Turns a tunnel configuration plus its resolved endpoints into the two things
the host needs: the backend's key=value wire configuration and the network
settings (addresses, routes, DNS, MTU) for the tunnel device.
"""
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Tuple

from . import dns_resolver
from .errors import DNSResolutionError
from .model import Endpoint, TunnelConfiguration
from .platforms import DESKTOP, PlatformProfile


# The host wants a single remote address for display; a tunnel may have zero
# or many endpoints, so a placeholder that never routes is used instead.
TUNNEL_REMOTE_ADDRESS_PLACEHOLDER = "127.0.0.1"

ResolutionResults = List[Optional[dns_resolver.Resolution]]


@dataclass
class IPv4Route:
    destination_address: str
    subnet_mask: str
    gateway_address: Optional[str] = None


@dataclass
class IPv6Route:
    destination_address: str
    network_prefix_length: int
    gateway_address: Optional[str] = None


@dataclass
class IPv4Settings:
    addresses: List[str] = field(default_factory=list)
    subnet_masks: List[str] = field(default_factory=list)
    included_routes: List[IPv4Route] = field(default_factory=list)
    # host routes to peer endpoints that must keep using the underlying network
    excluded_routes: List[IPv4Route] = field(default_factory=list)


@dataclass
class IPv6Settings:
    addresses: List[str] = field(default_factory=list)
    network_prefix_lengths: List[int] = field(default_factory=list)
    included_routes: List[IPv6Route] = field(default_factory=list)
    excluded_routes: List[IPv6Route] = field(default_factory=list)


@dataclass
class DNSSettings:
    servers: List[str]
    search_domains: List[str] = field(default_factory=list)
    # [""] sends every query through the tunnel's resolvers
    match_domains: Optional[List[str]] = None


@dataclass
class NetworkSettings:
    tunnel_remote_address: str
    ipv4_settings: IPv4Settings
    ipv6_settings: IPv6Settings
    mtu: int
    dns_settings: Optional[DNSSettings] = None


class SettingsGenerator:
    def __init__(self, tunnel_configuration: TunnelConfiguration,
                 resolved_endpoints: Sequence[Optional[Endpoint]],
                 platform: PlatformProfile = DESKTOP,
                 reresolve: Callable[[Endpoint], Endpoint] = dns_resolver.reresolve):
        if len(resolved_endpoints) != len(tunnel_configuration.peers):
            raise ValueError("Expected one resolved endpoint slot per peer")
        self.tunnel_configuration = tunnel_configuration
        self.resolved_endpoints = list(resolved_endpoints)
        self.platform = platform
        self._reresolve = reresolve

    def _endpoint_for_wire(self, endpoint: Optional[Endpoint]):
        """Returns (endpoint or None, resolution result for the caller's log)."""
        if endpoint is None:
            return None, None
        assert endpoint.has_host_as_ip_address(), f"Endpoint {endpoint} is not resolved"
        if self.platform.reresolve_endpoints:
            try:
                endpoint = self._reresolve(endpoint)
            except DNSResolutionError as e:
                return None, e
        return endpoint, endpoint

    def endpoint_uapi_configuration(self) -> Tuple[str, ResolutionResults]:
        """Public key and endpoint per peer, for refreshing reachability without touching topology."""
        lines = []
        results: ResolutionResults = []
        for peer, resolved in zip(self.tunnel_configuration.peers, self.resolved_endpoints):
            lines.append(f"public_key={peer.public_key.hex_key}")
            endpoint, result = self._endpoint_for_wire(resolved)
            if endpoint is not None:
                lines.append(f"endpoint={endpoint}")
            results.append(result)
        return _join(lines), results

    def uapi_configuration(self) -> Tuple[str, ResolutionResults]:
        interface = self.tunnel_configuration.interface
        lines = [f"private_key={interface.private_key.hex_key}"]
        if interface.listen_port is not None:
            lines.append(f"listen_port={interface.listen_port}")
        for name, value in interface.vendor_params():
            lines.append(f"{name}={value}")
        if self.tunnel_configuration.peers:
            lines.append("replace_peers=true")

        results: ResolutionResults = []
        for peer, resolved in zip(self.tunnel_configuration.peers, self.resolved_endpoints):
            lines.append(f"public_key={peer.public_key.hex_key}")
            if peer.preshared_key is not None:
                lines.append(f"preshared_key={peer.preshared_key.hex_key}")
            endpoint, result = self._endpoint_for_wire(resolved)
            if endpoint is not None:
                lines.append(f"endpoint={endpoint}")
            results.append(result)
            lines.append(f"persistent_keepalive_interval={peer.persistent_keepalive or 0}")
            if peer.allowed_ips:
                lines.append("replace_allowed_ips=true")
                lines.extend(f"allowed_ip={allowed_ip}" for allowed_ip in peer.allowed_ips)
        return _join(lines), results

    def generate_network_settings(self) -> NetworkSettings:
        interface = self.tunnel_configuration.interface

        dns_settings = None
        if interface.dns or interface.dns_search:
            dns_settings = DNSSettings(
                servers=[str(server) for server in interface.dns],
                search_domains=list(interface.dns_search),
                match_domains=[""] if interface.dns else None,
            )

        mtu = interface.mtu or self.platform.default_mtu

        ipv4 = IPv4Settings()
        ipv6 = IPv6Settings()
        for address_range in interface.addresses:
            if address_range.is_ipv4:
                ipv4.addresses.append(str(address_range.address))
                ipv4.subnet_masks.append(str(address_range.subnet_mask()))
            else:
                prefix = address_range.network_prefix_length
                if self.platform.ipv6_prefix_clamp is not None:
                    prefix = min(prefix, self.platform.ipv6_prefix_clamp)
                ipv6.addresses.append(str(address_range.address))
                ipv6.network_prefix_lengths.append(prefix)

        ipv4.included_routes, ipv6.included_routes = self._included_routes()
        ipv4.excluded_routes, ipv6.excluded_routes = self._excluded_routes()

        return NetworkSettings(
            tunnel_remote_address=TUNNEL_REMOTE_ADDRESS_PLACEHOLDER,
            ipv4_settings=ipv4,
            ipv6_settings=ipv6,
            mtu=mtu,
            dns_settings=dns_settings,
        )

    def _included_routes(self):
        ipv4_routes: List[IPv4Route] = []
        ipv6_routes: List[IPv6Route] = []
        for address_range in self.tunnel_configuration.interface.addresses:
            if address_range.is_ipv4:
                ipv4_routes.append(IPv4Route(str(address_range.masked_address()),
                                             str(address_range.subnet_mask()),
                                             gateway_address=str(address_range.address)))
            else:
                ipv6_routes.append(IPv6Route(str(address_range.masked_address()),
                                             address_range.network_prefix_length,
                                             gateway_address=str(address_range.address)))
        for peer in self.tunnel_configuration.peers:
            for address_range in peer.allowed_ips:
                if address_range.is_ipv4:
                    ipv4_routes.append(IPv4Route(str(address_range.address), str(address_range.subnet_mask())))
                else:
                    ipv6_routes.append(IPv6Route(str(address_range.address), address_range.network_prefix_length))
        return ipv4_routes, ipv6_routes

    def _excluded_routes(self):
        ipv4_routes: List[IPv4Route] = []
        ipv6_routes: List[IPv6Route] = []
        for endpoint in self.resolved_endpoints:
            if not isinstance(endpoint, Endpoint) or endpoint.address is None:
                continue
            address = endpoint.address
            if address.version == 4:
                route = IPv4Route(str(address), "255.255.255.255")
                if route not in ipv4_routes:
                    ipv4_routes.append(route)
            else:
                route = IPv6Route(str(address), 128)
                if route not in ipv6_routes:
                    ipv6_routes.append(route)
        return ipv4_routes, ipv6_routes


def _join(lines: List[str]) -> str:
    return "".join(line + "\n" for line in lines)
