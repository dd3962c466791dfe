"""
wg-quick configuration format.

    [Interface]
    PrivateKey = <base64>
    Address = 10.0.0.2/32

    [Peer]
    PublicKey = <base64>
    AllowedIPs = 0.0.0.0/0, ::/0
    Endpoint = 203.0.113.1:51820

Section headers are case-insensitive, keys are case-insensitive, and anything
after ``#`` is a comment.
"""
from typing import Dict, List, Optional

from . import errors
from .keys import PreSharedKey, PrivateKey, PublicKey
from .model import (
    VENDOR_PARAMS_16,
    VENDOR_PARAMS_32,
    DNSServer,
    Endpoint,
    InterfaceConfiguration,
    IPAddressRange,
    PeerConfiguration,
    TunnelConfiguration,
)


INTERFACE_KEYS = {"privatekey", "listenport", "address", "dns", "mtu"} | set(VENDOR_PARAMS_16) | set(VENDOR_PARAMS_32)
PEER_KEYS = {"publickey", "presharedkey", "allowedips", "endpoint", "persistentkeepalive"}
MULTI_VALUE_KEYS = {"address", "allowedips", "dns"}

UINT16_MAX = 0xFFFF
UINT32_MAX = 0xFFFFFFFF

# Display names used when writing vendor params back out
VENDOR_PARAM_NAMES = {
    "jc": "Jc", "jmin": "Jmin", "jmax": "Jmax", "s1": "S1", "s2": "S2",
    "h1": "H1", "h2": "H2", "h3": "H3", "h4": "H4",
}

_INTERFACE = "interface"
_PEER = "peer"


def parse_uint(value: str, maximum: int) -> Optional[int]:
    if not (value.isascii() and value.isdigit()):
        return None
    number = int(value)
    return number if number <= maximum else None


def split_list(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def parse(text: str, name: Optional[str] = None) -> TunnelConfiguration:
    """Parse wg-quick text into a TunnelConfiguration, raising a ParseError subclass on bad input."""
    interface: Optional[InterfaceConfiguration] = None
    peers: List[PeerConfiguration] = []
    section: Optional[str] = None
    attributes: Dict[str, str] = {}

    def flush():
        nonlocal interface
        if section == _INTERFACE:
            collated = collate_interface(attributes)
            if interface is not None:
                raise errors.MultipleInterfacesError()
            interface = collated
        elif section == _PEER:
            peers.append(collate_peer(attributes))

    for raw_line in text.splitlines():
        line = raw_line.split("#", 1)[0].strip()
        if not line:
            continue
        lowered = line.lower()
        if lowered in ("[interface]", "[peer]"):
            flush()
            section = _INTERFACE if lowered == "[interface]" else _PEER
            attributes = {}
            continue
        if "=" not in line or section is None:
            raise errors.InvalidLineError(raw_line)

        key_with_case, _, value = line.partition("=")
        key_with_case = key_with_case.strip()
        key = key_with_case.lower()
        value = value.strip()

        if section == _INTERFACE and key not in INTERFACE_KEYS:
            raise errors.InterfaceHasUnrecognizedKeyError(key_with_case)
        if section == _PEER and key not in PEER_KEYS:
            raise errors.PeerHasUnrecognizedKeyError(key_with_case)

        if key in attributes:
            if key not in MULTI_VALUE_KEYS:
                raise errors.MultipleEntriesForKeyError(key_with_case)
            attributes[key] = attributes[key] + "," + value
        else:
            attributes[key] = value

    flush()

    seen = set()
    for peer in peers:
        if peer.public_key in seen:
            raise errors.DuplicatePeerPublicKeyError(peer.public_key.base64_key)
        seen.add(peer.public_key)

    if interface is None:
        raise errors.NoInterfaceError()
    return TunnelConfiguration(interface=interface, peers=peers, name=name)


def collate_interface(attributes: Dict[str, str]) -> InterfaceConfiguration:
    private_key_string = attributes.get("privatekey")
    if private_key_string is None:
        raise errors.InterfaceHasNoPrivateKeyError()
    private_key = PrivateKey.from_base64(private_key_string)
    if private_key is None:
        raise errors.InterfaceHasInvalidPrivateKeyError(private_key_string)
    interface = InterfaceConfiguration(private_key=private_key)

    if "listenport" in attributes:
        interface.listen_port = parse_uint(attributes["listenport"], UINT16_MAX)
        if interface.listen_port is None:
            raise errors.InterfaceHasInvalidListenPortError(attributes["listenport"])

    if "address" in attributes:
        for address_string in split_list(attributes["address"]):
            address = IPAddressRange.parse(address_string)
            if address is None:
                raise errors.InterfaceHasInvalidAddressError(address_string)
            interface.addresses.append(address)

    if "dns" in attributes:
        for dns_string in split_list(attributes["dns"]):
            server = DNSServer.parse(dns_string)
            if server is not None:
                interface.dns.append(server)
            else:
                interface.dns_search.append(dns_string)

    if "mtu" in attributes:
        interface.mtu = parse_uint(attributes["mtu"], UINT16_MAX)
        if interface.mtu is None:
            raise errors.InterfaceHasInvalidMTUError(attributes["mtu"])

    for key in VENDOR_PARAMS_16 + VENDOR_PARAMS_32:
        if key not in attributes:
            continue
        maximum = UINT16_MAX if key in VENDOR_PARAMS_16 else UINT32_MAX
        value = parse_uint(attributes[key], maximum)
        if value is None:
            raise errors.InterfaceHasInvalidCustomParamError(f"{VENDOR_PARAM_NAMES[key]} = {attributes[key]}")
        setattr(interface, key, value)

    return interface


def collate_peer(attributes: Dict[str, str]) -> PeerConfiguration:
    public_key_string = attributes.get("publickey")
    if public_key_string is None:
        raise errors.PeerHasNoPublicKeyError()
    public_key = PublicKey.from_base64(public_key_string)
    if public_key is None:
        raise errors.PeerHasInvalidPublicKeyError(public_key_string)
    peer = PeerConfiguration(public_key=public_key)

    if "presharedkey" in attributes:
        peer.preshared_key = PreSharedKey.from_base64(attributes["presharedkey"])
        if peer.preshared_key is None:
            raise errors.PeerHasInvalidPreSharedKeyError(attributes["presharedkey"])

    if "allowedips" in attributes:
        for allowed_ip_string in split_list(attributes["allowedips"]):
            allowed_ip = IPAddressRange.parse(allowed_ip_string)
            if allowed_ip is None:
                raise errors.PeerHasInvalidAllowedIPError(allowed_ip_string)
            peer.allowed_ips.append(allowed_ip)

    if "endpoint" in attributes:
        peer.endpoint = Endpoint.parse(attributes["endpoint"])
        if peer.endpoint is None:
            raise errors.PeerHasInvalidEndpointError(attributes["endpoint"])

    if "persistentkeepalive" in attributes:
        peer.persistent_keepalive = parse_uint(attributes["persistentkeepalive"], UINT16_MAX)
        if peer.persistent_keepalive is None:
            raise errors.PeerHasInvalidPersistentKeepAliveError(attributes["persistentkeepalive"])

    return peer


def serialize(config: TunnelConfiguration) -> str:
    interface = config.interface
    lines = ["[Interface]", f"PrivateKey = {interface.private_key.base64_key}"]
    if interface.listen_port is not None:
        lines.append(f"ListenPort = {interface.listen_port}")
    for key, value in interface.vendor_params():
        lines.append(f"{VENDOR_PARAM_NAMES[key]} = {value}")
    if interface.addresses:
        lines.append("Address = " + ", ".join(str(a) for a in interface.addresses))
    if interface.dns or interface.dns_search:
        lines.append("DNS = " + ", ".join([str(d) for d in interface.dns] + list(interface.dns_search)))
    if interface.mtu is not None:
        lines.append(f"MTU = {interface.mtu}")

    for peer in config.peers:
        lines.extend(["", "[Peer]", f"PublicKey = {peer.public_key.base64_key}"])
        if peer.preshared_key is not None:
            lines.append(f"PresharedKey = {peer.preshared_key.base64_key}")
        if peer.allowed_ips:
            lines.append("AllowedIPs = " + ", ".join(str(a) for a in peer.allowed_ips))
        if peer.endpoint is not None:
            lines.append(f"Endpoint = {peer.endpoint}")
        if peer.persistent_keepalive is not None:
            lines.append(f"PersistentKeepalive = {peer.persistent_keepalive}")

    return "\n".join(lines) + "\n"
