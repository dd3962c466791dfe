"""Parse the backend's runtime configuration dump (``get_config`` output) into a TunnelConfiguration."""
from datetime import datetime, timezone
from typing import Dict, List, Optional

from . import errors
from .keys import PreSharedKey, PrivateKey, PublicKey, is_all_zero
from .model import (
    VENDOR_PARAMS,
    VENDOR_PARAMS_16,
    Endpoint,
    InterfaceConfiguration,
    IPAddressRange,
    PeerConfiguration,
    TunnelConfiguration,
)
from .wgquick import UINT16_MAX, UINT32_MAX, parse_uint, split_list

UINT64_MAX = 0xFFFFFFFFFFFFFFFF

INTERFACE_KEYS = {"private_key", "listen_port", "fwmark"} | set(VENDOR_PARAMS)
PEER_KEYS = {
    "public_key", "preshared_key", "allowed_ip", "endpoint", "persistent_keepalive_interval",
    "last_handshake_time_sec", "last_handshake_time_nsec", "rx_bytes", "tx_bytes", "protocol_version",
}


def parse_uapi_config(text: str, base: Optional[TunnelConfiguration] = None) -> TunnelConfiguration:
    """
    Build a configuration from runtime key=value lines. A ``public_key`` line
    starts a new peer and a blank line ends the dump. Addresses, DNS, MTU and
    the name are not part of the runtime state and are taken from ``base``.
    """
    interface: Optional[InterfaceConfiguration] = None
    peers: List[PeerConfiguration] = []
    in_interface = True
    attributes: Dict[str, str] = {}

    lines = text.split("\n") + [""]
    for line in lines:
        key = value = ""
        if line:
            if "=" not in line:
                raise errors.InvalidLineError(line)
            key, _, value = line.partition("=")

        if not line or key == "public_key":
            if in_interface:
                interface = _collate_interface(attributes)
                in_interface = False
            else:
                peers.append(_collate_peer(attributes))
            attributes = {}
            if not line:
                break

        if key in attributes:
            if key != "allowed_ip":
                raise errors.MultipleEntriesForKeyError(key)
            attributes[key] = attributes[key] + "," + value
        else:
            attributes[key] = value

        if in_interface and key not in INTERFACE_KEYS:
            raise errors.InterfaceHasUnrecognizedKeyError(key)
        if not in_interface and key not in PEER_KEYS:
            raise errors.PeerHasUnrecognizedKeyError(key)

    seen = set()
    for peer in peers:
        if peer.public_key in seen:
            raise errors.DuplicatePeerPublicKeyError(peer.public_key.base64_key)
        seen.add(peer.public_key)

    if interface is None:
        raise errors.NoInterfaceError()

    if base is not None:
        interface.addresses = list(base.interface.addresses)
        interface.dns = list(base.interface.dns)
        interface.dns_search = list(base.interface.dns_search)
        interface.mtu = base.interface.mtu
        for name in VENDOR_PARAMS:
            if getattr(interface, name) is None:
                setattr(interface, name, getattr(base.interface, name))
    return TunnelConfiguration(interface=interface, peers=peers, name=base.name if base else None)


def _collate_interface(attributes: Dict[str, str]) -> InterfaceConfiguration:
    private_key_string = attributes.get("private_key")
    if private_key_string is None:
        raise errors.InterfaceHasNoPrivateKeyError()
    private_key = PrivateKey.from_hex(private_key_string)
    if private_key is None:
        raise errors.InterfaceHasInvalidPrivateKeyError(private_key_string)
    interface = InterfaceConfiguration(private_key=private_key)

    if "listen_port" in attributes:
        listen_port = parse_uint(attributes["listen_port"], UINT16_MAX)
        if listen_port is None:
            raise errors.InterfaceHasInvalidListenPortError(attributes["listen_port"])
        if listen_port != 0:
            interface.listen_port = listen_port

    for name in VENDOR_PARAMS:
        if name in attributes:
            value = parse_uint(attributes[name], UINT16_MAX if name in VENDOR_PARAMS_16 else UINT32_MAX)
            if value is None:
                raise errors.InterfaceHasInvalidCustomParamError(f"{name}={attributes[name]}")
            setattr(interface, name, value)
    return interface


def _collate_peer(attributes: Dict[str, str]) -> PeerConfiguration:
    public_key_string = attributes.get("public_key")
    if public_key_string is None:
        raise errors.PeerHasNoPublicKeyError()
    public_key = PublicKey.from_hex(public_key_string)
    if public_key is None:
        raise errors.PeerHasInvalidPublicKeyError(public_key_string)
    peer = PeerConfiguration(public_key=public_key)

    if "preshared_key" in attributes:
        preshared_key = PreSharedKey.from_hex(attributes["preshared_key"])
        if preshared_key is None:
            raise errors.PeerHasInvalidPreSharedKeyError(attributes["preshared_key"])
        # the backend reports "no preshared key" as all zeros
        if not is_all_zero(preshared_key):
            peer.preshared_key = preshared_key

    if "allowed_ip" in attributes:
        for allowed_ip_string in split_list(attributes["allowed_ip"]):
            allowed_ip = IPAddressRange.parse(allowed_ip_string)
            if allowed_ip is None:
                raise errors.PeerHasInvalidAllowedIPError(allowed_ip_string)
            peer.allowed_ips.append(allowed_ip)

    if "endpoint" in attributes:
        peer.endpoint = Endpoint.parse(attributes["endpoint"])
        if peer.endpoint is None:
            raise errors.PeerHasInvalidEndpointError(attributes["endpoint"])

    if "persistent_keepalive_interval" in attributes:
        keepalive = parse_uint(attributes["persistent_keepalive_interval"], UINT16_MAX)
        if keepalive is None:
            raise errors.PeerHasInvalidPersistentKeepAliveError(attributes["persistent_keepalive_interval"])
        if keepalive != 0:
            peer.persistent_keepalive = keepalive

    for key in ("rx_bytes", "tx_bytes"):
        if key in attributes:
            count = parse_uint(attributes[key], UINT64_MAX)
            if count is None:
                raise errors.PeerHasInvalidTransferBytesError(attributes[key])
            if count != 0:
                setattr(peer, key, count)

    if "last_handshake_time_sec" in attributes:
        seconds = parse_uint(attributes["last_handshake_time_sec"], UINT64_MAX)
        if seconds is None:
            raise errors.PeerHasInvalidLastHandshakeTimeError(attributes["last_handshake_time_sec"])
        if seconds != 0:
            timestamp = float(seconds)
            if "last_handshake_time_nsec" in attributes:
                nanoseconds = parse_uint(attributes["last_handshake_time_nsec"], UINT64_MAX)
                if nanoseconds is None:
                    raise errors.PeerHasInvalidLastHandshakeTimeError(attributes["last_handshake_time_nsec"])
                timestamp += nanoseconds / 1e9
            peer.last_handshake_time = datetime.fromtimestamp(timestamp, tz=timezone.utc)

    return peer
