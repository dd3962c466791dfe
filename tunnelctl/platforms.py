from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class PlatformProfile:
    """Host capabilities that change how a tunnel is configured. Chosen once at startup."""

    name: str
    # MTU used when the configuration leaves it unset or zero
    default_mtu: int
    # Largest IPv6 prefix length the host route table honours, None for no limit
    ipv6_prefix_clamp: Optional[int]
    # Backend sockets follow interface changes on their own
    transparent_roaming: bool
    # Literal endpoints must be looked up again on path changes (DNS64/NAT64)
    reresolve_endpoints: bool


# Mobile hosts ignore IPv6 prefixes longer than /120 and have too many broken
# networks for automatic MTU, so they pin 1280.
MOBILE = PlatformProfile(
    name="mobile",
    default_mtu=1280,
    ipv6_prefix_clamp=120,
    transparent_roaming=False,
    reresolve_endpoints=True,
)

# Desktop leaves 80 bytes of tunnel overhead on a 1500 byte link.
DESKTOP = PlatformProfile(
    name="desktop",
    default_mtu=1420,
    ipv6_prefix_clamp=None,
    transparent_roaming=True,
    reresolve_endpoints=False,
)

PROFILES = {profile.name: profile for profile in (MOBILE, DESKTOP)}


def profile_for(name: str) -> PlatformProfile:
    try:
        return PROFILES[name.lower()]
    except KeyError:
        raise ValueError(f"Unknown platform '{name}', expected one of: {', '.join(sorted(PROFILES))}") from None
