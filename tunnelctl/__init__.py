"""WireGuard-style VPN client control plane."""

__version__ = "0.1.0"
