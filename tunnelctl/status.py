import enum


class SessionStatus(enum.Enum):
    """Connection status reported by the host VPN subsystem for one profile."""

    INVALID = "invalid"
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    REASSERTING = "reasserting"
    DISCONNECTING = "disconnecting"


class TunnelStatus(enum.Enum):
    INACTIVE = "inactive"
    ACTIVATING = "activating"
    ACTIVE = "active"
    DEACTIVATING = "deactivating"
    REASSERTING = "reasserting"
    # modified while active: tear down then bring back up
    RESTARTING = "restarting"
    # queued behind another tunnel's deactivation
    WAITING = "waiting"

    @classmethod
    def from_session_status(cls, status: SessionStatus) -> "TunnelStatus":
        return _SESSION_TO_TUNNEL[status]

    def __str__(self):
        return self.value


_SESSION_TO_TUNNEL = {
    SessionStatus.CONNECTED: TunnelStatus.ACTIVE,
    SessionStatus.CONNECTING: TunnelStatus.ACTIVATING,
    SessionStatus.DISCONNECTED: TunnelStatus.INACTIVE,
    SessionStatus.DISCONNECTING: TunnelStatus.DEACTIVATING,
    SessionStatus.REASSERTING: TunnelStatus.REASSERTING,
    SessionStatus.INVALID: TunnelStatus.INACTIVE,
}
