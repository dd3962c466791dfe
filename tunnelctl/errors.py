"""
Error taxonomy for tunnelctl.

Every error carries an ``alert_text`` (title, message) pair so a front end can
show it without knowing where it came from.
"""
from typing import Optional, Tuple

AlertText = Tuple[str, str]


class TunnelctlError(Exception):
    title = "Error"

    @property
    def message(self) -> str:
        return str(self)

    @property
    def alert_text(self) -> AlertText:
        return self.title, self.message


# --- Configuration parsing ----------------------------------------------------

class ParseError(TunnelctlError, ValueError):
    title = "Unable to import tunnel"
    template = "Invalid configuration: {value}"

    def __init__(self, value: str = ""):
        self.value = value
        super().__init__(self.template.format(value=value))


class InvalidLineError(ParseError):
    template = "Invalid line: '{value}'."


class NoInterfaceError(ParseError):
    template = "Configuration must have an 'Interface' section."


class MultipleInterfacesError(ParseError):
    template = "Configuration must have only one 'Interface' section."


class InterfaceHasNoPrivateKeyError(ParseError):
    title = "Invalid interface"
    template = "Interface's private key is required."


class InterfaceHasInvalidPrivateKeyError(ParseError):
    title = "Invalid interface"
    template = "Private key is invalid: '{value}'."


class InterfaceHasInvalidListenPortError(ParseError):
    title = "Invalid interface"
    template = "Listen port '{value}' is invalid."


class InterfaceHasInvalidAddressError(ParseError):
    title = "Invalid interface"
    template = "Address '{value}' is invalid."


class InterfaceHasInvalidMTUError(ParseError):
    title = "Invalid interface"
    template = "MTU '{value}' is invalid."


class InterfaceHasInvalidCustomParamError(ParseError):
    title = "Invalid interface"
    template = "Obfuscation parameter '{value}' is invalid."


class InterfaceHasUnrecognizedKeyError(ParseError):
    title = "Invalid interface"
    template = "Interface contains unrecognized key '{value}'. Valid keys are: 'PrivateKey', 'ListenPort', 'Address', 'DNS', 'MTU', 'Jc', 'Jmin', 'Jmax', 'S1', 'S2', 'H1', 'H2', 'H3' and 'H4'."


class PeerHasNoPublicKeyError(ParseError):
    title = "Invalid peer"
    template = "Peer's public key is required."


class PeerHasInvalidPublicKeyError(ParseError):
    title = "Invalid peer"
    template = "Public key is invalid: '{value}'."


class PeerHasInvalidPreSharedKeyError(ParseError):
    title = "Invalid peer"
    template = "Preshared key is invalid: '{value}'."


class PeerHasInvalidAllowedIPError(ParseError):
    title = "Invalid peer"
    template = "Allowed IP '{value}' is invalid."


class PeerHasInvalidEndpointError(ParseError):
    title = "Invalid peer"
    template = "Endpoint '{value}' is invalid."


class PeerHasInvalidPersistentKeepAliveError(ParseError):
    title = "Invalid peer"
    template = "Persistent keepalive value '{value}' is invalid."


class PeerHasInvalidTransferBytesError(ParseError):
    title = "Invalid peer"
    template = "Transfer byte count '{value}' is invalid."


class PeerHasInvalidLastHandshakeTimeError(ParseError):
    title = "Invalid peer"
    template = "Last handshake time '{value}' is invalid."


class PeerHasUnrecognizedKeyError(ParseError):
    title = "Invalid peer"
    template = "Peer contains unrecognized key '{value}'. Valid keys are: 'PublicKey', 'PresharedKey', 'AllowedIPs', 'Endpoint' and 'PersistentKeepalive'."


class DuplicatePeerPublicKeyError(ParseError):
    title = "Invalid peer"
    template = "Two or more peers cannot have the same public key: '{value}'."


class MultipleEntriesForKeyError(ParseError):
    template = "There should be only one entry per section for key '{value}'."


# --- Endpoint resolution ------------------------------------------------------

class DNSResolutionError(TunnelctlError):
    """A single hostname that did not resolve to a usable address."""

    title = "DNS resolution failure"

    def __init__(self, address: str, error_code: int = 0, description: Optional[str] = None):
        self.address = address
        self.error_code = error_code
        self.description = description or f"resolver error {error_code}"
        super().__init__(f"Failed to resolve '{address}': {self.description}")


# --- Tunnel adapter -----------------------------------------------------------

class AdapterError(TunnelctlError):
    title = "Activation failure"


class CannotLocateTunnelFileDescriptorError(AdapterError):
    def __init__(self):
        super().__init__("Unable to determine the tunnel device file descriptor.")


class InvalidStateError(AdapterError):
    def __init__(self, state=None):
        self.state = state
        super().__init__(f"Operation is not permitted in state {state!r}.")


class DNSResolutionFailureError(AdapterError):
    title = "DNS resolution failure"

    def __init__(self, errors):
        self.errors = list(errors)
        names = ", ".join(e.address for e in self.errors)
        super().__init__(f"One or more endpoint domains could not be resolved: {names}")


class SetNetworkSettingsError(AdapterError):
    def __init__(self, cause):
        self.cause = cause
        super().__init__(f"Unable to apply network settings to tunnel object: {cause}")


class StartWireGuardBackendError(AdapterError):
    def __init__(self, code: int):
        self.code = code
        super().__init__(f"Unable to turn on the tunnel backend (code {code}).")


# --- Provider side, reported back to the manager as "last error" ---------------

class PacketTunnelProviderError(TunnelctlError):
    title = "Activation failure"

    SAVED_PROTOCOL_CONFIGURATION_IS_INVALID = "savedProtocolConfigurationIsInvalid"
    DNS_RESOLUTION_FAILURE = "dnsResolutionFailure"
    COULD_NOT_START_BACKEND = "couldNotStartBackend"
    COULD_NOT_DETERMINE_FILE_DESCRIPTOR = "couldNotDetermineFileDescriptor"
    COULD_NOT_SET_NETWORK_SETTINGS = "couldNotSetNetworkSettings"

    _MESSAGES = {
        SAVED_PROTOCOL_CONFIGURATION_IS_INVALID: "Unable to retrieve tunnel information from the saved configuration.",
        DNS_RESOLUTION_FAILURE: "One or more endpoint domains could not be resolved.",
        COULD_NOT_START_BACKEND: "Unable to turn on the tunnel backend library.",
        COULD_NOT_DETERMINE_FILE_DESCRIPTOR: "Unable to determine the tunnel device file descriptor.",
        COULD_NOT_SET_NETWORK_SETTINGS: "Unable to apply network settings to tunnel object.",
    }

    def __init__(self, kind: str):
        if kind not in self._MESSAGES:
            raise ValueError(f"Unknown provider error: {kind}")
        self.kind = kind
        super().__init__(self._MESSAGES[kind])

    @property
    def alert_text(self) -> AlertText:
        if self.kind == self.DNS_RESOLUTION_FAILURE:
            return "DNS resolution failure", self.message
        return self.title, self.message


# --- OS VPN subsystem ---------------------------------------------------------

class VPNSystemError(TunnelctlError):
    """Error reported by the VPN profile store or a tunnel session."""

    CONFIGURATION_INVALID = "configuration_invalid"
    CONFIGURATION_DISABLED = "configuration_disabled"
    CONNECTION_FAILED = "connection_failed"
    CONFIGURATION_STALE = "configuration_stale"
    CONFIGURATION_READ_WRITE_FAILED = "configuration_read_write_failed"
    CONFIGURATION_UNKNOWN = "configuration_unknown"

    _MESSAGES = {
        CONFIGURATION_INVALID: "The configuration is invalid.",
        CONFIGURATION_DISABLED: "The configuration is disabled.",
        CONNECTION_FAILED: "The connection failed.",
        CONFIGURATION_STALE: "The configuration is stale.",
        CONFIGURATION_READ_WRITE_FAILED: "Reading or writing the configuration failed.",
        CONFIGURATION_UNKNOWN: "Unknown system error.",
    }

    def __init__(self, code: str, detail: Optional[str] = None):
        self.code = code
        super().__init__(detail or self._MESSAGES.get(code, code))


class ProfileStoreError(TunnelctlError):
    """Failure while loading, saving or removing a stored tunnel profile."""


class CredentialStoreError(TunnelctlError):
    pass


# --- Zip archives -------------------------------------------------------------

class ZipArchiveError(TunnelctlError):
    CANT_OPEN_INPUT = "cantOpenInputZipFile"
    CANT_OPEN_OUTPUT = "cantOpenOutputZipFileForWriting"
    BAD_ARCHIVE = "badArchive"
    NO_TUNNELS_IN_ARCHIVE = "noTunnelsInZipArchive"

    _ALERTS = {
        CANT_OPEN_INPUT: ("Unable to read zip archive", "The zip archive could not be read."),
        CANT_OPEN_OUTPUT: ("Unable to create zip archive", "Could not open zip file for writing."),
        BAD_ARCHIVE: ("Unable to read zip archive", "Bad or corrupt zip archive."),
        NO_TUNNELS_IN_ARCHIVE: ("No tunnels in zip archive", "No .conf tunnel files were found inside the zip archive."),
    }

    def __init__(self, kind: str, detail: Optional[str] = None):
        self.kind = kind
        self.detail = detail
        self.title, message = self._ALERTS[kind]
        super().__init__(message)


class NoTunnelsToExportError(TunnelctlError):
    title = "Nothing to export"

    def __init__(self):
        super().__init__("There are no tunnels to export")


# --- Tunnels manager ----------------------------------------------------------

class TunnelsManagerError(TunnelctlError):
    pass


class TunnelNameEmptyError(TunnelsManagerError):
    title = "No name provided"

    def __init__(self):
        super().__init__("Cannot create tunnel with an empty name")


class TunnelAlreadyExistsWithThatNameError(TunnelsManagerError):
    title = "Name already exists"

    def __init__(self, name: str = ""):
        self.name = name
        super().__init__("A tunnel with that name already exists")


class _SystemErrorOnTunnels(TunnelsManagerError):
    def __init__(self, system_error: Exception):
        self.system_error = system_error
        super().__init__(str(system_error))


class SystemErrorOnListingTunnels(_SystemErrorOnTunnels):
    title = "Unable to list tunnels"


class SystemErrorOnAddTunnel(_SystemErrorOnTunnels):
    title = "Unable to create tunnel"


class SystemErrorOnModifyTunnel(_SystemErrorOnTunnels):
    title = "Unable to modify tunnel"


class SystemErrorOnRemoveTunnel(_SystemErrorOnTunnels):
    title = "Unable to remove tunnel"


class ActivationAttemptError(TunnelctlError):
    """startTunnel was never reached or was rejected."""

    title = "Activation failure"


class TunnelIsNotInactiveError(ActivationAttemptError):
    title = "Activation in progress"

    def __init__(self):
        super().__init__("The tunnel is already active or in the process of being activated")


class AnotherTunnelOperationalError(ActivationAttemptError):
    title = "Another tunnel is active"

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Tunnel '{name}' is already active or in the process of being activated or deactivated")


class _ActivationSystemError(ActivationAttemptError):
    def __init__(self, system_error: Exception):
        self.system_error = system_error
        super().__init__(f"The tunnel could not be activated. {system_error}")


class FailedWhileStartingError(_ActivationSystemError):
    pass


class FailedWhileSavingError(_ActivationSystemError):
    pass


class FailedWhileLoadingError(_ActivationSystemError):
    pass


class FailedBecauseOfTooManyErrorsError(_ActivationSystemError):
    pass


class ActivationError(TunnelctlError):
    """startTunnel succeeded but the session never reached connected."""

    title = "Activation failure"

    def __init__(self, message: str, was_on_demand_enabled: bool = False):
        self.was_on_demand_enabled = was_on_demand_enabled
        super().__init__(message)


class ActivationFailedError(ActivationError):
    def __init__(self, was_on_demand_enabled: bool = False):
        super().__init__("The tunnel could not be activated. Please ensure that you are connected to the Internet.",
                         was_on_demand_enabled)


class ActivationFailedWithExtensionError(ActivationError):
    def __init__(self, title: str, message: str, was_on_demand_enabled: bool = False):
        self.title = title
        super().__init__(message, was_on_demand_enabled)


class ActivationFailedNoInternetError(ActivationError):
    title = "No Internet connection"

    def __init__(self, was_on_demand_enabled: bool = False):
        super().__init__("The tunnel could not be activated because the network is unreachable.",
                         was_on_demand_enabled)
