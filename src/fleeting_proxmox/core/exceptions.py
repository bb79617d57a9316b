"""Custom exceptions for fleeting-proxmox."""


class FleetingProxmoxError(Exception):
    """Base exception for all fleeting-proxmox errors."""


class ConfigurationError(FleetingProxmoxError):
    """Settings, credentials or cluster resources are unusable."""


class CredentialsError(ConfigurationError):
    """Credentials file could not be loaded."""


class CredentialsReadError(CredentialsError, IOError):
    """Credentials file could not be opened or read."""


class CredentialsDecodeError(CredentialsError):
    """Credentials file content does not match the credential record."""


class InstanceNotFoundError(FleetingProxmoxError):
    """VM is not a member of the pool."""


class ProxmoxAPIError(FleetingProxmoxError):
    """Proxmox VE API call failed.

    Attributes:
        status_code: HTTP status code, None for transport failures
    """

    def __init__(self, message: str, status_code: int | None = None):
        """Initialize API error.

        Args:
            message: Error message
            status_code: HTTP status code of the failed response
        """
        super().__init__(message)
        self.status_code = status_code


class ProxmoxConnectionError(ProxmoxAPIError):
    """Proxmox VE API could not be reached or did not answer in time."""


class ProxmoxAuthError(ProxmoxAPIError):
    """Login or ticket renewal was rejected."""


class SessionRefreshError(FleetingProxmoxError):
    """A session refresh cycle failed. Never fatal."""


class RefresherStateError(FleetingProxmoxError):
    """Illegal session refresher lifecycle transition."""
