"""Custom exceptions for cloudvm."""


class ManagerError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""


class ConfigError(ManagerError):
    """Invalid configuration file or environment override."""


class InvalidName(ManagerError):
    """A VM name sanitized down to nothing."""


class NameCollision(ManagerError):
    """A VM with the requested name already exists."""


class NotFound(ManagerError):
    """The requested VM or base image does not exist."""


class NotRunning(ManagerError):
    """The operation needs a running VM."""


class UnknownImage(ManagerError):
    """No download URL is configured for the image identifier."""


class DownloadFailed(ManagerError):
    """A base image could not be fetched or failed verification."""


class PackagingFailed(ManagerError):
    """The cloud-init volume could not be built."""


class NetworkBackendUnavailable(ManagerError):
    """The socket_vmnet daemon or its control socket is missing."""


class BootFailed(ManagerError):
    """The hypervisor exited before the guest reached a login prompt."""


class BootTimeout(ManagerError):
    """The guest did not reach a login prompt in time."""


class ShutdownEscalationExhausted(ManagerError):
    """The hypervisor process survived every shutdown strategy."""


class ConfirmationRequired(ManagerError):
    """A destructive operation was requested without confirmation."""
