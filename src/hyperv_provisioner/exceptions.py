"""Exception hierarchy for Hyper-V provisioning."""

from typing import Optional


class ProvisionerError(Exception):
    """Base class for every failure raised while reconciling a VM."""

    pass


class StoreError(ProvisionerError):
    """Raised when the declarative store cannot be read or is invalid."""

    pass


class VMNotFoundError(ProvisionerError):
    """Raised when a VM, device or record that must exist is absent."""

    pass


class AmbiguousVMError(ProvisionerError):
    """Raised when more than one object matches a name that must be unique."""

    def __init__(self, vm_name: str, hosts: list):
        self.vm_name = vm_name
        self.hosts = hosts
        super().__init__(
            f"VM '{vm_name}' exists on more than one host ({', '.join(hosts)}); "
            "remove the duplicates manually"
        )


class PreconditionFailedError(ProvisionerError):
    """Raised when the live state does not allow the requested action."""

    pass


class ExecutionError(ProvisionerError):
    """Raised when a command fails on a local or remote host."""

    def __init__(self, message: str, host: Optional[str] = None, operation: Optional[str] = None):
        self.host = host
        self.operation = operation
        super().__init__(message)


class SessionUnavailableError(ExecutionError):
    """Raised when a remote session to a host cannot be opened."""

    pass


class ExternalOperationError(ExecutionError):
    """Raised when a collaborator service (DHCP, WDS, SCCM, AD, DNS) reports an error."""

    pass
