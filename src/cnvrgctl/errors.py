"""Domain errors for cnvrgctl."""


class CnvrgctlError(RuntimeError):
    """Raised when a backup or restore workflow cannot continue safely."""


class ResolutionError(CnvrgctlError):
    """Raised when the exec/tunnel target pod cannot be selected."""


class NoMatchError(ResolutionError):
    """Raised when no running pod matches the deployment label selector."""


class AmbiguousTargetError(ResolutionError):
    """Raised when a unique target was requested but several pods match."""


class TransportError(CnvrgctlError):
    """Raised when the control plane, exec or tunnel endpoint is unreachable."""


class RemoteExecutionError(CnvrgctlError):
    """Raised when a remote command exits non-zero or its stream drops."""

    def __init__(self, message: str, exit_code=None, stderr: str = ""):
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr = stderr


class SQLError(CnvrgctlError):
    """Raised when an administrative SQL statement fails."""


class TransferError(CnvrgctlError):
    """Raised on local I/O failures while pulling, pushing or syncing."""


class CredentialError(CnvrgctlError):
    """Raised when storage or database credentials are missing or conflicting."""


class ScaleError(CnvrgctlError):
    """Raised when a workload replica count cannot be read or written."""

    def __init__(self, message: str, workload: str = ""):
        super().__init__(message)
        self.workload = workload


class ConvergenceTimeoutError(ScaleError):
    """Raised when scaled workloads do not converge within the timeout."""
