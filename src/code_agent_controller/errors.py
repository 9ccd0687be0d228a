"""Exception hierarchy for the Code Agent Controller.

Every error carries a stable ``code`` so callers can branch on the failure
kind without matching on message text.
"""


class CacError(Exception):
    """Base error for controller services."""

    code: str = "CAC_ERROR"

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code


class LeaseUnavailableError(CacError):
    """Raised when an agent box cannot be leased."""

    code = "CAC_LEASE_UNAVAILABLE"

    def __init__(self, message: str = "Agent box is unavailable"):
        super().__init__(message)


class ProvisioningError(CacError):
    """Raised when a provisioning step or script fails."""

    code = "CAC_PROVISIONING_FAILED"


class VmManagerError(CacError):
    """Raised when a VM lifecycle call fails."""

    code = "CAC_VM_MANAGER_FAILED"


class ExecutionError(CacError):
    """Raised when a workspace command exits non-zero."""

    code = "CAC_EXECUTION_FAILED"


class NotFoundError(CacError):
    """Raised when a workspace or box id has no stored record."""

    code = "CAC_WORKSPACE_NOT_FOUND"


class JobSpecError(CacError, ValueError):
    """Raised for malformed job specs, env payloads or workspace parameters."""

    code = "CAC_INVALID_JOB_SPEC"
