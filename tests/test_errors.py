"""Tests for the error taxonomy."""

import pytest

from code_agent_controller.errors import (
    CacError,
    ExecutionError,
    JobSpecError,
    LeaseUnavailableError,
    NotFoundError,
    ProvisioningError,
    VmManagerError,
)


@pytest.mark.parametrize(
    "error_cls, code",
    [
        (LeaseUnavailableError, "CAC_LEASE_UNAVAILABLE"),
        (ProvisioningError, "CAC_PROVISIONING_FAILED"),
        (VmManagerError, "CAC_VM_MANAGER_FAILED"),
        (ExecutionError, "CAC_EXECUTION_FAILED"),
        (NotFoundError, "CAC_WORKSPACE_NOT_FOUND"),
        (JobSpecError, "CAC_INVALID_JOB_SPEC"),
    ],
)
def test_codes(error_cls, code):
    error = error_cls("failed")

    assert isinstance(error, CacError)
    assert error.code == code
    assert error.message == "failed"
    assert str(error) == "failed"


def test_lease_unavailable_default_message():
    assert LeaseUnavailableError().message == "Agent box is unavailable"


def test_code_override():
    assert CacError("x", code="CUSTOM").code == "CUSTOM"
