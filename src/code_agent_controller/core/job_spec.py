"""Job spec parsing and validation.

A job spec declares the runtime toolchain and setup commands a workspace
needs. It is written to the host as ``.agent-runrc.json``:

    {"runtime": {"node": "20.11.1", "pnpm": "8.15.4"},
     "env": {"NODE_ENV": "test"},
     "setupCommands": ["pnpm install"]}
"""

import json
import re
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictStr, ValidationError, field_validator

from code_agent_controller.errors import JobSpecError

ENV_KEY_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class RuntimeSpec(BaseModel):
    """Pinned toolchain versions."""

    node: StrictStr
    pnpm: Optional[StrictStr] = None

    @field_validator("node")
    @classmethod
    def _node_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("runtime.node must be a non-empty string")
        return value

    @field_validator("pnpm")
    @classmethod
    def _strip_pnpm(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return value.strip() or None


class JobSpec(BaseModel):
    """Declarative runtime descriptor for a workspace."""

    model_config = ConfigDict(populate_by_name=True)

    runtime: RuntimeSpec
    env: Optional[dict[str, StrictStr]] = None
    setup_commands: Optional[list[StrictStr]] = Field(default=None, alias="setupCommands")

    @field_validator("env")
    @classmethod
    def _check_env_keys(cls, value: Optional[dict[str, str]]) -> Optional[dict[str, str]]:
        if value is None:
            return None
        for key in value:
            if not ENV_KEY_PATTERN.match(key):
                raise ValueError(f"Invalid env key: {key}")
        return value

    @field_validator("setup_commands")
    @classmethod
    def _check_setup_commands(cls, value: Optional[list[str]]) -> Optional[list[str]]:
        if value is None:
            return None
        commands = []
        for entry in value:
            if not entry.strip():
                raise ValueError("setupCommands entries must be non-empty strings")
            commands.append(entry.strip())
        return commands or None

    def to_dict(self) -> dict[str, Any]:
        """Serialize with the on-host key names, omitting unset fields."""
        return self.model_dump(by_alias=True, exclude_none=True)

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)


def parse_job_spec(payload: Any) -> JobSpec:
    """Validate a decoded job spec payload.

    Raises:
        JobSpecError: payload is not an object or fails validation.
    """
    if isinstance(payload, JobSpec):
        payload = payload.to_dict()
    if not isinstance(payload, dict):
        raise JobSpecError("Invalid job spec payload")
    try:
        return JobSpec.model_validate(payload)
    except ValidationError as e:
        raise JobSpecError(f"Invalid job spec: {_describe(e)}") from e


def parse_job_spec_json(text: str) -> JobSpec:
    """Parse and validate a JSON job spec."""
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as e:
        raise JobSpecError("Invalid JSON for job spec") from e
    return parse_job_spec(payload)


def merge_env(
    base: Optional[dict[str, str]], overlay: Optional[dict[str, str]]
) -> Optional[dict[str, str]]:
    """Overlay wins on key conflicts; None when both are absent."""
    if base is None and overlay is None:
        return None
    return {**(base or {}), **(overlay or {})}


def validate_env_payload(env: Optional[dict[str, Any]]) -> None:
    """Reject env payloads with non identifier-like keys or non-string values."""
    if not env:
        return
    for key, value in env.items():
        if not isinstance(key, str) or not ENV_KEY_PATTERN.match(key):
            raise JobSpecError(f"Invalid env payload key: {key}")
        if not isinstance(value, str):
            raise JobSpecError(f"Invalid env payload value for {key}")


def _describe(error: ValidationError) -> str:
    parts = []
    for detail in error.errors():
        location = ".".join(str(part) for part in detail["loc"])
        parts.append(f"{location}: {detail['msg']}" if location else detail["msg"])
    return "; ".join(parts)
