"""Decryption and ``.env`` formatting of encrypted environment payloads.

Payloads are never persisted: they are decrypted just before injection and
streamed to the box over stdin.
"""

import json
import re
from typing import Protocol

from code_agent_controller.errors import JobSpecError

_NEEDS_QUOTES = re.compile(r"[\s\"']")


class EncryptionService(Protocol):
    """Decrypts payloads produced by the matching encrypt side."""

    async def decrypt_stringified(self, payload: str) -> str: ...


def escape_env_value(value: str) -> str:
    """Render a value for a ``KEY=value`` line.

    Values containing whitespace or quotes are double-quoted with
    backslashes, double quotes, newlines and carriage returns escaped.
    """
    if not value:
        return '""'
    if not _NEEDS_QUOTES.search(value):
        return value
    escaped = (
        value.replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("\n", "\\n")
        .replace("\r", "\\r")
    )
    return f'"{escaped}"'


def format_env_file(env: dict[str, str]) -> str:
    """Serialize env vars to ``.env`` syntax, one sorted ``KEY=value`` per line."""
    return "\n".join(f"{key}={escape_env_value(env[key])}" for key in sorted(env))


class EnvInjector:
    """Turns encrypted payloads into ``.env`` file contents."""

    def __init__(self, encryption: EncryptionService):
        self.encryption = encryption

    async def decrypt_payload(self, payload: str) -> dict[str, str]:
        """Decrypt a payload holding a JSON object of string values.

        Raises:
            JobSpecError: the plaintext is not a JSON object of strings.
        """
        plaintext = await self.encryption.decrypt_stringified(payload)
        try:
            parsed = json.loads(plaintext)
        except json.JSONDecodeError as e:
            raise JobSpecError("Invalid env payload format") from e
        if not isinstance(parsed, dict) or not all(
            key and isinstance(value, str) for key, value in parsed.items()
        ):
            raise JobSpecError("Invalid env payload format")
        return parsed

    def format_env_file(self, env: dict[str, str]) -> str:
        return format_env_file(env)
