"""HashiCorp Vault transit decryption for env payloads.

The payload is a Vault transit ciphertext (``vault:v1:...``) whose plaintext
is a JSON object of env vars.
"""

import asyncio
import base64
import logging
from typing import Optional

import hvac
from hvac.exceptions import VaultError

from code_agent_controller.config import settings
from code_agent_controller.errors import JobSpecError

logger = logging.getLogger(__name__)


class VaultTransitEncryptionService:
    """EncryptionService backed by the Vault transit secrets engine."""

    def __init__(
        self,
        url: Optional[str] = None,
        token: Optional[str] = None,
        mount_point: Optional[str] = None,
        key_name: Optional[str] = None,
    ):
        self.url = url or settings.vault_url
        self.token = token or (
            settings.vault_token.get_secret_value()
            if settings.vault_token
            else None
        )
        self.mount_point = mount_point or settings.vault_transit_mount
        self.key_name = key_name or settings.vault_transit_key

        self._client: Optional[hvac.Client] = None

    @property
    def client(self) -> hvac.Client:
        """Get or create Vault client."""
        if self._client is None:
            self._client = hvac.Client(url=self.url, token=self.token)

            if not self._client.is_authenticated():
                raise RuntimeError("Vault authentication failed")

        return self._client

    async def decrypt_stringified(self, payload: str) -> str:
        """Decrypt a transit ciphertext into its UTF-8 plaintext.

        Raises:
            JobSpecError: Vault rejected the ciphertext.
        """
        return await asyncio.to_thread(self._decrypt, payload)

    def _decrypt(self, payload: str) -> str:
        try:
            response = self.client.secrets.transit.decrypt_data(
                name=self.key_name,
                ciphertext=payload,
                mount_point=self.mount_point,
            )
        except VaultError as e:
            logger.error(f"Vault transit decryption failed: {e}")
            raise JobSpecError("Invalid env payload format") from e

        return base64.b64decode(response["data"]["plaintext"]).decode("utf-8")
