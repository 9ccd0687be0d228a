"""Configuration management for the Code Agent Controller."""

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "Code Agent Controller"
    debug: bool = False
    log_level: str = Field(default="INFO", description="Root log level for the worker")

    # Key-value backend
    kv_backend: Literal["redis", "memory"] = Field(
        default="redis",
        description="Backing store for box and workspace records",
    )
    redis_url: str = Field(
        default="redis://localhost:6379",
        description="Redis connection URL for the box store",
    )
    key_prefix: str = Field(default="cac", description="Prefix for every store key")
    scan_limit: int = Field(
        default=100,
        description="Maximum index entries read by a single store scan",
    )

    # Allocation
    default_lease_ttl_seconds: int = Field(
        default=3600,
        description="Lease duration when a request does not specify one",
    )
    async_provisioning: bool = Field(
        default=True,
        description="Return from cold allocations before provisioning finishes",
    )

    # Boxes
    repo_path: str = Field(
        default="/workspace/repo",
        description="Checkout location of the repository inside a box",
    )
    box_image: str = Field(
        default="cac/agent-box:latest",
        description="Image used by the Docker-backed VM manager",
    )
    box_network: str = Field(
        default="cac-network",
        description="Docker network agent boxes are attached to",
    )

    # Single-host workspaces
    host_id: str = Field(default="cac-host", description="Host VM for workspaces")
    workspace_root: str = Field(
        default="/workspaces",
        description="Directory on the host that holds workspaces",
    )
    default_node_version: str = Field(
        default="24.13.0",
        description="Node version written for empty workspaces",
    )

    # Pool reconciliation
    pool_config_path: Path = Field(
        default=Path("pools.yaml"),
        description="YAML file listing pool configurations",
    )
    reconcile_interval_seconds: float = Field(
        default=60.0,
        description="Seconds between pool reconciliation passes",
    )

    # SSH transport
    ssh_user: str = "root"
    ssh_key_path: Optional[Path] = Field(
        default=None,
        description="Private key for box access (ssh default when unset)",
    )
    ssh_connect_timeout: int = Field(default=10, description="ssh ConnectTimeout")
    ssh_command_timeout: float = Field(
        default=1800.0,
        description="Maximum runtime of a single remote command",
    )

    # Vault (env payload decryption)
    vault_url: str = Field(
        default="http://vault:8200",
        description="HashiCorp Vault URL",
    )
    vault_token: Optional[SecretStr] = Field(
        default=None,
        description="Vault token for authentication",
    )
    vault_transit_mount: str = Field(
        default="transit",
        description="Mount point of the transit secrets engine",
    )
    vault_transit_key: str = Field(
        default="cac-env",
        description="Transit key that encrypts env payloads",
    )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
