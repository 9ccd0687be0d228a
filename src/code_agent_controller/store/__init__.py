"""Persistence for agent boxes and workspaces.

- key_value: KV abstraction with in-memory and Redis backends
- agent_box_store: AgentBox records, repo/status indexes, leases
- workspace_store: single-host WorkspaceRecord storage
"""

from code_agent_controller.store.key_value import (
    KeyValueService,
    InMemoryKeyValueService,
    RedisKeyValueService,
    create_key_value_service,
)
from code_agent_controller.store.agent_box_store import (
    AgentBoxStore,
    AgentBoxQuery,
    KeyValueAgentBoxStore,
)
from code_agent_controller.store.workspace_store import (
    WorkspaceStore,
    KeyValueWorkspaceStore,
)

__all__ = [
    # Key-value backends
    "KeyValueService",
    "InMemoryKeyValueService",
    "RedisKeyValueService",
    "create_key_value_service",
    # Agent boxes
    "AgentBoxStore",
    "AgentBoxQuery",
    "KeyValueAgentBoxStore",
    # Workspaces
    "WorkspaceStore",
    "KeyValueWorkspaceStore",
]
