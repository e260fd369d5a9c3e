"""HTTP client for the agent service."""

from dagwatch.client.agent_client import AgentClient, unwrap_envelope

__all__ = ["AgentClient", "unwrap_envelope"]
