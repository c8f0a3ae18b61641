"""NDJSON HTTP transport."""

from agentrun.server.app import AgentRunServer, header_identity

__all__ = ["AgentRunServer", "header_identity"]
