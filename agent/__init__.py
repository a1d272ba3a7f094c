"""chainShell agent (beacon) side of the protocol."""

from .agent import Agent, new_agent_id

__all__ = ["Agent", "new_agent_id"]
