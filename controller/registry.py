"""
chainShell Session Registry
In-memory index of agents and their session state.

The registry lock only guards the map. Outbound state on each record is
guarded by the record's own lock, so senders to different agents never
wait on each other.
"""

import collections
import logging
import threading
import time
from datetime import datetime
from enum import IntEnum
from typing import Deque, Dict, List, Optional

logger = logging.getLogger(__name__)


class AgentStatus(IntEnum):
    HANDSHAKE = 0
    ACTIVE = 1
    CLOSED = 2


class Agent:
    """Session state for one remote agent."""

    def __init__(self, agent_id: str, history_size: int = 100):
        self.agent_id = agent_id
        self.last_seen = datetime.now()
        self.in_seq = 0
        self.out_seq = 0
        self.data_buffer = ""
        self.session_key: Optional[bytes] = None
        self.status = AgentStatus.HANDSHAKE
        self.current_user = ""
        self.hostname = ""
        self.history: Deque = collections.deque(maxlen=history_size)
        self.lock = threading.Lock()

    def __repr__(self):
        return (f"Agent({self.agent_id!r}, status={self.status.name}, "
                f"in_seq={self.in_seq}, out_seq={self.out_seq})")

    def touch(self):
        self.last_seen = datetime.now()

    def advance(self, status: AgentStatus):
        """Move the session forward; moving backwards raises ValueError."""
        status = AgentStatus(status)
        if status < self.status:
            raise ValueError(
                f"Agent {self.agent_id} cannot go from "
                f"{self.status.name} back to {status.name}")
        self.status = status

    def set_session_key(self, key: bytes):
        """Fix the session key. It cannot be replaced once set."""
        if self.session_key is not None:
            raise ValueError(f"Agent {self.agent_id} already has a session key")
        if not key:
            raise ValueError("Session key must not be empty")
        self.session_key = bytes(key)


class SessionRegistry:
    """
    Owns every known Agent record.

    max_agents and agent_ttl are off by default, which means records are
    never evicted.

    Eviction forgets the agent's in_seq watermark. If the transport later
    redelivers that agent's old events they are accepted again under a fresh
    record, so a command can be emitted twice. Only enable eviction where
    the transport does not redeliver events that old.
    """

    def __init__(self, max_agents: Optional[int] = None,
                 agent_ttl: Optional[float] = None,
                 history_size: int = 100):
        if max_agents is not None and max_agents < 1:
            raise ValueError("max_agents must be at least 1")
        if agent_ttl is not None and agent_ttl <= 0:
            raise ValueError("agent_ttl must be positive")
        self.max_agents = max_agents
        self.agent_ttl = agent_ttl
        self.history_size = history_size
        self._agents: Dict[str, Agent] = {}
        self._lock = threading.Lock()

    def __len__(self):
        with self._lock:
            return len(self._agents)

    def __contains__(self, agent_id):
        with self._lock:
            return agent_id in self._agents

    def lookup(self, agent_id: str) -> Optional[Agent]:
        """Return the Agent for agent_id, or None if it is unknown."""
        with self._lock:
            return self._agents.get(agent_id)

    def get_or_create(self, agent_id: str) -> Agent:
        """Return the Agent for agent_id, creating it in HANDSHAKE if absent."""
        with self._lock:
            agent = self._agents.get(agent_id)
            if agent is not None:
                return agent

            if self.max_agents is not None and len(self._agents) >= self.max_agents:
                self._evict_oldest()

            agent = Agent(agent_id, history_size=self.history_size)
            self._agents[agent_id] = agent

        logger.info("New agent registered: %s", agent_id)
        return agent

    def list_all(self) -> List[Agent]:
        with self._lock:
            return list(self._agents.values())

    def prune(self, now: Optional[float] = None) -> List[str]:
        """Drop agents not seen within agent_ttl. Returns the removed IDs."""
        if self.agent_ttl is None:
            return []

        cutoff = (now if now is not None else time.time()) - self.agent_ttl
        removed = []
        with self._lock:
            for agent_id, agent in list(self._agents.items()):
                if agent.last_seen.timestamp() < cutoff:
                    del self._agents[agent_id]
                    removed.append(agent_id)

        for agent_id in removed:
            logger.info("Agent %s expired", agent_id)
        return removed

    def _evict_oldest(self):
        # Caller holds self._lock
        oldest = min(self._agents.values(), key=lambda a: a.last_seen)
        del self._agents[oldest.agent_id]
        logger.warning("Registry full (%d agents), evicted %s",
                       self.max_agents, oldest.agent_id)
