"""
chainShell Outbound Dispatcher
Builds, encrypts, sequences and submits commands to agents.

Lock order is always agent lock, then the transport ordering token. The
agent lock keeps out_seq order equal to submission order for one agent;
the token lock keeps nonces unique across all agents.
"""

import logging
from typing import Dict, Union

from . import crypto, protocol
from .errors import AgentNotFound, ProtocolError
from .protocol import Command
from .registry import AgentStatus, SessionRegistry
from .transport import Transport

logger = logging.getLogger(__name__)


class OutboundDispatcher:

    def __init__(self, registry: SessionRegistry, transport: Transport):
        self.registry = registry
        self.transport = transport

    def send(self, agent_id: str, payload: str, msg_id: int) -> int:
        """
        Send one command to an agent. Returns the sequence number used.

        Raises AgentNotFound, SerializationError, EncryptError or
        TransportError. out_seq is not rolled back on TransportError.
        """
        # Only inbound traffic creates agents
        agent = self.registry.lookup(agent_id)
        if agent is None:
            raise AgentNotFound(agent_id)

        raw = protocol.encode_command(
            Command(agent_id=agent_id, msg_id=msg_id, data=payload))

        # Start unencrypted, encrypt once a session key is negotiated
        data = raw.decode("utf-8")
        encrypted = False
        if agent.session_key is not None:
            data = crypto.symmetric_encrypt(raw, agent.session_key)
            encrypted = True

        with agent.lock:
            agent.out_seq += 1
            seq = agent.out_seq

            with self.transport.ordering_token.reserve() as nonce:
                self.transport.submit(agent_id, data, seq, nonce, True, encrypted)

        logger.debug("Sent msg %d to %s (seq=%d, nonce=%d, encrypted=%s)",
                     msg_id, agent_id, seq, nonce, encrypted)
        return seq

    def broadcast(self, payload: str, msg_id: int,
                  status: AgentStatus = AgentStatus.ACTIVE) -> Dict[str, Union[int, ProtocolError]]:
        """Send to every agent in status. Maps agent ID to seq or the error raised."""
        results: Dict[str, Union[int, ProtocolError]] = {}
        for agent in self.registry.list_all():
            if agent.status != status:
                continue
            try:
                results[agent.agent_id] = self.send(agent.agent_id, payload, msg_id)
            except ProtocolError as e:
                logger.warning("Broadcast to %s failed: %s", agent.agent_id, e)
                results[agent.agent_id] = e
        return results
