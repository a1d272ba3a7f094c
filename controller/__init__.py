"""
chainShell protocol core: session registry, inbound reassembly,
outbound dispatch and the transport/crypto seams they use.
"""

from .controller import Controller
from .dispatcher import OutboundDispatcher
from .errors import (
    AgentNotFound,
    CryptoError,
    DecryptError,
    EncryptError,
    ProtocolError,
    SerializationError,
    TransportError,
)
from .pipeline import InboundPipeline
from .protocol import Command, MsgID, TransportEvent
from .registry import Agent, AgentStatus, SessionRegistry
from .transport import MemoryLedger, OrderingToken, Transport

__all__ = [
    "Controller",
    "OutboundDispatcher",
    "InboundPipeline",
    "SessionRegistry",
    "Agent",
    "AgentStatus",
    "Command",
    "MsgID",
    "TransportEvent",
    "Transport",
    "MemoryLedger",
    "OrderingToken",
    "ProtocolError",
    "AgentNotFound",
    "SerializationError",
    "CryptoError",
    "EncryptError",
    "DecryptError",
    "TransportError",
]
