"""
chainShell Protocol Definitions (Shared)
Wire types for controller-agent communication over the event log.

A logical command is a JSON envelope:

    {"AgentID": "3f2a...", "MsgID": 3, "Data": "whoami"}

Field order is irrelevant and unknown fields are ignored. The encoded
(optionally encrypted) envelope is split across one or more transport
events, each carrying a slice of the text:

    TransportEvent(agent_id, seq, data, final, encrypted)

Only the event with final=True triggers reassembly.
"""

import json
from dataclasses import dataclass
from enum import IntEnum
from typing import List

from .errors import SerializationError


class MsgID(IntEnum):
    # Agent → Controller: session key wrapped with the controller RSA key
    HANDSHAKE = 1
    # Agent → Controller: {"user": ..., "hostname": ..., "os": ..., "pid": ...}
    CHECKIN = 2
    # Controller → Agent: command line to execute
    EXEC = 3
    # Agent → Controller: {"stdout": ..., "stderr": ..., "exit_code": ...}
    RESULT = 4
    # Agent → Controller: error text
    ERROR = 5
    # Either direction
    DISCONNECT = 6


@dataclass
class Command:
    """Command envelope, the logical unit of communication."""
    agent_id: str
    msg_id: int
    data: str = ""


@dataclass(frozen=True)
class TransportEvent:
    """One unit carried by the transport; many may compose one Command."""
    agent_id: str
    seq: int
    data: str
    final: bool = True
    encrypted: bool = False


def encode_command(command: Command) -> bytes:
    """Serialize a command envelope to JSON bytes."""
    if not isinstance(command.agent_id, str):
        raise SerializationError("AgentID must be a string")
    if isinstance(command.msg_id, bool) or not isinstance(command.msg_id, int):
        raise SerializationError("MsgID must be an integer")
    if not isinstance(command.data, str):
        raise SerializationError("Data must be a string")

    envelope = {
        "AgentID": command.agent_id,
        "MsgID": int(command.msg_id),
        "Data": command.data,
    }
    return json.dumps(envelope, separators=(",", ":")).encode("utf-8")


def decode_command(raw) -> Command:
    """
    Parse a command envelope from JSON text or bytes.

    Raises SerializationError on malformed JSON, missing fields or wrong
    field types.
    """
    try:
        if isinstance(raw, (bytes, bytearray)):
            raw = raw.decode("utf-8")
        envelope = json.loads(raw)
    except (UnicodeDecodeError, ValueError, TypeError) as e:
        raise SerializationError(f"Invalid envelope: {e}") from e

    if not isinstance(envelope, dict):
        raise SerializationError("Envelope must be a JSON object")

    try:
        agent_id = envelope["AgentID"]
        msg_id = envelope["MsgID"]
        data = envelope.get("Data", "")
    except KeyError as e:
        raise SerializationError(f"Envelope missing field {e}") from e

    if not isinstance(agent_id, str):
        raise SerializationError("AgentID must be a string")
    if isinstance(msg_id, bool) or not isinstance(msg_id, int):
        raise SerializationError("MsgID must be an integer")
    if not isinstance(data, str):
        raise SerializationError("Data must be a string")

    return Command(agent_id=agent_id, msg_id=msg_id, data=data)


def fragment(data: str, size: int) -> List[str]:
    """Split data into slices of at most size characters (at least one slice)."""
    if size <= 0:
        raise ValueError("Fragment size must be positive")
    if not data:
        return [""]
    return [data[i:i + size] for i in range(0, len(data), size)]
