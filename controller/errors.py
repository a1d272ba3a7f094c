"""
chainShell Error Taxonomy (Shared)

Every failure the protocol core reports derives from ProtocolError.
Outbound callers receive these directly; the inbound pipeline catches
SerializationError and DecryptError and drops the message instead.
"""


class ProtocolError(Exception):
    """Base class for all chainShell protocol errors."""


class AgentNotFound(ProtocolError):
    """Outbound send to an agent the registry does not know."""

    def __init__(self, agent_id: str):
        super().__init__(f"AgentID {agent_id!r} could not be found")
        self.agent_id = agent_id


class SerializationError(ProtocolError):
    """Command envelope could not be encoded or decoded."""


class CryptoError(ProtocolError):
    """Base class for crypto provider failures."""


class EncryptError(CryptoError):
    pass


class DecryptError(CryptoError):
    """Wrong or missing key, or malformed/tampered ciphertext."""


class TransportError(ProtocolError):
    """Submission or subscription failure at the transport boundary."""
