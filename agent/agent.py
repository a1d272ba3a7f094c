#!/usr/bin/env python3
"""
chainShell Agent (Beacon Client)
Educational use only — lab environments only.

Responsibilities:
- Negotiate a session key with the controller
- Report system metadata
- Execute ONLY whitelisted commands
- Return results over the event log
- Exit on disconnect
"""

import getpass
import json
import logging
import os
import platform
import shlex
import subprocess
import threading
import uuid
from typing import Dict, Optional, Tuple

from controller import crypto, protocol
from controller.errors import ProtocolError
from controller.pipeline import InboundPipeline
from controller.protocol import Command, MsgID
from controller.registry import AgentStatus, SessionRegistry
from controller.transport import Transport

logger = logging.getLogger(__name__)

# Characters of (possibly encrypted) envelope text per transport event
DEFAULT_FRAGMENT_SIZE = 256

# Whitelist of safe, informational commands only
# ⚠️ Never add destructive or privilege-escalation commands
COMMAND_WHITELIST = {
    # Linux/macOS
    "pwd", "ls", "whoami", "uname", "hostname", "id", "date",
    # Windows
    "cd", "dir", "ver",
    # Cross-platform safe
    "echo"
}

SAFE_ENV = {
    'PATH': '/usr/bin:/bin:/usr/sbin:/sbin' if os.name != 'nt' else os.environ.get('PATH', ''),
    'HOME': os.environ.get('HOME', ''),
    'USER': os.environ.get('USER', ''),
}


def new_agent_id() -> str:
    return uuid.uuid4().hex


class Agent:
    """
    Remote end of a session.

    Inbound traffic from the controller goes through the same reassembly
    pipeline the controller uses, with a one-record registry keyed by this
    agent's ID. Outbound messages are fragmented.
    """

    def __init__(self, transport: Transport, server_key, agent_id: Optional[str] = None,
                 fragment_size: int = DEFAULT_FRAGMENT_SIZE):
        if fragment_size <= 0:
            raise ValueError("fragment_size must be positive")
        self.agent_id = agent_id or new_agent_id()
        self.transport = transport
        if isinstance(server_key, str):
            server_key = crypto.import_public_key(server_key)
        self.server_key = server_key
        self.fragment_size = fragment_size
        self.out_seq = 0
        self.active = False

        # Our half of the session, generated locally and sent in the handshake
        self.session_key = crypto.generate_session_key()
        self.registry = SessionRegistry(max_agents=1)
        self.session = self.registry.get_or_create(self.agent_id)
        self.session.set_session_key(self.session_key)
        self.pipeline = InboundPipeline(self.registry, sink=self.handle_command)

        self._send_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def send_message(self, msg_id: int, data: str, encrypt: bool = True) -> bool:
        """Fragment and submit one command to the controller."""
        try:
            raw = protocol.encode_command(
                Command(agent_id=self.agent_id, msg_id=msg_id, data=data))
            text = crypto.symmetric_encrypt(raw, self.session_key) if encrypt else raw.decode("utf-8")
            pieces = protocol.fragment(text, self.fragment_size)

            # One message at a time so fragments of different messages never interleave
            with self._send_lock:
                for i, piece in enumerate(pieces):
                    self.out_seq += 1
                    with self.transport.ordering_token.reserve() as nonce:
                        self.transport.submit(self.agent_id, piece, self.out_seq, nonce,
                                              i == len(pieces) - 1, encrypt)
            return True
        except ProtocolError as e:
            logger.error("Send error: %s", e)
            return False

    def handshake(self) -> bool:
        """Send our session key wrapped with the controller's public key."""
        try:
            wrapped = crypto.asymmetric_encrypt(self.session_key, self.server_key)
        except ProtocolError as e:
            logger.error("Handshake failed: %s", e)
            return False
        return self.send_message(MsgID.HANDSHAKE, wrapped, encrypt=False)

    def get_metadata(self) -> dict:
        """Collect safe system metadata for check-in."""
        try:
            user = getpass.getuser()
        except (KeyError, OSError):
            user = os.getenv('USER', 'unknown')
        return {
            "os": platform.system(),
            "hostname": platform.node() or "unknown",
            "user": user,
            "pid": os.getpid()
        }

    def execute_command(self, cmd: str) -> Tuple[int, str]:
        """
        Execute a whitelisted command safely.

        Returns (MsgID.RESULT, json result) or (MsgID.ERROR, message).
        """
        try:
            parts = shlex.split(cmd)
        except ValueError as e:
            return MsgID.ERROR, f"Malformed command: {e}"
        if not parts:
            return MsgID.ERROR, "Empty command"

        base_cmd = parts[0].lower()

        # Whitelist check (case-insensitive for Windows)
        if base_cmd not in {c.lower() for c in COMMAND_WHITELIST}:
            return MsgID.ERROR, f"Command '{base_cmd}' not allowed"

        try:
            # No shell, timeout, sanitised environment
            result = subprocess.run(
                parts,
                capture_output=True,
                text=True,
                timeout=10,
                env=SAFE_ENV,
                cwd=os.getcwd()
            )
        except subprocess.TimeoutExpired:
            return MsgID.ERROR, "Command timed out"
        except FileNotFoundError:
            return MsgID.ERROR, f"Command '{base_cmd}' not found"
        except OSError as e:
            return MsgID.ERROR, f"Execution failed: {e}"

        result_data: Dict = {
            "stdout": result.stdout,
            "stderr": result.stderr,
            "exit_code": result.returncode
        }
        return MsgID.RESULT, json.dumps(result_data)

    def handle_command(self, command: Command):
        """Act on one decoded command from the controller."""
        if command.agent_id != self.agent_id:
            logger.warning("Ignoring command addressed to %s", command.agent_id)
            return

        if command.msg_id == MsgID.HANDSHAKE:
            if command.data == "ok" and not self.active:
                self.active = True
                self.session.advance(AgentStatus.ACTIVE)
                logger.info("Session established with controller")
                self.send_message(MsgID.CHECKIN, json.dumps(self.get_metadata()))
        elif command.msg_id == MsgID.EXEC:
            cmd = command.data.strip()
            if cmd:
                msg_id, data = self.execute_command(cmd)
                self.send_message(msg_id, data)
            else:
                self.send_message(MsgID.ERROR, "No command provided")
        elif command.msg_id == MsgID.DISCONNECT:
            logger.info("Disconnect requested by controller")
            self.session.advance(AgentStatus.CLOSED)
            self._stop.set()
        else:
            logger.warning("Unknown message type: %d", command.msg_id)

    def run(self):
        """Main agent loop."""
        # Subscribe first so the handshake reply cannot be missed
        events = self.transport.subscribe()
        if not self.handshake():
            logger.error("Failed to send handshake")
            if hasattr(events, "close"):
                events.close()
            return
        self.pipeline.run(events, self._stop)

    def start(self):
        self._stop.clear()
        self._thread = threading.Thread(target=self.run, name=f"agent-{self.agent_id[:8]}",
                                        daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
