"""
chainShell Inbound Reassembly Pipeline
Turns raw transport events into decoded command envelopes.

Per event:
- events at or below the agent's sequence watermark are discarded
- accepted fragments are appended to the agent's data buffer
- the final fragment triggers decrypt (if flagged), decode and emit
- an envelope naming a different agent than the one that sent it is dropped
- the buffer is cleared after every final fragment, success or not

Fragments of one message are assumed to arrive in order with strictly
increasing seq. Reordering before the final fragment is not detected.
"""

import collections
import logging
import queue
import threading
from typing import Callable, Iterable, Optional

from . import crypto, protocol
from .errors import DecryptError, SerializationError
from .protocol import Command, TransportEvent
from .registry import Agent, SessionRegistry

logger = logging.getLogger(__name__)

DROP_DECRYPT = "decrypt"
DROP_DECODE = "decode"

_EXHAUSTED = object()


class InboundPipeline:
    """
    Serial consumer of transport events.

    sink receives every decoded Command: anything with a put() method
    (a queue.Queue by default) or a plain callable.
    on_drop(agent, reason, exc) is called for each dropped message.
    """

    def __init__(self, registry: SessionRegistry, sink=None,
                 on_drop: Optional[Callable[[Agent, str, Exception], None]] = None):
        self.registry = registry
        self.sink = sink if sink is not None else queue.Queue()
        self.on_drop = on_drop
        self.stats = collections.Counter()

    def process(self, event: TransportEvent) -> Optional[Command]:
        """Handle one event. Returns the emitted command, if any."""
        agent = self.registry.get_or_create(event.agent_id)

        # Duplicate or stale event, transports redeliver
        if event.seq <= agent.in_seq:
            self.stats["duplicates"] += 1
            logger.debug("Discarding seq %d from %s (watermark %d)",
                         event.seq, agent.agent_id, agent.in_seq)
            return None

        agent.in_seq = event.seq
        agent.touch()
        agent.data_buffer += event.data
        self.stats["accepted"] += 1

        if not event.final:
            return None

        try:
            return self._reassemble(agent, event.encrypted)
        finally:
            agent.data_buffer = ""

    def run(self, events: Iterable[Optional[TransportEvent]],
            stop: threading.Event):
        """
        Consume events until stop is set.

        stop is only checked between events. None items from the
        subscription are idle ticks. TransportError from the subscription
        propagates to the caller.
        """
        iterator = iter(events)
        try:
            while not stop.is_set():
                event = next(iterator, _EXHAUSTED)
                if event is _EXHAUSTED or stop.is_set():
                    break
                if event is None:
                    continue
                self.process(event)
        finally:
            close = getattr(iterator, "close", None)
            if close is not None:
                close()

    def _reassemble(self, agent: Agent, encrypted: bool) -> Optional[Command]:
        raw = agent.data_buffer

        if encrypted:
            try:
                raw = crypto.symmetric_decrypt(raw, agent.session_key)
            except DecryptError as e:
                self._drop(agent, DROP_DECRYPT, e)
                return None

        try:
            command = protocol.decode_command(raw)
        except SerializationError as e:
            self._drop(agent, DROP_DECODE, e)
            return None

        # An envelope may only speak for the agent whose events carried it
        if command.agent_id != agent.agent_id:
            self._drop(agent, DROP_DECODE, SerializationError(
                f"Envelope claims AgentID {command.agent_id!r}"))
            return None

        self.stats["emitted"] += 1
        self._emit(command)
        return command

    def _emit(self, command: Command):
        put = getattr(self.sink, "put", None)
        if put is not None:
            put(command)
        else:
            self.sink(command)

    def _drop(self, agent: Agent, reason: str, exc: Exception):
        self.stats["dropped_" + reason] += 1
        logger.warning("Dropped message from %s (%s): %s",
                       agent.agent_id, reason, exc)
        if self.on_drop is not None:
            try:
                self.on_drop(agent, reason, exc)
            except Exception:
                logger.exception("on_drop hook failed for %s", agent.agent_id)
