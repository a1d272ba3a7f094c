"""
chainShell Transport Adapter
Abstract publish/subscribe view of the event log plus an in-memory ledger.

A real deployment backs Transport with a contract event stream; the
in-memory ledger keeps the same properties (append-only, multi-writer,
per-writer nonces, possible redelivery) for tests and lab use.
"""

import contextlib
import logging
import queue
import threading
from abc import ABC, abstractmethod
from typing import Dict, Iterator, List, Optional, Tuple

from .errors import TransportError
from .protocol import TransportEvent

logger = logging.getLogger(__name__)

# Stream names inside the ledger
TO_SERVER = "server"
TO_AGENT = "agent"


class OrderingToken:
    """
    Transport-level nonce for one writer.

    reserve() holds the lock for the whole submission and advances the
    counter by exactly one when it exits, whether or not the submission
    succeeded.
    """

    def __init__(self, start: int = 0):
        self._next = start
        self._lock = threading.Lock()

    @property
    def value(self) -> int:
        with self._lock:
            return self._next

    @contextlib.contextmanager
    def reserve(self):
        with self._lock:
            nonce = self._next
            try:
                yield nonce
            finally:
                self._next = nonce + 1


class Transport(ABC):
    """What the protocol core needs from the event log."""

    ordering_token: OrderingToken

    @abstractmethod
    def subscribe(self) -> Iterator[Optional[TransportEvent]]:
        """
        Lazy, unbounded, order-preserving stream of inbound events.

        May yield None when idle so consumers can check for a stop signal.
        Raises TransportError if the subscription fails.
        """
        raise NotImplementedError

    @abstractmethod
    def submit(self, agent_id: str, payload: str, seq: int,
               ordering_token: int, final: bool, encrypted: bool):
        """Append one event. Returns a confirmation or raises TransportError."""
        raise NotImplementedError


class MemoryLedger:
    """
    In-process event log with two streams: events for the controller and
    events for agents. Each subscriber gets its own delivery queue.
    """

    def __init__(self, poll_interval: float = 0.5):
        self.poll_interval = poll_interval
        self._lock = threading.Lock()
        self._log: Dict[str, List[TransportEvent]] = {TO_SERVER: [], TO_AGENT: []}
        self._subscribers: Dict[str, List[Tuple[Optional[str], queue.Queue]]] = {
            TO_SERVER: [], TO_AGENT: []}
        self._last_nonce: Dict[str, int] = {}
        self._fail_next = 0
        self.submissions = 0

    def events(self, stream: str) -> List[TransportEvent]:
        with self._lock:
            return list(self._log[stream])

    def fail_next(self, count: int = 1):
        """Make the next count submissions raise TransportError."""
        with self._lock:
            self._fail_next += count

    def append(self, stream: str, writer: str, nonce: int,
               event: TransportEvent) -> int:
        """Record event and fan it out. Returns its position in the stream."""
        with self._lock:
            self.submissions += 1

            if self._fail_next:
                self._fail_next -= 1
                raise TransportError(f"Submission from {writer} rejected")

            last = self._last_nonce.get(writer)
            if last is not None and nonce <= last:
                raise TransportError(
                    f"Nonce too low for {writer}: {nonce} <= {last}")
            self._last_nonce[writer] = nonce

            self._log[stream].append(event)
            position = len(self._log[stream]) - 1
            self._deliver(stream, event)

        return position

    def redeliver(self, stream: str, position: int = -1):
        """Deliver an already recorded event again, as real transports do."""
        with self._lock:
            event = self._log[stream][position]
            self._deliver(stream, event)

    def subscribe(self, stream: str,
                  agent_id: Optional[str] = None) -> Iterator[Optional[TransportEvent]]:
        inbox: queue.Queue = queue.Queue()
        with self._lock:
            self._subscribers[stream].append((agent_id, inbox))
        return self._consume(stream, agent_id, inbox)

    def _consume(self, stream, agent_id, inbox):
        try:
            while True:
                try:
                    yield inbox.get(timeout=self.poll_interval)
                except queue.Empty:
                    yield None
        finally:
            with self._lock:
                self._subscribers[stream].remove((agent_id, inbox))

    def _deliver(self, stream, event):
        # Caller holds self._lock
        for agent_id, inbox in self._subscribers[stream]:
            if agent_id is None or agent_id == event.agent_id:
                inbox.put(event)

    def server_transport(self, initial_nonce: int = 0) -> "LedgerTransport":
        """Transport view for the controller."""
        return LedgerTransport(self, read=TO_SERVER, write=TO_AGENT,
                               writer="controller", initial_nonce=initial_nonce)

    def agent_transport(self, agent_id: str) -> "LedgerTransport":
        """Transport view for one agent: it only sees its own events."""
        return LedgerTransport(self, read=TO_AGENT, write=TO_SERVER,
                               writer=agent_id, listen_for=agent_id)


class LedgerTransport(Transport):

    def __init__(self, ledger: MemoryLedger, read: str, write: str,
                 writer: str, listen_for: Optional[str] = None,
                 initial_nonce: int = 0):
        self.ledger = ledger
        self.read = read
        self.write = write
        self.writer = writer
        self.listen_for = listen_for
        self.ordering_token = OrderingToken(initial_nonce)

    def subscribe(self):
        return self.ledger.subscribe(self.read, self.listen_for)

    def submit(self, agent_id, payload, seq, ordering_token, final, encrypted):
        event = TransportEvent(agent_id=agent_id, seq=seq, data=payload,
                               final=final, encrypted=encrypted)
        position = self.ledger.append(self.write, self.writer, ordering_token, event)
        logger.debug("%s submitted seq=%d nonce=%d for %s at #%d",
                     self.writer, seq, ordering_token, agent_id, position)
        return position
