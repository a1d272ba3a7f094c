import threading

import pytest

from controller.errors import TransportError
from controller.protocol import TransportEvent
from controller.transport import OrderingToken, TO_AGENT, TO_SERVER


def first_event(events):
    for event in events:
        if event is not None:
            return event


def test_ordering_token_advances_even_on_failure():
    token = OrderingToken(5)
    with pytest.raises(RuntimeError):
        with token.reserve() as nonce:
            assert nonce == 5
            raise RuntimeError("submit failed")
    with token.reserve() as nonce:
        assert nonce == 6
    assert token.value == 7


def test_ordering_token_is_unique_across_threads():
    token = OrderingToken()
    seen = []

    def worker():
        for _ in range(100):
            with token.reserve() as nonce:
                seen.append(nonce)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(seen) == list(range(800))


def test_agent_only_sees_its_own_events(ledger):
    server = ledger.server_transport()
    events = ledger.agent_transport("a2").subscribe()

    with server.ordering_token.reserve() as nonce:
        server.submit("a1", "for a1", 1, nonce, True, False)
    with server.ordering_token.reserve() as nonce:
        server.submit("a2", "for a2", 1, nonce, True, False)

    assert first_event(events).data == "for a2"
    events.close()


def test_controller_sees_every_agent(ledger):
    events = ledger.server_transport().subscribe()
    for agent_id in ("a1", "a2"):
        transport = ledger.agent_transport(agent_id)
        with transport.ordering_token.reserve() as nonce:
            transport.submit(agent_id, "hi", 1, nonce, False, False)

    assert first_event(events).agent_id == "a1"
    assert first_event(events).agent_id == "a2"
    assert [e.final for e in ledger.events(TO_SERVER)] == [False, False]
    events.close()


def test_idle_subscription_yields_none(ledger):
    events = ledger.server_transport().subscribe()
    assert next(events) is None
    events.close()


def test_redeliver(ledger):
    events = ledger.agent_transport("a1").subscribe()
    ledger.append(TO_AGENT, "controller", 0, TransportEvent("a1", 1, "x"))
    ledger.redeliver(TO_AGENT)

    assert first_event(events) == first_event(events)
    events.close()


def test_fail_next(ledger):
    transport = ledger.server_transport()
    ledger.fail_next()
    with pytest.raises(TransportError):
        with transport.ordering_token.reserve() as nonce:
            transport.submit("a1", "x", 1, nonce, True, False)
    with transport.ordering_token.reserve() as nonce:
        assert transport.submit("a1", "x", 2, nonce, True, False) == 0
    assert ledger.submissions == 2


def test_nonces_are_per_writer(ledger):
    ledger.append(TO_SERVER, "a1", 0, TransportEvent("a1", 1, "x"))
    ledger.append(TO_SERVER, "a2", 0, TransportEvent("a2", 1, "x"))
    with pytest.raises(TransportError):
        ledger.append(TO_SERVER, "a1", 0, TransportEvent("a1", 2, "x"))
