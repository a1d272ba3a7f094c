import queue
import threading

import pytest

from controller import crypto, protocol
from controller.errors import TransportError
from controller.pipeline import InboundPipeline
from controller.protocol import Command, MsgID, TransportEvent
from controller.registry import AgentStatus


def envelope(agent_id="a1", msg_id=MsgID.CHECKIN, data="payload"):
    return protocol.encode_command(Command(agent_id, msg_id, data)).decode("utf-8")


def drain(sink):
    items = []
    while True:
        try:
            items.append(sink.get_nowait())
        except queue.Empty:
            return items


@pytest.fixture
def pipeline(registry):
    return InboundPipeline(registry)


def test_single_fragment_emits(pipeline):
    command = pipeline.process(TransportEvent("a1", 1, envelope()))
    assert command == Command("a1", MsgID.CHECKIN, "payload")
    assert drain(pipeline.sink) == [command]
    assert pipeline.stats["emitted"] == 1


def test_unknown_agent_is_created_in_handshake(pipeline, registry):
    pipeline.process(TransportEvent("new", 1, "partial", final=False))
    agent = registry.lookup("new")
    assert agent is not None
    assert agent.status == AgentStatus.HANDSHAKE
    assert agent.in_seq == 1
    assert agent.out_seq == 0


def test_three_fragments_reassemble(pipeline, registry):
    text = envelope(data="x" * 50)
    parts = [text[:20], text[20:40], text[40:]]

    assert pipeline.process(TransportEvent("a1", 1, parts[0], final=False)) is None
    assert pipeline.process(TransportEvent("a1", 2, parts[1], final=False)) is None
    assert registry.lookup("a1").data_buffer == parts[0] + parts[1]
    command = pipeline.process(TransportEvent("a1", 3, parts[2], final=True))

    assert command.data == "x" * 50
    assert drain(pipeline.sink) == [command]
    assert registry.lookup("a1").data_buffer == ""


def test_duplicate_delivery_is_a_noop(pipeline, registry):
    text = envelope()
    first = TransportEvent("a1", 1, text[:10], final=False)
    pipeline.process(first)
    buffer_before = registry.lookup("a1").data_buffer

    pipeline.process(first)
    pipeline.process(TransportEvent("a1", 0, "junk", final=True))

    agent = registry.lookup("a1")
    assert agent.data_buffer == buffer_before
    assert agent.in_seq == 1
    assert pipeline.stats["duplicates"] == 2
    assert drain(pipeline.sink) == []


def test_redelivered_final_does_not_emit_twice(pipeline):
    event = TransportEvent("a1", 4, envelope())
    pipeline.process(event)
    pipeline.process(event)
    assert len(drain(pipeline.sink)) == 1


def test_watermark_is_non_decreasing(pipeline, registry):
    watermarks = []
    for seq in (3, 1, 5, 5, 2, 9, 7):
        pipeline.process(TransportEvent("a1", seq, envelope()))
        watermarks.append(registry.lookup("a1").in_seq)
    assert watermarks == sorted(watermarks)
    assert watermarks[-1] == 9


def test_gaps_in_seq_are_accepted(pipeline):
    pipeline.process(TransportEvent("a1", 10, envelope()))
    pipeline.process(TransportEvent("a1", 25, envelope()))
    assert len(drain(pipeline.sink)) == 2


def test_agents_are_independent(pipeline, registry):
    pipeline.process(TransportEvent("a1", 5, "a1-part", final=False))
    pipeline.process(TransportEvent("a2", 1, envelope("a2")))
    assert registry.lookup("a1").data_buffer == "a1-part"
    assert [c.agent_id for c in drain(pipeline.sink)] == ["a2"]


def test_encrypted_message_with_session_key(pipeline, registry, session_key):
    registry.get_or_create("a1").set_session_key(session_key)
    ciphertext = crypto.symmetric_encrypt(envelope().encode("utf-8"), session_key)
    half = len(ciphertext) // 2

    pipeline.process(TransportEvent("a1", 1, ciphertext[:half], final=False, encrypted=True))
    command = pipeline.process(TransportEvent("a1", 2, ciphertext[half:], final=True, encrypted=True))

    assert command == Command("a1", MsgID.CHECKIN, "payload")


def test_encrypted_without_key_is_dropped(pipeline, registry, session_key):
    ciphertext = crypto.symmetric_encrypt(envelope().encode("utf-8"), session_key)
    drops = []
    pipeline.on_drop = lambda agent, reason, exc: drops.append(reason)

    assert pipeline.process(TransportEvent("a1", 1, ciphertext, encrypted=True)) is None

    assert drain(pipeline.sink) == []
    assert registry.lookup("a1").data_buffer == ""
    assert pipeline.stats["dropped_decrypt"] == 1
    assert drops == ["decrypt"]


def test_encrypted_with_wrong_key_is_dropped(pipeline, registry, session_key):
    registry.get_or_create("a1").set_session_key(crypto.generate_session_key())
    ciphertext = crypto.symmetric_encrypt(envelope().encode("utf-8"), session_key)

    pipeline.process(TransportEvent("a1", 1, ciphertext[:8], final=False, encrypted=True))
    assert pipeline.process(TransportEvent("a1", 2, ciphertext[8:], encrypted=True)) is None

    assert drain(pipeline.sink) == []
    assert registry.lookup("a1").data_buffer == ""


def test_malformed_clear_message_is_dropped_and_next_one_is_clean(pipeline, registry):
    pipeline.process(TransportEvent("a1", 1, "{broken", final=False))
    assert pipeline.process(TransportEvent("a1", 2, "json", final=True)) is None
    assert registry.lookup("a1").data_buffer == ""
    assert pipeline.stats["dropped_decode"] == 1

    command = pipeline.process(TransportEvent("a1", 3, envelope(data="next")))
    assert command.data == "next"


def test_callable_sink(registry):
    received = []
    pipeline = InboundPipeline(registry, sink=received.append)
    pipeline.process(TransportEvent("a1", 1, envelope()))
    assert len(received) == 1


def test_run_consumes_until_exhausted(pipeline):
    events = [None, TransportEvent("a1", 1, envelope()), None,
              TransportEvent("a1", 2, envelope(data="two"))]
    pipeline.run(events, threading.Event())
    assert [c.data for c in drain(pipeline.sink)] == ["payload", "two"]


def test_run_stops_between_events(pipeline):
    stop = threading.Event()

    def events():
        yield TransportEvent("a1", 1, envelope())
        stop.set()
        yield TransportEvent("a1", 2, envelope())

    pipeline.run(events(), stop)
    assert len(drain(pipeline.sink)) == 1


def test_run_propagates_transport_error(pipeline):
    def events():
        yield TransportEvent("a1", 1, envelope())
        raise TransportError("subscription lost")

    with pytest.raises(TransportError):
        pipeline.run(events(), threading.Event())
    assert len(drain(pipeline.sink)) == 1


def test_envelope_for_another_agent_is_dropped(pipeline, registry, session_key):
    registry.get_or_create("victim")
    registry.get_or_create("a1").set_session_key(session_key)
    forged = crypto.symmetric_encrypt(
        envelope("victim", MsgID.DISCONNECT, "").encode("utf-8"), session_key)

    assert pipeline.process(TransportEvent("a1", 1, forged, encrypted=True)) is None
    assert pipeline.process(TransportEvent("a1", 2, envelope("victim"))) is None

    assert drain(pipeline.sink) == []
    assert pipeline.stats["dropped_decode"] == 2
    assert registry.lookup("a1").data_buffer == ""
    assert registry.lookup("victim").in_seq == 0


def test_failing_drop_hook_does_not_escape(pipeline, registry):
    def on_drop(agent, reason, exc):
        raise RuntimeError("hook broke")

    pipeline.on_drop = on_drop
    assert pipeline.process(TransportEvent("a1", 1, "garbage")) is None
    assert pipeline.stats["dropped_decode"] == 1
    assert registry.lookup("a1").data_buffer == ""

    command = pipeline.process(TransportEvent("a1", 2, envelope(data="after")))
    assert command.data == "after"
