from __future__ import annotations

import threading

import pytest

from adapters.transport.in_memory_broker import InMemoryBroker
from adapters.transport.loopback import LoopbackTransport
from ports.transport import MessageTransport, TransportError


def test_transports_satisfy_port():
    assert isinstance(InMemoryBroker(), MessageTransport)
    assert isinstance(LoopbackTransport(), MessageTransport)


def test_broker_delivers_and_acks():
    broker = InMemoryBroker()
    got: list[bytes] = []
    done = threading.Event()

    def _handler(delivery):
        got.append(delivery.body)
        delivery.ack()
        if len(got) == 3:
            done.set()

    broker.subscribe("q", _handler)
    for body in (b"a", b"b", b"c"):
        broker.publish("q", body)

    assert done.wait(timeout=5)
    assert broker.join(timeout=5)
    assert got == [b"a", b"b", b"c"]
    assert broker.unacked("q") == 0
    broker.close()


def test_broker_requeues_on_nack():
    broker = InMemoryBroker()
    attempts: list[bytes] = []
    done = threading.Event()

    def _handler(delivery):
        attempts.append(delivery.body)
        if len(attempts) == 1:
            delivery.nack(requeue=True)
        else:
            delivery.ack()
            done.set()

    broker.subscribe("q", _handler)
    broker.publish("q", b"retry-me")

    assert done.wait(timeout=5)
    assert attempts == [b"retry-me", b"retry-me"]
    assert broker.join(timeout=5)
    broker.close()


def test_broker_dead_letters_when_handler_raises():
    broker = InMemoryBroker()

    def _handler(delivery):
        raise RuntimeError("boom")

    broker.subscribe("q", _handler)
    broker.publish("q", b"poison")

    assert broker.join(timeout=5)
    assert broker.dead_letters == [("q", b"poison")]
    broker.close()


def test_broker_holds_messages_until_subscribed():
    broker = InMemoryBroker()
    broker.setup_queues(["q"])
    broker.publish("q", b"early")

    assert broker.depth("q") == 1

    got = threading.Event()
    broker.subscribe("q", lambda d: (d.ack(), got.set()))

    assert got.wait(timeout=5)
    broker.close()


def test_broker_rejects_publish_after_close():
    broker = InMemoryBroker()
    broker.close()

    with pytest.raises(TransportError):
        broker.publish("q", b"x")


def test_loopback_delivers_inline():
    transport = LoopbackTransport()
    got: list[bytes] = []
    transport.subscribe("q", lambda d: got.append(d.body))

    transport.publish("q", b"now")

    assert got == [b"now"]


def test_loopback_without_subscriber_raises():
    with pytest.raises(TransportError):
        LoopbackTransport().publish("nowhere", b"x")


def test_loopback_nested_publish_runs_after_handler_returns():
    transport = LoopbackTransport()
    order: list[str] = []

    def _first(delivery):
        transport.publish("second", b"")
        order.append("first done")

    transport.subscribe("first", _first)
    transport.subscribe("second", lambda d: order.append("second"))

    transport.publish("first", b"")

    assert order == ["first done", "second"]


def test_loopback_long_chain_does_not_recurse():
    transport = LoopbackTransport()
    count = {"n": 0}

    def _bounce(delivery):
        count["n"] += 1
        if count["n"] < 5_000:
            transport.publish("ping", b"")

    transport.subscribe("ping", _bounce)
    transport.publish("ping", b"")

    assert count["n"] == 5_000
