"""
Adapter: InMemoryBroker
Implementuje port MessageTransport — broker kolejek w pamięci procesu.

Semantyka zbliżona do brokera AMQP:
  - nazwane kolejki FIFO (declare_queue / setup_queues; publish deklaruje w locie)
  - subscribe() uruchamia wątki konsumenta; konsumenci jednej kolejki
    dzielą się wiadomościami (competing consumers)
  - potwierdzenia na poziomie aplikacji: ack() / nack(requeue)
  - nack(requeue=False) i wyjątek w handlerze → dead_letters

Kolejność dostarczania nie jest gwarantowana między kolejkami.
"""
from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from typing import Optional

from ports.transport import DeliveryHandler, TransportError

logger = logging.getLogger("distcalc.broker")

_POLL_INTERVAL_S = 0.05


@dataclass
class BrokerDelivery:
    queue: str
    body: bytes
    _broker: InMemoryBroker = field(repr=False)
    settled: bool = False

    def ack(self) -> None:
        if self.settled:
            return
        self.settled = True
        self._broker._settle(self.queue)

    def nack(self, requeue: bool = False) -> None:
        if self.settled:
            return
        self.settled = True
        if requeue:
            self._broker._requeue(self.queue, self.body)
        else:
            self._broker._dead_letter(self.queue, self.body)
        self._broker._settle(self.queue)


class _Consumer:
    def __init__(
        self,
        broker: InMemoryBroker,
        queue_name: str,
        handler: DeliveryHandler,
        threads: int,
    ) -> None:
        self._broker = broker
        self._queue_name = queue_name
        self._handler = handler
        self._stop = threading.Event()
        self._threads = [
            threading.Thread(
                target=self._run,
                name=f"consumer-{queue_name}-{i}",
                daemon=True,
            )
            for i in range(threads)
        ]
        for t in self._threads:
            t.start()

    def cancel(self) -> None:
        self._stop.set()
        current = threading.current_thread()
        for t in self._threads:
            if t is not current:
                t.join(timeout=1.0)

    def _run(self) -> None:
        q = self._broker._queue(self._queue_name)
        while not self._stop.is_set():
            try:
                body = q.get(timeout=_POLL_INTERVAL_S)
            except queue.Empty:
                continue
            delivery = BrokerDelivery(queue=self._queue_name, body=body, _broker=self._broker)
            try:
                self._handler(delivery)
            except Exception:
                logger.exception("Handler for %s raised; message dead-lettered", self._queue_name)
                delivery.nack(requeue=False)
            finally:
                q.task_done()


class InMemoryBroker:
    """Broker wiadomości w pamięci procesu, bezpieczny wątkowo."""

    def __init__(self, consumer_threads: int = 1) -> None:
        self._consumer_threads = max(1, consumer_threads)
        self._queues: dict[str, queue.Queue[bytes]] = {}
        self._unacked: dict[str, int] = {}
        self._consumers: list[_Consumer] = []
        self._lock = threading.Lock()
        self._closed = False
        self.dead_letters: list[tuple[str, bytes]] = []

    # -- Kolejki -------------------------------------------------------------

    def declare_queue(self, name: str) -> None:
        self._queue(name)

    def setup_queues(self, names: list[str]) -> None:
        for name in names:
            self.declare_queue(name)
            logger.debug("Queue declared: %s", name)

    def depth(self, name: str) -> int:
        """Liczba wiadomości czekających w kolejce (bez nieprzetworzonych)."""
        return self._queue(name).qsize()

    def unacked(self, name: str) -> int:
        with self._lock:
            return self._unacked.get(name, 0)

    # -- MessageTransport protocol -------------------------------------------

    def publish(self, queue: str, body: bytes) -> None:
        if self._closed:
            raise TransportError(f"broker closed, cannot publish to {queue}")
        with self._lock:
            self._unacked[queue] = self._unacked.get(queue, 0) + 1
        self._queue(queue).put(body)

    def subscribe(self, queue: str, handler: DeliveryHandler) -> _Consumer:
        if self._closed:
            raise TransportError(f"broker closed, cannot subscribe to {queue}")
        consumer = _Consumer(self, queue, handler, self._consumer_threads)
        with self._lock:
            self._consumers.append(consumer)
        return consumer

    def close(self) -> None:
        self._closed = True
        with self._lock:
            consumers = list(self._consumers)
            self._consumers.clear()
        for consumer in consumers:
            consumer.cancel()

    # -- Synchronizacja (testy, benchmark) -----------------------------------

    def join(self, timeout: Optional[float] = None) -> bool:
        """Czeka aż wszystkie opublikowane wiadomości zostaną rozliczone."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._lock:
                if not any(self._unacked.values()):
                    return True
            if deadline is not None and time.monotonic() >= deadline:
                return False
            time.sleep(_POLL_INTERVAL_S)

    # -- Prywatne ------------------------------------------------------------

    def _queue(self, name: str) -> queue.Queue[bytes]:
        with self._lock:
            q = self._queues.get(name)
            if q is None:
                q = queue.Queue()
                self._queues[name] = q
            return q

    def _settle(self, name: str) -> None:
        with self._lock:
            self._unacked[name] = max(0, self._unacked.get(name, 0) - 1)

    def _requeue(self, name: str, body: bytes) -> None:
        with self._lock:
            self._unacked[name] = self._unacked.get(name, 0) + 1
        self._queue(name).put(body)

    def _dead_letter(self, name: str, body: bytes) -> None:
        with self._lock:
            self.dead_letters.append((name, body))
