"""
Adapter: AmqpTransport
Implementuje port MessageTransport nad brokerem AMQP (RabbitMQ), klient pika.

Pozwala uruchomić dispatcher, workery i klientów jako osobne procesy:
  - kolejki trwałe (durable), deklarowane przez setup_queues()
  - publikacja przez domyślny exchange, routing_key = nazwa kolejki,
    wiadomości persistent z content_type application/json
  - subscribe(): osobny wątek z własnym połączeniem i kanałem,
    prefetch_count z konfiguracji, ręczny ack / nack

pika.BlockingConnection nie jest bezpieczne wątkowo:
  - publikacja idzie przez jedno połączenie chronione lockiem
  - ack/nack wywołany spoza wątku konsumenta trafia do niego przez
    add_callback_threadsafe()
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Optional

import pika
from pika.exceptions import AMQPError

from ports.transport import DeliveryHandler, TransportError

logger = logging.getLogger("distcalc.amqp")

_PROCESS_EVENTS_S = 0.2
_PUBLISH_ATTEMPTS = 2
_CANCEL_TIMEOUT_S = 5.0

_JSON_PERSISTENT = pika.BasicProperties(
    content_type="application/json",
    delivery_mode=2,  # persistent
)


@dataclass
class AmqpDelivery:
    queue: str
    body: bytes
    delivery_tag: int
    _consumer: _AmqpConsumer = field(repr=False)
    settled: bool = False

    def ack(self) -> None:
        if self.settled:
            return
        self.settled = True
        tag = self.delivery_tag
        self._consumer.settle(lambda channel: channel.basic_ack(delivery_tag=tag))

    def nack(self, requeue: bool = False) -> None:
        if self.settled:
            return
        self.settled = True
        tag = self.delivery_tag
        self._consumer.settle(
            lambda channel: channel.basic_nack(delivery_tag=tag, requeue=requeue)
        )


class _AmqpConsumer:
    """Wątek konsumenta jednej kolejki z własnym połączeniem."""

    def __init__(
        self,
        parameters: pika.connection.Parameters,
        queue_name: str,
        handler: DeliveryHandler,
        prefetch_count: int,
    ) -> None:
        self._parameters = parameters
        self._queue_name = queue_name
        self._handler = handler
        self._prefetch_count = prefetch_count
        self._connection = None
        self._channel = None
        self._error: Optional[AMQPError] = None
        self._ready = threading.Event()
        self._stop = threading.Event()
        self._thread = threading.Thread(
            target=self._run,
            name=f"amqp-consumer-{queue_name}",
            daemon=True,
        )
        self._thread.start()
        self._ready.wait()
        if self._error is not None:
            raise TransportError(
                f"cannot consume from {queue_name}: {self._error}"
            ) from self._error

    def cancel(self) -> None:
        self._stop.set()
        if threading.current_thread() is not self._thread:
            self._thread.join(timeout=_CANCEL_TIMEOUT_S)

    def settle(self, action: Callable) -> None:
        channel = self._channel
        if threading.current_thread() is self._thread:
            action(channel)
            return
        try:
            self._connection.add_callback_threadsafe(lambda: action(channel))
        except AMQPError as exc:
            # Broker i tak odda niepotwierdzoną wiadomość po zerwaniu połączenia
            logger.error("Cannot settle delivery on %s: %s", self._queue_name, exc)

    def _run(self) -> None:
        try:
            connection = pika.BlockingConnection(self._parameters)
            channel = connection.channel()
            channel.queue_declare(queue=self._queue_name, durable=True)
            channel.basic_qos(prefetch_count=self._prefetch_count)
            channel.basic_consume(
                queue=self._queue_name,
                on_message_callback=self._on_message,
                auto_ack=False,
            )
        except AMQPError as exc:
            self._error = exc
            self._ready.set()
            return

        self._connection, self._channel = connection, channel
        self._ready.set()
        logger.debug("Consuming from %s", self._queue_name)
        try:
            while not self._stop.is_set():
                connection.process_data_events(time_limit=_PROCESS_EVENTS_S)
        except AMQPError:
            logger.exception("Consumer on %s lost its connection", self._queue_name)
        finally:
            if connection.is_open:
                try:
                    connection.close()
                except AMQPError as exc:
                    logger.warning("Closing consumer connection for %s failed: %s", self._queue_name, exc)

    def _on_message(self, channel, method, properties, body: bytes) -> None:
        delivery = AmqpDelivery(
            queue=self._queue_name,
            body=body,
            delivery_tag=method.delivery_tag,
            _consumer=self,
        )
        try:
            self._handler(delivery)
        except Exception:
            logger.exception("Handler for %s raised; message rejected", self._queue_name)
            delivery.nack(requeue=False)


class AmqpTransport:
    """Transport nad RabbitMQ, wspólny dla wszystkich komponentów procesu."""

    def __init__(self, url: str, prefetch_count: int = 1) -> None:
        self._parameters = pika.URLParameters(url)
        self._prefetch_count = max(1, prefetch_count)
        self._publish_lock = threading.Lock()
        self._connection = None
        self._channel = None
        self._consumers: list[_AmqpConsumer] = []
        self._consumers_lock = threading.Lock()
        self._closed = False

    # -- Kolejki -------------------------------------------------------------

    def declare_queue(self, name: str) -> None:
        with self._publish_lock:
            try:
                self._publish_channel().queue_declare(queue=name, durable=True)
            except AMQPError as exc:
                self._reset_publisher()
                raise TransportError(f"cannot declare queue {name}: {exc}") from exc

    def setup_queues(self, names: list[str]) -> None:
        for name in names:
            self.declare_queue(name)
            logger.info("Queue declared: %s", name)

    # -- MessageTransport protocol -------------------------------------------

    def publish(self, queue: str, body: bytes) -> None:
        if self._closed:
            raise TransportError(f"transport closed, cannot publish to {queue}")
        with self._publish_lock:
            last_error: Optional[AMQPError] = None
            # Druga próba na świeżym połączeniu (np. zerwane przez heartbeat)
            for attempt in range(1, _PUBLISH_ATTEMPTS + 1):
                try:
                    self._publish_channel().basic_publish(
                        exchange="",
                        routing_key=queue,
                        body=body,
                        properties=_JSON_PERSISTENT,
                    )
                    return
                except AMQPError as exc:
                    last_error = exc
                    logger.warning("Publish to %s failed (attempt %d): %s", queue, attempt, exc)
                    self._reset_publisher()
        raise TransportError(f"cannot publish to {queue}: {last_error}") from last_error

    def subscribe(self, queue: str, handler: DeliveryHandler) -> _AmqpConsumer:
        if self._closed:
            raise TransportError(f"transport closed, cannot subscribe to {queue}")
        consumer = _AmqpConsumer(self._parameters, queue, handler, self._prefetch_count)
        with self._consumers_lock:
            self._consumers.append(consumer)
        return consumer

    def close(self) -> None:
        self._closed = True
        with self._consumers_lock:
            consumers = list(self._consumers)
            self._consumers.clear()
        for consumer in consumers:
            consumer.cancel()
        with self._publish_lock:
            self._reset_publisher()

    # -- Prywatne ------------------------------------------------------------

    def _publish_channel(self):
        """Wołane pod _publish_lock."""
        if self._channel is None or not self._channel.is_open:
            self._reset_publisher()
            self._connection = pika.BlockingConnection(self._parameters)
            self._channel = self._connection.channel()
        return self._channel

    def _reset_publisher(self) -> None:
        connection = self._connection
        self._connection = None
        self._channel = None
        if connection is not None and connection.is_open:
            try:
                connection.close()
            except AMQPError as exc:
                logger.debug("Closing publisher connection failed: %s", exc)
