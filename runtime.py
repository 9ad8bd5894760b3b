"""
runtime.py — składanie systemu: transport + dispatcher + workery + klient.

Warianty tego samego schedulera:
  build_runtime(synchronous=False) → InMemoryBroker (wątki konsumentów, asynchronicznie)
  build_runtime(synchronous=True)  → LoopbackTransport (wywołanie/odpowiedź w wątku klienta)
  connect_runtime()                → sam klient nad RabbitMQ; dispatcher i workery
                                     działają jako osobne procesy (distcalc dispatcher / worker)
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from adapters.client.expression_client import ExpressionClient
from adapters.dispatcher.step_dispatcher import StepDispatcher
from adapters.expression_compiler.shunting_yard_compiler import ShuntingYardCompiler
from adapters.operation_worker.arithmetic_worker import ArithmeticWorker, start_workers
from adapters.transport.amqp_transport import AmqpTransport
from adapters.transport.in_memory_broker import InMemoryBroker
from adapters.transport.loopback import LoopbackTransport
from config import Settings
from ports.transport import MessageTransport

logger = logging.getLogger("distcalc.runtime")


@dataclass
class Runtime:
    settings: Settings
    transport: MessageTransport
    client: ExpressionClient
    dispatcher: Optional[StepDispatcher] = None      # None → dispatcher w innym procesie
    workers: list[ArithmeticWorker] = field(default_factory=list)

    def close(self) -> None:
        self.client.stop()
        for worker in self.workers:
            worker.stop()
        if self.dispatcher is not None:
            self.dispatcher.stop()
        self.transport.close()
        logger.info("Runtime closed.")

    def __enter__(self) -> Runtime:
        return self

    def __exit__(self, *exc) -> None:
        self.close()


def build_runtime(
    settings: Settings | None = None,
    synchronous: bool = False,
    client_id: str | None = None,
) -> Runtime:
    settings = settings or Settings()

    if synchronous:
        transport: MessageTransport = LoopbackTransport()
    else:
        broker = InMemoryBroker(consumer_threads=settings.consumer_threads)
        broker.setup_queues(settings.all_queues())
        transport = broker

    dispatcher = StepDispatcher(ShuntingYardCompiler(), transport, settings)
    client = ExpressionClient(transport, settings, client_id=client_id)

    # Konsumenci przed pierwszą publikacją
    client.start()
    workers = start_workers(transport, settings)
    dispatcher.start()

    logger.info(
        "Runtime ready (%s transport, %d workers).",
        "loopback" if synchronous else "broker",
        len(workers),
    )
    return Runtime(
        settings=settings,
        transport=transport,
        client=client,
        dispatcher=dispatcher,
        workers=workers,
    )


def connect_amqp(settings: Settings) -> AmqpTransport:
    """Łączy z RabbitMQ i deklaruje wszystkie kolejki. Rzuca TransportError."""
    transport = AmqpTransport(settings.amqp_url, prefetch_count=settings.amqp_prefetch)
    try:
        transport.setup_queues(settings.all_queues())
    except Exception:
        transport.close()
        raise
    return transport


def connect_runtime(
    settings: Settings | None = None,
    client_id: str | None = None,
) -> Runtime:
    """Klient nad RabbitMQ, bez lokalnego dispatchera i workerów."""
    settings = settings or Settings()
    transport = connect_amqp(settings)
    client = ExpressionClient(transport, settings, client_id=client_id)
    client.start()
    logger.info("Client %s connected to RabbitMQ.", client.client_id)
    return Runtime(settings=settings, transport=transport, client=client)
