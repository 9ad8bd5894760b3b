"""
Adapter: LoopbackTransport
Implementuje port MessageTransport — wariant synchroniczny (wywołanie/odpowiedź).

publish() dostarcza wiadomość do handlera subskrybenta w wątku wołającego.
Publikacje wykonane przez handler w trakcie dostarczania trafiają do kolejki
wątku i są dostarczane po jego powrocie (trampolina), więc łańcuch
krok → wynik → następny krok nie rośnie na stosie wywołań.
Najbardziej zewnętrzne publish() wraca dopiero, gdy cały łańcuch się wyczerpie:
ten sam StepDispatcher działa więc bez brokera, krok po kroku.
"""
from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass

from ports.transport import DeliveryHandler, TransportError

logger = logging.getLogger("distcalc.loopback")


@dataclass
class LoopbackDelivery:
    queue: str
    body: bytes
    acked: bool = False
    requeued: bool = False

    def ack(self) -> None:
        self.acked = True

    def nack(self, requeue: bool = False) -> None:
        # Bez brokera nie ma dokąd zwrócić wiadomości; odnotowujemy tylko fakt
        self.requeued = requeue


class _LoopbackSubscription:
    def __init__(self, transport: LoopbackTransport, queue: str) -> None:
        self._transport = transport
        self._queue = queue

    def cancel(self) -> None:
        self._transport._handlers.pop(self._queue, None)


class LoopbackTransport:
    """Transport synchroniczny: jedna kolejka → jeden handler."""

    def __init__(self) -> None:
        self._handlers: dict[str, DeliveryHandler] = {}
        self._closed = False
        self._local = threading.local()

    # -- MessageTransport protocol -------------------------------------------

    def publish(self, queue: str, body: bytes) -> None:
        if self._closed:
            raise TransportError(f"transport closed, cannot publish to {queue}")
        if queue not in self._handlers:
            raise TransportError(f"no subscriber for queue {queue}")

        backlog: deque[tuple[str, bytes]] | None = getattr(self._local, "backlog", None)
        if backlog is not None:
            backlog.append((queue, body))
            return

        backlog = deque([(queue, body)])
        self._local.backlog = backlog
        try:
            while backlog:
                name, payload = backlog.popleft()
                handler = self._handlers.get(name)
                if handler is None:
                    logger.warning("Subscriber for %s went away; message dropped", name)
                    continue
                handler(LoopbackDelivery(queue=name, body=payload))
        finally:
            self._local.backlog = None

    def subscribe(self, queue: str, handler: DeliveryHandler) -> _LoopbackSubscription:
        if queue in self._handlers:
            logger.warning("Replacing subscriber for queue %s", queue)
        self._handlers[queue] = handler
        return _LoopbackSubscription(self, queue)

    def close(self) -> None:
        self._closed = True
        self._handlers.clear()
