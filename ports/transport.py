"""
Port: MessageTransport
Odpowiedzialność: publikacja bajtów do nazwanej kolejki i subskrypcja z ack/nack.
"""
from typing import Callable, Protocol, runtime_checkable


class TransportError(RuntimeError):
    """Publikacja lub subskrypcja nie powiodła się."""


@runtime_checkable
class Delivery(Protocol):
    body: bytes
    queue: str

    def ack(self) -> None:
        """Marks the message as processed."""
        ...

    def nack(self, requeue: bool = False) -> None:
        """Rejects the message; requeue=True puts it back on its queue."""
        ...


DeliveryHandler = Callable[[Delivery], None]


@runtime_checkable
class Subscription(Protocol):
    def cancel(self) -> None:
        """Stops delivering messages to the handler."""
        ...


@runtime_checkable
class MessageTransport(Protocol):
    def publish(self, queue: str, body: bytes) -> None:
        """
        Fire-and-forget publish. No acknowledgment from the consumer is awaited.
        Raises TransportError if the message cannot be handed to the transport.
        """
        ...

    def subscribe(self, queue: str, handler: DeliveryHandler) -> Subscription:
        """
        Registers a consumer for a queue. The handler is responsible for
        calling ack()/nack() on every delivery it receives.
        """
        ...

    def close(self) -> None:
        ...
