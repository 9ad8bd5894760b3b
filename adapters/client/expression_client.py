"""
Adapter: ExpressionClient
Strona kliencka protokołu: publikuje ExpressionRequest i czeka na
ExpressionResponse z kolejki odpowiedzi.

Identyfikatory wyrażeń: "<client_id>_expr_<n>" — client_id pojawia się
w logach dispatchera i workerów.
"""
from __future__ import annotations

import itertools
import logging
import random
import threading
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from typing import Optional

from pydantic import ValidationError

from config import Settings
from contracts import ErrorCode, ExpressionRequest, ExpressionResponse
from ports.transport import Delivery, MessageTransport, Subscription

logger = logging.getLogger("distcalc.client")


def new_client_id() -> str:
    return f"CLIENT-{random.randint(0, 9999):04d}"


@dataclass
class Ticket:
    """Wysłane wyrażenie czekające na odpowiedź."""
    expression_id: str
    deadline_ms: int
    future: Future = field(default_factory=Future, repr=False)


class ExpressionClient:
    """
    Wysyła wyrażenia do dispatchera i dopasowuje odpowiedzi po expression_id.
    Bezpieczny wątkowo — wiele wątków może czekać równolegle.
    """

    def __init__(
        self,
        transport: MessageTransport,
        settings: Settings | None = None,
        client_id: str | None = None,
    ) -> None:
        self._transport = transport
        self._settings = settings or Settings()
        self.client_id = client_id or new_client_id()
        self._counter = itertools.count(1)
        self._waiters: dict[str, Future] = {}
        self._lock = threading.Lock()
        self._subscription: Subscription | None = None

    def start(self) -> None:
        self._subscription = self._transport.subscribe(
            self._settings.response_queue, self._on_response,
        )

    def stop(self) -> None:
        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None

    def next_expression_id(self) -> str:
        return f"{self.client_id}_expr_{next(self._counter)}"

    def send(self, expression: str, deadline_ms: Optional[int] = None) -> Ticket:
        """Publikuje wyrażenie; zwraca Ticket z Future rozwiązywanym odpowiedzią."""
        request = ExpressionRequest(
            expression_id=self.next_expression_id(),
            expression=expression,
            deadline_ms=deadline_ms if deadline_ms is not None else self._settings.default_deadline_ms,
        )
        ticket = Ticket(expression_id=request.expression_id, deadline_ms=request.deadline_ms)
        with self._lock:
            self._waiters[request.expression_id] = ticket.future

        logger.info("[%s] Sending %r (id=%s)", self.client_id, expression, request.expression_id)
        try:
            self._transport.publish(
                self._settings.request_queue,
                request.model_dump_json().encode(),
            )
        except Exception:
            with self._lock:
                self._waiters.pop(request.expression_id, None)
            raise
        return ticket

    def evaluate(self, expression: str, deadline_ms: Optional[int] = None) -> ExpressionResponse:
        """Wysyła wyrażenie i blokuje do odpowiedzi lub upływu deadline."""
        return self.wait(self.send(expression, deadline_ms))

    def wait(self, ticket: Ticket) -> ExpressionResponse:
        timeout = (ticket.deadline_ms + self._settings.client_grace_ms) / 1000.0
        try:
            return ticket.future.result(timeout=timeout)
        except FutureTimeout:
            with self._lock:
                self._waiters.pop(ticket.expression_id, None)
            logger.warning(
                "[%s] No response for %s within %d ms",
                self.client_id, ticket.expression_id, ticket.deadline_ms,
            )
            return ExpressionResponse.failure(
                ticket.expression_id,
                ErrorCode.DEADLINE_EXCEEDED,
                f"no response within {ticket.deadline_ms} ms",
            )

    @property
    def waiting(self) -> int:
        with self._lock:
            return len(self._waiters)

    # -- Prywatne ------------------------------------------------------------

    def _on_response(self, delivery: Delivery) -> None:
        try:
            response = ExpressionResponse.model_validate_json(delivery.body)
        except ValidationError as exc:
            logger.error("[%s] Undecodable response: %s", self.client_id, exc)
            delivery.nack(requeue=False)
            return

        with self._lock:
            future = self._waiters.pop(response.expression_id, None)
        if future is None:
            logger.debug("[%s] Response for unknown expression %s dropped", self.client_id, response.expression_id)
        else:
            future.set_result(response)
        delivery.ack()
