"""
Adapter: ArithmeticWorker
Implementuje port OperationWorker — jeden worker na operację (add/subtract/...).

Worker jest bezstanowy:
  - odbiera OperationRequest z kolejki swojej operacji
  - sprawdza, czy operacja jest jego (INVALID_OPERATION) i czy deadline nie minął
  - liczy wynik i publikuje OperationResponse do kolejki wyników

Kody błędów są przenoszone przez typy wyjątków (OperationError.code),
nigdy przez porównywanie treści komunikatu.
"""
from __future__ import annotations

import logging
import math
from datetime import timedelta
from typing import Callable

from pydantic import ValidationError

from config import Settings
from contracts import (
    Operation,
    OperationRequest,
    OperationResponse,
    _now,
    client_id_of,
)
from ports.operation_worker import (
    DeadlineExceeded,
    DivisionByZero,
    ExecutionFailure,
    InvalidOperation,
    OperationError,
)
from ports.transport import Delivery, MessageTransport, Subscription, TransportError

logger = logging.getLogger("distcalc.worker")


def _divide(a: float, b: float) -> float:
    if b == 0:
        raise DivisionByZero("division by zero")
    return a / b


_OP_FUNCS: dict[Operation, Callable[[float, float], float]] = {
    Operation.ADD: lambda a, b: a + b,
    Operation.SUBTRACT: lambda a, b: a - b,
    Operation.MULTIPLY: lambda a, b: a * b,
    Operation.DIVIDE: _divide,
}


def execute_operation(operation: Operation, a: float, b: float) -> float:
    """Czysta funkcja dwóch operandów. Rzuca OperationError."""
    fn = _OP_FUNCS.get(operation)
    if fn is None:
        raise InvalidOperation(f"unknown operation: {operation}")
    result = fn(a, b)
    if not math.isfinite(result):
        raise ExecutionFailure(f"{operation.value}({a}, {b}) overflowed")
    return result


class ArithmeticWorker:
    """Worker jednej operacji podpięty pod transport."""

    def __init__(
        self,
        operation: Operation,
        transport: MessageTransport,
        settings: Settings | None = None,
    ) -> None:
        self.operation = operation
        self._transport = transport
        self._settings = settings or Settings()
        self._name = operation.value.upper()
        self._subscription: Subscription | None = None

    @property
    def queue(self) -> str:
        return self._settings.operation_queues[self.operation]

    def start(self) -> None:
        self._subscription = self._transport.subscribe(self.queue, self._on_delivery)
        logger.info("[%s] Worker ready on %s", self._name, self.queue)

    def stop(self) -> None:
        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None

    # -- OperationWorker protocol --------------------------------------------

    def handle(self, request: OperationRequest) -> OperationResponse:
        client = client_id_of(request.expression_id)
        a, b = request.operands
        logger.debug(
            "[%s] [%s] %s(%s, %s) step %d",
            self._name, client, request.operation.value, a, b, request.step_id,
        )
        try:
            if request.operation != self.operation:
                raise InvalidOperation(
                    f"worker {self.operation.value} cannot execute {request.operation.value}"
                )
            if _expired(request):
                raise DeadlineExceeded(
                    f"deadline of {request.deadline_ms} ms exceeded before step {request.step_id}"
                )
            result = execute_operation(request.operation, a, b)
        except OperationError as exc:
            logger.info("[%s] [%s] Step %d failed: %s", self._name, client, request.step_id, exc)
            return OperationResponse.failure(request, exc.code, str(exc))

        return OperationResponse(
            expression_id=request.expression_id,
            step_id=request.step_id,
            result=result,
        )

    # -- Prywatne ------------------------------------------------------------

    def _on_delivery(self, delivery: Delivery) -> None:
        try:
            request = OperationRequest.model_validate_json(delivery.body)
        except ValidationError as exc:
            logger.error("[%s] Undecodable operation request: %s", self._name, exc)
            delivery.nack(requeue=False)
            return

        response = self.handle(request)
        try:
            self._transport.publish(
                self._settings.results_queue,
                response.model_dump_json().encode(),
            )
        except TransportError as exc:
            logger.error(
                "[%s] [%s] Failed to publish result of step %d: %s",
                self._name, client_id_of(request.expression_id), request.step_id, exc,
            )
            delivery.nack(requeue=True)
            return
        delivery.ack()


def _expired(request: OperationRequest) -> bool:
    if request.deadline_ms <= 0:
        return True
    return _now() > request.issued_at + timedelta(milliseconds=request.deadline_ms)


def start_workers(transport: MessageTransport, settings: Settings) -> list[ArithmeticWorker]:
    """Jeden worker na każdą operację z mapy kolejek."""
    workers = []
    for operation in settings.operation_queues:
        worker = ArithmeticWorker(operation, transport, settings)
        worker.start()
        workers.append(worker)
    return workers
