"""
Adapter: StepDispatcher
Implementuje port Dispatcher — scheduler kroków nad asynchronicznym transportem.

Stany wyrażenia:
  Compiling → Dispatched(1) → … → Dispatched(N) → Completed
                     └──────────────┴──────────→ Failed

Tabela oczekujących wyrażeń:
  - lock tabeli: insert / delete / lookup
  - lock wpisu:  wyniki, krok w locie, flaga response_sent
  Wyrażenia niezwiązane ze sobą nigdy nie konkurują o ten sam lock.

Sekwencjonowanie: następny krok = steps[len(results)]. Poprawne, bo kompilator
numeruje kroki tak, że zależności mają zawsze mniejszy indeks.

Publikacja odbywa się PO zwolnieniu locka wpisu — transport synchroniczny
(LoopbackTransport) może dostarczyć wynik re-entrantnie w tym samym wątku.
"""
from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Optional

from pydantic import ValidationError

from config import Settings
from contracts import (
    ErrorCode,
    ExpressionRequest,
    ExpressionResponse,
    Operation,
    OperationRequest,
    OperationResponse,
    Step,
    StepRef,
    client_id_of,
)
from ports.expression_compiler import CompileError, ExpressionCompiler
from ports.transport import Delivery, MessageTransport, Subscription, TransportError

logger = logging.getLogger("distcalc.dispatcher")


@dataclass
class PendingExpression:
    expression_id: str
    steps: list[Step]
    deadline_at: float                              # time.monotonic()
    results: dict[int, float] = field(default_factory=dict)
    in_flight: Optional[int] = None                 # step_id opublikowanego kroku
    response_sent: bool = False
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def client_id(self) -> str:
        return client_id_of(self.expression_id)

    def remaining_ms(self) -> int:
        return max(0, int((self.deadline_at - time.monotonic()) * 1000))


class _ResolveError(Exception):
    """Zależność kroku nie ma jeszcze wyniku — błąd schedulera."""


class StepDispatcher:
    """
    Jedyny właściciel tabeli oczekujących wyrażeń.
    Może być wołany równolegle z wątku intake wyrażeń i wątku intake wyników.
    """

    def __init__(
        self,
        compiler: ExpressionCompiler,
        transport: MessageTransport,
        settings: Settings | None = None,
    ) -> None:
        self._compiler = compiler
        self._transport = transport
        self._settings = settings or Settings()
        self._queues: dict[Operation, str] = dict(self._settings.operation_queues)
        self._table: dict[str, PendingExpression] = {}
        self._table_lock = threading.Lock()
        self._admitting: set[str] = set()             # id w trakcie kompilacji
        self._subscriptions: list[Subscription] = []

    # -- Cykl życia ----------------------------------------------------------

    def start(self) -> None:
        """Subskrybuje kolejkę wyrażeń i kolejkę wyników."""
        self._subscriptions.append(
            self._transport.subscribe(self._settings.results_queue, self._on_result_delivery)
        )
        self._subscriptions.append(
            self._transport.subscribe(self._settings.request_queue, self._on_request_delivery)
        )
        logger.info(
            "Dispatcher listening on %s and %s",
            self._settings.request_queue,
            self._settings.results_queue,
        )

    def stop(self) -> None:
        for sub in self._subscriptions:
            sub.cancel()
        self._subscriptions.clear()

    @property
    def pending_count(self) -> int:
        with self._table_lock:
            return len(self._table)

    def is_pending(self, expression_id: str) -> bool:
        """True, dopóki wyrażenie o tym id nie dostało odpowiedzi."""
        with self._table_lock:
            return expression_id in self._table or expression_id in self._admitting

    # -- Dispatcher protocol -------------------------------------------------

    def submit(self, request: ExpressionRequest) -> None:
        client = client_id_of(request.expression_id)
        logger.info(
            "[%s] Received expression %r (id=%s)",
            client, request.expression, request.expression_id,
        )

        # Id zajęte od przyjęcia aż do odpowiedzi: jedna odpowiedź na id
        with self._table_lock:
            if request.expression_id in self._table or request.expression_id in self._admitting:
                logger.warning("[%s] Duplicate expression id %s ignored", client, request.expression_id)
                return
            self._admitting.add(request.expression_id)
        try:
            pending = self._admit(request, client)
        finally:
            with self._table_lock:
                self._admitting.discard(request.expression_id)
        if pending is None:
            return

        with pending.lock:
            op_request = self._prepare_next(pending)
        self._publish_step(pending, op_request)

    def on_step_result(self, response: OperationResponse) -> None:
        pending = self._lookup(response.expression_id)
        if pending is None:
            logger.debug(
                "[%s] Result for unknown expression %s (step %d) ignored",
                client_id_of(response.expression_id), response.expression_id, response.step_id,
            )
            return

        client = pending.client_id
        terminal: Optional[ExpressionResponse] = None
        op_request: Optional[OperationRequest] = None

        with pending.lock:
            if pending.response_sent:
                return
            if response.step_id != pending.in_flight:
                logger.warning(
                    "[%s] Stale result for step %d (in flight: %s) ignored",
                    client, response.step_id, pending.in_flight,
                )
                return
            pending.in_flight = None

            if response.error is not None:
                logger.info(
                    "[%s] Step %d failed: %s - %s",
                    client, response.step_id, response.error.code.value, response.error.message,
                )
                pending.response_sent = True
                terminal = ExpressionResponse(
                    expression_id=pending.expression_id, error=response.error,
                )
            else:
                pending.results[response.step_id] = response.result
                done = len(pending.results)
                logger.info(
                    "[%s] Step %d completed: %s (%d/%d)",
                    client, response.step_id, response.result, done, len(pending.steps),
                )
                if done == len(pending.steps):
                    pending.response_sent = True
                    terminal = ExpressionResponse(
                        expression_id=pending.expression_id, result=response.result,
                    )
                else:
                    try:
                        op_request = self._prepare_next(pending)
                    except _ResolveError as exc:
                        pending.response_sent = True
                        terminal = ExpressionResponse.failure(
                            pending.expression_id, ErrorCode.INTERNAL_ERROR, str(exc),
                        )

        if terminal is not None:
            self._finish(pending, terminal)
        elif op_request is not None:
            self._publish_step(pending, op_request)

    # -- Intake z transportu -------------------------------------------------

    def handle_request_message(self, body: bytes) -> None:
        try:
            request = ExpressionRequest.model_validate_json(body)
        except ValidationError as exc:
            expression_id = _peek_expression_id(body)
            if expression_id is None:
                logger.error("Dropping undecodable expression request: %s", exc)
                return
            logger.error("[%s] Malformed expression request: %s", client_id_of(expression_id), exc)
            if self.is_pending(expression_id):
                logger.warning(
                    "[%s] Id %s already pending, malformed duplicate dropped",
                    client_id_of(expression_id), expression_id,
                )
                return
            self._emit(ExpressionResponse.failure(
                expression_id, ErrorCode.SERIALIZATION_ERROR, f"malformed request: {exc}",
            ))
            return
        self.submit(request)

    def handle_result_message(self, body: bytes) -> None:
        try:
            response = OperationResponse.model_validate_json(body)
        except ValidationError as exc:
            expression_id = _peek_expression_id(body)
            if expression_id is None:
                logger.error("Dropping undecodable operation result: %s", exc)
                return
            logger.error("[%s] Malformed operation result: %s", client_id_of(expression_id), exc)
            self.fail(expression_id, ErrorCode.SERIALIZATION_ERROR, f"malformed result: {exc}")
            return
        self.on_step_result(response)

    def _on_request_delivery(self, delivery: Delivery) -> None:
        try:
            self.handle_request_message(delivery.body)
        finally:
            delivery.ack()

    def _on_result_delivery(self, delivery: Delivery) -> None:
        try:
            self.handle_result_message(delivery.body)
        finally:
            delivery.ack()

    # -- Przejścia terminalne ------------------------------------------------

    def fail(self, expression_id: str, code: ErrorCode, message: str) -> bool:
        """
        Kończy wyrażenie błędem, jeśli odpowiedź nie została jeszcze wysłana.
        Zwraca True, jeśli to wywołanie wyemitowało odpowiedź.
        """
        pending = self._lookup(expression_id)
        if pending is None:
            return False
        with pending.lock:
            if pending.response_sent:
                return False
            pending.response_sent = True
            pending.in_flight = None
        self._finish(pending, ExpressionResponse.failure(expression_id, code, message))
        return True

    def _finish(self, pending: PendingExpression, response: ExpressionResponse) -> None:
        with self._table_lock:
            self._table.pop(pending.expression_id, None)
        if response.ok:
            logger.info("[%s] Expression %s = %s", pending.client_id, pending.expression_id, response.result)
        self._emit(response)

    def _emit(self, response: ExpressionResponse) -> None:
        try:
            self._transport.publish(
                self._settings.response_queue,
                response.model_dump_json().encode(),
            )
        except TransportError as exc:
            # Nie ma komu odpowiedzieć o błędzie odpowiedzi
            logger.error(
                "[%s] Failed to publish response for %s: %s",
                client_id_of(response.expression_id), response.expression_id, exc,
            )

    # -- Kroki ---------------------------------------------------------------

    def _admit(self, request: ExpressionRequest, client: str) -> Optional[PendingExpression]:
        """
        Kompiluje i wstawia wpis do tabeli. Zwraca None, gdy odpowiedź
        została już wysłana (błąd parsowania albo sam literał).
        """
        try:
            compiled = self._compiler.compile(request.expression)
        except CompileError as exc:
            logger.info("[%s] Parse error: %s", client, exc)
            self._emit(ExpressionResponse.failure(
                request.expression_id, ErrorCode.PARSE_ERROR, f"parse error: {exc}",
            ))
            return None

        logger.debug("[%s] Postfix: %s", client, compiled.postfix_text)

        if not compiled.steps:
            # Sama liczba — nic do wysłania do workerów
            self._emit(ExpressionResponse(
                expression_id=request.expression_id, result=compiled.literal,
            ))
            return None

        pending = PendingExpression(
            expression_id=request.expression_id,
            steps=compiled.steps,
            deadline_at=time.monotonic() + request.deadline_ms / 1000.0,
        )
        with self._table_lock:
            self._table[request.expression_id] = pending

        logger.info("[%s] Compiled into %d steps", client, len(compiled.steps))
        return pending

    def _lookup(self, expression_id: str) -> Optional[PendingExpression]:
        with self._table_lock:
            return self._table.get(expression_id)

    def _prepare_next(self, pending: PendingExpression) -> OperationRequest:
        """Wołane pod lockiem wpisu. Ustawia krok w locie."""
        step = pending.steps[len(pending.results)]
        operands = []
        for operand in step.operands:
            if isinstance(operand, StepRef):
                if operand.step_id not in pending.results:
                    raise _ResolveError(
                        f"step {step.step_id} depends on unresolved step {operand.step_id}"
                    )
                operands.append(pending.results[operand.step_id])
            else:
                operands.append(operand)

        pending.in_flight = step.step_id
        return OperationRequest(
            expression_id=pending.expression_id,
            step_id=step.step_id,
            operation=step.operation,
            operands=(operands[0], operands[1]),
            deadline_ms=pending.remaining_ms(),
        )

    def _publish_step(self, pending: PendingExpression, request: OperationRequest) -> None:
        client = pending.client_id
        queue = self._queues.get(request.operation)
        if queue is None:
            logger.error("[%s] No queue for operation %s", client, request.operation.value)
            self.fail(
                pending.expression_id,
                ErrorCode.UNKNOWN_OPERATION,
                f"unknown operation: {request.operation.value}",
            )
            return

        logger.info(
            "[%s] Dispatching step %d: %s%s -> %s",
            client, request.step_id, request.operation.value, request.operands, queue,
        )
        try:
            self._transport.publish(queue, request.model_dump_json().encode())
        except TransportError as exc:
            logger.error("[%s] Failed to publish step %d: %s", client, request.step_id, exc)
            self.fail(pending.expression_id, ErrorCode.PUBLISH_ERROR, f"publish failed: {exc}")


def _peek_expression_id(body: bytes) -> Optional[str]:
    """Próbuje wyciągnąć expression_id z niepoprawnej wiadomości."""
    try:
        payload = json.loads(body)
    except ValueError:
        return None
    if isinstance(payload, dict) and isinstance(payload.get("expression_id"), str):
        return payload["expression_id"]
    return None
