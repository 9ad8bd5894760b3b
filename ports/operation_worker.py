"""
Port: OperationWorker
Odpowiedzialność: wykonanie jednego kroku (dwa operandy → wynik) dla jednej operacji.
"""
from typing import Protocol, runtime_checkable

from contracts import ErrorCode, Operation, OperationRequest, OperationResponse


class OperationError(Exception):
    """Błąd wykonania operacji z typowanym kodem, przenoszonym aż do ExpressionResponse."""

    code: ErrorCode = ErrorCode.EXECUTION_ERROR

    def __init__(self, message: str, code: ErrorCode | None = None) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code


class DivisionByZero(OperationError):
    code = ErrorCode.DIV_BY_ZERO


class ExecutionFailure(OperationError):
    code = ErrorCode.EXECUTION_ERROR


class InvalidOperation(OperationError):
    code = ErrorCode.INVALID_OPERATION


class DeadlineExceeded(OperationError):
    code = ErrorCode.DEADLINE_EXCEEDED


@runtime_checkable
class OperationWorker(Protocol):
    operation: Operation

    def handle(self, request: OperationRequest) -> OperationResponse:
        """
        Executes one step. Never raises for domain failures; they are encoded
        as OperationResponse.error with the matching ErrorCode.
        """
        ...
