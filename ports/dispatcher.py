"""
Port: Dispatcher
Odpowiedzialność: sekwencjonowanie kroków wyrażenia przez asynchroniczny transport.
"""
from typing import Protocol, runtime_checkable

from contracts import ExpressionRequest, OperationResponse


@runtime_checkable
class Dispatcher(Protocol):
    def submit(self, request: ExpressionRequest) -> None:
        """
        Compiles the expression and publishes its first ready step.
        Compile errors are answered immediately with PARSE_ERROR; the
        expression never enters the pending table.
        """
        ...

    def on_step_result(self, response: OperationResponse) -> None:
        """
        Advances the expression owning this result: records it, publishes the
        next step or emits the single terminal ExpressionResponse.
        Results for unknown, finished or not-in-flight steps are no-ops.
        """
        ...

    @property
    def pending_count(self) -> int:
        ...
