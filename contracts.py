"""
contracts.py — Jedyne źródło prawdy dla wszystkich typów danych w DistCalc.
Wszystkie moduły importują WYŁĄCZNIE stąd. Nie modyfikować bez versioning.

Wiadomości (ExpressionRequest, OperationRequest, ...) są serializowane do JSON
przez pydantic: model_dump_json() / model_validate_json().
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

CONTRACTS_VERSION = "1.0.0"


# ─────────────────────────── Helpers ─────────────────────────────────────

def _new_id() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def client_id_of(expression_id: str) -> str:
    """'CLIENT-42_expr_7' → 'CLIENT-42'. Używane tylko do tagowania logów."""
    head, sep, _ = expression_id.partition("_expr_")
    return head if sep and head else "UNKNOWN"


# ─────────────────────────── Tokeny ──────────────────────────────────────

class TokenKind(str, Enum):
    NUMBER = "number"
    OPERATOR = "operator"
    LEFT_PAREN = "left_paren"
    RIGHT_PAREN = "right_paren"


class Token(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: TokenKind
    text: str


# ─────────────────────────── Steps ───────────────────────────────────────

class Operation(str, Enum):
    ADD = "add"
    SUBTRACT = "subtract"
    MULTIPLY = "multiply"
    DIVIDE = "divide"


OPERATOR_SYMBOLS: dict[str, Operation] = {
    "+": Operation.ADD,
    "-": Operation.SUBTRACT,
    "*": Operation.MULTIPLY,
    "/": Operation.DIVIDE,
}


class StepRef(BaseModel):
    """Placeholder: wynik kroku o danym step_id."""
    model_config = ConfigDict(frozen=True)

    step_id: int


Operand = Union[float, StepRef]


class Step(BaseModel):
    model_config = ConfigDict(frozen=True)

    step_id: int                       # kolejny numer w obrębie wyrażenia
    operation: Operation
    operands: tuple[Operand, Operand]  # (lewy, prawy) — kolejność ważna dla - i /

    @property
    def dependencies(self) -> list[int]:
        return [op.step_id for op in self.operands if isinstance(op, StepRef)]


class CompiledExpression(BaseModel):
    expression_text: str
    postfix: list[Token]
    steps: list[Step]
    literal: Optional[float] = None    # wyrażenie bez operatorów, np. "42"

    @property
    def postfix_text(self) -> str:
        return " ".join(t.text for t in self.postfix)


# ─────────────────────────── Błędy ───────────────────────────────────────

class ErrorCode(str, Enum):
    PARSE_ERROR = "PARSE_ERROR"
    UNKNOWN_OPERATION = "UNKNOWN_OPERATION"
    INVALID_OPERATION = "INVALID_OPERATION"      # operacja trafiła do złego workera
    EXECUTION_ERROR = "EXECUTION_ERROR"
    DIV_BY_ZERO = "DIV_BY_ZERO"
    DEADLINE_EXCEEDED = "DEADLINE_EXCEEDED"
    SERIALIZATION_ERROR = "SERIALIZATION_ERROR"  # warstwa transportu
    PUBLISH_ERROR = "PUBLISH_ERROR"              # warstwa transportu
    INTERNAL_ERROR = "INTERNAL_ERROR"            # błąd schedulera — nie powinien wystąpić


class ErrorInfo(BaseModel):
    code: ErrorCode
    message: str


# ─────────────────────────── Wiadomości ──────────────────────────────────

class ExpressionRequest(BaseModel):
    expression_id: str = Field(default_factory=_new_id)
    expression: str
    deadline_ms: int = 30_000


class ExpressionResponse(BaseModel):
    expression_id: str
    result: Optional[float] = None
    error: Optional[ErrorInfo] = None

    @model_validator(mode="after")
    def _result_xor_error(self) -> ExpressionResponse:
        if (self.result is None) == (self.error is None):
            raise ValueError("ExpressionResponse needs exactly one of result / error")
        return self

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def failure(cls, expression_id: str, code: ErrorCode, message: str) -> ExpressionResponse:
        return cls(expression_id=expression_id, error=ErrorInfo(code=code, message=message))


class OperationRequest(BaseModel):
    expression_id: str
    step_id: int
    operation: Operation
    operands: tuple[float, float]
    deadline_ms: int                   # czas pozostały dla całego wyrażenia
    issued_at: datetime = Field(default_factory=_now)


class OperationResponse(BaseModel):
    expression_id: str
    step_id: int
    result: Optional[float] = None
    error: Optional[ErrorInfo] = None

    @model_validator(mode="after")
    def _result_xor_error(self) -> OperationResponse:
        if (self.result is None) == (self.error is None):
            raise ValueError("OperationResponse needs exactly one of result / error")
        return self

    @classmethod
    def failure(
        cls,
        request: OperationRequest,
        code: ErrorCode,
        message: str,
    ) -> OperationResponse:
        return cls(
            expression_id=request.expression_id,
            step_id=request.step_id,
            error=ErrorInfo(code=code, message=message),
        )
