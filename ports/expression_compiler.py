"""
Port: ExpressionCompiler
Odpowiedzialność: zamiana wyrażenia infiksowego na listę atomowych kroków (Step).
"""
from typing import Protocol, runtime_checkable

from contracts import CompiledExpression


class CompileError(ValueError):
    """Wyrażenie nie daje się skompilować. Nigdy nie trafia do tabeli dispatchera."""


class EmptyExpression(CompileError):
    def __init__(self) -> None:
        super().__init__("empty expression")


class InvalidCharacter(CompileError):
    def __init__(self, char: str, position: int) -> None:
        self.char = char
        self.position = position
        super().__init__(f"invalid character {char!r} at position {position}")


class UnbalancedParentheses(CompileError):
    def __init__(self) -> None:
        super().__init__("unbalanced parentheses")


class MalformedExpression(CompileError):
    """Postfix nie redukuje się do jednej wartości (brak operandu lub nadmiar)."""


@runtime_checkable
class ExpressionCompiler(Protocol):
    def compile(self, text: str) -> CompiledExpression:
        """
        Compiles an infix arithmetic expression into ordered atomic Steps.
        Steps are returned in dispatch order: every StepRef operand refers to
        a step with a strictly smaller step_id.
        A lone number yields no steps and sets CompiledExpression.literal.
        Raises CompileError (InvalidCharacter, UnbalancedParentheses,
        MalformedExpression, EmptyExpression) on malformed input.
        """
        ...
