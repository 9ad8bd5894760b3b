"""
Adapter: ShuntingYardCompiler
Implementuje port ExpressionCompiler.

Trzy etapy:
  tokenize()       — tekst → tokeny (liczby, operatory + - * /, nawiasy)
  to_postfix()     — infix → postfix (RPN), algorytm dwóch stosów:
                       precedencja: + - → 1, * / → 2, łączność lewostronna
  compile_steps()  — postfix → lista Step; stos symulowanej ewaluacji trzyma
                     literał albo StepRef (placeholder wyniku wcześniejszego kroku)

Przykład:
  "10+20*3"  →  postfix "10 20 3 * +"
             →  step0 = multiply(20, 3)
                step1 = add(10, ref step0)

Kolejność kroków = kolejność operatorów w postfiksie, więc każdy StepRef
wskazuje na krok o mniejszym id. Dispatcher polega na tym niezmienniku.
"""
from __future__ import annotations

import math
import re

from contracts import (
    OPERATOR_SYMBOLS,
    CompiledExpression,
    Operand,
    Step,
    StepRef,
    Token,
    TokenKind,
)
from ports.expression_compiler import (
    EmptyExpression,
    InvalidCharacter,
    MalformedExpression,
    UnbalancedParentheses,
)

# ──────────────────────────────────────────────────────────────────────────────
# Tokenizer
# ──────────────────────────────────────────────────────────────────────────────

# Liczba: ciąg cyfr ASCII 0-9 z co najwyżej jedną kropką ("12", "1.5", ".5", "3.")
_NUMBER_RE = re.compile(r'[0-9]+(?:\.[0-9]*)?|\.[0-9]+')
_WHITESPACE_RE = re.compile(r'\s+')

_SINGLE_CHAR_TOKENS: dict[str, TokenKind] = {
    "+": TokenKind.OPERATOR,
    "-": TokenKind.OPERATOR,
    "*": TokenKind.OPERATOR,
    "/": TokenKind.OPERATOR,
    "(": TokenKind.LEFT_PAREN,
    ")": TokenKind.RIGHT_PAREN,
}


def tokenize(text: str) -> list[Token]:
    """Tokenizuje wyrażenie. Białe znaki są usuwane przed skanowaniem."""
    expr = _WHITESPACE_RE.sub("", text)
    tokens: list[Token] = []
    pos = 0
    while pos < len(expr):
        m = _NUMBER_RE.match(expr, pos)
        if m:
            tokens.append(Token(kind=TokenKind.NUMBER, text=m.group()))
            pos = m.end()
            continue
        ch = expr[pos]
        kind = _SINGLE_CHAR_TOKENS.get(ch)
        if kind is None:
            raise InvalidCharacter(ch, pos)
        tokens.append(Token(kind=kind, text=ch))
        pos += 1
    return tokens


# ──────────────────────────────────────────────────────────────────────────────
# Infix → postfix
# ──────────────────────────────────────────────────────────────────────────────

_PRECEDENCE: dict[str, int] = {"+": 1, "-": 1, "*": 2, "/": 2}


def to_postfix(tokens: list[Token]) -> list[Token]:
    output: list[Token] = []
    stack: list[Token] = []

    for token in tokens:
        if token.kind is TokenKind.NUMBER:
            output.append(token)
        elif token.kind is TokenKind.OPERATOR:
            prec = _PRECEDENCE[token.text]
            # >= daje łączność lewostronną; brak potęgowania, więc to wystarcza
            while (
                stack
                and stack[-1].kind is TokenKind.OPERATOR
                and _PRECEDENCE[stack[-1].text] >= prec
            ):
                output.append(stack.pop())
            stack.append(token)
        elif token.kind is TokenKind.LEFT_PAREN:
            stack.append(token)
        else:
            while stack and stack[-1].kind is not TokenKind.LEFT_PAREN:
                output.append(stack.pop())
            if not stack:
                raise UnbalancedParentheses()
            stack.pop()  # "(" odrzucany

    while stack:
        top = stack.pop()
        if top.kind is TokenKind.LEFT_PAREN:
            raise UnbalancedParentheses()
        output.append(top)

    return output


# ──────────────────────────────────────────────────────────────────────────────
# Postfix → kroki
# ──────────────────────────────────────────────────────────────────────────────


def compile_steps(postfix: list[Token]) -> tuple[list[Step], Operand]:
    """
    Zwraca (kroki, wartość końcowa stosu).
    Wartość końcowa to StepRef ostatniego kroku albo literał, gdy brak operatorów.
    """
    steps: list[Step] = []
    stack: list[Operand] = []

    for token in postfix:
        if token.kind is TokenKind.NUMBER:
            value = float(token.text)
            if not math.isfinite(value):
                raise MalformedExpression(f"number out of range: {token.text[:20]}...")
            stack.append(value)
            continue
        if len(stack) < 2:
            raise MalformedExpression(f"operator {token.text!r} is missing an operand")
        right = stack.pop()
        left = stack.pop()
        step = Step(
            step_id=len(steps),
            operation=OPERATOR_SYMBOLS[token.text],
            operands=(left, right),
        )
        steps.append(step)
        stack.append(StepRef(step_id=step.step_id))

    if not stack:
        raise EmptyExpression()
    if len(stack) > 1:
        raise MalformedExpression(f"{len(stack)} values left without an operator")
    return steps, stack[0]


# ──────────────────────────────────────────────────────────────────────────────
# Adapter
# ──────────────────────────────────────────────────────────────────────────────

class ShuntingYardCompiler:
    """Kompilator wyrażeń infiksowych do kroków atomowych."""

    # -- ExpressionCompiler protocol ---------------------------------------

    def compile(self, text: str) -> CompiledExpression:
        tokens = tokenize(text)
        if not tokens:
            raise EmptyExpression()
        postfix = to_postfix(tokens)
        steps, final = compile_steps(postfix)
        return CompiledExpression(
            expression_text=text,
            postfix=postfix,
            steps=steps,
            literal=final if isinstance(final, float) else None,
        )
