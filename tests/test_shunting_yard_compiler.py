from __future__ import annotations

import pytest

from adapters.expression_compiler.shunting_yard_compiler import (
    ShuntingYardCompiler,
    compile_steps,
    to_postfix,
    tokenize,
)
from contracts import Operation, Step, StepRef, TokenKind
from ports.expression_compiler import (
    CompileError,
    EmptyExpression,
    InvalidCharacter,
    MalformedExpression,
    UnbalancedParentheses,
)


def _postfix(expr: str) -> str:
    return " ".join(t.text for t in to_postfix(tokenize(expr)))


def _resolve(steps: list[Step]) -> float:
    """Referencyjne wykonanie kroków w kolejności listy."""
    funcs = {
        Operation.ADD: lambda a, b: a + b,
        Operation.SUBTRACT: lambda a, b: a - b,
        Operation.MULTIPLY: lambda a, b: a * b,
        Operation.DIVIDE: lambda a, b: a / b,
    }
    results: dict[int, float] = {}
    for step in steps:
        a, b = (results[op.step_id] if isinstance(op, StepRef) else op for op in step.operands)
        results[step.step_id] = funcs[step.operation](a, b)
    return results[steps[-1].step_id]


def test_tokenize_strips_whitespace_and_types_tokens():
    tokens = tokenize(" 12.5 *( 3 - .5 ) ")

    assert [t.text for t in tokens] == ["12.5", "*", "(", "3", "-", ".5", ")"]
    assert [t.kind for t in tokens] == [
        TokenKind.NUMBER, TokenKind.OPERATOR, TokenKind.LEFT_PAREN,
        TokenKind.NUMBER, TokenKind.OPERATOR, TokenKind.NUMBER, TokenKind.RIGHT_PAREN,
    ]


def test_tokenize_joins_digits_split_by_spaces():
    assert [t.text for t in tokenize("1 2 + 3")] == ["12", "+", "3"]


def test_tokenize_rejects_unknown_character():
    with pytest.raises(InvalidCharacter) as exc_info:
        tokenize("2 ^ 3")

    assert exc_info.value.char == "^"
    assert exc_info.value.position == 1


def test_tokenize_accepts_only_ascii_digits():
    # Cyfry arabsko-indyjskie: str.isdigit() == True, ale to nie 0-9
    with pytest.raises(InvalidCharacter) as exc_info:
        tokenize("٣+٤")

    assert exc_info.value.char == "٣"
    assert exc_info.value.position == 0


def test_tokenize_number_takes_at_most_one_decimal_point():
    assert [t.text for t in tokenize("1.2.3")] == ["1.2", ".3"]


def test_to_postfix_honours_precedence():
    assert _postfix("10+20*3") == "10 20 3 * +"


def test_to_postfix_is_left_associative():
    assert _postfix("8-4-2") == "8 4 - 2 -"
    assert _postfix("8/4/2") == "8 4 / 2 /"


def test_to_postfix_with_nested_parentheses():
    assert _postfix("((4+3)*2)/5") == "4 3 + 2 * 5 /"


def test_to_postfix_unmatched_right_paren():
    with pytest.raises(UnbalancedParentheses):
        to_postfix(tokenize("1+2)"))


def test_to_postfix_unmatched_left_paren():
    with pytest.raises(UnbalancedParentheses):
        to_postfix(tokenize("(1+2"))


def test_compile_scenario_precedence():
    compiled = ShuntingYardCompiler().compile("10+20*3")

    assert compiled.steps == [
        Step(step_id=0, operation=Operation.MULTIPLY, operands=(20.0, 3.0)),
        Step(step_id=1, operation=Operation.ADD, operands=(10.0, StepRef(step_id=0))),
    ]
    assert compiled.literal is None


def test_compile_scenario_parentheses():
    compiled = ShuntingYardCompiler().compile("((4+3)*2)/5")

    assert compiled.postfix_text == "4 3 + 2 * 5 /"
    assert compiled.steps == [
        Step(step_id=0, operation=Operation.ADD, operands=(4.0, 3.0)),
        Step(step_id=1, operation=Operation.MULTIPLY, operands=(StepRef(step_id=0), 2.0)),
        Step(step_id=2, operation=Operation.DIVIDE, operands=(StepRef(step_id=1), 5.0)),
    ]
    assert _resolve(compiled.steps) == pytest.approx(2.8)


def test_compile_keeps_operand_order_for_subtraction():
    compiled = ShuntingYardCompiler().compile("(1+2)-(3*4)")

    last = compiled.steps[-1]
    assert last.operation == Operation.SUBTRACT
    assert last.operands == (StepRef(step_id=0), StepRef(step_id=1))


def test_compile_single_number_is_literal():
    compiled = ShuntingYardCompiler().compile("(42)")

    assert compiled.steps == []
    assert compiled.literal == 42.0


@pytest.mark.parametrize("expr", ["", "   ", "()"])
def test_compile_empty_expression(expr):
    with pytest.raises(EmptyExpression):
        ShuntingYardCompiler().compile(expr)


@pytest.mark.parametrize("expr", ["1+", "*2", "-3+4", "(1)(2)", "1.2.3"])
def test_compile_malformed_expression_is_an_error(expr):
    with pytest.raises(MalformedExpression):
        ShuntingYardCompiler().compile(expr)


def test_compile_errors_share_base_class():
    for expr in ["(1+2", "1+a", "1+"]:
        with pytest.raises(CompileError):
            ShuntingYardCompiler().compile(expr)


def test_compile_steps_rejects_empty_postfix():
    with pytest.raises(EmptyExpression):
        compile_steps([])


@pytest.mark.parametrize(
    "expr",
    [
        "1+2*3-4/5",
        "(1+2)*(3+4)*(5-6)",
        "100/(4*(2+3))-7",
        "2*3*4*5-1-2-3",
        "((((9))))-8/2/2",
        "1.5*(2.25+0.75)/3",
        "7-(3-(2-(1-0.5)))",
    ],
)
def test_resolved_steps_match_direct_evaluation(expr):
    compiled = ShuntingYardCompiler().compile(expr)

    assert _resolve(compiled.steps) == pytest.approx(eval(expr))


@pytest.mark.parametrize("expr", ["1+2*3-4/5", "(1+2)*(3+4)*(5-6)", "((4+3)*2)/5"])
def test_dependencies_point_to_earlier_steps(expr):
    compiled = ShuntingYardCompiler().compile(expr)

    assert [s.step_id for s in compiled.steps] == list(range(len(compiled.steps)))
    for step in compiled.steps:
        assert all(dep < step.step_id for dep in step.dependencies)


def test_compiler_satisfies_port():
    from ports.expression_compiler import ExpressionCompiler

    assert isinstance(ShuntingYardCompiler(), ExpressionCompiler)


def test_compile_rejects_out_of_range_literal():
    with pytest.raises(MalformedExpression):
        ShuntingYardCompiler().compile("9" * 400 + "+1")
