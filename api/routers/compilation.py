"""
Router: POST /compile
Kompiluje wyrażenie do postfiksu i listy kroków, bez wykonywania.
"""
from fastapi import APIRouter, Depends, HTTPException

from adapters.expression_compiler.shunting_yard_compiler import ShuntingYardCompiler
from api.dependencies import get_compiler
from api.schemas import CompileRequest, CompileResponse, StepView
from contracts import Step, StepRef
from ports.expression_compiler import CompileError

router = APIRouter(prefix="/compile", tags=["compile"])


def _to_view(step: Step) -> StepView:
    return StepView(
        step_id=step.step_id,
        operation=step.operation,
        operands=[
            f"ref step{op.step_id}" if isinstance(op, StepRef) else op
            for op in step.operands
        ],
        depends_on=step.dependencies,
    )


@router.post("", response_model=CompileResponse)
def compile_expression(
    body: CompileRequest,
    compiler: ShuntingYardCompiler = Depends(get_compiler),
) -> CompileResponse:
    try:
        compiled = compiler.compile(body.expression)
    except CompileError as exc:
        raise HTTPException(status_code=400, detail=f"Parse error: {exc}")

    return CompileResponse(
        expression=body.expression,
        postfix=compiled.postfix_text,
        steps=[_to_view(s) for s in compiled.steps],
        literal=compiled.literal,
    )
