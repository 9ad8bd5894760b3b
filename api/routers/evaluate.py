"""
Router: POST /evaluate

Wysyła wyrażenie przez broker do dispatchera i czeka na odpowiedź terminalną.
Ciało odpowiedzi to zawsze ExpressionResponse; status HTTP zależy od kodu błędu.
"""
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from adapters.client.expression_client import ExpressionClient
from api.dependencies import get_client
from api.schemas import EvaluateRequest
from contracts import ErrorCode, ExpressionResponse

router = APIRouter(prefix="/evaluate", tags=["evaluate"])

_STATUS_BY_CODE: dict[ErrorCode, int] = {
    ErrorCode.PARSE_ERROR: 400,
    ErrorCode.DEADLINE_EXCEEDED: 504,
    ErrorCode.INTERNAL_ERROR: 500,
}


@router.post("", response_model=ExpressionResponse)
def evaluate(
    body: EvaluateRequest,
    client: ExpressionClient = Depends(get_client),
):
    # Synchroniczny handler — FastAPI uruchamia go w puli wątków
    response = client.evaluate(body.expression, body.deadline_ms)
    if response.ok:
        return response
    return JSONResponse(
        status_code=_STATUS_BY_CODE.get(response.error.code, 422),
        content=response.model_dump(mode="json"),
    )
