"""
schemas.py — Request/Response modele FastAPI.
Oddzielone od contracts.py żeby API mogło ewoluować niezależnie.
"""
from __future__ import annotations

from typing import Optional, Union

from pydantic import BaseModel, Field

from contracts import Operation


# ─────────────────────────── /evaluate ───────────────────────────

class EvaluateRequest(BaseModel):
    expression: str
    deadline_ms: Optional[int] = Field(default=None, gt=0)


# ─────────────────────────── /compile ────────────────────────────

class CompileRequest(BaseModel):
    expression: str


class StepView(BaseModel):
    step_id: int
    operation: Operation
    operands: list[Union[float, str]]  # str = "ref stepN"
    depends_on: list[int]


class CompileResponse(BaseModel):
    expression: str
    postfix: str
    steps: list[StepView]
    literal: Optional[float] = None


# ─────────────────────────── /health ─────────────────────────────

class HealthResponse(BaseModel):
    status: str
    pending_expressions: int
    waiting_clients: int
    version: str
    contracts_version: str
