"""
dependencies.py — FastAPI Dependency Injection.
Każda zależność zwraca odpowiedni komponent przez Request.app.state.
"""
from __future__ import annotations

from fastapi import Request

from adapters.client.expression_client import ExpressionClient
from adapters.expression_compiler.shunting_yard_compiler import ShuntingYardCompiler
from config import Settings


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_client(request: Request) -> ExpressionClient:
    return request.app.state.runtime.client


def get_compiler() -> ShuntingYardCompiler:
    return ShuntingYardCompiler()
