# app/routers/_responses.py - shared API response envelopes

from typing import Any

from fastapi.responses import JSONResponse
from pydantic import BaseModel

from app.utils.exceptions import (
    ExecutionNotFoundError,
    InvalidExecutionStateError,
    RecipeEngineError,
    RecipeNotFoundError,
)


class DataEnvelope(BaseModel):
    data: Any


class ErrorEnvelope(BaseModel):
    error: str


def error_response(message: str, status_code: int) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def engine_error_response(exc: RecipeEngineError) -> JSONResponse:
    if isinstance(exc, (RecipeNotFoundError, ExecutionNotFoundError)):
        return error_response(str(exc), 404)
    if isinstance(exc, InvalidExecutionStateError):
        return error_response(str(exc), 409)
    return error_response(str(exc), 400)
