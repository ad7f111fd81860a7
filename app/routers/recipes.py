# app/routers/recipes.py - Recipe execution entrypoint

from typing import Any

from fastapi import APIRouter, Depends, Header
from pydantic import BaseModel, Field

from app.auth import AuthContext, get_current_auth
from app.routers._responses import DataEnvelope, ErrorEnvelope, engine_error_response
from app.services.recipe_engine import RecipeEngine, get_recipe_engine
from app.utils.exceptions import RecipeEngineError

router = APIRouter()


class RecipeExecuteRequest(BaseModel):
    recipe_id: str
    input_data: dict[str, Any] = Field(default_factory=dict)


@router.post(
    "/execute",
    response_model=DataEnvelope,
    responses={400: {"model": ErrorEnvelope}, 404: {"model": ErrorEnvelope}},
)
async def execute_recipe(
    payload: RecipeExecuteRequest,
    auth: AuthContext = Depends(get_current_auth),
    engine: RecipeEngine = Depends(get_recipe_engine),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    try:
        execution = await engine.create_execution(
            recipe_id=payload.recipe_id,
            user_id=auth.user_id,
            input_data=payload.input_data,
            idempotency_key=idempotency_key,
        )
    except RecipeEngineError as exc:
        return engine_error_response(exc)
    return DataEnvelope(data={"execution_id": execution.id, "status": execution.status.value})
