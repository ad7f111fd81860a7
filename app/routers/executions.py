# app/routers/executions.py - Execution polling, cancel and retry endpoints

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from app.auth import AuthContext, get_current_auth
from app.models.execution import ExecutionStatus
from app.routers._responses import DataEnvelope, ErrorEnvelope, engine_error_response, error_response
from app.services import job_control
from app.services.recipe_engine import RecipeEngine, get_recipe_engine
from app.utils.exceptions import RecipeEngineError

router = APIRouter()


class ExecutionGetRequest(BaseModel):
    id: str


class ExecutionsListRequest(BaseModel):
    recipe_id: str | None = None
    status: ExecutionStatus | None = None
    limit: int = 50


def _forbidden(auth: AuthContext, engine: RecipeEngine, execution_id: str) -> bool:
    execution = engine.store.get_execution(execution_id)
    return execution is not None and not auth.can_view(execution.user_id)


@router.post("/get", response_model=DataEnvelope, responses={403: {"model": ErrorEnvelope}, 404: {"model": ErrorEnvelope}})
async def get_execution(
    payload: ExecutionGetRequest,
    auth: AuthContext = Depends(get_current_auth),
    engine: RecipeEngine = Depends(get_recipe_engine),
):
    try:
        view = engine.get_execution_status(payload.id)
    except RecipeEngineError as exc:
        return engine_error_response(exc)
    if not auth.can_view(view.execution.user_id):
        return error_response("Forbidden execution access", 403)
    return DataEnvelope(data=view.model_dump(mode="json"))


@router.post("/list", response_model=DataEnvelope)
async def list_executions(
    payload: ExecutionsListRequest,
    auth: AuthContext = Depends(get_current_auth),
    engine: RecipeEngine = Depends(get_recipe_engine),
):
    executions = engine.store.list_executions(
        user_id=None if auth.is_admin else auth.user_id,
        recipe_id=payload.recipe_id,
        status=payload.status,
        limit=max(1, min(payload.limit, 200)),
    )
    return DataEnvelope(
        data=[execution.model_dump(mode="json", exclude={"steps_snapshot"}) for execution in executions]
    )


@router.post(
    "/cancel",
    response_model=DataEnvelope,
    responses={403: {"model": ErrorEnvelope}, 404: {"model": ErrorEnvelope}, 409: {"model": ErrorEnvelope}},
)
async def cancel_execution(
    payload: ExecutionGetRequest,
    auth: AuthContext = Depends(get_current_auth),
    engine: RecipeEngine = Depends(get_recipe_engine),
):
    if _forbidden(auth, engine, payload.id):
        return error_response("Forbidden execution access", 403)
    try:
        execution = job_control.cancel_execution(engine, payload.id)
    except RecipeEngineError as exc:
        return engine_error_response(exc)
    return DataEnvelope(data={"execution_id": execution.id, "status": execution.status.value})


@router.post(
    "/retry",
    response_model=DataEnvelope,
    responses={400: {"model": ErrorEnvelope}, 403: {"model": ErrorEnvelope}, 404: {"model": ErrorEnvelope}, 409: {"model": ErrorEnvelope}},
)
async def retry_execution(
    payload: ExecutionGetRequest,
    auth: AuthContext = Depends(get_current_auth),
    engine: RecipeEngine = Depends(get_recipe_engine),
):
    if _forbidden(auth, engine, payload.id):
        return error_response("Forbidden execution access", 403)
    try:
        execution = await job_control.retry_execution(engine, payload.id)
    except RecipeEngineError as exc:
        return engine_error_response(exc)
    return DataEnvelope(
        data={
            "execution_id": execution.id,
            "status": execution.status.value,
            "retry_of_execution_id": execution.retry_of_execution_id,
            "attempt": execution.attempt,
        }
    )
