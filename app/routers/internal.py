# app/routers/internal.py - Internal callbacks for the background worker and maintenance jobs

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from app.config import get_settings
from app.routers._responses import DataEnvelope, ErrorEnvelope, error_response
from app.services.job_control import recover_stale_executions
from app.services.preset_sync import sync_all_presets
from app.services.recipe_engine import RecipeEngine, get_recipe_engine

router = APIRouter()
security = HTTPBearer(auto_error=False)


def require_internal_key(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> None:
    settings = get_settings()
    if credentials is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing authorization token")
    if credentials.credentials != settings.internal_api_key:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid internal API key")
    return None


class InternalExecutionRunRequest(BaseModel):
    execution_id: str


class InternalRecoverStaleRequest(BaseModel):
    older_than_seconds: int | None = None


class InternalSyncPresetsRequest(BaseModel):
    create_missing: bool = False


@router.post("/executions/run", response_model=DataEnvelope, responses={404: {"model": ErrorEnvelope}})
async def internal_run_execution(
    payload: InternalExecutionRunRequest,
    _: None = Depends(require_internal_key),
    engine: RecipeEngine = Depends(get_recipe_engine),
):
    if engine.store.get_execution(payload.execution_id) is None:
        return error_response("Execution not found", 404)
    execution = await engine.start_execution(payload.execution_id)
    if execution is None:
        current = engine.store.get_execution(payload.execution_id)
        return DataEnvelope(
            data={
                "execution_id": payload.execution_id,
                "started": False,
                "status": current.status.value if current else None,
            }
        )
    return DataEnvelope(
        data={
            "execution_id": execution.id,
            "started": True,
            "status": execution.status.value,
            "progress": execution.progress,
        }
    )


@router.post("/executions/recover-stale", response_model=DataEnvelope)
async def internal_recover_stale_executions(
    payload: InternalRecoverStaleRequest,
    _: None = Depends(require_internal_key),
    engine: RecipeEngine = Depends(get_recipe_engine),
):
    older_than = payload.older_than_seconds or get_settings().stale_execution_seconds
    recovered = await recover_stale_executions(engine, older_than_seconds=older_than)
    return DataEnvelope(data={"recovered": recovered, "count": len(recovered)})


@router.post("/recipes/sync-presets", response_model=DataEnvelope)
async def internal_sync_presets(
    payload: InternalSyncPresetsRequest,
    _: None = Depends(require_internal_key),
    engine: RecipeEngine = Depends(get_recipe_engine),
):
    report = sync_all_presets(engine.store, create_missing=payload.create_missing)
    return DataEnvelope(data=report)
