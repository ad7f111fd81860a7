# app/main.py - FastAPI app entry point

import logging

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from app.config import get_settings
from app.routers import executions, health, internal, recipes

logging.basicConfig(
    level=getattr(logging, get_settings().log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

app = FastAPI(
    title="recipe-engine-api",
    description="Multi-step AI provider recipe execution engine",
    version="0.1.0",
)


@app.exception_handler(HTTPException)
async def http_exception_handler(_: Request, exc: HTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)})

# Include routers
app.include_router(health.router, tags=["health"])
app.include_router(
    internal.router,
    prefix="/api/internal",
    tags=["internal"],
)
app.include_router(
    recipes.router,
    prefix="/api/recipes",
    tags=["recipes"],
)
app.include_router(
    executions.router,
    prefix="/api/executions",
    tags=["executions"],
)
