"""Mounts the v1 routers under ``API_V1_PREFIX``."""

from fastapi import APIRouter

from api.routes import events, runs, workflows
from api.schemas.common import ErrorResponse

ERROR_RESPONSES = {
    401: {"model": ErrorResponse, "description": "Missing or invalid bearer token"},
    404: {"model": ErrorResponse, "description": "Not found in the caller's organization"},
}

api_v1_router = APIRouter(responses=ERROR_RESPONSES)

api_v1_router.include_router(workflows.router, prefix="/workflows", tags=["Workflows"])
api_v1_router.include_router(runs.router, prefix="/runs", tags=["Runs"])
api_v1_router.include_router(events.router, prefix="/events", tags=["Events"])
