"""Aggregate all API routers."""

from fastapi import APIRouter

from amvconvert.api.convert import router as convert_router
from amvconvert.api.health import router as health_router

api_router = APIRouter(prefix="/api")
api_router.include_router(convert_router, tags=["convert"])

# GET /health at root
root_router = APIRouter()
root_router.include_router(health_router, tags=["health"])
