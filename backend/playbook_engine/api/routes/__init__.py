"""API Routes module"""
from fastapi import APIRouter

from .runs import router as runs_router
from .audit import router as audit_router

# Main API router
api_router = APIRouter()

api_router.include_router(runs_router, prefix="/runs", tags=["Runs"])
api_router.include_router(audit_router, prefix="/audit", tags=["Audit"])

__all__ = ["api_router"]
