"""SerialStock — API v1 router aggregation."""
from fastapi import APIRouter

from serialstock.api.v1.endpoints import units

api_router = APIRouter()

api_router.include_router(units.router, prefix="/units", tags=["units"])
