"""
Main API router.
"""

from fastapi import APIRouter
from billwatch.api import bills

api_router = APIRouter()

api_router.include_router(bills.router)
