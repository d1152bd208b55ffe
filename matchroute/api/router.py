from fastapi import APIRouter

from matchroute.api.routes import decisions, health, operations, requests

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(requests.router, prefix="/requests", tags=["intake"])
api_router.include_router(decisions.router, prefix="/decisions", tags=["counterparty"])
api_router.include_router(operations.router, tags=["operations"])
