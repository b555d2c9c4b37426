from fastapi import APIRouter

from . import health, sms


def get_api_router() -> APIRouter:
    router = APIRouter()
    router.include_router(health.router)
    router.include_router(sms.router)
    return router
