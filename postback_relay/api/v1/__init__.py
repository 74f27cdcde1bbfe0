"""
API v1 router initialization and setup.
"""
from fastapi import APIRouter, Depends
from postback_relay.api.deps import require_admin
from .endpoints import postback, audit

api_router = APIRouter()

api_router.include_router(
    postback.router,
    prefix="/postback",
    tags=["postback"]
)

api_router.include_router(
    audit.router,
    prefix="/audit",
    tags=["audit"],
    dependencies=[Depends(require_admin)]
)
