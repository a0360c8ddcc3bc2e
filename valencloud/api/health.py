"""
GET /health
Liveness/readiness probe. Reflects process liveness only: no database,
no network call, constant response.
"""
from fastapi import APIRouter

from valencloud.core.constants import HEALTH_OK

router = APIRouter()


@router.get("/health")
async def health_check():
    return dict(HEALTH_OK)
