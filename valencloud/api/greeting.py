"""
GET /
Returns the fixed plain-text greeting. Query parameters and headers are ignored.
"""
from fastapi import APIRouter
from fastapi.responses import PlainTextResponse

from valencloud.core.constants import GREETING

router = APIRouter()


@router.get("/", response_class=PlainTextResponse)
async def read_root():
    return GREETING
