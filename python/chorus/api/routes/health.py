"""Liveness endpoint for the chorus chat API.

Load balancers poll this while turns stream on other connections, so it
stays dependency-free: no database, Redis or provider calls.
"""

from fastapi import APIRouter

from chorus.responses import success_response

SERVICE_NAME = "chorus"

router = APIRouter()


@router.get("/health")
async def health_check() -> dict:
    """Report that the chorus process is up and serving requests."""
    return success_response({"status": "ok", "service": SERVICE_NAME})
