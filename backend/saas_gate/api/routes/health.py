"""
Health check for load balancers and orchestrators.

Exempt from rate limiting: the limiter fails closed, so a store outage would
turn the 503 into a 429 and hide which dependency is down.
"""

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

router = APIRouter()


@router.get("/health")
def health(request: Request):
    """Liveness plus store and database reachability; 503 when either is down."""
    result = request.app.state.health_checker.get_health_status()
    return JSONResponse(status_code=200 if result["status"] == "ok" else 503, content=result)
