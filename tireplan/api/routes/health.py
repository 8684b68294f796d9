"""
Health API Routes
"""
from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

from tireplan.database import database_health

router = APIRouter()


@router.get("/health")
async def health_check(request: Request) -> JSONResponse:
    """Application, database and billing scheduler health"""
    billing = request.app.state.billing
    db = database_health(billing.engine)
    scheduler = billing.scheduler
    ok = bool(db.get("ok"))
    return JSONResponse(
        status_code=status.HTTP_200_OK if ok else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "healthy" if ok else "degraded",
            "database": db,
            "billing": {
                "last_run_at": scheduler.last_run_at.isoformat() if scheduler.last_run_at else None,
                "last_outcomes": scheduler.last_outcomes,
            },
        },
    )
