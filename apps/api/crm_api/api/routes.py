import logging

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse, Response
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from crm_api.core.auth import AuthUser, get_current_user
from crm_api.core.config import get_settings
from crm_api.core.database import get_db
from crm_api.crm.api import contacts_router, leads_router
from crm_api.metrics import generate_metrics_payload, metrics_content_type

logger = logging.getLogger("crm_api.health")

METRICS_ROLE = "system.metrics.read"

router = APIRouter()
router.include_router(leads_router)
router.include_router(contacts_router)


@router.get("/health", tags=["system"])
def health(db: Session = Depends(get_db)) -> JSONResponse:
    settings = get_settings()
    try:
        db.execute(text("SELECT 1"))
        database = "ok"
    except SQLAlchemyError as exc:
        logger.warning("health.database_unavailable", extra={"error": str(exc)})
        database = "unavailable"

    healthy = database == "ok"
    return JSONResponse(
        status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "ok" if healthy else "degraded",
            "service": settings.app_name,
            "environment": settings.app_env,
            "database": database,
        },
    )


@router.get("/metrics", tags=["system"])
def metrics(user: AuthUser = Depends(get_current_user)) -> Response:
    if not get_settings().metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if METRICS_ROLE not in user.roles:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {METRICS_ROLE}")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
