from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from leadops.commitments.api import router as commitments_router
from leadops.core.auth import AuthUser, get_current_user
from leadops.core.config import get_settings
from leadops.intake.api import events_router, webhooks_router
from leadops.metrics import generate_metrics_payload, metrics_content_type
from leadops.sequences.api import router as sequences_router

router = APIRouter()
router.include_router(events_router)
router.include_router(webhooks_router)
router.include_router(commitments_router)
router.include_router(sequences_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/metrics", tags=["system"])
def metrics(user: AuthUser = Depends(get_current_user)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if not user.has_permission("system.metrics.read"):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Missing permission: system.metrics.read")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
