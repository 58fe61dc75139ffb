from datetime import datetime, timezone

from fastapi import APIRouter, Request

router = APIRouter(tags=["health"])


@router.get("/health", operation_id="health_v1")
def health(request: Request):
    s = request.app.state.settings
    return {
        "status": "ok",
        "service": s.app_name,
        "version": s.app_version,
        "location_id": s.location_id,
        "time": datetime.now(timezone.utc).isoformat(),
    }
