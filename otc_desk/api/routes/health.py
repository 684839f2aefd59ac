from fastapi import APIRouter, Depends

from otc_desk.api.deps import runtime
from otc_desk.config import settings
from otc_desk.core.observability import uptime_seconds, utc_now_iso
from otc_desk.runtime import Runtime

router = APIRouter(prefix="/health", tags=["health"])


@router.get("", summary="Healthcheck")
def healthcheck(rt: Runtime = Depends(runtime)):
    """Liveness plus the state of the in-process desk machinery."""
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.environment,
        "time": utc_now_iso(),
        "uptime_seconds": round(uptime_seconds(), 2),
        "version": getattr(settings, "build_version", None),
        "sweep_running": rt.sweeper.is_running,
        "active_quotes": len(rt.quotes),
        "rule_cache": rt.rules.cache.stats(),
    }
