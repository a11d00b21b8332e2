import logging
from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, Depends, Request, Response

from loop_engine import __version__
from loop_engine.core.errors import AlgorithmError
from loop_engine.core.settings import LoopConstants, Settings, get_settings
from loop_engine.dtos.loop_io import LoopAlgorithmInput
from loop_engine.dtos.math_models import GlucoseRange, GlucoseSample, RecommendationType, ScheduleSegment
from loop_engine.services.loop_algorithm import run

logger = logging.getLogger(__name__)

router = APIRouter()

_start_time = datetime.now(timezone.utc)


def _uptime_seconds() -> float:
    return (datetime.now(timezone.utc) - _start_time).total_seconds()


def _self_check(constants: LoopConstants) -> dict:
    """Run one cycle on steady in-range data; it must forecast flat and recommend nothing."""
    now = datetime.now(timezone.utc).replace(second=0, microsecond=0)
    window = (now - timedelta(hours=12), now + timedelta(hours=12))
    glucose = tuple(GlucoseSample(now - timedelta(minutes=5 * i), 110.0) for i in reversed(range(13)))
    data = LoopAlgorithmInput(
        glucose_history=glucose,
        doses=(),
        carb_entries=(),
        basal=(ScheduleSegment(*window, 1.0),),
        sensitivity=(ScheduleSegment(*window, 50.0),),
        carb_ratio=(ScheduleSegment(*window, 10.0),),
        target=(ScheduleSegment(*window, GlucoseRange(100.0, 120.0)),),
        suspend_threshold=80.0,
        max_bolus=5.0,
        max_basal_rate=3.0,
        recommendation_type=RecommendationType.TEMP_BASAL,
    )
    try:
        output = run(data, constants=constants)
    except AlgorithmError as exc:
        logger.error("Algorithm self-check failed", extra={"error": exc.kind})
        return {"ok": False, "error": exc.kind}
    return {
        "ok": output.recommendation.recommendation is None,
        "eventual_glucose": round(output.prediction.glucose[-1].quantity, 1),
    }


@router.api_route("/", methods=["GET", "HEAD"], summary="Liveness probe", response_model=None)
async def health(request: Request):
    if request.method == "HEAD":
        return Response(status_code=200)
    return {"ok": True}


@router.get("/full", summary="Full health check")
def full_health(settings: Settings = Depends(get_settings)) -> dict:
    loop = settings.loop
    algorithm = _self_check(loop)
    return {
        "ok": algorithm["ok"],
        "uptime_seconds": _uptime_seconds(),
        "version": __version__,
        "server": {"host": settings.server.host, "port": settings.server.port},
        "algorithm": algorithm,
        "loop": {
            "delta_minutes": loop.delta.total_seconds() / 60,
            "insulin_activity_duration_minutes": loop.insulin_activity_duration.total_seconds() / 60,
            "bolus_partial_application_factor": loop.bolus_partial_application_factor,
        },
    }
