from datetime import datetime, timedelta, timezone

from loop_engine.dtos.loop_io import LoopAlgorithmInput
from loop_engine.dtos.math_models import (
    GlucoseRange,
    GlucoseSample,
    RecommendationType,
    ScheduleSegment,
)

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def flat_schedule(value, start=None, end=None):
    start = start or NOW - timedelta(hours=16)
    end = end or NOW + timedelta(hours=6)
    return (ScheduleSegment(start, end, value),)


def flat_glucose(value, end=NOW, hours=2, step_minutes=5):
    count = int(hours * 60 / step_minutes)
    return tuple(
        GlucoseSample(end - timedelta(minutes=step_minutes * i), value)
        for i in reversed(range(count + 1))
    )


def make_input(
    glucose=180.0,
    recommendation_type=RecommendationType.AUTOMATIC_BOLUS,
    **overrides,
) -> LoopAlgorithmInput:
    values = dict(
        glucose_history=flat_glucose(glucose),
        doses=(),
        carb_entries=(),
        basal=flat_schedule(1.0),
        sensitivity=flat_schedule(50.0),
        carb_ratio=flat_schedule(10.0),
        target=flat_schedule(GlucoseRange(100.0, 120.0)),
        suspend_threshold=80.0,
        max_bolus=5.0,
        max_basal_rate=3.0,
        recommendation_type=recommendation_type,
    )
    values.update(overrides)
    return LoopAlgorithmInput(**values)

