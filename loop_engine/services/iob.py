from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta
from typing import Optional, Sequence

from loop_engine.core.errors import BasalTimelineIncomplete, ScheduleGap
from loop_engine.dtos.math_models import (
    DoseEntry,
    DoseType,
    GlucoseEffect,
    ScheduleSegment,
    closest_prior,
    date_ceiled,
    date_floored,
)
from loop_engine.services.math.curves import AnyInsulinModel, InsulinModelProvider

logger = logging.getLogger(__name__)

DEFAULT_DELTA = timedelta(minutes=5)

_BASAL_LIKE = (DoseType.BASAL, DoseType.TEMP_BASAL, DoseType.SUSPEND)


def annotate_doses(doses: Sequence[DoseEntry], basal: Sequence[ScheduleSegment[float]]) -> list[DoseEntry]:
    """
    Split basal, temp basal and suspend doses at basal schedule boundaries and
    record the scheduled rate each piece replaces. Boluses pass through.
    """
    if not doses:
        return []
    if not basal:
        raise BasalTimelineIncomplete("Missing basal history input")

    first_dose_start = min(d.start_date for d in doses)
    if basal[0].start_date > first_dose_start:
        raise BasalTimelineIncomplete(
            f"Basal history must cover historic dose range. First dose date: "
            f"{first_dose_start.isoformat()} < {basal[0].start_date.isoformat()}"
        )

    annotated: list[DoseEntry] = []
    for dose in doses:
        if dose.type not in _BASAL_LIKE:
            annotated.append(dose)
            continue

        boundaries = [dose.start_date]
        boundaries += [s.start_date for s in basal if dose.start_date < s.start_date < dose.end_date]
        boundaries.append(dose.end_date)

        for piece_start, piece_end in zip(boundaries, boundaries[1:]):
            segment = closest_prior(basal, piece_start)
            if piece_end == piece_start and len(boundaries) > 2:
                continue
            annotated.append(dose.trimmed(piece_start, piece_end, segment.value))

    return annotated


def _continuous_delivery(dose: DoseEntry, time: timedelta, model: AnyInsulinModel, delta: timedelta, remaining: bool) -> float:
    """
    Fraction of a continuously delivered dose that is still active
    (`remaining=True`) or already realised as glucose effect, treating the
    delivery as a train of `delta`-spaced micro boluses.
    """
    dose_duration = dose.duration
    limit = min(math.floor((time + model.delay) / delta) * delta, dose_duration)
    value = 0.0
    dose_date = timedelta(0)
    while True:
        if dose_duration > timedelta(0):
            segment = max(timedelta(0), min(dose_date + delta, dose_duration) - dose_date) / dose_duration
        else:
            segment = 1.0
        pct = model.percent_effect_remaining(time - dose_date)
        value += segment * (pct if remaining else 1.0 - pct)
        dose_date += delta
        if dose_date > limit:
            break
    return value


def _is_momentary(dose: DoseEntry, delta: timedelta) -> bool:
    return dose.duration <= delta * 1.05


def remaining_fraction(dose: DoseEntry, date: datetime, model: AnyInsulinModel, delta: timedelta = DEFAULT_DELTA) -> float:
    time = date - dose.start_date
    if time < timedelta(0):
        return 0.0
    if _is_momentary(dose, delta):
        return model.percent_effect_remaining(time)
    return _continuous_delivery(dose, time, model, delta, remaining=True)


def effect_fraction(dose: DoseEntry, date: datetime, model: AnyInsulinModel, delta: timedelta = DEFAULT_DELTA) -> float:
    time = date - dose.start_date
    if time < timedelta(0):
        return 0.0
    if _is_momentary(dose, delta):
        return 1.0 - model.percent_effect_remaining(time)
    return _continuous_delivery(dose, time, model, delta, remaining=False)


def insulin_on_board(
    doses: Sequence[DoseEntry],
    provider: InsulinModelProvider,
    at: datetime,
    delta: timedelta = DEFAULT_DELTA,
) -> float:
    total = 0.0
    for dose in doses:
        net = dose.net_basal_units
        if net == 0:
            continue
        model = provider.model_for(dose.insulin_type)
        total += net * remaining_fraction(dose, at, model, delta)
    return total


def insulin_glucose_effects(
    doses: Sequence[DoseEntry],
    provider: InsulinModelProvider,
    sensitivity: Sequence[ScheduleSegment[float]],
    start: datetime,
    end: Optional[datetime] = None,
    delta: timedelta = DEFAULT_DELTA,
) -> list[GlucoseEffect]:
    """
    Cumulative glucose effect of annotated doses on a `delta` grid.

    Each step's newly realised insulin effect is scaled by the sensitivity in
    force at that step, so a schedule change mid-absorption bends the curve.
    """
    active = [(dose, provider.model_for(dose.insulin_type)) for dose in doses if dose.net_basal_units != 0]
    if not active:
        return []

    start = date_floored(start, delta)
    if end is None:
        end = max(dose.end_date + model.effect_duration for dose, model in active)
    end = date_ceiled(end, delta)

    previous = [0.0] * len(active)
    cumulative = 0.0
    effects: list[GlucoseEffect] = []
    date = start
    while date <= end:
        segment = closest_prior(sensitivity, date)
        if segment is None:
            raise ScheduleGap("sensitivity", date)

        step_units = 0.0
        for index, (dose, model) in enumerate(active):
            fraction = effect_fraction(dose, date, model, delta)
            step_units += dose.net_basal_units * (fraction - previous[index])
            previous[index] = fraction

        cumulative -= step_units * segment.value
        effects.append(GlucoseEffect(start_date=date, quantity=cumulative))
        date += delta

    logger.debug(
        "Insulin effects computed",
        extra={"doses": len(active), "points": len(effects), "final": round(cumulative, 2)},
    )
    return effects
