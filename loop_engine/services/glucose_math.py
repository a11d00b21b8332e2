from __future__ import annotations

import logging
from bisect import bisect_left
from datetime import datetime, timedelta
from typing import Sequence

import numpy as np

from loop_engine.dtos.math_models import (
    GlucoseChange,
    GlucoseEffect,
    GlucoseEffectVelocity,
    GlucoseSample,
    date_ceiled,
    date_floored,
    minutes,
)

logger = logging.getLogger(__name__)

DEFAULT_DELTA = timedelta(minutes=5)
MOMENTUM_DATA_INTERVAL = timedelta(minutes=15)
MOMENTUM_DURATION = timedelta(minutes=30)
MINIMUM_COUNTERACTION_INTERVAL = timedelta(minutes=4)
COUNTERACTION_MAX_GAP = timedelta(minutes=30)


def effect_value_at(effects: Sequence[GlucoseEffect], date: datetime) -> float:
    """Linearly interpolated curve value; the edge value holds outside the curve."""
    if not effects:
        return 0.0
    if date <= effects[0].start_date:
        return effects[0].quantity
    if date >= effects[-1].start_date:
        return effects[-1].quantity
    index = bisect_left(effects, date, key=lambda e: e.start_date)
    after = effects[index]
    if after.start_date == date:
        return after.quantity
    before = effects[index - 1]
    span = (after.start_date - before.start_date).total_seconds()
    ratio = (date - before.start_date).total_seconds() / span
    return before.quantity + ratio * (after.quantity - before.quantity)


def filter_date_range(samples: Sequence[GlucoseSample], start: datetime | None, end: datetime | None) -> list[GlucoseSample]:
    return [
        s for s in samples
        if (start is None or s.start_date >= start) and (end is None or s.start_date <= end)
    ]


def counteraction_effects(
    glucose: Sequence[GlucoseSample],
    insulin_effects: Sequence[GlucoseEffect],
    max_gap: timedelta = COUNTERACTION_MAX_GAP,
) -> list[GlucoseEffectVelocity]:
    """
    Rate of glucose change not explained by insulin, per pair of samples.

    Samples closer than 4 minutes are folded into the next interval. Intervals
    spanning a sensor gap wider than `max_gap` produce no velocity.
    """
    velocities: list[GlucoseEffectVelocity] = []
    if len(glucose) < 2:
        return velocities

    start_glucose = glucose[0]
    skipped = 0
    for end_glucose in glucose[1:]:
        interval = end_glucose.start_date - start_glucose.start_date
        if interval <= MINIMUM_COUNTERACTION_INTERVAL:
            continue
        if interval > max_gap:
            skipped += 1
            start_glucose = end_glucose
            continue

        glucose_change = end_glucose.quantity - start_glucose.quantity
        effect_change = (
            effect_value_at(insulin_effects, end_glucose.start_date)
            - effect_value_at(insulin_effects, start_glucose.start_date)
        )
        velocities.append(
            GlucoseEffectVelocity(
                start_date=start_glucose.start_date,
                end_date=end_glucose.start_date,
                quantity=(glucose_change - effect_change) / minutes(interval),
            )
        )
        start_glucose = end_glucose

    if skipped:
        logger.debug("Counteraction skipped sensor gaps", extra={"gaps": skipped})
    return velocities


def linear_momentum_effect(
    samples: Sequence[GlucoseSample],
    duration: timedelta = MOMENTUM_DURATION,
    delta: timedelta = DEFAULT_DELTA,
    degree: int = 1,
) -> list[GlucoseEffect]:
    """
    Short-horizon extrapolation of a least-squares fit through recent samples.
    Values are relative to the fitted value at the last sample.
    """
    if len(samples) < 2:
        return []

    first, last = samples[0], samples[-1]
    x = np.array([minutes(s.start_date - first.start_date) for s in samples])
    y = np.array([s.quantity for s in samples])
    if np.ptp(x) == 0:
        return []

    degree = min(degree, len(samples) - 1)
    poly = np.poly1d(np.polyfit(x, y, degree))
    x_last = x[-1]
    if not np.all(np.isfinite(poly.coeffs)):
        return []

    start = date_floored(last.start_date, delta)
    end = date_ceiled(last.start_date + duration, delta)
    effects: list[GlucoseEffect] = []
    date = start
    while date <= end:
        t = max(0.0, minutes(date - last.start_date))
        value = float(poly(x_last + t) - poly(x_last)) if t > 0 else 0.0
        effects.append(GlucoseEffect(start_date=date, quantity=value))
        date += delta
    return effects


def decay_effect(
    glucose: GlucoseSample,
    rate: float,
    duration: timedelta,
    delta: timedelta = DEFAULT_DELTA,
) -> list[GlucoseEffect]:
    """
    Effect starting at `glucose` moving at `rate` (mg/dL/min), the rate
    decreasing linearly to zero over `duration`.
    """
    start = date_floored(glucose.start_date, delta)
    end = date_ceiled(glucose.start_date + duration, delta)
    if end <= start:
        return []

    step = minutes(delta)
    slope = -rate / (minutes(duration) - step) if duration > delta else 0.0
    velocity = rate
    last_value = glucose.quantity
    effects = [GlucoseEffect(start_date=start, quantity=last_value)]
    date = start + delta
    while date < end:
        value = last_value + velocity * step
        effects.append(GlucoseEffect(start_date=date, quantity=value))
        last_value = value
        velocity += slope * step
        date += delta
    return effects


def subtracting(
    velocities: Sequence[GlucoseEffectVelocity],
    effects: Sequence[GlucoseEffect],
) -> list[GlucoseChange]:
    """Glucose change in each velocity interval left after removing the effect curve's change."""
    changes: list[GlucoseChange] = []
    for velocity in velocities:
        effect_change = effect_value_at(effects, velocity.end_date) - effect_value_at(effects, velocity.start_date)
        changes.append(
            GlucoseChange(
                start_date=velocity.start_date,
                end_date=velocity.end_date,
                quantity=velocity.effect - effect_change,
            )
        )
    return changes


def combined_sums(changes: Sequence[GlucoseChange], duration: timedelta) -> list[GlucoseChange]:
    """
    For each change, the sum of itself and every earlier change ending no
    more than `duration` before it.
    """
    sums: list[GlucoseChange] = []
    for index, change in enumerate(changes):
        total = change
        for earlier in reversed(changes[:index]):
            if change.end_date - earlier.end_date > duration:
                break
            total = total.appending(earlier)
        sums.append(total)
    return sums
