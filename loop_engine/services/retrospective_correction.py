"""
Retrospective correction: feedback on how far recent glucose strayed from
what the insulin and carb models explain.

`StandardRetrospectiveCorrection` applies the latest summed discrepancy as a
proportional term. `IntegralRetrospectiveCorrection` adds an integral term
over a run of persistent same-sign discrepancies (clamped) and a differential
term when glucose is falling faster than modeled.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Sequence, Union

from loop_engine.dtos.math_models import GlucoseChange, GlucoseEffect, GlucoseSample, minutes
from loop_engine.services.glucose_math import decay_effect

logger = logging.getLogger(__name__)

DEFAULT_DELTA = timedelta(minutes=5)
GROUPING_INTERVAL = timedelta(minutes=30)
EFFECT_DURATION = timedelta(minutes=60)


@dataclass(frozen=True)
class RetrospectiveCorrectionResult:
    effects: list[GlucoseEffect] = field(default_factory=list)
    total_correction: float | None = None  # mg/dL, None when no recent discrepancy


def _current_discrepancy(
    starting_glucose: GlucoseSample,
    summed: Sequence[GlucoseChange],
    recency_interval: timedelta,
) -> GlucoseChange | None:
    if not summed:
        return None
    current = summed[-1]
    if starting_glucose.start_date - current.end_date >= recency_interval:
        return None
    return current


@dataclass(frozen=True)
class StandardRetrospectiveCorrection:
    effect_duration: timedelta = EFFECT_DURATION
    retrospection_interval: timedelta = timedelta(minutes=60)

    def compute_effect(
        self,
        starting_glucose: GlucoseSample,
        discrepancies_summed: Sequence[GlucoseChange],
        recency_interval: timedelta,
        grouping_interval: timedelta = GROUPING_INTERVAL,
        delta: timedelta = DEFAULT_DELTA,
    ) -> RetrospectiveCorrectionResult:
        current = _current_discrepancy(starting_glucose, discrepancies_summed, recency_interval)
        if current is None:
            return RetrospectiveCorrectionResult()

        discrepancy_time = max(current.end_date - current.start_date, grouping_interval)
        velocity = current.quantity / minutes(discrepancy_time)
        effects = decay_effect(starting_glucose, velocity, self.effect_duration, delta)
        logger.debug("Standard RC", extra={"discrepancy": round(current.quantity, 2)})
        return RetrospectiveCorrectionResult(effects=effects, total_correction=current.quantity)


@dataclass(frozen=True)
class IntegralRetrospectiveCorrection:
    effect_duration: timedelta = EFFECT_DURATION
    retrospection_interval: timedelta = timedelta(minutes=180)
    integral_min: float = -90.0
    integral_max: float = 90.0

    current_discrepancy_gain: float = 1.0
    persistent_discrepancy_gain: float = 2.0
    correction_time_constant: timedelta = timedelta(minutes=60)
    differential_gain: float = 2.0
    maximum_effect_duration: timedelta = timedelta(minutes=180)

    def gains(self, grouping_interval: timedelta) -> tuple[float, float, float]:
        """(forget factor, integral gain, proportional gain) for the grouping interval."""
        forget = math.exp(-(grouping_interval / self.correction_time_constant))
        integral_gain = ((1 - forget) / forget) * (self.persistent_discrepancy_gain - self.current_discrepancy_gain)
        proportional_gain = self.current_discrepancy_gain - integral_gain
        return forget, integral_gain, proportional_gain

    def compute_effect(
        self,
        starting_glucose: GlucoseSample,
        discrepancies_summed: Sequence[GlucoseChange],
        recency_interval: timedelta,
        grouping_interval: timedelta = GROUPING_INTERVAL,
        delta: timedelta = DEFAULT_DELTA,
    ) -> RetrospectiveCorrectionResult:
        current = _current_discrepancy(starting_glucose, discrepancies_summed, recency_interval)
        if current is None:
            return RetrospectiveCorrectionResult()

        current_value = current.quantity
        forget, integral_gain, proportional_gain = self.gains(grouping_interval)

        # Walk back through contiguous discrepancies sharing the current sign.
        recent: list[float] = []
        next_discrepancy = current
        for past in reversed(discrepancies_summed):
            same_sign = past.quantity * current_value > 0
            contiguous = next_discrepancy.end_date - past.end_date <= recency_interval
            if same_sign and contiguous and abs(past.quantity) >= 0.1:
                recent.append(past.quantity)
                next_discrepancy = past
            else:
                break
        recent.reverse()

        integral = 0.0
        effect_minutes = minutes(self.effect_duration) - 2.0 * minutes(delta)
        for discrepancy in recent:
            integral = forget * integral + integral_gain * discrepancy
            effect_minutes += 2.0 * minutes(delta)
        integral = min(self.integral_max, max(self.integral_min, integral))
        effect_duration = timedelta(minutes=min(max(effect_minutes, minutes(self.effect_duration)), minutes(self.maximum_effect_duration)))

        differential = 0.0
        if len(recent) > 1:
            differential_discrepancy = current_value - recent[-2]
            if current_value < 0 and differential_discrepancy < 0:
                differential = self.differential_gain * differential_discrepancy

        total = proportional_gain * current_value + integral + differential
        discrepancy_time = max(current.end_date - current.start_date, grouping_interval)
        velocity = total / minutes(discrepancy_time)
        effects = decay_effect(starting_glucose, velocity, effect_duration, delta)

        logger.debug(
            "Integral RC",
            extra={
                "proportional": round(proportional_gain * current_value, 2),
                "integral": round(integral, 2),
                "differential": round(differential, 2),
                "effect_minutes": minutes(effect_duration),
            },
        )
        return RetrospectiveCorrectionResult(effects=effects, total_correction=total)


RetrospectiveCorrection = Union[StandardRetrospectiveCorrection, IntegralRetrospectiveCorrection]
