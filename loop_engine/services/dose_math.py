"""
Insulin correction and its translation into pump commands.

`insulin_correction` classifies a forecast against the target and suspend
threshold. The `as_*` helpers turn a correction into a temp basal, a partial
(automatic) bolus, or a manual bolus; `if_necessary` drops commands the pump
is already carrying out.
"""

from __future__ import annotations

import logging
import math
import sys
from datetime import datetime, timedelta
from typing import Callable, Optional, Sequence, assert_never

from loop_engine.core.errors import ScheduleGap
from loop_engine.dtos.math_models import (
    DoseEntry,
    DoseType,
    GlucoseRange,
    PredictedGlucoseValue,
    ScheduleSegment,
    closest_prior,
)
from loop_engine.dtos.recommendations import (
    AboveRange,
    BelowRange,
    EntirelyBelowRange,
    InRange,
    InsulinCorrection,
    ManualBolusRecommendation,
    Suspend,
    TempBasalRecommendation,
)
from loop_engine.services.math.curves import AnyInsulinModel

logger = logging.getLogger(__name__)

Rounder = Callable[[float], float]

DELIVERY_INCREMENT = 0.05
RATE_TOLERANCE = 1e-6
# Fraction of the effect duration during which the suspend threshold is the target.
USE_MIN_VALUE_UNTIL_PERCENT = 0.5


def make_delivery_rounder(increment: float = DELIVERY_INCREMENT) -> Rounder:
    """Round down to the pump's delivery increment. Applying it twice changes nothing."""
    if increment <= 0:
        raise ValueError("increment must be positive")

    def rounder(value: float) -> float:
        steps = math.floor(value / increment + 1e-9)
        return steps * increment

    return rounder


round_to_delivery_increment = make_delivery_rounder()


def target_glucose_value(percent_effect_duration: float, min_value: float, max_value: float) -> float:
    """
    Target used to size a correction at a point of the forecast: the suspend
    threshold for the first half of the effect duration, then a straight line
    to the target midpoint at its end.
    """
    if percent_effect_duration <= USE_MIN_VALUE_UNTIL_PERCENT or min_value >= max_value:
        return min_value
    slope = (max_value - min_value) / (1 - USE_MIN_VALUE_UNTIL_PERCENT)
    return min_value + slope * (percent_effect_duration - USE_MIN_VALUE_UNTIL_PERCENT)


def _value_at(schedule: Sequence[ScheduleSegment], name: str, date: datetime):
    segment = closest_prior(schedule, date)
    if segment is None:
        raise ScheduleGap(name, date)
    return segment.value


def insulin_correction(
    prediction: Sequence[PredictedGlucoseValue],
    at: datetime,
    target: Sequence[ScheduleSegment[GlucoseRange]],
    suspend_threshold: float,
    sensitivity: Sequence[ScheduleSegment[float]],
    model: AnyInsulinModel,
) -> InsulinCorrection:
    """Classify the forecast between `at` and the end of the insulin's effect."""
    effect_duration = model.effect_duration
    end_of_absorption = at + effect_duration

    min_glucose: Optional[PredictedGlucoseValue] = None
    eventual_glucose: Optional[PredictedGlucoseValue] = None
    correcting_glucose: Optional[PredictedGlucoseValue] = None
    min_correction_units: Optional[float] = None

    for point in prediction:
        if not at <= point.start_date <= end_of_absorption:
            continue
        if point.quantity < suspend_threshold:
            return Suspend(min=point)

        eventual_glucose = point
        if min_glucose is None or point.quantity < min_glucose.quantity:
            min_glucose = point

        time = point.start_date - at
        goal: GlucoseRange = _value_at(target, "target", point.start_date)
        target_value = target_glucose_value(time / effect_duration, suspend_threshold, goal.average)
        isf = _value_at(sensitivity, "sensitivity", point.start_date)
        effected_sensitivity = (1 - model.percent_effect_remaining(time)) * isf
        if effected_sensitivity <= 1e-12:
            continue

        units = (point.quantity - target_value) / effected_sensitivity
        if min_correction_units is None or units < min_correction_units:
            min_correction_units = units
            correcting_glucose = point

    if min_glucose is None or eventual_glucose is None:
        return InRange()

    min_targets: GlucoseRange = _value_at(target, "target", min_glucose.start_date)
    eventual_targets: GlucoseRange = _value_at(target, "target", eventual_glucose.start_date)

    if min_glucose.quantity < min_targets.min_value and eventual_glucose.quantity < eventual_targets.min_value:
        # Sized toward the eventual target midpoint; never a positive dose.
        time = min_glucose.start_date - at
        isf = _value_at(sensitivity, "sensitivity", min_glucose.start_date)
        percent_effected = max(sys.float_info.epsilon, 1 - model.percent_effect_remaining(time))
        units = min(0.0, (min_glucose.quantity - eventual_targets.average) / (isf * percent_effected))
        return EntirelyBelowRange(min=min_glucose, min_target=min_targets.min_value, units=units)

    if min_correction_units is None or correcting_glucose is None:
        return InRange()

    if eventual_glucose.quantity > eventual_targets.max_value:
        return AboveRange(
            min=min_glucose,
            correcting=correcting_glucose,
            min_target=eventual_targets.min_value,
            units=min_correction_units,
        )
    if eventual_glucose.quantity < eventual_targets.min_value:
        return BelowRange(
            min=min_glucose,
            correcting=correcting_glucose,
            min_target=eventual_targets.min_value,
            units=min_correction_units,
        )
    return InRange()


def correction_units(correction: InsulinCorrection) -> float:
    match correction:
        case AboveRange(units=units) | BelowRange(units=units) | EntirelyBelowRange(units=units):
            return units
        case InRange() | Suspend():
            return 0.0
        case _:
            assert_never(correction)


def as_temp_basal(
    correction: InsulinCorrection,
    scheduled_basal_rate: float,
    max_basal_rate: float,
    duration: timedelta,
    rate_rounder: Optional[Rounder] = None,
) -> TempBasalRecommendation:
    hours = duration.total_seconds() / 3600.0
    match correction:
        case AboveRange(units=units) | BelowRange(units=units) | EntirelyBelowRange(units=units):
            rate = units / hours + scheduled_basal_rate
        case InRange():
            rate = scheduled_basal_rate
        case Suspend():
            rate = 0.0
        case _:
            assert_never(correction)

    rate = min(max(0.0, max_basal_rate), max(0.0, rate))
    if rate_rounder is not None:
        rate = rate_rounder(rate)
    return TempBasalRecommendation(units_per_hour=rate, duration=duration)


def if_necessary(
    temp_basal: TempBasalRecommendation,
    at: datetime,
    scheduled_basal_rate: float,
    last_temp_basal: Optional[DoseEntry],
    continuation_interval: timedelta,
    scheduled_basal_rate_matches_pump: bool = True,
    tolerance: float = RATE_TOLERANCE,
) -> Optional[TempBasalRecommendation]:
    """
    The command to send, or None when the pump already does the right thing.

    A running temp basal at the same rate that started less than
    `continuation_interval` ago is left alone. Returning to the scheduled rate
    cancels a running temp basal and needs no command otherwise.
    """

    def matches(rate: float) -> bool:
        return abs(temp_basal.units_per_hour - rate) <= tolerance

    running = (
        last_temp_basal is not None
        and last_temp_basal.type is DoseType.TEMP_BASAL
        and last_temp_basal.start_date <= at < last_temp_basal.end_date
    )
    if running:
        elapsed = at - last_temp_basal.start_date
        if matches(last_temp_basal.unit_rate) and elapsed < continuation_interval and scheduled_basal_rate_matches_pump:
            return None
        if matches(scheduled_basal_rate) and scheduled_basal_rate_matches_pump:
            return TempBasalRecommendation.cancel()
    elif matches(scheduled_basal_rate) and scheduled_basal_rate_matches_pump:
        return None
    return temp_basal


def as_partial_bolus(
    correction: InsulinCorrection,
    partial_application_factor: float,
    max_bolus_units: float,
    volume_rounder: Optional[Rounder] = None,
) -> float:
    partial = correction_units(correction) * partial_application_factor
    if volume_rounder is not None:
        partial = volume_rounder(partial)
        max_bolus_units = volume_rounder(max_bolus_units)
    return min(max(0.0, partial), max_bolus_units)


def as_manual_bolus(
    correction: InsulinCorrection,
    max_bolus: float,
    volume_rounder: Optional[Rounder] = None,
) -> ManualBolusRecommendation:
    amount = min(max_bolus, max(0.0, correction_units(correction)))
    if volume_rounder is not None:
        amount = volume_rounder(amount)
    return ManualBolusRecommendation(amount=amount)
