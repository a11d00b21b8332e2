from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Sequence

from loop_engine.core.errors import ScheduleGap
from loop_engine.dtos.math_models import (
    CarbEntry,
    GlucoseEffect,
    GlucoseEffectVelocity,
    ScheduleSegment,
    closest_prior,
    date_ceiled,
    date_floored,
    minutes,
)
from loop_engine.services.math.curves import (
    CarbAbsorptionModel,
    LinearAbsorption,
    PiecewiseLinearAbsorption,
    absorbed_fraction,
    absorption_rate,
    absorption_time_for,
)

logger = logging.getLogger(__name__)

DEFAULT_DELTA = timedelta(minutes=5)
MAXIMUM_ABSORPTION_TIME_INTERVAL = timedelta(hours=10)
DEFAULT_ABSORPTION_TIME = timedelta(hours=3)
ABSORPTION_TIME_OVERRUN = 1.5
EFFECT_DELAY = timedelta(minutes=10)
# Observed absorption may not outpace the model's peak rate by more than this.
MAXIMUM_RATE_FACTOR = 2.0


def carb_sensitivity_factor(
    carb_ratio: Sequence[ScheduleSegment[float]],
    sensitivity: Sequence[ScheduleSegment[float]],
    date: datetime,
) -> float:
    """Glucose rise per gram (mg/dL/g) at `date`."""
    isf = closest_prior(sensitivity, date)
    if isf is None:
        raise ScheduleGap("sensitivity", date)
    ratio = closest_prior(carb_ratio, date)
    if ratio is None:
        raise ScheduleGap("carb ratio", date)
    return isf.value / ratio.value


@dataclass(frozen=True)
class CarbValue:
    start_date: datetime
    end_date: datetime
    grams: float


@dataclass(frozen=True)
class CarbStatus:
    entry: CarbEntry
    observed_grams: float
    remaining_grams: float
    observed_timeline: tuple[CarbValue, ...]
    projection_start: datetime
    time_remaining: timedelta
    observation_complete: bool

    @property
    def estimated_end_date(self) -> datetime:
        return self.projection_start + self.time_remaining

    def absorbed_grams(self, date: datetime) -> float:
        if date <= self.entry.start_date:
            return 0.0

        grams = 0.0
        for value in self.observed_timeline:
            if date >= value.end_date:
                grams += value.grams
            elif date > value.start_date:
                grams += value.grams * (date - value.start_date) / (value.end_date - value.start_date)

        if self.remaining_grams > 0 and date > self.projection_start:
            if self.time_remaining <= timedelta(0):
                grams += self.remaining_grams
            else:
                elapsed = date - self.projection_start
                grams += self.remaining_grams * absorbed_fraction(LinearAbsorption(), elapsed, self.time_remaining)
        return grams


class _CarbStatusBuilder:
    """Accumulates the absorption observed for one entry while velocities are apportioned."""

    def __init__(self, entry: CarbEntry, model: CarbAbsorptionModel, delay: timedelta):
        self.entry = entry
        self.model = model
        self.delay = delay
        self.initial_absorption_time = entry.absorption_time or DEFAULT_ABSORPTION_TIME
        self.max_absorption_time = self.initial_absorption_time * ABSORPTION_TIME_OVERRUN
        self.observed_grams = 0.0
        self.timeline: list[CarbValue] = []
        self.completion_date: Optional[datetime] = None
        self.last_effect_date = entry.start_date

    @property
    def max_end_date(self) -> datetime:
        return self.entry.start_date + self.max_absorption_time + self.delay

    @property
    def observable_grams(self) -> float:
        return max(0.0, self.entry.quantity - self.observed_grams)

    def is_active(self, date: datetime) -> bool:
        return self.entry.start_date <= date < self.max_end_date

    def model_rate(self, date: datetime) -> float:
        """Nominal absorption rate (g/min) used to apportion shared counteraction."""
        time = date - self.entry.start_date - self.delay
        absorption_time = self.initial_absorption_time
        if time >= absorption_time:
            absorption_time = self.max_absorption_time
        return absorption_rate(self.model, self.entry.quantity, time, absorption_time)

    @property
    def max_rate(self) -> float:
        absorption_minutes = minutes(self.initial_absorption_time)
        return MAXIMUM_RATE_FACTOR * self.model.peak_percent_rate * self.entry.quantity / absorption_minutes

    def add_effect(self, grams: float, start: datetime, end: datetime) -> None:
        self.last_effect_date = max(self.last_effect_date, min(end, self.max_end_date))
        if grams <= 0 or self.completion_date is not None:
            return
        self.observed_grams += grams
        self.timeline.append(CarbValue(start_date=start, end_date=end, grams=grams))
        if self.observed_grams + 1e-9 >= self.entry.quantity:
            self.completion_date = end

    @property
    def min_remaining_grams(self) -> float:
        # Absorption can be no slower than the overrun absorption time allows.
        elapsed = self.last_effect_date - self.entry.start_date - self.delay
        return self.entry.quantity * (1.0 - absorbed_fraction(self.model, elapsed, self.max_absorption_time))

    @property
    def remaining_grams(self) -> float:
        if self.completion_date is not None:
            return 0.0
        return max(self.observable_grams, self.min_remaining_grams)

    @property
    def projection_start(self) -> datetime:
        return max(self.last_effect_date, self.entry.start_date + self.delay)

    @property
    def time_remaining(self) -> timedelta:
        if self.completion_date is not None:
            return timedelta(0)
        not_to_exceed = max(timedelta(0), self.max_end_date - self.projection_start)
        elapsed = max(timedelta(0), self.projection_start - self.entry.start_date - self.delay)
        if self.observed_grams > 0 and elapsed > timedelta(0):
            total = absorption_time_for(self.model, self.observed_grams / self.entry.quantity, elapsed)
            dynamic = total - elapsed
        else:
            dynamic = self.initial_absorption_time - elapsed
        return min(max(dynamic, timedelta(0)), not_to_exceed)

    def build(self) -> CarbStatus:
        return CarbStatus(
            entry=self.entry,
            observed_grams=self.observed_grams,
            remaining_grams=self.remaining_grams,
            observed_timeline=tuple(self.timeline),
            projection_start=self.projection_start,
            time_remaining=self.time_remaining,
            observation_complete=self.completion_date is not None,
        )


def map_carb_entries(
    entries: Sequence[CarbEntry],
    velocities: Sequence[GlucoseEffectVelocity],
    carb_ratio: Sequence[ScheduleSegment[float]],
    sensitivity: Sequence[ScheduleSegment[float]],
    absorption_model: Optional[CarbAbsorptionModel] = None,
    delay: timedelta = EFFECT_DELAY,
) -> list[CarbStatus]:
    """
    Attribute observed counteraction to active carb entries.

    Each interval's positive counteraction is converted to grams and shared
    among active entries in proportion to their model absorption rate. An
    entry never takes more than it has left, nor more than its maximum
    physiological rate allows; whatever it cannot take passes on to the
    entries after it.
    """
    model = absorption_model or PiecewiseLinearAbsorption()
    builders = [_CarbStatusBuilder(entry, model, delay) for entry in entries]

    for velocity in velocities:
        if velocity.end_date <= velocity.start_date:
            continue
        active = [b for b in builders if b.is_active(velocity.start_date)]
        if not active:
            continue

        csf = carb_sensitivity_factor(carb_ratio, sensitivity, velocity.start_date)
        remaining_effect = max(0.0, velocity.effect) / csf if csf > 0 else 0.0
        span = minutes(velocity.end_date - velocity.start_date)
        rates = [b.model_rate(velocity.start_date) for b in active]
        total_rate = sum(rates)

        for builder, rate in zip(active, rates):
            share = remaining_effect * rate / total_rate if total_rate > 0 else 0.0
            share = min(share, builder.observable_grams, builder.max_rate * span)
            builder.add_effect(share, velocity.start_date, velocity.end_date)
            total_rate -= rate
            remaining_effect -= share

    statuses = [b.build() for b in builders]
    logger.debug(
        "Carb absorption mapped",
        extra={"entries": len(statuses), "observed_g": round(sum(s.observed_grams for s in statuses), 1)},
    )
    return statuses


def dynamic_glucose_effects(
    statuses: Sequence[CarbStatus],
    carb_ratio: Sequence[ScheduleSegment[float]],
    sensitivity: Sequence[ScheduleSegment[float]],
    start: datetime,
    end: Optional[datetime] = None,
    delta: timedelta = DEFAULT_DELTA,
) -> list[GlucoseEffect]:
    """Cumulative glucose effect of absorbed carbs, scaled by CSF at each step."""
    if not statuses:
        return []

    start = date_floored(start, delta)
    if end is None:
        end = max(max(s.estimated_end_date, s.entry.start_date) for s in statuses)
    end = date_ceiled(max(end, start), delta)

    previous = [0.0] * len(statuses)
    cumulative = 0.0
    effects: list[GlucoseEffect] = []
    date = start
    while date <= end:
        step_grams = 0.0
        for index, status in enumerate(statuses):
            absorbed = status.absorbed_grams(date)
            step_grams += absorbed - previous[index]
            previous[index] = absorbed
        if step_grams:
            cumulative += step_grams * carb_sensitivity_factor(carb_ratio, sensitivity, date)
        effects.append(GlucoseEffect(start_date=date, quantity=cumulative))
        date += delta
    return effects


def carbs_on_board(statuses: Sequence[CarbStatus], at: datetime) -> float:
    return sum(max(0.0, s.entry.quantity - s.absorbed_grams(at)) for s in statuses if s.entry.start_date <= at)
