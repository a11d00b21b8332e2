from bisect import bisect_right
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum, Flag
from typing import Generic, Optional, Sequence, TypeVar

V = TypeVar("V")


class DoseType(str, Enum):
    BASAL = "basal"
    TEMP_BASAL = "tempBasal"
    BOLUS = "bolus"
    SUSPEND = "suspend"
    RESUME = "resume"


class InsulinType(str, Enum):
    NOVOLOG = "novolog"
    HUMALOG = "humalog"
    APIDRA = "apidra"
    FIASP = "fiasp"
    LYUMJEV = "lyumjev"
    AFREZZA = "afrezza"


class RecommendationType(str, Enum):
    MANUAL_BOLUS = "manualBolus"
    AUTOMATIC_BOLUS = "automaticBolus"
    TEMP_BASAL = "tempBasal"


class AlgorithmEffectsOptions(Flag):
    CARBS = 1 << 0
    INSULIN = 1 << 1
    MOMENTUM = 1 << 2
    RETROSPECTION = 1 << 3

    ALL = CARBS | INSULIN | MOMENTUM | RETROSPECTION


# --- Timed samples ---

@dataclass(frozen=True)
class GlucoseSample:
    start_date: datetime
    quantity: float  # mg/dL


@dataclass(frozen=True)
class GlucoseEffect:
    start_date: datetime
    quantity: float  # mg/dL, cumulative along its curve


@dataclass(frozen=True)
class GlucoseEffectVelocity:
    start_date: datetime
    end_date: datetime
    quantity: float  # mg/dL per minute

    @property
    def effect(self) -> float:
        """Total glucose change over the interval."""
        return self.quantity * minutes(self.end_date - self.start_date)


@dataclass(frozen=True)
class GlucoseChange:
    start_date: datetime
    end_date: datetime
    quantity: float  # mg/dL

    def appending(self, other: "GlucoseChange") -> "GlucoseChange":
        return GlucoseChange(
            start_date=min(self.start_date, other.start_date),
            end_date=max(self.end_date, other.end_date),
            quantity=self.quantity + other.quantity,
        )


@dataclass(frozen=True)
class PredictedGlucoseValue:
    start_date: datetime
    quantity: float


# --- Schedules ---

@dataclass(frozen=True)
class GlucoseRange:
    min_value: float
    max_value: float

    @property
    def average(self) -> float:
        return (self.min_value + self.max_value) / 2.0


@dataclass(frozen=True)
class ScheduleSegment(Generic[V]):
    start_date: datetime
    end_date: datetime
    value: V


def closest_prior(segments: Sequence[ScheduleSegment[V]], date: datetime) -> Optional[ScheduleSegment[V]]:
    """Latest segment starting at or before `date`; segments must be sorted by start."""
    index = bisect_right(segments, date, key=lambda s: s.start_date)
    if index == 0:
        return None
    return segments[index - 1]


# --- History entries ---

@dataclass(frozen=True)
class DoseEntry:
    type: DoseType
    start_date: datetime
    end_date: datetime
    delivered_units: float
    scheduled_basal_rate: Optional[float] = None  # U/h the unmodified schedule would deliver
    insulin_type: Optional[InsulinType] = None
    manually_entered: bool = False

    @property
    def duration(self) -> timedelta:
        return self.end_date - self.start_date

    @property
    def hours(self) -> float:
        return self.duration.total_seconds() / 3600.0

    @property
    def unit_rate(self) -> float:
        """Delivery rate in U/h."""
        if self.hours <= 0:
            return 0.0
        return self.delivered_units / self.hours

    @property
    def net_basal_units(self) -> float:
        """Units delivered beyond what the scheduled basal already accounts for."""
        if self.type is DoseType.BOLUS:
            return self.delivered_units
        if self.type in (DoseType.BASAL, DoseType.RESUME):
            return 0.0
        if self.hours <= 0:
            return 0.0
        scheduled = (self.scheduled_basal_rate or 0.0) * self.hours
        return self.delivered_units - scheduled

    def trimmed(self, start: datetime, end: datetime, scheduled_basal_rate: Optional[float]) -> "DoseEntry":
        """Portion of this dose between `start` and `end`, units prorated by time."""
        start = max(start, self.start_date)
        end = min(end, self.end_date)
        total = self.duration.total_seconds()
        fraction = (end - start).total_seconds() / total if total > 0 else 1.0
        return replace(
            self,
            start_date=start,
            end_date=end,
            delivered_units=self.delivered_units * fraction,
            scheduled_basal_rate=scheduled_basal_rate,
        )


@dataclass(frozen=True)
class CarbEntry:
    start_date: datetime
    quantity: float  # grams
    absorption_time: Optional[timedelta] = None


# --- Time helpers ---

def minutes(interval: timedelta) -> float:
    return interval.total_seconds() / 60.0


def date_floored(date: datetime, interval: timedelta) -> datetime:
    step = interval.total_seconds()
    ts = date.timestamp()
    return datetime.fromtimestamp(ts - (ts % step), tz=date.tzinfo)


def date_ceiled(date: datetime, interval: timedelta) -> datetime:
    floored = date_floored(date, interval)
    if floored == date:
        return date
    return floored + interval


# --- Prediction output ---

@dataclass(frozen=True)
class LoopAlgorithmEffects:
    insulin: tuple[GlucoseEffect, ...] = ()
    carbs: tuple[GlucoseEffect, ...] = ()
    retrospective_correction: tuple[GlucoseEffect, ...] = ()
    momentum: tuple[GlucoseEffect, ...] = ()
    insulin_counteraction: tuple[GlucoseEffectVelocity, ...] = ()


@dataclass(frozen=True)
class LoopPrediction:
    glucose: tuple[PredictedGlucoseValue, ...]
    effects: LoopAlgorithmEffects
    active_carbs: float = 0.0
    retrospective_correction_total: Optional[float] = None
