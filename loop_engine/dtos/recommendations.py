from dataclasses import dataclass
from datetime import timedelta
from typing import Optional, Union

from loop_engine.dtos.math_models import GlucoseSample, PredictedGlucoseValue, RecommendationType


# --- Insulin correction (closed set of variants) ---

@dataclass(frozen=True)
class InRange:
    pass


@dataclass(frozen=True)
class AboveRange:
    min: PredictedGlucoseValue
    correcting: PredictedGlucoseValue
    min_target: float
    units: float


@dataclass(frozen=True)
class BelowRange:
    min: PredictedGlucoseValue
    correcting: PredictedGlucoseValue
    min_target: float
    units: float


@dataclass(frozen=True)
class EntirelyBelowRange:
    min: PredictedGlucoseValue
    min_target: float
    units: float


@dataclass(frozen=True)
class Suspend:
    min: PredictedGlucoseValue


InsulinCorrection = Union[InRange, AboveRange, BelowRange, EntirelyBelowRange, Suspend]


# --- Dose recommendations ---

@dataclass(frozen=True)
class TempBasalRecommendation:
    units_per_hour: float
    duration: timedelta

    @classmethod
    def cancel(cls) -> "TempBasalRecommendation":
        """Command that ends the running temp basal and returns to the schedule."""
        return cls(units_per_hour=0.0, duration=timedelta(0))

    @property
    def is_cancel(self) -> bool:
        return self.duration == timedelta(0)


@dataclass(frozen=True)
class AutomaticDoseRecommendation:
    basal_adjustment: Optional[TempBasalRecommendation]
    bolus_units: float = 0.0


@dataclass(frozen=True)
class CurrentGlucoseBelowTarget:
    glucose: GlucoseSample


@dataclass(frozen=True)
class ManualBolusRecommendation:
    amount: float
    notice: Optional[CurrentGlucoseBelowTarget] = None


@dataclass(frozen=True)
class LoopRecommendation:
    """Tagged result: `recommendation` always matches `type`."""

    type: RecommendationType
    recommendation: Union[ManualBolusRecommendation, AutomaticDoseRecommendation, TempBasalRecommendation, None]
