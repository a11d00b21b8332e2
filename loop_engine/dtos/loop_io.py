from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from loop_engine.dtos.math_models import (
    AlgorithmEffectsOptions,
    CarbEntry,
    DoseEntry,
    GlucoseRange,
    GlucoseSample,
    InsulinType,
    LoopPrediction,
    RecommendationType,
    ScheduleSegment,
)
from loop_engine.dtos.recommendations import InsulinCorrection, LoopRecommendation


@dataclass(frozen=True)
class LoopAlgorithmInput:
    """
    Everything one control cycle needs, as an immutable snapshot.

    Expected coverage relative to the decision time t: glucose t-10h..t,
    doses t-16h..t (and not before the first basal segment), carbs t-10h..t,
    sensitivity t-16h..t, carb ratio t-10h..t+6h, target t..t+6h.
    """

    glucose_history: tuple[GlucoseSample, ...]
    doses: tuple[DoseEntry, ...]
    carb_entries: tuple[CarbEntry, ...]
    basal: tuple[ScheduleSegment[float], ...]
    sensitivity: tuple[ScheduleSegment[float], ...]
    carb_ratio: tuple[ScheduleSegment[float], ...]
    target: tuple[ScheduleSegment[GlucoseRange], ...]
    suspend_threshold: float
    max_bolus: float
    max_basal_rate: float
    recommendation_type: RecommendationType
    recommendation_insulin_type: InsulinType = InsulinType.NOVOLOG
    prediction_start: Optional[datetime] = None
    use_integral_retrospective_correction: bool = False
    algorithm_effects_options: AlgorithmEffectsOptions = AlgorithmEffectsOptions.ALL

    def __post_init__(self):
        # Callers may hand in lists; freeze them so nothing shifts mid-computation.
        for name in ("glucose_history", "doses", "carb_entries", "basal", "sensitivity", "carb_ratio", "target"):
            object.__setattr__(self, name, tuple(getattr(self, name)))

    @property
    def decision_time(self) -> Optional[datetime]:
        if self.prediction_start is not None:
            return self.prediction_start
        if self.glucose_history:
            return self.glucose_history[-1].start_date
        return None


@dataclass(frozen=True)
class LoopAlgorithmOutput:
    recommendation: LoopRecommendation
    prediction: LoopPrediction
    correction: InsulinCorrection
    active_insulin: float
    active_carbs: float = 0.0
    scheduled_basal_rate: Optional[float] = None
