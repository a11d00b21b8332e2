from datetime import datetime, timedelta
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from loop_engine.dtos.loop_io import LoopAlgorithmInput, LoopAlgorithmOutput
from loop_engine.dtos.math_models import (
    AlgorithmEffectsOptions,
    CarbEntry,
    DoseEntry,
    DoseType,
    GlucoseEffect,
    GlucoseEffectVelocity,
    GlucoseRange,
    GlucoseSample,
    InsulinType,
    LoopPrediction,
    PredictedGlucoseValue,
    RecommendationType,
    ScheduleSegment,
)
from loop_engine.dtos.recommendations import (
    AboveRange,
    AutomaticDoseRecommendation,
    BelowRange,
    EntirelyBelowRange,
    InRange,
    InsulinCorrection,
    ManualBolusRecommendation,
    Suspend,
    TempBasalRecommendation,
)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


EffectName = Literal["carbs", "insulin", "momentum", "retrospection"]


# --- Input ---

class GlucoseSampleModel(CamelModel):
    start_date: datetime
    quantity: float = Field(..., description="Glucose in mg/dL")


class DoseEntryModel(CamelModel):
    """
    A delivered dose. `scheduledBasalRate` is accepted for round-tripping pump
    history, but annotation against the basal schedule always overwrites it.
    """

    type: DoseType
    start_date: datetime
    end_date: datetime
    volume: float = Field(..., ge=0, description="Delivered units")
    scheduled_basal_rate: Optional[float] = Field(None, ge=0, description="U/h")
    insulin_type: Optional[InsulinType] = None
    manually_entered: bool = False

    @model_validator(mode="after")
    def _check_order(self) -> "DoseEntryModel":
        if self.end_date < self.start_date:
            raise ValueError("endDate must not precede startDate")
        return self

    def to_dose(self) -> DoseEntry:
        return DoseEntry(
            type=self.type,
            start_date=self.start_date,
            end_date=self.end_date,
            delivered_units=self.volume,
            scheduled_basal_rate=self.scheduled_basal_rate,
            insulin_type=self.insulin_type,
            manually_entered=self.manually_entered,
        )


class CarbEntryModel(CamelModel):
    start_date: datetime
    quantity: float = Field(..., ge=0, description="Grams")
    absorption_time: Optional[float] = Field(None, gt=0, description="Expected absorption time in seconds")

    def to_entry(self) -> CarbEntry:
        absorption = timedelta(seconds=self.absorption_time) if self.absorption_time else None
        return CarbEntry(start_date=self.start_date, quantity=self.quantity, absorption_time=absorption)


class ScheduleValueModel(CamelModel):
    start_date: datetime
    end_date: datetime
    value: float

    def to_segment(self) -> ScheduleSegment[float]:
        return ScheduleSegment(self.start_date, self.end_date, self.value)


class TargetRangeModel(CamelModel):
    lower_bound: float
    upper_bound: float

    @model_validator(mode="after")
    def _check_bounds(self) -> "TargetRangeModel":
        if self.lower_bound > self.upper_bound:
            raise ValueError("lowerBound must not exceed upperBound")
        return self


class TargetValueModel(CamelModel):
    start_date: datetime
    end_date: datetime
    value: TargetRangeModel

    def to_segment(self) -> ScheduleSegment[GlucoseRange]:
        # Both bounds are read independently.
        rng = GlucoseRange(min_value=self.value.lower_bound, max_value=self.value.upper_bound)
        return ScheduleSegment(self.start_date, self.end_date, rng)


class LoopAlgorithmInputModel(CamelModel):
    prediction_start: Optional[datetime] = None
    glucose_history: List[GlucoseSampleModel] = Field(default_factory=list)
    doses: List[DoseEntryModel] = Field(default_factory=list)
    carb_entries: List[CarbEntryModel] = Field(default_factory=list)
    basal: List[ScheduleValueModel] = Field(default_factory=list)
    sensitivity: List[ScheduleValueModel] = Field(default_factory=list)
    carb_ratio: List[ScheduleValueModel] = Field(default_factory=list)
    target: List[TargetValueModel] = Field(default_factory=list)
    suspend_threshold: float = Field(..., description="mg/dL")
    max_bolus: float = Field(..., ge=0)
    max_basal_rate: float = Field(..., ge=0)
    recommendation_type: RecommendationType
    recommendation_insulin_type: InsulinType = InsulinType.NOVOLOG
    use_integral_retrospective_correction: bool = False
    algorithm_effects_options: Optional[List[EffectName]] = Field(
        None, description="Effects applied to the forecast; all of them when omitted"
    )

    @field_validator("glucose_history", "doses", "carb_entries", "basal", "sensitivity", "carb_ratio", "target")
    @classmethod
    def _sort_by_start(cls, v: list) -> list:
        return sorted(v, key=lambda item: item.start_date)

    def to_input(self) -> LoopAlgorithmInput:
        return LoopAlgorithmInput(
            glucose_history=tuple(GlucoseSample(g.start_date, g.quantity) for g in self.glucose_history),
            doses=tuple(d.to_dose() for d in self.doses),
            carb_entries=tuple(c.to_entry() for c in self.carb_entries),
            basal=tuple(s.to_segment() for s in self.basal),
            sensitivity=tuple(s.to_segment() for s in self.sensitivity),
            carb_ratio=tuple(s.to_segment() for s in self.carb_ratio),
            target=tuple(t.to_segment() for t in self.target),
            suspend_threshold=self.suspend_threshold,
            max_bolus=self.max_bolus,
            max_basal_rate=self.max_basal_rate,
            recommendation_type=self.recommendation_type,
            recommendation_insulin_type=self.recommendation_insulin_type,
            prediction_start=self.prediction_start,
            use_integral_retrospective_correction=self.use_integral_retrospective_correction,
            algorithm_effects_options=self.effects_flag(),
        )

    def effects_flag(self) -> AlgorithmEffectsOptions:
        if self.algorithm_effects_options is None:
            return AlgorithmEffectsOptions.ALL
        flag = AlgorithmEffectsOptions(0)
        for name in self.algorithm_effects_options:
            flag |= AlgorithmEffectsOptions[name.upper()]
        return flag


# --- Output ---

class GlucoseValueModel(CamelModel):
    start_date: datetime
    quantity: float

    @classmethod
    def from_value(cls, value: GlucoseEffect | GlucoseSample | PredictedGlucoseValue) -> "GlucoseValueModel":
        return cls(start_date=value.start_date, quantity=value.quantity)


class GlucoseVelocityModel(CamelModel):
    start_date: datetime
    end_date: datetime
    quantity: float = Field(..., description="mg/dL per minute")

    @classmethod
    def from_velocity(cls, value: GlucoseEffectVelocity) -> "GlucoseVelocityModel":
        return cls(start_date=value.start_date, end_date=value.end_date, quantity=value.quantity)


class EffectsModel(CamelModel):
    insulin: List[GlucoseValueModel] = Field(default_factory=list)
    carbs: List[GlucoseValueModel] = Field(default_factory=list)
    retrospective_correction: List[GlucoseValueModel] = Field(default_factory=list)
    momentum: List[GlucoseValueModel] = Field(default_factory=list)
    insulin_counteraction: List[GlucoseVelocityModel] = Field(default_factory=list)


class PredictionModel(CamelModel):
    glucose: List[GlucoseValueModel]
    effects: EffectsModel
    active_carbs: float = 0.0
    retrospective_correction_total: Optional[float] = None

    @classmethod
    def from_prediction(cls, prediction: LoopPrediction) -> "PredictionModel":
        effects = prediction.effects
        return cls(
            glucose=[GlucoseValueModel.from_value(p) for p in prediction.glucose],
            effects=EffectsModel(
                insulin=[GlucoseValueModel.from_value(e) for e in effects.insulin],
                carbs=[GlucoseValueModel.from_value(e) for e in effects.carbs],
                retrospective_correction=[GlucoseValueModel.from_value(e) for e in effects.retrospective_correction],
                momentum=[GlucoseValueModel.from_value(e) for e in effects.momentum],
                insulin_counteraction=[GlucoseVelocityModel.from_velocity(v) for v in effects.insulin_counteraction],
            ),
            active_carbs=prediction.active_carbs,
            retrospective_correction_total=prediction.retrospective_correction_total,
        )


class TempBasalModel(CamelModel):
    units_per_hour: float
    duration: float = Field(..., description="Seconds; 0 cancels the running temp basal")

    @classmethod
    def from_recommendation(cls, temp: TempBasalRecommendation) -> "TempBasalModel":
        return cls(units_per_hour=temp.units_per_hour, duration=temp.duration.total_seconds())


class AutomaticDoseModel(CamelModel):
    basal_adjustment: Optional[TempBasalModel] = None
    bolus_units: float = 0.0


class ManualBolusModel(CamelModel):
    amount: float
    notice: Optional[Literal["currentGlucoseBelowTarget"]] = None
    notice_glucose: Optional[GlucoseValueModel] = None


class CorrectionModel(CamelModel):
    kind: Literal["inRange", "aboveRange", "belowRange", "entirelyBelowRange", "suspend"]
    units: float = 0.0
    min_glucose: Optional[GlucoseValueModel] = None
    correcting_glucose: Optional[GlucoseValueModel] = None
    min_target: Optional[float] = None

    @classmethod
    def from_correction(cls, correction: InsulinCorrection) -> "CorrectionModel":
        match correction:
            case AboveRange() | BelowRange():
                return cls(
                    kind="aboveRange" if isinstance(correction, AboveRange) else "belowRange",
                    units=correction.units,
                    min_glucose=GlucoseValueModel.from_value(correction.min),
                    correcting_glucose=GlucoseValueModel.from_value(correction.correcting),
                    min_target=correction.min_target,
                )
            case EntirelyBelowRange():
                return cls(
                    kind="entirelyBelowRange",
                    units=correction.units,
                    min_glucose=GlucoseValueModel.from_value(correction.min),
                    min_target=correction.min_target,
                )
            case Suspend():
                return cls(kind="suspend", min_glucose=GlucoseValueModel.from_value(correction.min))
            case InRange():
                return cls(kind="inRange")
        raise TypeError(f"Unknown correction {correction!r}")


class LoopAlgorithmOutputModel(CamelModel):
    recommendation_type: RecommendationType
    manual_bolus: Optional[ManualBolusModel] = None
    automatic_bolus: Optional[AutomaticDoseModel] = None
    temp_basal: Optional[TempBasalModel] = None
    correction: CorrectionModel
    active_insulin: float
    active_carbs: float
    prediction: Optional[PredictionModel] = None

    @classmethod
    def from_output(cls, output: LoopAlgorithmOutput, include_prediction: bool = False) -> "LoopAlgorithmOutputModel":
        tagged = output.recommendation
        payload: dict = {}
        match tagged.recommendation:
            case ManualBolusRecommendation(amount=amount, notice=notice):
                payload["manual_bolus"] = ManualBolusModel(
                    amount=amount,
                    notice="currentGlucoseBelowTarget" if notice is not None else None,
                    notice_glucose=GlucoseValueModel.from_value(notice.glucose) if notice is not None else None,
                )
            case AutomaticDoseRecommendation(basal_adjustment=temp, bolus_units=bolus_units):
                payload["automatic_bolus"] = AutomaticDoseModel(
                    basal_adjustment=TempBasalModel.from_recommendation(temp) if temp is not None else None,
                    bolus_units=bolus_units,
                )
            case TempBasalRecommendation():
                payload["temp_basal"] = TempBasalModel.from_recommendation(tagged.recommendation)
            case None:
                pass

        return cls(
            recommendation_type=tagged.type,
            correction=CorrectionModel.from_correction(output.correction),
            active_insulin=output.active_insulin,
            active_carbs=output.active_carbs,
            prediction=PredictionModel.from_prediction(output.prediction) if include_prediction else None,
            **payload,
        )
