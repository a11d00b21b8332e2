import logging
from datetime import datetime
from typing import Optional, Sequence, assert_never

from loop_engine.core.errors import BasalTimelineIncomplete, GlucoseTooOld, MissingGlucose
from loop_engine.core.settings import LoopConstants
from loop_engine.dtos.loop_io import LoopAlgorithmInput, LoopAlgorithmOutput
from loop_engine.dtos.math_models import (
    DoseEntry,
    DoseType,
    GlucoseRange,
    GlucoseSample,
    InsulinType,
    LoopPrediction,
    RecommendationType,
    ScheduleSegment,
    closest_prior,
)
from loop_engine.dtos.recommendations import (
    AboveRange,
    AutomaticDoseRecommendation,
    CurrentGlucoseBelowTarget,
    InsulinCorrection,
    LoopRecommendation,
    ManualBolusRecommendation,
    TempBasalRecommendation,
)
from loop_engine.services import dose_math
from loop_engine.services.dose_math import Rounder, make_delivery_rounder
from loop_engine.services.forecast_engine import ForecastEngine
from loop_engine.services.iob import annotate_doses, insulin_on_board
from loop_engine.services.math.curves import DEFAULT_MODEL_PROVIDER, InsulinModelProvider

logger = logging.getLogger(__name__)

generate_prediction = ForecastEngine.generate_prediction


def insulin_correction(
    prediction: LoopPrediction,
    at: datetime,
    target: Sequence[ScheduleSegment[GlucoseRange]],
    suspend_threshold: float,
    sensitivity: Sequence[ScheduleSegment[float]],
    insulin_type: Optional[InsulinType] = None,
    model_provider: Optional[InsulinModelProvider] = None,
) -> InsulinCorrection:
    model = (model_provider or DEFAULT_MODEL_PROVIDER).model_for(insulin_type)
    return dose_math.insulin_correction(
        prediction.glucose,
        at=at,
        target=target,
        suspend_threshold=suspend_threshold,
        sensitivity=sensitivity,
        model=model,
    )


def recommend_temp_basal(
    correction: InsulinCorrection,
    at: datetime,
    scheduled_basal_rate: float,
    active_insulin: float,
    max_bolus: float,
    max_basal_rate: float,
    rate_rounder: Optional[Rounder] = None,
    last_temp_basal: Optional[DoseEntry] = None,
    override_is_active: bool = False,
    constants: Optional[LoopConstants] = None,
) -> Optional[TempBasalRecommendation]:
    """30 minute temp basal for the correction, or None when no new command is needed."""
    constants = constants or LoopConstants()
    duration = constants.temp_basal_duration

    # Near the low end of the range, do not raise delivery above the schedule.
    if isinstance(correction, AboveRange) and correction.min.quantity < correction.min_target:
        max_basal_rate = scheduled_basal_rate

    # Active insulin may not be pushed beyond twice the bolus limit.
    iob_headroom = 2 * max_bolus - active_insulin
    max_rate_for_iob = iob_headroom * (3600.0 / duration.total_seconds()) + scheduled_basal_rate
    max_basal_rate = min(max_basal_rate, max_rate_for_iob)

    temp = dose_math.as_temp_basal(
        correction,
        scheduled_basal_rate=scheduled_basal_rate,
        max_basal_rate=max_basal_rate,
        duration=duration,
        rate_rounder=rate_rounder,
    )
    return dose_math.if_necessary(
        temp,
        at=at,
        scheduled_basal_rate=scheduled_basal_rate,
        last_temp_basal=last_temp_basal,
        continuation_interval=constants.temp_basal_continuation_interval,
        scheduled_basal_rate_matches_pump=not override_is_active,
        tolerance=constants.rate_tolerance,
    )


def recommend_automatic_dose(
    correction: InsulinCorrection,
    at: datetime,
    scheduled_basal_rate: float,
    active_insulin: float,
    max_bolus: float,
    max_basal_rate: float,
    rate_rounder: Optional[Rounder] = None,
    volume_rounder: Optional[Rounder] = None,
    last_temp_basal: Optional[DoseEntry] = None,
    override_is_active: bool = False,
    constants: Optional[LoopConstants] = None,
) -> Optional[AutomaticDoseRecommendation]:
    """
    Split the correction into a partial bolus and a temp basal no higher than
    the schedule. None when neither a temp basal command nor a positive bolus
    results.
    """
    constants = constants or LoopConstants()
    factor = constants.bolus_partial_application_factor

    max_automatic_bolus = max_bolus * factor
    if isinstance(correction, AboveRange) and correction.min.quantity < correction.min_target:
        max_automatic_bolus = 0.0

    temp: Optional[TempBasalRecommendation] = dose_math.as_temp_basal(
        correction,
        scheduled_basal_rate=scheduled_basal_rate,
        max_basal_rate=scheduled_basal_rate,
        duration=constants.temp_basal_duration,
        rate_rounder=rate_rounder,
    )
    temp = dose_math.if_necessary(
        temp,
        at=at,
        scheduled_basal_rate=scheduled_basal_rate,
        last_temp_basal=last_temp_basal,
        continuation_interval=constants.temp_basal_continuation_interval,
        scheduled_basal_rate_matches_pump=not override_is_active,
        tolerance=constants.rate_tolerance,
    )

    bolus_units = dose_math.as_partial_bolus(
        correction,
        partial_application_factor=factor,
        max_bolus_units=max_automatic_bolus,
        volume_rounder=volume_rounder,
    )

    if temp is not None or bolus_units > 0:
        return AutomaticDoseRecommendation(basal_adjustment=temp, bolus_units=bolus_units)
    return None


def recommend_manual_bolus(
    correction: InsulinCorrection,
    max_bolus: float,
    current_glucose: GlucoseSample,
    target: Sequence[ScheduleSegment[GlucoseRange]],
    volume_rounder: Optional[Rounder] = None,
) -> ManualBolusRecommendation:
    bolus = dose_math.as_manual_bolus(correction, max_bolus=max_bolus, volume_rounder=volume_rounder)
    segment = closest_prior(target, current_glucose.start_date)
    if segment is not None and current_glucose.quantity < segment.value.min_value:
        return ManualBolusRecommendation(amount=bolus.amount, notice=CurrentGlucoseBelowTarget(glucose=current_glucose))
    return bolus


def _last_active_temp_basal(doses: Sequence[DoseEntry], at: datetime) -> Optional[DoseEntry]:
    for dose in doses:
        if dose.type is DoseType.TEMP_BASAL and dose.start_date < at < dose.end_date:
            return dose
    return None


def run(
    input: LoopAlgorithmInput,
    constants: Optional[LoopConstants] = None,
    model_provider: Optional[InsulinModelProvider] = None,
) -> LoopAlgorithmOutput:
    """
    One control cycle: validate, predict, correct, and translate the
    correction with the strategy `input.recommendation_type` selects.
    """
    constants = constants or LoopConstants()
    provider = model_provider or DEFAULT_MODEL_PROVIDER

    if not input.glucose_history:
        raise MissingGlucose()
    latest_glucose = input.glucose_history[-1]
    start = input.prediction_start or latest_glucose.start_date

    if start - latest_glucose.start_date >= constants.input_data_recency_interval:
        raise GlucoseTooOld(latest_glucose.start_date, start, constants.input_data_recency_interval)

    basal_segment = closest_prior(input.basal, start)
    if basal_segment is None:
        raise BasalTimelineIncomplete(f"No basal schedule segment covers {start.isoformat()}")
    scheduled_basal_rate = basal_segment.value

    prediction = ForecastEngine.generate_prediction(
        input.glucose_history,
        input.doses,
        input.carb_entries,
        input.basal,
        input.sensitivity,
        input.carb_ratio,
        prediction_start=start,
        algorithm_effects_options=input.algorithm_effects_options,
        use_integral_retrospective_correction=input.use_integral_retrospective_correction,
        constants=constants,
        model_provider=provider,
    )

    correction = insulin_correction(
        prediction,
        at=start,
        target=input.target,
        suspend_threshold=input.suspend_threshold,
        sensitivity=input.sensitivity,
        insulin_type=input.recommendation_insulin_type,
        model_provider=provider,
    )

    doses_for_iob = [dose for dose in input.doses if dose.start_date <= start]
    active_insulin = insulin_on_board(annotate_doses(doses_for_iob, input.basal), provider, start, constants.delta)

    rounder = make_delivery_rounder(constants.delivery_increment)
    last_temp_basal = _last_active_temp_basal(input.doses, start)

    recommendation: LoopRecommendation
    match input.recommendation_type:
        case RecommendationType.MANUAL_BOLUS:
            recommendation = LoopRecommendation(
                type=RecommendationType.MANUAL_BOLUS,
                recommendation=recommend_manual_bolus(
                    correction,
                    max_bolus=input.max_bolus,
                    current_glucose=latest_glucose,
                    target=input.target,
                ),
            )
        case RecommendationType.AUTOMATIC_BOLUS:
            recommendation = LoopRecommendation(
                type=RecommendationType.AUTOMATIC_BOLUS,
                recommendation=recommend_automatic_dose(
                    correction,
                    at=start,
                    scheduled_basal_rate=scheduled_basal_rate,
                    active_insulin=active_insulin,
                    max_bolus=input.max_bolus,
                    max_basal_rate=input.max_basal_rate,
                    rate_rounder=rounder,
                    volume_rounder=rounder,
                    last_temp_basal=last_temp_basal,
                    constants=constants,
                ),
            )
        case RecommendationType.TEMP_BASAL:
            recommendation = LoopRecommendation(
                type=RecommendationType.TEMP_BASAL,
                recommendation=recommend_temp_basal(
                    correction,
                    at=start,
                    scheduled_basal_rate=scheduled_basal_rate,
                    active_insulin=active_insulin,
                    max_bolus=input.max_bolus,
                    max_basal_rate=input.max_basal_rate,
                    rate_rounder=rounder,
                    last_temp_basal=last_temp_basal,
                    constants=constants,
                ),
            )
        case _:
            assert_never(input.recommendation_type)

    logger.info(
        "Loop cycle complete",
        extra={
            "recommendation_type": input.recommendation_type.value,
            "correction": type(correction).__name__,
            "iob": round(active_insulin, 3),
            "eventual_bg": round(prediction.glucose[-1].quantity, 1),
        },
    )

    return LoopAlgorithmOutput(
        recommendation=recommendation,
        prediction=prediction,
        correction=correction,
        active_insulin=active_insulin,
        active_carbs=prediction.active_carbs,
        scheduled_basal_rate=scheduled_basal_rate,
    )
