import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence

from loop_engine.core.errors import MissingGlucose
from loop_engine.core.settings import LoopConstants
from loop_engine.dtos.math_models import (
    AlgorithmEffectsOptions,
    CarbEntry,
    DoseEntry,
    GlucoseEffect,
    GlucoseSample,
    LoopAlgorithmEffects,
    LoopPrediction,
    PredictedGlucoseValue,
    ScheduleSegment,
    date_floored,
    minutes,
)
from loop_engine.services.carb_math import (
    MAXIMUM_ABSORPTION_TIME_INTERVAL,
    carbs_on_board,
    dynamic_glucose_effects,
    map_carb_entries,
)
from loop_engine.services.glucose_math import (
    combined_sums,
    counteraction_effects,
    filter_date_range,
    linear_momentum_effect,
    subtracting,
)
from loop_engine.services.iob import annotate_doses, insulin_glucose_effects
from loop_engine.services.math.curves import DEFAULT_MODEL_PROVIDER, InsulinModelProvider
from loop_engine.services.retrospective_correction import (
    IntegralRetrospectiveCorrection,
    RetrospectiveCorrection,
    StandardRetrospectiveCorrection,
)

logger = logging.getLogger(__name__)


class ForecastEngine:

    @staticmethod
    def predict_glucose(
        starting_glucose: GlucoseSample,
        momentum: Sequence[GlucoseEffect] = (),
        effects: Sequence[Sequence[GlucoseEffect]] = (),
    ) -> List[PredictedGlucoseValue]:
        """
        Integrate effect curves forward from `starting_glucose`.

        Each curve contributes its step-to-step change at every date it covers.
        Momentum is blended in linearly: it dominates right after the starting
        glucose and hands over to the summed effects by its last point.
        """
        effect_values_at_date: Dict[datetime, float] = {}

        for timeline in effects:
            if not timeline:
                continue
            previous = timeline[0].quantity
            for effect in timeline:
                change = effect.quantity - previous
                effect_values_at_date[effect.start_date] = effect_values_at_date.get(effect.start_date, 0.0) + change
                previous = effect.quantity

        if len(momentum) > 1:
            previous = momentum[0].quantity
            blend_count = max(1, len(momentum) - 2)
            time_delta = minutes(momentum[1].start_date - momentum[0].start_date)
            momentum_offset = minutes(starting_glucose.start_date - momentum[0].start_date)
            blend_slope = 1.0 / blend_count
            blend_offset = momentum_offset / time_delta * blend_slope

            for index, effect in enumerate(momentum):
                change = effect.quantity - previous
                split = min(1.0, max(0.0, (len(momentum) - index) / blend_count - blend_slope + blend_offset))
                effect_blend = (1.0 - split) * effect_values_at_date.get(effect.start_date, 0.0)
                momentum_blend = split * change
                effect_values_at_date[effect.start_date] = effect_blend + momentum_blend
                previous = effect.quantity

        prediction = [PredictedGlucoseValue(starting_glucose.start_date, starting_glucose.quantity)]
        for date in sorted(effect_values_at_date):
            if date <= starting_glucose.start_date:
                continue
            value = prediction[-1].quantity + effect_values_at_date[date]
            prediction.append(PredictedGlucoseValue(date, value))
        return prediction

    @staticmethod
    def extend_prediction(
        prediction: List[PredictedGlucoseValue],
        final_date: datetime,
        delta: timedelta,
    ) -> List[PredictedGlucoseValue]:
        """Hold the last value flat on the `delta` grid until `final_date`."""
        if not prediction or prediction[-1].start_date >= final_date:
            return prediction
        last = prediction[-1]
        extended = list(prediction)
        date = date_floored(last.start_date, delta) + delta
        while date < final_date:
            extended.append(PredictedGlucoseValue(date, last.quantity))
            date += delta
        extended.append(PredictedGlucoseValue(final_date, last.quantity))
        return extended

    @staticmethod
    def generate_prediction(
        glucose_history: Sequence[GlucoseSample],
        doses: Sequence[DoseEntry],
        carb_entries: Sequence[CarbEntry],
        basal: Sequence[ScheduleSegment[float]],
        sensitivity: Sequence[ScheduleSegment[float]],
        carb_ratio: Sequence[ScheduleSegment[float]],
        prediction_start: Optional[datetime] = None,
        algorithm_effects_options: AlgorithmEffectsOptions = AlgorithmEffectsOptions.ALL,
        use_integral_retrospective_correction: bool = False,
        constants: Optional[LoopConstants] = None,
        model_provider: Optional[InsulinModelProvider] = None,
    ) -> LoopPrediction:
        constants = constants or LoopConstants()
        provider = model_provider or DEFAULT_MODEL_PROVIDER
        delta = constants.delta

        glucose_history = tuple(glucose_history)
        if not glucose_history:
            raise MissingGlucose()
        latest_glucose = glucose_history[-1]
        start = prediction_start or latest_glucose.start_date

        # 1. Insulin effects, relative to the scheduled basal
        annotated = annotate_doses(tuple(doses), tuple(basal))
        insulin_start = start - MAXIMUM_ABSORPTION_TIME_INTERVAL
        if annotated:
            insulin_start = max(insulin_start, min(d.start_date for d in annotated))
        insulin_effects = insulin_glucose_effects(
            annotated, provider, sensitivity, start=date_floored(insulin_start, delta), delta=delta
        )

        # 2. Insulin counteraction
        ice = counteraction_effects(glucose_history, insulin_effects, max_gap=constants.counteraction_max_gap)

        # 3. Carbs, with observed absorption
        rc: RetrospectiveCorrection
        if use_integral_retrospective_correction:
            rc = IntegralRetrospectiveCorrection(
                effect_duration=constants.retrospective_correction_effect_duration,
                retrospection_interval=constants.integral_retrospection_interval,
                integral_min=constants.irc_integral_min,
                integral_max=constants.irc_integral_max,
            )
        else:
            rc = StandardRetrospectiveCorrection(
                effect_duration=constants.retrospective_correction_effect_duration,
                retrospection_interval=constants.retrospection_interval,
            )
        retrospection_start = start - rc.retrospection_interval

        carb_statuses = map_carb_entries(tuple(carb_entries), ice, carb_ratio, sensitivity)
        carb_effects = dynamic_glucose_effects(carb_statuses, carb_ratio, sensitivity, start=retrospection_start, delta=delta)

        # 4. Retrospective correction
        grouping = constants.retrospective_correction_grouping_interval
        discrepancies = subtracting([v for v in ice if v.start_date >= retrospection_start], carb_effects)
        discrepancies_summed = combined_sums(discrepancies, grouping * 1.01)
        rc_result = rc.compute_effect(
            latest_glucose,
            discrepancies_summed,
            recency_interval=constants.input_data_recency_interval,
            grouping_interval=grouping,
            delta=delta,
        )

        effects: List[List[GlucoseEffect]] = []
        if AlgorithmEffectsOptions.CARBS in algorithm_effects_options:
            effects.append(carb_effects)
        if AlgorithmEffectsOptions.INSULIN in algorithm_effects_options:
            effects.append(insulin_effects)
        if AlgorithmEffectsOptions.RETROSPECTION in algorithm_effects_options:
            effects.append(rc_result.effects)

        # 5. Momentum
        momentum_effects: List[GlucoseEffect] = []
        if AlgorithmEffectsOptions.MOMENTUM in algorithm_effects_options:
            momentum_input = filter_date_range(glucose_history, start - constants.momentum_data_interval, start)
            momentum_effects = linear_momentum_effect(
                momentum_input,
                duration=constants.momentum_duration,
                delta=delta,
                degree=constants.momentum_fit_degree,
            )

        # 6. Compose; dosing needs at least the full insulin activity duration
        prediction = ForecastEngine.predict_glucose(latest_glucose, momentum_effects, effects)
        final_date = latest_glucose.start_date + constants.insulin_activity_duration
        prediction = ForecastEngine.extend_prediction(prediction, final_date, delta)

        logger.debug(
            "Prediction generated",
            extra={
                "start": start.isoformat(),
                "points": len(prediction),
                "min": round(min(p.quantity for p in prediction), 1),
                "eventual": round(prediction[-1].quantity, 1),
                "ice": len(ice),
                "rc_total": rc_result.total_correction,
            },
        )

        return LoopPrediction(
            glucose=tuple(prediction),
            effects=LoopAlgorithmEffects(
                insulin=tuple(insulin_effects),
                carbs=tuple(carb_effects),
                retrospective_correction=tuple(rc_result.effects),
                momentum=tuple(momentum_effects),
                insulin_counteraction=tuple(ice),
            ),
            active_carbs=carbs_on_board(carb_statuses, start),
            retrospective_correction_total=rc_result.total_correction,
        )
