from datetime import timedelta

import pytest

from conftest import NOW, flat_glucose, flat_schedule, make_input
from loop_engine.core.errors import BasalTimelineIncomplete, GlucoseTooOld, MissingGlucose
from loop_engine.core.settings import LoopConstants
from loop_engine.dtos.math_models import DoseEntry, DoseType, GlucoseSample, PredictedGlucoseValue, RecommendationType
from loop_engine.dtos.recommendations import (
    AboveRange,
    AutomaticDoseRecommendation,
    EntirelyBelowRange,
    InRange,
    ManualBolusRecommendation,
    Suspend,
    TempBasalRecommendation,
)
from loop_engine.services import loop_algorithm
from loop_engine.services.dose_math import round_to_delivery_increment
from loop_engine.services.forecast_engine import ForecastEngine
from loop_engine.services.loop_algorithm import (
    recommend_automatic_dose,
    recommend_manual_bolus,
    recommend_temp_basal,
    run,
)

AUTOMATIC = RecommendationType.AUTOMATIC_BOLUS
TEMP_BASAL = RecommendationType.TEMP_BASAL
MANUAL = RecommendationType.MANUAL_BOLUS


def above(units, min_glucose=180.0, min_target=100.0):
    point = PredictedGlucoseValue(NOW, min_glucose)
    return AboveRange(min=point, correcting=point, min_target=min_target, units=units)


# --- Scenarios ---

def test_high_flat_glucose_automatic_bolus():
    output = run(make_input(180.0, AUTOMATIC))

    assert isinstance(output.correction, AboveRange)
    assert output.correction.units == pytest.approx(1.4, abs=1e-6)
    assert output.recommendation.type is AUTOMATIC
    dose = output.recommendation.recommendation
    assert isinstance(dose, AutomaticDoseRecommendation)
    assert dose.bolus_units == pytest.approx(0.55)
    # The remainder stays on the scheduled basal, which needs no command.
    assert dose.basal_adjustment is None


def test_high_flat_glucose_temp_basal():
    output = run(make_input(180.0, TEMP_BASAL))
    temp = output.recommendation.recommendation
    assert isinstance(temp, TempBasalRecommendation)
    # 1.4 U over half an hour on top of 1 U/h, limited by the 3 U/h maximum.
    assert temp.units_per_hour == pytest.approx(3.0)
    assert temp.duration == timedelta(minutes=30)


def test_high_flat_glucose_manual_bolus():
    output = run(make_input(180.0, MANUAL))
    bolus = output.recommendation.recommendation
    assert isinstance(bolus, ManualBolusRecommendation)
    assert bolus.amount == pytest.approx(1.4, abs=1e-6)
    assert bolus.notice is None


def test_low_glucose_suspends():
    temp = run(make_input(70.0, TEMP_BASAL))
    assert isinstance(temp.correction, Suspend)
    assert temp.recommendation.recommendation == TempBasalRecommendation(0.0, timedelta(minutes=30))

    manual = run(make_input(70.0, MANUAL)).recommendation.recommendation
    assert manual.amount == 0.0
    assert manual.notice is not None
    assert manual.notice.glucose.quantity == 70.0


def test_in_range_needs_no_command():
    output = run(make_input(110.0, TEMP_BASAL))
    assert isinstance(output.correction, InRange)
    assert output.recommendation.recommendation is None
    assert run(make_input(110.0, AUTOMATIC)).recommendation.recommendation is None


def test_flat_input_forecast_is_flat():
    output = run(make_input(110.0, TEMP_BASAL))
    assert all(p.quantity == pytest.approx(110.0, abs=1e-6) for p in output.prediction.glucose)
    assert output.prediction.glucose[-1].start_date == NOW + timedelta(hours=6, minutes=10)
    assert output.active_insulin == 0.0


def test_run_is_deterministic():
    dose = DoseEntry(DoseType.BOLUS, NOW - timedelta(hours=1), NOW - timedelta(hours=1), 1.0)
    first = run(make_input(160.0, AUTOMATIC, doses=(dose,)))
    second = run(make_input(160.0, AUTOMATIC, doses=(dose,)))
    assert first == second


def test_running_matching_temp_is_continued():
    running = DoseEntry(DoseType.TEMP_BASAL, NOW - timedelta(minutes=5), NOW + timedelta(minutes=25), 1.5)
    without = run(make_input(300.0, TEMP_BASAL))
    assert without.recommendation.recommendation.units_per_hour == pytest.approx(3.0)

    output = run(make_input(300.0, TEMP_BASAL, doses=(running,)))
    assert output.active_insulin > 0
    assert output.recommendation.recommendation is None


def test_run_uses_latest_glucose_as_default_start(mocker):
    spy = mocker.spy(ForecastEngine, "generate_prediction")
    run(make_input(120.0, TEMP_BASAL))
    assert spy.call_args.kwargs["prediction_start"] == NOW


def test_integral_retrospective_correction_flag_is_passed_through(mocker):
    spy = mocker.spy(ForecastEngine, "generate_prediction")
    run(make_input(120.0, TEMP_BASAL, use_integral_retrospective_correction=True))
    assert spy.call_args.kwargs["use_integral_retrospective_correction"] is True


# --- Errors ---

def test_missing_glucose():
    with pytest.raises(MissingGlucose):
        run(make_input(glucose_history=()))


def test_glucose_too_old():
    with pytest.raises(GlucoseTooOld):
        run(make_input(prediction_start=NOW + timedelta(minutes=15)))


def test_recent_enough_glucose_is_accepted():
    output = run(make_input(prediction_start=NOW + timedelta(minutes=14)))
    assert output.recommendation.type is AUTOMATIC


def test_basal_must_cover_decision_time():
    with pytest.raises(BasalTimelineIncomplete):
        run(make_input(basal=flat_schedule(1.0, start=NOW + timedelta(hours=1))))


def test_stale_check_honours_constants():
    constants = LoopConstants(input_data_recency_interval=timedelta(minutes=5))
    with pytest.raises(GlucoseTooOld):
        run(make_input(prediction_start=NOW + timedelta(minutes=6)), constants=constants)


# --- Properties ---

@pytest.mark.parametrize("active_insulin", [0.0, 1.0, 4.0, 9.9, 12.0])
@pytest.mark.parametrize("max_bolus", [1.0, 5.0])
def test_temp_basal_respects_iob_ceiling(active_insulin, max_bolus):
    scheduled = 1.0
    temp = recommend_temp_basal(
        above(50.0),
        at=NOW,
        scheduled_basal_rate=scheduled,
        active_insulin=active_insulin,
        max_bolus=max_bolus,
        max_basal_rate=20.0,
        rate_rounder=round_to_delivery_increment,
    )
    assert temp is not None
    if temp.units_per_hour > 0:
        assert active_insulin + (temp.units_per_hour - scheduled) * 0.5 <= 2 * max_bolus + 1e-9


def test_high_basal_threshold_caps_at_schedule():
    temp = recommend_temp_basal(
        above(2.0, min_glucose=90.0, min_target=100.0),
        at=NOW,
        scheduled_basal_rate=1.0,
        active_insulin=0.0,
        max_bolus=5.0,
        max_basal_rate=5.0,
    )
    # Capped to the schedule, which needs no command.
    assert temp is None


@pytest.mark.parametrize("units", [0.5, 1.4, 3.0, 10.0, 100.0])
@pytest.mark.parametrize("max_bolus", [0.5, 2.0, 10.0])
def test_partial_bolus_never_exceeds_limit(units, max_bolus):
    dose = recommend_automatic_dose(
        above(units),
        at=NOW,
        scheduled_basal_rate=1.0,
        active_insulin=0.0,
        max_bolus=max_bolus,
        max_basal_rate=3.0,
        rate_rounder=round_to_delivery_increment,
        volume_rounder=round_to_delivery_increment,
    )
    assert dose is not None
    assert dose.bolus_units <= 0.4 * max_bolus + 1e-9


def test_automatic_bolus_withheld_near_low_end():
    dose = recommend_automatic_dose(
        above(3.0, min_glucose=95.0, min_target=100.0),
        at=NOW,
        scheduled_basal_rate=1.0,
        active_insulin=0.0,
        max_bolus=5.0,
        max_basal_rate=3.0,
    )
    assert dose is None


@pytest.mark.parametrize("recommendation_type", [AUTOMATIC, TEMP_BASAL, MANUAL])
@pytest.mark.parametrize("glucose", [40.0, 70.0, 79.0])
def test_suspend_never_delivers_insulin(recommendation_type, glucose):
    output = run(make_input(glucose, recommendation_type))
    assert isinstance(output.correction, Suspend)
    result = output.recommendation.recommendation
    if isinstance(result, TempBasalRecommendation):
        assert result.units_per_hour == 0.0
    elif isinstance(result, AutomaticDoseRecommendation):
        assert result.bolus_units == 0.0
        assert result.basal_adjustment is None or result.basal_adjustment.units_per_hour == 0.0
    else:
        assert result.amount == 0.0


def test_manual_bolus_notice_uses_current_target():
    current = flat_glucose(95.0)[-1]
    bolus = recommend_manual_bolus(above(1.0), max_bolus=5.0, current_glucose=current, target=make_input().target)
    assert bolus.amount == 1.0
    assert bolus.notice is not None


def test_prediction_and_correction_entry_points():
    data = make_input(180.0)
    prediction = loop_algorithm.generate_prediction(
        data.glucose_history, data.doses, data.carb_entries, data.basal, data.sensitivity, data.carb_ratio
    )
    correction = loop_algorithm.insulin_correction(prediction, NOW, data.target, data.suspend_threshold, data.sensitivity)
    assert correction == run(data).correction


def rising_glucose(first, last, count=25):
    step = (last - first) / (count - 1)
    return tuple(
        GlucoseSample(NOW - timedelta(minutes=5 * (count - 1 - i)), first + step * i) for i in range(count)
    )


BELOW_TARGET_HISTORIES = {
    "flat": flat_glucose(95.0),
    "rising": rising_glucose(89.6, 92.0),
}


@pytest.mark.parametrize("history", list(BELOW_TARGET_HISTORIES.values()), ids=list(BELOW_TARGET_HISTORIES))
def test_below_target_above_threshold_lowers_temp_basal(history):
    output = run(make_input(recommendation_type=TEMP_BASAL, glucose_history=history))
    assert isinstance(output.correction, EntirelyBelowRange)
    assert output.correction.units < 0
    temp = output.recommendation.recommendation
    assert temp is not None
    assert temp.units_per_hour < 1.0


@pytest.mark.parametrize("history", list(BELOW_TARGET_HISTORIES.values()), ids=list(BELOW_TARGET_HISTORIES))
def test_below_target_above_threshold_gives_no_automatic_bolus(history):
    output = run(make_input(recommendation_type=AUTOMATIC, glucose_history=history))
    dose = output.recommendation.recommendation
    assert dose is not None
    assert dose.bolus_units == 0.0
    assert dose.basal_adjustment is not None
    assert dose.basal_adjustment.units_per_hour < 1.0


@pytest.mark.parametrize("history", list(BELOW_TARGET_HISTORIES.values()), ids=list(BELOW_TARGET_HISTORIES))
def test_below_target_above_threshold_gives_no_manual_bolus(history):
    output = run(make_input(recommendation_type=MANUAL, glucose_history=history))
    bolus = output.recommendation.recommendation
    assert bolus.amount == 0.0
    assert bolus.notice is not None
