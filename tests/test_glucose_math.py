from datetime import timedelta

import pytest

from conftest import NOW
from loop_engine.dtos.math_models import GlucoseChange, GlucoseEffect, GlucoseSample
from loop_engine.services.glucose_math import (
    combined_sums,
    counteraction_effects,
    decay_effect,
    effect_value_at,
    linear_momentum_effect,
)


def samples(values, step=5, end=NOW):
    count = len(values)
    return [GlucoseSample(end - timedelta(minutes=step * (count - 1 - i)), v) for i, v in enumerate(values)]


def test_effect_value_interpolates_and_holds_edges():
    effects = [GlucoseEffect(NOW, 0.0), GlucoseEffect(NOW + timedelta(minutes=10), -10.0)]
    assert effect_value_at(effects, NOW + timedelta(minutes=5)) == pytest.approx(-5.0)
    assert effect_value_at(effects, NOW - timedelta(hours=1)) == 0.0
    assert effect_value_at(effects, NOW + timedelta(hours=1)) == -10.0
    assert effect_value_at([], NOW) == 0.0


def test_counteraction_without_insulin_is_glucose_slope():
    glucose = samples([100, 110, 120])
    velocities = counteraction_effects(glucose, [])
    assert [v.quantity for v in velocities] == pytest.approx([2.0, 2.0])


def test_counteraction_removes_insulin_effect():
    glucose = samples([100, 100])
    insulin = [GlucoseEffect(glucose[0].start_date, 0.0), GlucoseEffect(glucose[1].start_date, -10.0)]
    velocities = counteraction_effects(glucose, insulin)
    # Flat glucose despite insulin pulling down 10 mg/dL means +2 mg/dL/min counteraction.
    assert velocities[0].quantity == pytest.approx(2.0)


def test_counteraction_coalesces_close_samples():
    glucose = [
        GlucoseSample(NOW - timedelta(minutes=10), 100),
        GlucoseSample(NOW - timedelta(minutes=8), 104),
        GlucoseSample(NOW, 120),
    ]
    velocities = counteraction_effects(glucose, [])
    assert len(velocities) == 1
    assert velocities[0].start_date == NOW - timedelta(minutes=10)
    assert velocities[0].quantity == pytest.approx(2.0)


def test_counteraction_skips_sensor_gaps():
    glucose = [
        GlucoseSample(NOW - timedelta(minutes=90), 100),
        GlucoseSample(NOW - timedelta(minutes=5), 150),
        GlucoseSample(NOW, 155),
    ]
    velocities = counteraction_effects(glucose, [])
    assert len(velocities) == 1
    assert velocities[0].start_date == NOW - timedelta(minutes=5)


def test_momentum_needs_two_samples():
    assert linear_momentum_effect(samples([120])) == []
    assert linear_momentum_effect([]) == []


def test_momentum_extrapolates_slope():
    effects = linear_momentum_effect(samples([100, 105, 110, 115]))
    assert effects[0].start_date == NOW
    assert effects[0].quantity == 0.0
    by_minute = {int((e.start_date - NOW).total_seconds() // 60): e.quantity for e in effects}
    assert by_minute[10] == pytest.approx(10.0)
    assert by_minute[30] == pytest.approx(30.0)
    assert max(by_minute) == 30


def test_decay_effect_slows_to_zero():
    effects = decay_effect(GlucoseSample(NOW, 100.0), rate=1.0, duration=timedelta(minutes=60))
    assert effects[0].quantity == 100.0
    steps = [b.quantity - a.quantity for a, b in zip(effects, effects[1:])]
    assert steps[0] == pytest.approx(5.0)
    assert steps == sorted(steps, reverse=True)
    assert steps[-1] >= 0.0


def test_combined_sums_window():
    changes = [
        GlucoseChange(NOW + timedelta(minutes=5 * i), NOW + timedelta(minutes=5 * (i + 1)), 1.0)
        for i in range(10)
    ]
    sums = combined_sums(changes, timedelta(minutes=30) * 1.01)
    assert sums[0].quantity == 1.0
    assert sums[-1].quantity == 7.0
    assert sums[-1].start_date == changes[3].start_date
    assert sums[-1].end_date == changes[-1].end_date
