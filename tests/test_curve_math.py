from datetime import timedelta

import pytest

from loop_engine.dtos.math_models import InsulinType
from loop_engine.services.math.curves import (
    AFREZZA,
    FIASP,
    RAPID_ACTING_ADULT,
    ExponentialInsulinModel,
    LinearAbsorption,
    PiecewiseLinearAbsorption,
    WalshInsulinModel,
    absorption_time_for,
    build_model_provider,
)


def test_exponential_model_edges():
    model = RAPID_ACTING_ADULT
    assert model.effect_duration == timedelta(hours=6, minutes=10)
    # Nothing acts during the delay.
    assert model.percent_effect_remaining(timedelta(0)) == 1.0
    assert model.percent_effect_remaining(timedelta(minutes=10)) == 1.0
    assert model.percent_effect_remaining(model.effect_duration) == 0.0
    assert model.percent_effect_remaining(timedelta(hours=8)) == 0.0


def test_exponential_model_monotonic():
    model = ExponentialInsulinModel(timedelta(hours=6), timedelta(minutes=75))
    values = [model.percent_effect_remaining(timedelta(minutes=m)) for m in range(0, 380, 10)]
    assert values == sorted(values, reverse=True)
    assert all(0.0 <= v <= 1.0 for v in values)


def test_faster_insulin_acts_sooner():
    at = timedelta(minutes=90)
    assert FIASP.percent_effect_remaining(at) < RAPID_ACTING_ADULT.percent_effect_remaining(at)


def test_walsh_model_bounds():
    model = WalshInsulinModel(timedelta(hours=4))
    assert model.percent_effect_remaining(timedelta(0)) == 1.0
    assert model.percent_effect_remaining(timedelta(hours=4)) == 0.0
    mid = model.percent_effect_remaining(timedelta(hours=2))
    assert 0.0 < mid < 1.0


def test_model_provider_lookup():
    provider = build_model_provider()
    assert provider.model_for(None) is RAPID_ACTING_ADULT
    assert provider.model_for(InsulinType.HUMALOG) is RAPID_ACTING_ADULT
    assert provider.model_for(InsulinType.FIASP) is FIASP
    assert provider.model_for(InsulinType.AFREZZA) is AFREZZA
    assert provider.longest_effect_duration == timedelta(hours=6, minutes=10)


def test_model_provider_is_read_only():
    provider = build_model_provider()
    with pytest.raises(TypeError):
        provider._models[InsulinType.FIASP] = RAPID_ACTING_ADULT


@pytest.mark.parametrize("percent_time", [0.05, 0.15, 0.3, 0.5, 0.75, 0.99])
def test_piecewise_absorption_inverse(percent_time):
    model = PiecewiseLinearAbsorption()
    absorbed = model.percent_absorption_at_percent_time(percent_time)
    assert model.percent_time_at_percent_absorption(absorbed) == pytest.approx(percent_time, abs=1e-9)


def test_piecewise_absorption_totals_one():
    model = PiecewiseLinearAbsorption()
    assert model.percent_absorption_at_percent_time(0.0) == 0.0
    assert model.percent_absorption_at_percent_time(1.0) == 1.0
    assert model.percent_absorption_at_percent_time(0.999999) == pytest.approx(1.0, abs=1e-6)
    # Rate integrates to the absorbed fraction.
    steps = 10000
    area = sum(model.percent_rate_at_percent_time((i + 0.5) / steps) for i in range(steps)) / steps
    assert area == pytest.approx(1.0, abs=1e-3)


def test_linear_absorption_time_for():
    model = LinearAbsorption()
    total = absorption_time_for(model, 0.5, timedelta(hours=1))
    assert total == timedelta(hours=2)
