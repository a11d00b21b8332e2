import math
from dataclasses import dataclass
from datetime import timedelta
from functools import cached_property
from types import MappingProxyType
from typing import Mapping, Optional, Protocol, Union

from loop_engine.dtos.math_models import InsulinType


class InsulinModel(Protocol):
    @property
    def effect_duration(self) -> timedelta: ...

    @property
    def delay(self) -> timedelta: ...

    def percent_effect_remaining(self, time: timedelta) -> float: ...


@dataclass(frozen=True)
class ExponentialInsulinModel:
    """
    Exponential insulin activity curve, parameterised by total action duration
    and time of peak activity, shifted by an absorption delay.
    IOB fraction follows the closed form of the integral of
    (1 - t/D) * exp(-t/tau), normalised to one unit.
    """

    action_duration: timedelta
    peak_activity_time: timedelta
    delay: timedelta = timedelta(minutes=10)

    @cached_property
    def _td(self) -> float:
        return self.action_duration.total_seconds() / 60.0

    @cached_property
    def _tp(self) -> float:
        return self.peak_activity_time.total_seconds() / 60.0

    @cached_property
    def _tau(self) -> float:
        td, tp = self._td, self._tp
        return tp * (1 - tp / td) / (1 - 2 * tp / td)

    @cached_property
    def _a(self) -> float:
        return 2 * self._tau / self._td

    @cached_property
    def _s(self) -> float:
        a, tau = self._a, self._tau
        return 1 / (1 - a + (1 + a) * math.exp(-self._td / tau))

    @property
    def effect_duration(self) -> timedelta:
        return self.action_duration + self.delay

    def percent_effect_remaining(self, time: timedelta) -> float:
        t = (time - self.delay).total_seconds() / 60.0
        if t <= 0:
            return 1.0
        if t >= self._td:
            return 0.0
        tau, a, s, td = self._tau, self._a, self._s, self._td
        return 1 - s * (1 - a) * ((t ** 2 / (tau * td * (1 - a)) - t / tau - 1) * math.exp(-t / tau) + 1)


# Walsh IOB polynomials, keyed by modeled action duration in hours.
_WALSH_COEFFICIENTS = {
    3: (-3.2030e-9, 1.354e-6, -1.759e-4, 9.255e-4, 0.99951),
    4: (-3.310e-10, 2.530e-7, -5.510e-5, -9.086e-4, 0.99950),
    5: (-2.950e-10, 2.320e-7, -5.550e-5, 4.490e-4, 0.99300),
    6: (-1.493e-10, 1.413e-7, -4.095e-5, 6.365e-4, 0.99700),
}


@dataclass(frozen=True)
class WalshInsulinModel:
    """Legacy curve family. Durations outside 3-6h are scaled to the nearest modeled one."""

    action_duration: timedelta
    delay: timedelta = timedelta(0)

    @property
    def effect_duration(self) -> timedelta:
        return self.action_duration + self.delay

    def percent_effect_remaining(self, time: timedelta) -> float:
        t = time - self.delay
        if t <= timedelta(0):
            return 1.0
        if t >= self.action_duration:
            return 0.0

        hours = self.action_duration.total_seconds() / 3600.0
        nearest = min(6, max(3, round(hours)))
        t_min = (t.total_seconds() / 60.0) * nearest / hours
        c4, c3, c2, c1, c0 = _WALSH_COEFFICIENTS[nearest]
        value = c4 * t_min ** 4 + c3 * t_min ** 3 + c2 * t_min ** 2 + c1 * t_min + c0
        return min(1.0, max(0.0, value))


AnyInsulinModel = Union[ExponentialInsulinModel, WalshInsulinModel]

RAPID_ACTING_ADULT = ExponentialInsulinModel(timedelta(hours=6), timedelta(minutes=75))
RAPID_ACTING_CHILD = ExponentialInsulinModel(timedelta(hours=6), timedelta(minutes=65))
FIASP = ExponentialInsulinModel(timedelta(hours=6), timedelta(minutes=55))
LYUMJEV = ExponentialInsulinModel(timedelta(hours=6), timedelta(minutes=55))
AFREZZA = ExponentialInsulinModel(timedelta(hours=5), timedelta(minutes=29))


class InsulinModelProvider:
    """
    Read-only lookup of insulin models by insulin type.
    Build once at startup and pass it to the engine; it is never mutated.
    """

    def __init__(self, models: Mapping[InsulinType, AnyInsulinModel], default_model: AnyInsulinModel):
        self._models = MappingProxyType(dict(models))
        self._default = default_model

    @property
    def default_model(self) -> AnyInsulinModel:
        return self._default

    def model_for(self, insulin_type: Optional[InsulinType]) -> AnyInsulinModel:
        if insulin_type is None:
            return self._default
        return self._models.get(insulin_type, self._default)

    @property
    def longest_effect_duration(self) -> timedelta:
        return max([m.effect_duration for m in self._models.values()] + [self._default.effect_duration])


def build_model_provider(default_rapid_acting_model: Optional[AnyInsulinModel] = None) -> InsulinModelProvider:
    rapid = default_rapid_acting_model or RAPID_ACTING_ADULT
    return InsulinModelProvider(
        {
            InsulinType.NOVOLOG: rapid,
            InsulinType.HUMALOG: rapid,
            InsulinType.APIDRA: rapid,
            InsulinType.FIASP: FIASP,
            InsulinType.LYUMJEV: LYUMJEV,
            InsulinType.AFREZZA: AFREZZA,
        },
        default_model=rapid,
    )


DEFAULT_MODEL_PROVIDER = build_model_provider()


class CarbAbsorptionModel(Protocol):
    def percent_absorption_at_percent_time(self, percent_time: float) -> float: ...

    def percent_time_at_percent_absorption(self, percent_absorption: float) -> float: ...

    def percent_rate_at_percent_time(self, percent_time: float) -> float: ...

    @property
    def peak_percent_rate(self) -> float: ...


class PiecewiseLinearAbsorption:
    """
    Absorption rate rises linearly until 15% of the absorption time, stays
    flat until 50%, then falls linearly to zero.
    """

    percent_end_of_rise = 0.15
    percent_start_of_fall = 0.5

    @property
    def scale(self) -> float:
        return 2.0 / (1.0 + self.percent_start_of_fall - self.percent_end_of_rise)

    @property
    def peak_percent_rate(self) -> float:
        return self.scale

    def percent_absorption_at_percent_time(self, percent_time: float) -> float:
        rise, fall, scale = self.percent_end_of_rise, self.percent_start_of_fall, self.scale
        if percent_time <= 0:
            return 0.0
        if percent_time < rise:
            return 0.5 * scale * percent_time ** 2 / rise
        if percent_time < fall:
            return scale * (percent_time - rise / 2)
        if percent_time < 1:
            tail = ((1 - fall) ** 2 - (1 - percent_time) ** 2) / (2 * (1 - fall))
            return scale * (fall - rise / 2 + tail)
        return 1.0

    def percent_time_at_percent_absorption(self, percent_absorption: float) -> float:
        rise, fall, scale = self.percent_end_of_rise, self.percent_start_of_fall, self.scale
        if percent_absorption <= 0:
            return 0.0
        if percent_absorption < scale * rise / 2:
            return math.sqrt(2 * percent_absorption * rise / scale)
        if percent_absorption < scale * (fall - rise / 2):
            return percent_absorption / scale + rise / 2
        if percent_absorption < 1:
            remaining = (1 - fall) ** 2 - 2 * (1 - fall) * (percent_absorption / scale - fall + rise / 2)
            return 1 - math.sqrt(max(0.0, remaining))
        return 1.0

    def percent_rate_at_percent_time(self, percent_time: float) -> float:
        rise, fall, scale = self.percent_end_of_rise, self.percent_start_of_fall, self.scale
        if percent_time <= 0 or percent_time >= 1:
            return 0.0
        if percent_time < rise:
            return scale * percent_time / rise
        if percent_time < fall:
            return scale
        return scale * (1 - percent_time) / (1 - fall)


class LinearAbsorption:
    peak_percent_rate = 1.0

    def percent_absorption_at_percent_time(self, percent_time: float) -> float:
        return min(1.0, max(0.0, percent_time))

    def percent_time_at_percent_absorption(self, percent_absorption: float) -> float:
        return min(1.0, max(0.0, percent_absorption))

    def percent_rate_at_percent_time(self, percent_time: float) -> float:
        return 1.0 if 0 < percent_time <= 1 else 0.0


def absorbed_fraction(model: CarbAbsorptionModel, time: timedelta, absorption_time: timedelta) -> float:
    if absorption_time <= timedelta(0):
        return 1.0 if time > timedelta(0) else 0.0
    return model.percent_absorption_at_percent_time(time / absorption_time)


def absorption_rate(model: CarbAbsorptionModel, total: float, time: timedelta, absorption_time: timedelta) -> float:
    """Absorption rate (per minute) of `total` at `time` for the given absorption time."""
    if absorption_time <= timedelta(0):
        return 0.0
    absorption_minutes = absorption_time.total_seconds() / 60.0
    return total * model.percent_rate_at_percent_time(time / absorption_time) / absorption_minutes


def absorption_time_for(model: CarbAbsorptionModel, percent_absorption: float, time: timedelta) -> timedelta:
    """Total absorption time implied by having absorbed `percent_absorption` after `time`."""
    percent_time = max(model.percent_time_at_percent_absorption(percent_absorption), 1e-9)
    return time / percent_time
