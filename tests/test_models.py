#!/usr/bin/env python3

from __future__ import annotations

import math

import numpy as np
import pytest

from growthmaps.errors import ConfigurationError
from growthmaps.models import (
    R,
    Layer,
    LowerStress,
    ModelKind,
    ModelSet,
    Param,
    UpperStress,
    condition,
    conditionalrate,
    rate,
    survival_mortality,
)


def _schoolfield_by_hand(T, p, dH_A, dH_L, T_halfL, dH_H, T_halfH, T_ref):
    num = p * (T / T_ref) * math.exp(dH_A / R * (1 / T_ref - 1 / T))
    den = 1 + math.exp(dH_L / R * (1 / T_halfL - 1 / T)) + math.exp(dH_H / R * (1 / T_halfH - 1 / T))
    return num / den


# --- Schoolfield growth ---

def test_schoolfield_at_reference_temperature_is_p(make_growth):
    # inactivation terms negligible at T_ref
    model = make_growth(p=0.3, T_halfH=330.0)
    assert rate(model, 298.15) == pytest.approx(0.3, abs=1e-9)


def test_schoolfield_matches_formula(make_growth):
    model = make_growth()
    for T in (283.15, 293.15, 298.15, 303.15):
        expected = _schoolfield_by_hand(T, **model.param_values())
        assert rate(model, T) == pytest.approx(expected, rel=1e-12)


def test_schoolfield_accepts_params_and_arrays(make_growth):
    plain = make_growth()
    wrapped = make_growth(p=Param(0.3, bounds=(0.0, 1.0)))
    temps = np.array([[280.0, 290.0], [300.0, 310.0]])
    out = rate(wrapped, temps)
    assert isinstance(out, np.ndarray)
    assert out.shape == (2, 2)
    np.testing.assert_allclose(out, rate(plain, temps))


def test_schoolfield_undefined_is_nan_not_error(make_growth):
    model = make_growth()
    assert math.isnan(rate(model, 1e300))
    assert math.isnan(rate(model, float("nan")))


def test_model_kinds():
    assert LowerStress(0.0, -0.1).kind is ModelKind.LOWER_STRESS
    assert UpperStress(0.0, -0.1).kind is ModelKind.UPPER_STRESS
    assert not ModelKind.GROWTH.is_stress


# --- Stress ---

def test_lower_stress_condition_and_rate():
    m = LowerStress(threshold=10.0, mortalityrate=-0.1)
    assert condition(m, 5.0) is True
    assert condition(m, 10.0) is False
    assert conditionalrate(m, 5.0) == pytest.approx(-0.5)
    assert conditionalrate(m, 15.0) == 0.0


def test_upper_stress_condition_and_rate():
    m = UpperStress(threshold=30.0, mortalityrate=-0.2)
    assert condition(m, 35.0) is True
    assert conditionalrate(m, 35.0) == pytest.approx(-1.0)
    assert conditionalrate(m, 25.0) == 0.0


def test_conditionalrate_is_never_positive():
    x = np.linspace(-50, 50, 101)
    for m in (LowerStress(0.0, -0.3), UpperStress(0.0, -0.3)):
        assert (conditionalrate(m, x) <= 0).all()


def test_conditionalrate_keeps_nan():
    m = LowerStress(10.0, -0.1)
    out = conditionalrate(m, np.array([5.0, np.nan]))
    assert out[0] == pytest.approx(-0.5)
    assert np.isnan(out[1])


def test_stress_ops_reject_growth(make_growth):
    with pytest.raises(TypeError):
        conditionalrate(make_growth(), 290.0)
    with pytest.raises(TypeError):
        condition(make_growth(), 290.0)


def test_positive_mortality_rejected():
    with pytest.raises(ConfigurationError):
        LowerStress(threshold=0.0, mortalityrate=0.1)
    with pytest.raises(ConfigurationError):
        UpperStress(threshold=0.0, mortalityrate=Param(-0.1, bounds=(-1.0, 0.5)))


def test_survival_mortality():
    assert survival_mortality(0.5, exposure=2.0) == pytest.approx(math.log(0.5) / 2)
    assert survival_mortality(1.0) == 0.0
    with pytest.raises(ValueError):
        survival_mortality(0.0)


# --- Params and model sets ---

def test_param_free_and_immutable():
    p = Param(0.3, bounds=(0, 1))
    q = p.with_value(0.5)
    assert p.free and p.value == 0.3
    assert q.value == 0.5 and q.bounds == (0.0, 1.0)
    assert not Param(1.0).free
    with pytest.raises(ConfigurationError):
        Param(0.3, bounds=(1.0, 0.0))


def test_modelset_vector_bounds_and_rebuild(make_growth):
    ms = ModelSet.of(
        Layer("temp", "K", make_growth(p=Param(0.3, bounds=(0.0, 1.0)))),
        Layer("temp", "K", LowerStress(Param(270.0, bounds=(250.0, 280.0)), -0.05)),
    )
    assert ms.names() == ["temp#0.p", "temp#1.threshold"]
    np.testing.assert_array_equal(ms.vector(), [0.3, 270.0])
    lower, upper = ms.bounds()
    np.testing.assert_array_equal(lower, [0.0, 250.0])
    np.testing.assert_array_equal(upper, [1.0, 280.0])

    rebuilt = ms.with_vector([0.4, 260.0])
    np.testing.assert_array_equal(rebuilt.vector(), [0.4, 260.0])
    # original untouched
    np.testing.assert_array_equal(ms.vector(), [0.3, 270.0])
    assert rebuilt.layers[1].model.mortalityrate == -0.05

    with pytest.raises(ValueError):
        ms.with_vector([0.4])


def test_modelset_variables_and_unique_labels(make_growth):
    ms = ModelSet([
        Layer("temp", "K", make_growth(p=Param(0.3, bounds=(0.0, 1.0)))),
        Layer("moist", None, LowerStress(Param(0.2, bounds=(0.0, 0.5)), -1.0)),
    ])
    assert ms.variables == ["temp", "moist"]
    assert ms.names() == ["temp.p", "moist.threshold"]
    assert len(ms) == 2


def test_layer_requires_model():
    with pytest.raises(ConfigurationError):
        Layer("temp", "K", object())
