#!/usr/bin/env python3
"""growthmaps.models

Rate models, the layers that bind them to source variables, and model sets.

A model is a small immutable formula mapping one (unit-converted) input to a
rate. Every model carries a kind tag:

- GROWTH        -> `rate(model, x)`, floored at zero by the engine
- LOWER_STRESS  -> active when x < threshold
- UPPER_STRESS  -> active when x > threshold

Stress models contribute through `conditionalrate(model, x)`, which is zero
when the condition does not hold and non-positive when it does.

Parameters are either plain numbers (constants) or `Param` values. A `Param`
with bounds is free and takes part in fitting. Nothing here mutates in place:
updating parameters always builds a new model / model set.

All three operations accept scalars or numpy arrays. Numerically undefined
results come back as NaN, never as an exception.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field, fields, replace
from enum import Enum
from typing import Any, ClassVar, Dict, Iterator, List, NamedTuple, Optional, Sequence, Tuple

import numpy as np

from growthmaps.errors import ConfigurationError


# Gas constant in cal / (mol K); enthalpies are expected in cal / mol.
R = 1.987204258640832


# -----------------------------------------------------------------------------
# Parameters
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class Param:
    """A model parameter value.

    Args:
        value: Current value.
        bounds: (lower, upper) if the parameter is free, None if constant.
        units: Optional unit tag, informational only.
    """

    value: float
    bounds: Optional[Tuple[float, float]] = None
    units: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "value", float(self.value))
        if self.bounds is not None:
            if len(self.bounds) != 2:
                raise ConfigurationError(f"Param bounds must be (lower, upper), got {self.bounds!r}")
            lo, hi = float(self.bounds[0]), float(self.bounds[1])
            if lo > hi:
                raise ConfigurationError(f"Param bounds are reversed: {self.bounds!r}")
            object.__setattr__(self, "bounds", (lo, hi))

    @property
    def free(self) -> bool:
        return self.bounds is not None

    def with_value(self, value: float) -> "Param":
        return replace(self, value=float(value))

    def __float__(self) -> float:
        return self.value


def _v(x: Any) -> float:
    """Plain float for a Param or a number."""
    if isinstance(x, Param):
        return x.value
    return float(x)


def _as_result(out: np.ndarray):
    out = np.where(np.isfinite(out), out, np.nan)
    if out.ndim == 0:
        return float(out)
    return out


# -----------------------------------------------------------------------------
# Models
# -----------------------------------------------------------------------------

class ModelKind(Enum):
    GROWTH = "growth"
    LOWER_STRESS = "lower_stress"
    UPPER_STRESS = "upper_stress"

    @property
    def is_stress(self) -> bool:
        return self is not ModelKind.GROWTH


@dataclass(frozen=True)
class Model:
    """Base for all rate models. Subclasses are frozen dataclasses whose fields
    are the model parameters."""

    kind: ClassVar[ModelKind]

    def param_fields(self) -> List[str]:
        return [f.name for f in fields(self)]

    def param_values(self) -> Dict[str, float]:
        return {name: _v(getattr(self, name)) for name in self.param_fields()}

    def rate(self, x: np.ndarray) -> np.ndarray:
        raise NotImplementedError


@dataclass(frozen=True)
class SchoolfieldIntrinsicGrowth(Model):
    """Schoolfield (1981) intrinsic growth rate with low and high temperature
    inactivation.

        rate(T) = p * (T/T_ref) * exp(dH_A/R * (1/T_ref - 1/T))
                  / (1 + exp(dH_L/R * (1/T_halfL - 1/T)) + exp(dH_H/R * (1/T_halfH - 1/T)))

    Temperatures in K, enthalpies in cal/mol. `p` is the rate at T_ref when
    both inactivation terms are negligible.
    """

    kind: ClassVar[ModelKind] = ModelKind.GROWTH

    p: Any
    dH_A: Any
    dH_L: Any
    T_halfL: Any
    dH_H: Any
    T_halfH: Any
    T_ref: Any = 298.15

    def rate(self, x: np.ndarray) -> np.ndarray:
        T = np.asarray(x, dtype=float)
        v = self.param_values()
        with np.errstate(over="ignore", divide="ignore", invalid="ignore"):
            inv_T = 1.0 / T
            num = v["p"] * (T / v["T_ref"]) * np.exp(v["dH_A"] / R * (1.0 / v["T_ref"] - inv_T))
            den = (
                1.0
                + np.exp(v["dH_L"] / R * (1.0 / v["T_halfL"] - inv_T))
                + np.exp(v["dH_H"] / R * (1.0 / v["T_halfH"] - inv_T))
            )
            return num / den


@dataclass(frozen=True)
class StressModel(Model):
    """Linear stress beyond a threshold.

    `mortalityrate` is the (already negative) log-survival per unit of input
    beyond the threshold, so an active stress always lowers the total rate.
    See `survival_mortality`.
    """

    threshold: Any
    mortalityrate: Any

    def __post_init__(self) -> None:
        m = self.mortalityrate
        if _v(m) > 0:
            raise ConfigurationError(
                f"{type(self).__name__}.mortalityrate must be <= 0, got {_v(m)}"
            )
        if isinstance(m, Param) and m.bounds is not None and m.bounds[1] > 0:
            raise ConfigurationError(
                f"{type(self).__name__}.mortalityrate bounds must stay <= 0, got {m.bounds}"
            )

    def condition(self, x: np.ndarray) -> np.ndarray:
        raise NotImplementedError


@dataclass(frozen=True)
class LowerStress(StressModel):
    """Stress below a threshold, e.g. cold stress."""

    kind: ClassVar[ModelKind] = ModelKind.LOWER_STRESS

    def condition(self, x):
        return np.asarray(x, dtype=float) < _v(self.threshold)

    def rate(self, x):
        return _v(self.mortalityrate) * (_v(self.threshold) - np.asarray(x, dtype=float))


@dataclass(frozen=True)
class UpperStress(StressModel):
    """Stress above a threshold, e.g. heat or wilt stress."""

    kind: ClassVar[ModelKind] = ModelKind.UPPER_STRESS

    def condition(self, x):
        return np.asarray(x, dtype=float) > _v(self.threshold)

    def rate(self, x):
        return _v(self.mortalityrate) * (np.asarray(x, dtype=float) - _v(self.threshold))


def survival_mortality(survival_fraction: float, exposure: float = 1.0) -> float:
    """Mortality rate from the fraction surviving `exposure` units of stress.

    Returns log(survival_fraction) / exposure, which is <= 0 for fractions in (0, 1].
    """
    if not 0.0 < survival_fraction <= 1.0:
        raise ValueError(f"survival_fraction must be in (0, 1], got {survival_fraction}")
    if exposure <= 0:
        raise ValueError(f"exposure must be positive, got {exposure}")
    return math.log(survival_fraction) / exposure


# -----------------------------------------------------------------------------
# The three model operations
# -----------------------------------------------------------------------------

def rate(model: Model, x):
    """Rate of `model` at input `x` (scalar or array). Non-finite -> NaN."""
    return _as_result(np.asarray(model.rate(x), dtype=float))


def condition(model: Model, x):
    """True where a stress model is active. Only defined for stress kinds."""
    if not model.kind.is_stress:
        raise TypeError(f"condition() is only defined for stress models, got {type(model).__name__}")
    out = np.asarray(model.condition(x))
    if out.ndim == 0:
        return bool(out)
    return out


def conditionalrate(model: Model, x):
    """Stress contribution: the model rate where the condition holds, else 0.

    NaN inputs stay NaN.
    """
    if not model.kind.is_stress:
        raise TypeError(
            f"conditionalrate() is only defined for stress models, got {type(model).__name__}"
        )
    xa = np.asarray(x, dtype=float)
    with np.errstate(invalid="ignore"):
        out = np.where(model.condition(xa), model.rate(xa), 0.0)
    out = np.where(np.isnan(xa), np.nan, out)
    return _as_result(out)


# -----------------------------------------------------------------------------
# Layers and model sets
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class Layer:
    """Binds a model to the source variable it reads and the unit it needs.

    Args:
        var: Variable name in the source frames (e.g. "temp").
        unit: Unit the model expects; source grids are converted into it.
            None means no conversion.
        model: The rate model.
    """

    var: str
    unit: Optional[str]
    model: Model

    def __post_init__(self) -> None:
        if not isinstance(self.model, Model):
            raise ConfigurationError(f"Layer {self.var!r}: expected a Model, got {type(self.model).__name__}")


class ParamRef(NamedTuple):
    layer_index: int
    field: str
    name: str
    param: Param


@dataclass(frozen=True)
class ModelSet:
    """Ordered collection of layers evaluated together for each cell.

    Layer order never changes the combined result.
    """

    layers: Tuple[Layer, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        object.__setattr__(self, "layers", tuple(self.layers))

    @classmethod
    def of(cls, *layers: Layer) -> "ModelSet":
        return cls(layers)

    def __len__(self) -> int:
        return len(self.layers)

    def __iter__(self) -> Iterator[Layer]:
        return iter(self.layers)

    @property
    def variables(self) -> List[str]:
        seen: List[str] = []
        for layer in self.layers:
            if layer.var not in seen:
                seen.append(layer.var)
        return seen

    def _labels(self) -> List[str]:
        counts: Dict[str, int] = {}
        for layer in self.layers:
            counts[layer.var] = counts.get(layer.var, 0) + 1
        return [
            layer.var if counts[layer.var] == 1 else f"{layer.var}#{i}"
            for i, layer in enumerate(self.layers)
        ]

    # --- parameter access ---

    def params(self) -> List[ParamRef]:
        """Every Param in the set, in layer then field order."""
        refs: List[ParamRef] = []
        for i, (label, layer) in enumerate(zip(self._labels(), self.layers)):
            for name in layer.model.param_fields():
                value = getattr(layer.model, name)
                if isinstance(value, Param):
                    refs.append(ParamRef(i, name, f"{label}.{name}", value))
        return refs

    def free_params(self) -> List[ParamRef]:
        return [r for r in self.params() if r.param.free]

    def names(self) -> List[str]:
        return [r.name for r in self.free_params()]

    def vector(self) -> np.ndarray:
        return np.array([r.param.value for r in self.free_params()], dtype=float)

    def bounds(self) -> Tuple[np.ndarray, np.ndarray]:
        refs = self.free_params()
        lower = np.array([r.param.bounds[0] for r in refs], dtype=float)
        upper = np.array([r.param.bounds[1] for r in refs], dtype=float)
        return lower, upper

    def with_vector(self, vector: Sequence[float]) -> "ModelSet":
        """New model set with free parameters replaced, in `free_params()` order."""
        refs = self.free_params()
        values = np.asarray(vector, dtype=float).ravel()
        if len(values) != len(refs):
            raise ValueError(f"Expected {len(refs)} parameter values, got {len(values)}")

        updates: Dict[int, Dict[str, Param]] = {}
        for ref, value in zip(refs, values):
            updates.setdefault(ref.layer_index, {})[ref.field] = ref.param.with_value(value)

        layers = []
        for i, layer in enumerate(self.layers):
            if i in updates:
                layer = replace(layer, model=replace(layer.model, **updates[i]))
            layers.append(layer)
        return ModelSet(tuple(layers))
