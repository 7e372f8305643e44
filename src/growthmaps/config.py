#!/usr/bin/env python3
"""growthmaps.config

YAML run configuration: build a ModelSet and an OutputSpec from a file.

Design notes:
- YAML loading is strict: files must exist and be valid mappings.
- Model types are looked up by name in MODEL_TYPES, so adding a model means
  registering it there.
- A parameter is either a bare number (constant) or a mapping with `value`
  and optional `bounds` / `units` (bounded = free).
- All functions are pure (no side effects on import).

Example:
    layers:
      - var: temp
        unit: K
        model: SchoolfieldIntrinsicGrowth
        params:
          p: {value: 0.3, bounds: [0.0, 1.0]}
          dH_A: {value: 2.0e+4, bounds: [2.0e+3, 2.0e+5], units: cal/mol}
          dH_L: -1.0e+5
          T_halfL: 250.0
          dH_H: 3.0e+5
          T_halfH: 300.0
          T_ref: 298.15
      - var: temp
        unit: K
        model: LowerStress
        params: {threshold: 268.15, mortalityrate: -0.05}
    output:
      start: 2020-01-01
      end: 2020-12-01
      freq: MS
      policy: window
      reducer: mean
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Type

import yaml

from growthmaps.errors import ConfigurationError
from growthmaps.models import (
    Layer,
    LowerStress,
    Model,
    ModelSet,
    Param,
    SchoolfieldIntrinsicGrowth,
    UpperStress,
)
from growthmaps.series import NearestPolicy, OutputSpec, WindowPolicy


MODEL_TYPES: Dict[str, Type[Model]] = {
    "SchoolfieldIntrinsicGrowth": SchoolfieldIntrinsicGrowth,
    "LowerStress": LowerStress,
    "UpperStress": UpperStress,
}


@dataclass(frozen=True)
class RunConfig:
    modelset: ModelSet
    output: Optional[OutputSpec]


# -----------------------------------------------------------------------------
# YAML loading
# -----------------------------------------------------------------------------

def load_yaml(path: Path) -> Dict[str, Any]:
    """Load a YAML file and return as dict.

    Raises ConfigurationError on missing file or invalid format (non-mapping).
    """
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(f"Config not found: {path}")
    with path.open("r", encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"Expected YAML mapping at {path}")
    return data


def load_run_yaml(path: Path) -> RunConfig:
    """Load a run configuration (layers + optional output) from YAML."""
    data = load_yaml(path)
    return RunConfig(
        modelset=modelset_from_dict(data),
        output=output_from_dict(data["output"]) if data.get("output") is not None else None,
    )


# -----------------------------------------------------------------------------
# Model set
# -----------------------------------------------------------------------------

def coerce_param(name: str, x: Any) -> Any:
    """Number -> constant; mapping -> Param."""
    if isinstance(x, dict):
        if "value" not in x:
            raise ConfigurationError(f"Parameter {name!r} mapping needs a 'value'")
        bounds = x.get("bounds")
        if bounds is not None and (not isinstance(bounds, (list, tuple)) or len(bounds) != 2):
            raise ConfigurationError(f"Parameter {name!r} bounds must be [lower, upper], got {bounds!r}")
        try:
            value = float(x["value"])
            bounds = (float(bounds[0]), float(bounds[1])) if bounds is not None else None
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Parameter {name!r}: {e}") from e
        return Param(value, bounds=bounds, units=x.get("units"))
    if isinstance(x, (int, float)) and not isinstance(x, bool):
        return float(x)
    if isinstance(x, str):
        # PyYAML reads 2.0e4 (no exponent sign) as a string
        try:
            return float(x)
        except ValueError:
            pass
    raise ConfigurationError(f"Parameter {name!r} must be a number or a mapping, got {x!r}")


def layer_from_dict(d: Dict[str, Any], index: int = 0) -> Layer:
    where = f"layers[{index}]"
    if not isinstance(d, dict):
        raise ConfigurationError(f"{where} must be a mapping")
    var = d.get("var")
    if not var:
        raise ConfigurationError(f"{where} is missing 'var'")

    model_name = d.get("model")
    model_cls = MODEL_TYPES.get(str(model_name))
    if model_cls is None:
        raise ConfigurationError(
            f"{where}: unknown model {model_name!r}. Available: {sorted(MODEL_TYPES)}"
        )

    params = d.get("params") or {}
    if not isinstance(params, dict):
        raise ConfigurationError(f"{where}: 'params' must be a mapping")
    allowed = {f.name for f in fields(model_cls)}
    unknown = sorted(set(params) - allowed)
    if unknown:
        raise ConfigurationError(f"{where}: unknown parameters for {model_name}: {unknown}")

    kwargs = {name: coerce_param(name, value) for name, value in params.items()}
    try:
        model = model_cls(**kwargs)
    except TypeError as e:
        raise ConfigurationError(f"{where}: cannot build {model_name}: {e}") from e
    return Layer(var=str(var), unit=d.get("unit"), model=model)


def modelset_from_dict(data: Dict[str, Any]) -> ModelSet:
    layers = data.get("layers")
    if not isinstance(layers, list) or not layers:
        raise ConfigurationError("Config must have a non-empty top-level 'layers:' list")
    return ModelSet(tuple(layer_from_dict(d, i) for i, d in enumerate(layers)))


# -----------------------------------------------------------------------------
# Output spec
# -----------------------------------------------------------------------------

def output_from_dict(d: Dict[str, Any]) -> OutputSpec:
    if not isinstance(d, dict):
        raise ConfigurationError("'output' must be a mapping")

    policy_name = d.get("policy", "nearest")
    if policy_name == "nearest":
        policy = NearestPolicy()
    elif policy_name == "window":
        period = d.get("period")
        if isinstance(period, str):
            # e.g. "14D", for datetime targets
            import pandas as pd

            period = pd.Timedelta(period).to_timedelta64()
        policy = WindowPolicy(reducer=d.get("reducer", "mean"), period=period)
    else:
        raise ConfigurationError(f"Unknown output policy {policy_name!r} (expected nearest or window)")

    kwargs: Dict[str, Any] = {"policy": policy, "name": str(d.get("name", "growth"))}
    if d.get("missingval") is not None:
        kwargs["missingval"] = float(d["missingval"])

    if "times" in d:
        times: List[Any] = d["times"]
        if not isinstance(times, list):
            raise ConfigurationError("'output.times' must be a list")
        return OutputSpec(times=times, **kwargs)

    missing = [k for k in ("start", "end", "freq") if d.get(k) is None]
    if missing:
        raise ConfigurationError(f"'output' needs either 'times' or start/end/freq (missing {missing})")
    return OutputSpec.regular(d["start"], d["end"], str(d["freq"]), **kwargs)
