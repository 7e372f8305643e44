"""growthmaps

Aggregate biological growth and stress rates over gridded environmental
time series.

    from growthmaps import Layer, ModelSet, Param, SchoolfieldIntrinsicGrowth, mapgrowth

The rasterio / geopandas adapters live in growthmaps.io and are imported
explicitly, so the core stays light.
"""

from growthmaps.errors import ConfigurationError, FitError, GrowthMapsError, RunError
from growthmaps.models import (
    R,
    Layer,
    LowerStress,
    Model,
    ModelKind,
    ModelSet,
    Param,
    SchoolfieldIntrinsicGrowth,
    StressModel,
    UpperStress,
    condition,
    conditionalrate,
    rate,
    survival_mortality,
)
from growthmaps.series import (
    NearestPolicy,
    OutputSeries,
    OutputSpec,
    RasterFrame,
    RasterSeries,
    WindowPolicy,
)
from growthmaps.units import UnitConversionError, convert
from growthmaps.framework import combine, evaluate_frame, evaluate_step, mapgrowth, resolve_steps
from growthmaps.fit import FitResult, ManualFit, MapFit, ModelRef, fit, predict

__version__ = "0.1.0"

__all__ = [
    "ConfigurationError",
    "FitError",
    "GrowthMapsError",
    "RunError",
    "R",
    "Layer",
    "LowerStress",
    "Model",
    "ModelKind",
    "ModelSet",
    "Param",
    "SchoolfieldIntrinsicGrowth",
    "StressModel",
    "UpperStress",
    "condition",
    "conditionalrate",
    "rate",
    "survival_mortality",
    "NearestPolicy",
    "OutputSeries",
    "OutputSpec",
    "RasterFrame",
    "RasterSeries",
    "WindowPolicy",
    "UnitConversionError",
    "convert",
    "combine",
    "evaluate_frame",
    "evaluate_step",
    "mapgrowth",
    "resolve_steps",
    "FitResult",
    "ManualFit",
    "MapFit",
    "ModelRef",
    "fit",
    "predict",
]
