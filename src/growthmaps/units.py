#!/usr/bin/env python3
"""growthmaps.units

Default unit conversion used by the engine and the fitting routines.

The engine treats units as opaque tags and only ever calls
`convert(value, from_unit, to_unit)`. This module provides a small default
that understands identical tags and the three temperature scales, which
covers the common "source data in °C, model in K" case. Anything richer
(pint, udunits, ...) can be plugged in by passing another callable with the
same signature.
"""

from __future__ import annotations

from typing import Callable, Optional

import numpy as np

from growthmaps.errors import ConfigurationError


Converter = Callable[..., "np.ndarray | float"]


class UnitConversionError(ConfigurationError):
    """No conversion is known between two unit tags."""


# Aliases -> canonical tag
_TEMPERATURE_ALIASES = {
    "k": "K",
    "kelvin": "K",
    "degc": "degC",
    "°c": "degC",
    "c": "degC",
    "celsius": "degC",
    "degf": "degF",
    "°f": "degF",
    "f": "degF",
    "fahrenheit": "degF",
}

# Every scale goes through kelvin
_TO_KELVIN = {
    "K": lambda v: v,
    "degC": lambda v: v + 273.15,
    "degF": lambda v: (v - 32.0) * 5.0 / 9.0 + 273.15,
}
_FROM_KELVIN = {
    "K": lambda v: v,
    "degC": lambda v: v - 273.15,
    "degF": lambda v: (v - 273.15) * 9.0 / 5.0 + 32.0,
}


def _canonical(unit: Optional[str]) -> Optional[str]:
    if unit is None:
        return None
    s = str(unit).strip()
    return _TEMPERATURE_ALIASES.get(s.lower(), s)


def convert(value, from_unit: Optional[str], to_unit: Optional[str]):
    """Convert `value` (scalar or array) from `from_unit` to `to_unit`.

    A missing tag on either side means "already in the right unit" and the
    value is returned untouched.

    Raises:
        UnitConversionError: if no conversion between the two tags is known.
    """
    src = _canonical(from_unit)
    dst = _canonical(to_unit)
    if src is None or dst is None or src == dst:
        return value
    if src in _TO_KELVIN and dst in _FROM_KELVIN:
        return _FROM_KELVIN[dst](_TO_KELVIN[src](np.asarray(value, dtype=float)))
    raise UnitConversionError(f"Don't know how to convert {from_unit!r} to {to_unit!r}")


def check_convertible(converter: Converter, from_unit: Optional[str], to_unit: Optional[str]) -> None:
    """Probe `converter` once so unit problems surface before a run starts."""
    try:
        converter(np.zeros(1), from_unit, to_unit)
    except ConfigurationError:
        raise
    except Exception as e:
        raise UnitConversionError(f"Cannot convert {from_unit!r} to {to_unit!r}: {e}") from e
