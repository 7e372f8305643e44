#!/usr/bin/env python3
"""growthmaps.errors

Exception types shared by the engine, fitting and configuration layers.

Configuration problems are ValueErrors so callers that already catch bad
input keep working; run failures are RuntimeErrors.
"""

from __future__ import annotations


class GrowthMapsError(Exception):
    """Base class for all growthmaps errors."""


class ConfigurationError(GrowthMapsError, ValueError):
    """Invalid model set, series or output spec. Detected before output is returned."""


class RunError(GrowthMapsError, RuntimeError):
    """An output step could not be produced; the whole run is abandoned."""


class FitError(GrowthMapsError, ValueError):
    """A fit was requested that cannot be set up (e.g. no free parameters)."""
