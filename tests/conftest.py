#!/usr/bin/env python3

from __future__ import annotations

import sys
from pathlib import Path

import pytest

# Ensure we can import from src without installing the package
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))

from growthmaps.models import Param, SchoolfieldIntrinsicGrowth


# Reference Schoolfield parameters (enthalpies in cal/mol, temperatures in K)
TRUTH = dict(
    p=0.3,
    dH_A=2e4,
    dH_L=-1e5,
    T_halfL=250.0,
    dH_H=3e5,
    T_halfH=300.0,
    T_ref=298.15,
)


@pytest.fixture
def make_growth():
    """Factory for Schoolfield models; keyword overrides replace TRUTH values."""

    def _make(**overrides) -> SchoolfieldIntrinsicGrowth:
        kw = dict(TRUTH)
        kw.update(overrides)
        return SchoolfieldIntrinsicGrowth(**kw)

    return _make


@pytest.fixture
def free_growth():
    """Schoolfield model with every parameter but T_ref free."""
    return SchoolfieldIntrinsicGrowth(
        p=Param(0.3, bounds=(0.0, 1.0)),
        dH_A=Param(2e4, bounds=(2e3, 2e5), units="cal/mol"),
        dH_L=Param(-1e5, bounds=(-2e5, -1e4), units="cal/mol"),
        T_halfL=Param(250.0, bounds=(200.0, 290.0), units="K"),
        dH_H=Param(3e5, bounds=(3e4, 3e6), units="cal/mol"),
        T_halfH=Param(300.0, bounds=(280.0, 320.0), units="K"),
        T_ref=298.15,
    )
