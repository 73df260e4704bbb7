"""Pytest configuration and shared fixtures."""

import numpy as np
import pytest

from coe_autocall.engine import (
    AutocallConfig,
    DCCParams,
    GarchParams,
    InnovationDist,
    UnderlyingSpec,
)
from coe_autocall.engine.simulator import PathSimulator
from coe_autocall.market.curves import FlatCurve

NUM_ASSETS = 4


def correlation_matrix(rho: float, n: int = NUM_ASSETS) -> np.ndarray:
    return np.full((n, n), rho) + (1.0 - rho) * np.eye(n)


@pytest.fixture
def specs():
    """Four underlyings struck at 100, no dividends."""
    return [UnderlyingSpec(symbol, 100.0) for symbol in ("AAA", "BBB", "CCC", "DDD")]


@pytest.fixture
def garch_models():
    """Student-t GARCH(1,1) with ~25% annual long-run vol."""
    return [
        GarchParams(
            omega=5e-6, alpha=0.05, beta=0.93, sigma2_0=2.5e-4,
            nu=8.0, innovation_dist=InnovationDist.STUDENT,
        )
        for _ in range(NUM_ASSETS)
    ]


@pytest.fixture
def frozen_models():
    """Zero variance forever: prices only drift."""
    return [GarchParams(omega=0.0, alpha=0.0, beta=0.0, sigma2_0=0.0) for _ in range(NUM_ASSETS)]


@pytest.fixture
def dcc_params():
    return DCCParams(a=0.02, b=0.95, q_bar=correlation_matrix(0.5))


@pytest.fixture
def domestic_curve():
    return FlatCurve(0.10)


@pytest.fixture
def foreign_curve():
    return FlatCurve(0.05)


@pytest.fixture
def small_config(domestic_curve, foreign_curve):
    """Four monthly observations, 5% coupon each."""
    return AutocallConfig(
        coupons=(0.05,) * 4,
        obs_spacing_days=21,
        horizon_days=84,
        principal=1000.0,
        rf_rate=0.10,
        domestic_curve=domestic_curve,
        foreign_curve=foreign_curve,
        fx_spot=5.0,
    )


@pytest.fixture
def simulator(specs, garch_models, dcc_params):
    return PathSimulator(specs, garch_models, dcc_params, max_workers=2)
