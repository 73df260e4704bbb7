"""Autocall Monte Carlo engine package.

Holds the plain parameter records shared by every engine stage:
- UnderlyingSpec: one record per underlying, order fixes the asset index
- GarchParams: fitted GARCH(1,1) coefficients and innovation family
- DCCParams: DCC(1,1) persistence pair and long-run correlation target
- AutocallConfig: deal terms plus the curves and FX spot used to value them
"""

import math
from dataclasses import dataclass, replace
from enum import Enum
from typing import TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    from coe_autocall.market.curves import YieldCurve

TRADING_DAYS_PER_YEAR = 252


class ConfigurationError(ValueError):
    """Malformed model or deal input, rejected before any simulation."""


class InnovationDist(str, Enum):
    NORMAL = "normal"
    STUDENT = "student"


class Discounting(str, Enum):
    DUAL_CURRENCY = "dual_currency"  # via FX forward and the foreign curve
    DOMESTIC = "domestic"  # domestic curve only


@dataclass(frozen=True)
class UnderlyingSpec:
    symbol: str
    price0: float
    has_dividend_yield: bool = False
    dividend_yield: float = 0.0

    def __post_init__(self):
        if not (math.isfinite(self.price0) and self.price0 > 0):
            raise ConfigurationError(f"{self.symbol}: initial price must be positive")
        if not math.isfinite(self.dividend_yield) or self.dividend_yield < 0:
            raise ConfigurationError(f"{self.symbol}: dividend yield must be >= 0")

    @property
    def daily_dividend(self) -> float:
        if not self.has_dividend_yield:
            return 0.0
        return self.dividend_yield / TRADING_DAYS_PER_YEAR


@dataclass(frozen=True)
class GarchParams:
    """Fitted GARCH(1,1) state for one asset (daily, decimal returns).

    alpha + beta < 1 is assumed for stationarity but not enforced.
    ``nu`` is NaN for Gaussian innovations.
    """

    omega: float
    alpha: float
    beta: float
    mu: float = 0.0
    sigma2_0: float = 0.0
    nu: float = math.nan
    innovation_dist: InnovationDist = InnovationDist.NORMAL

    def __post_init__(self):
        values = (self.omega, self.alpha, self.beta, self.mu, self.sigma2_0)
        if not all(math.isfinite(v) for v in values):
            raise ConfigurationError("GARCH coefficients, drift and initial variance must be finite")
        if min(self.omega, self.alpha, self.beta, self.sigma2_0) < 0:
            raise ConfigurationError("GARCH coefficients and initial variance must be >= 0")
        if self.innovation_dist == InnovationDist.STUDENT and not math.isfinite(self.nu):
            raise ConfigurationError("Student-t innovations need a finite nu")

    @property
    def persistence(self) -> float:
        return self.alpha + self.beta

    def scaled(self, variance_multiplier: float) -> "GarchParams":
        """Scale the variance level; paths driven by the same shocks scale exactly."""
        return replace(
            self,
            omega=self.omega * variance_multiplier,
            sigma2_0=self.sigma2_0 * variance_multiplier,
        )


@dataclass(frozen=True, eq=False)
class DCCParams:
    a: float
    b: float
    q_bar: np.ndarray

    def __post_init__(self):
        q_bar = np.array(self.q_bar, dtype=float)
        if q_bar.ndim != 2 or q_bar.shape[0] != q_bar.shape[1]:
            raise ConfigurationError("DCC long-run matrix must be square")
        if not np.all(np.isfinite(q_bar)):
            raise ConfigurationError("DCC long-run matrix must be finite")
        if not np.allclose(q_bar, q_bar.T, atol=1e-10):
            raise ConfigurationError("DCC long-run matrix must be symmetric")
        if np.any(np.diag(q_bar) <= 0):
            raise ConfigurationError("DCC long-run matrix needs a positive diagonal")
        if self.a < 0 or self.b < 0 or self.a + self.b >= 1:
            raise ConfigurationError(f"DCC needs a, b >= 0 and a + b < 1 (a={self.a}, b={self.b})")
        q_bar.setflags(write=False)
        object.__setattr__(self, "q_bar", q_bar)

    @property
    def dimension(self) -> int:
        return self.q_bar.shape[0]

    def shifted(self, correlation_shift: float) -> "DCCParams":
        """Add a constant to the off-diagonal long-run correlations, clipped to +/-0.99."""
        d = 1.0 / np.sqrt(np.diag(self.q_bar))
        corr = self.q_bar * np.outer(d, d)
        off_diag = ~np.eye(self.dimension, dtype=bool)
        corr[off_diag] = np.clip(corr[off_diag] + correlation_shift, -0.99, 0.99)
        return DCCParams(self.a, self.b, corr)

    def __eq__(self, other):
        if not isinstance(other, DCCParams):
            return NotImplemented
        return self.a == other.a and self.b == other.b and np.array_equal(self.q_bar, other.q_bar)


@dataclass(frozen=True)
class AutocallConfig:
    """Deal terms. Coupons are per observation period, in decimal."""

    coupons: tuple[float, ...]
    obs_spacing_days: int
    horizon_days: int
    principal: float
    rf_rate: float  # flat fallback rate, also the competitive benchmark base
    domestic_curve: "YieldCurve"
    foreign_curve: "YieldCurve"
    fx_spot: float

    def __post_init__(self):
        object.__setattr__(self, "coupons", tuple(float(c) for c in self.coupons))
        if self.obs_spacing_days <= 0 or self.horizon_days <= 0:
            raise ConfigurationError("Observation spacing and horizon must be positive")
        if self.horizon_days % self.obs_spacing_days != 0:
            raise ConfigurationError(
                f"Horizon {self.horizon_days} is not a multiple of spacing {self.obs_spacing_days}"
            )
        n_obs = self.horizon_days // self.obs_spacing_days
        if len(self.coupons) != n_obs:
            raise ConfigurationError(
                f"Expected {n_obs} coupons for the observation schedule, got {len(self.coupons)}"
            )
        if not (math.isfinite(self.principal) and self.principal > 0):
            raise ConfigurationError("Principal must be positive")
        if not (math.isfinite(self.fx_spot) and self.fx_spot > 0):
            raise ConfigurationError("FX spot must be positive")

    @property
    def obs_schedule(self) -> tuple[int, ...]:
        return tuple(range(self.obs_spacing_days, self.horizon_days + 1, self.obs_spacing_days))

    @property
    def num_observations(self) -> int:
        return len(self.coupons)

    @property
    def years(self) -> float:
        return self.horizon_days / TRADING_DAYS_PER_YEAR

    def with_flat_coupon(self, coupon: float) -> "AutocallConfig":
        return replace(self, coupons=tuple(coupon for _ in self.coupons))


def validate_market_inputs(
    specs: list[UnderlyingSpec],
    volatility_models: list[GarchParams],
    correlation: DCCParams,
) -> None:
    """Index alignment across specs, GARCH models and the DCC matrix."""
    if not specs:
        raise ConfigurationError("At least one underlying is required")
    if len(volatility_models) != len(specs):
        raise ConfigurationError(
            f"{len(volatility_models)} GARCH models for {len(specs)} underlyings"
        )
    if correlation.dimension != len(specs):
        raise ConfigurationError(
            f"DCC matrix is {correlation.dimension}x{correlation.dimension} "
            f"for {len(specs)} underlyings"
        )


__all__ = [
    "TRADING_DAYS_PER_YEAR",
    "ConfigurationError",
    "InnovationDist",
    "Discounting",
    "UnderlyingSpec",
    "GarchParams",
    "DCCParams",
    "AutocallConfig",
    "validate_market_inputs",
]
