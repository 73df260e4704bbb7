"""GARCH(1,1) variance recursion and risk-neutral drift, vectorised over assets.

Time steps are trading days, so there is no sqrt(dt) scaling anywhere:
    h_t = omega + alpha * eps_{t-1}^2 + beta * h_{t-1}
    drift_t = r_foreign(t/252)/252 - q/252 - h_t/2
"""

from dataclasses import dataclass

import numpy as np

from coe_autocall.engine import TRADING_DAYS_PER_YEAR, GarchParams, UnderlyingSpec


def garch_variance_step(
    omega: np.ndarray,
    alpha: np.ndarray,
    beta: np.ndarray,
    eps_prev: np.ndarray,
    h_prev: np.ndarray,
) -> np.ndarray:
    return omega + alpha * eps_prev**2 + beta * h_prev


def risk_neutral_drift(
    daily_foreign_rate: float,
    daily_dividend: np.ndarray,
    variance: np.ndarray,
) -> np.ndarray:
    """Daily log drift under the USD measure, Ito-corrected."""
    return daily_foreign_rate - daily_dividend - 0.5 * variance


def standardise(eps: np.ndarray, variance: np.ndarray) -> np.ndarray:
    """Shock divided by its conditional std; zero where the variance is zero."""
    sigma = np.sqrt(variance)
    return np.divide(eps, sigma, out=np.zeros_like(eps), where=sigma > 0)


@dataclass(frozen=True)
class VolatilityBank:
    """Index-aligned GARCH coefficients for all assets, read-only across paths."""

    omega: np.ndarray
    alpha: np.ndarray
    beta: np.ndarray
    sigma2_0: np.ndarray
    daily_dividend: np.ndarray

    @classmethod
    def from_models(
        cls, models: list[GarchParams], specs: list[UnderlyingSpec]
    ) -> "VolatilityBank":
        bank = cls(
            omega=np.array([m.omega for m in models], dtype=float),
            alpha=np.array([m.alpha for m in models], dtype=float),
            beta=np.array([m.beta for m in models], dtype=float),
            sigma2_0=np.array([m.sigma2_0 for m in models], dtype=float),
            daily_dividend=np.array([s.daily_dividend for s in specs], dtype=float),
        )
        for arr in (bank.omega, bank.alpha, bank.beta, bank.sigma2_0, bank.daily_dividend):
            arr.setflags(write=False)
        return bank

    def step(self, eps_prev: np.ndarray, h_prev: np.ndarray) -> np.ndarray:
        return garch_variance_step(self.omega, self.alpha, self.beta, eps_prev, h_prev)


def daily_foreign_rates(foreign_curve, horizon_days: int) -> np.ndarray:
    """Instantaneous foreign short rate per step t=1..horizon, as a daily rate."""
    rates = np.array(
        [foreign_curve.rate(t / TRADING_DAYS_PER_YEAR) for t in range(1, horizon_days + 1)],
        dtype=float,
    )
    return rates / TRADING_DAYS_PER_YEAR


def scale_volatility(models: list[GarchParams], vol_multiplier: float) -> list[GarchParams]:
    """Scale conditional volatility by ``vol_multiplier`` (variance by its square)."""
    return [m.scaled(vol_multiplier**2) for m in models]
