"""GARCH(1,1) and DCC(1,1) calibration from historical log-returns.

arch fits each asset on percent-scaled returns with a normal likelihood;
coefficients are converted back to decimal daily units before they reach the
engine. Student-t tails are not fitted by likelihood: nu comes from the
sample kurtosis. DCC persistence is a heuristic read off the autocorrelation
of cross-product innovations, with the residual covariance as long-run target.
"""

import logging
import math
import warnings
from dataclasses import dataclass

import numpy as np
import pandas as pd
from arch import arch_model
from scipy import stats

from coe_autocall.engine import DCCParams, GarchParams, InnovationDist

logger = logging.getLogger(__name__)

PERCENT_SCALE = 100.0
DEFAULT_NU = 8.0
MIN_NU = 2.5
MAX_NU = 30.0
MIN_OBS_FOR_DCC_HEURISTIC = 20
SHORT_SAMPLE_DCC = (0.03, 0.95)


@dataclass(frozen=True)
class GarchFit:
    symbol: str
    params: GarchParams
    conditional_volatility: np.ndarray  # decimal, aligned with the fitted returns


def estimate_nu_from_data(returns: np.ndarray) -> float:
    """Student-t nu matching the sample kurtosis K = 3(nu-2)/(nu-4).

    Returns the default when the sample is not fatter-tailed than a normal.
    """
    kurt = float(stats.kurtosis(np.asarray(returns, dtype=float), fisher=False))
    if not math.isfinite(kurt) or kurt <= 3.0:
        return DEFAULT_NU
    nu = (4.0 * kurt - 6.0) / (kurt - 3.0)
    return max(MIN_NU, min(MAX_NU, nu))


def fit_garch(
    returns: pd.Series | np.ndarray,
    innovation_dist: InnovationDist = InnovationDist.NORMAL,
    symbol: str = "",
) -> GarchFit:
    r = np.asarray(returns, dtype=float)
    if len(r) < 30:
        raise ValueError(f"{symbol or 'series'}: need at least 30 returns, got {len(r)}")

    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        model = arch_model(
            r * PERCENT_SCALE, vol="Garch", p=1, q=1, mean="Constant", dist="normal"
        )
        result = model.fit(disp="off", show_warning=False)

    params = result.params
    nu = math.nan
    if innovation_dist == InnovationDist.STUDENT:
        nu = estimate_nu_from_data(r)

    garch = GarchParams(
        omega=float(params["omega"]) / PERCENT_SCALE**2,
        alpha=float(params["alpha[1]"]),
        beta=float(params["beta[1]"]),
        mu=float(params["mu"]) / PERCENT_SCALE,
        sigma2_0=float(np.var(r, ddof=1)),
        nu=nu,
        innovation_dist=innovation_dist,
    )
    logger.info(
        "GARCH %s: omega=%.3e alpha=%.4f beta=%.4f persistence=%.4f nu=%s",
        symbol, garch.omega, garch.alpha, garch.beta, garch.persistence,
        f"{nu:.2f}" if math.isfinite(nu) else "-",
    )
    return GarchFit(
        symbol=symbol,
        params=garch,
        conditional_volatility=np.asarray(result.conditional_volatility, dtype=float) / PERCENT_SCALE,
    )


def fit_all_garch(
    returns: pd.DataFrame,
    innovation_dist: InnovationDist = InnovationDist.NORMAL,
) -> tuple[list[GarchFit], np.ndarray]:
    """Fit every column on the dates common to all assets.

    Returns the fits in column order and the aligned (T, N) return matrix.
    """
    aligned = returns.dropna(how="any")
    fits = [fit_garch(aligned[col], innovation_dist, symbol=str(col)) for col in aligned.columns]
    return fits, aligned.to_numpy(dtype=float)


def standardised_residuals(fits: list[GarchFit], returns_mat: np.ndarray) -> np.ndarray:
    t = returns_mat.shape[0]
    z = np.empty_like(returns_mat, dtype=float)
    for j, fit in enumerate(fits):
        condstd = fit.conditional_volatility[-t:]
        z[:, j] = (returns_mat[:, j] - fit.params.mu) / condstd
    return z


def fit_dcc(residuals: np.ndarray) -> DCCParams:
    z = np.asarray(residuals, dtype=float)
    t, n = z.shape
    q_bar = np.cov(z, rowvar=False).reshape(n, n)

    if t <= MIN_OBS_FOR_DCC_HEURISTIC or n < 2:
        a, b = SHORT_SAMPLE_DCC
    else:
        upper = np.triu_indices(n, k=1)
        # mean off-diagonal cross-product surprise per day
        innovations = np.array([
            (np.outer(z[i], z[i]) - q_bar)[upper].mean() for i in range(1, t)
        ])
        acf1 = float(np.corrcoef(innovations[:-1], innovations[1:])[0, 1])
        if not math.isfinite(acf1):
            acf1 = 0.0
        acf1 = max(0.0, min(0.99, acf1))
        b = 0.90 + 0.08 * acf1
        a = min(0.05, (1.0 - b) * 0.5)

    logger.info("DCC parameters: a=%.3f b=%.3f (T=%d, N=%d)", a, b, t, n)
    return DCCParams(a=a, b=b, q_bar=(q_bar + q_bar.T) / 2)
