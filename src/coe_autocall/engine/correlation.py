"""DCC(1,1) correlation recursion and heavy-tailed shock generation.

Q_t = (1 - a - b) * Q_bar + a * z_{t-1} z_{t-1}' + b * Q_{t-1}
R_t = D_t Q_t D_t,  D_t = diag(1 / sqrt(diag(Q_t)))
eps_t = chol(R_t) @ z,  z ~ Student-t(nu) scaled to unit variance
"""

import logging
import math

import numpy as np

from coe_autocall.engine import DCCParams, GarchParams, InnovationDist

logger = logging.getLogger(__name__)

DEFAULT_DOF = 8.0
MIN_DOF = 3.0
MAX_DOF = 30.0
MIN_RESIDUALS_FOR_DOF = 10


# ---------------------------------------------------------------------------
# Degrees of freedom
# ---------------------------------------------------------------------------


def estimate_dof(residuals: np.ndarray, default: float = DEFAULT_DOF) -> float:
    """Method-of-moments nu from pooled standardised residuals.

    For a t variable E[z^2] = nu / (nu - 2), hence nu = 2 E[z^2] / (E[z^2] - 1).
    Clamped to [3, 30]; ``default`` when the sample cannot support an estimate.
    """
    z = np.asarray(residuals, dtype=float).ravel()
    z = z[np.isfinite(z)]

    if len(z) < MIN_RESIDUALS_FOR_DOF:
        logger.warning("Too few clean residuals (%d) for nu estimation, using nu=%.1f",
                       len(z), default)
        return default

    mean_sq = float(np.mean(z**2))
    if mean_sq <= 1.0:
        logger.warning("Residual second moment %.4f <= 1, using nu=%.1f", mean_sq, default)
        return default

    nu = 2.0 * mean_sq / (mean_sq - 1.0)
    return float(min(MAX_DOF, max(MIN_DOF, nu)))


def resolve_degrees_of_freedom(
    models: list[GarchParams],
    residuals: np.ndarray | None = None,
    default: float = DEFAULT_DOF,
) -> float:
    """Pick nu: mean of Student-tagged fits, else residual estimate, else default."""
    student_nus = [m.nu for m in models if m.innovation_dist == InnovationDist.STUDENT]
    if student_nus:
        nu = float(np.mean(student_nus))
        logger.info("Using calibrated Student-t nu=%.2f", nu)
        return nu

    if residuals is not None:
        nu = estimate_dof(residuals, default=default)
        logger.info("Using nu=%.2f estimated from standardised residuals", nu)
        return nu

    logger.info("Using default nu=%.1f", default)
    return default


def sample_student_t(rng: np.random.Generator, nu: float, size: int) -> np.ndarray:
    """Unit-variance Student-t draws; standard normal when nu is NaN or <= 2."""
    if not math.isfinite(nu) or nu <= 2.0:
        return rng.standard_normal(size)
    return rng.standard_t(nu, size) / math.sqrt(nu / (nu - 2.0))


# ---------------------------------------------------------------------------
# DCC recursion
# ---------------------------------------------------------------------------


def dcc_update(params: DCCParams, q_prev: np.ndarray, z_prev: np.ndarray) -> np.ndarray:
    return (
        (1.0 - params.a - params.b) * params.q_bar
        + params.a * np.outer(z_prev, z_prev)
        + params.b * q_prev
    )


def correlation_from_q(q: np.ndarray) -> np.ndarray:
    # A drifted Q with a non-positive diagonal yields NaNs, handled downstream
    with np.errstate(invalid="ignore", divide="ignore"):
        d = 1.0 / np.sqrt(np.diag(q))
        return q * np.outer(d, d)


def correlated_shocks(
    r: np.ndarray, rng: np.random.Generator, nu: float
) -> tuple[np.ndarray, bool]:
    """Draw one vector of correlated unit-variance shocks.

    Returns (shocks, degenerate). When R is not positive definite (or not
    finite) the step falls back to independent standard normals and
    ``degenerate`` is True. The Cholesky factorisation runs before any draw,
    so the fallback consumes exactly one normal vector from ``rng``.
    """
    n = r.shape[0]
    if not np.all(np.isfinite(r)):
        return rng.standard_normal(n), True
    try:
        chol = np.linalg.cholesky(r)
    except np.linalg.LinAlgError:
        return rng.standard_normal(n), True
    return chol @ sample_student_t(rng, nu, n), False
