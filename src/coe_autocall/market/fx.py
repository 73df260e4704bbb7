"""Covered interest parity for the BRL/USD pair."""

import logging
import math

from coe_autocall.market.curves import YieldCurve

logger = logging.getLogger(__name__)

DEFAULT_REFERENCE_FX = 5.0
DEFAULT_REFERENCE_TENOR = 1.0
DEFAULT_DAMPENING_FACTOR = 0.3


def fx_forward_rate(spot: float, r_domestic: float, r_foreign: float, tau: float) -> float:
    """Forward price of one unit of foreign currency, in domestic currency.

    F = spot * exp((r_domestic - r_foreign) * tau), rates continuous, tau in years.
    """
    return spot * math.exp((r_domestic - r_foreign) * tau)


def estimate_fx_spot_from_curves(
    domestic_curve: YieldCurve,
    foreign_curve: YieldCurve,
    reference_fx: float = DEFAULT_REFERENCE_FX,
    reference_tenor: float = DEFAULT_REFERENCE_TENOR,
    dampening_factor: float = DEFAULT_DAMPENING_FACTOR,
) -> float:
    """Heuristic spot estimate when no market quote is supplied.

    Anchors on ``reference_fx`` and tilts it by a dampened share of the rate
    differential at ``reference_tenor``. This is a fallback for offline runs and
    carries no guarantee of matching the market spot.
    """
    r_dom = domestic_curve.rate(reference_tenor)
    r_for = foreign_curve.rate(reference_tenor)
    adjusted_differential = (r_dom - r_for) * dampening_factor
    estimate = reference_fx * math.exp(adjusted_differential * reference_tenor)

    logger.info(
        "Estimated FX spot %.4f from curves (r_dom=%.4f, r_for=%.4f, dampening=%.2f)",
        estimate, r_dom, r_for, dampening_factor,
    )
    return estimate
