"""Zero-rate curves used for the drift and the discounting of the note.

Two families share one contract, ``rate(T)`` and ``discount_factor(T)``:

- ``NSSCurve``: domestic (BRL) Nelson-Siegel-Svensson parametric curve.
- ``InterpolatedCurve`` / ``FlatCurve``: foreign (USD) Treasury table or constant.

All rates are continuously compounded, maturities are in years.
"""

import logging
import math
from dataclasses import dataclass, field, replace
from datetime import date
from pathlib import Path
from typing import Protocol

import numpy as np
import pandas as pd
from scipy.interpolate import interp1d

from coe_autocall.engine import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_PRICING_DATE = date(2024, 3, 21)

# Treasury par yields around 2024-03-21, already treated as continuous rates
USD_TREASURY_2024_03_21 = {
    0.25: 0.0525,
    0.5: 0.0535,
    1.0: 0.0510,
    2.0: 0.0465,
    3.0: 0.0435,
    5.0: 0.0420,
    7.0: 0.0425,
    10.0: 0.0435,
    20.0: 0.0455,
    30.0: 0.0445,
}
USD_FALLBACK_FLAT_RATE = 0.045


class YieldCurve(Protocol):
    def rate(self, maturity: float) -> float: ...

    def discount_factor(self, maturity: float) -> float: ...


def _discount(rate: float, maturity: float) -> float:
    if maturity <= 0:
        return 1.0
    return math.exp(-rate * maturity)


# ---------------------------------------------------------------------------
# Domestic curve
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class NSSCurve:
    """Nelson-Siegel-Svensson zero curve.

    r(T) = b0 + b1*L1(T) + b2*(L1(T) - exp(-T/tau1)) + b3*(L2(T) - exp(-T/tau2))
    with L_i(T) = (1 - exp(-T/tau_i)) / (T/tau_i).
    """

    beta0: float  # long-term level
    beta1: float  # slope
    beta2: float  # short-term curvature
    beta3: float  # long-term curvature
    tau1: float
    tau2: float
    pricing_date: date = DEFAULT_PRICING_DATE

    def __post_init__(self):
        values = (self.beta0, self.beta1, self.beta2, self.beta3, self.tau1, self.tau2)
        if not all(math.isfinite(v) for v in values):
            raise ConfigurationError("NSS parameters must be finite")
        if self.tau1 <= 0 or self.tau2 <= 0:
            raise ConfigurationError(
                f"NSS decay constants must be positive (tau1={self.tau1}, tau2={self.tau2})"
            )

    def rate(self, maturity: float, continuous: bool = True) -> float:
        if maturity <= 0:
            # Instantaneous forward limit
            r = self.beta0 + self.beta1
        else:
            x1 = maturity / self.tau1
            x2 = maturity / self.tau2
            e1 = math.exp(-x1)
            e2 = math.exp(-x2)
            loading1 = (1 - e1) / x1
            loading2 = loading1 - e1
            loading3 = (1 - e2) / x2 - e2
            r = self.beta0 + self.beta1 * loading1 + self.beta2 * loading2 + self.beta3 * loading3

        if not continuous:
            r = math.exp(r) - 1
        return r

    def discount_factor(self, maturity: float) -> float:
        return _discount(self.rate(maturity), maturity)

    def forward_rate(self, t1: float, t2: float) -> float:
        """Continuously compounded forward rate between two tenors."""
        if t2 <= t1:
            raise ValueError("t2 must be greater than t1")
        return -math.log(self.discount_factor(t2) / self.discount_factor(t1)) / (t2 - t1)

    def rate_for_date(self, target_date: date) -> float:
        years = (target_date - self.pricing_date).days / 365.25
        if years < 0:
            raise ValueError("Target date cannot be before pricing date")
        return self.rate(years)

    def term_structure(
        self, max_years: float = 30.0, step: float = 0.25
    ) -> tuple[np.ndarray, np.ndarray]:
        maturities = np.arange(step, max_years + step / 2, step)
        rates = np.array([self.rate(float(t)) for t in maturities])
        return maturities, rates

    def shifted(self, delta: float) -> "NSSCurve":
        """Parallel shift: the level factor loads 1 on every tenor."""
        return replace(self, beta0=self.beta0 + delta)

    @classmethod
    def from_csv(cls, csv_path: str | Path, target_date: date) -> "NSSCurve":
        """Load calibrated parameters for one date.

        Expects columns: Data, Sucesso, Beta0, Beta1, Beta2, Beta3, Tau1, Tau2.
        """
        csv_path = Path(csv_path)
        if not csv_path.is_file():
            raise ConfigurationError(f"NSS calibration file not found: {csv_path}")

        df = pd.read_csv(csv_path)
        df["Data"] = pd.to_datetime(df["Data"]).dt.date
        success = df["Sucesso"].astype(str).str.lower().isin(("true", "1"))
        rows = df[(df["Data"] == target_date) & success]
        if rows.empty:
            raise ConfigurationError(
                f"No successful NSS calibration for {target_date} in {csv_path}"
            )

        row = rows.iloc[0]
        return cls(
            beta0=float(row["Beta0"]),
            beta1=float(row["Beta1"]),
            beta2=float(row["Beta2"]),
            beta3=float(row["Beta3"]),
            tau1=float(row["Tau1"]),
            tau2=float(row["Tau2"]),
            pricing_date=target_date,
        )

    @classmethod
    def flat(cls, rate: float, pricing_date: date = DEFAULT_PRICING_DATE) -> "NSSCurve":
        return cls(rate, 0.0, 0.0, 0.0, 1.0, 5.0, pricing_date)

    @classmethod
    def brazil_example(cls) -> "NSSCurve":
        """Illustrative BRL parameters (level ~11.65%, inverted front end)."""
        return cls(
            beta0=0.1165,
            beta1=-0.02,
            beta2=-0.03,
            beta3=0.01,
            tau1=2.0,
            tau2=5.0,
            pricing_date=DEFAULT_PRICING_DATE,
        )


# ---------------------------------------------------------------------------
# Foreign curve
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class InterpolatedCurve:
    """Piecewise-linear zero curve over a maturity table, linearly extrapolated."""

    maturities: tuple[float, ...]
    rates: tuple[float, ...]
    pricing_date: date = DEFAULT_PRICING_DATE
    _interpolator: interp1d = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        if len(self.maturities) != len(self.rates):
            raise ConfigurationError(
                f"Curve table mismatch: {len(self.maturities)} maturities, {len(self.rates)} rates"
            )
        if len(self.maturities) < 2:
            raise ConfigurationError("Curve table needs at least two points")
        m = np.asarray(self.maturities, dtype=float)
        r = np.asarray(self.rates, dtype=float)
        if not (np.all(np.isfinite(m)) and np.all(np.isfinite(r))):
            raise ConfigurationError("Curve table must be finite")
        if np.any(m <= 0) or np.any(np.diff(m) <= 0):
            raise ConfigurationError("Curve maturities must be positive and strictly increasing")

        object.__setattr__(self, "maturities", tuple(float(x) for x in m))
        object.__setattr__(self, "rates", tuple(float(x) for x in r))
        object.__setattr__(
            self, "_interpolator", interp1d(m, r, kind="linear", fill_value="extrapolate")
        )

    def __reduce__(self):
        # rebuilt from the table in worker processes
        return InterpolatedCurve, (self.maturities, self.rates, self.pricing_date)

    def rate(self, maturity: float) -> float:
        if maturity <= 0:
            return self.rates[0]
        return float(self._interpolator(maturity))

    def discount_factor(self, maturity: float) -> float:
        return _discount(self.rate(maturity), maturity)

    def shifted(self, delta: float) -> "InterpolatedCurve":
        return InterpolatedCurve(
            self.maturities, tuple(r + delta for r in self.rates), self.pricing_date
        )


@dataclass(frozen=True)
class FlatCurve:
    constant_rate: float
    pricing_date: date = DEFAULT_PRICING_DATE

    def __post_init__(self):
        if not math.isfinite(self.constant_rate):
            raise ConfigurationError("Flat curve rate must be finite")

    def rate(self, maturity: float) -> float:
        return self.constant_rate

    def discount_factor(self, maturity: float) -> float:
        return _discount(self.constant_rate, maturity)

    def shifted(self, delta: float) -> "FlatCurve":
        return FlatCurve(self.constant_rate + delta, self.pricing_date)


def load_usd_curve(pricing_date: date = DEFAULT_PRICING_DATE) -> InterpolatedCurve:
    """USD Treasury curve for the pricing date.

    Only 2024-03-21 has a stored table; any other date gets a flat 4.5% curve.
    """
    if pricing_date == DEFAULT_PRICING_DATE:
        table = USD_TREASURY_2024_03_21
        return InterpolatedCurve(tuple(table), tuple(table.values()), pricing_date)

    logger.warning(
        "No USD curve stored for %s, using flat %.2f%%",
        pricing_date, USD_FALLBACK_FLAT_RATE * 100,
    )
    maturities = tuple(USD_TREASURY_2024_03_21)
    return InterpolatedCurve(
        maturities, tuple(USD_FALLBACK_FLAT_RATE for _ in maturities), pricing_date
    )


def shift_curve(curve: YieldCurve, delta: float) -> YieldCurve:
    """Parallel-shift any curve family in this module."""
    if delta == 0:
        return curve
    shifter = getattr(curve, "shifted", None)
    if shifter is None:
        raise TypeError(f"{type(curve).__name__} does not support parallel shifts")
    return shifter(delta)
