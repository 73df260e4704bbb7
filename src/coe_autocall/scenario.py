"""Scenario files: market inputs and deal terms for one pricing run.

A scenario is a JSON document validated with pydantic and converted into the
engine's parameter records. ``demo_scenario`` is the built-in four-stock
example (AMD, AMZN, META, TSM) with illustrative GARCH/DCC parameters.
"""

import logging
import math
from datetime import date
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, model_validator

from coe_autocall.engine import (
    AutocallConfig,
    DCCParams,
    GarchParams,
    InnovationDist,
    UnderlyingSpec,
)
from coe_autocall.market.curves import (
    DEFAULT_PRICING_DATE,
    FlatCurve,
    InterpolatedCurve,
    NSSCurve,
    YieldCurve,
    load_usd_curve,
)
from coe_autocall.market.fx import (
    DEFAULT_DAMPENING_FACTOR,
    DEFAULT_REFERENCE_FX,
    DEFAULT_REFERENCE_TENOR,
    estimate_fx_spot_from_curves,
)

logger = logging.getLogger(__name__)


class UnderlyingInput(BaseModel):
    symbol: str
    price0: float = Field(gt=0, description="Initial (strike) price")
    has_dividend_yield: bool = False
    dividend_yield: float = Field(0.0, ge=0, description="Continuous annual yield")

    def to_spec(self) -> UnderlyingSpec:
        return UnderlyingSpec(self.symbol, self.price0, self.has_dividend_yield, self.dividend_yield)


class GarchInput(BaseModel):
    omega: float = Field(ge=0)
    alpha: float = Field(ge=0)
    beta: float = Field(ge=0)
    mu: float = 0.0
    sigma2_0: float = Field(ge=0, description="Initial daily variance")
    nu: float | None = None
    innovation_dist: InnovationDist = InnovationDist.NORMAL

    def to_params(self) -> GarchParams:
        return GarchParams(
            omega=self.omega,
            alpha=self.alpha,
            beta=self.beta,
            mu=self.mu,
            sigma2_0=self.sigma2_0,
            nu=math.nan if self.nu is None else self.nu,
            innovation_dist=self.innovation_dist,
        )


class DCCInput(BaseModel):
    a: float = Field(ge=0)
    b: float = Field(ge=0)
    q_bar: list[list[float]]

    def to_params(self) -> DCCParams:
        return DCCParams(self.a, self.b, self.q_bar)


class DomesticCurveInput(BaseModel):
    """NSS parameters, or a calibration CSV to read them from."""

    csv_path: Path | None = None
    pricing_date: date = DEFAULT_PRICING_DATE
    beta0: float = 0.1165
    beta1: float = -0.02
    beta2: float = -0.03
    beta3: float = 0.01
    tau1: float = Field(2.0, gt=0)
    tau2: float = Field(5.0, gt=0)

    def to_curve(self) -> NSSCurve:
        if self.csv_path is not None:
            return NSSCurve.from_csv(self.csv_path, self.pricing_date)
        return NSSCurve(
            self.beta0, self.beta1, self.beta2, self.beta3, self.tau1, self.tau2, self.pricing_date
        )


class ForeignCurveInput(BaseModel):
    kind: Literal["treasury", "table", "flat"] = "treasury"
    pricing_date: date = DEFAULT_PRICING_DATE
    maturities: list[float] | None = None
    rates: list[float] | None = None
    rate: float | None = None

    @model_validator(mode="after")
    def _check_kind(self):
        if self.kind == "table" and (self.maturities is None or self.rates is None):
            raise ValueError("table curve needs maturities and rates")
        if self.kind == "flat" and self.rate is None:
            raise ValueError("flat curve needs a rate")
        return self

    def to_curve(self) -> YieldCurve:
        if self.kind == "table":
            return InterpolatedCurve(tuple(self.maturities), tuple(self.rates), self.pricing_date)
        if self.kind == "flat":
            return FlatCurve(self.rate, self.pricing_date)
        return load_usd_curve(self.pricing_date)


class DealInput(BaseModel):
    coupon: float = Field(0.088, ge=0, description="Flat coupon per observation period")
    coupons: list[float] | None = None
    obs_spacing_days: int = Field(126, gt=0)
    horizon_days: int = Field(1260, gt=0)
    principal: float = Field(5000.0, gt=0)
    rf_rate: float = 0.10
    fx_spot: float | None = Field(None, gt=0, description="BRL per USD; estimated when absent")


class Scenario(BaseModel):
    name: str = "scenario"
    underlyings: list[UnderlyingInput] = Field(min_length=1)
    garch: list[GarchInput]
    dcc: DCCInput
    domestic_curve: DomesticCurveInput = Field(default_factory=DomesticCurveInput)
    foreign_curve: ForeignCurveInput = Field(default_factory=ForeignCurveInput)
    deal: DealInput = Field(default_factory=DealInput)
    residual_nu: float | None = Field(
        None, gt=2, description="Student-t nu estimated from standardised residuals of normal fits",
    )

    @model_validator(mode="after")
    def _check_alignment(self):
        n = len(self.underlyings)
        if len(self.garch) != n:
            raise ValueError(f"{len(self.garch)} GARCH entries for {n} underlyings")
        if len(self.dcc.q_bar) != n or any(len(row) != n for row in self.dcc.q_bar):
            raise ValueError(f"q_bar must be {n}x{n}")
        return self

    @property
    def symbols(self) -> list[str]:
        return [u.symbol for u in self.underlyings]

    def specs(self) -> list[UnderlyingSpec]:
        return [u.to_spec() for u in self.underlyings]

    def volatility_models(self) -> list[GarchParams]:
        return [g.to_params() for g in self.garch]

    def correlation(self) -> DCCParams:
        return self.dcc.to_params()

    def degrees_of_freedom(self) -> float | None:
        """Simulation nu, or None to let the simulator take it from Student-t fits or its default."""
        if any(g.innovation_dist == InnovationDist.STUDENT for g in self.garch):
            return None
        return self.residual_nu

    def autocall_config(
        self,
        reference_fx: float = DEFAULT_REFERENCE_FX,
        reference_tenor: float = DEFAULT_REFERENCE_TENOR,
        dampening_factor: float = DEFAULT_DAMPENING_FACTOR,
    ) -> AutocallConfig:
        deal = self.deal
        domestic = self.domestic_curve.to_curve()
        foreign = self.foreign_curve.to_curve()

        fx_spot = deal.fx_spot
        if fx_spot is None:
            fx_spot = estimate_fx_spot_from_curves(
                domestic, foreign, reference_fx, reference_tenor, dampening_factor
            )

        n_obs = deal.horizon_days // deal.obs_spacing_days
        coupons = deal.coupons if deal.coupons is not None else [deal.coupon] * n_obs
        return AutocallConfig(
            coupons=tuple(coupons),
            obs_spacing_days=deal.obs_spacing_days,
            horizon_days=deal.horizon_days,
            principal=deal.principal,
            rf_rate=deal.rf_rate,
            domestic_curve=domestic,
            foreign_curve=foreign,
            fx_spot=fx_spot,
        )


def load_scenario(path: str | Path) -> Scenario:
    scenario = Scenario.model_validate_json(Path(path).read_text(encoding="utf-8"))
    logger.info("Loaded scenario %r (%s)", scenario.name, ", ".join(scenario.symbols))
    return scenario


def demo_scenario() -> Scenario:
    """AMD/AMZN/META/TSM note, ten semiannual observations over five years.

    Prices are illustrative closes around 2024-03-21; every asset shares the
    same Student-t GARCH(1,1) and pairwise long-run correlation 0.5.
    """
    prices = {"AMD": 178.68, "AMZN": 178.15, "META": 507.76, "TSM": 139.50}
    n = len(prices)
    garch = GarchInput(
        omega=1e-4, alpha=0.05, beta=0.90, sigma2_0=4e-4,
        nu=8.0, innovation_dist=InnovationDist.STUDENT,
    )
    q_bar = [[1.0 if i == j else 0.5 for j in range(n)] for i in range(n)]
    return Scenario(
        name="demo",
        underlyings=[UnderlyingInput(symbol=s, price0=p) for s, p in prices.items()],
        garch=[garch] * n,
        dcc=DCCInput(a=0.01, b=0.95, q_bar=q_bar),
        deal=DealInput(fx_spot=5.0),
    )
