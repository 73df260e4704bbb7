"""Autocall observation state machine and cash-flow discounting.

Each path starts ALIVE. At every observation date the coupon of that period
accrues; if every underlying is at or above its initial price the note is
called (EXERCISED) and pays principal * (1 + accrued coupons). A path still
ALIVE at the horizon MATURES and pays principal only: coupons accrued along
the way are forfeited. Both terminal states are absorbing.
"""

import logging
from dataclasses import dataclass
from enum import Enum

import numpy as np

from coe_autocall.engine import (
    TRADING_DAYS_PER_YEAR,
    AutocallConfig,
    Discounting,
    UnderlyingSpec,
)
from coe_autocall.market.fx import fx_forward_rate

logger = logging.getLogger(__name__)


class PathState(str, Enum):
    ALIVE = "alive"
    EXERCISED = "exercised"
    MATURED = "matured"


# ---------------------------------------------------------------------------
# Discounting
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CashflowDiscount:
    """Everything needed to bring a domestic cash flow paid on ``day`` to today."""

    day: int
    tau: float
    fx_forward: float
    discount_factor: float  # foreign (dual-currency) or domestic, per mode
    pv_factor: float  # present value per unit of domestic nominal
    mode: Discounting

    def present_value(self, nominal: float, fx_spot: float) -> float:
        if self.mode == Discounting.DUAL_CURRENCY:
            # domestic -> foreign at the forward, discount in USD, back at spot
            return nominal / self.fx_forward * self.discount_factor * fx_spot
        return nominal * self.discount_factor


def discount_cashflow(
    config: AutocallConfig,
    day: int,
    mode: Discounting = Discounting.DUAL_CURRENCY,
) -> CashflowDiscount:
    tau = day / TRADING_DAYS_PER_YEAR
    r_dom = config.domestic_curve.rate(tau)
    r_for = config.foreign_curve.rate(tau)
    fwd = fx_forward_rate(config.fx_spot, r_dom, r_for, tau)

    if mode == Discounting.DUAL_CURRENCY:
        df = config.foreign_curve.discount_factor(tau)
        pv_factor = df * config.fx_spot / fwd
    else:
        df = config.domestic_curve.discount_factor(tau)
        pv_factor = df

    return CashflowDiscount(
        day=day, tau=tau, fx_forward=fwd, discount_factor=df, pv_factor=pv_factor, mode=mode
    )


# ---------------------------------------------------------------------------
# Path outputs
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DetailedSample:
    """Full trace of one tracked path, for reports and debugging."""

    path_id: int
    seed_used: int
    autocall_period: int
    autocall_day: int
    obs_dates: tuple[int, ...]
    initial_prices: np.ndarray
    prices_at_obs: np.ndarray  # (n_obs, n_assets), zero rows after exercise
    coupon_payments: np.ndarray  # coupon accrued at each observation reached
    coupon_accrual: float
    final_payoff_nominal: float
    final_payoff_pv: float
    fx_forward_rate: float
    discount_factor: float
    timeline: tuple[str, ...]


@dataclass(frozen=True)
class PathOutcome:
    path_id: int
    seed_used: int
    state: PathState
    exercise_period: int  # 1-based, 0 when matured
    exercise_day: int  # 0 when matured
    nominal_payoff: float
    present_value: float
    pv_discount_factor: float
    coupon_accrual: float
    accrual_periods: tuple[int, ...]
    degenerate_steps: int = 0
    sample: DetailedSample | None = None


@dataclass(frozen=True)
class PreSimulatedPath:
    """Coupon-independent view of a path: timing and discounting only.

    Whether the note is called depends on prices alone, so the same timing
    can be re-priced under any coupon schedule without re-simulating.
    """

    path_id: int
    autocall_period: int
    autocall_day: int
    pv_discount_factor: float
    coupon_accrual_periods: tuple[int, ...]

    @classmethod
    def from_outcome(cls, outcome: PathOutcome) -> "PreSimulatedPath":
        return cls(
            path_id=outcome.path_id,
            autocall_period=outcome.exercise_period,
            autocall_day=outcome.exercise_day,
            pv_discount_factor=outcome.pv_discount_factor,
            coupon_accrual_periods=outcome.accrual_periods,
        )


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------


def _fmt_prices(prices: np.ndarray) -> str:
    return ", ".join(f"{p:.2f}" for p in prices)


class AutocallPath:
    """Observation state of a single Monte Carlo path."""

    def __init__(self, engine: "AutocallPayoffEngine", path_id: int, seed: int, track: bool):
        self._engine = engine
        self.path_id = path_id
        self.seed = seed
        self.state = PathState.ALIVE
        self.coupon_accrual = 0.0
        self.accrual_periods: list[int] = []
        self.exercise_period = 0
        self.exercise_day = 0
        self._nominal = 0.0
        self._pv = 0.0
        self._discount: CashflowDiscount | None = None

        self._track = track
        if track:
            n_obs = len(engine.obs_schedule)
            self._prices_at_obs = np.zeros((n_obs, len(engine.initial_prices)))
            self._coupon_payments = np.zeros(n_obs)
            self._timeline = [f"Start: prices [{_fmt_prices(engine.initial_prices)}]"]

    @property
    def alive(self) -> bool:
        return self.state == PathState.ALIVE

    def observe(self, period: int, day: int, prices: np.ndarray) -> bool:
        """Apply observation ``period`` (1-based). Returns True once terminal."""
        if not self.alive:
            return True

        engine = self._engine
        coupon = engine.coupons[period - 1]
        self.coupon_accrual += coupon
        self.accrual_periods.append(period)

        if self._track:
            self._prices_at_obs[period - 1] = prices
            self._coupon_payments[period - 1] = coupon

        if np.all(prices >= engine.initial_prices):
            self.state = PathState.EXERCISED
            self.exercise_period = period
            self.exercise_day = day
            self._settle(day)
            if self._track:
                self._timeline.extend([
                    f"Observation {period} (day {day}): prices [{_fmt_prices(prices)}] "
                    f">= initial -> AUTOCALL",
                    f"Coupon {coupon:.2%}, accrued {self.coupon_accrual:.2%}",
                    f"Nominal payoff {self._nominal:.2f}",
                    f"FX forward {self._discount.fx_forward:.4f}, "
                    f"discount factor {self._discount.discount_factor:.4f}",
                    f"Present value {self._pv:.2f}",
                ])
            return True

        if self._track:
            self._timeline.extend([
                f"Observation {period} (day {day}): prices [{_fmt_prices(prices)}] "
                f"below initial [{_fmt_prices(engine.initial_prices)}]",
                f"Coupon accrued {coupon:.2%} (total {self.coupon_accrual:.2%})",
            ])
        return False

    def _settle(self, day: int) -> None:
        engine = self._engine
        if self.state == PathState.EXERCISED:
            self._nominal = engine.principal * (1.0 + self.coupon_accrual)
        else:
            self._nominal = engine.principal
        self._discount = engine.discount_for(day)
        self._pv = self._discount.present_value(self._nominal, engine.fx_spot)

    def finish(self, degenerate_steps: int = 0) -> PathOutcome:
        engine = self._engine
        if self.alive:
            self.state = PathState.MATURED
            self._settle(engine.horizon_days)
            if self._track:
                self._timeline.extend([
                    f"Maturity (day {engine.horizon_days}): no autocall during the term",
                    f"Accrued coupons {self.coupon_accrual:.2%} forfeited",
                    f"Principal repaid {self._nominal:.2f}",
                    f"FX forward {self._discount.fx_forward:.4f}, "
                    f"discount factor {self._discount.discount_factor:.4f}",
                    f"Present value {self._pv:.2f}",
                ])

        sample = None
        if self._track:
            sample = DetailedSample(
                path_id=self.path_id,
                seed_used=self.seed,
                autocall_period=self.exercise_period,
                autocall_day=self.exercise_day,
                obs_dates=engine.obs_schedule,
                initial_prices=engine.initial_prices.copy(),
                prices_at_obs=self._prices_at_obs,
                coupon_payments=self._coupon_payments,
                coupon_accrual=self.coupon_accrual,
                final_payoff_nominal=self._nominal,
                final_payoff_pv=self._pv,
                fx_forward_rate=self._discount.fx_forward,
                discount_factor=self._discount.discount_factor,
                timeline=tuple(self._timeline),
            )

        return PathOutcome(
            path_id=self.path_id,
            seed_used=self.seed,
            state=self.state,
            exercise_period=self.exercise_period,
            exercise_day=self.exercise_day,
            nominal_payoff=self._nominal,
            present_value=self._pv,
            pv_discount_factor=self._discount.pv_factor,
            coupon_accrual=self.coupon_accrual,
            accrual_periods=tuple(self.accrual_periods),
            degenerate_steps=degenerate_steps,
            sample=sample,
        )


class AutocallPayoffEngine:
    """Deal-level payoff rules shared read-only by every path of a run."""

    def __init__(
        self,
        specs: list[UnderlyingSpec],
        config: AutocallConfig,
        discounting: Discounting = Discounting.DUAL_CURRENCY,
    ):
        self.config = config
        self.discounting = discounting
        self.initial_prices = np.array([s.price0 for s in specs], dtype=float)
        self.initial_prices.setflags(write=False)
        self.coupons = config.coupons
        self.obs_schedule = config.obs_schedule
        self.period_by_day = {day: i + 1 for i, day in enumerate(self.obs_schedule)}
        self.principal = config.principal
        self.fx_spot = config.fx_spot
        self.horizon_days = config.horizon_days

        # Cash flows can only land on observation days (the last one is the horizon)
        self._discounts = {
            day: discount_cashflow(config, day, discounting)
            for day in (*self.obs_schedule, config.horizon_days)
        }

    def discount_for(self, day: int) -> CashflowDiscount:
        discount = self._discounts.get(day)
        if discount is None:
            discount = discount_cashflow(self.config, day, self.discounting)
        return discount

    def start_path(self, path_id: int, seed: int, track: bool = False) -> AutocallPath:
        return AutocallPath(self, path_id, seed, track)
