"""DCC-GARCH Monte Carlo path simulator for the autocall note.

Each path evolves N log-prices day by day under the USD risk-neutral measure:
per-asset GARCH(1,1) variance, DCC(1,1) correlation restarted from the
long-run matrix at t=1, Student-t innovations. Observation dates are handed to
the payoff state machine and the path stops as soon as the note is called.

Path ``i`` (1-based) draws from its own generator seeded ``seed + i - 1``, so
results do not depend on the number of worker processes.
"""

import logging
from concurrent.futures import ProcessPoolExecutor
from dataclasses import dataclass

import numpy as np

from coe_autocall.engine import (
    AutocallConfig,
    DCCParams,
    Discounting,
    GarchParams,
    UnderlyingSpec,
    validate_market_inputs,
)
from coe_autocall.engine.correlation import (
    DEFAULT_DOF,
    correlated_shocks,
    correlation_from_q,
    dcc_update,
    resolve_degrees_of_freedom,
)
from coe_autocall.engine.payoff import (
    AutocallPayoffEngine,
    DetailedSample,
    PathOutcome,
    PreSimulatedPath,
)
from coe_autocall.engine.volatility import (
    VolatilityBank,
    daily_foreign_rates,
    risk_neutral_drift,
    scale_volatility,
    standardise,
)

logger = logging.getLogger(__name__)

DEFAULT_NUM_PATHS = 20_000
DEFAULT_MAX_WORKERS = 4
CHUNKS_PER_WORKER = 4


@dataclass(frozen=True)
class SimulationResult:
    """Payoff distribution of one Monte Carlo run (domestic currency)."""

    present_values: np.ndarray
    nominal_payoffs: np.ndarray
    exercise_periods: np.ndarray  # 0 = matured
    exercise_days: np.ndarray
    survival_probabilities: np.ndarray  # length n_obs + 1, starts at 1.0
    degrees_of_freedom: float
    degenerate_correlation_steps: int
    seed: int
    detailed_samples: tuple[DetailedSample, ...] | None = None

    @property
    def num_paths(self) -> int:
        return len(self.present_values)

    @property
    def mean_price(self) -> float:
        return float(np.mean(self.present_values))

    @property
    def stderr(self) -> float:
        if self.num_paths < 2:
            return 0.0
        return float(np.std(self.present_values, ddof=1) / np.sqrt(self.num_paths))

    @property
    def confidence_interval(self) -> tuple[float, float]:
        q05, q95 = np.quantile(self.present_values, [0.05, 0.95])
        return float(q05), float(q95)

    @property
    def exercise_probabilities(self) -> np.ndarray:
        """P(called at period k) for k=1..n_obs."""
        n_obs = len(self.survival_probabilities) - 1
        counts = np.bincount(self.exercise_periods, minlength=n_obs + 1)[1:]
        return counts / self.num_paths

    @property
    def autocall_probability(self) -> float:
        return float(np.mean(self.exercise_periods > 0))


def survival_curve(exercise_periods: np.ndarray, num_observations: int) -> np.ndarray:
    """Fraction of paths not yet called after each observation (matured paths survive)."""
    periods = np.asarray(exercise_periods)
    survival = np.ones(num_observations + 1)
    for period in range(1, num_observations + 1):
        survived = np.sum(periods == 0) + np.sum(periods > period)
        survival[period] = survived / len(periods)
    return survival


def _simulate_chunk(
    simulator: "PathSimulator",
    engine: AutocallPayoffEngine,
    daily_rf: np.ndarray,
    path_ids: list[int],
    seed: int,
    num_detailed_samples: int,
) -> list[PathOutcome]:
    """Picklable worker for ProcessPoolExecutor: one contiguous block of paths."""
    return [
        simulator.simulate_path(
            engine, daily_rf, pid, seed + pid - 1, track=pid <= num_detailed_samples
        )
        for pid in path_ids
    ]


class PathSimulator:
    """Runs the DCC-GARCH dynamics and feeds observations to the payoff engine.

    Model parameters are read-only; all mutable state (prices, variances,
    previous shocks, Q) is local to ``simulate_path``.
    """

    def __init__(
        self,
        specs: list[UnderlyingSpec],
        volatility_models: list[GarchParams],
        correlation: DCCParams,
        dof: float | None = None,
        residuals: np.ndarray | None = None,
        default_dof: float = DEFAULT_DOF,
        max_workers: int = DEFAULT_MAX_WORKERS,
    ):
        validate_market_inputs(specs, volatility_models, correlation)
        self.specs = list(specs)
        self.volatility_models = list(volatility_models)
        self.correlation = correlation
        self.max_workers = max(1, max_workers)
        if dof is None:
            dof = resolve_degrees_of_freedom(self.volatility_models, residuals, default_dof)
        self.dof = float(dof)
        if self.dof <= 2.0:
            logger.warning("Student-t nu=%.2f has no finite variance, simulating normal shocks", self.dof)
        self._bank = VolatilityBank.from_models(self.volatility_models, self.specs)

    # ------------------------------------------------------------------
    # Scenario variants
    # ------------------------------------------------------------------

    def with_volatility_multiplier(self, vol_multiplier: float) -> "PathSimulator":
        return PathSimulator(
            self.specs,
            scale_volatility(self.volatility_models, vol_multiplier),
            self.correlation,
            dof=self.dof,
            max_workers=self.max_workers,
        )

    def with_correlation_shift(self, correlation_shift: float) -> "PathSimulator":
        return PathSimulator(
            self.specs,
            self.volatility_models,
            self.correlation.shifted(correlation_shift),
            dof=self.dof,
            max_workers=self.max_workers,
        )

    # ------------------------------------------------------------------
    # Single path
    # ------------------------------------------------------------------

    def simulate_path(
        self,
        engine: AutocallPayoffEngine,
        daily_rf: np.ndarray,
        path_id: int,
        seed: int,
        track: bool = False,
    ) -> PathOutcome:
        rng = np.random.default_rng(seed)
        bank = self._bank
        dcc = self.correlation
        n = len(self.specs)

        prices = engine.initial_prices.copy()
        h = bank.sigma2_0.copy()
        eps_prev = np.zeros(n)
        q = dcc.q_bar
        degenerate_steps = 0

        path = engine.start_path(path_id, seed, track)

        for t in range(1, engine.horizon_days + 1):
            if t > 1:
                q = dcc_update(dcc, q, standardise(eps_prev, h))
            shocks, degenerate = correlated_shocks(correlation_from_q(q), rng, self.dof)
            if degenerate:
                degenerate_steps += 1

            h = bank.step(eps_prev, h)
            sigma = np.sqrt(h)
            drift = risk_neutral_drift(daily_rf[t - 1], bank.daily_dividend, h)
            eps_prev = sigma * shocks
            prices = prices * np.exp(drift + eps_prev)

            period = engine.period_by_day.get(t)
            if period is not None and path.observe(period, t, prices):
                break

        return path.finish(degenerate_steps)

    # ------------------------------------------------------------------
    # Ensembles
    # ------------------------------------------------------------------

    def run_outcomes(
        self,
        config: AutocallConfig,
        num_paths: int = DEFAULT_NUM_PATHS,
        seed: int = 1,
        discounting: Discounting = Discounting.DUAL_CURRENCY,
        num_detailed_samples: int = 0,
    ) -> list[PathOutcome]:
        """Simulate ``num_paths`` paths and return their outcomes ordered by path id."""
        if num_paths <= 0:
            raise ValueError("num_paths must be positive")

        engine = AutocallPayoffEngine(self.specs, config, discounting)
        daily_rf = daily_foreign_rates(config.foreign_curve, config.horizon_days)

        path_ids = list(range(1, num_paths + 1))
        workers = min(self.max_workers, num_paths)

        if workers == 1:
            outcomes = _simulate_chunk(self, engine, daily_rf, path_ids, seed, num_detailed_samples)
        else:
            chunks = np.array_split(np.array(path_ids), min(num_paths, workers * CHUNKS_PER_WORKER))
            outcomes = []
            with ProcessPoolExecutor(max_workers=workers) as executor:
                futures = [
                    executor.submit(
                        _simulate_chunk, self, engine, daily_rf, chunk.tolist(),
                        seed, num_detailed_samples,
                    )
                    for chunk in chunks
                ]
                # chunks are contiguous, collect them in submission order
                for future in futures:
                    outcomes.extend(future.result())

        degenerate = sum(o.degenerate_steps for o in outcomes)
        if degenerate:
            logger.warning(
                "%d degenerate correlation steps fell back to independent normals (%d paths)",
                degenerate, num_paths,
            )
        return outcomes

    def run(
        self,
        config: AutocallConfig,
        num_paths: int = DEFAULT_NUM_PATHS,
        seed: int = 1,
        discounting: Discounting = Discounting.DUAL_CURRENCY,
        num_detailed_samples: int = 0,
    ) -> SimulationResult:
        """Full payoff distribution under the coupons in ``config``."""
        logger.info(
            "Simulating %d paths: %d assets, %d observations, horizon %d days, nu=%.2f, workers=%d",
            num_paths, len(self.specs), config.num_observations, config.horizon_days,
            self.dof, self.max_workers,
        )
        outcomes = self.run_outcomes(config, num_paths, seed, discounting, num_detailed_samples)

        exercise_periods = np.array([o.exercise_period for o in outcomes], dtype=int)
        samples = None
        if num_detailed_samples > 0:
            samples = tuple(o.sample for o in outcomes if o.sample is not None)

        result = SimulationResult(
            present_values=np.array([o.present_value for o in outcomes]),
            nominal_payoffs=np.array([o.nominal_payoff for o in outcomes]),
            exercise_periods=exercise_periods,
            exercise_days=np.array([o.exercise_day for o in outcomes], dtype=int),
            survival_probabilities=survival_curve(exercise_periods, config.num_observations),
            degrees_of_freedom=self.dof,
            degenerate_correlation_steps=sum(o.degenerate_steps for o in outcomes),
            seed=seed,
            detailed_samples=samples,
        )
        logger.info(
            "Simulation done: mean PV %.2f (stderr %.2f), autocall probability %.1f%%",
            result.mean_price, result.stderr, result.autocall_probability * 100,
        )
        return result

    def presimulate(
        self,
        config: AutocallConfig,
        num_paths: int = DEFAULT_NUM_PATHS,
        seed: int = 1,
    ) -> list[PreSimulatedPath]:
        """Coupon-independent timing and discount factors for fast re-pricing."""
        outcomes = self.run_outcomes(config, num_paths, seed)
        return [PreSimulatedPath.from_outcome(o) for o in outcomes]
