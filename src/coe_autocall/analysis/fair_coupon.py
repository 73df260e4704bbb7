"""Fair coupon search over pre-simulated path ensembles.

Autocall timing depends on prices only, so two ensembles are simulated once
(a small exploration set and a large validation set) and every candidate
coupon is then priced in closed form:

    price(c) = mean_i[ principal * (1 + c * k_i) * df_i ]

with k_i the call period of path i (0 when it matures) and df_i its
present-value factor. Differential evolution minimises |price(c) - target| /
target; candidates that look promising on the exploration set are re-scored
on the validation set so Monte Carlo noise on the cheap set cannot win.
"""

import logging
import math
from dataclasses import dataclass
from typing import Sequence

import numpy as np
from scipy.optimize import brentq, differential_evolution

from coe_autocall.engine import AutocallConfig
from coe_autocall.engine.payoff import PreSimulatedPath
from coe_autocall.engine.simulator import PathSimulator

logger = logging.getLogger(__name__)

DEFAULT_BOUNDS = (0.0, 0.5)


def calculate_price_from_presimulated(
    presimulated_paths: Sequence[PreSimulatedPath],
    coupons: Sequence[float],
    principal: float,
) -> float:
    """Mean present value of the note for a coupon schedule.

    Called paths pay principal plus the coupons of periods 1..k; matured
    paths pay principal only.
    """
    total_pv = 0.0
    for path in presimulated_paths:
        if path.autocall_period > 0:
            nominal = principal * (1.0 + sum(coupons[: path.autocall_period]))
        else:
            nominal = principal
        total_pv += nominal * path.pv_discount_factor
    return total_pv / len(presimulated_paths)


class PresimulatedEnsemble:
    """Array view of pre-simulated paths for vectorised re-pricing."""

    def __init__(self, paths: Sequence[PreSimulatedPath], principal: float, num_observations: int):
        if not paths:
            raise ValueError("Empty pre-simulated ensemble")
        self.paths = list(paths)
        self.principal = principal
        self.num_observations = num_observations
        self.periods = np.array([p.autocall_period for p in paths], dtype=int)
        self.pv_factors = np.array([p.pv_discount_factor for p in paths], dtype=float)

    def __len__(self) -> int:
        return len(self.paths)

    def price(self, coupons: Sequence[float]) -> float:
        # cumulative[0] = 0 covers the matured paths
        cumulative = np.concatenate(([0.0], np.cumsum(coupons)))
        nominal = self.principal * (1.0 + cumulative[self.periods])
        return float(np.mean(nominal * self.pv_factors))

    def price_flat(self, coupon_rate: float) -> float:
        return self.price(np.full(self.num_observations, coupon_rate))


@dataclass
class ValidatedCandidate:
    coupon: float
    error: float


class CandidateEvaluator:
    """Two-tier objective: cheap exploration pricing, precise re-validation.

    A candidate is re-priced on the validation ensemble when fewer than
    ``min_validated`` candidates were validated so far, or when its
    exploration error is below the ``validation_quantile`` of the validated
    errors. Only the ``keep_best`` validated candidates are retained.

    Once ``max_evaluations`` candidates were priced, further calls return
    ``inf`` without pricing.
    """

    def __init__(
        self,
        exploration: PresimulatedEnsemble,
        validation: PresimulatedEnsemble,
        target_price: float,
        validation_quantile: float = 0.7,
        min_validated: int = 3,
        keep_best: int = 10,
        max_evaluations: int | None = None,
    ):
        self.exploration = exploration
        self.validation = validation
        self.target_price = target_price
        self.validation_quantile = validation_quantile
        self.min_validated = min_validated
        self.keep_best = keep_best
        self.max_evaluations = max_evaluations
        self.candidates: list[ValidatedCandidate] = []
        self.evaluations = 0
        self.validations = 0

    def relative_error(self, price: float) -> float:
        return abs(price - self.target_price) / self.target_price

    def fast_price(self, coupon: float) -> float:
        return self.exploration.price_flat(coupon)

    def precise_price(self, coupon: float) -> float:
        return self.validation.price_flat(coupon)

    def is_promising(self, fast_error: float) -> bool:
        if len(self.candidates) < self.min_validated:
            return True
        threshold = np.quantile([c.error for c in self.candidates], self.validation_quantile)
        return fast_error < threshold

    @property
    def exhausted(self) -> bool:
        return self.max_evaluations is not None and self.evaluations >= self.max_evaluations

    def __call__(self, x) -> float:
        if self.exhausted:
            return math.inf
        coupon = float(np.atleast_1d(x)[0])
        self.evaluations += 1

        fast_error = self.relative_error(self.fast_price(coupon))
        if not self.is_promising(fast_error):
            return fast_error

        precise_error = self.relative_error(self.precise_price(coupon))
        self.validations += 1
        self.candidates.append(ValidatedCandidate(coupon, precise_error))
        if len(self.candidates) > self.keep_best:
            self.candidates.sort(key=lambda c: c.error)
            del self.candidates[self.keep_best:]

        logger.debug("Validated candidate %.4f%% -> error %.4f%%",
                     coupon * 100, precise_error * 100)
        return precise_error

    @property
    def best_candidate(self) -> ValidatedCandidate | None:
        if not self.candidates:
            return None
        return min(self.candidates, key=lambda c: c.error)


@dataclass(frozen=True)
class FairCouponResult:
    fair_coupon: float  # per observation period
    final_price: float
    target_price: float
    iterations: int
    converged: bool
    validated_candidates: int = 0

    @property
    def final_error(self) -> float:
        return abs(self.final_price - self.target_price)


def breakeven_coupon(
    ensemble: PresimulatedEnsemble,
    target_price: float,
    bounds: tuple[float, float] = DEFAULT_BOUNDS,
) -> float | None:
    """Coupon whose ensemble price equals ``target_price``; None if not bracketed."""
    lower, upper = bounds

    def _gap(coupon: float) -> float:
        return ensemble.price_flat(coupon) - target_price

    gap_lower, gap_upper = _gap(lower), _gap(upper)
    if gap_lower == 0:
        return lower
    if gap_upper == 0:
        return upper
    if np.sign(gap_lower) == np.sign(gap_upper):
        return None
    return float(brentq(_gap, lower, upper, xtol=1e-10))


class FairCouponSolver:
    def __init__(
        self,
        simulator: PathSimulator,
        exploration_paths: int = 5_000,
        validation_paths: int = 20_000,
        max_evaluations: int = 60,
        tolerance: float = 1.0,
        bounds: tuple[float, float] = DEFAULT_BOUNDS,
        population_size: int = 12,
        validation_quantile: float = 0.7,
        min_validated: int = 3,
        keep_best: int = 10,
        seed: int = 7,
        presimulation_seed: int = 1,
    ):
        if max_evaluations < 1:
            raise ValueError("max_evaluations must be at least 1")
        self.simulator = simulator
        self.exploration_paths = exploration_paths
        self.validation_paths = validation_paths
        self.max_evaluations = max_evaluations
        self.tolerance = tolerance
        self.bounds = bounds
        self.population_size = population_size
        self.validation_quantile = validation_quantile
        self.min_validated = min_validated
        self.keep_best = keep_best
        self.seed = seed
        self.presimulation_seed = presimulation_seed

    def presimulate(
        self, config: AutocallConfig
    ) -> tuple[PresimulatedEnsemble, PresimulatedEnsemble]:
        """Generate the exploration and validation ensembles in one parallel batch.

        Paths 1..exploration_paths form the exploration set and the rest the
        validation set. Path seeds are consecutive, so the validation seeds
        start at ``presimulation_seed + exploration_paths`` and the two
        ensembles share no path.
        """
        logger.info(
            "Pre-simulating %d exploration and %d validation paths",
            self.exploration_paths, self.validation_paths,
        )
        paths = self.simulator.presimulate(
            config, self.exploration_paths + self.validation_paths, self.presimulation_seed
        )
        exploration = paths[: self.exploration_paths]
        validation = paths[self.exploration_paths :]

        n_obs = config.num_observations
        return (
            PresimulatedEnsemble(exploration, config.principal, n_obs),
            PresimulatedEnsemble(validation, config.principal, n_obs),
        )

    def solve(
        self,
        config: AutocallConfig,
        target_price: float | None = None,
        ensembles: tuple[PresimulatedEnsemble, PresimulatedEnsemble] | None = None,
    ) -> FairCouponResult:
        """Find the flat per-period coupon that prices the note at ``target_price``.

        Never raises on non-convergence: check ``FairCouponResult.converged``.
        """
        if target_price is None:
            target_price = config.principal
        if ensembles is None:
            ensembles = self.presimulate(config)
        exploration, validation = ensembles

        evaluator = CandidateEvaluator(
            exploration,
            validation,
            target_price,
            validation_quantile=self.validation_quantile,
            min_validated=self.min_validated,
            keep_best=self.keep_best,
            max_evaluations=self.max_evaluations,
        )

        # scipy evaluates max(5, popsize) members up front for one dimension;
        # members past the budget score inf and never become the optimum
        popsize = max(5, min(self.population_size, self.max_evaluations))
        generations = max(1, -(-self.max_evaluations // popsize) - 1)

        def _stop_at_budget(intermediate_result):
            if evaluator.exhausted:
                raise StopIteration

        logger.info(
            "Searching fair coupon in [%.2f%%, %.2f%%] for target %.2f "
            "(budget %d evaluations, population %d)",
            self.bounds[0] * 100, self.bounds[1] * 100, target_price,
            self.max_evaluations, popsize,
        )
        optimum = differential_evolution(
            evaluator,
            bounds=[self.bounds],
            strategy="rand1bin",
            popsize=popsize,
            maxiter=generations,
            init="latinhypercube",
            polish=False,
            rng=self.seed,
            callback=_stop_at_budget,
        )

        final_coupon = float(optimum.x[0])
        best = evaluator.best_candidate
        if best is not None and best.error < optimum.fun:
            final_coupon = best.coupon
            logger.debug("Using best validated candidate (error %.4f%%)", best.error * 100)

        final_price = evaluator.precise_price(final_coupon)
        converged = abs(final_price - target_price) <= self.tolerance
        result = FairCouponResult(
            fair_coupon=final_coupon,
            final_price=final_price,
            target_price=target_price,
            iterations=evaluator.evaluations,
            converged=converged,
            validated_candidates=evaluator.validations,
        )

        logger.info(
            "Fair coupon %.3f%% -> price %.2f (error %.2f, %d evaluations, %d validated)",
            final_coupon * 100, final_price, result.final_error,
            result.iterations, evaluator.validations,
        )
        if not converged:
            logger.warning(
                "Fair coupon search missed tolerance %.2f (error %.2f)",
                self.tolerance, result.final_error,
            )
        return result
