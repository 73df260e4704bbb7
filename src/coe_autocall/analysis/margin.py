"""Bank margin analysis for the autocall note.

The bank sells the note for its principal and must fund the mean present
value of the payoff. Margin is computed from the seller's side, net of
operational cost, a fixed risk buffer and the cost of unexpected-loss capital.
"""

import logging
from dataclasses import dataclass, field, replace
from enum import Enum

import numpy as np

from coe_autocall.analysis.fair_coupon import FairCouponSolver, breakeven_coupon
from coe_autocall.engine import AutocallConfig
from coe_autocall.engine.simulator import PathSimulator, SimulationResult
from coe_autocall.market.curves import shift_curve

logger = logging.getLogger(__name__)

DEFAULT_VOL_SHOCKS = (-0.3, 0.0, 0.5)
DEFAULT_CORRELATION_SHOCKS = (-0.2, 0.0, 0.3)
DEFAULT_RATE_SHOCKS = (-0.02, 0.0, 0.02)


# ---------------------------------------------------------------------------
# Unexpected-loss capital
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RiskMetrics:
    expected_loss: float
    var_at_confidence: float
    unexpected_loss: float
    regulatory_capital: float
    loss_probability: float
    avg_loss_given_loss: float
    expected_shortfall: float


def compute_unexpected_loss(
    present_values: np.ndarray,
    principal: float,
    confidence: float = 0.975,
    multiplier: float = 1.0,
    floor_rate: float = 0.03,
) -> RiskMetrics:
    """Unexpected-loss capital from the bank's per-path margin.

    Args:
        present_values: PV of the note payoff per path (domestic currency)
        principal: Amount received when selling the note
        confidence: VaR confidence level
        multiplier: Regulatory multiplier applied to the unexpected loss
        floor_rate: Capital floor as a fraction of principal

    Returns:
        RiskMetrics. Losses are max(PV - principal, 0); VaR is the loss at the
        (1 - confidence) quantile of the margin; expected shortfall is the mean
        loss over the paths at or beyond that quantile.
    """
    margin = principal - np.asarray(present_values, dtype=float)
    losses = np.maximum(-margin, 0.0)
    loss_probability = float(np.mean(margin < 0))

    if loss_probability == 0.0:
        expected_loss = var = unexpected = avg_loss = shortfall = 0.0
    else:
        expected_loss = float(np.mean(losses))
        avg_loss = float(np.mean(losses[losses > 0]))
        tail_quantile = float(np.quantile(margin, 1.0 - confidence))
        var = max(-tail_quantile, 0.0)
        unexpected = max(var - expected_loss, 0.0)
        shortfall = max(-float(np.mean(margin[margin <= tail_quantile])), 0.0)

    capital = max(unexpected * multiplier, principal * floor_rate)
    return RiskMetrics(
        expected_loss=expected_loss,
        var_at_confidence=var,
        unexpected_loss=unexpected,
        regulatory_capital=capital,
        loss_probability=loss_probability,
        avg_loss_given_loss=avg_loss,
        expected_shortfall=shortfall,
    )


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


class Competitiveness(str, Enum):
    VERY_COMPETITIVE = "very competitive"
    COMPETITIVE = "competitive"
    NOT_COMPETITIVE = "not competitive"


def classify_competitiveness(
    offered_coupon: float, benchmark: float, band: float = 0.03
) -> Competitiveness:
    if offered_coupon > benchmark + band:
        return Competitiveness.VERY_COMPETITIVE
    if offered_coupon > benchmark:
        return Competitiveness.COMPETITIVE
    return Competitiveness.NOT_COMPETITIVE


@dataclass(frozen=True)
class MarginCosts:
    operational: float
    risk_buffer: float
    capital: float

    @property
    def total(self) -> float:
        return self.operational + self.risk_buffer + self.capital


@dataclass(frozen=True)
class BankMarginAnalysis:
    offered_coupon: float
    fair_coupon: float
    principal: float
    coe_market_price: float
    fair_market_price: float

    gross_spread: float
    margin_absolute: float
    margin_percentage: float

    operational_costs: float
    risk_buffer: float
    capital_cost: float
    regulatory_capital: float
    net_margin: float

    margin_volatility: float
    var_confidence_level: float
    var_at_confidence: float
    expected_shortfall: float
    raroc: float

    break_even_coupon: float
    competitive_benchmark: float
    market_competitiveness: Competitiveness
    scenarios: dict[str, float] = field(default_factory=dict)

    solver_converged: bool = True
    risk: RiskMetrics | None = None

    @property
    def total_costs(self) -> float:
        return self.operational_costs + self.risk_buffer + self.capital_cost

    @property
    def is_profitable(self) -> bool:
        return self.net_margin > 0


# ---------------------------------------------------------------------------
# Analyzer
# ---------------------------------------------------------------------------


class BankMarginAnalyzer:
    """Fair coupon, offered-coupon distribution, costs, capital and scenarios."""

    def __init__(
        self,
        simulator: PathSimulator,
        solver: FairCouponSolver,
        num_paths: int = 20_000,
        seed: int = 1,
        operational_cost_rate: float = 0.005,
        risk_buffer_rate: float = 0.01,
        cost_of_capital: float = 0.15,
        capital_confidence: float = 0.975,
        capital_multiplier: float = 1.0,
        capital_floor_rate: float = 0.03,
        benchmark_spread: float = 0.02,
        competitive_band: float = 0.03,
        stress_vol_multiplier: float = 1.5,
        optimistic_vol_multiplier: float = 0.7,
        scenario_paths: int = 10_000,
    ):
        self.simulator = simulator
        self.solver = solver
        self.num_paths = num_paths
        self.seed = seed
        self.operational_cost_rate = operational_cost_rate
        self.risk_buffer_rate = risk_buffer_rate
        self.cost_of_capital = cost_of_capital
        self.capital_confidence = capital_confidence
        self.capital_multiplier = capital_multiplier
        self.capital_floor_rate = capital_floor_rate
        self.benchmark_spread = benchmark_spread
        self.competitive_band = competitive_band
        self.stress_vol_multiplier = stress_vol_multiplier
        self.optimistic_vol_multiplier = optimistic_vol_multiplier
        self.scenario_paths = scenario_paths

    def risk_metrics(self, result: SimulationResult, principal: float) -> RiskMetrics:
        return compute_unexpected_loss(
            result.present_values,
            principal,
            confidence=self.capital_confidence,
            multiplier=self.capital_multiplier,
            floor_rate=self.capital_floor_rate,
        )

    def costs(self, config: AutocallConfig, risk: RiskMetrics) -> MarginCosts:
        return MarginCosts(
            operational=config.principal * self.operational_cost_rate * config.years,
            risk_buffer=config.principal * self.risk_buffer_rate,
            capital=risk.regulatory_capital * self.cost_of_capital,
        )

    def net_margin(
        self,
        simulator: PathSimulator,
        config: AutocallConfig,
        offered_coupon: float,
        num_paths: int | None = None,
    ) -> float:
        """Net margin of the offered coupon under one simulator/deal variant."""
        offered = config.with_flat_coupon(offered_coupon)
        result = simulator.run(offered, num_paths or self.scenario_paths, seed=self.seed)
        costs = self.costs(offered, self.risk_metrics(result, offered.principal))
        return offered.principal - result.mean_price - costs.total

    def scenario_margins(
        self, config: AutocallConfig, total_costs: float
    ) -> dict[str, float]:
        """Margin after costs under base, stressed and optimistic volatility.

        All scenarios share the seed, so differences come from the shock only.
        """
        multipliers = {
            "base": 1.0,
            "stress": self.stress_vol_multiplier,
            "optimistic": self.optimistic_vol_multiplier,
        }
        margins = {}
        for name, multiplier in multipliers.items():
            simulator = self.simulator
            if multiplier != 1.0:
                simulator = simulator.with_volatility_multiplier(multiplier)
            result = simulator.run(config, self.scenario_paths, seed=self.seed)
            margins[name] = config.principal - result.mean_price - total_costs
            logger.debug("Scenario %s (vol x%.2f): margin %.2f", name, multiplier, margins[name])
        return margins

    def analyze(self, config: AutocallConfig, offered_coupon: float = 0.088) -> BankMarginAnalysis:
        principal = config.principal
        logger.info(
            "Bank margin analysis: offered coupon %.2f%%, principal %.2f, %d paths",
            offered_coupon * 100, principal, self.num_paths,
        )

        ensembles = self.solver.presimulate(config)
        fair = self.solver.solve(config, target_price=principal, ensembles=ensembles)

        offered = config.with_flat_coupon(offered_coupon)
        result = self.simulator.run(offered, self.num_paths, seed=self.seed)
        market_price = result.mean_price

        margin_absolute = principal - market_price
        risk = self.risk_metrics(result, principal)
        costs = self.costs(offered, risk)
        net_margin = margin_absolute - costs.total

        scenarios = self.scenario_margins(offered, costs.total)
        margin_volatility = abs(scenarios["stress"] - scenarios["optimistic"]) / 2

        _, validation = ensembles
        break_even = breakeven_coupon(validation, principal - costs.total, self.solver.bounds)
        if break_even is None:
            logger.warning("Breakeven coupon not bracketed in %s, using fair coupon", self.solver.bounds)
            break_even = fair.fair_coupon

        benchmark = config.rf_rate + self.benchmark_spread
        analysis = BankMarginAnalysis(
            offered_coupon=offered_coupon,
            fair_coupon=fair.fair_coupon,
            principal=principal,
            coe_market_price=market_price,
            fair_market_price=fair.final_price,
            gross_spread=offered_coupon - fair.fair_coupon,
            margin_absolute=margin_absolute,
            margin_percentage=margin_absolute / principal,
            operational_costs=costs.operational,
            risk_buffer=costs.risk_buffer,
            capital_cost=costs.capital,
            regulatory_capital=risk.regulatory_capital,
            net_margin=net_margin,
            margin_volatility=margin_volatility,
            var_confidence_level=self.capital_confidence,
            var_at_confidence=risk.var_at_confidence,
            expected_shortfall=risk.expected_shortfall,
            raroc=net_margin / risk.regulatory_capital,
            break_even_coupon=break_even,
            competitive_benchmark=benchmark,
            market_competitiveness=classify_competitiveness(
                offered_coupon, benchmark, self.competitive_band
            ),
            scenarios=scenarios,
            solver_converged=fair.converged,
            risk=risk,
        )

        logger.info(
            "Margin: fair coupon %.2f%%, market price %.2f, gross %.2f, net %.2f, RAROC %.1f%% (%s)",
            fair.fair_coupon * 100, market_price, margin_absolute, net_margin,
            analysis.raroc * 100, analysis.market_competitiveness.value,
        )
        return analysis

    def sensitivity(
        self,
        config: AutocallConfig,
        offered_coupon: float = 0.088,
        vol_shocks: tuple[float, ...] = DEFAULT_VOL_SHOCKS,
        correlation_shocks: tuple[float, ...] = DEFAULT_CORRELATION_SHOCKS,
        rate_shocks: tuple[float, ...] = DEFAULT_RATE_SHOCKS,
    ) -> dict[str, dict[float, float]]:
        """Net margin under re-simulated volatility, correlation and rate shocks.

        Volatility shocks are relative (-0.3 means 70% of the fitted vol),
        correlation shocks are added to the long-run off-diagonal correlations
        and rate shocks shift both curves in parallel.
        """
        results: dict[str, dict[float, float]] = {"volatility": {}, "correlation": {}, "rates": {}}

        for shock in vol_shocks:
            simulator = self.simulator.with_volatility_multiplier(1.0 + shock)
            results["volatility"][shock] = self.net_margin(simulator, config, offered_coupon)

        for shock in correlation_shocks:
            simulator = self.simulator.with_correlation_shift(shock)
            results["correlation"][shock] = self.net_margin(simulator, config, offered_coupon)

        for shock in rate_shocks:
            shocked = replace(
                config,
                domestic_curve=shift_curve(config.domestic_curve, shock),
                foreign_curve=shift_curve(config.foreign_curve, shock),
                rf_rate=config.rf_rate + shock,
            )
            results["rates"][shock] = self.net_margin(self.simulator, shocked, offered_coupon)

        for factor, margins in results.items():
            logger.info(
                "Sensitivity to %s: %s", factor,
                ", ".join(f"{k:+.2f} -> {v:.2f}" for k, v in margins.items()),
            )
        return results
