"""Tests for CSV/JSON result export."""

import json

import pandas as pd
import pytest

from coe_autocall.analysis.margin import BankMarginAnalysis, Competitiveness
from coe_autocall.reporting.export import (
    create_results_directory,
    export_margin,
    export_simulation,
    survival_frame,
)

SYMBOLS = ["AAA", "BBB", "CCC", "DDD"]


@pytest.fixture
def analysis():
    return BankMarginAnalysis(
        offered_coupon=0.05,
        fair_coupon=0.04,
        principal=1000.0,
        coe_market_price=990.0,
        fair_market_price=1000.0,
        gross_spread=0.01,
        margin_absolute=10.0,
        margin_percentage=0.01,
        operational_costs=1.0,
        risk_buffer=2.0,
        capital_cost=3.0,
        regulatory_capital=20.0,
        net_margin=4.0,
        margin_volatility=1.5,
        var_confidence_level=0.975,
        var_at_confidence=12.0,
        expected_shortfall=15.0,
        raroc=0.2,
        break_even_coupon=0.045,
        competitive_benchmark=0.12,
        market_competitiveness=Competitiveness.NOT_COMPETITIVE,
        scenarios={"base": 4.0, "stress": 2.0, "optimistic": 5.0},
    )


class TestResultsDirectory:
    def test_timestamped(self, tmp_path):
        out = create_results_directory(tmp_path, "bank_margin")
        assert out.is_dir()
        assert out.parent == tmp_path
        assert out.name.startswith("bank_margin_")


class TestExportSimulation:
    def test_files_and_columns(self, simulator, small_config, tmp_path):
        result = simulator.run(small_config, num_paths=30, seed=4, num_detailed_samples=2)
        written = export_simulation(result, small_config, SYMBOLS, tmp_path)

        assert {p.name for p in written} == {
            "summary.csv",
            "payoff_distribution.csv",
            "survival_probabilities.csv",
            "detailed_samples.csv",
            "detailed_timelines.json",
        }

        summary = pd.read_csv(tmp_path / "summary.csv").set_index("metric")["value"]
        assert summary["mean_price"] == pytest.approx(result.mean_price)
        assert summary["num_paths"] == 30

        payoffs = pd.read_csv(tmp_path / "payoff_distribution.csv")
        assert list(payoffs.columns) == [
            "path_id", "payoff_pv", "payoff_nominal", "autocall_period", "autocall_day", "autocalled",
        ]
        assert len(payoffs) == 30

        samples = pd.read_csv(tmp_path / "detailed_samples.csv")
        assert len(samples) == 2
        assert {"initial_AAA", "final_DDD", "fx_forward_rate"} <= set(samples.columns)

        timelines = json.loads((tmp_path / "detailed_timelines.json").read_text())
        assert [t["path_id"] for t in timelines] == [1, 2]
        assert timelines[0]["timeline"][0].startswith("Start")

    def test_no_samples(self, simulator, small_config, tmp_path):
        result = simulator.run(small_config, num_paths=10, seed=4)
        written = export_simulation(result, small_config, SYMBOLS, tmp_path)
        assert len(written) == 3
        assert not (tmp_path / "detailed_samples.csv").exists()

    def test_survival_frame(self, simulator, small_config):
        result = simulator.run(small_config, num_paths=40, seed=4)
        frame = survival_frame(result, small_config)
        assert list(frame["day"]) == [21, 42, 63, 84]
        assert frame["autocalls_count"].sum() == (result.exercise_periods > 0).sum()
        assert frame["cumulative_autocall_probability"].iloc[-1] == pytest.approx(
            result.autocall_probability
        )


class TestExportMargin:
    def test_files(self, analysis, tmp_path):
        sensitivity = {"volatility": {-0.3: 6.0, 0.5: 1.0}, "rates": {0.02: 5.0}}
        written = export_margin(analysis, tmp_path, sensitivity)
        assert [p.name for p in written] == [
            "bank_margin_analysis.csv", "margin_scenarios.csv", "margin_sensitivity.csv",
        ]

        metrics = pd.read_csv(tmp_path / "bank_margin_analysis.csv").set_index("metric")["value"]
        assert metrics["market_competitiveness"] == "not competitive"
        assert float(metrics["total_costs"]) == pytest.approx(6.0)
        assert "scenarios" not in metrics.index

        scenarios = pd.read_csv(tmp_path / "margin_scenarios.csv")
        assert list(scenarios["scenario"]) == ["base", "stress", "optimistic"]

        shocks = pd.read_csv(tmp_path / "margin_sensitivity.csv")
        assert len(shocks) == 3
        assert set(shocks["factor"]) == {"volatility", "rates"}

    def test_without_sensitivity(self, analysis, tmp_path):
        assert len(export_margin(analysis, tmp_path)) == 2
