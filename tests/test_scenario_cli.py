"""Tests for scenario files and the click CLI."""

import json
from datetime import date
from pathlib import Path

import numpy as np
import pandas as pd
import pytest
from click.testing import CliRunner
from pydantic import ValidationError

from coe_autocall import __main__ as cli_module
from coe_autocall.__main__ import cli
from coe_autocall.engine import InnovationDist
from coe_autocall.market import tiingo_client
from coe_autocall.market.curves import FlatCurve, InterpolatedCurve, NSSCurve
from coe_autocall.scenario import Scenario, demo_scenario, load_scenario


@pytest.fixture(autouse=True)
def quiet_logging(monkeypatch):
    # dictConfig would bind handlers to the runner's temporary streams
    monkeypatch.setattr(cli_module, "setup_logging", lambda *args, **kwargs: None)


@pytest.fixture
def runner():
    return CliRunner()


def small_scenario_dict(**deal) -> dict:
    data = demo_scenario().model_dump(mode="json")
    data["deal"].update({"obs_spacing_days": 21, "horizon_days": 63, "principal": 1000.0}, **deal)
    return data


def normal_scenario_dict(residual_nu=None, **deal) -> dict:
    data = small_scenario_dict(**deal)
    for g in data["garch"]:
        g.update(nu=None, innovation_dist="normal")
    data["residual_nu"] = residual_nu
    return data


class FakeTiingoClient:
    """Student-t(6) daily returns, 500 business days, seeded by ticker."""

    def __init__(self, *args, **kwargs):
        pass

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        pass

    def get_history(self, ticker, years_back, end):
        rng = np.random.default_rng(sum(map(ord, ticker)))
        returns = rng.standard_t(6, 500) * 0.015
        index = pd.bdate_range(end=end, periods=500)
        return pd.Series(100.0 * np.exp(np.cumsum(returns)), index=index, name=ticker)


# ---------------------------------------------------------------------------
# Scenario model
# ---------------------------------------------------------------------------

class TestScenario:
    def test_demo_builds_engine_inputs(self):
        scenario = demo_scenario()
        config = scenario.autocall_config()

        assert scenario.symbols == ["AMD", "AMZN", "META", "TSM"]
        assert len(config.coupons) == 10
        assert set(config.coupons) == {0.088}
        assert config.obs_schedule[-1] == 1260
        assert config.fx_spot == 5.0
        assert config.principal == 5000.0
        assert isinstance(config.domestic_curve, NSSCurve)
        assert isinstance(config.foreign_curve, InterpolatedCurve)

        models = scenario.volatility_models()
        assert all(m.innovation_dist == InnovationDist.STUDENT for m in models)
        assert scenario.correlation().dimension == 4

    def test_json_round_trip(self, tmp_path):
        path = tmp_path / "demo.json"
        path.write_text(demo_scenario().model_dump_json())
        assert load_scenario(path) == demo_scenario()

    def test_normal_garch_has_nan_nu(self):
        data = small_scenario_dict()
        for g in data["garch"]:
            g.update(nu=None, innovation_dist="normal")
        models = Scenario.model_validate(data).volatility_models()
        assert all(np.isnan(m.nu) for m in models)

    def test_degrees_of_freedom(self):
        assert Scenario.model_validate(normal_scenario_dict(residual_nu=4.5)).degrees_of_freedom() == 4.5
        assert Scenario.model_validate(normal_scenario_dict()).degrees_of_freedom() is None

        student = small_scenario_dict()
        student["residual_nu"] = 4.5
        assert Scenario.model_validate(student).degrees_of_freedom() is None

    def test_rejects_infinite_variance_residual_nu(self):
        with pytest.raises(ValidationError):
            Scenario.model_validate(normal_scenario_dict(residual_nu=2.0))

    def test_fx_spot_estimated_when_missing(self):
        data = small_scenario_dict(fx_spot=None)
        data["foreign_curve"] = {"kind": "flat", "rate": 0.05}
        config = Scenario.model_validate(data).autocall_config(dampening_factor=0.0)
        assert config.fx_spot == pytest.approx(5.0)
        assert isinstance(config.foreign_curve, FlatCurve)

    def test_explicit_coupon_schedule(self):
        data = small_scenario_dict(coupons=[0.01, 0.02, 0.03])
        assert Scenario.model_validate(data).autocall_config().coupons == (0.01, 0.02, 0.03)

    def test_garch_count_mismatch(self):
        data = small_scenario_dict()
        data["garch"] = data["garch"][:3]
        with pytest.raises(ValidationError, match="3 GARCH entries"):
            Scenario.model_validate(data)

    def test_q_bar_shape(self):
        data = small_scenario_dict()
        data["dcc"]["q_bar"] = [[1.0, 0.5], [0.5, 1.0]]
        with pytest.raises(ValidationError, match="4x4"):
            Scenario.model_validate(data)

    def test_table_curve_needs_points(self):
        data = small_scenario_dict()
        data["foreign_curve"] = {"kind": "table"}
        with pytest.raises(ValidationError):
            Scenario.model_validate(data)

    def test_rejects_non_positive_price(self):
        data = small_scenario_dict()
        data["underlyings"][0]["price0"] = 0.0
        with pytest.raises(ValidationError):
            Scenario.model_validate(data)


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

class TestCli:
    def _write(self, data, name="scenario.json") -> str:
        with open(name, "w", encoding="utf-8") as f:
            json.dump(data, f)
        return name

    def test_price(self, runner):
        with runner.isolated_filesystem():
            path = self._write(small_scenario_dict())
            result = runner.invoke(
                cli, ["price", "-s", path, "--paths", "20", "--workers", "1", "--samples", "0"]
            )
        assert result.exit_code == 0, result.output
        assert "Mean price:" in result.output
        assert "Autocall probability:" in result.output
        assert "period  3" in result.output

    def test_price_export(self, runner):
        with runner.isolated_filesystem():
            path = self._write(small_scenario_dict())
            result = runner.invoke(
                cli,
                ["price", "-s", path, "-n", "10", "--workers", "1", "--samples", "2",
                 "--export", "out"],
            )
            assert result.exit_code == 0, result.output
            written = list(Path("out").glob("simulation_*/*"))
            names = {p.name for p in written}
        assert {"summary.csv", "payoff_distribution.csv", "detailed_samples.csv"} <= names

    def test_invalid_scenario(self, runner):
        with runner.isolated_filesystem():
            data = small_scenario_dict()
            data["garch"] = data["garch"][:2]
            path = self._write(data)
            result = runner.invoke(cli, ["price", "-s", path])
        assert result.exit_code == 2
        assert "Invalid scenario" in result.output

    def test_engine_rejection_is_usage_error(self, runner):
        with runner.isolated_filesystem():
            path = self._write(small_scenario_dict(horizon_days=64))
            result = runner.invoke(cli, ["price", "-s", path, "-n", "5"])
        assert result.exit_code == 2

    def test_fair_coupon(self, runner):
        with runner.isolated_filesystem():
            path = self._write(small_scenario_dict())
            result = runner.invoke(
                cli,
                ["fair-coupon", "-s", path, "--exploration-paths", "20", "--validation-paths", "40",
                 "--max-evaluations", "24", "--workers", "1"],
            )
        assert result.exit_code == 0, result.output
        assert "Fair coupon:" in result.output
        assert "Converged:" in result.output

    def test_margin(self, runner):
        with runner.isolated_filesystem():
            path = self._write(small_scenario_dict())
            result = runner.invoke(
                cli,
                ["margin", "-s", path, "--offered-coupon", "0.03", "-n", "20", "--scenario-paths", "10",
                 "--exploration-paths", "20", "--validation-paths", "40", "--workers", "1"],
            )
        assert result.exit_code == 0, result.output
        assert "RAROC:" in result.output
        assert "scenario stress" in result.output

    def test_calibrate(self, runner, monkeypatch):
        monkeypatch.setattr(tiingo_client, "TiingoClient", FakeTiingoClient)
        with runner.isolated_filesystem():
            result = runner.invoke(
                cli, ["calibrate", "AAA", "BBB", "--end", "2024-03-21", "-o", "calibrated.json"]
            )
            assert result.exit_code == 0, result.output
            scenario = load_scenario("calibrated.json")

        assert "Calibrated 2 assets on 499 days" in result.output
        assert scenario.symbols == ["AAA", "BBB"]
        assert scenario.name == f"calibrated_{date(2024, 3, 21).isoformat()}"
        assert all(g.innovation_dist == InnovationDist.STUDENT for g in scenario.garch)
        assert len(scenario.dcc.q_bar) == 2
        assert scenario.residual_nu is None

    def test_calibrate_normal_feeds_residual_nu_to_pricing(self, runner, monkeypatch):
        monkeypatch.setattr(tiingo_client, "TiingoClient", FakeTiingoClient)
        with runner.isolated_filesystem():
            result = runner.invoke(
                cli, ["calibrate", "AAA", "BBB", "--normal", "--end", "2024-03-21", "-o", "cal.json"]
            )
            assert result.exit_code == 0, result.output
            data = json.loads(Path("cal.json").read_text())
            data["deal"].update(obs_spacing_days=21, horizon_days=63, principal=1000.0)
            path = self._write(data)
            priced = runner.invoke(cli, ["price", "-s", path, "-n", "5", "--workers", "1", "--samples", "0"])

        nu = data["residual_nu"]
        assert all(g["innovation_dist"] == "normal" for g in data["garch"])
        assert 3.0 <= nu <= 30.0
        assert f"Residual nu:   {nu:.2f}" in result.output
        assert priced.exit_code == 0, priced.output
        assert f"Degrees of freedom:    {nu:.2f}" in priced.output

    def test_price_uses_residual_nu_for_normal_fits(self, runner):
        with runner.isolated_filesystem():
            normal = self._write(normal_scenario_dict(residual_nu=4.5), "normal.json")
            student = small_scenario_dict()
            student["residual_nu"] = 4.5
            student = self._write(student, "student.json")
            args = ["-n", "5", "--workers", "1", "--samples", "0"]
            normal_result = runner.invoke(cli, ["price", "-s", normal, *args])
            student_result = runner.invoke(cli, ["price", "-s", student, *args])

        assert "Degrees of freedom:    4.50" in normal_result.output
        # Student-t fits take priority over the residual estimate
        assert "Degrees of freedom:    8.00" in student_result.output
