"""CSV/JSON export of simulation and margin results.

Each export goes to its own timestamped directory under ``base_dir``:
summary.csv, payoff_distribution.csv, survival_probabilities.csv and, when
traced paths exist, detailed_samples.csv plus detailed_timelines.json.
Margin runs add bank_margin_analysis.csv, margin_scenarios.csv and
margin_sensitivity.csv.
"""

import json
import logging
from dataclasses import fields
from datetime import datetime
from enum import Enum
from pathlib import Path

import numpy as np
import pandas as pd

from coe_autocall.analysis.margin import BankMarginAnalysis
from coe_autocall.engine import AutocallConfig
from coe_autocall.engine.simulator import SimulationResult

logger = logging.getLogger(__name__)


def create_results_directory(base_dir: str | Path = "results", prefix: str = "simulation") -> Path:
    timestamp = datetime.now().strftime("%Y-%m-%d_%H-%M-%S")
    out = Path(base_dir) / f"{prefix}_{timestamp}"
    out.mkdir(parents=True, exist_ok=True)
    return out


def summary_frame(result: SimulationResult, config: AutocallConfig) -> pd.DataFrame:
    pv = result.present_values
    nominal = result.nominal_payoffs
    q05, q25, q50, q75, q95 = np.quantile(pv, [0.05, 0.25, 0.5, 0.75, 0.95])
    metrics = {
        "mean_price": float(np.mean(pv)),
        "std_price": float(np.std(pv, ddof=1)) if len(pv) > 1 else 0.0,
        "stderr_price": result.stderr,
        "min_price": float(np.min(pv)),
        "max_price": float(np.max(pv)),
        "q05_price": q05,
        "q25_price": q25,
        "q50_price": q50,
        "q75_price": q75,
        "q95_price": q95,
        "mean_nominal": float(np.mean(nominal)),
        "autocall_probability": result.autocall_probability,
        "degrees_of_freedom": result.degrees_of_freedom,
        "degenerate_correlation_steps": result.degenerate_correlation_steps,
        "num_paths": result.num_paths,
        "principal": config.principal,
        "fx_spot": config.fx_spot,
        "horizon_days": config.horizon_days,
        "obs_spacing_days": config.obs_spacing_days,
    }
    return pd.DataFrame({"metric": list(metrics), "value": [float(v) for v in metrics.values()]})


def payoff_frame(result: SimulationResult) -> pd.DataFrame:
    return pd.DataFrame({
        "path_id": np.arange(1, result.num_paths + 1),
        "payoff_pv": result.present_values,
        "payoff_nominal": result.nominal_payoffs,
        "autocall_period": result.exercise_periods,
        "autocall_day": result.exercise_days,
        "autocalled": result.exercise_periods > 0,
    })


def survival_frame(result: SimulationResult, config: AutocallConfig) -> pd.DataFrame:
    n_obs = config.num_observations
    counts = np.bincount(result.exercise_periods, minlength=n_obs + 1)
    periods = np.arange(1, n_obs + 1)
    return pd.DataFrame({
        "period": periods,
        "day": np.array(config.obs_schedule),
        "autocalls_count": counts[1:],
        "autocall_probability": result.exercise_probabilities,
        # probability of still being alive after this observation
        "survival_probability": result.survival_probabilities[1:],
        "cumulative_autocall_probability": np.cumsum(counts[1:]) / result.num_paths,
    })


def detailed_samples_frame(result: SimulationResult, symbols: list[str]) -> pd.DataFrame:
    rows = []
    for sample in result.detailed_samples or ():
        row = {
            "path_id": sample.path_id,
            "seed_used": sample.seed_used,
            "autocall_period": sample.autocall_period,
            "autocall_day": sample.autocall_day,
            "final_payoff_nominal": sample.final_payoff_nominal,
            "final_payoff_pv": sample.final_payoff_pv,
            "fx_forward_rate": sample.fx_forward_rate,
            "discount_factor": sample.discount_factor,
            "coupon_accrual": sample.coupon_accrual,
        }
        last_row = sample.autocall_period - 1 if sample.autocall_period > 0 else -1
        for i, symbol in enumerate(symbols):
            row[f"initial_{symbol}"] = sample.initial_prices[i]
            row[f"final_{symbol}"] = sample.prices_at_obs[last_row, i]
        rows.append(row)
    return pd.DataFrame(rows)


def _timelines(result: SimulationResult) -> list[dict]:
    return [
        {
            "path_id": s.path_id,
            "autocall_period": s.autocall_period,
            "timeline": list(s.timeline),
            "obs_dates": list(s.obs_dates),
            "prices_at_obs": s.prices_at_obs.tolist(),
            "coupon_payments": s.coupon_payments.tolist(),
        }
        for s in result.detailed_samples or ()
    ]


def export_simulation(
    result: SimulationResult,
    config: AutocallConfig,
    symbols: list[str],
    output_dir: str | Path,
) -> list[Path]:
    out = Path(output_dir)
    out.mkdir(parents=True, exist_ok=True)
    written = []

    for name, frame in (
        ("summary.csv", summary_frame(result, config)),
        ("payoff_distribution.csv", payoff_frame(result)),
        ("survival_probabilities.csv", survival_frame(result, config)),
    ):
        frame.to_csv(out / name, index=False)
        written.append(out / name)

    if result.detailed_samples:
        detailed_samples_frame(result, symbols).to_csv(out / "detailed_samples.csv", index=False)
        (out / "detailed_timelines.json").write_text(
            json.dumps(_timelines(result), indent=2), encoding="utf-8"
        )
        written += [out / "detailed_samples.csv", out / "detailed_timelines.json"]

    logger.info("Exported %d simulation files to %s", len(written), out)
    return written


def margin_frame(analysis: BankMarginAnalysis) -> pd.DataFrame:
    rows = []
    for f in fields(analysis):
        value = getattr(analysis, f.name)
        if f.name in ("scenarios", "risk"):
            continue
        if isinstance(value, Enum):
            value = value.value
        rows.append({"metric": f.name, "value": value})
    rows.append({"metric": "total_costs", "value": analysis.total_costs})
    rows.append({"metric": "is_profitable", "value": analysis.is_profitable})
    return pd.DataFrame(rows)


def sensitivity_frame(sensitivity: dict[str, dict[float, float]]) -> pd.DataFrame:
    return pd.DataFrame([
        {"factor": factor, "shock": shock, "net_margin": margin}
        for factor, margins in sensitivity.items()
        for shock, margin in margins.items()
    ])


def export_margin(
    analysis: BankMarginAnalysis,
    output_dir: str | Path,
    sensitivity: dict[str, dict[float, float]] | None = None,
) -> list[Path]:
    out = Path(output_dir)
    out.mkdir(parents=True, exist_ok=True)

    margin_frame(analysis).to_csv(out / "bank_margin_analysis.csv", index=False)
    scenarios = pd.DataFrame(
        {"scenario": list(analysis.scenarios), "margin": list(analysis.scenarios.values())}
    )
    scenarios.to_csv(out / "margin_scenarios.csv", index=False)
    written = [out / "bank_margin_analysis.csv", out / "margin_scenarios.csv"]

    if sensitivity:
        sensitivity_frame(sensitivity).to_csv(out / "margin_sensitivity.csv", index=False)
        written.append(out / "margin_sensitivity.csv")

    logger.info("Exported %d margin files to %s", len(written), out)
    return written
