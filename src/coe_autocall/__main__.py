import logging
from datetime import date, datetime
from pathlib import Path

import click
import pandas as pd
from pydantic import ValidationError

from coe_autocall.config import Settings
from coe_autocall.engine import ConfigurationError, Discounting, InnovationDist
from coe_autocall.logging_config import setup_logging
from coe_autocall.scenario import Scenario, demo_scenario, load_scenario

logger = logging.getLogger(__name__)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
def cli(verbose: bool):
    """COE Autocall - DCC-GARCH Monte Carlo pricer for BRL autocall notes"""
    settings = Settings()
    setup_logging(
        log_dir=settings.log_dir if settings.log_to_file else None,
        console_level="DEBUG" if verbose else settings.log_level,
    )


def _scenario_option(func):
    return click.option(
        "--scenario", "-s", "scenario_path", type=click.Path(exists=True, dir_okay=False),
        default=None, help="Scenario JSON file (default: built-in demo)",
    )(func)


def _load(scenario_path: str | None) -> Scenario:
    if scenario_path is None:
        return demo_scenario()
    try:
        return load_scenario(scenario_path)
    except ValidationError as e:
        raise click.UsageError(f"Invalid scenario {scenario_path}:\n{e}") from e


def _build(scenario: Scenario, settings: Settings, workers: int | None = None):
    from coe_autocall.engine.simulator import PathSimulator

    try:
        config = scenario.autocall_config(
            reference_fx=settings.fx_reference_level,
            reference_tenor=settings.fx_reference_tenor,
            dampening_factor=settings.fx_dampening_factor,
        )
        simulator = PathSimulator(
            scenario.specs(),
            scenario.volatility_models(),
            scenario.correlation(),
            dof=scenario.degrees_of_freedom(),
            default_dof=settings.simulation_default_dof,
            max_workers=workers or settings.simulation_max_workers,
        )
    except ConfigurationError as e:
        raise click.UsageError(str(e)) from e
    return simulator, config


def _output_dir(export_dir: str | None, prefix: str) -> Path | None:
    if export_dir is None:
        return None
    from coe_autocall.reporting.export import create_results_directory

    return create_results_directory(export_dir, prefix)


@cli.command()
@_scenario_option
@click.option("--paths", "-n", "num_paths", type=int, default=None, help="Monte Carlo paths")
@click.option("--seed", type=int, default=None, help="Base seed")
@click.option("--coupon", type=float, default=None, help="Flat coupon per period (overrides scenario)")
@click.option("--workers", type=int, default=None, help="Worker processes")
@click.option("--samples", type=int, default=None, help="Paths to trace in detail")
@click.option("--domestic", is_flag=True, help="Discount on the domestic curve only")
@click.option("--export", "export_dir", type=click.Path(file_okay=False), default=None,
              help="Write CSV/JSON results under this directory")
def price(scenario_path, num_paths, seed, coupon, workers, samples, domestic, export_dir):
    """Price the note and report the payoff distribution."""
    settings = Settings()
    scenario = _load(scenario_path)
    simulator, config = _build(scenario, settings, workers)
    if coupon is not None:
        config = config.with_flat_coupon(coupon)

    result = simulator.run(
        config,
        num_paths=num_paths or settings.simulation_num_paths,
        seed=seed if seed is not None else settings.simulation_seed,
        discounting=Discounting.DOMESTIC if domestic else Discounting.DUAL_CURRENCY,
        num_detailed_samples=samples if samples is not None else settings.simulation_num_detailed_samples,
    )

    q05, q95 = result.confidence_interval
    click.echo(f"Scenario:              {scenario.name} ({', '.join(scenario.symbols)})")
    click.echo(f"Paths:                 {result.num_paths}")
    click.echo(f"Mean price:            {result.mean_price:,.2f} (stderr {result.stderr:,.2f})")
    click.echo(f"5%-95% range:          {q05:,.2f} - {q95:,.2f}")
    click.echo(f"Autocall probability:  {result.autocall_probability:.1%}")
    click.echo(f"Degrees of freedom:    {result.degrees_of_freedom:.2f}")
    for period, prob in enumerate(result.exercise_probabilities, start=1):
        click.echo(f"  period {period:2d}: called {prob:6.1%}, "
                   f"alive after {result.survival_probabilities[period]:6.1%}")

    out = _output_dir(export_dir, "simulation")
    if out is not None:
        from coe_autocall.reporting.export import export_simulation

        export_simulation(result, config, scenario.symbols, out)
        click.echo(f"Results written to {out}")


@cli.command("fair-coupon")
@_scenario_option
@click.option("--target", type=float, default=None, help="Target price (default: principal)")
@click.option("--exploration-paths", type=int, default=None)
@click.option("--validation-paths", type=int, default=None)
@click.option("--max-evaluations", type=int, default=None)
@click.option("--workers", type=int, default=None, help="Worker processes")
def fair_coupon(scenario_path, target, exploration_paths, validation_paths, max_evaluations, workers):
    """Find the coupon that prices the note at par."""
    from coe_autocall.analysis.fair_coupon import FairCouponSolver

    settings = Settings()
    simulator, config = _build(_load(scenario_path), settings, workers)

    kwargs = settings.solver_kwargs()
    overrides = {
        "exploration_paths": exploration_paths,
        "validation_paths": validation_paths,
        "max_evaluations": max_evaluations,
    }
    kwargs.update({k: v for k, v in overrides.items() if v is not None})
    solver = FairCouponSolver(simulator, presimulation_seed=settings.simulation_seed, **kwargs)
    result = solver.solve(config, target_price=target)

    click.echo(f"Fair coupon:   {result.fair_coupon:.4%} per period")
    click.echo(f"Price:         {result.final_price:,.2f} (target {result.target_price:,.2f})")
    click.echo(f"Evaluations:   {result.iterations} ({result.validated_candidates} validated)")
    click.echo(f"Converged:     {'yes' if result.converged else 'NO'}")


def _analyzer(simulator, settings: Settings, num_paths, scenario_paths, exploration_paths,
              validation_paths):
    from coe_autocall.analysis.fair_coupon import FairCouponSolver
    from coe_autocall.analysis.margin import BankMarginAnalyzer

    solver_kwargs = settings.solver_kwargs()
    if exploration_paths is not None:
        solver_kwargs["exploration_paths"] = exploration_paths
    if validation_paths is not None:
        solver_kwargs["validation_paths"] = validation_paths
    solver = FairCouponSolver(simulator, presimulation_seed=settings.simulation_seed, **solver_kwargs)

    margin_kwargs = settings.margin_kwargs()
    if scenario_paths is not None:
        margin_kwargs["scenario_paths"] = scenario_paths
    return BankMarginAnalyzer(
        simulator,
        solver,
        num_paths=num_paths or settings.simulation_num_paths,
        seed=settings.simulation_seed,
        **margin_kwargs,
    )


def _margin_options(func):
    for option in reversed([
        click.option("--offered-coupon", type=float, default=None, help="Coupon offered per period"),
        click.option("--paths", "-n", "num_paths", type=int, default=None, help="Monte Carlo paths"),
        click.option("--scenario-paths", type=int, default=None),
        click.option("--exploration-paths", type=int, default=None),
        click.option("--validation-paths", type=int, default=None),
        click.option("--workers", type=int, default=None, help="Worker processes"),
        click.option("--export", "export_dir", type=click.Path(file_okay=False), default=None,
                     help="Write CSV results under this directory"),
    ]):
        func = option(func)
    return _scenario_option(func)


@cli.command()
@_margin_options
def margin(scenario_path, offered_coupon, num_paths, scenario_paths, exploration_paths,
           validation_paths, workers, export_dir):
    """Bank margin, capital and RAROC of the offered coupon."""
    settings = Settings()
    simulator, config = _build(_load(scenario_path), settings, workers)
    analyzer = _analyzer(simulator, settings, num_paths, scenario_paths, exploration_paths,
                         validation_paths)
    coupon = offered_coupon if offered_coupon is not None else settings.margin_offered_coupon
    analysis = analyzer.analyze(config, offered_coupon=coupon)

    click.echo(f"Offered coupon:       {analysis.offered_coupon:.2%}")
    click.echo(f"Fair coupon:          {analysis.fair_coupon:.2%}"
               f"{'' if analysis.solver_converged else ' (not converged)'}")
    click.echo(f"Gross spread:         {analysis.gross_spread * 100:.2f} p.p.")
    click.echo(f"Market price:         {analysis.coe_market_price:,.2f}")
    click.echo(f"Gross margin:         {analysis.margin_absolute:,.2f} ({analysis.margin_percentage:.1%})")
    click.echo(f"Operational costs:    {analysis.operational_costs:,.2f}")
    click.echo(f"Risk buffer:          {analysis.risk_buffer:,.2f}")
    click.echo(f"Capital cost:         {analysis.capital_cost:,.2f}")
    click.echo(f"Net margin:           {analysis.net_margin:,.2f}"
               f" ({'profitable' if analysis.is_profitable else 'LOSS'})")
    click.echo(f"VaR {analysis.var_confidence_level:.1%}:           {analysis.var_at_confidence:,.2f}")
    click.echo(f"Expected shortfall:   {analysis.expected_shortfall:,.2f}")
    click.echo(f"RAROC:                {analysis.raroc:.1%}")
    click.echo(f"Breakeven coupon:     {analysis.break_even_coupon:.2%}")
    click.echo(f"Competitiveness:      {analysis.market_competitiveness.value}")
    for name, value in analysis.scenarios.items():
        click.echo(f"  scenario {name:<11s} {value:,.2f}")

    out = _output_dir(export_dir, "bank_margin")
    if out is not None:
        from coe_autocall.reporting.export import export_margin

        export_margin(analysis, out)
        click.echo(f"Results written to {out}")


@cli.command()
@_margin_options
def sensitivity(scenario_path, offered_coupon, num_paths, scenario_paths, exploration_paths,
                validation_paths, workers, export_dir):
    """Net margin under volatility, correlation and rate shocks."""
    settings = Settings()
    simulator, config = _build(_load(scenario_path), settings, workers)
    analyzer = _analyzer(simulator, settings, num_paths, scenario_paths, exploration_paths,
                         validation_paths)
    coupon = offered_coupon if offered_coupon is not None else settings.margin_offered_coupon
    results = analyzer.sensitivity(config, offered_coupon=coupon)

    for factor, margins in results.items():
        click.echo(f"{factor}:")
        for shock, value in margins.items():
            click.echo(f"  {shock:+.2f}: {value:,.2f}")

    out = _output_dir(export_dir, "margin_sensitivity")
    if out is not None:
        from coe_autocall.reporting.export import sensitivity_frame

        sensitivity_frame(results).to_csv(out / "margin_sensitivity.csv", index=False)
        click.echo(f"Results written to {out}")


@cli.command()
@click.argument("symbols", nargs=-1, required=True)
@click.option("--end", "end_date", type=str, default=None,
              help="Pricing date in YYYY-MM-DD format (default: today)")
@click.option("--years", type=int, default=None, help="Years of history")
@click.option("--student/--normal", default=True, help="Innovation family")
@click.option("--output", "-o", type=click.Path(dir_okay=False), required=True,
              help="Scenario JSON to write")
def calibrate(symbols, end_date, years, student, output):
    """Fit GARCH/DCC on Tiingo history and write a scenario file."""
    from coe_autocall.analysis.calibration import fit_all_garch, fit_dcc, standardised_residuals
    from coe_autocall.engine.correlation import estimate_dof
    from coe_autocall.market.tiingo_client import TiingoClient, log_returns, price_on
    from coe_autocall.scenario import DCCInput, GarchInput, UnderlyingInput

    settings = Settings()
    end = datetime.strptime(end_date, "%Y-%m-%d").date() if end_date else date.today()
    years_back = years or settings.tiingo_years_back
    dist = InnovationDist.STUDENT if student else InnovationDist.NORMAL

    with TiingoClient(
        settings.tiingo_api_key,
        base_url=settings.tiingo_base_url,
        delay=settings.tiingo_request_delay,
        max_retries=settings.tiingo_max_retries,
        backoff=settings.tiingo_retry_backoff,
    ) as client:
        prices = {s: client.get_history(s, years_back, end) for s in symbols}

    returns = pd.DataFrame({s: log_returns(p) for s, p in prices.items()})
    fits, returns_mat = fit_all_garch(returns, dist)
    residuals = standardised_residuals(fits, returns_mat)
    dcc = fit_dcc(residuals)
    # normal fits carry no nu, keep the tail estimate for the simulator
    residual_nu = None if student else estimate_dof(residuals, default=settings.simulation_default_dof)

    def _garch_input(params):
        return GarchInput(
            omega=params.omega, alpha=params.alpha, beta=params.beta, mu=params.mu,
            sigma2_0=params.sigma2_0,
            nu=params.nu if params.innovation_dist == InnovationDist.STUDENT else None,
            innovation_dist=params.innovation_dist,
        )

    scenario = Scenario(
        name=f"calibrated_{end.isoformat()}",
        underlyings=[UnderlyingInput(symbol=s, price0=price_on(prices[s], end)) for s in symbols],
        garch=[_garch_input(f.params) for f in fits],
        dcc=DCCInput(a=dcc.a, b=dcc.b, q_bar=dcc.q_bar.tolist()),
        residual_nu=residual_nu,
    )
    Path(output).write_text(scenario.model_dump_json(indent=2), encoding="utf-8")
    click.echo(f"Calibrated {len(symbols)} assets on {returns_mat.shape[0]} days -> {output}")
    if residual_nu is not None:
        click.echo(f"Residual nu:   {residual_nu:.2f}")


if __name__ == "__main__":
    cli()
