from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="COE_",
    )

    # Logging
    log_dir: str = "logs"
    log_to_file: bool = True
    log_level: str = "INFO"  # console; the file always gets DEBUG

    # Monte Carlo simulation
    simulation_num_paths: int = 20000
    simulation_seed: int = 1
    simulation_max_workers: int = 4
    simulation_num_detailed_samples: int = 10
    simulation_default_dof: float = 8.0

    # Fair coupon solver
    solver_exploration_paths: int = 5000
    solver_validation_paths: int = 20000
    solver_max_evaluations: int = 60
    solver_tolerance: float = 1.0  # currency units
    solver_coupon_lower: float = 0.0
    solver_coupon_upper: float = 0.5  # per observation period
    solver_population_size: int = 12
    solver_validation_quantile: float = 0.7
    solver_min_validated: int = 3
    solver_keep_best: int = 10
    solver_seed: int = 7

    # Bank margin
    margin_offered_coupon: float = 0.088
    margin_operational_cost_rate: float = 0.005  # per year
    margin_risk_buffer_rate: float = 0.01
    margin_cost_of_capital: float = 0.15
    margin_capital_confidence: float = 0.975
    margin_capital_multiplier: float = 1.0
    margin_capital_floor_rate: float = 0.03
    margin_benchmark_spread: float = 0.02  # CDI + 200bps
    margin_competitive_band: float = 0.03
    margin_stress_vol_multiplier: float = 1.5
    margin_optimistic_vol_multiplier: float = 0.7
    margin_scenario_paths: int = 10000

    # FX spot fallback estimator
    fx_reference_level: float = 5.0
    fx_reference_tenor: float = 1.0
    fx_dampening_factor: float = 0.3

    # Market data (Tiingo)
    tiingo_api_key: str = ""
    tiingo_base_url: str = "https://api.tiingo.com/tiingo/daily"
    tiingo_request_delay: float = 1.0
    tiingo_max_retries: int = 3
    tiingo_retry_backoff: float = 2.0
    tiingo_years_back: int = 3

    def solver_kwargs(self) -> dict:
        return {
            "exploration_paths": self.solver_exploration_paths,
            "validation_paths": self.solver_validation_paths,
            "max_evaluations": self.solver_max_evaluations,
            "tolerance": self.solver_tolerance,
            "bounds": (self.solver_coupon_lower, self.solver_coupon_upper),
            "population_size": self.solver_population_size,
            "validation_quantile": self.solver_validation_quantile,
            "min_validated": self.solver_min_validated,
            "keep_best": self.solver_keep_best,
            "seed": self.solver_seed,
        }

    def margin_kwargs(self) -> dict:
        return {
            "operational_cost_rate": self.margin_operational_cost_rate,
            "risk_buffer_rate": self.margin_risk_buffer_rate,
            "cost_of_capital": self.margin_cost_of_capital,
            "capital_confidence": self.margin_capital_confidence,
            "capital_multiplier": self.margin_capital_multiplier,
            "capital_floor_rate": self.margin_capital_floor_rate,
            "benchmark_spread": self.margin_benchmark_spread,
            "competitive_band": self.margin_competitive_band,
            "stress_vol_multiplier": self.margin_stress_vol_multiplier,
            "optimistic_vol_multiplier": self.margin_optimistic_vol_multiplier,
            "scenario_paths": self.margin_scenario_paths,
        }
