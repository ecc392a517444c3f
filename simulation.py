from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple, Union

import numba as nb
import numpy as np

from guardrail_settings import SimulationConfig
from income import IncomeSchedule
from market import MarketScenarioSampler, Scenario, SeedLike, as_seed_sequence, child_seed_sequences

MAX_CEILING_DOUBLINGS = 20


@dataclass(frozen=True)
class SpendingPolicy:
    """Gross desired spending per plan year, before any external income offset."""

    base_spending: float
    go_go_multiplier: float = 1.0
    go_go_start_year: int = 0
    go_go_years: int = 0
    start_year: int = 0

    def __post_init__(self) -> None:
        if self.base_spending < 0:
            raise ValueError(f"Base spending cannot be negative, got {self.base_spending:,.0f}")

    @classmethod
    def from_config(cls, base_spending: float, config: SimulationConfig) -> "SpendingPolicy":
        return cls(
            base_spending=float(base_spending),
            go_go_multiplier=float(config.go_go_multiplier),
            go_go_start_year=int(config.go_go_start_year),
            go_go_years=int(config.go_go_years),
            start_year=int(config.spending_start_year),
        )

    def with_base(self, base_spending: float) -> "SpendingPolicy":
        return SpendingPolicy(
            base_spending=float(base_spending),
            go_go_multiplier=self.go_go_multiplier,
            go_go_start_year=self.go_go_start_year,
            go_go_years=self.go_go_years,
            start_year=self.start_year,
        )

    def multiplier(self, year: int) -> float:
        if year < self.start_year:
            return 0.0
        if self.go_go_start_year <= year < self.go_go_start_year + self.go_go_years:
            return float(self.go_go_multiplier)
        return 1.0

    def __call__(self, year: int) -> float:
        return self.base_spending * self.multiplier(year)

    def amounts(self, start_year: int, num_years: int) -> np.ndarray:
        return np.array([self(start_year + i) for i in range(int(num_years))], dtype=np.float64)


@dataclass(frozen=True)
class TrialOutcome:
    survived: bool
    depletion_year: Optional[int]
    final_balance: float


@dataclass(frozen=True)
class RiskEstimate:
    """Fraction of Monte Carlo trials that ran out of money before the horizon."""

    failures: int
    trials: int

    @property
    def risk(self) -> float:
        return self.failures / self.trials

    @property
    def success_rate(self) -> float:
        return 1.0 - self.risk

    @property
    def standard_error(self) -> float:
        p = self.risk
        return float(np.sqrt(p * (1.0 - p) / self.trials))

    def __float__(self) -> float:
        return self.risk


@dataclass(frozen=True)
class BisectionResult:
    value: float
    lo: float
    hi: float
    iterations: int
    last_value: Optional[float]


@nb.jit(nopython=True, nogil=True)
def simulate_trials(initial_value, growth, spending, income):
    """
    Run every path in `growth` from the same starting balance, recording the
    year each one is depleted (-1 when it survives) and its final balance.

    This is the hot loop behind every risk estimate, so it is Numba-compiled
    and releases the GIL so shards can run on a thread pool.
    """
    num_trials, num_years = growth.shape
    depletion_years = np.full(num_trials, -1, dtype=np.int64)
    final_values = np.empty(num_trials, dtype=np.float64)

    for trial in range(num_trials):
        value = initial_value

        for t in range(num_years):
            withdrawal = spending[t] - income[trial, t]
            if withdrawal < 0.0:
                withdrawal = 0.0
            available = value if value > 0.0 else 0.0
            if withdrawal > available:
                withdrawal = available
            value = (value - withdrawal) * growth[trial, t]
            if value <= 0.0:
                depletion_years[trial] = t
                break

        final_values[trial] = value

    return depletion_years, final_values


def _as_policy(spending_policy, config: SimulationConfig) -> SpendingPolicy:
    if isinstance(spending_policy, SpendingPolicy):
        return spending_policy
    return SpendingPolicy.from_config(float(spending_policy), config)


def _resolve_start_year(start_year: Optional[int], horizon: int, config: SimulationConfig) -> int:
    if start_year is None:
        return max(int(config.horizon_years) - int(horizon), 0)
    if start_year < 0:
        raise ValueError(f"Start year cannot be negative, got {start_year}")
    return int(start_year)


def _shard_sizes(num_trials: int, shard_size: int) -> List[int]:
    full, remainder = divmod(int(num_trials), int(shard_size))
    sizes = [int(shard_size)] * full
    if remainder:
        sizes.append(remainder)
    return sizes


def _history_prefix(history: Optional[Sequence[Scenario]], start_year: int, expected: Scenario):
    """Realized (nominal return, inflation) for the years before a projection starts."""
    nominal = np.full(start_year, expected.nominal_return, dtype=np.float64)
    inflation = np.full(start_year, expected.inflation, dtype=np.float64)
    for year, scenario in enumerate(list(history or [])[:start_year]):
        nominal[year] = scenario.nominal_return
        inflation[year] = scenario.inflation
    return nominal, inflation


def _income_for_paths(income_schedule: Optional[IncomeSchedule], start_year: int,
                      real_returns: np.ndarray, inflation: np.ndarray,
                      history: Optional[Sequence[Scenario]], expected: Scenario) -> np.ndarray:
    num_paths, num_years = real_returns.shape
    if not income_schedule:
        return np.zeros((num_paths, num_years), dtype=np.float64)

    if not income_schedule.path_dependent:
        # Same income on every path, so evaluate once and broadcast
        width = start_year + num_years
        nominal_row = np.zeros((1, width), dtype=np.float64)
        inflation_row = np.zeros((1, width), dtype=np.float64)
        row = income_schedule.income_matrix(start_year, nominal_row, inflation_row)
        return np.ascontiguousarray(np.broadcast_to(row, (num_paths, num_years)))

    prefix_nominal, prefix_inflation = _history_prefix(history, start_year, expected)
    nominal_returns = (1.0 + real_returns) * (1.0 + inflation) - 1.0
    full_nominal = np.hstack([np.broadcast_to(prefix_nominal, (num_paths, start_year)), nominal_returns])
    full_inflation = np.hstack([np.broadcast_to(prefix_inflation, (num_paths, start_year)), inflation])
    return np.ascontiguousarray(income_schedule.income_matrix(start_year, full_nominal, full_inflation))


def _run_shard(balance: float, policy: SpendingPolicy, income_schedule: Optional[IncomeSchedule],
               start_year: int, horizon: int, config: SimulationConfig, num_paths: int,
               seed: np.random.SeedSequence, history: Optional[Sequence[Scenario]],
               honor_shocks: bool) -> Tuple[np.ndarray, np.ndarray]:
    sampler = MarketScenarioSampler(config, seed, honor_shocks=honor_shocks)
    real_returns, inflation = sampler.sample_paths(num_paths, start_year, horizon)

    spending = policy.amounts(start_year, horizon)
    income = _income_for_paths(income_schedule, start_year, real_returns, inflation, history,
                               sampler.expected_scenario())

    growth = np.ascontiguousarray(1.0 + real_returns)
    return simulate_trials(float(balance), growth, spending, income)


def _check_inputs(balance: float, horizon: int) -> None:
    if horizon < 0:
        raise ValueError(f"Horizon cannot be negative, got {horizon} years")
    if balance < 0:
        raise ValueError(f"Starting balance cannot be negative, got {balance:,.0f}")


def run_trial(start_balance: float,
              spending_policy: Union[SpendingPolicy, float],
              income_schedule: Optional[IncomeSchedule],
              horizon: int,
              config: SimulationConfig,
              seed: SeedLike = None,
              start_year: Optional[int] = None,
              history: Optional[Sequence[Scenario]] = None,
              honor_shocks: Optional[bool] = None) -> TrialOutcome:
    """Simulate one market path over the horizon and report whether the portfolio survived."""
    horizon = int(horizon)
    _check_inputs(start_balance, horizon)
    policy = _as_policy(spending_policy, config)
    start_year = _resolve_start_year(start_year, horizon, config)
    if honor_shocks is None:
        honor_shocks = config.stress_projections

    if horizon == 0:
        return TrialOutcome(survived=True, depletion_year=None, final_balance=float(start_balance))

    depletion, final_values = _run_shard(
        start_balance, policy, income_schedule, start_year, horizon, config, 1,
        as_seed_sequence(seed if seed is not None else config.seed), history, honor_shocks,
    )
    if depletion[0] >= 0:
        return TrialOutcome(survived=False, depletion_year=start_year + int(depletion[0]),
                            final_balance=float(final_values[0]))
    return TrialOutcome(survived=True, depletion_year=None, final_balance=float(final_values[0]))


def estimate_risk(balance: float,
                  spending_policy: Union[SpendingPolicy, float],
                  income_schedule: Optional[IncomeSchedule],
                  horizon: int,
                  config: SimulationConfig,
                  seed: SeedLike = None,
                  start_year: Optional[int] = None,
                  history: Optional[Sequence[Scenario]] = None) -> RiskEstimate:
    """
    Estimate the probability of running out of money within `horizon` years.

    Parameters
    ----------
    balance : float
        Portfolio value at the start of the projection, in today's dollars.
    spending_policy : SpendingPolicy or float
        Spending rule; a plain number is treated as base spending under the
        config's go-go and deferred-start rules.
    income_schedule : IncomeSchedule, optional
        External income that offsets withdrawals.
    horizon : int
        Years remaining in the plan.
    config : SimulationConfig
        Market assumptions, trial count and sharding.
    seed : int, SeedSequence or Generator, optional
        Root of the random streams. Reusing a seed reuses the same market paths.
    start_year : int, optional
        Plan year the projection starts in (default: horizon_years - horizon).
    history : sequence of Scenario, optional
        Realized scenarios for plan years before `start_year`, used by
        return-conditional income.

    Returns
    -------
    RiskEstimate
        Failures out of config.num_trials independent trials.
    """
    horizon = int(horizon)
    _check_inputs(balance, horizon)
    policy = _as_policy(spending_policy, config)

    if horizon == 0:
        return RiskEstimate(failures=0, trials=int(config.num_trials))

    start_year = _resolve_start_year(start_year, horizon, config)
    root = as_seed_sequence(seed if seed is not None else config.seed)
    sizes = _shard_sizes(config.num_trials, config.shard_size)
    children = child_seed_sequences(root, len(sizes))
    honor_shocks = bool(config.stress_projections)

    def run(size, child):
        depletion, _ = _run_shard(balance, policy, income_schedule, start_year, horizon, config,
                                  size, child, history, honor_shocks)
        return int(np.count_nonzero(depletion >= 0))

    if config.workers > 1 and len(sizes) > 1:
        with ThreadPoolExecutor(max_workers=config.workers) as executor:
            futures = [executor.submit(run, size, child) for size, child in zip(sizes, children)]
            failures = sum(f.result() for f in futures)
    else:
        failures = sum(run(size, child) for size, child in zip(sizes, children))

    return RiskEstimate(failures=failures, trials=int(config.num_trials))


def bisect_monotone(func: Callable[[float], float], target: float, lo: float, hi: float,
                    iterations: int, increasing: bool = True, verbose: bool = False) -> BisectionResult:
    """
    Bisect a monotone, possibly noisy function for `func(x) == target` with a
    fixed iteration budget.

    Bracketing is not verified; if the root lies outside [lo, hi] the result
    converges to the nearer boundary.
    """
    lo = float(lo)
    hi = float(hi)
    if lo > hi:
        raise ValueError(f"Search bounds are inverted: lo ({lo:,.2f}) is greater than hi ({hi:,.2f})")
    if iterations <= 0:
        raise ValueError(f"Iteration budget must be positive, got {iterations}")

    last_value = None
    for i in range(int(iterations)):
        mid = (lo + hi) / 2
        last_value = float(func(mid))

        move_lo = last_value < target if increasing else last_value > target
        if move_lo:
            lo = mid
        else:
            hi = mid

        if verbose:
            print(f"Iteration {i + 1}: f({mid:,.2f}) = {last_value:.4f} vs target {target:.4f}, "
                  f"range now [{lo:,.2f}, {hi:,.2f}]")

    return BisectionResult(value=(lo + hi) / 2, lo=lo, hi=hi, iterations=int(iterations), last_value=last_value)


def _peak_expected_income(income_schedule: Optional[IncomeSchedule], start_year: int, horizon: int,
                          history: Optional[Sequence[Scenario]], expected: Scenario) -> float:
    """Largest income in the window along the expected market path."""
    if not income_schedule or horizon <= 0:
        return 0.0
    prefix_nominal, prefix_inflation = _history_prefix(history, start_year, expected)
    nominal = np.concatenate([prefix_nominal, np.full(horizon, expected.nominal_return)])
    inflation = np.concatenate([prefix_inflation, np.full(horizon, expected.inflation)])
    return float(income_schedule.income_matrix(start_year, nominal[None, :], inflation[None, :]).max())


def _default_spending_bounds(balance: float, target_risk: float, horizon: int, config: SimulationConfig,
                             income_schedule: Optional[IncomeSchedule], start_year: Optional[int],
                             history: Optional[Sequence[Scenario]], risk_at) -> Tuple[float, float]:
    """
    Spending search range of 0 to the balance ceiling plus the peak income,
    with the upper end doubled until it carries at least the target risk.
    """
    horizon = int(horizon)
    start_year = _resolve_start_year(start_year, horizon, config)
    expected = MarketScenarioSampler(config, 0).expected_scenario()
    hi = float(balance) * config.spending_search_ceiling
    hi += _peak_expected_income(income_schedule, start_year, horizon, history, expected)
    if hi <= 0 or horizon <= 0:
        return 0.0, hi

    for _ in range(MAX_CEILING_DOUBLINGS):
        if risk_at(hi) >= target_risk:
            break
        hi *= 2.0
    return 0.0, hi


def _check_bracket(risk_at, lo: float, hi: float, target_risk: float, increasing: bool, what: str) -> None:
    risk_lo = risk_at(lo)
    risk_hi = risk_at(hi)
    low, high = (risk_lo, risk_hi) if increasing else (risk_hi, risk_lo)
    if not (low <= target_risk <= high):
        raise ValueError(
            f"{what} bounds [{lo:,.0f}, {hi:,.0f}] do not bracket the target risk of {target_risk:.1%} "
            f"(risk ranges from {risk_lo:.1%} to {risk_hi:.1%}); widen the search bounds"
        )


def solve_spending_for_risk(balance: float,
                            target_risk: float,
                            horizon: int,
                            config: SimulationConfig,
                            bounds: Optional[Tuple[float, float]] = None,
                            income_schedule: Optional[IncomeSchedule] = None,
                            seed: SeedLike = None,
                            start_year: Optional[int] = None,
                            history: Optional[Sequence[Scenario]] = None,
                            check_bracket: bool = False,
                            verbose: bool = False) -> float:
    """
    Find the base spending at which the portfolio's risk of ruin equals `target_risk`.

    Risk rises with spending, so bisection raises the lower bound while the
    estimated risk is below target. Default bounds run from 0 to
    `config.spending_search_ceiling` times the balance plus the largest income
    in the window, widened until the target risk is reached. Every iteration
    reuses the same seed so the search sees one fixed set of market paths.
    """
    root = as_seed_sequence(seed if seed is not None else config.seed)

    def risk_at(spending):
        return estimate_risk(balance, SpendingPolicy.from_config(spending, config), income_schedule,
                             horizon, config, seed=root, start_year=start_year, history=history).risk

    if bounds is None:
        bounds = _default_spending_bounds(balance, target_risk, horizon, config, income_schedule,
                                          start_year, history, risk_at)
    lo, hi = bounds

    if check_bracket:
        if lo > hi:
            raise ValueError(f"Search bounds are inverted: lo ({lo:,.2f}) is greater than hi ({hi:,.2f})")
        _check_bracket(risk_at, lo, hi, target_risk, True, "Spending")

    if verbose:
        print(f"Searching for spending with {target_risk:.1%} risk on a ${balance:,.0f} portfolio...")

    result = bisect_monotone(risk_at, target_risk, lo, hi, config.solver_iterations,
                             increasing=True, verbose=verbose)
    return result.value


def solve_balance_for_risk(spending: float,
                           target_risk: float,
                           horizon: int,
                           config: SimulationConfig,
                           bounds: Optional[Tuple[float, float]] = None,
                           income_schedule: Optional[IncomeSchedule] = None,
                           seed: SeedLike = None,
                           start_year: Optional[int] = None,
                           history: Optional[Sequence[Scenario]] = None,
                           reference_balance: Optional[float] = None,
                           check_bracket: bool = False,
                           verbose: bool = False) -> float:
    """
    Find the portfolio balance at which a fixed base spending carries `target_risk`.

    Risk falls as the balance grows, so the comparison is inverted relative to
    the spending solver. Default bounds run from 0 to
    `config.balance_search_multiple` times `reference_balance`, or to 50 years
    of spending when no reference is given.
    """
    if bounds is None:
        if reference_balance is not None:
            bounds = (0.0, float(reference_balance) * config.balance_search_multiple)
        else:
            bounds = (0.0, float(spending) * 50.0)
    lo, hi = bounds
    policy = SpendingPolicy.from_config(spending, config)
    root = as_seed_sequence(seed if seed is not None else config.seed)

    def risk_at(balance):
        return estimate_risk(balance, policy, income_schedule, horizon, config,
                             seed=root, start_year=start_year, history=history).risk

    if check_bracket:
        if lo > hi:
            raise ValueError(f"Search bounds are inverted: lo ({lo:,.2f}) is greater than hi ({hi:,.2f})")
        _check_bracket(risk_at, lo, hi, target_risk, False, "Balance")

    if verbose:
        print(f"Searching for the balance where ${spending:,.0f} of spending carries {target_risk:.1%} risk...")

    result = bisect_monotone(risk_at, target_risk, lo, hi, config.solver_iterations,
                             increasing=False, verbose=verbose)
    return result.value
