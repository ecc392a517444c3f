from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence

import pandas as pd

from guardrail_settings import SimulationConfig
from income import IncomeSchedule
from market import MarketScenarioSampler, Scenario, SeedLike, as_seed_sequence, child_seed_sequences
from simulation import SpendingPolicy, estimate_risk, solve_balance_for_risk, solve_spending_for_risk

STEADY = "STEADY"
CUT = "CUT"
RAISE = "RAISE"
EXHAUSTED = "EXHAUSTED"
COMPLETE = "COMPLETE"

TERMINAL_ACTIONS = (EXHAUSTED, COMPLETE)


def decide_action(risk: float, config: SimulationConfig) -> str:
    """
    Guardrail transition for a projected risk of ruin.

    The lower guardrail (too much risk, cut spending) is checked before the
    upper guardrail (too little risk, raise spending).
    """
    if risk >= config.lower_guardrail_risk:
        return CUT
    if risk <= config.upper_guardrail_risk:
        return RAISE
    return STEADY


@dataclass
class GuardrailState:
    balance: float
    base_spending: float
    year: int = 0
    last_action: str = STEADY
    price_level: float = 1.0

    @property
    def depleted(self) -> bool:
        return self.balance <= 0


@dataclass(frozen=True)
class LedgerRow:
    year: int
    balance: float
    base_spending: float
    spending: float
    income: float
    withdrawal: float
    risk: float
    adjusted_risk: float
    action: str
    real_return: float
    inflation: float
    price_level: float
    end_balance: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            'Year': self.year,
            'Portfolio_Value': self.balance,
            'Base_Spending': self.base_spending,
            'Total_Spending': self.spending,
            'Income': self.income,
            'Withdrawal': self.withdrawal,
            'Risk': self.risk,
            'Adjusted_Risk': self.adjusted_risk,
            'Action': self.action,
            'Real_Return': self.real_return,
            'Inflation': self.inflation,
            'Price_Level': self.price_level,
            'End_Value': self.end_balance,
        }


class GuardrailRun:
    """
    The realized year-by-year path of a risk-based guardrail policy.

    Rows are produced lazily as the run is iterated. Iterating again replays the
    same path, because both the realized market stream and the projection
    streams are fixed when the run is created. The last row always carries a
    terminal action: EXHAUSTED when the portfolio ran out, COMPLETE otherwise.
    """

    def __init__(self,
                 initial_balance: float,
                 initial_spending: Optional[float],
                 income_schedule: Optional[IncomeSchedule],
                 config: SimulationConfig,
                 seed: SeedLike = None,
                 verbose: bool = False,
                 on_status: Optional[Callable[[str], None]] = None,
                 on_progress: Optional[Callable[[int, int], None]] = None):
        if initial_balance <= 0:
            raise ValueError(f"Initial portfolio value must be positive, got {initial_balance:,.0f}")
        if initial_spending is not None and initial_spending < 0:
            raise ValueError(f"Initial spending cannot be negative, got {initial_spending:,.0f}")

        self.initial_balance = float(initial_balance)
        self.initial_spending = None if initial_spending is None else float(initial_spending)
        self.income_schedule = income_schedule or IncomeSchedule()
        self.config = config
        self.verbose = verbose
        self.on_status = on_status
        self.on_progress = on_progress

        root = as_seed_sequence(seed if seed is not None else config.seed)
        # Realized returns and Monte Carlo projections never share a stream
        self._realized_seed, self._projection_seed = child_seed_sequences(root, 2)

    def __iter__(self) -> Iterator[LedgerRow]:
        return self._rows()

    def _income(self, year: int, history: Sequence[Scenario]) -> float:
        if not self.income_schedule:
            return 0.0
        return self.income_schedule.income_for(
            year,
            nominal_returns=[s.nominal_return for s in history],
            inflation=[s.inflation for s in history],
        )

    def _rows(self) -> Iterator[LedgerRow]:
        cfg = self.config
        horizon = int(cfg.horizon_years)
        year_seeds = child_seed_sequences(self._projection_seed, max(horizon, 1))
        sampler = MarketScenarioSampler(cfg, self._realized_seed, honor_shocks=True)
        policy = SpendingPolicy.from_config(0.0, cfg)
        history: List[Scenario] = []

        base_spending = self.initial_spending
        if base_spending is None:
            base_spending = solve_spending_for_risk(
                self.initial_balance, cfg.target_risk, horizon, cfg,
                income_schedule=self.income_schedule, seed=year_seeds[0], start_year=0,
            )
        state = GuardrailState(balance=self.initial_balance, base_spending=float(base_spending))

        for year in range(horizon):
            years_remaining = horizon - year
            status_line = (f"Processing year {year}, portfolio=${state.balance:,.0f}, "
                           f"years_remaining={years_remaining}")
            if self.on_status is not None:
                self.on_status(status_line)
            if self.on_progress is not None:
                self.on_progress(year + 1, horizon)
            if self.verbose:
                print(status_line)

            def risk_for(base):
                return estimate_risk(
                    state.balance, policy.with_base(base), self.income_schedule, years_remaining, cfg,
                    seed=year_seeds[year], start_year=year, history=history,
                ).risk

            # Forward-looking risk of the current spending from this year to the horizon
            risk = risk_for(state.base_spending)
            action = decide_action(risk, cfg)
            adjusted_risk = risk

            if action != STEADY:
                solved = solve_spending_for_risk(
                    state.balance, cfg.target_risk, years_remaining, cfg,
                    income_schedule=self.income_schedule, seed=year_seeds[year],
                    start_year=year, history=history,
                )
                state.base_spending += cfg.adjustment_fraction * (solved - state.base_spending)
                adjusted_risk = risk_for(state.base_spending)
                if self.verbose:
                    print(f"{action}: risk {risk:.1%} -> {adjusted_risk:.1%}, "
                          f"base spending now ${state.base_spending:,.0f}")

            spending = policy.with_base(state.base_spending)(year)
            scenario = sampler.sample(year)
            income = self._income(year, history + [scenario])

            withdrawal = max(spending - income, 0.0)
            withdrawal = min(withdrawal, max(state.balance, 0.0))
            end_balance = (state.balance - withdrawal) * (1.0 + scenario.real_return)

            yield LedgerRow(
                year=year,
                balance=state.balance,
                base_spending=state.base_spending,
                spending=spending,
                income=income,
                withdrawal=withdrawal,
                risk=risk,
                adjusted_risk=adjusted_risk,
                action=action,
                real_return=scenario.real_return,
                inflation=scenario.inflation,
                price_level=state.price_level,
                end_balance=end_balance,
            )

            history.append(scenario)
            state.balance = end_balance
            state.year = year + 1
            state.last_action = action
            state.price_level *= 1.0 + scenario.inflation

            if state.depleted:
                break

        state.last_action = EXHAUSTED if state.depleted else COMPLETE
        if self.verbose:
            print(f"Plan {state.last_action.lower()} after year {state.year - 1}, "
                  f"portfolio=${state.balance:,.0f}")

        yield LedgerRow(
            year=state.year,
            balance=state.balance,
            base_spending=state.base_spending,
            spending=0.0,
            income=0.0,
            withdrawal=0.0,
            risk=1.0 if state.depleted else 0.0,
            adjusted_risk=1.0 if state.depleted else 0.0,
            action=state.last_action,
            real_return=0.0,
            inflation=0.0,
            price_level=state.price_level,
            end_balance=state.balance,
        )

    def rows(self) -> List[LedgerRow]:
        return list(self)

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame([row.to_dict() for row in self])


def run_guardrail_policy(initial_balance: float,
                         initial_spending: Optional[float],
                         income_schedule: Optional[IncomeSchedule],
                         config: SimulationConfig,
                         seed: SeedLike = None,
                         verbose: bool = False,
                         on_status: Optional[Callable[[str], None]] = None,
                         on_progress: Optional[Callable[[int, int], None]] = None) -> GuardrailRun:
    """Creates the ledger of a risk-based guardrail withdrawal strategy.

    Parameters
    ----------
    initial_balance : float
        Portfolio value at the start of year 0.
    initial_spending : float, optional
        Base spending for year 0. When None it is solved for the target risk.
    income_schedule : IncomeSchedule, optional
        External income offsetting portfolio withdrawals.
    config : SimulationConfig
        Market assumptions, guardrail risks and solver settings.
    seed : int, SeedSequence or Generator, optional
        Root seed; the same seed reproduces the same ledger.
    verbose : bool, optional
        Print a status line per year, by default False.
    on_status : callable, optional
        Callback invoked with textual status updates.
    on_progress : callable, optional
        Callback invoked with (current, total) as the years are processed.

    Returns
    -------
    GuardrailRun
        Lazy, restartable sequence of ledger rows ending in a terminal action.
    """
    return GuardrailRun(initial_balance, initial_spending, income_schedule, config, seed=seed,
                        verbose=verbose, on_status=on_status, on_progress=on_progress)


def compute_guardrail_snapshot(balance: float,
                               config: SimulationConfig,
                               income_schedule: Optional[IncomeSchedule] = None,
                               base_spending: Optional[float] = None,
                               year: int = 0,
                               seed: SeedLike = None,
                               history: Optional[Sequence[Scenario]] = None) -> dict:
    """Compute a single-point guardrail snapshot (no multi-year loop).

    Notes
    -----
    - Base spending defaults to the spending that carries the target risk today.
    - The trigger balances are the portfolio values at which that base spending
      would carry the lower (cut) and upper (raise) guardrail risks.
    - The spending after a cut or raise is re-solved at the trigger balance,
      as the engine would do on the year the guardrail is hit.
    """
    if balance <= 0:
        raise ValueError(f"Portfolio value must be positive, got {balance:,.0f}")
    horizon = int(config.horizon_years) - int(year)
    if horizon <= 0:
        raise ValueError(f"No years remain in a {config.horizon_years}-year plan at year {year}")

    root = as_seed_sequence(seed if seed is not None else config.seed)
    common = dict(income_schedule=income_schedule, seed=root, start_year=year, history=history)

    if base_spending is None:
        base_spending = solve_spending_for_risk(balance, config.target_risk, horizon, config, **common)
    base_spending = float(base_spending)

    current_risk = estimate_risk(balance, SpendingPolicy.from_config(base_spending, config),
                                 income_schedule, horizon, config, seed=root, start_year=year,
                                 history=history)

    lower_trigger = solve_balance_for_risk(base_spending, config.lower_guardrail_risk, horizon, config,
                                           reference_balance=balance, **common)
    upper_trigger = solve_balance_for_risk(base_spending, config.upper_guardrail_risk, horizon, config,
                                           reference_balance=balance, **common)

    spending_after_cut = (
        solve_spending_for_risk(lower_trigger, config.target_risk, horizon, config, **common)
        if lower_trigger > 0 else 0.0
    )
    spending_after_raise = solve_spending_for_risk(upper_trigger, config.target_risk, horizon, config, **common)

    fraction = config.adjustment_fraction
    policy = SpendingPolicy.from_config(base_spending, config)
    first_year_spending = policy(year)

    return {
        "year": int(year),
        "years_remaining": horizon,
        "balance": float(balance),
        "base_spending": base_spending,
        "first_year_spending": first_year_spending,
        "go_go_spending": base_spending * float(config.go_go_multiplier),
        "spending_rate": first_year_spending / float(balance),
        "current_risk": current_risk.risk,
        "lower_guardrail_value": lower_trigger,
        "upper_guardrail_value": upper_trigger,
        "spending_after_cut": spending_after_cut,
        "spending_after_raise": spending_after_raise,
        "cut_adjusted_spending": base_spending + fraction * (spending_after_cut - base_spending),
        "raise_adjusted_spending": base_spending + fraction * (spending_after_raise - base_spending),
    }
