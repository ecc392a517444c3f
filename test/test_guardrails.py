"""Tests for guardrails.py policy engine and guardrail snapshot."""

import numpy as np
import pandas as pd
import pytest

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

import guardrails
from guardrail_settings import ShockSetting, SimulationConfig
from income import FixedIncome, IncomeSchedule, SteppedAnnuity
from market import Scenario


@pytest.fixture
def config():
    return SimulationConfig(
        num_trials=2_000,
        horizon_years=30,
        mean_return=0.039,
        return_volatility=0.1089,
        target_risk=0.15,
        lower_guardrail_risk=0.20,
        upper_guardrail_risk=0.05,
        solver_iterations=18,
        seed=7,
    )


class TestDecideAction:
    """Tests for decide_action function."""

    def test_steady_between_guardrails(self, config):
        assert guardrails.decide_action(0.15, config) == guardrails.STEADY

    def test_cut_at_lower_guardrail(self, config):
        assert guardrails.decide_action(0.20, config) == guardrails.CUT
        assert guardrails.decide_action(0.90, config) == guardrails.CUT

    def test_raise_at_upper_guardrail(self, config):
        assert guardrails.decide_action(0.05, config) == guardrails.RAISE
        assert guardrails.decide_action(0.0, config) == guardrails.RAISE

    def test_cut_takes_priority_over_raise(self, config):
        contradictory = config.replace(lower_guardrail_risk=0.0, upper_guardrail_risk=1.0)
        for risk in (0.0, 0.15, 1.0):
            assert guardrails.decide_action(risk, contradictory) == guardrails.CUT


class TestRunGuardrailPolicy:
    """Tests for run_guardrail_policy function."""

    def test_identical_seed_identical_ledger(self, config):
        cfg = config.replace(horizon_years=10)
        first = guardrails.run_guardrail_policy(1_500_000.0, 60_000.0, None, cfg, seed=99).to_frame()
        second = guardrails.run_guardrail_policy(1_500_000.0, 60_000.0, None, cfg, seed=99).to_frame()
        pd.testing.assert_frame_equal(first, second)

    def test_run_is_restartable(self, config):
        run = guardrails.run_guardrail_policy(1_500_000.0, 60_000.0, None, config.replace(horizon_years=8), seed=3)
        assert list(run) == list(run)

    def test_rows_are_lazy(self, config):
        calls = []
        run = guardrails.run_guardrail_policy(1_500_000.0, 60_000.0, None, config, seed=3,
                                              on_progress=lambda current, total: calls.append(current))
        assert calls == []
        next(iter(run))
        assert calls == [1]

    def test_different_seeds_differ(self, config):
        cfg = config.replace(horizon_years=5)
        a = guardrails.run_guardrail_policy(1_500_000.0, 60_000.0, None, cfg, seed=1).rows()
        b = guardrails.run_guardrail_policy(1_500_000.0, 60_000.0, None, cfg, seed=2).rows()
        assert [r.real_return for r in a] != [r.real_return for r in b]

    def test_ledger_ends_in_single_terminal_row(self, config):
        rows = guardrails.run_guardrail_policy(1_500_000.0, 60_000.0, None, config.replace(horizon_years=6),
                                               seed=4).rows()
        assert rows[-1].action in guardrails.TERMINAL_ACTIONS
        assert all(row.action not in guardrails.TERMINAL_ACTIONS for row in rows[:-1])

    def test_complete_after_horizon(self, config):
        rows = guardrails.run_guardrail_policy(1_500_000.0, 40_000.0, None, config.replace(horizon_years=5),
                                               seed=4).rows()
        assert len(rows) == 6
        assert rows[-1].action == guardrails.COMPLETE
        assert rows[-1].year == 5
        assert rows[-1].balance == rows[-2].end_balance

    def test_balances_chain_year_to_year(self, config):
        rows = guardrails.run_guardrail_policy(1_500_000.0, 60_000.0, None, config.replace(horizon_years=8),
                                               seed=5).rows()
        for previous, current in zip(rows, rows[1:]):
            assert current.balance == previous.end_balance
            assert current.year == previous.year + 1

    def test_balance_update_rule(self, config):
        rows = guardrails.run_guardrail_policy(1_500_000.0, 60_000.0, None, config.replace(horizon_years=4),
                                               seed=5).rows()
        for row in rows[:-1]:
            assert np.isclose(row.end_balance, (row.balance - row.withdrawal) * (1.0 + row.real_return))

    def test_overspending_triggers_cut(self, config):
        rows = guardrails.run_guardrail_policy(1_500_000.0, 150_000.0, None, config.replace(horizon_years=10),
                                               seed=6).rows()
        first = rows[0]
        assert first.action == guardrails.CUT
        assert first.risk >= config.lower_guardrail_risk
        assert first.base_spending < 150_000.0
        assert first.adjusted_risk < config.lower_guardrail_risk

    def test_underspending_triggers_raise(self, config):
        rows = guardrails.run_guardrail_policy(1_500_000.0, 20_000.0, None, config.replace(horizon_years=10),
                                               seed=6).rows()
        first = rows[0]
        assert first.action == guardrails.RAISE
        assert first.risk <= config.upper_guardrail_risk
        assert first.base_spending > 20_000.0
        assert first.adjusted_risk > config.upper_guardrail_risk

    def test_contradictory_config_cuts_first(self, config):
        contradictory = config.replace(lower_guardrail_risk=0.0, upper_guardrail_risk=1.0, horizon_years=3)
        rows = guardrails.run_guardrail_policy(1_500_000.0, 60_000.0, None, contradictory, seed=8).rows()
        assert all(row.action == guardrails.CUT for row in rows[:-1])

    def test_partial_adjustment(self, config):
        cfg = config.replace(horizon_years=10)
        full = guardrails.run_guardrail_policy(1_500_000.0, 150_000.0, None, cfg, seed=6).rows()[0]
        partial = guardrails.run_guardrail_policy(1_500_000.0, 150_000.0, None,
                                                  cfg.replace(adjustment_fraction=0.4), seed=6).rows()[0]
        assert partial.action == guardrails.CUT
        assert np.isclose(partial.base_spending, 150_000.0 + 0.4 * (full.base_spending - 150_000.0))

    def test_solved_initial_spending_starts_steady(self, config):
        rows = guardrails.run_guardrail_policy(1_500_000.0, None, None, config,
                                               seed=10).rows()
        assert rows[0].action == guardrails.STEADY
        assert abs(rows[0].risk - config.target_risk) < 0.02
        assert 30_000.0 < rows[0].base_spending < 120_000.0

    def test_early_crash_forces_cut(self, config):
        crash = config.replace(shocks=(ShockSetting(0, -0.30), ShockSetting(1, -0.30)))
        rows = guardrails.run_guardrail_policy(1_500_000.0, None, None, crash, seed=11).rows()
        assert rows[0].real_return == -0.30
        assert rows[1].real_return == -0.30
        assert any(row.action == guardrails.CUT for row in rows)

    def test_total_loss_exhausts_portfolio(self, config):
        wipeout = config.replace(horizon_years=10, shocks=(ShockSetting(2, -1.0),))
        rows = guardrails.run_guardrail_policy(1_500_000.0, 60_000.0, None, wipeout, seed=12).rows()
        assert rows[-1].action == guardrails.EXHAUSTED
        assert rows[-1].year == 3
        assert rows[-2].end_balance == 0.0
        assert len(rows) == 4

    def test_go_go_spending_and_deferred_start(self, config):
        cfg = config.replace(horizon_years=4, spending_start_year=1, go_go_multiplier=1.25, go_go_years=2)
        rows = guardrails.run_guardrail_policy(1_500_000.0, 40_000.0, None, cfg, seed=13).rows()
        multipliers = [row.spending / row.base_spending for row in rows[:-1]]
        assert np.allclose(multipliers, [0.0, 1.25, 1.0, 1.0])

    def test_raise_clears_large_income(self, config):
        income = IncomeSchedule([FixedIncome(amount=50_000.0)])
        cfg = config.replace(num_trials=4_000, horizon_years=10)
        rows = guardrails.run_guardrail_policy(100_000.0, 30_000.0, income, cfg, seed=3).rows()
        first = rows[0]
        assert first.action == guardrails.RAISE
        assert first.base_spending > 50_000.0
        assert first.adjusted_risk > config.upper_guardrail_risk

    def test_solved_spending_with_large_income(self, config):
        income = IncomeSchedule([FixedIncome(amount=50_000.0)])
        cfg = config.replace(num_trials=4_000, horizon_years=10)
        rows = guardrails.run_guardrail_policy(100_000.0, None, income, cfg, seed=3).rows()
        assert rows[0].base_spending > 50_000.0
        assert rows[0].withdrawal > 0.0
        assert rows[0].action == guardrails.STEADY

    def test_income_offsets_withdrawal(self, config):
        income = IncomeSchedule([
            FixedIncome(amount=30_000.0, start_year=1),
            SteppedAnnuity(amount=20_000.0, start_year=2),
        ])
        cfg = config.replace(horizon_years=5, lower_guardrail_risk=1.0, upper_guardrail_risk=0.0)
        rows = guardrails.run_guardrail_policy(1_500_000.0, 60_000.0, income, cfg, seed=14).rows()
        history = []
        for row in rows[:-1]:
            history.append(Scenario(real_return=row.real_return, inflation=row.inflation))
            expected_income = income.income_for(
                row.year,
                [s.nominal_return for s in history],
                [s.inflation for s in history],
            )
            assert np.isclose(row.income, expected_income)
            assert np.isclose(row.withdrawal, max(row.spending - row.income, 0.0))

    def test_price_level_tracks_inflation(self, config):
        cfg = config.replace(horizon_years=3, inflation_mean=0.03)
        rows = guardrails.run_guardrail_policy(1_500_000.0, 60_000.0, None, cfg, seed=15).rows()
        assert [round(r.price_level, 10) for r in rows] == [1.0, 1.03, round(1.03 ** 2, 10), round(1.03 ** 3, 10)]

    def test_callbacks(self, config):
        statuses = []
        progress = []
        guardrails.run_guardrail_policy(
            1_500_000.0, 60_000.0, None, config.replace(horizon_years=3), seed=16,
            on_status=statuses.append,
            on_progress=lambda current, total: progress.append((current, total)),
        ).rows()
        assert progress == [(1, 3), (2, 3), (3, 3)]
        assert statuses[0].startswith("Processing year 0")

    def test_verbose_prints(self, config, capsys):
        guardrails.run_guardrail_policy(1_500_000.0, 60_000.0, None, config.replace(horizon_years=2),
                                        seed=17, verbose=True).rows()
        assert "Processing year 0" in capsys.readouterr().out

    def test_to_frame_columns(self, config):
        frame = guardrails.run_guardrail_policy(1_500_000.0, 60_000.0, None, config.replace(horizon_years=3),
                                                seed=18).to_frame()
        assert list(frame.columns) == [
            'Year', 'Portfolio_Value', 'Base_Spending', 'Total_Spending', 'Income', 'Withdrawal',
            'Risk', 'Adjusted_Risk', 'Action', 'Real_Return', 'Inflation', 'Price_Level', 'End_Value',
        ]
        assert len(frame) == 4

    def test_invalid_initial_balance(self, config):
        with pytest.raises(ValueError) as exc_info:
            guardrails.run_guardrail_policy(0.0, 60_000.0, None, config)
        assert "Initial portfolio value must be positive" in str(exc_info.value)

    def test_invalid_initial_spending(self, config):
        with pytest.raises(ValueError):
            guardrails.run_guardrail_policy(1_000_000.0, -5.0, None, config)


class TestGuardrailState:
    def test_depleted(self):
        assert guardrails.GuardrailState(balance=0.0, base_spending=1.0).depleted
        assert not guardrails.GuardrailState(balance=1.0, base_spending=1.0).depleted


class TestComputeGuardrailSnapshot:
    """Tests for compute_guardrail_snapshot function."""

    @pytest.fixture
    def snapshot(self, config):
        return guardrails.compute_guardrail_snapshot(1_500_000.0, config.replace(go_go_multiplier=1.25, go_go_years=10),
                                                     seed=21)

    def test_trigger_balances_bracket_current(self, snapshot):
        assert snapshot["lower_guardrail_value"] < snapshot["balance"] < snapshot["upper_guardrail_value"]

    def test_adjusted_spending_ordering(self, snapshot):
        assert snapshot["spending_after_cut"] < snapshot["base_spending"] < snapshot["spending_after_raise"]

    def test_full_adjustment_matches_resolve(self, snapshot):
        assert np.isclose(snapshot["cut_adjusted_spending"], snapshot["spending_after_cut"])
        assert np.isclose(snapshot["raise_adjusted_spending"], snapshot["spending_after_raise"])

    def test_go_go_figures(self, snapshot):
        assert np.isclose(snapshot["go_go_spending"], snapshot["base_spending"] * 1.25)
        assert np.isclose(snapshot["first_year_spending"], snapshot["go_go_spending"])
        assert np.isclose(snapshot["spending_rate"], snapshot["first_year_spending"] / 1_500_000.0)

    def test_current_risk_near_target(self, snapshot):
        assert abs(snapshot["current_risk"] - 0.15) < 0.02

    def test_given_base_spending(self, config):
        snap = guardrails.compute_guardrail_snapshot(1_500_000.0, config, base_spending=50_000.0, seed=21)
        assert snap["base_spending"] == 50_000.0

    def test_no_years_remaining_raises(self, config):
        with pytest.raises(ValueError) as exc_info:
            guardrails.compute_guardrail_snapshot(1_500_000.0, config, year=30)
        assert "No years remain" in str(exc_info.value)
