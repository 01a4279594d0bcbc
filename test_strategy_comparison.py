import copy
import unittest

from compensation_simulation import LifetimeSummary, ProjectionSummary
from strategy_comparison import (
    Scenario,
    StrategyDefinition,
    build_strategy_definitions,
    calc_after_tax_wealth,
    compare_scenarios,
    compare_strategies,
    compute_lifetime_winner,
    preset_scenarios,
    run_strategy_comparison,
)

SHORT = {
    "province": "ON",
    "required_income": 100000.0,
    "annual_corporate_retained_earnings": 400000.0,
    "corporate_investment_balance": 500000.0,
    "planning_horizon": 5,
}


def _lifetime_run(strategy_id, spending, estate):
    return (
        StrategyDefinition(id=strategy_id, label=strategy_id, description=""),
        ProjectionSummary(lifetime=LifetimeSummary(total_lifetime_spending=spending, estate_value=estate)),
    )


class TestAfterTaxWealth(unittest.TestCase):
    def test_three_rates(self):
        # 30,000 tax on 100,000 -> 30% current, 20% lower, 53.53% top (ON)
        summary = ProjectionSummary(total_compensation=100000.0, total_tax=30000.0,
                                    final_corporate_balance=50000.0, total_rrsp_contributions=10000.0)
        w = calc_after_tax_wealth(summary, "ON")
        self.assertAlmostEqual(w.current_rrsp_withdrawal_rate, 0.30)
        self.assertAlmostEqual(w.lower_rrsp_withdrawal_rate, 0.20)
        self.assertAlmostEqual(w.top_rrsp_withdrawal_rate, 0.5353)
        # 70,000 + 10,000 x 0.7 + 50,000 x 0.6
        self.assertAlmostEqual(w.at_current_rate, 107000.0)
        self.assertGreaterEqual(w.at_lower_rate, w.at_current_rate)
        self.assertGreaterEqual(w.at_current_rate, w.at_top_rate)

    def test_no_rrsp_no_spread(self):
        summary = ProjectionSummary(total_compensation=100000.0, total_tax=30000.0, final_corporate_balance=50000.0)
        w = calc_after_tax_wealth(summary, "ON")
        self.assertAlmostEqual(w.at_lower_rate, w.at_current_rate)
        self.assertAlmostEqual(w.at_current_rate, w.at_top_rate)

    def test_lower_rate_floor(self):
        summary = ProjectionSummary(total_compensation=100000.0, total_tax=25000.0)
        self.assertAlmostEqual(calc_after_tax_wealth(summary, "ON").lower_rrsp_withdrawal_rate, 0.20)

    def test_no_compensation_uses_default_rate(self):
        w = calc_after_tax_wealth(ProjectionSummary(), "BC")
        self.assertAlmostEqual(w.current_rrsp_withdrawal_rate, 0.35)
        self.assertAlmostEqual(w.lower_rrsp_withdrawal_rate, 0.25)

    def test_rate_above_top_is_held_at_top(self):
        # retirement and corporate tax push tax past compensation: 107,130 / 100,000
        summary = ProjectionSummary(total_compensation=100000.0, total_tax=107130.0,
                                    final_corporate_balance=50000.0, total_rrsp_contributions=30000.0)
        w = calc_after_tax_wealth(summary, "ON")
        self.assertAlmostEqual(w.current_rrsp_withdrawal_rate, 0.5353)
        self.assertAlmostEqual(w.lower_rrsp_withdrawal_rate, 0.4353)
        self.assertAlmostEqual(w.at_current_rate, w.at_top_rate)
        self.assertGreater(w.at_lower_rate, w.at_current_rate)

    def test_rate_below_floor_is_held_at_floor(self):
        summary = ProjectionSummary(total_compensation=100000.0, total_tax=5000.0, total_rrsp_contributions=10000.0)
        w = calc_after_tax_wealth(summary, "ON")
        self.assertAlmostEqual(w.current_rrsp_withdrawal_rate, 0.20)
        self.assertAlmostEqual(w.at_lower_rate, w.at_current_rate)
        self.assertGreater(w.at_current_rate, w.at_top_rate)


class TestStrategyDefinitions(unittest.TestCase):
    def test_canonical_three(self):
        ids = [d.id for d in build_strategy_definitions({"salary_strategy": "dynamic"})]
        self.assertEqual(ids, ["salary-at-ympe", "dividends-only", "dynamic"])

    def test_current_setup_for_fixed_salary(self):
        defs = build_strategy_definitions({"salary_strategy": "fixed", "fixed_salary_amount": 50000.0})
        self.assertEqual(len(defs), 4)
        self.assertEqual(defs[0].id, "current-setup")
        self.assertTrue(defs[0].is_current_setup)
        self.assertEqual(defs[0].overrides, {})

    def test_current_setup_for_dividends_only(self):
        defs = build_strategy_definitions({"salary_strategy": "dividends-only"})
        self.assertEqual(defs[0].id, "current-setup")

    def test_zero_fixed_salary_is_not_a_setup(self):
        defs = build_strategy_definitions({"salary_strategy": "fixed", "fixed_salary_amount": 0.0})
        self.assertEqual(len(defs), 3)

    def test_config_not_mutated(self):
        config = {"salary_strategy": "fixed", "fixed_salary_amount": 50000.0}
        before = copy.deepcopy(config)
        build_strategy_definitions(config)
        self.assertEqual(config, before)


class TestComparison(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls.result = run_strategy_comparison(SHORT)

    def test_three_strategies_ran(self):
        self.assertEqual([s.id for s in self.result.strategies], ["salary-at-ympe", "dividends-only", "dynamic"])
        for s in self.result.strategies:
            self.assertGreater(s.summary.total_tax, 0.0)
            self.assertGreater(s.summary.total_compensation, 0.0)
        taxes = {round(s.summary.total_tax, 2) for s in self.result.strategies}
        self.assertGreater(len(taxes), 1)
        self.assertEqual(len(self.result.yearly_data), 3)

    def test_lowest_tax_winner(self):
        lowest = min(s.summary.total_tax for s in self.result.strategies)
        winner = self.result.strategy(self.result.winner.lowest_tax)
        self.assertEqual(winner.summary.total_tax, lowest)

    def test_highest_balance_winner(self):
        highest = max(s.summary.final_corporate_balance for s in self.result.strategies)
        winner = self.result.strategy(self.result.winner.highest_balance)
        self.assertEqual(winner.summary.final_corporate_balance, highest)

    def test_diffs_against_best_overall(self):
        best = self.result.strategy(self.result.winner.best_overall)
        self.assertEqual(best.diff.tax_savings, 0.0)
        self.assertEqual(best.diff.balance_difference, 0.0)
        for s in self.result.strategies:
            self.assertAlmostEqual(s.diff.tax_savings, best.summary.total_tax - s.summary.total_tax)

    def test_no_lifetime_winner_without_retirement(self):
        self.assertFalse(self.result.has_lifetime_winner)
        self.assertIsNone(self.result.lifetime_winner)

    def test_unknown_strategy_lookup(self):
        with self.assertRaises(KeyError):
            self.result.strategy("bonus")


class TestComparisonVariants(unittest.TestCase):
    def test_spouse_and_ipp_keep_three(self):
        result = run_strategy_comparison(dict(SHORT, has_spouse=True, spouse_required_income=30000.0,
                                              consider_ipp=True))
        self.assertEqual(len(result.strategies), 3)
        self.assertTrue(all(s.summary.has_spouse for s in result.strategies))
        self.assertTrue(all(s.summary.has_ipp for s in result.strategies))

    def test_current_setup_is_projected(self):
        result = run_strategy_comparison(dict(SHORT, salary_strategy="fixed", fixed_salary_amount=50000.0,
                                              inflate_spending_needs=False))
        current = result.strategy("current-setup")
        self.assertTrue(current.is_current_setup)
        self.assertEqual(current.summary.yearly_results[0].salary, 50000.0)

    def test_progress_callback(self):
        calls = []
        run_strategy_comparison(SHORT, progress_cb=lambda pct, label: calls.append(pct))
        self.assertEqual(calls[-1], 1.0)

    def test_lifetime_winner_drives_best_overall(self):
        result = run_strategy_comparison({
            "current_age": 60,
            "retirement_age": 62,
            "planning_end_age": 70,
            "required_income": 80000.0,
            "annual_corporate_retained_earnings": 200000.0,
            "corporate_investment_balance": 500000.0,
            "lifetime_objective": "maximize-estate",
        })
        lw = result.lifetime_winner
        self.assertIsNotNone(lw)
        self.assertEqual(lw.objective, "maximize-estate")
        self.assertEqual(lw.by_objective, lw.maximize_estate)
        self.assertEqual(result.winner.best_overall, lw.by_objective)
        best_estate = max(s.summary.lifetime.estate_value for s in result.strategies)
        self.assertEqual(result.strategy(lw.maximize_estate).summary.lifetime.estate_value, best_estate)


class TestLifetimeWealthOrdering(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls.result = run_strategy_comparison({
            "current_age": 55,
            "retirement_age": 60,
            "planning_end_age": 72,
            "required_income": 100000.0,
            "annual_corporate_retained_earnings": 400000.0,
            "corporate_investment_balance": 500000.0,
            "actual_rrsp_balance": 200000.0,
            "contribute_to_rrsp": True,
            "rrsp_room": 30000.0,
        })

    def test_lower_current_top_for_every_strategy(self):
        for s in self.result.strategies:
            w = s.after_tax_wealth
            self.assertGreaterEqual(w.at_lower_rate, w.at_current_rate - 1e-6, s.id)
            self.assertGreaterEqual(w.at_current_rate, w.at_top_rate - 1e-6, s.id)
            self.assertLessEqual(w.current_rrsp_withdrawal_rate, w.top_rrsp_withdrawal_rate)

    def test_rrsp_money_only_after_spending_is_met(self):
        for s in self.result.strategies:
            for r in s.summary.yearly_results:
                if r.rrsp_contribution > 0:
                    self.assertGreaterEqual(r.after_tax_income, 100000.0 - 1.01)


class TestPairwiseAndScenarios(unittest.TestCase):
    def test_compare_strategies_diffs(self):
        pair = compare_strategies(dict(SHORT, salary_strategy="dividends-only"),
                                  dict(SHORT, salary_strategy="fixed", fixed_salary_tracks_ympe=True))
        self.assertAlmostEqual(pair.diff.tax_savings, pair.second.total_tax - pair.first.total_tax)
        self.assertAlmostEqual(pair.diff.balance_difference,
                               pair.first.final_corporate_balance - pair.second.final_corporate_balance)
        # dividends generate no room, the YMPE salary does
        self.assertLess(pair.diff.rrsp_room_difference, 0.0)

    def test_presets(self):
        config = dict(SHORT)
        before = copy.deepcopy(config)
        presets = preset_scenarios(config)
        self.assertEqual(config, before)
        self.assertEqual([p.name for p in presets],
                         ["Maximize Dividends", "Balanced Approach", "CPP Maximizer", "Tax Minimizer"])
        self.assertEqual(presets[2].settings["fixed_salary_amount"], 74600.0)
        self.assertEqual(presets[0].settings["salary_strategy"], "dividends-only")
        self.assertEqual(presets[0].settings["corporate_investment_balance"], 500000.0)

    def test_compare_scenarios_winners(self):
        scenarios = [
            Scenario("divs", dict(SHORT, salary_strategy="dividends-only", planning_horizon=3)),
            Scenario("ympe", dict(SHORT, salary_strategy="fixed", fixed_salary_tracks_ympe=True, planning_horizon=3)),
        ]
        calls = []
        cmp = compare_scenarios(scenarios, progress_cb=lambda pct, label: calls.append(pct))
        self.assertEqual(calls[-1], 1.0)
        self.assertEqual([m.name for m in cmp.scenarios], ["divs", "ympe"])
        lowest = min(cmp.scenarios, key=lambda m: m.total_tax)
        self.assertEqual(cmp.winner.lowest_tax, lowest.name)
        highest = max(cmp.scenarios, key=lambda m: m.final_corporate_balance)
        self.assertEqual(cmp.winner.highest_balance, highest.name)
        self.assertIn(cmp.winner.best_overall, ("divs", "ympe"))
        for m in cmp.scenarios:
            self.assertAlmostEqual(m.total_tax, m.summary.total_tax, places=2)
            self.assertGreater(m.average_tax_rate, 0.0)
            self.assertLess(m.average_tax_rate, 1.0)
        self.assertEqual(cmp.scenario("divs").total_salary, 0.0)

    def test_no_scenarios_no_winner(self):
        self.assertIsNone(compare_scenarios([]).winner)


class TestLifetimeWinner(unittest.TestCase):
    def test_objectives(self):
        runs = [
            _lifetime_run("a", 100.0, 50.0),
            _lifetime_run("b", 90.0, 100.0),
            _lifetime_run("c", 100.0, 40.0),
        ]
        lw = compute_lifetime_winner(runs, "maximize-spending")
        # a and c tie on spending; the earlier one keeps it
        self.assertEqual(lw.maximize_spending, "a")
        self.assertEqual(lw.maximize_estate, "b")
        # a: 1.0 x 0.6 + 0.5 x 0.4 = 0.80 ; b: 0.9 x 0.6 + 1.0 x 0.4 = 0.94
        self.assertEqual(lw.balanced, "b")
        self.assertEqual(lw.by_objective, "a")


if __name__ == "__main__":
    unittest.main()
