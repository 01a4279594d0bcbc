import unittest
import sys
import os
sys.path.append(os.getcwd())

from benefits import calc_rrif_year
from compensation_helpers import ConfigurationError, calc_personal_tax
from compensation_simulation import (
    PHASE_ACCUMULATION,
    PHASE_ESTATE,
    PHASE_RETIREMENT,
    calculate_projection,
    fund_dividends_only,
)
from tax_tables import TaxYearNotFoundError, get_tax_year_data

SHORT = {
    "province": "ON",
    "required_income": 100000.0,
    "annual_corporate_retained_earnings": 400000.0,
    "corporate_investment_balance": 500000.0,
    "planning_horizon": 5,
}


class CountingOptimizer:
    """Pays everything as dividends and counts how often it was asked."""

    def __init__(self):
        self.calls = 0

    def solve(self, ctx):
        self.calls += 1
        return fund_dividends_only(ctx)


class TestShortProjection(unittest.TestCase):
    def test_one_row_per_year(self):
        summary = calculate_projection(SHORT)
        self.assertEqual(len(summary.yearly_results), 5)
        self.assertEqual([r.calendar_year for r in summary.yearly_results], [2026, 2027, 2028, 2029, 2030])
        self.assertTrue(all(r.phase == PHASE_ACCUMULATION for r in summary.yearly_results))
        self.assertFalse(summary.has_lifetime)

    def test_dividends_only_pays_no_salary(self):
        summary = calculate_projection(dict(SHORT, salary_strategy="dividends-only"))
        self.assertEqual(summary.total_salary, 0.0)
        self.assertEqual(summary.total_rrsp_room_generated, 0.0)
        self.assertGreater(summary.total_dividends, 0.0)

    def test_salary_tracks_ympe(self):
        summary = calculate_projection(dict(SHORT, salary_strategy="fixed", fixed_salary_tracks_ympe=True))
        self.assertEqual(summary.yearly_results[0].salary, 74600.0)
        # 18% of 74,600
        self.assertAlmostEqual(summary.yearly_results[0].rrsp_room_generated, 13428.0, places=2)

    def test_fixed_salary_amount(self):
        summary = calculate_projection(dict(SHORT, salary_strategy="fixed", fixed_salary_amount=50000.0,
                                            inflate_spending_needs=False))
        self.assertTrue(all(r.salary == 50000.0 for r in summary.yearly_results))

    def test_dynamic_meets_need(self):
        summary = calculate_projection(SHORT)
        first = summary.yearly_results[0]
        print(f"\nYear 0: salary ${first.salary:,.2f} + dividends ${first.total_dividends:,.2f} "
              f"-> after-tax ${first.after_tax_income:,.2f}")
        self.assertGreaterEqual(first.after_tax_income, 100000.0 - 1.01)

    def test_totals_are_consistent(self):
        summary = calculate_projection(SHORT)
        self.assertAlmostEqual(summary.total_compensation, summary.total_salary + summary.total_dividends, places=2)
        self.assertGreater(summary.total_tax, 0.0)
        self.assertGreater(summary.effective_tax_rate, 0.0)
        self.assertLess(summary.effective_tax_rate, 1.0)
        self.assertEqual(summary.final_corporate_balance, summary.yearly_results[-1].corporate_balance)

    def test_notional_accounts_never_negative(self):
        summary = calculate_projection(dict(SHORT, corporate_investment_balance=0.0,
                                            annual_corporate_retained_earnings=20000.0))
        for r in summary.yearly_results:
            acc = r.notional_accounts
            for value in (acc.cda, acc.erdtoh, acc.nrdtoh, acc.grip, acc.corporate_investments):
                self.assertGreaterEqual(value, 0.0)

    def test_rrsp_and_tfsa_contributions(self):
        summary = calculate_projection(dict(
            SHORT, salary_strategy="fixed", fixed_salary_tracks_ympe=True,
            contribute_to_rrsp=True, rrsp_room=20000.0, maximize_tfsa=True, tfsa_room=7000.0,
        ))
        first = summary.yearly_results[0]
        self.assertEqual(first.rrsp_contribution, 20000.0)
        self.assertEqual(first.tfsa_contribution, 7000.0)
        # the next year's TFSA contribution comes from the new annual room
        self.assertEqual(summary.yearly_results[1].tfsa_contribution, 7000.0)

    def test_custom_optimizer_is_used(self):
        opt = CountingOptimizer()
        summary = calculate_projection(SHORT, optimizer=opt)
        self.assertEqual(opt.calls, 5)
        self.assertEqual(summary.total_salary, 0.0)

    def test_progress_reaches_one(self):
        calls = []
        calculate_projection(SHORT, progress_cb=lambda pct, label: calls.append((pct, label)))
        self.assertEqual(calls[-1], (1.0, "Projection complete"))
        pcts = [c[0] for c in calls]
        self.assertEqual(pcts, sorted(pcts))

    def test_spouse_summary(self):
        summary = calculate_projection(dict(SHORT, has_spouse=True, spouse_required_income=30000.0))
        self.assertTrue(summary.has_spouse)
        self.assertTrue(all(r.has_spouse for r in summary.yearly_results))
        self.assertGreater(summary.spouse.total_compensation, 0.0)
        self.assertGreaterEqual(summary.yearly_results[0].spouse.after_tax_income, 30000.0 - 1.01)

    def test_ipp_needs_salary(self):
        divs = calculate_projection(dict(SHORT, salary_strategy="dividends-only", consider_ipp=True))
        self.assertTrue(divs.has_ipp)
        self.assertEqual(divs.ipp.total_contributions, 0.0)

        paid = calculate_projection(dict(SHORT, salary_strategy="fixed", fixed_salary_tracks_ympe=True,
                                         consider_ipp=True))
        self.assertGreater(paid.ipp.total_contributions, 0.0)
        # first year carries the setup cost
        self.assertEqual(paid.yearly_results[0].ipp.admin_costs, 4500.0)

    def test_spouse_only_ipp_is_summarized(self):
        summary = calculate_projection(dict(
            SHORT, has_spouse=True, spouse_required_income=40000.0,
            spouse_salary_strategy="fixed", spouse_fixed_salary_amount=60000.0, spouse_consider_ipp=True,
        ))
        self.assertTrue(summary.has_ipp)
        self.assertFalse(summary.yearly_results[0].has_ipp)
        self.assertTrue(summary.yearly_results[0].spouse.has_ipp)
        spouse_years = [r.spouse.ipp for r in summary.yearly_results]
        self.assertGreater(summary.ipp.total_contributions, 0.0)
        self.assertAlmostEqual(summary.ipp.total_contributions, sum(y.contribution for y in spouse_years), places=2)
        self.assertAlmostEqual(summary.ipp.final_fund_balance, spouse_years[-1].fund_balance, places=2)

    def test_debt_paydown(self):
        summary = calculate_projection(dict(SHORT, pay_down_debt=True, total_debt_amount=10000.0,
                                            debt_paydown_amount=5000.0, debt_interest_rate=0.0))
        self.assertAlmostEqual(summary.total_debt_paid, 10000.0)
        self.assertEqual(summary.yearly_results[-1].balances.debt_balance, 0.0)


class TestShortYear(unittest.TestCase):
    """The corporation cannot pay for everything the owner asked for."""

    def test_nothing_set_aside_when_spending_is_not_covered(self):
        summary = calculate_projection(dict(
            SHORT, corporate_investment_balance=0.0, annual_corporate_retained_earnings=20000.0,
            salary_strategy="dividends-only", maximize_tfsa=True, tfsa_room=7000.0,
            contribute_to_rrsp=True, rrsp_room=30000.0,
            pay_down_debt=True, total_debt_amount=10000.0, debt_paydown_amount=10000.0, debt_interest_rate=0.0,
        ))
        first = summary.yearly_results[0]
        self.assertLess(first.after_tax_income, 100000.0)
        self.assertEqual(first.tfsa_contribution, 0.0)
        self.assertEqual(first.rrsp_contribution, 0.0)
        self.assertEqual(first.debt_paydown, 0.0)
        self.assertEqual(first.balances.debt_balance, 10000.0)
        self.assertEqual(summary.total_rrsp_contributions, 0.0)
        # no RRSP deduction without an RRSP contribution
        expected = calc_personal_tax(
            get_tax_year_data(2026, "ON"),
            eligible_dividends=first.dividends.eligible_dividends,
            non_eligible_dividends=first.dividends.non_eligible_dividends,
        ).total_tax
        self.assertAlmostEqual(first.personal_tax, expected, delta=0.05)

    def test_contributions_come_out_of_the_surplus(self):
        summary = calculate_projection(dict(
            SHORT, corporate_investment_balance=0.0, annual_corporate_retained_earnings=120000.0,
            required_income=80000.0, inflate_spending_needs=False,
            salary_strategy="fixed", fixed_salary_tracks_ympe=True,
            maximize_tfsa=True, tfsa_room=7000.0, contribute_to_rrsp=True, rrsp_room=30000.0,
        ))
        for r in summary.yearly_results:
            set_aside = r.tfsa_contribution + r.rrsp_contribution + r.resp_contribution + r.debt_paydown
            self.assertLessEqual(set_aside, max(0.0, r.after_tax_income - 80000.0) + 1.02)
        first = summary.yearly_results[0]
        # TFSA is filled before any RRSP money goes in
        if first.rrsp_contribution > 0:
            self.assertEqual(first.tfsa_contribution, 7000.0)

    def test_spouse_contributions_are_funded_too(self):
        summary = calculate_projection(dict(
            SHORT, corporate_investment_balance=0.0, annual_corporate_retained_earnings=60000.0,
            has_spouse=True, spouse_required_income=60000.0,
            spouse_maximize_tfsa=True, spouse_tfsa_room=7000.0,
        ))
        first = summary.yearly_results[0]
        self.assertLess(first.spouse.after_tax_income, 60000.0)
        self.assertEqual(first.spouse.tfsa_contribution, 0.0)


class TestBadSettings(unittest.TestCase):
    def test_ages_out_of_order(self):
        with self.assertRaises(ConfigurationError):
            calculate_projection({"current_age": 70, "retirement_age": 65})

    def test_unknown_strategy(self):
        with self.assertRaises(ConfigurationError):
            calculate_projection(dict(SHORT, salary_strategy="bonus"))

    def test_unknown_province(self):
        with self.assertRaises(TaxYearNotFoundError):
            calculate_projection(dict(SHORT, province="XX"))


class TestLifetimeProjection(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls.summary = calculate_projection({
            "current_age": 45,
            "retirement_age": 65,
            "planning_end_age": 90,
            "required_income": 100000.0,
            "annual_corporate_retained_earnings": 400000.0,
            "corporate_investment_balance": 500000.0,
            "actual_rrsp_balance": 200000.0,
            "actual_tfsa_balance": 50000.0,
        })

    def test_phases(self):
        phases = [r.phase for r in self.summary.yearly_results]
        self.assertEqual(len(phases), 45)
        self.assertEqual(phases.count(PHASE_ACCUMULATION), 20)
        self.assertEqual(phases.count(PHASE_RETIREMENT), 24)
        self.assertEqual(phases[-1], PHASE_ESTATE)

    def test_lifetime_block(self):
        lt = self.summary.lifetime
        self.assertIsNotNone(lt)
        self.assertGreater(lt.lifetime_effective_rate, 0.0)
        self.assertLess(lt.lifetime_effective_rate, 1.0)
        self.assertEqual(lt.accumulation_years, 20)
        self.assertEqual(lt.retirement_years, 25)
        self.assertGreater(lt.cpp_total_received, 0.0)
        self.assertGreater(lt.rrif_total_withdrawn, 0.0)

    def test_retirement_rows(self):
        first = self.summary.yearly_results[20]
        self.assertTrue(first.has_retirement)
        self.assertEqual(first.age, 65)
        self.assertEqual(first.salary, 0.0)
        self.assertGreater(first.retirement.cpp_income, 0.0)
        # RRIF minimum at 65: 1 / 25 of the balance
        self.assertGreater(first.retirement.rrif_minimum, 0.0)

    def test_rrif_step_drives_the_balance(self):
        prev = self.summary.yearly_results[19].balances.rrsp_balance
        first = self.summary.yearly_results[20]
        extra = first.retirement.rrif_withdrawal - first.retirement.rrif_minimum
        step = calc_rrif_year(prev, 65, 0.0431, extra)
        self.assertAlmostEqual(first.retirement.rrif_minimum, step.minimum_withdrawal, delta=0.01)
        self.assertAlmostEqual(first.balances.rrsp_balance, step.closing_balance, delta=0.05)

    def test_estate_settled_in_final_year(self):
        last = self.summary.yearly_results[-1]
        self.assertTrue(last.has_estate)
        self.assertEqual(last.estate.cpp_death_benefit, 2500.0)
        self.assertAlmostEqual(self.summary.lifetime.estate_value, last.estate.net_estate_value, places=2)
        self.assertAlmostEqual(
            last.estate.corporate_wind_up_tax,
            round((last.estate.corporate_balance - last.estate.cda_tax_free) * 0.40, 2),
            delta=0.02,
        )


if __name__ == "__main__":
    unittest.main()
