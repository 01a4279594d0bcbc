import unittest

from corporate_ledger import (
    NotionalAccounts,
    apply_investment_returns,
    calc_corporate_active_tax,
    calc_employer_health_tax,
    calc_investment_returns,
    calc_passive_income_grind,
    deplete_accounts,
    max_dividend_by_cash,
    normalize_allocation,
    notional_capacity,
    process_salary_payment,
)
from tax_tables import get_tax_year_data

ON = get_tax_year_data(2026, "ON")
REFUND = 0.3833


class TestInvestmentReturns(unittest.TestCase):
    def test_all_canadian_equity(self):
        # 100,000 at 5%, all Canadian equity:
        #   dividends 2.4% = 2,400; gains 2.6% = 2,600, half realized = 1,300
        #   taxable gain 650 -> AAII 650; Part IV 2,400 x 38.33% = 919.92
        r = calc_investment_returns(100000.0, 0.05, (1.0, 0.0, 0.0, 0.0), ON)
        self.assertAlmostEqual(r.canadian_dividends, 2400.0)
        self.assertAlmostEqual(r.realized_capital_gain, 1300.0)
        self.assertAlmostEqual(r.taxable_passive_income, 650.0)
        self.assertAlmostEqual(r.part_iv_tax, 919.92)
        self.assertAlmostEqual(r.passive_tax, 650.0 * 0.5017)
        self.assertAlmostEqual(r.cda_increase, 650.0)
        self.assertAlmostEqual(r.nrdtoh_increase, 650.0 * 0.3067)
        self.assertAlmostEqual(r.grip_increase, 2400.0)

        acc = apply_investment_returns(NotionalAccounts(corporate_investments=100000.0), r)
        # 5,000 return less passive tax and Part IV
        self.assertAlmostEqual(acc.corporate_investments, 100000.0 + 5000.0 - 326.105 - 919.92, places=4)
        self.assertAlmostEqual(acc.erdtoh, 919.92)

    def test_empty_portfolio(self):
        r = calc_investment_returns(0.0, 0.05, (1.0, 0.0, 0.0, 0.0), ON)
        self.assertEqual(r.total_return, 0.0)

    def test_allocation_normalized(self):
        self.assertEqual(normalize_allocation(50, 50, 0, 0), (0.5, 0.5, 0.0, 0.0))
        cdn, us, intl, fixed = normalize_allocation(0, 0, 0, 0)
        self.assertAlmostEqual(cdn + us + intl, 1.0)
        self.assertEqual(fixed, 0.0)


class TestActiveIncome(unittest.TestCase):
    def test_small_business_then_general(self):
        # 500,000 x 12.2% + 100,000 x 26.5% = 61,000 + 26,500
        res = calc_corporate_active_tax(600000.0, 0.0, 0.0, ON)
        self.assertAlmostEqual(res.tax, 87500.0)
        self.assertAlmostEqual(res.grip_addition, 100000.0 * 0.735)

    def test_salary_is_deductible(self):
        res = calc_corporate_active_tax(100000.0, 100000.0, 0.0, ON)
        self.assertEqual(res.tax, 0.0)

    def test_passive_grind(self):
        # 60,000 passive -> 10,000 over -> SBD limit down 50,000
        g = calc_passive_income_grind(60000.0, 600000.0, 0.122, 0.265)
        self.assertAlmostEqual(g.reduced_sbd_limit, 450000.0)
        self.assertAlmostEqual(g.grind_percentage, 10.0)
        self.assertFalse(g.is_fully_ground)
        self.assertTrue(calc_passive_income_grind(150000.0, 0.0, 0.122, 0.265).is_fully_ground)

    def test_grind_raises_active_tax(self):
        # 100,000 passive -> limit 250,000: 250,000 x 12.2% + 350,000 x 26.5%
        res = calc_corporate_active_tax(600000.0, 0.0, 100000.0, ON)
        self.assertAlmostEqual(res.tax, 30500.0 + 92750.0)

    def test_employer_health_tax(self):
        # BC notch: 5.85% over the 1,000,000 exemption
        self.assertAlmostEqual(calc_employer_health_tax("BC", 1_200_000.0, 2026), 11700.0)
        self.assertEqual(calc_employer_health_tax("BC", 500_000.0, 2026), 0.0)
        self.assertEqual(calc_employer_health_tax("ON", 5_000_000.0, 2026), 0.0)


class TestDividendLedger(unittest.TestCase):
    def test_capital_dividend_first(self):
        acc = NotionalAccounts(cda=10000.0, grip=50000.0, corporate_investments=100000.0)
        funding, after = deplete_accounts(acc, 5000.0, 0.2, 0.3, REFUND)
        self.assertAlmostEqual(funding.capital_dividends, 5000.0)
        self.assertEqual(funding.eligible_dividends, 0.0)
        self.assertAlmostEqual(after.cda, 5000.0)
        self.assertAlmostEqual(after.corporate_investments, 95000.0)
        # input is not mutated
        self.assertEqual(acc.cda, 10000.0)

    def test_eligible_limited_by_grip(self):
        acc = NotionalAccounts(cda=10000.0, grip=5000.0, erdtoh=10000.0, corporate_investments=100000.0)
        funding, after = deplete_accounts(acc, 20000.0, 0.0, 0.0, REFUND)
        # CDA 10,000, then GRIP 5,000 with a 5,000 x 38.33% refund; 5,000 left unfunded
        self.assertAlmostEqual(funding.capital_dividends, 10000.0)
        self.assertAlmostEqual(funding.eligible_dividends, 5000.0)
        self.assertAlmostEqual(funding.rdtoh_refund, 1916.5)
        self.assertAlmostEqual(funding.after_tax_income, 15000.0)
        self.assertAlmostEqual(after.grip, 0.0)
        self.assertAlmostEqual(after.erdtoh, 8083.5)

    def test_non_eligible_capped_then_retained(self):
        acc = NotionalAccounts(nrdtoh=3833.0, corporate_investments=100000.0)
        funding, after = deplete_accounts(acc, 100000.0, 0.0, 0.0, REFUND, allow_retained_earnings=True)
        # 10,000 unlocks the whole 3,833 nRDTOH; the other 90,000 comes from retained earnings
        self.assertAlmostEqual(funding.non_eligible_dividends, 100000.0, places=2)
        self.assertAlmostEqual(funding.rdtoh_refund, 3833.0, places=2)
        self.assertAlmostEqual(after.nrdtoh, 0.0, places=2)
        self.assertAlmostEqual(after.corporate_investments, 3833.0, places=2)

    def test_retained_earnings_only_when_allowed(self):
        acc = NotionalAccounts(corporate_investments=100000.0)
        funding, after = deplete_accounts(acc, 10000.0, 0.2, 0.3, REFUND)
        self.assertEqual(funding.gross_dividends, 0.0)
        self.assertEqual(after.corporate_investments, 100000.0)

    def test_never_pays_more_than_cash(self):
        acc = NotionalAccounts(cda=50000.0, corporate_investments=1000.0)
        funding, after = deplete_accounts(acc, 5000.0, 0.2, 0.3, REFUND, allow_retained_earnings=True)
        self.assertAlmostEqual(funding.capital_dividends, 1000.0)
        self.assertGreaterEqual(after.corporate_investments, 0.0)

    def test_max_dividend_by_cash(self):
        # refund covers the whole gross-up: 1,000 / (1 - 0.3833)
        self.assertAlmostEqual(max_dividend_by_cash(1000.0, 10000.0, REFUND), 1000.0 / (1 - REFUND))
        # small pool: cash + pool
        self.assertAlmostEqual(max_dividend_by_cash(1000.0, 100.0, REFUND), 1100.0)
        self.assertEqual(max_dividend_by_cash(1000.0, 0.0, REFUND), 1000.0)

    def test_notional_capacity(self):
        acc = NotionalAccounts(cda=1000.0, grip=2000.0, nrdtoh=3833.0)
        self.assertAlmostEqual(notional_capacity(acc, REFUND), 13000.0)

    def test_salary_payment(self):
        acc = process_salary_payment(NotionalAccounts(corporate_investments=10000.0), 5000.0, 500.0)
        self.assertAlmostEqual(acc.corporate_investments, 4500.0)


class TestNotionalAccounts(unittest.TestCase):
    def test_floored_and_rounded(self):
        acc = NotionalAccounts(cda=-5.0, grip=10.0049, corporate_investments=-1.0).floored().rounded()
        self.assertEqual(acc.cda, 0.0)
        self.assertEqual(acc.grip, 10.0)
        self.assertEqual(acc.corporate_investments, 0.0)


if __name__ == "__main__":
    unittest.main()
