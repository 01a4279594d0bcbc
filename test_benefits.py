import unittest

from benefits import (
    actuarial_factor,
    apply_general_dropout,
    annual_pension_accrual,
    calc_ipp_contribution,
    calc_oas,
    calc_rrif_year,
    get_rrif_min_percentage,
    get_ympe,
    ipp_admin_costs,
    max_oas_benefit,
    pension_adjustment,
    present_value_factor,
    project_cpp_benefit,
    solve_oas_with_clawback,
)


class TestRRIF(unittest.TestCase):
    def test_min_percentage(self):
        # Below 71: 1 / (90 - age)
        self.assertAlmostEqual(get_rrif_min_percentage(65), 0.04)
        self.assertAlmostEqual(get_rrif_min_percentage(71), 0.0528)
        self.assertAlmostEqual(get_rrif_min_percentage(95), 0.20)
        self.assertEqual(get_rrif_min_percentage(50), 0.0)

    def test_rrif_year(self):
        # 4% minimum up front, remaining 96,000 grows 5%
        y = calc_rrif_year(100000.0, 65, 0.05)
        self.assertAlmostEqual(y.minimum_withdrawal, 4000.0)
        self.assertAlmostEqual(y.withdrawal, 4000.0)
        self.assertAlmostEqual(y.closing_balance, 100800.0)

    def test_extra_withdrawal_capped_at_balance(self):
        y = calc_rrif_year(100000.0, 65, 0.05, extra_withdrawal=1e9)
        self.assertAlmostEqual(y.withdrawal, 100000.0)
        self.assertEqual(y.closing_balance, 0.0)


class TestOAS(unittest.TestCase):
    def test_full_clawback(self):
        # 93,454 + 8,000 / 0.15 = 146,787 < 200,000 -> all of it recovered
        r = solve_oas_with_clawback(200000.0, 8000.0, 93454.0)
        self.assertEqual(r.net, 0.0)
        self.assertEqual(r.clawback, 8000.0)

    def test_no_clawback(self):
        r = solve_oas_with_clawback(50000.0, 8000.0, 93454.0)
        self.assertEqual(r.net, 8000.0)
        self.assertEqual(r.clawback, 0.0)

    def test_partial_clawback_fixed_point(self):
        # net = 8,000 - 0.15 x (100,000 + net - 93,454)  ->  net = 7,018.1 / 1.15
        r = solve_oas_with_clawback(100000.0, 8000.0, 93454.0)
        self.assertAlmostEqual(r.net, 7018.1 / 1.15, delta=0.05)
        self.assertAlmostEqual(r.gross, 8000.0)

    def test_max_benefit_and_deferral(self):
        self.assertAlmostEqual(max_oas_benefit(2025, 65, 65, 0.02), 727.67 * 12)
        self.assertAlmostEqual(max_oas_benefit(2025, 75, 65, 0.02), 800.44 * 12)
        # five years of deferral: +36%
        self.assertAlmostEqual(max_oas_benefit(2025, 70, 70, 0.02), 727.67 * 12 * 1.36)
        self.assertEqual(max_oas_benefit(2025, 64, 65, 0.02), 0.0)

    def test_not_eligible(self):
        self.assertEqual(calc_oas(2030, 70, 65, False, 0.0, 0.02).gross, 0.0)
        self.assertEqual(calc_oas(2030, 60, 65, True, 0.0, 0.02).gross, 0.0)


class TestCPP(unittest.TestCase):
    def test_actuarial_factor(self):
        # 60 months early x 0.6% ; 60 months late x 0.7%
        self.assertAlmostEqual(actuarial_factor(60), 0.64)
        self.assertAlmostEqual(actuarial_factor(65), 1.0)
        self.assertAlmostEqual(actuarial_factor(70), 1.42)
        self.assertAlmostEqual(actuarial_factor(80), 1.42)

    def test_general_dropout(self):
        kept, dropped = apply_general_dropout(list(range(100)))
        self.assertEqual(dropped, 17)
        self.assertEqual(kept[0], 17)

    def test_ympe_history_and_projection(self):
        self.assertEqual(get_ympe(2000, 0.02), 37600.0)
        self.assertEqual(get_ympe(2026, 0.02), 74600.0)
        self.assertGreater(get_ympe(2030, 0.02), 74600.0)

    def test_salary_raises_benefit(self):
        common = dict(
            birth_year=1981, salary_start_age=22, average_historical_salary=60000.0,
            current_age=45, cpp_start_age=65, inflation_rate=0.02,
        )
        with_salary = project_cpp_benefit(projected_salaries=[74600.0] * 20, **common)
        without = project_cpp_benefit(projected_salaries=[0.0] * 20, **common)
        # contributory period runs age 18 to 64
        self.assertEqual(with_salary.contributory_years, 47)
        self.assertGreater(with_salary.total_annual_benefit, without.total_annual_benefit)
        self.assertGreater(without.total_annual_benefit, 0.0)
        self.assertAlmostEqual(with_salary.monthly_benefit * 12, with_salary.total_annual_benefit)


class TestIPP(unittest.TestCase):
    def test_admin_costs(self):
        self.assertEqual(ipp_admin_costs(True), 4500.0)
        self.assertEqual(ipp_admin_costs(False), 2000.0)

    def test_accrual_capped(self):
        # 2% of 300,000 = 6,000 > 3,725 cap
        self.assertEqual(annual_pension_accrual(300000.0, 2026, 0.02), 3725.0)

    def test_pension_adjustment(self):
        # 9 x 2,000 - 600
        self.assertAlmostEqual(pension_adjustment(100000.0, 2026, 0.02), 17400.0)

    def test_pv_factor_grows_with_age(self):
        self.assertLess(present_value_factor(45), present_value_factor(64))

    def test_no_salary_no_contribution(self):
        c = calc_ipp_contribution(50, 5, 0.0, 0.122, 2026, True, 0.02)
        self.assertEqual(c.contribution, 0.0)
        self.assertEqual(c.total_deductible, 0.0)

    def test_contribution_with_salary(self):
        c = calc_ipp_contribution(50, 5, 100000.0, 0.122, 2026, True, 0.02)
        self.assertAlmostEqual(c.accrual, 2000.0)
        self.assertAlmostEqual(c.contribution, 2000.0 * present_value_factor(50))
        self.assertAlmostEqual(c.total_deductible, c.contribution + 4500.0)
        self.assertAlmostEqual(c.corporate_tax_savings, c.contribution * 0.122)
        self.assertAlmostEqual(c.projected_annual_pension, 2000.0 * 6)


if __name__ == "__main__":
    unittest.main()
