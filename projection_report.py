import os
from typing import Dict, List

import pandas as pd

from compensation_simulation import ProjectionSummary, YearlyResult
from strategy_comparison import ComparisonResult


def _row(yr: YearlyResult) -> Dict:
    ret = yr.retirement
    est = yr.estate
    sp = yr.spouse
    acc = yr.notional_accounts
    bal = yr.balances
    return {
        "Year": yr.calendar_year,
        "Age": yr.age,
        "Spouse Age": yr.spouse_age,
        "Phase": yr.phase,
        "Salary": float(yr.salary),
        "Capital Dividends": float(yr.dividends.capital_dividends),
        "Eligible Dividends": float(yr.dividends.eligible_dividends),
        "Non-Eligible Dividends": float(yr.dividends.non_eligible_dividends),
        "Spouse Salary": float(sp.salary) if sp else 0.0,
        "Spouse Dividends": float(sp.dividends.gross_dividends) if sp else 0.0,
        "Personal Tax": float(yr.personal_tax),
        "Spouse Personal Tax": float(sp.personal_tax) if sp else 0.0,
        "CPP": float(yr.cpp),
        "CPP2": float(yr.cpp2),
        "EI": float(yr.ei),
        "QPIP": float(yr.qpip),
        "Employer Payroll": float(yr.employer_payroll_cost),
        "Employer Health Tax": float(yr.employer_health_tax),
        "Corporate Active Tax": float(yr.corporate_active_tax),
        "Corporate Passive Tax": float(yr.corporate_passive_tax),
        "RDTOH Refund": float(yr.rdtoh_refund),
        "Corporate Tax": float(yr.corporate_tax),
        "SBD Grind %": float(yr.passive_income_grind.grind_percentage),
        "Total Tax": float(yr.total_tax),
        "Marginal Rate": float(yr.marginal_rate),
        "Gross Income": float(yr.gross_income),
        "After-Tax Income": float(yr.after_tax_income),
        "RRSP Room Generated": float(yr.rrsp_room_generated),
        "RRSP Contribution": float(yr.rrsp_contribution),
        "TFSA Contribution": float(yr.tfsa_contribution),
        "RESP Contribution": float(yr.resp_contribution),
        "Debt Paydown": float(yr.debt_paydown),
        "IPP Contribution": float(yr.ipp.contribution) if yr.ipp else 0.0,
        "CDA End": float(acc.cda),
        "eRDTOH End": float(acc.erdtoh),
        "nRDTOH End": float(acc.nrdtoh),
        "GRIP End": float(acc.grip),
        "Corporate End": float(acc.corporate_investments),
        "RRSP/RRIF End": float(bal.rrsp_balance),
        "TFSA End": float(bal.tfsa_balance),
        "IPP Fund End": float(bal.ipp_fund_balance),
        "Debt End": float(bal.debt_balance),
        "Retirement Target": float(ret.target_spending) if ret else 0.0,
        "CPP Income": float(ret.cpp_income) if ret else 0.0,
        "OAS (net)": float(ret.oas_net) if ret else 0.0,
        "OAS Clawback": float(ret.oas_clawback) if ret else 0.0,
        "IPP Pension": float(ret.ipp_pension) if ret else 0.0,
        "RRIF Withdrawal": float(ret.rrif_withdrawal) if ret else 0.0,
        "TFSA Withdrawal": float(ret.tfsa_withdrawal) if ret else 0.0,
        "Corporate Draw": float(ret.corporate_dividends) if ret else 0.0,
        "Shortfall": float(ret.shortfall) if ret else 0.0,
        "Terminal RRIF Tax": float(est.terminal_rrif_tax) if est else 0.0,
        "Corporate Wind-Up Tax": float(est.corporate_wind_up_tax) if est else 0.0,
        "Net Estate Value": float(est.net_estate_value) if est else 0.0,
    }


def yearly_rows(summary: ProjectionSummary) -> List[Dict]:
    return [_row(yr) for yr in summary.yearly_results]


def projection_frame(summary: ProjectionSummary) -> pd.DataFrame:
    return pd.DataFrame(yearly_rows(summary))


def comparison_frame(result: ComparisonResult) -> pd.DataFrame:
    """One row per strategy with its totals, diffs against the best overall, and winner flags."""
    rows = []
    for s in result.strategies:
        summ = s.summary
        lt = summ.lifetime
        rows.append({
            "Strategy": s.id,
            "Label": s.label,
            "Current Setup": bool(s.is_current_setup),
            "Total Compensation": float(summ.total_compensation),
            "Total Salary": float(summ.total_salary),
            "Total Dividends": float(summ.total_dividends),
            "Total Tax": float(summ.total_tax),
            "Effective Tax Rate": float(summ.effective_tax_rate),
            "Final Corporate Balance": float(summ.final_corporate_balance),
            "RRSP Room Generated": float(summ.total_rrsp_room_generated),
            "Tax Savings vs Best": float(s.diff.tax_savings),
            "Balance vs Best": float(s.diff.balance_difference),
            "RRSP Room vs Best": float(s.diff.rrsp_room_difference),
            "Wealth (lower rate)": float(s.after_tax_wealth.at_lower_rate),
            "Wealth (current rate)": float(s.after_tax_wealth.at_current_rate),
            "Wealth (top rate)": float(s.after_tax_wealth.at_top_rate),
            "Lifetime Spending": float(lt.total_lifetime_spending) if lt else None,
            "Estate Value": float(lt.estate_value) if lt else None,
            "Lowest Tax": s.id == result.winner.lowest_tax,
            "Highest Balance": s.id == result.winner.highest_balance,
            "Best Overall": s.id == result.winner.best_overall,
        })
    return pd.DataFrame(rows)


def write_csv(df: pd.DataFrame, path: str) -> str:
    folder = os.path.dirname(path)
    if folder:
        os.makedirs(folder, exist_ok=True)
    df.to_csv(path, index=False)
    return path
