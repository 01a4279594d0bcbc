import copy
import logging
import json
import math
from dataclasses import dataclass
from functools import lru_cache
from typing import Dict, Iterable, Optional, Tuple

from tax_tables import DEFAULT_INFLATION_RATE, TaxYearTable, latest_known_year


# ==========================================================
# DEFAULTS
# ==========================================================
DEFAULTS = {
    # ======================
    # Jurisdiction / timeline
    # ======================
    "province": "ON",
    "starting_year": latest_known_year(),
    "planning_horizon": None,           # None -> planning_end_age - current_age
    "expected_inflation_rate": DEFAULT_INFLATION_RATE,
    "inflate_spending_needs": True,

    # ======================
    # Income need
    # ======================
    "required_income": 100000.0,        # after-tax, per year
    "salary_strategy": "dynamic",       # dynamic | fixed | dividends-only
    "fixed_salary_amount": 0.0,
    "fixed_salary_tracks_ympe": False,  # fixed salary = year's YMPE

    # ======================
    # Corporation
    # ======================
    "annual_corporate_retained_earnings": 50000.0,   # active business income before owner pay
    "corporate_investment_balance": 500000.0,
    "investment_return_rate": 0.0431,
    "canadian_equity_percent": 33.33,
    "us_equity_percent": 33.33,
    "international_equity_percent": 33.33,
    "fixed_income_percent": 0.0,

    # Notional accounts (opening)
    "cda_balance": 0.0,
    "erdtoh_balance": 0.0,
    "nrdtoh_balance": 0.0,
    "grip_balance": 0.0,

    # ======================
    # Registered accounts
    # ======================
    "rrsp_room": 0.0,
    "tfsa_room": 0.0,
    "actual_rrsp_balance": 0.0,
    "actual_tfsa_balance": 0.0,
    "maximize_tfsa": False,
    "contribute_to_rrsp": False,
    "contribute_to_resp": False,
    "resp_contribution_amount": 2500.0,

    # ======================
    # Debt
    # ======================
    "pay_down_debt": False,
    "total_debt_amount": 0.0,
    "debt_paydown_amount": 0.0,
    "debt_interest_rate": 0.05,

    # ======================
    # IPP
    # ======================
    "consider_ipp": False,
    "ipp_member_age": None,             # None -> current_age
    "ipp_years_of_service": 0,

    # ======================
    # Lifetime
    # ======================
    "current_age": 45,
    "retirement_age": 65,
    "planning_end_age": 90,
    "retirement_spending": None,        # None -> 70% of required_income
    "lifetime_objective": "balanced",   # maximize-spending | maximize-estate | balanced
    "cpp_start_age": 65,
    "salary_start_age": 22,
    "average_historical_salary": 60000.0,
    "oas_eligible": True,
    "oas_start_age": 65,
    "rrif_extra_withdrawal": 0.0,       # target withdrawal above the RRIF minimum

    # ======================
    # Spouse
    # ======================
    "has_spouse": False,
    "spouse_required_income": 0.0,
    "spouse_salary_strategy": "dynamic",
    "spouse_fixed_salary_amount": 0.0,
    "spouse_rrsp_room": 0.0,
    "spouse_tfsa_room": 0.0,
    "spouse_maximize_tfsa": False,
    "spouse_contribute_to_rrsp": False,
    "spouse_consider_ipp": False,
    "spouse_ipp_member_age": None,
    "spouse_ipp_years_of_service": 0,
    "spouse_current_age": None,         # None -> current_age
    "spouse_cpp_start_age": 65,
    "spouse_salary_start_age": 22,
    "spouse_average_historical_salary": 0.0,
    "spouse_oas_eligible": True,
    "spouse_oas_start_age": 65,
    "spouse_actual_rrsp_balance": 0.0,
    "spouse_actual_tfsa_balance": 0.0,

    # ======================
    # Engine knobs
    # ======================
    "corporate_liquidation_rate": 0.40,
    "dynamic_salary_fractions": [1.0, 0.75, 0.5, 0.25, 0.0],
    "solver_tolerance": 1.0,
    "marginal_rate_delta": 50.0,

    # Debug / Dev
    "enable_debug_logging": False,
}

SALARY_STRATEGIES = ("dynamic", "fixed", "dividends-only")
LIFETIME_OBJECTIVES = ("maximize-spending", "maximize-estate", "balanced")


class ConfigurationError(ValueError):
    """Settings that no projection can run on (ages out of order, unknown selector)."""


def merge_settings(settings_input: Optional[Dict]) -> Dict:
    s = copy.deepcopy(DEFAULTS)
    if isinstance(settings_input, dict):
        s.update(copy.deepcopy(settings_input))

    # Derived defaults
    if s.get("retirement_spending") is None:
        s["retirement_spending"] = 0.7 * float(s["required_income"])
    if s.get("planning_horizon") is None:
        s["planning_horizon"] = int(s["planning_end_age"]) - int(s["current_age"])
    s.setdefault("ipp_member_age", None)
    if s.get("ipp_member_age") is None:
        s["ipp_member_age"] = int(s["current_age"])
    if s.get("spouse_current_age") is None:
        s["spouse_current_age"] = int(s["current_age"])
    if s.get("spouse_ipp_member_age") is None:
        s["spouse_ipp_member_age"] = int(s["spouse_current_age"])
    s["province"] = str(s.get("province") or "ON").upper()
    return s


def check_settings(s: Dict) -> None:
    """Guards the few combinations that cannot produce a projection at all."""
    current_age = int(s["current_age"])
    retirement_age = int(s["retirement_age"])
    end_age = int(s["planning_end_age"])
    if not (current_age < retirement_age <= end_age):
        raise ConfigurationError(
            f"ages must satisfy current_age < retirement_age <= planning_end_age "
            f"(got {current_age}, {retirement_age}, {end_age})"
        )
    if int(s["planning_horizon"]) <= 0:
        raise ConfigurationError("planning_horizon must be positive")
    for key in ("salary_strategy", "spouse_salary_strategy"):
        if s.get(key) not in SALARY_STRATEGIES:
            raise ConfigurationError(f"unknown {key}: {s.get(key)!r}")
    if s.get("lifetime_objective") not in LIFETIME_OBJECTIVES:
        raise ConfigurationError(f"unknown lifetime_objective: {s.get('lifetime_objective')!r}")


def load_settings(path: str) -> Dict:
    """Reads a JSON settings file and merges it over DEFAULTS."""
    with open(path, "r", encoding="utf-8") as f:
        loaded = json.load(f)
    if not isinstance(loaded, dict):
        raise ConfigurationError(f"{path}: settings file must hold a JSON object")
    return merge_settings(loaded)


def configure_logger(name: str, debug: bool = False) -> logging.Logger:
    """Named logger with a single stream handler; DEBUG when debug logging is enabled."""
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter("%(levelname)s: %(message)s")
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    logger.setLevel(logging.INFO)
    if debug:
        logger.setLevel(logging.DEBUG)
    return logger


# ==========================================================
# Numeric helpers
# ==========================================================

def _cents(x: float) -> int:
    """Avoid float drift in keys by quantizing to cents."""
    return int(round(float(x) * 100.0))


def safe_div(num: float, den: float, fallback: float = 0.0) -> float:
    if den == 0 or not math.isfinite(den):
        return float(fallback)
    out = float(num) / float(den)
    return out if math.isfinite(out) else float(fallback)


# ==========================================================
# Personal tax
# ==========================================================

def tax_from_brackets(taxable_income: float, brackets: Iterable) -> float:
    """Calculates tax based on progressive brackets of (top, rate)."""
    income = max(0.0, float(taxable_income))
    tax = 0.0
    prev_top = 0.0
    for top, rate in brackets:
        if income <= prev_top:
            break
        amt_in_bracket = min(income, top) - prev_top
        if amt_in_bracket > 0:
            tax += amt_in_bracket * rate
        prev_top = top
    return max(0.0, tax)


def provincial_surtax(basic_prov_tax: float, tiers: Iterable) -> float:
    """Stepped surtax: each tier adds rate x (provincial tax over its threshold)."""
    bt = max(0.0, float(basic_prov_tax))
    surtax = 0.0
    for thresh, rate in tiers:
        if bt > thresh:
            surtax += rate * (bt - thresh)
    return surtax


def health_premium(income: float, tiers: Iterable) -> float:
    """
    Tiered premium (Ontario Health Premium shape). Each tier is
    (threshold, base, rate, max premium); the highest tier below income applies.
    """
    ti = max(0.0, float(income))
    applicable = None
    for tier in tiers:
        if ti > tier[0]:
            applicable = tier
    if applicable is None:
        return 0.0
    thresh, base, rate, max_premium = applicable
    return max(0.0, min(max_premium, base + (ti - thresh) * rate))


@dataclass(frozen=True)
class PersonalTaxResult:
    federal_tax: float = 0.0
    provincial_tax: float = 0.0      # after dividend credits, includes surtax
    surtax: float = 0.0
    health_premium: float = 0.0
    dividend_tax_credits: float = 0.0
    taxable_income: float = 0.0
    total_tax: float = 0.0


@lru_cache(maxsize=200_000)
def _calc_personal_tax_cached(
    ordinary_cents: int,
    eligible_cents: int,
    non_eligible_cents: int,
    taxable_gains_cents: int,
    rrsp_cents: int,
    table: TaxYearTable,
) -> PersonalTaxResult:
    ordinary = ordinary_cents / 100.0
    eligible = max(0.0, eligible_cents / 100.0)
    non_eligible = max(0.0, non_eligible_cents / 100.0)
    gains = max(0.0, taxable_gains_cents / 100.0)
    rrsp = max(0.0, rrsp_cents / 100.0)

    elig_gu = eligible * (1.0 + table.eligible_gross_up)
    non_elig_gu = non_eligible * (1.0 + table.non_eligible_gross_up)
    taxable = max(0.0, ordinary + elig_gu + non_elig_gu + gains - rrsp)
    if taxable <= 0:
        return PersonalTaxResult()

    # 1. Bracket tax
    fed_base = tax_from_brackets(taxable, table.federal_brackets)
    prov_base = tax_from_brackets(taxable, table.provincial_brackets)

    # 2. Credits at the lowest rate plus dividend tax credits
    fed_lowest = table.federal_brackets[0][1] if table.federal_brackets else 0.0
    prov_lowest = table.provincial_brackets[0][1] if table.provincial_brackets else 0.0

    fed_dtc = elig_gu * table.eligible_federal_credit + non_elig_gu * table.non_eligible_federal_credit
    prov_dtc = elig_gu * table.eligible_provincial_credit + non_elig_gu * table.non_eligible_provincial_credit

    fed_tax = max(0.0, fed_base - table.federal_bpa * fed_lowest - fed_dtc)
    fed_tax *= (1.0 - table.federal_abatement)
    prov_tax = max(0.0, prov_base - table.provincial_bpa * prov_lowest - prov_dtc)

    # 3. Surtax on provincial tax after credits; premium on actual (not grossed-up) income
    surtax = provincial_surtax(prov_tax, table.surtax_tiers)
    actual_income = max(0.0, ordinary + eligible + non_eligible + gains - rrsp)
    premium = health_premium(actual_income, table.health_premium_tiers)

    provincial = prov_tax + surtax
    return PersonalTaxResult(
        federal_tax=fed_tax,
        provincial_tax=provincial,
        surtax=surtax,
        health_premium=premium,
        dividend_tax_credits=fed_dtc + prov_dtc,
        taxable_income=taxable,
        total_tax=fed_tax + provincial + premium,
    )


def calc_personal_tax(
    table: TaxYearTable,
    ordinary_income: float = 0.0,
    eligible_dividends: float = 0.0,
    non_eligible_dividends: float = 0.0,
    taxable_capital_gains: float = 0.0,
    rrsp_deduction: float = 0.0,
) -> PersonalTaxResult:
    """
    Combined federal + provincial tax, surtax and health premium.
    Capital dividends are tax-free and never passed in here.
    """
    return _calc_personal_tax_cached(
        _cents(ordinary_income),
        _cents(eligible_dividends),
        _cents(non_eligible_dividends),
        _cents(taxable_capital_gains),
        _cents(rrsp_deduction),
        table,
    )


def calc_marginal_rate(
    table: TaxYearTable,
    ordinary_income: float,
    eligible_dividends: float = 0.0,
    non_eligible_dividends: float = 0.0,
    delta: float = 50.0,
) -> float:
    """Marginal rate on the next `delta` dollars of ordinary income."""
    delta = max(0.01, float(delta))
    t1 = calc_personal_tax(table, ordinary_income, eligible_dividends, non_eligible_dividends).total_tax
    t2 = calc_personal_tax(table, ordinary_income + delta, eligible_dividends, non_eligible_dividends).total_tax
    return float((t2 - t1) / delta)


def effective_dividend_rates(table: TaxYearTable, income_estimate: float) -> Tuple[float, float]:
    """Average personal rate on eligible and non-eligible dividends at an income level."""
    est = max(1.0, float(income_estimate))
    elig = calc_personal_tax(table, eligible_dividends=est).total_tax / est
    non_elig = calc_personal_tax(table, non_eligible_dividends=est).total_tax / est
    return min(max(elig, 0.0), 0.95), min(max(non_elig, 0.0), 0.95)


# ==========================================================
# Payroll
# ==========================================================

@dataclass(frozen=True)
class PayrollResult:
    cpp: float = 0.0            # QPP in Quebec
    cpp2: float = 0.0
    ei: float = 0.0
    qpip: float = 0.0
    employer_ei: float = 0.0
    employer_qpip: float = 0.0

    @property
    def employee_total(self) -> float:
        return self.cpp + self.cpp2 + self.ei + self.qpip

    @property
    def employer_cost(self) -> float:
        # employer matches CPP/CPP2, pays EI at the multiplier and its own QPIP share
        return self.cpp + self.cpp2 + self.employer_ei + self.employer_qpip

    @property
    def total(self) -> float:
        return self.employee_total + self.employer_cost


@lru_cache(maxsize=50_000)
def _calc_payroll_cached(salary_cents: int, table: TaxYearTable) -> PayrollResult:
    s = max(0.0, salary_cents / 100.0)
    if s <= 0:
        return PayrollResult()

    cpp = max(0.0, min(s, table.ympe) - table.cpp_basic_exemption) * table.cpp_rate
    cpp = min(cpp, table.cpp_max_contribution)

    cpp2 = max(0.0, min(s, table.yampe) - table.ympe) * table.cpp2_rate
    cpp2 = min(cpp2, table.cpp2_max_contribution)

    ei = min(min(s, table.ei_max_insurable) * table.ei_rate, table.ei_max_contribution)

    qpip = 0.0
    employer_qpip = 0.0
    if table.qpip_employee_rate > 0:
        insurable = min(s, table.qpip_max_insurable)
        qpip = insurable * table.qpip_employee_rate
        employer_qpip = insurable * table.qpip_employer_rate

    return PayrollResult(
        cpp=cpp,
        cpp2=cpp2,
        ei=ei,
        qpip=qpip,
        employer_ei=ei * table.ei_employer_multiplier,
        employer_qpip=employer_qpip,
    )


def calc_payroll(salary: float, table: TaxYearTable) -> PayrollResult:
    """CPP/QPP, CPP2, EI and QPIP on one person's salary, each capped at its annual maximum."""
    return _calc_payroll_cached(_cents(salary), table)
