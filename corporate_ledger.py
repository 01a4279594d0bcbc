from dataclasses import dataclass, replace
from typing import Tuple

from compensation_helpers import safe_div
from tax_tables import TaxYearTable


# ==========================================================
# Constants
# ==========================================================
CANADIAN_EQUITY_DIVIDEND_YIELD = 0.024
US_EQUITY_DIVIDEND_YIELD = 0.015
INTL_EQUITY_DIVIDEND_YIELD = 0.020
REALIZED_GAIN_SHARE = 0.5           # share of equity growth realized each year
CAPITAL_GAINS_INCLUSION = 0.5
NRDTOH_RATE = 0.3067                # refundable portion of investment income tax

SBD_BUSINESS_LIMIT = 500000.0
PASSIVE_INCOME_THRESHOLD = 50000.0
PASSIVE_GRIND_RATE = 5.0            # SBD lost per $1 of passive income over threshold

BC_EHT = {"exemption": 1_000_000.0, "upper": 1_500_000.0, "notch_rate": 0.0585, "full_rate": 0.0195}
MB_HE_LEVY = {
    2025: {"exemption": 2_250_000.0, "upper": 4_500_000.0},
    2026: {"exemption": 2_500_000.0, "upper": 5_000_000.0},
}
MB_NOTCH_RATE = 0.043
MB_FULL_RATE = 0.0215


@dataclass
class NotionalAccounts:
    cda: float = 0.0
    erdtoh: float = 0.0
    nrdtoh: float = 0.0
    grip: float = 0.0
    corporate_investments: float = 0.0

    def copy(self) -> "NotionalAccounts":
        return replace(self)

    def floored(self) -> "NotionalAccounts":
        return NotionalAccounts(
            cda=max(0.0, self.cda),
            erdtoh=max(0.0, self.erdtoh),
            nrdtoh=max(0.0, self.nrdtoh),
            grip=max(0.0, self.grip),
            corporate_investments=max(0.0, self.corporate_investments),
        )

    def rounded(self) -> "NotionalAccounts":
        return NotionalAccounts(
            cda=round(self.cda, 2),
            erdtoh=round(self.erdtoh, 2),
            nrdtoh=round(self.nrdtoh, 2),
            grip=round(self.grip, 2),
            corporate_investments=round(self.corporate_investments, 2),
        )


# ==========================================================
# Investment returns
# ==========================================================

@dataclass(frozen=True)
class InvestmentReturns:
    total_return: float = 0.0
    canadian_dividends: float = 0.0
    foreign_income: float = 0.0          # foreign dividends + interest
    realized_capital_gain: float = 0.0
    unrealized_capital_gain: float = 0.0
    cda_increase: float = 0.0
    nrdtoh_increase: float = 0.0
    erdtoh_increase: float = 0.0
    grip_increase: float = 0.0
    passive_tax: float = 0.0             # tax on aggregate investment income
    part_iv_tax: float = 0.0             # refundable tax on Canadian portfolio dividends

    @property
    def taxable_passive_income(self) -> float:
        """Adjusted aggregate investment income: foreign income + taxable realized gains."""
        return max(0.0, self.foreign_income + max(0.0, self.realized_capital_gain) * CAPITAL_GAINS_INCLUSION)


def normalize_allocation(cdn: float, us: float, intl: float, fixed: float) -> Tuple[float, float, float, float]:
    """Weights as fractions summing to 1; an all-zero allocation becomes an equity three-way split."""
    weights = [max(0.0, float(w or 0.0)) for w in (cdn, us, intl, fixed)]
    total = sum(weights)
    if total <= 0:
        return (1.0 / 3.0, 1.0 / 3.0, 1.0 / 3.0, 0.0)
    return tuple(w / total for w in weights)


def return_composition(allocation: Tuple[float, float, float, float], return_rate: float) -> Tuple[float, float, float]:
    """Split a total return rate into (Canadian dividend, foreign income, capital gain) rates."""
    w_cdn, w_us, w_intl, w_fixed = allocation
    cdn_div_rate = w_cdn * CANADIAN_EQUITY_DIVIDEND_YIELD
    foreign_div_rate = w_us * US_EQUITY_DIVIDEND_YIELD + w_intl * INTL_EQUITY_DIVIDEND_YIELD
    interest_rate = w_fixed * return_rate
    gain_rate = return_rate - cdn_div_rate - foreign_div_rate - interest_rate
    return cdn_div_rate, foreign_div_rate + interest_rate, gain_rate


def calc_investment_returns(
    balance: float,
    return_rate: float,
    allocation: Tuple[float, float, float, float],
    table: TaxYearTable,
) -> InvestmentReturns:
    if balance <= 0:
        return InvestmentReturns()

    cdn_rate, foreign_rate, gain_rate = return_composition(allocation, return_rate)
    cdn_div = balance * cdn_rate
    foreign = balance * foreign_rate
    gains = balance * gain_rate
    realized = gains * REALIZED_GAIN_SHARE
    unrealized = gains - realized

    # Capital losses reduce the portfolio but create no notional credits
    taxable_gain = max(0.0, realized) * CAPITAL_GAINS_INCLUSION
    aaii = max(0.0, foreign + taxable_gain)
    part_iv = cdn_div * table.rdtoh_refund_rate

    return InvestmentReturns(
        total_return=balance * return_rate,
        canadian_dividends=cdn_div,
        foreign_income=foreign,
        realized_capital_gain=realized,
        unrealized_capital_gain=unrealized,
        cda_increase=max(0.0, realized) - taxable_gain,
        nrdtoh_increase=aaii * NRDTOH_RATE,
        erdtoh_increase=part_iv,
        grip_increase=cdn_div,
        passive_tax=aaii * table.passive_investment_rate,
        part_iv_tax=part_iv,
    )


def apply_investment_returns(accounts: NotionalAccounts, returns: InvestmentReturns) -> NotionalAccounts:
    out = accounts.copy()
    out.corporate_investments += returns.total_return - returns.passive_tax - returns.part_iv_tax
    out.cda += returns.cda_increase
    out.nrdtoh += returns.nrdtoh_increase
    out.erdtoh += returns.erdtoh_increase
    out.grip += returns.grip_increase
    return out


# ==========================================================
# Active business income
# ==========================================================

@dataclass(frozen=True)
class PassiveIncomeGrind:
    passive_income: float = 0.0
    excess_passive_income: float = 0.0
    sbd_reduction: float = 0.0
    reduced_sbd_limit: float = SBD_BUSINESS_LIMIT
    is_fully_ground: bool = False
    grind_percentage: float = 0.0
    additional_tax: float = 0.0


def calc_passive_income_grind(
    passive_income: float,
    active_income: float,
    small_business_rate: float,
    general_rate: float,
) -> PassiveIncomeGrind:
    """SBD limit shrinks by $5 for every $1 of passive income above $50,000."""
    excess = max(0.0, float(passive_income) - PASSIVE_INCOME_THRESHOLD)
    reduction = min(SBD_BUSINESS_LIMIT, excess * PASSIVE_GRIND_RATE)
    reduced = max(0.0, SBD_BUSINESS_LIMIT - reduction)
    lost = min(max(0.0, float(active_income)), reduction)
    return PassiveIncomeGrind(
        passive_income=float(passive_income),
        excess_passive_income=excess,
        sbd_reduction=reduction,
        reduced_sbd_limit=reduced,
        is_fully_ground=reduced == 0.0,
        grind_percentage=100.0 * reduction / SBD_BUSINESS_LIMIT,
        additional_tax=lost * (general_rate - small_business_rate),
    )


@dataclass(frozen=True)
class ActiveTaxResult:
    taxable_business_income: float = 0.0
    sbd_income: float = 0.0
    general_income: float = 0.0
    tax: float = 0.0
    grip_addition: float = 0.0
    grind: PassiveIncomeGrind = PassiveIncomeGrind()


def calc_corporate_active_tax(
    active_income: float,
    deductible_expenses: float,
    passive_income: float,
    table: TaxYearTable,
) -> ActiveTaxResult:
    """Small-business rate up to the ground-down SBD limit, general rate above it."""
    taxable = max(0.0, float(active_income) - float(deductible_expenses))
    grind = calc_passive_income_grind(passive_income, taxable, table.small_business_rate, table.general_rate)
    sbd_income = min(taxable, grind.reduced_sbd_limit)
    general_income = max(0.0, taxable - grind.reduced_sbd_limit)
    tax = sbd_income * table.small_business_rate + general_income * table.general_rate
    return ActiveTaxResult(
        taxable_business_income=taxable,
        sbd_income=sbd_income,
        general_income=general_income,
        tax=tax,
        grip_addition=general_income * (1.0 - table.general_rate),
        grind=grind,
    )


def calc_employer_health_tax(province: str, total_payroll: float, year: int) -> float:
    """BC Employer Health Tax and Manitoba Health and Education Levy; zero elsewhere."""
    payroll = float(total_payroll)
    if payroll <= 0:
        return 0.0

    if province == "BC":
        if payroll <= BC_EHT["exemption"]:
            return 0.0
        if payroll <= BC_EHT["upper"]:
            return BC_EHT["notch_rate"] * (payroll - BC_EHT["exemption"])
        return BC_EHT["full_rate"] * payroll

    if province == "MB":
        limits = MB_HE_LEVY[2026] if year >= 2026 else MB_HE_LEVY[2025]
        if payroll <= limits["exemption"]:
            return 0.0
        if payroll <= limits["upper"]:
            return MB_NOTCH_RATE * (payroll - limits["exemption"])
        return MB_FULL_RATE * payroll

    return 0.0


# ==========================================================
# Dividend payout ledger
# ==========================================================

@dataclass
class DividendFunding:
    capital_dividends: float = 0.0
    eligible_dividends: float = 0.0
    non_eligible_dividends: float = 0.0
    rdtoh_refund: float = 0.0
    after_tax_income: float = 0.0       # estimate at the rates used for sizing

    @property
    def gross_dividends(self) -> float:
        return self.capital_dividends + self.eligible_dividends + self.non_eligible_dividends

    def add(self, other: "DividendFunding") -> "DividendFunding":
        return DividendFunding(
            capital_dividends=self.capital_dividends + other.capital_dividends,
            eligible_dividends=self.eligible_dividends + other.eligible_dividends,
            non_eligible_dividends=self.non_eligible_dividends + other.non_eligible_dividends,
            rdtoh_refund=self.rdtoh_refund + other.rdtoh_refund,
            after_tax_income=self.after_tax_income + other.after_tax_income,
        )


def max_dividend_by_cash(cash: float, refund_pool: float, refund_rate: float) -> float:
    """Largest dividend whose net corporate cost (dividend - refund) fits in `cash`."""
    cash = max(0.0, cash)
    pool = max(0.0, refund_pool)
    if refund_rate <= 0 or pool <= 0:
        return cash
    full_refund_div = cash / (1.0 - refund_rate)
    if full_refund_div * refund_rate <= pool:
        return full_refund_div
    return cash + pool


def deplete_accounts(
    accounts: NotionalAccounts,
    required_after_tax: float,
    eligible_rate: float,
    non_eligible_rate: float,
    refund_rate: float,
    allow_retained_earnings: bool = False,
) -> Tuple[DividendFunding, NotionalAccounts]:
    """
    Pays dividends toward an after-tax need in payout order:
      1. capital dividends from CDA (tax-free)
      2. eligible dividends against GRIP, refunding eRDTOH
      3. non-eligible dividends that unlock the nRDTOH refund
      4. (optional) non-eligible dividends out of retained earnings
    No account is drawn past its balance and the corporation never pays out
    more cash than it holds.
    """
    acc = accounts.copy()
    funding = DividendFunding()
    remaining = max(0.0, float(required_after_tax))

    def cash() -> float:
        return max(0.0, acc.corporate_investments)

    # 1. Capital dividends
    if remaining > 0 and acc.cda > 0:
        amt = min(remaining, acc.cda, cash())
        funding.capital_dividends += amt
        funding.after_tax_income += amt
        remaining -= amt
        acc.cda -= amt
        acc.corporate_investments -= amt

    # 2. Eligible dividends (GRIP), with eRDTOH refund
    if remaining > 0 and acc.grip > 0:
        gross_needed = safe_div(remaining, 1.0 - eligible_rate, remaining)
        div = min(gross_needed, acc.grip, max_dividend_by_cash(cash(), acc.erdtoh, refund_rate))
        refund = min(max(0.0, acc.erdtoh), div * refund_rate)
        after_tax = div * (1.0 - eligible_rate)
        funding.eligible_dividends += div
        funding.rdtoh_refund += refund
        funding.after_tax_income += after_tax
        remaining = max(0.0, remaining - after_tax)
        acc.grip -= div
        acc.erdtoh -= refund
        acc.corporate_investments -= div - refund

    # 3. Non-eligible dividends that recover nRDTOH
    if remaining > 0 and acc.nrdtoh > 0:
        gross_needed = safe_div(remaining, 1.0 - non_eligible_rate, remaining)
        cap = safe_div(acc.nrdtoh, refund_rate)
        div = min(gross_needed, cap, max_dividend_by_cash(cash(), acc.nrdtoh, refund_rate))
        refund = min(acc.nrdtoh, div * refund_rate)
        after_tax = div * (1.0 - non_eligible_rate)
        funding.non_eligible_dividends += div
        funding.rdtoh_refund += refund
        funding.after_tax_income += after_tax
        remaining = max(0.0, remaining - after_tax)
        acc.nrdtoh -= refund
        acc.corporate_investments -= div - refund

    # 4. Non-eligible dividends from retained earnings
    if allow_retained_earnings and remaining > 0 and cash() > 0:
        gross_needed = safe_div(remaining, 1.0 - non_eligible_rate, remaining)
        div = min(gross_needed, cash())
        after_tax = div * (1.0 - non_eligible_rate)
        funding.non_eligible_dividends += div
        funding.after_tax_income += after_tax
        remaining = max(0.0, remaining - after_tax)
        acc.corporate_investments -= div

    return funding, acc


def notional_capacity(accounts: NotionalAccounts, refund_rate: float) -> float:
    """Gross dividends the notional accounts can carry without touching plain retained earnings."""
    return (
        max(0.0, accounts.cda)
        + max(0.0, accounts.grip)
        + safe_div(max(0.0, accounts.nrdtoh), refund_rate)
    )


def process_salary_payment(accounts: NotionalAccounts, salary: float, employer_cost: float) -> NotionalAccounts:
    out = accounts.copy()
    out.corporate_investments -= float(salary) + float(employer_cost)
    return out
