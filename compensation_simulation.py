from dataclasses import dataclass, field, fields, is_dataclass, replace
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from benefits import (
    CPP_DEATH_BENEFIT,
    CPPBenefit,
    OASResult,
    RRIFYear,
    calc_ipp_contribution,
    calc_oas,
    calc_rrif_year,
    project_cpp_benefit,
)
from compensation_helpers import (
    PayrollResult,
    PersonalTaxResult,
    calc_marginal_rate,
    calc_payroll,
    calc_personal_tax,
    check_settings,
    configure_logger,
    effective_dividend_rates,
    merge_settings,
    safe_div,
)
from corporate_ledger import (
    DividendFunding,
    InvestmentReturns,
    NotionalAccounts,
    PassiveIncomeGrind,
    apply_investment_returns,
    calc_corporate_active_tax,
    calc_employer_health_tax,
    calc_investment_returns,
    deplete_accounts,
    normalize_allocation,
    notional_capacity,
    process_salary_payment,
)
from tax_tables import TaxYearTable, get_tax_year_data, inflate_amount

PHASE_ACCUMULATION = "accumulation"
PHASE_RETIREMENT = "retirement"
PHASE_ESTATE = "estate"

UNLIMITED_NEED = 1e12
BISECTION_ITERATIONS = 40


# ==========================================================
# Yearly records
# ==========================================================

@dataclass
class AccountBalances:
    rrsp_balance: float = 0.0           # RRIF once converted
    tfsa_balance: float = 0.0
    corporate_balance: float = 0.0
    ipp_fund_balance: float = 0.0
    spouse_rrsp_balance: float = 0.0
    spouse_tfsa_balance: float = 0.0
    debt_balance: float = 0.0


@dataclass
class IPPYear:
    member_age: int = 0
    years_of_service: int = 0
    contribution: float = 0.0
    admin_costs: float = 0.0
    total_deductible: float = 0.0
    pension_adjustment: float = 0.0
    projected_annual_pension: float = 0.0
    corporate_tax_savings: float = 0.0
    fund_balance: float = 0.0


@dataclass
class SpouseYear:
    age: int = 0
    salary: float = 0.0
    dividends: DividendFunding = field(default_factory=DividendFunding)
    personal_tax: float = 0.0
    employee_payroll: float = 0.0
    employer_payroll_cost: float = 0.0
    after_tax_income: float = 0.0
    rrsp_room_generated: float = 0.0
    rrsp_contribution: float = 0.0
    tfsa_contribution: float = 0.0
    ipp: Optional[IPPYear] = None

    @property
    def has_ipp(self) -> bool:
        return self.ipp is not None


@dataclass
class RetirementIncome:
    target_spending: float = 0.0
    cpp_income: float = 0.0
    oas_gross: float = 0.0
    oas_clawback: float = 0.0
    oas_net: float = 0.0
    ipp_pension: float = 0.0
    rrif_minimum: float = 0.0
    rrif_withdrawal: float = 0.0
    tfsa_withdrawal: float = 0.0
    corporate_dividends: float = 0.0
    total_taxable_income: float = 0.0
    personal_tax: float = 0.0
    after_tax_income: float = 0.0
    shortfall: float = 0.0
    spouse_cpp_income: float = 0.0
    spouse_oas_gross: float = 0.0
    spouse_oas_net: float = 0.0
    spouse_rrif_withdrawal: float = 0.0
    spouse_personal_tax: float = 0.0


@dataclass
class EstateBreakdown:
    rrif_balance: float = 0.0
    ipp_balance: float = 0.0
    terminal_rrif_tax: float = 0.0
    corporate_balance: float = 0.0
    cda_tax_free: float = 0.0
    corporate_wind_up_tax: float = 0.0
    tfsa_pass_through: float = 0.0
    cpp_death_benefit: float = 0.0
    gross_estate: float = 0.0
    net_estate_value: float = 0.0


@dataclass
class YearlyResult:
    year_index: int
    calendar_year: int
    age: int
    phase: str
    salary: float = 0.0
    dividends: DividendFunding = field(default_factory=DividendFunding)
    personal_tax: float = 0.0
    personal_tax_detail: PersonalTaxResult = field(default_factory=PersonalTaxResult)
    cpp: float = 0.0
    cpp2: float = 0.0
    ei: float = 0.0
    qpip: float = 0.0
    employer_payroll_cost: float = 0.0
    employer_health_tax: float = 0.0
    corporate_active_tax: float = 0.0
    corporate_passive_tax: float = 0.0
    rdtoh_refund: float = 0.0
    corporate_tax: float = 0.0
    passive_income_grind: PassiveIncomeGrind = field(default_factory=PassiveIncomeGrind)
    investment_returns: InvestmentReturns = field(default_factory=InvestmentReturns)
    notional_accounts: NotionalAccounts = field(default_factory=NotionalAccounts)
    rrsp_room_generated: float = 0.0
    rrsp_contribution: float = 0.0
    tfsa_contribution: float = 0.0
    resp_contribution: float = 0.0
    debt_paydown: float = 0.0
    debt_interest: float = 0.0
    gross_income: float = 0.0
    after_tax_income: float = 0.0
    total_tax: float = 0.0
    marginal_rate: float = 0.0
    balances: AccountBalances = field(default_factory=AccountBalances)
    spouse_age: Optional[int] = None
    retirement: Optional[RetirementIncome] = None
    ipp: Optional[IPPYear] = None
    spouse: Optional[SpouseYear] = None
    estate: Optional[EstateBreakdown] = None

    @property
    def has_retirement(self) -> bool:
        return self.retirement is not None

    @property
    def has_ipp(self) -> bool:
        return self.ipp is not None

    @property
    def has_spouse(self) -> bool:
        return self.spouse is not None

    @property
    def has_estate(self) -> bool:
        return self.estate is not None

    @property
    def employee_payroll(self) -> float:
        return self.cpp + self.cpp2 + self.ei + self.qpip

    @property
    def total_dividends(self) -> float:
        return self.dividends.gross_dividends

    @property
    def corporate_balance(self) -> float:
        return self.notional_accounts.corporate_investments


# ==========================================================
# Summary records
# ==========================================================

@dataclass
class IPPSummary:
    total_contributions: float = 0.0
    total_admin_costs: float = 0.0
    total_deductible: float = 0.0
    total_pension_adjustments: float = 0.0
    total_corporate_tax_savings: float = 0.0
    projected_annual_pension: float = 0.0
    final_fund_balance: float = 0.0


@dataclass
class SpouseSummary:
    total_salary: float = 0.0
    total_dividends: float = 0.0
    total_compensation: float = 0.0
    total_personal_tax: float = 0.0
    total_payroll: float = 0.0
    total_rrsp_room_generated: float = 0.0
    total_rrsp_contributions: float = 0.0
    total_tfsa_contributions: float = 0.0
    total_cpp_received: float = 0.0
    total_oas_received: float = 0.0


@dataclass
class LifetimeSummary:
    total_lifetime_spending: float = 0.0
    estate_value: float = 0.0
    total_lifetime_tax: float = 0.0
    total_gross_income: float = 0.0
    lifetime_effective_rate: float = 0.0
    peak_corporate_balance: float = 0.0
    peak_year: int = 0
    cpp_total_received: float = 0.0
    oas_total_received: float = 0.0
    rrif_total_withdrawn: float = 0.0
    tfsa_total_withdrawn: float = 0.0
    accumulation_years: int = 0
    retirement_years: int = 0
    estate: Optional[EstateBreakdown] = None


@dataclass
class ProjectionSummary:
    total_compensation: float = 0.0
    total_salary: float = 0.0
    total_dividends: float = 0.0
    total_personal_tax: float = 0.0
    total_corporate_tax: float = 0.0
    total_payroll: float = 0.0
    total_tax: float = 0.0
    effective_tax_rate: float = 0.0
    average_annual_income: float = 0.0
    final_corporate_balance: float = 0.0
    total_rrsp_room_generated: float = 0.0
    total_rrsp_contributions: float = 0.0
    total_tfsa_contributions: float = 0.0
    total_resp_contributions: float = 0.0
    total_debt_paid: float = 0.0
    total_rdtoh_refund: float = 0.0
    total_employer_health_tax: float = 0.0
    yearly_results: List[YearlyResult] = field(default_factory=list)
    ipp: Optional[IPPSummary] = None
    spouse: Optional[SpouseSummary] = None
    lifetime: Optional[LifetimeSummary] = None
    settings: Dict = field(default_factory=dict)

    @property
    def has_ipp(self) -> bool:
        return self.ipp is not None

    @property
    def has_spouse(self) -> bool:
        return self.spouse is not None

    @property
    def has_lifetime(self) -> bool:
        return self.lifetime is not None


def _round_cents(record):
    """Round every currency float of a (nested) record to the cent. Rates are left alone."""
    if not is_dataclass(record):
        return record
    changes = {}
    for f in fields(record):
        value = getattr(record, f.name)
        if isinstance(value, float):
            if f.name.endswith(("_rate", "_percentage")):
                continue
            changes[f.name] = round(value, 2)
        elif is_dataclass(value):
            changes[f.name] = _round_cents(value)
    return replace(record, **changes)


# ==========================================================
# Pricing one person's compensation
# ==========================================================

@dataclass
class FundingContext:
    """What one person's compensation is priced against in a given year."""
    table: TaxYearTable
    accounts: NotionalAccounts
    target: float
    eligible_rate: float
    non_eligible_rate: float
    active_income: float = 0.0
    committed_deductions: float = 0.0   # salaries already paid this year (primary before spouse)
    passive_income: float = 0.0
    rrsp_deduction: float = 0.0
    tolerance: float = 1.0


@dataclass
class FundingPlan:
    salary: float
    funding: DividendFunding
    accounts: NotionalAccounts          # after the salary and dividends are paid
    personal_tax: PersonalTaxResult
    payroll: PayrollResult
    after_tax_income: float

    @property
    def employer_cost(self) -> float:
        return self.payroll.employer_cost


def price_plan(ctx: FundingContext, salary: float, funding: DividendFunding,
               accounts: NotionalAccounts) -> FundingPlan:
    personal = calc_personal_tax(
        ctx.table,
        ordinary_income=salary,
        eligible_dividends=funding.eligible_dividends,
        non_eligible_dividends=funding.non_eligible_dividends,
        rrsp_deduction=ctx.rrsp_deduction,
    )
    payroll = calc_payroll(salary, ctx.table)
    after_tax = salary + funding.gross_dividends - personal.total_tax - payroll.employee_total
    return FundingPlan(
        salary=float(salary),
        funding=funding,
        accounts=accounts,
        personal_tax=personal,
        payroll=payroll,
        after_tax_income=after_tax,
    )


def combined_tax(ctx: FundingContext, plan: FundingPlan) -> float:
    """Personal tax + both sides of payroll + the active corporate tax left after the salary deduction."""
    deductible = ctx.committed_deductions + plan.salary + plan.employer_cost
    corp = calc_corporate_active_tax(ctx.active_income, deductible, ctx.passive_income, ctx.table)
    return plan.personal_tax.total_tax + plan.payroll.total + corp.tax


def max_affordable_salary(ctx: FundingContext, accounts: NotionalAccounts) -> float:
    """Largest salary whose cost to the corporation (salary + employer share) fits in its cash."""
    cash = max(0.0, accounts.corporate_investments)
    if cash <= 0:
        return 0.0
    lo, hi = 0.0, cash
    for _ in range(BISECTION_ITERATIONS):
        mid = (lo + hi) / 2.0
        if mid + calc_payroll(mid, ctx.table).employer_cost <= cash:
            lo = mid
        else:
            hi = mid
    return lo


def pay_salary(ctx: FundingContext, salary: float,
               accounts: NotionalAccounts) -> Tuple[float, NotionalAccounts]:
    paid = min(max(0.0, float(salary)), max_affordable_salary(ctx, accounts))
    if paid <= 0:
        return 0.0, accounts.copy()
    return paid, process_salary_payment(accounts, paid, calc_payroll(paid, ctx.table).employer_cost)


def solve_dividends(
    ctx: FundingContext,
    salary: float,
    accounts: NotionalAccounts,
    base_funding: Optional[DividendFunding] = None,
    allow_retained_earnings: bool = True,
) -> FundingPlan:
    """
    Smallest dividend draw (in payout order) that lifts exact after-tax income
    to the target. Returns everything available when the target is out of reach.
    """
    base = base_funding or DividendFunding()
    refund_rate = ctx.table.rdtoh_refund_rate

    def attempt(need: float) -> FundingPlan:
        funding, after = deplete_accounts(
            accounts, need, ctx.eligible_rate, ctx.non_eligible_rate, refund_rate, allow_retained_earnings
        )
        return price_plan(ctx, salary, base.add(funding), after)

    plan = attempt(0.0)
    if plan.after_tax_income >= ctx.target - ctx.tolerance:
        return plan

    top = attempt(UNLIMITED_NEED)
    if top.after_tax_income <= ctx.target:
        return top

    lo, hi = 0.0, max(1.0, ctx.target - plan.after_tax_income)
    while attempt(hi).after_tax_income < ctx.target and hi < UNLIMITED_NEED:
        lo, hi = hi, hi * 2.0

    for _ in range(BISECTION_ITERATIONS):
        mid = (lo + hi) / 2.0
        if attempt(mid).after_tax_income >= ctx.target:
            hi = mid
        else:
            lo = mid
    return attempt(hi)


def solve_salary(ctx: FundingContext, accounts: NotionalAccounts,
                 base_funding: DividendFunding, cap: float) -> float:
    """Salary that closes the gap between base_funding's after-tax income and the target."""
    def after_tax(salary: float) -> float:
        return price_plan(ctx, salary, base_funding, accounts).after_tax_income

    if after_tax(0.0) >= ctx.target - ctx.tolerance:
        return 0.0
    if cap <= 0 or after_tax(cap) < ctx.target:
        return max(0.0, cap)

    lo, hi = 0.0, cap
    for _ in range(BISECTION_ITERATIONS):
        mid = (lo + hi) / 2.0
        if after_tax(mid) >= ctx.target:
            hi = mid
        else:
            lo = mid
    return hi


def fund_fixed_salary(ctx: FundingContext, salary: float) -> FundingPlan:
    paid, after_salary = pay_salary(ctx, salary, ctx.accounts)
    return solve_dividends(ctx, paid, after_salary, allow_retained_earnings=True)


def fund_dividends_only(ctx: FundingContext) -> FundingPlan:
    return solve_dividends(ctx, 0.0, ctx.accounts, allow_retained_earnings=True)


class DynamicOptimizer:
    """
    Lowest combined-tax mix for one person's after-tax target:
      1. notional-account dividends first (CDA, eligible/GRIP, non-eligible/nRDTOH)
      2. the salary that alone would close the rest, found by bisection
      3. that salary scaled by each fraction, topped up with retained-earnings dividends
    Candidates that reach the target compete on personal + payroll + active corporate
    tax; the first one wins ties. If none reaches it, the largest payout is used.
    """

    def __init__(self, salary_fractions: Optional[Sequence[float]] = None, logger=None):
        self.salary_fractions = [float(f) for f in (salary_fractions or (1.0, 0.75, 0.5, 0.25, 0.0))]
        self.logger = logger

    def _debug(self, msg: str) -> None:
        if self.logger is not None:
            self.logger.debug(msg)

    def solve(self, ctx: FundingContext) -> FundingPlan:
        notional = solve_dividends(ctx, 0.0, ctx.accounts, allow_retained_earnings=False)
        self._debug(
            f"Notional draw: ${notional.funding.gross_dividends:,.2f} "
            f"(capacity ${notional_capacity(ctx.accounts, ctx.table.rdtoh_refund_rate):,.2f}) "
            f"-> after-tax ${notional.after_tax_income:,.2f} of ${ctx.target:,.2f}"
        )
        if notional.after_tax_income >= ctx.target - ctx.tolerance:
            return notional

        accounts = notional.accounts
        cap = max_affordable_salary(ctx, accounts)
        full_salary = solve_salary(ctx, accounts, notional.funding, cap)

        candidates: List[FundingPlan] = []
        for fraction in self.salary_fractions:
            paid, after_salary = pay_salary(ctx, full_salary * fraction, accounts)
            candidates.append(
                solve_dividends(ctx, paid, after_salary, base_funding=notional.funding, allow_retained_earnings=True)
            )

        feasible = [p for p in candidates if p.after_tax_income >= ctx.target - ctx.tolerance]
        if not feasible:
            best = max(candidates, key=lambda p: p.after_tax_income)
            self._debug(f"Target out of reach, paying maximum available: ${best.after_tax_income:,.2f}")
            return best

        best = feasible[0]
        best_tax = combined_tax(ctx, best)
        for plan in feasible[1:]:
            tax = combined_tax(ctx, plan)
            if tax < best_tax - 1e-6:
                best, best_tax = plan, tax
        self._debug(
            f"Chosen mix: salary ${best.salary:,.2f} + dividends ${best.funding.gross_dividends:,.2f} "
            f"| combined tax ${best_tax:,.2f}"
        )
        return best


# ==========================================================
# Carried state
# ==========================================================

@dataclass
class PersonState:
    prefix: str
    current_age: int
    rrsp_room: float
    tfsa_room: float
    rrsp_balance: float                 # RRIF once converted
    tfsa_balance: float
    salary_start_age: int
    average_historical_salary: float
    cpp_start_age: int
    oas_eligible: bool
    oas_start_age: int
    consider_ipp: bool
    ipp_member_age: int
    ipp_years_of_service: int
    ipp_fund: float = 0.0
    ipp_accrued_pension: float = 0.0
    ipp_years_funded: int = 0
    salary_history: List[float] = field(default_factory=list)
    cpp_benefit: Optional[CPPBenefit] = None
    cpp_first_year: Optional[int] = None
    rrif_converted: bool = False


@dataclass
class SimulationState:
    accounts: NotionalAccounts
    primary: PersonState
    spouse: Optional[PersonState] = None
    debt_balance: float = 0.0


@dataclass
class RetirementCash:
    funding: DividendFunding
    accounts: NotionalAccounts
    rrif: RRIFYear
    oas: OASResult
    personal_tax: PersonalTaxResult
    spouse_rrif: RRIFYear
    spouse_oas: OASResult
    spouse_personal_tax: PersonalTaxResult
    gross_total: float
    tax_total: float
    net_total: float

    @property
    def rrif_withdrawal(self) -> float:
        return self.rrif.withdrawal

    @property
    def spouse_rrif_withdrawal(self) -> float:
        return self.spouse_rrif.withdrawal


@dataclass
class RetirementInputs:
    table: TaxYearTable
    year: int
    age: int
    spouse_age: int
    accounts: NotionalAccounts
    eligible_rate: float
    non_eligible_rate: float
    cpp: float
    ipp_pension: float
    rrif_balance: float
    rrif_minimum: float
    spouse_cpp: float = 0.0
    spouse_ipp_pension: float = 0.0
    spouse_rrif_balance: float = 0.0


# ==========================================================
# Simulator
# ==========================================================

class CompensationSimulator:
    def __init__(self, settings_input: Dict, progress_cb: Optional[Callable[[float, str], None]] = None,
                 optimizer=None):
        self.progress_cb = progress_cb
        self.s = merge_settings(settings_input)
        check_settings(self.s)

        self.logger = configure_logger("CompensationSimulator", bool(self.s.get("enable_debug_logging")))
        self.optimizer = optimizer or DynamicOptimizer(self.s.get("dynamic_salary_fractions"), logger=self.logger)

        # basic run control
        self.years = int(self.s["planning_horizon"])
        self.start_year = int(self.s["starting_year"])
        self.province = self.s["province"]
        self.inflation = float(self.s["expected_inflation_rate"])
        self.inflate_needs = bool(self.s.get("inflate_spending_needs", True))
        self.return_rate = float(self.s["investment_return_rate"])
        self.allocation = normalize_allocation(
            self.s["canadian_equity_percent"],
            self.s["us_equity_percent"],
            self.s["international_equity_percent"],
            self.s["fixed_income_percent"],
        )
        self.current_age = int(self.s["current_age"])
        self.retirement_age = int(self.s["retirement_age"])
        self.tolerance = float(self.s.get("solver_tolerance", 1.0))
        self.liquidation_rate = float(self.s["corporate_liquidation_rate"])
        self.has_spouse = bool(self.s.get("has_spouse"))

        self.state = SimulationState(
            accounts=NotionalAccounts(
                cda=float(self.s["cda_balance"]),
                erdtoh=float(self.s["erdtoh_balance"]),
                nrdtoh=float(self.s["nrdtoh_balance"]),
                grip=float(self.s["grip_balance"]),
                corporate_investments=float(self.s["corporate_investment_balance"]),
            ).floored(),
            primary=self._person_from_settings(""),
            spouse=self._person_from_settings("spouse_") if self.has_spouse else None,
            debt_balance=float(self.s["total_debt_amount"]) if self.s.get("pay_down_debt") else 0.0,
        )

        # outputs
        self.results: List[YearlyResult] = []

    # -------------------------
    # Setup helpers
    # -------------------------
    def _person_from_settings(self, prefix: str) -> PersonState:
        s = self.s
        return PersonState(
            prefix=prefix,
            current_age=int(s[prefix + "current_age"]),
            rrsp_room=max(0.0, float(s[prefix + "rrsp_room"])),
            tfsa_room=max(0.0, float(s[prefix + "tfsa_room"])),
            rrsp_balance=max(0.0, float(s[prefix + "actual_rrsp_balance"])),
            tfsa_balance=max(0.0, float(s[prefix + "actual_tfsa_balance"])),
            salary_start_age=int(s[prefix + "salary_start_age"]),
            average_historical_salary=float(s[prefix + "average_historical_salary"]),
            cpp_start_age=int(s[prefix + "cpp_start_age"]),
            oas_eligible=bool(s[prefix + "oas_eligible"]),
            oas_start_age=int(s[prefix + "oas_start_age"]),
            consider_ipp=bool(s[prefix + "consider_ipp"]),
            ipp_member_age=int(s[prefix + "ipp_member_age"]),
            ipp_years_of_service=int(s[prefix + "ipp_years_of_service"]),
        )

    def _table(self, year: int) -> TaxYearTable:
        return get_tax_year_data(year, self.province, self.inflation)

    def _phase_for_index(self, i: int) -> str:
        age = self.current_age + i
        if age < self.retirement_age:
            return PHASE_ACCUMULATION
        if i == self.years - 1 and age - 1 >= self.retirement_age:
            return PHASE_ESTATE
        return PHASE_RETIREMENT

    def _inflated(self, amount: float, i: int) -> float:
        if not self.inflate_needs:
            return float(amount)
        return inflate_amount(float(amount), i, self.inflation)

    # -------------------------
    # Accumulation helpers
    # -------------------------
    def _fund_person(self, person: PersonState, ctx: FundingContext, i: int) -> FundingPlan:
        strategy = self.s[person.prefix + "salary_strategy"]
        if strategy == "fixed":
            if self.s.get(person.prefix + "fixed_salary_tracks_ympe"):
                salary = ctx.table.ympe
            else:
                salary = self._inflated(self.s[person.prefix + "fixed_salary_amount"], i)
            return fund_fixed_salary(ctx, salary)
        if strategy == "dividends-only":
            return fund_dividends_only(ctx)
        return self.optimizer.solve(ctx)

    def _registered_contributions(self, person: PersonState, table: TaxYearTable,
                                  required: float) -> Tuple[float, float]:
        tfsa = 0.0
        if self.s.get(person.prefix + "maximize_tfsa"):
            tfsa = min(person.tfsa_room, table.tfsa_limit)
        rrsp = 0.0
        if self.s.get(person.prefix + "contribute_to_rrsp"):
            # required income stands in for the year's after-tax income
            rrsp = min(person.rrsp_room, table.rrsp_limit, max(0.0, required))
        return tfsa, rrsp

    def _allocate_funds(self, ctx: FundingContext, plan: FundingPlan, required: float, debt: float,
                        resp: float, tfsa: float, rrsp: float) -> Tuple[FundingPlan, float, float, float, float]:
        """
        Splits what the plan actually delivered after tax: required spending first, then
        debt, RESP, TFSA and RRSP. Only the RRSP amount actually contributed is deducted,
        so a short year is re-priced. Returns (plan, debt, resp, tfsa, rrsp).
        """
        if plan.after_tax_income >= required + debt + resp + tfsa + rrsp - ctx.tolerance:
            return plan, debt, resp, tfsa, rrsp

        def priced(rrsp_amount: float) -> FundingPlan:
            return price_plan(replace(ctx, rrsp_deduction=rrsp_amount), plan.salary, plan.funding, plan.accounts)

        base = priced(0.0)
        available = max(0.0, base.after_tax_income - required)
        funded = []
        for want in (debt, resp, tfsa):
            got = min(want, available)
            funded.append(got)
            available -= got
        fixed_uses = required + sum(funded)

        # the deduction lowers tax by less than a dollar per dollar, so the surplus shrinks as rrsp grows
        def surplus(amount: float) -> float:
            return priced(amount).after_tax_income - fixed_uses - amount

        rrsp_paid = 0.0
        if rrsp > 0 and surplus(0.0) > 0:
            if surplus(rrsp) >= 0:
                rrsp_paid = rrsp
            else:
                lo, hi = 0.0, rrsp
                for _ in range(BISECTION_ITERATIONS):
                    mid = (lo + hi) / 2.0
                    if surplus(mid) >= 0:
                        lo = mid
                    else:
                        hi = mid
                rrsp_paid = lo

        self.logger.debug(
            f"Short year: after-tax ${base.after_tax_income:,.2f} of ${required + debt + resp + tfsa + rrsp:,.2f}; "
            f"funded debt ${funded[0]:,.2f}, RESP ${funded[1]:,.2f}, TFSA ${funded[2]:,.2f}, RRSP ${rrsp_paid:,.2f}"
        )
        return priced(rrsp_paid), funded[0], funded[1], funded[2], rrsp_paid

    def _ipp_year(self, person: PersonState, salary: float, i: int, year: int,
                  table: TaxYearTable, accounts: NotionalAccounts) -> Optional[IPPYear]:
        if not person.consider_ipp:
            return None
        member_age = person.ipp_member_age + i
        service = person.ipp_years_of_service + person.ipp_years_funded
        if salary <= 0:
            return IPPYear(member_age=member_age, years_of_service=service, fund_balance=person.ipp_fund)

        contrib = calc_ipp_contribution(
            member_age, service, salary, table.small_business_rate, year,
            person.ipp_years_funded == 0, self.inflation,
        )
        draw = min(contrib.total_deductible, max(0.0, accounts.corporate_investments))
        scale = safe_div(draw, contrib.total_deductible)
        accounts.corporate_investments -= draw
        person.ipp_fund += contrib.contribution * scale
        person.ipp_accrued_pension += contrib.accrual * scale
        person.ipp_years_funded += 1
        return IPPYear(
            member_age=member_age,
            years_of_service=service + 1,
            contribution=contrib.contribution * scale,
            admin_costs=contrib.admin_costs * scale,
            total_deductible=draw,
            pension_adjustment=contrib.pension_adjustment,
            projected_annual_pension=person.ipp_accrued_pension,
            corporate_tax_savings=contrib.corporate_tax_savings * scale,
            fund_balance=person.ipp_fund,
        )

    def _settle_registered(self, person: PersonState, table: TaxYearTable, salary: float,
                           rrsp_contribution: float, tfsa_contribution: float,
                           ipp: Optional[IPPYear]) -> float:
        generated = min(salary * table.rrsp_rate, table.rrsp_limit)
        pa = ipp.pension_adjustment if ipp is not None else 0.0
        person.rrsp_room = max(0.0, person.rrsp_room - rrsp_contribution - pa) + generated
        person.tfsa_room = max(0.0, person.tfsa_room - tfsa_contribution)
        person.rrsp_balance = person.rrsp_balance * (1.0 + self.return_rate) + rrsp_contribution
        person.tfsa_balance = person.tfsa_balance * (1.0 + self.return_rate) + tfsa_contribution
        return generated

    def _simulate_accumulation_year(self, state: SimulationState, i: int, year: int,
                                    table: TaxYearTable) -> YearlyResult:
        primary = state.primary
        spouse = state.spouse
        age = self.current_age + i

        # new TFSA room each January after the opening year; funds grow before new money goes in
        for person in (primary, spouse):
            if person is None:
                continue
            if i > 0:
                person.tfsa_room += table.tfsa_limit
            person.ipp_fund *= (1.0 + self.return_rate)

        # 1. Portfolio income and the year's active business income
        returns = calc_investment_returns(state.accounts.corporate_investments, self.return_rate, self.allocation, table)
        accounts = apply_investment_returns(state.accounts, returns)
        active_income = max(0.0, float(self.s["annual_corporate_retained_earnings"]))
        accounts.corporate_investments += active_income

        # 2. What the owner needs after tax this year
        required = self._inflated(self.s["required_income"], i)
        tfsa, rrsp = self._registered_contributions(primary, table, required)
        resp = float(self.s["resp_contribution_amount"]) if self.s.get("contribute_to_resp") else 0.0
        debt_interest = 0.0
        debt_paydown = 0.0
        if state.debt_balance > 0:
            debt_interest = state.debt_balance * float(self.s["debt_interest_rate"])
            state.debt_balance += debt_interest
            debt_paydown = min(state.debt_balance, float(self.s["debt_paydown_amount"]))
        need = required + tfsa + rrsp + resp + debt_paydown

        elig_rate, non_elig_rate = effective_dividend_rates(table, need * 1.5)
        ctx = FundingContext(
            table=table,
            accounts=accounts,
            target=need,
            eligible_rate=elig_rate,
            non_eligible_rate=non_elig_rate,
            active_income=active_income,
            passive_income=returns.taxable_passive_income,
            rrsp_deduction=rrsp,
            tolerance=self.tolerance,
        )
        plan = self._fund_person(primary, ctx, i)
        plan, debt_paydown, resp, tfsa, rrsp = self._allocate_funds(
            ctx, plan, required, debt_paydown, resp, tfsa, rrsp
        )
        state.debt_balance -= debt_paydown
        accounts = plan.accounts
        self.logger.debug(
            f"Need ${need:,.2f}: salary ${plan.salary:,.2f}, dividends ${plan.funding.gross_dividends:,.2f}, "
            f"after-tax ${plan.after_tax_income:,.2f}"
        )

        # 3. Spouse, paid after the primary out of the same accounts
        spouse_plan: Optional[FundingPlan] = None
        spouse_tfsa = spouse_rrsp = 0.0
        if spouse is not None:
            spouse_required = self._inflated(self.s["spouse_required_income"], i)
            if spouse_required > 0:
                spouse_tfsa, spouse_rrsp = self._registered_contributions(spouse, table, spouse_required)
                spouse_ctx = replace(
                    ctx,
                    accounts=accounts,
                    target=spouse_required + spouse_tfsa + spouse_rrsp,
                    committed_deductions=plan.salary + plan.employer_cost,
                    rrsp_deduction=spouse_rrsp,
                )
                spouse_plan = self._fund_person(spouse, spouse_ctx, i)
                spouse_plan, _, _, spouse_tfsa, spouse_rrsp = self._allocate_funds(
                    spouse_ctx, spouse_plan, spouse_required, 0.0, 0.0, spouse_tfsa, spouse_rrsp
                )
                accounts = spouse_plan.accounts
            else:
                spouse_plan = price_plan(ctx, 0.0, DividendFunding(), accounts)

        # 4. IPP funding and employer health tax
        ipp = self._ipp_year(primary, plan.salary, i, year, table, accounts)
        spouse_ipp = None
        if spouse is not None:
            spouse_ipp = self._ipp_year(spouse, spouse_plan.salary, i, year, table, accounts)

        salaries = plan.salary + (spouse_plan.salary if spouse_plan else 0.0)
        employer_costs = plan.employer_cost + (spouse_plan.employer_cost if spouse_plan else 0.0)
        eht = calc_employer_health_tax(self.province, salaries, year)
        ipp_deductible = (ipp.total_deductible if ipp else 0.0) + (spouse_ipp.total_deductible if spouse_ipp else 0.0)

        # 5. Active business tax after the deductible owner pay
        active = calc_corporate_active_tax(
            active_income, salaries + employer_costs + eht + ipp_deductible, returns.taxable_passive_income, table
        )
        accounts.corporate_investments -= active.tax + eht
        accounts.grip += active.grip_addition
        state.accounts = accounts.floored()

        # 6. Registered accounts and room
        generated = self._settle_registered(primary, table, plan.salary, rrsp, tfsa, ipp)
        spouse_year = None
        if spouse is not None:
            spouse_generated = self._settle_registered(spouse, table, spouse_plan.salary, spouse_rrsp, spouse_tfsa,
                                                       spouse_ipp)
            spouse.salary_history.append(spouse_plan.salary)
            spouse_year = SpouseYear(
                age=spouse.current_age + i,
                salary=spouse_plan.salary,
                dividends=spouse_plan.funding,
                personal_tax=spouse_plan.personal_tax.total_tax,
                employee_payroll=spouse_plan.payroll.employee_total,
                employer_payroll_cost=spouse_plan.employer_cost,
                after_tax_income=spouse_plan.after_tax_income,
                rrsp_room_generated=spouse_generated,
                rrsp_contribution=spouse_rrsp,
                tfsa_contribution=spouse_tfsa,
                ipp=spouse_ipp,
            )
        primary.salary_history.append(plan.salary)

        refund = plan.funding.rdtoh_refund + (spouse_plan.funding.rdtoh_refund if spouse_plan else 0.0)
        corporate_tax = max(0.0, active.tax + returns.passive_tax + returns.part_iv_tax - refund)
        personal_tax = plan.personal_tax.total_tax + (spouse_year.personal_tax if spouse_year else 0.0)
        payroll_total = plan.payroll.total + (spouse_plan.payroll.total if spouse_plan else 0.0)
        gross = salaries + plan.funding.gross_dividends + (spouse_plan.funding.gross_dividends if spouse_plan else 0.0)
        after_tax = plan.after_tax_income + (spouse_plan.after_tax_income if spouse_plan else 0.0)

        return YearlyResult(
            year_index=i,
            calendar_year=year,
            age=age,
            phase=PHASE_ACCUMULATION,
            salary=plan.salary,
            dividends=plan.funding,
            personal_tax=plan.personal_tax.total_tax,
            personal_tax_detail=plan.personal_tax,
            cpp=plan.payroll.cpp,
            cpp2=plan.payroll.cpp2,
            ei=plan.payroll.ei,
            qpip=plan.payroll.qpip,
            employer_payroll_cost=plan.employer_cost,
            employer_health_tax=eht,
            corporate_active_tax=active.tax,
            corporate_passive_tax=returns.passive_tax + returns.part_iv_tax,
            rdtoh_refund=refund,
            corporate_tax=corporate_tax,
            passive_income_grind=active.grind,
            investment_returns=returns,
            notional_accounts=state.accounts.copy(),
            rrsp_room_generated=generated,
            rrsp_contribution=rrsp,
            tfsa_contribution=tfsa,
            resp_contribution=resp,
            debt_paydown=debt_paydown,
            debt_interest=debt_interest,
            gross_income=gross,
            after_tax_income=after_tax,
            total_tax=personal_tax + payroll_total + eht + corporate_tax,
            marginal_rate=calc_marginal_rate(
                table, plan.salary, plan.funding.eligible_dividends, plan.funding.non_eligible_dividends,
                float(self.s.get("marginal_rate_delta", 50.0)),
            ),
            balances=self._balances(state),
            spouse_age=spouse.current_age + i if spouse is not None else None,
            ipp=ipp,
            spouse=spouse_year,
        )

    # -------------------------
    # Retirement helpers
    # -------------------------
    def _cpp_income(self, person: PersonState, age: int, year: int) -> float:
        if age < person.cpp_start_age:
            return 0.0
        if person.cpp_benefit is None:
            person.cpp_benefit = project_cpp_benefit(
                birth_year=self.start_year - person.current_age,
                salary_start_age=person.salary_start_age,
                average_historical_salary=person.average_historical_salary,
                projected_salaries=person.salary_history,
                current_age=person.current_age,
                cpp_start_age=person.cpp_start_age,
                inflation_rate=self.inflation,
            )
            person.cpp_first_year = year
            self.logger.debug(
                f"CPP starts at {person.cpp_start_age}: ${person.cpp_benefit.total_annual_benefit:,.2f}/yr"
            )
        return person.cpp_benefit.total_annual_benefit * (1.0 + self.inflation) ** (year - person.cpp_first_year)

    def _ipp_pension(self, person: PersonState) -> float:
        if person.ipp_accrued_pension <= 0 or person.ipp_fund <= 0:
            return 0.0
        return min(person.ipp_fund, person.ipp_accrued_pension)

    def _compute_retirement_cash(self, rin: RetirementInputs, corp_need: float,
                                 extra_rrif: float) -> RetirementCash:
        table = rin.table
        primary = self.state.primary
        spouse = self.state.spouse
        extra_target = float(self.s.get("rrif_extra_withdrawal", 0.0))

        rrif = calc_rrif_year(rin.rrif_balance, rin.age, self.return_rate, extra_target + extra_rrif)
        rrif_w = rrif.withdrawal
        if corp_need > 0:
            funding, accounts = deplete_accounts(
                rin.accounts, corp_need, rin.eligible_rate, rin.non_eligible_rate,
                table.rdtoh_refund_rate, allow_retained_earnings=True,
            )
        else:
            funding, accounts = DividendFunding(), rin.accounts.copy()

        ordinary = rin.cpp + rin.ipp_pension + rrif_w
        net_income = (
            ordinary
            + funding.eligible_dividends * (1.0 + table.eligible_gross_up)
            + funding.non_eligible_dividends * (1.0 + table.non_eligible_gross_up)
        )
        oas = calc_oas(rin.year, rin.age, primary.oas_start_age, primary.oas_eligible, net_income, self.inflation)
        personal = calc_personal_tax(
            table,
            ordinary_income=ordinary + oas.gross,
            eligible_dividends=funding.eligible_dividends,
            non_eligible_dividends=funding.non_eligible_dividends,
        )
        gross = ordinary + oas.gross + funding.gross_dividends
        tax = personal.total_tax + oas.clawback

        spouse_rrif = RRIFYear()
        spouse_oas = OASResult()
        spouse_personal = PersonalTaxResult()
        if spouse is not None:
            spouse_rrif = calc_rrif_year(rin.spouse_rrif_balance, rin.spouse_age, self.return_rate)
            spouse_ordinary = rin.spouse_cpp + rin.spouse_ipp_pension + spouse_rrif.withdrawal
            spouse_oas = calc_oas(
                rin.year, rin.spouse_age, spouse.oas_start_age, spouse.oas_eligible, spouse_ordinary, self.inflation
            )
            spouse_personal = calc_personal_tax(table, ordinary_income=spouse_ordinary + spouse_oas.gross)
            gross += spouse_ordinary + spouse_oas.gross
            tax += spouse_personal.total_tax + spouse_oas.clawback

        return RetirementCash(
            funding=funding,
            accounts=accounts,
            rrif=rrif,
            oas=oas,
            personal_tax=personal,
            spouse_rrif=spouse_rrif,
            spouse_oas=spouse_oas,
            spouse_personal_tax=spouse_personal,
            gross_total=gross,
            tax_total=tax,
            net_total=gross - tax,
        )

    def _solve_corporate_draw_to_reach_goal(self, rin: RetirementInputs, target: float) -> float:
        c0 = self._compute_retirement_cash(rin, 0.0, 0.0)
        if c0.net_total >= target:
            return 0.0
        c_max = self._compute_retirement_cash(rin, UNLIMITED_NEED, 0.0)
        if c_max.net_total <= target:
            return UNLIMITED_NEED

        lo, hi = 0.0, max(1.0, target - c0.net_total)
        while self._compute_retirement_cash(rin, hi, 0.0).net_total < target and hi < UNLIMITED_NEED:
            lo, hi = hi, hi * 2.0
        for _ in range(BISECTION_ITERATIONS):
            mid = (lo + hi) / 2.0
            if self._compute_retirement_cash(rin, mid, 0.0).net_total >= target:
                hi = mid
            else:
                lo = mid
        return hi

    def _solve_rrif_additional_to_reach_goal(self, rin: RetirementInputs, corp_need: float,
                                             target: float) -> float:
        extra_target = float(self.s.get("rrif_extra_withdrawal", 0.0))
        cap = max(0.0, rin.rrif_balance - rin.rrif_minimum - extra_target)
        c0 = self._compute_retirement_cash(rin, corp_need, 0.0)
        if c0.net_total >= target or cap <= 0:
            return 0.0

        lo, hi = 0.0, cap
        for _ in range(BISECTION_ITERATIONS):
            mid = (lo + hi) / 2.0
            if self._compute_retirement_cash(rin, corp_need, mid).net_total >= target:
                hi = mid
            else:
                lo = mid
        return hi

    def _simulate_retirement_year(self, state: SimulationState, i: int, year: int,
                                  table: TaxYearTable, phase: str) -> YearlyResult:
        primary = state.primary
        spouse = state.spouse
        age = self.current_age + i
        spouse_age = spouse.current_age + i if spouse is not None else 0

        for person in (primary, spouse):
            if person is None:
                continue
            if not person.rrif_converted:
                # RRSP becomes a RRIF in the first retirement year
                person.rrif_converted = True
                self.logger.debug(f"RRSP converted to RRIF: ${person.rrsp_balance:,.2f}")
            person.salary_history.append(0.0)

        returns = calc_investment_returns(state.accounts.corporate_investments, self.return_rate, self.allocation, table)
        accounts = apply_investment_returns(state.accounts, returns)

        target = self._inflated(self.s["retirement_spending"], i)
        elig_rate, non_elig_rate = effective_dividend_rates(table, max(target, 1.0) * 1.5)

        rin = RetirementInputs(
            table=table,
            year=year,
            age=age,
            spouse_age=spouse_age,
            accounts=accounts,
            eligible_rate=elig_rate,
            non_eligible_rate=non_elig_rate,
            cpp=self._cpp_income(primary, age, year),
            ipp_pension=self._ipp_pension(primary),
            rrif_balance=primary.rrsp_balance,
            rrif_minimum=calc_rrif_year(primary.rrsp_balance, age, self.return_rate).minimum_withdrawal,
        )
        if spouse is not None:
            rin.spouse_cpp = self._cpp_income(spouse, spouse_age, year)
            rin.spouse_ipp_pension = self._ipp_pension(spouse)
            rin.spouse_rrif_balance = spouse.rrsp_balance

        # Fixed sources, then corporation, then extra RRIF, then TFSA
        corp_need = self._solve_corporate_draw_to_reach_goal(rin, target)
        extra_rrif = self._solve_rrif_additional_to_reach_goal(rin, corp_need, target)
        cash = self._compute_retirement_cash(rin, corp_need, extra_rrif)
        self.logger.debug(
            f"Retirement draw: corporate ${cash.funding.gross_dividends:,.2f}, "
            f"RRIF ${cash.rrif_withdrawal:,.2f} (min ${rin.rrif_minimum:,.2f})"
        )

        tfsa_need = max(0.0, target - cash.net_total)
        tfsa_w = min(primary.tfsa_balance, tfsa_need)
        spouse_tfsa_w = 0.0
        if spouse is not None:
            spouse_tfsa_w = min(spouse.tfsa_balance, tfsa_need - tfsa_w)
        after_tax = cash.net_total + tfsa_w + spouse_tfsa_w
        shortfall = max(0.0, target - after_tax)
        if shortfall > self.tolerance:
            self.logger.info(f"Spending shortfall at age {age}: ${shortfall:,.2f}")

        # Balances: withdrawals at the start of the year, growth on the rest
        grow = 1.0 + self.return_rate
        primary.rrsp_balance = cash.rrif.closing_balance
        primary.tfsa_balance = max(0.0, primary.tfsa_balance - tfsa_w) * grow
        primary.ipp_fund = max(0.0, primary.ipp_fund - rin.ipp_pension) * grow
        if spouse is not None:
            spouse.rrsp_balance = cash.spouse_rrif.closing_balance
            spouse.tfsa_balance = max(0.0, spouse.tfsa_balance - spouse_tfsa_w) * grow
            spouse.ipp_fund = max(0.0, spouse.ipp_fund - rin.spouse_ipp_pension) * grow
        state.accounts = cash.accounts.floored()

        refund = cash.funding.rdtoh_refund
        corporate_tax = max(0.0, returns.passive_tax + returns.part_iv_tax - refund)
        primary_tax = cash.personal_tax.total_tax + cash.oas.clawback
        spouse_tax = cash.spouse_personal_tax.total_tax + cash.spouse_oas.clawback

        primary_ordinary = rin.cpp + rin.ipp_pension + cash.rrif_withdrawal + cash.oas.gross
        retirement = RetirementIncome(
            target_spending=target,
            cpp_income=rin.cpp,
            oas_gross=cash.oas.gross,
            oas_clawback=cash.oas.clawback,
            oas_net=cash.oas.net,
            ipp_pension=rin.ipp_pension + rin.spouse_ipp_pension,
            rrif_minimum=rin.rrif_minimum,
            rrif_withdrawal=cash.rrif_withdrawal,
            tfsa_withdrawal=tfsa_w + spouse_tfsa_w,
            corporate_dividends=cash.funding.gross_dividends,
            total_taxable_income=(
                primary_ordinary + cash.funding.eligible_dividends + cash.funding.non_eligible_dividends
            ),
            personal_tax=primary_tax,
            after_tax_income=after_tax,
            shortfall=shortfall,
            spouse_cpp_income=rin.spouse_cpp,
            spouse_oas_gross=cash.spouse_oas.gross,
            spouse_oas_net=cash.spouse_oas.net,
            spouse_rrif_withdrawal=cash.spouse_rrif_withdrawal,
            spouse_personal_tax=spouse_tax,
        )

        ipp = None
        if primary.consider_ipp:
            ipp = IPPYear(
                member_age=primary.ipp_member_age + i,
                years_of_service=primary.ipp_years_of_service + primary.ipp_years_funded,
                projected_annual_pension=primary.ipp_accrued_pension,
                fund_balance=primary.ipp_fund,
            )
        spouse_year = None
        if spouse is not None:
            spouse_ipp = None
            if spouse.consider_ipp:
                spouse_ipp = IPPYear(
                    member_age=spouse.ipp_member_age + i,
                    years_of_service=spouse.ipp_years_of_service + spouse.ipp_years_funded,
                    projected_annual_pension=spouse.ipp_accrued_pension,
                    fund_balance=spouse.ipp_fund,
                )
            spouse_year = SpouseYear(
                age=spouse_age,
                personal_tax=spouse_tax,
                after_tax_income=(
                    rin.spouse_cpp + rin.spouse_ipp_pension + cash.spouse_rrif_withdrawal
                    + cash.spouse_oas.gross - spouse_tax + spouse_tfsa_w
                ),
                ipp=spouse_ipp,
            )

        estate = None
        if phase == PHASE_ESTATE:
            estate = self._estate_breakdown(table, primary_ordinary, state)
            self.logger.info(f"Estate settled: net ${estate.net_estate_value:,.2f}")

        return YearlyResult(
            year_index=i,
            calendar_year=year,
            age=age,
            phase=phase,
            dividends=cash.funding,
            personal_tax=primary_tax,
            personal_tax_detail=cash.personal_tax,
            corporate_passive_tax=returns.passive_tax + returns.part_iv_tax,
            rdtoh_refund=refund,
            corporate_tax=corporate_tax,
            investment_returns=returns,
            notional_accounts=state.accounts.copy(),
            gross_income=cash.gross_total,
            after_tax_income=after_tax,
            total_tax=primary_tax + spouse_tax + corporate_tax,
            marginal_rate=calc_marginal_rate(
                table, primary_ordinary, cash.funding.eligible_dividends, cash.funding.non_eligible_dividends,
                float(self.s.get("marginal_rate_delta", 50.0)),
            ),
            balances=self._balances(state),
            spouse_age=spouse_age if spouse is not None else None,
            retirement=retirement,
            ipp=ipp,
            spouse=spouse_year,
            estate=estate,
        )

    def _estate_breakdown(self, table: TaxYearTable, base_ordinary: float,
                          state: SimulationState) -> EstateBreakdown:
        """Deemed disposition of registered money, corporate wind-up and pass-through of the TFSA."""
        people = [p for p in (state.primary, state.spouse) if p is not None]
        rrif = sum(p.rrsp_balance for p in people)
        ipp_fund = sum(p.ipp_fund for p in people)
        deemed = rrif + ipp_fund
        terminal_tax = max(
            0.0,
            calc_personal_tax(table, ordinary_income=base_ordinary + deemed).total_tax
            - calc_personal_tax(table, ordinary_income=base_ordinary).total_tax,
        )

        corp = max(0.0, state.accounts.corporate_investments)
        cda_free = min(max(0.0, state.accounts.cda), corp)
        wind_up_tax = (corp - cda_free) * self.liquidation_rate

        tfsa = sum(p.tfsa_balance for p in people)
        death_benefit = CPP_DEATH_BENEFIT if state.primary.cpp_benefit is not None else 0.0
        gross = deemed + corp + tfsa + death_benefit
        return EstateBreakdown(
            rrif_balance=rrif,
            ipp_balance=ipp_fund,
            terminal_rrif_tax=terminal_tax,
            corporate_balance=corp,
            cda_tax_free=cda_free,
            corporate_wind_up_tax=wind_up_tax,
            tfsa_pass_through=tfsa,
            cpp_death_benefit=death_benefit,
            gross_estate=gross,
            net_estate_value=gross - terminal_tax - wind_up_tax,
        )

    def _balances(self, state: SimulationState) -> AccountBalances:
        spouse = state.spouse
        return AccountBalances(
            rrsp_balance=state.primary.rrsp_balance,
            tfsa_balance=state.primary.tfsa_balance,
            corporate_balance=state.accounts.corporate_investments,
            ipp_fund_balance=state.primary.ipp_fund + (spouse.ipp_fund if spouse else 0.0),
            spouse_rrsp_balance=spouse.rrsp_balance if spouse else 0.0,
            spouse_tfsa_balance=spouse.tfsa_balance if spouse else 0.0,
            debt_balance=state.debt_balance,
        )

    def _round_state(self, state: SimulationState) -> None:
        state.accounts = state.accounts.floored().rounded()
        state.debt_balance = round(max(0.0, state.debt_balance), 2)
        for person in (state.primary, state.spouse):
            if person is None:
                continue
            for name in ("rrsp_room", "tfsa_room", "rrsp_balance", "tfsa_balance", "ipp_fund", "ipp_accrued_pension"):
                setattr(person, name, round(max(0.0, getattr(person, name)), 2))

    # -------------------------
    # Single year / main run
    # -------------------------
    def _simulate_year(self, state: SimulationState, phase: str, year_index: int) -> YearlyResult:
        year = self.start_year + year_index
        table = self._table(year)
        if phase == PHASE_ACCUMULATION:
            result = self._simulate_accumulation_year(state, year_index, year, table)
        else:
            result = self._simulate_retirement_year(state, year_index, year, table, phase)
        self._round_state(state)
        return _round_cents(result)

    def run(self) -> ProjectionSummary:
        for i in range(self.years):
            year = self.start_year + i
            age = self.current_age + i
            phase = self._phase_for_index(i)
            if self.progress_cb:
                self.progress_cb(i / self.years, f"Running projection... Year {year}")

            self.logger.info(f"--- Year {i}: {year} (Age {age}, {phase}) ---")
            result = self._simulate_year(self.state, phase, i)
            self.results.append(result)

            self.logger.info(
                f"After-tax: ${result.after_tax_income:,.2f} | Tax: ${result.total_tax:,.2f} "
                f"| Corporate: ${result.corporate_balance:,.2f}"
            )

        if self.progress_cb:
            self.progress_cb(1.0, "Projection complete")
        return self._summarize()

    # -------------------------
    # Summary
    # -------------------------
    def _summarize(self) -> ProjectionSummary:
        rows = self.results
        spouse_rows = [r.spouse for r in rows if r.spouse is not None]

        total_salary = sum(r.salary for r in rows) + sum(sp.salary for sp in spouse_rows)
        total_dividends = (
            sum(r.dividends.gross_dividends for r in rows)
            + sum(sp.dividends.gross_dividends for sp in spouse_rows)
        )
        total_compensation = total_salary + total_dividends
        total_personal_tax = sum(r.personal_tax for r in rows) + sum(sp.personal_tax for sp in spouse_rows)
        total_payroll = (
            sum(r.employee_payroll + r.employer_payroll_cost for r in rows)
            + sum(sp.employee_payroll + sp.employer_payroll_cost for sp in spouse_rows)
        )
        total_tax = sum(r.total_tax for r in rows)

        summary = ProjectionSummary(
            total_compensation=total_compensation,
            total_salary=total_salary,
            total_dividends=total_dividends,
            total_personal_tax=total_personal_tax,
            total_corporate_tax=sum(r.corporate_tax for r in rows),
            total_payroll=total_payroll,
            total_tax=total_tax,
            effective_tax_rate=safe_div(total_tax, total_compensation),
            average_annual_income=safe_div(sum(r.after_tax_income for r in rows), len(rows)),
            final_corporate_balance=rows[-1].corporate_balance if rows else 0.0,
            total_rrsp_room_generated=sum(r.rrsp_room_generated for r in rows),
            total_rrsp_contributions=sum(r.rrsp_contribution for r in rows),
            total_tfsa_contributions=sum(r.tfsa_contribution for r in rows),
            total_resp_contributions=sum(r.resp_contribution for r in rows),
            total_debt_paid=sum(r.debt_paydown for r in rows),
            total_rdtoh_refund=sum(r.rdtoh_refund for r in rows),
            total_employer_health_tax=sum(r.employer_health_tax for r in rows),
            yearly_results=list(rows),
            settings=dict(self.s),
        )

        members = [p for p in (self.state.primary, self.state.spouse) if p is not None and p.consider_ipp]
        if members:
            # one plan summary for the corporation, whichever of the two is a member
            ipp_rows = [r.ipp for r in rows if r.ipp is not None]
            ipp_rows += [sp.ipp for sp in spouse_rows if sp.ipp is not None]
            summary.ipp = IPPSummary(
                total_contributions=sum(y.contribution for y in ipp_rows),
                total_admin_costs=sum(y.admin_costs for y in ipp_rows),
                total_deductible=sum(y.total_deductible for y in ipp_rows),
                total_pension_adjustments=sum(y.pension_adjustment for y in ipp_rows),
                total_corporate_tax_savings=sum(y.corporate_tax_savings for y in ipp_rows),
                projected_annual_pension=sum(p.ipp_accrued_pension for p in members),
                final_fund_balance=sum(p.ipp_fund for p in members),
            )

        if self.state.spouse is not None:
            spouse_salary = sum(sp.salary for sp in spouse_rows)
            spouse_dividends = sum(sp.dividends.gross_dividends for sp in spouse_rows)
            summary.spouse = SpouseSummary(
                total_salary=spouse_salary,
                total_dividends=spouse_dividends,
                total_compensation=spouse_salary + spouse_dividends,
                total_personal_tax=sum(sp.personal_tax for sp in spouse_rows),
                total_payroll=sum(sp.employee_payroll + sp.employer_payroll_cost for sp in spouse_rows),
                total_rrsp_room_generated=sum(sp.rrsp_room_generated for sp in spouse_rows),
                total_rrsp_contributions=sum(sp.rrsp_contribution for sp in spouse_rows),
                total_tfsa_contributions=sum(sp.tfsa_contribution for sp in spouse_rows),
                total_cpp_received=sum(r.retirement.spouse_cpp_income for r in rows if r.retirement),
                total_oas_received=sum(r.retirement.spouse_oas_net for r in rows if r.retirement),
            )

        if any(r.phase != PHASE_ACCUMULATION for r in rows):
            summary.lifetime = self._lifetime_summary(rows, total_tax)
        return summary

    def _lifetime_summary(self, rows: List[YearlyResult], total_tax: float) -> LifetimeSummary:
        last = rows[-1]
        estate = last.estate
        if estate is None:
            # no terminal year inside the horizon: value what is left as if settled now
            base = 0.0
            if last.retirement is not None:
                r = last.retirement
                base = r.cpp_income + r.oas_gross + r.rrif_withdrawal
            estate = _round_cents(self._estate_breakdown(self._table(last.calendar_year), base, self.state))

        peak = max(rows, key=lambda r: r.corporate_balance)
        retired = [r.retirement for r in rows if r.retirement is not None]
        total_gross = sum(r.gross_income for r in rows)
        return LifetimeSummary(
            total_lifetime_spending=sum(r.after_tax_income for r in rows),
            estate_value=estate.net_estate_value,
            total_lifetime_tax=total_tax,
            total_gross_income=total_gross,
            lifetime_effective_rate=safe_div(total_tax, total_gross),
            peak_corporate_balance=peak.corporate_balance,
            peak_year=peak.calendar_year,
            cpp_total_received=sum(x.cpp_income + x.spouse_cpp_income for x in retired),
            oas_total_received=sum(x.oas_net + x.spouse_oas_net for x in retired),
            rrif_total_withdrawn=sum(x.rrif_withdrawal + x.spouse_rrif_withdrawal for x in retired),
            tfsa_total_withdrawn=sum(x.tfsa_withdrawal for x in retired),
            accumulation_years=sum(1 for r in rows if r.phase == PHASE_ACCUMULATION),
            retirement_years=sum(1 for r in rows if r.phase != PHASE_ACCUMULATION),
            estate=estate,
        )


def calculate_projection(
    config: Dict,
    progress_cb: Optional[Callable[[float, str], None]] = None,
    optimizer=None,
) -> ProjectionSummary:
    """
    Runs the full multi-year projection for one settings dict.

    Settings not given fall back to DEFAULTS; see compensation_helpers.DEFAULTS for
    the keys. Raises TaxYearNotFoundError for an unsupported province or year and
    ConfigurationError when ages or strategy selectors cannot produce a projection.
    """
    sim = CompensationSimulator(config, progress_cb=progress_cb, optimizer=optimizer)
    return sim.run()
