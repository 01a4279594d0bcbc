"""
Government benefits and registered-plan schedules: CPP, OAS, RRIF minimums and IPP funding.
"""
import json
from dataclasses import dataclass
from functools import lru_cache
from typing import Dict, List, Optional, Sequence, Tuple


# ==========================================================
# CPP
# ==========================================================
# year: (YMPE, basic exemption)
HISTORICAL_CPP: Dict[int, Tuple[float, float]] = {
    1966: (5000, 600), 1967: (5000, 600), 1968: (5100, 600), 1969: (5200, 600),
    1970: (5300, 600), 1971: (5400, 600), 1972: (5500, 600), 1973: (5900, 600),
    1974: (6600, 700), 1975: (7400, 700), 1976: (8300, 800), 1977: (9300, 900),
    1978: (10400, 1000), 1979: (11700, 1100), 1980: (13100, 1300), 1981: (14700, 1400),
    1982: (16500, 1600), 1983: (18500, 1800), 1984: (20800, 2000), 1985: (23400, 2300),
    1986: (25800, 2500), 1987: (25900, 2500), 1988: (26500, 2600), 1989: (27700, 2700),
    1990: (28900, 2800), 1991: (30500, 3000), 1992: (32200, 3200), 1993: (33400, 3300),
    1994: (34400, 3400), 1995: (34900, 3400), 1996: (35400, 3500), 1997: (35800, 3500),
    1998: (36900, 3500), 1999: (37400, 3500), 2000: (37600, 3500), 2001: (38300, 3500),
    2002: (39100, 3500), 2003: (39900, 3500), 2004: (40500, 3500), 2005: (41100, 3500),
    2006: (42100, 3500), 2007: (43700, 3500), 2008: (44900, 3500), 2009: (46300, 3500),
    2010: (47200, 3500), 2011: (48300, 3500), 2012: (50100, 3500), 2013: (51100, 3500),
    2014: (52500, 3500), 2015: (53600, 3500), 2016: (54900, 3500), 2017: (55300, 3500),
    2018: (55900, 3500), 2019: (57400, 3500), 2020: (58700, 3500), 2021: (61600, 3500),
    2022: (64900, 3500), 2023: (66600, 3500), 2024: (68500, 3500), 2025: (71300, 3500),
    2026: (74600, 3500),
}
HISTORICAL_YAMPE: Dict[int, float] = {2024: 73200, 2025: 81200, 2026: 85000}
FIRST_CPP_YEAR = 1966
LAST_CPP_TABLE_YEAR = 2026

ENHANCED_CPP_PHASE_IN = {2019: 0.15, 2020: 0.30, 2021: 0.50, 2022: 0.75, 2023: 1.00}
EARLY_REDUCTION_PER_MONTH = 0.006
LATE_INCREASE_PER_MONTH = 0.007
MIN_CPP_START_AGE = 60
MAX_CPP_START_AGE = 70
NORMAL_START_AGE = 65
GENERAL_DROPOUT_FRACTION = 0.17
CPP_DEATH_BENEFIT = 2500.0


def get_ympe(year: int, inflation_rate: float) -> float:
    if year < FIRST_CPP_YEAR:
        return 0.0
    if year <= LAST_CPP_TABLE_YEAR:
        return float(HISTORICAL_CPP[year][0])
    base = HISTORICAL_CPP[LAST_CPP_TABLE_YEAR][0]
    return float(round(base * (1.0 + inflation_rate) ** (year - LAST_CPP_TABLE_YEAR)))


def get_yampe(year: int, inflation_rate: float) -> float:
    if year < 2024:
        return 0.0
    if year <= LAST_CPP_TABLE_YEAR:
        return float(HISTORICAL_YAMPE[year])
    base = HISTORICAL_YAMPE[LAST_CPP_TABLE_YEAR]
    return float(round(base * (1.0 + inflation_rate) ** (year - LAST_CPP_TABLE_YEAR)))


def get_basic_exemption(year: int) -> float:
    if year < FIRST_CPP_YEAR:
        return 0.0
    if year <= LAST_CPP_TABLE_YEAR:
        return float(HISTORICAL_CPP[year][1])
    return 3500.0


@dataclass(frozen=True)
class CPPBenefit:
    base_cpp: float = 0.0
    enhanced_cpp: float = 0.0
    cpp2_benefit: float = 0.0
    total_annual_benefit: float = 0.0
    ampe: float = 0.0
    contributory_years: int = 0
    dropped_years: int = 0

    @property
    def monthly_benefit(self) -> float:
        return self.total_annual_benefit / 12.0


def _salary_for_year(
    year: int,
    birth_year: int,
    salary_start_age: int,
    average_historical_salary: float,
    projected_salaries: Sequence[float],
    projection_start_year: int,
) -> float:
    if year < projection_start_year:
        return float(average_historical_salary) if (year - birth_year) >= salary_start_age else 0.0
    idx = year - projection_start_year
    return float(projected_salaries[idx]) if idx < len(projected_salaries) else 0.0


def build_contributory_earnings(
    birth_year: int,
    salary_start_age: int,
    average_historical_salary: float,
    projected_salaries: Sequence[float],
    current_age: int,
    cpp_start_age: int,
    inflation_rate: float,
) -> Tuple[List[float], List[float], List[int]]:
    """Pensionable earnings, raw salaries and calendar years from age 18 to the year before CPP starts."""
    start_age = max(18, FIRST_CPP_YEAR - birth_year)
    end_age = min(cpp_start_age - 1, MAX_CPP_START_AGE)
    projection_start_year = birth_year + current_age

    earnings: List[float] = []
    salaries: List[float] = []
    years: List[int] = []
    for age in range(start_age, end_age + 1):
        year = birth_year + age
        salary = _salary_for_year(
            year, birth_year, salary_start_age, average_historical_salary, projected_salaries, projection_start_year
        )
        pensionable = max(0.0, min(salary, get_ympe(year, inflation_rate)) - get_basic_exemption(year))
        earnings.append(pensionable)
        salaries.append(salary)
        years.append(year)
    return earnings, salaries, years


def apply_general_dropout(monthly_earnings: Sequence[float]) -> Tuple[List[float], int]:
    """Drops the lowest 17% of contributory periods."""
    drop = int(len(monthly_earnings) * GENERAL_DROPOUT_FRACTION)
    kept = sorted(monthly_earnings)[drop:]
    return kept, drop


def actuarial_factor(start_age: int) -> float:
    clamped = max(MIN_CPP_START_AGE, min(MAX_CPP_START_AGE, int(start_age)))
    months = (clamped - NORMAL_START_AGE) * 12
    if months < 0:
        return 1.0 + months * EARLY_REDUCTION_PER_MONTH
    return 1.0 + months * LATE_INCREASE_PER_MONTH


def _enhanced_cpp(years: Sequence[int], kept_monthly: Sequence[float]) -> float:
    enhanced_months = 0.0
    for year in years:
        if year < 2019:
            continue
        enhanced_months += 12.0 * ENHANCED_CPP_PHASE_IN.get(year, 1.0)
    if enhanced_months <= 0 or not kept_monthly:
        return 0.0
    proportion = min(enhanced_months / 480.0, 1.0)
    ampe = sum(kept_monthly) / len(kept_monthly)
    return ampe * 0.0833 * 12.0 * proportion


def _cpp2_benefit(years: Sequence[int], salaries: Sequence[float], inflation_rate: float) -> float:
    band_total = 0.0
    band_years = 0
    for year, salary in zip(years, salaries):
        if year < 2024:
            continue
        ympe = get_ympe(year, inflation_rate)
        yampe = get_yampe(year, inflation_rate)
        if salary > ympe and yampe > ympe:
            band_total += min(salary, yampe) - ympe
            band_years += 1
    if band_years == 0:
        return 0.0
    proportion = min(band_years * 12.0 / 480.0, 1.0)
    return band_total / band_years / 12.0 * 0.3333 * 12.0 * proportion


def project_cpp_benefit(
    birth_year: int,
    salary_start_age: int,
    average_historical_salary: float,
    projected_salaries: Sequence[float],
    current_age: int,
    cpp_start_age: int,
    inflation_rate: float,
) -> CPPBenefit:
    """
    Annual CPP at the chosen start age: base (25% of AMPE after dropout), enhanced
    (8.33% phased in from 2019) and the CPP2 tier, then the early/late factor.
    """
    earnings, salaries, years = build_contributory_earnings(
        birth_year, salary_start_age, average_historical_salary,
        projected_salaries, current_age, cpp_start_age, inflation_rate,
    )
    if not earnings:
        return CPPBenefit()

    kept, dropped = apply_general_dropout([e / 12.0 for e in earnings])
    ampe = sum(kept) / len(kept) if kept else 0.0

    factor = actuarial_factor(cpp_start_age)
    base = ampe * 0.25 * 12.0 * factor
    enhanced = _enhanced_cpp(years, kept)
    cpp2 = _cpp2_benefit(years, salaries, inflation_rate)

    return CPPBenefit(
        base_cpp=base,
        enhanced_cpp=enhanced,
        cpp2_benefit=cpp2,
        total_annual_benefit=base + enhanced + cpp2,
        ampe=ampe,
        contributory_years=len(earnings),
        dropped_years=dropped,
    )


# ==========================================================
# OAS
# ==========================================================
OAS_BASE_YEAR = 2025
OAS_MAX_MONTHLY_65_74 = 727.67
OAS_MAX_MONTHLY_75_PLUS = 800.44
OAS_CLAWBACK_THRESHOLD = 93454.0
OAS_CLAWBACK_RATE = 0.15
OAS_DEFERRAL_BONUS_PER_MONTH = 0.006
OAS_MAX_DEFERRAL_MONTHS = 60
OAS_MIN_START_AGE = 65
OAS_MAX_START_AGE = 70


@dataclass(frozen=True)
class OASResult:
    gross: float = 0.0
    clawback: float = 0.0
    net: float = 0.0


def max_oas_benefit(calendar_year: int, age: int, start_age: int, inflation_rate: float) -> float:
    if age < start_age:
        return 0.0
    clamped = max(OAS_MIN_START_AGE, min(OAS_MAX_START_AGE, int(start_age)))
    indexation = (1.0 + inflation_rate) ** (calendar_year - OAS_BASE_YEAR)
    monthly = OAS_MAX_MONTHLY_75_PLUS if age >= 75 else OAS_MAX_MONTHLY_65_74
    deferral = min((clamped - OAS_MIN_START_AGE) * 12, OAS_MAX_DEFERRAL_MONTHS)
    return monthly * indexation * (1.0 + deferral * OAS_DEFERRAL_BONUS_PER_MONTH) * 12.0


def oas_clawback_threshold(calendar_year: int, inflation_rate: float) -> float:
    return OAS_CLAWBACK_THRESHOLD * (1.0 + inflation_rate) ** (calendar_year - OAS_BASE_YEAR)


def solve_oas_with_clawback(base_income: float, max_oas: float, threshold: float) -> OASResult:
    """Recovery tax depends on income including OAS itself; iterate to a fixed point."""
    if max_oas <= 0:
        return OASResult()
    if base_income >= threshold + max_oas / OAS_CLAWBACK_RATE:
        return OASResult(gross=max_oas, clawback=max_oas, net=0.0)
    if base_income + max_oas <= threshold:
        return OASResult(gross=max_oas, clawback=0.0, net=max_oas)

    net = max_oas
    for _ in range(20):
        excess = max(0.0, base_income + net - threshold)
        new_net = max_oas - min(max_oas, excess * OAS_CLAWBACK_RATE)
        if abs(new_net - net) < 0.01:
            net = new_net
            break
        net = new_net
    return OASResult(gross=max_oas, clawback=max_oas - net, net=net)


def calc_oas(
    calendar_year: int,
    age: int,
    oas_start_age: int,
    oas_eligible: bool,
    base_income: float,
    inflation_rate: float,
) -> OASResult:
    if not oas_eligible or age < oas_start_age:
        return OASResult()
    return solve_oas_with_clawback(
        base_income,
        max_oas_benefit(calendar_year, age, oas_start_age, inflation_rate),
        oas_clawback_threshold(calendar_year, inflation_rate),
    )


# ==========================================================
# RRIF
# ==========================================================
RRIF_MIN_TABLE_JSON = json.dumps({
    71: 0.0528, 72: 0.0540, 73: 0.0553, 74: 0.0567, 75: 0.0582,
    76: 0.0598, 77: 0.0617, 78: 0.0636, 79: 0.0658, 80: 0.0682,
    81: 0.0708, 82: 0.0738, 83: 0.0771, 84: 0.0808, 85: 0.0851,
    86: 0.0899, 87: 0.0955, 88: 0.1021, 89: 0.1099, 90: 0.1192,
    91: 0.1306, 92: 0.1449, 93: 0.1634, 94: 0.1879
})


@lru_cache(maxsize=8)
def _rrif_table_cached(rrif_min_table_json: str) -> Dict[int, float]:
    table = json.loads(rrif_min_table_json)
    return {int(k): float(v) for k, v in table.items()}


def get_rrif_min_percentage(age: int, table_json: Optional[str] = None) -> float:
    """Returns CRA minimum withdrawal factor."""
    if age < 55:
        return 0.0
    if age < 71:
        return 1.0 / (90.0 - age)
    table = _rrif_table_cached(table_json or RRIF_MIN_TABLE_JSON)
    return float(table.get(age, 0.20))


@dataclass(frozen=True)
class RRIFYear:
    opening_balance: float = 0.0
    minimum_withdrawal: float = 0.0
    withdrawal: float = 0.0
    growth: float = 0.0
    closing_balance: float = 0.0


def calc_rrif_year(balance: float, age: int, return_rate: float, extra_withdrawal: float = 0.0) -> RRIFYear:
    """Minimum on the opening balance, withdrawn at the start of the year; remainder grows."""
    opening = max(0.0, float(balance))
    minimum = opening * get_rrif_min_percentage(age)
    withdrawal = min(opening, minimum + max(0.0, float(extra_withdrawal)))
    growth = (opening - withdrawal) * return_rate
    return RRIFYear(
        opening_balance=opening,
        minimum_withdrawal=minimum,
        withdrawal=withdrawal,
        growth=growth,
        closing_balance=max(0.0, opening - withdrawal + growth),
    )


# ==========================================================
# IPP
# ==========================================================
IPP_MAX_BENEFIT = {2025: 3610.67, 2026: 3725.00}
IPP_ACCRUAL_RATE = 0.02
ACTUARIAL_DISCOUNT_RATE = 0.0525
ANNUITY_YEARS = 25
IPP_RETIREMENT_AGE = 65
IPP_SETUP_COST = 2500.0
IPP_ANNUAL_ACTUARIAL = 1500.0
IPP_ANNUAL_ADMIN = 500.0


@dataclass(frozen=True)
class IPPContribution:
    member_age: int = 0
    years_of_service: int = 0
    accrual: float = 0.0
    contribution: float = 0.0
    pension_adjustment: float = 0.0
    admin_costs: float = 0.0
    projected_annual_pension: float = 0.0
    corporate_tax_savings: float = 0.0

    @property
    def total_deductible(self) -> float:
        return self.contribution + self.admin_costs


def max_benefit_per_year(year: int, inflation_rate: float) -> float:
    if year in IPP_MAX_BENEFIT:
        return IPP_MAX_BENEFIT[year]
    last = max(IPP_MAX_BENEFIT)
    if year < min(IPP_MAX_BENEFIT):
        return IPP_MAX_BENEFIT[min(IPP_MAX_BENEFIT)]
    return IPP_MAX_BENEFIT[last] * (1.0 + inflation_rate) ** (year - last)


def annual_pension_accrual(salary: float, year: int, inflation_rate: float) -> float:
    return min(max(0.0, salary) * IPP_ACCRUAL_RATE, max_benefit_per_year(year, inflation_rate))


def present_value_factor(age: int, retirement_age: int = IPP_RETIREMENT_AGE,
                         discount_rate: float = ACTUARIAL_DISCOUNT_RATE) -> float:
    years_to_retirement = max(0, retirement_age - age)
    pv_annuity = (1.0 - (1.0 + discount_rate) ** -ANNUITY_YEARS) / discount_rate
    return pv_annuity / (1.0 + discount_rate) ** years_to_retirement


def pension_adjustment(salary: float, year: int, inflation_rate: float) -> float:
    return max(0.0, 9.0 * annual_pension_accrual(salary, year, inflation_rate) - 600.0)


def ipp_admin_costs(first_year: bool) -> float:
    if first_year:
        return IPP_SETUP_COST + IPP_ANNUAL_ACTUARIAL + IPP_ANNUAL_ADMIN
    return IPP_ANNUAL_ACTUARIAL + IPP_ANNUAL_ADMIN


def calc_ipp_contribution(
    member_age: int,
    years_of_service: int,
    salary: float,
    small_business_rate: float,
    year: int,
    first_year: bool,
    inflation_rate: float,
) -> IPPContribution:
    """Current service cost for one year of accrual; zero when there is no pensionable salary."""
    if salary <= 0:
        return IPPContribution(member_age=member_age, years_of_service=years_of_service)
    accrual = annual_pension_accrual(salary, year, inflation_rate)
    contribution = accrual * present_value_factor(member_age)
    return IPPContribution(
        member_age=member_age,
        years_of_service=years_of_service,
        accrual=accrual,
        contribution=contribution,
        pension_adjustment=pension_adjustment(salary, year, inflation_rate),
        admin_costs=ipp_admin_costs(first_year),
        projected_annual_pension=accrual * (years_of_service + 1),
        corporate_tax_savings=contribution * small_business_rate,
    )
