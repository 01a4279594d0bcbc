import math
from dataclasses import dataclass
from functools import lru_cache
from typing import Dict, List, Optional, Tuple


class TaxYearNotFoundError(LookupError):
    """No tax table exists for the requested jurisdiction/year combination."""

    def __init__(self, year: int, province: str, reason: str):
        self.year = year
        self.province = province
        super().__init__(f"No tax table for {province} {year}: {reason}")


# ==========================================================
# Indexation
# ==========================================================
CRA_INDEXATION_FACTORS: Dict[int, float] = {
    2024: 0.047,
    2025: 0.027,
    2026: 0.020,
}

DEFAULT_INFLATION_RATE = CRA_INDEXATION_FACTORS[max(CRA_INDEXATION_FACTORS)]

OPEN_TOP = 1_000_000_000.0  # last bracket ceiling

YAMPE_MULTIPLIER = 1.14


def inflate_amount(base_amount: float, years: float, inflation_rate: float) -> float:
    return float(base_amount) * ((1.0 + float(inflation_rate)) ** years)


def _round_dollar(x: float) -> float:
    return float(math.floor(x + 0.5))


def _floor_to_500(x: float) -> float:
    return float(math.floor(x / 500.0) * 500.0)


# ==========================================================
# Known federal / payroll values (CRA)
# ==========================================================
KNOWN_TAX_YEARS: Dict[int, Dict] = {
    2026: {
        # [lower threshold, rate]
        "federal_thresholds": [[0, 0.14], [58523, 0.205], [117045, 0.26], [181440, 0.29], [258482, 0.33]],
        "federal_bpa": 16452.0,
        "cpp_rate": 0.0595,
        "ympe": 74600.0,
        "cpp_basic_exemption": 3500.0,
        "cpp2_rate": 0.04,
        "yampe": 85000.0,
        "ei_rate": 0.0163,
        "ei_max_insurable": 68900.0,
        "ei_employer_multiplier": 1.4,
        "eligible_gross_up": 0.38,
        "eligible_federal_credit": 0.150198,
        "non_eligible_gross_up": 0.15,
        "non_eligible_federal_credit": 0.090301,
        "federal_small_business_rate": 0.09,
        "federal_general_rate": 0.15,
        "rrsp_rate": 0.18,
        "rrsp_limit": 33810.0,
        "tfsa_limit": 7000.0,
        "rdtoh_refund_rate": 0.3833,
        # Quebec payroll
        "qpp_rate": 0.064,
        "qc_ei_rate": 0.01264,
        "qpip_employee_rate": 0.00494,
        "qpip_employer_rate": 0.00692,
        "qpip_max_insurable": 100000.0,
    },
}


# ==========================================================
# Provinces & territories
# ==========================================================
@dataclass(frozen=True)
class ProvinceInfo:
    code: str
    name: str
    uses_qpp: bool = False
    has_qpip: bool = False
    has_surtax: bool = False
    has_health_premium: bool = False
    top_combined_rate: float = 0.0
    passive_investment_rate: float = 0.0


PROVINCES: Dict[str, ProvinceInfo] = {
    "AB": ProvinceInfo("AB", "Alberta", top_combined_rate=0.48, passive_investment_rate=0.4667),
    "BC": ProvinceInfo("BC", "British Columbia", top_combined_rate=0.535, passive_investment_rate=0.5067),
    "MB": ProvinceInfo("MB", "Manitoba", top_combined_rate=0.504, passive_investment_rate=0.5067),
    "NB": ProvinceInfo("NB", "New Brunswick", top_combined_rate=0.525, passive_investment_rate=0.5267),
    "NL": ProvinceInfo("NL", "Newfoundland and Labrador", top_combined_rate=0.548, passive_investment_rate=0.5367),
    "NS": ProvinceInfo("NS", "Nova Scotia", top_combined_rate=0.54, passive_investment_rate=0.5267),
    "NT": ProvinceInfo("NT", "Northwest Territories", top_combined_rate=0.4705, passive_investment_rate=0.5017),
    "NU": ProvinceInfo("NU", "Nunavut", top_combined_rate=0.445, passive_investment_rate=0.5067),
    "ON": ProvinceInfo(
        "ON", "Ontario", has_surtax=True, has_health_premium=True,
        top_combined_rate=0.5353, passive_investment_rate=0.5017,
    ),
    "PE": ProvinceInfo("PE", "Prince Edward Island", has_surtax=True, top_combined_rate=0.52, passive_investment_rate=0.5467),
    "QC": ProvinceInfo(
        "QC", "Quebec", uses_qpp=True, has_qpip=True,
        top_combined_rate=0.5331, passive_investment_rate=0.5017,
    ),
    "SK": ProvinceInfo("SK", "Saskatchewan", top_combined_rate=0.475, passive_investment_rate=0.5067),
    "YT": ProvinceInfo("YT", "Yukon", top_combined_rate=0.48, passive_investment_rate=0.5067),
}

DEFAULT_PROVINCE = "ON"

QUEBEC_FEDERAL_ABATEMENT = 0.165

# Provincial values keyed by year then province.
# thresholds: [lower threshold, rate]; dtc: (eligible, non-eligible) credit on grossed-up dividend;
# corp: (small business, general) provincial corporate rate.
PROVINCIAL_RATES: Dict[int, Dict[str, Dict]] = {
    2026: {
        "AB": {
            "thresholds": [[0, 0.10], [151234, 0.12], [181480, 0.13], [241975, 0.14], [362962, 0.15]],
            "bpa": 21423.0, "dtc": (0.0812, 0.0218), "corp": (0.02, 0.08),
        },
        "BC": {
            "thresholds": [[0, 0.0506], [48896, 0.077], [97792, 0.105], [112278, 0.1229],
                           [136337, 0.147], [184857, 0.168], [257807, 0.205]],
            "bpa": 13191.0, "dtc": (0.12, 0.0196), "corp": (0.02, 0.12),
        },
        "MB": {
            "thresholds": [[0, 0.108], [47940, 0.1275], [102000, 0.174]],
            "bpa": 16096.0, "dtc": (0.08, 0.007835), "corp": (0.0, 0.12),
        },
        "NB": {
            "thresholds": [[0, 0.094], [50957, 0.14], [101914, 0.16], [188765, 0.195]],
            "bpa": 13664.0, "dtc": (0.14, 0.0275), "corp": (0.025, 0.14),
        },
        "NL": {
            "thresholds": [[0, 0.087], [44062, 0.145], [88123, 0.158], [157329, 0.178],
                           [220262, 0.198], [281387, 0.208], [562774, 0.213], [1125547, 0.218]],
            "bpa": 11034.0, "dtc": (0.063, 0.032), "corp": (0.03, 0.15),
        },
        "NS": {
            "thresholds": [[0, 0.0879], [30182, 0.1495], [60364, 0.1667], [94860, 0.175], [153000, 0.21]],
            "bpa": 8651.0, "dtc": (0.0885, 0.0299), "corp": (0.025, 0.14),
        },
        "NT": {
            "thresholds": [[0, 0.059], [51609, 0.086], [103222, 0.122], [167816, 0.1405]],
            "bpa": 17720.0, "dtc": (0.115, 0.06), "corp": (0.02, 0.115),
        },
        "NU": {
            "thresholds": [[0, 0.04], [54333, 0.07], [108668, 0.09], [176669, 0.115]],
            "bpa": 19142.0, "dtc": (0.0551, 0.0261), "corp": (0.03, 0.12),
        },
        "ON": {
            "thresholds": [[0, 0.0505], [52475, 0.0915], [104952, 0.1116], [153000, 0.1216], [224400, 0.1316]],
            "bpa": 12647.0, "dtc": (0.10, 0.029863), "corp": (0.032, 0.115),
            "surtax": [[5824, 0.20], [7453, 0.36]],
            # threshold, base, rate, max premium
            "health_premium": [
                [20000, 0, 0.06, 300], [25000, 300, 0.06, 450], [36000, 450, 0.25, 600],
                [38500, 600, 0.25, 750], [48000, 750, 0.25, 900], [72000, 900, 0.25, 900],
                [200600, 900, 0.0, 900],
            ],
        },
        "PE": {
            "thresholds": [[0, 0.0965], [33309, 0.1363], [65599, 0.1665]],
            "bpa": 13770.0, "dtc": (0.105, 0.0128), "corp": (0.01, 0.16),
            "surtax": [[12750, 0.10]],
        },
        "QC": {
            "thresholds": [[0, 0.14], [52816, 0.19], [105616, 0.24], [128520, 0.2575]],
            "bpa": 18417.0, "dtc": (0.117, 0.0342), "corp": (0.032, 0.115),
        },
        "SK": {
            "thresholds": [[0, 0.105], [53098, 0.125], [151709, 0.145]],
            "bpa": 18861.0, "dtc": (0.11, 0.02105), "corp": (0.01, 0.12),
        },
        "YT": {
            "thresholds": [[0, 0.064], [56984, 0.09], [113968, 0.109], [176669, 0.128], [510000, 0.15]],
            "bpa": 16019.0, "dtc": (0.1212, 0.0218), "corp": (0.0, 0.12),
        },
    },
}


# ==========================================================
# Table type
# ==========================================================
@dataclass(frozen=True)
class TaxYearTable:
    """Complete, self-consistent rates and limits for one province and year.

    Brackets are ``(top, rate)`` pairs, the format consumed by ``tax_from_brackets``.
    """
    year: int
    province: str
    federal_brackets: Tuple[Tuple[float, float], ...]
    federal_bpa: float
    provincial_brackets: Tuple[Tuple[float, float], ...]
    provincial_bpa: float
    surtax_tiers: Tuple[Tuple[float, float], ...]
    health_premium_tiers: Tuple[Tuple[float, float, float, float], ...]
    eligible_gross_up: float
    eligible_federal_credit: float
    eligible_provincial_credit: float
    non_eligible_gross_up: float
    non_eligible_federal_credit: float
    non_eligible_provincial_credit: float
    federal_abatement: float
    cpp_rate: float
    ympe: float
    cpp_basic_exemption: float
    cpp_max_contribution: float
    cpp2_rate: float
    yampe: float
    cpp2_max_contribution: float
    ei_rate: float
    ei_max_insurable: float
    ei_max_contribution: float
    ei_employer_multiplier: float
    qpip_employee_rate: float
    qpip_employer_rate: float
    qpip_max_insurable: float
    small_business_rate: float
    general_rate: float
    passive_investment_rate: float
    top_marginal_rate: float
    rrsp_rate: float
    rrsp_limit: float
    tfsa_limit: float
    rdtoh_refund_rate: float


def _thresholds_to_brackets(thresholds: List[List[float]], factor: float) -> Tuple[Tuple[float, float], ...]:
    """[lower, rate] rows -> (top, rate) rows, indexing every non-zero threshold by factor."""
    lowers = [0.0 if t == 0 else _round_dollar(t * factor) for t, _ in thresholds]
    out = []
    for i, (_, rate) in enumerate(thresholds):
        top = lowers[i + 1] if i + 1 < len(lowers) else OPEN_TOP
        out.append((top, float(rate)))
    return tuple(out)


def latest_known_year() -> int:
    return max(KNOWN_TAX_YEARS)


def _provincial_base(year: int, province: str) -> Tuple[int, Dict]:
    years = sorted(y for y in PROVINCIAL_RATES if y <= year)
    if not years:
        raise TaxYearNotFoundError(year, province, "no provincial rates at or before this year")
    base_year = years[-1]
    data = PROVINCIAL_RATES[base_year].get(province)
    if data is None:
        raise TaxYearNotFoundError(year, province, f"no provincial rates for {base_year}")
    return base_year, data


@lru_cache(maxsize=512)
def _build_table(year: int, province: str, inflation_key: int) -> TaxYearTable:
    inflation_rate = inflation_key / 100000.0

    if province not in PROVINCES:
        raise TaxYearNotFoundError(year, province, "unknown province code")

    earliest = min(KNOWN_TAX_YEARS)
    if year < earliest:
        raise TaxYearNotFoundError(year, province, f"earliest supported year is {earliest}")

    fed_year = max(y for y in KNOWN_TAX_YEARS if y <= year)
    fed = KNOWN_TAX_YEARS[fed_year]
    fed_factor = (1.0 + inflation_rate) ** (year - fed_year)

    prov_year, prov = _provincial_base(year, province)
    prov_factor = (1.0 + inflation_rate) ** (year - prov_year)
    info = PROVINCES[province]

    ympe = _round_dollar(fed["ympe"] * fed_factor)
    yampe = fed["yampe"] if fed_factor == 1.0 else _round_dollar(ympe * YAMPE_MULTIPLIER)
    exemption = fed["cpp_basic_exemption"]  # not indexed
    cpp_rate = fed["qpp_rate"] if info.uses_qpp else fed["cpp_rate"]
    ei_rate = fed["qc_ei_rate"] if province == "QC" else fed["ei_rate"]
    ei_mie = _round_dollar(fed["ei_max_insurable"] * fed_factor)

    surtax = tuple(
        (_round_dollar(t * prov_factor), float(r)) for t, r in prov.get("surtax", [])
    )
    # Ontario health premium thresholds are not indexed
    health = tuple(tuple(float(v) for v in row) for row in prov.get("health_premium", []))

    sb_prov, gen_prov = prov["corp"]
    elig_dtc, non_elig_dtc = prov["dtc"]

    return TaxYearTable(
        year=year,
        province=province,
        federal_brackets=_thresholds_to_brackets(fed["federal_thresholds"], fed_factor),
        federal_bpa=_round_dollar(fed["federal_bpa"] * fed_factor),
        provincial_brackets=_thresholds_to_brackets(prov["thresholds"], prov_factor),
        provincial_bpa=_round_dollar(prov["bpa"] * prov_factor),
        surtax_tiers=surtax,
        health_premium_tiers=health,
        eligible_gross_up=fed["eligible_gross_up"],
        eligible_federal_credit=fed["eligible_federal_credit"],
        eligible_provincial_credit=float(elig_dtc),
        non_eligible_gross_up=fed["non_eligible_gross_up"],
        non_eligible_federal_credit=fed["non_eligible_federal_credit"],
        non_eligible_provincial_credit=float(non_elig_dtc),
        federal_abatement=QUEBEC_FEDERAL_ABATEMENT if province == "QC" else 0.0,
        cpp_rate=cpp_rate,
        ympe=ympe,
        cpp_basic_exemption=exemption,
        cpp_max_contribution=round((ympe - exemption) * cpp_rate, 2),
        cpp2_rate=fed["cpp2_rate"],
        yampe=yampe,
        cpp2_max_contribution=round((yampe - ympe) * fed["cpp2_rate"], 2),
        ei_rate=ei_rate,
        ei_max_insurable=ei_mie,
        ei_max_contribution=round(ei_mie * ei_rate, 2),
        ei_employer_multiplier=fed["ei_employer_multiplier"],
        qpip_employee_rate=fed["qpip_employee_rate"] if info.has_qpip else 0.0,
        qpip_employer_rate=fed["qpip_employer_rate"] if info.has_qpip else 0.0,
        qpip_max_insurable=_round_dollar(fed["qpip_max_insurable"] * fed_factor) if info.has_qpip else 0.0,
        small_business_rate=round(fed["federal_small_business_rate"] + sb_prov, 6),
        general_rate=round(fed["federal_general_rate"] + gen_prov, 6),
        passive_investment_rate=info.passive_investment_rate,
        top_marginal_rate=info.top_combined_rate,
        rrsp_rate=fed["rrsp_rate"],
        rrsp_limit=_round_dollar(fed["rrsp_limit"] * fed_factor),
        tfsa_limit=_floor_to_500(fed["tfsa_limit"] * fed_factor),
        rdtoh_refund_rate=fed["rdtoh_refund_rate"],
    )


def get_tax_year_data(
    year: int,
    province: str = DEFAULT_PROVINCE,
    inflation_rate: Optional[float] = None,
) -> TaxYearTable:
    """
    Table for (year, province). Years past the latest known year are synthesized by
    compounding inflation_rate from the latest known values.
    Raises TaxYearNotFoundError for unknown provinces or years before the earliest table.
    """
    if inflation_rate is None:
        inflation_rate = DEFAULT_INFLATION_RATE
    code = str(province or "").upper()
    return _build_table(int(year), code, int(round(float(inflation_rate) * 100000.0)))


def top_marginal_rate(province: str) -> float:
    info = PROVINCES.get(str(province or "").upper())
    if info is None:
        raise TaxYearNotFoundError(latest_known_year(), str(province), "unknown province code")
    return info.top_combined_rate
