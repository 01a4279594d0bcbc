import copy
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from compensation_helpers import configure_logger, merge_settings, safe_div
from compensation_simulation import ProjectionSummary, YearlyResult, calculate_projection
from tax_tables import get_tax_year_data, top_marginal_rate

CORPORATE_LIQUIDATION_RATE = 0.40   # wind-up as non-eligible dividends
DEFAULT_WITHDRAWAL_RATE = 0.35
LOWER_RATE_FLOOR = 0.20
LOWER_RATE_STEP = 0.10

TAX_WEIGHT = 0.6
BALANCE_WEIGHT = 0.4
SPENDING_WEIGHT = 0.6
ESTATE_WEIGHT = 0.4


@dataclass
class StrategyDefinition:
    id: str
    label: str
    description: str
    overrides: Dict = field(default_factory=dict)
    is_current_setup: bool = False


@dataclass
class AfterTaxWealth:
    at_current_rate: float
    at_lower_rate: float
    at_top_rate: float
    current_rrsp_withdrawal_rate: float
    lower_rrsp_withdrawal_rate: float
    top_rrsp_withdrawal_rate: float
    corporate_liquidation_rate: float = CORPORATE_LIQUIDATION_RATE


@dataclass
class StrategyDiff:
    tax_savings: float = 0.0            # positive = pays less tax than the best overall
    balance_difference: float = 0.0
    rrsp_room_difference: float = 0.0


@dataclass
class StrategyResult:
    id: str
    label: str
    description: str
    summary: ProjectionSummary
    diff: StrategyDiff
    after_tax_wealth: AfterTaxWealth
    is_current_setup: bool = False


@dataclass
class Winners:
    lowest_tax: str
    highest_balance: str
    best_overall: str


@dataclass
class LifetimeWinner:
    maximize_spending: str
    maximize_estate: str
    balanced: str
    by_objective: str
    objective: str


@dataclass
class ComparisonResult:
    strategies: List[StrategyResult]
    winner: Winners
    lifetime_winner: Optional[LifetimeWinner] = None
    yearly_data: List[Tuple[str, List[YearlyResult]]] = field(default_factory=list)

    @property
    def has_lifetime_winner(self) -> bool:
        return self.lifetime_winner is not None

    def strategy(self, strategy_id: str) -> StrategyResult:
        for s in self.strategies:
            if s.id == strategy_id:
                return s
        raise KeyError(strategy_id)


# ==========================================================
# After-tax wealth
# ==========================================================

def calc_after_tax_wealth(
    summary: ProjectionSummary,
    province: str,
    average_marginal_rate: Optional[float] = None,
) -> AfterTaxWealth:
    """
    Net worth if everything were cashed out at the end of the horizon, under three
    RRSP withdrawal rates. Opening RRSP/TFSA balances are the same for every
    strategy, so only contributions made during the run are counted.

    Total tax also carries corporate and retirement-phase tax, so the observed
    rate is held between the lower-rate floor and the top rate; that keeps
    lower >= current >= top wealth.
    """
    if average_marginal_rate is None:
        if summary.total_compensation > 0:
            average_marginal_rate = safe_div(summary.total_tax, summary.total_compensation, DEFAULT_WITHDRAWAL_RATE)
        else:
            average_marginal_rate = DEFAULT_WITHDRAWAL_RATE
    top = top_marginal_rate(province)
    current = min(max(float(average_marginal_rate), LOWER_RATE_FLOOR), top)
    lower = max(current - LOWER_RATE_STEP, LOWER_RATE_FLOOR)

    base = summary.total_compensation - summary.total_tax
    corporate = summary.final_corporate_balance * (1.0 - CORPORATE_LIQUIDATION_RATE)

    def at(rate: float) -> float:
        return base + summary.total_rrsp_contributions * (1.0 - rate) + corporate

    return AfterTaxWealth(
        at_current_rate=at(current),
        at_lower_rate=at(lower),
        at_top_rate=at(top),
        current_rrsp_withdrawal_rate=current,
        lower_rrsp_withdrawal_rate=lower,
        top_rrsp_withdrawal_rate=top,
    )


# ==========================================================
# Strategy set
# ==========================================================

def build_strategy_definitions(config: Dict) -> List[StrategyDefinition]:
    """The canonical three, with the user's own setup in front when it is a concrete one."""
    s = merge_settings(config)
    ympe = get_tax_year_data(int(s["starting_year"]), s["province"], float(s["expected_inflation_rate"])).ympe

    defs = [
        StrategyDefinition(
            id="salary-at-ympe",
            label="Salary at YMPE",
            description=f"Salary pegged to the year's YMPE (${ympe:,.0f} in the first year): full CPP and RRSP room",
            overrides={"salary_strategy": "fixed", "fixed_salary_tracks_ympe": True},
        ),
        StrategyDefinition(
            id="dividends-only",
            label="Dividends Only",
            description="No salary; every dollar comes out as dividends (no CPP, no RRSP room)",
            overrides={"salary_strategy": "dividends-only"},
        ),
        StrategyDefinition(
            id="dynamic",
            label="Dynamic Optimizer",
            description="Salary/dividend split chosen each year for the lowest combined tax",
            overrides={"salary_strategy": "dynamic"},
        ),
    ]

    strategy = s.get("salary_strategy")
    fixed_amount = float(s.get("fixed_salary_amount") or 0.0)
    if (strategy == "fixed" and fixed_amount > 0) or strategy == "dividends-only":
        if strategy == "dividends-only":
            description = "Your current dividends-only plan"
        else:
            description = f"Your current fixed salary of ${fixed_amount:,.0f}"
        defs.insert(0, StrategyDefinition(
            id="current-setup",
            label="My Current Setup",
            description=description,
            is_current_setup=True,
        ))
    return defs


def _overall_score(summary: ProjectionSummary, max_tax: float, max_balance: float) -> float:
    score = 0.0
    if max_tax > 0:
        score += (1.0 - summary.total_tax / max_tax) * TAX_WEIGHT
    if max_balance > 0:
        score += (summary.final_corporate_balance / max_balance) * BALANCE_WEIGHT
    return score


def _first_best(items: List, key: Callable, higher_is_better: bool = True):
    """Strict comparison: the earliest item keeps the title on ties."""
    best = items[0]
    best_val = key(best)
    for item in items[1:]:
        val = key(item)
        if (val > best_val) if higher_is_better else (val < best_val):
            best, best_val = item, val
    return best


def compute_lifetime_winner(runs: List[Tuple[StrategyDefinition, ProjectionSummary]],
                            objective: str) -> LifetimeWinner:
    spending = _first_best(runs, lambda r: r[1].lifetime.total_lifetime_spending)
    estate = _first_best(runs, lambda r: r[1].lifetime.estate_value)

    max_spend = max(r[1].lifetime.total_lifetime_spending for r in runs)
    max_estate = max(r[1].lifetime.estate_value for r in runs)

    def balanced_score(run) -> float:
        lt = run[1].lifetime
        spend_score = lt.total_lifetime_spending / max_spend if max_spend > 0 else 0.0
        estate_score = lt.estate_value / max_estate if max_estate > 0 else 0.0
        return spend_score * SPENDING_WEIGHT + estate_score * ESTATE_WEIGHT

    balanced = _first_best(runs, balanced_score)
    by_objective = {
        "maximize-spending": spending[0].id,
        "maximize-estate": estate[0].id,
        "balanced": balanced[0].id,
    }
    return LifetimeWinner(
        maximize_spending=spending[0].id,
        maximize_estate=estate[0].id,
        balanced=balanced[0].id,
        by_objective=by_objective.get(objective, balanced[0].id),
        objective=objective,
    )


def run_strategy_comparison(
    config: Dict,
    progress_cb: Optional[Callable[[float, str], None]] = None,
) -> ComparisonResult:
    """
    Projects every strategy on the same inputs (only the primary's salary strategy
    changes) and picks the winners. TaxYearNotFoundError propagates.
    """
    s = merge_settings(config)
    logger = configure_logger("StrategyComparison", bool(s.get("enable_debug_logging")))
    defs = build_strategy_definitions(s)

    runs: List[Tuple[StrategyDefinition, ProjectionSummary]] = []
    for idx, d in enumerate(defs):
        if progress_cb:
            progress_cb(idx / len(defs), f"Projecting strategy... {d.label}")
        settings = copy.deepcopy(s)
        settings.update(d.overrides)
        summary = calculate_projection(settings)
        logger.debug(f"{d.id}: tax ${summary.total_tax:,.2f}, corp ${summary.final_corporate_balance:,.2f}")
        runs.append((d, summary))

    lowest_tax = _first_best(runs, lambda r: r[1].total_tax, higher_is_better=False)
    highest_balance = _first_best(runs, lambda r: r[1].final_corporate_balance)

    max_tax = max(r[1].total_tax for r in runs)
    max_balance = max(r[1].final_corporate_balance for r in runs)
    best_overall = _first_best(runs, lambda r: _overall_score(r[1], max_tax, max_balance))

    lifetime_winner = None
    if all(r[1].lifetime is not None for r in runs):
        lifetime_winner = compute_lifetime_winner(runs, s["lifetime_objective"])
        best_overall = next(r for r in runs if r[0].id == lifetime_winner.by_objective)

    best = best_overall[1]
    results: List[StrategyResult] = []
    for d, summary in runs:
        results.append(StrategyResult(
            id=d.id,
            label=d.label,
            description=d.description,
            summary=summary,
            diff=StrategyDiff(
                tax_savings=best.total_tax - summary.total_tax,
                balance_difference=summary.final_corporate_balance - best.final_corporate_balance,
                rrsp_room_difference=summary.total_rrsp_room_generated - best.total_rrsp_room_generated,
            ),
            after_tax_wealth=calc_after_tax_wealth(summary, s["province"]),
            is_current_setup=d.is_current_setup,
        ))

    winner = Winners(
        lowest_tax=lowest_tax[0].id,
        highest_balance=highest_balance[0].id,
        best_overall=best_overall[0].id,
    )
    logger.info(
        f"Winners: lowest tax={winner.lowest_tax}, highest balance={winner.highest_balance}, "
        f"best overall={winner.best_overall}"
    )
    if progress_cb:
        progress_cb(1.0, "Comparison complete")

    return ComparisonResult(
        strategies=results,
        winner=winner,
        lifetime_winner=lifetime_winner,
        yearly_data=[(d.id, summary.yearly_results) for d, summary in runs],
    )


# ==========================================================
# Pairwise and named-scenario comparisons
# ==========================================================

@dataclass
class PairwiseComparison:
    first: ProjectionSummary
    second: ProjectionSummary
    diff: StrategyDiff                  # positive tax_savings = the first pays less


def compare_strategies(first_config: Dict, second_config: Dict) -> PairwiseComparison:
    first = calculate_projection(first_config)
    second = calculate_projection(second_config)
    return PairwiseComparison(
        first=first,
        second=second,
        diff=StrategyDiff(
            tax_savings=second.total_tax - first.total_tax,
            balance_difference=first.final_corporate_balance - second.final_corporate_balance,
            rrsp_room_difference=first.total_rrsp_room_generated - second.total_rrsp_room_generated,
        ),
    )


@dataclass
class Scenario:
    name: str
    settings: Dict
    description: str = ""


@dataclass
class ScenarioMetrics:
    name: str
    total_tax: float
    average_tax_rate: float             # tax / (after-tax income + tax)
    final_corporate_balance: float
    total_after_tax_income: float
    total_dividends: float
    total_salary: float
    summary: ProjectionSummary


@dataclass
class ScenarioComparison:
    scenarios: List[ScenarioMetrics]
    winner: Optional[Winners] = None

    def scenario(self, name: str) -> ScenarioMetrics:
        for s in self.scenarios:
            if s.name == name:
                return s
        raise KeyError(name)


def preset_scenarios(config: Dict) -> List[Scenario]:
    """Four ready-made what-if variants of one settings dict."""
    s = merge_settings(config)
    ympe = get_tax_year_data(int(s["starting_year"]), s["province"], float(s["expected_inflation_rate"])).ympe
    presets = [
        ("Maximize Dividends", "All dividends, no salary; the most RDTOH refunds",
         {"salary_strategy": "dividends-only", "maximize_tfsa": True, "contribute_to_rrsp": False}),
        ("Balanced Approach", "Yearly salary/dividend optimization with TFSA and RRSP saving",
         {"salary_strategy": "dynamic", "maximize_tfsa": True, "contribute_to_rrsp": True}),
        ("CPP Maximizer", f"Fixed salary at the YMPE (${ympe:,.0f}) for full CPP credit",
         {"salary_strategy": "fixed", "fixed_salary_amount": ympe, "maximize_tfsa": True,
          "contribute_to_rrsp": True}),
        ("Tax Minimizer", "Yearly optimization for the lowest tax, no registered saving",
         {"salary_strategy": "dynamic", "maximize_tfsa": False, "contribute_to_rrsp": False}),
    ]
    scenarios = []
    for name, description, overrides in presets:
        settings = copy.deepcopy(config) if isinstance(config, dict) else {}
        settings.update(overrides)
        scenarios.append(Scenario(name=name, settings=settings, description=description))
    return scenarios


def _scenario_metrics(name: str, summary: ProjectionSummary) -> ScenarioMetrics:
    rows = summary.yearly_results
    total_tax = sum(r.total_tax for r in rows)
    after_tax = sum(r.after_tax_income for r in rows)
    return ScenarioMetrics(
        name=name,
        total_tax=total_tax,
        average_tax_rate=safe_div(total_tax, after_tax + total_tax) if after_tax > 0 else 0.0,
        final_corporate_balance=rows[-1].corporate_balance if rows else 0.0,
        total_after_tax_income=after_tax,
        total_dividends=sum(r.total_dividends for r in rows),
        total_salary=sum(r.salary for r in rows),
        summary=summary,
    )


def compare_scenarios(
    scenarios: List[Scenario],
    progress_cb: Optional[Callable[[float, str], None]] = None,
) -> ScenarioComparison:
    """
    Projects each named scenario and ranks them on the same three titles as the
    strategy comparison: lowest tax, highest corporate balance, and a 60/40
    tax/balance score. No scenarios means no winner.
    """
    metrics: List[ScenarioMetrics] = []
    for idx, scenario in enumerate(scenarios):
        if progress_cb:
            progress_cb(idx / len(scenarios), f"Projecting scenario... {scenario.name}")
        metrics.append(_scenario_metrics(scenario.name, calculate_projection(scenario.settings)))
    if progress_cb:
        progress_cb(1.0, "Scenario comparison complete")
    if not metrics:
        return ScenarioComparison(scenarios=[])

    max_tax = max(m.summary.total_tax for m in metrics)
    max_balance = max(m.summary.final_corporate_balance for m in metrics)
    winner = Winners(
        lowest_tax=_first_best(metrics, lambda m: m.total_tax, higher_is_better=False).name,
        highest_balance=_first_best(metrics, lambda m: m.final_corporate_balance).name,
        best_overall=_first_best(metrics, lambda m: _overall_score(m.summary, max_tax, max_balance)).name,
    )
    return ScenarioComparison(scenarios=metrics, winner=winner)
