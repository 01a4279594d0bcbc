"""
Monte Carlo views of a projection.

run_monte_carlo: a deterministic pilot projection supplies the year-by-year cash
flows in and out of the corporate and personal (RRSP/RRIF, TFSA, IPP) pots. Each
trial replays those flows under its own random returns and inflation and records
net worth per year.

run_outcome_distribution: each trial draws a log-normal return path, reruns the
full projection at that path's geometric mean return and keeps the totals
(tax, final corporate balance, after-tax income, integrated rate).

Trials are independent: every one gets its own numpy Generator spawned from a
single SeedSequence, and batches of trials run in worker processes.
"""
import logging
import math
import os
import threading
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from compensation_helpers import check_settings, configure_logger, merge_settings, safe_div
from compensation_simulation import PHASE_ACCUMULATION, ProjectionSummary, YearlyResult, calculate_projection
from corporate_ledger import normalize_allocation
from tax_tables import get_tax_year_data

RETURN_FLOOR = -0.40
RETURN_CAP = 0.60
INFLATION_FLOOR = 0.0
INFLATION_CAP = 0.08
PERCENTILES = (10, 25, 50, 75, 90)

# per-path returns for the outcome distribution
PATH_RETURN_FLOOR = -0.50
PATH_RETURN_CAP = 1.00
BATCHES_PER_WORKER = 4


@dataclass
class MonteCarloResult:
    simulation_count: int
    percentiles: Dict[str, List[float]]       # "p10".."p90" -> net worth per year
    success_rate: float
    median_estate: float
    failed_trials: int = 0


@dataclass
class PilotFlows:
    """Non-investment movements of each pot in the pilot run, per year."""
    corporate_opening: float
    personal_opening: float
    corporate_flows: np.ndarray
    personal_flows: np.ndarray
    corporate_after_tax_share: np.ndarray     # share of the gross portfolio return kept after passive tax
    retired: np.ndarray                       # bool per year
    return_rate: float
    inflation_rate: float
    allocation: np.ndarray = field(default_factory=lambda: np.full(4, 0.25))


def _personal_total(yr: YearlyResult) -> float:
    b = yr.balances
    return b.rrsp_balance + b.tfsa_balance + b.ipp_fund_balance + b.spouse_rrsp_balance + b.spouse_tfsa_balance


def extract_pilot_flows(pilot: ProjectionSummary) -> PilotFlows:
    s = pilot.settings
    return_rate = float(s["investment_return_rate"])
    rows = pilot.yearly_results
    n = len(rows)

    corp_open = max(0.0, float(s["corporate_investment_balance"]))
    personal_open = sum(max(0.0, float(s[k])) for k in ("actual_rrsp_balance", "actual_tfsa_balance"))
    if s.get("has_spouse"):
        personal_open += sum(max(0.0, float(s[k])) for k in ("spouse_actual_rrsp_balance", "spouse_actual_tfsa_balance"))

    corp_flows = np.zeros(n)
    personal_flows = np.zeros(n)
    kept = np.ones(n)
    retired = np.zeros(n, dtype=bool)

    prev_corp, prev_personal = corp_open, personal_open
    for y, yr in enumerate(rows):
        inv = yr.investment_returns
        after_tax_return = inv.total_return - inv.passive_tax - inv.part_iv_tax
        kept[y] = safe_div(after_tax_return, inv.total_return, 1.0)
        corp_flows[y] = yr.corporate_balance - prev_corp - after_tax_return

        personal_end = _personal_total(yr)
        personal_flows[y] = personal_end - prev_personal * (1.0 + return_rate)
        retired[y] = yr.phase != PHASE_ACCUMULATION

        prev_corp, prev_personal = yr.corporate_balance, personal_end

    allocation = np.array(normalize_allocation(
        s["canadian_equity_percent"], s["us_equity_percent"],
        s["international_equity_percent"], s["fixed_income_percent"],
    ))
    return PilotFlows(
        corporate_opening=corp_open,
        personal_opening=personal_open,
        corporate_flows=corp_flows,
        personal_flows=personal_flows,
        corporate_after_tax_share=kept,
        retired=retired,
        return_rate=return_rate,
        inflation_rate=float(s["expected_inflation_rate"]),
        allocation=allocation,
    )


def run_trial(flows: PilotFlows, rng: np.random.Generator, return_std_dev: float,
              inflation_std_dev: float) -> Tuple[np.ndarray, bool]:
    """One path of net worth per year, and whether money lasted through every retirement year."""
    n = len(flows.corporate_flows)

    # per-year draws for each asset class, clamped, then weighted by the allocation
    class_returns = rng.normal(flows.return_rate, return_std_dev, size=(n, len(flows.allocation)))
    class_returns = np.clip(class_returns, RETURN_FLOOR, RETURN_CAP)
    portfolio_returns = class_returns @ flows.allocation

    inflation = float(np.clip(
        rng.normal(flows.inflation_rate, inflation_std_dev), INFLATION_FLOOR, INFLATION_CAP
    ))
    drift = ((1.0 + inflation) / (1.0 + flows.inflation_rate)) ** np.arange(n)

    wealth = np.zeros(n)
    corp = flows.corporate_opening
    personal = flows.personal_opening
    exhausted = False
    for y in range(n):
        r = portfolio_returns[y]
        corp += corp * r * flows.corporate_after_tax_share[y] + flows.corporate_flows[y] * drift[y]
        personal = personal * (1.0 + r) + flows.personal_flows[y] * drift[y]

        # one pot covers the other's overdraft
        if corp < 0:
            personal += corp
            corp = 0.0
        if personal < 0:
            corp += personal
            personal = 0.0
        if corp < 0:
            corp = 0.0
            if flows.retired[y]:
                exhausted = True
        elif corp + personal <= 0 and flows.retired[y]:
            exhausted = True

        wealth[y] = corp + personal

    return wealth, not exhausted


# ==========================================================
# Worker-side batches
# ==========================================================

def _quiet_worker() -> None:
    # yearly INFO lines from thousands of projections would drown the parent's log
    logging.disable(logging.INFO)


def _trial_error(e: Exception) -> RuntimeError:
    return RuntimeError(f"{type(e).__name__}: {e}")


def _replay_batch(flows: PilotFlows, return_std_dev: float, inflation_std_dev: float,
                  seeds: Sequence[np.random.SeedSequence], first_index: int) -> List[Tuple[int, object]]:
    out = []
    for offset, seed_seq in enumerate(seeds):
        try:
            out.append((first_index + offset,
                        run_trial(flows, np.random.default_rng(seed_seq), return_std_dev, inflation_std_dev)))
        except Exception as e:
            out.append((first_index + offset, _trial_error(e)))
    return out


def _dispatch(
    worker: Callable,
    fixed_args: Tuple,
    count: int,
    seed: Optional[int],
    max_workers: Optional[int],
    cancel_event: Optional[threading.Event],
    logger: logging.Logger,
) -> Optional[List[Tuple[int, object]]]:
    """
    Runs `count` trials as batches on a process pool. Returns (trial index, outcome)
    pairs, where a trial that raised carries its exception, or None if cancelled.
    """
    if cancel_event is not None and cancel_event.is_set():
        return None
    streams = np.random.SeedSequence(seed).spawn(count)
    workers = max_workers or os.cpu_count() or 1
    batch = max(1, math.ceil(count / (workers * BATCHES_PER_WORKER)))

    outcomes: List[Tuple[int, object]] = []
    pool = ProcessPoolExecutor(max_workers=max_workers, initializer=_quiet_worker)
    try:
        futures = {
            pool.submit(worker, *fixed_args, streams[start:start + batch], start): start
            for start in range(0, count, batch)
        }
        for fut in as_completed(futures):
            if cancel_event is not None and cancel_event.is_set():
                return None
            start = futures[fut]
            try:
                outcomes.extend(fut.result())
            except Exception as e:
                size = min(batch, count - start)
                logger.warning(f"Trials {start}..{start + size - 1} lost with their worker: {e}")
                outcomes.extend((start + k, e) for k in range(size))
    finally:
        pool.shutdown(wait=True, cancel_futures=True)
    return outcomes


# ==========================================================
# Net worth bands
# ==========================================================

def summarize_trials(outcomes: List[Tuple[int, object]],
                     logger: Optional[logging.Logger] = None) -> Optional[MonteCarloResult]:
    """Aggregates (index, (wealth, ok)) trial outcomes; raised or non-finite trials are excluded."""
    logger = logger or configure_logger("MonteCarlo")
    paths: List[np.ndarray] = []
    successes = 0
    failed = 0
    for idx, out in sorted(outcomes, key=lambda o: o[0]):
        if isinstance(out, Exception):
            failed += 1
            logger.warning(f"Trial {idx} excluded: {out}")
            continue
        wealth, ok = out
        if not np.all(np.isfinite(wealth)):
            failed += 1
            logger.warning(f"Trial {idx} excluded: non-finite wealth")
            continue
        paths.append(wealth)
        successes += int(ok)

    if not paths:
        logger.warning("Every Monte Carlo trial failed")
        return None

    matrix = np.vstack(paths)
    bands = {
        f"p{p}": np.percentile(matrix, p, axis=0).tolist()
        for p in PERCENTILES
    }
    return MonteCarloResult(
        simulation_count=len(paths),
        percentiles=bands,
        success_rate=successes / len(paths),
        median_estate=float(bands["p50"][-1]),
        failed_trials=failed,
    )


def run_monte_carlo(
    config: Dict,
    simulation_count: int = 500,
    return_std_dev: float = 0.12,
    inflation_std_dev: float = 0.01,
    seed: Optional[int] = None,
    max_workers: Optional[int] = None,
    cancel_event: Optional[threading.Event] = None,
) -> Optional[MonteCarloResult]:
    """
    Percentile bands of yearly net worth over `simulation_count` trials.

    Returns None when the projection never reaches retirement, when the run is
    cancelled through `cancel_event`, or when no trial completes. Never raises.
    """
    logger = configure_logger("MonteCarlo")
    try:
        settings = merge_settings(config)
        logger = configure_logger("MonteCarlo", bool(settings.get("enable_debug_logging")))
        pilot = calculate_projection(settings)
        if pilot.lifetime is None:
            logger.info("No retirement years in the projection; Monte Carlo skipped")
            return None

        flows = extract_pilot_flows(pilot)
        count = max(1, int(simulation_count))
        outcomes = _dispatch(
            _replay_batch, (flows, return_std_dev, inflation_std_dev),
            count, seed, max_workers, cancel_event, logger,
        )
        if outcomes is None:
            logger.info("Monte Carlo cancelled")
            return None

        result = summarize_trials(outcomes, logger)
        if result is not None:
            logger.info(
                f"Monte Carlo: {result.simulation_count} trials, success {result.success_rate:.1%}, "
                f"median final net worth ${result.median_estate:,.2f}"
            )
        return result
    except Exception as e:
        logger.error(f"Monte Carlo failed: {e}")
        return None


# ==========================================================
# Outcome distributions
# ==========================================================

@dataclass
class DistributionStats:
    p10: float
    p25: float
    p50: float
    p75: float
    p90: float
    mean: float
    min: float
    max: float
    std_dev: float


def describe(values: Sequence[float]) -> DistributionStats:
    arr = np.asarray(values, dtype=float)
    p10, p25, p50, p75, p90 = np.percentile(arr, PERCENTILES)
    return DistributionStats(
        p10=float(p10), p25=float(p25), p50=float(p50), p75=float(p75), p90=float(p90),
        mean=float(arr.mean()),
        min=float(arr.min()),
        max=float(arr.max()),
        std_dev=float(arr.std()),
    )


@dataclass
class TrialOutcome:
    effective_return: float
    total_tax: float
    final_corporate_balance: float
    total_after_tax_income: float
    integrated_tax_rate: float


@dataclass
class OutcomeDistribution:
    simulation_count: int
    total_tax: DistributionStats
    final_corporate_balance: DistributionStats
    total_after_tax_income: DistributionStats
    integrated_tax_rate: DistributionStats
    probability_of_meeting_goal: float       # share ending at or above the opening corporate balance
    probability_of_loss: float
    trials: Dict[int, TrialOutcome] = field(default_factory=dict)
    failed_trials: int = 0


def draw_path_returns(rng: np.random.Generator, base_return: float, volatility: float, years: int) -> np.ndarray:
    """Log-normal yearly returns whose median compounds at base_return, clamped to [-50%, +100%]."""
    log_returns = rng.normal(math.log(1.0 + base_return) - volatility * volatility / 2.0, volatility, size=years)
    return np.clip(np.exp(log_returns) - 1.0, PATH_RETURN_FLOOR, PATH_RETURN_CAP)


def _projection_batch(settings: Dict, return_volatility: float,
                      seeds: Sequence[np.random.SeedSequence], first_index: int) -> List[Tuple[int, object]]:
    years = int(settings["planning_horizon"])
    base = float(settings["investment_return_rate"])
    out = []
    for offset, seed_seq in enumerate(seeds):
        try:
            path = draw_path_returns(np.random.default_rng(seed_seq), base, return_volatility, years)
            effective = float(np.prod(1.0 + path) ** (1.0 / years) - 1.0)
            summary = calculate_projection(dict(settings, investment_return_rate=effective))
            out.append((first_index + offset, TrialOutcome(
                effective_return=effective,
                total_tax=summary.total_tax,
                final_corporate_balance=summary.final_corporate_balance,
                total_after_tax_income=sum(r.after_tax_income for r in summary.yearly_results),
                integrated_tax_rate=summary.effective_tax_rate,
            )))
        except Exception as e:
            out.append((first_index + offset, _trial_error(e)))
    return out


def run_outcome_distribution(
    config: Dict,
    simulation_count: int = 1000,
    return_volatility: float = 0.12,
    seed: Optional[int] = None,
    max_workers: Optional[int] = None,
    cancel_event: Optional[threading.Event] = None,
) -> Optional[OutcomeDistribution]:
    """
    Spread of the projection's totals under random return paths. Returns None on
    bad settings, cancellation, or when every trial failed. Never raises.
    """
    logger = configure_logger("MonteCarlo")
    try:
        settings = merge_settings(config)
        logger = configure_logger("MonteCarlo", bool(settings.get("enable_debug_logging")))
        check_settings(settings)
        get_tax_year_data(int(settings["starting_year"]), settings["province"], float(settings["expected_inflation_rate"]))

        count = max(1, int(simulation_count))
        outcomes = _dispatch(
            _projection_batch, (settings, return_volatility),
            count, seed, max_workers, cancel_event, logger,
        )
        if outcomes is None:
            logger.info("Outcome distribution cancelled")
            return None

        trials: Dict[int, TrialOutcome] = {}
        failed = 0
        for idx, out in sorted(outcomes, key=lambda o: o[0]):
            if isinstance(out, Exception):
                failed += 1
                logger.warning(f"Trial {idx} excluded: {out}")
                continue
            trials[idx] = out
        if not trials:
            logger.warning("Every outcome trial failed")
            return None

        kept = list(trials.values())
        opening = float(settings["corporate_investment_balance"])
        above = sum(1 for t in kept if t.final_corporate_balance >= opening)
        result = OutcomeDistribution(
            simulation_count=len(kept),
            total_tax=describe([t.total_tax for t in kept]),
            final_corporate_balance=describe([t.final_corporate_balance for t in kept]),
            total_after_tax_income=describe([t.total_after_tax_income for t in kept]),
            integrated_tax_rate=describe([t.integrated_tax_rate for t in kept]),
            probability_of_meeting_goal=above / len(kept),
            probability_of_loss=(len(kept) - above) / len(kept),
            trials=trials,
            failed_trials=failed,
        )
        logger.info(
            f"Outcome distribution: {result.simulation_count} trials, median final corporate balance "
            f"${result.final_corporate_balance.p50:,.2f}, probability of loss {result.probability_of_loss:.1%}"
        )
        return result
    except Exception as e:
        logger.error(f"Outcome distribution failed: {e}")
        return None


@dataclass
class DistributionComparison:
    first: OutcomeDistribution
    second: OutcomeDistribution
    paired_trials: int
    first_wins_on_tax: float                 # share of paired trials
    first_wins_on_balance: float
    first_wins_overall: float                # both at once


def compare_outcome_distributions(
    first_config: Dict,
    second_config: Dict,
    simulation_count: int = 1000,
    return_volatility: float = 0.12,
    seed: Optional[int] = None,
    max_workers: Optional[int] = None,
    cancel_event: Optional[threading.Event] = None,
) -> Optional[DistributionComparison]:
    """
    Runs both configurations on the same return paths (same seed) and counts how
    often the first beats the second trial by trial. Fixes a seed when none is given.
    """
    if seed is None:
        seed = int(np.random.SeedSequence().entropy % (2 ** 32))
    first = run_outcome_distribution(first_config, simulation_count, return_volatility, seed, max_workers, cancel_event)
    second = run_outcome_distribution(second_config, simulation_count, return_volatility, seed, max_workers, cancel_event)
    if first is None or second is None:
        return None

    paired = sorted(set(first.trials) & set(second.trials))
    if not paired:
        return None
    tax_wins = balance_wins = both = 0
    for idx in paired:
        a, b = first.trials[idx], second.trials[idx]
        tax_win = a.total_tax < b.total_tax
        balance_win = a.final_corporate_balance > b.final_corporate_balance
        tax_wins += int(tax_win)
        balance_wins += int(balance_win)
        both += int(tax_win and balance_win)
    n = len(paired)
    return DistributionComparison(
        first=first,
        second=second,
        paired_trials=n,
        first_wins_on_tax=tax_wins / n,
        first_wins_on_balance=balance_wins / n,
        first_wins_overall=both / n,
    )
