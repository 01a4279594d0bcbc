import argparse
import logging
import os

from compensation_helpers import DEFAULTS, load_settings, merge_settings
from monte_carlo import run_monte_carlo
from projection_report import comparison_frame, projection_frame, write_csv
from strategy_comparison import compare_scenarios, preset_scenarios, run_strategy_comparison


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Compare salary/dividend strategies for a CCPC owner.")
    parser.add_argument("settings", nargs="?", help="JSON settings file (defaults are used when omitted)")
    parser.add_argument("--out", default="projection_output", help="folder for the CSV files")
    parser.add_argument("--monte-carlo", type=int, default=0, metavar="N", help="also run N Monte Carlo trials")
    parser.add_argument("--scenarios", action="store_true", help="also compare the preset what-if scenarios")
    parser.add_argument("--seed", type=int, default=None)
    parser.add_argument("--debug", action="store_true", help="log optimizer steps")
    args = parser.parse_args(argv)

    # Configure logging at the root level to capture simulator output
    logging.basicConfig(level=logging.INFO)

    settings = load_settings(args.settings) if args.settings else merge_settings(DEFAULTS)
    if args.debug:
        settings["enable_debug_logging"] = True

    result = run_strategy_comparison(settings)
    write_csv(comparison_frame(result), os.path.join(args.out, "comparison.csv"))
    for s in result.strategies:
        write_csv(projection_frame(s.summary), os.path.join(args.out, f"{s.id}.csv"))

    print(f"Best overall: {result.winner.best_overall}")
    print(f"Lowest tax: {result.winner.lowest_tax} | Highest balance: {result.winner.highest_balance}")
    if result.lifetime_winner is not None:
        lw = result.lifetime_winner
        print(f"Lifetime ({lw.objective}): {lw.by_objective}")

    if args.scenarios:
        sc = compare_scenarios(preset_scenarios(settings))
        for m in sc.scenarios:
            print(f"{m.name}: tax ${m.total_tax:,.0f}, final corporate balance ${m.final_corporate_balance:,.0f}")
        if sc.winner is not None:
            print(f"Scenario best overall: {sc.winner.best_overall}")

    if args.monte_carlo > 0:
        mc = run_monte_carlo(settings, simulation_count=args.monte_carlo, seed=args.seed)
        if mc is None:
            print("Monte Carlo: not available for these settings")
        else:
            print(f"Monte Carlo: success {mc.success_rate:.1%}, median final net worth ${mc.median_estate:,.0f}")

    print(f"CSV files written to {args.out}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
