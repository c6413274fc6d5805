#!/usr/bin/env python3
"""
===============================================================================
XNAV SIMULATION - MAIN ENTRY POINT
===============================================================================
X-ray pulsar navigation: truth propagation, photon-statistics TOA
synthesis and Extended Kalman Filter state estimation.

USAGE:
    xnav-sim                                  # Default scenario
    xnav-sim --config config/scenario.yaml    # Scenario file
    xnav-sim --par J0437-4715.par --par B1937+21.par
    xnav-sim --monte-carlo 50 --workers 4     # Consistency study
    xnav-sim --quick --plot                   # Short run with plots

OUTPUTS (under --output, default ./output):
    telemetry.csv          - One row per epoch (truth, estimate, P, residuals)
    monte_carlo.csv        - Per-run, per-epoch NEES and normalised errors
    plots/*.png            - Error, residual, convergence and NEES figures

EXIT CODES:
    0  run completed
    1  run stopped by a numerical fault
    2  invalid configuration

===============================================================================
"""

import argparse
import logging
import os
import sys
import time
from datetime import datetime
from typing import List, Optional

from xnav import __version__
from xnav.config.par_file import load_par_file
from xnav.config.scenario import ScenarioConfig, default_catalog, load_scenario, scenario_from_dict
from xnav.core.faults import ConfigurationFault
from xnav.simulation.monte_carlo import ConsistencyStudy
from xnav.simulation.simulation_loop import SimulationLoop, SimulationResult, write_telemetry_csv

logger = logging.getLogger('XNAV_MAIN')

QUICK_EPOCHS = 20
QUICK_RUNS = 10


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='xnav-sim',
        description='X-ray pulsar navigation simulation',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  xnav-sim --config config/scenario.yaml     Scenario from file
  xnav-sim --epochs 500 --seed 7             Longer run, other noise
  xnav-sim --monte-carlo 50 --workers 4      Filter consistency study
  xnav-sim --quick --plot                    Quick run with figures
        """
    )
    parser.add_argument('--config', type=str, default=None,
                        help='Path to scenario YAML')
    parser.add_argument('--par', type=str, action='append', default=[],
                        help='Pulsar ephemeris .par file (repeatable)')
    parser.add_argument('--epochs', type=int, default=None,
                        help='Number of filter epochs (overrides the scenario)')
    parser.add_argument('--seed', type=int, default=None,
                        help='Master random seed (overrides the scenario)')
    parser.add_argument('--output', type=str, default='output',
                        help='Output directory (default: output)')
    parser.add_argument('--plot', action='store_true',
                        help='Write PNG figures')
    parser.add_argument('--monte-carlo', type=int, default=0, metavar='N',
                        help='Run a consistency study with N replicas')
    parser.add_argument('--workers', type=int, default=None,
                        help='Observation threads / Monte Carlo processes')
    parser.add_argument('--quick', action='store_true',
                        help='Quick mode (reduced epochs and replicas)')
    parser.add_argument('--verbose', '-v', action='store_true',
                        help='Per-epoch debug logging')
    parser.add_argument('--version', action='version',
                        version=f'%(prog)s {__version__}')
    return parser


def setup_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )


def prepare_scenario(args: argparse.Namespace) -> ScenarioConfig:
    """
    Scenario from --config (or defaults), with --par pulsars appended and
    command-line overrides applied.
    """
    if args.config:
        scenario = load_scenario(args.config)
    else:
        logger.info("No scenario file given; using defaults")
        scenario = scenario_from_dict(None)

    pulsars = list(scenario.pulsars)
    for path in args.par:
        pulsars.append(load_par_file(path, reference_mjd=scenario.run.reference_mjd))
    if not pulsars:
        logger.warning("No pulsars configured; using the built-in catalogue")
        pulsars = default_catalog()
    scenario.pulsars = pulsars

    n_epochs = args.epochs
    if args.quick:
        n_epochs = min(n_epochs or scenario.run.n_epochs, QUICK_EPOCHS)
    return scenario.with_overrides(n_epochs=n_epochs, seed=args.seed,
                                   workers=args.workers)


def print_summary(result: SimulationResult, every: int = 10) -> None:
    """Console table of error and uncertainty."""
    print(f"{'Epoch':>6} | {'t (s)':>10} | {'Error (km)':>12} | "
          f"{'Sigma (km)':>12} | {'Obs':>3} | Notes")
    print("-" * 70)
    last = result.final.index
    for rec in result.records:
        if rec.index % every and rec.index != last and not rec.faults:
            continue
        notes = '; '.join(rec.warnings + [str(f) for f in rec.faults])
        print(f"{rec.index:>6} | {rec.epoch:>10.1f} | {rec.position_error:>12.4f} | "
              f"{rec.position_sigma:>12.4f} | {len(rec.updates):>3} | {notes}")


def run_simulation(scenario: ScenarioConfig, output_dir: str,
                   plot: bool = False) -> SimulationResult:
    logger.info("=" * 60)
    logger.info("RUNNING NAVIGATION SIMULATION")
    logger.info("=" * 60)
    with SimulationLoop(scenario) as loop:
        result = loop.run()
    telemetry = write_telemetry_csv(result, os.path.join(output_dir, 'telemetry.csv'))
    print_summary(result)
    if plot:
        from xnav.visualization.plots import generate_run_plots
        generate_run_plots(telemetry, os.path.join(output_dir, 'plots'))
    return result


def run_monte_carlo(scenario: ScenarioConfig, output_dir: str, num_runs: int,
                    plot: bool = False) -> dict:
    logger.info("=" * 60)
    logger.info("RUNNING CONSISTENCY STUDY (%d runs)", num_runs)
    logger.info("=" * 60)
    study = ConsistencyStudy(scenario, num_runs=num_runs, seed=scenario.run.seed,
                             processes=scenario.run.workers)
    results = study.run_all()
    results.to_csv(os.path.join(output_dir, 'monte_carlo.csv'), index=False)
    summary = study.summary()
    print(f"  Average NEES: {summary['mean_nees']:.3f} "
          f"(95% region {summary['nees_bounds'][0]:.3f} .. {summary['nees_bounds'][1]:.3f})")
    print(f"  Epochs inside region: {100.0 * summary['fraction_inside']:.1f}%")
    print(f"  Mean NIS: {summary['mean_nis']:.3f}")
    if plot:
        from xnav.visualization.plots import plot_nees
        plot_nees(study.nees_by_epoch(), os.path.join(output_dir, 'plots', 'nees.png'))
    return summary


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main entry point. Parses command line arguments and runs the requested
    simulation mode(s).

    Returns
    -------
    int
        Process exit code.
    """
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)

    print("=" * 70)
    print("  XNAV PULSAR NAVIGATION SIMULATION")
    print("=" * 70)
    print(f"  Start time: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print("=" * 70)

    start = time.time()
    try:
        scenario = prepare_scenario(args)
        os.makedirs(args.output, exist_ok=True)
        result = run_simulation(scenario, args.output, plot=args.plot)
        if args.monte_carlo > 0:
            num_runs = min(args.monte_carlo, QUICK_RUNS) if args.quick else args.monte_carlo
            run_monte_carlo(scenario, args.output, num_runs, plot=args.plot)
    except ConfigurationFault as exc:
        logger.error("Configuration error: %s", exc)
        return 2

    print("\n" + "=" * 70)
    print("  SIMULATION COMPLETE" if result.completed else "  SIMULATION STOPPED BY FAULT")
    print(f"  Total wall time: {time.time() - start:.1f} seconds")
    print(f"  Outputs saved to: {args.output}")
    print("=" * 70)
    return 0 if result.completed else 1


if __name__ == '__main__':
    sys.exit(main())
