"""
===============================================================================
XNAV PROJECT - Monte Carlo Filter Consistency Study
===============================================================================
Runs N independent replicas of a scenario in parallel and checks that the
filter's covariance describes its actual errors.

All replicas share the same (deterministic) true trajectory.  Each replica
draws its own initial estimation error from N(0, P0) and its own photon
noise, from child streams of one master SeedSequence, so the study is
reproducible and independent of the number of worker processes.

Consistency statistics (Bar-Shalom, Ch. 5.4)
--------------------------------------------
    Normalised error   e_i / sigma_i       -> mean 0, variance 1 per axis
    NEES               e^T P^-1 e          -> chi-square, 6 dof
    Average NEES       mean over N runs    -> N * ANEES ~ chi-square(6N)
    NIS                nu^2 / S            -> chi-square, 1 dof

The two-sided acceptance region of the average NEES at significance alpha
is

    [ chi2.ppf(alpha/2, 6N) / N ,  chi2.ppf(1 - alpha/2, 6N) / N ]

References
----------
    [1] Bar-Shalom, Li & Kirubarajan, "Estimation with Applications to
        Tracking and Navigation", Wiley, 2001, Sec. 5.4.
===============================================================================
"""

import logging
from dataclasses import replace
from multiprocessing import Pool
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy.stats import chi2

from xnav.config.scenario import ScenarioConfig
from xnav.core.pulsar import PulsarModel
from xnav.simulation.simulation_loop import AXES, SimulationLoop

logger = logging.getLogger(__name__)

STATE_DIM = 6


def _run_replica(args: Tuple[ScenarioConfig, List[PulsarModel],
                             np.random.SeedSequence, int]) -> List[Dict[str, Any]]:
    """
    Module-level worker for one replica.

    Required because multiprocessing Pool.map cannot pickle instance
    methods.  Returns one row per epoch.
    """
    scenario, pulsars, seed, run_id = args
    loop = SimulationLoop(scenario, pulsars, seed=seed)
    result = loop.run()

    rows = []
    for rec in result.records:
        row = {'run_id': run_id, 'index': rec.index, 'epoch': rec.epoch,
               'nees': rec.nees, 'pos_error': rec.position_error,
               'completed': result.completed}
        for axis, value in zip(AXES, rec.normalized_error):
            row[f'nerr_{axis}'] = value
        row['nis'] = (np.mean([u.nis for u in rec.updates])
                      if rec.updates else np.nan)
        rows.append(row)
    if not result.completed:
        logger.warning("Run %d stopped at epoch %d: %s",
                       run_id, result.final.index, result.fault)
    return rows


class ConsistencyStudy:
    """
    Monte Carlo consistency check of the navigation filter.

    Parameters
    ----------
    scenario : ScenarioConfig
        Scenario shared by every replica.  Its fixed ``initial_error`` is
        ignored; each replica draws one from P0.
    pulsars : sequence of PulsarModel, optional
        Constellation; defaults to ``scenario.pulsars``.
    num_runs : int
        Number of replicas.
    seed : int
        Master seed.
    processes : int
        Worker processes.  1 runs the replicas sequentially (easier to
        debug).

    Attributes
    ----------
    results : pd.DataFrame or None
        One row per (run, epoch), populated by run_all().
    """

    def __init__(self, scenario: ScenarioConfig,
                 pulsars: Optional[Sequence[PulsarModel]] = None,
                 num_runs: int = 50, seed: int = 42,
                 processes: int = 1) -> None:
        if num_runs < 1:
            raise ValueError(f"num_runs must be >= 1, got {num_runs}")
        self.scenario = replace(scenario,
                                filter=replace(scenario.filter, initial_error=None))
        self.pulsars = list(pulsars if pulsars is not None else scenario.pulsars)
        self.num_runs = num_runs
        self.seed = seed
        self.processes = processes
        self.results: Optional[pd.DataFrame] = None
        logger.info("ConsistencyStudy initialized: %d runs, seed=%d, %d processes",
                    num_runs, seed, processes)

    # =========================================================================
    # RUN ALL REPLICAS
    # =========================================================================

    def run_all(self) -> pd.DataFrame:
        """
        Execute every replica and gather the per-epoch rows.

        Returns
        -------
        pd.DataFrame
            Columns: run_id, index, epoch, nees, pos_error, completed,
            nerr_<axis>, nis.
        """
        seeds = np.random.SeedSequence(self.seed).spawn(self.num_runs)
        args_list = [(self.scenario, self.pulsars, s, run_id)
                     for run_id, s in enumerate(seeds)]
        logger.info("Starting consistency study: %d runs on %d processes",
                    self.num_runs, self.processes)

        if self.processes <= 1:
            rows_per_run = [_run_replica(args) for args in args_list]
        else:
            with Pool(processes=self.processes) as pool:
                rows_per_run = pool.map(_run_replica, args_list)

        self.results = pd.DataFrame([row for rows in rows_per_run for row in rows])
        n_done = self.results.groupby('run_id')['completed'].first().sum()
        logger.info("Consistency study complete: %d/%d runs finished",
                    n_done, self.num_runs)
        return self.results

    # =========================================================================
    # STATISTICS
    # =========================================================================

    def nees_by_epoch(self, alpha: float = 0.05) -> pd.DataFrame:
        """
        Average NEES over runs at each epoch, with chi-square bounds.

        Columns: epoch, anees, lower, upper, inside.
        """
        df = self._require_results()
        grouped = df.groupby('index')
        anees = grouped['nees'].mean()
        # Epochs where every replica's covariance is singular have no NEES.
        n_runs = grouped['nees'].count().replace(0, np.nan)
        dof = STATE_DIM * n_runs
        lower = chi2.ppf(alpha / 2.0, dof) / n_runs
        upper = chi2.ppf(1.0 - alpha / 2.0, dof) / n_runs
        out = pd.DataFrame({
            'epoch': grouped['epoch'].first(),
            'anees': anees,
            'lower': lower,
            'upper': upper,
        })
        out['inside'] = (out['anees'] >= out['lower']) & (out['anees'] <= out['upper'])
        return out

    def summary(self, alpha: float = 0.05) -> Dict[str, Any]:
        """
        Consistency summary.

        Returns
        -------
        dict
            normalized_error_mean, normalized_error_var : dict per axis
                Over every (run, epoch >= 1) sample.
            mean_nees : float
                Average NEES over all runs and epochs >= 1 (expected 6).
            nees_bounds : (float, float)
                Acceptance region of the per-epoch average NEES.
            fraction_inside : float
                Fraction of epochs whose average NEES is inside the bounds
                (expected >= 1 - alpha).
            mean_nis : float
                Expected 1.
        """
        df = self._require_results()
        steps = df[df['index'] >= 1]
        cols = [f'nerr_{axis}' for axis in AXES]
        by_epoch = self.nees_by_epoch(alpha)
        by_epoch = by_epoch[(by_epoch.index >= 1) & by_epoch['anees'].notna()]
        n = self.num_runs
        summary = {
            'num_runs': n,
            'normalized_error_mean': steps[cols].mean().rename(lambda c: c[5:]).to_dict(),
            'normalized_error_var': steps[cols].var().rename(lambda c: c[5:]).to_dict(),
            'mean_nees': float(steps['nees'].mean()),
            'nees_bounds': (float(chi2.ppf(alpha / 2.0, STATE_DIM * n) / n),
                            float(chi2.ppf(1.0 - alpha / 2.0, STATE_DIM * n) / n)),
            'fraction_inside': float(by_epoch['inside'].mean()) if len(by_epoch) else np.nan,
            'mean_nis': float(steps['nis'].mean()),
        }
        logger.info("ANEES=%.3f (bounds %.3f..%.3f), %.1f%% of epochs inside, "
                    "mean NIS=%.3f", summary['mean_nees'], *summary['nees_bounds'],
                    100.0 * summary['fraction_inside'], summary['mean_nis'])
        return summary

    def _require_results(self) -> pd.DataFrame:
        if self.results is None or self.results.empty:
            raise RuntimeError("No results: call run_all() first")
        return self.results
