"""
===============================================================================
XNAV PROJECT - Simulation Loop
===============================================================================
Drives the truth model, the pulsar observations and the navigation filter
through a fixed sequence of epochs and records telemetry.

Every epoch:

    1. TRUTH        -- propagate the true state by dt (RK4); apply any
                       scheduled impulsive maneuver.  The filter never
                       sees maneuvers.
    2. OBSERVATIONS -- for each pulsar, draw the TOA error from photon
                       statistics (own RNG stream) and build the observed
                       barycentric TOA from the TRUE state.  Optionally
                       fanned out across a thread pool.
    3. PREDICT      -- the filter propagates its estimate and covariance.
    4. UPDATE       -- one sequential scalar update per observation.
    5. LOGGING      -- an EpochRecord with truth, estimate, covariance,
                       residuals, faults and warnings.

Fault policy
------------
    NumericalFault raised by the filter  -> recorded, the run stops.
    DegenerateOrbitFault on the truth    -> truth step skipped, recorded,
                                            the run continues.
    Shapiro clamp (ClampedWarning)       -> recorded, the run continues.
    Empty photon integration             -> observation dropped, recorded.

Reproducibility
---------------
All randomness derives from one numpy SeedSequence: one child stream for
the initial estimation error and one per pulsar.  The per-pulsar streams
make the result independent of the number of worker threads.
===============================================================================
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

import numpy as np
import pandas as pd

from xnav.config.scenario import ScenarioConfig
from xnav.core.covariance import nees, normalized_error
from xnav.core.faults import ConfigurationFault, FilterSequenceError, NumericalFault
from xnav.core.pulsar import PulsarModel
from xnav.core.state import FilterSnapshot, KinematicState, Observation
from xnav.dynamics.propagator import OrbitalPropagator
from xnav.navigation.ekf import ExtendedKalmanFilter, FilterContext, UpdateResult
from xnav.navigation.measurement_model import MeasurementModel
from xnav.navigation.photon_simulator import PhotonArrivalSimulator
from xnav.timing.relativistic import RelativisticTimeCorrector

logger = logging.getLogger(__name__)

AXES = ('x', 'y', 'z', 'vx', 'vy', 'vz')


# =============================================================================
# RECORDS
# =============================================================================

@dataclass
class EpochRecord:
    """
    Telemetry of one epoch.

    Attributes
    ----------
    index : int
        Epoch counter; 0 is the initial condition.
    epoch : float
        Topocentric time (s).
    true_state : KinematicState
        Truth after propagation.
    estimate : FilterSnapshot
        Filter estimate and covariance after all updates.
    updates : list of UpdateResult
        One per processed observation.
    observations : list of Observation
        Observations processed this epoch.
    dropped : list of str
        Pulsars whose integration produced no usable TOA.
    faults : list of NumericalFault
        Faults recorded this epoch (fatal or not).
    warnings : list of str
        Non-fatal conditions (clamps, skipped truth steps).
    """
    index: int
    epoch: float
    true_state: KinematicState
    estimate: FilterSnapshot
    updates: List[UpdateResult] = field(default_factory=list)
    observations: List[Observation] = field(default_factory=list)
    dropped: List[str] = field(default_factory=list)
    faults: List[NumericalFault] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def error(self) -> np.ndarray:
        """True minus estimated state (6,)."""
        return self.true_state.as_vector() - self.estimate.state.as_vector()

    @property
    def position_error(self) -> float:
        return float(np.linalg.norm(self.error[0:3]))

    @property
    def position_sigma(self) -> float:
        """sqrt(trace(P_pos)) (km)."""
        return float(np.sqrt(np.trace(self.estimate.covariance[0:3, 0:3])))

    @property
    def covariance_trace(self) -> float:
        return float(np.trace(self.estimate.covariance))

    @property
    def nees(self) -> float:
        """NEES of the posterior; NaN while the covariance is singular."""
        return nees(self.error, self.estimate.covariance)

    @property
    def normalized_error(self) -> np.ndarray:
        return normalized_error(self.error, self.estimate.covariance)


@dataclass
class SimulationResult:
    """
    Outcome of a run.

    ``fault`` is the NumericalFault that ended the run early, or None when
    every requested epoch completed.
    """
    records: List[EpochRecord]
    pulsars: List[str]
    fault: Optional[NumericalFault] = None

    @property
    def completed(self) -> bool:
        return self.fault is None

    @property
    def final(self) -> EpochRecord:
        return self.records[-1]

    def telemetry_frame(self) -> pd.DataFrame:
        """
        One row per epoch.

        Columns: index, epoch, true_<axis>, est_<axis>, var_<axis>,
        pos_error, pos_sigma, nees, n_obs, residual_<pulsar>, nis_<pulsar>.
        Residual and NIS cells are NaN for pulsars with no observation at
        that epoch.
        """
        rows = []
        for rec in self.records:
            row = {'index': rec.index, 'epoch': rec.epoch}
            truth = rec.true_state.as_vector()
            est = rec.estimate.state.as_vector()
            var = np.diag(rec.estimate.covariance)
            for i, axis in enumerate(AXES):
                row[f'true_{axis}'] = truth[i]
                row[f'est_{axis}'] = est[i]
                row[f'var_{axis}'] = var[i]
            row['pos_error'] = rec.position_error
            row['pos_sigma'] = rec.position_sigma
            row['nees'] = rec.nees
            row['n_obs'] = len(rec.updates)
            for name in self.pulsars:
                row[f'residual_{name}'] = np.nan
                row[f'nis_{name}'] = np.nan
            for upd in rec.updates:
                row[f'residual_{upd.pulsar}'] = upd.innovation
                row[f'nis_{upd.pulsar}'] = upd.nis
            rows.append(row)
        return pd.DataFrame(rows).set_index('index')


def write_telemetry_csv(result: SimulationResult, path: str) -> pd.DataFrame:
    """Write the telemetry frame to *path* and return it."""
    df = result.telemetry_frame()
    df.to_csv(path, float_format='%.12g')
    logger.info("Telemetry written to %s (%d rows)", path, len(df))
    return df


# =============================================================================
# LOOP
# =============================================================================

class SimulationLoop:
    """
    Truth / observation / filter driver.

    Parameters
    ----------
    scenario : ScenarioConfig
        Component configurations and run settings.
    pulsars : sequence of PulsarModel, optional
        Constellation; defaults to ``scenario.pulsars``.
    seed : int or np.random.SeedSequence, optional
        Overrides ``scenario.run.seed``.
    initial_estimate : KinematicState, optional
        Overrides the initial estimate.  By default it is the true initial
        state plus ``filter.initial_error``, or plus a draw from N(0, P0).

    Raises
    ------
    ConfigurationFault
        If the constellation is empty or has duplicate names.
    """

    def __init__(self, scenario: ScenarioConfig,
                 pulsars: Optional[Sequence[PulsarModel]] = None,
                 seed=None,
                 initial_estimate: Optional[KinematicState] = None) -> None:
        self.scenario = scenario
        self.pulsars = list(pulsars if pulsars is not None else scenario.pulsars)
        if not self.pulsars:
            raise ConfigurationFault("At least one pulsar is required")
        names = [p.name for p in self.pulsars]
        if len(set(names)) != len(names):
            raise ConfigurationFault(f"Duplicate pulsar names: {names}")

        run = scenario.run
        self.dt = run.dt
        self.workers = run.workers

        # --- Random streams ---
        if seed is None:
            seed = run.seed
        seq = seed if isinstance(seed, np.random.SeedSequence) else np.random.SeedSequence(seed)
        init_seq, *pulsar_seqs = seq.spawn(len(self.pulsars) + 1)
        self._init_rng = np.random.default_rng(init_seq)
        self._streams = [np.random.default_rng(s) for s in pulsar_seqs]

        # --- Components ---
        self.propagator = OrbitalPropagator(scenario.dynamics)
        self.corrector = RelativisticTimeCorrector(scenario.time_transfer)
        self.measurement_model = MeasurementModel(self.corrector,
                                                  wrap_phase=scenario.filter.wrap_phase)
        self.photon_simulator = PhotonArrivalSimulator(scenario.detector)
        if scenario.detector.integration_time > self.dt:
            # Each TOA then averages over more than one epoch of motion.
            logger.warning("Detector integration time %.1f s exceeds the epoch step %.1f s; "
                           "consecutive observations overlap in time",
                           scenario.detector.integration_time, self.dt)

        # --- Truth and filter (disjoint state objects) ---
        self.epoch = run.start_epoch
        self.index = 0
        self.true_state = scenario.initial_state
        P0 = scenario.filter.covariance()
        if initial_estimate is None:
            initial_estimate = self._initial_estimate(P0)
        context = FilterContext(initial_estimate, P0, scenario.filter.noise(),
                                epoch=self.epoch)
        self.filter = ExtendedKalmanFilter(context, self.propagator,
                                           self.measurement_model)
        self._maneuvers = {m.epoch_index: m for m in scenario.maneuvers}

        self.records: List[EpochRecord] = [
            EpochRecord(index=0, epoch=self.epoch, true_state=self.true_state,
                        estimate=self.filter.snapshot())
        ]
        self.fault: Optional[NumericalFault] = None
        self._executor: Optional[ThreadPoolExecutor] = None

        logger.info("SimulationLoop: %d pulsars, dt=%.1f s, seed=%s, workers=%d",
                    len(self.pulsars), self.dt, seed, self.workers)

    def _initial_estimate(self, P0: np.ndarray) -> KinematicState:
        error = self.scenario.filter.initial_error
        if error is None:
            error = self._init_rng.multivariate_normal(np.zeros(6), P0)
        error = np.asarray(error, dtype=np.float64)
        if error.shape != (6,):
            raise ConfigurationFault(f"initial_error must have 6 elements, got {error.shape}")
        return KinematicState.from_vector(self.true_state.as_vector() + error)

    # ------------------------------------------------------------------ #
    #  Executor lifetime
    # ------------------------------------------------------------------ #
    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def close(self) -> None:
        """Shut down the observation thread pool, if one was started."""
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    # ------------------------------------------------------------------ #
    #  Observations
    # ------------------------------------------------------------------ #
    def _observe(self, pulsar: PulsarModel, rng: np.random.Generator,
                 epoch: float, true_state: KinematicState) -> Optional[Observation]:
        sample = self.photon_simulator.sample_toa_error(pulsar, rng)
        if not sample.available:
            return None
        return self.measurement_model.observe(true_state, pulsar, epoch,
                                              sample.error, sample.variance,
                                              n_photons=sample.n_photons)

    def generate_observations(self, epoch: float,
                              true_state: KinematicState) -> List[Optional[Observation]]:
        """
        One observation per pulsar at *epoch*, in constellation order.

        Entries are None for integrations that yielded no photons.
        """
        if self.workers <= 1:
            return [self._observe(p, rng, epoch, true_state)
                    for p, rng in zip(self.pulsars, self._streams)]
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=self.workers)
        futures = [self._executor.submit(self._observe, p, rng, epoch, true_state)
                   for p, rng in zip(self.pulsars, self._streams)]
        return [f.result() for f in futures]

    # ------------------------------------------------------------------ #
    #  Stepping
    # ------------------------------------------------------------------ #
    def step(self) -> EpochRecord:
        """
        Advance one epoch.

        Returns
        -------
        EpochRecord
            Telemetry of the epoch.  If the filter faulted, the record holds
            the fault, ``self.fault`` is set and later calls raise.

        Raises
        ------
        FilterSequenceError
            If the run has already been stopped by a fault.
        """
        if self.fault is not None:
            raise FilterSequenceError(f"Run stopped by an earlier fault: {self.fault}")

        index = self.index + 1
        epoch = self.epoch + self.dt
        faults: List[NumericalFault] = []
        notes: List[str] = []

        # --- 1. Truth ---
        truth = self.propagator.propagate(self.true_state, self.dt, epoch=self.epoch)
        if truth.fault is not None:
            faults.append(truth.fault)
            notes.append("truth step skipped: degenerate orbit")
        true_state = truth.state
        maneuver = self._maneuvers.get(index)
        if maneuver is not None:
            true_state = KinematicState(true_state.position,
                                        true_state.velocity + maneuver.delta_v)
            logger.info("Epoch %d: maneuver dv=%s km/s applied to truth",
                        index, np.array2string(maneuver.delta_v, precision=4))

        # --- 2. Observations ---
        observations = []
        dropped = []
        for pulsar, obs in zip(self.pulsars, self.generate_observations(epoch, true_state)):
            if obs is None:
                dropped.append(pulsar.name)
                notes.append(f"{pulsar.name}: no photons, observation dropped")
                continue
            if obs.shapiro_clamped:
                notes.append(f"{pulsar.name}: Shapiro delay clamped (truth)")
            observations.append(obs)

        # --- 3./4. Filter ---
        by_name = {p.name: p for p in self.pulsars}
        updates: List[UpdateResult] = []
        try:
            self.filter.predict(self.dt)
            for obs in observations:
                upd = self.filter.update(obs, by_name[obs.pulsar])
                if upd.clamped:
                    notes.append(f"{upd.pulsar}: Shapiro delay clamped (estimate)")
                updates.append(upd)
        except NumericalFault as fault:
            logger.error("Epoch %d (t=%.1f s): %s; stopping run", index, epoch, fault)
            faults.append(fault)
            self.fault = fault

        # --- 5. Logging ---
        self.true_state = true_state
        self.epoch = epoch
        self.index = index
        record = EpochRecord(index=index, epoch=epoch, true_state=true_state,
                             estimate=self.filter.snapshot(), updates=updates,
                             observations=observations, dropped=dropped,
                             faults=faults, warnings=notes)
        self.records.append(record)
        logger.debug("Epoch %d: |dr|=%.3f km, sigma_r=%.3f km, %d obs",
                     index, record.position_error, record.position_sigma,
                     len(updates))
        return record

    def run(self, n_epochs: Optional[int] = None) -> SimulationResult:
        """
        Run *n_epochs* epochs (default: the scenario's) or until a fault.
        """
        n_epochs = self.scenario.run.n_epochs if n_epochs is None else n_epochs
        logger.info("Running %d epochs", n_epochs)
        try:
            for _ in range(n_epochs):
                self.step()
                if self.fault is not None:
                    break
        finally:
            self.close()
        result = SimulationResult(records=list(self.records),
                                  pulsars=[p.name for p in self.pulsars],
                                  fault=self.fault)
        final = result.final
        logger.info("Run finished at epoch %d: |dr|=%.3f km, sigma_r=%.3f km%s",
                    final.index, final.position_error, final.position_sigma,
                    "" if result.completed else " (stopped by fault)")
        return result
