"""
===============================================================================
XNAV PROJECT - Extended Kalman Filter for Pulsar Navigation
===============================================================================

Implements a 6-state Extended Kalman Filter that estimates spacecraft
position and velocity from pulsar times of arrival.

State Vector (6 elements)
-------------------------
    x[0:3]   = position [x, y, z]        (km, barycentric frame)
    x[3:6]   = velocity [vx, vy, vz]     (km/s, barycentric frame)

Filter Cycle
------------
Each epoch has two phases, always alternating and starting with Predict:

    PREDICT   x <- f(x, dt)              (RK4 through OrbitalPropagator)
              P <- Phi P Phi^T + Q(dt)   (Phi from the variational equations)

    UPDATE    one sub-step per observation, processed sequentially, each
              consuming the covariance left by the previous one:

              nu = z - h(x)              (wrapped TOA residual)
              S  = H P H^T + R           (scalar)
              K  = P H^T / S
              x <- x + K nu
              P <- (I - K H) P (I - K H)^T + K R K^T     (Joseph form)

Joseph Form Covariance Update
-----------------------------
The short form P = (I - K*H) * P loses symmetry and positive-definiteness
under floating-point roundoff.  The Joseph form is symmetric by
construction and stays positive-semidefinite for any gain:

    P = (I - K*H) * P * (I - K*H)^T + K * R * K^T

Fault Policy
------------
The filter checks its covariance after every predict and update.  Loss of
symmetry or positive-semidefiniteness raises DivergenceFault; a
non-positive innovation variance raises SingularInnovationFault; a zero or
negative measurement variance is a ConfigurationFault.  On any fault the
filter context is left exactly as it was before the call.  The filter
never resets, retries or clamps on its own; the caller decides.

References
----------
    [1] Brown & Hwang, "Introduction to Random Signals and Applied
        Kalman Filtering", 4th ed., Wiley, 2012.
    [2] Bar-Shalom, Li & Kirubarajan, "Estimation with Applications to
        Tracking and Navigation", Wiley, 2001, Ch. 5 (consistency tests).
    [3] Sheikh et al., "Spacecraft Navigation Using X-Ray Pulsars",
        JGCD 29(1), 2006.

===============================================================================
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence

import numpy as np

from xnav.core.covariance import (
    check_covariance, nees, normalized_error, symmetrize, validate_config_matrix,
)
from xnav.core.faults import (
    ConfigurationFault, FilterSequenceError, SingularInnovationFault,
)
from xnav.core.pulsar import PulsarModel
from xnav.core.state import FilterSnapshot, KinematicState, Observation
from xnav.dynamics.propagator import OrbitalPropagator
from xnav.navigation.measurement_model import MeasurementModel

logger = logging.getLogger(__name__)

STATE_DIM = 6
EPOCH_TOL = 1.0e-6  # s


# =============================================================================
# PROCESS NOISE
# =============================================================================

class ProcessNoiseModel(Enum):
    """How Q is formed for a predict step of length dt."""
    CONSTANT = 'constant'
    WHITE_ACCELERATION = 'white_acceleration'


class ProcessNoise:
    """
    Discrete process-noise generator.

    CONSTANT            Q(dt) = Q, the configured 6x6 matrix, every step.
    WHITE_ACCELERATION  Q(dt) = q * | dt^3/3 I   dt^2/2 I |
                                    | dt^2/2 I   dt I     |
                        from a white acceleration of spectral density q
                        (km^2/s^3), plus the configured matrix.

    The model is resolved to a single function at construction.
    """

    def __init__(self, matrix=None, model=ProcessNoiseModel.CONSTANT,
                 spectral_density: float = 0.0) -> None:
        if not isinstance(model, ProcessNoiseModel):
            try:
                model = ProcessNoiseModel(str(model).lower())
            except ValueError:
                valid = [m.value for m in ProcessNoiseModel]
                raise ConfigurationFault(
                    f"Unknown process noise model: {model}. Valid: {valid}"
                ) from None
        if matrix is None:
            matrix = np.zeros((STATE_DIM, STATE_DIM))
        self.matrix = validate_config_matrix(matrix, "Process noise Q")
        self.model = model
        if spectral_density < 0.0:
            raise ConfigurationFault(
                f"spectral_density must be >= 0, got {spectral_density}"
            )
        self.spectral_density = float(spectral_density)
        if model is ProcessNoiseModel.WHITE_ACCELERATION:
            self._discrete = self._white_acceleration
        else:
            self._discrete = self._constant

    def discrete(self, dt: float) -> np.ndarray:
        """Process-noise matrix for a step of *dt* seconds."""
        return self._discrete(dt)

    def _constant(self, dt):
        return self.matrix

    def _white_acceleration(self, dt):
        q = self.spectral_density
        Q = np.zeros((STATE_DIM, STATE_DIM))
        I3 = np.eye(3)
        Q[0:3, 0:3] = q * dt ** 3 / 3.0 * I3
        Q[0:3, 3:6] = q * dt ** 2 / 2.0 * I3
        Q[3:6, 0:3] = q * dt ** 2 / 2.0 * I3
        Q[3:6, 3:6] = q * dt * I3
        return Q + self.matrix


# =============================================================================
# FILTER CONTEXT
# =============================================================================

class FilterPhase(Enum):
    PREDICT = 'predict'
    UPDATE = 'update'


class FilterContext:
    """
    The filter's only mutable, long-lived state.

    Owns the estimated state, its covariance, the process-noise parameters
    and the current epoch.  Created once per run; only the
    ExtendedKalmanFilter that wraps it may change it.

    Parameters
    ----------
    state : KinematicState
        Initial estimate.
    covariance : array_like
        Initial 6x6 covariance P0, or its 6-element diagonal.
        Must be symmetric positive-semidefinite.
    process_noise : ProcessNoise or array_like
        Process-noise model, or a constant Q matrix / diagonal.
    epoch : float
        Epoch of the initial estimate (s).

    Raises
    ------
    ConfigurationFault
        If P0 or Q is malformed.
    """

    def __init__(self, state: KinematicState, covariance, process_noise=None,
                 epoch: float = 0.0) -> None:
        self.state = state
        self.covariance = validate_config_matrix(covariance, "Initial covariance P0")
        if not isinstance(process_noise, ProcessNoise):
            process_noise = ProcessNoise(process_noise)
        self.process_noise = process_noise
        self.epoch = float(epoch)
        self.phase = FilterPhase.PREDICT

    def snapshot(self) -> FilterSnapshot:
        """Read-only copy of the current estimate and covariance."""
        return FilterSnapshot(epoch=self.epoch, state=self.state,
                              covariance=self.covariance.copy())


@dataclass(frozen=True)
class UpdateResult:
    """
    Diagnostics of one scalar measurement update.

    Attributes
    ----------
    pulsar : str
        Source pulsar name.
    epoch : float
        Epoch of the observation (s).
    innovation : float
        Wrapped observed-minus-predicted TOA (s).
    innovation_variance : float
        S = H P H^T + R (s^2).
    gain : np.ndarray
        Kalman gain K (6,).
    clamped : bool
        The Shapiro term of the prediction was clamped.
    """
    pulsar: str
    epoch: float
    innovation: float
    innovation_variance: float
    gain: np.ndarray
    clamped: bool = False

    @property
    def nis(self) -> float:
        """Normalised innovation squared nu^2 / S (chi-square, 1 dof)."""
        return self.innovation ** 2 / self.innovation_variance


# =============================================================================
# EXTENDED KALMAN FILTER
# =============================================================================

class ExtendedKalmanFilter:
    """
    Extended Kalman Filter over [position, velocity] driven by pulsar TOAs.

    Parameters
    ----------
    context : FilterContext
        Estimate, covariance, process noise and epoch.  Exclusively owned
        by this filter for the rest of the run.
    propagator : OrbitalPropagator
        Dynamics used for the predict step and for Phi.
    measurement_model : MeasurementModel
        TOA prediction and Jacobian.

    Examples
    --------
    >>> ctx = FilterContext(x0, P0=np.diag([1e4]*3 + [1e-2]*3), process_noise=Q)
    >>> ekf = ExtendedKalmanFilter(ctx, OrbitalPropagator(), MeasurementModel())
    >>> ekf.predict(60.0)
    >>> for obs, psr in zip(observations, pulsars):
    ...     ekf.update(obs, psr)
    """

    def __init__(self, context: FilterContext, propagator: OrbitalPropagator,
                 measurement_model: MeasurementModel) -> None:
        self.context = context
        self.propagator = propagator
        self.measurement_model = measurement_model

    # ------------------------------------------------------------------ #
    @property
    def state(self) -> KinematicState:
        return self.context.state

    @property
    def covariance(self) -> np.ndarray:
        """Copy of the current covariance."""
        return self.context.covariance.copy()

    @property
    def epoch(self) -> float:
        return self.context.epoch

    @property
    def phase(self) -> FilterPhase:
        return self.context.phase

    # =========================================================================
    # PREDICT STEP
    # =========================================================================

    def predict(self, dt: float) -> None:
        """
        Propagate the estimate and covariance forward by *dt* seconds.

        Parameters
        ----------
        dt : float
            Step length (s), must be > 0.

        Raises
        ------
        ConfigurationFault
            If dt <= 0.
        DegenerateOrbitFault
            If the estimated orbit hits the minimum radius.  The filter
            cannot skip its own epoch, so this is raised, not returned.
        DivergenceFault
            If the propagated covariance fails the health check.
        """
        ctx = self.context
        result, Phi = self.propagator.propagate_with_transition(
            ctx.state, dt, epoch=ctx.epoch
        )
        if result.fault is not None:
            raise result.fault

        # P_new = Phi * P * Phi^T + Q
        #   Phi * P * Phi^T : existing uncertainty mapped through the dynamics
        #   Q               : uncertainty injected by unmodelled forces
        P = Phi @ ctx.covariance @ Phi.T + ctx.process_noise.discrete(dt)
        new_epoch = ctx.epoch + dt
        check_covariance(P, epoch=new_epoch, label="Predicted covariance")

        ctx.state = result.state
        ctx.covariance = symmetrize(P)
        ctx.epoch = new_epoch
        ctx.phase = FilterPhase.UPDATE
        logger.debug("Predict -> t=%.1f s, trace(P_pos)=%.3e km^2",
                     new_epoch, np.trace(P[0:3, 0:3]))

    # =========================================================================
    # MEASUREMENT UPDATE: PULSAR TOA
    # =========================================================================

    def update(self, observation: Observation, pulsar: PulsarModel) -> UpdateResult:
        """
        Process one pulsar TOA.

        Parameters
        ----------
        observation : Observation
            Observed barycentric TOA and its variance R.
        pulsar : PulsarModel
            The pulsar the observation came from.

        Returns
        -------
        UpdateResult
            Innovation, its variance and the gain.

        Raises
        ------
        FilterSequenceError
            If called before a predict, or for an observation stamped at a
            different epoch.
        ConfigurationFault
            If the observation variance is zero, negative or non-finite.
        SingularInnovationFault
            If S is not a positive finite number.
        DivergenceFault
            If the updated covariance fails the health check.
        """
        ctx = self.context
        if ctx.phase is not FilterPhase.UPDATE:
            raise FilterSequenceError(
                "update() called in the predict phase; call predict() first"
            )
        if abs(observation.epoch - ctx.epoch) > EPOCH_TOL:
            raise FilterSequenceError(
                f"Observation epoch {observation.epoch:.6f} s does not match "
                f"filter epoch {ctx.epoch:.6f} s"
            )
        if observation.pulsar != pulsar.name:
            raise ConfigurationFault(
                f"Observation from {observation.pulsar} paired with pulsar "
                f"{pulsar.name}"
            )
        R = observation.variance
        if not np.isfinite(R) or R <= 0.0:
            raise ConfigurationFault(
                f"Measurement variance must be > 0, got {R} ({pulsar.name})"
            )

        # --- Prediction and Jacobian at the current estimate ---
        prediction = self.measurement_model.predict(ctx.state, pulsar, ctx.epoch)
        H = prediction.jacobian
        innovation = self.measurement_model.innovation(observation, prediction, pulsar)

        # --- Innovation covariance (scalar) ---
        P = ctx.covariance
        PHt = P @ H
        S = float(H @ PHt) + R
        if not np.isfinite(S) or S <= 0.0:
            raise SingularInnovationFault(
                f"Innovation variance S={S} is not positive ({pulsar.name})",
                epoch=ctx.epoch,
                context={'P': P.copy(), 'H': np.array(H), 'R': R},
            )

        # --- Kalman gain ---
        K = PHt / S

        # --- State update ---
        x_new = ctx.state.as_vector() + K * innovation

        # --- Covariance update (Joseph form) ---
        I_KH = np.eye(STATE_DIM) - np.outer(K, H)
        P_new = I_KH @ P @ I_KH.T + R * np.outer(K, K)
        check_covariance(P_new, epoch=ctx.epoch, label="Updated covariance")

        ctx.state = KinematicState.from_vector(x_new)
        ctx.covariance = symmetrize(P_new)

        result = UpdateResult(pulsar=pulsar.name, epoch=ctx.epoch,
                              innovation=float(innovation),
                              innovation_variance=S, gain=K,
                              clamped=prediction.correction.clamped)
        logger.debug("Update %s: nu=%.3e s, S=%.3e s^2, NIS=%.2f",
                     pulsar.name, innovation, S, result.nis)
        return result

    def update_all(self, observations: Sequence[Observation],
                   pulsars: Sequence[PulsarModel]) -> List[UpdateResult]:
        """
        Apply a batch of observations sequentially.

        *pulsars* is matched to *observations* by name.
        """
        by_name = {p.name: p for p in pulsars}
        results = []
        for obs in observations:
            if obs.pulsar not in by_name:
                raise ConfigurationFault(f"Unknown pulsar in observation: {obs.pulsar}")
            results.append(self.update(obs, by_name[obs.pulsar]))
        return results

    # =========================================================================
    # FILTER HEALTH DIAGNOSTICS
    # =========================================================================

    def estimation_error(self, true_state: KinematicState) -> np.ndarray:
        """x_true - x_est (6,)."""
        return true_state.as_vector() - self.context.state.as_vector()

    def normalized_error(self, true_state: KinematicState) -> np.ndarray:
        """Per-component error divided by the predicted 1-sigma (6,)."""
        return normalized_error(self.estimation_error(true_state), self.context.covariance)

    def nees(self, true_state: KinematicState) -> float:
        """
        Normalised estimation error squared.

            NEES = e^T P^{-1} e

        For a consistent filter NEES follows a chi-square distribution with
        6 degrees of freedom (mean 6).  NaN when the covariance is singular.
        """
        return nees(self.estimation_error(true_state), self.context.covariance)

    def snapshot(self) -> FilterSnapshot:
        return self.context.snapshot()
