"""
===============================================================================
XNAV PROJECT - Pulsar TOA Measurement Model
===============================================================================
Predicts the barycentric time of arrival (TOA) of a pulsar signal from a
spacecraft state and supplies the 1x6 Jacobian of that prediction.

Measurement equation
--------------------
The spacecraft time-stamps each observation with its own clock (epoch t).
Folding the photons against the pulse-phase model recovers the
barycentric time T to which that clock reading corresponds:

    T(x) = t + (r . n)/c + Delta_E(t, r, v) - Delta_S(r)

The observation is T evaluated on the TRUE state plus TOA noise; the
prediction is T evaluated on the ESTIMATED state.  Their difference is
dominated by the Roemer term, i.e. the position error projected on the
pulsar line of sight:

    innovation ~ n . (r_true - r_est) / c

Jacobian
--------
    H = dT/dx = [ n/c + dShapiro/dr + dClock/dr ,  dClock/dv ]

The velocity block comes only from the kinematic clock-rate term and is
small, but it is kept for completeness.  H is recomputed at every call
because the linearisation point moves with the estimate; that is what
makes the filter "extended".

Pulse-phase model
-----------------
The measurement is the composition of the time transfer above with the
pulsar spin model phi(T) = f0 (T - T0) + f1 (T - T0)^2 / 2.  A receiver
only sees pulse phase, so ``innovation`` forms the phase offset
phi(T_obs) - phi(T_pred), wraps it into [-1/2, 1/2) cycle and converts it
back to seconds with the instantaneous period P(T_pred).  With wrapping
disabled the plain TOA difference is used.
This is transparent as long as the line-of-sight position error stays
below c*P/2 (1,500 km for a 10 ms pulsar).
===============================================================================
"""

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np

from xnav.core.pulsar import PulsarModel
from xnav.core.state import KinematicState, Observation
from xnav.timing.relativistic import RelativisticTimeCorrector, TimeCorrection

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MeasurementPrediction:
    """Predicted barycentric TOA, its 1x6 Jacobian and the delay breakdown."""
    toa: float
    jacobian: np.ndarray
    correction: TimeCorrection

    def __post_init__(self):
        H = np.array(self.jacobian, dtype=np.float64).reshape(6)
        H.setflags(write=False)
        object.__setattr__(self, 'jacobian', H)


class MeasurementModel:
    """
    TOA prediction and linearisation for one pulsar at a time.

    Parameters
    ----------
    corrector : RelativisticTimeCorrector, optional
        Time-transfer model shared with the observation synthesis.
    wrap_phase : bool
        Wrap innovations into one pulse period (default True).
    """

    def __init__(self, corrector: Optional[RelativisticTimeCorrector] = None,
                 wrap_phase: bool = True) -> None:
        self.corrector = corrector if corrector is not None else RelativisticTimeCorrector()
        self.wrap_phase = wrap_phase

    # ------------------------------------------------------------------ #
    def predict(self, state: KinematicState, pulsar: PulsarModel,
                epoch: float) -> MeasurementPrediction:
        """
        Predicted barycentric TOA and Jacobian at the given state.

        Parameters
        ----------
        state : KinematicState
            Linearisation point (the filter's current estimate).
        pulsar : PulsarModel
            Source pulsar.
        epoch : float
            Topocentric time stamp of the observation (s).

        Returns
        -------
        MeasurementPrediction
        """
        correction = self.corrector.barycentric_time(
            epoch, state.position, state.velocity, pulsar
        )
        H = self.corrector.gradient(epoch, state.position, state.velocity, pulsar)
        return MeasurementPrediction(toa=correction.barycentric, jacobian=H,
                                     correction=correction)

    def observe(self, true_state: KinematicState, pulsar: PulsarModel,
                epoch: float, toa_error: float, variance: float,
                n_photons: Optional[int] = None) -> Observation:
        """
        Build the Observation produced by the spacecraft at *epoch*.

        The noiseless barycentric TOA is evaluated on the true state and the
        photon-statistics error is added to it.
        """
        correction = self.corrector.barycentric_time(
            epoch, true_state.position, true_state.velocity, pulsar
        )
        return Observation(
            epoch=float(epoch),
            toa=correction.barycentric + float(toa_error),
            variance=float(variance),
            pulsar=pulsar.name,
            n_photons=n_photons,
            shapiro_clamped=correction.clamped,
        )

    def innovation(self, observation: Observation,
                   prediction: MeasurementPrediction,
                   pulsar: PulsarModel) -> float:
        """
        Observed minus predicted TOA (s), wrapped into one pulse period
        when ``wrap_phase`` is set.
        """
        if not self.wrap_phase:
            return observation.toa - prediction.toa
        cycles = pulsar.phase_offset(prediction.toa, observation.toa)
        cycles -= np.floor(cycles + 0.5)
        return cycles * pulsar.period_at(prediction.toa)

    # ------------------------------------------------------------------ #
    def numerical_jacobian(self, state: KinematicState, pulsar: PulsarModel,
                           epoch: float, step_position: float = 1.0,
                           step_velocity: float = 1.0e-3) -> np.ndarray:
        """
        Central-difference Jacobian of the predicted TOA (1x6).

        Used to verify the analytic Jacobian.
        """
        x0 = state.as_vector()
        steps = np.array([step_position] * 3 + [step_velocity] * 3)
        H = np.zeros(6)
        for j in range(6):
            dx = np.zeros(6)
            dx[j] = steps[j]
            t_plus = self.corrector.barycentric_time(
                epoch, (x0 + dx)[0:3], (x0 + dx)[3:6], pulsar).total_delay
            t_minus = self.corrector.barycentric_time(
                epoch, (x0 - dx)[0:3], (x0 - dx)[3:6], pulsar).total_delay
            H[j] = (t_plus - t_minus) / (2.0 * steps[j])
        return H
