"""
===============================================================================
XNAV PROJECT - Orbital Propagator
===============================================================================
Fixed-step RK4 propagation of the spacecraft's translational state, used
both for the simulator's ground truth and for the filter's predict step.

This module provides:

    1. **Dynamics configuration** -- DynamicsConfig selects a force model
       (constant velocity, two-body, two-body + J2) plus optional point-mass
       third bodies.  The selection is a tagged variant that is resolved
       ONCE, when the propagator is built, into a concrete acceleration
       function and gravity-gradient function.  The per-step code path never
       looks at the model tag again.

    2. **State propagation** -- classical 4th-order Runge-Kutta:

            k1 = f(y_n)
            k2 = f(y_n + dt/2 * k1)
            k3 = f(y_n + dt/2 * k2)
            k4 = f(y_n + dt * k3)
            y_{n+1} = y_n + (dt/6) * (k1 + 2*k2 + 2*k3 + k4)

       Acceleration is a pure function of position, so identical inputs
       give bit-identical outputs.

    3. **State-transition matrix** -- the variational equations

            dPhi/dt = A(r(t)) * Phi,    A = | 0  I |
                                            | G  0 |

       (G = da/dr, the gravity gradient) are integrated with the same RK4
       stages as the state.  The filter uses Phi for P = Phi P Phi^T + Q.

Degenerate geometry: if |r| falls below ``min_radius`` at any RK stage the
step is skipped, the last valid state is returned unchanged and the result
carries a DegenerateOrbitFault.  The caller decides what to do with it.

Units: km, km/s, km^3/s^2.

References
----------
    [1] Vallado, "Fundamentals of Astrodynamics and Applications", 4th ed.
    [2] Montenbruck & Gill, "Satellite Orbits", Springer, 2000, Sec. 7.2.
===============================================================================
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Tuple

import numpy as np

from xnav.core.constants import SUN_MU, SUN_RADIUS, TWO_PI
from xnav.core.faults import ConfigurationFault, DegenerateOrbitFault
from xnav.core.state import KinematicState

logger = logging.getLogger(__name__)

AccelFunc = Callable[[np.ndarray], np.ndarray]
GradientFunc = Callable[[np.ndarray], np.ndarray]


# =============================================================================
# CONFIGURATION
# =============================================================================

class DynamicsModel(Enum):
    """Force model selector."""
    CONSTANT_VELOCITY = 'constant_velocity'
    TWO_BODY = 'two_body'
    TWO_BODY_J2 = 'two_body_j2'


@dataclass(frozen=True)
class ThirdBody:
    """
    Point-mass perturbing body held at a fixed barycentric position.

    Attributes
    ----------
    name : str
        Label used in logs.
    mu : float
        Gravitational parameter (km^3/s^2).
    position : np.ndarray
        Position of the body relative to the central body (km).
    """
    name: str
    mu: float
    position: np.ndarray

    def __post_init__(self):
        pos = np.array(self.position, dtype=np.float64).reshape(3)
        pos.setflags(write=False)
        object.__setattr__(self, 'position', pos)
        if self.mu <= 0.0:
            raise ConfigurationFault(f"Third body {self.name}: mu must be > 0")
        if np.linalg.norm(pos) <= 0.0:
            raise ConfigurationFault(
                f"Third body {self.name}: position must be away from the origin"
            )


@dataclass(frozen=True)
class DynamicsConfig:
    """
    Dynamics configuration.

    Attributes
    ----------
    model : DynamicsModel
        Force model.  Strings are accepted and converted.
    mu : float
        Central-body gravitational parameter (km^3/s^2).
    body_radius : float
        Central-body reference radius for J2 (km).
    j2 : float
        Second zonal harmonic (only used by TWO_BODY_J2).
    min_radius : float
        Positions closer than this to the central body are treated as a
        degenerate orbit (km).
    third_bodies : tuple of ThirdBody
        Optional point-mass perturbations (gravity models only).
    """
    model: DynamicsModel = DynamicsModel.TWO_BODY
    mu: float = SUN_MU
    body_radius: float = SUN_RADIUS
    j2: float = 0.0
    min_radius: float = SUN_RADIUS
    third_bodies: Tuple[ThirdBody, ...] = field(default_factory=tuple)

    def __post_init__(self):
        if not isinstance(self.model, DynamicsModel):
            try:
                object.__setattr__(self, 'model', DynamicsModel(str(self.model).lower()))
            except ValueError:
                valid = [m.value for m in DynamicsModel]
                raise ConfigurationFault(
                    f"Unknown dynamics model: {self.model}. Valid: {valid}"
                ) from None
        object.__setattr__(self, 'third_bodies', tuple(self.third_bodies))

        if self.min_radius < 0.0:
            raise ConfigurationFault(
                f"min_radius must be >= 0, got {self.min_radius}"
            )
        if self.model is DynamicsModel.CONSTANT_VELOCITY:
            if self.third_bodies:
                raise ConfigurationFault(
                    "Third-body perturbations require a gravity model"
                )
            return
        if self.mu <= 0.0:
            raise ConfigurationFault(f"mu must be > 0, got {self.mu}")
        if self.model is DynamicsModel.TWO_BODY_J2 and self.body_radius <= 0.0:
            raise ConfigurationFault(
                f"body_radius must be > 0 for J2, got {self.body_radius}"
            )


@dataclass(frozen=True)
class PropagationResult:
    """
    Outcome of one propagation step.

    ``state`` is the advanced state, or the unchanged input state when the
    step was skipped; in that case ``fault`` describes why.
    """
    state: KinematicState
    fault: Optional[DegenerateOrbitFault] = None

    @property
    def ok(self) -> bool:
        return self.fault is None


# =============================================================================
# FORCE MODEL TERMS
# =============================================================================

def two_body_acceleration(position: np.ndarray, mu: float) -> np.ndarray:
    """
    Point-mass gravitational acceleration.

        a = -mu * r / |r|^3

    Parameters
    ----------
    position : np.ndarray
        3-element position vector (km).
    mu : float
        Gravitational parameter (km^3/s^2).

    Returns
    -------
    np.ndarray
        Acceleration (km/s^2).
    """
    r = np.linalg.norm(position)
    return -mu / (r * r * r) * position


def two_body_gradient(position: np.ndarray, mu: float) -> np.ndarray:
    """
    Gravity-gradient matrix da/dr of the point-mass term.

        G = -mu / r^3 * (I - 3 * r_hat r_hat^T)
    """
    r = np.linalg.norm(position)
    r_hat = position / r
    return -mu / (r ** 3) * (np.eye(3) - 3.0 * np.outer(r_hat, r_hat))


def j2_acceleration(position: np.ndarray, mu: float, body_radius: float,
                    j2: float) -> np.ndarray:
    """
    J2 zonal-harmonic perturbation (pole along +z).

        a_x = -mu*x/r^3 * (3/2) J2 (R/r)^2 (1 - 5 z^2/r^2)
        a_y = -mu*y/r^3 * (3/2) J2 (R/r)^2 (1 - 5 z^2/r^2)
        a_z = -mu*z/r^3 * (3/2) J2 (R/r)^2 (3 - 5 z^2/r^2)
    """
    x, y, z = position
    r = np.linalg.norm(position)
    factor = 1.5 * j2 * (body_radius / r) ** 2 * mu / r ** 3
    z2_over_r2 = (z / r) ** 2
    return -factor * np.array([
        x * (1.0 - 5.0 * z2_over_r2),
        y * (1.0 - 5.0 * z2_over_r2),
        z * (3.0 - 5.0 * z2_over_r2),
    ])


def third_body_acceleration(position: np.ndarray, body: ThirdBody) -> np.ndarray:
    """
    Direct plus indirect acceleration from a point-mass third body.

        a = mu_b * [ (r_b - r)/|r_b - r|^3 - r_b/|r_b|^3 ]
    """
    d = body.position - position
    d_mag = np.linalg.norm(d)
    rb_mag = np.linalg.norm(body.position)
    return body.mu * (d / d_mag ** 3 - body.position / rb_mag ** 3)


def numerical_gradient(accel: AccelFunc, position: np.ndarray) -> np.ndarray:
    """Central-difference Jacobian of *accel* at *position* (3x3)."""
    h = max(1.0e-6 * np.linalg.norm(position), 1.0e-3)
    G = np.zeros((3, 3))
    for j in range(3):
        dr = np.zeros(3)
        dr[j] = h
        G[:, j] = (accel(position + dr) - accel(position - dr)) / (2.0 * h)
    return G


def _resolve_force_model(config: DynamicsConfig) -> Tuple[AccelFunc, GradientFunc]:
    """
    Turn the tagged configuration into concrete acceleration and gradient
    callables.  Called once per propagator.
    """
    if config.model is DynamicsModel.CONSTANT_VELOCITY:
        zero3 = np.zeros(3)
        zero33 = np.zeros((3, 3))
        return (lambda r: zero3), (lambda r: zero33)

    mu = config.mu
    perturbations: List[AccelFunc] = []
    if config.model is DynamicsModel.TWO_BODY_J2 and config.j2 != 0.0:
        R, j2 = config.body_radius, config.j2
        perturbations.append(lambda r: j2_acceleration(r, mu, R, j2))
    for body in config.third_bodies:
        perturbations.append(lambda r, b=body: third_body_acceleration(r, b))

    if not perturbations:
        return (lambda r: two_body_acceleration(r, mu)), (lambda r: two_body_gradient(r, mu))

    perturbations = tuple(perturbations)

    def perturbing(r):
        total = perturbations[0](r)
        for term in perturbations[1:]:
            total = total + term(r)
        return total

    def accel(r):
        return two_body_acceleration(r, mu) + perturbing(r)

    def gradient(r):
        return two_body_gradient(r, mu) + numerical_gradient(perturbing, r)

    return accel, gradient


# =============================================================================
# PROPAGATOR
# =============================================================================

class OrbitalPropagator:
    """
    Deterministic fixed-step RK4 propagator.

    The propagator holds no time and no trajectory: every call takes a
    KinematicState by value and returns a new one.  The same instance can
    therefore serve the truth model and the filter without any shared
    mutable state.

    Parameters
    ----------
    config : DynamicsConfig, optional
        Force model configuration.  Defaults to heliocentric two-body.
    """

    def __init__(self, config: Optional[DynamicsConfig] = None) -> None:
        self.config = config if config is not None else DynamicsConfig()
        self._accel, self._gradient = _resolve_force_model(self.config)
        self._min_radius = self.config.min_radius
        logger.debug("OrbitalPropagator resolved model=%s, %d third bodies",
                     self.config.model.value, len(self.config.third_bodies))

    # ------------------------------------------------------------------ #
    def acceleration(self, position: np.ndarray) -> np.ndarray:
        """Total acceleration at *position* (km/s^2)."""
        return self._accel(np.asarray(position, dtype=np.float64))

    def gravity_gradient(self, position: np.ndarray) -> np.ndarray:
        """3x3 gradient da/dr at *position* (1/s^2)."""
        return self._gradient(np.asarray(position, dtype=np.float64))

    def state_matrix(self, position: np.ndarray) -> np.ndarray:
        """Continuous-time 6x6 dynamics Jacobian A = [[0, I], [G, 0]]."""
        A = np.zeros((6, 6))
        A[0:3, 3:6] = np.eye(3)
        A[3:6, 0:3] = self.gravity_gradient(position)
        return A

    # ------------------------------------------------------------------ #
    def _too_close(self, r: np.ndarray) -> bool:
        return np.linalg.norm(r) < self._min_radius

    def _skip(self, state: KinematicState, r_bad: np.ndarray,
              epoch: Optional[float]) -> PropagationResult:
        fault = DegenerateOrbitFault(
            f"|r| = {np.linalg.norm(r_bad):.3f} km below minimum radius "
            f"{self._min_radius:.3f} km; step skipped",
            epoch=epoch,
            context={'position': np.array(r_bad), 'state': state},
        )
        logger.warning("%s", fault)
        return PropagationResult(state=state, fault=fault)

    def _rk4(self, state: KinematicState, dt: float, with_stm: bool,
             epoch: Optional[float]):
        """
        Shared RK4 core.  Returns (PropagationResult, Phi or None).
        """
        if not np.isfinite(dt) or dt <= 0.0:
            raise ConfigurationFault(f"Time step must be > 0, got {dt}")

        r = np.array(state.position)
        v = np.array(state.velocity)
        accel = self._accel

        # Stage 1
        if self._too_close(r):
            return self._skip(state, r, epoch), None
        kr1 = v
        kv1 = accel(r)

        # Stage 2
        r2 = r + 0.5 * dt * kr1
        v2 = v + 0.5 * dt * kv1
        if self._too_close(r2):
            return self._skip(state, r2, epoch), None
        kr2 = v2
        kv2 = accel(r2)

        # Stage 3
        r3 = r + 0.5 * dt * kr2
        v3 = v + 0.5 * dt * kv2
        if self._too_close(r3):
            return self._skip(state, r3, epoch), None
        kr3 = v3
        kv3 = accel(r3)

        # Stage 4
        r4 = r + dt * kr3
        v4 = v + dt * kv3
        if self._too_close(r4):
            return self._skip(state, r4, epoch), None
        kr4 = v4
        kv4 = accel(r4)

        # Weighted combination
        r_new = r + (dt / 6.0) * (kr1 + 2.0 * kr2 + 2.0 * kr3 + kr4)
        v_new = v + (dt / 6.0) * (kv1 + 2.0 * kv2 + 2.0 * kv3 + kv4)
        result = PropagationResult(KinematicState(r_new, v_new))

        if not with_stm:
            return result, None

        # Variational equations evaluated on the same stage positions.
        # Phi stages: K_i = A(r_i) * (Phi_0 + c_i dt K_{i-1}), with Phi_0 = I.
        I6 = np.eye(6)
        A1 = self.state_matrix(r)
        A2 = self.state_matrix(r2)
        A3 = self.state_matrix(r3)
        A4 = self.state_matrix(r4)
        K1 = A1
        K2 = A2 @ (I6 + 0.5 * dt * K1)
        K3 = A3 @ (I6 + 0.5 * dt * K2)
        K4 = A4 @ (I6 + dt * K3)
        Phi = I6 + (dt / 6.0) * (K1 + 2.0 * K2 + 2.0 * K3 + K4)
        return result, Phi

    # ------------------------------------------------------------------ #
    def propagate(self, state: KinematicState, dt: float,
                  epoch: Optional[float] = None) -> PropagationResult:
        """
        Advance *state* by one RK4 step of *dt* seconds.

        Parameters
        ----------
        state : KinematicState
            State at the start of the step.
        dt : float
            Step size (s), must be > 0.
        epoch : float, optional
            Epoch of *state*; only used to stamp a fault.

        Returns
        -------
        PropagationResult
            New state, or the input state plus a DegenerateOrbitFault.

        Raises
        ------
        ConfigurationFault
            If dt <= 0.
        """
        result, _ = self._rk4(state, dt, with_stm=False, epoch=epoch)
        return result

    def propagate_with_transition(self, state: KinematicState, dt: float,
                                  epoch: Optional[float] = None
                                  ) -> Tuple[PropagationResult, Optional[np.ndarray]]:
        """
        Advance *state* and return the 6x6 state-transition matrix of the
        step.  Phi is None when the step was skipped.
        """
        return self._rk4(state, dt, with_stm=True, epoch=epoch)

    def transition_matrix(self, state: KinematicState, dt: float) -> np.ndarray:
        """
        6x6 state-transition matrix linearised about *state*.

        Raises
        ------
        DegenerateOrbitFault
            If the step cannot be taken.
        """
        result, Phi = self._rk4(state, dt, with_stm=True, epoch=None)
        if result.fault is not None:
            raise result.fault
        return Phi

    def propagate_many(self, state: KinematicState, dt: float, n_steps: int,
                       epoch: float = 0.0) -> PropagationResult:
        """
        Apply *n_steps* consecutive steps.  Stops at the first fault and
        returns the last valid state with that fault.
        """
        current = state
        for k in range(n_steps):
            result = self.propagate(current, dt, epoch=epoch + k * dt)
            if result.fault is not None:
                return result
            current = result.state
        return PropagationResult(current)


# =============================================================================
# ORBIT HELPERS
# =============================================================================

def orbital_period(a: float, mu: float) -> float:
    """
    Keplerian orbital period.

        T = 2 pi sqrt(a^3 / mu)
    """
    return TWO_PI * np.sqrt(a ** 3 / mu)


def circular_orbit_state(radius: float, mu: float,
                         inclination: float = 0.0) -> KinematicState:
    """
    State on a circular orbit of *radius* km, starting on the +x axis.

    The velocity vector is tilted out of the x-y plane by *inclination*
    (rad).
    """
    v_circ = np.sqrt(mu / radius)
    return KinematicState(
        position=[radius, 0.0, 0.0],
        velocity=[0.0, v_circ * np.cos(inclination), v_circ * np.sin(inclination)],
    )
