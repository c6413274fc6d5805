"""
===============================================================================
XNAV PROJECT - Relativistic Time Transfer
===============================================================================
Converts a topocentric (spacecraft clock) pulse-arrival time into
Barycentric Coordinate Time at the Solar System Barycenter (SSB):

    T_SSB = t_topo + Delta_Roemer + Delta_Einstein - Delta_Shapiro

Roemer delay
------------
Geometric light-travel time between the spacecraft and the SSB along the
pulsar line of sight:

    Delta_R = (r . n) / c

A spacecraft displaced towards the pulsar receives each pulse earlier than
the SSB, hence the positive sign when mapping forward to the SSB.

Einstein delay
--------------
Clock-rate difference between the spacecraft proper time and TCB.  Modelled
as a small configurable periodic term (default: the dominant annual term of
TDB - TT, amplitude 1.657 ms) plus, optionally, the accumulated rate

    (|v|^2 / (2 c^2) + GM / (|r| c^2)) * (t - t_clock_ref)

which is the only velocity-dependent term of the measurement model.

Shapiro delay
-------------
General-relativistic delay of light passing the Sun:

    Delta_S = -(2 GM / c^3) * ln(1 - cos(theta))

theta is the angle at the Sun between the spacecraft-to-Sun direction
(-r_hat) and the pulsar line of sight n.  When theta -> 0 the line of
sight grazes the Sun and the logarithm diverges; (1 - cos theta) is then
clamped to a positive floor, a ClampedWarning is issued and the result is
flagged.  NaN / Inf are never produced.

References
----------
    [1] Backer & Hellings, "Pulsar Timing and General Relativity",
        ARA&A 24, 1986.
    [2] Sheikh et al., "Spacecraft Navigation Using X-Ray Pulsars",
        JGCD 29(1), 2006.
    [3] Edwards, Hobbs & Manchester, "TEMPO2, a new pulsar timing
        package - II", MNRAS 372, 2006.
===============================================================================
"""

import logging
import warnings
from dataclasses import dataclass
from typing import Tuple

import numpy as np

from xnav.core.constants import (
    SPEED_OF_LIGHT, SUN_MU, JULIAN_YEAR, TWO_PI,
    EINSTEIN_ANNUAL_AMPLITUDE, SHAPIRO_FLOOR,
)
from xnav.core.faults import ClampedWarning, ConfigurationFault
from xnav.core.pulsar import PulsarModel

logger = logging.getLogger(__name__)

C2 = SPEED_OF_LIGHT ** 2


@dataclass(frozen=True)
class TimeTransferConfig:
    """
    Time-transfer configuration.

    Attributes
    ----------
    gm_sun : float
        Solar gravitational parameter (km^3/s^2).
    einstein_amplitude : float
        Amplitude of the periodic Einstein term (s).
    einstein_period : float
        Period of the periodic Einstein term (s).
    einstein_phase_epoch : float
        Epoch at which the periodic term crosses zero going up (s).
    clock_rate_term : bool
        Include the accumulated kinematic + gravitational clock rate.
    clock_reference_epoch : float
        Epoch at which the spacecraft clock was synchronised to TCB (s).
    shapiro_enabled : bool
        Include the solar Shapiro delay.
    shapiro_floor : float
        Lower bound applied to (1 - cos theta).
    """
    gm_sun: float = SUN_MU
    einstein_amplitude: float = EINSTEIN_ANNUAL_AMPLITUDE
    einstein_period: float = JULIAN_YEAR
    einstein_phase_epoch: float = 0.0
    clock_rate_term: bool = True
    clock_reference_epoch: float = 0.0
    shapiro_enabled: bool = True
    shapiro_floor: float = SHAPIRO_FLOOR

    def __post_init__(self):
        if self.gm_sun <= 0.0:
            raise ConfigurationFault(f"gm_sun must be > 0, got {self.gm_sun}")
        if self.einstein_period <= 0.0:
            raise ConfigurationFault(
                f"einstein_period must be > 0, got {self.einstein_period}"
            )
        if not (0.0 < self.shapiro_floor < 2.0):
            raise ConfigurationFault(
                f"shapiro_floor must lie in (0, 2), got {self.shapiro_floor}"
            )


@dataclass(frozen=True)
class TimeCorrection:
    """
    Breakdown of one topocentric-to-barycentric conversion (all in s).

    ``shapiro`` is Delta_S as defined above; it enters the barycentric time
    with a minus sign.
    """
    topocentric: float
    roemer: float
    einstein: float
    shapiro: float
    clamped: bool = False

    @property
    def total_delay(self) -> float:
        return self.roemer + self.einstein - self.shapiro

    @property
    def barycentric(self) -> float:
        return self.topocentric + self.total_delay


def shapiro_delay_for_angle(theta: float, gm: float = SUN_MU,
                            floor: float = SHAPIRO_FLOOR) -> Tuple[float, bool]:
    """
    Shapiro delay for a given Sun angle *theta* (rad).

    Returns
    -------
    delay : float
        -(2 GM / c^3) ln(max(1 - cos theta, floor))  (s)
    clamped : bool
        True when the floor was applied.
    """
    return _shapiro_from_one_minus_cos(1.0 - np.cos(theta), gm, floor)


def _shapiro_from_one_minus_cos(q: float, gm: float,
                                floor: float) -> Tuple[float, bool]:
    clamped = not (q > floor)
    if clamped:
        q = floor
    return -(2.0 * gm / SPEED_OF_LIGHT ** 3) * np.log(q), clamped


class RelativisticTimeCorrector:
    """
    Topocentric-to-barycentric time transfer for one spacecraft.

    The Shapiro and clock-rate options are resolved at construction into
    bound methods; evaluating a correction never re-inspects the flags.

    Parameters
    ----------
    config : TimeTransferConfig, optional
        Time-transfer options.  Defaults to all terms enabled.

    Examples
    --------
    >>> psr = PulsarModel.from_degrees('J0000+0000', 0.0, 0.0, period=0.01)
    >>> corr = RelativisticTimeCorrector()
    >>> tc = corr.barycentric_time(0.0, np.array([149597870.7, 0.0, 0.0]), np.zeros(3), psr)
    >>> round(tc.roemer, 3)
    499.005
    """

    def __init__(self, config: TimeTransferConfig = None) -> None:
        self.config = config if config is not None else TimeTransferConfig()
        cfg = self.config
        self._k_shapiro = 2.0 * cfg.gm_sun / SPEED_OF_LIGHT ** 3
        self._shapiro = self._shapiro_term if cfg.shapiro_enabled else self._no_shapiro
        self._shapiro_grad = (self._shapiro_gradient if cfg.shapiro_enabled
                              else self._no_shapiro_gradient)
        self._clock_rate = self._clock_rate_term if cfg.clock_rate_term else self._no_clock_rate
        self._clock_rate_grad = (self._clock_rate_gradient if cfg.clock_rate_term
                                 else self._no_clock_rate_gradient)

    # ================================================================== #
    #  Individual delay terms
    # ================================================================== #
    @staticmethod
    def roemer_delay(position: np.ndarray, pulsar: PulsarModel) -> float:
        """Geometric delay (r . n) / c in seconds."""
        return float(np.dot(position, pulsar.direction)) / SPEED_OF_LIGHT

    def einstein_delay(self, t_topo: float, position: np.ndarray,
                       velocity: np.ndarray) -> float:
        """Periodic clock correction plus the optional accumulated rate (s)."""
        cfg = self.config
        periodic = cfg.einstein_amplitude * np.sin(
            TWO_PI * (t_topo - cfg.einstein_phase_epoch) / cfg.einstein_period
        )
        return float(periodic) + self._clock_rate(t_topo, position, velocity)

    def shapiro_delay(self, position: np.ndarray,
                      pulsar: PulsarModel) -> Tuple[float, bool]:
        """
        Solar Shapiro delay Delta_S (s) and the clamp flag.

        Issues a ClampedWarning (and logs it) when the floor is applied.
        """
        return self._shapiro(position, pulsar)

    @staticmethod
    def cos_shapiro_angle(position: np.ndarray, pulsar: PulsarModel) -> float:
        """cos(theta) with theta between -r_hat and the pulsar direction."""
        r = np.linalg.norm(position)
        if r == 0.0:
            return 0.0
        return -float(np.dot(position, pulsar.direction)) / r

    def shapiro_angle(self, position: np.ndarray, pulsar: PulsarModel) -> float:
        """Sun angle theta (rad)."""
        return float(np.arccos(np.clip(self.cos_shapiro_angle(position, pulsar), -1.0, 1.0)))

    # ------------------------------------------------------------------ #
    def _shapiro_term(self, position, pulsar):
        q = 1.0 - self.cos_shapiro_angle(position, pulsar)
        delay, clamped = _shapiro_from_one_minus_cos(
            q, self.config.gm_sun, self.config.shapiro_floor
        )
        if clamped:
            msg = (f"Shapiro delay clamped for {pulsar.name}: 1 - cos(theta) = "
                   f"{q:.3e} below floor {self.config.shapiro_floor:.1e}")
            logger.warning(msg)
            warnings.warn(msg, ClampedWarning, stacklevel=3)
        return delay, clamped

    @staticmethod
    def _no_shapiro(position, pulsar):
        return 0.0, False

    def _clock_rate_term(self, t_topo, position, velocity):
        r = np.linalg.norm(position)
        if r == 0.0:
            return 0.0
        rate = np.dot(velocity, velocity) / (2.0 * C2) + self.config.gm_sun / (r * C2)
        return float(rate * (t_topo - self.config.clock_reference_epoch))

    @staticmethod
    def _no_clock_rate(t_topo, position, velocity):
        return 0.0

    # ================================================================== #
    #  Full conversion
    # ================================================================== #
    def barycentric_time(self, t_topo: float, position: np.ndarray,
                         velocity: np.ndarray,
                         pulsar: PulsarModel) -> TimeCorrection:
        """
        Convert a topocentric arrival time to barycentric time.

        Parameters
        ----------
        t_topo : float
            Topocentric arrival time (s).
        position : np.ndarray
            Barycentric spacecraft position (km).
        velocity : np.ndarray
            Barycentric spacecraft velocity (km/s).
        pulsar : PulsarModel
            Source pulsar.

        Returns
        -------
        TimeCorrection
            All delay terms and the barycentric time.
        """
        position = np.asarray(position, dtype=np.float64)
        velocity = np.asarray(velocity, dtype=np.float64)
        shapiro, clamped = self._shapiro(position, pulsar)
        return TimeCorrection(
            topocentric=float(t_topo),
            roemer=self.roemer_delay(position, pulsar),
            einstein=self.einstein_delay(t_topo, position, velocity),
            shapiro=float(shapiro),
            clamped=clamped,
        )

    # ================================================================== #
    #  Partial derivatives
    # ================================================================== #
    def gradient(self, t_topo: float, position: np.ndarray,
                 velocity: np.ndarray, pulsar: PulsarModel) -> np.ndarray:
        """
        Partial derivatives of the barycentric time with respect to the
        state [r, v] (1x6, units s/km and s/(km/s)).

        Roemer:    dT/dr = n / c
        Shapiro:   dT/dr = +k / q * (n - (r_hat . n) r_hat) / |r|,
                   q = 1 + r_hat . n  (zero when clamped)
        Clock:     dT/dr = -GM r / (|r|^3 c^2) * (t - t_ref)
                   dT/dv = v / c^2 * (t - t_ref)
        """
        position = np.asarray(position, dtype=np.float64)
        velocity = np.asarray(velocity, dtype=np.float64)
        H = np.zeros(6)
        H[0:3] = pulsar.direction / SPEED_OF_LIGHT
        H[0:3] -= self._shapiro_grad(position, pulsar)
        dr, dv = self._clock_rate_grad(t_topo, position, velocity)
        H[0:3] += dr
        H[3:6] += dv
        return H

    def _shapiro_gradient(self, position, pulsar):
        """d(Delta_S)/dr; zero inside the clamp."""
        r = np.linalg.norm(position)
        if r == 0.0:
            return np.zeros(3)
        r_hat = position / r
        n = pulsar.direction
        u = float(np.dot(r_hat, n))
        q = 1.0 + u
        if not (q > self.config.shapiro_floor):
            return np.zeros(3)
        return -self._k_shapiro / q * (n - u * r_hat) / r

    @staticmethod
    def _no_shapiro_gradient(position, pulsar):
        return np.zeros(3)

    def _clock_rate_gradient(self, t_topo, position, velocity):
        dt = t_topo - self.config.clock_reference_epoch
        r = np.linalg.norm(position)
        if r == 0.0:
            return np.zeros(3), np.zeros(3)
        dr = -self.config.gm_sun * position / (r ** 3 * C2) * dt
        dv = velocity / C2 * dt
        return dr, dv

    @staticmethod
    def _no_clock_rate_gradient(t_topo, position, velocity):
        return np.zeros(3), np.zeros(3)
