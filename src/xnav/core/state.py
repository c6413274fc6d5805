"""
===============================================================================
XNAV PROJECT - State and Observation Records
===============================================================================
Value types passed between the engine's components:

    KinematicState  -- position (km) and velocity (km/s).  Immutable; the
                       simulator's true state and the filter's estimate are
                       always two distinct instances and never alias.
    Observation     -- one barycentric TOA for one (epoch, pulsar) pair.
    FilterSnapshot  -- read-only copy of the filter's state for telemetry.

All arrays are copied on construction and flagged read-only, so a record
handed to another component cannot be modified behind its owner's back.
===============================================================================
"""

from dataclasses import dataclass
from typing import Optional

import numpy as np


def _frozen_array(values, shape) -> np.ndarray:
    arr = np.array(values, dtype=np.float64).reshape(shape)
    arr.setflags(write=False)
    return arr


@dataclass(frozen=True)
class KinematicState:
    """
    Translational state of a spacecraft at one instant.

    Attributes
    ----------
    position : np.ndarray
        3-element barycentric position (km).
    velocity : np.ndarray
        3-element barycentric velocity (km/s).
    """
    position: np.ndarray
    velocity: np.ndarray

    def __post_init__(self):
        object.__setattr__(self, 'position', _frozen_array(self.position, (3,)))
        object.__setattr__(self, 'velocity', _frozen_array(self.velocity, (3,)))

    @classmethod
    def from_vector(cls, x: np.ndarray) -> 'KinematicState':
        """Build a state from a 6-vector [r, v]."""
        x = np.asarray(x, dtype=np.float64).reshape(6)
        return cls(position=x[0:3], velocity=x[3:6])

    def as_vector(self) -> np.ndarray:
        """Return a fresh (writable) 6-vector [r, v]."""
        return np.concatenate([self.position, self.velocity])

    @property
    def radius(self) -> float:
        """Magnitude of the position vector (km)."""
        return float(np.linalg.norm(self.position))

    @property
    def speed(self) -> float:
        """Magnitude of the velocity vector (km/s)."""
        return float(np.linalg.norm(self.velocity))

    def __eq__(self, other):
        if not isinstance(other, KinematicState):
            return NotImplemented
        return (np.array_equal(self.position, other.position)
                and np.array_equal(self.velocity, other.velocity))

    __hash__ = None


@dataclass(frozen=True)
class Observation:
    """
    A single pulsar TOA measurement.

    Attributes
    ----------
    epoch : float
        Topocentric (spacecraft clock) time stamp of the measurement (s).
    toa : float
        Observed barycentric time of arrival (s).
    variance : float
        Measurement noise variance R (s^2).
    pulsar : str
        Name of the source pulsar.
    n_photons : int, optional
        Number of photons folded (photon-counting mode only).
    shapiro_clamped : bool
        True when the Shapiro term was clamped while synthesising the TOA.
    """
    epoch: float
    toa: float
    variance: float
    pulsar: str
    n_photons: Optional[int] = None
    shapiro_clamped: bool = False

    @property
    def sigma(self) -> float:
        """1-sigma TOA uncertainty (s)."""
        return float(np.sqrt(self.variance))


@dataclass(frozen=True)
class FilterSnapshot:
    """Read-only copy of the filter context after an epoch."""
    epoch: float
    state: KinematicState
    covariance: np.ndarray

    def __post_init__(self):
        object.__setattr__(self, 'covariance', _frozen_array(self.covariance, (6, 6)))

    @property
    def sigma(self) -> np.ndarray:
        """1-sigma uncertainties from the covariance diagonal."""
        return np.sqrt(np.diag(self.covariance))
