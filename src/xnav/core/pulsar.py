"""
===============================================================================
XNAV PROJECT - Pulsar Model
===============================================================================
Static astrometric and timing parameters of one X-ray pulsar.

The record is immutable and shared read-only by every component for the
lifetime of a simulation.  The pulse-phase model is the usual spin-down
Taylor series evaluated at the Solar System Barycenter (SSB):

    phase(T) = f0 * (T - T_ref) + 0.5 * f1 * (T - T_ref)^2      [cycles]

with f0 = 1/P and f1 = -Pdot / P^2.
===============================================================================
"""

from dataclasses import dataclass, field

import numpy as np

from xnav.core.constants import DEG2RAD
from xnav.core.faults import ConfigurationFault


def direction_from_radec(ra: float, dec: float) -> np.ndarray:
    """
    Unit vector towards (ra, dec) in the barycentric equatorial frame.

    Parameters
    ----------
    ra, dec : float
        Right ascension and declination in radians.

    Returns
    -------
    np.ndarray
        3-element unit vector.
    """
    cos_dec = np.cos(dec)
    return np.array([
        cos_dec * np.cos(ra),
        cos_dec * np.sin(ra),
        np.sin(dec),
    ], dtype=np.float64)


@dataclass(frozen=True)
class PulsarModel:
    """
    Immutable per-pulsar parameter record.

    Attributes
    ----------
    name : str
        Pulsar designation (e.g. 'J0437-4715').
    ra : float
        Right ascension (rad).
    dec : float
        Declination (rad).
    period : float
        Rotation period P (s).  Must be > 0.
    period_derivative : float
        Pdot (s/s).
    reference_epoch : float
        Epoch T_ref (s, barycentric) at which phase = 0.
    flux : float
        Integrated pulsed X-ray flux (ph/cm^2/s).  Must be > 0.
    width : float
        Pulse full width at half maximum (s).  Must satisfy 0 < W < P.
    """
    name: str
    ra: float
    dec: float
    period: float
    period_derivative: float = 0.0
    reference_epoch: float = 0.0
    flux: float = 1.0
    width: float = 1.0e-4
    direction: np.ndarray = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        if not np.isfinite(self.period) or self.period <= 0.0:
            raise ConfigurationFault(
                f"Pulsar {self.name}: period must be > 0, got {self.period}"
            )
        if not np.isfinite(self.flux) or self.flux <= 0.0:
            raise ConfigurationFault(
                f"Pulsar {self.name}: flux must be > 0, got {self.flux}"
            )
        if not (0.0 < self.width < self.period):
            raise ConfigurationFault(
                f"Pulsar {self.name}: width must satisfy 0 < W < P, "
                f"got W={self.width}, P={self.period}"
            )
        n = direction_from_radec(self.ra, self.dec)
        n.setflags(write=False)
        object.__setattr__(self, 'direction', n)

    # ------------------------------------------------------------------ #
    #  Alternative constructors
    # ------------------------------------------------------------------ #
    @classmethod
    def from_degrees(cls, name: str, ra_deg: float, dec_deg: float,
                     period: float, **kwargs) -> 'PulsarModel':
        """Build a record with RA/Dec given in degrees."""
        return cls(name=name, ra=ra_deg * DEG2RAD, dec=dec_deg * DEG2RAD,
                   period=period, **kwargs)

    @classmethod
    def from_frequency(cls, name: str, ra: float, dec: float, f0: float,
                       f1: float = 0.0, **kwargs) -> 'PulsarModel':
        """Build a record from spin frequency f0 (Hz) and its derivative f1."""
        if f0 <= 0.0:
            raise ConfigurationFault(
                f"Pulsar {name}: spin frequency must be > 0, got {f0}"
            )
        return cls(name=name, ra=ra, dec=dec, period=1.0 / f0,
                   period_derivative=-f1 / f0 ** 2, **kwargs)

    # ------------------------------------------------------------------ #
    #  Timing model
    # ------------------------------------------------------------------ #
    @property
    def frequency(self) -> float:
        """Spin frequency f0 (Hz)."""
        return 1.0 / self.period

    @property
    def frequency_derivative(self) -> float:
        """Spin-down rate f1 (Hz/s)."""
        return -self.period_derivative / self.period ** 2

    def phase(self, t_bary: float) -> float:
        """Pulse phase in cycles at barycentric time *t_bary*."""
        dt = t_bary - self.reference_epoch
        return self.frequency * dt + 0.5 * self.frequency_derivative * dt * dt

    def phase_offset(self, t_from: float, t_to: float) -> float:
        """
        phase(t_to) - phase(t_from) in cycles, without forming the two
        large absolute phases.
        """
        delta = t_to - t_from
        dt = t_from - self.reference_epoch
        return delta * (self.frequency + self.frequency_derivative * (dt + 0.5 * delta))

    def period_at(self, t_bary: float) -> float:
        """Instantaneous period at barycentric time *t_bary* (s)."""
        return self.period + self.period_derivative * (t_bary - self.reference_epoch)
