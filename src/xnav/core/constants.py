"""
===============================================================================
XNAV PROJECT - Physical and Astronomical Constants
===============================================================================
Central repository for all physical constants used by the pulsar navigation
engine. Units are kilometres and seconds throughout (km, km/s, km^3/s^2),
matching the kinematic state. Photon quantities use the X-ray astronomy
convention of ph/cm^2/s for flux and cm^2 for detector effective area.

These values come from IAU 2012 / IERS standards where applicable.
===============================================================================
"""

import numpy as np


# =============================================================================
# MATHEMATICAL CONSTANTS
# =============================================================================
PI = np.pi
TWO_PI = 2.0 * np.pi
DEG2RAD = PI / 180.0
RAD2DEG = 180.0 / PI
HOUR2DEG = 15.0                        # 1 hour of right ascension

# =============================================================================
# FUNDAMENTAL PHYSICAL CONSTANTS
# =============================================================================
SPEED_OF_LIGHT = 299792.458            # km/s
AU = 149597870.7                       # Astronomical Unit in km
SECONDS_PER_DAY = 86400.0
JULIAN_YEAR = 365.25 * SECONDS_PER_DAY  # s
MJD_J2000 = 51544.5                    # MJD of the J2000.0 epoch

# =============================================================================
# SUN PARAMETERS
# =============================================================================
SUN_MU = 1.32712440018e11              # GM of the Sun (km^3/s^2)
SUN_RADIUS = 695700.0                  # Nominal photospheric radius (km)
T_SUN = SUN_MU / SPEED_OF_LIGHT ** 3   # GM/c^3 ~ 4.925e-6 s

# =============================================================================
# EARTH PARAMETERS (for planet-centred scenarios)
# =============================================================================
EARTH_MU = 398600.4418                 # km^3/s^2
EARTH_EQUATORIAL_RADIUS = 6378.137     # WGS84 equatorial radius (km)
EARTH_J2 = 1.08263e-3                  # J2 oblateness coefficient

# =============================================================================
# JUPITER PARAMETERS
# =============================================================================
JUPITER_MU = 1.26686534e8              # km^3/s^2
JUPITER_RADIUS = 71492.0               # Equatorial radius (km)
JUPITER_J2 = 0.01475

# =============================================================================
# TIME-TRANSFER DEFAULTS
# =============================================================================
# Amplitude of the dominant annual term of TDB - TT (Fairhead & Bretagnon).
EINSTEIN_ANNUAL_AMPLITUDE = 1.657e-3   # s
# Floor applied to (1 - cos theta) inside the Shapiro logarithm.
SHAPIRO_FLOOR = 1.0e-12

# =============================================================================
# PULSE PROFILE
# =============================================================================
# Standard deviation over FWHM for a Gaussian pulse: 1 / (2 sqrt(2 ln 2)).
GAUSSIAN_FWHM_TO_SIGMA = 1.0 / (2.0 * np.sqrt(2.0 * np.log(2.0)))


def get_body_mu(body_name: str) -> float:
    """
    Look up gravitational parameter by body name.

    Args:
        body_name: One of 'sun', 'earth', 'jupiter'

    Returns:
        Gravitational parameter mu in km^3/s^2

    Raises:
        ValueError: If body_name is not recognized
    """
    lookup = {
        'sun': SUN_MU,
        'earth': EARTH_MU,
        'jupiter': JUPITER_MU,
    }
    if body_name.lower() not in lookup:
        raise ValueError(f"Unknown body: {body_name}. Valid: {list(lookup.keys())}")
    return lookup[body_name.lower()]


def get_body_radius(body_name: str) -> float:
    """
    Look up equatorial radius by body name.

    Args:
        body_name: One of 'sun', 'earth', 'jupiter'

    Returns:
        Radius in km
    """
    lookup = {
        'sun': SUN_RADIUS,
        'earth': EARTH_EQUATORIAL_RADIUS,
        'jupiter': JUPITER_RADIUS,
    }
    if body_name.lower() not in lookup:
        raise ValueError(f"Unknown body: {body_name}. Valid: {list(lookup.keys())}")
    return lookup[body_name.lower()]
