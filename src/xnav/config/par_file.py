"""
===============================================================================
XNAV PROJECT - Pulsar Ephemeris (.par) Reader
===============================================================================
Reads the subset of a TEMPO/TEMPO2-style parameter file needed for
navigation and turns it into a PulsarModel.

Recognised keys
---------------
    PSRJ / PSR      pulsar name
    RAJ             right ascension, hh:mm:ss.s (J2000)
    DECJ            declination, [+-]dd:mm:ss.s (J2000)
    F0 / P0         spin frequency (Hz) or period (s)
    F1 / P1         frequency derivative (Hz/s) or period derivative (s/s)
    PEPOCH          reference epoch of the spin parameters (MJD)
    FLUX            integrated pulsed X-ray flux (ph/cm^2/s)
    W50             pulse FWHM (ms, ATNF catalogue convention)
    WIDTH           pulse FWHM (s)

Anything else (fit flags, uncertainties, binary and DM parameters) is
ignored.  Fortran-style exponents ("1.5D-15") are accepted.  Epochs are
converted to seconds past the scenario reference epoch (J2000 by default).
===============================================================================
"""

import logging
import os
from typing import Dict, Optional

from xnav.core.constants import DEG2RAD, HOUR2DEG, MJD_J2000, SECONDS_PER_DAY
from xnav.core.faults import ConfigurationFault
from xnav.core.pulsar import PulsarModel

logger = logging.getLogger(__name__)

# Pulse FWHM as a fraction of the period when the file gives no width.
DEFAULT_DUTY_CYCLE = 0.05


def _sexagesimal(text: str, what: str):
    parts = text.strip().split(':')
    if not 1 <= len(parts) <= 3 or any(p == '' for p in parts):
        raise ConfigurationFault(f"Malformed {what}: {text!r}")
    try:
        values = [float(p) for p in parts]
    except ValueError:
        raise ConfigurationFault(f"Malformed {what}: {text!r}") from None
    values += [0.0] * (3 - len(values))
    return values


def parse_hms(text: str) -> float:
    """Right ascension 'hh:mm:ss.s' -> radians."""
    h, m, s = _sexagesimal(text, "RAJ")
    if not (0.0 <= h < 24.0 and 0.0 <= m < 60.0 and 0.0 <= s < 60.0):
        raise ConfigurationFault(f"RAJ out of range: {text!r}")
    return (h + m / 60.0 + s / 3600.0) * HOUR2DEG * DEG2RAD


def parse_dms(text: str) -> float:
    """Declination '[+-]dd:mm:ss.s' -> radians."""
    d, m, s = _sexagesimal(text, "DECJ")
    # The sign lives on the degrees field, which may be "-00".
    sign = -1.0 if text.strip().startswith('-') else 1.0
    value = abs(d) + m / 60.0 + s / 3600.0
    if value > 90.0 or not (0.0 <= m < 60.0 and 0.0 <= s < 60.0):
        raise ConfigurationFault(f"DECJ out of range: {text!r}")
    return sign * value * DEG2RAD


def parse_float(text: str, key: str) -> float:
    """Parse a numeric .par field, accepting Fortran 'D' exponents."""
    try:
        return float(text.replace('D', 'E').replace('d', 'e'))
    except ValueError:
        raise ConfigurationFault(f"Malformed {key} value: {text!r}") from None


def mjd_to_seconds(mjd: float, reference_mjd: float = MJD_J2000) -> float:
    """Seconds elapsed from *reference_mjd* to *mjd*."""
    return (mjd - reference_mjd) * SECONDS_PER_DAY


def read_par_records(path: str) -> Dict[str, str]:
    """
    Raw key -> value mapping of a .par file.

    Blank lines and lines starting with '#' or 'C ' are skipped.  A key that
    appears twice keeps its first value.
    """
    if not os.path.isfile(path):
        raise ConfigurationFault(f"Ephemeris file not found: {path}")
    records: Dict[str, str] = {}
    with open(path, 'r') as f:
        for line in f:
            stripped = line.strip()
            if not stripped or stripped.startswith('#') or stripped.startswith('C '):
                continue
            parts = stripped.split()
            if len(parts) < 2:
                continue
            records.setdefault(parts[0].upper(), parts[1])
    return records


def pulsar_from_records(records: Dict[str, str], source: str = '<par>',
                        reference_mjd: float = MJD_J2000,
                        flux: Optional[float] = None,
                        width: Optional[float] = None) -> PulsarModel:
    """
    Build a PulsarModel from parsed .par records.

    Parameters
    ----------
    records : dict
        Output of :func:`read_par_records`.
    source : str
        Label used in error messages.
    reference_mjd : float
        Scenario time origin (MJD).
    flux, width : float, optional
        Values used when the file has no FLUX or W50/WIDTH entry.  A
        missing flux with no fallback is an error; a missing width falls
        back to DEFAULT_DUTY_CYCLE of the period.

    Raises
    ------
    ConfigurationFault
        On missing or malformed required fields.
    """
    name = records.get('PSRJ') or records.get('PSR')
    if not name:
        raise ConfigurationFault(f"{source}: missing PSRJ/PSR")
    for key in ('RAJ', 'DECJ'):
        if key not in records:
            raise ConfigurationFault(f"{source}: missing {key}")
    ra = parse_hms(records['RAJ'])
    dec = parse_dms(records['DECJ'])

    if 'F0' in records:
        f0 = parse_float(records['F0'], 'F0')
        if f0 <= 0.0:
            raise ConfigurationFault(f"{source}: F0 must be > 0, got {f0}")
        period = 1.0 / f0
        f1 = parse_float(records['F1'], 'F1') if 'F1' in records else 0.0
        pdot = -f1 / f0 ** 2
    elif 'P0' in records:
        period = parse_float(records['P0'], 'P0')
        pdot = parse_float(records['P1'], 'P1') if 'P1' in records else 0.0
    else:
        raise ConfigurationFault(f"{source}: missing F0/P0")

    epoch = 0.0
    if 'PEPOCH' in records:
        epoch = mjd_to_seconds(parse_float(records['PEPOCH'], 'PEPOCH'), reference_mjd)

    if 'FLUX' in records:
        flux = parse_float(records['FLUX'], 'FLUX')
    elif flux is None:
        raise ConfigurationFault(f"{source}: missing FLUX and no default given")

    if 'WIDTH' in records:
        width = parse_float(records['WIDTH'], 'WIDTH')
    elif 'W50' in records:
        width = parse_float(records['W50'], 'W50') * 1.0e-3
    elif width is None:
        width = DEFAULT_DUTY_CYCLE * period

    return PulsarModel(name=name, ra=ra, dec=dec, period=period,
                       period_derivative=pdot, reference_epoch=epoch,
                       flux=flux, width=width)


def load_par_file(path: str, reference_mjd: float = MJD_J2000,
                  flux: Optional[float] = None,
                  width: Optional[float] = None) -> PulsarModel:
    """
    Load one pulsar ephemeris from a .par file.

    Examples
    --------
    >>> psr = load_par_file('config/pulsars/J0437-4715.par')
    >>> psr.name
    'J0437-4715'
    """
    records = read_par_records(path)
    pulsar = pulsar_from_records(records, source=path, reference_mjd=reference_mjd,
                                 flux=flux, width=width)
    logger.info("Loaded %s from %s (P=%.6f s, F=%.3g ph/cm^2/s)",
                pulsar.name, path, pulsar.period, pulsar.flux)
    return pulsar
