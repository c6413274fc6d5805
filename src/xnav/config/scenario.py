"""
===============================================================================
XNAV PROJECT - Scenario Configuration
===============================================================================
Loads a YAML scenario file into a tree of typed, validated settings.

Layout of a scenario file (all sections optional):

    dynamics:        model, central_body (sun | earth | jupiter) or mu and
                     body_radius, j2, min_radius, third_bodies
    time_transfer:   einstein_amplitude, clock_rate_term, shapiro_enabled, ...
    detector:        area_cm2, integration_time, shape_factor, mode, n_bins
    filter:          initial_sigma_position / initial_sigma_velocity
                     (or initial_covariance), initial_error, process_noise,
                     process_noise_model, spectral_density, wrap_phase
    run:             n_epochs, dt, start_epoch, reference_mjd, seed, workers
    initial_state:   position + velocity, or circular_radius (+ inclination_deg)
    maneuvers:       list of {epoch_index, delta_v}   (truth only)
    pulsars:         list of inline records or {par: path}

Every value is validated when the corresponding component configuration is
built, so a bad file fails here with a ConfigurationFault, never in the
middle of a run.
===============================================================================
"""

import logging
import os
from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import yaml

from xnav.config.par_file import load_par_file
from xnav.core.constants import (
    AU, DEG2RAD, MJD_J2000, SUN_MU, get_body_mu, get_body_radius,
)
from xnav.core.covariance import validate_config_matrix
from xnav.core.faults import ConfigurationFault
from xnav.core.pulsar import PulsarModel
from xnav.core.state import KinematicState
from xnav.dynamics.propagator import DynamicsConfig, ThirdBody, circular_orbit_state
from xnav.navigation.ekf import ProcessNoise
from xnav.navigation.photon_simulator import DetectorConfig
from xnav.timing.relativistic import TimeTransferConfig

logger = logging.getLogger(__name__)


# =============================================================================
# SETTINGS BLOCKS
# =============================================================================

@dataclass
class FilterSettings:
    """
    Filter initialisation.

    Attributes
    ----------
    initial_sigma_position : float
        1-sigma initial position uncertainty per axis (km).
    initial_sigma_velocity : float
        1-sigma initial velocity uncertainty per axis (km/s).
    initial_covariance : array_like, optional
        Full P0 (6x6) or its diagonal; overrides the two sigmas.
    initial_error : array_like, optional
        Fixed initial estimation error x_est - x_true (6,).  When omitted
        the error is drawn from N(0, P0) with the run seed.
    process_noise : array_like, optional
        Q (6x6) or its diagonal.  Zero when omitted.
    process_noise_model : str
        'constant' or 'white_acceleration'.
    spectral_density : float
        White-acceleration spectral density (km^2/s^3).
    wrap_phase : bool
        Wrap TOA innovations into one pulse period.
    """
    initial_sigma_position: float = 100.0
    initial_sigma_velocity: float = 1.0e-3
    initial_covariance: Optional[Any] = None
    initial_error: Optional[Any] = None
    process_noise: Optional[Any] = None
    process_noise_model: str = 'constant'
    spectral_density: float = 0.0
    wrap_phase: bool = True

    def covariance(self) -> np.ndarray:
        """Initial covariance P0."""
        if self.initial_covariance is not None:
            return validate_config_matrix(self.initial_covariance, "Initial covariance P0")
        if self.initial_sigma_position <= 0.0 or self.initial_sigma_velocity <= 0.0:
            raise ConfigurationFault("Initial sigmas must be > 0")
        return np.diag([self.initial_sigma_position ** 2] * 3
                       + [self.initial_sigma_velocity ** 2] * 3)

    def noise(self) -> ProcessNoise:
        return ProcessNoise(self.process_noise, model=self.process_noise_model,
                            spectral_density=self.spectral_density)


@dataclass
class RunSettings:
    """
    Run length and reproducibility.

    Attributes
    ----------
    n_epochs : int
        Number of filter epochs.
    dt : float
        Epoch spacing (s).
    start_epoch : float
        Topocentric time of the initial state (s past reference_mjd).
    reference_mjd : float
        Time origin of the scenario (MJD).
    seed : int
        Master seed; every random stream derives from it.
    workers : int
        Threads used to generate per-pulsar observations (1 = serial).
    """
    n_epochs: int = 100
    dt: float = 60.0
    start_epoch: float = 0.0
    reference_mjd: float = MJD_J2000
    seed: int = 42
    workers: int = 1

    def __post_init__(self):
        if self.n_epochs < 0:
            raise ConfigurationFault(f"n_epochs must be >= 0, got {self.n_epochs}")
        if self.dt <= 0.0:
            raise ConfigurationFault(f"dt must be > 0, got {self.dt}")
        if self.workers < 1:
            raise ConfigurationFault(f"workers must be >= 1, got {self.workers}")


@dataclass(frozen=True)
class Maneuver:
    """Impulsive velocity change applied to the TRUE state only."""
    epoch_index: int
    delta_v: np.ndarray

    def __post_init__(self):
        dv = np.array(self.delta_v, dtype=np.float64).reshape(3)
        dv.setflags(write=False)
        object.__setattr__(self, 'delta_v', dv)
        if self.epoch_index < 1:
            raise ConfigurationFault(
                f"Maneuver epoch_index must be >= 1, got {self.epoch_index}"
            )


@dataclass
class ScenarioConfig:
    """Everything needed to build a SimulationLoop."""
    dynamics: DynamicsConfig = field(default_factory=DynamicsConfig)
    time_transfer: TimeTransferConfig = field(default_factory=TimeTransferConfig)
    detector: DetectorConfig = field(default_factory=DetectorConfig)
    filter: FilterSettings = field(default_factory=FilterSettings)
    run: RunSettings = field(default_factory=RunSettings)
    initial_state: KinematicState = field(
        default_factory=lambda: circular_orbit_state(AU, SUN_MU))
    maneuvers: Tuple[Maneuver, ...] = ()
    pulsars: List[PulsarModel] = field(default_factory=list)

    def with_overrides(self, n_epochs: Optional[int] = None,
                       seed: Optional[int] = None,
                       workers: Optional[int] = None) -> 'ScenarioConfig':
        """Copy with run settings replaced (command-line overrides)."""
        run = self.run
        if n_epochs is not None:
            run = replace(run, n_epochs=n_epochs)
        if seed is not None:
            run = replace(run, seed=seed)
        if workers is not None:
            run = replace(run, workers=workers)
        return replace(self, run=run)


# =============================================================================
# DICTIONARY -> SETTINGS
# =============================================================================

def _section(data: Dict[str, Any], name: str) -> Dict[str, Any]:
    block = data.get(name) or {}
    if not isinstance(block, dict):
        raise ConfigurationFault(f"Section '{name}' must be a mapping")
    return block


def _number(value: Any, kind: type, label: str):
    """
    Convert a numeric setting, accepting numbers written as strings.

    YAML 1.1 reads an unsigned exponent such as 1.3e11 as a string, so
    strings are parsed here rather than passed through to the component.
    """
    if isinstance(value, bool):
        raise ConfigurationFault(f"{label} must be a number, got {value!r}")
    if kind is int and isinstance(value, int):
        return value
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ConfigurationFault(f"{label} must be a number, got {value!r}") from None
    if not np.isfinite(number):
        raise ConfigurationFault(f"{label} must be a finite number, got {value!r}")
    if kind is int:
        if not number.is_integer():
            raise ConfigurationFault(f"{label} must be an integer, got {value!r}")
        return int(number)
    return number


def _numeric_fields(cls) -> Dict[str, type]:
    return {f.name: f.type for f in fields(cls) if f.init and f.type in (float, int)}


def _coerce(block: Dict[str, Any], kinds: Dict[str, type], name: str) -> Dict[str, Any]:
    out = dict(block)
    for key, kind in kinds.items():
        if out.get(key) is not None:
            out[key] = _number(out[key], kind, f"{name}.{key}")
    return out


def _build(cls, block: Dict[str, Any], name: str):
    if not isinstance(block, dict):
        raise ConfigurationFault(f"Section '{name}' must be a mapping")
    block = _coerce(block, _numeric_fields(cls), name)
    try:
        return cls(**block)
    except TypeError as exc:
        raise ConfigurationFault(f"Section '{name}': {exc}") from None


def _dynamics(block: Dict[str, Any]) -> DynamicsConfig:
    block = dict(block)
    central = block.pop('central_body', None)
    if central is not None:
        try:
            block.setdefault('mu', get_body_mu(str(central)))
            block.setdefault('body_radius', get_body_radius(str(central)))
            block.setdefault('min_radius', block['body_radius'])
        except ValueError as exc:
            raise ConfigurationFault(f"dynamics.central_body: {exc}") from None
    bodies = []
    for entry in block.pop('third_bodies', None) or []:
        bodies.append(_build(ThirdBody, entry, 'dynamics.third_bodies'))
    return _build(DynamicsConfig, dict(block, third_bodies=tuple(bodies)), 'dynamics')


def _initial_state(block: Dict[str, Any], mu: float) -> KinematicState:
    if not block:
        return circular_orbit_state(AU, mu)
    if 'circular_radius' in block:
        radius = _number(block['circular_radius'], float, 'initial_state.circular_radius')
        inc = _number(block.get('inclination_deg', 0.0), float,
                      'initial_state.inclination_deg') * DEG2RAD
        return circular_orbit_state(radius, mu, inc)
    try:
        return KinematicState(position=block['position'], velocity=block['velocity'])
    except KeyError as exc:
        raise ConfigurationFault(f"initial_state is missing {exc}") from None
    except ValueError as exc:
        raise ConfigurationFault(f"initial_state: {exc}") from None


PULSAR_NUMBERS = dict(_numeric_fields(PulsarModel),
                      ra_deg=float, dec_deg=float, f0=float, f1=float)


def _pulsar(entry: Dict[str, Any], base_dir: str, reference_mjd: float) -> PulsarModel:
    if not isinstance(entry, dict):
        raise ConfigurationFault(f"Pulsar entry must be a mapping, got {entry!r}")
    label = f"pulsars.{entry.get('name', '?')}"
    entry = _coerce(entry, PULSAR_NUMBERS, label)
    if 'par' in entry:
        path = entry.pop('par')
        if not os.path.isabs(path):
            path = os.path.join(base_dir, path)
        return load_par_file(path, reference_mjd=reference_mjd,
                             flux=entry.get('flux'), width=entry.get('width'))
    if 'ra_deg' in entry or 'dec_deg' in entry:
        entry['ra'] = entry.pop('ra_deg', 0.0) * DEG2RAD
        entry['dec'] = entry.pop('dec_deg', 0.0) * DEG2RAD
    if 'f0' in entry:
        f0 = entry.pop('f0')
        f1 = entry.pop('f1', 0.0)
        return _build_pulsar(PulsarModel.from_frequency, entry, f0=f0, f1=f1)
    return _build_pulsar(PulsarModel, entry)


def _build_pulsar(factory, entry, **extra):
    try:
        return factory(**entry, **extra)
    except TypeError as exc:
        raise ConfigurationFault(f"Pulsar entry {entry.get('name', '?')}: {exc}") from None


def scenario_from_dict(data: Optional[Dict[str, Any]],
                       base_dir: str = '.') -> ScenarioConfig:
    """
    Build a ScenarioConfig from a parsed YAML mapping.

    Parameters
    ----------
    data : dict or None
        Parsed YAML.  None gives the default scenario.
    base_dir : str
        Directory against which relative .par paths are resolved.
    """
    data = data or {}
    if not isinstance(data, dict):
        raise ConfigurationFault("Scenario file must contain a mapping")

    dynamics = _dynamics(_section(data, 'dynamics'))
    time_transfer = _build(TimeTransferConfig, _section(data, 'time_transfer'),
                           'time_transfer')
    detector = _build(DetectorConfig, _section(data, 'detector'), 'detector')
    filter_settings = _build(FilterSettings, _section(data, 'filter'), 'filter')
    run = _build(RunSettings, _section(data, 'run'), 'run')
    initial_state = _initial_state(_section(data, 'initial_state'), dynamics.mu)

    maneuvers = tuple(_build(Maneuver, m, 'maneuvers')
                      for m in data.get('maneuvers') or [])
    pulsars = [_pulsar(p, base_dir, run.reference_mjd)
               for p in data.get('pulsars') or []]

    # Validate filter matrices up front.
    filter_settings.covariance()
    filter_settings.noise()

    return ScenarioConfig(dynamics=dynamics, time_transfer=time_transfer,
                          detector=detector, filter=filter_settings, run=run,
                          initial_state=initial_state, maneuvers=maneuvers,
                          pulsars=pulsars)


def load_scenario(path: str) -> ScenarioConfig:
    """
    Load a scenario YAML file.

    Args:
        path: Path to the YAML file.

    Returns:
        Validated ScenarioConfig.

    Raises:
        ConfigurationFault: If the file is missing, not valid YAML, or
            holds an invalid value.
    """
    if not os.path.isfile(path):
        raise ConfigurationFault(f"Scenario file not found: {path}")
    logger.info("Loading scenario from: %s", path)
    with open(path, 'r') as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as exc:
            raise ConfigurationFault(f"Invalid YAML in {path}: {exc}") from None
    scenario = scenario_from_dict(data, base_dir=os.path.dirname(os.path.abspath(path)))
    logger.info("Scenario: %d pulsars, %d epochs of %.1f s, model=%s",
                len(scenario.pulsars), scenario.run.n_epochs, scenario.run.dt,
                scenario.dynamics.model.value)
    return scenario


def default_catalog() -> List[PulsarModel]:
    """
    Built-in four-pulsar constellation used when a scenario names none.

    Positions and periods are the catalogue values; fluxes and widths are
    round illustrative numbers, not measured X-ray fluxes.
    """
    return [
        PulsarModel.from_degrees('B1937+21', 294.9106, 21.5831, 1.5578e-3,
                                 flux=0.5, width=5.0e-5),
        PulsarModel.from_degrees('J0437-4715', 69.3162, -47.2525, 5.7575e-3,
                                 flux=0.8, width=2.0e-4),
        PulsarModel.from_degrees('B1821-24', 276.1333, -24.8697, 3.0543e-3,
                                 flux=0.3, width=1.0e-4),
        PulsarModel.from_degrees('J2124-3358', 321.1829, -33.9789, 4.9311e-3,
                                 flux=0.25, width=2.0e-4),
    ]
