"""
===============================================================================
XNAV PROJECT - Photon Arrival Simulator Test Suite
===============================================================================
Tests for TOA noise synthesis: detector validation, the closed-form
Cramer-Rao noise level, photon folding and peak estimation, the empty
integration case, and statistical agreement of the closed-form and
photon-counting modes.
===============================================================================
"""

import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

import numpy as np
import pytest
from numpy.testing import assert_allclose

from xnav.core.constants import GAUSSIAN_FWHM_TO_SIGMA
from xnav.core.faults import ConfigurationFault
from xnav.core.pulsar import PulsarModel
from xnav.navigation.photon_simulator import (
    DetectorConfig, NoiseMode, PhotonArrivalSimulator, ToaSample,
)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def reference_pulsar():
    """F = 1.0 ph/cm^2/s, W = 0.001 * P."""
    return PulsarModel('PSR-REF', ra=0.0, dec=0.0, period=0.01, flux=1.0,
                       width=1.0e-5)


@pytest.fixture
def wide_pulsar():
    return PulsarModel('PSR-WIDE', ra=0.0, dec=0.0, period=0.01, flux=1.0,
                       width=1.0e-3)


@pytest.fixture
def closed_form():
    return PhotonArrivalSimulator(DetectorConfig(area_cm2=100.0, integration_time=600.0))


@pytest.fixture
def photon_counting():
    return PhotonArrivalSimulator(DetectorConfig(area_cm2=100.0, integration_time=600.0,
                                                 mode='photon_counting'))


# =============================================================================
# Detector configuration
# =============================================================================

class TestDetectorConfig:

    def test_defaults(self):
        det = DetectorConfig()
        assert det.mode is NoiseMode.CLOSED_FORM
        assert_allclose(det.shape_factor, 0.4246609, rtol=1e-6)

    def test_mode_from_string(self):
        assert DetectorConfig(mode='PHOTON_COUNTING').mode is NoiseMode.PHOTON_COUNTING

    @pytest.mark.parametrize("kwargs", [
        {'area_cm2': 0.0},
        {'area_cm2': -5.0},
        {'area_cm2': np.inf},
        {'integration_time': 0.0},
        {'integration_time': np.nan},
        {'shape_factor': 0.0},
        {'n_bins': 4},
        {'mode': 'lucky_guess'},
    ])
    def test_invalid_detector(self, kwargs):
        with pytest.raises(ConfigurationFault):
            DetectorConfig(**kwargs)


# =============================================================================
# Closed-form noise level
# =============================================================================

class TestNoiseLevel:

    def test_expected_photons(self, closed_form, reference_pulsar):
        assert_allclose(closed_form.expected_photons(reference_pulsar), 60000.0)

    def test_toa_sigma_formula(self, closed_form, wide_pulsar):
        expected = GAUSSIAN_FWHM_TO_SIGMA * 1.0e-3 / np.sqrt(60000.0)
        assert_allclose(closed_form.toa_sigma(wide_pulsar), expected, rtol=1e-14)
        assert_allclose(closed_form.toa_variance(wide_pulsar), expected ** 2, rtol=1e-14)

    def test_sigma_scales_with_area(self, wide_pulsar):
        small = PhotonArrivalSimulator(DetectorConfig(area_cm2=25.0))
        large = PhotonArrivalSimulator(DetectorConfig(area_cm2=100.0))
        assert_allclose(small.toa_sigma(wide_pulsar) / large.toa_sigma(wide_pulsar), 2.0)

    def test_sigma_scales_with_width(self, closed_form, reference_pulsar, wide_pulsar):
        ratio = closed_form.toa_sigma(wide_pulsar) / closed_form.toa_sigma(reference_pulsar)
        assert_allclose(ratio, 100.0)

    def test_closed_form_sample(self, closed_form, wide_pulsar):
        sample = closed_form.sample_toa_error(wide_pulsar, np.random.default_rng(1))
        assert isinstance(sample, ToaSample)
        assert sample.available
        assert sample.n_photons is None
        assert_allclose(sample.sigma, closed_form.toa_sigma(wide_pulsar))

    def test_same_seed_same_error(self, closed_form, wide_pulsar):
        a = closed_form.sample_toa_error(wide_pulsar, np.random.default_rng(7))
        b = closed_form.sample_toa_error(wide_pulsar, np.random.default_rng(7))
        assert a.error == b.error


# =============================================================================
# Photon-level simulation
# =============================================================================

class TestPhotonCounting:

    def test_photon_count_near_expectation(self, photon_counting, wide_pulsar):
        rng = np.random.default_rng(3)
        arrivals = photon_counting.simulate_photons(wide_pulsar, rng)
        assert abs(arrivals.size - 60000) < 5 * np.sqrt(60000)
        assert np.all(np.diff(arrivals) >= 0.0)

    def test_fold_conserves_photons(self, photon_counting, wide_pulsar):
        rng = np.random.default_rng(4)
        arrivals = photon_counting.simulate_photons(wide_pulsar, rng)
        profile = photon_counting.fold(arrivals, wide_pulsar)
        assert profile.shape == (256,)
        assert profile.sum() == arrivals.size
        # Peak at phase 0 wraps across the first and last bins.
        peak = int(np.argmax(profile))
        assert min(peak, 256 - peak) <= 16

    @pytest.mark.parametrize("offset, expected", [
        (2.0e-4, 2.0e-4),
        (-3.0e-3, -3.0e-3),
        (6.0e-3, -4.0e-3),
    ])
    def test_estimate_recovers_offset(self, photon_counting, wide_pulsar,
                                      offset, expected):
        rng = np.random.default_rng(11)
        arrivals = photon_counting.simulate_photons(wide_pulsar, rng, t_start=100.0,
                                                    toa_offset=offset)
        estimate = photon_counting.estimate_toa_offset(arrivals, wide_pulsar,
                                                       t_start=100.0)
        assert_allclose(estimate, expected, atol=2.0e-5)

    def test_zero_photons_gives_unavailable_sample(self):
        faint = PulsarModel('PSR-FAINT', ra=0.0, dec=0.0, period=0.01,
                            flux=1.0e-12, width=1.0e-3)
        sim = PhotonArrivalSimulator(DetectorConfig(area_cm2=1.0, integration_time=1.0,
                                                    mode='photon_counting'))
        sample = sim.sample_toa_error(faint, np.random.default_rng(0))
        assert sample.n_photons == 0
        assert np.isnan(sample.error)
        assert not sample.available
        assert np.isfinite(sample.sigma)

    def test_empty_arrivals_estimate_is_nan(self, photon_counting, wide_pulsar):
        assert np.isnan(photon_counting.estimate_toa_offset(np.array([]), wide_pulsar))


# =============================================================================
# Mode agreement
# =============================================================================

@pytest.mark.slow
class TestModeAgreement:
    """Closed-form and photon-counting modes over 10,000 trials."""

    N_TRIALS = 10000

    def test_modes_agree_in_mean_and_variance(self, closed_form, photon_counting,
                                              reference_pulsar):
        sigma = closed_form.toa_sigma(reference_pulsar)
        cf = closed_form.sample_errors(reference_pulsar, np.random.default_rng(2024),
                                       self.N_TRIALS)
        pc = photon_counting.sample_errors(reference_pulsar, np.random.default_rng(2025),
                                           self.N_TRIALS)
        assert cf.shape == pc.shape == (self.N_TRIALS,)
        assert np.all(np.isfinite(pc))

        mean_tol = 4.0 * sigma / np.sqrt(self.N_TRIALS)
        assert abs(cf.mean()) < mean_tol
        assert abs(pc.mean()) < mean_tol
        assert abs(pc.mean() - cf.mean()) < np.sqrt(2.0) * mean_tol

        assert_allclose(cf.var(ddof=1) / sigma ** 2, 1.0, atol=0.06)
        assert_allclose(pc.var(ddof=1) / sigma ** 2, 1.0, atol=0.06)
        assert_allclose(pc.var(ddof=1) / cf.var(ddof=1), 1.0, atol=0.08)
