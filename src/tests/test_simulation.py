"""
===============================================================================
XNAV PROJECT - Simulation Loop and Consistency Study Test Suite
===============================================================================
End-to-end tests: single-pulsar convergence, telemetry export, maneuvers,
the loop's fault policy (skipped truth steps, dropped observations, Shapiro
clamps, filter faults), thread-count independence, and the Monte Carlo
filter-consistency study.
===============================================================================
"""

import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

import numpy as np
import pandas as pd
import pytest
from numpy.testing import assert_allclose

from xnav.config.scenario import (
    FilterSettings, Maneuver, RunSettings, ScenarioConfig,
)
from xnav.core.constants import AU
from xnav.core.faults import (
    ClampedWarning, ConfigurationFault, DegenerateOrbitFault, DivergenceFault,
    FilterSequenceError,
)
from xnav.core.pulsar import PulsarModel
from xnav.core.state import KinematicState
from xnav.dynamics.propagator import DynamicsConfig
from xnav.navigation.photon_simulator import DetectorConfig
from xnav.simulation.monte_carlo import ConsistencyStudy
from xnav.simulation.simulation_loop import (
    AXES, SimulationLoop, write_telemetry_csv,
)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def single_pulsar():
    """RA = Dec = 0, P = 10 ms, F = 1.0 ph/cm^2/s, W = 1 ms."""
    return PulsarModel('PSR-X', ra=0.0, dec=0.0, period=0.01, flux=1.0, width=0.001)


@pytest.fixture
def constellation():
    return [
        PulsarModel.from_degrees('PSR-A', 0.0, 0.0, period=0.01, flux=1.0, width=1e-3),
        PulsarModel.from_degrees('PSR-B', 90.0, 10.0, period=8.0e-3, flux=0.8, width=5e-4),
        PulsarModel.from_degrees('PSR-C', 200.0, 60.0, period=6.0e-3, flux=0.6, width=3e-4),
    ]


def make_scenario(pulsars, n_epochs=10, dt=60.0, seed=42, workers=1, **kwargs):
    filter_settings = kwargs.pop('filter', FilterSettings(initial_error=[5.0, -3.0, 2.0,
                                                                        0.0, 0.0, 0.0]))
    return ScenarioConfig(
        filter=filter_settings,
        run=RunSettings(n_epochs=n_epochs, dt=dt, seed=seed, workers=workers),
        pulsars=list(pulsars),
        **kwargs,
    )


# =============================================================================
# End-to-end convergence
# =============================================================================

class TestEndToEnd:

    def test_single_pulsar_covariance_shrinks(self, single_pulsar):
        """Spacecraft at rest at 1 AU along the pulsar direction, 100 x 60 s."""
        scenario = make_scenario(
            [single_pulsar], n_epochs=100, dt=60.0,
            filter=FilterSettings(initial_sigma_position=100.0,
                                  initial_sigma_velocity=1.0e-6,
                                  initial_error=[40.0, -25.0, 10.0, 0.0, 0.0, 0.0]),
            initial_state=KinematicState([AU, 0.0, 0.0], [0.0, 0.0, 0.0]),
        )
        with SimulationLoop(scenario) as loop:
            result = loop.run()

        assert result.completed
        assert len(result.records) == 101
        first, last = result.records[1], result.records[100]
        assert last.covariance_trace < first.covariance_trace
        assert last.estimate.covariance[0, 0] < first.estimate.covariance[0, 0]
        # Line-of-sight error is well inside the initial 40 km.
        assert abs(last.error[0]) < 5.0
        assert all(len(rec.updates) == 1 for rec in result.records[1:])

    def test_constellation_converges_in_all_axes(self, constellation):
        scenario = make_scenario(constellation, n_epochs=60,
                                 filter=FilterSettings(initial_sigma_position=50.0,
                                                       initial_sigma_velocity=1e-4))
        result = SimulationLoop(scenario).run()
        assert result.completed
        assert result.final.position_sigma < 0.2 * result.records[0].position_sigma
        assert result.final.position_error < 5.0 * result.final.position_sigma

    def test_truth_and_estimate_never_alias(self, constellation):
        loop = SimulationLoop(make_scenario(constellation, n_epochs=2))
        loop.run()
        assert loop.true_state is not loop.filter.state
        assert not np.shares_memory(loop.true_state.position, loop.filter.state.position)


# =============================================================================
# Telemetry
# =============================================================================

class TestTelemetry:

    def test_frame_columns(self, constellation):
        result = SimulationLoop(make_scenario(constellation, n_epochs=5)).run()
        df = result.telemetry_frame()
        assert len(df) == 6
        assert df.index.name == 'index'
        for axis in AXES:
            for prefix in ('true_', 'est_', 'var_'):
                assert prefix + axis in df.columns
        for name in ('PSR-A', 'PSR-B', 'PSR-C'):
            assert f'residual_{name}' in df.columns
            assert f'nis_{name}' in df.columns
        assert np.isnan(df.loc[0, 'residual_PSR-A'])
        assert (df.loc[1:, 'n_obs'] == 3).all()
        assert_allclose(df['epoch'].values, 60.0 * np.arange(6))

    def test_csv_roundtrip(self, constellation, tmp_path):
        result = SimulationLoop(make_scenario(constellation, n_epochs=4)).run()
        path = tmp_path / 'telemetry.csv'
        df = write_telemetry_csv(result, str(path))
        back = pd.read_csv(path, index_col='index')
        assert list(back.columns) == list(df.columns)
        assert_allclose(back['pos_error'].values, df['pos_error'].values, rtol=1e-10)

    def test_record_diagnostics(self, constellation):
        result = SimulationLoop(make_scenario(constellation, n_epochs=3)).run()
        rec = result.final
        e = rec.error
        assert_allclose(rec.nees, e @ np.linalg.solve(rec.estimate.covariance, e))
        assert_allclose(rec.normalized_error, e / rec.estimate.sigma)
        assert_allclose(rec.position_sigma ** 2,
                        np.trace(rec.estimate.covariance[0:3, 0:3]))


    def test_singular_initial_covariance(self, constellation, tmp_path):
        """Exactly known initial velocity: telemetry still exports."""
        scenario = make_scenario(
            constellation, n_epochs=2,
            filter=FilterSettings(initial_covariance=[1e4, 1e4, 1e4, 0.0, 0.0, 0.0],
                                  initial_error=[5.0, -3.0, 2.0, 0.0, 0.0, 0.0]))
        result = SimulationLoop(scenario).run()
        assert result.completed
        first = result.records[0]
        assert np.isnan(first.nees)
        assert np.isnan(first.normalized_error[3:]).all()
        assert_allclose(first.normalized_error[:3], [-0.05, 0.03, -0.02])

        df = write_telemetry_csv(result, str(tmp_path / 'telemetry.csv'))
        assert len(df) == 3
        assert np.isnan(df.loc[0, 'nees'])


# =============================================================================
# Loop behaviour and fault policy
# =============================================================================

class TestLoopBehaviour:

    def test_integration_longer_than_epoch_is_logged(self, single_pulsar, caplog):
        with caplog.at_level('WARNING', logger='xnav.simulation.simulation_loop'):
            SimulationLoop(make_scenario([single_pulsar], dt=60.0))
        assert 'exceeds the epoch step' in caplog.text

        caplog.clear()
        with caplog.at_level('WARNING', logger='xnav.simulation.simulation_loop'):
            SimulationLoop(make_scenario([single_pulsar], dt=60.0,
                                         detector=DetectorConfig(integration_time=60.0)))
        assert 'exceeds the epoch step' not in caplog.text

    def test_empty_constellation(self):
        with pytest.raises(ConfigurationFault):
            SimulationLoop(make_scenario([]))

    def test_duplicate_names(self, single_pulsar):
        with pytest.raises(ConfigurationFault):
            SimulationLoop(make_scenario([single_pulsar, single_pulsar]))

    def test_bad_initial_error(self, single_pulsar):
        scenario = make_scenario([single_pulsar],
                                 filter=FilterSettings(initial_error=[1.0, 2.0]))
        with pytest.raises(ConfigurationFault):
            SimulationLoop(scenario)

    def test_maneuver_applied_to_truth_only(self, single_pulsar):
        dv = np.array([0.0, 1.0e-3, 0.0])
        scenario = make_scenario(
            [single_pulsar], n_epochs=4,
            dynamics=DynamicsConfig(model='constant_velocity'),
            initial_state=KinematicState([AU, 0.0, 0.0], [0.0, 0.0, 0.0]),
            maneuvers=(Maneuver(epoch_index=3, delta_v=dv),),
        )
        result = SimulationLoop(scenario).run()
        v = [rec.true_state.velocity for rec in result.records]
        assert_allclose(v[2], [0.0, 0.0, 0.0])
        assert_allclose(v[3], dv)
        assert_allclose(v[4], dv)
        assert_allclose(result.records[4].true_state.position[1], 60.0e-3)

    def test_degenerate_truth_step_is_skipped(self, single_pulsar):
        scenario = make_scenario(
            [single_pulsar], n_epochs=3,
            initial_state=KinematicState([1.0e4, 0.0, 0.0], [0.0, 0.0, 0.0]),
        )
        estimate = KinematicState([AU, 0.0, 0.0], [0.0, 0.0, 0.0])
        result = SimulationLoop(scenario, initial_estimate=estimate).run()
        assert result.completed
        for rec in result.records[1:]:
            assert isinstance(rec.faults[0], DegenerateOrbitFault)
            assert any('truth step skipped' in w for w in rec.warnings)
            assert_allclose(rec.true_state.position, [1.0e4, 0.0, 0.0])
            assert len(rec.updates) == 1

    def test_filter_fault_stops_run(self, constellation):
        loop = SimulationLoop(make_scenario(constellation, n_epochs=10))
        loop.step()
        loop.filter.context.covariance = np.diag([1.0, 1.0, 1.0, 1.0, 1.0, -1.0])
        result = loop.run(5)
        assert not result.completed
        assert isinstance(result.fault, DivergenceFault)
        assert len(result.records) == 3
        assert result.final.faults == [result.fault]
        with pytest.raises(FilterSequenceError):
            loop.step()

    def test_zero_photon_observation_dropped(self, single_pulsar):
        faint = PulsarModel('PSR-FAINT', ra=1.0, dec=0.3, period=0.01,
                            flux=1.0e-12, width=1e-3)
        scenario = make_scenario([single_pulsar, faint], n_epochs=3,
                                 detector=DetectorConfig(mode='photon_counting'))
        result = SimulationLoop(scenario).run()
        assert result.completed
        for rec in result.records[1:]:
            assert rec.dropped == ['PSR-FAINT']
            assert [u.pulsar for u in rec.updates] == ['PSR-X']
            assert rec.observations[0].n_photons > 0
        df = result.telemetry_frame()
        assert df['residual_PSR-FAINT'].isna().all()

    def test_shapiro_clamp_recorded(self, single_pulsar):
        """Spacecraft behind the Sun on the pulsar line of sight."""
        scenario = make_scenario(
            [single_pulsar], n_epochs=1,
            filter=FilterSettings(initial_error=[0.0] * 6),
            initial_state=KinematicState([-AU, 0.0, 0.0], [0.0, 0.0, 0.0]),
        )
        loop = SimulationLoop(scenario)
        with pytest.warns(ClampedWarning):
            rec = loop.step()
        assert any('clamped (truth)' in w for w in rec.warnings)
        assert rec.observations[0].shapiro_clamped
        assert np.isfinite(rec.observations[0].toa)
        assert not rec.faults

    def test_thread_count_does_not_change_result(self, constellation):
        serial = SimulationLoop(make_scenario(constellation, n_epochs=8, workers=1)).run()
        with SimulationLoop(make_scenario(constellation, n_epochs=8, workers=3)) as loop:
            threaded = loop.run()
        pd.testing.assert_frame_equal(serial.telemetry_frame(), threaded.telemetry_frame())

    def test_seed_changes_noise(self, constellation):
        a = SimulationLoop(make_scenario(constellation, n_epochs=3, seed=1)).run()
        b = SimulationLoop(make_scenario(constellation, n_epochs=3, seed=2)).run()
        assert a.final.updates[0].innovation != b.final.updates[0].innovation


# =============================================================================
# Monte Carlo consistency
# =============================================================================

class TestConsistencyStudy:

    def test_requires_results(self, constellation):
        study = ConsistencyStudy(make_scenario(constellation), num_runs=2)
        with pytest.raises(RuntimeError):
            study.summary()

    def test_invalid_run_count(self, constellation):
        with pytest.raises(ValueError):
            ConsistencyStudy(make_scenario(constellation), num_runs=0)

    def test_fixed_initial_error_is_ignored(self, constellation):
        study = ConsistencyStudy(make_scenario(constellation), num_runs=2)
        assert study.scenario.filter.initial_error is None

    def test_singular_initial_covariance_summary(self, constellation):
        scenario = make_scenario(
            constellation, n_epochs=2,
            filter=FilterSettings(initial_covariance=[1e4, 1e4, 1e4, 0.0, 0.0, 0.0]))
        study = ConsistencyStudy(scenario, num_runs=2, seed=3, processes=1)
        df = study.run_all()
        assert len(df) == 2 * 3
        assert df.loc[df['index'] == 0, 'nees'].isna().all()
        by_epoch = study.nees_by_epoch()
        assert np.isnan(by_epoch.loc[0, 'anees'])
        assert not by_epoch.loc[0, 'inside']
        summary = study.summary()
        assert summary['num_runs'] == 2

    @pytest.mark.slow
    def test_filter_is_consistent(self, constellation):
        """Normalised error ~ N(0, 1) per axis across 100 replicas."""
        scenario = make_scenario(constellation, n_epochs=20,
                                 filter=FilterSettings(initial_sigma_position=20.0,
                                                       initial_sigma_velocity=1e-4))
        study = ConsistencyStudy(scenario, num_runs=100, seed=2024, processes=1)
        df = study.run_all()
        assert len(df) == 100 * 21
        assert df['completed'].all()

        summary = study.summary()
        for axis in AXES:
            assert abs(summary['normalized_error_mean'][axis]) < 0.4
            assert 0.5 < summary['normalized_error_var'][axis] < 1.6
        assert 4.0 < summary['mean_nees'] < 8.5
        assert 0.6 < summary['mean_nis'] < 1.5
        lo, hi = summary['nees_bounds']
        assert lo < 6.0 < hi

        by_epoch = study.nees_by_epoch()
        assert list(by_epoch.columns) == ['epoch', 'anees', 'lower', 'upper', 'inside']
        assert len(by_epoch) == 21

    @pytest.mark.slow
    def test_process_count_does_not_change_result(self, constellation):
        scenario = make_scenario(constellation, n_epochs=5)
        serial = ConsistencyStudy(scenario, num_runs=4, seed=5, processes=1).run_all()
        parallel = ConsistencyStudy(scenario, num_runs=4, seed=5, processes=2).run_all()
        pd.testing.assert_frame_equal(serial, parallel)
