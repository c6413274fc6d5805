"""
===============================================================================
XNAV PROJECT - Orbital Propagator Test Suite
===============================================================================
Tests for the RK4 propagator: circular-orbit closure after one period,
energy conservation, time-step validation, degenerate-orbit handling,
determinism, force-model resolution (J2, third body) and the
state-transition matrix against finite differences.
===============================================================================
"""

import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

import numpy as np
import pytest
from numpy.testing import assert_allclose

from xnav.core.constants import (
    AU, EARTH_EQUATORIAL_RADIUS, EARTH_J2, EARTH_MU, JUPITER_MU, SUN_MU,
)
from xnav.core.faults import ConfigurationFault, DegenerateOrbitFault
from xnav.core.state import KinematicState
from xnav.dynamics.propagator import (
    DynamicsConfig, DynamicsModel, OrbitalPropagator, ThirdBody,
    circular_orbit_state, j2_acceleration, orbital_period, two_body_acceleration,
    two_body_gradient, numerical_gradient,
)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def sun_propagator():
    """Heliocentric two-body propagator."""
    return OrbitalPropagator()


@pytest.fixture
def earth_propagator():
    """Geocentric two-body propagator."""
    return OrbitalPropagator(DynamicsConfig(mu=EARTH_MU,
                                            body_radius=EARTH_EQUATORIAL_RADIUS,
                                            min_radius=EARTH_EQUATORIAL_RADIUS))


def specific_energy(state, mu):
    return 0.5 * state.speed ** 2 - mu / state.radius


# =============================================================================
# Circular orbit closure
# =============================================================================

class TestCircularOrbit:

    def test_heliocentric_orbit_returns_to_start(self, sun_propagator):
        """A 1 AU circular orbit closes after one period."""
        state0 = circular_orbit_state(AU, SUN_MU)
        n_steps = 2000
        dt = orbital_period(AU, SUN_MU) / n_steps
        result = sun_propagator.propagate_many(state0, dt, n_steps)
        assert result.ok
        assert_allclose(result.state.position, state0.position, atol=1e-6 * AU)
        assert_allclose(result.state.velocity, state0.velocity,
                        atol=1e-6 * state0.speed)

    @pytest.mark.parametrize("inclination_deg", [0.0, 28.5, 98.0])
    def test_leo_orbit_returns_to_start(self, earth_propagator, inclination_deg):
        radius = EARTH_EQUATORIAL_RADIUS + 500.0
        state0 = circular_orbit_state(radius, EARTH_MU, np.radians(inclination_deg))
        n_steps = 1000
        dt = orbital_period(radius, EARTH_MU) / n_steps
        result = earth_propagator.propagate_many(state0, dt, n_steps)
        assert_allclose(result.state.position, state0.position, atol=1e-3)
        assert_allclose(result.state.velocity, state0.velocity, atol=1e-6)

    def test_energy_conservation(self, earth_propagator):
        state0 = circular_orbit_state(EARTH_EQUATORIAL_RADIUS + 800.0, EARTH_MU)
        result = earth_propagator.propagate_many(state0, 10.0, 600)
        assert_allclose(specific_energy(result.state, EARTH_MU),
                        specific_energy(state0, EARTH_MU), rtol=1e-8)

    def test_circular_speed(self):
        state = circular_orbit_state(AU, SUN_MU)
        assert_allclose(state.speed, 29.7847, rtol=1e-4)


# =============================================================================
# Step validation and degenerate geometry
# =============================================================================

class TestStepValidation:

    @pytest.mark.parametrize("dt", [0.0, -60.0, np.nan])
    def test_non_positive_dt_raises(self, sun_propagator, dt):
        state = circular_orbit_state(AU, SUN_MU)
        with pytest.raises(ConfigurationFault):
            sun_propagator.propagate(state, dt)

    def test_degenerate_orbit_skips_step(self, sun_propagator):
        """Inside min_radius the step is skipped and a fault returned."""
        state = KinematicState([1.0e5, 0.0, 0.0], [0.0, 0.0, 0.0])
        result = sun_propagator.propagate(state, 60.0, epoch=120.0)
        assert not result.ok
        assert isinstance(result.fault, DegenerateOrbitFault)
        assert result.fault.epoch == 120.0
        assert result.state == state

    def test_degenerate_stage_detected(self):
        """A trajectory crossing min_radius inside the step is caught."""
        prop = OrbitalPropagator(DynamicsConfig(model='constant_velocity',
                                                min_radius=1000.0))
        state = KinematicState([1500.0, 0.0, 0.0], [-100.0, 0.0, 0.0])
        result = prop.propagate(state, 10.0)
        assert isinstance(result.fault, DegenerateOrbitFault)
        assert result.state == state

    def test_propagate_many_stops_at_first_fault(self):
        prop = OrbitalPropagator(DynamicsConfig(model='constant_velocity',
                                                min_radius=1000.0))
        state = KinematicState([5000.0, 0.0, 0.0], [-100.0, 0.0, 0.0])
        result = prop.propagate_many(state, 10.0, 10)
        assert not result.ok
        # Four steps reach x = 1000 km; the fifth dips below min_radius.
        assert_allclose(result.state.position[0], 1000.0)

    def test_transition_matrix_raises_on_fault(self, sun_propagator):
        state = KinematicState([1.0e4, 0.0, 0.0], [0.0, 0.0, 0.0])
        with pytest.raises(DegenerateOrbitFault):
            sun_propagator.transition_matrix(state, 60.0)

    def test_deterministic(self, sun_propagator):
        state = circular_orbit_state(AU, SUN_MU, 0.3)
        a = sun_propagator.propagate_many(state, 3600.0, 50).state
        b = sun_propagator.propagate_many(state, 3600.0, 50).state
        assert np.array_equal(a.position, b.position)
        assert np.array_equal(a.velocity, b.velocity)

    def test_input_state_untouched(self, sun_propagator):
        state = circular_orbit_state(AU, SUN_MU)
        before = state.as_vector()
        sun_propagator.propagate(state, 600.0)
        assert_allclose(state.as_vector(), before, rtol=0, atol=0)


# =============================================================================
# Configuration and force model
# =============================================================================

class TestDynamicsConfig:

    def test_string_model_accepted(self):
        cfg = DynamicsConfig(model='two_body_j2', mu=EARTH_MU, j2=EARTH_J2,
                             body_radius=EARTH_EQUATORIAL_RADIUS)
        assert cfg.model is DynamicsModel.TWO_BODY_J2

    @pytest.mark.parametrize("kwargs", [
        {'model': 'n_body'},
        {'mu': 0.0},
        {'mu': -1.0},
        {'min_radius': -1.0},
        {'model': 'two_body_j2', 'body_radius': 0.0},
    ])
    def test_invalid_config_raises(self, kwargs):
        with pytest.raises(ConfigurationFault):
            DynamicsConfig(**kwargs)

    def test_third_body_needs_gravity_model(self):
        body = ThirdBody('Jupiter', JUPITER_MU, [7.785e8, 0.0, 0.0])
        with pytest.raises(ConfigurationFault):
            DynamicsConfig(model='constant_velocity', third_bodies=(body,))

    def test_constant_velocity_moves_in_straight_line(self):
        prop = OrbitalPropagator(DynamicsConfig(model='constant_velocity'))
        state = KinematicState([AU, 0.0, 0.0], [1.0, 2.0, 3.0])
        result = prop.propagate(state, 100.0)
        assert_allclose(result.state.position, [AU + 100.0, 200.0, 300.0])
        assert_allclose(result.state.velocity, [1.0, 2.0, 3.0])

    def test_j2_adds_inward_pull_at_equator(self):
        r = np.array([EARTH_EQUATORIAL_RADIUS + 400.0, 0.0, 0.0])
        a_j2 = j2_acceleration(r, EARTH_MU, EARTH_EQUATORIAL_RADIUS, EARTH_J2)
        assert a_j2[0] < 0.0
        ratio = np.linalg.norm(a_j2) / np.linalg.norm(two_body_acceleration(r, EARTH_MU))
        assert 1.0e-3 < ratio < 2.0e-3

    def test_third_body_perturbation_is_small_at_1au(self):
        body = ThirdBody('Jupiter', JUPITER_MU, [7.785e8, 0.0, 0.0])
        prop = OrbitalPropagator(DynamicsConfig(third_bodies=(body,)))
        r = np.array([AU, 0.0, 0.0])
        a = prop.acceleration(r)
        a0 = two_body_acceleration(r, SUN_MU)
        ratio = np.linalg.norm(a - a0) / np.linalg.norm(a0)
        assert 0.0 < ratio < 1.0e-4

    def test_analytic_gradient_matches_numerical(self):
        r = np.array([1.2e8, -3.0e7, 4.0e6])
        G = two_body_gradient(r, SUN_MU)
        G_num = numerical_gradient(lambda p: two_body_acceleration(p, SUN_MU), r)
        assert_allclose(G, G_num, rtol=1e-6, atol=1e-22)
        assert_allclose(G, G.T, rtol=1e-12)


# =============================================================================
# State-transition matrix
# =============================================================================

def finite_difference_stm(prop, state, dt, dr=1.0e-2, dv=1.0e-4):
    x0 = state.as_vector()
    steps = np.array([dr] * 3 + [dv] * 3)
    Phi = np.zeros((6, 6))
    for j in range(6):
        dx = np.zeros(6)
        dx[j] = steps[j]
        xp = prop.propagate(KinematicState.from_vector(x0 + dx), dt).state.as_vector()
        xm = prop.propagate(KinematicState.from_vector(x0 - dx), dt).state.as_vector()
        Phi[:, j] = (xp - xm) / (2.0 * steps[j])
    return Phi


class TestTransitionMatrix:

    def test_constant_velocity_stm_is_exact(self):
        prop = OrbitalPropagator(DynamicsConfig(model='constant_velocity'))
        state = KinematicState([AU, 0.0, 0.0], [0.0, 0.0, 0.0])
        Phi = prop.transition_matrix(state, 60.0)
        expected = np.eye(6)
        expected[0:3, 3:6] = 60.0 * np.eye(3)
        assert_allclose(Phi, expected, atol=1e-15)

    def test_leo_stm_matches_finite_differences(self, earth_propagator):
        state = circular_orbit_state(EARTH_EQUATORIAL_RADIUS + 500.0, EARTH_MU, 0.5)
        Phi = earth_propagator.transition_matrix(state, 30.0)
        Phi_fd = finite_difference_stm(earth_propagator, state, 30.0)
        assert_allclose(Phi, Phi_fd, rtol=1e-5, atol=1e-7)

    def test_heliocentric_stm_matches_finite_differences(self, sun_propagator):
        state = circular_orbit_state(AU, SUN_MU, 0.1)
        Phi = sun_propagator.transition_matrix(state, 3600.0)
        Phi_fd = finite_difference_stm(sun_propagator, state, 3600.0,
                                       dr=10.0, dv=1.0e-2)
        assert_allclose(Phi, Phi_fd, rtol=1e-6, atol=1e-5)

    def test_propagate_with_transition_agrees_with_propagate(self, sun_propagator):
        state = circular_orbit_state(AU, SUN_MU)
        result, Phi = sun_propagator.propagate_with_transition(state, 600.0)
        plain = sun_propagator.propagate(state, 600.0)
        assert result.state == plain.state
        assert Phi.shape == (6, 6)

    def test_stm_has_unit_determinant(self, earth_propagator):
        """Phi of a Hamiltonian flow is symplectic, so det(Phi) = 1."""
        state = circular_orbit_state(EARTH_EQUATORIAL_RADIUS + 700.0, EARTH_MU)
        Phi = earth_propagator.transition_matrix(state, 20.0)
        assert_allclose(np.linalg.det(Phi), 1.0, rtol=1e-8)
