"""
===============================================================================
XNAV PROJECT - X-ray Pulsar Navigation Estimation Engine
===============================================================================
Propagates a spacecraft's true and estimated state, synthesises photon-
arrival observations from a pulsar constellation, converts them to
barycentric times of arrival with relativistic corrections, and fuses the
residuals with an Extended Kalman Filter.

Subpackages:
    core          -- Constants, faults, pulsar and state records
    dynamics      -- Fixed-step RK4 orbital propagator
    timing        -- Roemer / Einstein / Shapiro time transfer
    navigation    -- Photon simulator, measurement model, EKF
    simulation    -- Epoch loop and Monte Carlo consistency study
    config        -- YAML scenario and .par ephemeris loaders
    visualization -- Matplotlib telemetry plots
===============================================================================
"""

__version__ = '1.0.0'
