"""
===============================================================================
XNAV PROJECT - Core Module
===============================================================================
Shared building blocks for the estimation engine.

Submodules:
    constants   -- Physical and astronomical constants (km, s)
    faults      -- ConfigurationFault / NumericalFault / ClampedWarning taxonomy
    pulsar      -- Immutable PulsarModel record and pulse-phase model
    state       -- KinematicState, Observation and FilterSnapshot value types
    covariance  -- Symmetry / positive-semidefiniteness checks
===============================================================================
"""
