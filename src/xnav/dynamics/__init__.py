"""
===============================================================================
XNAV PROJECT - Dynamics Module
===============================================================================
Translational dynamics of the spacecraft.

Submodules:
    propagator -- Force-model configuration, RK4 state and STM propagation
===============================================================================
"""
