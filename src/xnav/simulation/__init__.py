"""
===============================================================================
XNAV PROJECT - Simulation Module
===============================================================================
Epoch loop and statistical studies.

Submodules:
    simulation_loop -- Truth / observation / filter driver and telemetry
    monte_carlo     -- Multi-run filter consistency study (NEES, NIS)
===============================================================================
"""
