"""
===============================================================================
XNAV PROJECT - Visualization Module
===============================================================================
Submodules:
    plots -- Position error, residual, convergence and NEES figures
===============================================================================
"""
