"""
===============================================================================
XNAV PROJECT - Timing Module
===============================================================================
Relativistic time transfer between the spacecraft and the Solar System
Barycenter.

Submodules:
    relativistic -- Roemer, Einstein and Shapiro corrections and partials
===============================================================================
"""
