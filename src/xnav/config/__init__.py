"""
===============================================================================
XNAV PROJECT - Configuration Module
===============================================================================
Submodules:
    scenario -- YAML scenario file -> validated ScenarioConfig
    par_file -- TEMPO-style pulsar ephemeris (.par) reader
===============================================================================
"""
