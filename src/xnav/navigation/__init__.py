"""
===============================================================================
XNAV PROJECT - Navigation Module
===============================================================================
Pulsar observation synthesis and state estimation.

Submodules:
    photon_simulator  -- Photon-statistics TOA noise (closed form / photon mode)
    measurement_model -- Predicted TOA and its 1x6 Jacobian
    ekf               -- 6-state Extended Kalman Filter with Joseph-form update
===============================================================================
"""
