"""
===============================================================================
XNAV PROJECT - Fault Taxonomy
===============================================================================
Every abnormal condition in the estimation engine maps onto one of three
categories:

    ConfigurationFault  -- invalid static parameters (non-positive period,
                           flux, area, time step, variance...).  Raised at
                           construction, never reaches the running loop.
    NumericalFault      -- singular innovation covariance, loss of
                           covariance positive-semidefiniteness, degenerate
                           orbital radius.  Carries the epoch and the
                           offending matrix/state so the caller can decide
                           to retry, reset or abort.
    ClampedWarning      -- non-fatal Shapiro-delay clamp.  Issued through
                           the warnings module and logged; computation
                           continues with the clamped value.

Components raise; only the simulation loop (or the CLI) decides what to do.
===============================================================================
"""

from typing import Any, Dict, Optional


class XnavError(Exception):
    """Base class for all errors raised by the XNAV engine."""


class ConfigurationFault(XnavError, ValueError):
    """Invalid static parameter detected at construction time."""


class FilterSequenceError(XnavError, RuntimeError):
    """Predict/update phases called out of order."""


class NumericalFault(XnavError, ArithmeticError):
    """
    Numerical breakdown inside a component.

    Parameters
    ----------
    message : str
        Human-readable description.
    epoch : float, optional
        Simulation epoch (s) at which the fault was detected.
    context : dict, optional
        Offending quantities (matrices, states, eigenvalues) for post-mortem.
    """

    def __init__(self, message: str, epoch: Optional[float] = None,
                 context: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.epoch = epoch
        self.context = dict(context or {})

    def __str__(self) -> str:
        base = super().__str__()
        if self.epoch is None:
            return base
        return f"{base} (epoch={self.epoch:.3f} s)"


class DivergenceFault(NumericalFault):
    """Covariance lost symmetry or positive-semidefiniteness."""


class SingularInnovationFault(NumericalFault):
    """Innovation covariance S is non-positive or non-finite."""


class DegenerateOrbitFault(NumericalFault):
    """Position magnitude fell below the configured minimum radius."""


class ClampedWarning(UserWarning):
    """A near-singular term was clamped to a finite floor."""
