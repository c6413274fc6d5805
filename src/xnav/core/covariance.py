"""
===============================================================================
XNAV PROJECT - Covariance Checks
===============================================================================
Small linear-algebra helpers shared by the filter and the configuration
layer.  A covariance matrix must stay symmetric and positive-semidefinite
after every predict and update; a violation beyond the numerical tolerance
means the filter has diverged and is reported, never repaired.
===============================================================================
"""

from typing import Optional

import numpy as np

from xnav.core.faults import ConfigurationFault, DivergenceFault

# Relative tolerances for the health checks.
SYMMETRY_TOL = 1.0e-9
PSD_TOL = 1.0e-9


def symmetrize(P: np.ndarray) -> np.ndarray:
    """Return 0.5 * (P + P^T)."""
    return 0.5 * (P + P.T)


def asymmetry(P: np.ndarray) -> float:
    """Largest |P - P^T| entry relative to the largest |P| entry."""
    scale = max(float(np.max(np.abs(P))), 1.0e-300)
    return float(np.max(np.abs(P - P.T))) / scale


def check_covariance(P: np.ndarray, epoch: Optional[float] = None,
                     label: str = "covariance",
                     sym_tol: float = SYMMETRY_TOL,
                     psd_tol: float = PSD_TOL) -> None:
    """
    Verify that *P* is finite, symmetric and positive-semidefinite.

    Parameters
    ----------
    P : np.ndarray
        Square covariance matrix.
    epoch : float, optional
        Epoch stamped on the fault if one is raised.
    label : str
        Name used in the fault message.
    sym_tol, psd_tol : float
        Relative tolerances on asymmetry and negative eigenvalues.

    Raises
    ------
    DivergenceFault
        If any check fails.  The offending matrix and eigenvalues are
        attached to ``fault.context``.
    """
    if not np.all(np.isfinite(P)):
        raise DivergenceFault(f"{label} contains non-finite entries",
                              epoch=epoch, context={'P': P.copy()})

    skew = asymmetry(P)
    if skew > sym_tol:
        raise DivergenceFault(
            f"{label} lost symmetry (relative asymmetry {skew:.3e})",
            epoch=epoch, context={'P': P.copy(), 'asymmetry': skew},
        )

    eig = np.linalg.eigvalsh(symmetrize(P))
    if eig[0] < -psd_tol * max(1.0, float(eig[-1])):
        raise DivergenceFault(
            f"{label} lost positive-semidefiniteness "
            f"(min eigenvalue {eig[0]:.3e})",
            epoch=epoch, context={'P': P.copy(), 'eigenvalues': eig},
        )


def validate_config_matrix(M, name: str, dim: int = 6) -> np.ndarray:
    """
    Validate a user-supplied covariance-like matrix (P0, Q).

    Accepts a full (dim, dim) matrix or a length-*dim* diagonal.

    Raises
    ------
    ConfigurationFault
        On wrong shape, asymmetry or negative eigenvalues.
    """
    M = np.array(M, dtype=np.float64)
    if M.shape == (dim,):
        M = np.diag(M)
    if M.shape != (dim, dim):
        raise ConfigurationFault(f"{name} must be {dim}x{dim}, got {M.shape}")
    try:
        check_covariance(M, label=name)
    except DivergenceFault as exc:
        raise ConfigurationFault(str(exc)) from exc
    return symmetrize(M)


def normalized_error(error: np.ndarray, P: np.ndarray) -> np.ndarray:
    """
    Per-component error over its 1-sigma from the diagonal of P.

    Components with zero variance carry no statistical information and come
    back as NaN.
    """
    error = np.asarray(error, dtype=np.float64)
    sigma = np.sqrt(np.clip(np.diag(P), 0.0, None))
    out = np.full_like(error, np.nan)
    np.divide(error, sigma, out=out, where=sigma > 0.0)
    return out


def nees(error: np.ndarray, P: np.ndarray) -> float:
    """
    Normalised estimation error squared, e^T P^{-1} e.

    A PSD covariance may still be singular (a state component known
    exactly); NEES is undefined there and NaN is returned.
    """
    try:
        np.linalg.cholesky(P)
    except np.linalg.LinAlgError:
        return float('nan')
    error = np.asarray(error, dtype=np.float64)
    return float(error @ np.linalg.solve(P, error))
