"""
===============================================================================
XNAV PROJECT - Navigation Performance Plots
===============================================================================
Post-run figures built from the telemetry DataFrame:

  1. Position error per axis with the filter's 3-sigma envelope
  2. Per-pulsar TOA residuals (wrapped innovations)
  3. Position error norm and sqrt(trace P_pos) on a log scale
  4. Average NEES with chi-square bounds (Monte Carlo study)

All figures are written to disk through the non-interactive Agg backend.
===============================================================================
"""

import logging
import os
from typing import Dict, Optional

import matplotlib
matplotlib.use('Agg')  # Non-interactive backend for saving
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

plt.rcParams.update({
    'font.size': 11,
    'axes.labelsize': 12,
    'axes.titlesize': 13,
    'legend.fontsize': 9,
    'figure.dpi': 120,
    'lines.linewidth': 1.3,
    'axes.grid': True,
    'grid.alpha': 0.3,
    'axes.spines.top': False,
    'axes.spines.right': False,
})

COLORS = {
    'error': '#2c3e50',
    'sigma': '#e74c3c',
    'truth': '#27ae60',
    'bounds': '#95a5a6',
    'nees': '#2980b9',
}


def _save(fig, output_path: str) -> str:
    directory = os.path.dirname(output_path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    fig.savefig(output_path, dpi=150, bbox_inches='tight',
                facecolor='white', edgecolor='none')
    plt.close(fig)
    logger.info("Saved: %s", output_path)
    return output_path


def plot_position_error(telemetry: pd.DataFrame, output_path: str) -> str:
    """
    Position error per axis with the +/- 3-sigma envelope.

    Parameters
    ----------
    telemetry : pd.DataFrame
        Output of SimulationResult.telemetry_frame().
    output_path : str
        Destination image file.
    """
    t_hours = telemetry['epoch'].to_numpy() / 3600.0
    fig, axes = plt.subplots(3, 1, figsize=(10, 8), sharex=True)
    for ax, axis in zip(axes, ('x', 'y', 'z')):
        err = (telemetry[f'true_{axis}'] - telemetry[f'est_{axis}']).to_numpy()
        three_sigma = 3.0 * np.sqrt(telemetry[f'var_{axis}'].to_numpy())
        ax.plot(t_hours, err, color=COLORS['error'], label='error')
        ax.plot(t_hours, three_sigma, '--', color=COLORS['sigma'], label='3-sigma')
        ax.plot(t_hours, -three_sigma, '--', color=COLORS['sigma'])
        ax.set_ylabel(f'{axis} error (km)')
    axes[0].legend(loc='upper right')
    axes[0].set_title('Position estimation error')
    axes[-1].set_xlabel('Time (h)')
    return _save(fig, output_path)


def plot_residuals(telemetry: pd.DataFrame, output_path: str) -> str:
    """TOA residuals per pulsar, in microseconds."""
    t_hours = telemetry['epoch'].to_numpy() / 3600.0
    columns = [c for c in telemetry.columns if c.startswith('residual_')]
    fig, ax = plt.subplots(figsize=(10, 5))
    for col in columns:
        ax.plot(t_hours, telemetry[col].to_numpy() * 1.0e6, '.', markersize=4,
                label=col[len('residual_'):])
    ax.axhline(0.0, color='k', linewidth=0.8)
    ax.set_xlabel('Time (h)')
    ax.set_ylabel('Innovation (us)')
    ax.set_title('Pulsar TOA residuals')
    if columns:
        ax.legend(loc='upper right', ncol=min(len(columns), 4))
    return _save(fig, output_path)


def plot_convergence(telemetry: pd.DataFrame, output_path: str) -> str:
    """Error norm against sqrt(trace P_pos), log scale."""
    t_hours = telemetry['epoch'].to_numpy() / 3600.0
    fig, ax = plt.subplots(figsize=(10, 5))
    ax.semilogy(t_hours, telemetry['pos_error'].to_numpy(), color=COLORS['error'],
                label='|r_true - r_est|')
    ax.semilogy(t_hours, telemetry['pos_sigma'].to_numpy(), '--', color=COLORS['sigma'],
                label='sqrt(trace P_pos)')
    ax.set_xlabel('Time (h)')
    ax.set_ylabel('km')
    ax.set_title('Filter convergence')
    ax.legend(loc='upper right')
    return _save(fig, output_path)


def plot_nees(nees_by_epoch: pd.DataFrame, output_path: str) -> str:
    """Average NEES per epoch against its chi-square acceptance region."""
    t_hours = nees_by_epoch['epoch'].to_numpy() / 3600.0
    fig, ax = plt.subplots(figsize=(10, 5))
    ax.plot(t_hours, nees_by_epoch['anees'].to_numpy(), color=COLORS['nees'],
            label='average NEES')
    ax.fill_between(t_hours, nees_by_epoch['lower'].to_numpy(),
                    nees_by_epoch['upper'].to_numpy(), color=COLORS['bounds'],
                    alpha=0.3, label='95% region')
    ax.axhline(6.0, color='k', linewidth=0.8, linestyle=':')
    ax.set_xlabel('Time (h)')
    ax.set_ylabel('NEES')
    ax.set_title('Filter consistency')
    ax.legend(loc='upper right')
    return _save(fig, output_path)


def generate_run_plots(telemetry: pd.DataFrame, output_dir: str,
                       nees_by_epoch: Optional[pd.DataFrame] = None) -> Dict[str, str]:
    """Write every run plot into *output_dir*; returns name -> path."""
    os.makedirs(output_dir, exist_ok=True)
    paths = {
        'position_error': plot_position_error(
            telemetry, os.path.join(output_dir, 'position_error.png')),
        'residuals': plot_residuals(
            telemetry, os.path.join(output_dir, 'residuals.png')),
        'convergence': plot_convergence(
            telemetry, os.path.join(output_dir, 'convergence.png')),
    }
    if nees_by_epoch is not None:
        paths['nees'] = plot_nees(nees_by_epoch, os.path.join(output_dir, 'nees.png'))
    return paths
