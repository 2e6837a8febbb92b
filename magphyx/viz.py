"""Visualization module for the bouncing-magnet simulator.

Plots:
- Event log overview: theta and phi at each event, r at collisions, and the
  energy drift dE against time
- Spectrum of a single-step run (magnitude of the real FFT)

All figures are written to file; nothing is shown interactively.
"""

from typing import Dict, List, Optional, Union
import numpy as np
from pathlib import Path

import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt

from magphyx.diagnostics import as_columns
from magphyx.events import EventRecord, Signal


# One colour per event type, collisions in black
EVENT_COLORS = {
    Signal.THETA.event_name: 'tab:blue',
    Signal.PHI.event_name: 'tab:orange',
    Signal.BETA.event_name: 'tab:green',
    Signal.PR.event_name: 'tab:red',
    Signal.PTHETA.event_name: 'tab:purple',
    Signal.PPHI.event_name: 'tab:brown',
    'collision': 'k',
}


def plot_event_log(
    events: Union[List[EventRecord], Dict[str, np.ndarray]],
    output_path: str,
    dpi: int = 150,
) -> None:
    """Three-panel overview of an event log.

    - Top: theta and phi (degrees) at every event
    - Middle: separation r, with collisions marked
    - Bottom: energy drift dE

    Parameters
    ----------
    events : list of EventRecord or dict of arrays
        Records from an EventLog or columns from io_cfg.read_event_log().
    output_path : str
        Output file path (e.g. "output/events.png").
    dpi : int, optional
        Output resolution (default: 150).

    Examples
    --------
    >>> plot_event_log(read_event_log("events.csv"), "output/events.png")
    Saved event log plot to output/events.png
    """
    cols = as_columns(events)
    t = cols['t']
    names = cols['event_type']
    if len(t) == 0:
        raise ValueError("Event log is empty, nothing to plot")

    fig, (ax1, ax2, ax3) = plt.subplots(3, 1, figsize=(10, 10), sharex=True)

    ax1.plot(t, cols['theta'], '.', markersize=2, label='theta')
    ax1.plot(t, cols['phi'], '.', markersize=2, label='phi')
    ax1.set_ylabel('angle [deg]', fontsize=12)
    ax1.set_ylim(-180, 180)
    ax1.set_title('Bouncing magnet: event log', fontsize=14, fontweight='bold')
    ax1.legend(loc='best', fontsize=10)
    ax1.grid(True, alpha=0.3)

    for name, color in EVENT_COLORS.items():
        mask = names == name
        if np.any(mask):
            ax2.plot(t[mask], cols['r'][mask], '.', color=color, markersize=3, label=name)
    ax2.axhline(1.0, color='gray', linestyle='--', linewidth=1)
    ax2.set_ylabel('r', fontsize=12)
    ax2.legend(loc='best', fontsize=8, ncol=2)
    ax2.grid(True, alpha=0.3)

    ax3.plot(t, cols['dE'], 'b-', linewidth=1)
    ax3.set_xlabel('t', fontsize=12)
    ax3.set_ylabel('dE', fontsize=12)
    ax3.grid(True, alpha=0.3)

    textstr = f"Records: {len(t)}\nCollisions: {int(np.sum(names == 'collision'))}"
    ax3.text(0.02, 0.98, textstr, transform=ax3.transAxes,
             verticalalignment='top', bbox=dict(boxstyle='round',
             facecolor='wheat', alpha=0.5), fontsize=10)

    plt.tight_layout()

    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    plt.savefig(output_path, dpi=dpi, bbox_inches='tight')
    plt.close(fig)

    print(f"Saved event log plot to {output_path}")


def plot_spectrum(
    freqs: np.ndarray,
    magnitudes: np.ndarray,
    output_path: str,
    dt: Optional[float] = None,
    n_series: Optional[int] = None,
    dpi: int = 150,
) -> None:
    """Log-scale magnitude spectrum of a single-step run.

    Parameters
    ----------
    freqs : ndarray
        Frequency bin indices k (or frequencies, if already scaled).
    magnitudes : ndarray
        |rfft| for each bin.
    output_path : str
        Output file path.
    dt : float, optional
        Fixed step size; if given, bins are converted to frequencies
        k / (N dt).
    n_series : int, optional
        Length N of the sampled series. Required with dt, since an rfft
        of N or N + 1 samples can have the same number of bins.
    """
    freqs = np.asarray(freqs, dtype=np.float64)
    magnitudes = np.asarray(magnitudes, dtype=np.float64)
    if freqs.shape != magnitudes.shape:
        raise ValueError(f"Shape mismatch: freqs {freqs.shape} vs magnitudes {magnitudes.shape}")

    xlabel = 'bin k'
    if dt is not None:
        if n_series is None:
            raise ValueError("n_series is required to convert bins to frequencies")
        if len(freqs) != n_series // 2 + 1:
            raise ValueError(
                f"{len(freqs)} bins do not match an rfft of {n_series} samples"
            )
        freqs = freqs / (n_series * dt)
        xlabel = 'frequency [1/t]'

    fig, ax = plt.subplots(figsize=(10, 5))
    # Skip the DC bin on a log axis
    ax.semilogy(freqs[1:], magnitudes[1:], 'b-', linewidth=1)
    ax.set_xlabel(xlabel, fontsize=12)
    ax.set_ylabel('|FFT|', fontsize=12)
    ax.set_title('Single-step spectrum', fontsize=14, fontweight='bold')
    ax.grid(True, which='both', alpha=0.3)

    plt.tight_layout()

    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    plt.savefig(output_path, dpi=dpi, bbox_inches='tight')
    plt.close(fig)

    print(f"Saved spectrum plot to {output_path}")
