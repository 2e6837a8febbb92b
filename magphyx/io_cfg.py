"""Configuration and I/O module for the bouncing-magnet simulator.

This module provides:
- SimulationConfig, the immutable set of run options
- YAML configuration loading and validation
- Example config generation
- Initial conditions from a CSV file (e.g. one row of a previous event log)
- Reading an event log back into numpy arrays
- JSON output for run summaries

Angles are given in degrees in every user-facing file (YAML, CSV) and
converted to radians on load.
"""

from dataclasses import dataclass, field, replace
from typing import Dict, List, Tuple, Optional, Any
import numpy as np
import yaml
import json
from pathlib import Path

from magphyx import physics
from magphyx.state import Dipole
from magphyx.errors import InitialConditionError


# Demo initial condition: side-on, spin perpendicular to the axis, at rest
DEFAULT_INITIAL = Dipole.from_degrees(r=1.5, theta=0.0, phi=90.0)

STATE_COLUMNS = ("r", "theta", "phi", "pr", "ptheta", "pphi")

# Column types of the event log, in header order
EVENT_COLUMN_TYPES = [int, "U16"] + [np.float64] * 10


@dataclass(frozen=True)
class SimulationConfig:
    """Options for one simulation run.

    Attributes
    ----------
    initial : Dipole
        Initial state (angles in radians).
    h0 : float
        Nominal step size, also restored after every collision.
    eps : float
        Local error tolerance of the adaptive stepper.
    num_events : int
        Event budget; -1 disables it in favour of the step budget.
    log_num_steps : int
        If >= 0, run for 2**log_num_steps integrator steps instead.
    dynamics : str
        'bouncing' or 'sliding'.
    fixed_h : bool
        Disable error control and keep h = h0.
    single_step : str or None
        'theta' or 'phi' to write that angle at every step instead of
        the event log.
    fft : bool
        With single_step, write the FFT magnitude of the series instead.
    output : str or None
        Output path; None means stdout.
    max_retries : int
        Rejections allowed within one adaptive step.
    max_bisections : int
        Half steps allowed while resolving one collision.
    progress_every : int
        Progress line refresh interval in events.
    interactive : bool
        Print the state after every free-flight step and wait for Enter.
    """

    initial: Dipole = DEFAULT_INITIAL
    h0: float = 1e-2
    eps: float = 1e-10
    num_events: int = 100000
    log_num_steps: int = -1
    dynamics: str = "bouncing"
    fixed_h: bool = False
    single_step: Optional[str] = None
    fft: bool = False
    output: Optional[str] = None
    max_retries: int = 100
    max_bisections: int = 200
    progress_every: int = 1000
    interactive: bool = False
    extras: Dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def num_steps(self) -> Optional[int]:
        """Step budget 2**log_num_steps, or None when disabled."""
        if self.log_num_steps < 0:
            return None
        return 2 ** self.log_num_steps

    def with_overrides(self, **changes) -> "SimulationConfig":
        """Copy with the given fields replaced; None values are ignored."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})

    def loop_opts(self, progress: bool = False) -> Dict[str, Any]:
        """Options dict for dynamics.integrate_events."""
        return {
            'num_events': -1 if self.num_steps is not None else self.num_events,
            'num_steps': self.num_steps,
            'max_bisections': self.max_bisections,
            'progress': progress,
            'progress_every': self.progress_every,
        }


def load_config(yaml_path: str) -> SimulationConfig:
    """Load and parse YAML configuration file.

    Parameters
    ----------
    yaml_path : str
        Path to YAML configuration file.

    Returns
    -------
    SimulationConfig

    Raises
    ------
    FileNotFoundError
        If yaml_path does not exist.
    yaml.YAMLError
        If YAML parsing fails.
    KeyError
        If a required section or field is missing.
    ValueError
        If a value cannot be converted or is out of range.

    Notes
    -----
    Sections:
    - initial: r, theta, phi (degrees), pr, ptheta, pphi (momenta optional)
    - numerics: h0, eps (optional: fixed_h, dynamics, max_retries,
      max_bisections)
    - run: num_events, log_num_steps, single_step, fft (all optional)
    - output: path, progress_every, summary_json (all optional)

    Examples
    --------
    >>> config = load_config("demo.yaml")
    >>> config.initial.r, config.h0
    (1.5, 0.01)
    """
    yaml_path = Path(yaml_path)
    if not yaml_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

    with open(yaml_path, 'r') as f:
        raw_config = yaml.safe_load(f)

    if raw_config is None:
        raise ValueError(f"Empty or invalid YAML file: {yaml_path}")

    # Initial state
    if 'initial' not in raw_config:
        raise KeyError("Configuration missing required section 'initial'")

    initial_cfg = raw_config['initial']
    try:
        initial = Dipole.from_degrees(
            r=float(initial_cfg['r']),
            theta=float(initial_cfg['theta']),
            phi=float(initial_cfg['phi']),
            pr=float(initial_cfg.get('pr', 0.0)),
            ptheta=float(initial_cfg.get('ptheta', 0.0)),
            pphi=float(initial_cfg.get('pphi', 0.0)),
        )
    except KeyError as e:
        raise KeyError(f"Initial state missing required field {e}")
    except (ValueError, TypeError) as e:
        raise ValueError(f"Initial state: {e}")

    # Numerics
    if 'numerics' not in raw_config:
        raise KeyError("Configuration missing required section 'numerics'")

    numerics_cfg = raw_config['numerics']
    try:
        numerics = {
            'h0': float(numerics_cfg['h0']),
            'eps': float(numerics_cfg['eps']),
            'fixed_h': bool(numerics_cfg.get('fixed_h', False)),
            'dynamics': str(numerics_cfg.get('dynamics', 'bouncing')),
            'max_retries': int(numerics_cfg.get('max_retries', 100)),
            'max_bisections': int(numerics_cfg.get('max_bisections', 200)),
        }
    except KeyError as e:
        raise KeyError(f"Section 'numerics' missing required field {e}")
    except (ValueError, TypeError) as e:
        raise ValueError(f"Section 'numerics': {e}")

    # Run length and output mode
    run_cfg = raw_config.get('run') or {}
    single_step = run_cfg.get('single_step')
    run = {
        'num_events': int(float(run_cfg.get('num_events', 100000))),
        'log_num_steps': int(run_cfg.get('log_num_steps', -1)),
        'single_step': None if single_step is None else str(single_step),
        'fft': bool(run_cfg.get('fft', False)),
    }

    output_cfg = raw_config.get('output') or {}
    path = output_cfg.get('path')
    extras = {}
    if output_cfg.get('summary_json') is not None:
        extras['summary_json'] = str(output_cfg['summary_json'])

    return SimulationConfig(
        initial=initial,
        output=None if path is None else str(path),
        progress_every=int(output_cfg.get('progress_every', 1000)),
        extras=extras,
        **numerics,
        **run,
    )


def validate_config(config: SimulationConfig) -> Tuple[bool, List[str]]:
    """Validate configuration for consistency and numerical sanity.

    Parameters
    ----------
    config : SimulationConfig
        Configuration from load_config() or built directly.

    Returns
    -------
    is_valid : bool
        True if configuration passes all checks (may still have warnings).
    warnings_list : list of str
        Warning and error messages.

    Notes
    -----
    Errors (is_valid = False):
    - initial r < 1 (magnets overlap)
    - h0 <= 0, eps <= 0, unknown dynamics or single-step variable
    - neither an event budget nor a step budget
    - a single-step run without a step budget (it writes no events)

    Warnings only:
    - --fft without a fixed step (non-uniform sampling)
    - loose eps or large h0
    - sliding dynamics starting off the contact sphere
    """
    warnings_list = []
    is_valid = True

    state = config.initial
    if state.r < 1.0:
        is_valid = False
        warnings_list.append(
            f"Initial separation r = {state.r:.6g} < 1: magnets overlap"
        )

    if config.h0 <= 0:
        is_valid = False
        warnings_list.append(f"Step size h0 must be positive, got {config.h0}")
    elif config.h0 > 0.1:
        warnings_list.append(
            f"Step size h0 = {config.h0:.3e} is large; collisions will need many bisections"
        )

    if config.eps <= 0:
        is_valid = False
        warnings_list.append(f"Error tolerance eps must be positive, got {config.eps}")
    elif config.eps > 1e-6:
        warnings_list.append(
            f"Error tolerance eps = {config.eps:.1e} is loose; expect visible energy drift"
        )

    if config.dynamics not in physics.DYNAMICS:
        is_valid = False
        warnings_list.append(
            f"Unknown dynamics {config.dynamics!r}, expected one of {physics.DYNAMICS}"
        )
    elif config.dynamics == "sliding" and abs(state.r - 1.0) > 1e-12:
        warnings_list.append(
            f"Sliding dynamics with r = {state.r:.6g}: the magnet is held at this radius"
        )

    if config.num_steps is None and config.num_events <= 0:
        is_valid = False
        warnings_list.append(
            "Run is unbounded: set num_events > 0 or log_num_steps >= 0"
        )

    if config.single_step is not None:
        if config.single_step not in ("theta", "phi"):
            is_valid = False
            warnings_list.append(
                f"Single-step variable must be 'theta' or 'phi', got {config.single_step!r}"
            )
        if config.num_steps is None:
            is_valid = False
            warnings_list.append("Single-step output requires log_num_steps >= 0")
    elif config.fft:
        warnings_list.append("fft has no effect without single-step output")

    if config.fft and not config.fixed_h:
        warnings_list.append(
            "FFT of an adaptive-step series assumes uniform sampling; use fixed_h"
        )

    if config.max_retries < 1 or config.max_bisections < 1:
        is_valid = False
        warnings_list.append(
            f"max_retries and max_bisections must be >= 1, got "
            f"{config.max_retries} and {config.max_bisections}"
        )

    if config.progress_every <= 0:
        is_valid = False
        warnings_list.append(f"progress_every must be positive, got {config.progress_every}")

    return is_valid, warnings_list


def create_example_config(output_path: str) -> None:
    """Generate example YAML configuration file.

    The example is the demo run: magnet released at rest at r = 1.5 on the
    axis of the fixed magnet, with its moment perpendicular to the axis.

    Examples
    --------
    >>> create_example_config("demo.yaml")
    Example configuration written to: demo.yaml
    >>> load_config("demo.yaml").num_events
    100000
    """
    state = DEFAULT_INITIAL

    yaml_content = f"""# Bouncing magnet simulator configuration
# Demo run: released at rest on the axis, moment perpendicular to it.
#
# Units: magnet diameter (contact at r = 1), unit mass,
# energy mu0 m^2 / (4 pi d^3). Angles in degrees.

# ============================================================================
# Initial state
# ============================================================================
initial:
  r: {state.r}
  theta: {physics.rad2deg(state.theta)}
  phi: {physics.rad2deg(state.phi)}
  pr: {state.pr}
  ptheta: {state.ptheta}
  pphi: {state.pphi}

# ============================================================================
# Numerics
# ============================================================================
numerics:
  # Nominal step size, restored after every collision
  h0: 1.0e-2

  # Local error tolerance per step
  eps: 1.0e-10

  # Keep h = h0 and skip error control
  fixed_h: false

  # bouncing: free motion with collisions
  # sliding: held on the contact sphere
  dynamics: bouncing

  max_retries: 100
  max_bisections: 200

# ============================================================================
# Run length and output mode
# ============================================================================
run:
  # Stop after this many event records
  num_events: 100000

  # If >= 0, run 2**log_num_steps steps instead
  log_num_steps: -1

  # theta or phi: write that angle at every step instead of events
  single_step: null

  # With single_step, write the FFT magnitude of the series
  fft: false

# ============================================================================
# Output
# ============================================================================
output:
  # Event log path; null writes to stdout
  path: events.csv

  # Refresh the progress line every N events
  progress_every: 1000

  # Optional JSON summary of the run
  summary_json: null
"""

    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    with open(output_path, 'w') as f:
        f.write(yaml_content)

    print(f"Example configuration written to: {output_path}")


def load_initial_conditions(csv_path: str) -> Dipole:
    """Read an initial state from the second line of a CSV file.

    The first line is a header naming the columns; r, theta, phi, pr,
    ptheta and pphi are located by name, so a line copied from an event
    log works as well as a bare six-column file. Angles are in degrees.

    Raises
    ------
    InitialConditionError
        If the file is missing, has no data row, lacks a column or holds
        a non-numeric value.
    """
    csv_path = Path(csv_path)
    if not csv_path.exists():
        raise InitialConditionError(f"Initial condition file not found: {csv_path}")

    with open(csv_path, 'r') as f:
        lines = [line.strip() for line in f if line.strip()]

    if len(lines) < 2:
        raise InitialConditionError(
            f"Initial condition file {csv_path} needs a header line and a data line"
        )

    header = [name.strip() for name in lines[0].split(',')]
    row = [value.strip() for value in lines[1].split(',')]

    missing = [name for name in STATE_COLUMNS if name not in header]
    if missing:
        raise InitialConditionError(
            f"Initial condition file {csv_path} missing columns: {', '.join(missing)}"
        )
    if len(row) < len(header):
        raise InitialConditionError(
            f"Initial condition file {csv_path}: data line has {len(row)} fields, "
            f"header has {len(header)}"
        )

    values = {}
    for name in STATE_COLUMNS:
        text = row[header.index(name)]
        try:
            values[name] = float(text)
        except ValueError:
            raise InitialConditionError(
                f"Initial condition file {csv_path}: {name} = {text!r} is not a number"
            )

    try:
        return Dipole.from_degrees(**values)
    except ValueError as e:
        raise InitialConditionError(f"Initial condition file {csv_path}: {e}")


def read_event_log(path: str) -> Dict[str, np.ndarray]:
    """Read an event log CSV back into column arrays.

    Returns
    -------
    dict
        One array per column, keyed by header name. 'n' is int,
        'event_type' is a str array, every other column float. Angles
        theta and phi stay in degrees, as written.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Event log not found: {path}")

    if path.stat().st_size == 0:
        raise ValueError(f"Empty event log: {path}")

    # Field names come from the header line; a row with the wrong number
    # of fields raises ValueError
    data = np.genfromtxt(
        path,
        delimiter=',',
        names=True,
        dtype=EVENT_COLUMN_TYPES,
        encoding=None,
        ndmin=1,
    )
    return {name: data[name] for name in data.dtype.names}


def save_summary_json(filepath: str, summary: Dict[str, Any]) -> None:
    """Save a run summary to JSON, converting numpy values."""
    filepath = Path(filepath)
    filepath.parent.mkdir(parents=True, exist_ok=True)

    def convert_to_json_serializable(obj):
        if isinstance(obj, np.ndarray):
            return obj.tolist()
        elif isinstance(obj, dict):
            return {key: convert_to_json_serializable(val) for key, val in obj.items()}
        elif isinstance(obj, (list, tuple)):
            return [convert_to_json_serializable(item) for item in obj]
        elif isinstance(obj, (np.integer, np.floating)):
            return obj.item()
        elif isinstance(obj, Dipole):
            return {name: getattr(obj, name) for name in STATE_COLUMNS + ("E", "dE")}
        else:
            return obj

    with open(filepath, 'w') as f:
        json.dump(convert_to_json_serializable(summary), f, indent=2)

    print(f"Saved summary to {filepath} ({len(summary)} top-level keys)")


# ============================================================================
# Example usage
# ============================================================================
if __name__ == "__main__":
    import sys

    if len(sys.argv) > 1 and sys.argv[1] == "create_example":
        create_example_config(sys.argv[2] if len(sys.argv) > 2 else "demo.yaml")

    elif len(sys.argv) > 1 and sys.argv[1] == "validate":
        config_path = sys.argv[2] if len(sys.argv) > 2 else "demo.yaml"
        config = load_config(config_path)
        print(config.initial)

        is_valid, warnings_list = validate_config(config)
        for w in warnings_list:
            print(f"  - {w}")
        if not is_valid:
            print("\nConfiguration is INVALID. Please fix errors above.")
            sys.exit(1)
        print("\nConfiguration is VALID and ready for simulation.")

    else:
        print("Usage:")
        print("  python -m magphyx.io_cfg create_example [output.yaml]")
        print("  python -m magphyx.io_cfg validate [config.yaml]")
