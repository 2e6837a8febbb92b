#!/usr/bin/env python3
"""
Main command-line interface for the bouncing-magnet simulator.

A small spherical magnet moves in the field of an identical magnet fixed at
the origin, bouncing off it on contact. The run writes a CSV log of events
(zero-crossings of the angles and momenta, and collisions) or, in
single-step mode, one angle at every step.

It handles:
- Configuration from YAML, an initial-condition CSV or command-line flags
- Simulation with an in-place progress line
- A diagnostic state table when the integrator diverges
- An interactive mode printing the state table after every step
- Summary output, optional JSON summary and plots

Usage:
    python -m magphyx.run
    python -m magphyx.run -o events.csv -n 10000
    python -m magphyx.run --config demo.yaml --verbose
    python -m magphyx.run -i 1.5 0 90 0 0 0 -c --log-num-steps 16 -s phi --fft

Example:
    # Demo run, 1000 events to a file
    python -m magphyx.run -o events.csv -n 1000 --verbose

    # Continue from the last line of a previous log
    (head -1 events.csv; tail -1 events.csv) > ic.csv
    python -m magphyx.run -f ic.csv -o more_events.csv
"""

import argparse
import sys
import time
from typing import Dict, Any
import warnings
import numpy as np

from magphyx import physics
from magphyx.io_cfg import (
    SimulationConfig,
    load_config,
    validate_config,
    create_example_config,
    load_initial_conditions,
    save_summary_json,
)
from magphyx.state import Dipole
from magphyx.dynamics import Stepper, integrate_events
from magphyx.events import EventLog, StepLog
from magphyx.diagnostics import summarize_events, energy_drift_monitor, collision_intervals
from magphyx.errors import DivergenceError, InitialConditionError


# ============================================================================
# Main simulation runner
# ============================================================================

def run_simulation(config: SimulationConfig, verbose: bool = False) -> Dict[str, Any]:
    """
    Run one simulation.

    Parameters
    ----------
    config : SimulationConfig
        Validated configuration.
    verbose : bool
        Print the run header.

    Returns
    -------
    results : dict
        - 'loop': summary dict from integrate_events
        - 'log': the EventLog or StepLog (closed)
        - 'summary': summary statistics dict
    Raises
    ------
    DivergenceError
        If the integrator fails. The output written so far is kept and
        the log is closed.
    """
    out = info_stream(config)

    if verbose:
        print("=" * 80, file=out)
        print("BOUNCING MAGNET SIMULATOR", file=out)
        print("=" * 80, file=out)
        print(file=out)
        print("Initial state:", file=out)
        print(f"  {config.initial}".replace("\n", "\n  "), file=out)
        print(file=out)
        print("Integration parameters:", file=out)
        print(f"  Step size h0:       {config.h0:.6e}", file=out)
        print(f"  Tolerance eps:      {config.eps:.6e}", file=out)
        print(f"  Step control:       {'FIXED' if config.fixed_h else 'ADAPTIVE'}", file=out)
        print(f"  Dynamics:           {config.dynamics}", file=out)
        if config.num_steps is not None:
            print(f"  Step budget:        2^{config.log_num_steps} = {config.num_steps:,}", file=out)
        else:
            print(f"  Event budget:       {config.num_events:,}", file=out)
        print(f"  Output:             {config.output or 'stdout'}", file=out)
        print(file=out)

    stepper = Stepper(
        config.initial,
        h=config.h0,
        eps=config.eps,
        fixed_h=config.fixed_h,
        dynamics=config.dynamics,
        max_retries=config.max_retries,
    )

    if config.single_step is not None:
        log = StepLog(config.output, config.single_step, fft=config.fft)
    else:
        log = EventLog(config.output, config.initial)

    # The progress line shares stdout with the log otherwise
    progress = (config.output is not None and config.single_step is None
                and not config.interactive)
    opts = config.loop_opts(progress=progress)
    if config.interactive:
        print_state_header(out)
        print_state_row(0.0, config.h0, config.initial, out=out)
        opts['on_step'] = interactive_pager(out)

    t_start = time.time()
    with log:
        loop = integrate_events(stepper, log, opts)
    elapsed = time.time() - t_start

    summary = compute_summary(loop, log, elapsed)

    if config.single_step is None and config.num_steps is not None and loop['records'] == 0:
        warnings.warn(
            f"No events recorded in {loop['steps']} steps; the step budget may be too small",
            RuntimeWarning,
        )

    return {
        'loop': loop,
        'log': log,
        'summary': summary,
    }


def compute_summary(loop: Dict, log, elapsed_time: float) -> Dict[str, Any]:
    """
    Compute summary statistics from a finished run.

    Parameters
    ----------
    loop : dict
        Return value of integrate_events.
    log : EventLog or StepLog
        The log the run wrote to.
    elapsed_time : float
        Wall-clock time for integration [seconds].
    """
    final_state = loop['state']
    summary = {
        'timing': {
            'elapsed_seconds': elapsed_time,
            'steps_per_second': loop['steps'] / elapsed_time if elapsed_time > 0 else 0.0,
        },
        'integration': {
            'n_steps': loop['steps'],
            'n_rejected': loop['rejected'],
            'total_time': loop['t'],
            'collisions': loop['collisions'],
        },
        'energy': {
            'initial': final_state.E0,
            'final': final_state.E,
            'drift_absolute': final_state.dE,
        },
        'final_state': final_state,
        'events': None,
    }

    if isinstance(log, EventLog) and log.record_count > 0:
        events = summarize_events(log.records)
        if log.record_count >= 2:
            events['drift'] = energy_drift_monitor(log.records)
        intervals = collision_intervals(log.records)
        if len(intervals) > 0:
            events['mean_collision_interval'] = float(np.mean(intervals))
        summary['events'] = events

    return summary


def print_summary(summary: Dict[str, Any], out=None, verbose: bool = False) -> None:
    """
    Print human-readable simulation summary.

    Parameters
    ----------
    summary : dict
        Summary statistics from compute_summary
    out : text stream
        Destination (default: stdout)
    verbose : bool
        Print extended details
    """
    out = out or sys.stdout

    print(file=out)
    print("=" * 80, file=out)
    print("SIMULATION SUMMARY", file=out)
    print("=" * 80, file=out)
    print(file=out)

    t = summary['timing']
    print("Performance:", file=out)
    print(f"  Wall time:          {t['elapsed_seconds']:.2f} seconds", file=out)
    print(f"  Speed:              {t['steps_per_second']:.1f} steps/second", file=out)
    print(file=out)

    i = summary['integration']
    print("Integration:", file=out)
    print(f"  Total steps:        {i['n_steps']:,}", file=out)
    print(f"  Rejected attempts:  {i['n_rejected']:,}", file=out)
    print(f"  Final time:         {i['total_time']:.6e}", file=out)
    print(f"  Collisions:         {i['collisions']:,}", file=out)
    print(file=out)

    e = summary['energy']
    print("Energy conservation:", file=out)
    print(f"  Initial energy:     {e['initial']:+.10e}", file=out)
    print(f"  Final energy:       {e['final']:+.10e}", file=out)
    print(f"  Absolute drift:     {e['drift_absolute']:+.6e}", file=out)

    if abs(e['drift_absolute']) < 1e-8:
        quality = "EXCELLENT"
    elif abs(e['drift_absolute']) < 1e-5:
        quality = "GOOD"
    elif abs(e['drift_absolute']) < 1e-3:
        quality = "ACCEPTABLE"
    else:
        quality = "POOR (tighten eps)"
    print(f"  Quality:            {quality}", file=out)
    print(file=out)

    if summary['events'] is not None:
        ev = summary['events']
        print("Events:", file=out)
        print(f"  Records:            {ev['n_records']:,}", file=out)
        for name, count in sorted(ev['counts'].items()):
            print(f"    {name:<16s}  {count:,}", file=out)
        print(f"  Max |dE|:           {ev['max_abs_dE']:.3e}", file=out)
        if verbose and 'mean_collision_interval' in ev:
            print(f"  Mean collision gap: {ev['mean_collision_interval']:.6e}", file=out)
        print(file=out)

    if verbose:
        print("Final state:", file=out)
        print(f"  {summary['final_state']}".replace("\n", "\n  "), file=out)
        print(file=out)


STATE_TABLE_COLUMNS = ("t", "h", "r", "theta", "phi", "pr", "ptheta", "pphi", "E", "dE")


def print_state_header(out=None) -> None:
    out = out or sys.stderr
    print("  ".join(f"{c:>14s}" for c in STATE_TABLE_COLUMNS), file=out)


def print_state_row(t: float, h: float, state: Dipole, out=None) -> None:
    """One row of the state table, angles in degrees."""
    out = out or sys.stderr
    values = (
        t, h, state.r,
        physics.rad2deg(state.theta), physics.rad2deg(state.phi),
        state.pr, state.ptheta, state.pphi, state.E, state.dE,
    )
    print("  ".join(f"{v:+14.6e}" for v in values), file=out)


def print_state_table(err: DivergenceError, out=None) -> None:
    """Print the state at which the integrator gave up."""
    print_state_header(out)
    print_state_row(err.t, err.h, err.state, out)


def interactive_pager(out, wait=None):
    """Step callback that prints the state row and waits for Enter.

    wait defaults to the builtin input().
    """
    def on_step(stepper):
        print_state_row(stepper.t, stepper.h, stepper.state, out=out)
        out.flush()
        (wait or input)()
    return on_step


def info_stream(config: SimulationConfig):
    """Human-readable output goes to stderr when the log occupies stdout."""
    return sys.stdout if config.output is not None else sys.stderr


def make_plot(config: SimulationConfig, results: Dict[str, Any], plot_path: str) -> None:
    """Plot the event log, or the spectrum of a single-step run."""
    from magphyx import viz

    log = results['log']
    if isinstance(log, EventLog):
        viz.plot_event_log(log.records, plot_path)
    else:
        magnitudes = log.spectrum()
        dt = config.h0 if config.fixed_h else None
        viz.plot_spectrum(np.arange(len(magnitudes)), magnitudes, plot_path,
                          dt=dt, n_series=log.record_count)


# ============================================================================
# Command-line interface
# ============================================================================

def create_parser() -> argparse.ArgumentParser:
    """Create argument parser for CLI."""
    parser = argparse.ArgumentParser(
        prog='magphyx.run',
        description=(
            'Bouncing magnet simulator: integrate a magnetic dipole moving in '
            'the field of a fixed dipole and log zero-crossings and collisions.'
        ),
        epilog=(
            'Examples:\n'
            '  python -m magphyx.run -o events.csv -n 1000\n'
            '  python -m magphyx.run --config demo.yaml --verbose\n'
            '  python -m magphyx.run -f ic.csv -o events.csv\n'
            '  python -m magphyx.run -c --log-num-steps 16 -s phi --fft\n'
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument(
        '--config',
        type=str,
        help='YAML configuration file; flags below override it',
    )

    initial = parser.add_mutually_exclusive_group()
    initial.add_argument(
        '-i', '--initial',
        type=float,
        nargs=6,
        metavar=('R', 'THETA', 'PHI', 'PR', 'PTHETA', 'PPHI'),
        help='Initial state, angles in degrees (default: 1.5 0 90 0 0 0)',
    )
    initial.add_argument(
        '-f', '--initial-file',
        type=str,
        help='CSV file whose second line holds the initial state',
    )

    parser.add_argument(
        '-o', '--output',
        type=str,
        help='Output file (default: stdout)',
    )

    parser.add_argument(
        '-d', '--dynamics',
        choices=physics.DYNAMICS,
        help='Equations of motion (default: bouncing)',
    )

    parser.add_argument(
        '-n', '--num-events',
        type=lambda s: int(float(s)),
        help='Stop after this many event records (default: 100000)',
    )

    parser.add_argument(
        '--log-num-steps',
        type=int,
        help='Run 2^N integrator steps instead of counting events',
    )

    parser.add_argument(
        '--h0',
        type=float,
        help='Nominal step size (default: 1e-2)',
    )

    parser.add_argument(
        '-e', '--eps',
        type=float,
        help='Local error tolerance (default: 1e-10)',
    )

    parser.add_argument(
        '-c', '--fixed-step',
        action='store_true',
        help='Keep the step size fixed at h0 (no error control)',
    )

    parser.add_argument(
        '-s', '--single-step',
        choices=('theta', 'phi'),
        help='Write this angle at every step instead of the event log',
    )

    parser.add_argument(
        '--fft',
        action='store_true',
        help='With --single-step, write the FFT magnitude of the series',
    )

    parser.add_argument(
        '--interactive',
        action='store_true',
        help='Print the state after every step and wait for Enter',
    )

    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Print run header and extended summary',
    )

    parser.add_argument(
        '--plot',
        type=str,
        help='Save a plot of the run to this path',
    )

    parser.add_argument(
        '--summary-json',
        type=str,
        help='Save the run summary as JSON to this path',
    )

    parser.add_argument(
        '--validate-only',
        action='store_true',
        help='Validate configuration and exit (no simulation)',
    )

    parser.add_argument(
        '--create-example',
        type=str,
        metavar='PATH',
        help='Write an example YAML configuration and exit',
    )

    return parser


def build_config(args: argparse.Namespace) -> SimulationConfig:
    """Combine the YAML config (if any) with command-line overrides.

    Raises
    ------
    FileNotFoundError, KeyError, ValueError
        From load_config.
    InitialConditionError
        From load_initial_conditions.
    """
    config = load_config(args.config) if args.config else SimulationConfig()

    initial = None
    if args.initial_file:
        initial = load_initial_conditions(args.initial_file)
    elif args.initial:
        r, theta, phi, pr, ptheta, pphi = args.initial
        initial = Dipole.from_degrees(r, theta, phi, pr, ptheta, pphi)

    return config.with_overrides(
        initial=initial,
        output=args.output,
        dynamics=args.dynamics,
        num_events=args.num_events,
        log_num_steps=args.log_num_steps,
        h0=args.h0,
        eps=args.eps,
        fixed_h=True if args.fixed_step else None,
        single_step=args.single_step,
        fft=True if args.fft else None,
        interactive=True if args.interactive else None,
    )


def main(argv=None):
    """Main entry point for CLI."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.create_example:
        create_example_config(args.create_example)
        return 0

    # 1) Build configuration
    try:
        config = build_config(args)
    except FileNotFoundError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1
    except InitialConditionError as e:
        print(f"ERROR: Bad initial conditions: {e}", file=sys.stderr)
        return 1
    except (KeyError, ValueError) as e:
        print(f"ERROR: Failed to load configuration: {e}", file=sys.stderr)
        if args.verbose:
            import traceback
            traceback.print_exc()
        return 1

    out = info_stream(config)

    # 2) Validate configuration
    is_valid, warnings_list = validate_config(config)

    if warnings_list:
        print("Configuration warnings/errors:", file=sys.stderr)
        for w in warnings_list:
            print(f"    - {w}", file=sys.stderr)

    if not is_valid:
        print("Configuration is INVALID. Please fix errors above.", file=sys.stderr)
        return 1

    if args.validate_only:
        print("Configuration validated successfully. Exiting (--validate-only mode).", file=out)
        return 0

    # 3) Run simulation
    try:
        results = run_simulation(config, verbose=args.verbose)
    except DivergenceError as e:
        print(f"\nERROR: Integration diverged: {e}", file=sys.stderr)
        print_state_table(e, out=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\n\nSimulation interrupted by user. Output written so far is kept.", file=sys.stderr)
        return 130

    # 4) Summary
    if args.verbose or config.output is not None:
        print_summary(results['summary'], out=out, verbose=args.verbose)

    # 5) Optional outputs
    summary_json = args.summary_json or config.extras.get('summary_json')
    if summary_json:
        save_summary_json(summary_json, results['summary'])

    if args.plot:
        make_plot(config, results, args.plot)

    return 0


if __name__ == '__main__':
    sys.exit(main())
