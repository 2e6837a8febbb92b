"""Event detection and event-log output.

An event is either
- a zero-crossing of one of six signals between two consecutive states
  (theta, phi, beta, pr, ptheta, pphi), or
- a collision with the fixed magnet, reported by the driver.

Each crossing is located by linear interpolation in the signal that crossed,
so one integrator step can produce several records, each with its own
interpolated state and stamped with the step time. Records are written to a
CSV log as they happen:

    n, event_type, t, r, theta, phi, pr, ptheta, pphi, beta, E, dE
    1,phi = 0,0.532107,1.488226,0.371201,0.000000,...

The module also provides StepLog, which replaces the event log when a
single angle is sampled at every step (optionally reduced to an FFT
magnitude spectrum).
"""

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Union
import sys
import numpy as np

from magphyx import physics
from magphyx.state import Dipole, crossing_fraction, interpolate

# States closer to zero than this count as zero
EPSILON = 1e-12

HEADER = "n, event_type, t, r, theta, phi, pr, ptheta, pphi, beta, E, dE"


class Signal(Enum):
    """Scalar signals tracked for zero-crossings, in logging order."""
    THETA = "theta"
    PHI = "phi"
    BETA = "beta"
    PR = "pr"
    PTHETA = "ptheta"
    PPHI = "pphi"

    @property
    def event_name(self) -> str:
        return f"{self.value} = 0"


ACCESSORS: Dict[Signal, Callable[[Dipole], float]] = {
    Signal.THETA: lambda d: d.theta,
    Signal.PHI: lambda d: d.phi,
    Signal.BETA: physics.beta,
    Signal.PR: lambda d: d.pr,
    Signal.PTHETA: lambda d: d.ptheta,
    Signal.PPHI: lambda d: d.pphi,
}


def sign(x: float) -> int:
    """Sign of x with |x| <= EPSILON treated as zero."""
    if x < -EPSILON:
        return -1
    if x > EPSILON:
        return 1
    return 0


def is_zero_crossing(a: float, b: float) -> bool:
    """True if a signal moving from a to b crosses or lands on zero.

    A signal that starts at zero never crosses; leaving zero is not an
    event, arriving at it is.

    Examples
    --------
    >>> is_zero_crossing(0.3, -0.1)
    True
    >>> is_zero_crossing(0.3, 0.0)
    True
    >>> is_zero_crossing(0.0, -0.1)
    False
    """
    sa = sign(a)
    if sa == 0:
        return False
    sb = sign(b)
    return sa == -sb or sb == 0


def is_negative_zero_crossing(a: float, b: float) -> bool:
    """True only for a positive-to-nonpositive transition.

    Used for the radial momentum, where only the turn from outbound
    (pr > 0) to inbound is of interest.
    """
    return sign(a) > 0 and sign(b) <= 0


def crosses(signal: Signal, a: float, b: float) -> bool:
    """Crossing test for a given signal between values a and b."""
    if signal is Signal.PR:
        return is_negative_zero_crossing(a, b)
    return is_zero_crossing(a, b)


@dataclass(frozen=True)
class EventRecord:
    """One line of the event log."""
    n: int
    name: str
    t: float
    state: Dipole

    @property
    def beta(self) -> float:
        return physics.beta(self.state)

    def to_csv(self) -> str:
        """Row in the event-log format (fixed six decimals, dE as %.2e)."""
        d = self.state
        return (
            f"{self.n},{self.name},{self.t:f},{d.r:f},"
            f"{physics.rad2deg(d.theta):f},{physics.rad2deg(d.phi):f},"
            f"{d.pr:f},{d.ptheta:f},{d.pphi:f},{self.beta:f},"
            f"{d.E:f},{d.dE:.2e}"
        )


Output = Union[None, str, Path]


class _Sink:
    """Output handle shared by the two log types.

    None writes to stdout, a path is opened for writing and owned by the
    log, anything else is treated as an open text stream owned by the
    caller.
    """

    def __init__(self, output):
        if output is None:
            self._file = sys.stdout
            self._owned = False
        elif isinstance(output, (str, Path)):
            path = Path(output)
            path.parent.mkdir(parents=True, exist_ok=True)
            self._file = open(path, 'w')
            self._owned = True
        else:
            self._file = output
            self._owned = False
        self.closed = False

    def write_line(self, line: str) -> None:
        self._file.write(line + "\n")

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._owned:
            self._file.close()
        else:
            self._file.flush()


class EventLog:
    """Detects zero-crossings between consecutive states and logs them.

    Parameters
    ----------
    output : None, str, Path or text stream
        Where to write the CSV log. None means stdout.
    state : Dipole
        Initial state; the first call to log() compares against it.

    Attributes
    ----------
    records : list of EventRecord
        Every record written so far, in order.

    Notes
    -----
    Use as a context manager so the output is closed on every exit path,
    including a DivergenceError raised mid-run. Records already written
    are kept.

    Examples
    --------
    >>> import io
    >>> buf = io.StringIO()
    >>> with EventLog(buf, Dipole(r=2.0, pr=0.1)) as log:
    ...     log.log(Dipole(r=2.0, pr=-0.1), t=1.0)
    True
    >>> log.records[0].name, log.records[0].t
    ('pr = 0', 1.0)
    """

    def __init__(self, output: Output, state: Dipole):
        self._sink = _Sink(output)
        self._state = state
        self.records: List[EventRecord] = []
        self._sink.write_line(HEADER)

    @property
    def record_count(self) -> int:
        """Number of records written (the id of the last one)."""
        return len(self.records)

    @property
    def state(self) -> Dipole:
        """Last state handed to log() or log_collision()."""
        return self._state

    def log(self, new_state: Dipole, t: float) -> bool:
        """Log every signal that crossed zero since the previous state.

        Each crossing gets its own record, with the state interpolated
        linearly in the crossing signal and the time t of new_state. A sign
        flip across the angle cut at +-pi counts like any other. The
        retained state always advances to new_state.

        Returns
        -------
        bool
            True if at least one record was written.
        """
        prev = self._state
        fired = False
        for signal, key in ACCESSORS.items():
            a, b = key(prev), key(new_state)
            if not crosses(signal, a, b):
                continue
            self._event(signal.event_name, interpolate(prev, new_state, crossing_fraction(a, b)), t)
            fired = True

        self._state = new_state
        return fired

    def log_collision(self, new_state: Dipole, t: float) -> None:
        """Unconditionally write a 'collision' record at new_state."""
        self._event("collision", new_state, t)
        self._state = new_state

    def _event(self, name: str, state: Dipole, t: float) -> None:
        record = EventRecord(n=len(self.records) + 1, name=name, t=float(t), state=state)
        self.records.append(record)
        self._sink.write_line(record.to_csv())

    def close(self) -> None:
        self._sink.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


class StepLog:
    """Samples one angle at every accepted state instead of logging events.

    Parameters
    ----------
    output : None, str, Path or text stream
        Destination; None means stdout.
    variable : str
        'theta' or 'phi'. Written in degrees.
    fft : bool
        Replace the time series by the magnitude of its real FFT when the
        log is closed. Meaningful with a fixed step size.

    Notes
    -----
    Lines are written when the log is closed:
    - time series: "t value"
    - spectrum: "k magnitude" for each rfft bin k
    """

    def __init__(self, output: Output, variable: str, fft: bool = False):
        if variable not in ("theta", "phi"):
            raise ValueError(f"Single-step variable must be 'theta' or 'phi', got {variable!r}")
        self._sink = _Sink(output)
        self.variable = variable
        self.fft = fft
        self.times: List[float] = []
        self.values: List[float] = []

    @property
    def record_count(self) -> int:
        return len(self.values)

    def log(self, new_state: Dipole, t: float) -> bool:
        self.times.append(float(t))
        self.values.append(physics.rad2deg(getattr(new_state, self.variable)))
        return False

    def log_collision(self, new_state: Dipole, t: float) -> None:
        self.log(new_state, t)

    def spectrum(self) -> np.ndarray:
        """Magnitude of the real FFT of the sampled values."""
        return np.abs(np.fft.rfft(np.asarray(self.values, dtype=np.float64)))

    def close(self) -> None:
        if self._sink.closed:
            return
        if self.fft:
            for k, magnitude in enumerate(self.spectrum()):
                self._sink.write_line(f"{k} {magnitude:.10g}")
        else:
            for t, value in zip(self.times, self.values):
                self._sink.write_line(f"{t:.10g} {value:.10g}")
        self._sink.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False
