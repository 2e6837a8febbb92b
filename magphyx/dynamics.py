"""
Time integration and collision handling for the bouncing-magnet simulator.

This module implements:
- Stepper: an adaptive Cash-Karp Runge-Kutta 4(5) integrator with local
  error control, a single-level undo, and step halving for locating the
  contact boundary.
- integrate_events: the main loop that advances the stepper, resolves
  collisions with the fixed magnet by bisection, and feeds every accepted
  state to an event log.

Integration scheme (one call to Stepper.step):
1. Save (state, t, h) so the step can be undone
2. Take a Cash-Karp step of size h, giving a 5th order solution and an
   embedded 4th order error estimate
3. Compare the error with the allowed error per component
4. Reject: shrink h and retry (bounded number of retries)
5. Accept: advance t and state, grow h for the next call

Collision protocol (integrate_events):
1. After an accepted step, wrap theta and phi into (-pi, pi]
2. If r < 1 the magnets overlap: undo the step
3. Repeatedly take half steps; a half step that lands in r < 1 is undone,
   one that stays outside is kept and logged
4. Stop once 1 <= r <= 1.0000000000001
5. Log the collision, reflect pr, reset h to its nominal value
"""

import numpy as np
from typing import Dict, Optional, Tuple
from numpy.typing import NDArray

from magphyx import physics
from magphyx.state import Dipole
from magphyx.errors import DivergenceError, BoundaryNotResolvedError, UndoError

# Type aliases
Vec6 = NDArray[np.float64]  # Shape (6,)

# Contact radius and the tolerance bisection must reach above it
CONTACT_RADIUS = 1.0
CONTACT_TOLERANCE = 1.0000000000001

# Step-size controller constants
SAFETY = 0.9
MAX_SHRINK = 0.2
MAX_GROWTH = 5.0
REJECT_ABOVE = 1.1
GROW_BELOW = 0.5


# ============================================================================
# Cash-Karp coefficients
# ============================================================================

_C = np.array([0.0, 1 / 5, 3 / 10, 3 / 5, 1.0, 7 / 8])
_A = [
    [],
    [1 / 5],
    [3 / 40, 9 / 40],
    [3 / 10, -9 / 10, 6 / 5],
    [-11 / 54, 5 / 2, -70 / 27, 35 / 27],
    [1631 / 55296, 175 / 512, 575 / 13824, 44275 / 110592, 253 / 4096],
]
_B5 = np.array([37 / 378, 0.0, 250 / 621, 125 / 594, 0.0, 512 / 1771])
_B4 = np.array([2825 / 27648, 0.0, 18575 / 48384, 13525 / 55296, 277 / 14336, 1 / 4])


# ============================================================================
# Stepper
# ============================================================================

class Stepper:
    """Adaptive integrator owning the current state, time and step size.

    Parameters
    ----------
    state : Dipole
        Initial state.
    h : float
        Nominal (initial) step size h0. Restored by reset().
    eps : float
        Allowed local error per step. Component i may carry an error of
        eps * (1 + |y_i| + h |dy_i/dt|).
    fixed_h : bool
        Take every step with the current h and skip error control.
    dynamics : str
        'bouncing' or 'sliding', passed to physics.derivatives.
    max_retries : int
        Rejected attempts allowed within one step() before giving up.
    t : float
        Initial time.

    Attributes
    ----------
    state : Dipole
        Current state.
    t : float
        Current time.
    h : float
        Step size the next step() will try.
    h_taken : float
        Size of the last step actually taken.
    n_steps, n_rejected : int
        Counters of accepted steps and rejected attempts.

    Notes
    -----
    Only one level of history is kept. Every step() or step_half()
    overwrites the saved snapshot, and undo() consumes it; calling undo()
    twice in a row raises UndoError.

    The half-step size used during collision bisection is separate from h.
    The first step_half() after reset() uses half of h_taken, and each
    further call halves it again, whether or not the previous half step
    was undone. reset() clears it and restores h = h0.

    Examples
    --------
    >>> stepper = Stepper(Dipole(r=1.5, phi=np.pi / 2), h=1e-2, eps=1e-10)
    >>> stepper.step()
    >>> stepper.undo()
    >>> stepper.t
    0.0
    """

    def __init__(
        self,
        state: Dipole,
        h: float,
        eps: float = 1e-10,
        fixed_h: bool = False,
        dynamics: str = "bouncing",
        max_retries: int = 100,
        t: float = 0.0,
    ):
        if h <= 0:
            raise ValueError(f"Step size h must be positive, got {h}")
        if eps <= 0:
            raise ValueError(f"Error tolerance eps must be positive, got {eps}")
        if dynamics not in physics.DYNAMICS:
            raise ValueError(f"Unknown dynamics {dynamics!r}, expected one of {physics.DYNAMICS}")

        self.state = state
        self.t = float(t)
        self.h0 = float(h)
        self.h = float(h)
        self.h_taken = float(h)
        self.eps = float(eps)
        self.fixed_h = fixed_h
        self.dynamics = dynamics
        self.max_retries = max_retries

        self.n_steps = 0
        self.n_rejected = 0

        self._h_half: Optional[float] = None
        self._saved: Optional[Tuple[Dipole, float, float]] = None

    # ------------------------------------------------------------------
    # Primitives
    # ------------------------------------------------------------------

    def step(self) -> None:
        """Advance by one adaptive step.

        Raises
        ------
        DivergenceError
            If more than max_retries attempts are rejected, the step size
            underflows, or the derivatives are not finite.
        """
        self._save()
        y = self.state.as_array()
        h = self.h

        for _ in range(self.max_retries + 1):
            y_new, y_err, dydt = self._rkck(y, h)
            finite = bool(np.all(np.isfinite(y_new)) and np.all(np.isfinite(y_err)))

            if self.fixed_h:
                if not finite:
                    raise self._divergence(f"Non-finite state at t={self.t:.17g} with fixed h={h:.6g}", h)
                self._accept(y_new, h)
                return

            ratio = self._error_ratio(y, dydt, y_err, h) if finite else np.inf
            if ratio <= REJECT_ABOVE:
                self._accept(y_new, h)
                if ratio < GROW_BELOW:
                    self.h = h * self._growth_factor(ratio)
                else:
                    self.h = h
                return

            # Reject and shrink
            self.n_rejected += 1
            factor = MAX_SHRINK if not np.isfinite(ratio) else max(SAFETY * ratio**-0.25, MAX_SHRINK)
            h_new = h * factor
            if self.t + h_new == self.t:
                raise self._divergence(f"Step size underflow at t={self.t:.17g} (h={h_new:.3e})", h_new)
            h = h_new

        raise self._divergence(
            f"Error control failed after {self.max_retries} retries at t={self.t:.17g} (h={h:.3e})", h
        )

    def step_half(self) -> None:
        """Take one un-controlled step of half the current bisection step.

        Used only while bisecting onto the contact boundary. The ordinary
        step size h is left untouched.
        """
        self._save()
        if self._h_half is None:
            self._h_half = self.h_taken
        self._h_half *= 0.5
        h = self._h_half

        y_new, _, _ = self._rkck(self.state.as_array(), h)
        if not np.all(np.isfinite(y_new)):
            raise self._divergence(f"Non-finite state during half step at t={self.t:.17g}", h)
        self.state = Dipole.from_array(y_new, E0=self.state.E0)
        self.t += h
        self.n_steps += 1

    def undo(self) -> None:
        """Restore the (state, t, h) saved by the last step() or step_half()."""
        if self._saved is None:
            raise UndoError("undo() called twice in a row; only one step of history is kept")
        self.state, self.t, self.h = self._saved
        self._saved = None

    def reset(self) -> None:
        """Restore the nominal step size and clear the bisection step."""
        self.h = self.h0
        self._h_half = None

    @property
    def h_half(self) -> Optional[float]:
        """Current bisection step size, None outside a collision."""
        return self._h_half

    def set_state(self, state: Dipole) -> None:
        """Replace the working state at the current time.

        The undo snapshot is kept, so a step whose angles were wrapped can
        still be undone.
        """
        self.state = state

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _save(self) -> None:
        self._saved = (self.state, self.t, self.h)

    def _accept(self, y_new: Vec6, h: float) -> None:
        self.state = Dipole.from_array(y_new, E0=self.state.E0)
        self.t += h
        self.h_taken = h
        self.n_steps += 1

    def _derivs(self, y: Vec6) -> Vec6:
        return physics.derivatives(y, self.dynamics)

    def _rkck(self, y: Vec6, h: float) -> Tuple[Vec6, Vec6, Vec6]:
        """One Cash-Karp step.

        Returns
        -------
        y5 : ndarray
            Fifth-order solution at t + h.
        err : ndarray
            Difference between the fifth- and fourth-order solutions.
        dydt : ndarray
            Derivative at the start of the step.
        """
        ks = []
        for i in range(len(_C)):
            yi = y.copy()
            for j, aij in enumerate(_A[i]):
                yi += h * aij * ks[j]
            ks.append(self._derivs(yi))

        k = np.array(ks)
        y5 = y + h * (_B5 @ k)
        y4 = y + h * (_B4 @ k)
        return y5, y5 - y4, ks[0]

    def _error_ratio(self, y: Vec6, dydt: Vec6, y_err: Vec6, h: float) -> float:
        """max_i |err_i| / D_i with D_i = eps * (1 + |y_i| + h |dydt_i|)."""
        D = self.eps * (1.0 + np.abs(y) + h * np.abs(dydt))
        return float(np.max(np.abs(y_err) / D))

    @staticmethod
    def _growth_factor(ratio: float) -> float:
        if ratio == 0.0:
            return MAX_GROWTH
        return min(SAFETY * ratio**-0.2, MAX_GROWTH)

    def _divergence(self, message: str, h: float) -> DivergenceError:
        return DivergenceError(message, t=self.t, h=h, state=self.state)


# ============================================================================
# Main loop
# ============================================================================

def integrate_events(
    stepper: Stepper,
    event_log,
    opts: Optional[Dict] = None,
) -> Dict:
    """
    Main loop: advance the stepper, resolve collisions, log events.

    Runs until the event budget or the step budget is used up. Every
    accepted free-flight step and every accepted bisection half step is
    passed to event_log.log(); each resolved collision is passed to
    event_log.log_collision() before the momentum is reflected.

    Parameters
    ----------
    stepper : Stepper
        Integrator holding the initial state. Modified in place.
    event_log : EventLog or StepLog
        Receives states. Must provide log(state, t) -> bool,
        log_collision(state, t) and record_count.
    opts : dict, optional
        'num_events' : int (default: 100000)
            Stop once event_log.record_count reaches this many records.
            Set to -1 to use the step budget instead. Bisection records
            can push the final count slightly past the budget.
        'num_steps' : int (default: None)
            Step budget, used when num_events is -1.
        'max_bisections' : int (default: 200)
            Half steps allowed while resolving one collision.
        'progress' : bool (default: False)
            Print a progress line rewritten in place.
        'progress_every' : int (default: 1000)
            Refresh the progress line every N records.
        'on_step' : callable (default: None)
            Called as on_step(stepper) after every free-flight step,
            before the angles are wrapped.

    Returns
    -------
    summary : dict
        't' : final time
        'steps' : integrator steps taken (free flight and bisection)
        'records' : event_log.record_count at the end
        'collisions' : number of collisions resolved
        'rejected' : rejected step attempts
        'state' : final Dipole

    Raises
    ------
    DivergenceError
        If the stepper fails; already written records are kept.
    BoundaryNotResolvedError
        If a collision cannot be pinned down within max_bisections.
    """
    if opts is None:
        opts = {}

    num_events = opts.get('num_events', 100000)
    num_steps = opts.get('num_steps', None)
    max_bisections = opts.get('max_bisections', 200)
    progress = opts.get('progress', False)
    progress_every = opts.get('progress_every', 1000)
    on_step = opts.get('on_step', None)

    if num_events == -1 and num_steps is None:
        raise ValueError("Either 'num_events' or 'num_steps' must bound the run")

    def keep_going(n: int) -> bool:
        if num_events != -1:
            return event_log.record_count < num_events
        return n < num_steps

    def report(fired: bool) -> None:
        count = event_log.record_count
        if progress and fired and (count % progress_every == 0 or
                                   (num_events != -1 and count >= num_events)):
            print(f"\rNum events = {count:<7d}     dE = {stepper.state.dE:<12e}     ",
                  end="", flush=True)

    n = 0
    collisions = 0
    if progress:
        report(True)

    while keep_going(n):
        stepper.step()
        if on_step is not None:
            on_step(stepper)
        stepper.set_state(stepper.state.with_angles())

        if stepper.state.r < CONTACT_RADIUS:
            stepper.undo()
            n += resolve_collision(stepper, event_log, max_bisections)
            collisions += 1
            report(True)
        else:
            fired = event_log.log(stepper.state, stepper.t)
            report(fired)
            n += 1

    if progress:
        print()

    return {
        't': stepper.t,
        'steps': n,
        'records': event_log.record_count,
        'collisions': collisions,
        'rejected': stepper.n_rejected,
        'state': stepper.state,
    }


def resolve_collision(stepper: Stepper, event_log, max_bisections: int = 200) -> int:
    """Bisect onto the contact sphere, log the collision and reflect.

    The stepper must hold the last state outside the contact sphere
    (r >= 1), i.e. the overlapping step has already been undone.

    Returns
    -------
    int
        Number of half steps kept (each one was logged).

    Raises
    ------
    BoundaryNotResolvedError
        If the stepper starts inside the contact sphere, or the boundary
        is not reached within max_bisections half steps.
    """
    if stepper.state.r < CONTACT_RADIUS:
        raise BoundaryNotResolvedError(
            f"Collision resolution started inside the fixed magnet "
            f"(r={stepper.state.r:.17g}, t={stepper.t:.17g}); undo the overlapping step first",
            t=stepper.t, h=stepper.h, state=stepper.state,
        )

    kept = 0
    attempts = 0
    while stepper.state.r > CONTACT_TOLERANCE:
        if attempts >= max_bisections:
            raise BoundaryNotResolvedError(
                f"Collision not resolved after {max_bisections} half steps "
                f"(r={stepper.state.r:.17g}, t={stepper.t:.17g})",
                t=stepper.t, h=stepper.h_half or stepper.h, state=stepper.state,
            )
        attempts += 1

        stepper.step_half()
        if stepper.state.r < CONTACT_RADIUS:
            stepper.undo()
        else:
            stepper.set_state(stepper.state.with_angles())
            event_log.log(stepper.state, stepper.t)
            kept += 1

    event_log.log_collision(stepper.state, stepper.t)
    stepper.set_state(stepper.state.reflected())
    stepper.reset()
    return kept
