"""Exception types raised by the integrator, the driver and the input loaders.

Numerical failures carry the offending state so the caller can print a
diagnostic table before giving up.
"""


class DivergenceError(RuntimeError):
    """The integrator could not produce an acceptable step.

    Attributes
    ----------
    t : float
        Simulation time at which the failure happened.
    h : float
        Step size in use at the time.
    state : Dipole
        Last accepted state.
    """

    def __init__(self, message: str, t: float, h: float, state):
        super().__init__(message)
        self.t = t
        self.h = h
        self.state = state


class BoundaryNotResolvedError(DivergenceError):
    """Collision bisection did not reach the contact tolerance."""


class UndoError(RuntimeError):
    """undo() called with no saved step to restore."""


class InitialConditionError(ValueError):
    """Initial-condition file is missing, truncated or malformed."""
