"""Dipole dataclass: the phase-space state of the moving magnet.

A Dipole holds the six phase-space coordinates
- r : distance between the magnet centres (contact at r = 1)
- theta : polar angle of the position, measured from the fixed moment
- phi : orientation of the moving moment
- pr, ptheta, pphi : conjugate momenta

plus two derived quantities computed at construction:
- E : total energy
- dE : drift E - E0 from a reference energy E0

Dipoles are immutable. Every integration step, half step, wrap of the
angles or reflection produces a new value, so E and dE can never go stale.
"""

from dataclasses import dataclass, field, replace
from typing import Callable, Optional
import numpy as np
from numpy.typing import NDArray

from magphyx import physics


@dataclass(frozen=True)
class Dipole:
    """Phase-space state of the moving magnet.

    Attributes
    ----------
    r, theta, phi : float
        Position (r, theta) and orientation phi. Angles in radians.
    pr, ptheta, pphi : float
        Conjugate momenta.
    E0 : float, optional
        Reference energy for the drift dE. Defaults to this state's own
        energy, so an initial condition starts with dE = 0 and every state
        derived from it keeps the same reference.
    E : float
        Total energy (derived).
    dE : float
        E - E0 (derived).

    Examples
    --------
    >>> d = Dipole(r=1.5, theta=0.0, phi=np.pi / 2)
    >>> round(d.E, 12), d.dE
    (0.0, 0.0)
    >>> d2 = d.with_values(pr=0.1)
    >>> round(d2.dE, 6)
    0.005
    """

    r: float
    theta: float = 0.0
    phi: float = 0.0
    pr: float = 0.0
    ptheta: float = 0.0
    pphi: float = 0.0
    E0: Optional[float] = None
    E: float = field(init=False, repr=False, compare=False)
    dE: float = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        for name in ("r", "theta", "phi", "pr", "ptheta", "pphi"):
            object.__setattr__(self, name, float(getattr(self, name)))

        if self.r <= 0:
            raise ValueError(f"Separation r must be positive, got {self.r}")

        E = physics.energy(self.r, self.theta, self.phi,
                           self.pr, self.ptheta, self.pphi)
        if self.E0 is None:
            object.__setattr__(self, "E0", E)
        object.__setattr__(self, "E", E)
        object.__setattr__(self, "dE", E - self.E0)

    @classmethod
    def from_array(cls, y: NDArray[np.float64], E0: Optional[float] = None) -> "Dipole":
        """Build a Dipole from (r, theta, phi, pr, ptheta, pphi)."""
        return cls(r=y[0], theta=y[1], phi=y[2],
                   pr=y[3], ptheta=y[4], pphi=y[5], E0=E0)

    @classmethod
    def from_degrees(cls, r: float, theta: float, phi: float,
                     pr: float = 0.0, ptheta: float = 0.0, pphi: float = 0.0) -> "Dipole":
        """Build a Dipole with theta and phi given in degrees."""
        return cls(r=r, theta=physics.deg2rad(theta), phi=physics.deg2rad(phi),
                   pr=pr, ptheta=ptheta, pphi=pphi)

    def as_array(self) -> NDArray[np.float64]:
        return np.array([self.r, self.theta, self.phi,
                         self.pr, self.ptheta, self.pphi], dtype=np.float64)

    def with_values(self, **changes) -> "Dipole":
        """Copy with some primary coordinates replaced; E and dE recomputed."""
        return replace(self, **changes)

    def with_angles(self) -> "Dipole":
        """Copy with theta and phi wrapped into (-pi, pi]."""
        return replace(self, theta=physics.rotate(self.theta),
                       phi=physics.rotate(self.phi))

    def reflected(self) -> "Dipole":
        """Specular reflection off the contact sphere: pr -> -pr."""
        return replace(self, pr=-self.pr)

    @property
    def beta(self) -> float:
        return physics.beta(self)

    def __str__(self) -> str:
        return (
            f"Dipole: r={self.r:.6g}, theta={physics.rad2deg(self.theta):.6g} deg, "
            f"phi={physics.rad2deg(self.phi):.6g} deg\n"
            f"  p = [{self.pr:.6g}, {self.ptheta:.6g}, {self.pphi:.6g}]\n"
            f"  E = {self.E:.10g}, dE = {self.dE:.3e}"
        )


def interpolate_zero_crossing(a: Dipole, b: Dipole,
                              key: Callable[[Dipole], float]) -> Dipole:
    """Linearly interpolate the state where key(state) passes through zero.

    The interpolation variable is the scalar that crossed: with
    ka = key(a), kb = key(b) the fraction w = ka / (ka - kb) is applied to
    every primary coordinate, and E, dE are recomputed for the result.

    Parameters
    ----------
    a, b : Dipole
        States on either side of the crossing (a earlier).
    key : callable
        Scalar signal of a state.

    Returns
    -------
    Dipole
        Interpolated state. If ka == kb the earlier state is returned.
    """
    return interpolate(a, b, crossing_fraction(key(a), key(b)))


def crossing_fraction(ka: float, kb: float) -> float:
    """Fraction w in [0, 1] at which a linear ramp from ka to kb hits zero."""
    denom = ka - kb
    if denom == 0.0:
        return 0.0
    return min(1.0, max(0.0, ka / denom))


def interpolate(a: Dipole, b: Dipole, w: float) -> Dipole:
    """State a fraction w of the way from a to b, keeping a's reference energy.

    Every coordinate, angles included, is interpolated on its raw value.
    """
    ya = a.as_array()
    y = ya + w * (b.as_array() - ya)
    return Dipole.from_array(y, E0=a.E0)
