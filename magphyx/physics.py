"""Equations of motion for a magnetic dipole in the field of a fixed dipole.

A small spherical magnet moves in the plane containing the moment of a second,
identical magnet fixed at the origin. The moving magnet is described by:
- r, theta : polar position (theta measured from the fixed moment)
- phi : orientation of its own moment, measured from the same axis
- pr, ptheta, pphi : the conjugate momenta

Units are dimensionless:
- both magnets have unit diameter, so contact happens at r = 1
- unit mass, moment of inertia I = 1/10 (solid sphere of radius 1/2)
- energy unit mu0 m^2 / (4 pi d^3)

Hamiltonian:
    H = pr²/2 + ptheta²/(2 r²) + pphi²/(2 I) + U(r, theta, phi)
    U = (cos(phi) - 3 cos(theta) cos(theta - phi)) / r³

This is the standard dipole-dipole interaction energy
    U = [m1·m2 - 3 (m1·r̂)(m2·r̂)] / r³
with m1 along the theta = 0 axis and m2 at angle phi.
"""

import numpy as np
from numpy.typing import NDArray

# Moment of inertia of the moving sphere (mass 1, radius 1/2)
INERTIA = 0.1

DYNAMICS = ("bouncing", "sliding")


def rotate(angle: float) -> float:
    """Map an angle in radians into (-pi, pi].

    Examples
    --------
    >>> rotate(3 * np.pi / 2)
    -1.5707963267948966
    >>> rotate(-np.pi)
    3.141592653589793
    """
    a = np.fmod(angle, 2.0 * np.pi)
    if a <= -np.pi:
        a += 2.0 * np.pi
    elif a > np.pi:
        a -= 2.0 * np.pi
    return float(a)


def rad2deg(angle: float) -> float:
    return float(angle * 180.0 / np.pi)


def deg2rad(angle: float) -> float:
    return float(angle * np.pi / 180.0)


def potential(r: float, theta: float, phi: float) -> float:
    """Dipole-dipole interaction energy U(r, theta, phi).

    Aligned along the axis at contact (r=1, theta=phi=0) this is the
    minimum U = -2. Side by side and antiparallel (theta=pi/2, phi=pi) it
    is U = -1.
    """
    f = np.cos(phi) - 3.0 * np.cos(theta) * np.cos(theta - phi)
    return float(f / r**3)


def energy(r: float, theta: float, phi: float,
           pr: float, ptheta: float, pphi: float) -> float:
    """Total energy (value of the Hamiltonian)."""
    kinetic = (0.5 * pr * pr
               + 0.5 * ptheta * ptheta / (r * r)
               + 0.5 * pphi * pphi / INERTIA)
    return float(kinetic + potential(r, theta, phi))


def derivatives(y: NDArray[np.float64], dynamics: str = "bouncing") -> NDArray[np.float64]:
    """Time derivative of the phase-space vector.

    Parameters
    ----------
    y : ndarray, shape (6,)
        (r, theta, phi, pr, ptheta, pphi)
    dynamics : str
        'bouncing' for free motion, 'sliding' to hold the magnet on the
        contact sphere (radial derivatives forced to zero).

    Returns
    -------
    ndarray, shape (6,)
        (dr, dtheta, dphi, dpr, dptheta, dpphi)

    Notes
    -----
    From Hamilton's equations with U = f(theta, phi) / r³:

        dpr/dt     = ptheta²/r³ + 3 U / r
        dptheta/dt = -3 sin(2 theta - phi) / r³
        dpphi/dt   = (sin(phi) + 3 cos(theta) sin(theta - phi)) / r³
    """
    r, theta, phi, pr, ptheta, pphi = y
    r3 = r * r * r
    U = (np.cos(phi) - 3.0 * np.cos(theta) * np.cos(theta - phi)) / r3

    dy = np.empty(6, dtype=np.float64)
    dy[0] = pr
    dy[1] = ptheta / (r * r)
    dy[2] = pphi / INERTIA
    dy[3] = ptheta * ptheta / r3 + 3.0 * U / r
    dy[4] = -3.0 * np.sin(2.0 * theta - phi) / r3
    dy[5] = (np.sin(phi) + 3.0 * np.cos(theta) * np.sin(theta - phi)) / r3

    if dynamics == "sliding":
        dy[0] = 0.0
        dy[3] = 0.0
    return dy


def field_angle(theta: float) -> float:
    """Direction of the fixed dipole's field at polar angle theta.

    B ∝ 2 cos(theta) r̂ + sin(theta) θ̂, so the field makes an angle
    theta + atan2(sin(theta), 2 cos(theta)) with the dipole axis.
    """
    return float(theta + np.arctan2(np.sin(theta), 2.0 * np.cos(theta)))


def beta(state) -> float:
    """Angle between the moving dipole and the local field, in (-pi, pi].

    Zero exactly where the torque on the moving magnet's spin vanishes
    with the magnet aligned to the field.
    """
    return rotate(state.phi - field_angle(state.theta))
