"""
Tests for the equations of motion.

Validates:
1. Angle wrapping into (-pi, pi]
2. Potential and energy at known configurations
3. Derivatives agree with Hamilton's equations (finite differences of E)
4. beta vanishes where the spin torque vanishes
"""

import numpy as np
import pytest

from magphyx.physics import (
    rotate,
    rad2deg,
    deg2rad,
    potential,
    energy,
    derivatives,
    field_angle,
    beta,
)
from magphyx.state import Dipole


class TestRotate:
    """Tests for angle wrapping."""

    def test_inside_range_unchanged(self):
        assert rotate(0.5) == 0.5
        assert rotate(-0.5) == -0.5

    def test_upper_bound_inclusive(self):
        """pi stays pi, -pi maps to pi."""
        assert rotate(np.pi) == pytest.approx(np.pi)
        assert rotate(-np.pi) == pytest.approx(np.pi)

    def test_wraps_multiple_turns(self):
        assert rotate(3 * np.pi / 2) == pytest.approx(-np.pi / 2)
        assert rotate(-3 * np.pi / 2) == pytest.approx(np.pi / 2)
        assert rotate(0.3 + 6 * np.pi) == pytest.approx(0.3)

    def test_degree_conversion(self):
        assert rad2deg(np.pi) == pytest.approx(180.0)
        assert deg2rad(90.0) == pytest.approx(np.pi / 2)


class TestEnergy:
    """Tests for potential and total energy."""

    def test_aligned_contact_minimum(self):
        """Head-to-tail at contact: U = -2."""
        assert potential(1.0, 0.0, 0.0) == pytest.approx(-2.0)

    def test_side_by_side_antiparallel(self):
        assert potential(1.0, np.pi / 2, np.pi) == pytest.approx(-1.0)

    def test_inverse_cube_scaling(self):
        assert potential(2.0, 0.3, 0.7) == pytest.approx(potential(1.0, 0.3, 0.7) / 8.0)

    def test_kinetic_terms(self):
        """E = pr²/2 + ptheta²/(2r²) + 5 pphi² + U."""
        E = energy(2.0, 0.0, 0.0, pr=1.0, ptheta=2.0, pphi=0.5)
        expected = 0.5 + 4.0 / 8.0 + 5.0 * 0.25 + (-2.0 / 8.0)
        assert E == pytest.approx(expected)


class TestDerivatives:
    """Derivatives must follow from the Hamiltonian."""

    @pytest.mark.parametrize("y", [
        [1.5, 0.0, np.pi / 2, 0.0, 0.0, 0.0],
        [2.3, 0.4, -1.1, 0.2, -0.3, 0.05],
        [1.1, -2.5, 2.9, -0.7, 0.9, -0.2],
    ])
    def test_hamilton_equations(self, y):
        """dq/dt = dH/dp and dp/dt = -dH/dq by central differences."""
        y = np.array(y)
        dy = derivatives(y)
        step = 1e-6

        def H(v):
            return energy(*v)

        grad = np.zeros(6)
        for i in range(6):
            e = np.zeros(6)
            e[i] = step
            grad[i] = (H(y + e) - H(y - e)) / (2 * step)

        # (r, theta, phi) pair with (pr, ptheta, pphi)
        assert np.allclose(dy[:3], grad[3:], rtol=1e-6, atol=1e-7)
        assert np.allclose(dy[3:], -grad[:3], rtol=1e-6, atol=1e-7)

    def test_sliding_freezes_radius(self):
        y = np.array([1.0, 0.4, -1.1, 0.3, -0.3, 0.05])
        dy = derivatives(y, "sliding")
        free = derivatives(y, "bouncing")

        assert dy[0] == 0.0
        assert dy[3] == 0.0
        assert np.array_equal(dy[[1, 2, 4, 5]], free[[1, 2, 4, 5]])


class TestBeta:
    """Tests for the angle between the moving dipole and the local field."""

    def test_on_axis_beta_is_phi(self):
        state = Dipole(r=2.0, theta=0.0, phi=0.3)
        assert beta(state) == pytest.approx(0.3)

    def test_equator_field_points_back(self):
        """At theta = pi/2 the field is antiparallel to the fixed moment."""
        assert field_angle(np.pi / 2) == pytest.approx(np.pi)
        assert beta(Dipole(r=2.0, theta=np.pi / 2, phi=np.pi)) == pytest.approx(0.0, abs=1e-12)

    @pytest.mark.parametrize("theta", [0.0, 0.3, np.pi / 4, 1.2, -0.8, 2.5])
    def test_no_spin_torque_when_aligned(self, theta):
        """dpphi/dt = 0 when the dipole points along the field."""
        phi = rotate(field_angle(theta))
        y = np.array([1.7, theta, phi, 0.0, 0.0, 0.0])

        assert derivatives(y)[5] == pytest.approx(0.0, abs=1e-12)
        assert beta(Dipole(r=1.7, theta=theta, phi=phi)) == pytest.approx(0.0, abs=1e-12)
