"""
Tests for the adaptive stepper.

Validates:
1. step/undo restores state, time and step size exactly
2. Single-level history (second undo raises)
3. Half-step sequence used for collision bisection
4. Fixed-step mode
5. Energy conservation over free flight
6. Divergence when error control cannot be satisfied
"""

import numpy as np
import pytest

from magphyx.state import Dipole
from magphyx.dynamics import Stepper
from magphyx.errors import DivergenceError, UndoError


def far_state():
    """Well separated, moving: no contact within a few hundred steps."""
    return Dipole(r=5.0, theta=0.3, phi=0.2, pr=0.05, ptheta=0.5, pphi=0.01)


class TestUndo:
    """Tests for single-level step reversal."""

    def test_step_then_undo_is_exact(self):
        stepper = Stepper(far_state(), h=1e-2)
        stepper.step()
        stepper.step()
        state, t, h = stepper.state, stepper.t, stepper.h

        stepper.step()
        stepper.undo()

        assert stepper.state == state
        assert stepper.t == t
        assert stepper.h == h

    def test_second_undo_raises(self):
        stepper = Stepper(far_state(), h=1e-2)
        stepper.step()
        stepper.undo()
        with pytest.raises(UndoError):
            stepper.undo()

    def test_undo_before_any_step_raises(self):
        stepper = Stepper(far_state(), h=1e-2)
        with pytest.raises(UndoError):
            stepper.undo()

    def test_set_state_keeps_snapshot(self):
        """Wrapping angles after a step must not prevent undoing it."""
        initial = far_state()
        stepper = Stepper(initial, h=1e-2)
        stepper.step()
        stepper.set_state(stepper.state.with_angles())
        stepper.undo()

        assert stepper.state == initial
        assert stepper.t == 0.0


class TestStep:
    """Tests for adaptive and fixed steps."""

    def test_time_advances_by_step_taken(self):
        stepper = Stepper(far_state(), h=1e-2)
        stepper.step()
        assert stepper.t == pytest.approx(stepper.h_taken)
        assert stepper.n_steps == 1

    def test_step_grows_on_smooth_motion(self):
        stepper = Stepper(far_state(), h=1e-4, eps=1e-10)
        stepper.step()
        assert stepper.h > 1e-4

    def test_fixed_step(self):
        stepper = Stepper(far_state(), h=1e-2, fixed_h=True)
        for _ in range(10):
            stepper.step()

        assert stepper.h == 1e-2
        assert stepper.t == pytest.approx(0.1)
        assert stepper.n_rejected == 0

    def test_energy_conserved_in_free_flight(self):
        eps = 1e-10
        stepper = Stepper(far_state(), h=1e-2, eps=eps)
        n = 0
        while stepper.state.r > 2.0 and n < 200:
            stepper.step()
            n += 1

        assert n > 10
        assert abs(stepper.state.dE) < 10 * eps

    def test_rejects_bad_parameters(self):
        with pytest.raises(ValueError):
            Stepper(far_state(), h=0.0)
        with pytest.raises(ValueError):
            Stepper(far_state(), h=1e-2, eps=-1.0)
        with pytest.raises(ValueError):
            Stepper(far_state(), h=1e-2, dynamics="rolling")

    def test_divergence_carries_state(self):
        """An unreachable tolerance exhausts the retries."""
        initial = far_state()
        stepper = Stepper(initial, h=1e-2, eps=1e-300, max_retries=3)

        with pytest.raises(DivergenceError) as excinfo:
            stepper.step()

        assert excinfo.value.state == initial
        assert excinfo.value.t == 0.0
        assert stepper.n_rejected == 4


class TestHalfStep:
    """Tests for the bisection step sequence."""

    def test_first_half_step_is_half_of_last_step(self):
        stepper = Stepper(far_state(), h=1e-2)
        stepper.step()
        t1, h_taken = stepper.t, stepper.h_taken

        stepper.step_half()
        assert stepper.t == pytest.approx(t1 + h_taken / 2)
        assert stepper.h_half == pytest.approx(h_taken / 2)

    def test_halving_persists_across_undo(self):
        stepper = Stepper(far_state(), h=1e-2)
        stepper.step()
        t1, h_taken = stepper.t, stepper.h_taken

        stepper.step_half()
        stepper.undo()
        stepper.step_half()

        assert stepper.t == pytest.approx(t1 + h_taken / 4)

    def test_half_step_leaves_h_alone(self):
        stepper = Stepper(far_state(), h=1e-2)
        stepper.step()
        h = stepper.h
        stepper.step_half()
        assert stepper.h == h

    def test_reset_restores_nominal_step(self):
        stepper = Stepper(far_state(), h=1e-2)
        stepper.step()
        stepper.step_half()
        stepper.reset()

        assert stepper.h == 1e-2
        assert stepper.h_half is None
