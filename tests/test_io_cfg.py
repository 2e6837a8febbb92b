"""
Tests for configuration loading, validation and input files.
"""

import numpy as np
import pytest

from magphyx.io_cfg import (
    SimulationConfig,
    create_example_config,
    load_config,
    load_initial_conditions,
    read_event_log,
    validate_config,
)
from magphyx.state import Dipole
from magphyx.events import EventLog, HEADER
from magphyx.errors import InitialConditionError


@pytest.fixture
def example_config(tmp_path):
    path = tmp_path / "demo.yaml"
    create_example_config(str(path))
    return path


class TestLoadConfig:
    """Tests for YAML loading."""

    def test_example_round_trip(self, example_config):
        config = load_config(str(example_config))

        assert config.initial.r == 1.5
        assert config.initial.theta == 0.0
        assert config.initial.phi == pytest.approx(np.pi / 2)
        assert config.h0 == 0.01
        assert config.eps == 1e-10
        assert config.num_events == 100000
        assert config.num_steps is None
        assert config.dynamics == "bouncing"
        assert config.output == "events.csv"

    def test_example_is_valid(self, example_config):
        is_valid, warnings_list = validate_config(load_config(str(example_config)))
        assert is_valid
        assert warnings_list == []

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(str(tmp_path / "nope.yaml"))

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        with pytest.raises(ValueError):
            load_config(str(path))

    def test_missing_section(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("numerics:\n  h0: 0.01\n  eps: 1.0e-10\n")
        with pytest.raises(KeyError):
            load_config(str(path))

    def test_missing_field(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text(
            "initial:\n  r: 1.5\n  theta: 0\n  phi: 90\n"
            "numerics:\n  eps: 1.0e-10\n"
        )
        with pytest.raises(KeyError):
            load_config(str(path))

    def test_bad_value(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text(
            "initial:\n  r: far\n  theta: 0\n  phi: 90\n"
            "numerics:\n  h0: 0.01\n  eps: 1.0e-10\n"
        )
        with pytest.raises(ValueError):
            load_config(str(path))

    def test_optional_sections(self, tmp_path):
        path = tmp_path / "short.yaml"
        path.write_text(
            "initial:\n  r: 2.0\n  theta: 10\n  phi: -45\n  pr: 0.1\n"
            "numerics:\n  h0: 1e-3\n  eps: 1e-12\n  fixed_h: true\n"
            "run:\n  log_num_steps: 8\n  single_step: theta\n"
        )
        config = load_config(str(path))

        assert config.initial.pr == 0.1
        assert config.h0 == 1e-3
        assert config.fixed_h
        assert config.num_steps == 256
        assert config.single_step == "theta"
        assert config.output is None


class TestValidateConfig:
    """Tests for consistency checks."""

    def test_overlapping_start(self):
        config = SimulationConfig(initial=Dipole(r=0.5))
        is_valid, warnings_list = validate_config(config)
        assert not is_valid
        assert any("overlap" in w for w in warnings_list)

    def test_single_step_needs_step_budget(self):
        is_valid, _ = validate_config(SimulationConfig(single_step="phi"))
        assert not is_valid

        is_valid, _ = validate_config(SimulationConfig(single_step="phi", log_num_steps=10))
        assert is_valid

    def test_fft_without_fixed_step_warns(self):
        config = SimulationConfig(single_step="phi", log_num_steps=10, fft=True)
        is_valid, warnings_list = validate_config(config)
        assert is_valid
        assert any("fixed_h" in w for w in warnings_list)

    def test_unknown_dynamics(self):
        is_valid, _ = validate_config(SimulationConfig(dynamics="rolling"))
        assert not is_valid

    def test_nonpositive_numerics(self):
        is_valid, warnings_list = validate_config(SimulationConfig(h0=0.0, eps=-1.0))
        assert not is_valid
        assert len(warnings_list) == 2


class TestSimulationConfig:
    """Tests for the config value object."""

    def test_overrides_skip_none(self):
        config = SimulationConfig().with_overrides(h0=None, eps=1e-8)
        assert config.h0 == 1e-2
        assert config.eps == 1e-8

    def test_loop_opts_event_budget(self):
        opts = SimulationConfig(num_events=500).loop_opts()
        assert opts['num_events'] == 500
        assert opts['num_steps'] is None

    def test_loop_opts_step_budget(self):
        opts = SimulationConfig(log_num_steps=5).loop_opts()
        assert opts['num_events'] == -1
        assert opts['num_steps'] == 32


class TestInitialConditions:
    """Tests for the initial-condition CSV."""

    def test_plain_columns(self, tmp_path):
        path = tmp_path / "ic.csv"
        path.write_text("r,theta,phi,pr,ptheta,pphi\n1.5,0,90,0,0,0\n")

        state = load_initial_conditions(str(path))

        assert state.r == 1.5
        assert state.phi == pytest.approx(np.pi / 2)
        assert state.dE == 0.0

    def test_event_log_line(self, tmp_path):
        """A header plus one row of an event log is a valid input."""
        path = tmp_path / "ic.csv"
        path.write_text(
            HEADER + "\n"
            "7,pr = 0,3.250000,1.200000,-30.000000,45.000000,"
            "0.000000,0.100000,-0.050000,0.300000,-0.800000,1.00e-09\n"
        )

        state = load_initial_conditions(str(path))

        assert state.r == 1.2
        assert state.theta == pytest.approx(-np.pi / 6)
        assert state.ptheta == 0.1
        assert state.pphi == -0.05

    def test_missing_file(self, tmp_path):
        with pytest.raises(InitialConditionError):
            load_initial_conditions(str(tmp_path / "nope.csv"))

    def test_header_only(self, tmp_path):
        path = tmp_path / "ic.csv"
        path.write_text("r,theta,phi,pr,ptheta,pphi\n")
        with pytest.raises(InitialConditionError):
            load_initial_conditions(str(path))

    def test_missing_column(self, tmp_path):
        path = tmp_path / "ic.csv"
        path.write_text("r,theta,phi,pr,ptheta\n1.5,0,90,0,0\n")
        with pytest.raises(InitialConditionError, match="pphi"):
            load_initial_conditions(str(path))

    def test_non_numeric(self, tmp_path):
        path = tmp_path / "ic.csv"
        path.write_text("r,theta,phi,pr,ptheta,pphi\n1.5,zero,90,0,0,0\n")
        with pytest.raises(InitialConditionError, match="theta"):
            load_initial_conditions(str(path))


class TestReadEventLog:
    """Tests for reading a log back."""

    def test_columns(self, tmp_path):
        path = tmp_path / "events.csv"
        with EventLog(path, Dipole(r=2.0, pr=0.2)) as log:
            log.log(Dipole(r=2.0, pr=-0.2), t=1.0)
            log.log_collision(Dipole(r=1.0), t=2.0)

        events = read_event_log(str(path))

        assert list(events['n']) == [1, 2]
        assert list(events['event_type']) == ["pr = 0", "collision"]
        assert events['t'] == pytest.approx([1.0, 2.0])
        assert events['E'][1] == pytest.approx(-2.0)

    def test_header_only(self, tmp_path):
        path = tmp_path / "events.csv"
        EventLog(path, Dipole(r=2.0)).close()

        events = read_event_log(str(path))
        assert len(events['t']) == 0

    def test_single_record(self, tmp_path):
        path = tmp_path / "events.csv"
        with EventLog(path, Dipole(r=2.0)) as log:
            log.log_collision(Dipole(r=1.0), t=0.25)

        events = read_event_log(str(path))

        assert events['t'].shape == (1,)
        assert events['event_type'][0] == "collision"

    def test_truncated_row(self, tmp_path):
        path = tmp_path / "events.csv"
        path.write_text(HEADER + "\n1,collision,0.250000,1.000000\n")
        with pytest.raises(ValueError):
            read_event_log(str(path))

    def test_empty_file(self, tmp_path):
        path = tmp_path / "events.csv"
        path.write_text("")
        with pytest.raises(ValueError):
            read_event_log(str(path))
