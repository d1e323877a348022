"""Tests for configuration validation, serialization and presets."""

import json
import pytest
import sys
import os

# Add parent directory to path to import modules
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from incident_simulator import (
    ConfigurationError,
    DistributionPolicy,
    SeverityDistributionConfig,
    SeverityMode,
    Simulation,
    SimulationConfig,
    filename_to_pretty_name,
    list_preset_configs,
    load_config,
    pretty_name_to_filename,
    save_config,
)

CONFIG_DIR = os.path.join(os.path.dirname(__file__), "..", "configs")


class TestValidation:
    def test_defaults_are_valid(self):
        config = SimulationConfig().validate()
        assert config.num_engineers == 3
        assert config.tasks_per_day == 50
        assert (config.min_complexity_hours, config.max_complexity_hours) == (1, 8)
        assert (config.working_start_hour, config.working_end_hour) == (9, 17)
        assert config.distribution_policy is DistributionPolicy.ROUND_ROBIN
        assert config.severity.mode is SeverityMode.NORMAL
        assert config.severity.weights == [10, 20, 30, 40]

    def test_string_enums_are_converted(self):
        config = SimulationConfig(
            distribution_policy="least-occupied",
            severity=SeverityDistributionConfig(mode="custom"),
        ).validate()
        assert config.distribution_policy is DistributionPolicy.LEAST_OCCUPIED
        assert config.severity.mode is SeverityMode.CUSTOM

    @pytest.mark.parametrize(
        "overrides",
        [
            {"time_speed": 0},
            {"time_speed": -2.0},
            {"working_start_hour": 17, "working_end_hour": 9},
            {"working_end_hour": 25},
            {"num_engineers": -1},
            {"tasks_per_day": -5},
            {"min_complexity_hours": 6.0, "max_complexity_hours": 2.0},
            {"min_complexity_hours": -1.0},
            {"start_hour": 24},
            {"travel_seconds": -0.5},
            {"throughput_min": 2.0, "throughput_max": 1.0},
            {"distribution_policy": "random"},
            {"time_speed": float("inf")},
            {"tasks_per_day": float("nan")},
            {"tasks_per_day": float("inf")},
            {"min_complexity_hours": float("nan")},
            {"max_complexity_hours": float("inf")},
            {"max_complexity_hours": float("nan")},
            {"travel_seconds": float("nan")},
            {"throughput_min": float("nan")},
            {"throughput_max": float("inf")},
        ],
    )
    def test_invalid_values_rejected(self, overrides):
        with pytest.raises(ConfigurationError):
            SimulationConfig(**overrides).validate()

    @pytest.mark.parametrize(
        "severity",
        [
            SeverityDistributionConfig(mode="poisson"),
            SeverityDistributionConfig(mode="custom", weights=[0, 0, 0, 0]),
            SeverityDistributionConfig(mode="custom", weights=[1, 2, 3]),
            SeverityDistributionConfig(shift=float("nan")),
            SeverityDistributionConfig(mode="custom", weights=[float("nan"), 1, 1, 1]),
            SeverityDistributionConfig(mode="custom", weights=[1, 1, 1, float("inf")]),
        ],
    )
    def test_invalid_severity_rejected(self, severity):
        with pytest.raises(ConfigurationError):
            SimulationConfig(severity=severity).validate()

    def test_zero_weights_allowed_in_normal_mode(self):
        severity = SeverityDistributionConfig(mode="normal", weights=[0, 0, 0, 0])
        SimulationConfig(severity=severity).validate()

    def test_configuration_error_is_value_error(self):
        with pytest.raises(ValueError):
            SimulationConfig(time_speed=0).validate()


class TestSerialization:
    def test_dict_round_trip(self, create_simulation_config):
        config = create_simulation_config(
            distribution_policy="least-occupied",
            severity=SeverityDistributionConfig(mode="custom", weights=[5, 5, 0, 90]),
        ).validate()
        restored = SimulationConfig.from_dict(config.to_dict())
        assert restored == config

    def test_to_dict_is_json_friendly(self):
        data = SimulationConfig().to_dict()
        assert data["distribution_policy"] == "round-robin"
        assert data["severity"]["mode"] == "normal"
        json.dumps(data)

    def test_missing_keys_use_defaults(self):
        config = SimulationConfig.from_dict({"num_engineers": 5})
        assert config.num_engineers == 5
        assert config.tasks_per_day == 50
        assert config.severity == SeverityDistributionConfig().validate()

    def test_unknown_keys_rejected(self):
        with pytest.raises(ConfigurationError):
            SimulationConfig.from_dict({"num_agents": 5})
        with pytest.raises(ConfigurationError):
            SimulationConfig.from_dict({"severity": {"mode": "custom", "bogus": 1}})

    def test_null_severity_uses_defaults(self):
        config = SimulationConfig.from_dict({"severity": None})
        assert config.severity == SeverityDistributionConfig().validate()

    def test_invalid_values_rejected_on_load(self):
        with pytest.raises(ConfigurationError):
            SimulationConfig.from_dict({"time_speed": 0})

    def test_save_and_load(self, tmp_path, create_simulation_config):
        config = create_simulation_config(num_engineers=4, random_seed=123)
        path = tmp_path / "night_shift.json"
        save_config(config, str(path))
        loaded = load_config(str(path))
        assert loaded == config.validate()

    def test_loaded_config_reproduces_run(self, tmp_path, create_simulation_config):
        config = create_simulation_config(
            num_engineers=2,
            tasks_per_day=40,
            min_complexity_hours=1.0,
            max_complexity_hours=4.0,
            time_speed=10.0,
        )
        path = tmp_path / "preset.json"
        save_config(config, str(path))
        first = Simulation(config).run(2)
        second = Simulation(load_config(str(path))).run(2)
        assert first.equals(second)


class TestPresets:
    def test_list_preset_configs(self, tmp_path):
        (tmp_path / "incident_storm.json").write_text("{}")
        (tmp_path / "night-shift.json").write_text("{}")
        (tmp_path / "notes.txt").write_text("not a preset")
        assert list_preset_configs(str(tmp_path)) == {
            "Incident Storm": "incident_storm.json",
            "Night Shift": "night-shift.json",
        }

    def test_missing_directory(self, tmp_path):
        assert list_preset_configs(str(tmp_path / "nope")) == {}

    @pytest.mark.parametrize(
        "pretty, filename",
        [
            ("Incident Storm", "incident_storm"),
            ("Big  Team!", "big_team"),
            ("least-occupied 2", "least-occupied_2"),
        ],
    )
    def test_pretty_name_to_filename(self, pretty, filename):
        assert pretty_name_to_filename(pretty) == filename

    def test_filename_to_pretty_name(self):
        assert filename_to_pretty_name("incident_storm") == "Incident Storm"

    def test_shipped_presets_are_valid(self):
        presets = list_preset_configs(CONFIG_DIR)
        assert presets
        for filename in presets.values():
            load_config(os.path.join(CONFIG_DIR, filename))
