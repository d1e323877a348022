"""
Tests for the severity and complexity sampling in the incident dispatch simulator.

This module tests the statistical properties and edge cases of the shifted
normal and custom-weight severity distributions and of the bounded normal
complexity distribution.
"""

import statistics
import numpy as np
import pytest
import sys
import os

# Add parent directory to path to import modules
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from incident_simulator import (
    ConfigurationError,
    Severity,
    SeverityDistributionConfig,
    engine_seconds_to_hours,
    format_sim_hours,
    hours_to_engine_seconds,
    sample_complexity_hours,
    sample_severity,
    sample_severity_custom,
    sample_severity_normal,
    severity_distribution_preview,
)


class TestNormalSeverity:
    """Test the shifted normal severity distribution."""

    def test_values_are_valid_severities(self, rng):
        samples = [sample_severity_normal(0.0, rng) for _ in range(1000)]
        assert all(isinstance(s, Severity) for s in samples)
        assert set(samples) <= {1, 2, 3, 4}

    def test_unshifted_distribution_is_centred(self, rng):
        samples = [int(sample_severity_normal(0.0, rng)) for _ in range(4000)]
        assert abs(statistics.mean(samples) - 2.5) < 0.15
        # Every level shows up with the default spread
        assert set(samples) == {1, 2, 3, 4}

    def test_positive_shift_moves_towards_critical(self, rng):
        neutral = [int(sample_severity_normal(0.0, rng)) for _ in range(2000)]
        urgent = [int(sample_severity_normal(1.0, rng)) for _ in range(2000)]
        assert statistics.mean(urgent) < statistics.mean(neutral) - 0.5

    def test_large_shift_saturates(self, rng):
        assert all(sample_severity_normal(10.0, rng) == 1 for _ in range(200))
        assert all(sample_severity_normal(-10.0, rng) == 4 for _ in range(200))

    def test_consistency_with_seed(self):
        rng1 = np.random.default_rng(7)
        rng2 = np.random.default_rng(7)
        samples1 = [sample_severity_normal(0.5, rng1) for _ in range(50)]
        samples2 = [sample_severity_normal(0.5, rng2) for _ in range(50)]
        assert samples1 == samples2

    def test_preview_percentages(self, rng):
        preview = severity_distribution_preview(0.0, rng)
        assert set(preview) == {1, 2, 3, 4}
        assert 98 <= sum(preview.values()) <= 102
        # Symmetric around 2.5
        assert abs(preview[1] - preview[4]) <= 3
        assert abs(preview[2] - preview[3]) <= 3


class TestCustomSeverity:
    """Test the weighted severity distribution."""

    def test_single_weight_always_selected(self, rng):
        assert all(
            sample_severity_custom([100, 0, 0, 0], rng) == Severity.CRITICAL
            for _ in range(500)
        )
        assert all(
            sample_severity_custom([0, 0, 0, 5], rng) == Severity.LOW
            for _ in range(500)
        )

    def test_weights_are_normalized(self, rng):
        # Weights that do not sum to 100 behave like their proportions
        samples = [int(sample_severity_custom([1, 1, 0, 2], rng)) for _ in range(8000)]
        share = {level: samples.count(level) / len(samples) for level in (1, 2, 3, 4)}
        assert share[3] == 0
        assert abs(share[1] - 0.25) < 0.03
        assert abs(share[2] - 0.25) < 0.03
        assert abs(share[4] - 0.5) < 0.03

    def test_zero_total_rejected(self, rng):
        with pytest.raises(ConfigurationError):
            sample_severity_custom([0, 0, 0, 0], rng)

    def test_negative_or_missing_weights_rejected(self, rng):
        with pytest.raises(ConfigurationError):
            sample_severity_custom([50, -10, 30, 30], rng)
        with pytest.raises(ConfigurationError):
            sample_severity_custom([50, 50], rng)

    def test_dispatch_by_mode(self, rng):
        custom = SeverityDistributionConfig(mode="custom", weights=[0, 100, 0, 0])
        assert sample_severity(custom, rng) == Severity.HIGH
        normal = SeverityDistributionConfig(mode="normal", shift=10.0)
        assert sample_severity(normal, rng) == Severity.CRITICAL


class TestComplexity:
    """Test bounded normal complexity sampling."""

    def test_samples_within_bounds(self, rng):
        samples = [sample_complexity_hours(1.0, 8.0, rng) for _ in range(2000)]
        assert all(1.0 <= s <= 8.0 for s in samples)
        assert abs(statistics.mean(samples) - 4.5) < 0.15

    def test_degenerate_range_returns_min(self, rng):
        assert all(sample_complexity_hours(3.0, 3.0, rng) == 3.0 for _ in range(20))

    def test_inverted_range_rejected(self, rng):
        with pytest.raises(ConfigurationError):
            sample_complexity_hours(5.0, 2.0, rng)

    def test_hours_to_engine_seconds(self):
        assert hours_to_engine_seconds(24.0) == pytest.approx(60.0)
        assert hours_to_engine_seconds(1.0) == pytest.approx(2.5)
        assert engine_seconds_to_hours(2.5) == pytest.approx(1.0)

    @pytest.mark.parametrize(
        "hours, expected",
        [(2.0, "2h"), (1.5, "1h 30m"), (0.75, "45m"), (0.0, "0m"), (2.999, "3h")],
    )
    def test_format_sim_hours(self, hours, expected):
        assert format_sim_hours(hours) == expected
