"""Tests for the simulated clock and working-hours gating."""

import pytest
import sys
import os

# Add parent directory to path to import modules
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from incident_simulator import DAY_MS, HOUR_MS, ConfigurationError, SimulationClock


class TestSimulationClock:
    def test_advance_scales_by_speed(self):
        clock = SimulationClock(speed=2.5)
        clock.advance(1000)
        assert clock.elapsed_ms == pytest.approx(2500)

    def test_one_day_is_sixty_seconds_at_normal_speed(self):
        clock = SimulationClock(speed=1.0)
        clock.advance(60_000)
        assert clock.day == 1
        assert clock.hour_of_day == 0

    def test_day_length_is_independent_of_speed(self):
        clock = SimulationClock(speed=4.0)
        clock.advance(15_000)
        assert clock.elapsed_ms == pytest.approx(DAY_MS)
        assert clock.day == 1

    def test_working_hours_boundaries(self):
        clock = SimulationClock(working_start_hour=9, working_end_hour=17)
        clock.elapsed_ms = 9 * HOUR_MS - 1
        assert not clock.is_working_hours()
        clock.elapsed_ms = 9 * HOUR_MS
        assert clock.is_working_hours()
        clock.elapsed_ms = 17 * HOUR_MS - 1
        assert clock.is_working_hours()
        clock.elapsed_ms = 17 * HOUR_MS
        assert not clock.is_working_hours()

    def test_working_hours_repeat_every_day(self):
        clock = SimulationClock()
        clock.elapsed_ms = 3 * DAY_MS + 10 * HOUR_MS
        assert clock.is_working_hours()
        assert clock.label() == "Day 3, 10:00"

    def test_label_minutes(self):
        clock = SimulationClock()
        clock.elapsed_ms = 9 * HOUR_MS + HOUR_MS / 2
        assert clock.label() == "Day 0, 09:30"

    @pytest.mark.parametrize("speed", [0.0, -1.0])
    def test_non_positive_speed_rejected(self, speed):
        with pytest.raises(ConfigurationError):
            SimulationClock(speed=speed)
        clock = SimulationClock()
        with pytest.raises(ConfigurationError):
            clock.set_speed(speed)
        assert clock.speed == 1.0

    @pytest.mark.parametrize("start, end", [(17, 9), (9, 9), (-1, 5), (0, 25)])
    def test_invalid_working_hours_rejected(self, start, end):
        clock = SimulationClock()
        with pytest.raises(ConfigurationError):
            clock.set_working_hours(start, end)
        assert (clock.working_start_hour, clock.working_end_hour) == (9, 17)

    def test_negative_advance_rejected(self):
        clock = SimulationClock()
        with pytest.raises(ValueError):
            clock.advance(-10)
