"""
Pytest configuration and shared fixtures for the incident dispatch simulator tests.

This file provides common fixtures and utilities used across all test modules.
"""

import pytest
import numpy as np
import sys
import os

# Add parent directory to path to import modules
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from incident_simulator import (
    Engineer,
    SeverityDistributionConfig,
    Simulation,
    SimulationConfig,
    Task,
    TaskState,
)


@pytest.fixture
def rng():
    """Seeded random generator for deterministic sampling."""
    return np.random.default_rng(42)


@pytest.fixture
def create_simulation_config():
    """Create a simulation configuration with optional overrides.

    Defaults describe a deterministic setup: engineers at exactly 1.0x,
    tasks arriving at the engineer immediately, no spontaneous arrivals and
    a clock starting at 09:00 inside working hours.
    """

    def _create(severity=None, **overrides) -> SimulationConfig:
        defaults = {
            "num_engineers": 1,
            "tasks_per_day": 0.0,
            "min_complexity_hours": 4.0,
            "max_complexity_hours": 4.0,
            "time_speed": 1.0,
            "working_start_hour": 9,
            "working_end_hour": 17,
            "start_hour": 9.0,
            "distribution_policy": "round-robin",
            "travel_seconds": 0.0,
            "throughput_min": 1.0,
            "throughput_max": 1.0,
            "random_seed": 42,
        }
        defaults.update(overrides)
        return SimulationConfig(
            severity=severity or SeverityDistributionConfig(), **defaults
        )

    return _create


@pytest.fixture
def create_simulation(create_simulation_config):
    """Create a Simulation from config overrides."""

    def _create(**overrides) -> Simulation:
        return Simulation(create_simulation_config(**overrides))

    return _create


@pytest.fixture
def make_task():
    """Create tasks with sequential ids."""
    counter = {"next": 0}

    def _make(severity=3, cost=10.0, state=TaskState.TRAVELING, **kwargs) -> Task:
        task = Task(
            id=counter["next"], severity=severity, cost=cost, state=state, **kwargs
        )
        counter["next"] += 1
        return task

    return _make


@pytest.fixture
def engineer():
    return Engineer(id=0, name="Eng 1", throughput=1.0)


@pytest.fixture
def deliver():
    """Assign a task to an engineer and have it arrive straight away."""

    def _deliver(engineer: Engineer, task: Task, now: float = 0.0) -> Task:
        engineer.assign(task)
        engineer.arrive(task, now)
        return task

    return _deliver
