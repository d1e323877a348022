from dataclasses import dataclass, field, replace
from enum import Enum, IntEnum, auto
import json
import logging
import math
import os
import re
import numpy as np
import pandas as pd
from typing import Dict, List, Optional, Sequence

logger = logging.getLogger(__name__)

DAY_MS = 60_000.0  # One simulated day, in simulated milliseconds
HOURS_PER_DAY = 24
HOUR_MS = DAY_MS / HOURS_PER_DAY
ENGINE_SECONDS_PER_HOUR = 60.0 / HOURS_PER_DAY  # 1 simulated hour = 2.5s at 1x

SEVERITY_NORMAL_CENTER = 2.5
SEVERITY_NORMAL_STD = 0.8

INCIDENT_SIZES = {"minor": 5, "moderate": 10, "major": 20}
TRAINING_HOURS = 1.0
TRAINING_THROUGHPUT_BONUS = 0.1

COMPLETED_PREVIEW_LIMIT = 10
CLOCK_LOG_INTERVAL_MS = 5_000.0
STATS_WINDOW_MS = 60_000.0
COMPLETION_EPSILON = 1e-9


class ConfigurationError(ValueError):
    """A configuration value was rejected; the previous configuration stays active."""


class TaskStateError(RuntimeError):
    """An illegal task lifecycle transition was attempted."""


class Severity(IntEnum):
    """Urgency rank of a task. Lower values preempt higher values."""

    CRITICAL = 1
    HIGH = 2
    MEDIUM = 3
    LOW = 4


class TaskState(Enum):
    """Represents the states a task moves through during its lifecycle."""

    TRAVELING = auto()  # Assigned (or waiting for routing), not yet at the engineer
    QUEUED = auto()  # Waiting in an engineer's pending queue
    PROCESSING = auto()  # The engineer's current task
    COMPLETED = auto()


class DistributionPolicy(str, Enum):
    """Rule used to route unassigned tasks to engineers."""

    ROUND_ROBIN = "round-robin"
    LEAST_OCCUPIED = "least-occupied"


class SeverityMode(str, Enum):
    NORMAL = "normal"
    CUSTOM = "custom"


_ALLOWED_TRANSITIONS = {
    TaskState.TRAVELING: {TaskState.QUEUED},
    TaskState.QUEUED: {TaskState.PROCESSING},
    TaskState.PROCESSING: {TaskState.QUEUED, TaskState.COMPLETED},
    TaskState.COMPLETED: set(),
}


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _require_finite(name: str, value: float) -> None:
    if not math.isfinite(value):
        raise ConfigurationError(f"{name} must be finite: {value}")


def _validate_severity_weights(weights: Sequence[float]) -> None:
    if len(weights) != 4:
        raise ConfigurationError(
            f"Custom severity distribution needs 4 weights, got {len(weights)}"
        )
    for weight in weights:
        _require_finite("Severity weight", weight)
    if any(w < 0 for w in weights):
        raise ConfigurationError(f"Severity weights must be non-negative: {weights}")
    if sum(weights) <= 0:
        raise ConfigurationError("Severity weights must not all be zero")


def sample_severity_normal(shift: float, rng: np.random.Generator) -> Severity:
    """
    Draw a severity from a normal distribution centred on 2.5 - shift.

    Args:
        shift: Moves the distribution towards critical (positive) or low
            (negative) severities. Roughly [-2, 2]; larger values saturate
            at a boundary.
        rng: Random source.

    Returns:
        The sampled severity, clamped to [1, 4] and rounded to the nearest level.
    """
    z = rng.standard_normal()
    mean = SEVERITY_NORMAL_CENTER - shift
    value = float(np.clip(mean + z * SEVERITY_NORMAL_STD, 1.0, 4.0))
    return Severity(_round_half_up(value))


def sample_severity_custom(
    weights: Sequence[float], rng: np.random.Generator
) -> Severity:
    """
    Draw a severity from four relative weights.

    Weights 1-3 are normalized to percentages of the total; severity 4 takes
    whatever remains of the [0, 100) range.
    """
    _validate_severity_weights(weights)
    total = float(sum(weights))
    thresholds = np.cumsum([w / total * 100.0 for w in weights[:3]])
    roll = rng.uniform(0.0, 100.0)
    for level, threshold in zip((1, 2, 3), thresholds):
        if roll < threshold:
            return Severity(level)
    return Severity.LOW


def severity_distribution_preview(
    shift: float, rng: np.random.Generator, samples: int = 10_000
) -> Dict[int, int]:
    """Estimates the percentage of each severity produced by the normal mode."""
    z = rng.standard_normal(samples)
    values = np.clip(SEVERITY_NORMAL_CENTER - shift + z * SEVERITY_NORMAL_STD, 1.0, 4.0)
    levels = np.floor(values + 0.5).astype(int)
    return {
        level: int(round(np.count_nonzero(levels == level) / samples * 100))
        for level in (1, 2, 3, 4)
    }


def sample_complexity_hours(
    min_hours: float, max_hours: float, rng: np.random.Generator
) -> float:
    """
    Sample a processing cost in simulated hours.

    Uses Normal(mean=(min+max)/2, std=(max-min)/4) clamped to [min, max], so
    roughly 95% of draws fall inside the bounds before clamping.

    Args:
        min_hours: Lower bound of the complexity range.
        max_hours: Upper bound of the complexity range.
        rng: Random source.

    Returns:
        A complexity in simulated hours.
    """
    if min_hours > max_hours:
        raise ConfigurationError(
            f"min complexity {min_hours}h exceeds max complexity {max_hours}h"
        )
    if min_hours == max_hours:
        return float(min_hours)

    mean = (min_hours + max_hours) / 2.0
    std = (max_hours - min_hours) / 4.0
    return float(np.clip(rng.normal(mean, std), min_hours, max_hours))


def hours_to_engine_seconds(hours: float) -> float:
    return hours * ENGINE_SECONDS_PER_HOUR


def engine_seconds_to_hours(seconds: float) -> float:
    return seconds / ENGINE_SECONDS_PER_HOUR


def format_sim_hours(hours: float) -> str:
    """Formats simulated hours as '2h', '1h 30m' or '45m'."""
    if hours >= 1:
        whole = int(math.floor(hours))
        minutes = int(round((hours - whole) * 60))
        if minutes == 60:
            whole, minutes = whole + 1, 0
        return f"{whole}h {minutes}m" if minutes > 0 else f"{whole}h"
    return f"{int(round(hours * 60))}m"


@dataclass
class SeverityDistributionConfig:
    """How severities are assigned to newly arriving tasks.

    Attributes:
        mode: "normal" (shifted normal distribution) or "custom" (weights).
        shift: Shift of the normal distribution towards critical severities.
        weights: Relative weights for severities 1-4 used by the custom mode.
    """

    mode: SeverityMode = SeverityMode.NORMAL
    shift: float = 0.0
    weights: List[float] = field(default_factory=lambda: [10.0, 20.0, 30.0, 40.0])

    def validate(self) -> "SeverityDistributionConfig":
        try:
            self.mode = SeverityMode(self.mode)
        except ValueError:
            raise ConfigurationError(f"Unknown severity mode: {self.mode!r}") from None
        _require_finite("Severity shift", self.shift)
        if self.mode == SeverityMode.CUSTOM:
            _validate_severity_weights(self.weights)
        return self


def sample_severity(
    config: SeverityDistributionConfig, rng: np.random.Generator
) -> Severity:
    if config.mode == SeverityMode.NORMAL:
        return sample_severity_normal(config.shift, rng)
    return sample_severity_custom(config.weights, rng)


@dataclass
class SimulationConfig:
    """Overall configuration for the dispatch simulation.

    Attributes:
        num_engineers: Number of engineers receiving tasks.
        tasks_per_day: Arrival rate, in tasks per simulated day (arrivals run 24/7).
        min_complexity_hours: Lower bound of task complexity (simulated hours).
        max_complexity_hours: Upper bound of task complexity (simulated hours).
        time_speed: Clock multiplier; at 1.0 one simulated day lasts 60 real seconds.
        working_start_hour: First hour of the working day (inclusive).
        working_end_hour: Hour the working day ends (exclusive).
        start_hour: Simulated hour of day the clock starts at.
        distribution_policy: Routing rule for unassigned tasks.
        travel_seconds: Engine-seconds a routed task travels before it arrives.
        throughput_min: Lower bound of the initial engineer throughput multiplier.
        throughput_max: Upper bound of the initial engineer throughput multiplier.
        severity: Severity distribution settings.
        random_seed: Optional random seed for deterministic simulation runs.
    """

    num_engineers: int = 3
    tasks_per_day: float = 50.0
    min_complexity_hours: float = 1.0
    max_complexity_hours: float = 8.0
    time_speed: float = 1.0
    working_start_hour: int = 9
    working_end_hour: int = 17
    start_hour: float = 0.0
    distribution_policy: DistributionPolicy = DistributionPolicy.ROUND_ROBIN
    travel_seconds: float = 2.0
    throughput_min: float = 0.8
    throughput_max: float = 1.6
    severity: SeverityDistributionConfig = field(
        default_factory=SeverityDistributionConfig
    )
    random_seed: Optional[int] = None

    def validate(self) -> "SimulationConfig":
        """Raises ConfigurationError for any out-of-range value."""
        _validate_speed(self.time_speed)
        _validate_working_hours(self.working_start_hour, self.working_end_hour)
        for name in (
            "tasks_per_day",
            "min_complexity_hours",
            "max_complexity_hours",
            "travel_seconds",
            "throughput_min",
            "throughput_max",
        ):
            _require_finite(name, getattr(self, name))
        if self.num_engineers < 0:
            raise ConfigurationError(
                f"Engineer count must be non-negative: {self.num_engineers}"
            )
        if self.tasks_per_day < 0:
            raise ConfigurationError(
                f"Arrival rate must be non-negative: {self.tasks_per_day}"
            )
        if self.min_complexity_hours < 0:
            raise ConfigurationError(
                f"Complexity must be non-negative: {self.min_complexity_hours}"
            )
        if self.min_complexity_hours > self.max_complexity_hours:
            raise ConfigurationError(
                f"min complexity {self.min_complexity_hours}h exceeds "
                f"max complexity {self.max_complexity_hours}h"
            )
        if not 0 <= self.start_hour < HOURS_PER_DAY:
            raise ConfigurationError(f"Start hour out of range: {self.start_hour}")
        if self.travel_seconds < 0:
            raise ConfigurationError(
                f"Travel time must be non-negative: {self.travel_seconds}"
            )
        if self.throughput_min < 0 or self.throughput_min > self.throughput_max:
            raise ConfigurationError(
                f"Invalid throughput range [{self.throughput_min}, {self.throughput_max}]"
            )
        try:
            self.distribution_policy = DistributionPolicy(self.distribution_policy)
        except ValueError:
            raise ConfigurationError(
                f"Unknown distribution policy: {self.distribution_policy!r}"
            ) from None
        self.severity.validate()
        return self

    def to_dict(self) -> dict:
        return {
            "num_engineers": self.num_engineers,
            "tasks_per_day": self.tasks_per_day,
            "min_complexity_hours": self.min_complexity_hours,
            "max_complexity_hours": self.max_complexity_hours,
            "time_speed": self.time_speed,
            "working_start_hour": self.working_start_hour,
            "working_end_hour": self.working_end_hour,
            "start_hour": self.start_hour,
            "distribution_policy": DistributionPolicy(self.distribution_policy).value,
            "travel_seconds": self.travel_seconds,
            "throughput_min": self.throughput_min,
            "throughput_max": self.throughput_max,
            "severity": {
                "mode": SeverityMode(self.severity.mode).value,
                "shift": self.severity.shift,
                "weights": list(self.severity.weights),
            },
            "random_seed": self.random_seed,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SimulationConfig":
        """Builds a validated config; missing keys fall back to defaults."""
        values = {k: v for k, v in data.items() if k != "severity"}
        unknown = set(values) - set(cls.__dataclass_fields__)
        if unknown:
            raise ConfigurationError(f"Unknown configuration keys: {sorted(unknown)}")
        severity_data = data.get("severity") or {}
        unknown = set(severity_data) - set(
            SeverityDistributionConfig.__dataclass_fields__
        )
        if unknown:
            raise ConfigurationError(
                f"Unknown severity configuration keys: {sorted(unknown)}"
            )
        severity = SeverityDistributionConfig(**severity_data)
        return cls(severity=severity, **values).validate()


def _validate_speed(speed: float) -> None:
    _require_finite("Time speed", speed)
    if not speed > 0:
        raise ConfigurationError(f"Time speed must be positive: {speed}")


def _validate_working_hours(start: int, end: int) -> None:
    if not 0 <= start < end <= HOURS_PER_DAY:
        raise ConfigurationError(f"Invalid working hours [{start}, {end})")


def save_config(config: SimulationConfig, path: str) -> None:
    with open(path, "w") as f:
        json.dump(config.to_dict(), f, indent=2)


def load_config(path: str) -> SimulationConfig:
    with open(path, "r") as f:
        return SimulationConfig.from_dict(json.load(f))


def pretty_name_to_filename(pretty_name: str) -> str:
    """Converts a pretty name to a safe filename."""
    s = pretty_name.lower()
    s = re.sub(r"\s+", "_", s)
    s = re.sub(r"[^a-z0-9_\-]", "", s)
    return s


def filename_to_pretty_name(filename: str) -> str:
    s = filename.replace("_", " ").replace("-", " ")
    return s.title()


def list_preset_configs(config_dir: str) -> Dict[str, str]:
    """Lists .json presets in config_dir as {pretty_name: filename.json}."""
    presets = {}
    if os.path.isdir(config_dir):
        for f_name in sorted(os.listdir(config_dir)):
            if f_name.endswith(".json"):
                presets[filename_to_pretty_name(f_name[:-5])] = f_name
    return presets


@dataclass
class SimulationClock:
    """Maps real elapsed time onto simulated time.

    Attributes:
        speed: Multiplier applied to real milliseconds.
        working_start_hour: First working hour (inclusive).
        working_end_hour: End of the working day (exclusive).
        elapsed_ms: Simulated milliseconds since the epoch (day 0, 00:00).
    """

    speed: float = 1.0
    working_start_hour: int = 9
    working_end_hour: int = 17
    elapsed_ms: float = 0.0

    def __post_init__(self):
        _validate_speed(self.speed)
        _validate_working_hours(self.working_start_hour, self.working_end_hour)

    def advance(self, real_delta_ms: float) -> float:
        if real_delta_ms < 0:
            raise ValueError(f"Clock cannot run backwards: {real_delta_ms}ms")
        self.elapsed_ms += real_delta_ms * self.speed
        return self.elapsed_ms

    def set_speed(self, speed: float) -> None:
        _validate_speed(speed)
        self.speed = speed

    def set_working_hours(self, start: int, end: int) -> None:
        _validate_working_hours(start, end)
        self.working_start_hour = start
        self.working_end_hour = end

    @property
    def day(self) -> int:
        return int(self.elapsed_ms // DAY_MS)

    @property
    def hour_of_day(self) -> int:
        return int((self.elapsed_ms % DAY_MS) // HOUR_MS)

    @property
    def minute_of_hour(self) -> int:
        return int((self.elapsed_ms % HOUR_MS) // (HOUR_MS / 60))

    def is_working_hours(self) -> bool:
        return self.working_start_hour <= self.hour_of_day < self.working_end_hour

    def label(self) -> str:
        return f"Day {self.day}, {self.hour_of_day:02d}:{self.minute_of_hour:02d}"


@dataclass
class Task:
    """Represents a single incident within the simulation.

    Attributes:
        id: Monotonic identifier.
        severity: Urgency (1 = critical .. 4 = low).
        cost: Total processing effort in engine-seconds.
        remaining: Effort left; only decreases while processing in working hours.
        state: Current lifecycle state (TaskState enum).
        assigned_engineer_id: Engineer the task was routed to, set once.
        was_preempted: True once the task has been interrupted by a more urgent one.
        is_training: Training tasks raise the engineer's throughput and are
            excluded from statistics.
        created_at: Simulated ms the task was created.
        queue_entered_at: Simulated ms the task first joined a pending queue.
        started_at: Simulated ms the task was first selected for processing.
        completed_at: Simulated ms the task completed.
        travel_remaining: Engine-seconds left before the task reaches its engineer.
    """

    id: int
    severity: Severity
    cost: float
    state: TaskState = TaskState.TRAVELING
    assigned_engineer_id: Optional[int] = None
    was_preempted: bool = False
    is_training: bool = False
    created_at: float = 0.0
    queue_entered_at: Optional[float] = None
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    travel_remaining: float = 0.0
    remaining: float = field(default=0.0, init=False)

    def __post_init__(self):
        self.severity = Severity(self.severity)
        if self.cost < 0:
            raise ValueError(f"Task cost must be non-negative: {self.cost}")
        self.remaining = float(self.cost)

    def _transition(self, new_state: TaskState) -> None:
        if new_state not in _ALLOWED_TRANSITIONS[self.state]:
            raise TaskStateError(
                f"Task {self.id}: illegal transition {self.state.name} -> {new_state.name}"
            )
        self.state = new_state

    def assign_to(self, engineer_id: int) -> None:
        if self.assigned_engineer_id is not None:
            raise TaskStateError(
                f"Task {self.id} is already assigned to engineer {self.assigned_engineer_id}"
            )
        self.assigned_engineer_id = engineer_id

    def mark_queued(self, now: float) -> None:
        self._transition(TaskState.QUEUED)
        if self.queue_entered_at is None:
            self.queue_entered_at = now

    def start(self, now: float) -> None:
        self._transition(TaskState.PROCESSING)
        if self.started_at is None:
            self.started_at = now

    def preempt(self) -> None:
        self._transition(TaskState.QUEUED)
        self.was_preempted = True

    def work(self, amount: float) -> bool:
        """Consumes up to `amount` effort; returns True once nothing remains."""
        if self.state != TaskState.PROCESSING:
            raise TaskStateError(f"Task {self.id} is not processing ({self.state.name})")
        self.remaining = max(0.0, self.remaining - amount)
        return self.remaining <= COMPLETION_EPSILON

    def complete(self, now: float) -> None:
        self._transition(TaskState.COMPLETED)
        self.remaining = 0.0
        self.completed_at = now

    @property
    def progress(self) -> float:
        if self.cost <= 0:
            return 1.0 if self.state == TaskState.COMPLETED else 0.0
        return (self.cost - self.remaining) / self.cost

    @property
    def queue_time(self) -> Optional[float]:
        if self.queue_entered_at is None or self.completed_at is None:
            return None
        return self.completed_at - self.queue_entered_at


@dataclass
class Engineer:
    """An engineer with a personal priority queue.

    Attributes:
        id: Engineer index.
        name: Display name.
        throughput: Processing speed multiplier.
        current: The task being processed, if any.
        pending: Arrived tasks, sorted by severity (stable on ties).
        incoming: Tasks assigned but still traveling, keyed by task id.
        completed: Completed non-training tasks, oldest first.
        training_completed: Number of training sessions finished.
    """

    id: int
    name: str
    throughput: float = 1.0
    current: Optional[Task] = None
    pending: List[Task] = field(default_factory=list)
    incoming: Dict[int, Task] = field(default_factory=dict)
    completed: List[Task] = field(default_factory=list)
    training_completed: int = 0

    def _enqueue(self, task: Task, front: bool = False) -> None:
        if front:
            self.pending.insert(0, task)
        else:
            self.pending.append(task)
        self.pending.sort(key=lambda t: t.severity)

    def assign(self, task: Task) -> None:
        """Routes a task to this engineer; it stays incoming until it arrives."""
        task.assign_to(self.id)
        self.incoming[task.id] = task

    def arrive(self, task: Task, now: float) -> None:
        """Moves an incoming task into the pending queue, preempting if more urgent."""
        if self.incoming.pop(task.id, None) is None:
            raise TaskStateError(f"Task {task.id} is not incoming for {self.name}")
        task.mark_queued(now)
        self._enqueue(task)

        if self.current is not None and task.severity < self.current.severity:
            self.preempt_current()
            self.select_next(now)
        elif self.current is None:
            self.select_next(now)

    def receive_training(self, task: Task, now: float) -> None:
        """Delivers a training task straight into the pending queue."""
        task.assign_to(self.id)
        if task.queue_entered_at is None:
            task.queue_entered_at = now
        self._enqueue(task, front=True)
        if self.current is None:
            self.select_next(now)

    def preempt_current(self) -> Optional[Task]:
        task = self.current
        if task is None:
            return None
        task.preempt()
        self.current = None
        self._enqueue(task)
        logger.debug(
            "%s preempted task %d (Severity %d, %.2fs remaining)",
            self.name,
            task.id,
            task.severity,
            task.remaining,
        )
        return task

    def select_next(self, now: float) -> Optional[Task]:
        if self.current is not None or not self.pending:
            return None
        self.current = self.pending.pop(0)
        self.current.start(now)
        logger.debug(
            "%s started processing task %d (Severity %d)",
            self.name,
            self.current.id,
            self.current.severity,
        )
        return self.current

    def tick(
        self, real_delta_ms: float, working_hours: bool, speed: float, now: float
    ) -> Optional[Task]:
        """Advances the current task; returns the task completed this tick, if any."""
        finished = None
        if (
            working_hours
            and self.current is not None
            and self.current.state == TaskState.PROCESSING
        ):
            effort = (real_delta_ms / 1000.0) * self.throughput * speed
            if self.current.work(effort):
                finished = self.complete_current(now)

        if self.current is None and self.pending and working_hours:
            self.select_next(now)
        return finished

    def complete_current(self, now: float) -> Task:
        task = self.current
        if task is None:
            raise TaskStateError(f"{self.name} has no task to complete")
        task.complete(now)

        if task.is_training:
            self.throughput += TRAINING_THROUGHPUT_BONUS
            self.training_completed += 1
            logger.info(
                "%s completed training! New speed: %.1fx", self.name, self.throughput
            )
        else:
            self.completed.append(task)
            logger.debug("%s completed task %d", self.name, task.id)

        self.current = None
        self.select_next(now)
        return task

    def clear(self) -> None:
        """Drops every queued task; throughput is kept."""
        self.current = None
        self.pending = []
        self.incoming = {}
        self.completed = []

    def held_tasks(self) -> List[Task]:
        tasks = list(self.incoming.values()) + list(self.pending)
        if self.current is not None:
            tasks.append(self.current)
        return tasks

    @property
    def pending_count(self) -> int:
        return len(self.pending) + (1 if self.current is not None else 0)

    @property
    def incoming_count(self) -> int:
        return len(self.incoming)

    @property
    def completed_count(self) -> int:
        return len(self.completed)

    @property
    def total_load(self) -> int:
        return self.pending_count + self.incoming_count

    @property
    def is_idle(self) -> bool:
        return self.current is None

    @property
    def status(self) -> str:
        return "IDLE" if self.is_idle else "WORKING"

    def tasks_by_severity(self) -> Dict[int, int]:
        """Counts the current and pending tasks per severity."""
        counts = {level: 0 for level in (1, 2, 3, 4)}
        if self.current is not None:
            counts[int(self.current.severity)] += 1
        for task in self.pending:
            counts[int(task.severity)] += 1
        return counts


@dataclass
class SimulationStatistics:
    """Accumulates completion statistics for non-training tasks.

    Attributes:
        completed_count: Number of completed tasks recorded.
        total_queue_time_ms: Sum of queue-to-completion latencies (simulated ms).
        queue_times_ms: Individual latencies, in completion order.
        completed_this_minute: Completions in the current real-time minute.
    """

    completed_count: int = 0
    total_queue_time_ms: float = 0.0
    queue_times_ms: List[float] = field(default_factory=list)
    completed_this_minute: int = 0
    _window_elapsed_ms: float = field(default=0.0, init=False, repr=False)

    def record(self, task: Task) -> None:
        if task.state != TaskState.COMPLETED:
            raise TaskStateError(f"Task {task.id} is not completed")
        latency = task.queue_time
        if latency is not None:
            self.total_queue_time_ms += latency
            self.queue_times_ms.append(latency)
        self.completed_count += 1
        self.completed_this_minute += 1

    def advance_real_time(self, real_delta_ms: float) -> None:
        self._window_elapsed_ms += real_delta_ms
        if self._window_elapsed_ms >= STATS_WINDOW_MS:
            self.completed_this_minute = 0
            self._window_elapsed_ms = 0.0

    @property
    def average_queue_time_ms(self) -> float:
        if self.completed_count == 0:
            return 0.0
        return self.total_queue_time_ms / self.completed_count

    @property
    def average_queue_time_hours(self) -> float:
        return self.average_queue_time_ms / HOUR_MS

    def reset(self) -> None:
        self.completed_count = 0
        self.total_queue_time_ms = 0.0
        self.queue_times_ms = []
        self.completed_this_minute = 0
        self._window_elapsed_ms = 0.0


@dataclass
class TaskView:
    """Read-only view of a task for renderers."""

    id: int
    target_engineer_id: Optional[int]
    state: TaskState
    severity: int
    remaining: float
    cost: float
    was_preempted: bool
    is_training: bool


@dataclass
class EngineerView:
    """Read-only view of an engineer for renderers."""

    id: int
    name: str
    current_task_id: Optional[int]
    pending_count: int
    incoming_count: int
    completed_count: int
    throughput: float
    is_working_hours: bool


@dataclass
class RenderState:
    clock_label: str
    is_working_hours: bool
    is_paused: bool
    unassigned_count: int
    tasks: List[TaskView]
    engineers: List[EngineerView]


@dataclass
class TaskItem:
    """One row of an engineer's queue listing."""

    task_id: int
    severity: int
    status: str
    complexity: str
    progress_percent: float
    remaining: Optional[float]
    was_preempted: bool
    is_training: bool


@dataclass
class EngineerSnapshot:
    """Queue listing of a single engineer, as shown in a detail popup."""

    engineer_id: int
    name: str
    status: str
    throughput: float
    pending_count: int
    incoming_count: int
    completed_count: int
    severity_breakdown: Dict[int, int]
    pending: List[TaskItem]
    incoming: List[TaskItem]
    completed: List[TaskItem]


def _task_item(task: Task, status: str, show_remaining: bool = False) -> TaskItem:
    if task.was_preempted and task.state != TaskState.COMPLETED and task.progress > 0:
        status += f" (Resumed - {task.progress * 100:.1f}% done)"
    return TaskItem(
        task_id=task.id,
        severity=int(task.severity),
        status=status,
        complexity=format_sim_hours(engine_seconds_to_hours(task.cost)),
        progress_percent=round(min(100.0, max(0.0, task.progress * 100)), 1),
        remaining=task.remaining if show_remaining else None,
        was_preempted=task.was_preempted,
        is_training=task.is_training,
    )


@dataclass
class Simulation:
    """Dispatches incidents to engineers and advances them in discrete ticks.

    Attributes:
        config: The SimulationConfig currently in effect.
        rng: Random source; built from config.random_seed when not given.
        clock: Simulated clock.
        engineers: Engineer roster, in routing order.
        tasks: Every task created since the last reset, by id.
        unassigned: Tasks waiting to be routed, oldest first.
        statistics: Completion statistics.
        is_paused: While paused, tick() does nothing.
        selected_engineer_id: Engineer chosen through the selection surface.
    """

    config: SimulationConfig
    rng: Optional[np.random.Generator] = None
    clock: SimulationClock = field(init=False)
    engineers: List[Engineer] = field(default_factory=list, init=False)
    tasks: Dict[int, Task] = field(default_factory=dict, init=False)
    unassigned: List[Task] = field(default_factory=list, init=False)
    statistics: SimulationStatistics = field(
        default_factory=SimulationStatistics, init=False
    )
    is_paused: bool = field(default=False, init=False)
    selected_engineer_id: Optional[int] = field(default=None, init=False)
    _task_counter: int = field(default=0, init=False)
    _round_robin_index: int = field(default=0, init=False)
    _rate_epoch_ms: float = field(default=0.0, init=False)
    _arrivals_since_epoch: int = field(default=0, init=False)
    _real_elapsed_ms: float = field(default=0.0, init=False)
    _last_clock_log_ms: float = field(default=0.0, init=False)

    def __post_init__(self):
        self.config.validate()
        if self.rng is None:
            self.rng = np.random.default_rng(self.config.random_seed)
        self.clock = SimulationClock(
            speed=self.config.time_speed,
            working_start_hour=self.config.working_start_hour,
            working_end_hour=self.config.working_end_hour,
            elapsed_ms=self.config.start_hour * HOUR_MS,
        )
        self._rate_epoch_ms = self.clock.elapsed_ms
        self._initialize_engineers()

    def _next_task_id(self) -> int:
        task_id = self._task_counter
        self._task_counter += 1
        return task_id

    def _initialize_engineers(self):
        """Builds a fresh roster; tasks still held by the old roster are dropped."""
        dropped = [task for e in self.engineers for task in e.held_tasks()]
        for task in dropped:
            self.tasks.pop(task.id, None)
        if dropped:
            logger.warning(
                "Roster rebuilt: discarded %d unfinished tasks", len(dropped)
            )

        self.engineers = []
        for i in range(self.config.num_engineers):
            if self.config.throughput_max > self.config.throughput_min:
                throughput = self.rng.uniform(
                    self.config.throughput_min, self.config.throughput_max
                )
            else:
                throughput = self.config.throughput_min
            self.engineers.append(
                Engineer(id=i, name=f"Eng {i + 1}", throughput=float(throughput))
            )
        self.selected_engineer_id = None
        self._round_robin_index = 0

    def get_engineer(self, engineer_id: int) -> Optional[Engineer]:
        return next((e for e in self.engineers if e.id == engineer_id), None)

    def _create_task(self, severity: Severity) -> Task:
        hours = sample_complexity_hours(
            self.config.min_complexity_hours, self.config.max_complexity_hours, self.rng
        )
        task = Task(
            id=self._next_task_id(),
            severity=severity,
            cost=hours_to_engine_seconds(hours),
            created_at=self.clock.elapsed_ms,
            travel_remaining=self.config.travel_seconds,
        )
        self.tasks[task.id] = task
        return task

    # --- Arrivals and routing ---

    def spawn_arrivals(self) -> List[Task]:
        """Creates every arrival due since the arrival rate was last set."""
        if self.config.tasks_per_day <= 0:
            return []
        since_epoch = self.clock.elapsed_ms - self._rate_epoch_ms
        due = int(math.floor(since_epoch * self.config.tasks_per_day / DAY_MS + 1e-9))

        spawned = []
        while self._arrivals_since_epoch < due:
            task = self._create_task(sample_severity(self.config.severity, self.rng))
            self.unassigned.append(task)
            spawned.append(task)
            self._arrivals_since_epoch += 1
        return spawned

    def _choose_engineer(self) -> Engineer:
        if self.config.distribution_policy == DistributionPolicy.LEAST_OCCUPIED:
            return min(self.engineers, key=lambda e: e.total_load)
        engineer = self.engineers[self._round_robin_index % len(self.engineers)]
        self._round_robin_index = (self._round_robin_index + 1) % len(self.engineers)
        return engineer

    def route_unassigned(self) -> int:
        """Assigns every waiting task to an engineer; returns how many were routed."""
        if not self.engineers or not self.unassigned:
            return 0
        routed = self.unassigned
        self.unassigned = []
        for task in routed:
            self._choose_engineer().assign(task)
        return len(routed)

    def _advance_travel(self, real_delta_ms: float) -> None:
        travel = (real_delta_ms / 1000.0) * self.clock.speed
        traveling = sorted(
            (task for e in self.engineers for task in e.incoming.values()),
            key=lambda t: t.id,
        )
        for task in traveling:
            task.travel_remaining = max(0.0, task.travel_remaining - travel)
            if task.travel_remaining <= 0:
                self.get_engineer(task.assigned_engineer_id).arrive(
                    task, self.clock.elapsed_ms
                )

    def signal_arrival(self, task_id: int) -> bool:
        """Delivers a traveling task to its engineer immediately."""
        task = self.tasks.get(task_id)
        if task is None or task.state != TaskState.TRAVELING:
            return False
        engineer = self.get_engineer(task.assigned_engineer_id)
        if engineer is None:
            return False
        task.travel_remaining = 0.0
        engineer.arrive(task, self.clock.elapsed_ms)
        return True

    # --- Triggers ---

    def trigger_incident(self, count: int) -> List[Task]:
        """Creates `count` severity-1 tasks outside the regular arrival rate."""
        if count < 0:
            raise ValueError(f"Incident size must be non-negative: {count}")
        logger.info("Incident triggered - generating %d Sev1 tasks", count)
        tasks = [self._create_task(Severity.CRITICAL) for _ in range(count)]
        self.unassigned.extend(tasks)
        return tasks

    def trigger_minor_incident(self) -> List[Task]:
        return self.trigger_incident(INCIDENT_SIZES["minor"])

    def trigger_moderate_incident(self) -> List[Task]:
        return self.trigger_incident(INCIDENT_SIZES["moderate"])

    def trigger_major_incident(self) -> List[Task]:
        return self.trigger_incident(INCIDENT_SIZES["major"])

    def trigger_training(self) -> List[Task]:
        """Gives every engineer a one-hour, severity-4 training task."""
        logger.info("Training triggered for %d engineers", len(self.engineers))
        now = self.clock.elapsed_ms
        tasks = []
        for engineer in self.engineers:
            task = Task(
                id=self._next_task_id(),
                severity=Severity.LOW,
                cost=hours_to_engine_seconds(TRAINING_HOURS),
                state=TaskState.QUEUED,
                is_training=True,
                created_at=now,
            )
            self.tasks[task.id] = task
            engineer.receive_training(task, now)
            tasks.append(task)
        return tasks

    # --- Stepping ---

    def tick(self, real_delta_ms: float) -> List[Task]:
        """Advances the whole simulation; returns non-training tasks completed."""
        if self.is_paused:
            return []

        self.clock.advance(real_delta_ms)
        working_hours = self.clock.is_working_hours()

        self.spawn_arrivals()
        self.route_unassigned()
        self._advance_travel(real_delta_ms)

        completed = []
        for engineer in self.engineers:
            finished = engineer.tick(
                real_delta_ms, working_hours, self.clock.speed, self.clock.elapsed_ms
            )
            if finished is not None and not finished.is_training:
                self.statistics.record(finished)
                completed.append(finished)

        self.statistics.advance_real_time(real_delta_ms)
        self._real_elapsed_ms += real_delta_ms
        if self._real_elapsed_ms - self._last_clock_log_ms >= CLOCK_LOG_INTERVAL_MS:
            logger.debug(
                "Time: %s, Working: %s, Speed: %.1f",
                self.clock.label(),
                working_hours,
                self.clock.speed,
            )
            self._last_clock_log_ms = self._real_elapsed_ms
        return completed

    def pause(self) -> None:
        self.is_paused = True
        logger.info("Simulation paused at %s", self.clock.label())

    def resume(self) -> None:
        self.is_paused = False
        logger.info("Simulation resumed at %s", self.clock.label())

    def toggle_pause(self) -> bool:
        if self.is_paused:
            self.resume()
        else:
            self.pause()
        return self.is_paused

    def reset(self) -> None:
        """Clears all tasks, statistics and time; the roster and throughputs stay."""
        self.tasks = {}
        self.unassigned = []
        self.statistics.reset()
        self._task_counter = 0
        self._round_robin_index = 0
        self.clock.elapsed_ms = self.config.start_hour * HOUR_MS
        self._rate_epoch_ms = self.clock.elapsed_ms
        self._arrivals_since_epoch = 0
        self._real_elapsed_ms = 0.0
        self._last_clock_log_ms = 0.0
        for engineer in self.engineers:
            engineer.clear()
        logger.info("Simulation reset")

    # --- Control surface ---

    def _update_config(self, **changes) -> SimulationConfig:
        candidate = replace(self.config, **changes)
        try:
            candidate.validate()
        except ConfigurationError as exc:
            logger.warning("Rejected configuration change %s: %s", changes, exc)
            raise
        self.config = candidate
        return candidate

    def set_speed(self, speed: float) -> None:
        self._update_config(time_speed=speed)
        self.clock.set_speed(speed)

    def set_working_hours(self, start: int, end: int) -> None:
        self._update_config(working_start_hour=start, working_end_hour=end)
        self.clock.set_working_hours(start, end)

    def set_task_rate(self, tasks_per_day: float) -> None:
        self._update_config(tasks_per_day=tasks_per_day)
        self._rate_epoch_ms = self.clock.elapsed_ms
        self._arrivals_since_epoch = 0

    def set_complexity_bounds(self, min_hours: float, max_hours: float) -> None:
        self._update_config(
            min_complexity_hours=min_hours, max_complexity_hours=max_hours
        )

    def set_severity_distribution(
        self,
        mode: str,
        shift: Optional[float] = None,
        weights: Optional[Sequence[float]] = None,
    ) -> None:
        current = self.config.severity
        severity = SeverityDistributionConfig(
            mode=mode,
            shift=current.shift if shift is None else shift,
            weights=list(current.weights if weights is None else weights),
        )
        self._update_config(severity=severity)

    def set_distribution_policy(self, policy: str) -> None:
        self._update_config(distribution_policy=policy)
        self._round_robin_index = 0

    def set_engineer_count(self, count: int) -> None:
        self._update_config(num_engineers=count)
        self._initialize_engineers()
        logger.info("Engineer count set to %d", count)

    def set_throughput(self, engineer_id: int, value: float) -> None:
        engineer = self.get_engineer(engineer_id)
        if engineer is None:
            raise ConfigurationError(f"Unknown engineer: {engineer_id}")
        _require_finite("Throughput", value)
        if not value >= 0:
            raise ConfigurationError(f"Throughput must be non-negative: {value}")
        engineer.throughput = float(value)

    def apply_config(self, config: SimulationConfig) -> None:
        """Swaps in a whole new configuration, keeping the old one if it is invalid."""
        try:
            config.validate()
        except ConfigurationError as exc:
            logger.warning("Rejected configuration: %s", exc)
            raise
        previous = self.config
        self.config = config
        self.clock.set_speed(config.time_speed)
        self.clock.set_working_hours(config.working_start_hour, config.working_end_hour)
        if config.tasks_per_day != previous.tasks_per_day:
            self._rate_epoch_ms = self.clock.elapsed_ms
            self._arrivals_since_epoch = 0
        if config.distribution_policy != previous.distribution_policy:
            self._round_robin_index = 0
        if config.num_engineers != previous.num_engineers:
            self._initialize_engineers()

    # --- Observation ---

    def select_engineer(self, engineer_id: int) -> Optional[EngineerSnapshot]:
        snapshot = self.engineer_snapshot(engineer_id)
        if snapshot is not None:
            self.selected_engineer_id = engineer_id
        return snapshot

    def engineer_snapshot(self, engineer_id: int) -> Optional[EngineerSnapshot]:
        """Lists an engineer's queues without changing any state."""
        engineer = self.get_engineer(engineer_id)
        if engineer is None:
            return None

        pending = []
        if engineer.current is not None:
            pending.append(_task_item(engineer.current, "Processing", show_remaining=True))
        pending.extend(
            _task_item(task, f"Queue Position {i + 1}")
            for i, task in enumerate(engineer.pending)
        )
        incoming = [
            _task_item(task, "Traveling to engineer")
            for task in engineer.incoming.values()
        ]
        recent = engineer.completed[-COMPLETED_PREVIEW_LIMIT:][::-1]
        completed = [
            _task_item(task, f"Completed {i + 1}") for i, task in enumerate(recent)
        ]

        return EngineerSnapshot(
            engineer_id=engineer.id,
            name=engineer.name,
            status=engineer.status,
            throughput=engineer.throughput,
            pending_count=engineer.pending_count,
            incoming_count=engineer.incoming_count,
            completed_count=engineer.completed_count,
            severity_breakdown=engineer.tasks_by_severity(),
            pending=pending,
            incoming=incoming,
            completed=completed,
        )

    def render_state(self) -> RenderState:
        working_hours = self.clock.is_working_hours()
        return RenderState(
            clock_label=self.clock.label(),
            is_working_hours=working_hours,
            is_paused=self.is_paused,
            unassigned_count=len(self.unassigned),
            tasks=[
                TaskView(
                    id=t.id,
                    target_engineer_id=t.assigned_engineer_id,
                    state=t.state,
                    severity=int(t.severity),
                    remaining=t.remaining,
                    cost=t.cost,
                    was_preempted=t.was_preempted,
                    is_training=t.is_training,
                )
                for t in self.tasks.values()
                if t.state != TaskState.COMPLETED
            ],
            engineers=[
                EngineerView(
                    id=e.id,
                    name=e.name,
                    current_task_id=e.current.id if e.current is not None else None,
                    pending_count=e.pending_count,
                    incoming_count=e.incoming_count,
                    completed_count=e.completed_count,
                    throughput=e.throughput,
                    is_working_hours=working_hours,
                )
                for e in self.engineers
            ],
        )

    def summary(self) -> dict:
        """Headline figures: active/completed tasks, average queue time, rate."""
        return {
            "clock": self.clock.label(),
            "working_hours": self.clock.is_working_hours(),
            "active_tasks": sum(
                1 for t in self.tasks.values() if t.state != TaskState.COMPLETED
            ),
            "completed_tasks": self.statistics.completed_count,
            "avg_queue_time": format_sim_hours(
                self.statistics.average_queue_time_hours
            ),
            "tasks_per_minute": self.statistics.completed_this_minute,
        }

    # --- Batch runs ---

    def _collect_daily_metrics(
        self, day: int, arrivals_today: int, completed_today: int
    ) -> dict:
        """Collects and returns a dictionary of daily summary metrics."""
        metrics = {
            "day": day,
            "arrivals": arrivals_today,
            "completed": completed_today,
            "completed_cumulative": self.statistics.completed_count,
            "avg_queue_time_hours": self.statistics.average_queue_time_hours,
            "pending_eod": sum(len(e.pending) for e in self.engineers),
            "processing_eod": sum(1 for e in self.engineers if e.current is not None),
            "incoming_eod": sum(e.incoming_count for e in self.engineers),
            "unassigned_eod": len(self.unassigned),
            "preempted_cumulative": sum(
                1 for t in self.tasks.values() if t.was_preempted and not t.is_training
            ),
            "avg_throughput": (
                float(np.mean([e.throughput for e in self.engineers]))
                if self.engineers
                else 0.0
            ),
        }
        if day == 1:
            metrics["simulation_random_seed"] = self.config.random_seed
        return metrics

    def _fire_event(self, event: str) -> None:
        if event == "training":
            self.trigger_training()
        elif event in INCIDENT_SIZES:
            self.trigger_incident(INCIDENT_SIZES[event])
        else:
            raise ValueError(f"Unknown scheduled event: {event!r}")

    def run(
        self,
        days: int,
        tick_ms: float = 100.0,
        events: Optional[Dict[int, List[str]]] = None,
    ) -> pd.DataFrame:
        """Runs the simulation for a number of simulated days.

        Args:
            days: Number of simulated days to advance.
            tick_ms: Real milliseconds per tick.
            events: Optional {day: ["minor" | "moderate" | "major" | "training"]}
                fired at the start of the given (1-indexed) day.

        Returns:
            A pandas DataFrame with one row of summary metrics per day.
        """
        if self.is_paused:
            raise RuntimeError("Cannot run a paused simulation")
        if tick_ms <= 0:
            raise ValueError(f"tick_ms must be positive: {tick_ms}")
        events = events or {}

        daily_summary_data = []
        for day in range(1, days + 1):
            tasks_before = self._task_counter
            training_before = sum(1 for t in self.tasks.values() if t.is_training)
            for event in events.get(day, []):
                self._fire_event(event)

            completed_today = 0
            day_end = self.clock.elapsed_ms + DAY_MS
            while day_end - self.clock.elapsed_ms > COMPLETION_EPSILON:
                step = min(tick_ms, (day_end - self.clock.elapsed_ms) / self.clock.speed)
                completed_today += len(self.tick(step))

            training_today = (
                sum(1 for t in self.tasks.values() if t.is_training) - training_before
            )
            arrivals_today = self._task_counter - tasks_before - training_today
            daily_summary_data.append(
                self._collect_daily_metrics(day, arrivals_today, completed_today)
            )

        df = pd.DataFrame(daily_summary_data)
        if "simulation_random_seed" in df.columns:
            df["simulation_random_seed"] = df["simulation_random_seed"].ffill()
        return df

    def tasks_frame(self) -> pd.DataFrame:
        columns = [
            "id",
            "severity",
            "state",
            "engineer_id",
            "cost_hours",
            "remaining_hours",
            "was_preempted",
            "is_training",
            "queue_entered_at",
            "completed_at",
            "queue_time_hours",
        ]
        rows = [
            {
                "id": t.id,
                "severity": int(t.severity),
                "state": t.state.name,
                "engineer_id": t.assigned_engineer_id,
                "cost_hours": engine_seconds_to_hours(t.cost),
                "remaining_hours": engine_seconds_to_hours(t.remaining),
                "was_preempted": t.was_preempted,
                "is_training": t.is_training,
                "queue_entered_at": t.queue_entered_at,
                "completed_at": t.completed_at,
                "queue_time_hours": (
                    t.queue_time / HOUR_MS if t.queue_time is not None else None
                ),
            }
            for t in self.tasks.values()
        ]
        return pd.DataFrame(rows, columns=columns)

    def engineers_frame(self) -> pd.DataFrame:
        rows = []
        for e in self.engineers:
            latencies = [t.queue_time for t in e.completed if t.queue_time is not None]
            rows.append(
                {
                    "id": e.id,
                    "name": e.name,
                    "status": e.status,
                    "throughput": e.throughput,
                    "completed": e.completed_count,
                    "pending": e.pending_count,
                    "incoming": e.incoming_count,
                    "training_completed": e.training_completed,
                    "avg_queue_time_hours": (
                        float(np.mean(latencies)) / HOUR_MS if latencies else 0.0
                    ),
                }
            )
        return pd.DataFrame(rows)
