import streamlit as st
import numpy as np
import json  # For parameter import/export
import logging
import os  # For file system operations
import altair as alt
import datetime  # For timestamped filenames
from incident_simulator import (
    INCIDENT_SIZES,
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
    severity_distribution_preview,
)
from typing import Dict, List

logging.basicConfig(
    level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s"
)
logger = logging.getLogger(__name__)

CONFIG_DIR = "configs"

SCHEDULED_EVENT_TYPES = ["minor", "moderate", "major", "training"]


def create_config_dir():
    os.makedirs(CONFIG_DIR, exist_ok=True)


create_config_dir()  # Ensure directory exists on script start

if "last_uploaded_file_id" not in st.session_state:
    st.session_state.last_uploaded_file_id = None


def generate_download_filename(base_name: str, extension: str, session_state) -> str:
    """Generates a download filename with optional scenario prefix and timestamp."""
    timestamp_str = datetime.datetime.now().strftime("%Y%m%d_%H%M%S")
    current_sim_name_for_file = session_state.get("current_simulation_name", "").strip()
    sluggified_name = (
        pretty_name_to_filename(current_sim_name_for_file)
        if current_sim_name_for_file
        else ""
    )

    if sluggified_name:
        return f"{sluggified_name}_{base_name}_{timestamp_str}.{extension}"
    else:
        return f"{base_name}_{timestamp_str}.{extension}"


def populate_session_state_from_config(config: SimulationConfig, s_state):
    """Copies a SimulationConfig into the sidebar widgets' session state."""
    s_state.num_engineers = config.num_engineers
    s_state.tasks_per_day = float(config.tasks_per_day)
    s_state.min_complexity_hours = float(config.min_complexity_hours)
    s_state.max_complexity_hours = float(config.max_complexity_hours)
    s_state.time_speed = float(config.time_speed)
    s_state.working_hours = (config.working_start_hour, config.working_end_hour)
    s_state.start_hour = float(config.start_hour)
    s_state.distribution_policy = DistributionPolicy(config.distribution_policy).value
    s_state.travel_seconds = float(config.travel_seconds)
    s_state.throughput_range = (
        float(config.throughput_min),
        float(config.throughput_max),
    )
    s_state.severity_mode = SeverityMode(config.severity.mode).value
    s_state.severity_shift = float(config.severity.shift)
    for level, weight in zip((1, 2, 3, 4), config.severity.weights):
        s_state[f"severity_weight_{level}"] = float(weight)
    s_state.random_seed_str = (
        "" if config.random_seed is None else str(config.random_seed)
    )


def get_config_from_session_state(s_state, random_seed=None) -> SimulationConfig:
    """Builds a validated SimulationConfig from the sidebar widgets."""
    return SimulationConfig(
        num_engineers=s_state.num_engineers,
        tasks_per_day=s_state.tasks_per_day,
        min_complexity_hours=s_state.min_complexity_hours,
        max_complexity_hours=s_state.max_complexity_hours,
        time_speed=s_state.time_speed,
        working_start_hour=s_state.working_hours[0],
        working_end_hour=s_state.working_hours[1],
        start_hour=s_state.start_hour,
        distribution_policy=s_state.distribution_policy,
        travel_seconds=s_state.travel_seconds,
        throughput_min=s_state.throughput_range[0],
        throughput_max=s_state.throughput_range[1],
        severity=SeverityDistributionConfig(
            mode=s_state.severity_mode,
            shift=s_state.severity_shift,
            weights=[s_state[f"severity_weight_{level}"] for level in (1, 2, 3, 4)],
        ),
        random_seed=random_seed,
    ).validate()


def parse_random_seed(seed_input_str: str):
    if not seed_input_str:
        return None
    return int(seed_input_str)


def build_event_schedule(s_state) -> Dict[int, List[str]]:
    """Turns the per-event day selections into {day: [event, ...]}."""
    events: Dict[int, List[str]] = {}
    for event_type in SCHEDULED_EVENT_TYPES:
        for day in s_state.get(f"event_days_{event_type}", []):
            events.setdefault(int(day), []).append(event_type)
    return events


st.set_page_config(layout="wide")

st.title("Incident Dispatch Simulator")


def init_parameter_session_state():
    populate_session_state_from_config(SimulationConfig(), st.session_state)
    defaults = {
        "current_simulation_name": "My Scenario",
        "simulation_days": 5,
        "tick_ms": 100.0,
        "simulation_run": False,
        "final_sim_config": None,
    }
    for event_type in SCHEDULED_EVENT_TYPES:
        defaults[f"event_days_{event_type}"] = []
    for key, val in defaults.items():
        if key not in st.session_state:
            st.session_state[key] = val


if "num_engineers" not in st.session_state:
    init_parameter_session_state()

# --- Sidebar for Parameters ---
st.sidebar.header("Simulation Parameters")

st.sidebar.subheader("Configuration Management")

st.session_state.current_simulation_name = st.sidebar.text_input(
    "Current Scenario Name (Used for Saving Presets):",
    value=st.session_state.get("current_simulation_name", ""),
    key="s_current_simulation_name_input",
)

available_presets = list_preset_configs(CONFIG_DIR)

st.sidebar.markdown("**Load Preset**")
if available_presets:
    selected_preset_pretty_name = st.sidebar.selectbox(
        "Choose a preset to load:",
        options=["None"] + list(available_presets.keys()),
        key="select_preset",
    )
    if selected_preset_pretty_name and selected_preset_pretty_name != "None":
        if st.sidebar.button("Load Selected Preset", key="load_preset_button"):
            file_to_load = available_presets[selected_preset_pretty_name]
            try:
                preset_config = load_config(os.path.join(CONFIG_DIR, file_to_load))
                populate_session_state_from_config(preset_config, st.session_state)
                st.session_state.current_simulation_name = filename_to_pretty_name(
                    file_to_load[:-5]
                )
                logger.info("Loaded preset %s", file_to_load)
                st.sidebar.success(f"Preset '{selected_preset_pretty_name}' loaded!")
                st.rerun()
            except (OSError, json.JSONDecodeError, ConfigurationError) as e:
                st.sidebar.error(f"Error loading preset: {e}")
else:
    st.sidebar.caption("No saved presets found to load.")

# --- Engineers & Arrivals ---
st.sidebar.subheader("Engineers & Arrivals")
st.session_state.num_engineers = st.sidebar.slider(
    "Number of Engineers", 0, 20, st.session_state.num_engineers
)
st.session_state.tasks_per_day = st.sidebar.number_input(
    "Tasks per Simulated Day",
    min_value=0.0,
    max_value=1000.0,
    value=st.session_state.tasks_per_day,
    step=5.0,
)
st.session_state.distribution_policy = st.sidebar.radio(
    "Distribution Policy",
    [p.value for p in DistributionPolicy],
    index=[p.value for p in DistributionPolicy].index(
        st.session_state.distribution_policy
    ),
    help="Round-robin cycles through engineers; least-occupied picks the engineer with the fewest tasks.",
)
st.session_state.throughput_range = st.sidebar.slider(
    "Initial Engineer Throughput (x)",
    0.1,
    3.0,
    st.session_state.throughput_range,
    step=0.1,
)
st.session_state.travel_seconds = st.sidebar.slider(
    "Travel Time to Engineer (s)", 0.0, 10.0, st.session_state.travel_seconds, 0.5
)

# --- Task Complexity ---
st.sidebar.subheader("Task Complexity (Simulated Hours)")
st.session_state.min_complexity_hours = st.sidebar.slider(
    "Min Complexity", 0.0, 24.0, st.session_state.min_complexity_hours, 0.5
)
st.session_state.max_complexity_hours = st.sidebar.slider(
    "Max Complexity", 0.0, 24.0, st.session_state.max_complexity_hours, 0.5
)

# --- Severity Distribution ---
st.sidebar.subheader("Severity Distribution")
st.session_state.severity_mode = st.sidebar.radio(
    "Mode",
    [m.value for m in SeverityMode],
    index=[m.value for m in SeverityMode].index(st.session_state.severity_mode),
    horizontal=True,
)
if st.session_state.severity_mode == SeverityMode.NORMAL.value:
    st.session_state.severity_shift = st.sidebar.slider(
        "Shift Towards Critical",
        -2.0,
        2.0,
        st.session_state.severity_shift,
        0.1,
        help="Positive values produce more critical tasks, negative values more low-severity ones.",
    )
    preview = severity_distribution_preview(
        st.session_state.severity_shift, np.random.default_rng(0)
    )
    st.sidebar.caption(
        " | ".join(f"Sev {level}: {pct}%" for level, pct in preview.items())
    )
else:
    weight_cols = st.sidebar.columns(4)
    for level, col in zip((1, 2, 3, 4), weight_cols):
        st.session_state[f"severity_weight_{level}"] = col.number_input(
            f"Sev {level}",
            min_value=0.0,
            value=st.session_state[f"severity_weight_{level}"],
            step=5.0,
        )
    if sum(st.session_state[f"severity_weight_{level}"] for level in (1, 2, 3, 4)) <= 0:
        st.sidebar.error("At least one severity weight must be positive.")

# --- Clock ---
st.sidebar.subheader("Clock")
st.session_state.working_hours = st.sidebar.slider(
    "Working Hours", 0, 24, st.session_state.working_hours
)
st.session_state.start_hour = st.sidebar.slider(
    "Start Hour", 0.0, 23.5, st.session_state.start_hour, 0.5
)
st.session_state.time_speed = st.sidebar.select_slider(
    "Time Speed",
    options=sorted(
        {0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 20.0, 50.0, st.session_state.time_speed}
    ),
    value=st.session_state.time_speed,
)
st.session_state.tick_ms = st.sidebar.number_input(
    "Tick Length (real ms)",
    min_value=10.0,
    max_value=1000.0,
    value=st.session_state.tick_ms,
    step=10.0,
)

# --- Scheduled Events ---
st.session_state.simulation_days = st.sidebar.slider(
    "Simulation Duration (Days)", 1, 60, st.session_state.simulation_days
)
with st.sidebar.expander("Scheduled Incidents & Training"):
    day_options = list(range(1, st.session_state.simulation_days + 1))
    for event_type in SCHEDULED_EVENT_TYPES:
        label = (
            "Training (all engineers)"
            if event_type == "training"
            else f"{event_type.title()} Incident ({INCIDENT_SIZES[event_type]} Sev1 tasks)"
        )
        st.session_state[f"event_days_{event_type}"] = st.multiselect(
            label,
            options=day_options,
            default=[
                d
                for d in st.session_state[f"event_days_{event_type}"]
                if d in day_options
            ],
            key=f"ms_event_days_{event_type}",
        )

# --- Save / Export ---
st.sidebar.markdown("**Save Current Settings as Preset**")
if st.sidebar.button("Save Current Config as Preset", key="save_preset_button"):
    sim_name_to_save = st.session_state.get("current_simulation_name", "").strip()
    if not sim_name_to_save:
        st.sidebar.warning("Please enter a 'Current Scenario Name' to save the preset.")
    else:
        filename = f"{pretty_name_to_filename(sim_name_to_save)}.json"
        try:
            config_to_save = get_config_from_session_state(
                st.session_state,
                random_seed=parse_random_seed(st.session_state.random_seed_str),
            )
            save_config(config_to_save, os.path.join(CONFIG_DIR, filename))
            logger.info("Saved preset %s", filename)
            st.sidebar.success(f"Preset '{sim_name_to_save}' saved as {filename}!")
        except (OSError, ValueError) as e:
            st.sidebar.error(f"Error saving preset: {e}")

uploaded_config_file = st.sidebar.file_uploader(
    "Upload Configuration JSON", type=["json"], key="config_uploader"
)
if uploaded_config_file is not None:
    current_file_id = uploaded_config_file.file_id
    if current_file_id != st.session_state.get("last_uploaded_file_id"):
        try:
            uploaded_config_file.seek(0)
            uploaded_config = SimulationConfig.from_dict(json.load(uploaded_config_file))
            populate_session_state_from_config(uploaded_config, st.session_state)
            st.session_state.last_uploaded_file_id = current_file_id
            st.sidebar.success("Uploaded configuration loaded!")
        except json.JSONDecodeError:
            st.sidebar.error("Invalid JSON file in uploader.")
            st.session_state.last_uploaded_file_id = None
        except (ConfigurationError, TypeError) as e:
            st.sidebar.error(f"Error loading uploaded config: {e}")
            st.session_state.last_uploaded_file_id = None

try:
    json_export_string = json.dumps(
        get_config_from_session_state(st.session_state).to_dict(), indent=2
    )
    st.sidebar.download_button(
        label="Download Current Configuration JSON",
        data=json_export_string,
        file_name=generate_download_filename(
            "simulation_config", "json", st.session_state
        ),
        mime="application/json",
    )
except ConfigurationError as e:
    st.sidebar.error(f"Current settings are invalid: {e}")

# --- Run Simulation ---
st.sidebar.markdown("---")
st.sidebar.subheader("Run Simulation")

st.session_state.random_seed_str = st.sidebar.text_input(
    "Random Seed (Optional, for deterministic runs):",
    value=st.session_state.get("random_seed_str", ""),
    key="s_random_seed_input",
    help="Enter an integer to make simulation results reproducible. Leave empty for random behavior.",
).strip()

if st.session_state.random_seed_str:
    try:
        int(st.session_state.random_seed_str)
        st.sidebar.success(f"Will run with seed: {st.session_state.random_seed_str}")
    except ValueError:
        st.sidebar.error("Invalid seed - must be an integer")
else:
    st.sidebar.info("Random seed not set - results will vary between runs")

if st.sidebar.button("Run Simulation", key="run_sim_button"):
    st.session_state.simulation_run = False
    st.session_state.final_sim_config = None

    try:
        current_random_seed = parse_random_seed(st.session_state.random_seed_str)
    except ValueError:
        st.sidebar.error(
            f"Invalid Random Seed: '{st.session_state.random_seed_str}'. Running without a fixed seed."
        )
        current_random_seed = None

    try:
        sim_config = get_config_from_session_state(
            st.session_state, random_seed=current_random_seed
        )
    except ConfigurationError as e:
        st.sidebar.error(f"Invalid configuration: {e}")
        sim_config = None

    if sim_config is not None:
        events = build_event_schedule(st.session_state)
        logger.info(
            "Running %d days with %d engineers, events=%s",
            st.session_state.simulation_days,
            sim_config.num_engineers,
            events,
        )
        simulation = Simulation(config=sim_config)
        with st.spinner("Simulating..."):
            df_summary = simulation.run(
                st.session_state.simulation_days,
                tick_ms=st.session_state.tick_ms,
                events=events,
            )
        st.session_state.df_summary = df_summary
        st.session_state.df_tasks = simulation.tasks_frame()
        st.session_state.df_engineers = simulation.engineers_frame()
        st.session_state.final_summary = simulation.summary()
        st.session_state.final_sim_config = sim_config
        st.session_state.simulation_run = True

# --- Results ---
if st.session_state.simulation_run and "df_summary" in st.session_state:
    df_summary = st.session_state.df_summary
    df_tasks = st.session_state.df_tasks
    df_engineers = st.session_state.df_engineers
    final_summary = st.session_state.final_summary
    st.header("Simulation Results")

    final_config = st.session_state.get("final_sim_config")
    if final_config and final_config.random_seed is not None:
        st.success(
            f"Simulation run with Random Seed: **{final_config.random_seed}** (Results are deterministic)"
        )
    else:
        st.info("Simulation run without random seed (Results will vary between runs)")

    overall_sim_name = st.session_state.get("current_simulation_name", "").strip()
    if overall_sim_name:
        st.subheader(f"Results for Scenario: {overall_sim_name}")

    metric_cols = st.columns(4)
    metric_cols[0].metric("Final Clock", final_summary["clock"])
    metric_cols[1].metric("Completed Tasks", final_summary["completed_tasks"])
    metric_cols[2].metric("Active Tasks", final_summary["active_tasks"])
    metric_cols[3].metric("Avg Queue Time", final_summary["avg_queue_time"])

    col1, col2 = st.columns(2)

    with col1:
        st.subheader("Daily Task Flow")
        st.line_chart(df_summary.set_index("day")[["arrivals", "completed"]])

    with col2:
        st.subheader("Queue Status (End of Day)")
        st.line_chart(
            df_summary.set_index("day")[
                ["unassigned_eod", "incoming_eod", "pending_eod", "processing_eod"]
            ]
        )

    col_latency, col_speed = st.columns(2)
    with col_latency:
        st.markdown("**Average Queue Time (Simulated Hours, Cumulative)**")
        st.line_chart(df_summary.set_index("day")["avg_queue_time_hours"])

    with col_speed:
        st.markdown("**Average Engineer Throughput**")
        st.line_chart(df_summary.set_index("day")["avg_throughput"])

    st.subheader("Raw Daily Summary Data")
    st.dataframe(df_summary)
    st.download_button(
        label="Download Daily Summary as CSV",
        data=df_summary.to_csv(index=False).encode("utf-8"),
        file_name=generate_download_filename(
            "daily_simulation_summary", "csv", st.session_state
        ),
        mime="text/csv",
        key="download_daily_summary",
    )

    st.subheader("Queue Latency by Severity")
    completed_tasks = df_tasks[
        (df_tasks["state"] == "COMPLETED") & (~df_tasks["is_training"])
    ]
    if not completed_tasks.empty:
        chart = (
            alt.Chart(completed_tasks)
            .mark_bar(opacity=0.8)
            .encode(
                alt.X(
                    "queue_time_hours:Q",
                    bin=alt.Bin(maxbins=30),
                    title="Queue Time (Simulated Hours)",
                ),
                alt.Y("count()", title="Number of Tasks", stack=True),
                alt.Color("severity:N", title="Severity"),
            )
            .properties(title="Queue-to-Completion Latency Distribution")
        )
        st.altair_chart(chart, use_container_width=True)

        latency_by_severity = (
            completed_tasks.groupby("severity")["queue_time_hours"]
            .agg(["count", "mean", "median", "max"])
            .rename(
                columns={
                    "count": "Tasks",
                    "mean": "Mean (h)",
                    "median": "Median (h)",
                    "max": "Max (h)",
                }
            )
        )
        st.dataframe(latency_by_severity)
    else:
        st.write("No tasks were completed in the simulation.")

    st.subheader("Final State of All Tasks")
    st.dataframe(df_tasks)
    st.download_button(
        label="Download Task States as CSV",
        data=df_tasks.to_csv(index=False).encode("utf-8"),
        file_name=generate_download_filename("task_states", "csv", st.session_state),
        mime="text/csv",
        key="download_task_states",
    )

    st.subheader("Engineer Performance Summary (End of Simulation)")
    if not df_engineers.empty:
        st.dataframe(df_engineers)
        st.download_button(
            label="Download Engineer Summary as CSV",
            data=df_engineers.to_csv(index=False).encode("utf-8"),
            file_name=generate_download_filename(
                "engineer_summary", "csv", st.session_state
            ),
            mime="text/csv",
            key="download_engineer_summary",
        )
        productivity_chart = (
            alt.Chart(df_engineers)
            .mark_bar()
            .encode(
                alt.X("name:N", title="Engineer", sort=None),
                alt.Y("completed:Q", title="Tasks Completed"),
                alt.Color("throughput:Q", title="Throughput"),
            )
            .properties(title="Engineer Output")
        )
        st.altair_chart(productivity_chart, use_container_width=True)
    else:
        st.write("No engineers in this simulation.")

else:
    st.info(
        "Adjust parameters in the sidebar and click 'Run Simulation' to see results."
    )
