import logging
from typing import Any, Dict, Optional, Tuple, Union

import pandas as pd
import plotly.graph_objects as go
import streamlit as st

from log_charts import format_memory, format_number, overload_figures, robust_stats_figures
from log_dataset import dataset_to_frames, filter_frame_by_time, frames_time_bounds
from log_loader import DEFAULT_ALLOWED_FILE_TYPES, DEFAULT_MAX_FILE_SIZE, UploadPolicy, load_log_file
from log_parser import LogFileError, ParserConfig, format_timestamp
from log_records import Dataset
from metric_stats import get_metric_stats, metric_stats_table
from overload_correlator import DEFAULT_MERGE_TOLERANCE
from report_generator import DEFAULT_REPORT_FILENAME, ReportOptions, generate_report

# --- Configuration & Constants ---
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')

DATETIME_TABLE_DISPLAY_FORMAT: str = "YYYY-MM-DD HH:mm:ss.SSS"  # For st.column_config
UNKNOWN_ROWS_PREVIEW_LIMIT: int = 50

ROBUST_STATS_SELECTORS: Dict[str, str] = {
    'cpu_all': 'CPU (%)', 'cpu_user': 'CPU user (%)', 'cpu_sys': 'CPU sys (%)', 'mem_rss': 'Memory RSS (KB)',
    'http': 'HTTP', 'https': 'HTTPS', 'client_in_progress': 'Clients in progress', 'done': 'Done',
    'websockets_in_progress': 'WebSockets in progress', 'fwd_in_progress': 'Forwarding in progress',
}
OVERLOAD_SELECTORS: Dict[str, str] = {
    'trigger_pct': 'Trigger %', 'deny_pct': 'Deny %', 'run_q': 'Run queue', 'trigger_value': 'Trigger value',
    'metrics.cpu': 'CPU (ms)', 'metrics.mem': 'Memory (KB)', 'metrics.reqs': 'Requests',
}
OVERLOAD_TABLE_CONFIG: Dict[str, Any] = {
    "time": st.column_config.DatetimeColumn("Timestamp", format=DATETIME_TABLE_DISPLAY_FORMAT),
    "rule_name": "Rule Name", "trigger_reason": "Triggered By",
    "trigger_value": st.column_config.NumberColumn("Trigger Value", format="%.2f"),
    "trigger_pct": st.column_config.NumberColumn("Trigger %", format="%.2f"),
    "deny_pct": st.column_config.NumberColumn("Deny %", format="%.2f"),
    "run_q": st.column_config.NumberColumn("Run Queue", format="%.2f"),
    "arlid": "ARLID", "ehnid": "EHNID",
    "metrics.cpu": st.column_config.NumberColumn("CPU (ms)", format="%d"),
    "metrics.mem": st.column_config.NumberColumn("Memory (KB)", format="%d"),
    "metrics.reqs": st.column_config.NumberColumn("Requests", format="%d"),
}


# --- File Handling and Parsing ---
@st.cache_data
def load_and_parse_log(filename: str, data: bytes, strict_parsing: bool, merge_tolerance: float) -> Dataset:
    """Cached wrapper around load_log_file; settings are plain arguments so they key the cache."""
    policy = UploadPolicy(max_file_size=DEFAULT_MAX_FILE_SIZE, allowed_file_types=DEFAULT_ALLOWED_FILE_TYPES)
    config = ParserConfig(strict_parsing=strict_parsing, merge_tolerance=merge_tolerance)
    return load_log_file(filename, data, policy=policy, parser_config=config)


# --- Visualization & UI Helper Functions ---
def _plot(fig: Optional[go.Figure], empty_message: str):
    if fig is None:
        st.info(empty_message)
    else:
        st.plotly_chart(fig, use_container_width=True)


def _create_sidebar_numeric_filter(df: pd.DataFrame, column_name: str, label: str,
                                   default_value: Union[int, float] = 0.0,
                                   help_text: Optional[str] = None) -> float:
    """
    Creates a numeric slider in the sidebar for filtering a DataFrame column.

    Returns the selected minimum, or default_value when the column has no usable data.
    """
    if column_name not in df.columns or df[column_name].dropna().empty:
        st.sidebar.caption(f"{label.split(':')[0]} filter unavailable (column missing or no data).")
        return default_value
    numeric_series = pd.to_numeric(df[column_name], errors='coerce').dropna()
    if numeric_series.empty:
        st.sidebar.caption(f"{label.split(':')[0]} filter unavailable (no valid numeric data).")
        return default_value

    min_val, max_val = float(numeric_series.min()), float(numeric_series.max())
    if min_val >= max_val:
        max_val = min_val + 1.0
    step_val = max(0.01, (max_val - min_val) / 100.0)
    return st.sidebar.slider(label, min_value=min_val, max_value=max_val, value=min_val, step=step_val,
                             help=help_text)


def _display_top_n_or_all_table(df_source: pd.DataFrame, sort_column: str, top_n_value: int, checkbox_label: str,
                                checkbox_key: str, columns_to_show_config: Dict[str, Any], table_caption_noun: str):
    """Displays a DataFrame sorted by `sort_column`, showing the top N rows unless the checkbox asks for all."""
    if df_source.empty:
        st.info(f"No {table_caption_noun} to display based on current filters.")
        return
    final_columns = [col for col in columns_to_show_config if col in df_source.columns]
    if sort_column not in df_source.columns:
        st.warning(f"Cannot sort {table_caption_noun}: column '{sort_column}' is missing.")
        st.dataframe(df_source[final_columns], column_config=columns_to_show_config, hide_index=True,
                     use_container_width=True)
        return
    show_all = st.checkbox(checkbox_label, key=checkbox_key, value=False)
    sorted_df = df_source.sort_values(sort_column, ascending=False, na_position='last')
    data_to_display = sorted_df if show_all else sorted_df.head(top_n_value)
    st.dataframe(data_to_display[final_columns], column_config=columns_to_show_config, hide_index=True,
                 use_container_width=True)
    st.caption(f"Showing {len(data_to_display)} of {len(df_source)} {table_caption_noun}. "
               f"{'(All shown)' if show_all else '(Top N shown)'}")


# --- Streamlit App UI Structure Functions ---
def _setup_parser_settings() -> Tuple[bool, float]:
    st.sidebar.header("Parser Settings")
    strict_parsing = st.sidebar.checkbox(
        "Strict parsing", value=True,
        help="Drop lines that match no known format. Untick to keep them as timestamp-only entries.")
    merge_tolerance = st.sidebar.number_input(
        "Merge tolerance (s):", min_value=0.0, max_value=1.0, value=DEFAULT_MERGE_TOLERANCE, step=0.005,
        format="%.3f", help="OverloadManager lines this close in time are merged into one decision. 0 = exact match.")
    return strict_parsing, float(merge_tolerance)


def _setup_sidebar_filters(frames: Dict[str, pd.DataFrame]) -> Tuple[Any, int, float]:
    """Sets up and returns values from all sidebar filters."""
    st.sidebar.header("Filters")
    time_min, time_max = frames_time_bounds(frames, ['robust_stats', 'overload_manager'])
    time_range_val = (time_min, time_max)
    if time_min is not None and time_max is not None and time_min < time_max:
        # Slider works on naive datetimes; values are UTC.
        slider_min = time_min.tz_localize(None).to_pydatetime()
        slider_max = time_max.tz_localize(None).to_pydatetime()
        try:
            time_range_val = st.sidebar.slider(
                "Time Range (UTC):",
                min_value=slider_min,
                max_value=slider_max,
                value=(slider_min, slider_max),
                format="YYYY-MM-DD HH:mm:ss"
            )
        except Exception as e:
            logging.error(f"Time slider error: {e}", exc_info=True)
            st.sidebar.error(f"Time slider error: {e}")
    else:
        st.sidebar.warning("Time range filter disabled: not enough timestamped data.")

    top_n = st.sidebar.slider("Top N decisions (by Deny %):", 1, 100, 20,
                              help="Number of OverloadManager decisions to show in the table.")
    min_deny_pct = _create_sidebar_numeric_filter(frames['overload_manager'], 'deny_pct', "Min Deny %:", 0.0,
                                                  help_text="Hide OverloadManager decisions below this deny %.")
    return time_range_val, top_n, min_deny_pct


def _apply_filters(frames: Dict[str, pd.DataFrame], time_range: Tuple[Any, Any],
                   min_deny_pct: float) -> Dict[str, pd.DataFrame]:
    """Applies the time window to every frame and the deny threshold to OverloadManager frames."""
    start, end = (pd.to_datetime(value, utc=True, errors='coerce') if value is not None else None
                  for value in time_range)
    filtered = {name: filter_frame_by_time(df, start, end) for name, df in frames.items()}
    for name in ('overload_manager', 'add_candidate_targets', 'process_main_loops'):
        df = filtered[name]
        if not df.empty and 'deny_pct' in df.columns:
            filtered[name] = df[df['deny_pct'].fillna(0) >= min_deny_pct]
    return filtered


def _overload_decision_caption(frames: Dict[str, pd.DataFrame]) -> str:
    return (f"{len(frames['add_candidate_targets'])} candidate targets | "
            f"{len(frames['process_main_loops'])} main loops")


def _display_overview(frames: Dict[str, pd.DataFrame]):
    st.header("System Overview")
    stats_df = frames['robust_stats']
    if stats_df.empty:
        st.info("No Robust stats data available.")
        return
    records = stats_df.to_dict('records')
    last = records[-1]
    cpu_stats = get_metric_stats(records, 'cpu_all')
    mem_stats = get_metric_stats(records, 'mem_rss')
    https_stats = get_metric_stats(records, 'https')

    col1, col2, col3, col4 = st.columns(4)
    col1.metric("CPU Usage", f"{last['cpu_all']}%")
    col1.caption(f"Avg: {cpu_stats['avg']:.1f}% | Min: {cpu_stats['min']:g}% | Max: {cpu_stats['max']:g}%")
    col2.metric("Memory (RSS)", format_memory(last['mem_rss']))
    col2.caption(f"Avg: {format_memory(mem_stats['avg'])} | Max: {format_memory(mem_stats['max'])}")
    col3.metric("HTTPS Requests", format_number(last['https']))
    col3.caption(f"Avg: {https_stats['avg']:.0f} | Max: {format_number(https_stats['max'])}")
    col4.metric("OverloadManager Decisions", format_number(len(frames['overload_manager'])))
    col4.caption(_overload_decision_caption(frames))

    figures = robust_stats_figures(stats_df)
    left, right = st.columns(2)
    with left:
        _plot(figures.get('cpu'), "No CPU data.")
        _plot(figures.get('http'), "No HTTP data.")
    with right:
        _plot(figures.get('memory'), "No memory data.")
        _plot(figures.get('clients'), "No client data.")


def _display_robust_stats(frames: Dict[str, pd.DataFrame]):
    st.header("Robust Stats")
    stats_df = frames['robust_stats']
    if stats_df.empty:
        st.info("No Robust stats data available.")
        return
    st.subheader("Metric Summary")
    st.dataframe(metric_stats_table(stats_df.to_dict('records'), ROBUST_STATS_SELECTORS), hide_index=True,
                 use_container_width=True)
    for fig in robust_stats_figures(stats_df).values():
        st.plotly_chart(fig, use_container_width=True)
    with st.expander("Show Raw Robust Stats"):
        st.dataframe(stats_df, hide_index=True, use_container_width=True)


def _display_overload_manager(frames: Dict[str, pd.DataFrame], top_n: int):
    st.header("OverloadManager Analysis")
    overload_df = frames['overload_manager']
    if overload_df.empty:
        st.info("No OverloadManager data available.")
        return
    st.subheader("Metric Summary")
    st.dataframe(metric_stats_table(overload_df.to_dict('records'), OVERLOAD_SELECTORS), hide_index=True,
                 use_container_width=True)
    st.subheader("Decisions")
    _display_top_n_or_all_table(overload_df, 'deny_pct', top_n, "Show all decisions", "cb_all_decisions",
                                OVERLOAD_TABLE_CONFIG, "decisions")
    for fig in overload_figures(overload_df).values():
        st.plotly_chart(fig, use_container_width=True)


def _display_report_export(dataset: Dataset):
    st.header("Interactive Report")
    st.caption("Generate a self-contained HTML report with interactive charts for sharing or embedding.")
    filename = st.text_input("Filename", value=DEFAULT_REPORT_FILENAME)
    col1, col2, col3 = st.columns(3)
    options = ReportOptions(
        filename=filename or DEFAULT_REPORT_FILENAME,
        include_overview=col1.checkbox("Include Overview", value=True),
        include_robust_stats=col2.checkbox("Include Robust Stats", value=True),
        include_overload_manager=col3.checkbox("Include Overload Manager", value=True),
    )
    if st.button("Generate HTML Report", disabled=dataset.is_empty()):
        try:
            report_html = generate_report(dataset, options)
        except ValueError as e:
            st.error(str(e))
            return
        st.download_button("Download report", data=report_html, file_name=options.filename, mime="text/html")


def _display_parse_problems(dataset: Dataset, frames: Dict[str, pd.DataFrame]):
    summary = dataset.summary
    if summary.rejected_lines:
        with st.expander(f"Rejected Lines Encountered During Parsing ({summary.rejected_count})"):
            st.json(list(summary.rejected_lines[:UNKNOWN_ROWS_PREVIEW_LIMIT]))
            if summary.rejected_count > UNKNOWN_ROWS_PREVIEW_LIMIT:
                st.caption(f"(Showing first {UNKNOWN_ROWS_PREVIEW_LIMIT})")
    if not frames['unrecognized'].empty:
        with st.expander(f"Unrecognized Lines ({len(frames['unrecognized'])})"):
            st.dataframe(frames['unrecognized'], hide_index=True, use_container_width=True)


# --- Main Application ---
def main():
    """Main function to run the Streamlit application."""
    st.set_page_config(layout="wide", page_title="System Log Analyzer", initial_sidebar_state="expanded")
    st.title("System Log Analyzer")

    strict_parsing, merge_tolerance = _setup_parser_settings()
    uploaded_file = st.file_uploader(
        "Upload a server log file (.log, .txt or gzip-compressed .gz)",
        type=[extension.lstrip('.') for extension in DEFAULT_ALLOWED_FILE_TYPES],
    )
    if not uploaded_file:
        st.info("Please upload a log file to begin analysis.")
        return

    with st.spinner("Loading and analyzing log data..."):
        try:
            dataset = load_and_parse_log(uploaded_file.name, uploaded_file.getvalue(), strict_parsing,
                                         merge_tolerance)
        except LogFileError as e:
            logging.error(f"Log file rejected: {e}")
            st.error(f"Failed to parse log file: {e}")
            st.stop()
    frames = dataset_to_frames(dataset)

    if dataset.time_range is not None:
        st.caption(f"{format_timestamp(dataset.time_range.start)} to {format_timestamp(dataset.time_range.end)} UTC "
                   f"| {len(dataset.robust_stats)} Robust stats, {len(dataset.overload_manager)} OverloadManager "
                   f"entries | {dataset.summary.rejected_count} rejected lines")
    else:
        st.warning("No Robust stats or OverloadManager entries were found in this file.")

    time_range, top_n, min_deny_pct = _setup_sidebar_filters(frames)
    filtered_frames = _apply_filters(frames, time_range, min_deny_pct)

    overview_tab, robust_tab, overload_tab, report_tab = st.tabs(
        ["Overview", "Robust Stats", "OverloadManager", "Report"])
    with overview_tab:
        _display_overview(filtered_frames)
    with robust_tab:
        _display_robust_stats(filtered_frames)
    with overload_tab:
        _display_overload_manager(filtered_frames, top_n)
    with report_tab:
        _display_report_export(dataset)

    st.divider()
    _display_parse_problems(dataset, frames)


if __name__ == "__main__":
    main()
