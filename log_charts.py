import logging
from typing import Any, Dict, List, Optional

import pandas as pd
import plotly.graph_objects as go
from plotly.subplots import make_subplots

from log_dataset import sample_frame

# Chart configurations: one entry per figure, each trace names a frame column.
ROBUST_STATS_CHARTS: Dict[str, Dict[str, Any]] = {
    'cpu': {'title': "CPU Utilization Over Time", 'y_title': "CPU (%)",
            'traces': [{'col': 'cpu_all', 'name': 'CPU %', 'color': '#3182ce'}]},
    'memory': {'title': "Memory Usage Over Time", 'y_title': "RSS (KB)",
               'traces': [{'col': 'mem_rss', 'name': 'Memory RSS', 'color': '#38a169'}]},
    'http': {'title': "HTTP/HTTPS Requests", 'y_title': "Accepts",
             'traces': [{'col': 'http', 'name': 'HTTP', 'color': '#3182ce'},
                        {'col': 'https', 'name': 'HTTPS', 'color': '#805ad5'}]},
    'clients': {'title': "Client Requests", 'y_title': "Requests",
                'traces': [{'col': 'client_in_progress', 'name': 'In Progress', 'color': '#e53e3e'},
                           {'col': 'done', 'name': 'Done', 'color': '#38a169'},
                           {'col': 'websockets_in_progress', 'name': 'WebSockets', 'color': '#ed8936'},
                           {'col': 'fwd_in_progress', 'name': 'Forwarding', 'color': '#667eea'}]},
}

OVERLOAD_CHARTS: Dict[str, Dict[str, Any]] = {
    'decisions': {'title': "OverloadManager Decisions Over Time", 'y_title': "Percent",
                  'traces': [{'col': 'trigger_pct', 'name': 'Trigger %', 'color': '#8884d8'},
                             {'col': 'deny_pct', 'name': 'Deny %', 'color': '#82ca9d'},
                             {'col': 'metrics.cpu', 'name': 'CPU (ms)', 'color': '#ff7300', 'secondary_y': True}]},
    'resources': {'title': "Memory and Requests Over Time", 'y_title': "Memory (KB)",
                  'traces': [{'col': 'metrics.mem', 'name': 'Memory (KB)', 'color': '#8884d8'},
                             {'col': 'metrics.reqs', 'name': 'Requests', 'color': '#82ca9d', 'secondary_y': True}]},
    'run_queue': {'title': "Run Queue and Trigger Value", 'y_title': "Run Queue",
                  'traces': [{'col': 'run_q', 'name': 'Run Queue', 'color': '#3182ce'},
                             {'col': 'trigger_value', 'name': 'Trigger Value', 'color': '#e53e3e',
                              'secondary_y': True}]},
}


# --- Formatting Helpers ---
def format_memory(kilobytes: Optional[float]) -> str:
    """Formats a KB amount as 'x.x MB' or 'x.xx GB'."""
    if kilobytes is None or pd.isna(kilobytes):
        return "N/A"
    megabytes = kilobytes / 1024
    if megabytes >= 1024:
        return f"{megabytes / 1024:.2f} GB"
    return f"{megabytes:.1f} MB"


def format_number(value: Optional[float]) -> str:
    """Formats a count with thousands separators, 'N/A' when missing."""
    if value is None or pd.isna(value):
        return "N/A"
    return f"{value:,.0f}"


# --- Figures ---
def create_time_series_chart(df: pd.DataFrame, chart_config: Dict[str, Any],
                             x_col: str = 'time', show_range_slider: bool = True) -> Optional[go.Figure]:
    """
    Creates a line chart from a chart configuration.

    Traces whose column is missing or entirely empty are skipped; returns None when nothing
    can be plotted. Traces flagged 'secondary_y' go on a right-hand axis.
    """
    if df.empty or x_col not in df.columns:
        return None
    plot_df = sample_frame(df)
    traces: List[Dict[str, Any]] = [tc for tc in chart_config['traces']
                                    if tc['col'] in plot_df.columns and plot_df[tc['col']].notna().any()]
    if not traces:
        logging.debug(f"No plottable columns for chart '{chart_config['title']}'.")
        return None

    has_secondary = any(tc.get('secondary_y') for tc in traces)
    fig = make_subplots(specs=[[{"secondary_y": has_secondary}]])
    for tc in traces:
        fig.add_trace(go.Scatter(x=plot_df[x_col], y=plot_df[tc['col']], name=tc['name'], mode='lines',
                                 line=dict(color=tc['color'])),
                      secondary_y=bool(tc.get('secondary_y')) if has_secondary else None)

    fig.update_layout(title_text=chart_config['title'], hovermode="x unified", legend_title_text='Metric',
                      yaxis=dict(title_text=chart_config['y_title'], rangemode='tozero'))
    if has_secondary:
        secondary_names = ", ".join(tc['name'] for tc in traces if tc.get('secondary_y'))
        fig.update_yaxes(title_text=secondary_names, rangemode='tozero', showgrid=False, secondary_y=True)
    fig.update_xaxes(title_text="Time (UTC)", rangeslider=dict(visible=show_range_slider))
    return fig


def _build_figures(df: pd.DataFrame, chart_configs: Dict[str, Dict[str, Any]],
                   show_range_slider: bool) -> Dict[str, go.Figure]:
    figures: Dict[str, go.Figure] = {}
    for key, chart_config in chart_configs.items():
        fig = create_time_series_chart(df, chart_config, show_range_slider=show_range_slider)
        if fig is not None:
            figures[key] = fig
    return figures


def robust_stats_figures(df: pd.DataFrame, show_range_slider: bool = True) -> Dict[str, go.Figure]:
    """Figures for the robust-stats frame, keyed as in ROBUST_STATS_CHARTS."""
    return _build_figures(df, ROBUST_STATS_CHARTS, show_range_slider)


def overload_figures(df: pd.DataFrame, show_range_slider: bool = True) -> Dict[str, go.Figure]:
    """Figures for the merged OverloadManager frame, keyed as in OVERLOAD_CHARTS."""
    return _build_figures(df, OVERLOAD_CHARTS, show_range_slider)
