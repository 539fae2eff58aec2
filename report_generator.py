import html
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional

import plotly.graph_objects as go

from log_charts import format_memory, format_number, overload_figures, robust_stats_figures
from log_dataset import dataset_to_frames
from log_parser import format_timestamp
from log_records import Dataset
from metric_stats import get_metric_stats

DEFAULT_REPORT_FILENAME: str = 'log-analysis-report.html'
REPORT_DATA_ELEMENT_ID: str = 'report-data'

REPORT_STYLE: str = """
    body { font-family: system-ui, sans-serif; background: #f9fafb; color: #111827; margin: 0; }
    .container { max-width: 1200px; margin: 0 auto; padding: 2rem 1rem; }
    .meta { font-size: 0.875rem; color: #6b7280; }
    .cards { display: flex; gap: 1rem; margin: 1.5rem 0; }
    .stat-card { flex: 1; background: #fff; padding: 1rem; border-radius: 0.5rem; border: 1px solid #f3f4f6; }
    .stat-value { font-size: 1.5rem; font-weight: 600; }
    .stat-label { font-size: 0.875rem; color: #6b7280; }
    .chart-container { background: #fff; border-radius: 0.5rem; padding: 1rem; margin-bottom: 1.5rem; }
"""


@dataclass(frozen=True)
class ReportOptions:
    filename: str = DEFAULT_REPORT_FILENAME
    include_overview: bool = True
    include_robust_stats: bool = True
    include_overload_manager: bool = True


class _FigureRenderer:
    """Renders figures as HTML fragments, inlining plotly.js only into the first one."""

    def __init__(self):
        self._library_included = False

    def render(self, fig: go.Figure) -> str:
        fragment = fig.to_html(full_html=False, include_plotlyjs=not self._library_included)
        self._library_included = True
        return f'<div class="chart-container">{fragment}</div>'


def _stat_card(value: str, label: str) -> str:
    return (f'<div class="stat-card"><div class="stat-value">{html.escape(value)}</div>'
            f'<div class="stat-label">{html.escape(label)}</div></div>')


def _overview_section(dataset: Dataset, figures: Dict[str, go.Figure], renderer: _FigureRenderer) -> str:
    cpu_stats = get_metric_stats(dataset.robust_stats, 'cpu_all')
    mem_stats = get_metric_stats(dataset.robust_stats, 'mem_rss')
    connections = [{'total': record.http + record.https} for record in dataset.robust_stats]
    connection_stats = get_metric_stats(connections, 'total')
    parts = ['<h2>Overview</h2>', '<div class="cards">',
             _stat_card(f"{cpu_stats['avg']:.1f}%", "Average CPU Usage"),
             _stat_card(format_memory(mem_stats['avg']), "Average Memory Usage"),
             _stat_card(format_number(connection_stats['avg']), "Average Connections"),
             _stat_card(format_number(len(dataset.overload_manager)), "OverloadManager Decisions"),
             '</div>']
    if 'cpu' in figures:
        parts.append(renderer.render(figures['cpu']))
    return "\n".join(parts)


def _figures_section(title: str, figures: Dict[str, go.Figure], renderer: _FigureRenderer) -> str:
    if not figures:
        return f'<h2>{html.escape(title)}</h2><p class="meta">No data available.</p>'
    return "\n".join([f'<h2>{html.escape(title)}</h2>'] + [renderer.render(fig) for fig in figures.values()])


def _embedded_data(dataset: Dataset) -> str:
    """JSON dump of the dataset, safe to place inside a <script> element."""
    payload = json.dumps(dataset.to_dict(), separators=(',', ':'))
    return payload.replace('</', '<\\/')


def generate_report(dataset: Dataset, options: Optional[ReportOptions] = None,
                    generated_at: Optional[datetime] = None) -> str:
    """
    Builds a self-contained interactive HTML report for a dataset.

    The plotly library is inlined so the report opens without network access, and the full
    dataset is embedded as JSON in the element with id 'report-data'.

    Raises:
        ValueError: the dataset has no robust-stats or OverloadManager records.
    """
    if dataset is None or dataset.is_empty():
        raise ValueError("No data available to generate report")
    options = options or ReportOptions()
    generated_at = generated_at or datetime.now(timezone.utc)

    frames = dataset_to_frames(dataset)
    renderer = _FigureRenderer()
    robust_figures = robust_stats_figures(frames['robust_stats'], show_range_slider=False)
    sections: List[str] = []
    if options.include_overview:
        sections.append(_overview_section(dataset, robust_figures, renderer))
    if options.include_robust_stats:
        sections.append(_figures_section("Robust Stats", robust_figures, renderer))
    if options.include_overload_manager:
        sections.append(_figures_section(
            "OverloadManager", overload_figures(frames['overload_manager'], show_range_slider=False), renderer))

    time_range_text = "N/A"
    if dataset.time_range is not None:
        time_range_text = (f"{format_timestamp(dataset.time_range.start)} to "
                           f"{format_timestamp(dataset.time_range.end)} UTC")

    logging.info(f"Generated report with {len(sections)} sections for {len(dataset.robust_stats)} robust stats "
                 f"and {len(dataset.overload_manager)} OverloadManager records.")
    return f"""<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="UTF-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
  <title>Log Analysis Report</title>
  <style>{REPORT_STYLE}</style>
</head>
<body>
  <div class="container">
    <h1>Log Analysis Report</h1>
    <div class="meta">
      <p>Generated: {html.escape(generated_at.strftime('%Y-%m-%d %H:%M:%S %Z').strip())}</p>
      <p>Time Range: {html.escape(time_range_text)}</p>
      <p>Total Entries: {len(dataset.robust_stats)} Robust stats, {len(dataset.overload_manager)} OverloadManager</p>
    </div>
    {''.join(sections)}
  </div>
  <script type="application/json" id="{REPORT_DATA_ELEMENT_ID}">{_embedded_data(dataset)}</script>
</body>
</html>
"""
