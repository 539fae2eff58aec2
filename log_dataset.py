import logging
import math
from dataclasses import asdict
from typing import Dict, List, Optional, Sequence, Tuple

import pandas as pd

from log_records import Dataset

MAX_CHART_POINTS: int = 300
# Bookkeeping columns that are not chartable values.
FRAME_DROP_COLUMNS: Tuple[str, ...] = ('present_fields', 'source_lines')


# --- DataFrame Conversion ---
def records_to_frame(records: Sequence) -> pd.DataFrame:
    """
    Converts records to a DataFrame with nested values flattened ('metrics.cpu') and a UTC
    'time' column derived from 'timestamp'.
    """
    if not records:
        return pd.DataFrame()
    df = pd.json_normalize([asdict(record) for record in records])
    df = df.drop(columns=[col for col in FRAME_DROP_COLUMNS if col in df.columns])
    df['time'] = pd.to_datetime(df['timestamp'], unit='s', utc=True)
    return df


def dataset_to_frames(dataset: Dataset) -> Dict[str, pd.DataFrame]:
    """One DataFrame per dataset collection, keyed by collection name."""
    frames = {
        'robust_stats': records_to_frame(dataset.robust_stats),
        'overload_manager': records_to_frame(dataset.overload_manager),
        'add_candidate_targets': records_to_frame(dataset.add_candidate_targets),
        'process_main_loops': records_to_frame(dataset.process_main_loops),
        'unrecognized': records_to_frame(dataset.unrecognized),
    }
    frame_sizes = {name: len(df) for name, df in frames.items()}
    logging.debug(f"Built frames: {frame_sizes}")
    return frames


def sample_frame(df: pd.DataFrame, max_points: int = MAX_CHART_POINTS) -> pd.DataFrame:
    """Keeps every n-th row so that at most about `max_points` rows are plotted."""
    if df.empty or len(df) <= max_points:
        return df
    interval = math.ceil(len(df) / max_points)
    return df.iloc[::interval]


def filter_frame_by_time(df: pd.DataFrame, start: Optional[pd.Timestamp],
                         end: Optional[pd.Timestamp]) -> pd.DataFrame:
    """Rows whose 'time' falls inside [start, end]; missing bounds leave that side open."""
    if df.empty or 'time' not in df.columns:
        return df
    mask = pd.Series(True, index=df.index)
    if start is not None and pd.notna(start):
        mask &= df['time'] >= start
    if end is not None and pd.notna(end):
        mask &= df['time'] <= end
    return df[mask]


def frames_time_bounds(frames: Dict[str, pd.DataFrame], names: List[str]) -> Tuple[
        Optional[pd.Timestamp], Optional[pd.Timestamp]]:
    """Earliest and latest 'time' across the named frames."""
    times = [frames[name]['time'] for name in names if name in frames and 'time' in frames[name].columns]
    if not times:
        return None, None
    combined = pd.concat(times, ignore_index=True).dropna()
    if combined.empty:
        return None, None
    return combined.min(), combined.max()
