import math
import numbers
from collections.abc import Mapping
from typing import Any, Dict, Iterable, List

import pandas as pd

ZERO_STATS: Dict[str, float] = {'min': 0.0, 'max': 0.0, 'avg': 0.0, 'median': 0.0}


def resolve_field(record: Any, selector: str) -> Any:
    """
    Looks up a flat ('cpu_all') or dotted ('metrics.cpu') selector on a mapping or an object.

    Mappings that already hold the dotted name as a key (flattened DataFrame rows) are read
    directly. Returns None when any step of the path is missing.
    """
    if isinstance(record, Mapping) and selector in record:
        return record[selector]
    value = record
    for part in selector.split('.'):
        if value is None:
            return None
        if isinstance(value, Mapping):
            value = value.get(part)
        else:
            value = getattr(value, part, None)
    return value


def _as_number(value: Any) -> float:
    """Numeric value of a resolved field; anything missing, non-numeric or non-finite counts as 0."""
    if isinstance(value, bool) or value is None:
        return 0.0
    if isinstance(value, numbers.Real):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value)
        except ValueError:
            return 0.0
    else:
        return 0.0
    return number if math.isfinite(number) else 0.0


def get_metric_stats(records: Iterable[Any], selector: str) -> Dict[str, float]:
    """
    Calculates min, max, avg and median of a field across records.

    Unresolvable values are treated as 0 rather than skipped. An empty collection gives
    all-zero stats.
    """
    values = pd.Series([_as_number(resolve_field(record, selector)) for record in records], dtype='float64')
    if values.empty:
        return dict(ZERO_STATS)
    values = values.sort_values(ignore_index=True)
    return {
        'min': float(values.iloc[0]),
        'max': float(values.iloc[-1]),
        'avg': float(values.mean()),
        'median': float(values.median()),
    }


def metric_stats_table(records: Iterable[Any], selectors: Dict[str, str]) -> pd.DataFrame:
    """One row of stats per selector, labelled with the selector's display name."""
    records = list(records)
    rows: List[Dict[str, Any]] = []
    for selector, label in selectors.items():
        rows.append({'metric': label, **get_metric_stats(records, selector)})
    return pd.DataFrame(rows, columns=['metric', 'min', 'max', 'avg', 'median'])
