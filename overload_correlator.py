import bisect
import logging
from dataclasses import replace
from typing import Any, Dict, Iterable, List, Optional

from log_records import OverloadEvent, OverloadManagerRecord

DEFAULT_MERGE_TOLERANCE: float = 0.01  # seconds
# Absorbs float noise so a gap of exactly the tolerance (e.g. 100.00 -> 100.01) still merges.
TOLERANCE_EPSILON: float = 1e-9


def overlay_event(record: OverloadManagerRecord, event: OverloadEvent) -> OverloadManagerRecord:
    """
    Returns a new record with the event's explicitly-present fields written over `record`.

    Fields the event does not carry keep their current value. Dotted names update a single
    attribute of a nested value (e.g. 'metrics.cpu' leaves metrics.mem alone).
    """
    updates: Dict[str, Any] = {}
    nested_updates: Dict[str, Dict[str, Any]] = {}
    for name, value in event.fields.items():
        if '.' in name:
            group, attribute = name.split('.', 1)
            nested_updates.setdefault(group, {})[attribute] = value
        else:
            updates[name] = value
    for group, values in nested_updates.items():
        updates[group] = replace(getattr(record, group), **values)

    return replace(record, **updates,
                   present_fields=record.present_fields | frozenset(event.fields),
                   source_lines=record.source_lines + (event.line_number,))


def seed_record(event: OverloadEvent) -> OverloadManagerRecord:
    """Creates a merged record keyed on the event's timestamp, all other fields defaulted."""
    empty = OverloadManagerRecord(timestamp=event.timestamp, timestamp_formatted=event.timestamp_formatted)
    return overlay_event(empty, event)


def _is_complete(record: OverloadManagerRecord) -> bool:
    return record.has_candidate_target() and record.has_main_loop()


def _find_merge_key(timestamp: float, merged: Dict[float, OverloadManagerRecord], sorted_keys: List[float],
                    insertion_index: Dict[float, int], tolerance: float) -> Optional[float]:
    """
    Exact key first, otherwise the most recently created key within the tolerance window whose
    record still lacks one of the two sub-kinds.
    """
    if timestamp in merged:
        return timestamp
    if tolerance <= 0:
        return None
    window = tolerance + TOLERANCE_EPSILON
    lo = bisect.bisect_left(sorted_keys, timestamp - window)
    hi = bisect.bisect_right(sorted_keys, timestamp + window)
    candidates = [key for key in sorted_keys[lo:hi] if not _is_complete(merged[key])]
    if not candidates:
        return None
    return max(candidates, key=insertion_index.__getitem__)


def correlate_overload_events(events: Iterable[OverloadEvent],
                              tolerance: float = DEFAULT_MERGE_TOLERANCE) -> List[OverloadManagerRecord]:
    """
    Merges candidate-target and main-loop events that describe the same OverloadManager decision.

    Events are keyed on timestamp. An event joins an existing record when its timestamp equals
    that record's key, or else the most recently created record whose key lies within
    `tolerance` and that does not yet hold both sub-kinds; otherwise it starts a new record. Records come back in order of first
    appearance, not sorted by timestamp.

    Args:
        events: Partial events in file order, both sub-kinds interleaved.
        tolerance: Maximum timestamp gap in seconds; 0 merges identical timestamps only.

    Returns:
        The merged records, at most one per key.
    """
    merged: Dict[float, OverloadManagerRecord] = {}
    sorted_keys: List[float] = []
    insertion_index: Dict[float, int] = {}
    event_count = 0

    for event in events:
        event_count += 1
        key = _find_merge_key(event.timestamp, merged, sorted_keys, insertion_index, tolerance)
        if key is None:
            merged[event.timestamp] = seed_record(event)
            bisect.insort(sorted_keys, event.timestamp)
            insertion_index[event.timestamp] = len(insertion_index)
        else:
            merged[key] = overlay_event(merged[key], event)

    logging.debug(f"Correlated {event_count} OverloadManager events into {len(merged)} records.")
    return list(merged.values())
