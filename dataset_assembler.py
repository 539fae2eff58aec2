import math
from typing import Iterable, Optional, Sequence, Tuple

from log_records import (Dataset, OverloadManagerRecord, ParseSummary, RobustStatsRecord, TimeRange,
                         UnrecognizedRecord)


def compute_time_range(*collections: Iterable) -> Optional[TimeRange]:
    """
    Min/max timestamp over all given record collections.

    Empty collections contribute nothing; if no collection has a record the result is None.
    """
    start, end = math.inf, -math.inf
    for records in collections:
        for record in records:
            start = min(start, record.timestamp)
            end = max(end, record.timestamp)
    if start > end:
        return None
    return TimeRange(start=start, end=end)


def partition_overload_records(records: Sequence[OverloadManagerRecord]) -> Tuple[
        Tuple[OverloadManagerRecord, ...], Tuple[OverloadManagerRecord, ...]]:
    """Splits merged records into (candidate targets, main loops); a record may be in both."""
    add_candidate_targets = tuple(record for record in records if record.has_candidate_target())
    process_main_loops = tuple(record for record in records if record.has_main_loop())
    return add_candidate_targets, process_main_loops


def assemble_dataset(robust_stats: Sequence[RobustStatsRecord], overload_manager: Sequence[OverloadManagerRecord],
                     unrecognized: Sequence[UnrecognizedRecord] = (),
                     summary: Optional[ParseSummary] = None) -> Dataset:
    """Packages parsed collections, derived partitions and the overall time range into a Dataset."""
    add_candidate_targets, process_main_loops = partition_overload_records(overload_manager)
    return Dataset(
        robust_stats=tuple(robust_stats),
        overload_manager=tuple(overload_manager),
        add_candidate_targets=add_candidate_targets,
        process_main_loops=process_main_loops,
        unrecognized=tuple(unrecognized),
        time_range=compute_time_range(robust_stats, overload_manager),
        summary=summary or ParseSummary(),
    )
