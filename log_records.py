from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

# Field names whose presence marks a merged OverloadManager record as carrying each sub-kind.
CANDIDATE_TARGET_MARKER_FIELDS: FrozenSet[str] = frozenset({'trigger_pct', 'deny_pct'})
MAIN_LOOP_MARKER_FIELDS: FrozenSet[str] = frozenset({'run_q', 'trigger_reason'})


class LineKind(str, Enum):
    """Record schema a raw log line belongs to."""
    ROBUST_STATS = "RobustStats"
    OVERLOAD_CANDIDATE_TARGET = "OverloadCandidateTarget"
    OVERLOAD_MAIN_LOOP = "OverloadMainLoop"
    UNRECOGNIZED = "Unrecognized"


@dataclass(frozen=True)
class RawLine:
    """One line of input text and its 0-based position in the buffer."""
    line_number: int
    text: str


@dataclass(frozen=True)
class RobustStatsRecord:
    """One sample of system resource and traffic counters."""
    timestamp: float
    timestamp_formatted: str
    cpu_all: float = 0.0
    cpu_user: float = 0.0
    cpu_sys: float = 0.0
    mem_rss: int = 0  # KB
    mem_vsz: int = 0  # KB
    http: int = 0
    https: int = 0
    client_in_progress: int = 0
    done: int = 0
    websockets_in_progress: int = 0
    fwd_in_progress: int = 0
    present_fields: FrozenSet[str] = frozenset()


@dataclass(frozen=True)
class OverloadMetrics:
    cpu: float = 0.0  # ms
    mem: float = 0.0  # KB
    reqs: float = 0.0


@dataclass(frozen=True)
class OverloadEvent:
    """
    A partial OverloadManager record taken from a single line.

    `fields` only holds values whose pattern actually matched; nested metric values use
    dotted names such as 'metrics.cpu'.
    """
    kind: LineKind
    timestamp: float
    timestamp_formatted: str
    line_number: int
    fields: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class OverloadManagerRecord:
    """Merged view of the candidate-target and main-loop lines logged for one decision."""
    timestamp: float
    timestamp_formatted: str
    rule_name: str = ""
    trigger_pct: float = 0.0
    deny_pct: float = 0.0
    arlid: int = 0
    ehnid: int = 0
    metrics: OverloadMetrics = field(default_factory=OverloadMetrics)
    run_q: float = 0.0
    trigger_reason: str = ""
    trigger_value: float = 0.0
    present_fields: FrozenSet[str] = frozenset()
    source_lines: Tuple[int, ...] = ()

    def has_candidate_target(self) -> bool:
        return bool(self.present_fields & CANDIDATE_TARGET_MARKER_FIELDS)

    def has_main_loop(self) -> bool:
        return bool(self.present_fields & MAIN_LOOP_MARKER_FIELDS)


@dataclass(frozen=True)
class UnrecognizedRecord:
    """Placeholder kept for lines no schema matched when strict parsing is off."""
    timestamp: float
    timestamp_formatted: str
    line_number: int


@dataclass(frozen=True)
class TimeRange:
    start: float
    end: float


@dataclass(frozen=True)
class ParseSummary:
    """Line accounting for one parse; rejected_lines holds one dict per excluded line."""
    total_lines: int = 0
    blank_lines: int = 0
    parsed_lines: int = 0
    unrecognized_lines: int = 0
    rejected_lines: Tuple[Dict[str, Any], ...] = ()

    @property
    def rejected_count(self) -> int:
        return len(self.rejected_lines)


def _dump_factory(items: List[Tuple[str, Any]]) -> Dict[str, Any]:
    """asdict() factory that turns presence sets into sorted lists so the dump is JSON-ready."""
    return {key: sorted(value) if isinstance(value, frozenset) else value for key, value in items}


@dataclass(frozen=True)
class Dataset:
    """Everything parsed from one log buffer. Collections are tuples and must not be mutated."""
    robust_stats: Tuple[RobustStatsRecord, ...] = ()
    overload_manager: Tuple[OverloadManagerRecord, ...] = ()
    add_candidate_targets: Tuple[OverloadManagerRecord, ...] = ()
    process_main_loops: Tuple[OverloadManagerRecord, ...] = ()
    unrecognized: Tuple[UnrecognizedRecord, ...] = ()
    time_range: Optional[TimeRange] = None
    summary: ParseSummary = field(default_factory=ParseSummary)

    def is_empty(self) -> bool:
        return not self.robust_stats and not self.overload_manager

    def to_dict(self) -> Dict[str, Any]:
        """Structural dump of the dataset (used verbatim by the HTML report)."""
        return asdict(self, dict_factory=_dump_factory)
