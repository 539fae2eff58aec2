import logging
import math
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Tuple, Union

from dataset_assembler import assemble_dataset
from log_records import (Dataset, LineKind, OverloadEvent, ParseSummary, RawLine, RobustStatsRecord,
                         UnrecognizedRecord)
from overload_correlator import DEFAULT_MERGE_TOLERANCE, correlate_overload_events

# --- Configuration & Constants ---
FIELD_DELIMITER: str = '|'
TIMESTAMP_DISPLAY_FORMAT: str = '%Y-%m-%d %H:%M:%S'  # Milliseconds are appended separately
CONTENT_PREVIEW_LENGTH: int = 120

# Marker tokens the server embeds in each line family.
ROBUST_STATS_MARKER: str = "Robust - stats"
OVERLOAD_MANAGER_MARKER: str = "crp::OverloadManager"
CANDIDATE_TARGET_MARKERS: Tuple[str, ...] = ("addCandidateTarget", "trigger_pct:")
MAIN_LOOP_MARKERS: Tuple[str, ...] = ("processMainLoop", "runQ:")

_NUM: str = r'(\d+(?:\.\d+)?)'
_SIGNED_NUM: str = r'(-?\d+(?:\.\d+)?)'


class LogFileError(Exception):
    """The whole buffer or upload cannot be parsed; no partial dataset is produced."""


class LineRejectedError(ValueError):
    """A single line cannot be used (its timestamp is missing or invalid)."""


@dataclass(frozen=True)
class ParserConfig:
    """
    Options for parse_log_text.

    strict_parsing drops unrecognized lines; when off they are kept as timestamp-only
    records. merge_tolerance is the widest timestamp gap (seconds) over which OverloadManager
    lines are merged into one record; 0 merges on identical timestamps only.
    """
    strict_parsing: bool = True
    merge_tolerance: float = DEFAULT_MERGE_TOLERANCE

    def __post_init__(self):
        if not math.isfinite(self.merge_tolerance) or self.merge_tolerance < 0:
            raise ValueError(f"merge_tolerance must be a finite, non-negative number, got {self.merge_tolerance!r}")


@dataclass(frozen=True)
class FieldSpec:
    """One extractable field: value is parser(first group of pattern), or default when it does not match."""
    name: str
    pattern: re.Pattern
    parser: Callable[[str], Any]
    default: Any


def _clean_token(value: str) -> str:
    return value.strip().rstrip(',;')


# Field tables: each field is matched independently so one missing marker never costs the whole line.
ROBUST_STATS_FIELDS: Tuple[FieldSpec, ...] = (
    FieldSpec('cpu_all', re.compile(r'CPU: all ' + _NUM + '%'), float, 0.0),
    FieldSpec('cpu_user', re.compile(r'CPU: all [\d.]+% user ' + _NUM + '%'), float, 0.0),
    FieldSpec('cpu_sys', re.compile(r'CPU: all [\d.]+%(?: user [\d.]+%)? sys ' + _NUM + '%'), float, 0.0),
    FieldSpec('mem_rss', re.compile(r'Mem: rss (\d+)'), int, 0),
    FieldSpec('mem_vsz', re.compile(r'Mem: rss \d+ vsz (\d+)'), int, 0),
    FieldSpec('http', re.compile(r'Accepts: http/https (\d+)/'), int, 0),
    FieldSpec('https', re.compile(r'Accepts: http/https \d+/(\d+)'), int, 0),
    FieldSpec('client_in_progress', re.compile(r'client: in-progress (\d+)'), int, 0),
    FieldSpec('done', re.compile(r'client: in-progress \d+ done (\d+)'), int, 0),
    FieldSpec('websockets_in_progress', re.compile(r'websockets: in-progress (\d+)'), int, 0),
    FieldSpec('fwd_in_progress', re.compile(r'fwd: in-progress (\d+)'), int, 0),
)

CANDIDATE_TARGET_FIELDS: Tuple[FieldSpec, ...] = (
    FieldSpec('rule_name', re.compile(r'\brule(?:_?[nN]ame)?[:=]\s*([^\s,;]+)'), _clean_token, ""),
    FieldSpec('trigger_pct', re.compile(r'trigger_pct:\s*' + _NUM + '%'), float, 0.0),
    FieldSpec('deny_pct', re.compile(r'deny_pct:\s*' + _NUM + '%'), float, 0.0),
    FieldSpec('arlid', re.compile(r'\barlid[:=]\s*(\d+)'), int, 0),
    FieldSpec('ehnid', re.compile(r'\behnid[:=]\s*(\d+)'), int, 0),
    FieldSpec('metrics.cpu', re.compile(r'\bcpu=' + _NUM), float, 0.0),
    FieldSpec('metrics.mem', re.compile(r'\bmem=' + _NUM), float, 0.0),
    FieldSpec('metrics.reqs', re.compile(r'\breqs=' + _NUM), float, 0.0),
)

MAIN_LOOP_FIELDS: Tuple[FieldSpec, ...] = (
    FieldSpec('run_q', re.compile(r'\brunQ[:=]\s*' + _NUM), float, 0.0),
    FieldSpec('trigger_reason',
              re.compile(r'\btrigger(?:_?[rR]eason|_?[tT]ype)?[:=]\s*([A-Za-z_][\w.-]*)'), _clean_token, ""),
    FieldSpec('trigger_value', re.compile(r'\b(?:trigger_?[vV]alue|value)[:=]\s*' + _SIGNED_NUM), float, 0.0),
)

FIELD_TABLES: Dict[LineKind, Tuple[FieldSpec, ...]] = {
    LineKind.ROBUST_STATS: ROBUST_STATS_FIELDS,
    LineKind.OVERLOAD_CANDIDATE_TARGET: CANDIDATE_TARGET_FIELDS,
    LineKind.OVERLOAD_MAIN_LOOP: MAIN_LOOP_FIELDS,
}

ParsedRecord = Union[RobustStatsRecord, OverloadEvent, UnrecognizedRecord]


# --- Line Classification & Field Extraction ---
def classify_line(line: str) -> LineKind:
    """Determines the record schema of a raw line from its marker tokens."""
    if ROBUST_STATS_MARKER in line:
        return LineKind.ROBUST_STATS
    if OVERLOAD_MANAGER_MARKER in line:
        if any(marker in line for marker in CANDIDATE_TARGET_MARKERS):
            return LineKind.OVERLOAD_CANDIDATE_TARGET
        if any(marker in line for marker in MAIN_LOOP_MARKERS):
            return LineKind.OVERLOAD_MAIN_LOOP
    return LineKind.UNRECOGNIZED


def parse_timestamp(line: str) -> float:
    """
    Parses the leading epoch-seconds field (text before the first delimiter).

    Raises:
        LineRejectedError: the field is missing, not numeric or not finite.
    """
    raw_value = line.split(FIELD_DELIMITER, 1)[0].strip()
    if not raw_value:
        raise LineRejectedError("missing timestamp")
    try:
        timestamp = float(raw_value)
    except ValueError:
        raise LineRejectedError(f"timestamp is not numeric: {raw_value[:40]!r}") from None
    if not math.isfinite(timestamp):
        raise LineRejectedError(f"timestamp is not finite: {raw_value[:40]!r}")
    return timestamp


def format_timestamp(timestamp: float) -> str:
    """Formats epoch seconds as 'YYYY-MM-DD HH:MM:SS.mmm' in UTC."""
    try:
        dt_val = datetime.fromtimestamp(timestamp, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        raise LineRejectedError(f"timestamp out of range: {timestamp!r}") from None
    return dt_val.strftime(TIMESTAMP_DISPLAY_FORMAT) + '.' + str(dt_val.microsecond // 1000).zfill(3)


def extract_fields(line: str, kind: LineKind) -> Tuple[Dict[str, Any], FrozenSet[str]]:
    """
    Applies the field table of `kind` to a line.

    Returns:
        (values, present): values has an entry for every field of the table, defaulted where
        the pattern did not match; present names the fields that actually matched.
    """
    values: Dict[str, Any] = {}
    present = set()
    for field_spec in FIELD_TABLES.get(kind, ()):
        match = field_spec.pattern.search(line)
        if not match:
            values[field_spec.name] = field_spec.default
            continue
        try:
            values[field_spec.name] = field_spec.parser(match.group(1))
            present.add(field_spec.name)
        except ValueError:
            logging.debug(f"Field '{field_spec.name}' value {match.group(1)!r} could not be parsed, using default.")
            values[field_spec.name] = field_spec.default
    return values, frozenset(present)


# --- Record Building ---
def build_records(raw_line: RawLine, kind: LineKind, timestamp: float, timestamp_formatted: str,
                  values: Dict[str, Any], present: FrozenSet[str], strict_parsing: bool = True) -> List[ParsedRecord]:
    """Turns one classified, extracted line into zero or one intermediate records."""
    if kind == LineKind.ROBUST_STATS:
        return [RobustStatsRecord(timestamp=timestamp, timestamp_formatted=timestamp_formatted,
                                  present_fields=present, **values)]
    if kind in (LineKind.OVERLOAD_CANDIDATE_TARGET, LineKind.OVERLOAD_MAIN_LOOP):
        explicit_fields = {name: values[name] for name in values if name in present}
        return [OverloadEvent(kind=kind, timestamp=timestamp, timestamp_formatted=timestamp_formatted,
                              line_number=raw_line.line_number, fields=explicit_fields)]
    if not strict_parsing:
        return [UnrecognizedRecord(timestamp=timestamp, timestamp_formatted=timestamp_formatted,
                                   line_number=raw_line.line_number)]
    return []


def parse_line(raw_line: RawLine, config: ParserConfig) -> Tuple[LineKind, List[ParsedRecord]]:
    """
    Runs one line through timestamp parsing, classification, extraction and building.

    Raises:
        LineRejectedError: the line has no usable timestamp.
    """
    timestamp = parse_timestamp(raw_line.text)
    timestamp_formatted = format_timestamp(timestamp)
    kind = classify_line(raw_line.text)
    values, present = extract_fields(raw_line.text, kind)
    return kind, build_records(raw_line, kind, timestamp, timestamp_formatted, values, present,
                               strict_parsing=config.strict_parsing)


def split_log_lines(text: str) -> List[str]:
    """
    Splits a buffer on '\\n' only, dropping a trailing '\\r' from each line.

    Other Unicode line separators (form feed, U+2028, ...) stay part of the line text.
    A final newline does not start an extra empty line.
    """
    lines = [line[:-1] if line.endswith('\r') else line for line in text.split('\n')]
    if lines and lines[-1] == '':
        lines.pop()
    return lines


def _rejection(raw_line: RawLine, reason: str) -> Dict[str, Any]:
    return {'line_number': raw_line.line_number, 'reason': reason,
            'content_preview': raw_line.text[:CONTENT_PREVIEW_LENGTH]}


# --- Main Entry Point ---
def parse_log_text(text: str, config: Optional[ParserConfig] = None) -> Dataset:
    """
    Parses an in-memory log buffer into a Dataset.

    A bad line is recorded in the summary and skipped; it never stops the parse. Blank
    lines are ignored. A buffer without a single usable line yields an empty Dataset.

    Args:
        text: The decoded log contents.
        config: Parser options; defaults to ParserConfig().

    Raises:
        LogFileError: `text` is not a string.
    """
    if not isinstance(text, str):
        raise LogFileError(f"expected decoded text, got {type(text).__name__}")
    config = config or ParserConfig()

    robust_stats: List[RobustStatsRecord] = []
    overload_events: List[OverloadEvent] = []
    unrecognized: List[UnrecognizedRecord] = []
    rejected_lines: List[Dict[str, Any]] = []
    total_lines = blank_lines = parsed_lines = unrecognized_lines = 0

    for line_number, text_line in enumerate(split_log_lines(text)):
        total_lines += 1
        if not text_line.strip():
            blank_lines += 1
            continue
        raw_line = RawLine(line_number, text_line)
        try:
            kind, records = parse_line(raw_line, config)
        except LineRejectedError as e:
            logging.debug(f"Skipping line {line_number}: {e}")
            rejected_lines.append(_rejection(raw_line, str(e)))
            continue
        except Exception as e:
            logging.error(f"Unexpected error parsing line {line_number}: {e}", exc_info=True)
            rejected_lines.append(_rejection(raw_line, f"unexpected error: {e}"))
            continue

        parsed_lines += 1
        if kind == LineKind.UNRECOGNIZED:
            unrecognized_lines += 1
        for record in records:
            if isinstance(record, RobustStatsRecord):
                robust_stats.append(record)
            elif isinstance(record, OverloadEvent):
                overload_events.append(record)
            else:
                unrecognized.append(record)

    overload_manager = correlate_overload_events(overload_events, tolerance=config.merge_tolerance)
    summary = ParseSummary(total_lines=total_lines, blank_lines=blank_lines, parsed_lines=parsed_lines,
                           unrecognized_lines=unrecognized_lines, rejected_lines=tuple(rejected_lines))
    logging.info(f"Parsed {parsed_lines} of {total_lines} lines: {len(robust_stats)} robust stats, "
                 f"{len(overload_events)} OverloadManager lines merged into {len(overload_manager)} records, "
                 f"{len(rejected_lines)} rejected.")
    return assemble_dataset(robust_stats, overload_manager, unrecognized=unrecognized, summary=summary)
