"""Tests for line classification, field extraction and the parse entry point."""

import pytest

import log_parser
from conftest import CANDIDATE_LINE, MAIN_LOOP_LINE, ROBUST_LINE, UNRECOGNIZED_LINE
from log_parser import (LineRejectedError, LogFileError, ParserConfig, build_records, classify_line,
                        extract_fields, format_timestamp, parse_log_text, parse_timestamp,
                        split_log_lines)
from log_records import LineKind, OverloadEvent, RawLine, RobustStatsRecord, UnrecognizedRecord


class TestClassifyLine:
    def test_robust_stats(self):
        assert classify_line(ROBUST_LINE) == LineKind.ROBUST_STATS

    def test_candidate_target(self):
        assert classify_line(CANDIDATE_LINE) == LineKind.OVERLOAD_CANDIDATE_TARGET

    def test_candidate_target_by_trigger_pct_marker(self):
        line = "1.0|crp::OverloadManager rule: mem trigger_pct:10.0%"
        assert classify_line(line) == LineKind.OVERLOAD_CANDIDATE_TARGET

    def test_main_loop(self):
        assert classify_line(MAIN_LOOP_LINE) == LineKind.OVERLOAD_MAIN_LOOP

    def test_main_loop_by_run_queue_marker(self):
        assert classify_line("1.0|crp::OverloadManager runQ:0.5") == LineKind.OVERLOAD_MAIN_LOOP

    def test_overload_manager_line_without_sub_kind_marker(self):
        assert classify_line("1.0|crp::OverloadManager::init started") == LineKind.UNRECOGNIZED

    def test_unrecognized(self):
        assert classify_line(UNRECOGNIZED_LINE) == LineKind.UNRECOGNIZED


class TestParseTimestamp:
    def test_leading_field(self):
        assert parse_timestamp("1700000000.250|anything") == 1700000000.25

    def test_line_without_delimiter_is_whole_field(self):
        assert parse_timestamp("42") == 42.0

    @pytest.mark.parametrize("line", ["abc|Robust - stats", "|Robust - stats", "nan|x", "inf|x", "   |x"])
    def test_invalid_timestamps_rejected(self, line):
        with pytest.raises(LineRejectedError):
            parse_timestamp(line)

    def test_format_timestamp_is_utc_with_milliseconds(self):
        assert format_timestamp(0) == "1970-01-01 00:00:00.000"
        assert format_timestamp(1700000000.123) == "2023-11-14 22:13:20.123"

    def test_format_timestamp_out_of_range(self):
        with pytest.raises(LineRejectedError):
            format_timestamp(1e20)


class TestExtractFields:
    def test_robust_stats_fields(self):
        values, present = extract_fields(ROBUST_LINE, LineKind.ROBUST_STATS)
        assert values == {
            'cpu_all': 45.5, 'cpu_user': 30.0, 'cpu_sys': 15.5, 'mem_rss': 1048576, 'mem_vsz': 2097152,
            'http': 120, 'https': 340, 'client_in_progress': 12, 'done': 450,
            'websockets_in_progress': 3, 'fwd_in_progress': 7,
        }
        assert present == frozenset(values)

    def test_missing_field_defaults_and_is_not_present(self):
        line = "10|Robust - stats CPU: all 5% client: in-progress 2 done 9"
        values, present = extract_fields(line, LineKind.ROBUST_STATS)
        assert values['https'] == 0
        assert values['cpu_all'] == 5.0
        assert 'https' not in present
        assert 'client_in_progress' in present

    def test_candidate_target_fields(self):
        values, present = extract_fields(CANDIDATE_LINE, LineKind.OVERLOAD_CANDIDATE_TARGET)
        assert values['rule_name'] == 'cpu_high'
        assert values['trigger_pct'] == 75.0
        assert values['deny_pct'] == 12.5
        assert values['arlid'] == 1234
        assert values['ehnid'] == 56
        assert values['metrics.cpu'] == 850.0
        assert values['metrics.mem'] == 204800.0
        assert values['metrics.reqs'] == 1500.0
        assert len(present) == 8

    def test_rule_name_alias(self):
        values, _ = extract_fields("1|crp::OverloadManager ruleName=mem_guard, trigger_pct:1%",
                                   LineKind.OVERLOAD_CANDIDATE_TARGET)
        assert values['rule_name'] == 'mem_guard'

    def test_main_loop_fields(self):
        values, present = extract_fields(MAIN_LOOP_LINE, LineKind.OVERLOAD_MAIN_LOOP)
        assert values == {'run_q': 2.5, 'trigger_reason': 'cpu', 'trigger_value': 91.5}
        assert present == frozenset(values)

    def test_unrecognized_has_no_fields(self):
        assert extract_fields(UNRECOGNIZED_LINE, LineKind.UNRECOGNIZED) == ({}, frozenset())


class TestBuildRecords:
    def test_robust_stats_record(self):
        values, present = extract_fields(ROBUST_LINE, LineKind.ROBUST_STATS)
        records = build_records(RawLine(0, ROBUST_LINE), LineKind.ROBUST_STATS, 1700000000.0,
                                "2023-11-14 22:13:20.000", values, present)
        assert len(records) == 1
        assert isinstance(records[0], RobustStatsRecord)
        assert records[0].https == 340

    def test_overload_event_carries_only_present_fields(self):
        line = "5|crp::OverloadManager::addCandidateTarget trigger_pct:50.0%"
        values, present = extract_fields(line, LineKind.OVERLOAD_CANDIDATE_TARGET)
        (event,) = build_records(RawLine(3, line), LineKind.OVERLOAD_CANDIDATE_TARGET, 5.0, "", values, present)
        assert isinstance(event, OverloadEvent)
        assert event.fields == {'trigger_pct': 50.0}
        assert event.line_number == 3

    def test_unrecognized_strict_yields_nothing(self):
        assert build_records(RawLine(0, UNRECOGNIZED_LINE), LineKind.UNRECOGNIZED, 1.0, "", {}, frozenset()) == []

    def test_unrecognized_lenient_yields_minimal_record(self):
        records = build_records(RawLine(4, UNRECOGNIZED_LINE), LineKind.UNRECOGNIZED, 1.0, "x", {}, frozenset(),
                                strict_parsing=False)
        assert records == [UnrecognizedRecord(timestamp=1.0, timestamp_formatted="x", line_number=4)]


class TestParseLogText:
    def test_sample_buffer(self, sample_dataset):
        assert len(sample_dataset.robust_stats) == 2
        assert len(sample_dataset.overload_manager) == 2
        assert sample_dataset.unrecognized == ()
        summary = sample_dataset.summary
        assert summary.total_lines == 7
        assert summary.blank_lines == 1
        assert summary.parsed_lines == 6
        assert summary.unrecognized_lines == 1
        assert summary.rejected_count == 0

    def test_candidate_and_main_loop_lines_merge(self, sample_dataset):
        merged = sample_dataset.overload_manager[0]
        assert merged.timestamp == 1700000000.1
        assert merged.trigger_pct == 75.0
        assert merged.run_q == 2.5
        assert merged.trigger_reason == 'cpu'
        assert merged.source_lines == (1, 2)

    def test_parsing_is_idempotent(self, sample_log_text):
        assert parse_log_text(sample_log_text) == parse_log_text(sample_log_text)

    def test_bad_timestamp_excluded_without_aborting(self):
        text = "\n".join(["garbage|Robust - stats CPU: all 1%", ROBUST_LINE])
        dataset = parse_log_text(text)
        assert len(dataset.robust_stats) == 1
        (rejected,) = dataset.summary.rejected_lines
        assert rejected['line_number'] == 0
        assert rejected['content_preview'].startswith("garbage")

    def test_missing_https_marker_keeps_record(self):
        dataset = parse_log_text("100|Robust - stats CPU: all 12% Mem: rss 2048 client: in-progress 1 done 2")
        (record,) = dataset.robust_stats
        assert record.https == 0
        assert record.cpu_all == 12.0

    def test_empty_input_gives_empty_dataset(self):
        dataset = parse_log_text("")
        assert dataset.robust_stats == ()
        assert dataset.overload_manager == ()
        assert dataset.time_range is None

    def test_only_invalid_lines_gives_empty_dataset(self):
        dataset = parse_log_text("not a log\nstill not\n")
        assert dataset.is_empty()
        assert dataset.time_range is None
        assert dataset.summary.rejected_count == 2

    def test_lenient_parsing_keeps_unrecognized_lines(self, sample_log_text):
        dataset = parse_log_text(sample_log_text, ParserConfig(strict_parsing=False))
        (record,) = dataset.unrecognized
        assert record.line_number == 3
        assert record.timestamp == 1700000000.2

    def test_exact_merge_policy(self, sample_log_text):
        dataset = parse_log_text(sample_log_text, ParserConfig(merge_tolerance=0))
        assert len(dataset.overload_manager) == 3

    def test_unexpected_line_error_does_not_abort(self, monkeypatch):
        original = log_parser.classify_line

        def flaky_classify(line):
            if "boom" in line:
                raise RuntimeError("boom")
            return original(line)

        monkeypatch.setattr(log_parser, "classify_line", flaky_classify)
        dataset = parse_log_text("\n".join(["1|boom", ROBUST_LINE]))
        assert len(dataset.robust_stats) == 1
        assert dataset.summary.rejected_lines[0]['reason'] == "unexpected error: boom"

    @pytest.mark.parametrize("buffer", [b"1|Robust - stats", None])
    def test_non_text_input_raises(self, buffer):
        with pytest.raises(LogFileError):
            parse_log_text(buffer)

    def test_negative_tolerance_rejected(self):
        with pytest.raises(ValueError):
            ParserConfig(merge_tolerance=-0.1)

    @pytest.mark.parametrize("separator", ["\x0c", "\x0b", "\x1e", "\x85", "\u2028", "\u2029"])
    def test_only_newline_separates_lines(self, separator):
        text = (f"100|Robust - stats CPU: all 5% note{separator}extra text\n"
                f"200|Robust - stats CPU: all 6% more")
        dataset = parse_log_text(text)
        assert dataset.summary.total_lines == 2
        assert dataset.summary.rejected_count == 0
        assert [record.cpu_all for record in dataset.robust_stats] == [5.0, 6.0]

    def test_crlf_line_endings(self):
        dataset = parse_log_text(f"{ROBUST_LINE}\r\n{CANDIDATE_LINE}\r\n")
        assert dataset.summary.total_lines == 2
        assert dataset.summary.rejected_count == 0
        assert dataset.overload_manager[0].metrics.reqs == 1500.0


def test_split_log_lines():
    assert split_log_lines("a\r\nb\x0cc\n\nd\n") == ["a", "b\x0cc", "", "d"]
    assert split_log_lines("") == []
    assert split_log_lines("a") == ["a"]
