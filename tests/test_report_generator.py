"""Tests for the HTML report export."""

import json
import re
from datetime import datetime, timezone

import pytest

from log_parser import parse_log_text
from report_generator import REPORT_DATA_ELEMENT_ID, ReportOptions, generate_report


def _embedded_json(report: str) -> dict:
    match = re.search(rf'<script type="application/json" id="{REPORT_DATA_ELEMENT_ID}">(.*?)</script>', report,
                      re.DOTALL)
    assert match is not None
    return json.loads(match.group(1))


def test_report_embeds_dataset(sample_dataset):
    report = generate_report(sample_dataset, generated_at=datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc))
    assert report.startswith("<!DOCTYPE html>")
    assert "Generated: 2024-01-02 03:04:05 UTC" in report
    assert "Time Range: 2023-11-14 22:13:20.000 to 2023-11-14 22:13:30.100 UTC" in report
    assert _embedded_json(report) == json.loads(json.dumps(sample_dataset.to_dict()))


def test_report_sections_follow_options(sample_dataset):
    report = generate_report(sample_dataset, ReportOptions(include_overview=False, include_overload_manager=False))
    assert "<h2>Robust Stats</h2>" in report
    assert "<h2>Overview</h2>" not in report
    assert "<h2>OverloadManager</h2>" not in report


def test_report_overview_cards(sample_dataset):
    report = generate_report(sample_dataset, ReportOptions(include_robust_stats=False,
                                                           include_overload_manager=False))
    assert "50.5%" in report
    assert "Average CPU Usage" in report
    assert "1.00 GB" in report


def test_embedded_json_cannot_close_script():
    dataset = parse_log_text("1700000000|crp::OverloadManager::addCandidateTarget rule:</script> trigger_pct:5%")
    report = generate_report(dataset)
    assert _embedded_json(report)['overload_manager'][0]['rule_name'] == "</script>"


def test_empty_dataset_rejected():
    with pytest.raises(ValueError, match="No data available"):
        generate_report(parse_log_text(""))
