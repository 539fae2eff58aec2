"""Shared sample log lines and parsed datasets."""

import pytest

from log_parser import parse_log_text

ROBUST_LINE = ("1700000000.000|Robust - stats CPU: all 45.5% user 30.0% sys 15.5% Mem: rss 1048576 vsz 2097152 "
               "Accepts: http/https 120/340 client: in-progress 12 done 450 websockets: in-progress 3 "
               "fwd: in-progress 7")
CANDIDATE_LINE = ("1700000000.100|crp::OverloadManager::addCandidateTarget rule: cpu_high trigger_pct:75.00% "
                  "deny_pct:12.50% arlid:1234 ehnid:56 metrics: cpu=850 mem=204800 reqs=1500")
MAIN_LOOP_LINE = "1700000000.105|crp::OverloadManager::processMainLoop runQ:2.50 trigger: cpu value:91.5"
UNRECOGNIZED_LINE = "1700000000.200|http::Server listening on port 8443"


@pytest.fixture
def sample_log_text() -> str:
    return "\n".join([
        ROBUST_LINE,
        CANDIDATE_LINE,
        MAIN_LOOP_LINE,
        UNRECOGNIZED_LINE,
        "",
        ROBUST_LINE.replace("1700000000.000", "1700000010.000").replace("45.5%", "55.5%"),
        CANDIDATE_LINE.replace("1700000000.100", "1700000010.100").replace("75.00%", "80.00%"),
    ])


@pytest.fixture
def sample_dataset(sample_log_text):
    return parse_log_text(sample_log_text)
