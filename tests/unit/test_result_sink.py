"""
Unit tests for result records and the CSV result log

Tests cover:
- Mutual exclusivity of elapsed_ms and error
- Row rendering per outcome
- Header written once, rows appended
- Quoting of error text containing commas
- Table rendering for the end-of-sweep printout
"""

import sys
import os

import pytest

# Add parent directory to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", ".."))

from harness.models import (  # noqa: E402
    HarnessFailure,
    ParseFailure,
    ProcessError,
    ResultRecord,
    Success,
    Timeout,
    Trial,
)
from harness.result_sink import ResultSink, read_rows, render_table  # noqa: E402

TRIAL = Trial(delay="0ms", bandwidth="1Mbps", size="10K")


class TestResultRecord:
    """Test record invariants"""

    def test_both_fields_rejected(self):
        with pytest.raises(ValueError):
            ResultRecord("0ms", "1Mbps", "10K", elapsed_ms=1, error="TIMEOUT")

    def test_neither_field_rejected(self):
        with pytest.raises(ValueError):
            ResultRecord("0ms", "1Mbps", "10K")

    def test_empty_error_counts_as_missing(self):
        with pytest.raises(ValueError):
            ResultRecord("0ms", "1Mbps", "10K", error="")

    def test_empty_error_beside_elapsed_is_dropped(self):
        record = ResultRecord("0ms", "1Mbps", "10K", elapsed_ms=42, error="")
        assert record.error is None
        assert record.succeeded

    @pytest.mark.parametrize(
        "outcome",
        [Success(42), Timeout(), ProcessError(3, "boom"), ParseFailure(""), HarnessFailure("")],
    )
    def test_exactly_one_column_populated(self, outcome):
        row = ResultRecord.from_outcome(TRIAL, outcome).as_row()
        assert (row[3] == "") != (row[4] == "")

    def test_success_row(self):
        record = ResultRecord.from_outcome(TRIAL, Success(elapsed_ms=42))
        assert record.as_row() == ["0ms", "1Mbps", "10K", "42", ""]

    def test_whole_float_rendered_without_decimal(self):
        record = ResultRecord.from_outcome(TRIAL, Success(elapsed_ms=42.0))
        assert record.as_row()[3] == "42"

    def test_empty_parse_failure_text(self):
        record = ResultRecord.from_outcome(TRIAL, ParseFailure(""))
        assert record.error == "PARSE_FAIL: (no output)"

    def test_harness_failure_text(self):
        record = ResultRecord.from_outcome(TRIAL, HarnessFailure("server missing"))
        assert record.as_row() == ["0ms", "1Mbps", "10K", "", "HARNESS: server missing"]


class TestResultSink:
    """Test the append-only CSV log"""

    def test_header_then_rows(self, tmp_path):
        path = str(tmp_path / "results.csv")
        with ResultSink(path) as sink:
            sink.record(ResultRecord.from_outcome(TRIAL, Success(42)))
            sink.record(ResultRecord.from_outcome(TRIAL, Timeout()))

        with open(path) as f:
            assert f.read() == (
                "delay,bandwidth,filesize,transmission_ms,error\n"
                "0ms,1Mbps,10K,42,\n"
                "0ms,1Mbps,10K,,TIMEOUT\n"
            )

    def test_reopen_appends_without_second_header(self, tmp_path):
        path = str(tmp_path / "results.csv")
        with ResultSink(path) as sink:
            sink.record(ResultRecord.from_outcome(TRIAL, Success(1)))
        with ResultSink(path) as sink:
            sink.record(ResultRecord.from_outcome(TRIAL, Success(2)))

        rows = read_rows(path)
        assert rows[0][0] == "delay"
        assert [r[3] for r in rows[1:]] == ["1", "2"]

    def test_row_visible_before_close(self, tmp_path):
        path = str(tmp_path / "results.csv")
        sink = ResultSink(path).open()
        sink.record(ResultRecord.from_outcome(TRIAL, Success(9)))

        assert read_rows(path)[-1] == ["0ms", "1Mbps", "10K", "9", ""]
        sink.close()

    def test_commas_in_error_are_quoted(self, tmp_path):
        path = str(tmp_path / "results.csv")
        with ResultSink(path) as sink:
            sink.record(ResultRecord.from_outcome(TRIAL, ProcessError(1, "a, b, c")))

        assert read_rows(path)[1] == ["0ms", "1Mbps", "10K", "", "EXIT1: a, b, c"]

    def test_record_before_open_fails(self, tmp_path):
        with pytest.raises(RuntimeError):
            ResultSink(str(tmp_path / "r.csv")).record(
                ResultRecord.from_outcome(TRIAL, Timeout())
            )

    def test_render_table_aligns_columns(self):
        rows = [["delay", "bw"], ["0ms", "10Mbps"]]
        assert render_table("unused", rows) == "delay  bw\n0ms    10Mbps"
