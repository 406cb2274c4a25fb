"""Tests for ranking and report rendering."""

import json
import os

from pytopdirs import (
    DirectorySizeRecord,
    LogErrorSink,
    console_text,
    export_to_json,
    format_report,
    top_n,
    write_report,
)
from tests.conftest import MB


class TestTopN:
    """Test top_n function."""

    def test_top_two_of_three(self):
        sizes = {"/c": 550 * MB, "/a": 700 * MB, "/b": 600 * MB}
        assert top_n(sizes, 2) == [
            DirectorySizeRecord("/a", 700 * MB),
            DirectorySizeRecord("/b", 600 * MB),
        ]

    def test_fewer_than_n(self):
        sizes = {"/a": 1, "/b": 2}
        assert [r.path for r in top_n(sizes, 10)] == ["/b", "/a"]

    def test_ties_ordered_by_path(self):
        sizes = {"/second": 5, "/first": 5, "/big": 9}
        assert [r.path for r in top_n(sizes, 3)] == ["/big", "/first", "/second"]

    def test_non_positive_n(self):
        assert top_n({"/a": 1}, 0) == []

    def test_empty(self):
        assert top_n({}, 3) == []


class TestFormatReport:
    """Test format_report function."""

    def test_layout(self):
        records = [
            DirectorySizeRecord("/data/dirA", 600 * MB),
            DirectorySizeRecord("/data/dirB", 3 * 1024**3),
        ]
        assert format_report(records, 10, 12.345) == (
            "Top 10 Largest Directories:\n"
            "1. /data/dirA - 0.59 GB\n"
            "2. /data/dirB - 3.00 GB\n"
            "\n"
            "Execution Time: 12.35 seconds\n"
        )

    def test_no_records(self):
        assert format_report([], 5, 0) == (
            "Top 5 Largest Directories:\n\nExecution Time: 0.00 seconds\n"
        )


class TestExportToJson:
    """Test export_to_json function."""

    def test_ranked_records(self):
        data = json.loads(export_to_json([DirectorySizeRecord("/x", 2 * 1024**3)]))
        assert data == [
            {"rank": 1, "path": "/x", "total_bytes": 2 * 1024**3, "size_gb": 2.0}
        ]


class TestWriteReport:
    """Test write_report function."""

    def test_writes_file(self, tmp_path, sink):
        target = tmp_path / "results.txt"
        assert write_report(str(target), "hello\n", sink) is True
        assert target.read_text() == "hello\n"
        assert sink.messages == []

    def test_failure_is_recorded(self, tmp_path, sink):
        assert write_report(str(tmp_path), "hello\n", sink) is False
        assert len(sink.messages) == 1
        assert sink.messages[0].startswith("Failed to write results")


class TestLogErrorSink:
    """Test LogErrorSink."""

    def test_timestamped_lines(self, tmp_path):
        log = tmp_path / "error.log"
        sink = LogErrorSink(str(log))
        try:
            sink.record("Error accessing directory /x: denied")
            sink.record("second")
        finally:
            sink.close()
        lines = log.read_text().splitlines()
        assert sink.count == 2
        assert len(lines) == 2
        stamp, message = lines[0].split("] ", 1)
        assert stamp.startswith("[") and stamp.endswith("Z")
        assert "T" in stamp
        assert message == "Error accessing directory /x: denied"

    def test_appends(self, tmp_path):
        log = tmp_path / "error.log"
        log.write_text("old line\n")
        sink = LogErrorSink(str(log))
        sink.record("new")
        sink.close()
        assert log.read_text().splitlines()[0] == "old line"
        assert log.read_text().splitlines()[1].endswith("] new")

    def test_no_file_without_errors(self, tmp_path):
        log = tmp_path / "error.log"
        LogErrorSink(str(log)).close()
        assert not log.exists()

    def test_undecodable_message(self, tmp_path):
        log = tmp_path / "error.log"
        sink = LogErrorSink(str(log))
        sink.record(f"Error accessing directory {os.fsdecode(b'caf' + bytes([0xE9]))}: denied")
        sink.close()
        assert "caf\\udce9: denied" in log.read_text()


class TestUndecodableNames:
    """Report output survives directory names that are not valid UTF-8."""

    def test_write_report_keeps_original_bytes(self, tmp_path, sink):
        name = os.fsdecode(b"caf" + bytes([0xE9]))
        target = tmp_path / "results.txt"
        assert write_report(str(target), f"1. /data/{name} - 1.00 GB\n", sink) is True
        assert target.read_bytes() == b"1. /data/caf\xe9 - 1.00 GB\n"
        assert sink.messages == []

    def test_console_text_escapes_surrogates(self):
        name = os.fsdecode(b"caf" + bytes([0xE9]))
        assert console_text(f"/data/{name}") == "/data/caf\\udce9"
