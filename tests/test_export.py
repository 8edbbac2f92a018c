"""
Tests for JSON / CSV export.
"""
import csv
import io
import json
from datetime import datetime, timezone

import pytest

from medscan.export import CSV_COLUMNS, export_filename, from_json, render, to_csv, to_json, write_export
from medscan.ir import PatientRecord, SourceType


@pytest.fixture
def records():
    return [
        PatientRecord(
            id="r2",
            patient_name='Jane "JD" Doe',
            identifier_id="IP-2",
            uhid="AB123456",
            attending_doctor="Dr. Mehta",
            clinical_notes="Post-op, day 2\nobserve",
            source_type=SourceType.WHITEBOARD,
            timestamp="2024-05-02T09:00:00+00:00",
            synced=True,
        ),
        PatientRecord(id="r1", patient_name="Ravi", timestamp="2024-05-01T09:00:00+00:00"),
    ]


class TestJsonExport:

    def test_round_trip(self, records):
        assert from_json(to_json(records)) == records

    def test_empty(self):
        assert json.loads(to_json([])) == []

    def test_non_array_rejected(self):
        with pytest.raises(ValueError):
            from_json('{"id": "x"}')


class TestCsvExport:

    def test_header_only_when_empty(self):
        rows = list(csv.reader(io.StringIO(to_csv([]))))
        assert rows == [CSV_COLUMNS]

    def test_rows_and_quoting(self, records):
        text = to_csv(records)
        rows = list(csv.reader(io.StringIO(text)))

        assert rows[0] == CSV_COLUMNS
        assert rows[1] == [
            "r2", 'Jane "JD" Doe', "AB123456", "IP-2", "Dr. Mehta",
            "Post-op, day 2\nobserve", "whiteboard", "2024-05-02T09:00:00+00:00", "true",
        ]
        assert rows[2][0] == "r1" and rows[2][-1] == "false"
        assert '"Jane ""JD"" Doe"' in text

    def test_unknown_format(self, records):
        with pytest.raises(ValueError):
            render(records, "xml")


class TestWriteExport:

    def test_empty_csv_writes_nothing(self, tmp_path):
        assert write_export([], "csv", tmp_path) is None
        assert list(tmp_path.iterdir()) == []

    def test_empty_json_still_written(self, tmp_path):
        path = write_export([], "json", tmp_path)
        assert json.loads(path.read_text(encoding="utf-8")) == []

    def test_csv_file(self, tmp_path, records):
        now = datetime(2024, 5, 2, 10, 30, tzinfo=timezone.utc)
        path = write_export(records, "csv", tmp_path / "out", now=now)

        assert path.name == export_filename("csv", now)
        assert path.name.startswith("medical_records_2024-05-02T10-30-00")
        assert path.read_text(encoding="utf-8") == to_csv(records)
