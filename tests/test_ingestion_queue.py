"""
Tests for IngestionQueue: sequential processing, partial failure, removal, display delay.
"""
import httpx
import pytest

from medscan.extract.queue_runner import BATCH_WARNING, ImageUpload, IngestionQueue, QueueEntryNotRemovable
from medscan.extractors.base import ExtractionError
from medscan.ir import ExtractionResult, QueueStatus
from medscan.ledger import Ledger


class FakeClock:
    def __init__(self, now=100.0):
        self.now = now

    def __call__(self):
        return self.now


def _uploads(*names):
    return [ImageUpload(filename=name, payload=b"bytes-" + name.encode()) for name in names]


@pytest.fixture
def ledger(store):
    return Ledger.load(store)


class TestQueueProcessing:

    def test_success_and_network_failure(self, ledger, scripted_extractor, jane_doe):
        extractor = scripted_extractor([jane_doe, httpx.ConnectError("network error")])
        queue = IngestionQueue(extractor, ledger.insert)
        first, second = queue.add(_uploads("label.jpg", "board.jpg"))

        report = queue.run()

        assert report.processed == 2
        assert report.completed == 1
        assert report.failed == 1
        assert report.warning == BATCH_WARNING
        assert len(ledger) == 1
        record = ledger.records[0]
        assert record.patient_name == "Jane Doe"
        assert record.uhid == "AB123456"
        assert record.synced is False
        assert first.status is QueueStatus.COMPLETED
        assert first.record_id == record.id
        assert second.status is QueueStatus.ERROR
        assert "network error" in second.error

    def test_sequential_in_queue_order(self, ledger, scripted_extractor):
        results = [ExtractionResult(patient_name=n) for n in ("one", "two", "three")]
        extractor = scripted_extractor(results)
        queue = IngestionQueue(extractor, ledger.insert)
        queue.add(_uploads("1.png", "2.png", "3.png"))

        queue.run()

        assert extractor.calls == ["1.png", "2.png", "3.png"]
        assert [r.patient_name for r in ledger.records] == ["three", "two", "one"]

    def test_failure_does_not_abort_siblings(self, ledger, scripted_extractor, jane_doe):
        extractor = scripted_extractor([ExtractionError("bad json"), jane_doe, ValueError("boom")])
        queue = IngestionQueue(extractor, ledger.insert)
        queue.add(_uploads("a.jpg", "b.jpg", "c.jpg"))

        report = queue.run()

        assert [e.status for e in queue.entries] == [QueueStatus.ERROR, QueueStatus.COMPLETED, QueueStatus.ERROR]
        assert report.completed == 1 and report.failed == 2

    def test_clean_batch_has_no_warning(self, ledger, scripted_extractor, jane_doe):
        queue = IngestionQueue(scripted_extractor([jane_doe]), ledger.insert)
        queue.add(_uploads("a.jpg"))
        assert queue.run().warning is None

    def test_mime_type_guessed_from_filename(self, ledger, scripted_extractor):
        queue = IngestionQueue(scripted_extractor([]), ledger.insert)
        png, unknown, explicit = queue.add([
            ImageUpload("scan.png", b"x"),
            ImageUpload("blob", b"x"),
            ImageUpload("photo", b"x", mime_type="image/webp"),
        ])
        assert png.mime_type == "image/png"
        assert unknown.mime_type == "image/jpeg"
        assert explicit.mime_type == "image/webp"

    def test_second_run_only_processes_new_pending(self, ledger, scripted_extractor, jane_doe):
        extractor = scripted_extractor([jane_doe, jane_doe])
        queue = IngestionQueue(extractor, ledger.insert, display_delay=60)
        queue.add(_uploads("a.jpg"))
        queue.run()
        queue.add(_uploads("b.jpg"))

        report = queue.run()

        assert report.processed == 1
        assert extractor.calls == ["a.jpg", "b.jpg"]


class TestQueueRemoval:

    def test_remove_pending(self, ledger, scripted_extractor):
        queue = IngestionQueue(scripted_extractor([]), ledger.insert)
        entry, keep = queue.add(_uploads("a.jpg", "b.jpg"))

        queue.remove(entry.entry_id)

        assert queue.entries == [keep]

    def test_completed_not_removable(self, ledger, scripted_extractor, jane_doe):
        queue = IngestionQueue(scripted_extractor([jane_doe]), ledger.insert, display_delay=60)
        (entry,) = queue.add(_uploads("a.jpg"))
        queue.run()

        with pytest.raises(QueueEntryNotRemovable):
            queue.remove(entry.entry_id)

    def test_processing_not_removable(self, ledger, scripted_extractor, jane_doe):
        attempts = {}

        def on_extracted(result):
            entry = queue.entries[0]
            with pytest.raises(QueueEntryNotRemovable):
                queue.remove(entry.entry_id)
            attempts["checked"] = True
            return ledger.insert(result)

        queue = IngestionQueue(scripted_extractor([jane_doe]), on_extracted)
        queue.add(_uploads("a.jpg"))
        queue.run()

        assert attempts["checked"] is True

    def test_error_entry_removable(self, ledger, scripted_extractor):
        queue = IngestionQueue(scripted_extractor([ExtractionError("bad")]), ledger.insert)
        (entry,) = queue.add(_uploads("a.jpg"))
        queue.run()

        queue.remove(entry.entry_id)
        assert queue.entries == []

    def test_unknown_entry(self, ledger, scripted_extractor):
        queue = IngestionQueue(scripted_extractor([]), ledger.insert)
        with pytest.raises(KeyError):
            queue.remove("nope")

    def test_clear_stops_future_entries(self, ledger, scripted_extractor, jane_doe):
        def on_extracted(result):
            queue.clear()
            return ledger.insert(result)

        extractor = scripted_extractor([jane_doe, jane_doe])
        queue = IngestionQueue(extractor, on_extracted)
        queue.add(_uploads("a.jpg", "b.jpg"))

        report = queue.run()

        assert report.completed == 1
        assert extractor.calls == ["a.jpg"]
        assert [e.filename for e in queue.entries] == ["a.jpg"]


class TestQueueDisplayDelay:

    def test_completed_pruned_after_delay_errors_stay(self, ledger, scripted_extractor, jane_doe):
        clock = FakeClock()
        extractor = scripted_extractor([jane_doe, ExtractionError("bad")])
        queue = IngestionQueue(extractor, ledger.insert, display_delay=2.0, clock=clock)
        ok, failed = queue.add(_uploads("a.jpg", "b.jpg"))
        queue.run()

        clock.now += 1.0
        assert len(queue.visible_entries()) == 2

        clock.now += 1.5
        visible = queue.visible_entries()
        assert [e.entry_id for e in visible] == [failed.entry_id]

    def test_run_prunes_expired_and_releases_payloads(self, ledger, scripted_extractor, jane_doe):
        clock = FakeClock()
        extractor = scripted_extractor([jane_doe, ExtractionError("bad"), jane_doe])
        queue = IngestionQueue(extractor, ledger.insert, display_delay=2.0, clock=clock)
        first, failed = queue.add(_uploads("a.jpg", "b.jpg"))
        queue.run()

        assert first.payload == b""
        assert failed.payload == b""

        clock.now += 5.0
        (second,) = queue.add(_uploads("c.jpg"))
        report = queue.run()

        assert report.entry_ids == [second.entry_id]
        assert [e.entry_id for e in queue.entries] == [failed.entry_id, second.entry_id]
        assert all(e.payload == b"" for e in queue.entries)


class TestQueueStateMachine:

    def test_illegal_transition(self, ledger, scripted_extractor):
        queue = IngestionQueue(scripted_extractor([]), ledger.insert)
        (entry,) = queue.add(_uploads("a.jpg"))
        with pytest.raises(ValueError):
            entry.transition(QueueStatus.COMPLETED)
