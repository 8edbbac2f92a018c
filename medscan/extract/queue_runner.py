"""
IngestionQueue: sequential batch processing of uploaded images.

Handles:
- per-entry state machine (pending -> processing -> completed | error)
- handing successful extractions to the ledger-insert handler
- partial-failure tolerance (one bad image never aborts the batch)
- delayed removal of completed entries from the visible queue

Entries are processed one at a time in queue order.
"""

from __future__ import annotations

import mimetypes
import time
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional

from medscan.extractors.base import BaseExtractor
from medscan.ir import ExtractionResult, PatientRecord, QueueEntry, QueueStatus
from medscan.logger import get_logger

logger = get_logger(__name__)

BATCH_WARNING = "Some images could not be processed. Check the failed entries and try again."

_REMOVABLE = {QueueStatus.PENDING, QueueStatus.ERROR}


class QueueEntryNotRemovable(Exception):
    """Raised when removing an entry that is processing or already completed."""


@dataclass
class ImageUpload:
    filename: str
    payload: bytes
    mime_type: Optional[str] = None

    def resolved_mime_type(self) -> str:
        if self.mime_type:
            return self.mime_type
        guessed, _ = mimetypes.guess_type(self.filename)
        return guessed or "image/jpeg"


@dataclass
class BatchReport:
    processed: int = 0
    completed: int = 0
    failed: int = 0
    record_ids: List[str] = field(default_factory=list)
    entry_ids: List[str] = field(default_factory=list)
    warning: Optional[str] = None


class IngestionQueue:
    """
    Ordered queue of image entries.

    ``on_extracted`` receives each successful :class:`ExtractionResult` and
    returns the :class:`PatientRecord` it created (normally ``Ledger.insert``
    wrapped by the application state).
    """

    def __init__(
        self,
        extractor: BaseExtractor,
        on_extracted: Callable[[ExtractionResult], PatientRecord],
        display_delay: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._extractor = extractor
        self._on_extracted = on_extracted
        self._display_delay = display_delay
        self._clock = clock
        self._entries: List[QueueEntry] = []
        self._stop_requested = False

    @property
    def entries(self) -> List[QueueEntry]:
        return list(self._entries)

    def add(self, images: Iterable[ImageUpload]) -> List[QueueEntry]:
        added = [
            QueueEntry(filename=img.filename, mime_type=img.resolved_mime_type(), payload=img.payload)
            for img in images
        ]
        self._entries.extend(added)
        logger.info("Queued %d images (queue size=%d)", len(added), len(self._entries))
        return added

    def get(self, entry_id: str) -> QueueEntry:
        for entry in self._entries:
            if entry.entry_id == entry_id:
                return entry
        raise KeyError(entry_id)

    def remove(self, entry_id: str) -> QueueEntry:
        entry = self.get(entry_id)
        if entry.status not in _REMOVABLE:
            raise QueueEntryNotRemovable(
                f"Entry {entry_id} is {entry.status.value} and cannot be removed"
            )
        self._entries.remove(entry)
        logger.debug("Removed queue entry %s (%s)", entry_id, entry.filename)
        return entry

    def clear(self) -> int:
        """Drop pending entries and stop the running batch from starting more."""
        self._stop_requested = True
        before = len(self._entries)
        self._entries = [e for e in self._entries if e.status is not QueueStatus.PENDING]
        dropped = before - len(self._entries)
        logger.info("Queue cleared: %d pending entries dropped", dropped)
        return dropped

    def run(self) -> BatchReport:
        """
        Process every pending entry in order, one at a time.

        Expired completed entries are pruned first; finished entries drop
        their image bytes.

        Returns a :class:`BatchReport`; ``warning`` is set when any entry failed.
        """
        self._stop_requested = False
        self.prune()
        report = BatchReport()

        for entry in list(self._entries):
            if self._stop_requested:
                logger.info("Batch stopped before %s", entry.filename)
                break
            if entry.status is not QueueStatus.PENDING or entry not in self._entries:
                continue

            entry.transition(QueueStatus.PROCESSING)
            report.processed += 1
            report.entry_ids.append(entry.entry_id)
            try:
                result = self._extractor.extract(entry.payload, entry.mime_type, filename=entry.filename)
                record = self._on_extracted(result)
            except Exception as exc:
                self._mark_error(entry, exc)
                report.failed += 1
                continue

            entry.record_id = record.id
            entry.payload = b""
            entry.finished_at = self._clock()
            entry.transition(QueueStatus.COMPLETED)
            report.completed += 1
            report.record_ids.append(record.id)
            logger.debug("Done: %s -> record %s", entry.filename, record.id)

        if report.failed:
            report.warning = BATCH_WARNING
        logger.info(
            "Batch complete: processed=%d completed=%d failed=%d",
            report.processed,
            report.completed,
            report.failed,
        )
        return report

    def prune(self, now: Optional[float] = None) -> List[QueueEntry]:
        """Remove completed entries whose display delay has elapsed."""
        now = self._clock() if now is None else now
        expired = [
            e for e in self._entries
            if e.status is QueueStatus.COMPLETED
            and e.finished_at is not None
            and now - e.finished_at >= self._display_delay
        ]
        if expired:
            self._entries = [e for e in self._entries if e not in expired]
        return expired

    def visible_entries(self, now: Optional[float] = None) -> List[QueueEntry]:
        self.prune(now)
        return self.entries

    # -- helpers -------------------------------------------------------------

    def _mark_error(self, entry: QueueEntry, exc: Exception) -> None:
        logger.error("Extraction failed for %s: %s", entry.filename, exc)
        entry.error = str(exc) or type(exc).__name__
        entry.payload = b""
        entry.finished_at = self._clock()
        entry.transition(QueueStatus.ERROR)
