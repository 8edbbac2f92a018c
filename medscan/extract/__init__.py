"""
Extract layer: sequential ingestion queue.
"""

from medscan.extract.queue_runner import (
    BatchReport,
    ImageUpload,
    IngestionQueue,
    QueueEntryNotRemovable,
)

__all__ = [
    "BatchReport",
    "ImageUpload",
    "IngestionQueue",
    "QueueEntryNotRemovable",
]
