"""
Extractors module for the vision extraction collaborator.
"""

from medscan.extractors.base import BaseExtractor, ExtractionError
from medscan.extractors.image_extractor import ImageExtractor

__all__ = [
    "BaseExtractor",
    "ExtractionError",
    "ImageExtractor",
]
