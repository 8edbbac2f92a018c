"""
Image extractor for patient labels and ward whiteboards.
"""
from typing import Optional

from medscan.extractors.base import BaseExtractor, ExtractionError
from medscan.ir import ExtractionResult, TEXT_FIELDS
from medscan.llm import LLMClient
from medscan.logger import get_logger

logger = get_logger(__name__)

SYSTEM_PROMPT = """You are a specialized medical document OCR assistant. Your task is to extract specific patient and clinical data from images of hospital whiteboards and patient labels.

Extraction Rules:
1. UHID vs ID: 'uhid' is the Unique Health ID. It MUST be exactly 2 letters followed by digits (e.g. AB123456, XY9988). 'identifier_id' is the Hospital ID, IP Number or Visit Number, usually purely numeric or another alphanumeric format.
2. BARCODES: If a barcode is present, attempt to decode it. Barcodes on hospital labels almost always carry the UHID or the primary identifier; prefer barcode data for those fields.
3. WHITEBOARDS: Put the surgery type or diagnosis into 'clinical_notes'.
4. LABELS: The IP Number and Consultant name are often printed directly above the main barcode.
5. If a field is not found, use an empty string. Do not make up values."""

USER_PROMPT = """Extract patient data from this image and return a JSON object with exactly these keys:
{
  "patient_name": "Full name of the patient",
  "identifier_id": "Hospital / IP / Visit number",
  "uhid": "2 letters followed by digits",
  "attending_doctor": "Consultant or doctor name",
  "clinical_notes": "Surgery type, diagnosis or clinical observations",
  "source_type": "label | whiteboard"
}
Look closely at any barcodes for the UHID and keep it separate from the IP/Visit ID."""

EXPECTED_KEYS = TEXT_FIELDS + ("source_type",)


class ImageExtractor(BaseExtractor):
    """
    Extractor for label / whiteboard photos.

    Sends the image to the vision model and normalizes the JSON answer into an
    :class:`ExtractionResult`. Missing fields default to empty strings; an
    answer carrying none of the expected keys is treated as a failure.
    """

    def __init__(self, llm: LLMClient, prompts: Optional[dict] = None):
        super().__init__(llm, prompts)

    def extract(self, payload: bytes, mime_type: str, filename: Optional[str] = None) -> ExtractionResult:
        """
        Extract patient fields from one image.

        Args:
            payload: Raw image bytes.
            mime_type: Image MIME type, e.g. ``image/png``.
            filename: Optional name used for logging only.

        Returns:
            ExtractionResult with normalized fields.

        Raises:
            ExtractionError: Empty payload, unparsable or field-less model output.
        """
        if not payload:
            raise ExtractionError(f"Empty image payload: {filename or '<upload>'}")

        raw = self.llm.vision_json(
            self.prompts.get("user", USER_PROMPT),
            [{"data": payload, "mime_type": mime_type}],
            system=self.prompts.get("system", SYSTEM_PROMPT),
            step="patient_vision_extract",
            filename=filename,
        )
        return self.normalize(raw, filename=filename)

    @staticmethod
    def normalize(raw: object, filename: Optional[str] = None) -> ExtractionResult:
        """Turn the parsed model answer into an ExtractionResult or raise."""
        if isinstance(raw, list):
            raw = raw[0] if raw else {}
        if not isinstance(raw, dict):
            raise ExtractionError(f"Model returned {type(raw).__name__}, expected a JSON object")
        if raw.get("error") == "json_parse_error":
            raise ExtractionError(f"Unable to parse model output: {raw.get('parse_error')}")

        present = [key for key in EXPECTED_KEYS if key in raw]
        if not present:
            raise ExtractionError("Model output is missing all required fields")

        missing = [key for key in EXPECTED_KEYS if key not in raw]
        if missing:
            logger.debug("Defaulting missing fields for %s: %s", filename, missing)

        return ExtractionResult(**{key: raw.get(key) for key in EXPECTED_KEYS})
