"""
Error taxonomy for receipt extraction.

Only recognition and source problems are errors. A field or category that
cannot be recovered is never an error, it is simply left empty.
"""


class ExtractionError(Exception):
    """Base class for failures that abort an extraction attempt."""

    stage = "extraction"
    code = "EXTRACTION_FAILED"

    def __init__(self, message: str, code: str = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    def to_dict(self) -> dict:
        return {"stage": self.stage, "code": self.code, "message": self.message}


class UnsupportedSourceError(ExtractionError):
    """The receipt file is missing, too large or of an unknown type."""
    stage = "source"
    code = "RECEIPT_TYPE"


class RasterizationError(ExtractionError):
    """The source could not be turned into an image (corrupt or empty PDF)."""
    stage = "rasterization"
    code = "RASTERIZE_FAILED"


class RemoteRecognitionError(ExtractionError):
    """The remote OCR service failed or reported a processing error."""
    stage = "remote"
    code = "REMOTE_OCR_FAILED"


class LocalRecognitionError(ExtractionError):
    """The bundled offline engine failed. There is no further fallback."""
    stage = "local"
    code = "LOCAL_OCR_FAILED"
