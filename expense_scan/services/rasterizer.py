"""
Turns a receipt source (image or PDF) into a single raster image for OCR.
"""

import io
import logging

from PyPDF2 import PdfReader
from PyPDF2.errors import PdfReadError
from pdf2image import convert_from_bytes
from pdf2image.exceptions import (
    PDFInfoNotInstalledError,
    PDFPageCountError,
    PDFPopplerTimeoutError,
    PDFSyntaxError,
)

from expense_scan.config import settings
from expense_scan.models.receipt import RasterImage, ReceiptSource
from expense_scan.utils.errors import RasterizationError

logger = logging.getLogger(__name__)

# pdf2image renders at a resolution in dpi; PDF user space is 72 units per inch
PDF_BASE_DPI = 72


class Rasterizer:
    """Service for producing OCR-ready images from receipt files."""

    def __init__(self, scale: float = None):
        """
        Args:
            scale: PDF upscale factor (2x helps with small receipt fonts)
        """
        self.scale = scale if scale is not None else settings.PDF_RENDER_SCALE

    def rasterize(self, source: ReceiptSource) -> RasterImage:
        """
        Produce a raster image for the source.

        Images are passed through untouched. For PDFs only the first page is
        rendered and encoded as PNG.

        Raises:
            RasterizationError: Corrupt or empty PDF, rendering failure, or
                an unsupported content type
        """
        if source.is_pdf:
            return self._render_first_pdf_page(source.data)

        if source.is_image:
            return RasterImage(data=source.data, content_type=source.content_type)

        raise RasterizationError(
            f"Unsupported content type: {source.content_type}",
            code="RECEIPT_TYPE",
        )

    def count_pdf_pages(self, pdf_data: bytes) -> int:
        """
        Count pages of a PDF.

        Raises:
            RasterizationError: The PDF cannot be read
        """
        try:
            reader = PdfReader(io.BytesIO(pdf_data))
            return len(reader.pages)
        except (PdfReadError, ValueError, OSError) as e:
            raise RasterizationError(f"PDF could not be read: {e}", code="PDF_CORRUPT") from e

    def _render_first_pdf_page(self, pdf_data: bytes) -> RasterImage:
        page_count = self.count_pdf_pages(pdf_data)
        if page_count == 0:
            raise RasterizationError("PDF has no pages", code="PDF_EMPTY")

        dpi = int(round(PDF_BASE_DPI * self.scale))
        try:
            pages = convert_from_bytes(pdf_data, dpi=dpi, first_page=1, last_page=1)
        except (PDFInfoNotInstalledError, PDFPageCountError, PDFPopplerTimeoutError, PDFSyntaxError) as e:
            raise RasterizationError(f"PDF page could not be rendered: {e}", code="PDF_RENDER") from e

        if not pages:
            raise RasterizationError("PDF page could not be rendered", code="PDF_RENDER")

        page = pages[0]
        buffer = io.BytesIO()
        try:
            page.save(buffer, format="PNG")
        except (OSError, ValueError) as e:
            raise RasterizationError(f"PDF page could not be encoded: {e}", code="PDF_RENDER") from e

        logger.info("Rendered first PDF page", extra={
            "page_count": page_count,
            "dpi": dpi,
            "width": page.width,
            "height": page.height,
        })
        return RasterImage(data=buffer.getvalue(), content_type="image/png")
