"""
Default Collaborators
=====================
Concrete document, image and text-extraction backends:

    - FitzDocumentSource: PDF pages rendered with PyMuPDF (fitz)
    - PillowImageSource: photos/scans decoded with Pillow
    - TesseractExtractor: OCR through pytesseract

Rasters are RGB ``PIL.Image`` objects throughout.
"""

from __future__ import annotations

import logging
import os
from typing import Optional

import fitz  # PyMuPDF
import pytesseract
from PIL import Image

from .collaborators import DocumentSource, ImageSource, ScanBackend, TextExtractor
from .exceptions import DocumentOpenError

logger = logging.getLogger(__name__)


class FitzDocumentSource(DocumentSource):
    """Opens PDFs with PyMuPDF and rasterizes pages for OCR."""

    def open(self, location: str) -> fitz.Document:
        path = os.path.abspath(location)
        if not os.path.exists(path):
            raise DocumentOpenError(f"PDF not found at {path}")
        try:
            return fitz.open(path)
        except Exception as e:
            raise DocumentOpenError(f"Cannot open PDF at {path}: {e}") from e

    def page_count(self, handle: fitz.Document) -> int:
        return handle.page_count

    def render_page(
        self, handle: fitz.Document, index: int, scale: float
    ) -> Image.Image:
        page = handle.load_page(index)
        pix = page.get_pixmap(matrix=fitz.Matrix(scale, scale), alpha=False)
        try:
            return Image.frombytes("RGB", (pix.width, pix.height), pix.samples)
        finally:
            del pix

    def close(self, handle: fitz.Document):
        handle.close()


class PillowImageSource(ImageSource):
    """Decodes image files; unreadable files are reported as None."""

    def load(self, location: str) -> Optional[Image.Image]:
        try:
            with Image.open(location) as img:
                img.load()
                return img.convert("RGB")
        except Exception as e:
            # Any decode failure is a skip; broken PNG chunks raise SyntaxError
            logger.warning(f"Could not decode image {location}: {e}")
            return None


class TesseractExtractor(TextExtractor):
    """Runs Tesseract OCR on a raster."""

    def __init__(self, language: str = "eng", config: str = "--psm 6"):
        super().__init__()
        self.language = language
        self.config = config

    def recognize(self, raster: Image.Image) -> str:
        return pytesseract.image_to_string(
            raster, lang=self.language, config=self.config
        )


def default_backend(config) -> ScanBackend:
    """Wire the PyMuPDF / Pillow / Tesseract collaborators for ``config``."""
    return ScanBackend(
        document_source=FitzDocumentSource(),
        image_source=PillowImageSource(),
        extractor_factory=lambda: TesseractExtractor(
            language=config.ocr_language,
            config=config.tesseract_config,
        ),
    )
