"""
Page Sources
============
Ordered units of work for a scan: the pages of a PDF or a list of image
files. Document handles and rasters are scoped with ``with`` blocks so
they are released on success, failure and cancellation alike.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterator, Optional

from .collaborators import DocumentSource, ImageSource

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PageUnit:
    """One page or image to process. ``page`` is 1-indexed."""
    page: int
    total_pages: int
    location: str = ""

    @property
    def index(self) -> int:
        return self.page - 1


class PdfPageSource:
    """
    Pages of one PDF document.

    Usage:
        with PdfPageSource(source, path) as pages:
            for unit in pages:
                with pages.render(unit) as raster:
                    ...
    """

    def __init__(
        self,
        document_source: DocumentSource,
        location: str,
        scale: float = 2.0,
    ):
        self.document_source = document_source
        self.location = location
        self.scale = scale
        self._handle: Any = None
        self.total_pages = 0

    def __enter__(self) -> PdfPageSource:
        self._handle = self.document_source.open(self.location)
        try:
            self.total_pages = self.document_source.page_count(self._handle)
        except Exception:
            self._close()
            raise
        logger.debug(f"Opened {self.location} ({self.total_pages} pages)")
        return self

    def __exit__(self, exc_type, exc, tb):
        self._close()

    def __iter__(self) -> Iterator[PageUnit]:
        for index in range(self.total_pages):
            yield PageUnit(
                page=index + 1,
                total_pages=self.total_pages,
                location=self.location,
            )

    @contextmanager
    def render(self, unit: PageUnit) -> Iterator[Any]:
        """Render ``unit`` and release the raster when the block exits."""
        if self._handle is None:
            raise RuntimeError("PdfPageSource used outside its 'with' block")
        raster = self.document_source.render_page(
            self._handle, unit.index, self.scale
        )
        try:
            yield raster
        finally:
            self.document_source.release(raster)

    def _close(self):
        if self._handle is not None:
            handle, self._handle = self._handle, None
            self.document_source.close(handle)


class ImagePageSource:
    """Discrete image files, scanned in the given order."""

    def __init__(self, image_source: ImageSource, locations: list[str]):
        self.image_source = image_source
        self.locations = list(locations)
        self.total_pages = len(self.locations)

    def __enter__(self) -> ImagePageSource:
        return self

    def __exit__(self, exc_type, exc, tb):
        pass

    def __iter__(self) -> Iterator[PageUnit]:
        for position, location in enumerate(self.locations, start=1):
            yield PageUnit(
                page=position,
                total_pages=self.total_pages,
                location=location,
            )

    @contextmanager
    def load(self, unit: PageUnit) -> Iterator[Optional[Any]]:
        """Decode ``unit``; yields None when the image cannot be decoded."""
        raster = self.image_source.load(unit.location)
        try:
            yield raster
        finally:
            if raster is not None:
                self.image_source.release(raster)
