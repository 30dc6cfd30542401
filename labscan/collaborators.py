"""
Collaborator Interfaces
=======================
Boundaries the scan session calls into: document rendering, image
decoding and text extraction. Concrete implementations live in
``backends.py``; tests provide in-memory fakes.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


def release_raster(raster: Any):
    """Free a raster image if it exposes ``close()``."""
    close = getattr(raster, "close", None)
    if callable(close):
        close()


class DocumentSource(ABC):
    """Opens multi-page documents and renders their pages to rasters."""

    @abstractmethod
    def open(self, location: str) -> Any:
        """
        Open the document at ``location``.

        Raises:
            DocumentOpenError: If the document is missing or unreadable.
        """

    @abstractmethod
    def page_count(self, handle: Any) -> int:
        ...

    @abstractmethod
    def render_page(self, handle: Any, index: int, scale: float) -> Any:
        """Render the 0-indexed page at ``scale`` times its native size."""

    @abstractmethod
    def close(self, handle: Any):
        ...

    def release(self, raster: Any):
        release_raster(raster)


class ImageSource(ABC):
    """Decodes discrete image files."""

    @abstractmethod
    def load(self, location: str) -> Optional[Any]:
        """Decode the image at ``location``; None if it cannot be decoded."""

    def release(self, raster: Any):
        release_raster(raster)


class TextExtractor(ABC):
    """
    Recognizes text in a raster image.

    ``submit`` hands back a Future so the caller can keep observing
    cancellation while recognition runs. The default runs ``recognize``
    on a private single-thread executor; engines with their own async
    API can override ``submit`` instead.
    """

    def __init__(self):
        self._executor: Optional[ThreadPoolExecutor] = None

    @abstractmethod
    def recognize(self, raster: Any) -> str:
        ...

    def submit(self, raster: Any) -> Future:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=1, thread_name_prefix="labscan-ocr"
            )
        return self._executor.submit(self.recognize, raster)

    def close(self):
        """Drop queued work and release the executor."""
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None

    def __enter__(self) -> TextExtractor:
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


@dataclass
class ScanBackend:
    """The collaborators one scan session works with."""
    document_source: DocumentSource
    image_source: ImageSource
    extractor_factory: Callable[[], TextExtractor]
