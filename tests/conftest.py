"""
Shared fixtures: in-memory collaborators standing in for PyMuPDF,
Pillow and Tesseract, plus an event recorder listener.
"""

from __future__ import annotations

import threading

import pytest

from labscan.collaborators import (
    DocumentSource,
    ImageSource,
    ScanBackend,
    TextExtractor,
)
from labscan.exceptions import DocumentOpenError


class FakeRaster:
    """A 'rendered' page: carries the text the fake OCR will return."""

    def __init__(self, text):
        self.text = text
        self.closed = False

    def close(self):
        self.closed = True


class FakeDocumentSource(DocumentSource):
    """Documents are lists of page texts (or exceptions to raise on OCR)."""

    def __init__(self, documents: dict):
        self.documents = documents
        self.opened: list[str] = []
        self.closed: list[str] = []
        self.rasters: list[FakeRaster] = []
        self.scales: list[float] = []

    def open(self, location):
        if location not in self.documents:
            raise DocumentOpenError(f"PDF not found at {location}")
        self.opened.append(location)
        return location

    def page_count(self, handle):
        return len(self.documents[handle])

    def render_page(self, handle, index, scale):
        self.scales.append(scale)
        raster = FakeRaster(self.documents[handle][index])
        self.rasters.append(raster)
        return raster

    def close(self, handle):
        self.closed.append(handle)


class FakeImageSource(ImageSource):
    """Locations missing from ``images`` fail to decode."""

    def __init__(self, images: dict):
        self.images = images
        self.rasters: list[FakeRaster] = []

    def load(self, location):
        if location not in self.images:
            return None
        raster = FakeRaster(self.images[location])
        self.rasters.append(raster)
        return raster


class FakeExtractor(TextExtractor):
    """Returns the raster's text, or raises it if it is an exception."""

    def __init__(self):
        super().__init__()
        self.calls = 0
        self.closed = False

    def recognize(self, raster):
        self.calls += 1
        if isinstance(raster.text, Exception):
            raise raster.text
        return raster.text

    def close(self):
        super().close()
        self.closed = True


class GatedExtractor(FakeExtractor):
    """Blocks inside recognize() until the test opens the gate."""

    def __init__(self):
        super().__init__()
        self.started = threading.Event()
        self.release = threading.Event()

    def recognize(self, raster):
        self.started.set()
        self.release.wait(timeout=5)
        return super().recognize(raster)


class EventRecorder:
    """Listener that records every event it receives."""

    def __init__(self):
        self.events = []
        self._lock = threading.Lock()

    def __call__(self, event):
        with self._lock:
            self.events.append(event)

    @property
    def types(self) -> list[str]:
        with self._lock:
            return [e.type for e in self.events]


@pytest.fixture
def recorder():
    return EventRecorder()


@pytest.fixture
def gated_extractor():
    extractor = GatedExtractor()
    yield extractor
    extractor.release.set()


@pytest.fixture
def make_backend():
    """
    Build a ScanBackend over fake collaborators.

    ``extractors`` lists the extractor instances handed to successive
    sessions; once exhausted, fresh FakeExtractors are created.
    """

    def _make(documents=None, images=None, extractors=None):
        queued = list(extractors or [])
        created = []

        def factory():
            extractor = queued.pop(0) if queued else FakeExtractor()
            created.append(extractor)
            return extractor

        backend = ScanBackend(
            document_source=FakeDocumentSource(documents or {}),
            image_source=FakeImageSource(images or {}),
            extractor_factory=factory,
        )
        backend.created_extractors = created
        return backend

    return _make
