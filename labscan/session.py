"""
Scan Session
============
One scan of one request: a small state machine driving a sequential,
cancelable page loop on a background thread.

States:
    IDLE ──start()──► RUNNING ──► TERMINATED
      └──(invalid request)─────────► TERMINATED

Event order for a PDF with N pages:
    progress(1, N), structured(1, N), ..., progress(N, N),
    structured(N, N), complete

Cancellation is cooperative: the loop checks it before each page, before
handing a raster to the extractor, while waiting for OCR and after the
result arrives. A cancelled session stops without emitting anything more.
"""

from __future__ import annotations

import itertools
import logging
import threading
from concurrent.futures import wait as wait_futures
from enum import Enum
from typing import Any, Callable, Optional

from .biomarkers import BiomarkerParser
from .collaborators import ScanBackend, TextExtractor
from .config import ScanConfig
from .exceptions import (
    ErrorCode,
    ExtractionError,
    InvalidRequestError,
    ScanCancelled,
    ScanError,
)
from .models import (
    CompleteEvent,
    ErrorEvent,
    Payload,
    ProgressEvent,
    ScanEvent,
    ScanRequest,
    ScanSource,
    StructuredEvent,
)
from .pages import ImagePageSource, PageUnit, PdfPageSource

logger = logging.getLogger(__name__)

EventSink = Callable[[ScanEvent], None]

_session_ids = itertools.count(1)


class SessionState(str, Enum):
    """Lifecycle of a ScanSession."""
    IDLE = "idle"
    RUNNING = "running"
    TERMINATED = "terminated"


class ScanSession:
    """
    Runs a single scan and reports it through ``sink``.

    A session is used once: build it, ``start()`` it, optionally
    ``cancel()`` it. The next scan gets a new session.
    """

    def __init__(
        self,
        arguments: Any,
        backend: ScanBackend,
        sink: EventSink,
        config: Optional[ScanConfig] = None,
        parser: Optional[BiomarkerParser] = None,
    ):
        self.session_id = next(_session_ids)
        self.arguments = arguments
        self.backend = backend
        self.config = config or ScanConfig()
        self.parser = parser or BiomarkerParser()
        self.request: Optional[ScanRequest] = None
        self.state = SessionState.IDLE

        self._sink = sink
        self._cancel_event = threading.Event()
        self._done = threading.Event()
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None

    # ─── Lifecycle ────────────────────────────────────────────────────────

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_event.is_set()

    @property
    def is_running(self) -> bool:
        return self.state == SessionState.RUNNING

    @property
    def is_terminated(self) -> bool:
        return self.state == SessionState.TERMINATED

    def start(self) -> bool:
        """
        Validate the arguments and launch the worker thread.

        Returns:
            True if the scan is running, False if the request was invalid
            (an ``invalid_request`` error event has been emitted).

        Raises:
            RuntimeError: If the session was already started.
        """
        with self._lock:
            if self.state != SessionState.IDLE:
                raise RuntimeError(
                    f"Session {self.session_id} cannot be started twice"
                )
            try:
                self.request = ScanRequest.from_arguments(self.arguments)
            except InvalidRequestError as e:
                rejection = e
            else:
                rejection = None
                self.state = SessionState.RUNNING

        if rejection is not None:
            logger.warning(
                f"Session {self.session_id}: rejected request "
                f"{self.arguments!r}"
            )
            self._emit(ErrorEvent(code=rejection.code, message=str(rejection)))
            self._terminate()
            return False

        self._thread = threading.Thread(
            target=self.run,
            daemon=True,
            name=f"labscan-session-{self.session_id}",
        )
        self._thread.start()

        logger.info(
            f"Session {self.session_id}: started "
            f"({self.request.source.value}: {self.request.primary_location})"
        )
        return True

    def cancel(self):
        """Request cancellation. Safe to call at any time, more than once."""
        if not self._cancel_event.is_set():
            self._cancel_event.set()
            logger.info(f"Session {self.session_id}: cancellation requested")

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the session terminates. Returns False on timeout."""
        return self._done.wait(timeout)

    # ─── Worker ───────────────────────────────────────────────────────────

    def run(self):
        """Worker body. Runs on the session thread started by ``start()``."""
        if self.state != SessionState.RUNNING:
            raise RuntimeError(
                f"Session {self.session_id} is {self.state.value}, not running"
            )
        try:
            self._checkpoint()
            if self.request.source == ScanSource.PDF:
                self._scan_document()
            else:
                self._scan_images()

            self._emit(CompleteEvent())
            logger.info(f"Session {self.session_id}: scan COMPLETED")

        except ScanCancelled:
            logger.info(f"Session {self.session_id}: stopped (cancelled)")

        except Exception as e:
            if self.cancel_requested:
                logger.info(
                    f"Session {self.session_id}: stopped (cancelled), "
                    f"discarding error: {e}"
                )
            else:
                logger.error(
                    f"Session {self.session_id}: scan FAILED — {e}",
                    exc_info=not isinstance(e, ScanError),
                )
                self._emit(ErrorEvent(
                    code=ErrorCode.SCAN_FAILED.value,
                    message=str(e) or "Scanning failed",
                ))

        finally:
            self._terminate()

    def _scan_document(self):
        pages = PdfPageSource(
            self.backend.document_source,
            self.request.primary_path(),
            scale=self.config.render_scale,
        )
        with pages, self.backend.extractor_factory() as extractor:
            logger.info(
                f"Session {self.session_id}: scanning {pages.total_pages} "
                f"page(s) of {pages.location}"
            )
            for unit in pages:
                self._checkpoint()
                self._emit(ProgressEvent(
                    page=unit.page, total_pages=unit.total_pages
                ))
                with pages.render(unit) as raster:
                    text = self._extract(extractor, raster)
                self._emit_structured(unit, text)

    def _scan_images(self):
        locations = self.request.resolved_image_locations()
        if not locations:
            raise ScanError("No images supplied")

        pages = ImagePageSource(self.backend.image_source, locations)
        with pages, self.backend.extractor_factory() as extractor:
            logger.info(
                f"Session {self.session_id}: scanning {pages.total_pages} "
                f"image(s)"
            )
            for unit in pages:
                self._checkpoint()
                with pages.load(unit) as raster:
                    if raster is None:
                        logger.warning(
                            f"Session {self.session_id}: skipping image "
                            f"{unit.page}/{unit.total_pages} "
                            f"({unit.location}) — could not decode"
                        )
                        continue
                    text = self._extract(extractor, raster)
                self._emit(ProgressEvent(
                    page=unit.page, total_pages=unit.total_pages
                ))
                self._emit_structured(unit, text)

    # ─── Extraction ───────────────────────────────────────────────────────

    def _extract(self, extractor: TextExtractor, raster: Any) -> str:
        """
        Run OCR on ``raster`` and wait for it without losing sight of
        cancellation. A result that arrives after cancel is discarded.

        If cancellation finds recognition already running, the session
        waits for it to settle before raising, so the caller never
        releases a raster the extractor is still reading.
        """
        self._checkpoint()
        future = extractor.submit(raster)

        while not future.done():
            if self._cancel_event.is_set():
                if not future.cancel():
                    logger.debug(
                        f"Session {self.session_id}: waiting for abandoned "
                        f"recognition to settle"
                    )
                    wait_futures((future,))
                raise ScanCancelled()
            wait_futures((future,), timeout=self.config.poll_interval)

        self._checkpoint()
        if future.cancelled():
            raise ScanCancelled()

        error = future.exception()
        if error is not None:
            raise ExtractionError(
                str(error) or f"{type(error).__name__} during text extraction"
            ) from error

        return future.result() or ""

    # ─── Helpers ──────────────────────────────────────────────────────────

    def _checkpoint(self):
        if self._cancel_event.is_set():
            raise ScanCancelled()

    def _emit_structured(self, unit: PageUnit, text: str):
        biomarkers = self.parser.parse(text)
        self._emit(StructuredEvent(
            page=unit.page,
            total_pages=unit.total_pages,
            payload=Payload(raw_text=text, biomarkers=biomarkers),
        ))
        logger.info(
            f"Session {self.session_id}: page {unit.page}/{unit.total_pages} "
            f"— {len(biomarkers)} biomarker(s)"
        )

    def _emit(self, event: ScanEvent):
        if self._cancel_event.is_set():
            logger.debug(
                f"Session {self.session_id}: dropped {event.type} event "
                f"after cancellation"
            )
            return
        self._sink(event)

    def _terminate(self):
        self.state = SessionState.TERMINATED
        self._done.set()
