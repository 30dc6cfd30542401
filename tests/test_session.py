"""
Test Suite for Scan Sessions
============================
Event sequences, failure handling, cancellation and single-flight
behaviour of ScanSession / ScanManager / ScanEngine.
"""

from __future__ import annotations

import pytest

from labscan.config import ScanConfig
from labscan.engine import ScanEngine
from labscan.manager import ScanManager
from labscan.models import ErrorEvent, StructuredEvent
from labscan.session import ScanSession, SessionState

WAIT = 5

REPORT_PAGE_1 = "\n".join([
    "City Hospital Laboratory",
    "Patient Age: 34 years",
    "Glucose (Fasting) 95 mg/dL 70-100",
    "Hemoglobin 13.5 g/dL 13.0-17.0",
])
REPORT_PAGE_2 = "\n".join([
    "WBC Count 7.2 x10^3/uL 4.0-11.0",
    "Total 42",
])
REPORT_PAGE_3 = "ALT 35 U/L"


def _config() -> ScanConfig:
    return ScanConfig(poll_interval=0.01)


def _manager(backend, listener) -> ScanManager:
    manager = ScanManager(backend, _config())
    manager.attach_listener(listener)
    return manager


# ═══════════════════════════════════════════════════════════════════════════════
# PDF SCANS
# ═══════════════════════════════════════════════════════════════════════════════


class TestPdfScan:
    """Test the PDF page loop."""

    def test_event_sequence_for_n_pages(self, make_backend, recorder):
        backend = make_backend(documents={
            "report.pdf": [REPORT_PAGE_1, REPORT_PAGE_2, REPORT_PAGE_3],
        })
        manager = _manager(backend, recorder)

        session = manager.start_scan({"source": "pdf", "uri": "report.pdf"})
        assert session.wait(WAIT)

        assert recorder.types == [
            "progress", "structured",
            "progress", "structured",
            "progress", "structured",
            "complete",
        ]
        pages = [(e.page, e.total_pages) for e in recorder.events[:-1]]
        assert pages == [(1, 3), (1, 3), (2, 3), (2, 3), (3, 3), (3, 3)]
        assert session.state == SessionState.TERMINATED

    def test_structured_payload(self, make_backend, recorder):
        backend = make_backend(documents={"report.pdf": [REPORT_PAGE_1]})
        manager = _manager(backend, recorder)

        manager.start_scan({"source": "pdf", "uri": "report.pdf"}).wait(WAIT)

        structured = recorder.events[1]
        assert isinstance(structured, StructuredEvent)
        assert structured.payload.raw_text == REPORT_PAGE_1
        assert [b.name for b in structured.payload.biomarkers] == [
            "Glucose (Fasting)", "Hemoglobin",
        ]

    def test_pages_rendered_at_double_scale_and_released(
        self, make_backend, recorder
    ):
        backend = make_backend(documents={"report.pdf": ["a", "b"]})
        manager = _manager(backend, recorder)

        manager.start_scan({"source": "pdf", "uri": "report.pdf"}).wait(WAIT)

        source = backend.document_source
        assert source.scales == [2.0, 2.0]
        assert all(r.closed for r in source.rasters)
        assert source.closed == ["report.pdf"]
        assert all(e.closed for e in backend.created_extractors)

    def test_file_uri_is_resolved(self, make_backend, recorder):
        backend = make_backend(documents={"/data/report.pdf": [REPORT_PAGE_3]})
        manager = _manager(backend, recorder)

        manager.start_scan(
            {"source": "pdf", "uri": "file:///data/report.pdf"}
        ).wait(WAIT)

        assert recorder.types == ["progress", "structured", "complete"]

    def test_empty_page_text_still_structured(self, make_backend, recorder):
        backend = make_backend(documents={"blank.pdf": [""]})
        manager = _manager(backend, recorder)

        manager.start_scan({"source": "pdf", "uri": "blank.pdf"}).wait(WAIT)

        assert recorder.types == ["progress", "structured", "complete"]
        assert recorder.events[1].payload.biomarkers == []

    def test_zero_page_document_completes(self, make_backend, recorder):
        backend = make_backend(documents={"empty.pdf": []})
        manager = _manager(backend, recorder)

        manager.start_scan({"source": "pdf", "uri": "empty.pdf"}).wait(WAIT)

        assert recorder.types == ["complete"]

    def test_missing_document_fails(self, make_backend, recorder):
        manager = _manager(make_backend(), recorder)

        manager.start_scan({"source": "pdf", "uri": "missing.pdf"}).wait(WAIT)

        assert recorder.types == ["error"]
        error = recorder.events[0]
        assert error.code == "scan_failed"
        assert error.message == "PDF not found at missing.pdf"

    def test_extraction_failure_aborts_scan(self, make_backend, recorder):
        backend = make_backend(documents={
            "report.pdf": [
                REPORT_PAGE_1,
                RuntimeError("OCR engine crashed"),
                REPORT_PAGE_3,
            ],
        })
        manager = _manager(backend, recorder)

        manager.start_scan({"source": "pdf", "uri": "report.pdf"}).wait(WAIT)

        assert recorder.types == ["progress", "structured", "progress", "error"]
        error = recorder.events[-1]
        assert error.code == "scan_failed"
        assert error.message == "OCR engine crashed"

        source = backend.document_source
        assert len(source.rasters) == 2
        assert all(r.closed for r in source.rasters)
        assert source.closed == ["report.pdf"]


# ═══════════════════════════════════════════════════════════════════════════════
# IMAGE SCANS
# ═══════════════════════════════════════════════════════════════════════════════


class TestImageScan:
    """Test the image loop."""

    def test_images_in_order(self, make_backend, recorder):
        backend = make_backend(images={
            "p1.jpg": REPORT_PAGE_1, "p2.jpg": REPORT_PAGE_2,
        })
        manager = _manager(backend, recorder)

        manager.start_scan({
            "source": "images",
            "uri": "p1.jpg",
            "imageUris": ["p1.jpg", "p2.jpg"],
        }).wait(WAIT)

        assert recorder.types == [
            "progress", "structured", "progress", "structured", "complete",
        ]
        assert [e.page for e in recorder.events[:-1]] == [1, 1, 2, 2]
        assert all(e.total_pages == 2 for e in recorder.events[:-1])

    def test_undecodable_image_skipped(self, make_backend, recorder):
        backend = make_backend(images={
            "p1.jpg": REPORT_PAGE_1, "p3.jpg": REPORT_PAGE_3,
        })
        manager = _manager(backend, recorder)

        manager.start_scan({
            "source": "images",
            "uri": "p1.jpg",
            "imageUris": ["p1.jpg", "broken.jpg", "p3.jpg"],
        }).wait(WAIT)

        assert recorder.types == [
            "progress", "structured", "progress", "structured", "complete",
        ]
        assert [(e.page, e.total_pages) for e in recorder.events[:-1]] == [
            (1, 3), (1, 3), (3, 3), (3, 3),
        ]
        assert all(r.closed for r in backend.image_source.rasters)

    def test_blank_image_entry_keeps_its_slot(self, make_backend, recorder):
        backend = make_backend(images={"p2.jpg": REPORT_PAGE_3})
        manager = _manager(backend, recorder)

        manager.start_scan({
            "source": "images", "uri": "", "imageUris": ["", "p2.jpg"],
        }).wait(WAIT)

        assert recorder.types == ["progress", "structured", "complete"]
        assert [(e.page, e.total_pages) for e in recorder.events[:-1]] == [
            (2, 2), (2, 2),
        ]

    def test_single_image_from_primary_location(self, make_backend, recorder):
        backend = make_backend(images={"photo.png": REPORT_PAGE_3})
        manager = _manager(backend, recorder)

        manager.start_scan({"source": "images", "uri": "photo.png"}).wait(WAIT)

        assert recorder.types == ["progress", "structured", "complete"]
        assert recorder.events[1].payload.biomarkers[0].name == "ALT"

    def test_no_images_supplied(self, make_backend, recorder):
        manager = _manager(make_backend(), recorder)

        manager.start_scan(
            {"source": "images", "uri": "", "imageUris": []}
        ).wait(WAIT)

        assert recorder.types == ["error"]
        assert recorder.events[0].code == "scan_failed"
        assert recorder.events[0].message == "No images supplied"

    def test_extraction_failure_on_image(self, make_backend, recorder):
        backend = make_backend(images={"p1.jpg": ValueError("bad raster")})
        manager = _manager(backend, recorder)

        manager.start_scan({"source": "images", "uri": "p1.jpg"}).wait(WAIT)

        assert recorder.types == ["error"]
        assert recorder.events[0].message == "bad raster"
        assert backend.image_source.rasters[0].closed


# ═══════════════════════════════════════════════════════════════════════════════
# SESSION LIFECYCLE
# ═══════════════════════════════════════════════════════════════════════════════


class TestSessionLifecycle:
    """Test the IDLE → RUNNING → TERMINATED state machine."""

    def test_invalid_request_never_runs(self, make_backend, recorder):
        session = ScanSession(
            {"source": "fax", "uri": "x"}, make_backend(), recorder, _config()
        )
        assert session.state == SessionState.IDLE

        assert session.start() is False
        assert session.state == SessionState.TERMINATED
        assert recorder.types == ["error"]
        assert recorder.events[0].code == "invalid_request"
        assert recorder.events[0].message == "Invalid scan arguments"

    def test_session_cannot_be_restarted(self, make_backend, recorder):
        backend = make_backend(documents={"r.pdf": ["x"]})
        session = ScanSession(
            {"source": "pdf", "uri": "r.pdf"}, backend, recorder, _config()
        )
        assert session.start() is True
        assert session.wait(WAIT)

        with pytest.raises(RuntimeError):
            session.start()

    def test_run_requires_start(self, make_backend, recorder):
        session = ScanSession(
            {"source": "pdf", "uri": "r.pdf"}, make_backend(), recorder
        )
        with pytest.raises(RuntimeError):
            session.run()


# ═══════════════════════════════════════════════════════════════════════════════
# CANCELLATION & SINGLE-FLIGHT
# ═══════════════════════════════════════════════════════════════════════════════


class TestCancellation:
    """Test cooperative cancellation."""

    def test_cancel_mid_extraction_is_silent(
        self, make_backend, recorder, gated_extractor
    ):
        backend = make_backend(
            documents={"report.pdf": [REPORT_PAGE_1, REPORT_PAGE_2]},
            extractors=[gated_extractor],
        )
        manager = _manager(backend, recorder)

        session = manager.start_scan({"source": "pdf", "uri": "report.pdf"})
        assert gated_extractor.started.wait(WAIT)

        manager.cancel_scan()
        gated_extractor.release.set()
        assert session.wait(WAIT)

        # Progress for page 1 went out before OCR; the late OCR result
        # and everything after it are discarded.
        assert recorder.types == ["progress"]
        assert session.cancel_requested
        assert session.state == SessionState.TERMINATED

        source = backend.document_source
        assert all(r.closed for r in source.rasters)
        assert source.closed == ["report.pdf"]
        assert gated_extractor.closed

    def test_raster_held_until_abandoned_recognition_settles(
        self, make_backend, recorder, gated_extractor
    ):
        backend = make_backend(
            documents={"report.pdf": [REPORT_PAGE_1]},
            extractors=[gated_extractor],
        )
        manager = _manager(backend, recorder)

        session = manager.start_scan({"source": "pdf", "uri": "report.pdf"})
        assert gated_extractor.started.wait(WAIT)
        manager.cancel_scan()

        # Recognition is still running on the raster
        assert not session.wait(0.2)
        raster = backend.document_source.rasters[0]
        assert not raster.closed

        gated_extractor.release.set()
        assert session.wait(WAIT)
        assert raster.closed
        assert recorder.types == ["progress"]

    def test_cancel_is_idempotent(self, make_backend, recorder):
        manager = _manager(make_backend(), recorder)
        manager.cancel_scan()
        manager.cancel_scan()
        assert manager.current_session is None

    def test_fresh_scan_after_cancel(
        self, make_backend, recorder, gated_extractor
    ):
        backend = make_backend(
            documents={"report.pdf": [REPORT_PAGE_1]},
            extractors=[gated_extractor],
        )
        manager = _manager(backend, recorder)

        first = manager.start_scan({"source": "pdf", "uri": "report.pdf"})
        assert gated_extractor.started.wait(WAIT)
        manager.cancel_scan()
        gated_extractor.release.set()
        assert first.wait(WAIT)

        seen_before = len(recorder.events)
        second = manager.start_scan({"source": "pdf", "uri": "report.pdf"})
        assert second.wait(WAIT)

        assert second is not first
        assert recorder.types[seen_before:] == [
            "progress", "structured", "complete",
        ]

    def test_second_start_supersedes_first(
        self, make_backend, recorder, gated_extractor
    ):
        backend = make_backend(
            documents={"second.pdf": [REPORT_PAGE_3]},
            images={"first.jpg": REPORT_PAGE_1},
            extractors=[gated_extractor],
        )
        manager = _manager(backend, recorder)

        first = manager.start_scan({"source": "images", "uri": "first.jpg"})
        assert gated_extractor.started.wait(WAIT)

        second = manager.start_scan({"source": "pdf", "uri": "second.pdf"})
        assert first.cancel_requested
        assert second.wait(WAIT)

        gated_extractor.release.set()
        assert first.wait(WAIT)

        assert recorder.types == ["progress", "structured", "complete"]
        assert recorder.events[1].payload.biomarkers[0].name == "ALT"
        assert manager.current_session is second


# ═══════════════════════════════════════════════════════════════════════════════
# LISTENER BUFFERING
# ═══════════════════════════════════════════════════════════════════════════════


class TestListenerBuffering:
    """Test start buffering before a listener attaches."""

    def test_start_before_listener_is_replayed_once(
        self, make_backend, recorder
    ):
        backend = make_backend(documents={"report.pdf": [REPORT_PAGE_3]})
        manager = ScanManager(backend, _config())

        assert manager.start_scan({"source": "pdf", "uri": "report.pdf"}) is None
        assert manager.has_pending_start

        session = manager.attach_listener(recorder)
        assert session is not None
        assert session.wait(WAIT)
        assert not manager.has_pending_start
        assert recorder.types == ["progress", "structured", "complete"]

        # Re-attaching does not replay again
        assert manager.attach_listener(recorder) is None
        assert manager.current_session is session

    def test_only_latest_buffered_start_kept(self, make_backend, recorder):
        backend = make_backend(documents={
            "old.pdf": ["Glucose 95 mg/dL 70-100"],
            "new.pdf": [REPORT_PAGE_3],
        })
        manager = ScanManager(backend, _config())

        manager.start_scan({"source": "pdf", "uri": "old.pdf"})
        manager.start_scan({"source": "pdf", "uri": "new.pdf"})

        manager.attach_listener(recorder).wait(WAIT)
        assert backend.document_source.opened == ["new.pdf"]

    def test_invalid_buffered_start_reports_on_attach(
        self, make_backend, recorder
    ):
        manager = ScanManager(make_backend(), _config())
        manager.start_scan({"source": "pdf"})

        session = manager.attach_listener(recorder)
        assert session.is_terminated
        assert recorder.types == ["error"]
        assert recorder.events[0].code == "invalid_request"

    def test_detach_cancels_and_clears(
        self, make_backend, recorder, gated_extractor
    ):
        backend = make_backend(
            documents={"report.pdf": [REPORT_PAGE_1]},
            extractors=[gated_extractor],
        )
        manager = _manager(backend, recorder)

        session = manager.start_scan({"source": "pdf", "uri": "report.pdf"})
        assert gated_extractor.started.wait(WAIT)

        manager.detach_listener()
        gated_extractor.release.set()
        assert session.wait(WAIT)

        assert session.cancel_requested
        assert not manager.has_listener
        assert manager.current_session is None
        assert "complete" not in recorder.types

    def test_detach_with_stale_listener_is_ignored(
        self, make_backend, recorder
    ):
        manager = _manager(make_backend(), recorder)
        manager.detach_listener(lambda event: None)
        assert manager.has_listener

    def test_failing_listener_does_not_break_scan(self, make_backend):
        backend = make_backend(documents={"report.pdf": ["a", "b"]})
        calls = []

        def listener(event):
            calls.append(event.type)
            raise RuntimeError("listener bug")

        manager = _manager(backend, listener)
        manager.start_scan({"source": "pdf", "uri": "report.pdf"}).wait(WAIT)

        assert calls == [
            "progress", "structured", "progress", "structured", "complete",
        ]


# ═══════════════════════════════════════════════════════════════════════════════
# ENGINE
# ═══════════════════════════════════════════════════════════════════════════════


class TestScanEngine:
    """Test the synchronous engine facade."""

    def _engine(self, backend) -> ScanEngine:
        return ScanEngine(_config(), backend=backend, configure_logging=False)

    def test_scan_collects_all_events(self, make_backend):
        backend = make_backend(documents={
            "report.pdf": [REPORT_PAGE_1, REPORT_PAGE_2],
        })
        events = self._engine(backend).scan({"source": "pdf", "uri": "report.pdf"})

        assert [e.type for e in events] == [
            "progress", "structured", "progress", "structured", "complete",
        ]
        biomarkers = [
            b.name
            for e in events if isinstance(e, StructuredEvent)
            for b in e.payload.biomarkers
        ]
        assert biomarkers == ["Glucose (Fasting)", "Hemoglobin", "WBC Count"]

    def test_scan_invalid_request(self, make_backend):
        events = self._engine(make_backend()).scan({"source": "pdf"})
        assert len(events) == 1
        assert isinstance(events[0], ErrorEvent)
        assert events[0].code == "invalid_request"

    def test_closing_iterator_cancels_scan(
        self, make_backend, gated_extractor
    ):
        backend = make_backend(
            documents={"report.pdf": [REPORT_PAGE_1, REPORT_PAGE_2]},
            extractors=[gated_extractor],
        )
        engine = self._engine(backend)

        events = engine.iter_scan({"source": "pdf", "uri": "report.pdf"})
        first = next(events)
        assert first.type == "progress"
        session = engine.manager.current_session

        events.close()
        gated_extractor.release.set()
        assert session.wait(WAIT)
        assert session.cancel_requested
        assert not engine.manager.has_listener
