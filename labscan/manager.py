"""
Scan Manager
============
Caller-facing entry point: start and cancel scans, attach a listener.

Policies:
    - Single-flight: starting a scan cancels the running one first
      (without waiting for it); the superseded session never emits again.
    - Start buffering: a start issued before any listener is attached is
      kept in a one-slot buffer and replayed once when a listener attaches.
    - Detaching the listener cancels the running scan and drops any
      buffered start.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Optional

from .biomarkers import BiomarkerParser
from .collaborators import ScanBackend
from .config import ScanConfig
from .models import ScanEvent
from .session import ScanSession

logger = logging.getLogger(__name__)

Listener = Callable[[ScanEvent], None]

_NO_PENDING = object()


class ScanManager:
    """Owns the current ScanSession and the event listener."""

    def __init__(
        self,
        backend: ScanBackend,
        config: Optional[ScanConfig] = None,
        parser: Optional[BiomarkerParser] = None,
    ):
        self.backend = backend
        self.config = config or ScanConfig()
        self.parser = parser or BiomarkerParser()

        self._lock = threading.RLock()
        self._listener: Optional[Listener] = None
        self._session: Optional[ScanSession] = None
        self._pending: Any = _NO_PENDING

    # ─── Listener ─────────────────────────────────────────────────────────

    @property
    def has_listener(self) -> bool:
        with self._lock:
            return self._listener is not None

    @property
    def has_pending_start(self) -> bool:
        with self._lock:
            return self._pending is not _NO_PENDING

    @property
    def current_session(self) -> Optional[ScanSession]:
        with self._lock:
            return self._session

    def attach_listener(self, listener: Listener) -> Optional[ScanSession]:
        """
        Attach ``listener`` and replay a buffered start, if any.

        Returns:
            The session started from the buffered request, or None.
        """
        with self._lock:
            self._listener = listener
            pending, self._pending = self._pending, _NO_PENDING

        logger.debug("Listener attached")
        if pending is _NO_PENDING:
            return None

        logger.info("Replaying buffered scan request")
        return self.start_scan(pending)

    def detach_listener(self, listener: Optional[Listener] = None):
        """
        Cancel the running scan, forget the listener and any buffered start.

        If ``listener`` is given, nothing happens unless it is the one
        currently attached.
        """
        with self._lock:
            if listener is not None and listener is not self._listener:
                return
            self._listener = None
            self._pending = _NO_PENDING
        self.cancel_scan()
        logger.debug("Listener detached")

    # ─── Scans ────────────────────────────────────────────────────────────

    def start_scan(self, arguments: Any) -> Optional[ScanSession]:
        """
        Start a scan for ``arguments`` (a ScanRequest or a mapping).

        Fire-and-forget: the outcome arrives as events on the listener.

        Returns:
            The new session, or None if the request was buffered because
            no listener is attached yet.
        """
        with self._lock:
            if self._listener is None:
                if self._pending is not _NO_PENDING:
                    logger.info("Replacing buffered scan request")
                self._pending = arguments
                logger.info("No listener attached — scan request buffered")
                return None

            previous = self._session
            session = ScanSession(
                arguments,
                self.backend,
                sink=lambda event: self._deliver(session, event),
                config=self.config,
                parser=self.parser,
            )
            self._session = session

        if previous is not None and not previous.is_terminated:
            logger.info(
                f"Superseding session {previous.session_id} "
                f"with session {session.session_id}"
            )
            previous.cancel()

        session.start()
        return session

    def cancel_scan(self):
        """Cancel the current scan. No-op when nothing is running."""
        with self._lock:
            session, self._session = self._session, None
        if session is not None and not session.is_terminated:
            session.cancel()

    # ─── Delivery ─────────────────────────────────────────────────────────

    def _deliver(self, session: ScanSession, event: ScanEvent):
        with self._lock:
            if session is not self._session:
                logger.debug(
                    f"Dropped {event.type} event from superseded "
                    f"session {session.session_id}"
                )
                return
            listener = self._listener

        if listener is None:
            logger.debug(f"Dropped {event.type} event: no listener attached")
            return

        try:
            listener(event)
        except Exception as e:
            logger.error(
                f"Listener failed on {event.type} event from session "
                f"{session.session_id}: {e}",
                exc_info=True,
            )
