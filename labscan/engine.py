"""
Scan Engine
===========
Top-level object tying configuration, logging, collaborators and the
ScanManager together.

Usage:
    engine = ScanEngine(ScanConfig())
    for event in engine.iter_scan({"source": "pdf", "uri": "report.pdf"}):
        print(event.to_wire())

Architecture:
    ScanRequest → ScanManager → ScanSession → PageSource →
    TextExtractor → BiomarkerParser → ScanEvent stream
"""

from __future__ import annotations

import logging
from typing import Any, Iterator, Optional

from .backends import default_backend
from .channel import QueueEventListener
from .collaborators import ScanBackend
from .config import ScanConfig, setup_logging
from .manager import ScanManager
from .models import ScanEvent

logger = logging.getLogger(__name__)


class ScanEngine:
    """
    Library facade over ScanManager.

    ``manager`` is the asynchronous, listener-based API. ``iter_scan`` and
    ``scan`` run one scan to completion on behalf of synchronous callers.
    """

    def __init__(
        self,
        config: Optional[ScanConfig] = None,
        backend: Optional[ScanBackend] = None,
        configure_logging: bool = True,
    ):
        self.config = config or ScanConfig()
        if configure_logging:
            setup_logging(self.config)
        self.backend = backend or default_backend(self.config)
        self.manager = ScanManager(self.backend, self.config)

    def iter_scan(self, arguments: Any) -> Iterator[ScanEvent]:
        """
        Run one scan and yield its events as they arrive.

        Closing the generator early (or interrupting it) cancels the scan.
        """
        listener = QueueEventListener()
        self.manager.attach_listener(listener)
        try:
            session = self.manager.start_scan(arguments)
            if session is None:
                return
            yield from listener.drain(
                session, poll_interval=max(self.config.poll_interval, 0.01)
            )
        finally:
            self.manager.detach_listener()

    def scan(self, arguments: Any) -> list[ScanEvent]:
        """Run one scan and return all of its events."""
        return list(self.iter_scan(arguments))

    def cancel(self):
        self.manager.cancel_scan()
