"""
Event Channel
=============
Adapters between ScanManager listeners and outside consumers: a
thread-safe queue listener, and Server-Sent Events framing for the
HTTP service.
"""

from __future__ import annotations

import json
import logging
import queue
from typing import Iterator, Optional

from .models import ScanEvent
from .session import ScanSession

logger = logging.getLogger(__name__)


def format_sse(event: ScanEvent) -> str:
    """Frame an event as one Server-Sent Events message."""
    data = json.dumps(event.to_wire(), ensure_ascii=False)
    return f"event: {event.type}\ndata: {data}\n\n"


class QueueEventListener:
    """
    Listener that buffers events in a queue for another thread to consume.

    Pass the instance to ``ScanManager.attach_listener``; read events with
    ``get`` or ``drain``.
    """

    def __init__(self):
        self._queue: queue.Queue = queue.Queue()

    def __call__(self, event: ScanEvent):
        self._queue.put(event)

    def get(self, timeout: Optional[float] = None) -> Optional[ScanEvent]:
        """Next event, or None if nothing arrived within ``timeout``."""
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(
        self,
        session: ScanSession,
        poll_interval: float = 0.1,
    ) -> Iterator[ScanEvent]:
        """
        Yield the events of ``session`` until it ends.

        Stops after a terminal event, or once the session has terminated
        without one (cancellation) and the queue is empty.
        """
        while True:
            event = self.get(timeout=poll_interval)
            if event is not None:
                yield event
                if event.is_terminal:
                    return
                continue

            if session.is_terminated:
                # Flush anything emitted right before termination
                while True:
                    event = self.get(timeout=0)
                    if event is None:
                        return
                    yield event
                    if event.is_terminal:
                        return
