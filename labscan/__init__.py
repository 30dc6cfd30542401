"""
Lab Report Scanner
==================
Turns scanned lab reports (PDF documents or photographed pages) into a
stream of structured biomarker events.

Architecture:
    - Page Sources: Scoped iteration over PDF pages or discrete images
    - Scan Session: Single-flight, cancelable page loop emitting events
    - Biomarker Parser: Line-oriented text → biomarker records
    - Scan Manager: Listener attachment and start buffering for callers
    - Event Channel: Wire serialization for CLI / HTTP consumers

Version: 1.0.0
"""

__version__ = "1.0.0"
