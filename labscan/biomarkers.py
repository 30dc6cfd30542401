"""
Biomarker Parser
================
Deterministic line parser that turns recognized lab report text into
biomarker records (name, value, unit, reference range).

Each line is handled on its own; output order follows line order.
"""

from __future__ import annotations

import logging
import re
from typing import Optional

from .models import BiomarkerRecord

logger = logging.getLogger(__name__)

# ─── Patterns ─────────────────────────────────────────────────────────────────

# Signed decimal literal, "." or "," as decimal separator
_NUMBER = r"[+\-]?[0-9]+(?:[.,][0-9]+)?"

# "<name> [:|-] <number><remainder>", e.g. "Hemoglobin: 13.5 g/dL 13-17"
VALUE_PATTERN = re.compile(
    r"^\s*([A-Za-z][A-Za-z0-9 .%/µ×^()+'\-]+?)"
    r"(?:\s*[:\-]\s*)?"
    rf"({_NUMBER})"
    r"(.*)$",
    re.IGNORECASE,
)

# "70-100", "4.0 – 11.0"
RANGE_PATTERN = re.compile(rf"({_NUMBER})\s*[-–]\s*({_NUMBER})")

_WHITESPACE_RUN = re.compile(r"\s+")

# Header/footer labels that look like "label: number" but are not results
METADATA_KEYWORDS = (
    "patient",
    "bill",
    "collected",
    "report",
    "release",
    "specimen",
    "registration",
    "lab",
    "ref",
    "uhid",
    "doctor",
    "hospital",
    "age",
    "gender",
    "date",
    "method",
    "processing",
    "session",
)

MEASUREMENT_SYMBOLS = "%/µxX^"

MIN_LINE_LENGTH = 3


class BiomarkerParser:
    """
    Stateless parser from raw report text to BiomarkerRecord lists.

    A line becomes a record only if it carries a reference range or a
    unit that looks like a unit; bare "word number" lines are dropped.
    """

    def parse(self, raw_text: str) -> list[BiomarkerRecord]:
        """Parse every line of ``raw_text``, preserving line order."""
        records: list[BiomarkerRecord] = []
        for line in raw_text.splitlines():
            record = self.parse_line(line)
            if record is not None:
                records.append(record)
        return records

    def parse_line(self, line: str) -> Optional[BiomarkerRecord]:
        """Parse a single line, or return None if it is not a biomarker."""
        trimmed = line.strip()
        if len(trimmed) < MIN_LINE_LENGTH:
            return None

        match = VALUE_PATTERN.search(trimmed)
        if not match:
            return None

        name = match.group(1).strip()
        if not name or self._is_metadata(name):
            return None

        value = match.group(2).strip()
        try:
            float(value.replace(",", "."))
        except ValueError:
            return None

        remainder = (match.group(3) or "").strip()
        reference_min = None
        reference_max = None

        range_match = RANGE_PATTERN.search(remainder)
        if range_match:
            reference_min = range_match.group(1)
            reference_max = range_match.group(2)
            remainder = (
                remainder[:range_match.start()]
                + " "
                + remainder[range_match.end():]
            ).strip()

        unit = self._sanitize_unit(remainder)

        if reference_min is None and not self._looks_like_unit(unit):
            logger.debug(f"Rejected line without unit or range: {trimmed!r}")
            return None

        return BiomarkerRecord(
            name=name,
            value=value,
            unit=unit or None,
            reference_min=reference_min,
            reference_max=reference_max,
        )

    # ─── Helpers ──────────────────────────────────────────────────────────

    @staticmethod
    def _is_metadata(name: str) -> bool:
        lower_name = name.lower()
        return any(keyword in lower_name for keyword in METADATA_KEYWORDS)

    @staticmethod
    def _sanitize_unit(candidate: str) -> str:
        unit = candidate.strip().strip("- ")
        return _WHITESPACE_RUN.sub(" ", unit)

    @staticmethod
    def _looks_like_unit(unit: str) -> bool:
        if not unit:
            return False
        return any(c.isalpha() or c in MEASUREMENT_SYMBOLS for c in unit)


_default_parser = BiomarkerParser()


def parse_biomarkers(raw_text: str) -> list[BiomarkerRecord]:
    """Parse ``raw_text`` with a shared BiomarkerParser."""
    return _default_parser.parse(raw_text)
