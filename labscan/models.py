"""
Data Models
===========
Pydantic models for scan requests, biomarker records and scan events.
Events serialize to the camelCase wire format consumed by listeners.
"""

from __future__ import annotations

from collections.abc import Mapping
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union
from urllib.parse import unquote, urlparse

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
    model_validator,
)

from .exceptions import InvalidRequestError


# ─── Helpers ──────────────────────────────────────────────────────────────────


def location_to_path(location: str) -> str:
    """Convert a ``file://`` URI to a filesystem path; other values pass through."""
    parsed = urlparse(location)
    if parsed.scheme == "file":
        return unquote(parsed.path) or location
    return location


def _to_float(literal: str) -> float:
    return float(literal.replace(",", "."))


# ─── Enums ────────────────────────────────────────────────────────────────────


class ScanSource(str, Enum):
    """Kind of input a scan reads from."""
    PDF = "pdf"
    IMAGES = "images"


# ─── Request Model ────────────────────────────────────────────────────────────


class ScanRequest(BaseModel):
    """
    Arguments of a single scan.

    ``image_locations`` is only consulted for ``ScanSource.IMAGES``; when it
    is empty the primary location is scanned as the only image.
    """
    model_config = ConfigDict(frozen=True)

    source: ScanSource
    primary_location: str = Field(
        validation_alias=AliasChoices("uri", "primaryLocation", "primary_location"),
        serialization_alias="uri",
    )
    image_locations: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices(
            "imageUris", "imageLocations", "image_locations"
        ),
        serialization_alias="imageUris",
    )

    @field_validator("source", mode="before")
    @classmethod
    def _normalize_source(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("image_locations", mode="before")
    @classmethod
    def _keep_string_locations(cls, value: Any) -> list[str]:
        if not isinstance(value, (list, tuple)):
            return []
        return [v for v in value if isinstance(v, str)]

    @classmethod
    def from_arguments(cls, arguments: Any) -> ScanRequest:
        """
        Build a request from loosely typed start arguments.

        Raises:
            InvalidRequestError: If the arguments are not a mapping, the
                source is unknown, or ``uri`` is missing or not a string.
        """
        if isinstance(arguments, ScanRequest):
            return arguments
        if not isinstance(arguments, Mapping):
            raise InvalidRequestError("Invalid scan arguments")
        try:
            return cls.model_validate(dict(arguments))
        except ValidationError as e:
            raise InvalidRequestError("Invalid scan arguments") from e

    def primary_path(self) -> str:
        return location_to_path(self.primary_location)

    def resolved_image_locations(self) -> list[str]:
        """
        Image paths to scan, in order.

        Explicit entries are kept as given, blank ones included, so every
        entry keeps its page slot. Without them the primary location is
        the only image, unless it is blank.
        """
        if self.image_locations:
            return [location_to_path(t) for t in self.image_locations]
        if not self.primary_location.strip():
            return []
        return [location_to_path(self.primary_location)]


# ─── Biomarker Models ─────────────────────────────────────────────────────────


class BiomarkerRecord(BaseModel):
    """A single measurement parsed from one line of report text."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str = Field(min_length=1)
    value: str = Field(description="Numeric literal exactly as printed")
    unit: Optional[str] = None
    reference_min: Optional[str] = Field(default=None, alias="referenceMin")
    reference_max: Optional[str] = Field(default=None, alias="referenceMax")

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("name must not be blank")
        return value

    @model_validator(mode="after")
    def _check_range(self) -> BiomarkerRecord:
        if (self.reference_min is None) != (self.reference_max is None):
            raise ValueError(
                "referenceMin and referenceMax must be given together"
            )
        return self

    @property
    def numeric_value(self) -> float:
        return _to_float(self.value)

    @property
    def in_reference_range(self) -> Optional[bool]:
        """Whether the value lies inside the reference range, if one is known."""
        if self.reference_min is None or self.reference_max is None:
            return None
        low = _to_float(self.reference_min)
        high = _to_float(self.reference_max)
        return low <= self.numeric_value <= high


class Payload(BaseModel):
    """Text and biomarkers recognized on one page or image."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    raw_text: str = Field(default="", alias="rawText")
    biomarkers: list[BiomarkerRecord] = Field(default_factory=list)


# ─── Event Models ─────────────────────────────────────────────────────────────


class _EventBase(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    @property
    def is_terminal(self) -> bool:
        return False

    def to_wire(self) -> dict:
        """Serialize to the listener wire format (camelCase, no null fields)."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class ProgressEvent(_EventBase):
    """Emitted when work on a page or image begins."""
    type: Literal["progress"] = "progress"
    page: int = Field(ge=1)
    total_pages: int = Field(ge=0, alias="totalPages")


class StructuredEvent(_EventBase):
    """Emitted with the recognized text and biomarkers of a page or image."""
    type: Literal["structured"] = "structured"
    page: int = Field(ge=1)
    total_pages: int = Field(ge=0, alias="totalPages")
    payload: Payload


class CompleteEvent(_EventBase):
    """Terminal event: every page or image was processed."""
    type: Literal["complete"] = "complete"

    @property
    def is_terminal(self) -> bool:
        return True


class ErrorEvent(_EventBase):
    """Terminal event: the scan was rejected or failed."""
    type: Literal["error"] = "error"
    code: str
    message: str

    @property
    def is_terminal(self) -> bool:
        return True


ScanEvent = Annotated[
    Union[ProgressEvent, StructuredEvent, CompleteEvent, ErrorEvent],
    Field(discriminator="type"),
]

_EVENT_ADAPTER: TypeAdapter = TypeAdapter(ScanEvent)


def parse_event(data: dict) -> ScanEvent:
    """Validate a wire dict back into the matching event model."""
    return _EVENT_ADAPTER.validate_python(data)
