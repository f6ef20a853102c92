from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from geo import Location

"""
Canonical shapes shared across the backend.

JSON uses camelCase keys (the web client's contract); Python code uses the
snake_case attribute names.
"""


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Partnership(_CamelModel):
    model_config = ConfigDict(frozen=True)

    role: str
    name: str


class Event(_CamelModel):
    """
    One normalized occurrence from the upstream feed.
    Immutable once built; every instance carries a usable location.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    short_name: Optional[str] = None
    description: str = ""
    short_description: Optional[str] = None
    location: Location
    location_name: str = ""
    location_address: str = ""
    categories: tuple[str, ...] = ()
    themes: tuple[str, ...] = ()
    features: tuple[str, ...] = ()
    # Kept as the upstream strings; they may not parse.
    start_date: str = ""
    end_date: str = ""
    is_free: bool = False
    is_accessible: bool = False
    reservations_required: bool = False
    price: Optional[str] = None
    price_low: Optional[float] = None
    price_high: Optional[float] = None
    partnerships: tuple[Partnership, ...] = ()
    website: Optional[str] = None
    email: Optional[str] = None
    telephone: Optional[str] = None
    image_url: Optional[str] = None


class ExtractedFilters(_CamelModel):
    """
    Search criteria for one request.

    `is_free` / `is_accessible` are tri-state: None means no preference.
    `themes` / `categories` are limited to the vocabulary sent with the request.
    """

    date_start: Optional[str] = None
    date_end: Optional[str] = None
    is_free: Optional[bool] = None
    is_accessible: Optional[bool] = None
    themes: Optional[list[str]] = None
    categories: Optional[list[str]] = None
    keywords: Optional[list[str]] = None

    def has_criteria(self) -> bool:
        return bool(
            self.date_start
            or self.date_end
            or self.is_free is not None
            or self.is_accessible is not None
            or self.themes
            or self.categories
            or self.keywords
        )


class ChatTurn(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class RejectedRecord(BaseModel):
    """Normalizer outcome for an upstream row that cannot become an Event."""

    record_id: str = ""
    reason: str


class EventsResponse(BaseModel):
    events: list[Event] = Field(default_factory=list)
