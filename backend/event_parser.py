from __future__ import annotations

import json
import logging
import re
from typing import Any, Iterable, Optional, Union

from event_models import Event, Partnership, RejectedRecord
from geo import Location, coerce_coordinate

logger = logging.getLogger(__name__)

IMAGE_BASE_URL = "https://secure.toronto.ca/c3api_data/v2/DataAccess.svc/festivals_events/images/"

PARTNERSHIP_ROLES = {
    "event_presented_by": "Presented by",
    "event_sponsored_by": "Sponsored by",
    "event_supported_by": "Supported by",
}
DEFAULT_PARTNERSHIP_ROLE = "Partner"

ParseOutcome = Union[Event, RejectedRecord]


def _maybe_json(value: Any) -> Any:
    if isinstance(value, str):
        s = value.strip()
        if not s:
            return None
        try:
            return json.loads(s)
        except ValueError:
            return None
    return value


def parse_gps(location_gps: Any) -> Optional[Location]:
    """
    Parse the `location_gps` field of one sub-location.

    Upstream sends a JSON string like '[{"gps_lat":43.59,"gps_lng":-79.51}]'; an
    already-decoded list or dict is accepted too. Only the first point is used.
    """
    data = _maybe_json(location_gps)
    if isinstance(data, list):
        data = data[0] if data else None
    if not isinstance(data, dict):
        return None
    lat = coerce_coordinate(data.get("gps_lat"), limit=90.0)
    lng = coerce_coordinate(data.get("gps_lng"), limit=180.0)
    if lat is None or lng is None:
        return None
    return Location(lat=lat, lng=lng)


def parse_tag_list(value: Any) -> list[str]:
    """Tags arrive as a list or a comma-joined string; trim and drop blanks."""
    if not value:
        return []
    if isinstance(value, str):
        parts: Iterable[Any] = value.split(",")
    elif isinstance(value, (list, tuple)):
        parts = value
    else:
        return []
    return [str(p).strip() for p in parts if p is not None and str(p).strip()]


def parse_price_value(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    cleaned = re.sub(r"[^0-9.]", "", str(value))
    if not cleaned:
        return None
    try:
        return float(cleaned)
    except ValueError:
        return None


def format_price_range(low: Optional[float], high: Optional[float]) -> Optional[str]:
    if low is None and high is None:
        return None
    if low is not None and high is not None and low != high:
        return f"${low:.2f} - ${high:.2f}"
    v = low if low is not None else high
    return f"${v:.2f}"


def normalize_partnership_role(role: Any) -> str:
    return PARTNERSHIP_ROLES.get(str(role or "").strip(), DEFAULT_PARTNERSHIP_ROLE)


def parse_partnerships(partnerships: Any) -> list[Partnership]:
    out: list[Partnership] = []
    for p in partnerships or []:
        if not isinstance(p, dict):
            continue
        name = str(p.get("text") or "").strip()
        if not name:
            continue
        out.append(Partnership(role=normalize_partnership_role(p.get("value")), name=name))
    return out


def _image_url(images: Any) -> Optional[str]:
    if not isinstance(images, list) or not images:
        return None
    first = images[0] if isinstance(images[0], dict) else {}
    bin_id = str(first.get("bin_id") or "").strip()
    return f"{IMAGE_BASE_URL}{bin_id}" if bin_id else None


def _yes(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() == "yes"


def _opt_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    s = str(value)
    return s if s.strip() else None


def parse_event_record(raw: Any) -> ParseOutcome:
    """
    Turn one raw feed row into an Event, or a RejectedRecord saying why not.

    The first sub-location with usable GPS wins. Rows without any are rejected
    rather than placed at a fallback point.
    """
    if not isinstance(raw, dict):
        return RejectedRecord(reason=f"record is {type(raw).__name__}, not an object")

    record_id = str(raw.get("id") or "").strip()
    name = str(raw.get("event_name") or "").strip()
    if not record_id:
        return RejectedRecord(record_id="", reason=f"missing id (name={name!r})")

    locations = _maybe_json(raw.get("event_locations"))
    if isinstance(locations, dict):
        locations = [locations]
    if not isinstance(locations, list):
        locations = []

    chosen: Optional[dict[str, Any]] = None
    gps: Optional[Location] = None
    for loc in locations:
        if not isinstance(loc, dict):
            continue
        gps = parse_gps(loc.get("location_gps"))
        if gps is not None:
            chosen = loc
            break
    if chosen is None or gps is None:
        return RejectedRecord(record_id=record_id, reason=f"no valid GPS coordinates for {name!r}")

    price_low = parse_price_value(raw.get("event_price_low"))
    price_high = parse_price_value(raw.get("event_price_high"))
    display_price = _opt_str(raw.get("event_price"))

    try:
        return Event(
            id=record_id,
            name=name,
            short_name=_opt_str(raw.get("short_name")),
            description=str(raw.get("event_description") or ""),
            short_description=_opt_str(raw.get("short_description")),
            location=gps,
            location_name=str(chosen.get("location_name") or ""),
            location_address=str(chosen.get("location_address") or ""),
            categories=tuple(parse_tag_list(raw.get("event_category"))),
            themes=tuple(parse_tag_list(raw.get("event_theme"))),
            features=tuple(parse_tag_list(raw.get("event_features"))),
            start_date=str(raw.get("event_startdate") or ""),
            end_date=str(raw.get("event_enddate") or ""),
            is_free=_yes(raw.get("free_event")),
            is_accessible=_yes(raw.get("accessible_event")),
            reservations_required=_yes(raw.get("reservations_required")),
            price=display_price if display_price is not None else format_price_range(price_low, price_high),
            price_low=price_low,
            price_high=price_high,
            partnerships=tuple(parse_partnerships(raw.get("partnerships"))),
            website=_opt_str(raw.get("event_website")),
            email=_opt_str(raw.get("event_email")),
            telephone=_opt_str(raw.get("event_telephone")),
            image_url=_image_url(raw.get("event_image")),
        )
    except Exception as e:
        return RejectedRecord(record_id=record_id, reason=f"invalid record: {e}")


def parse_events(rows: Iterable[Any]) -> list[Event]:
    """Normalize a feed batch; bad rows are logged and skipped."""
    events: list[Event] = []
    rejected = 0
    for raw in rows or []:
        outcome = parse_event_record(raw)
        if isinstance(outcome, RejectedRecord):
            rejected += 1
            logger.warning("Skipping upstream event %s: %s", outcome.record_id or "<no id>", outcome.reason)
            continue
        events.append(outcome)
    if rejected:
        logger.info("Parsed %d events, rejected %d", len(events), rejected)
    return events
