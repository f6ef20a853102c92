from __future__ import annotations

import itertools
import threading
from typing import Literal, Optional

from event_models import Event
from geo import DEFAULT_CENTER, Location, distance_miles
from search_service import SearchResult

"""
Application state for one client session (map view + search panel).

Passed explicitly to whatever needs it; nothing here is a module global.
Search results are applied whole through a ticket so a cancelled or
superseded search never leaves half-updated state behind.
"""

BrowseFilter = Literal["all", "free", "paid", "accessible"]
SortOption = Literal["nearest", "name"]


class SearchTicket:
    def __init__(self, ticket_id: int, query: str) -> None:
        self.id = ticket_id
        self.query = query
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class AppState:
    def __init__(self, events: Optional[list[Event]] = None) -> None:
        self.events: list[Event] = list(events or [])
        self.user_location: Optional[Location] = None
        self.selected_filter: BrowseFilter = "all"
        self.selected_sort: SortOption = "nearest"
        self.selected_theme: Optional[str] = None
        self.search_query: str = ""
        self.search_result: Optional[SearchResult] = None
        self.selected_event: Optional[Event] = None

        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._current: Optional[SearchTicket] = None

    def set_events(self, events: list[Event]) -> None:
        self.events = list(events)

    # --- search lifecycle --------------------------------------------------

    def begin_search(self, query: str) -> SearchTicket:
        """Start a search; any search still in flight is superseded."""
        with self._lock:
            if self._current is not None:
                self._current.cancel()
            self._current = SearchTicket(next(self._ids), query)
            return self._current

    def cancel_search(self) -> None:
        with self._lock:
            if self._current is not None:
                self._current.cancel()
                self._current = None

    def apply_search_result(self, ticket: SearchTicket, result: SearchResult) -> bool:
        """Apply `result` only if `ticket` is still the live search. Returns whether it was applied."""
        with self._lock:
            if ticket.cancelled or self._current is not ticket:
                return False
            self.search_result = result
            self._current = None
            return True

    def clear_search(self) -> None:
        with self._lock:
            self.search_result = None

    @property
    def search_in_flight(self) -> bool:
        return self._current is not None

    # --- browse view -------------------------------------------------------

    def filtered_events(self) -> list[Event]:
        filtered = list(self.events)

        if self.selected_filter == "free":
            filtered = [ev for ev in filtered if ev.is_free]
        elif self.selected_filter == "paid":
            filtered = [ev for ev in filtered if not ev.is_free]
        elif self.selected_filter == "accessible":
            filtered = [ev for ev in filtered if ev.is_accessible]

        if self.selected_theme:
            filtered = [ev for ev in filtered if self.selected_theme in ev.themes]

        q = self.search_query.strip().lower()
        if q:
            filtered = [
                ev
                for ev in filtered
                if q in ev.name.lower() or q in ev.description.lower() or q in ev.location_name.lower()
            ]

        if self.selected_sort == "nearest":
            reference = self.user_location or DEFAULT_CENTER
            filtered.sort(key=lambda ev: distance_miles(reference, ev.location))
        elif self.selected_sort == "name":
            filtered.sort(key=lambda ev: ev.name.lower())
        return filtered
