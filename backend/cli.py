from __future__ import annotations

import logging
import sys

from agent.models import get_filter_model, get_llm_or_none
from app_state import AppState
from event_models import Event
from events_feed import EventsFeedError, load_events
from geo import DEFAULT_CENTER, distance_miles, format_distance
from search_service import run_event_search


def _print_events(events: list[Event], limit: int = 5) -> None:
    if not events:
        return
    print("\nEvents:")
    for ev in events[:limit]:
        price = "Free" if ev.is_free else (ev.price or "")
        miles = format_distance(distance_miles(DEFAULT_CENTER, ev.location))
        print(f"- {ev.name} @ {ev.location_name} ({ev.start_date[:10]}) {price} {miles}".rstrip())


def main() -> int:
    logging.basicConfig(level=logging.WARNING)
    print("Loading events...")
    try:
        state = AppState(load_events())
    except EventsFeedError as e:
        print(f"Could not load events: {e}", file=sys.stderr)
        return 1

    model = get_filter_model()
    summary_llm = get_llm_or_none(temperature=0.5)
    if model is None:
        print("(No GROQ_API_KEY / GOOGLE_API_KEY set: using keyword search only.)")

    print(f"{len(state.events)} events loaded. Ask about events (type 'exit' to quit)")
    history: list[dict[str, str]] = []

    while True:
        try:
            user = input("\nYou: ").strip()
        except (EOFError, KeyboardInterrupt):
            print("\nBye.")
            return 0

        if not user:
            continue
        if user.lower() in {"exit", "quit"}:
            print("Bye.")
            return 0

        ticket = state.begin_search(user)
        out = run_event_search(user, state.events, model, chat_context=history, summary_llm=summary_llm)
        state.apply_search_result(ticket, out)

        print("\n" + out.sentence)
        _print_events(out.events)

        history.append({"role": "user", "content": user})
        history.append({"role": "assistant", "content": out.sentence})


if __name__ == "__main__":
    raise SystemExit(main())
