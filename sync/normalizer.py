# © 2024–2025 Harnisch LLC. All Rights Reserved.
# Licensed exclusively for use by St. Edward Church & School (Nashville, TN).
# Unauthorized use, distribution, or modification is prohibited.

"""
Event normalization and identity keys

CRITICAL: stable_event_key() and content_fingerprint() decide which EventMap
row an event belongs to and whether it must be re-sent to ServiceTitan.
Changing either format re-keys or re-syncs every mapped event. Bump
FINGERPRINT_VERSION deliberately when the payload rules change and a
one-time resync of every event is wanted.
"""
import logging
from typing import Any, Dict, Optional

from models import NormalizedEvent
from utils.timezone import isoformat_utc, parse_graph_datetime, parse_iso_datetime

logger = logging.getLogger(__name__)

FINGERPRINT_VERSION = 'v3'


def _text(value: Any) -> str:
    if value is None:
        return ''
    return value if isinstance(value, str) else str(value)


def _attendees(raw) -> list:
    if not isinstance(raw, list):
        return []
    attendees = []
    for attendee in raw:
        if not isinstance(attendee, dict):
            continue
        email = attendee.get('emailAddress') or {}
        if not isinstance(email, dict):
            email = {}
        attendees.append({
            'email': _text(email.get('address')),
            'name': _text(email.get('name')),
            'type': _text(attendee.get('type')),
        })
    return attendees


def normalize_graph_event(raw: Dict[str, Any]) -> NormalizedEvent:
    """
    Convert a raw Graph event (or delta tombstone) into a NormalizedEvent

    Never raises: missing fields fall back to empty values, unparsable
    timestamps become None and tombstones carry only their id.
    """
    if not isinstance(raw, dict):
        logger.warning(f"Ignoring non-object calendar event: {type(raw).__name__}")
        return NormalizedEvent(id='')

    event_id = _text(raw.get('id'))

    if raw.get('@removed') is not None:
        return NormalizedEvent(id=event_id, ical_uid=_text(raw.get('iCalUId')), is_removed=True)

    location = raw.get('location')
    show_as = _text(raw.get('showAs')).strip().lower() or 'busy'

    return NormalizedEvent(
        id=event_id,
        ical_uid=_text(raw.get('iCalUId')),
        subject=_text(raw.get('subject')),
        start=parse_graph_datetime(raw.get('start')),
        end=parse_graph_datetime(raw.get('end')),
        is_all_day=bool(raw.get('isAllDay')),
        show_as=show_as,
        is_private=_text(raw.get('sensitivity')).strip().lower() == 'private',
        location=_text(location.get('displayName')) if isinstance(location, dict) else '',
        attendees=_attendees(raw.get('attendees')),
        body_preview=_text(raw.get('bodyPreview')),
        last_modified=parse_iso_datetime(raw.get('lastModifiedDateTime')),
    )


def stable_event_key(event: NormalizedEvent) -> Optional[str]:
    """
    Identity of one occurrence across delta and calendarView listings

    Uses iCalUId when Graph provides it so the same occurrence seen
    through different query paths lands on one EventMap row. Returns
    None when the event has no committed start/end.
    """
    if not event.has_times:
        return None
    start = isoformat_utc(event.start)
    end = isoformat_utc(event.end)
    if event.ical_uid:
        return f"ical:{event.ical_uid}|{start}|{end}"
    return f"id:{event.id}|{start}|{end}"


def content_fingerprint(event: NormalizedEvent) -> str:
    """Every event field that changes the ServiceTitan payload, versioned"""
    parts = [
        FINGERPRINT_VERSION,
        'P' if event.is_private else 'N',
        event.show_as,
        'A' if event.is_all_day else 'T',
        isoformat_utc(event.start) or '',
        isoformat_utc(event.end) or '',
    ]
    # Private subjects never leave Outlook, not even into the mapping sheet
    if not event.is_private:
        parts.append(event.subject)
    return ':'.join(parts)


def batch_dedupe_key(event: NormalizedEvent) -> str:
    """Key used to drop exact repeats of one item inside a fetched batch"""
    if event.is_removed:
        return f"removed:{event.id}"
    identity = stable_event_key(event) or f"id:{event.id}"
    return f"{identity}#{content_fingerprint(event)}"
