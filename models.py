# © 2024–2025 Harnisch LLC. All Rights Reserved.
# Licensed exclusively for use by St. Edward Church & School (Nashville, TN).
# Unauthorized use, distribution, or modification is prohibited.

"""
Typed records passed between the Graph reader, the sync engine and the mapping store
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from utils.timezone import isoformat_utc, utc_now

STATUS_SYNCED = 'SYNCED'
STATUS_DELETED = 'DELETED'

SYNCABLE_AVAILABILITY = ('busy', 'oof')


@dataclass
class NormalizedEvent:
    """Canonical projection of a Graph event; start/end are UTC or None"""
    id: str
    ical_uid: str = ''
    subject: str = ''
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    is_all_day: bool = False
    show_as: str = 'busy'
    is_private: bool = False
    location: str = ''
    attendees: List[Dict[str, str]] = field(default_factory=list)
    body_preview: str = ''
    last_modified: Optional[datetime] = None
    is_removed: bool = False

    @property
    def has_times(self) -> bool:
        return self.start is not None and self.end is not None

    @property
    def is_syncable(self) -> bool:
        return self.show_as in SYNCABLE_AVAILABILITY


@dataclass
class TechnicianConfig:
    outlook_upn: str
    technician_id: str
    timesheet_code_id: str = ''
    enabled: bool = False

    @property
    def timesheet_code(self) -> Optional[int]:
        """Configured timesheet code as a positive int, else None"""
        raw = str(self.timesheet_code_id or '').strip()
        if not raw.isdigit():
            return None
        value = int(raw)
        return value if value > 0 else None


@dataclass
class SyncCursor:
    outlook_upn: str
    delta_link: Optional[str] = None
    window_end: str = ''
    last_run_utc: Optional[str] = None
    key_version: str = ''
    row_index: Optional[int] = None


@dataclass
class EventMapping:
    """
    One EventMap row

    appointment_ids is positional: index i is the ServiceTitan non-job
    appointment for day-block i of the event at last sync.
    """
    outlook_upn: str
    event_key: str
    appointment_ids: List[str] = field(default_factory=list)
    fingerprint: str = ''
    last_synced_utc: Optional[str] = None
    status: str = STATUS_SYNCED
    outlook_event_id: str = ''
    row_index: Optional[int] = None

    @property
    def is_live(self) -> bool:
        return self.status != STATUS_DELETED


@dataclass
class ChangeBatch:
    events: List[Dict[str, Any]]
    next_token: Optional[str] = None


@dataclass
class RunSummary:
    started_at: str = field(default_factory=lambda: isoformat_utc(utc_now()))
    finished_at: Optional[str] = None
    calendars_processed: int = 0
    events_fetched: int = 0
    events_upserted: int = 0
    events_skipped: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def finish(self):
        self.finished_at = isoformat_utc(utc_now())
        return self

    @property
    def success(self) -> bool:
        return not self.errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            'startedAt': self.started_at,
            'finishedAt': self.finished_at,
            'calendarsProcessed': self.calendars_processed,
            'eventsFetched': self.events_fetched,
            'eventsUpserted': self.events_upserted,
            'eventsSkipped': self.events_skipped,
            'errors': list(self.errors),
        }
