"""
Shared fixtures and in-memory test doubles for the calendar source,
the appointment sink and the mapping store
"""

import copy
import os
import re
import sys
from dataclasses import replace
from typing import Dict, List, Optional

import pytest

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from models import ChangeBatch, EventMapping, STATUS_DELETED, SyncCursor, TechnicianConfig
from utils.errors import ApiError, InvalidCursorError, MappingStoreError, MappingWriteError, NotFoundError

_ROW_RANGE = re.compile(r'^(\w+)!A(\d+):[A-Z]+\d+$')


class FakeAppointmentSink:
    """Records every call; ids are sequential strings starting at 1001"""

    def __init__(self):
        self.appointments: Dict[str, Dict] = {}
        self.calls: List[tuple] = []
        self.next_id = 1001
        self.fail_update_ids = set()
        self.fail_create_after: Optional[int] = None
        self.fail_delete_ids = set()

    def create(self, payload):
        self.calls.append(('create', dict(payload)))
        if self.fail_create_after is not None and self.created_count() > self.fail_create_after:
            raise ApiError('ServiceTitan', 500, 'create failed')
        appointment_id = str(self.next_id)
        self.next_id += 1
        self.appointments[appointment_id] = dict(payload, id=appointment_id)
        return appointment_id

    def update(self, appointment_id, payload):
        self.calls.append(('update', appointment_id, dict(payload)))
        if appointment_id in self.fail_update_ids or appointment_id not in self.appointments:
            raise NotFoundError('ServiceTitan', 404, f'{appointment_id} not found')
        self.appointments[appointment_id] = dict(payload, id=appointment_id)

    def delete(self, appointment_id):
        self.calls.append(('delete', appointment_id))
        if appointment_id in self.fail_delete_ids:
            raise ApiError('ServiceTitan', 503, 'delete failed')
        self.appointments.pop(appointment_id, None)

    def list(self, technician_id, window, page=1, page_size=500):
        self.calls.append(('list', technician_id, page))
        matching = [a for a in self.appointments.values() if str(a.get('technicianId')) == str(technician_id)]
        start = (page - 1) * page_size
        return [dict(a) for a in matching[start:start + page_size]]

    def created_count(self):
        return sum(1 for call in self.calls if call[0] == 'create')

    def calls_of(self, kind):
        return [call for call in self.calls if call[0] == kind]

    def reset_calls(self):
        self.calls = []


class FakeCalendarSource:
    """Serves canned batches; fetch_changes pops from `delta_batches`"""

    def __init__(self, window_events=None, delta_batches=None):
        self.window_events = window_events if isinstance(window_events, Exception) else list(window_events or [])
        self.delta_batches = list(delta_batches or [])
        self.calls: List[tuple] = []
        self.invalid_tokens = set()

    def fetch_changes(self, user_upn, continuation_token=None, window=None):
        self.calls.append(('fetch_changes', user_upn, continuation_token))
        if continuation_token in self.invalid_tokens:
            raise InvalidCursorError('Graph', 410, 'delta token expired')
        batch = self.delta_batches.pop(0)
        return ChangeBatch(events=list(batch['events']), next_token=batch.get('next_token'))

    def fetch_window(self, user_upn, past_days, future_days):
        self.calls.append(('fetch_window', user_upn, past_days, future_days))
        if isinstance(self.window_events, Exception):
            raise self.window_events
        return copy.deepcopy(self.window_events)


class InMemoryMappingStore:
    """Mapping store with sheet-like copy semantics"""

    def __init__(self, technicians=None):
        self.technicians: List[TechnicianConfig] = list(technicians or [])
        self.cursors: Dict[str, SyncCursor] = {}
        self.rows: List[EventMapping] = []
        self.fail_put = False
        self.put_count = 0
        self.cleared = False

    @staticmethod
    def _copy(mapping):
        return replace(mapping, appointment_ids=list(mapping.appointment_ids))

    def get_technicians(self):
        return list(self.technicians)

    def get_technician(self, outlook_upn):
        for technician in self.technicians:
            if technician.outlook_upn.lower() == outlook_upn.lower():
                return technician
        return None

    def get_cursor(self, outlook_upn):
        cursor = self.cursors.get(outlook_upn)
        return replace(cursor) if cursor else SyncCursor(outlook_upn=outlook_upn)

    def put_cursor(self, cursor):
        cursor.last_run_utc = 'now'
        self.cursors[cursor.outlook_upn] = replace(cursor)

    def get_mapping(self, outlook_upn, event_key):
        found = None
        for mapping in self.rows:
            if mapping.outlook_upn == outlook_upn and mapping.event_key == event_key:
                found = mapping
        return self._copy(found) if found else None

    def find_mapping_by_event_id(self, outlook_upn, event_id):
        found = None
        for mapping in self.rows:
            if mapping.outlook_upn == outlook_upn and mapping.outlook_event_id == event_id and mapping.is_live:
                found = mapping
        return self._copy(found) if found else None

    def put_mapping(self, mapping):
        if self.fail_put:
            raise MappingWriteError('sheet write failed', code=503)
        self.put_count += 1
        stored = self._copy(mapping)
        if mapping.row_index is None:
            mapping.row_index = len(self.rows) + 2
            stored.row_index = mapping.row_index
            self.rows.append(stored)
        else:
            self.rows[mapping.row_index - 2] = stored

    def mark_deleted(self, mapping):
        mapping.appointment_ids = []
        mapping.fingerprint = ''
        mapping.status = STATUS_DELETED
        self.put_mapping(mapping)

    def referenced_appointment_ids(self):
        ids = set()
        for mapping in self.rows:
            if mapping.is_live:
                ids.update(mapping.appointment_ids)
        return ids

    def clear_sync_state(self):
        self.rows = []
        self.cursors = {}
        self.cleared = True


class FakeSheets:
    """Just enough of SheetsClient: read/append/update/clear by sheet name"""

    def __init__(self, sheets):
        self.sheets = {name: [list(row) for row in rows] for name, rows in sheets.items()}
        self.reads = 0
        self.fail_writes = False
        self.fail_reads = set()

    def read(self, range_name):
        self.reads += 1
        sheet, _, cells = range_name.partition('!')
        if sheet in self.fail_reads:
            raise MappingStoreError('Google Sheets read failed', code=503)
        rows = self.sheets.get(sheet, [])
        if cells == '1:1':
            return [list(rows[0])] if rows else []
        return [list(row) for row in rows]

    def append(self, range_name, row):
        if self.fail_writes:
            raise MappingStoreError('quota exceeded', code=429)
        sheet = range_name.partition('!')[0]
        self.sheets[sheet].append(list(row))
        return len(self.sheets[sheet])

    def update(self, range_name, values):
        if self.fail_writes:
            raise MappingStoreError('quota exceeded', code=429)
        sheet, row_number = _ROW_RANGE.match(range_name).groups()
        self.sheets[sheet][int(row_number) - 1] = list(values[0])

    def clear(self, range_name):
        sheet = range_name.partition('!')[0]
        self.sheets[sheet] = self.sheets[sheet][:1]


TECH_UPN = 'tech@example.com'


def graph_event(event_id='evt-1', subject='Site visit', start='2026-02-10T22:00:00.0000000',
                end='2026-02-11T03:00:00.0000000', show_as='busy', sensitivity='normal',
                ical_uid=None, is_all_day=False):
    """A raw Graph event as returned with Prefer: outlook.timezone="UTC" """
    return {
        'id': event_id,
        'iCalUId': ical_uid if ical_uid is not None else f'ical-{event_id}',
        'subject': subject,
        'start': {'dateTime': start, 'timeZone': 'UTC'},
        'end': {'dateTime': end, 'timeZone': 'UTC'},
        'isAllDay': is_all_day,
        'showAs': show_as,
        'sensitivity': sensitivity,
    }


@pytest.fixture
def technician():
    return TechnicianConfig(outlook_upn=TECH_UPN, technician_id='42', timesheet_code_id='7', enabled=True)


@pytest.fixture
def sink():
    return FakeAppointmentSink()


@pytest.fixture
def store(technician):
    return InMemoryMappingStore([technician])


@pytest.fixture
def source():
    return FakeCalendarSource()


@pytest.fixture
def engine(source, sink, store):
    from sync.engine import ReconciliationEngine
    from sync.payload_mapper import VisibilityFlags
    return ReconciliationEngine(source, sink, store, flags=VisibilityFlags(),
                                past_days=30, future_days=90, tz_name='America/Chicago')
