# © 2024–2025 Harnisch LLC. All Rights Reserved.
# Licensed exclusively for use by St. Edward Church & School (Nashville, TN).
# Unauthorized use, distribution, or modification is prohibited.

"""
Mapping Store - TechMap, DeltaState and EventMap tables kept in one spreadsheet

Rows are located by header name, never by fixed column position, so the
sheets can be reordered by hand without breaking the service.
"""
import json
import logging
from typing import Dict, List, Optional, Set, Tuple

from models import EventMapping, STATUS_DELETED, STATUS_SYNCED, SyncCursor, TechnicianConfig
from storage.sheets_client import SheetsClient
from utils.cache import TTLCache
from utils.errors import MappingStoreError, MappingWriteError
from utils.timezone import isoformat_utc, utc_now

logger = logging.getLogger(__name__)

TECH_MAP_SHEET = 'TechMap'
DELTA_STATE_SHEET = 'DeltaState'
EVENT_MAP_SHEET = 'EventMap'

TECH_MAP_COLUMNS = ['outlook_upn', 'st_technician_id', 'st_timesheet_code_id', 'enabled']
DELTA_STATE_COLUMNS = ['outlook_upn', 'delta_link', 'window_end', 'last_run_utc', 'key_version']
EVENT_MAP_COLUMNS = [
    'outlook_upn', 'event_key', 'st_nonjob_ids_json', 'last_hash',
    'last_synced_utc', 'status', 'outlook_event_id',
]

DELTA_STATE_RANGE = f'{DELTA_STATE_SHEET}!A:E'
EVENT_MAP_RANGE = f'{EVENT_MAP_SHEET}!A:G'
DELTA_STATE_DATA_RANGE = f'{DELTA_STATE_SHEET}!A2:E'
EVENT_MAP_DATA_RANGE = f'{EVENT_MAP_SHEET}!A2:G'


def parse_id_list(value: str) -> List[str]:
    """Decode the JSON id column; anything unreadable is treated as empty"""
    if not value:
        return []
    try:
        parsed = json.loads(value)
    except (ValueError, TypeError):
        return []
    if not isinstance(parsed, list):
        return []
    return [str(item) for item in parsed if item not in (None, '')]


def header_index(header: List[str], column: str, sheet: str) -> int:
    if not header:
        raise MappingStoreError(f"Missing header row in {sheet}.")
    try:
        return header.index(column)
    except ValueError:
        raise MappingStoreError(f'Missing required header "{column}" in {sheet}.')


def _cell(row: List[str], index: int) -> str:
    return row[index] if index < len(row) else ''


def _build_row(header: List[str], columns: List[str], values: Dict[str, str], sheet: str) -> List[str]:
    row = [''] * len(header)
    for column in columns:
        row[header_index(header, column, sheet)] = values.get(column, '')
    return row


def _last_column(header: List[str]) -> str:
    return chr(ord('A') + max(len(header), 1) - 1)


class MappingStore:
    """Row-level access to the three sync tables"""

    def __init__(self, client: SheetsClient, event_map_cache: Optional[TTLCache] = None):
        self.client = client
        self.event_map_cache = event_map_cache or TTLCache(ttl_seconds=300)

    # --- Technician configuration -----------------------------------------

    def get_technicians(self) -> List[TechnicianConfig]:
        values = self.client.read(f'{TECH_MAP_SHEET}!A:D')
        if not values:
            return []
        header, rows = values[0], values[1:]
        idx = {column: header_index(header, column, TECH_MAP_SHEET) for column in TECH_MAP_COLUMNS}
        technicians = []
        for row in rows:
            upn = _cell(row, idx['outlook_upn']).strip()
            if not upn:
                continue
            technicians.append(TechnicianConfig(
                outlook_upn=upn,
                technician_id=_cell(row, idx['st_technician_id']).strip(),
                timesheet_code_id=_cell(row, idx['st_timesheet_code_id']).strip(),
                enabled=_cell(row, idx['enabled']).strip().upper() == 'TRUE',
            ))
        return technicians

    def get_technician(self, outlook_upn: str) -> Optional[TechnicianConfig]:
        wanted = outlook_upn.strip().lower()
        for technician in self.get_technicians():
            if technician.outlook_upn.lower() == wanted:
                return technician
        return None

    # --- Delta cursors ------------------------------------------------------

    def get_cursor(self, outlook_upn: str) -> SyncCursor:
        """Stored cursor for the user, or an empty one for a first run"""
        values = self.client.read(DELTA_STATE_RANGE)
        header = values[0] if values else []
        idx = {column: header_index(header, column, DELTA_STATE_SHEET)
               for column in DELTA_STATE_COLUMNS if column != 'key_version'}
        version_idx = header.index('key_version') if 'key_version' in header else None

        for offset, row in enumerate(values[1:]):
            if _cell(row, idx['outlook_upn']) == outlook_upn:
                return SyncCursor(
                    outlook_upn=outlook_upn,
                    delta_link=_cell(row, idx['delta_link']) or None,
                    window_end=_cell(row, idx['window_end']),
                    last_run_utc=_cell(row, idx['last_run_utc']) or None,
                    key_version=_cell(row, version_idx) if version_idx is not None else '',
                    row_index=offset + 2,
                )
        return SyncCursor(outlook_upn=outlook_upn)

    def put_cursor(self, cursor: SyncCursor):
        header = (self.client.read(f'{DELTA_STATE_SHEET}!1:1') or [[]])[0]
        if not header:
            header = list(DELTA_STATE_COLUMNS)
        columns = [column for column in DELTA_STATE_COLUMNS if column in header]
        cursor.last_run_utc = isoformat_utc(utc_now())
        row = _build_row(header, columns, {
            'outlook_upn': cursor.outlook_upn,
            'delta_link': cursor.delta_link or '',
            'window_end': cursor.window_end or '',
            'last_run_utc': cursor.last_run_utc,
            'key_version': cursor.key_version or '',
        }, DELTA_STATE_SHEET)

        if cursor.row_index:
            self.client.update(f'{DELTA_STATE_SHEET}!A{cursor.row_index}:{_last_column(header)}{cursor.row_index}', [row])
        else:
            cursor.row_index = self.client.append(DELTA_STATE_RANGE, row)
        logger.info(f"Delta state updated for {cursor.outlook_upn}.")

    # --- Event mappings -----------------------------------------------------

    def _load_event_map(self) -> Tuple[List[str], List[List[str]]]:
        cached = self.event_map_cache.get()
        if cached is not None:
            return cached
        values = self.client.read(EVENT_MAP_RANGE)
        header = values[0] if values else []
        for column in EVENT_MAP_COLUMNS:
            header_index(header, column, EVENT_MAP_SHEET)
        loaded = (header, [list(row) for row in values[1:]])
        self.event_map_cache.set(loaded)
        return loaded

    def _row_to_mapping(self, header: List[str], row: List[str], row_index: int) -> EventMapping:
        def get(column):
            return _cell(row, header.index(column))
        return EventMapping(
            outlook_upn=get('outlook_upn'),
            event_key=get('event_key'),
            appointment_ids=parse_id_list(get('st_nonjob_ids_json')),
            fingerprint=get('last_hash'),
            last_synced_utc=get('last_synced_utc') or None,
            status=get('status') or STATUS_SYNCED,
            outlook_event_id=get('outlook_event_id'),
            row_index=row_index,
        )

    def _find(self, predicate) -> Optional[EventMapping]:
        header, rows = self._load_event_map()
        found = None
        # Last match wins so a re-appended row shadows an older duplicate
        for offset, row in enumerate(rows):
            mapping = self._row_to_mapping(header, row, offset + 2)
            if predicate(mapping):
                found = mapping
        return found

    def get_mapping(self, outlook_upn: str, event_key: str) -> Optional[EventMapping]:
        return self._find(lambda m: m.outlook_upn == outlook_upn and m.event_key == event_key)

    def find_mapping_by_event_id(self, outlook_upn: str, event_id: str) -> Optional[EventMapping]:
        """Live mapping for a provider event id (tombstones carry only the id)"""
        if not event_id:
            return None
        return self._find(lambda m: m.outlook_upn == outlook_upn
                          and m.outlook_event_id == event_id and m.is_live)

    def list_mappings(self, outlook_upn: Optional[str] = None) -> List[EventMapping]:
        header, rows = self._load_event_map()
        mappings = [self._row_to_mapping(header, row, offset + 2) for offset, row in enumerate(rows)]
        if outlook_upn is not None:
            mappings = [m for m in mappings if m.outlook_upn == outlook_upn]
        return mappings

    def put_mapping(self, mapping: EventMapping):
        """Write the row in place when it exists, append otherwise"""
        header, rows = self._load_event_map()
        mapping.last_synced_utc = isoformat_utc(utc_now())
        row = _build_row(header, EVENT_MAP_COLUMNS, {
            'outlook_upn': mapping.outlook_upn,
            'event_key': mapping.event_key,
            'st_nonjob_ids_json': json.dumps(mapping.appointment_ids),
            'last_hash': mapping.fingerprint,
            'last_synced_utc': mapping.last_synced_utc,
            'status': mapping.status,
            'outlook_event_id': mapping.outlook_event_id,
        }, EVENT_MAP_SHEET)

        try:
            if mapping.row_index:
                self.client.update(
                    f'{EVENT_MAP_SHEET}!A{mapping.row_index}:{_last_column(header)}{mapping.row_index}', [row]
                )
            else:
                mapping.row_index = self.client.append(EVENT_MAP_RANGE, row)
        except MappingStoreError as e:
            self.event_map_cache.invalidate()
            raise MappingWriteError(
                f"Failed to persist mapping {mapping.outlook_upn}:{mapping.event_key}: {e}", code=e.code
            ) from e

        self._update_cache(rows, row, mapping)
        logger.info(f"Event mapping updated for {mapping.outlook_upn}:{mapping.event_key} ({mapping.status}).")

    def _update_cache(self, rows: List[List[str]], row: List[str], mapping: EventMapping):
        """Keep the read cache warm to avoid read-quota bursts during backfills"""
        if self.event_map_cache.get() is None:
            return
        if mapping.row_index is None:
            self.event_map_cache.invalidate()
            return
        position = mapping.row_index - 2
        if 0 <= position < len(rows):
            rows[position] = row
        elif position == len(rows):
            rows.append(row)
        else:
            self.event_map_cache.invalidate()
            return
        self.event_map_cache.touch()

    def mark_deleted(self, mapping: EventMapping):
        """Soft delete: the row stays for auditing, ids and fingerprint are cleared"""
        mapping.appointment_ids = []
        mapping.fingerprint = ''
        mapping.status = STATUS_DELETED
        self.put_mapping(mapping)

    def referenced_appointment_ids(self) -> Set[str]:
        referenced = set()
        for mapping in self.list_mappings():
            if mapping.is_live:
                referenced.update(mapping.appointment_ids)
        return referenced

    # --- Maintenance --------------------------------------------------------

    def clear_sync_state(self):
        """Clear EventMap and DeltaState data rows, keeping the header rows"""
        self.client.clear(EVENT_MAP_DATA_RANGE)
        self.client.clear(DELTA_STATE_DATA_RANGE)
        self.event_map_cache.invalidate()
        logger.warning("EventMap and DeltaState data rows cleared.")
