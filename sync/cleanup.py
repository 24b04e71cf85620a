# © 2024–2025 Harnisch LLC. All Rights Reserved.
# Licensed exclusively for use by St. Edward Church & School (Nashville, TN).
# Unauthorized use, distribution, or modification is prohibited.

"""
Cleanup Engine - Duplicate removal and full reset of ServiceTitan non-job appointments

Only the appointment sink and the mapping store are touched. Outlook is
never written to.
"""
import logging
from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Optional, Tuple, Union

from sync.payload_mapper import MASKED_NAME, OUT_OF_OFFICE_NAME
from utils.timezone import default_cleanup_window, isoformat_utc, parse_iso_datetime

logger = logging.getLogger(__name__)

SYNC_NAMES = (MASKED_NAME, OUT_OF_OFFICE_NAME)

# Flag values written by the sync with default configuration
SYNC_FLAG_DEFAULTS = {
    'showOnTechnicianSchedule': True,
    'clearDispatchBoard': True,
    'clearTechnicianView': False,
    'removeTechnicianFromCapacityPlanning': True,
    'active': True,
}

PAGE_SIZE = 500
MAX_PAGES = 200

WindowBound = Optional[Union[str, datetime]]


def is_sync_like_appointment(appointment: Dict) -> bool:
    """True for appointments that look like ones this service writes"""
    if not isinstance(appointment, dict):
        return False
    name = str(appointment.get('name') or '').strip()
    if name not in SYNC_NAMES:
        return False
    # Absent flags do not count as ours
    return all(appointment.get(flag) is expected for flag, expected in SYNC_FLAG_DEFAULTS.items())


def appointment_signature(appointment: Dict) -> str:
    def marker(letter: str, field: str) -> str:
        return f"{letter}1" if appointment.get(field) else f"{letter}0"

    return '|'.join([
        str(appointment.get('technicianId') if appointment.get('technicianId') is not None else ''),
        str(appointment.get('start') or ''),
        str(appointment.get('duration') or ''),
        str(appointment.get('name') or ''),
        'A' if appointment.get('allDay') else 'T',
        marker('S', 'showOnTechnicianSchedule'),
        marker('D', 'clearDispatchBoard'),
        marker('V', 'clearTechnicianView'),
        marker('C', 'removeTechnicianFromCapacityPlanning'),
        marker('X', 'active'),
    ])


def _id_sort_key(appointment_id: str):
    # Numeric ids compare numerically, anything else lexically after them
    if appointment_id.isdigit():
        return (0, int(appointment_id), appointment_id)
    return (1, 0, appointment_id)


def _resolve_bound(value: WindowBound, fallback: datetime, label: str) -> datetime:
    if value is None or value == '':
        return fallback
    if isinstance(value, datetime):
        return value
    parsed = parse_iso_datetime(value)
    if parsed is None:
        raise ValueError(f"Invalid {label}: {value!r}")
    return parsed


class CleanupEngine:
    """Maintenance operations over downstream appointments"""

    def __init__(self, writer, store, tz_name: Optional[str] = None):
        self.writer = writer
        self.store = store
        self.tz_name = tz_name

    def resolve_window(self, starts_on_or_after: WindowBound = None,
                       starts_on_or_before: WindowBound = None) -> Tuple[datetime, datetime]:
        default_start, default_end = default_cleanup_window(tz_name=self.tz_name)
        start = _resolve_bound(starts_on_or_after, default_start, 'startsOnOrAfter')
        end = _resolve_bound(starts_on_or_before, default_end, 'startsOnOrBefore')
        if end < start:
            raise ValueError("startsOnOrBefore must not be earlier than startsOnOrAfter")
        return start, end

    def _technicians(self):
        return [t for t in self.store.get_technicians() if t.enabled and t.technician_id]

    def _list_all(self, technician_id: str, window: Tuple[datetime, datetime]) -> List[Dict]:
        """Every appointment in the window, deduplicated by id across pages"""
        appointments = []
        seen_ids = set()
        page = 1
        while page <= MAX_PAGES:
            batch = self.writer.list(technician_id, window, page=page, page_size=PAGE_SIZE)
            if not batch:
                break
            for appointment in batch:
                appointment_id = appointment.get('id') if isinstance(appointment, dict) else None
                if appointment_id is None or str(appointment_id) in seen_ids:
                    continue
                seen_ids.add(str(appointment_id))
                appointments.append(appointment)
            if len(batch) < PAGE_SIZE:
                break
            page += 1
        else:
            logger.warning(f"⚠️ Stopped listing technician {technician_id} after {MAX_PAGES} pages")
        return appointments

    def dedupe_appointments(self, starts_on_or_after: WindowBound = None,
                            starts_on_or_before: WindowBound = None, dry_run: bool = True) -> Dict:
        """
        Delete duplicate sync-written appointments per technician

        Within a group of identical signatures, mapping-referenced ids are
        always kept. When none is referenced the lowest id survives.
        """
        window = self.resolve_window(starts_on_or_after, starts_on_or_before)
        logger.info(f"🧹 Starting duplicate cleanup {isoformat_utc(window[0])} -> "
                    f"{isoformat_utc(window[1])} ({'dry run' if dry_run else 'EXECUTE'})")

        referenced = self.store.referenced_appointment_ids()
        summary = {
            'startsOnOrAfter': isoformat_utc(window[0]),
            'startsOnOrBefore': isoformat_utc(window[1]),
            'dryRun': dry_run,
            'techniciansProcessed': 0,
            'appointmentsScanned': 0,
            'duplicateGroupsFound': 0,
            'appointmentsToDelete': 0,
            'deleted': 0,
            'errors': [],
        }

        for technician in self._technicians():
            summary['techniciansProcessed'] += 1
            technician_id = str(technician.technician_id)
            try:
                ours = [a for a in self._list_all(technician_id, window) if is_sync_like_appointment(a)]
                summary['appointmentsScanned'] += len(ours)

                groups = defaultdict(list)
                for appointment in ours:
                    groups[appointment_signature(appointment)].append(str(appointment['id']))

                for signature, ids in groups.items():
                    if len(ids) <= 1:
                        continue
                    if any(appointment_id in referenced for appointment_id in ids):
                        to_delete = [i for i in ids if i not in referenced]
                    else:
                        to_delete = sorted(ids, key=_id_sort_key)[1:]
                    if not to_delete:
                        continue

                    summary['duplicateGroupsFound'] += 1
                    summary['appointmentsToDelete'] += len(to_delete)
                    logger.info(f"🔍 Duplicate group {signature}: deleting {len(to_delete)} of {len(ids)}")
                    if dry_run:
                        continue
                    for appointment_id in to_delete:
                        self.writer.delete(appointment_id)
                        summary['deleted'] += 1
            except Exception as e:
                logger.error(f"❌ Duplicate cleanup failed for technician {technician_id}: {e}")
                summary['errors'].append({
                    'technicianId': technician_id,
                    'userUpn': technician.outlook_upn,
                    'message': str(e),
                })

        logger.info(f"📊 Duplicate cleanup: {summary['duplicateGroupsFound']} groups, "
                    f"{summary['appointmentsToDelete']} to delete, {summary['deleted']} deleted")
        return summary

    def purge_appointments(self, starts_on_or_after: WindowBound = None,
                           starts_on_or_before: WindowBound = None, dry_run: bool = True) -> Dict:
        """Delete every appointment of every enabled technician in the window"""
        window = self.resolve_window(starts_on_or_after, starts_on_or_before)
        summary = {
            'startsOnOrAfter': isoformat_utc(window[0]),
            'startsOnOrBefore': isoformat_utc(window[1]),
            'dryRun': dry_run,
            'techniciansProcessed': 0,
            'appointmentsFound': 0,
            'appointmentsToDelete': 0,
            'deleted': 0,
            'errors': [],
        }

        for technician in self._technicians():
            summary['techniciansProcessed'] += 1
            technician_id = str(technician.technician_id)
            try:
                appointments = self._list_all(technician_id, window)
                summary['appointmentsFound'] += len(appointments)
                summary['appointmentsToDelete'] += len(appointments)
                if not dry_run:
                    for appointment in appointments:
                        self.writer.delete(str(appointment['id']))
                        summary['deleted'] += 1
                logger.info(f"Purge for technician {technician_id} ({technician.outlook_upn}): "
                            f"{len(appointments)} appointment(s)")
            except Exception as e:
                logger.error(f"❌ Purge failed for technician {technician_id}: {e}")
                summary['errors'].append({
                    'technicianId': technician_id,
                    'userUpn': technician.outlook_upn,
                    'message': str(e),
                })
        return summary

    def reset_sync_state(self, starts_on_or_after: WindowBound = None,
                         starts_on_or_before: WindowBound = None, dry_run: bool = True,
                         skip_clear: bool = False) -> Dict:
        """Purge the window, then clear EventMap and DeltaState data rows unless skipped"""
        purge = self.purge_appointments(starts_on_or_after, starts_on_or_before, dry_run=dry_run)

        sheets_cleared = False
        if not dry_run and not skip_clear:
            self.store.clear_sync_state()
            sheets_cleared = True

        logger.warning(f"Reset finished (dryRun={dry_run}, sheetsCleared={sheets_cleared})")
        return {
            'dryRun': dry_run,
            'purge': purge,
            'sheetsCleared': sheets_cleared,
        }
