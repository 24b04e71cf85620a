# © 2024–2025 Harnisch LLC. All Rights Reserved.
# Licensed exclusively for use by St. Edward Church & School (Nashville, TN).
# Unauthorized use, distribution, or modification is prohibited.

"""
Sync Engine - Reconcile Outlook calendar events into ServiceTitan non-job appointments

Every fetched event goes through one pass of a small state machine:

    tombstoned  -> delete mapped appointments, soft-delete the mapping
    incomplete  -> skip (no committed start/end)
    not busy    -> delete mapped appointments, soft-delete the mapping
    unchanged   -> skip (stored fingerprint matches)
    upsert      -> update/create/delete appointments positionally, write the mapping

The EventMap row is the only record of which ServiceTitan appointments
belong to which Outlook occurrence, so it is written after every
appointment call has settled and rolled back when that write fails.
"""
import logging
import time
from datetime import timedelta
from threading import Lock
from typing import Dict, List, Optional

import config
from models import EventMapping, NormalizedEvent, RunSummary, STATUS_SYNCED, TechnicianConfig
from sync.history import SyncHistory
from sync.normalizer import (
    FINGERPRINT_VERSION, batch_dedupe_key, content_fingerprint,
    normalize_graph_event, stable_event_key,
)
from sync.payload_mapper import VisibilityFlags, map_event_to_payloads
from utils.errors import ApiError, InvalidCursorError
from utils.logger import StructuredLogger
from utils.timezone import isoformat_utc, parse_iso_datetime, utc_now, window_bounds

logger = logging.getLogger(__name__)

# A delta round covers a fixed window; restart it once the window has drifted this far
DELTA_WINDOW_DRIFT = timedelta(days=1)


class ReconciliationEngine:
    """Drives calendar source -> appointment sink reconciliation for each technician"""

    def __init__(self, reader, writer, store, flags: Optional[VisibilityFlags] = None,
                 alerts=None, history: Optional[SyncHistory] = None,
                 past_days: Optional[int] = None, future_days: Optional[int] = None,
                 tz_name: Optional[str] = None):
        self.reader = reader
        self.writer = writer
        self.store = store
        self.flags = flags or VisibilityFlags.from_config()
        self.alerts = alerts
        self.history = history or SyncHistory()
        self.past_days = config.SYNC_WINDOW_PAST_DAYS if past_days is None else past_days
        self.future_days = config.SYNC_WINDOW_FUTURE_DAYS if future_days is None else future_days
        self.tz_name = tz_name

        self.structured_logger = StructuredLogger(__name__)

        # One lock per user; cursor and mapping updates are read-modify-write
        self._locks_guard = Lock()
        self._user_locks: Dict[str, Lock] = {}

    def _lock_for(self, outlook_upn: str) -> Lock:
        with self._locks_guard:
            return self._user_locks.setdefault(outlook_upn.lower(), Lock())

    # ------------------------------------------------------------------
    # Per-event state machine
    # ------------------------------------------------------------------

    def _safe_delete(self, appointment_id: str, reason: str):
        try:
            self.writer.delete(appointment_id)
        except Exception as e:
            logger.warning(f"⚠️ Failed to delete appointment {appointment_id} ({reason}): {e}")

    def _retire_mapping(self, mapping: EventMapping, reason: str):
        """Delete every appointment the mapping owns and soft-delete the row"""
        for appointment_id in mapping.appointment_ids:
            self._safe_delete(appointment_id, reason)
        self.store.mark_deleted(mapping)
        logger.info(f"🗑️ Retired mapping {mapping.event_key} for {mapping.outlook_upn} ({reason})")

    def _find_live_mapping(self, technician: TechnicianConfig, event: NormalizedEvent,
                           event_key: Optional[str]) -> Optional[EventMapping]:
        mapping = self.store.get_mapping(technician.outlook_upn, event_key) if event_key else None
        if mapping is not None and mapping.is_live:
            return mapping
        return self.store.find_mapping_by_event_id(technician.outlook_upn, event.id)

    def _upsert_appointments(self, payloads: List[Dict], previous_ids: List[str]):
        """
        Resolve one appointment id per payload, reusing previous ids by position

        Returns (current_ids, created_ids). Appointments created here are
        deleted again if a later position fails outright.
        """
        current_ids: List[str] = []
        created_ids: List[str] = []

        try:
            for index, payload in enumerate(payloads):
                existing_id = previous_ids[index] if index < len(previous_ids) else None
                if existing_id:
                    try:
                        self.writer.update(existing_id, payload)
                        current_ids.append(existing_id)
                        continue
                    except ApiError as e:
                        logger.warning(f"⚠️ Update of appointment {existing_id} failed, "
                                       f"creating a replacement: {e}")
                        new_id = self.writer.create(payload)
                        created_ids.append(new_id)
                        current_ids.append(new_id)
                        self._safe_delete(existing_id, 'replaced after failed update')
                        continue

                new_id = self.writer.create(payload)
                created_ids.append(new_id)
                current_ids.append(new_id)
        except Exception:
            for appointment_id in created_ids:
                self._safe_delete(appointment_id, 'rollback of incomplete upsert')
            raise

        # Event shrank: blocks past the new count are gone
        for appointment_id in previous_ids[len(payloads):]:
            self._safe_delete(appointment_id, 'event shrank')

        return current_ids, created_ids

    def _process_event(self, technician: TechnicianConfig, event: NormalizedEvent,
                       summary: RunSummary):
        upn = technician.outlook_upn

        if event.is_removed:
            mapping = self.store.find_mapping_by_event_id(upn, event.id)
            if mapping is not None:
                self._retire_mapping(mapping, 'event deleted in Outlook')
            summary.events_skipped += 1
            return

        if not event.has_times:
            logger.debug(f"Skipping event {event.id} without committed start/end")
            summary.events_skipped += 1
            return

        event_key = stable_event_key(event)

        if not event.is_syncable:
            mapping = self._find_live_mapping(technician, event, event_key)
            if mapping is not None:
                self._retire_mapping(mapping, f"event is now {event.show_as}")
            summary.events_skipped += 1
            return

        fingerprint = content_fingerprint(event)
        mapping = self.store.get_mapping(upn, event_key)

        if mapping is not None and mapping.is_live and mapping.fingerprint == fingerprint:
            summary.events_skipped += 1
            return

        # A rescheduled occurrence gets a new key; carry its appointments over
        moved_from = None
        if mapping is None or not mapping.is_live:
            previous = self.store.find_mapping_by_event_id(upn, event.id)
            if previous is not None and previous.event_key != event_key:
                moved_from = previous

        if moved_from is not None:
            previous_ids = list(moved_from.appointment_ids)
        elif mapping is not None and mapping.is_live:
            previous_ids = list(mapping.appointment_ids)
        else:
            previous_ids = []

        payloads = map_event_to_payloads(event, technician, self.flags, self.tz_name)
        current_ids, created_ids = self._upsert_appointments(payloads, previous_ids)

        if mapping is None:
            mapping = EventMapping(outlook_upn=upn, event_key=event_key)
        mapping.appointment_ids = current_ids
        mapping.fingerprint = fingerprint
        mapping.status = STATUS_SYNCED
        mapping.outlook_event_id = event.id

        try:
            self.store.put_mapping(mapping)
        except Exception:
            for appointment_id in created_ids:
                self._safe_delete(appointment_id, 'rollback after mapping write failure')
            raise

        if moved_from is not None:
            # Its appointments now belong to the new row
            moved_from.appointment_ids = []
            self.store.mark_deleted(moved_from)

        summary.events_upserted += 1
        logger.info(f"✅ Synced event {event.id} for {upn}: {len(current_ids)} appointment(s)")

    def process_events(self, technician: TechnicianConfig, raw_events: List[Dict],
                       summary: RunSummary) -> RunSummary:
        """Run every raw event of one fetched batch through the state machine"""
        seen = set()
        for raw in raw_events:
            event = normalize_graph_event(raw)
            if not event.id:
                summary.events_skipped += 1
                continue

            dedupe_key = batch_dedupe_key(event)
            if dedupe_key in seen:
                summary.events_skipped += 1
                continue
            seen.add(dedupe_key)

            try:
                self._process_event(technician, event, summary)
            except Exception as e:
                logger.error(f"❌ Failed to sync event {event.id} for {technician.outlook_upn}: {e}")
                self.structured_logger.log_sync_event('event_sync_failed', {
                    'user_upn': technician.outlook_upn,
                    'event_id': event.id,
                    'error': str(e),
                })
                summary.errors.append({
                    'userUpn': technician.outlook_upn,
                    'eventKey': stable_event_key(event),
                    'eventId': event.id,
                    'message': str(e),
                })
        return summary

    # ------------------------------------------------------------------
    # Per-user runs
    # ------------------------------------------------------------------

    def _enabled_technician(self, outlook_upn: str) -> Optional[TechnicianConfig]:
        technician = self.store.get_technician(outlook_upn)
        if technician is None or not technician.enabled or not technician.technician_id:
            logger.info(f"Skipping {outlook_upn}: not an enabled technician")
            return None
        return technician

    def _usable_delta_token(self, cursor) -> Optional[str]:
        if not cursor.delta_link:
            return None
        if cursor.key_version != FINGERPRINT_VERSION:
            logger.info(f"🔄 Key version changed ({cursor.key_version or 'none'} -> "
                        f"{FINGERPRINT_VERSION}) for {cursor.outlook_upn}; starting a fresh delta round")
            return None
        window_end = parse_iso_datetime(cursor.window_end)
        _, current_end = window_bounds(self.past_days, self.future_days)
        if window_end is not None and current_end - window_end > DELTA_WINDOW_DRIFT:
            logger.info(f"🔄 Delta window for {cursor.outlook_upn} ended {cursor.window_end}; "
                        f"starting a fresh delta round")
            return None
        return cursor.delta_link

    def run_delta_sync_for_user(self, outlook_upn: str) -> RunSummary:
        """
        Incremental sync for one user

        The cursor is stored only after the whole batch was walked, so a
        crash mid-batch replays the same changes on the next run.
        """
        summary = RunSummary()
        technician = self._enabled_technician(outlook_upn)
        if technician is None:
            return summary.finish()

        with self._lock_for(outlook_upn):
            started = time.monotonic()
            cursor = self.store.get_cursor(outlook_upn)
            token = self._usable_delta_token(cursor)
            window = window_bounds(self.past_days, self.future_days)

            try:
                batch = self.reader.fetch_changes(outlook_upn, token, window)
            except Exception as e:
                if token is None:
                    raise
                if isinstance(e, InvalidCursorError):
                    logger.warning(f"⚠️ Delta token for {outlook_upn} rejected ({e}); refetching full window")
                else:
                    logger.warning(f"⚠️ Delta fetch for {outlook_upn} failed ({e}); retrying once without the token")
                batch = self.reader.fetch_changes(outlook_upn, None, window)

            summary.calendars_processed = 1
            summary.events_fetched = len(batch.events)
            self.process_events(technician, batch.events, summary)

            cursor.delta_link = batch.next_token
            cursor.window_end = isoformat_utc(window[1])
            cursor.key_version = FINGERPRINT_VERSION
            self.store.put_cursor(cursor)

            summary.finish()
            self.structured_logger.log_performance(
                'delta_sync', time.monotonic() - started, item_count=summary.events_fetched,
                success=summary.success
            )

        self.structured_logger.log_sync_event('delta_sync_completed', {'user_upn': outlook_upn, **summary.to_dict()})
        self.history.add_entry(summary, kind='delta', user_upn=outlook_upn)

        if summary.errors and self.alerts is not None:
            self.alerts.notify_failure(
                f'Delta sync for {outlook_upn} finished with errors',
                {'userUpn': outlook_upn, 'errorCount': len(summary.errors), 'errors': summary.errors[:10],
                 'finishedAt': summary.finished_at},
            )
        return summary

    def run_full_sync_for_user(self, technician: TechnicianConfig, summary: RunSummary) -> RunSummary:
        """Reconcile every event in the configured window; the delta cursor is left alone"""
        with self._lock_for(technician.outlook_upn):
            events = self.reader.fetch_window(technician.outlook_upn, self.past_days, self.future_days)
            summary.calendars_processed += 1
            summary.events_fetched += len(events)
            self.process_events(technician, events, summary)
        logger.info(f"📊 Full sync for {technician.outlook_upn}: {len(events)} events fetched")
        return summary

    def run_sync_cycle(self) -> RunSummary:
        """Full-window sync for every enabled technician; one user's failure never stops the rest"""
        summary = RunSummary()
        started = time.monotonic()
        logger.info(f"🚀 Starting sync cycle (window -{self.past_days}/+{self.future_days} days)")

        technicians = [t for t in self.store.get_technicians() if t.enabled and t.technician_id]
        for technician in technicians:
            try:
                self.run_full_sync_for_user(technician, summary)
            except Exception as e:
                logger.error(f"❌ Sync failed for {technician.outlook_upn}: {e}")
                self.structured_logger.log_sync_event('user_sync_failed', {
                    'user_upn': technician.outlook_upn,
                    'error': str(e),
                })
                summary.errors.append({'userUpn': technician.outlook_upn, 'message': str(e)})

        summary.finish()
        duration = time.monotonic() - started
        self.structured_logger.log_performance('sync_cycle', duration,
                                               item_count=summary.events_fetched, success=summary.success)
        self.structured_logger.log_sync_event('sync_cycle_completed', summary.to_dict())
        self.history.add_entry(summary, kind='cycle')

        if summary.errors and self.alerts is not None:
            self.alerts.notify_failure(
                'Calendar sync cycle finished with errors',
                {'errorCount': len(summary.errors), 'errors': summary.errors[:10],
                 'finishedAt': summary.finished_at or isoformat_utc(utc_now())},
            )
        logger.info(f"🎉 Sync cycle complete: {summary.events_upserted} upserted, "
                    f"{summary.events_skipped} skipped, {len(summary.errors)} errors")
        return summary
