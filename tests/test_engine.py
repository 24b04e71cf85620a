"""
Reconciliation engine tests

Runs the per-event state machine against in-memory fakes and checks the
downstream calls it makes and the mapping rows it leaves behind.
"""

import pytest
from unittest.mock import MagicMock

from conftest import TECH_UPN, FakeSheets, graph_event
from models import ChangeBatch, STATUS_DELETED, STATUS_SYNCED, SyncCursor
from sync.normalizer import FINGERPRINT_VERSION
from utils.cache import TTLCache
from utils.errors import ApiError
from utils.timezone import isoformat_utc, window_bounds


def live_rows(store):
    return [row for row in store.rows if row.is_live]


def current_window_end():
    return isoformat_utc(window_bounds(30, 90)[1])


class TestUpsert:
    """New and changed busy events"""

    @pytest.mark.engine
    def test_new_event_creates_one_appointment(self, engine, source, sink, store):
        source.window_events = [graph_event()]

        summary = engine.run_sync_cycle()

        creates = sink.calls_of('create')
        assert len(creates) == 1
        payload = creates[0][1]
        assert payload['name'] == 'Site visit'
        assert payload['start'] == '2026-02-10T16:00:00-06:00'
        assert payload['duration'] == '05:00:00'
        assert payload['technicianId'] == '42'
        assert payload['timesheetCodeId'] == 7

        assert summary.calendars_processed == 1
        assert summary.events_fetched == 1
        assert summary.events_upserted == 1
        assert summary.errors == []

        assert len(store.rows) == 1
        row = store.rows[0]
        assert row.appointment_ids == ['1001']
        assert row.status == STATUS_SYNCED
        assert row.outlook_event_id == 'evt-1'
        assert row.fingerprint.startswith(f'{FINGERPRINT_VERSION}:')

    @pytest.mark.engine
    def test_second_run_on_unchanged_batch_makes_no_downstream_calls(self, engine, source, sink):
        source.window_events = [graph_event(), graph_event('evt-2', subject='Training')]
        engine.run_sync_cycle()
        sink.reset_calls()

        summary = engine.run_sync_cycle()

        assert sink.calls == []
        assert summary.events_skipped == 2
        assert summary.events_upserted == 0

    @pytest.mark.engine
    def test_private_event_is_masked(self, engine, source, sink, store):
        source.window_events = [graph_event(subject='Doctor appointment', sensitivity='private')]

        engine.run_sync_cycle()

        assert sink.calls_of('create')[0][1]['name'] == 'Busy'
        assert 'Doctor' not in store.rows[0].fingerprint

    @pytest.mark.engine
    def test_out_of_office_without_subject(self, engine, source, sink):
        source.window_events = [graph_event(subject='', show_as='oof')]

        engine.run_sync_cycle()

        assert sink.calls_of('create')[0][1]['name'] == 'Out of Office'

    @pytest.mark.engine
    def test_changed_subject_updates_in_place(self, engine, source, sink, store):
        source.window_events = [graph_event()]
        engine.run_sync_cycle()
        sink.reset_calls()

        source.window_events = [graph_event(subject='Site visit (moved crew)')]
        summary = engine.run_sync_cycle()

        assert [call[0] for call in sink.calls] == ['update']
        assert sink.calls[0][1] == '1001'
        assert summary.events_upserted == 1
        assert len(store.rows) == 1
        assert store.rows[0].appointment_ids == ['1001']

    @pytest.mark.engine
    def test_failed_update_falls_back_to_create_and_deletes_stale_id(self, engine, source, sink, store):
        source.window_events = [graph_event()]
        engine.run_sync_cycle()
        sink.reset_calls()
        sink.fail_update_ids = {'1001'}

        source.window_events = [graph_event(subject='Renamed')]
        summary = engine.run_sync_cycle()

        assert [call[0] for call in sink.calls] == ['update', 'create', 'delete']
        assert sink.calls[2][1] == '1001'
        assert store.rows[0].appointment_ids == ['1002']
        assert summary.errors == []

    @pytest.mark.engine
    def test_multi_day_event_shrinking_to_one_block(self, engine, source, sink, store):
        # Local Feb 10 14:00 -> Feb 12 10:00 (America/Chicago, UTC-6)
        source.window_events = [graph_event(start='2026-02-10T20:00:00', end='2026-02-12T16:00:00')]
        engine.run_sync_cycle()

        durations = [call[1]['duration'] for call in sink.calls_of('create')]
        assert durations == ['10:00:00', '24:00:00', '10:00:00']
        assert live_rows(store)[0].appointment_ids == ['1001', '1002', '1003']
        sink.reset_calls()

        source.window_events = [graph_event(start='2026-02-10T20:00:00', end='2026-02-10T23:00:00')]
        engine.run_sync_cycle()

        assert sink.calls_of('update')[0][1] == '1001'
        assert sorted(call[1] for call in sink.calls_of('delete')) == ['1002', '1003']
        assert sink.calls_of('create') == []

        rows = live_rows(store)
        assert len(rows) == 1
        assert rows[0].appointment_ids == ['1001']
        # The row of the old time range no longer owns any appointment
        assert [r for r in store.rows if r.status == STATUS_DELETED][0].appointment_ids == []

    @pytest.mark.engine
    def test_mapping_write_failure_rolls_back_new_appointments(self, engine, source, sink, store):
        store.fail_put = True
        source.window_events = [graph_event()]

        summary = engine.run_sync_cycle()

        assert [call[0] for call in sink.calls] == ['create', 'delete']
        assert sink.calls[1][1] == '1001'
        assert summary.events_upserted == 0
        assert len(summary.errors) == 1
        assert summary.errors[0]['eventId'] == 'evt-1'
        assert summary.errors[0]['userUpn'] == TECH_UPN

    @pytest.mark.engine
    def test_expired_event_map_read_on_write_rolls_back(self, source, sink):
        from storage.mapping_store import MappingStore
        from sync.engine import ReconciliationEngine
        from sync.payload_mapper import VisibilityFlags

        sheets = FakeSheets({
            'TechMap': [['outlook_upn', 'st_technician_id', 'st_timesheet_code_id', 'enabled'],
                        [TECH_UPN, '42', '7', 'TRUE']],
            'DeltaState': [['outlook_upn', 'delta_link', 'window_end', 'last_run_utc', 'key_version']],
            'EventMap': [['event_key', 'outlook_upn', 'st_nonjob_ids_json', 'last_hash',
                          'last_synced_utc', 'status', 'outlook_event_id']],
        })
        cache = TTLCache(300)
        store = MappingStore(sheets, cache)
        engine = ReconciliationEngine(source, sink, store, flags=VisibilityFlags(),
                                      past_days=30, future_days=90, tz_name='America/Chicago')
        create = sink.create

        def create_then_expire_cache(payload):
            appointment_id = create(payload)
            cache.invalidate()
            sheets.fail_reads.add('EventMap')
            return appointment_id

        sink.create = create_then_expire_cache
        source.window_events = [graph_event()]

        summary = engine.run_sync_cycle()

        assert [call[0] for call in sink.calls] == ['create', 'delete']
        assert sink.appointments == {}
        assert summary.errors[0]['message'] == 'Google Sheets read failed'
        assert len(sheets.sheets['EventMap']) == 1

    @pytest.mark.engine
    def test_one_failing_event_does_not_stop_the_batch(self, engine, source, sink, store):
        sink.fail_create_after = 1
        source.window_events = [graph_event('evt-1'), graph_event('evt-2', subject='Other')]

        summary = engine.run_sync_cycle()

        assert summary.events_upserted == 1
        assert len(summary.errors) == 1
        assert summary.errors[0]['eventId'] == 'evt-2'
        assert len(store.rows) == 1


class TestSkipsAndRemovals:
    """Tombstones, incomplete events, free events and in-batch repeats"""

    @pytest.mark.engine
    def test_tombstone_deletes_appointments_and_soft_deletes_mapping(self, engine, source, sink, store):
        source.delta_batches = [
            {'events': [graph_event()], 'next_token': 'token-1'},
            {'events': [{'id': 'evt-1', '@removed': {'reason': 'deleted'}}], 'next_token': 'token-2'},
        ]
        engine.run_delta_sync_for_user(TECH_UPN)
        sink.reset_calls()

        summary = engine.run_delta_sync_for_user(TECH_UPN)

        assert sink.calls == [('delete', '1001')]
        assert store.rows[0].status == STATUS_DELETED
        assert store.rows[0].appointment_ids == []
        assert summary.events_skipped == 1

    @pytest.mark.engine
    def test_tombstone_without_mapping_is_skipped(self, engine, source, sink, store):
        source.delta_batches = [{'events': [{'id': 'unknown', '@removed': {}}], 'next_token': 't'}]

        summary = engine.run_delta_sync_for_user(TECH_UPN)

        assert sink.calls == []
        assert store.rows == []
        assert summary.events_skipped == 1

    @pytest.mark.engine
    def test_event_without_times_is_skipped(self, engine, source, sink, store):
        event = graph_event()
        event['end'] = None
        source.window_events = [event]

        summary = engine.run_sync_cycle()

        assert sink.calls == []
        assert store.rows == []
        assert summary.events_skipped == 1

    @pytest.mark.engine
    def test_event_marked_free_after_sync_is_removed(self, engine, source, sink, store):
        source.window_events = [graph_event()]
        engine.run_sync_cycle()
        sink.reset_calls()

        source.window_events = [graph_event(show_as='free')]
        summary = engine.run_sync_cycle()

        assert sink.calls == [('delete', '1001')]
        assert store.rows[0].status == STATUS_DELETED
        assert store.rows[0].appointment_ids == []
        assert store.rows[0].fingerprint == ''
        assert summary.events_skipped == 1

    @pytest.mark.engine
    def test_event_busy_again_after_free_is_recreated(self, engine, source, sink, store):
        source.window_events = [graph_event()]
        engine.run_sync_cycle()
        source.window_events = [graph_event(show_as='free')]
        engine.run_sync_cycle()
        sink.reset_calls()

        source.window_events = [graph_event()]
        summary = engine.run_sync_cycle()

        assert [call[0] for call in sink.calls] == ['create']
        assert summary.events_upserted == 1
        assert len(store.rows) == 1
        assert store.rows[0].status == STATUS_SYNCED

    @pytest.mark.engine
    @pytest.mark.parametrize('show_as', ['free', 'tentative', 'workingElsewhere', 'unknown'])
    def test_non_syncable_availability_never_creates(self, engine, source, sink, show_as):
        source.window_events = [graph_event(show_as=show_as)]

        summary = engine.run_sync_cycle()

        assert sink.calls == []
        assert summary.events_skipped == 1

    @pytest.mark.engine
    def test_exact_repeat_in_one_batch_is_processed_once(self, engine, source, sink):
        source.window_events = [graph_event(), graph_event()]

        summary = engine.run_sync_cycle()

        assert len(sink.calls_of('create')) == 1
        assert summary.events_upserted == 1
        assert summary.events_skipped == 1


class TestDeltaRuns:
    """Cursor handling for incremental runs"""

    @pytest.mark.engine
    def test_cursor_is_stored_after_batch(self, engine, source, store):
        source.delta_batches = [{'events': [graph_event()], 'next_token': 'token-2'}]

        summary = engine.run_delta_sync_for_user(TECH_UPN)

        cursor = store.cursors[TECH_UPN]
        assert cursor.delta_link == 'token-2'
        assert cursor.key_version == FINGERPRINT_VERSION
        assert summary.calendars_processed == 1
        assert summary.events_fetched == 1
        assert summary.finished_at is not None

    @pytest.mark.engine
    def test_fetch_failure_with_token_retries_full_window(self, engine, source, store):
        store.cursors[TECH_UPN] = SyncCursor(TECH_UPN, delta_link='token-1', window_end=current_window_end(),
                                             key_version=FINGERPRINT_VERSION)
        batch = ChangeBatch(events=[graph_event()], next_token='token-2')
        source.fetch_changes = MagicMock(side_effect=[ApiError('Graph', 503, 'unavailable'), batch])

        summary = engine.run_delta_sync_for_user(TECH_UPN)

        tokens = [call[0][1] for call in source.fetch_changes.call_args_list]
        assert tokens == ['token-1', None]
        assert summary.events_upserted == 1
        assert store.cursors[TECH_UPN].delta_link == 'token-2'

    @pytest.mark.engine
    def test_second_fetch_failure_leaves_cursor_untouched(self, engine, source, store):
        store.cursors[TECH_UPN] = SyncCursor(TECH_UPN, delta_link='token-1', window_end=current_window_end(),
                                             key_version=FINGERPRINT_VERSION)
        source.fetch_changes = MagicMock(side_effect=ApiError('Graph', 503, 'unavailable'))

        with pytest.raises(ApiError):
            engine.run_delta_sync_for_user(TECH_UPN)

        assert source.fetch_changes.call_count == 2
        assert store.cursors[TECH_UPN].delta_link == 'token-1'

    @pytest.mark.engine
    def test_fetch_failure_without_token_is_not_retried(self, engine, source, store):
        source.fetch_changes = MagicMock(side_effect=ApiError('Graph', 503, 'unavailable'))

        with pytest.raises(ApiError):
            engine.run_delta_sync_for_user(TECH_UPN)

        assert source.fetch_changes.call_count == 1
        assert TECH_UPN not in store.cursors

    @pytest.mark.engine
    def test_event_errors_in_delta_run_are_alerted(self, source, sink, store):
        from sync.engine import ReconciliationEngine
        from sync.payload_mapper import VisibilityFlags

        alerts = MagicMock()
        engine = ReconciliationEngine(source, sink, store, flags=VisibilityFlags(), alerts=alerts,
                                      past_days=30, future_days=90, tz_name='America/Chicago')
        sink.fail_create_after = 0
        source.delta_batches = [{'events': [graph_event()], 'next_token': 'token-2'}]

        summary = engine.run_delta_sync_for_user(TECH_UPN)

        assert len(summary.errors) == 1
        alerts.notify_failure.assert_called_once()
        assert alerts.notify_failure.call_args[0][1]['userUpn'] == TECH_UPN
        assert store.cursors[TECH_UPN].delta_link == 'token-2'

    @pytest.mark.engine
    def test_stored_token_is_followed(self, engine, source, store):
        store.cursors[TECH_UPN] = SyncCursor(TECH_UPN, delta_link='token-1', window_end=current_window_end(),
                                             key_version=FINGERPRINT_VERSION)
        source.delta_batches = [{'events': [], 'next_token': 'token-2'}]

        engine.run_delta_sync_for_user(TECH_UPN)

        assert source.calls == [('fetch_changes', TECH_UPN, 'token-1')]
        assert store.cursors[TECH_UPN].delta_link == 'token-2'

    @pytest.mark.engine
    def test_rejected_token_retries_once_without_token(self, engine, source, store):
        store.cursors[TECH_UPN] = SyncCursor(TECH_UPN, delta_link='stale', window_end=current_window_end(),
                                             key_version=FINGERPRINT_VERSION)
        source.invalid_tokens = {'stale'}
        source.delta_batches = [{'events': [graph_event()], 'next_token': 'fresh'}]

        summary = engine.run_delta_sync_for_user(TECH_UPN)

        assert source.calls == [('fetch_changes', TECH_UPN, 'stale'), ('fetch_changes', TECH_UPN, None)]
        assert store.cursors[TECH_UPN].delta_link == 'fresh'
        assert summary.events_upserted == 1

    @pytest.mark.engine
    def test_key_version_change_starts_fresh_round(self, engine, source, store):
        store.cursors[TECH_UPN] = SyncCursor(TECH_UPN, delta_link='token-1', window_end=current_window_end(),
                                             key_version='v2')
        source.delta_batches = [{'events': [], 'next_token': 'token-2'}]

        engine.run_delta_sync_for_user(TECH_UPN)

        assert source.calls == [('fetch_changes', TECH_UPN, None)]
        assert store.cursors[TECH_UPN].key_version == FINGERPRINT_VERSION

    @pytest.mark.engine
    def test_expired_window_starts_fresh_round(self, engine, source, store):
        store.cursors[TECH_UPN] = SyncCursor(TECH_UPN, delta_link='token-1', window_end='2020-01-01T00:00:00.000Z',
                                             key_version=FINGERPRINT_VERSION)
        source.delta_batches = [{'events': [], 'next_token': 'token-2'}]

        engine.run_delta_sync_for_user(TECH_UPN)

        assert source.calls == [('fetch_changes', TECH_UPN, None)]

    @pytest.mark.engine
    def test_disabled_user_is_not_fetched(self, engine, source, store, technician):
        technician.enabled = False

        summary = engine.run_delta_sync_for_user(TECH_UPN)

        assert source.calls == []
        assert summary.calendars_processed == 0
        assert TECH_UPN not in store.cursors


class TestSyncCycle:
    """Full-window sweep over all technicians"""

    @pytest.mark.engine
    def test_user_failure_is_recorded_and_alerted(self, source, sink, store):
        from sync.engine import ReconciliationEngine
        from sync.payload_mapper import VisibilityFlags

        alerts = MagicMock()
        engine = ReconciliationEngine(source, sink, store, flags=VisibilityFlags(), alerts=alerts,
                                      past_days=30, future_days=90, tz_name='America/Chicago')
        source.window_events = ApiError('Graph', 503, 'unavailable')

        summary = engine.run_sync_cycle()

        assert summary.calendars_processed == 0
        assert summary.errors == [{'userUpn': TECH_UPN, 'message': 'Graph API error 503: unavailable'}]
        alerts.notify_failure.assert_called_once()

    @pytest.mark.engine
    def test_full_sync_does_not_touch_cursor(self, engine, source, store):
        source.window_events = [graph_event()]

        engine.run_sync_cycle()

        assert store.cursors == {}

    @pytest.mark.engine
    def test_cycle_is_recorded_in_history(self, engine, source):
        source.window_events = [graph_event()]

        engine.run_sync_cycle()

        recent = engine.history.recent()
        assert len(recent) == 1
        assert recent[0]['kind'] == 'cycle'
        assert recent[0]['summary']['eventsUpserted'] == 1
