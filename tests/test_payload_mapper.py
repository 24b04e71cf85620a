"""
Payload mapping tests - ServiceTitan non-job appointment bodies
"""

import pytest
import sys
import os

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from conftest import graph_event
from models import TechnicianConfig
from sync.normalizer import normalize_graph_event
from sync.payload_mapper import (
    MASKED_NAME, OUT_OF_OFFICE_NAME, VisibilityFlags, appointment_name, map_event_to_payloads,
)

CHICAGO = 'America/Chicago'


def technician(timesheet_code_id='7'):
    return TechnicianConfig(outlook_upn='tech@example.com', technician_id='42',
                            timesheet_code_id=timesheet_code_id, enabled=True)


def payloads_for(raw, tech=None, flags=None):
    return map_event_to_payloads(normalize_graph_event(raw), tech or technician(),
                                 flags or VisibilityFlags(), CHICAGO)


class TestNames:

    @pytest.mark.mapping
    def test_subject_is_used(self):
        assert appointment_name(normalize_graph_event(graph_event(subject='Boiler check'))) == 'Boiler check'

    @pytest.mark.mapping
    def test_private_is_masked_even_when_out_of_office(self):
        event = normalize_graph_event(graph_event(subject='Surgery', sensitivity='private', show_as='oof'))
        assert appointment_name(event) == MASKED_NAME

    @pytest.mark.mapping
    def test_empty_subject_labels(self):
        assert appointment_name(normalize_graph_event(graph_event(subject=''))) == MASKED_NAME
        assert appointment_name(normalize_graph_event(graph_event(subject='', show_as='oof'))) == OUT_OF_OFFICE_NAME


class TestPayloads:

    @pytest.mark.mapping
    def test_single_block_payload(self):
        payloads = payloads_for(graph_event())

        assert payloads == [{
            'technicianId': '42',
            'start': '2026-02-10T16:00:00-06:00',
            'duration': '05:00:00',
            'name': 'Site visit',
            'allDay': False,
            'showOnTechnicianSchedule': True,
            'clearDispatchBoard': True,
            'clearTechnicianView': False,
            'removeTechnicianFromCapacityPlanning': True,
            'active': True,
            'timesheetCodeId': 7,
        }]

    @pytest.mark.mapping
    def test_one_payload_per_day_block(self):
        payloads = payloads_for(graph_event(start='2026-02-10T20:00:00', end='2026-02-12T16:00:00'))

        assert [p['duration'] for p in payloads] == ['10:00:00', '24:00:00', '10:00:00']
        assert len({p['name'] for p in payloads}) == 1

    @pytest.mark.mapping
    @pytest.mark.parametrize('code', ['', '0', 'abc', '-3'])
    def test_invalid_timesheet_code_is_omitted(self, code):
        payload = payloads_for(graph_event(), tech=technician(code))[0]
        assert 'timesheetCodeId' not in payload

    @pytest.mark.mapping
    def test_flags_are_applied(self):
        flags = VisibilityFlags(show_on_technician_schedule=False, clear_technician_view=True)
        payload = payloads_for(graph_event(), flags=flags)[0]

        assert payload['showOnTechnicianSchedule'] is False
        assert payload['clearTechnicianView'] is True

    @pytest.mark.mapping
    def test_event_without_times_is_rejected(self):
        raw = graph_event()
        raw['end'] = None
        with pytest.raises(ValueError):
            payloads_for(raw)
