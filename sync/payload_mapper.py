# © 2024–2025 Harnisch LLC. All Rights Reserved.
# Licensed exclusively for use by St. Edward Church & School (Nashville, TN).
# Unauthorized use, distribution, or modification is prohibited.

"""
Payload Mapper - Outlook event -> ServiceTitan non-job appointment payloads
"""
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

import config
from models import NormalizedEvent, TechnicianConfig
from utils.timezone import format_duration, split_into_day_blocks

logger = logging.getLogger(__name__)

MASKED_NAME = 'Busy'
OUT_OF_OFFICE_NAME = 'Out of Office'


@dataclass(frozen=True)
class VisibilityFlags:
    """Placement flags written on every block of every event"""
    show_on_technician_schedule: bool = True
    clear_dispatch_board: bool = True
    clear_technician_view: bool = False
    remove_from_capacity_planning: bool = True

    @classmethod
    def from_config(cls) -> 'VisibilityFlags':
        return cls(
            show_on_technician_schedule=config.ST_SHOW_ON_TECH_SCHEDULE,
            clear_dispatch_board=config.ST_CLEAR_DISPATCH_BOARD,
            clear_technician_view=config.ST_CLEAR_TECHNICIAN_VIEW,
            remove_from_capacity_planning=config.ST_REMOVE_FROM_CAPACITY,
        )


def appointment_name(event: NormalizedEvent) -> str:
    """Private events are always masked; empty subjects get a generic label"""
    if event.is_private:
        return MASKED_NAME
    if event.subject:
        return event.subject
    return OUT_OF_OFFICE_NAME if event.show_as == 'oof' else MASKED_NAME


def map_event_to_payloads(event: NormalizedEvent, technician: TechnicianConfig,
                          flags: Optional[VisibilityFlags] = None,
                          tz_name: Optional[str] = None) -> List[Dict]:
    """
    Build one ServiceTitan payload per local day-block, in block order

    The caller must have checked event.has_times.
    """
    if not event.has_times:
        raise ValueError(f"Event {event.id} has no start/end; cannot build payloads")

    flags = flags or VisibilityFlags.from_config()
    name = appointment_name(event)
    timesheet_code = technician.timesheet_code

    payloads = []
    for block_start, block_end in split_into_day_blocks(event.start, event.end, tz_name):
        payload = {
            'technicianId': technician.technician_id,
            'start': block_start.isoformat(),
            'duration': format_duration(block_end - block_start),
            'name': name,
            'allDay': event.is_all_day,
            'showOnTechnicianSchedule': flags.show_on_technician_schedule,
            'clearDispatchBoard': flags.clear_dispatch_board,
            'clearTechnicianView': flags.clear_technician_view,
            'removeTechnicianFromCapacityPlanning': flags.remove_from_capacity_planning,
            'active': True,
        }
        # ServiceTitan treats an explicit 0 differently from an absent code
        if timesheet_code is not None:
            payload['timesheetCodeId'] = timesheet_code
        payloads.append(payload)

    logger.debug(f"Mapped event {event.id} to {len(payloads)} payload(s)")
    return payloads
