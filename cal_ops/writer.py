# © 2024–2025 Harnisch LLC. All Rights Reserved.
# Licensed exclusively for use by St. Edward Church & School (Nashville, TN).
# Unauthorized use, distribution, or modification is prohibited.

"""
Calendar Writer - ServiceTitan non-job appointment operations
"""
import logging
import time
from datetime import datetime
from typing import Dict, List, Optional, Tuple

import requests

import config
from utils.errors import ApiError, NotFoundError
from utils.logger import StructuredLogger
from utils.retry import RetryPolicy
from utils.timezone import isoformat_utc

logger = logging.getLogger(__name__)


def _to_int(value):
    try:
        return int(value)
    except (TypeError, ValueError):
        return value


def prepare_appointment_payload(payload: Dict) -> Dict:
    """Coerce a mapped payload into the types ServiceTitan expects"""
    prepared = {
        'technicianId': _to_int(payload.get('technicianId')),
        'start': payload.get('start'),
        'duration': payload.get('duration'),
        'name': payload.get('name'),
        'allDay': bool(payload.get('allDay')),
        'showOnTechnicianSchedule': bool(payload.get('showOnTechnicianSchedule')),
        'clearDispatchBoard': bool(payload.get('clearDispatchBoard')),
        'clearTechnicianView': bool(payload.get('clearTechnicianView')),
        'removeTechnicianFromCapacityPlanning': bool(payload.get('removeTechnicianFromCapacityPlanning')),
        'active': payload.get('active') is not False,
    }
    if payload.get('timesheetCodeId') is not None:
        prepared['timesheetCodeId'] = _to_int(payload['timesheetCodeId'])
    return prepared


class ServiceTitanWriter:
    """Appointment sink: create/update/delete/list non-job appointments"""

    def __init__(self, auth, retry_policy: Optional[RetryPolicy] = None,
                 session: Optional[requests.Session] = None, api_url: Optional[str] = None):
        self.auth = auth
        self.retry_policy = retry_policy or RetryPolicy(
            'servicetitan', max_retries=3, base_delay=config.BASE_DELAY, max_delay=5.0
        )
        self.session = session or requests.Session()
        self.api_url = (api_url or config.SERVICETITAN_API_URL).rstrip('/')
        self.structured_logger = StructuredLogger(__name__)

    @property
    def dispatch_url(self) -> str:
        return f"{self.api_url}/dispatch/v2/tenant/{self.auth.tenant_id}"

    def _request_once(self, method: str, url: str, params: Optional[Dict] = None,
                      json_body: Optional[Dict] = None):
        headers = self.auth.get_headers()
        started = time.monotonic()
        try:
            response = self.session.request(method, url, headers=headers, params=params,
                                            json=json_body, timeout=30)
            if response.status_code == 401:
                self.auth.invalidate()
                response = self.session.request(method, url, headers=self.auth.get_headers(),
                                                params=params, json=json_body, timeout=30)
        except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
            raise ApiError('ServiceTitan', None, f"{method} {url} failed: {e}")

        self.structured_logger.log_api_call(
            method, url.replace(self.api_url, ''), status_code=response.status_code,
            duration_ms=round((time.monotonic() - started) * 1000, 1)
        )

        if response.status_code == 404:
            raise NotFoundError('ServiceTitan', 404, f"{method} {url} not found", response.text)
        if not 200 <= response.status_code < 300:
            raise ApiError('ServiceTitan', response.status_code, f"{method} {url} failed", response.text)
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    def _request(self, method: str, url: str, **kwargs):
        return self.retry_policy.call(self._request_once, method, url, **kwargs)

    def create(self, payload: Dict) -> str:
        """Create a non-job appointment and return its id"""
        body = prepare_appointment_payload(payload)
        data = self._request('POST', f"{self.dispatch_url}/non-job-appointments", json_body=body)
        appointment_id = (data or {}).get('id')
        if appointment_id is None:
            raise ApiError('ServiceTitan', None, 'create returned no appointment id')
        logger.info(f"✅ Created non-job appointment {appointment_id}: {body.get('name')} @ {body.get('start')}")
        return str(appointment_id)

    def update(self, appointment_id: str, payload: Dict):
        """Replace an appointment; raises NotFoundError when it no longer exists"""
        body = prepare_appointment_payload(payload)
        self._request('PUT', f"{self.dispatch_url}/non-job-appointments/{appointment_id}", json_body=body)
        logger.info(f"✅ Updated non-job appointment {appointment_id}")

    def delete(self, appointment_id: str):
        """Delete an appointment; an already-missing appointment counts as deleted"""
        try:
            self._request('DELETE', f"{self.dispatch_url}/non-job-appointments/{appointment_id}")
        except NotFoundError:
            logger.warning(f"Non-job appointment {appointment_id} already gone")
            return
        logger.info(f"✅ Deleted non-job appointment {appointment_id}")

    def list(self, technician_id: str, window: Tuple[datetime, datetime],
             page: int = 1, page_size: int = 500) -> List[Dict]:
        starts_on_or_after, starts_on_or_before = window
        data = self._request('GET', f"{self.dispatch_url}/non-job-appointments", params={
            'technicianId': technician_id,
            'startsOnOrAfter': isoformat_utc(starts_on_or_after),
            'startsOnOrBefore': isoformat_utc(starts_on_or_before),
            'page': page,
            'pageSize': page_size,
        })
        return (data or {}).get('data', [])
