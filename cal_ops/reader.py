# © 2024–2025 Harnisch LLC. All Rights Reserved.
# Licensed exclusively for use by St. Edward Church & School (Nashville, TN).
# Unauthorized use, distribution, or modification is prohibited.

"""
Calendar Reader - Read technician calendars from Microsoft Graph (delta + calendarView)
"""
import logging
import time
import urllib.parse
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

import requests

import config
from models import ChangeBatch
from utils.errors import ApiError, InvalidCursorError
from utils.logger import StructuredLogger
from utils.retry import RetryPolicy
from utils.timezone import isoformat_utc, utc_now, window_bounds

logger = logging.getLogger(__name__)

WINDOW_SELECT_FIELDS = [
    'id', 'iCalUId', 'subject', 'start', 'end', 'isAllDay', 'showAs',
    'sensitivity', 'location', 'attendees', 'bodyPreview', 'lastModifiedDateTime'
]

INVALID_CURSOR_CODES = ('syncstatenotfound', 'syncstateinvalid', 'resyncrequired')

SUBSCRIPTION_LIFETIME = timedelta(days=2)


class GraphCalendarReader:
    """Fetches calendar changes for one user at a time; pagination is handled here"""

    def __init__(self, auth, retry_policy: Optional[RetryPolicy] = None,
                 session: Optional[requests.Session] = None, base_url: Optional[str] = None,
                 page_size: int = 50, max_pages: int = 200):
        self.auth = auth
        self.retry_policy = retry_policy or RetryPolicy('graph', max_retries=config.MAX_RETRIES)
        self.session = session or requests.Session()
        self.base_url = (base_url or config.GRAPH_BASE_URL).rstrip('/')
        self.page_size = page_size
        self.max_pages = max_pages
        self.structured_logger = StructuredLogger(__name__)

    def _user_path(self, user_upn: str) -> str:
        return f"{self.base_url}/users/{urllib.parse.quote(user_upn)}"

    def _raise_for_response(self, response: requests.Response, url: str):
        body = response.text
        if response.status_code == 410:
            raise InvalidCursorError('Graph', 410, 'delta token expired', body)
        if response.status_code == 400:
            error_code = ''
            try:
                error_code = str(response.json().get('error', {}).get('code', ''))
            except ValueError:
                pass
            if error_code.lower() in INVALID_CURSOR_CODES:
                raise InvalidCursorError('Graph', 400, f"delta token rejected ({error_code})", body)
        raise ApiError('Graph', response.status_code, f"request to {url.split('?')[0]} failed", body)

    def _request_once(self, method: str, url: str, params: Optional[Dict] = None,
                      json_body: Optional[Dict] = None, extra_headers: Optional[Dict] = None) -> Dict:
        headers = self.auth.get_headers()
        if extra_headers:
            headers.update(extra_headers)

        started = time.monotonic()
        try:
            response = self.session.request(method, url, headers=headers, params=params,
                                            json=json_body, timeout=30)

            if response.status_code == 401:
                # Token revoked early; refresh once and retry the same call
                self.auth.invalidate()
                headers.update(self.auth.get_headers())
                response = self.session.request(method, url, headers=headers, params=params,
                                                json=json_body, timeout=30)
        except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
            raise ApiError('Graph', None, f"{method} {url.split('?')[0]} failed: {e}")

        self.structured_logger.log_api_call(
            method, url.split('?')[0], status_code=response.status_code,
            duration_ms=round((time.monotonic() - started) * 1000, 1)
        )

        if response.status_code == 204:
            return {}
        if not 200 <= response.status_code < 300:
            self._raise_for_response(response, url)
        return response.json()

    def _request(self, method: str, url: str, **kwargs) -> Dict:
        return self.retry_policy.call(self._request_once, method, url, **kwargs)

    def _collect_pages(self, url: str, params: Optional[Dict], prefer: str) -> Tuple[List[Dict], Optional[str]]:
        events: List[Dict] = []
        delta_link = None
        page_counter = 0

        while url:
            if page_counter >= self.max_pages:
                raise ApiError('Graph', None, f"pagination exceeded {self.max_pages} pages")
            data = self._request('GET', url, params=params, extra_headers={'Prefer': prefer})
            events.extend(data.get('value', []))
            page_counter += 1
            # nextLink/deltaLink already carry the query string
            params = None
            url = data.get('@odata.nextLink')
            delta_link = data.get('@odata.deltaLink') or delta_link
            if url:
                logger.debug(f"Fetching next page of events (current total: {len(events)})")

        return events, delta_link

    def fetch_changes(self, user_upn: str, continuation_token: Optional[str] = None,
                      window: Optional[Tuple[datetime, datetime]] = None) -> ChangeBatch:
        """
        Delta query over the user's calendarView

        With a continuation token the stored deltaLink is followed as-is;
        otherwise a fresh delta round is started over `window`.
        """
        prefer = f'outlook.timezone="UTC", odata.maxpagesize={self.page_size}'
        if continuation_token:
            url = continuation_token
            params = None
        else:
            start, end = window or window_bounds(config.SYNC_WINDOW_PAST_DAYS, config.SYNC_WINDOW_FUTURE_DAYS)
            url = f"{self._user_path(user_upn)}/calendarView/delta"
            params = {
                'startDateTime': isoformat_utc(start),
                'endDateTime': isoformat_utc(end),
            }

        events, delta_link = self._collect_pages(url, params, prefer)
        logger.info(f"Fetched {len(events)} changed events for {user_upn} "
                    f"({'delta' if continuation_token else 'initial round'})")
        return ChangeBatch(events=events, next_token=delta_link)

    def fetch_window(self, user_upn: str, past_days: int, future_days: int) -> List[Dict]:
        """Every event occurrence in [now - past_days, now + future_days]"""
        start, end = window_bounds(past_days, future_days)
        url = f"{self._user_path(user_upn)}/calendarView"
        params = {
            'startDateTime': isoformat_utc(start),
            'endDateTime': isoformat_utc(end),
            '$select': ','.join(WINDOW_SELECT_FIELDS),
            '$top': self.page_size,
        }
        events, _ = self._collect_pages(url, params, 'outlook.timezone="UTC"')
        logger.info(f"Fetched {len(events)} window events for {user_upn}")
        return events

    def create_or_renew_subscription(self, user_upn: str, notification_url: str,
                                     client_state: str) -> Dict:
        """Extend the user's events subscription, creating it when none exists"""
        resource = f"/users/{user_upn}/events"
        expiration = isoformat_utc(utc_now() + SUBSCRIPTION_LIFETIME)

        existing = self._request('GET', f"{self.base_url}/subscriptions").get('value', [])
        for subscription in existing:
            same_resource = str(subscription.get('resource', '')).strip('/').lower() == resource.strip('/').lower()
            if same_resource and subscription.get('notificationUrl') == notification_url:
                logger.info(f"Renewing Graph subscription {subscription.get('id')} for {user_upn}")
                return self._request('PATCH', f"{self.base_url}/subscriptions/{subscription['id']}",
                                     json_body={'expirationDateTime': expiration})

        logger.info(f"Creating Graph subscription for {user_upn}")
        return self._request('POST', f"{self.base_url}/subscriptions", json_body={
            'changeType': 'created,updated,deleted',
            'notificationUrl': notification_url,
            'resource': resource,
            'expirationDateTime': expiration,
            'clientState': client_state,
        })
