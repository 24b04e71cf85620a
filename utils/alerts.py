# © 2024–2025 Harnisch LLC. All Rights Reserved.
# Licensed exclusively for use by St. Edward Church & School (Nashville, TN).
# Unauthorized use, distribution, or modification is prohibited.

"""
Failure alerts to Slack and/or email (SendGrid), rate limited by a cooldown
"""
import json
import logging
import time
from threading import Lock
from typing import Any, Callable, Optional

import requests

import config

logger = logging.getLogger(__name__)

SENDGRID_URL = 'https://api.sendgrid.com/v3/mail/send'


def build_alert_text(title: str, details: Any) -> str:
    detail_text = details if isinstance(details, str) else json.dumps(details, default=str)
    return f"{title}\n{detail_text}"


class AlertNotifier:
    """Fire-and-forget failure notifications; delivery problems are logged, never raised"""

    def __init__(self, slack_webhook_url: Optional[str] = None, sendgrid_api_key: Optional[str] = None,
                 email_to: Optional[str] = None, email_from: Optional[str] = None,
                 cooldown_seconds: Optional[int] = None, session: Optional[requests.Session] = None,
                 clock: Callable[[], float] = time.time):
        self.slack_webhook_url = (slack_webhook_url if slack_webhook_url is not None
                                  else config.ALERT_SLACK_WEBHOOK_URL).strip()
        self.sendgrid_api_key = (sendgrid_api_key if sendgrid_api_key is not None
                                 else config.SENDGRID_API_KEY).strip()
        self.email_to = (email_to if email_to is not None else config.ALERT_EMAIL_TO).strip()
        self.email_from = (email_from if email_from is not None else config.ALERT_EMAIL_FROM).strip()
        self.cooldown_seconds = config.ALERT_COOLDOWN_SECONDS if cooldown_seconds is None else cooldown_seconds
        self.session = session or requests.Session()
        self.clock = clock
        self._last_alert_at: Optional[float] = None
        self._lock = Lock()

    @property
    def has_slack(self) -> bool:
        return bool(self.slack_webhook_url)

    @property
    def has_email(self) -> bool:
        return bool(self.sendgrid_api_key and self.email_to and self.email_from)

    def _claim_slot(self) -> bool:
        with self._lock:
            now = self.clock()
            if self._last_alert_at is not None and now - self._last_alert_at < self.cooldown_seconds:
                return False
            self._last_alert_at = now
            return True

    def _send_slack(self, text: str):
        response = self.session.post(self.slack_webhook_url, json={'text': text}, timeout=10)
        if not response.ok:
            raise RuntimeError(f"Slack alert failed {response.status_code}: {response.text}")

    def _send_email(self, subject: str, text: str):
        response = self.session.post(SENDGRID_URL, timeout=10, headers={
            'Authorization': f'Bearer {self.sendgrid_api_key}',
            'Content-Type': 'application/json',
        }, json={
            'personalizations': [{'to': [{'email': self.email_to}]}],
            'from': {'email': self.email_from},
            'subject': subject,
            'content': [{'type': 'text/plain', 'value': text}],
        })
        if not response.ok:
            raise RuntimeError(f"SendGrid alert failed {response.status_code}: {response.text}")

    def notify_failure(self, title: str, details: Any = None) -> bool:
        """Returns True when at least one channel was attempted"""
        if not self.has_slack and not self.has_email:
            return False
        if not self._claim_slot():
            logger.info(f"Alert suppressed by cooldown: {title}")
            return False

        text = build_alert_text(title, details if details is not None else '')
        if self.has_slack:
            try:
                self._send_slack(text)
            except Exception as e:
                logger.error(f"Slack alert delivery failed: {e}")
        if self.has_email:
            try:
                self._send_email(title, text)
            except Exception as e:
                logger.error(f"Email alert delivery failed: {e}")
        return True
