# © 2024–2025 Harnisch LLC. All Rights Reserved.
# Licensed exclusively for use by St. Edward Church & School (Nashville, TN).
# Unauthorized use, distribution, or modification is prohibited.

"""
Google Sheets values API wrapper with retry
"""
import logging
import re
from typing import List, Optional

import google.auth
from google.oauth2 import service_account
from googleapiclient.discovery import build

import config
from utils.errors import MappingStoreError
from utils.retry import RetryPolicy, http_status_of

logger = logging.getLogger(__name__)

SHEETS_SCOPES = ['https://www.googleapis.com/auth/spreadsheets']

_UPDATED_ROW = re.compile(r'![A-Z]+(\d+)')


def _load_credentials():
    if config.GOOGLE_SERVICE_ACCOUNT_FILE:
        return service_account.Credentials.from_service_account_file(
            config.GOOGLE_SERVICE_ACCOUNT_FILE, scopes=SHEETS_SCOPES
        )
    credentials, _ = google.auth.default(scopes=SHEETS_SCOPES)
    return credentials


class SheetsClient:
    """Thin get/append/update/clear facade over spreadsheets().values()"""

    def __init__(self, spreadsheet_id: Optional[str] = None, credentials=None,
                 retry_policy: Optional[RetryPolicy] = None, service=None):
        self.spreadsheet_id = spreadsheet_id or config.GOOGLE_SPREADSHEET_ID
        self._credentials = credentials
        self._service = service
        self.retry_policy = retry_policy or RetryPolicy(
            'sheets', max_retries=5, base_delay=0.5, max_delay=10.0, jitter=0.5
        )

    @property
    def values(self):
        if self._service is None:
            credentials = self._credentials or _load_credentials()
            self._service = build('sheets', 'v4', credentials=credentials, cache_discovery=False)
            logger.info("Google Sheets API client initialized.")
        return self._service.spreadsheets().values()

    def _execute(self, label: str, make_request):
        try:
            return self.retry_policy.call(lambda: make_request().execute())
        except Exception as e:
            code = http_status_of(e)
            details = f"code={code}" if code else "code=unknown"
            raise MappingStoreError(f"Google Sheets {label} failed ({details}): {e}", code=code) from e

    def read(self, range_name: str) -> List[List[str]]:
        result = self._execute(f"read {range_name}", lambda: self.values.get(
            spreadsheetId=self.spreadsheet_id, range=range_name
        ))
        return result.get('values', []) if result else []

    def append(self, range_name: str, row: List) -> Optional[int]:
        """Append one row; returns the 1-based sheet row it landed on when known"""
        result = self._execute(f"append {range_name}", lambda: self.values.append(
            spreadsheetId=self.spreadsheet_id,
            range=range_name,
            valueInputOption='RAW',
            insertDataOption='INSERT_ROWS',
            body={'values': [row]},
        ))
        updated_range = ((result or {}).get('updates') or {}).get('updatedRange', '')
        match = _UPDATED_ROW.search(updated_range)
        return int(match.group(1)) if match else None

    def update(self, range_name: str, values: List[List]):
        self._execute(f"update {range_name}", lambda: self.values.update(
            spreadsheetId=self.spreadsheet_id,
            range=range_name,
            valueInputOption='RAW',
            body={'values': values},
        ))

    def clear(self, range_name: str):
        self._execute(f"clear {range_name}", lambda: self.values.clear(
            spreadsheetId=self.spreadsheet_id, range=range_name, body={}
        ))
