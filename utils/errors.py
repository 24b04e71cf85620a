# © 2024–2025 Harnisch LLC. All Rights Reserved.
# Licensed exclusively for use by St. Edward Church & School (Nashville, TN).
# Unauthorized use, distribution, or modification is prohibited.

"""
Error types shared by the API clients, the mapping store and the sync engine
"""
from typing import Optional


class SyncError(Exception):
    """Base class for every error raised by this service"""


class ConfigError(SyncError):
    """Required configuration is missing or malformed"""


class ApiError(SyncError):
    """A downstream HTTP call failed"""

    def __init__(self, service: str, status_code: Optional[int], message: str, body: str = ''):
        self.service = service
        self.status_code = status_code
        self.body = body
        super().__init__(f"{service} API error {status_code}: {message}")

    @property
    def retryable(self) -> bool:
        # None means the request never got a response (network failure)
        if self.status_code is None:
            return True
        return self.status_code == 429 or 500 <= self.status_code <= 599


class NotFoundError(ApiError):
    """The referenced remote record does not exist"""


class InvalidCursorError(ApiError):
    """Graph rejected a delta continuation token"""


class MappingStoreError(SyncError):
    """The spreadsheet-backed mapping store could not be read or written"""

    def __init__(self, message: str, code: Optional[int] = None):
        self.code = code
        super().__init__(message)


class MappingWriteError(MappingStoreError):
    """Persisting a single event mapping row failed"""
