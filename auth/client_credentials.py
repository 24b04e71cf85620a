# © 2024–2025 Harnisch LLC. All Rights Reserved.
# Licensed exclusively for use by St. Edward Church & School (Nashville, TN).
# Unauthorized use, distribution, or modification is prohibited.

"""
OAuth2 client-credentials token acquisition shared by Graph and ServiceTitan
"""
import logging
from typing import Dict, Optional

import requests

from utils.cache import AccessTokenCache
from utils.errors import ApiError

logger = logging.getLogger(__name__)


class ClientCredentialsAuth:
    """Fetches an app-only token and keeps it in an injected AccessTokenCache"""

    service_name = 'oauth'

    def __init__(self, token_url: str, client_id: str, client_secret: str,
                 token_cache: AccessTokenCache, scope: Optional[str] = None,
                 session: Optional[requests.Session] = None, timeout: int = 30):
        self.token_url = token_url
        self.client_id = client_id.strip()
        self.client_secret = client_secret.strip()
        self.scope = scope
        self.token_cache = token_cache
        self.session = session or requests.Session()
        self.timeout = timeout

    def get_access_token(self) -> str:
        token = self.token_cache.get()
        if token:
            return token
        return self.refresh_access_token()

    def refresh_access_token(self) -> str:
        """Request a new token; raises ApiError when the identity endpoint refuses"""
        logger.info(f"{self.service_name} access token expired or not present. Refreshing...")

        data = {
            'grant_type': 'client_credentials',
            'client_id': self.client_id,
            'client_secret': self.client_secret,
        }
        if self.scope:
            data['scope'] = self.scope

        try:
            response = self.session.post(self.token_url, data=data, timeout=self.timeout)
        except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
            raise ApiError(self.service_name, None, f"token request failed: {e}")

        if response.status_code != 200:
            raise ApiError(self.service_name, response.status_code,
                           'token refresh failed', response.text)

        tokens = response.json()
        access_token = tokens.get('access_token')
        if not access_token:
            raise ApiError(self.service_name, response.status_code, 'token response had no access_token')

        self.token_cache.store(access_token, tokens.get('expires_in', 3600))
        logger.info(f"{self.service_name} access token refreshed successfully.")
        return access_token

    def invalidate(self):
        self.token_cache.clear()

    def get_headers(self) -> Dict[str, str]:
        return {
            'Authorization': f'Bearer {self.get_access_token()}',
            'Content-Type': 'application/json',
            'Accept': 'application/json',
        }
