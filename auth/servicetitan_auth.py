# © 2024–2025 Harnisch LLC. All Rights Reserved.
# Licensed exclusively for use by St. Edward Church & School (Nashville, TN).
# Unauthorized use, distribution, or modification is prohibited.

"""
ServiceTitan - client-credentials authentication with tenant headers
"""
from typing import Dict, Optional

import requests

import config
from auth.client_credentials import ClientCredentialsAuth
from utils.cache import AccessTokenCache


class ServiceTitanAuth(ClientCredentialsAuth):
    service_name = 'ServiceTitan'

    def __init__(self, token_cache: AccessTokenCache, tenant_id: Optional[str] = None,
                 client_id: Optional[str] = None, client_secret: Optional[str] = None,
                 app_key: Optional[str] = None, session: Optional[requests.Session] = None):
        super().__init__(
            token_url=config.SERVICETITAN_AUTH_URL,
            client_id=client_id or config.SERVICETITAN_CLIENT_ID,
            client_secret=client_secret or config.SERVICETITAN_CLIENT_SECRET,
            token_cache=token_cache,
            session=session,
        )
        self.tenant_id = (tenant_id or config.SERVICETITAN_TENANT_ID).strip()
        self.app_key = config.SERVICETITAN_APP_KEY if app_key is None else app_key.strip()

    def get_headers(self) -> Dict[str, str]:
        headers = super().get_headers()
        headers['ST-Tenant'] = self.tenant_id
        if self.app_key:
            headers['ST-App-Key'] = self.app_key
        return headers
