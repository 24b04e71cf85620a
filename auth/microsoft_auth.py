# © 2024–2025 Harnisch LLC. All Rights Reserved.
# Licensed exclusively for use by St. Edward Church & School (Nashville, TN).
# Unauthorized use, distribution, or modification is prohibited.

"""
Microsoft Graph - app-only authentication for reading technician calendars
"""
from typing import Optional

import requests

import config
from auth.client_credentials import ClientCredentialsAuth
from utils.cache import AccessTokenCache


class GraphAuth(ClientCredentialsAuth):
    service_name = 'Graph'

    def __init__(self, token_cache: AccessTokenCache, tenant_id: Optional[str] = None,
                 client_id: Optional[str] = None, client_secret: Optional[str] = None,
                 session: Optional[requests.Session] = None):
        tenant = (tenant_id or config.GRAPH_TENANT_ID).strip()
        super().__init__(
            token_url=f"https://login.microsoftonline.com/{tenant}/oauth2/v2.0/token",
            client_id=client_id or config.GRAPH_CLIENT_ID,
            client_secret=client_secret or config.GRAPH_CLIENT_SECRET,
            token_cache=token_cache,
            scope=' '.join(config.GRAPH_SCOPES),
            session=session,
        )
