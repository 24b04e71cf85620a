# © 2024–2025 Harnisch LLC. All Rights Reserved.
# Licensed exclusively for use by St. Edward Church & School (Nashville, TN).
# Unauthorized use, distribution, or modification is prohibited.

"""
Environment-based configuration for the Outlook -> ServiceTitan calendar sync
"""
import os
from typing import List

from utils.errors import ConfigError


def _parse_bool(value, default: bool) -> bool:
    if value is None or str(value).strip() == '':
        return default
    return str(value).strip().lower() in ('1', 'true', 'yes')


def _parse_non_negative_int(key: str, default: int) -> int:
    raw = os.environ.get(key)
    if raw is None or raw.strip() == '':
        return default
    try:
        parsed = int(raw.strip())
    except ValueError:
        raise ConfigError(f"Invalid {key}: expected a non-negative integer")
    if parsed < 0:
        raise ConfigError(f"Invalid {key}: expected a non-negative integer")
    return parsed


def _split_csv(value: str) -> List[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(',') if item.strip()]


# Environment Detection
ENVIRONMENT = os.environ.get('ENVIRONMENT', 'production')
DEBUG = ENVIRONMENT == 'development'

# Application Settings
PORT = int(os.environ.get('PORT', 8080))
RUN_SYNC_TOKEN = os.environ.get('RUN_SYNC_TOKEN', '')

# Sync Window (days relative to now)
SYNC_WINDOW_PAST_DAYS = _parse_non_negative_int('SYNC_WINDOW_PAST_DAYS', 30)
SYNC_WINDOW_FUTURE_DAYS = _parse_non_negative_int('SYNC_WINDOW_FUTURE_DAYS', 90)

# All day-splitting and payload timestamps use this zone
TARGET_TIMEZONE = os.environ.get('TARGET_TIMEZONE', 'America/Chicago')

# Microsoft Graph (app-only)
GRAPH_CLIENT_ID = os.environ.get('GRAPH_CLIENT_ID', '')
GRAPH_CLIENT_SECRET = os.environ.get('GRAPH_CLIENT_SECRET', '')
GRAPH_TENANT_ID = os.environ.get('GRAPH_TENANT_ID', '')
GRAPH_BASE_URL = os.environ.get('GRAPH_BASE_URL', 'https://graph.microsoft.com/v1.0')
GRAPH_WEBHOOK_URL = os.environ.get('GRAPH_WEBHOOK_URL', '')
GRAPH_CLIENT_STATE = os.environ.get('GRAPH_CLIENT_STATE', '')
GRAPH_SCOPES = ['https://graph.microsoft.com/.default']
OUTLOOK_USER_UPNS = _split_csv(os.environ.get('OUTLOOK_USER_UPNS', ''))

# ServiceTitan
SERVICETITAN_CLIENT_ID = os.environ.get('SERVICETITAN_CLIENT_ID', '')
SERVICETITAN_CLIENT_SECRET = os.environ.get('SERVICETITAN_CLIENT_SECRET', '')
SERVICETITAN_TENANT_ID = os.environ.get('SERVICETITAN_TENANT_ID', '')
SERVICETITAN_APP_KEY = os.environ.get('SERVICETITAN_APP_KEY', '').strip()
SERVICETITAN_AUTH_URL = os.environ.get('SERVICETITAN_AUTH_URL', 'https://auth.servicetitan.io/connect/token')
SERVICETITAN_API_URL = os.environ.get('SERVICETITAN_API_URL', 'https://api.servicetitan.io')

# Non-job appointment visibility flags
ST_SHOW_ON_TECH_SCHEDULE = _parse_bool(os.environ.get('ST_SHOW_ON_TECH_SCHEDULE'), True)
ST_CLEAR_DISPATCH_BOARD = _parse_bool(os.environ.get('ST_CLEAR_DISPATCH_BOARD'), True)
ST_CLEAR_TECHNICIAN_VIEW = _parse_bool(os.environ.get('ST_CLEAR_TECHNICIAN_VIEW'), False)
ST_REMOVE_FROM_CAPACITY = _parse_bool(os.environ.get('ST_REMOVE_FROM_CAPACITY'), True)

# Google Sheets mapping store
GOOGLE_SPREADSHEET_ID = os.environ.get('GOOGLE_SPREADSHEET_ID', '')
GOOGLE_SERVICE_ACCOUNT_FILE = os.environ.get('GOOGLE_SERVICE_ACCOUNT_FILE', '')
MAPPING_CACHE_TTL_SECONDS = _parse_non_negative_int('MAPPING_CACHE_TTL_SECONDS', 300)

# Token cache
TOKEN_EXPIRY_MARGIN_SECONDS = _parse_non_negative_int('TOKEN_EXPIRY_MARGIN_SECONDS', 60)

# Retry Settings
MAX_RETRIES = int(os.environ.get('MAX_RETRIES', 3))
BASE_DELAY = float(os.environ.get('BASE_DELAY', 0.25))
MAX_DELAY = float(os.environ.get('MAX_DELAY', 10.0))

# Alerting
ALERT_SLACK_WEBHOOK_URL = os.environ.get('ALERT_SLACK_WEBHOOK_URL', '').strip()
SENDGRID_API_KEY = os.environ.get('SENDGRID_API_KEY', '').strip()
ALERT_EMAIL_TO = os.environ.get('ALERT_EMAIL_TO', '').strip()
ALERT_EMAIL_FROM = os.environ.get('ALERT_EMAIL_FROM', '').strip()
ALERT_COOLDOWN_SECONDS = _parse_non_negative_int('ALERT_COOLDOWN_SECONDS', 600)

# Scheduling (in minutes / hours)
SYNC_INTERVAL_MIN = int(os.environ.get('SYNC_INTERVAL_MIN', 30))
SUBSCRIPTION_RENEW_HOURS = int(os.environ.get('SUBSCRIPTION_RENEW_HOURS', 24))
SCHEDULER_ENABLED = _parse_bool(os.environ.get('SCHEDULER_ENABLED'), True)

# Logging
LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')
STRUCTURED_LOGGING = _parse_bool(os.environ.get('STRUCTURED_LOGGING'), True)

# Development Settings
if DEBUG:
    LOG_LEVEL = 'DEBUG'
    SCHEDULER_ENABLED = False

REQUIRED_KEYS = [
    'RUN_SYNC_TOKEN',
    'GRAPH_CLIENT_ID',
    'GRAPH_CLIENT_SECRET',
    'GRAPH_TENANT_ID',
    'SERVICETITAN_CLIENT_ID',
    'SERVICETITAN_CLIENT_SECRET',
    'SERVICETITAN_TENANT_ID',
    'GOOGLE_SPREADSHEET_ID',
]


def validate_config() -> List[str]:
    """Return the required keys that are missing or empty"""
    module_values = globals()
    return [key for key in REQUIRED_KEYS if not module_values.get(key)]


def require_config():
    """Raise ConfigError naming every missing required key"""
    missing = validate_config()
    if missing:
        raise ConfigError(f"Missing required environment variables: {', '.join(missing)}")
