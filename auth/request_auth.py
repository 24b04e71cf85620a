# © 2024–2025 Harnisch LLC. All Rights Reserved.
# Licensed exclusively for use by St. Edward Church & School (Nashville, TN).
# Unauthorized use, distribution, or modification is prohibited.

"""
Request authentication for the trigger endpoints and Graph change notifications
"""
import hmac
import logging
from functools import wraps

from flask import jsonify, request

import config

logger = logging.getLogger(__name__)


def tokens_match(provided: str, expected: str) -> bool:
    """Constant-time comparison; an unset expected value never matches"""
    if not expected or not provided:
        return False
    return hmac.compare_digest(provided.encode('utf-8'), expected.encode('utf-8'))


def extract_bearer_token(header_value: str) -> str:
    if not header_value:
        return ''
    scheme, _, token = header_value.partition(' ')
    if scheme.lower() != 'bearer':
        return ''
    return token.strip()


def require_trigger_token(func):
    """Reject requests without `Authorization: Bearer <RUN_SYNC_TOKEN>`"""
    @wraps(func)
    def wrapper(*args, **kwargs):
        provided = extract_bearer_token(request.headers.get('Authorization', ''))
        if not tokens_match(provided, config.RUN_SYNC_TOKEN):
            logger.warning(f"Rejected unauthenticated call to {request.path} from {request.remote_addr}")
            return jsonify({'error': 'Unauthorized'}), 401
        return func(*args, **kwargs)
    return wrapper


def is_valid_client_state(notification: dict) -> bool:
    """Graph echoes the subscription clientState on every notification"""
    if not config.GRAPH_CLIENT_STATE:
        return True
    return tokens_match(str(notification.get('clientState') or ''), config.GRAPH_CLIENT_STATE)
