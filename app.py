#!/usr/bin/env python3
# © 2024–2025 Harnisch LLC. All Rights Reserved.
# Licensed exclusively for use by St. Edward Church & School (Nashville, TN).
# Unauthorized use, distribution, or modification is prohibited.

"""
Outlook -> ServiceTitan Calendar Sync - HTTP surface

Run with gunicorn: `gunicorn -c gunicorn.conf.py "app:create_app()"`
"""
import logging
import re
from typing import Optional

from flask import Flask, jsonify, request

import config
from auth.request_auth import is_valid_client_state, require_trigger_token
from models import RunSummary
from services import Services, build_services
from tasks import SyncScheduler, UserSyncQueue
from utils.logger import configure_logging
from utils.timezone import get_local_time, isoformat_utc, utc_now

logger = logging.getLogger(__name__)

_RESOURCE_USER = re.compile(r'users/([^/]+)/events', re.IGNORECASE)


def user_from_resource(resource: str) -> Optional[str]:
    """Extract the user segment of a Graph notification resource path"""
    match = _RESOURCE_USER.search(resource or '')
    return match.group(1) if match else None


def _json_options():
    body = request.get_json(silent=True)
    return body if isinstance(body, dict) else {}


def _parse_flag(value, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ('1', 'true', 'yes')


def create_app(services: Optional[Services] = None, sync_queue: Optional[UserSyncQueue] = None,
               scheduler: Optional[SyncScheduler] = None, start_background: bool = True) -> Flask:
    """
    Build the Flask application

    Without injected services the environment is validated first; a
    missing required setting stops the process before it serves anything.
    """
    if services is None:
        configure_logging()
        config.require_config()
        services = build_services()

    if sync_queue is None:
        sync_queue = UserSyncQueue(services.engine.run_delta_sync_for_user, alerts=services.alerts,
                                   autostart=start_background)
    if scheduler is None:
        scheduler = SyncScheduler(services.engine, renew_subscriptions=services.renew_subscriptions)
    if start_background and config.SCHEDULER_ENABLED:
        scheduler.start()

    app = Flask(__name__)
    app.config['SERVICES'] = services
    app.config['SYNC_QUEUE'] = sync_queue
    app.config['SCHEDULER'] = scheduler

    @app.after_request
    def add_security_headers(response):
        response.headers['X-Content-Type-Options'] = 'nosniff'
        response.headers['X-Frame-Options'] = 'DENY'
        response.headers['Server'] = 'ST Calendar Sync'
        return response

    @app.route('/health')
    def health_check():
        """Lightweight liveness probe"""
        return jsonify({
            "status": "healthy",
            "timestamp": isoformat_utc(utc_now()),
            "service": "st-calendar-sync",
        }), 200

    @app.route('/graph/notifications', methods=['POST'])
    def graph_notifications():
        # Subscription handshake: echo the token as plain text
        validation_token = request.args.get('validationToken')
        if validation_token:
            logger.info("Received Graph webhook validation request.")
            return validation_token, 200, {'Content-Type': 'text/plain'}

        body = request.get_json(silent=True)
        if not isinstance(body, dict) or not isinstance(body.get('value'), list):
            return jsonify({'error': 'Invalid notification payload'}), 400

        queued, rejected = [], 0
        for notification in body['value']:
            if not isinstance(notification, dict) or not is_valid_client_state(notification):
                rejected += 1
                continue
            user_upn = user_from_resource(str(notification.get('resource') or ''))
            if not user_upn:
                logger.warning(f"Could not extract user from notification resource: {notification.get('resource')}")
                continue
            if sync_queue.enqueue(user_upn):
                queued.append(user_upn)

        if rejected:
            logger.warning(f"Rejected {rejected} notification(s) with an invalid clientState")
        return jsonify({'queued': queued, 'rejected': rejected}), 202

    @app.route('/sync/user', methods=['POST'])
    @require_trigger_token
    def sync_user():
        """Run the delta sync for one user synchronously"""
        user_upn = str(_json_options().get('upn') or '').strip()
        if not user_upn:
            return jsonify({'error': 'Missing upn'}), 400
        try:
            summary = services.engine.run_delta_sync_for_user(user_upn)
            return jsonify(summary.to_dict()), 200
        except Exception as e:
            logger.error(f"❌ /sync/user failed for {user_upn}: {e}")
            services.alerts.notify_failure('ST Calendar Sync: /sync/user failed',
                                           {'userUpn': user_upn, 'message': str(e)})
            return jsonify({'error': str(e), 'userUpn': user_upn}), 500

    @app.route('/sync/all', methods=['POST'])
    @require_trigger_token
    def sync_all():
        """Queue a delta sync for every enabled technician"""
        try:
            technicians = [t for t in services.store.get_technicians() if t.enabled]
        except Exception as e:
            logger.error(f"❌ /sync/all could not read technicians: {e}")
            return jsonify({'error': str(e)}), 500
        queued = [t.outlook_upn for t in technicians if sync_queue.enqueue(t.outlook_upn)]
        return jsonify({'status': 'queued', 'queued': queued}), 202

    @app.route('/run-sync', methods=['POST'])
    @require_trigger_token
    def run_sync():
        """Full-window cycle over every enabled technician"""
        try:
            summary = services.engine.run_sync_cycle()
            return jsonify(summary.to_dict()), 200
        except Exception as e:
            logger.error(f"❌ Run sync failed: {e}")
            services.alerts.notify_failure('ST Calendar Sync: /run-sync failed', {'message': str(e)})
            failed = RunSummary()
            failed.errors.append({'message': str(e)})
            return jsonify(failed.finish().to_dict()), 500

    @app.route('/graph/subscriptions/renew', methods=['POST'])
    @require_trigger_token
    def renew_subscriptions():
        try:
            return jsonify(services.renew_subscriptions()), 200
        except Exception as e:
            logger.error(f"❌ Subscription renewal failed: {e}")
            return jsonify({'error': str(e)}), 500

    @app.route('/cleanup/duplicates', methods=['POST'])
    @require_trigger_token
    def cleanup_duplicates():
        options = _json_options()
        try:
            summary = services.cleanup.dedupe_appointments(
                starts_on_or_after=options.get('startsOnOrAfter'),
                starts_on_or_before=options.get('startsOnOrBefore'),
                dry_run=_parse_flag(options.get('dryRun'), True),
            )
        except ValueError as e:
            return jsonify({'error': str(e)}), 400
        except Exception as e:
            logger.error(f"❌ Duplicate cleanup failed: {e}")
            return jsonify({'error': str(e)}), 500
        return jsonify(summary), 200

    @app.route('/cleanup/reset', methods=['POST'])
    @require_trigger_token
    def cleanup_reset():
        options = _json_options()
        try:
            summary = services.cleanup.reset_sync_state(
                starts_on_or_after=options.get('startsOnOrAfter'),
                starts_on_or_before=options.get('startsOnOrBefore'),
                dry_run=_parse_flag(options.get('dryRun'), True),
                skip_clear=_parse_flag(options.get('skipClear'), False),
            )
        except ValueError as e:
            return jsonify({'error': str(e)}), 400
        except Exception as e:
            logger.error(f"❌ Reset failed: {e}")
            return jsonify({'error': str(e)}), 500
        return jsonify(summary), 200

    @app.route('/status')
    @require_trigger_token
    def get_status():
        """Scheduler state, queue state and recent run history"""
        return jsonify({
            'timestamp': isoformat_utc(utc_now()),
            'current_time': get_local_time().isoformat(),
            'timezone': config.TARGET_TIMEZONE,
            'scheduler': scheduler.get_status(),
            'queue': sync_queue.get_status(),
            'statistics': services.history.get_statistics(),
            'recent_runs': services.history.recent(),
        }), 200

    return app


if __name__ == '__main__':
    logger.info(f"Starting calendar sync service on port {config.PORT}")
    create_app().run(host='0.0.0.0', port=config.PORT)
