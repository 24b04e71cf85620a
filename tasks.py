# © 2024–2025 Harnisch LLC. All Rights Reserved.
# Licensed exclusively for use by St. Edward Church & School (Nashville, TN).
# Unauthorized use, distribution, or modification is prohibited.

"""
Background sync tasks and scheduling for ServiceTitan calendar sync
"""
import logging
import queue
import threading
import time
from typing import Any, Callable, Dict, Optional

import schedule

import config
from utils.logger import StructuredLogger
from utils.timezone import format_local_time, get_local_time

logger = logging.getLogger(__name__)
structured_logger = StructuredLogger(__name__)


class UserSyncQueue:
    """
    Serializes delta syncs through one worker thread

    At most one run per user is in flight. A request for a user that is
    already queued is dropped; a request arriving while that user runs
    queues exactly one follow-up run.
    """

    def __init__(self, sync_func: Callable[[str], Any], alerts=None, autostart: bool = True):
        self.sync_func = sync_func
        self.alerts = alerts
        self.autostart = autostart
        self._queue: "queue.Queue[str]" = queue.Queue()
        self._pending = set()
        self._lock = threading.Lock()
        self._worker: Optional[threading.Thread] = None
        self.running_user: Optional[str] = None
        self.processed = 0

    def enqueue(self, outlook_upn: str) -> bool:
        """Queue a delta sync; False when an identical request is already waiting"""
        key = outlook_upn.strip().lower()
        if not key:
            return False
        with self._lock:
            if key in self._pending:
                logger.info(f"Sync for {outlook_upn} already queued; coalesced")
                return False
            self._pending.add(key)
        self._queue.put(outlook_upn.strip())
        if self.autostart:
            self.start()
        return True

    def start(self):
        with self._lock:
            if self._worker is not None and self._worker.is_alive():
                return
            self._worker = threading.Thread(target=self._run_worker, name='user-sync-queue', daemon=True)
            self._worker.start()
            logger.info("✅ User sync queue worker started")

    def _run_worker(self):
        while True:
            self.process_next(block=True)

    def process_next(self, block: bool = False, timeout: Optional[float] = None) -> bool:
        """Run one queued sync; returns False when nothing was waiting"""
        try:
            outlook_upn = self._queue.get(block=block, timeout=timeout)
        except queue.Empty:
            return False

        with self._lock:
            self._pending.discard(outlook_upn.lower())
            self.running_user = outlook_upn

        try:
            logger.info(f"🔄 Starting queued delta sync for {outlook_upn}")
            self.sync_func(outlook_upn)
        except Exception as e:
            logger.error(f"❌ Queued delta sync failed for {outlook_upn}: {e}")
            structured_logger.log_sync_event('delta_sync_failed', {'user_upn': outlook_upn, 'error': str(e)})
            if self.alerts is not None:
                self.alerts.notify_failure('Delta sync failed', {'userUpn': outlook_upn, 'message': str(e)})
        finally:
            with self._lock:
                self.running_user = None
                self.processed += 1
            self._queue.task_done()
        return True

    def get_status(self) -> Dict[str, Any]:
        with self._lock:
            return {
                'queued': sorted(self._pending),
                'running_user': self.running_user,
                'processed': self.processed,
                'worker_alive': bool(self._worker and self._worker.is_alive()),
            }


class SyncScheduler:
    """Runs the full sync cycle and subscription renewal on a timer"""

    def __init__(self, sync_engine, renew_subscriptions: Optional[Callable[[], Any]] = None,
                 interval_minutes: Optional[int] = None, renew_hours: Optional[int] = None,
                 startup_delay_seconds: int = 120):
        self.sync_engine = sync_engine
        self.renew_subscriptions = renew_subscriptions
        self.interval_minutes = interval_minutes or config.SYNC_INTERVAL_MIN
        self.renew_hours = renew_hours or config.SUBSCRIPTION_RENEW_HOURS
        self.startup_delay_seconds = startup_delay_seconds

        self.scheduler = schedule.Scheduler()
        self.scheduler_lock = threading.Lock()
        self.scheduler_running = False
        self.scheduler_thread = None

        # State tracking
        self.last_sync_time = None
        self.last_sync_result = None
        self.sync_in_progress = False
        self.last_renewal_time = None

    def start(self):
        """Start the scheduler"""
        with self.scheduler_lock:
            if self.scheduler_running:
                logger.info("Scheduler already running")
                return

            self.scheduler.clear()
            self.scheduler.every(self.interval_minutes).minutes.do(self.run_scheduled_sync)
            if self.renew_subscriptions is not None:
                self.scheduler.every(self.renew_hours).hours.do(self.run_subscription_renewal)

            self.scheduler_running = True
            self.scheduler_thread = threading.Thread(target=self._run_scheduler, daemon=True)
            self.scheduler_thread.start()
            logger.info(f"✅ Scheduler started - full sync every {self.interval_minutes} minutes, "
                        f"subscription renewal every {self.renew_hours} hours")

    def stop(self):
        """Stop the scheduler"""
        with self.scheduler_lock:
            self.scheduler_running = False
            self.scheduler.clear()

        if self.scheduler_thread:
            self.scheduler_thread.join(timeout=5)
            logger.info("✅ Scheduler stopped")

    def is_running(self) -> bool:
        with self.scheduler_lock:
            return self.scheduler_running

    def _run_scheduler(self):
        """Run the scheduler loop"""
        # Give a fresh deployment time to settle before the first run
        if self.startup_delay_seconds:
            logger.info(f"⏳ Waiting {self.startup_delay_seconds}s before the first scheduled sync...")
            time.sleep(self.startup_delay_seconds)

        while self.is_running():
            self.scheduler.run_pending()
            time.sleep(30)

        logger.info(f"Scheduler stopped at {format_local_time(get_local_time())}")

    def run_scheduled_sync(self):
        """Run one full sync cycle unless one is already running"""
        with self.scheduler_lock:
            if self.sync_in_progress:
                logger.info("⏳ Sync already in progress, skipping scheduled sync")
                return None
            self.sync_in_progress = True

        try:
            logger.info("🔄 Starting scheduled sync...")
            summary = self.sync_engine.run_sync_cycle()
            self.last_sync_time = get_local_time()
            self.last_sync_result = summary.to_dict()
            if summary.success:
                structured_logger.log_sync_event('scheduled_sync_success', summary.to_dict())
            else:
                structured_logger.log_sync_event('scheduled_sync_failed', summary.to_dict())
            return summary
        except Exception as e:
            logger.error(f"❌ Scheduled sync exception: {e}")
            structured_logger.log_sync_event('scheduled_sync_exception', {'error': str(e)})
            self.last_sync_result = {'error': str(e)}
            if self.sync_engine.alerts is not None:
                self.sync_engine.alerts.notify_failure('Scheduled sync failed', {'message': str(e)})
            return None
        finally:
            with self.scheduler_lock:
                self.sync_in_progress = False

    def run_subscription_renewal(self):
        try:
            result = self.renew_subscriptions()
            self.last_renewal_time = get_local_time()
            return result
        except Exception as e:
            logger.error(f"❌ Subscription renewal failed: {e}")
            structured_logger.log_sync_event('subscription_renewal_failed', {'error': str(e)})
            return None

    def get_status(self) -> Dict[str, Any]:
        """Get scheduler status"""
        return {
            'running': self.is_running(),
            'last_sync_time': self.last_sync_time.isoformat() if self.last_sync_time else None,
            'last_sync_time_display': format_local_time(self.last_sync_time),
            'last_sync_result': self.last_sync_result,
            'sync_in_progress': self.sync_in_progress,
            'last_renewal_time': self.last_renewal_time.isoformat() if self.last_renewal_time else None,
            'sync_interval_minutes': self.interval_minutes,
        }
