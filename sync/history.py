# © 2024–2025 Harnisch LLC. All Rights Reserved.
# Licensed exclusively for use by St. Edward Church & School (Nashville, TN).
# Unauthorized use, distribution, or modification is prohibited.

"""
Sync History - Track and analyze sync runs over time
"""
from datetime import timedelta
from threading import Lock
from typing import Dict, List, Optional
from collections import defaultdict
import statistics

from models import RunSummary
from utils.timezone import get_local_time, parse_iso_datetime


class SyncHistory:
    """Bounded in-memory record of recent run summaries"""

    def __init__(self, max_entries: int = 100):
        self.history: List[Dict] = []
        self.max_entries = max_entries
        self._lock = Lock()

    def add_entry(self, summary: RunSummary, kind: str = 'cycle', user_upn: Optional[str] = None):
        """Add a finished run to history"""
        started = parse_iso_datetime(summary.started_at)
        finished = parse_iso_datetime(summary.finished_at)
        duration = (finished - started).total_seconds() if started and finished else 0

        entry = {
            'timestamp': get_local_time(),
            'kind': kind,
            'user_upn': user_upn,
            'duration': duration,
            'success': summary.success,
            'operations': {
                'fetched': summary.events_fetched,
                'upserted': summary.events_upserted,
                'skipped': summary.events_skipped,
                'errors': len(summary.errors),
            },
            'summary': summary.to_dict(),
        }

        with self._lock:
            self.history.append(entry)
            # Trim history if it exceeds max entries
            if len(self.history) > self.max_entries:
                self.history.pop(0)

    def recent(self, limit: int = 10) -> List[Dict]:
        """Most recent entries first, JSON-ready"""
        with self._lock:
            entries = list(reversed(self.history))[:limit]
        return [
            {
                'timestamp': entry['timestamp'].isoformat(),
                'kind': entry['kind'],
                'userUpn': entry['user_upn'],
                'success': entry['success'],
                'duration': entry['duration'],
                'summary': entry['summary'],
            }
            for entry in entries
        ]

    def get_statistics(self, hours: int = 24) -> Dict:
        """Calculate statistics for the given time period"""
        cutoff_time = get_local_time() - timedelta(hours=hours)
        with self._lock:
            recent_entries = [entry for entry in self.history if entry['timestamp'] > cutoff_time]

        if not recent_entries:
            return {
                'period_hours': hours,
                'total_syncs': 0,
                'successful_syncs': 0,
                'failed_syncs': 0,
                'success_rate': 0,
                'average_duration': 0,
                'total_operations': {'fetched': 0, 'upserted': 0, 'skipped': 0, 'errors': 0},
                'last_sync': None,
                'last_successful_sync': None,
            }

        successful_syncs = [e for e in recent_entries if e['success']]
        failed_syncs = [e for e in recent_entries if not e['success']]

        durations = [e['duration'] for e in recent_entries if e['duration'] > 0]
        avg_duration = statistics.mean(durations) if durations else 0

        total_operations = defaultdict(int)
        for entry in recent_entries:
            for op_type, count in entry['operations'].items():
                total_operations[op_type] += count

        last_sync = recent_entries[-1]
        last_successful = next((e for e in reversed(recent_entries) if e['success']), None)

        duration_percentiles = {}
        if durations:
            duration_percentiles = {
                'p50': statistics.median(durations),
                'p90': self._percentile(durations, 90),
                'min': min(durations),
                'max': max(durations)
            }

        return {
            'period_hours': hours,
            'total_syncs': len(recent_entries),
            'successful_syncs': len(successful_syncs),
            'failed_syncs': len(failed_syncs),
            'success_rate': len(successful_syncs) / len(recent_entries) * 100,
            'average_duration': avg_duration,
            'duration_percentiles': duration_percentiles,
            'total_operations': dict(total_operations),
            'last_sync': last_sync['timestamp'].isoformat(),
            'last_successful_sync': last_successful['timestamp'].isoformat() if last_successful else None,
        }

    def get_recent_failures(self, limit: int = 10) -> List[Dict]:
        """Get recent runs that recorded errors"""
        with self._lock:
            entries = list(reversed(self.history))
        failures = [
            {
                'timestamp': entry['timestamp'].isoformat(),
                'kind': entry['kind'],
                'userUpn': entry['user_upn'],
                'errors': entry['summary']['errors'],
            }
            for entry in entries
            if not entry['success']
        ]
        return failures[:limit]

    def clear_history(self):
        """Clear all history"""
        with self._lock:
            self.history.clear()

    def _percentile(self, data: List[float], percentile: int) -> float:
        """Calculate percentile of a sorted list"""
        if not data:
            return 0

        sorted_data = sorted(data)
        index = (percentile / 100) * (len(sorted_data) - 1)

        if index.is_integer():
            return sorted_data[int(index)]
        lower = sorted_data[int(index)]
        upper = sorted_data[int(index) + 1]
        fraction = index - int(index)
        return lower + (upper - lower) * fraction
