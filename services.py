# © 2024–2025 Harnisch LLC. All Rights Reserved.
# Licensed exclusively for use by St. Edward Church & School (Nashville, TN).
# Unauthorized use, distribution, or modification is prohibited.

"""
Service wiring - builds every collaborator once per process
"""
import logging
from dataclasses import dataclass
from typing import Dict, Optional

import config
from auth.microsoft_auth import GraphAuth
from auth.servicetitan_auth import ServiceTitanAuth
from cal_ops.reader import GraphCalendarReader
from cal_ops.writer import ServiceTitanWriter
from storage.mapping_store import MappingStore
from storage.sheets_client import SheetsClient
from sync.cleanup import CleanupEngine
from sync.engine import ReconciliationEngine
from sync.history import SyncHistory
from utils.alerts import AlertNotifier
from utils.cache import AccessTokenCache, TTLCache
from utils.retry import RetryPolicy

logger = logging.getLogger(__name__)


@dataclass
class Services:
    reader: Optional[GraphCalendarReader]
    writer: ServiceTitanWriter
    store: MappingStore
    engine: Optional[ReconciliationEngine]
    cleanup: CleanupEngine
    alerts: AlertNotifier
    history: SyncHistory

    def renew_subscriptions(self) -> Dict:
        """Create or extend the Graph events subscription of every enabled technician"""
        result = {'renewed': 0, 'errors': []}
        if self.reader is None or not config.GRAPH_WEBHOOK_URL:
            logger.warning("Subscription renewal skipped: Graph webhook is not configured")
            return result

        for technician in self.store.get_technicians():
            if not technician.enabled:
                continue
            try:
                self.reader.create_or_renew_subscription(
                    technician.outlook_upn, config.GRAPH_WEBHOOK_URL, config.GRAPH_CLIENT_STATE
                )
                result['renewed'] += 1
            except Exception as e:
                logger.error(f"❌ Subscription renewal failed for {technician.outlook_upn}: {e}")
                result['errors'].append({'userUpn': technician.outlook_upn, 'message': str(e)})
        logger.info(f"Subscription renewal complete: {result['renewed']} renewed, {len(result['errors'])} errors")
        return result


def build_services(include_graph: bool = True) -> Services:
    """
    Construct the collaborator graph

    Token and read caches are created here and passed down by reference;
    nothing below keeps module-level state. Maintenance scripts pass
    include_graph=False since they never read Outlook.
    """
    st_auth = ServiceTitanAuth(AccessTokenCache(config.TOKEN_EXPIRY_MARGIN_SECONDS))
    writer = ServiceTitanWriter(st_auth, RetryPolicy(
        'servicetitan', max_retries=3, base_delay=config.BASE_DELAY, max_delay=config.MAX_DELAY
    ))

    sheets = SheetsClient(retry_policy=RetryPolicy(
        'sheets', max_retries=5, base_delay=0.5, max_delay=config.MAX_DELAY, jitter=0.5
    ))
    store = MappingStore(sheets, TTLCache(config.MAPPING_CACHE_TTL_SECONDS))

    alerts = AlertNotifier()
    history = SyncHistory()

    reader = None
    engine = None
    if include_graph:
        graph_auth = GraphAuth(AccessTokenCache(config.TOKEN_EXPIRY_MARGIN_SECONDS))
        reader = GraphCalendarReader(graph_auth, RetryPolicy(
            'graph', max_retries=config.MAX_RETRIES, base_delay=config.BASE_DELAY, max_delay=config.MAX_DELAY
        ))
        engine = ReconciliationEngine(reader, writer, store, alerts=alerts, history=history)

    logger.info("✅ Services initialized")
    return Services(
        reader=reader,
        writer=writer,
        store=store,
        engine=engine,
        cleanup=CleanupEngine(writer, store),
        alerts=alerts,
        history=history,
    )
